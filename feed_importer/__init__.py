"""
Feed Importer.

Downloads third-party product feeds (XML, CSV, JSON), maps them onto the
canonical product record and reconciles them against the catalog.
"""

__version__ = "0.1.0"
