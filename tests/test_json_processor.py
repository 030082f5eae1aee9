import pytest

from feed_importer.domain.imports.exceptions import ParseError
from feed_importer.domain.imports.processors.json_processor import (
    find_products_array,
    iter_json_records,
    load_json_document,
)


def test_root_array_is_the_products_array():
    assert find_products_array([{"a": 1}]) == [{"a": 1}]


def test_conventional_keys_are_searched_in_order():
    document = {"meta": {"count": 1}, "data": [{"id": 2}], "products": [{"id": 1}]}

    assert find_products_array(document) == [{"id": 1}]


def test_lowercased_key_variant_is_accepted():
    assert find_products_array({"shopitem": [{"id": 1}]}) == [{"id": 1}]


def test_records_are_stringified_and_non_objects_skipped():
    document = {
        "products": [
            {"id": 1, "name": "Chair", "price": 9.5, "active": True, "tags": ["a", "b"], "note": None},
            "not a product",
            42,
        ]
    }

    records = list(iter_json_records(document))

    assert records == [
        {"id": "1", "name": "Chair", "price": "9.5", "active": "true", "tags": '["a", "b"]'},
    ]


def test_missing_products_array_raises_parse_error():
    with pytest.raises(ParseError, match="No products array found in JSON feed"):
        list(iter_json_records({"meta": {}}))


def test_invalid_json_raises_parse_error():
    with pytest.raises(ParseError):
        load_json_document(b'{"products": [{"name": "cut')


def test_load_tolerates_bom():
    assert load_json_document(b'\xef\xbb\xbf[{"name": "A"}]') == [{"name": "A"}]
