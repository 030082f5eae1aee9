import threading

from feed_importer.domain.imports.exceptions import ImportCancelled


class CancellationToken:
    """
    Cooperative stop flag shared between a run and the callers that poll it.

    The owner of a traversal calls `raise_if_cancelled()` once per item; any
    other thread may call `cancel()`.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ImportCancelled()
