import threading

from ocr_text_layer.errors import OcrCanceled


class CancellationToken:
    """Cooperative cancellation flag shared by every stage of a page job."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def canceled(self) -> bool:
        return self._event.is_set()

    def raise_if_canceled(self) -> None:
        if self._event.is_set():
            raise OcrCanceled()

    def wait(self, timeout: float) -> bool:
        """Sleep up to `timeout` seconds; returns True if canceled meanwhile."""
        return self._event.wait(timeout)


def check_canceled(token: CancellationToken | None) -> None:
    if token is not None:
        token.raise_if_canceled()
