from threading import Lock
from typing import Literal, Protocol

from PIL import Image

from ocr_text_layer.models import PageSegMode
from ocr_text_layer.ocr.cancellation import CancellationToken
from ocr_text_layer.ocr.types import EngineResult, ProgressCallback
from ocr_text_layer.text import is_cjk_language

EngineKind = Literal["tesseract", "paddle"]


class OcrEngine(Protocol):
    """Raw OCR engine: image plus language set in, positioned words out."""

    def start(self) -> None: ...

    def shutdown(self) -> None: ...

    def recognize(
        self,
        image: Image.Image,
        language: str,
        *,
        page_seg_mode: PageSegMode,
        cancel_token: CancellationToken | None = None,
        progress: ProgressCallback | None = None,
    ) -> EngineResult: ...


class ThreadSafeOcrEngine:
    """Serialize OCR calls for engines that are not thread-safe."""

    def __init__(self, inner: OcrEngine) -> None:
        self._inner = inner
        self._lock = Lock()

    def start(self) -> None:
        with self._lock:
            self._inner.start()

    def shutdown(self) -> None:
        with self._lock:
            self._inner.shutdown()

    def recognize(
        self,
        image: Image.Image,
        language: str,
        *,
        page_seg_mode: PageSegMode,
        cancel_token: CancellationToken | None = None,
        progress: ProgressCallback | None = None,
    ) -> EngineResult:
        with self._lock:
            return self._inner.recognize(
                image,
                language,
                page_seg_mode=page_seg_mode,
                cancel_token=cancel_token,
                progress=progress,
            )


def default_page_seg_mode(language: str) -> PageSegMode:
    # Manga and vertical CJK layouts defeat block analysis; sparse mode finds more.
    if is_cjk_language(language):
        return PageSegMode.SPARSE_TEXT
    return PageSegMode.AUTO


def create_engine(kind: EngineKind = "tesseract", **options: object) -> ThreadSafeOcrEngine:
    """Construct an engine adapter; the caller owns its start/shutdown lifecycle."""
    if kind == "tesseract":
        from ocr_text_layer.ocr.tesseract import TesseractEngine

        return ThreadSafeOcrEngine(TesseractEngine(**options))
    if kind == "paddle":
        from ocr_text_layer.ocr.paddle import PaddleOcrEngine

        return ThreadSafeOcrEngine(PaddleOcrEngine(**options))
    raise ValueError(f"Unknown OCR engine: {kind!r}")
