import logging

import pytesseract
from PIL import Image
from pytesseract import Output

from ocr_text_layer.errors import EngineFailure
from ocr_text_layer.models import PageSegMode
from ocr_text_layer.ocr.cancellation import CancellationToken, check_canceled
from ocr_text_layer.ocr.parsing import engine_result_from_words, words_from_tesseract_data
from ocr_text_layer.ocr.types import EngineResult, ProgressCallback, ProgressEvent

logger = logging.getLogger(__name__)


def _config(page_seg_mode: PageSegMode, *, oem: int, dpi: int | None) -> str:
    config = f"--oem {oem} --psm {int(page_seg_mode)} -c preserve_interword_spaces=1"
    if dpi:
        config += f" --dpi {dpi}"
    return config


def _image_dpi(image: Image.Image) -> int | None:
    dpi = image.info.get("dpi")
    if isinstance(dpi, tuple) and dpi:
        return int(round(float(dpi[0])))
    return None


class TesseractEngine:
    """OCR engine backed by the Tesseract CLI through pytesseract."""

    def __init__(
        self,
        *,
        oem: int = 1,
        timeout: float = 0,
        tesseract_cmd: str | None = None,
    ) -> None:
        self._oem = oem
        self._timeout = timeout
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd
        self._version: str | None = None

    def start(self) -> None:
        try:
            self._version = str(pytesseract.get_tesseract_version())
        except pytesseract.TesseractNotFoundError as exc:
            raise EngineFailure("Tesseract binary not found") from exc
        logger.info("Using Tesseract %s.", self._version)

    def shutdown(self) -> None:
        self._version = None

    def recognize(
        self,
        image: Image.Image,
        language: str,
        *,
        page_seg_mode: PageSegMode = PageSegMode.AUTO,
        cancel_token: CancellationToken | None = None,
        progress: ProgressCallback | None = None,
    ) -> EngineResult:
        check_canceled(cancel_token)
        config = _config(page_seg_mode, oem=self._oem, dpi=_image_dpi(image))
        try:
            data = pytesseract.image_to_data(
                image,
                lang=language,
                config=config,
                output_type=Output.DICT,
                timeout=self._timeout,
            )
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError) as exc:
            raise EngineFailure(f"Tesseract failed: {exc}") from exc
        except RuntimeError as exc:
            # pytesseract signals a timeout with a bare RuntimeError.
            raise EngineFailure(f"Tesseract timed out: {exc}") from exc
        check_canceled(cancel_token)
        if progress is not None:
            progress(ProgressEvent(stage="ocr", fraction=1.0, message="recognized"))
        return engine_result_from_words(words_from_tesseract_data(data), language=language)
