import logging
from collections.abc import Callable

import numpy as np
import paddle
from paddleocr import PaddleOCR
from PIL import Image

from ocr_text_layer.errors import EngineFailure
from ocr_text_layer.models import PageSegMode
from ocr_text_layer.ocr.cancellation import CancellationToken, check_canceled
from ocr_text_layer.ocr.parsing import engine_result_from_words, words_from_paddle_results
from ocr_text_layer.ocr.types import EngineResult, ProgressCallback, ProgressEvent
from ocr_text_layer.text import language_codes

logger = logging.getLogger(__name__)

# Tesseract language codes to PaddleOCR model names.
_PADDLE_LANGUAGES = {
    "eng": "en",
    "kor": "korean",
    "jpn": "japan",
    "jpn_vert": "japan",
    "chi_sim": "ch",
    "chi_tra": "chinese_cht",
    "tha": "th",
}


def _choose_device() -> str:
    if paddle.is_compiled_with_cuda():
        if paddle.device.cuda.device_count() > 0:
            return "gpu"
    return "cpu"


def _create_paddle_ocr_client(lang: str, device: str) -> PaddleOCR:
    return PaddleOCR(
        lang=lang,
        device=device,
        enable_mkldnn=device != "cpu",
        enable_cinn=False,
    )


def _paddle_language(language: str) -> str:
    # Paddle loads one recognition model; prefer the non-English script.
    mapped = [_PADDLE_LANGUAGES.get(code) for code in language_codes(language)]
    scripts = [name for name in mapped if name and name != "en"]
    if scripts:
        return scripts[0]
    return "en"


class PaddleOcrEngine:
    """OCR engine backed by PaddleOCR, one model per recognition language."""

    def __init__(
        self,
        *,
        device: str | None = None,
        factory: Callable[[str, str], object] = _create_paddle_ocr_client,
    ) -> None:
        self._device = device
        self._factory = factory
        self._clients: dict[str, object] = {}

    def start(self) -> None:
        if self._device is None:
            self._device = _choose_device()
        logger.info("PaddleOCR running on %s.", self._device)

    def shutdown(self) -> None:
        self._clients.clear()

    def _client(self, lang: str) -> object:
        if self._device is None:
            raise EngineFailure("PaddleOcrEngine used before start()")
        client = self._clients.get(lang)
        if client is None:
            client = self._factory(lang, self._device)
            self._clients[lang] = client
        return client

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
        client = self._client(_paddle_language(language))
        if image.mode != "RGB":
            image = image.convert("RGB")
        single_region = page_seg_mode in (PageSegMode.SINGLE_LINE, PageSegMode.SINGLE_WORD)
        try:
            results = client.predict(
                np.array(image),
                use_doc_orientation_classify=False,
                use_doc_unwarping=False,
                use_textline_orientation=not single_region,
            )
        except (RuntimeError, ValueError) as exc:
            raise EngineFailure(f"PaddleOCR failed: {exc}") from exc
        check_canceled(cancel_token)
        if progress is not None:
            progress(ProgressEvent(stage="ocr", fraction=1.0, message="recognized"))
        words = words_from_paddle_results(results, language=language)
        return engine_result_from_words(words, language=language)
