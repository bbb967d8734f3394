import logging
from collections.abc import Sequence
from dataclasses import dataclass

from PIL import Image

from ocr_text_layer.errors import EngineFailure
from ocr_text_layer.models import DroppedWord, PageSegMode, Word
from ocr_text_layer.ocr.cancellation import CancellationToken, check_canceled
from ocr_text_layer.ocr.chunking import Band, BandResult, ChunkingController
from ocr_text_layer.ocr.clients import OcrEngine, default_page_seg_mode
from ocr_text_layer.ocr.filters import FilterOutcome, run_quality_filters
from ocr_text_layer.ocr.image_variants import grayscale_array, prepare_engine_image
from ocr_text_layer.ocr.lines import merge_unique_words
from ocr_text_layer.ocr.recovery import FallbackRecovery, RecoveryOutcome
from ocr_text_layer.ocr.types import DEFAULT_PIPELINE_CONFIG, PipelineConfig, ProgressCallback, ProgressEvent
from ocr_text_layer.text import is_latin_language

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PrimaryOcrOutcome:
    """Filtered words from the primary pass over a page.

    For chunked pages recovery already ran per band (gated on the whole
    page's word count), so `recovered` is filled in and `degraded` reports
    whether any band failed or lost its recovery pass.
    """

    words: tuple[Word, ...]
    dropped: tuple[DroppedWord, ...]
    chunked: bool = False
    band_count: int = 1
    recovered: tuple[Word, ...] = ()
    degraded: bool = False


class PagePipeline:
    """Engine, quality filters, chunking and fallback recovery for one image."""

    def __init__(self, engine: OcrEngine, config: PipelineConfig = DEFAULT_PIPELINE_CONFIG) -> None:
        self._engine = engine
        self._config = config
        self._recovery = FallbackRecovery(engine, config.recovery)
        self._chunker = ChunkingController(config.chunking)

    def recognize(
        self,
        image: Image.Image,
        *,
        language: str,
        page_seg_mode: PageSegMode | None = None,
        cancel_token: CancellationToken | None = None,
        progress: ProgressCallback | None = None,
    ) -> PrimaryOcrOutcome:
        """Run the primary OCR pass, chunking the page when it is oversized.

        Raises:
            EngineFailure: The primary engine call failed (for chunked pages,
                every band failed).
            OcrCanceled: The token was canceled.
        """
        mode = page_seg_mode if page_seg_mode is not None else default_page_seg_mode(language)
        if not self._chunker.needs_chunking(image.width, image.height):
            outcome = self._recognize_and_filter(image, language, mode, cancel_token, progress)
            return PrimaryOcrOutcome(words=outcome.survivors, dropped=outcome.dropped)

        band_words: dict[int, tuple[Band, tuple[Word, ...]]] = {}
        band_total = len(self._chunker.plan_bands(image.height))

        def process_band(crop: Image.Image, band: Band) -> BandResult:
            filtered = self._recognize_and_filter(crop, language, mode, cancel_token, None)
            if progress is not None:
                progress(
                    ProgressEvent(
                        stage="ocr",
                        fraction=(band.index + 1) / band_total,
                        message=f"band {band.index + 1}/{band_total}",
                    )
                )
            band_words[band.index] = (band, filtered.survivors)
            return BandResult(words=filtered.survivors, dropped=filtered.dropped)

        chunked = self._chunker.recognize(image, process_band, cancel_token=cancel_token)
        words, recovered, degraded = self._recover_bands(
            chunked.words, image, band_words, language=language, cancel_token=cancel_token
        )
        return PrimaryOcrOutcome(
            words=tuple(words),
            dropped=chunked.dropped,
            chunked=True,
            band_count=chunked.band_count,
            recovered=tuple(recovered),
            degraded=degraded or bool(chunked.failed_bands),
        )

    def _recover_bands(
        self,
        page_words: Sequence[Word],
        image: Image.Image,
        band_words: dict[int, tuple[Band, tuple[Word, ...]]],
        *,
        language: str,
        cancel_token: CancellationToken | None,
    ) -> tuple[list[Word], list[Word], bool]:
        """Run recovery band by band, gated on the merged page's word count."""
        config = self._config.recovery
        words = list(page_words)
        recovered: list[Word] = []
        degraded = False
        if len(words) < config.min_words:
            logger.debug("Skipping recovery: %d page words is below %d.", len(words), config.min_words)
            return words, recovered, degraded
        page_word_count = len(words)
        for index in sorted(band_words):
            band, survivors = band_words[index]
            check_canceled(cancel_token)
            crop = image.crop((0, band.top, image.width, band.bottom))
            try:
                outcome = self._recovery.recover(
                    survivors,
                    crop,
                    language=language,
                    cancel_token=cancel_token,
                    page_word_count=page_word_count,
                )
            except EngineFailure as exc:
                logger.warning("Recovery failed for band %d, keeping primary words: %s", band.index, exc)
                degraded = True
                continue
            shifted = [word.offset(0, band.top) for word in outcome.recovered]
            words, added = merge_unique_words(words, shifted, iou_threshold=config.dedupe_iou)
            recovered.extend(added)
        return words, recovered, degraded

    def recover(
        self,
        words: Sequence[Word],
        image: Image.Image,
        *,
        language: str,
        cancel_token: CancellationToken | None = None,
    ) -> RecoveryOutcome:
        return self._recovery.recover(words, image, language=language, cancel_token=cancel_token)

    def _recognize_and_filter(
        self,
        image: Image.Image,
        language: str,
        page_seg_mode: PageSegMode,
        cancel_token: CancellationToken | None,
        progress: ProgressCallback | None,
    ) -> FilterOutcome:
        gray = grayscale_array(image)
        engine_input = prepare_engine_image(
            image,
            binarized=self._config.binarize_latin and is_latin_language(language),
        )
        check_canceled(cancel_token)
        result = self._engine.recognize(
            engine_input,
            language,
            page_seg_mode=page_seg_mode,
            cancel_token=cancel_token,
            progress=progress,
        )
        check_canceled(cancel_token)
        return run_quality_filters(
            result.words,
            gray,
            language=language,
            config=self._config.filters,
            page_height=image.height,
        )
