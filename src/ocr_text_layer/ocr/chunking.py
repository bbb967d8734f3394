import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from PIL import Image

from ocr_text_layer.errors import EngineFailure
from ocr_text_layer.models import DroppedWord, Word
from ocr_text_layer.ocr.cancellation import CancellationToken, check_canceled
from ocr_text_layer.ocr.lines import dedupe_by_confidence
from ocr_text_layer.ocr.types import DEFAULT_CHUNK_CONFIG, ChunkConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Band:
    """Horizontal strip of the page, `top` inclusive and `bottom` exclusive."""

    index: int
    top: int
    bottom: int


@dataclass(frozen=True)
class BandResult:
    """Band-local words and drops produced by one band's OCR pass."""

    words: Sequence[Word]
    dropped: Sequence[DroppedWord] = ()


@dataclass(frozen=True)
class ChunkOutcome:
    words: tuple[Word, ...]
    dropped: tuple[DroppedWord, ...]
    band_count: int
    failed_bands: tuple[int, ...]


BandProcessor = Callable[[Image.Image, Band], BandResult]


class ChunkingController:
    """Split oversized pages into overlapping bands and merge the results."""

    def __init__(self, config: ChunkConfig = DEFAULT_CHUNK_CONFIG) -> None:
        if config.overlap >= config.band_height:
            raise ValueError("Band overlap must be smaller than the band height")
        self._config = config

    def needs_chunking(self, width: int, height: int) -> bool:
        return width > self._config.max_width or height > self._config.max_height

    def plan_bands(self, height: int) -> list[Band]:
        step = self._config.band_height - self._config.overlap
        bands: list[Band] = []
        top = 0
        while True:
            bottom = min(top + self._config.band_height, height)
            bands.append(Band(index=len(bands), top=top, bottom=bottom))
            if bottom >= height:
                return bands
            top += step

    def recognize(
        self,
        image: Image.Image,
        process_band: BandProcessor,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> ChunkOutcome:
        """OCR each band independently and merge into one page-space word list.

        Raises:
            EngineFailure: Every band failed.
            OcrCanceled: The token was canceled between bands.
        """
        bands = self.plan_bands(image.height)
        per_band: list[tuple[Band, list[Word]]] = []
        dropped: list[DroppedWord] = []
        failed: list[int] = []
        for band in bands:
            check_canceled(cancel_token)
            crop = image.crop((0, band.top, image.width, band.bottom))
            try:
                result = process_band(crop, band)
            except EngineFailure as exc:
                logger.warning("Band %d (%d-%d) failed: %s", band.index, band.top, band.bottom, exc)
                failed.append(band.index)
                continue
            per_band.append((band, [word.offset(0, band.top) for word in result.words]))
            dropped.extend(
                item.model_copy(update={"word": item.word.offset(0, band.top)}) for item in result.dropped
            )
        if len(failed) == len(bands):
            raise EngineFailure(f"All {len(bands)} bands failed")

        merged: list[Word] = []
        for band, words in per_band:
            merged.extend(word for word in words if not self._cut_at_edge(word, band, bands, failed))
        words = dedupe_by_confidence(merged, iou_threshold=self._config.dedupe_iou)
        logger.info(
            "Merged %d bands into %d words (%d before dedupe).",
            len(per_band),
            len(words),
            len(merged),
        )
        return ChunkOutcome(
            words=tuple(words),
            dropped=tuple(dropped),
            band_count=len(bands),
            failed_bands=tuple(failed),
        )

    def _cut_at_edge(self, word: Word, band: Band, bands: Sequence[Band], failed: Sequence[int]) -> bool:
        # A word touching an interior band edge is clipped; the neighbouring
        # band holds a complete copy when the word fits inside its range.
        margin = self._config.edge_margin
        box = word.bbox
        if band.index + 1 < len(bands) and box.y1 >= band.bottom - margin:
            following = bands[band.index + 1]
            if box.y0 >= following.top and following.index not in failed:
                return True
        if band.index > 0 and box.y0 <= band.top + margin:
            preceding = bands[band.index - 1]
            if box.y1 <= preceding.bottom and preceding.index not in failed:
                return True
        return False
