import logging
from collections.abc import Sequence
from dataclasses import dataclass

from PIL import Image

from ocr_text_layer.models import BBox, Line, PageSegMode, Word
from ocr_text_layer.ocr.cancellation import CancellationToken, check_canceled
from ocr_text_layer.ocr.clients import OcrEngine
from ocr_text_layer.ocr.image_variants import crop_with_fill, grayscale_array, ink_row_bands, to_grayscale
from ocr_text_layer.ocr.lines import build_lines, expand_bbox, median, merge_unique_words
from ocr_text_layer.ocr.types import DEFAULT_RECOVERY_CONFIG, EngineResult, RecoveryConfig
from ocr_text_layer.text import alnum_content, is_cjk_language, is_non_latin

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecoveryOutcome:
    """Words after recovery, the words that were added, and engine calls spent."""

    words: tuple[Word, ...]
    recovered: tuple[Word, ...]
    sub_calls: int


@dataclass(frozen=True)
class _Region:
    box: BBox
    page_seg_mode: PageSegMode
    min_conf: float
    max_len: int | None
    dedupe_iou: float


def _region_key(region: _Region) -> tuple[int, int, int, int, int]:
    box = region.box
    return (
        int(round(box.x0)),
        int(round(box.y0)),
        int(round(box.x1)),
        int(round(box.y1)),
        int(region.page_seg_mode),
    )


def _vertical_overlap(a: BBox, b: BBox) -> float:
    return max(0.0, min(a.y1, b.y1) - max(a.y0, b.y0))


def _band_has_words(band: BBox, words: Sequence[Word]) -> bool:
    for word in words:
        box = word.bbox
        if box.x1 <= band.x0 or box.x0 >= band.x1:
            continue
        if _vertical_overlap(box, band) >= 0.5 * min(box.height, band.height):
            return True
    return False


def find_large_gaps(line: Line, *, language: str, config: RecoveryConfig = DEFAULT_RECOVERY_CONFIG) -> list[BBox]:
    """Return padded boxes for anomalously wide gaps between words of a line.

    A gap qualifies when it exceeds the largest of a fixed pixel minimum, a
    multiple of the line's median gap, and a multiple of its median word
    height. At most `max_gaps_per_line` of the widest gaps are returned, left
    to right.
    """
    words = line.words
    if len(words) < 2:
        return []
    gaps = [(previous, word, word.bbox.x0 - previous.bbox.x1) for previous, word in zip(words, words[1:])]
    positive = [gap for _, _, gap in gaps if gap > 0]
    if not positive:
        return []
    cjk = is_cjk_language(language)
    median_height = median(word.bbox.height for word in words)
    threshold = max(
        config.gap_min_px,
        median(positive) * (config.gap_median_mult_cjk if cjk else config.gap_median_mult),
        median_height * (config.gap_height_mult_cjk if cjk else config.gap_height_mult),
    )
    pad = median_height * config.gap_pad_ratio
    top = min(word.bbox.y0 for word in words)
    bottom = max(word.bbox.y1 for word in words)
    wide = [(previous, word, gap) for previous, word, gap in gaps if gap > threshold]
    wide.sort(key=lambda item: (-item[2], item[0].bbox.x1))
    boxes = [
        BBox(x0=previous.bbox.x1, y0=top, x1=word.bbox.x0, y1=bottom)
        for previous, word, _ in wide[: config.max_gaps_per_line]
    ]
    boxes.sort(key=lambda box: box.x0)
    return [expand_bbox(box, pad_x=pad, pad_y=pad) for box in boxes]


def find_vertical_gap_regions(
    lines: Sequence[Line],
    *,
    page_height: float,
    config: RecoveryConfig = DEFAULT_RECOVERY_CONFIG,
) -> list[BBox]:
    """Return padded boxes for tall empty gaps above and between lines.

    Sparse CJK pages (manga panels, captions) often lose whole lines that sit
    well apart from the rest. A gap qualifies when it exceeds both a fraction
    of the page height and a multiple of the median line height. The tallest
    `vertical_gap_max_regions` gaps are returned, top to bottom.
    """
    ordered = sorted(lines, key=lambda line: line.bbox.y0)
    if not ordered:
        return []
    median_height = median(line.bbox.height for line in ordered)
    min_gap = max(page_height * config.vertical_gap_min_ratio, median_height * config.vertical_gap_min_mult)
    pad_y = median_height * config.vertical_gap_pad_ratio
    pad_x = pad_y * 1.2
    gaps: list[tuple[float, BBox]] = []
    first = ordered[0].bbox
    if first.y0 > min_gap:
        gaps.append((first.y0, BBox(x0=first.x0, y0=0.0, x1=first.x1, y1=first.y0)))
    for upper, lower in zip(ordered, ordered[1:]):
        gap = lower.bbox.y0 - upper.bbox.y1
        if gap <= min_gap:
            continue
        gaps.append(
            (
                gap,
                BBox(
                    x0=min(upper.bbox.x0, lower.bbox.x0),
                    y0=upper.bbox.y1,
                    x1=max(upper.bbox.x1, lower.bbox.x1),
                    y1=lower.bbox.y0,
                ),
            )
        )
    gaps.sort(key=lambda item: (-item[0], item[1].y0))
    boxes = sorted((box for _, box in gaps[: config.vertical_gap_max_regions]), key=lambda box: box.y0)
    return [expand_bbox(box, pad_x=pad_x, pad_y=pad_y) for box in boxes]


class FallbackRecovery:
    """Re-run the engine on narrow regions the primary pass likely missed.

    Rows that contain ink but no surviving words are re-read as single
    lines, and wide gaps inside a line are re-read as single words. On
    sparse CJK pages tall gaps between lines are also re-read as sparse
    text. Passes repeat until one recovers nothing, and each region is sent
    to the engine at most once per call.
    """

    def __init__(self, engine: OcrEngine, config: RecoveryConfig = DEFAULT_RECOVERY_CONFIG) -> None:
        self._engine = engine
        self._config = config

    def recover(
        self,
        words: Sequence[Word],
        image: Image.Image,
        *,
        language: str,
        cancel_token: CancellationToken | None = None,
        page_word_count: int | None = None,
    ) -> RecoveryOutcome:
        """Recover words missing from `words`.

        `page_word_count` is the word count of the whole page when `image` is
        one band of it; the minimum-word skip and the vertical-gap limit use
        it instead of `len(words)`.
        """
        config = self._config
        word_count = len(words) if page_word_count is None else page_word_count
        if word_count < config.min_words:
            logger.debug("Skipping recovery: %d words is below %d.", word_count, config.min_words)
            return RecoveryOutcome(words=tuple(words), recovered=(), sub_calls=0)

        gray_image = to_grayscale(image)
        bands = ink_row_bands(grayscale_array(gray_image), min_height=config.empty_line_min_height)
        memo: dict[tuple[int, int, int, int, int], EngineResult | None] = {}
        current = list(words)
        recovered: list[Word] = []
        vertical_gaps = is_cjk_language(language) and word_count <= config.vertical_gap_max_words
        for _ in range(config.max_passes):
            regions = self._empty_line_regions(bands, current, gray_image) + self._gap_regions(current, language)
            if vertical_gaps:
                regions += self._vertical_gap_regions(current, language, gray_image.height)
            added_this_pass: list[Word] = []
            for region in regions:
                check_canceled(cancel_token)
                candidates = self._recognize_region(gray_image, region, language, memo, cancel_token)
                accepted = [word for word in candidates if self._accept(word, region, language)]
                current, added = merge_unique_words(current, accepted, iou_threshold=region.dedupe_iou)
                added_this_pass.extend(added)
            if not added_this_pass:
                break
            recovered.extend(added_this_pass)

        sub_calls = sum(1 for result in memo.values() if result is not None)
        if recovered:
            logger.info("Recovered %d words with %d engine sub-calls.", len(recovered), sub_calls)
        return RecoveryOutcome(words=tuple(current), recovered=tuple(recovered), sub_calls=sub_calls)

    def _empty_line_regions(self, bands: Sequence[BBox], words: Sequence[Word], image: Image.Image) -> list[_Region]:
        config = self._config
        min_area = image.width * image.height * config.empty_line_min_area_ratio
        regions: list[_Region] = []
        for band in bands:
            if band.area <= min_area or _band_has_words(band, words):
                continue
            regions.append(
                _Region(
                    box=expand_bbox(
                        band,
                        pad_x=band.height * config.empty_line_pad_x_ratio,
                        pad_y=band.height * config.empty_line_pad_y_ratio,
                    ),
                    page_seg_mode=PageSegMode.SINGLE_LINE,
                    min_conf=config.empty_line_min_conf,
                    max_len=None,
                    dedupe_iou=config.empty_line_dedupe_iou,
                )
            )
            if len(regions) >= config.max_empty_lines:
                break
        return regions

    def _gap_regions(self, words: Sequence[Word], language: str) -> list[_Region]:
        config = self._config
        cjk = is_cjk_language(language)
        regions: list[_Region] = []
        for line in build_lines(words, language=language):
            for box in find_large_gaps(line, language=language, config=config):
                if len(regions) >= config.gap_budget:
                    return regions
                regions.append(
                    _Region(
                        box=box,
                        page_seg_mode=PageSegMode.SINGLE_WORD,
                        min_conf=config.gap_min_conf,
                        max_len=config.gap_max_len_cjk if cjk else config.gap_max_len,
                        dedupe_iou=config.dedupe_iou,
                    )
                )
        return regions

    def _vertical_gap_regions(self, words: Sequence[Word], language: str, page_height: int) -> list[_Region]:
        config = self._config
        lines = build_lines(words, language=language, page_height=page_height)
        return [
            _Region(
                box=box,
                page_seg_mode=PageSegMode.SPARSE_TEXT,
                min_conf=config.vertical_gap_min_conf,
                max_len=None,
                dedupe_iou=config.empty_line_dedupe_iou,
            )
            for box in find_vertical_gap_regions(lines, page_height=page_height, config=config)
        ]

    def _recognize_region(
        self,
        image: Image.Image,
        region: _Region,
        language: str,
        memo: dict[tuple[int, int, int, int, int], EngineResult | None],
        cancel_token: CancellationToken | None,
    ) -> list[Word]:
        key = _region_key(region)
        if key not in memo:
            crop = crop_with_fill(
                image,
                region.box,
                margin=self._config.crop_margin,
                min_size=self._config.min_crop_px,
            )
            if crop is None:
                memo[key] = None
            else:
                crop_image, (left, top) = crop
                result = self._engine.recognize(
                    crop_image,
                    language,
                    page_seg_mode=region.page_seg_mode,
                    cancel_token=cancel_token,
                )
                check_canceled(cancel_token)
                memo[key] = EngineResult(
                    words=tuple(word.offset(left, top) for word in result.words),
                    text=result.text,
                    confidence=result.confidence,
                )
        result = memo[key]
        return list(result.words) if result is not None else []

    def _accept(self, word: Word, region: _Region, language: str) -> bool:
        if word.confidence < region.min_conf:
            return False
        core = alnum_content(word.text)
        if not core:
            return False
        if region.max_len is not None:
            max_len = region.max_len
            if is_non_latin(word.text) and not is_cjk_language(language):
                max_len = self._config.gap_max_len_cjk
            if len(core) > max_len:
                return False
        box = region.box
        return box.x0 <= word.bbox.center_x <= box.x1 and box.y0 <= word.bbox.center_y <= box.y1
