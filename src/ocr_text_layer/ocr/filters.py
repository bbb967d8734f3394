import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from ocr_text_layer.models import BBox, DroppedWord, Line, OcrDebugInfo, Word
from ocr_text_layer.ocr.lines import build_lines, intersection_area, median
from ocr_text_layer.ocr.types import DEFAULT_FILTER_CONFIG, FilterConfig
from ocr_text_layer.text import (
    CJK_CHAR_RE,
    KOREAN_JAMO_RE,
    KOREAN_SYLLABLE_RE,
    alnum_content,
    is_cjk_language,
    is_non_latin,
    language_codes,
)

logger = logging.getLogger(__name__)

LINE_NOISE = "line_noise"
IMAGE_TILE = "image_tile"
BACKGROUND_VARIANCE = "background_variance"
ISOLATED_CJK = "isolated_cjk"
KOREAN_JAMO = "korean_jamo"
WEAK_CJK_LINE = "weak_cjk_line"


@dataclass(frozen=True)
class FilterOutcome:
    """Survivors of the quality filters plus everything they removed."""

    survivors: tuple[Word, ...]
    dropped: tuple[DroppedWord, ...]

    def debug_info(self) -> OcrDebugInfo:
        return OcrDebugInfo.from_dropped(self.dropped)


@dataclass(frozen=True)
class TileMask:
    """Coarse photo mask: `mask[row, col]` covers a `tile_size` square."""

    tile_size: int
    mask: np.ndarray

    def masked_fraction(self, box: BBox) -> float:
        """Fraction of `box` area lying in photo tiles."""
        if box.area <= 0:
            return 0.0
        rows, cols = self.mask.shape
        size = self.tile_size
        row_start = max(0, int(box.y0 // size))
        row_end = min(rows - 1, int(math.ceil(box.y1 / size)) - 1)
        col_start = max(0, int(box.x0 // size))
        col_end = min(cols - 1, int(math.ceil(box.x1 / size)) - 1)
        covered = 0.0
        for row in range(row_start, row_end + 1):
            for col in range(col_start, col_end + 1):
                if not self.mask[row, col]:
                    continue
                tile = BBox(x0=col * size, y0=row * size, x1=(col + 1) * size, y1=(row + 1) * size)
                covered += intersection_area(box, tile)
        return covered / box.area


def _page_height(words: Sequence[Word], gray: np.ndarray | None, page_height: float | None) -> float:
    if page_height:
        return float(page_height)
    if gray is not None:
        return float(gray.shape[0])
    return max((word.bbox.y1 for word in words), default=1.0)


def _protected_words(words: Sequence[Word], *, language: str, config: FilterConfig) -> set[Word]:
    protected: set[Word] = set()
    for line in build_lines(words, language=language):
        if len(line.words) >= config.protect_line_words or line.confidence >= config.protect_line_conf:
            protected.update(line.words)
    return protected


def _line_noise_reason(word: Word, *, embedded: bool, line_size: int, config: FilterConfig) -> str | None:
    core = alnum_content(word.text)
    if not core:
        return "no letters or digits"
    if is_non_latin(word.text) or embedded or len(core) > 3:
        return None
    if len(core) == 1 and core in config.noise_keep_single_chars and line_size > 1:
        return None
    mixed_case = any(ch.isupper() for ch in core[1:]) and any(ch.islower() for ch in core)
    if mixed_case and word.confidence < config.noise_mixed_case_min_conf:
        return f"mixed-case fragment at {word.confidence:.0f}% confidence"
    if len(core) == 1 and word.confidence < config.noise_min_conf_single:
        return f"isolated single character at {word.confidence:.0f}% confidence"
    if len(core) == 2 and word.confidence < config.noise_min_conf_short:
        return f"isolated short token at {word.confidence:.0f}% confidence"
    return None


def filter_line_noise(
    words: Sequence[Word],
    *,
    language: str,
    config: FilterConfig = DEFAULT_FILTER_CONFIG,
    page_height: float | None = None,
) -> tuple[list[Word], list[DroppedWord]]:
    """Drop short, low-confidence tokens that are not part of a real sentence.

    A token counts as embedded when its line has at least
    `noise_dense_line_words` words and it is not the leading token. Embedded
    tokens and non-Latin tokens are only dropped when they contain no letters
    or digits at all.
    """
    survivors: list[Word] = []
    dropped: list[DroppedWord] = []
    for line in build_lines(words, language=language, page_height=page_height):
        dense = len(line.words) >= config.noise_dense_line_words
        for index, word in enumerate(line.words):
            reason = _line_noise_reason(
                word,
                embedded=dense and index > 0,
                line_size=len(line.words),
                config=config,
            )
            if reason is None:
                survivors.append(word)
            else:
                dropped.append(DroppedWord(word=word, filter=LINE_NOISE, reason=reason))
    return survivors, dropped


def _tile_stats(tile: np.ndarray, config: FilterConfig) -> tuple[float, float, float]:
    values = tile.astype(np.float64)
    variance = float(values.var())
    mid_ratio = float(
        np.count_nonzero((tile >= config.tile_mid_low) & (tile <= config.tile_mid_high)) / tile.size
    )
    edges: list[float] = []
    if values.shape[1] > 1:
        edges.append(float(np.abs(np.diff(values, axis=1)).mean()))
    if values.shape[0] > 1:
        edges.append(float(np.abs(np.diff(values, axis=0)).mean()))
    edge = sum(edges) / len(edges) if edges else 0.0
    return variance, mid_ratio, edge


def build_image_tile_mask(
    gray: np.ndarray,
    words: Sequence[Word],
    *,
    config: FilterConfig = DEFAULT_FILTER_CONFIG,
) -> TileMask:
    """Mark tiles whose texture resembles a photograph rather than text.

    Each tile is sampled every `tile_sample_step` pixels. A tile is
    photo-like when it is dominated by mid-tones with high variance, or when
    it is edge-dense with high variance, unless the words on it make it look
    like text. Unmasked tiles surrounded by enough photo tiles are filled in.
    """
    height, width = gray.shape
    tile_size = int(min(max(min(width, height) / 40, config.tile_min_size), config.tile_max_size))
    rows = max(1, math.ceil(height / tile_size))
    cols = max(1, math.ceil(width / tile_size))

    word_counts = np.zeros((rows, cols), dtype=np.int32)
    coverage = np.zeros((rows, cols), dtype=np.float64)
    conf_sums = np.zeros((rows, cols), dtype=np.float64)
    for word in words:
        box = word.bbox
        for row in range(max(0, int(box.y0 // tile_size)), min(rows, int(math.ceil(box.y1 / tile_size)))):
            for col in range(max(0, int(box.x0 // tile_size)), min(cols, int(math.ceil(box.x1 / tile_size)))):
                tile = BBox(
                    x0=col * tile_size,
                    y0=row * tile_size,
                    x1=(col + 1) * tile_size,
                    y1=(row + 1) * tile_size,
                )
                overlap = intersection_area(box, tile)
                if overlap <= 0:
                    continue
                word_counts[row, col] += 1
                coverage[row, col] += overlap / (tile_size * tile_size)
                conf_sums[row, col] += word.confidence

    step = max(1, config.tile_sample_step)
    photo = np.zeros((rows, cols), dtype=bool)
    text_like = np.zeros((rows, cols), dtype=bool)
    for row in range(rows):
        for col in range(cols):
            sample = gray[
                row * tile_size : (row + 1) * tile_size : step,
                col * tile_size : (col + 1) * tile_size : step,
            ]
            if sample.size == 0:
                continue
            count = int(word_counts[row, col])
            mean_conf = conf_sums[row, col] / count if count else 0.0
            text_like[row, col] = mean_conf >= config.tile_text_conf and (
                count >= config.tile_text_min_words
                or coverage[row, col] >= config.tile_text_coverage
            )
            if text_like[row, col]:
                continue
            variance, mid_ratio, edge = _tile_stats(sample, config)
            photo[row, col] = (
                mid_ratio >= config.tile_mid_ratio and variance >= config.tile_variance
            ) or (edge >= config.tile_edge and variance >= config.tile_edge_variance)

    filled = photo.copy()
    for row in range(rows):
        for col in range(cols):
            if photo[row, col] or text_like[row, col]:
                continue
            neighbours = photo[max(0, row - 1) : row + 2, max(0, col - 1) : col + 2]
            if int(neighbours.sum()) >= config.tile_hole_fill_min:
                filled[row, col] = True
    return TileMask(tile_size=tile_size, mask=filled)


def filter_image_tiles(
    words: Sequence[Word],
    gray: np.ndarray,
    *,
    language: str,
    config: FilterConfig = DEFAULT_FILTER_CONFIG,
    page_height: float | None = None,
) -> tuple[list[Word], list[DroppedWord]]:
    tile_mask = build_image_tile_mask(gray, words, config=config)
    if not tile_mask.mask.any():
        return list(words), []
    height = _page_height(words, gray, page_height)
    protected = _protected_words(words, language=language, config=config)
    survivors: list[Word] = []
    dropped: list[DroppedWord] = []
    for word in words:
        fraction = tile_mask.masked_fraction(word.bbox)
        large_and_confident = (
            word.bbox.height >= height * config.tile_keep_height_ratio
            and word.confidence >= config.tile_keep_conf
        )
        if fraction < config.tile_inside_ratio or large_and_confident or word in protected:
            survivors.append(word)
            continue
        dropped.append(
            DroppedWord(
                word=word,
                filter=IMAGE_TILE,
                reason=f"{fraction:.0%} inside photo tiles at {word.confidence:.0f}% confidence",
            )
        )
    return survivors, dropped


def background_variance(
    gray: np.ndarray,
    box: BBox,
    *,
    pad_ratio: float = 0.6,
    inner_ratio: float = 0.15,
) -> float | None:
    """Variance of a 5x5 sample grid in the ring around `box`.

    The ring is the box padded by `pad_ratio` of its height, minus the box
    padded by `inner_ratio`, so the glyphs themselves do not count. Returns
    None when fewer than four samples land inside the image.
    """
    height, width = gray.shape
    pad = max(2.0, box.height * pad_ratio)
    inner_pad = max(1.0, box.height * inner_ratio)
    x0, x1 = max(0.0, box.x0 - pad), min(width - 1.0, box.x1 + pad)
    y0, y1 = max(0.0, box.y0 - pad), min(height - 1.0, box.y1 + pad)
    if x1 <= x0 or y1 <= y0:
        return None
    samples: list[float] = []
    for y in np.linspace(y0, y1, 5):
        for x in np.linspace(x0, x1, 5):
            inside = (
                box.x0 - inner_pad <= x <= box.x1 + inner_pad
                and box.y0 - inner_pad <= y <= box.y1 + inner_pad
            )
            if inside:
                continue
            samples.append(float(gray[int(y), int(x)]))
    if len(samples) < 4:
        return None
    return float(np.var(samples))


def filter_background_variance(
    words: Sequence[Word],
    gray: np.ndarray,
    *,
    language: str,
    config: FilterConfig = DEFAULT_FILTER_CONFIG,
    page_height: float | None = None,
) -> tuple[list[Word], list[DroppedWord]]:
    height = _page_height(words, gray, page_height)
    protected = _protected_words(words, language=language, config=config)
    survivors: list[Word] = []
    dropped: list[DroppedWord] = []
    for word in words:
        height_ratio = word.bbox.height / height
        if height_ratio >= config.bg_title_height_ratio or word in protected:
            survivors.append(word)
            continue
        variance = background_variance(gray, word.bbox)
        if variance is None or variance <= config.photo_bg_variance:
            survivors.append(word)
            continue
        if is_non_latin(word.text) and len(alnum_content(word.text)) <= 2:
            keep = word.confidence >= config.bg_min_conf_non_latin_short
        else:
            keep = word.confidence >= config.bg_min_conf and height_ratio >= config.bg_min_height_ratio
        if keep:
            survivors.append(word)
            continue
        dropped.append(
            DroppedWord(
                word=word,
                filter=BACKGROUND_VARIANCE,
                reason=f"background variance {variance:.0f} at {word.confidence:.0f}% confidence",
            )
        )
    return survivors, dropped


def _overlap_ratio(a0: float, a1: float, b0: float, b1: float) -> float:
    shortest = min(a1 - a0, b1 - b0)
    if shortest <= 0:
        return 0.0
    return max(0.0, min(a1, b1) - max(a0, b0)) / shortest


def _gap(a0: float, a1: float, b0: float, b1: float) -> float:
    return max(0.0, max(a0, b0) - min(a1, b1))


def _has_text_neighbour(index: int, words: Sequence[Word], *, max_gap: float, min_overlap: float) -> bool:
    box = words[index].bbox
    for other_index, other in enumerate(words):
        if other_index == index or not alnum_content(other.text):
            continue
        near = other.bbox
        same_row = (
            _overlap_ratio(box.y0, box.y1, near.y0, near.y1) >= min_overlap
            and _gap(box.x0, box.x1, near.x0, near.x1) <= max_gap
        )
        same_column = (
            _overlap_ratio(box.x0, box.x1, near.x0, near.x1) >= min_overlap
            and _gap(box.y0, box.y1, near.y0, near.y1) <= max_gap
        )
        if same_row or same_column:
            return True
    return False


def filter_isolated_cjk_noise(
    words: Sequence[Word],
    *,
    language: str,
    config: FilterConfig = DEFAULT_FILTER_CONFIG,
    page_height: float | None = None,
) -> tuple[list[Word], list[DroppedWord]]:
    """Drop short, unconfident non-Latin tokens with no text next to them.

    Screentone and speech-bubble outlines read as one or two stray CJK
    glyphs. Such a token survives when a word with letters or digits sits in
    the same row or column within `isolated_neighbor_gap_mult` median word
    heights.
    """
    if len(words) <= 2:
        return list(words), []
    protected = _protected_words(words, language=language, config=config)
    max_gap = median(word.bbox.height for word in words) * config.isolated_neighbor_gap_mult
    survivors: list[Word] = []
    dropped: list[DroppedWord] = []
    for index, word in enumerate(words):
        core = alnum_content(word.text)
        if word in protected:
            survivors.append(word)
            continue
        if not core:
            dropped.append(DroppedWord(word=word, filter=ISOLATED_CJK, reason="no letters or digits"))
            continue
        strict_conf = config.isolated_single_char_conf if len(core) == 1 else config.isolated_cjk_min_conf
        if (
            not is_non_latin(word.text)
            or len(core) > config.isolated_cjk_max_len
            or word.confidence >= strict_conf
            or _has_text_neighbour(index, words, max_gap=max_gap, min_overlap=config.isolated_neighbor_overlap)
        ):
            survivors.append(word)
            continue
        dropped.append(
            DroppedWord(
                word=word,
                filter=ISOLATED_CJK,
                reason=f"isolated {len(core)}-character token at {word.confidence:.0f}% confidence",
            )
        )
    return survivors, dropped


def _korean_jamo_reason(word: Word, config: FilterConfig) -> str | None:
    core = alnum_content(word.text)
    if not core:
        return "no letters or digits"
    confidence = word.confidence
    has_syllable = KOREAN_SYLLABLE_RE.search(core) is not None
    jamo = KOREAN_JAMO_RE.findall(core)
    if not has_syllable:
        if any(ch.isdigit() for ch in core) and confidence < config.kor_nonsyllable_digit_conf:
            return f"digits without Hangul at {confidence:.0f}% confidence"
        if (
            any(ch.isascii() and ch.isalpha() for ch in core)
            and len(core) <= config.kor_nonsyllable_short_max_len
            and confidence < config.kor_nonsyllable_ascii_short_conf
        ):
            return f"short Latin fragment at {confidence:.0f}% confidence"
    if not jamo:
        return None
    # Repeated jamo such as laughter is real text when read confidently.
    if len(core) >= 2 and len(jamo) == len(core) and len(set(jamo)) == 1:
        if confidence >= config.kor_repeated_jamo_conf:
            return None
    if not has_syllable:
        if confidence < config.kor_jamo_strict_conf:
            return f"bare jamo at {confidence:.0f}% confidence"
        return None
    at_edge = KOREAN_JAMO_RE.match(core[0]) is not None or KOREAN_JAMO_RE.match(core[-1]) is not None
    if at_edge and len(core) <= 4 and confidence < config.kor_jamo_mixed_strict_conf:
        return f"stray jamo beside syllables at {confidence:.0f}% confidence"
    return None


def filter_korean_jamo_noise(
    words: Sequence[Word],
    *,
    language: str,
    config: FilterConfig = DEFAULT_FILTER_CONFIG,
    page_height: float | None = None,
) -> tuple[list[Word], list[DroppedWord]]:
    """Drop tokens made of loose Hangul jamo, plus short digit and Latin ghosts."""
    protected = _protected_words(words, language=language, config=config)
    survivors: list[Word] = []
    dropped: list[DroppedWord] = []
    for word in words:
        reason = None if word in protected else _korean_jamo_reason(word, config)
        if reason is None:
            survivors.append(word)
        else:
            dropped.append(DroppedWord(word=word, filter=KOREAN_JAMO, reason=reason))
    return survivors, dropped


@dataclass(frozen=True)
class _LineShape:
    line: Line
    chars: int
    syllables: int
    jamo: int
    repeated_jamo_only: bool


def _line_shape(line: Line) -> _LineShape:
    merged = "".join(alnum_content(word.text) for word in line.words)
    jamo = KOREAN_JAMO_RE.findall(merged)
    return _LineShape(
        line=line,
        chars=len(merged),
        syllables=len(CJK_CHAR_RE.findall(merged)),
        jamo=len(jamo),
        repeated_jamo_only=len(jamo) >= 2 and len(jamo) == len(merged) and len(set(jamo)) == 1,
    )


def _weak_line_reason(shape: _LineShape, variance: float, config: FilterConfig) -> str | None:
    confidence = shape.line.confidence
    word_count = len(shape.line.words)
    if (
        shape.syllables == 0
        and 0 < shape.chars <= config.ghost_short_chars
        and confidence < config.ghost_no_syllable_conf
        and not shape.repeated_jamo_only
    ):
        return f"short line without CJK characters at {confidence:.0f}% confidence"
    if variance < config.weak_line_min_variance:
        return None
    if word_count == 1 and shape.chars <= 2 and confidence < config.weak_line_single_conf:
        return f"single weak token over textured background at {confidence:.0f}% confidence"
    if (
        word_count <= config.weak_line_max_words
        and shape.chars <= config.weak_line_max_chars
        and confidence < config.weak_line_conf
    ):
        return f"short weak line over textured background at {confidence:.0f}% confidence"
    if (
        shape.syllables > 0
        and shape.jamo / (shape.syllables + shape.jamo) >= config.ghost_jamo_ratio
        and confidence < config.ghost_line_conf
    ):
        return f"jamo-heavy line at {confidence:.0f}% confidence"
    return None


def filter_weak_cjk_lines(
    words: Sequence[Word],
    gray: np.ndarray | None = None,
    *,
    language: str,
    config: FilterConfig = DEFAULT_FILTER_CONFIG,
    page_height: float | None = None,
) -> tuple[list[Word], list[DroppedWord]]:
    """Drop whole short CJK lines that look like ghosts and stand alone.

    A line is weak when it is short and unconfident (judged against the
    texture of the background ring around it) or has no CJK characters at
    all. A weak line is still kept when a strong line sits directly above or
    below it with enough horizontal overlap. Without a grayscale image every
    background counts as textured.
    """
    lines = build_lines(words, language=language, page_height=page_height)
    if not lines:
        return [], []
    shapes = [_line_shape(line) for line in lines]
    max_gap = median(line.bbox.height for line in lines) * config.weak_line_neighbor_gap_mult
    strong = [
        shape.line
        for shape in shapes
        if shape.line.confidence >= config.weak_line_conf or shape.chars > config.weak_line_max_chars
    ]
    survivors: list[Word] = []
    dropped: list[DroppedWord] = []
    for shape in shapes:
        box = shape.line.bbox
        variance = None
        if gray is not None:
            variance = background_variance(gray, box, pad_ratio=0.55, inner_ratio=0.1)
        reason = _weak_line_reason(
            shape,
            config.weak_line_min_variance if variance is None else variance,
            config,
        )
        supported = reason is not None and any(
            other is not shape.line
            and _gap(box.y0, box.y1, other.bbox.y0, other.bbox.y1) <= max_gap
            and _overlap_ratio(box.x0, box.x1, other.bbox.x0, other.bbox.x1) >= config.weak_line_x_overlap
            for other in strong
        )
        if reason is None or supported:
            survivors.extend(shape.line.words)
            continue
        dropped.extend(DroppedWord(word=word, filter=WEAK_CJK_LINE, reason=reason) for word in shape.line.words)
    return survivors, dropped


def run_quality_filters(
    words: Sequence[Word],
    gray: np.ndarray | None = None,
    *,
    language: str,
    config: FilterConfig = DEFAULT_FILTER_CONFIG,
    page_height: float | None = None,
) -> FilterOutcome:
    """Run the quality filters in order until a full pass drops nothing.

    Line noise, image tiles and background variance run for every language;
    the image filters are skipped when no grayscale image is given. CJK
    languages then get the isolated-glyph and weak-line filters, and Korean
    the jamo filter between them. Running the stage again on its own
    survivors is a no-op.

    Args:
        words: Engine words in page coordinates.
        gray: 8-bit grayscale page as a (height, width) array.
        language: Canonical language set.
        config: Filter thresholds.
        page_height: Page height when `gray` is not available.

    Returns:
        Survivors in reading order and every drop with its reason.
    """
    height = _page_height(words, gray, page_height)
    cjk = is_cjk_language(language)
    korean = "kor" in language_codes(language)
    survivors = list(words)
    dropped: list[DroppedWord] = []
    while survivors:
        pass_dropped: list[DroppedWord] = []
        survivors, removed = filter_line_noise(
            survivors, language=language, config=config, page_height=height
        )
        pass_dropped.extend(removed)
        if gray is not None:
            survivors, removed = filter_image_tiles(
                survivors, gray, language=language, config=config, page_height=height
            )
            pass_dropped.extend(removed)
            survivors, removed = filter_background_variance(
                survivors, gray, language=language, config=config, page_height=height
            )
            pass_dropped.extend(removed)
        if cjk:
            survivors, removed = filter_isolated_cjk_noise(
                survivors, language=language, config=config, page_height=height
            )
            pass_dropped.extend(removed)
        if korean:
            survivors, removed = filter_korean_jamo_noise(
                survivors, language=language, config=config, page_height=height
            )
            pass_dropped.extend(removed)
        if cjk:
            survivors, removed = filter_weak_cjk_lines(
                survivors, gray, language=language, config=config, page_height=height
            )
            pass_dropped.extend(removed)
        if not pass_dropped:
            break
        dropped.extend(pass_dropped)
    for item in dropped:
        logger.debug("Dropped %r (%s): %s", item.word.text, item.filter, item.reason)
    if dropped:
        logger.info("Quality filters dropped %d of %d words.", len(dropped), len(words))
    return FilterOutcome(survivors=tuple(survivors), dropped=tuple(dropped))
