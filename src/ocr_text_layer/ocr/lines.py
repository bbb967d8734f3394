from collections.abc import Iterable, Sequence

from ocr_text_layer.models import BBox, Line, Word
from ocr_text_layer.text import has_cjk, has_thai, is_non_latin, is_punctuation, is_spaceless_language


def median(values: Iterable[float]) -> float:
    ordered = sorted(values)
    if not ordered:
        return 0.0
    middle = len(ordered) // 2
    if len(ordered) % 2:
        return ordered[middle]
    return (ordered[middle - 1] + ordered[middle]) / 2


def intersection_area(a: BBox, b: BBox) -> float:
    width = min(a.x1, b.x1) - max(a.x0, b.x0)
    height = min(a.y1, b.y1) - max(a.y0, b.y0)
    if width <= 0 or height <= 0:
        return 0.0
    return width * height


def iou(a: BBox, b: BBox) -> float:
    inter = intersection_area(a, b)
    if inter <= 0:
        return 0.0
    return inter / max(1.0, a.area + b.area - inter)


def union_bbox(boxes: Sequence[BBox]) -> BBox:
    return BBox(
        x0=min(box.x0 for box in boxes),
        y0=min(box.y0 for box in boxes),
        x1=max(box.x1 for box in boxes),
        y1=max(box.y1 for box in boxes),
    )


def clamp_bbox(box: BBox, width: float, height: float) -> BBox | None:
    clamped = BBox(
        x0=max(0.0, box.x0),
        y0=max(0.0, box.y0),
        x1=min(float(width), box.x1),
        y1=min(float(height), box.y1),
    )
    if clamped.width <= 0 or clamped.height <= 0:
        return None
    return clamped


def expand_bbox(box: BBox, *, pad_x: float, pad_y: float) -> BBox:
    return BBox(x0=box.x0 - pad_x, y0=box.y0 - pad_y, x1=box.x1 + pad_x, y1=box.y1 + pad_y)


def reading_order(words: Iterable[Word]) -> list[Word]:
    return sorted(words, key=lambda word: (word.bbox.y0, word.bbox.x0, word.text))


def join_words_for_language(words: Sequence[Word], language: str) -> str:
    """Join line words into text the way the language is written.

    CJK and Thai tokens are glued together unless the gap between them is
    wider than most of a character; Latin tokens get a space whenever there
    is a visible gap. Punctuation always attaches to the preceding token.
    """
    if not words:
        return ""
    spaceless = is_spaceless_language(language)
    parts = [words[0].text]
    for previous, word in zip(words, words[1:]):
        gap = word.bbox.x0 - previous.bbox.x1
        height = max(previous.bbox.height, word.bbox.height, 1.0)
        if is_punctuation(word.text):
            separator = ""
        elif spaceless and (has_cjk(word.text) or has_thai(word.text)):
            separator = " " if gap > height * 0.9 else ""
        else:
            separator = " " if gap > height * 0.2 else ""
        parts.append(separator + word.text)
    return "".join(parts)


def _group_rows(words: Sequence[Word], *, page_height: float | None) -> list[list[Word]]:
    median_height = median(word.bbox.height for word in words)
    threshold = max(4.0, median_height * 0.6, (page_height or 0) * 0.001)
    rows: list[list[Word]] = []
    row_centers: list[float] = []
    for word in sorted(words, key=lambda item: (item.bbox.center_y, item.bbox.x0)):
        if rows and abs(word.bbox.center_y - row_centers[-1]) <= threshold:
            rows[-1].append(word)
            row_centers[-1] = sum(item.bbox.center_y for item in rows[-1]) / len(rows[-1])
            continue
        rows.append([word])
        row_centers.append(word.bbox.center_y)
    return rows


def _split_wide_gaps(row: list[Word]) -> list[list[Word]]:
    ordered = sorted(row, key=lambda word: word.bbox.x0)
    non_latin = sum(1 for word in ordered if is_non_latin(word.text))
    if len(ordered) < 2 or non_latin * 2 >= len(ordered):
        return [ordered]
    split_gap = max(18.0, median(word.bbox.height for word in ordered) * 2.6)
    segments = [[ordered[0]]]
    for previous, word in zip(ordered, ordered[1:]):
        if word.bbox.x0 - previous.bbox.x1 > split_gap:
            segments.append([word])
        else:
            segments[-1].append(word)
    return segments


def build_lines(
    words: Sequence[Word],
    *,
    language: str,
    page_height: float | None = None,
) -> list[Line]:
    """Derive text lines from words.

    Words are grouped into rows by vertical center, then mostly-Latin rows are
    split where the horizontal gap is far wider than the text height (columns
    or captions that happen to share a baseline).

    Args:
        words: Words in any order.
        language: Canonical language set; controls how line text is joined.
        page_height: Image height, used to widen the row tolerance on large
            pages.

    Returns:
        Lines ordered top to bottom, then left to right.
    """
    if not words:
        return []
    lines: list[Line] = []
    for row in _group_rows(words, page_height=page_height):
        for segment in _split_wide_gaps(row):
            lines.append(Line.from_words(segment, language=language))
    lines.sort(key=lambda line: (line.bbox.y0, line.bbox.x0))
    return lines


def merge_unique_words(
    existing: Sequence[Word],
    incoming: Sequence[Word],
    *,
    iou_threshold: float,
) -> tuple[list[Word], list[Word]]:
    """Add incoming words that do not overlap anything already kept.

    Returns:
        The merged list in reading order and the incoming words that were
        actually added.
    """
    kept = list(existing)
    added: list[Word] = []
    for word in incoming:
        if any(iou(word.bbox, other.bbox) > iou_threshold for other in kept):
            continue
        kept.append(word)
        added.append(word)
    return reading_order(kept), added


def dedupe_by_confidence(words: Sequence[Word], *, iou_threshold: float) -> list[Word]:
    """Greedy suppression keeping the higher-confidence copy of overlapping words."""
    ranked = sorted(
        words,
        key=lambda word: (-word.confidence, word.bbox.y0, word.bbox.x0, word.text),
    )
    kept: list[Word] = []
    for word in ranked:
        if any(iou(word.bbox, other.bbox) > iou_threshold for other in kept):
            continue
        kept.append(word)
    return reading_order(kept)
