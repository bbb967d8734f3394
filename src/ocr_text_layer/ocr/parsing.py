import logging
from collections.abc import Iterable, Mapping, Sequence

from ocr_text_layer.models import BBox, Word
from ocr_text_layer.ocr.lines import build_lines
from ocr_text_layer.ocr.types import EngineResult
from ocr_text_layer.text import is_spaceless_language, normalize_text

logger = logging.getLogger(__name__)

_TESSERACT_WORD_LEVEL = 5


def _as_sequence(value: object) -> Sequence[object]:
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        return value
    tolist = getattr(value, "tolist", None)
    if callable(tolist):
        converted = tolist()
        if isinstance(converted, list):
            return converted
    return []


def _select_polys(
    texts: Sequence[object],
    *candidates: Sequence[object],
) -> Sequence[object]:
    for candidate in candidates:
        if len(candidate) == len(texts):
            return candidate
    return []


def _result_to_json(result: object) -> dict[str, object] | None:
    if isinstance(result, dict):
        return result
    json_attr = getattr(result, "json", None)
    if callable(json_attr):
        payload = json_attr()
    else:
        payload = json_attr
    if isinstance(payload, dict):
        # PaddleOCR 3.x nests the prediction under "res".
        inner = payload.get("res")
        if isinstance(inner, dict):
            return inner
        return payload
    return None


def _to_float(value: object) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _polygon_to_bbox(poly: object) -> BBox | None:
    if isinstance(poly, (str, bytes)):
        return None

    tolist = getattr(poly, "tolist", None)
    if callable(tolist):
        poly = tolist()

    if not isinstance(poly, Sequence):
        return None

    if len(poly) == 4 and all(isinstance(point, Sequence) for point in poly):
        xs = [_to_float(point[0]) for point in poly if len(point) >= 2]
        ys = [_to_float(point[1]) for point in poly if len(point) >= 2]
        if len(xs) != 4 or None in xs or None in ys:
            return None
        return BBox(x0=min(xs), y0=min(ys), x1=max(xs), y1=max(ys))

    values = [_to_float(value) for value in poly]
    if None in values:
        return None
    if len(values) == 8:
        xs = values[0::2]
        ys = values[1::2]
        return BBox(x0=min(xs), y0=min(ys), x1=max(xs), y1=max(ys))
    if len(values) == 4:
        x0, y0, x1, y1 = values
        return BBox(x0=min(x0, x1), y0=min(y0, y1), x1=max(x0, x1), y1=max(y0, y1))
    return None


def _clamp_confidence(value: float) -> float:
    return min(100.0, max(0.0, value))


def words_from_tesseract_data(data: Mapping[str, Sequence[object]]) -> list[Word]:
    """Build words from a pytesseract ``image_to_data`` dictionary.

    Only word-level rows with text and a non-negative confidence are kept;
    Tesseract reports -1 for layout rows (blocks, paragraphs, lines).
    """
    texts = data.get("text", [])
    levels = data.get("level", [])
    words: list[Word] = []
    for index, raw_text in enumerate(texts):
        if index < len(levels) and _to_float(levels[index]) != _TESSERACT_WORD_LEVEL:
            continue
        text = normalize_text(str(raw_text or ""))
        if not text:
            continue
        confidence = _to_float(data["conf"][index])
        if confidence is None or confidence < 0:
            continue
        left = _to_float(data["left"][index])
        top = _to_float(data["top"][index])
        width = _to_float(data["width"][index])
        height = _to_float(data["height"][index])
        if None in (left, top, width, height) or width <= 0 or height <= 0:
            continue
        words.append(
            Word(
                text=text,
                bbox=BBox(x0=left, y0=top, x1=left + width, y1=top + height),
                confidence=_clamp_confidence(confidence),
            )
        )
    return words


def _iter_ocr_groups(
    data: object,
) -> Iterable[tuple[Sequence[object], list[float | None], Sequence[object]]]:
    if isinstance(data, dict):
        texts = _as_sequence(data.get("rec_texts"))
        if texts:
            polys = _select_polys(
                texts,
                _as_sequence(data.get("rec_polys")),
                _as_sequence(data.get("rec_boxes")),
                _as_sequence(data.get("dt_polys")),
            )
            scores = _as_sequence(data.get("rec_scores"))
            if len(scores) == len(texts):
                score_list = [_to_float(value) for value in scores]
            else:
                score_list = [None] * len(texts)
            if polys:
                return [(texts, score_list, polys)]
        groups = []
        for value in data.values():
            groups.extend(_iter_ocr_groups(value))
        return groups
    if isinstance(data, list):
        groups = []
        for item in data:
            groups.extend(_iter_ocr_groups(item))
        return groups
    return []


def _split_line_into_words(text: str, bbox: BBox, confidence: float, *, language: str) -> list[Word]:
    tokens = text.split(" ")
    if len(tokens) == 1 or is_spaceless_language(language):
        return [Word(text=text, bbox=bbox, confidence=confidence)]
    # Paddle reports whole lines; spread the line box over tokens by character share.
    total = sum(len(token) for token in tokens) + len(tokens) - 1
    per_char = bbox.width / max(total, 1)
    words: list[Word] = []
    cursor = bbox.x0
    for token in tokens:
        x1 = cursor + len(token) * per_char
        words.append(
            Word(
                text=token,
                bbox=BBox(x0=cursor, y0=bbox.y0, x1=x1, y1=bbox.y1),
                confidence=confidence,
            )
        )
        cursor = x1 + per_char
    return words


def words_from_paddle_results(results: Iterable[object], *, language: str) -> list[Word]:
    """Build words from PaddleOCR ``predict`` results (scores are 0-1)."""
    words: list[Word] = []
    for result in results:
        payload = _result_to_json(result)
        if not payload:
            continue
        for texts, scores, polys in _iter_ocr_groups(payload):
            for text, score, poly in zip(texts, scores, polys, strict=False):
                bbox = _polygon_to_bbox(poly)
                value = normalize_text(str(text))
                if bbox is None or not value:
                    continue
                confidence = _clamp_confidence((score or 0.0) * 100.0)
                words.extend(_split_line_into_words(value, bbox, confidence, language=language))
    return words


def engine_result_from_words(words: Sequence[Word], *, language: str) -> EngineResult:
    lines = build_lines(words, language=language)
    confidence = sum(word.confidence for word in words) / len(words) if words else 0.0
    logger.debug("Engine returned %d words in %d lines.", len(words), len(lines))
    return EngineResult(
        words=tuple(words),
        text="\n".join(line.text for line in lines),
        confidence=confidence,
    )
