import json
import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, computed_field

from ocr_text_layer.text import KOREAN_JAMO_RE, KOREAN_SYLLABLE_RE, normalize_token

logger = logging.getLogger(__name__)

RiskReason = Literal[
    "coverage_drop",
    "line_fragmentation",
    "ghost_spike",
    "filter_over_drop",
    "missing_page",
]

RISK_WEIGHTS: dict[RiskReason, int] = {
    "coverage_drop": 2,
    "line_fragmentation": 2,
    "ghost_spike": 2,
    "filter_over_drop": 1,
}
MISSING_PAGE_SCORE = 3
DEFAULT_RISK_THRESHOLD = 2
TOKEN_SAMPLE_LIMIT = 8

_DIGIT_SHORT_RE = re.compile(r"^[0-9]{1,3}$")
_ASCII_SHORT_RE = re.compile(r"^[A-Za-z]{1,2}$")
_CJK_LIKE_CODES = ("kor", "jpn", "chi", "tha")


class MalformedResultSet(ValueError):
    """A result-set file could not be read or holds no page-like objects."""


@dataclass(frozen=True)
class PageSnapshot:
    """The parts of one serialized page result the scorer looks at."""

    page_number: int
    language: str
    tokens: tuple[str, ...]
    line_count: int
    confidence: float
    dropped_count: int


class SuspiciousBreakdown(BaseModel):
    """Counts of tokens matching each noise pattern."""

    model_config = ConfigDict(frozen=True)

    jamo_only: int = 0
    digit_short: int = 0
    ascii_short: int = 0
    edge_jamo: int = 0

    @computed_field
    @property
    def total(self) -> int:
        return self.jamo_only + self.digit_short + self.ascii_short + self.edge_jamo


class PageMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    word_count: int
    line_count: int
    avg_words_per_line: float
    confidence: float
    suspicious: SuspiciousBreakdown
    suspicious_ratio: float
    dropped_count: int


class PageReport(BaseModel):
    """Risk verdict for one page with token samples for manual triage."""

    model_config = ConfigDict(frozen=True)

    page_number: int
    score: int
    reasons: list[RiskReason]
    base: PageMetrics | None
    candidate: PageMetrics | None
    missing_tokens: list[str]
    added_tokens: list[str]


class ReportSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    compared_pages: int
    base_words: int
    candidate_words: int
    word_delta: int
    base_suspicious: int
    candidate_suspicious: int
    suspicious_delta: int
    risky_pages: int
    risk_threshold: int


class RegressionReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    summary: ReportSummary
    pages: list[PageReport]
    risky: list[PageReport]


def _is_page_like(value: object) -> bool:
    return isinstance(value, Mapping) and any(key in value for key in ("words", "lines", "text"))


def _page_number(value: Mapping[str, object], fallback: int) -> int:
    for key in ("page_number", "pageNumber"):
        number = value.get(key)
        if isinstance(number, int) and not isinstance(number, bool):
            return number
    return fallback


def _item_text(item: object) -> str:
    if isinstance(item, str):
        return item
    if isinstance(item, Mapping):
        text = item.get("text")
        if isinstance(text, str):
            return text
    return ""


def _split_tokens(text: str) -> list[str]:
    return [token for token in text.split() if token]


def _snapshot(page: Mapping[str, object], page_number: int) -> PageSnapshot:
    words = page.get("words") if isinstance(page.get("words"), list) else []
    lines = page.get("lines") if isinstance(page.get("lines"), list) else []
    text = page.get("text") if isinstance(page.get("text"), str) else ""

    tokens = [token for token in (_item_text(word).strip() for word in words) if token]
    if not tokens:
        tokens = [token for line in lines for token in _split_tokens(_item_text(line))]
    if not tokens:
        tokens = _split_tokens(text)

    if lines:
        line_count = len(lines)
    else:
        line_count = sum(1 for line in text.splitlines() if line.strip())

    confidence = page.get("confidence")
    if not isinstance(confidence, (int, float)) or isinstance(confidence, bool):
        scores = [
            float(word["confidence"])
            for word in words
            if isinstance(word, Mapping) and isinstance(word.get("confidence"), (int, float))
        ]
        confidence = sum(scores) / len(scores) if scores else 0.0

    debug = page.get("debug") if isinstance(page.get("debug"), Mapping) else {}
    dropped = debug.get("dropped_words", debug.get("droppedWords"))
    language = page.get("language")
    return PageSnapshot(
        page_number=page_number,
        language=language if isinstance(language, str) else "",
        tokens=tuple(tokens),
        line_count=line_count,
        confidence=float(confidence),
        dropped_count=len(dropped) if isinstance(dropped, list) else 0,
    )


def normalize_pages(data: object) -> dict[int, PageSnapshot]:
    """Read a serialized result set in any of the accepted shapes.

    Accepts a list of pages, an object wrapping such a list under ``pages``
    or ``results``, a mapping keyed by page number, or a single page. Page
    numbers come from the mapping key, then the page's own number field,
    then list position (1-based).
    """
    if isinstance(data, Mapping):
        for key in ("pages", "results"):
            if isinstance(data.get(key), list):
                return normalize_pages(data[key])
        if _is_page_like(data):
            return {
                _page_number(data, 1): _snapshot(data, _page_number(data, 1)),
            }
        pages: dict[int, PageSnapshot] = {}
        for key, value in data.items():
            if not _is_page_like(value):
                continue
            try:
                number = int(key)
            except (TypeError, ValueError):
                number = _page_number(value, len(pages) + 1)
            pages[number] = _snapshot(value, number)
        return pages
    if isinstance(data, list):
        pages = {}
        for index, value in enumerate(data, start=1):
            if not _is_page_like(value):
                continue
            number = _page_number(value, index)
            pages[number] = _snapshot(value, number)
        return pages
    return {}


def _has_items(data: object) -> bool:
    if isinstance(data, Mapping):
        for key in ("pages", "results"):
            if isinstance(data.get(key), list):
                return bool(data[key])
        return bool(data)
    if isinstance(data, list):
        return bool(data)
    return True


def load_result_set(path: Path | str) -> dict[int, PageSnapshot]:
    """Load a result-set file.

    An empty set (`[]`, `{}` or an empty `pages`/`results` list) loads as
    no pages. A file with entries of which none is page-like is malformed.
    """
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedResultSet(f"Cannot read {path}: {exc}") from exc
    pages = normalize_pages(data)
    if not pages and _has_items(data):
        raise MalformedResultSet(f"{path} contains no page results")
    logger.debug("Loaded %d pages from %s.", len(pages), path)
    return pages


def is_cjk_like(language: str) -> bool:
    lowered = language.lower()
    return any(code in lowered for code in _CJK_LIKE_CODES)


def suspicious_breakdown(tokens: Sequence[str], language: str) -> SuspiciousBreakdown:
    """Count tokens that look like OCR noise rather than real words.

    Patterns: jamo without any full syllable, 1-3 digit numbers, 1-2 letter
    Latin tokens on CJK-like pages, and short syllable tokens with a stray
    jamo at either edge.
    """
    cjk = is_cjk_like(language)
    jamo_only = digit_short = ascii_short = edge_jamo = 0
    for raw in tokens:
        token = raw.strip()
        if not token:
            continue
        has_jamo = KOREAN_JAMO_RE.search(token) is not None
        has_syllable = KOREAN_SYLLABLE_RE.search(token) is not None
        if has_jamo and not has_syllable:
            jamo_only += 1
        if _DIGIT_SHORT_RE.match(token):
            digit_short += 1
        if cjk and _ASCII_SHORT_RE.match(token):
            ascii_short += 1
        if (
            has_syllable
            and len(token) <= 4
            and (KOREAN_JAMO_RE.match(token[0]) or KOREAN_JAMO_RE.match(token[-1]))
        ):
            edge_jamo += 1
    return SuspiciousBreakdown(
        jamo_only=jamo_only,
        digit_short=digit_short,
        ascii_short=ascii_short,
        edge_jamo=edge_jamo,
    )


def page_metrics(page: PageSnapshot) -> PageMetrics:
    word_count = len(page.tokens)
    suspicious = suspicious_breakdown(page.tokens, page.language)
    return PageMetrics(
        word_count=word_count,
        line_count=page.line_count,
        avg_words_per_line=word_count / max(1, page.line_count),
        confidence=page.confidence,
        suspicious=suspicious,
        suspicious_ratio=suspicious.total / max(1, word_count),
        dropped_count=page.dropped_count,
    )


def score_page(base: PageMetrics | None, candidate: PageMetrics | None) -> tuple[int, list[RiskReason]]:
    """Apply the additive risk rules to one page."""
    if base is None or candidate is None:
        return MISSING_PAGE_SCORE, ["missing_page"]
    reasons: list[RiskReason] = []
    if base.word_count >= 6 and candidate.word_count < base.word_count * 0.9:
        reasons.append("coverage_drop")
    if (
        base.line_count > 0
        and candidate.line_count > base.line_count
        and candidate.avg_words_per_line < base.avg_words_per_line * 0.7
    ):
        reasons.append("line_fragmentation")
    if candidate.suspicious_ratio > max(0.15, base.suspicious_ratio + 0.08):
        reasons.append("ghost_spike")
    if candidate.dropped_count > 0 and candidate.word_count < base.word_count:
        reasons.append("filter_over_drop")
    return sum(RISK_WEIGHTS[reason] for reason in reasons), reasons


def _vocabulary(page: PageSnapshot | None) -> set[str]:
    if page is None:
        return set()
    return {token for token in (normalize_token(raw) for raw in page.tokens) if token}


def compare_result_sets(
    base: Mapping[int, PageSnapshot],
    candidate: Mapping[int, PageSnapshot],
    *,
    risk_threshold: int = DEFAULT_RISK_THRESHOLD,
) -> RegressionReport:
    """Score every page present in either set.

    Summary word and suspicious totals cover only pages present in both sets,
    so a missing page shows up as a risky page rather than a word delta.

    Args:
        base: Baseline pages keyed by page number.
        candidate: Candidate pages keyed by page number.
        risk_threshold: Minimum score for a page to count as risky.

    Returns:
        A report with per-page verdicts in page order, and the risky pages
        ordered by descending score then ascending page number.
    """
    pages: list[PageReport] = []
    base_words = candidate_words = base_suspicious = candidate_suspicious = 0
    for page_number in sorted(set(base) | set(candidate)):
        base_page = base.get(page_number)
        candidate_page = candidate.get(page_number)
        base_metrics = page_metrics(base_page) if base_page is not None else None
        candidate_metrics = page_metrics(candidate_page) if candidate_page is not None else None
        if base_metrics is not None and candidate_metrics is not None:
            base_words += base_metrics.word_count
            base_suspicious += base_metrics.suspicious.total
            candidate_words += candidate_metrics.word_count
            candidate_suspicious += candidate_metrics.suspicious.total
        score, reasons = score_page(base_metrics, candidate_metrics)
        base_vocab = _vocabulary(base_page)
        candidate_vocab = _vocabulary(candidate_page)
        pages.append(
            PageReport(
                page_number=page_number,
                score=score,
                reasons=reasons,
                base=base_metrics,
                candidate=candidate_metrics,
                missing_tokens=sorted(base_vocab - candidate_vocab)[:TOKEN_SAMPLE_LIMIT],
                added_tokens=sorted(candidate_vocab - base_vocab)[:TOKEN_SAMPLE_LIMIT],
            )
        )
    risky = sorted(
        (page for page in pages if page.score >= risk_threshold),
        key=lambda page: (-page.score, page.page_number),
    )
    summary = ReportSummary(
        compared_pages=len(pages),
        base_words=base_words,
        candidate_words=candidate_words,
        word_delta=candidate_words - base_words,
        base_suspicious=base_suspicious,
        candidate_suspicious=candidate_suspicious,
        suspicious_delta=candidate_suspicious - base_suspicious,
        risky_pages=len(risky),
        risk_threshold=risk_threshold,
    )
    return RegressionReport(summary=summary, pages=pages, risky=risky)


def format_report(report: RegressionReport, *, limit: int = 20) -> str:
    summary = report.summary
    lines = [
        "OCR regression report",
        f"  compared pages:   {summary.compared_pages}",
        f"  words:            {summary.base_words} -> {summary.candidate_words} ({summary.word_delta:+d})",
        f"  suspicious:       {summary.base_suspicious} -> {summary.candidate_suspicious}"
        f" ({summary.suspicious_delta:+d})",
        f"  risky pages:      {summary.risky_pages} (score >= {summary.risk_threshold})",
    ]
    for page in report.risky[:limit]:
        lines.append(f"  page {page.page_number}: score {page.score} [{', '.join(page.reasons)}]")
        if page.base is not None and page.candidate is not None:
            lines.append(
                f"    words {page.base.word_count} -> {page.candidate.word_count},"
                f" lines {page.base.line_count} -> {page.candidate.line_count},"
                f" suspicious {page.base.suspicious_ratio:.2f} -> {page.candidate.suspicious_ratio:.2f}"
            )
        if page.missing_tokens:
            lines.append(f"    missing: {' '.join(page.missing_tokens)}")
        if page.added_tokens:
            lines.append(f"    added:   {' '.join(page.added_tokens)}")
    if len(report.risky) > limit:
        lines.append(f"  ... {len(report.risky) - limit} more risky pages")
    return "\n".join(lines)
