import json
from pathlib import Path

import pytest

from ocr_text_layer.regression.scoring import (
    MISSING_PAGE_SCORE,
    TOKEN_SAMPLE_LIMIT,
    MalformedResultSet,
    PageSnapshot,
    compare_result_sets,
    format_report,
    load_result_set,
    normalize_pages,
    page_metrics,
    score_page,
    suspicious_breakdown,
)


def _page(
    tokens: list[str],
    *,
    page_number: int | None = None,
    lines: int = 1,
    dropped: int = 0,
    language: str = "eng",
) -> dict[str, object]:
    size = max(1, -(-len(tokens) // lines))
    page: dict[str, object] = {
        "language": language,
        "words": [{"text": token, "confidence": 90.0} for token in tokens],
        "lines": [{"text": " ".join(tokens[index : index + size])} for index in range(0, len(tokens), size)],
        "debug": {"dropped_words": [{"word": {"text": "x"}}] * dropped},
    }
    if page_number is not None:
        page["page_number"] = page_number
    return page


def _snapshot(tokens: list[str], *, lines: int = 1, dropped: int = 0, language: str = "eng") -> PageSnapshot:
    return PageSnapshot(
        page_number=1,
        language=language,
        tokens=tuple(tokens),
        line_count=lines,
        confidence=90.0,
        dropped_count=dropped,
    )


WORDS = ["alpha", "bravo", "charlie", "delta", "echo", "foxtrot", "golf", "hotel", "india", "juliet"]


def test_normalize_pages_accepts_lists_and_wrappers() -> None:
    listed = normalize_pages([_page(["a"]), _page(["b"], page_number=7)])
    wrapped = normalize_pages({"pages": [_page(["a"])]})
    results = normalize_pages({"results": [_page(["a"])]})

    assert sorted(listed) == [1, 7]
    assert list(wrapped) == [1]
    assert list(results) == [1]


def test_normalize_pages_accepts_keyed_mapping_and_single_page() -> None:
    keyed = normalize_pages({"3": _page(["a"], page_number=9), "meta": {"source": "x"}})
    single = normalize_pages({"pageNumber": 4, "text": "one two\nthree"})

    assert list(keyed) == [3]
    assert list(single) == [4]
    assert single[4].tokens == ("one", "two", "three")
    assert single[4].line_count == 2


def test_snapshot_falls_back_from_words_to_lines() -> None:
    pages = normalize_pages([{"lines": [{"text": "hello world"}, "again"], "confidence": 75}])

    assert pages[1].tokens == ("hello", "world", "again")
    assert pages[1].line_count == 2
    assert pages[1].confidence == 75.0


def test_snapshot_reads_dropped_words_in_either_spelling() -> None:
    pages = normalize_pages([{"text": "a", "debug": {"droppedWords": [{}, {}]}}])

    assert pages[1].dropped_count == 2


def test_suspicious_breakdown_counts_each_pattern() -> None:
    tokens = ["ㅋㅋ", "12", "ab", "한ㅋ", "정상입니다", "1234"]

    korean = suspicious_breakdown(tokens, "kor+eng")
    latin = suspicious_breakdown(tokens, "eng")

    assert (korean.jamo_only, korean.digit_short, korean.ascii_short, korean.edge_jamo) == (1, 1, 1, 1)
    assert korean.total == 4
    assert latin.ascii_short == 0


@pytest.mark.parametrize(
    ("base", "candidate", "expected_score", "reasons"),
    [
        (_snapshot(WORDS), _snapshot(WORDS[:8]), 2, ["coverage_drop"]),
        (_snapshot(WORDS[:5]), _snapshot(WORDS[:4]), 0, []),
        (_snapshot(WORDS, lines=2), _snapshot(WORDS, lines=5), 2, ["line_fragmentation"]),
        (_snapshot(WORDS), _snapshot(WORDS[:8] + ["1", "22"]), 2, ["ghost_spike"]),
        (_snapshot(WORDS[:5]), _snapshot(WORDS[:4], dropped=3), 1, ["filter_over_drop"]),
        (_snapshot(WORDS), _snapshot(WORDS[:5], dropped=1), 3, ["coverage_drop", "filter_over_drop"]),
    ],
)
def test_score_page_rules(
    base: PageSnapshot,
    candidate: PageSnapshot,
    expected_score: int,
    reasons: list[str],
) -> None:
    score, found = score_page(page_metrics(base), page_metrics(candidate))

    assert found == reasons
    assert score == expected_score


def test_score_page_missing_side() -> None:
    assert score_page(None, page_metrics(_snapshot(WORDS))) == (MISSING_PAGE_SCORE, ["missing_page"])


def test_compare_result_sets_orders_risky_pages() -> None:
    base = normalize_pages(
        [
            _page(WORDS, page_number=1),
            _page(WORDS, page_number=2),
            _page(WORDS, page_number=3),
        ]
    )
    candidate = normalize_pages(
        [
            _page(WORDS, page_number=1),
            _page(WORDS[:5], page_number=2, dropped=2),
            _page(WORDS, page_number=4),
        ]
    )

    report = compare_result_sets(base, candidate)

    assert [page.page_number for page in report.pages] == [1, 2, 3, 4]
    assert [(page.page_number, page.score) for page in report.risky] == [(2, 3), (3, 3), (4, 3)]
    assert report.summary.risky_pages == 3
    assert report.summary.word_delta == -5
    assert report.pages[1].missing_tokens == ["foxtrot", "golf", "hotel", "india", "juliet"]


def test_compare_result_sets_caps_token_samples() -> None:
    base = normalize_pages([_page([f"word{index}" for index in range(20)])])
    candidate = normalize_pages([_page([f"other{index}" for index in range(20)])])

    page = compare_result_sets(base, candidate).pages[0]

    assert len(page.missing_tokens) == TOKEN_SAMPLE_LIMIT
    assert len(page.added_tokens) == TOKEN_SAMPLE_LIMIT


def test_format_report_lists_risky_pages() -> None:
    base = normalize_pages([_page(WORDS, page_number=1)])
    candidate = normalize_pages([_page(WORDS[:5], page_number=1)])

    text = format_report(compare_result_sets(base, candidate))

    assert "risky pages:      1" in text
    assert "page 1: score 2 [coverage_drop]" in text
    assert "missing: foxtrot golf hotel india juliet" in text


def test_load_result_set_reads_json(tmp_path: Path) -> None:
    path = tmp_path / "base.json"
    path.write_text(json.dumps({"pages": [_page(WORDS)]}), encoding="utf-8")

    pages = load_result_set(path)

    assert pages[1].tokens == tuple(WORDS)


def test_load_result_set_rejects_malformed_files(tmp_path: Path) -> None:
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    pageless = tmp_path / "pageless.json"
    pageless.write_text(json.dumps({"meta": 1}), encoding="utf-8")

    with pytest.raises(MalformedResultSet):
        load_result_set(broken)
    with pytest.raises(MalformedResultSet):
        load_result_set(pageless)
    with pytest.raises(MalformedResultSet):
        load_result_set(tmp_path / "missing.json")


def _tokens(count: int) -> list[str]:
    return [f"word{index}" for index in range(count)]


def test_score_page_flags_coverage_drop_at_84_of_100_words() -> None:
    base = _snapshot(_tokens(100), lines=10)
    candidate = _snapshot(_tokens(84), lines=10)

    score, reasons = score_page(page_metrics(base), page_metrics(candidate))

    assert "coverage_drop" in reasons
    assert score >= 2


def test_score_page_flags_line_fragmentation_from_5_to_9_lines() -> None:
    base = _snapshot(_tokens(50), lines=5)
    candidate = _snapshot(_tokens(50), lines=9)

    _, reasons = score_page(page_metrics(base), page_metrics(candidate))

    assert reasons == ["line_fragmentation"]


def test_coverage_drop_never_weakens_as_candidate_shrinks() -> None:
    base = page_metrics(_snapshot(_tokens(40)))
    fired = [
        "coverage_drop" in score_page(base, page_metrics(_snapshot(_tokens(count))))[1]
        for count in range(40, -1, -1)
    ]

    assert fired == sorted(fired)


def test_candidate_only_page_is_reported_missing() -> None:
    base = normalize_pages([_page(WORDS, page_number=1)])
    candidate = normalize_pages([_page(WORDS, page_number=1), _page(WORDS, page_number=4)])

    report = compare_result_sets(base, candidate)

    page = report.pages[-1]
    assert (page.page_number, page.score, page.reasons) == (4, 3, ["missing_page"])
    assert page.base is None
    assert page.added_tokens == sorted(WORDS)[:TOKEN_SAMPLE_LIMIT]


@pytest.mark.parametrize("payload", [[], {}, {"pages": []}, {"results": []}])
def test_load_result_set_accepts_empty_sets(tmp_path: Path, payload: object) -> None:
    path = tmp_path / "empty.json"
    path.write_text(json.dumps(payload), encoding="utf-8")

    assert load_result_set(path) == {}


def test_load_result_set_rejects_list_without_pages(tmp_path: Path) -> None:
    path = tmp_path / "junk.json"
    path.write_text(json.dumps({"pages": [{"meta": 1}]}), encoding="utf-8")

    with pytest.raises(MalformedResultSet):
        load_result_set(path)


def test_summary_totals_skip_pages_missing_from_either_side() -> None:
    base = normalize_pages([_page(WORDS, page_number=1), _page(["ㅋㅋ", "12"], page_number=2)])
    candidate = normalize_pages([_page(WORDS[:6], page_number=1), _page(WORDS, page_number=3)])

    summary = compare_result_sets(base, candidate).summary

    assert (summary.base_words, summary.candidate_words, summary.word_delta) == (10, 6, -4)
    assert (summary.base_suspicious, summary.candidate_suspicious) == (0, 0)
    assert summary.compared_pages == 3
