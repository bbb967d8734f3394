from ocr_text_layer.regression.scoring import (
    MalformedResultSet,
    PageReport,
    PageSnapshot,
    RegressionReport,
    SuspiciousBreakdown,
    compare_result_sets,
    format_report,
    load_result_set,
    normalize_pages,
    suspicious_breakdown,
)

__all__ = [
    "MalformedResultSet",
    "PageReport",
    "PageSnapshot",
    "RegressionReport",
    "SuspiciousBreakdown",
    "compare_result_sets",
    "format_report",
    "load_result_set",
    "normalize_pages",
    "suspicious_breakdown",
]
