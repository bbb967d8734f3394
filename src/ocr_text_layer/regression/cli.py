import argparse
import logging
import sys
from collections.abc import Sequence
from pathlib import Path

from ocr_text_layer.regression.scoring import (
    DEFAULT_RISK_THRESHOLD,
    MalformedResultSet,
    compare_result_sets,
    format_report,
    load_result_set,
)

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="ocr-regression-report",
        description="Compare two OCR result sets and flag pages that regressed.",
    )
    ap.add_argument("--base", type=Path, help="Baseline result-set JSON")
    ap.add_argument("--cand", type=Path, help="Candidate result-set JSON")
    ap.add_argument("--out", type=Path, default=None, help="Write the full report as JSON")
    ap.add_argument(
        "--fail-on-risk",
        action="store_true",
        help="Exit with status 2 when any page is risky",
    )
    ap.add_argument(
        "--risk-threshold",
        type=int,
        default=DEFAULT_RISK_THRESHOLD,
        help="Minimum score for a page to count as risky",
    )
    ap.add_argument("--verbose", action="store_true", help="Verbose logging to stderr")
    return ap


def main(argv: Sequence[str] | None = None) -> int:
    """Run the report; 0 on success, 1 on bad input, 2 on risk with `--fail-on-risk`."""
    try:
        args = build_parser().parse_args(argv)
    except SystemExit as exc:
        return 0 if exc.code in (0, None) else 1
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    if args.base is None or args.cand is None:
        print("Both --base and --cand are required.", file=sys.stderr)
        return 1

    try:
        base = load_result_set(args.base)
        candidate = load_result_set(args.cand)
    except MalformedResultSet as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    report = compare_result_sets(base, candidate, risk_threshold=args.risk_threshold)
    print(format_report(report))

    if args.out is not None:
        try:
            args.out.parent.mkdir(parents=True, exist_ok=True)
            args.out.write_text(report.model_dump_json(indent=2), encoding="utf-8")
        except OSError as exc:
            print(f"Error: cannot write {args.out}: {exc}", file=sys.stderr)
            return 1
        logger.info("Wrote report to %s", args.out)

    if args.fail_on_risk and report.risky:
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
