"""Command-line interface for the birdbath survey loader."""

import argparse
from pathlib import Path

from birdbath_survey.config import CLEAN_SUFFIX, DATA_DIR
from birdbath_survey.output import print_survey_summary, save_survey
from birdbath_survey.survey import load_survey


def default_output_path(input_path: Path) -> Path:
    """data/<stem>_clean.csv for a given raw export."""
    return Path(DATA_DIR) / f"{input_path.stem}{CLEAN_SUFFIX}"


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="birdbath-survey",
        description="Clean a raw birdbath survey export into a typed survey table.",
    )
    parser.add_argument(
        "input",
        type=Path,
        help="Raw survey export (.csv or .parquet), one row per birdbath visit",
    )
    parser.add_argument(
        "--output",
        "-o",
        type=Path,
        default=None,
        help=f"Output CSV (default: {DATA_DIR}/<input stem>{CLEAN_SUFFIX})",
    )
    parser.add_argument(
        "--drop",
        nargs="*",
        default=[],
        help="Extra non-species columns to exclude (e.g. postcode)",
    )
    parser.add_argument(
        "--summary",
        action="store_true",
        help="Print visits per year and the most recorded species",
    )

    args = parser.parse_args(argv)

    print(f"Loading {args.input}")
    table = load_survey(args.input, drop=args.drop)

    if args.summary:
        print_survey_summary(table)

    out_path = args.output or default_output_path(args.input)
    save_survey(table, out_path)
