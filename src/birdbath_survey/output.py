"""CSV output for cleaned survey tables."""

from pathlib import Path

from birdbath_survey.config import YEAR_COLUMN
from birdbath_survey.models import SurveyTable


def save_survey(table: SurveyTable, out_path: Path) -> Path:
    """Write the cleaned survey table to CSV, creating parent directories."""
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    table.frame.write_csv(out_path)
    print(f"  {out_path} ({table.n_visits} rows, {table.n_species} species)")
    return out_path


def print_survey_summary(table: SurveyTable) -> None:
    """Print visit counts per survey year and the most-recorded species."""
    print("\n" + "=" * 60)
    print("Survey summary")
    print("=" * 60)
    print(f"  Visits:   {table.n_visits}")
    print(f"  Species:  {table.n_species}")
    print(f"  Metadata: {', '.join(table.metadata_columns)}")

    by_year = table.frame.group_by(YEAR_COLUMN).len().sort(YEAR_COLUMN, nulls_last=True)
    for year, n in by_year.iter_rows():
        label = "missing" if year is None else str(year)
        print(f"    {label:>8s}: {n} visits")

    if table.species_columns:
        totals = table.frame.select(table.species_columns).sum().row(0)
        ranked = sorted(zip(table.species_columns, totals), key=lambda t: t[1], reverse=True)
        print("  Most recorded species:")
        for name, total in ranked[:5]:
            print(f"    {name:30s} {total:8.0f}")
