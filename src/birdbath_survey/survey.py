"""Load and clean raw birdbath survey exports.

Survey exports arrive as one row per birdbath visit with human-written
headers ("Survey Year", "Urban/Rural", "Superb Fairy-wren", ...). This module
turns them into a typed polars frame with snake_case headers, canonical
metadata column names, integer survey years, zero-filled species counts and
a sequential birdbath id.
"""

import re
from pathlib import Path

import polars as pl

from birdbath_survey.config import (
    BIRDBATH_COLUMN,
    COLUMN_ALIASES,
    METADATA_COLUMNS,
    YEAR_COLUMN,
)
from birdbath_survey.models import SurveyTable

_NON_ALNUM_RE = re.compile(r"[^0-9a-z]+")


def clean_column_name(name: str) -> str:
    """Normalize a header to snake_case.

    "Superb Fairy-wren" -> "superb_fairy_wren", "Urban/Rural" -> "urban_rural",
    "2nd visit" -> "x2nd_visit"
    """
    text = name.strip().lower().replace("&", " and ")
    text = _NON_ALNUM_RE.sub("_", text).strip("_")
    if not text or text[0].isdigit():
        text = f"x{text}"
    return text


def clean_column_names(df: pl.DataFrame) -> pl.DataFrame:
    """Rename every column with clean_column_name, then apply metadata aliases.

    Two headers that clean to the same name would make per-species sums
    ambiguous, so collisions raise instead of being suffixed.
    """
    mapping: dict[str, str] = {}
    seen: dict[str, list[str]] = {}
    for col in df.columns:
        cleaned = clean_column_name(col)
        cleaned = COLUMN_ALIASES.get(cleaned, cleaned)
        mapping[col] = cleaned
        seen.setdefault(cleaned, []).append(col)

    collisions = {k: v for k, v in seen.items() if len(v) > 1}
    if collisions:
        detail = "; ".join(f"{k} <- {v}" for k, v in sorted(collisions.items()))
        msg = f"Column names collide after cleaning: {detail}"
        raise ValueError(msg)

    return df.rename(mapping)


def _is_count_column(s: pl.Series) -> bool:
    # All-blank columns read as String or Null: a species nobody recorded
    if s.len() and s.null_count() == s.len():
        return True
    return s.dtype.is_numeric() or s.dtype == pl.Boolean


def normalize_metadata(
    df: pl.DataFrame,
    drop: tuple[str, ...] | list[str] = (),
) -> SurveyTable:
    """Type the metadata columns and split species from everything else.

    Expects already-cleaned headers. `drop` names extra columns (cleaned
    names) that are neither metadata nor species, e.g. a numeric postcode.
    """
    if YEAR_COLUMN not in df.columns:
        msg = f"Survey table has no '{YEAR_COLUMN}' column (columns: {df.columns})"
        raise ValueError(msg)

    drop_set = {clean_column_name(c) for c in drop}
    unknown = sorted(drop_set - set(df.columns))
    if unknown:
        msg = f"Cannot drop columns not in the survey table: {unknown}"
        raise ValueError(msg)

    df = df.with_columns(pl.col(YEAR_COLUMN).cast(pl.Int64, strict=False))

    if BIRDBATH_COLUMN not in df.columns:
        df = df.with_row_index(BIRDBATH_COLUMN, offset=1).with_columns(
            pl.col(BIRDBATH_COLUMN).cast(pl.Int64)
        )

    metadata = [c for c in METADATA_COLUMNS if c in df.columns]
    species: list[str] = []
    dropped = list(drop_set)
    for name in df.columns:
        if name in metadata or name in drop_set:
            continue
        if _is_count_column(df[name]):
            species.append(name)
        else:
            dropped.append(name)

    dropped = sorted(dropped)
    if dropped:
        print(f"  Excluded non-species columns: {', '.join(dropped)}")

    df = df.with_columns(
        pl.col(c).cast(pl.Float64).fill_null(0.0) for c in species
    ).select([*metadata, *species])

    return SurveyTable(
        frame=df,
        species_columns=species,
        metadata_columns=metadata,
        dropped_columns=dropped,
    )


def read_survey_file(path: Path) -> pl.DataFrame:
    """Read a raw survey export (.csv or .parquet) without any cleaning."""
    suffix = path.suffix.lower()
    if suffix == ".csv":
        return pl.read_csv(path, infer_schema_length=None)
    if suffix == ".parquet":
        return pl.read_parquet(path)
    msg = f"Unsupported survey file type '{suffix}' for {path} (expected .csv or .parquet)"
    raise ValueError(msg)


def load_survey(path: Path, drop: tuple[str, ...] | list[str] = ()) -> SurveyTable:
    """Read, clean and normalize a survey export."""
    path = Path(path)
    raw = read_survey_file(path)
    table = normalize_metadata(clean_column_names(raw), drop=drop)
    table.source = path
    return table
