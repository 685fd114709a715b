"""Data classes for survey tables."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import polars as pl


@dataclass
class SurveyTable:
    """A cleaned survey: one row per birdbath visit, one column per species."""
    frame: pl.DataFrame
    species_columns: list[str]
    metadata_columns: list[str]
    source: Optional[Path] = None
    dropped_columns: list[str] = field(default_factory=list)

    @property
    def n_visits(self) -> int:
        return self.frame.height

    @property
    def n_species(self) -> int:
        return len(self.species_columns)
