"""Configuration constants for the birdbath survey loader."""

YEAR_COLUMN = "survey_year"
BIRDBATH_COLUMN = "birdbath_id"

# Order matters: observation ids join these values left to right.
METADATA_COLUMNS = ("survey_year", "season", "urban_rural", "bioregion", "birdbath_id")

# Cleaned header -> canonical metadata name
COLUMN_ALIASES = {
    "year": "survey_year",
    "survey_yr": "survey_year",
    "urban_or_rural": "urban_rural",
    "location_type": "urban_rural",
    "region": "bioregion",
    "bird_bath": "birdbath_id",
    "birdbath": "birdbath_id",
    "bath_id": "birdbath_id",
}

DATA_DIR = "data"
CLEAN_SUFFIX = "_clean.csv"
