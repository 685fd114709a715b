"""
Birdbath Survey — Bird Species Clusters

Groups bird species by how they co-occur across surveyed birdbaths. Each
species becomes a row whose columns are the birdbath visits it was counted
at; k-means partitions those rows, PCA projects them to two dimensions, and
the two most-recorded species of each cluster label it on the map.

Usage:
  uv run python analysis/bird_clusters.py --survey data/birdbath_2021_clean.csv \
      [--k 4] [--k-min 1] [--k-max 30] [--labels 2] [--pca-rank 4] [--seed 42] \
      [--zero-rows ignore|separate] [--dpi 300]

Outputs (in results/<survey>/bird_clusters/<date>/):
  - data/:   Parquet files (WSS curve, cluster labels, PCA coordinates, plot records)
  - plots/:  PNG visualizations (elbow curve, bird cluster map)
  - filtering_manifest.json, run_info.json, run_log.txt
"""

from __future__ import annotations

import argparse
import json
from collections import Counter
from dataclasses import asdict, dataclass
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import polars as pl
from adjustText import adjust_text
from matplotlib.patches import Patch, Polygon
from scipy.spatial import ConvexHull, QhullError
from sklearn.cluster import KMeans
from sklearn.decomposition import PCA
from sklearn.preprocessing import StandardScaler
from tqdm import tqdm

from birdbath_survey.config import YEAR_COLUMN
from birdbath_survey.survey import load_survey

try:
    from analysis.run_context import RunContext
except ModuleNotFoundError:
    from run_context import RunContext

# ── Primer ───────────────────────────────────────────────────────────────────
# Written to results/<survey>/bird_clusters/README.md by RunContext on each run.

BIRD_CLUSTERS_PRIMER = """\
# Bird Species Clusters

## Purpose

Finds groups of bird species that turn up at the same birdbaths. Species that
share visits (same year, season, urban/rural setting, bioregion, birdbath)
end up close together; the map shows which birds form the "regulars" of
particular kinds of birdbath.

## Method

1. **Load the cleaned survey** (one row per birdbath visit, one column per species).
2. **Drop visits with no survey year** (counted in the manifest).
3. **Transpose** to a species × visit matrix; total each species over all visits.
4. **Elbow curve**: within-cluster sum of squares (WSS) for k = 1..30.
5. **K-means** with the analyst-chosen k (default 4), many random restarts.
6. **Label** each cluster with its two most-recorded species.
7. **Standardize + PCA** (4 components); plot Dim1 vs Dim2 with cluster hulls.

## Outputs

All outputs land in `results/<survey>/bird_clusters/<date>/`:

### `data/` — Parquet intermediates

| File | Description |
|------|-------------|
| `wss_curve.parquet` | WSS per candidate k (skipped k values flagged) |
| `species_totals.parquet` | Total count per species over every visit |
| `cluster_labels.parquet` | Species → cluster, total, display label |
| `pca_coordinates.parquet` | Species Dim1-Dim4 scores |
| `explained_variance.parquet` | Eigenvalue and % variance per component |
| `plot_records.parquet` | Exactly what the cluster map draws |

### `plots/` — PNG visualizations

| File | Description |
|------|-------------|
| `elbow.png` | WSS vs k, chosen k marked |
| `bird_clusters.png` | PCA map, colour = cluster, hull per cluster, top species labeled |

## Interpretation Guide

- **Elbow**: pick k where the WSS curve stops dropping steeply. The script
  does not pick k for you; re-run with `--k` after looking at `elbow.png`.
- **Dim1 / Dim2 %**: share of the (standardized) visit variance each axis
  carries. Low percentages mean the 2-D map hides a lot of structure.
- **Hulls** outline cluster membership in the full visit space; overlapping
  hulls on the map are expected, because k-means does not cluster in PCA space.

## Caveats

- K-means restarts are random. Pass `--seed` for a reproducible map.
- Species never recorded after the year filter are all-zero rows and always
  share a cluster; `--zero-rows separate` gives them a cluster of their own.
- Axis signs are arbitrary: a mirrored map is the same result.
"""

# ── Constants ────────────────────────────────────────────────────────────────
# Explicit, named constants.

SPECIES_COL = "species"
K_RANGE = range(1, 31)
DEFAULT_K = 4
LABELS_PER_CLUSTER = 2
PCA_RANK = 4
KMEANS_N_INIT = 25
ZERO_ROW_POLICIES = ("ignore", "separate")
CLUSTER_CMAP = "Set2"
FIG_DPI = 300
POINT_SIZE_MIN = 30
POINT_SIZE_MAX = 300


@dataclass(frozen=True)
class ClusterParams:
    """Parameters recognized by the clustering pipeline."""

    candidate_k_range: range = K_RANGE
    chosen_k: int = DEFAULT_K
    labels_per_cluster: int = LABELS_PER_CLUSTER
    pca_rank: int = PCA_RANK
    random_seed: int | None = None
    zero_row_policy: str = "ignore"
    n_init: int = KMEANS_N_INIT

    def validate(self) -> None:
        if self.chosen_k < 1:
            msg = f"chosen_k must be >= 1, got {self.chosen_k}"
            raise ValueError(msg)
        if self.labels_per_cluster < 0:
            msg = f"labels_per_cluster must be >= 0, got {self.labels_per_cluster}"
            raise ValueError(msg)
        if self.pca_rank < 2:
            msg = f"pca_rank must be >= 2 to draw a 2-D map, got {self.pca_rank}"
            raise ValueError(msg)
        if self.zero_row_policy not in ZERO_ROW_POLICIES:
            msg = f"zero_row_policy must be one of {ZERO_ROW_POLICIES}, got {self.zero_row_policy!r}"
            raise ValueError(msg)
        if self.n_init < 1:
            msg = f"n_init must be >= 1, got {self.n_init}"
            raise ValueError(msg)

    def to_manifest(self) -> dict:
        d = asdict(self)
        d["candidate_k_range"] = [self.candidate_k_range.start, self.candidate_k_range.stop - 1]
        return d


# ── Helpers ──────────────────────────────────────────────────────────────────


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Birdbath survey bird species clusters")
    parser.add_argument(
        "--survey", type=Path, required=True,
        help="Survey table (.csv or .parquet), one row per birdbath visit",
    )
    parser.add_argument("--name", default=None, help="Survey name for results/ (default: file stem)")
    parser.add_argument(
        "--drop", nargs="*", default=[],
        help="Extra non-species columns to exclude (e.g. postcode)",
    )
    parser.add_argument("--k", type=int, default=DEFAULT_K, help="Number of clusters (chosen from elbow.png)")
    parser.add_argument("--k-min", type=int, default=K_RANGE.start, help="Smallest k on the elbow curve")
    parser.add_argument("--k-max", type=int, default=K_RANGE.stop - 1, help="Largest k on the elbow curve")
    parser.add_argument(
        "--labels", type=int, default=LABELS_PER_CLUSTER,
        help="Species labeled per cluster (most recorded first)",
    )
    parser.add_argument("--pca-rank", type=int, default=PCA_RANK, help="PCA components to keep")
    parser.add_argument("--seed", type=int, default=None, help="Random seed for k-means restarts")
    parser.add_argument(
        "--zero-rows", choices=ZERO_ROW_POLICIES, default="ignore",
        help="How to cluster species never recorded after the year filter",
    )
    parser.add_argument("--dpi", type=int, default=FIG_DPI, help="Resolution of the exported PNGs")
    parser.add_argument("--results-root", type=Path, default=None, help="Override results/ directory")
    return parser.parse_args(argv)


def print_header(title: str) -> None:
    width = 80
    print(f"\n{'=' * width}")
    print(f"  {title}")
    print(f"{'=' * width}")


def save_fig(fig: plt.Figure, path: Path, dpi: int = 150) -> None:
    fig.savefig(path, dpi=dpi, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    print(f"  Saved: {path.name}")


# ── Phase 1: Reshape ────────────────────────────────────────────────────────


def observation_ids(visits: pl.DataFrame, metadata_cols: list[str]) -> list[str]:
    """One id per visit: metadata values joined with "_", lower snake_case.

    e.g. (2021, "Winter", "Urban", "Sydney Basin", 17) -> "2021_winter_urban_sydney_basin_17"
    """
    if not metadata_cols:
        return [f"visit_{i + 1}" for i in range(visits.height)]
    return (
        visits.select(
            pl.concat_str(
                [pl.col(c).cast(pl.Utf8).fill_null("na") for c in metadata_cols],
                separator="_",
            )
            .str.to_lowercase()
            .str.replace_all(r"[^0-9a-z]+", "_")
            .alias("obs_id")
        )["obs_id"]
        .to_list()
    )


def compute_species_totals(survey: pl.DataFrame, species_cols: list[str]) -> pl.DataFrame:
    """Sum each species over every visit in the full survey (no year filter)."""
    return (
        survey.select(pl.col(species_cols).cast(pl.Float64).fill_null(0.0))
        .sum()
        .transpose(include_header=True, header_name=SPECIES_COL, column_names=["total"])
    )


def build_observation_matrix(
    survey: pl.DataFrame,
    species_cols: list[str],
    metadata_cols: list[str],
) -> tuple[pl.DataFrame, dict]:
    """Transpose the visit × species survey into a species × visit matrix.

    Visits with no survey year are incomplete and dropped first. The result
    has a `species` key column followed by one Float64 column per visit.

    Returns (matrix, manifest_dict).
    """
    if not species_cols:
        msg = f"No species columns left after excluding metadata (columns: {survey.columns})"
        raise ValueError(msg)

    duplicated = sorted({s for s in species_cols if species_cols.count(s) > 1})
    if duplicated:
        msg = f"Species names are not unique: {duplicated}"
        raise ValueError(msg)

    missing = [c for c in species_cols if c not in survey.columns]
    if missing:
        msg = f"Species columns not in survey table: {missing}"
        raise ValueError(msg)

    manifest: dict = {
        "visits_before": survey.height,
        "n_species": len(species_cols),
    }

    if YEAR_COLUMN in survey.columns:
        missing_year = survey[YEAR_COLUMN].null_count()
        visits = survey.filter(pl.col(YEAR_COLUMN).is_not_null())
    else:
        missing_year = 0
        visits = survey
    manifest["visits_dropped_missing_year"] = missing_year
    if missing_year:
        print(f"  Dropped {missing_year} visit(s) with no {YEAR_COLUMN}")

    if visits.height == 0:
        msg = f"Survey table is empty after dropping visits with no {YEAR_COLUMN}"
        raise ValueError(msg)

    counts = visits.select(pl.col(species_cols).cast(pl.Float64))
    negative = [c for c in species_cols if (counts[c] < 0).any()]
    if negative:
        msg = f"Negative counts in species columns: {negative}"
        raise ValueError(msg)

    null_cells = sum(counts[c].null_count() for c in species_cols)
    manifest["null_cells_filled"] = null_cells
    if null_cells:
        print(f"  Filled {null_cells} missing count(s) with 0")
    counts = counts.fill_null(0.0)

    obs_ids = observation_ids(visits, [c for c in metadata_cols if c in visits.columns])
    dup_ids = sorted(o for o, n in Counter(obs_ids).items() if n > 1)
    if dup_ids:
        msg = f"Observation ids are not unique (add a birdbath_id column?): {dup_ids[:10]}"
        raise ValueError(msg)

    matrix = counts.transpose(include_header=True, header_name=SPECIES_COL, column_names=obs_ids)
    manifest["visits_after"] = len(obs_ids)
    return matrix, manifest


def reshape_survey(
    survey: pl.DataFrame,
    species_cols: list[str],
    metadata_cols: list[str],
) -> tuple[pl.DataFrame, pl.DataFrame, dict]:
    """Build the observation matrix and species totals. Returns (matrix, totals, manifest)."""
    print_header("RESHAPE")
    matrix, manifest = build_observation_matrix(survey, species_cols, metadata_cols)
    totals = compute_species_totals(survey, species_cols)
    print(f"  Matrix: {matrix.height} species x {manifest['visits_after']} visits")
    zero_rows = int((~matrix_values(matrix).any(axis=1)).sum())
    manifest["species_all_zero"] = zero_rows
    if zero_rows:
        print(f"  Species with no records after year filter: {zero_rows}")
    return matrix, totals, manifest


def matrix_values(matrix: pl.DataFrame) -> np.ndarray:
    """Numeric part of the observation matrix as a (species, visits) array."""
    return matrix.drop(SPECIES_COL).to_numpy().astype(np.float64)


# ── Phase 2: Elbow Curve ────────────────────────────────────────────────────


def total_sum_of_squares(X: np.ndarray) -> float:
    """WSS for a single cluster: (n - 1) * sum of column variances."""
    if X.shape[0] < 2:
        return 0.0
    return float((X.shape[0] - 1) * X.var(axis=0, ddof=1).sum())


def _warm_start_kmeans(X: np.ndarray, prev_centers: np.ndarray) -> tuple[float, np.ndarray]:
    """K-means seeded with the k-1 solution plus the point farthest from it.

    Lloyd iterations never increase WSS, and the added centroid removes that
    point's distance, so the result never exceeds the k-1 WSS.
    """
    dist = np.min([((X - c) ** 2).sum(axis=1) for c in prev_centers], axis=0)
    far = int(np.argmax(dist))
    init = np.vstack([prev_centers, X[far]])
    if dist[far] == 0:
        return 0.0, init
    km = KMeans(n_clusters=init.shape[0], init=init, n_init=1).fit(X)
    return float(km.inertia_), km.cluster_centers_


def compute_wss_curve(
    X: np.ndarray,
    k_range: range,
    seed: int | None = None,
    n_init: int = KMEANS_N_INIT,
) -> pl.DataFrame:
    """Within-cluster sum of squares for each candidate k.

    k values below 1 or above the number of species rows cannot be fitted;
    they are flagged as skipped instead of aborting the curve.

    Returns a DataFrame with columns k, wss, skipped, reason.
    """
    n_rows = X.shape[0]
    rows: list[dict] = []
    prev_k: int | None = None
    prev_centers: np.ndarray | None = None

    for k in tqdm(list(k_range), desc="WSS curve", leave=False):
        if k < 1 or k > n_rows:
            reason = "k < 1" if k < 1 else f"k > {n_rows} species rows"
            rows.append({"k": k, "wss": None, "skipped": True, "reason": reason})
            continue

        if k == 1:
            wss = total_sum_of_squares(X)
            centers = X.mean(axis=0, keepdims=True)
        else:
            km = KMeans(n_clusters=k, n_init=n_init, random_state=seed).fit(X)
            wss, centers = float(km.inertia_), km.cluster_centers_
            if prev_k == k - 1 and prev_centers is not None:
                warm_wss, warm_centers = _warm_start_kmeans(X, prev_centers)
                if warm_wss < wss:
                    wss, centers = warm_wss, warm_centers

        rows.append({"k": k, "wss": wss, "skipped": False, "reason": None})
        prev_k, prev_centers = k, centers

    curve = pl.DataFrame(
        rows,
        schema={"k": pl.Int64, "wss": pl.Float64, "skipped": pl.Boolean, "reason": pl.Utf8},
    )

    skipped = curve.filter(pl.col("skipped"))
    if skipped.height:
        ks = skipped["k"].to_list()
        print(f"  WARNING: skipped {len(ks)} k value(s) ({ks[0]}..{ks[-1]}): "
              f"{skipped['reason'][0]}")
    for row in curve.filter(~pl.col("skipped")).iter_rows(named=True):
        print(f"    k={row['k']:>2d}: WSS={row['wss']:.2f}")
    return curve


def plot_elbow(curve: pl.DataFrame, chosen_k: int, out_dir: Path, dpi: int = FIG_DPI) -> None:
    """WSS vs k with the chosen k highlighted."""
    fitted = curve.filter(~pl.col("skipped"))
    ks = fitted["k"].to_list()
    wss = fitted["wss"].to_list()

    fig, ax = plt.subplots(figsize=(10, 5))
    ax.plot(ks, wss, "o-", color="#4C72B0", markersize=5)
    if chosen_k in ks:
        chosen_wss = wss[ks.index(chosen_k)]
        ax.plot(chosen_k, chosen_wss, marker="*", markersize=14, color="#E81B23", zorder=5)
        ax.annotate(
            f"k={chosen_k} chosen",
            (chosen_k, chosen_wss),
            textcoords="offset points",
            xytext=(10, 8),
            fontsize=9,
            color="#E81B23",
            fontweight="bold",
        )

    ax.set_xlabel("Number of Clusters (k)")
    ax.set_ylabel("Within-Cluster Sum of Squares")
    ax.set_title("Elbow Curve — Bird Species K-Means")
    if ks:
        ax.set_xticks(ks)
    ax.tick_params(axis="x", labelsize=8)
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    fig.tight_layout()
    save_fig(fig, out_dir / "elbow.png", dpi=dpi)


# ── Phase 3: K-Means ────────────────────────────────────────────────────────


def run_kmeans(
    X: np.ndarray,
    species: list[str],
    k: int,
    seed: int | None = None,
    n_init: int = KMEANS_N_INIT,
    zero_row_policy: str = "ignore",
) -> tuple[pl.DataFrame, float]:
    """Assign every species row to one of k clusters (ids 1..k).

    With zero_row_policy="separate", species with an all-zero row get cluster
    k to themselves and the remaining rows are clustered into k - 1.

    Returns (assignment DataFrame [species, cluster], inertia).
    """
    n_rows = X.shape[0]
    if k < 1:
        msg = f"Cluster count must be >= 1, got k={k}"
        raise ValueError(msg)
    if k > n_rows:
        msg = f"Cluster count k={k} exceeds the {n_rows} species rows available"
        raise ValueError(msg)
    if zero_row_policy not in ZERO_ROW_POLICIES:
        msg = f"Unknown zero_row_policy {zero_row_policy!r} (expected one of {ZERO_ROW_POLICIES})"
        raise ValueError(msg)

    zero_mask = ~X.any(axis=1)
    if zero_row_policy == "separate" and zero_mask.any() and k > 1:
        nonzero = np.flatnonzero(~zero_mask)
        if len(nonzero) < k - 1:
            msg = (
                f"zero_row_policy='separate' needs at least {k - 1} species with records, "
                f"found {len(nonzero)}"
            )
            raise ValueError(msg)
        labels = np.full(n_rows, k, dtype=np.int64)
        km = KMeans(n_clusters=k - 1, n_init=n_init, random_state=seed).fit(X[nonzero])
        labels[nonzero] = km.labels_ + 1
        inertia = float(km.inertia_)
        print(f"  {int(zero_mask.sum())} all-zero species placed in cluster {k}")
    else:
        km = KMeans(n_clusters=k, n_init=n_init, random_state=seed).fit(X)
        labels = km.labels_.astype(np.int64) + 1
        inertia = float(km.inertia_)

    assignment = pl.DataFrame({SPECIES_COL: species, "cluster": labels})
    sizes = assignment.group_by("cluster").len().sort("cluster")
    print(f"  K-means k={k}: WSS={inertia:.2f}")
    for cid, n in sizes.iter_rows():
        print(f"    Cluster {cid}: {n} species")
    return assignment, inertia


# ── Phase 4: Cluster Labels ─────────────────────────────────────────────────


def label_clusters(
    assignment: pl.DataFrame,
    totals: pl.DataFrame,
    n_labels: int = LABELS_PER_CLUSTER,
) -> pl.DataFrame:
    """Label each cluster with its n_labels most-recorded species.

    Ties in total count keep the original species order. Every species in
    the assignment appears once; unlabeled species get "".

    Returns a DataFrame [species, cluster, total, label] in assignment order.
    """
    if n_labels < 0:
        msg = f"n_labels must be >= 0, got {n_labels}"
        raise ValueError(msg)

    assigned = set(assignment[SPECIES_COL].to_list())
    totaled = set(totals[SPECIES_COL].to_list())
    if assigned != totaled:
        msg = (
            "Cluster assignment and species totals disagree: "
            f"no total for {sorted(assigned - totaled)}, "
            f"no cluster for {sorted(totaled - assigned)}"
        )
        raise ValueError(msg)

    ranked = (
        assignment.with_row_index("_order")
        .join(totals.select(SPECIES_COL, "total"), on=SPECIES_COL, how="left")
        .sort(["cluster", "total", "_order"], descending=[False, True, False])
        .with_columns(pl.int_range(pl.len()).over("cluster").alias("_rank"))
        .with_columns(
            pl.when(pl.col("_rank") < n_labels)
            .then(pl.col(SPECIES_COL))
            .otherwise(pl.lit(""))
            .alias("label")
        )
        .sort("_order")
    )

    labels = ranked.select(SPECIES_COL, "cluster", "total", "label")
    print(f"\n  Cluster labels (top {n_labels} by total count):")
    for cid in sorted(labels["cluster"].unique().to_list()):
        top = labels.filter((pl.col("cluster") == cid) & (pl.col("label") != ""))
        names = ", ".join(f"{s} ({t:.0f})" for s, t in top.select(SPECIES_COL, "total").iter_rows())
        print(f"    Cluster {cid}: {names or '-'}")
    return labels


# ── Phase 5: PCA ────────────────────────────────────────────────────────────


def fit_pca(X: np.ndarray, n_components: int) -> tuple[np.ndarray, PCA, StandardScaler]:
    """Standardize columns and fit PCA. Returns (scores, pca, scaler)."""
    scaler = StandardScaler()
    X_scaled = scaler.fit_transform(X)
    pca = PCA(n_components=n_components)
    scores = pca.fit_transform(X_scaled)
    return scores, pca, scaler


def run_pca(X: np.ndarray, species: list[str], rank: int = PCA_RANK) -> dict:
    """Project species onto `rank` principal components of the standardized matrix.

    When the matrix supports fewer than `rank` components, the remaining
    dimensions are padded with zero scores and zero variance so downstream
    tables always carry Dim1..Dim{rank}.

    Returns dict with keys: coords, variance, pca, scaler, n_components.
    """
    if X.shape[0] < 2:
        msg = f"PCA needs at least 2 species rows, got {X.shape[0]}"
        raise ValueError(msg)
    if not (X.std(axis=0) > 0).any():
        msg = "Every visit column is constant; PCA has no variance to explain"
        raise ValueError(msg)

    n_comp = min(rank, X.shape[0], X.shape[1])
    scores, pca, scaler = fit_pca(X, n_comp)

    padded = np.zeros((X.shape[0], rank))
    padded[:, :n_comp] = scores
    eigenvalues = np.zeros(rank)
    eigenvalues[:n_comp] = pca.explained_variance_
    pct = np.zeros(rank)
    pct[:n_comp] = 100 * pca.explained_variance_ratio_
    if n_comp < rank:
        print(f"  Only {n_comp} component(s) available; Dim{n_comp + 1}..Dim{rank} padded with 0")

    dims = [f"Dim{i + 1}" for i in range(rank)]
    coords = pl.DataFrame({SPECIES_COL: species, **{d: padded[:, i] for i, d in enumerate(dims)}})
    variance = pl.DataFrame({
        "component": dims,
        "eigenvalue": eigenvalues,
        "variance_pct": pct,
        "cumulative_pct": np.cumsum(pct),
    })

    print("\n  Explained variance:")
    for row in variance.iter_rows(named=True):
        print(
            f"    {row['component']}: eigenvalue={row['eigenvalue']:.3f} "
            f"({row['variance_pct']:.1f}%)  cumulative: {row['cumulative_pct']:.1f}%"
        )

    return {
        "coords": coords,
        "variance": variance,
        "pca": pca,
        "scaler": scaler,
        "n_components": n_comp,
    }


# ── Phase 6: Cluster Map ────────────────────────────────────────────────────


def assemble_plot_records(
    coords: pl.DataFrame,
    labels: pl.DataFrame,
) -> tuple[pl.DataFrame, list[str]]:
    """Join PCA coordinates with cluster labels, one record per species.

    Species present on only one side cannot be drawn; they are excluded with
    a warning and returned so the run manifest can list them.

    Returns (records [species, Dim1, Dim2, cluster, total, label], excluded).
    """
    coord_species = set(coords[SPECIES_COL].to_list())
    label_species = set(labels[SPECIES_COL].to_list())
    excluded = sorted(coord_species ^ label_species)
    for s in excluded:
        side = "PCA coordinates" if s not in coord_species else "cluster labels"
        print(f"  WARNING: '{s}' has no {side}; excluded from the cluster map")

    records = (
        labels.with_row_index("_order")
        .join(coords.select(SPECIES_COL, "Dim1", "Dim2"), on=SPECIES_COL, how="inner")
        .sort("_order")
        .select(SPECIES_COL, "Dim1", "Dim2", "cluster", "total", "label")
    )
    return records, excluded


def draw_cluster_hull(ax: plt.Axes, points: np.ndarray, color: tuple) -> str:
    """Outline one cluster: hull polygon, a segment when flat, nothing for one point.

    Returns the shape drawn ("hull", "segment" or "none").
    """
    unique = np.unique(points, axis=0)
    if len(unique) < 2:
        return "none"

    if len(unique) >= 3:
        try:
            hull = ConvexHull(unique)
        except QhullError:
            hull = None  # collinear: fall through to a segment
        if hull is not None:
            ax.add_patch(Polygon(
                unique[hull.vertices], closed=True,
                facecolor=color, alpha=0.15,
                edgecolor=color, linewidth=1.5,
            ))
            return "hull"

    order = np.lexsort((unique[:, 1], unique[:, 0]))
    ends = unique[[order[0], order[-1]]]
    ax.plot(ends[:, 0], ends[:, 1], color=color, linewidth=1.5, alpha=0.8)
    return "segment"


def _point_sizes(totals: np.ndarray) -> np.ndarray:
    top = totals.max() if len(totals) else 0.0
    if top <= 0:
        return np.full(len(totals), float(POINT_SIZE_MIN))
    return POINT_SIZE_MIN + (POINT_SIZE_MAX - POINT_SIZE_MIN) * totals / top


def plot_bird_clusters(records: pl.DataFrame, variance: pl.DataFrame, k: int) -> plt.Figure:
    """Dim1 vs Dim2 scatter: colour = cluster, size = total count, hull per cluster,
    repelled labels for each cluster's top species."""
    pct = dict(zip(variance["component"].to_list(), variance["variance_pct"].to_list()))
    cmap = plt.get_cmap(CLUSTER_CMAP)

    fig, ax = plt.subplots(figsize=(12, 9))
    x_all = records["Dim1"].to_numpy()
    y_all = records["Dim2"].to_numpy()
    sizes = _point_sizes(records["total"].to_numpy())
    cluster_ids = records["cluster"].to_numpy()

    handles = []
    for cid in range(1, k + 1):
        mask = cluster_ids == cid
        if not mask.any():
            continue
        color = cmap((cid - 1) / max(k - 1, 1))
        points = np.column_stack([x_all[mask], y_all[mask]])
        draw_cluster_hull(ax, points, color)
        ax.scatter(
            points[:, 0], points[:, 1],
            s=sizes[mask], c=[color], alpha=0.85,
            edgecolors="black", linewidth=0.5, zorder=3,
        )
        handles.append(Patch(facecolor=color, label=f"Cluster {cid} ({int(mask.sum())})"))

    texts = [
        ax.text(row["Dim1"], row["Dim2"], row["label"].replace("_", " "), fontsize=8, zorder=4)
        for row in records.filter(pl.col("label") != "").iter_rows(named=True)
    ]
    if texts:
        adjust_text(
            texts,
            x=x_all,
            y=y_all,
            ax=ax,
            arrowprops=dict(arrowstyle="-", color="gray", lw=0.6, alpha=0.6),
        )

    ax.axhline(0, color="gray", linestyle="-", alpha=0.2)
    ax.axvline(0, color="gray", linestyle="-", alpha=0.2)
    ax.set_xlabel(f"Dim1 ({pct.get('Dim1', 0.0):.1f}%)")
    ax.set_ylabel(f"Dim2 ({pct.get('Dim2', 0.0):.1f}%)")
    ax.set_title(f"Bird Species Clusters (k={k})")
    ax.legend(handles=handles, loc="best", fontsize=9)
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    fig.tight_layout()
    return fig


# ── Pipeline ────────────────────────────────────────────────────────────────


def run_pipeline(
    survey: pl.DataFrame,
    species_cols: list[str],
    metadata_cols: list[str],
    params: ClusterParams,
) -> dict:
    """Run reshape → elbow → k-means → labels → PCA → plot records. No file I/O.

    Returns dict with keys: matrix, totals, wss_curve, assignment, inertia,
    labels, pca, records, excluded, manifest.
    """
    params.validate()
    matrix, totals, manifest = reshape_survey(survey, species_cols, metadata_cols)
    X = matrix_values(matrix)
    species = matrix[SPECIES_COL].to_list()

    print_header("ELBOW CURVE")
    wss_curve = compute_wss_curve(
        X, params.candidate_k_range, seed=params.random_seed, n_init=params.n_init,
    )

    print_header("K-MEANS")
    assignment, inertia = run_kmeans(
        X, species, params.chosen_k,
        seed=params.random_seed,
        n_init=params.n_init,
        zero_row_policy=params.zero_row_policy,
    )
    labels = label_clusters(assignment, totals, params.labels_per_cluster)

    print_header("PCA")
    pca_result = run_pca(X, species, params.pca_rank)

    print_header("CLUSTER MAP")
    records, excluded = assemble_plot_records(pca_result["coords"], labels)
    print(f"  Plot records: {records.height} species, {len(excluded)} excluded")

    manifest.update({
        "params": params.to_manifest(),
        "k_skipped": wss_curve.filter(pl.col("skipped"))["k"].to_list(),
        "kmeans_wss": inertia,
        "pca_n_components": pca_result["n_components"],
        "variance_pct": pca_result["variance"]["variance_pct"].to_list(),
        "labeled_species": labels.filter(pl.col("label") != "")[SPECIES_COL].to_list(),
        "excluded_species": excluded,
    })

    return {
        "matrix": matrix,
        "totals": totals,
        "wss_curve": wss_curve,
        "assignment": assignment,
        "inertia": inertia,
        "labels": labels,
        "pca": pca_result,
        "records": records,
        "excluded": excluded,
        "manifest": manifest,
    }


def save_filtering_manifest(manifest: dict, out_dir: Path) -> None:
    path = out_dir / "filtering_manifest.json"
    with open(path, "w") as f:
        json.dump(manifest, f, indent=2, default=str)
    print(f"  Saved: {path.name}")


# ── Main ─────────────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    params = ClusterParams(
        candidate_k_range=range(args.k_min, args.k_max + 1),
        chosen_k=args.k,
        labels_per_cluster=args.labels,
        pca_rank=args.pca_rank,
        random_seed=args.seed,
        zero_row_policy=args.zero_rows,
    )
    params.validate()

    with RunContext(
        survey=args.name or args.survey.stem,
        analysis_name="bird_clusters",
        params=vars(args),
        results_root=args.results_root,
        primer=BIRD_CLUSTERS_PRIMER,
    ) as ctx:
        print(f"Birdbath Bird Clusters — {ctx.survey}")
        print(f"Survey:   {args.survey}")
        print(f"Output:   {ctx.run_dir}")
        print(f"k:        {params.chosen_k}  (elbow range {args.k_min}..{args.k_max})")
        print(f"Seed:     {params.random_seed}")

        print_header("LOADING DATA")
        table = load_survey(args.survey, drop=args.drop)
        print(f"  Visits: {table.n_visits}")
        print(f"  Species: {table.n_species}")

        result = run_pipeline(table.frame, table.species_columns, table.metadata_columns, params)

        print_header("SAVING")
        result["wss_curve"].write_parquet(ctx.data_dir / "wss_curve.parquet")
        result["totals"].write_parquet(ctx.data_dir / "species_totals.parquet")
        result["labels"].write_parquet(ctx.data_dir / "cluster_labels.parquet")
        result["pca"]["coords"].write_parquet(ctx.data_dir / "pca_coordinates.parquet")
        result["pca"]["variance"].write_parquet(ctx.data_dir / "explained_variance.parquet")
        result["records"].write_parquet(ctx.data_dir / "plot_records.parquet")
        for name in sorted(p.name for p in ctx.data_dir.glob("*.parquet")):
            print(f"  Saved: {name}")

        plot_elbow(result["wss_curve"], params.chosen_k, ctx.plots_dir, dpi=args.dpi)
        fig = plot_bird_clusters(result["records"], result["pca"]["variance"], params.chosen_k)
        save_fig(fig, ctx.plots_dir / "bird_clusters.png", dpi=args.dpi)

        manifest = {
            "survey_source": str(args.survey),
            "excluded_columns": table.dropped_columns,
            **result["manifest"],
        }
        save_filtering_manifest(manifest, ctx.run_dir)

        print_header("DONE")
        print(f"  All outputs in: {ctx.run_dir}")
        print(f"  Parquet files:  {len(list(ctx.data_dir.glob('*.parquet')))}")
        print(f"  PNG plots:      {len(list(ctx.plots_dir.glob('*.png')))}")


if __name__ == "__main__":
    main()
