"""Run directories and console capture for the birdbath analysis scripts.

A run of `bird_clusters.py` on a survey writes everything under

    results/<survey slug>/<analysis>/<YYYY-MM-DD>/
        plots/          PNG figures
        data/           parquet tables
        run_log.txt     everything printed during the run
        run_info.json   parameters, git commit, timings, ok/failed

and keeps `results/<survey slug>/<analysis>/latest` pointing at the last
successful date directory. The analysis primer, when given, is written next
to `latest` as README.md.

    with RunContext(survey=args.survey, analysis_name="bird_clusters",
                    params=vars(args), primer=BIRD_CLUSTERS_PRIMER) as ctx:
        records.write_parquet(ctx.data_dir / "plot_records.parquet")
"""

from __future__ import annotations

import io
import json
import re
import subprocess
import sys
from datetime import datetime, timezone
from pathlib import Path
from types import TracebackType


class _TeeStream:
    """stdout stand-in: echoes to the terminal and keeps a copy for run_log.txt."""

    def __init__(self, original: io.TextIOBase) -> None:
        self._original = original
        self._buffer = io.StringIO()

    def write(self, data: str) -> int:
        self._original.write(data)
        self._buffer.write(data)
        return len(data)

    def flush(self) -> None:
        self._original.flush()

    def getvalue(self) -> str:
        return self._buffer.getvalue()


def normalize_survey_name(survey: str) -> str:
    """Turn a survey label or file stem into a directory-safe slug.

    Examples:
        "Birdbath Survey 2021"      -> "birdbath_survey_2021"
        "birdbath_2021_clean"       -> "birdbath_2021"
        "  Winter/Summer (2022) "   -> "winter_summer_2022"
    """
    slug = re.sub(r"[^0-9a-z]+", "_", survey.strip().lower()).strip("_")
    slug = slug.removesuffix("_clean")
    return slug or "survey"


def _git_commit_hash() -> str:
    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return "unknown"
    return result.stdout.strip() if result.returncode == 0 else "unknown"


class RunContext:
    """Output directories, log capture and run metadata for one analysis run.

    A run that raises still gets run_log.txt and run_info.json (status
    "failed" with the exception), but `latest` is left on the previous
    successful run. The exception is not suppressed.

    Attributes:
        survey: Survey slug (see normalize_survey_name).
        analysis_name: e.g. "bird_clusters".
        params: Recorded verbatim under "params" in run_info.json.
        run_dir, plots_dir, data_dir: This run's output directories.
    """

    def __init__(
        self,
        survey: str,
        analysis_name: str,
        params: dict | None = None,
        results_root: Path | None = None,
        primer: str | None = None,
    ) -> None:
        self.survey = normalize_survey_name(survey)
        self.analysis_name = analysis_name
        self.params = params or {}

        self._run_date = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        self._analysis_dir = (results_root or Path("results")) / self.survey / analysis_name
        self.run_dir = self._analysis_dir / self._run_date
        self.plots_dir = self.run_dir / "plots"
        self.data_dir = self.run_dir / "data"

        self._primer = primer
        self._tee: _TeeStream | None = None
        self._saved_stdout: io.TextIOBase | None = None
        self._started: datetime | None = None
        self._error: str | None = None

    def __enter__(self) -> RunContext:
        self.setup()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if exc_type is not None:
            self._error = f"{exc_type.__name__}: {exc_val}"
        self.finalize()

    def setup(self) -> None:
        for d in (self.plots_dir, self.data_dir):
            d.mkdir(parents=True, exist_ok=True)
        if self._primer:
            (self._analysis_dir / "README.md").write_text(self._primer, encoding="utf-8")

        self._saved_stdout = sys.stdout
        self._tee = _TeeStream(sys.stdout)
        sys.stdout = self._tee  # type: ignore[assignment]
        self._started = datetime.now(timezone.utc)

    def finalize(self) -> None:
        log_text = self._tee.getvalue() if self._tee is not None else ""
        if self._saved_stdout is not None:
            sys.stdout = self._saved_stdout  # type: ignore[assignment]

        (self.run_dir / "run_log.txt").write_text(log_text, encoding="utf-8")
        self._write_run_info()
        if self._error is None:
            self._point_latest_here()

    def _write_run_info(self) -> None:
        run_info = {
            "analysis": self.analysis_name,
            "survey": self.survey,
            "run_date": self._run_date,
            "timestamp_start": self._started.isoformat() if self._started else None,
            "timestamp_end": datetime.now(timezone.utc).isoformat(),
            "status": "failed" if self._error else "ok",
            "error": self._error,
            "git_commit": _git_commit_hash(),
            "python_version": sys.version,
            "params": self.params,
        }
        with open(self.run_dir / "run_info.json", "w") as f:
            json.dump(run_info, f, indent=2, default=str)

    def _point_latest_here(self) -> None:
        latest = self._analysis_dir / "latest"
        if latest.is_symlink() or latest.exists():
            latest.unlink()
        # Relative target: the results tree can be moved as a whole
        latest.symlink_to(self._run_date)
