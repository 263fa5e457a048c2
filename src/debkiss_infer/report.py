from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
import shlex
import subprocess
import sys
from typing import Sequence

import numpy as np
import pandas as pd


@dataclass(frozen=True)
class ReportPaths:
    """Layout of one inference run: markdown/JSON at the top, arrays below."""

    out_dir: Path

    @property
    def samples_dir(self) -> Path:
        return self.out_dir / "samples"

    @property
    def report_md(self) -> Path:
        return self.out_dir / "report.md"

    @property
    def summary_json(self) -> Path:
        return self.out_dir / "summary.json"

    @property
    def posterior_csv(self) -> Path:
        return self.out_dir / "tables" / "posterior_samples.csv"

    @property
    def trajectories_npz(self) -> Path:
        return self.samples_dir / "trajectories.npz"

    def chain_npz(self, chain: int) -> Path:
        return self.samples_dir / f"chain_{int(chain):02d}.npz"

    def make_dirs(self) -> None:
        for d in (self.out_dir, self.samples_dir, self.posterior_csv.parent):
            d.mkdir(parents=True, exist_ok=True)


def write_markdown_report(*, paths: ReportPaths, markdown: str) -> None:
    paths.out_dir.mkdir(parents=True, exist_ok=True)
    paths.report_md.write_text(markdown, encoding="utf-8")


def _cell(v) -> str:
    if isinstance(v, (float, np.floating)) and np.isfinite(v):
        return f"{float(v):.4g}"
    return str(v)


def format_table(rows: list[list], headers: list[str]) -> str:
    """Markdown table with floats at 4 significant digits."""
    if not headers:
        raise ValueError("headers must be non-empty.")
    cells = [[_cell(v) for v in r] for r in rows]
    if any(len(r) != len(headers) for r in cells):
        raise ValueError("Row length mismatch.")
    widths = [max(len(c) for c in col) for col in zip(headers, *cells)]
    lines = [[h.ljust(w) for h, w in zip(headers, widths)], ["-" * w for w in widths]]
    lines += [[c.ljust(w) for c, w in zip(r, widths)] for r in cells]
    return "\n".join("| " + " | ".join(line) + " |" for line in lines)


def frame_to_table(df: pd.DataFrame, *, index_name: str | None = None) -> str:
    headers = [index_name or (df.index.name or "")] + [str(c) for c in df.columns]
    rows = [[idx, *row] for idx, row in zip(df.index, df.itertuples(index=False, name=None), strict=True)]
    return format_table(rows, headers)


def band_table(times: np.ndarray, band: dict[str, np.ndarray], *, at: Sequence[float]) -> str:
    """Mean and credible band of a trajectory at the grid points nearest ``at``."""
    times = np.asarray(times, dtype=float)
    rows = []
    for t in at:
        i = int(np.argmin(np.abs(times - float(t))))
        rows.append([float(times[i]), float(band["mean"][i]), float(band["lo"][i]), float(band["hi"][i])])
    return format_table(rows, ["time", "mean", "lo", "hi"])


def _git(repo_root: Path, *args: str) -> str | None:
    try:
        out = subprocess.check_output(["git", *args], cwd=str(repo_root), stderr=subprocess.DEVNULL)
    except (OSError, subprocess.CalledProcessError):
        return None
    return out.decode("utf-8").strip()


def run_provenance(*, repo_root: Path, argv: Sequence[str] | None = None) -> dict:
    """Command line, git state and UTC time of a run, for summary.json.

    git fields are None outside a git checkout.
    """
    argv = sys.argv if argv is None else argv
    sha = _git(repo_root, "rev-parse", "HEAD")
    status = _git(repo_root, "status", "--porcelain=v1")
    return {
        "command": " ".join(shlex.quote(str(a)) for a in argv),
        "git_sha": sha or None,
        "git_dirty": None if status is None else bool(status),
        "utc": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "python": sys.version.split()[0],
    }
