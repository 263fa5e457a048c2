import numpy as np
import pandas as pd
import pytest

from debkiss_infer.mcmc import SampleTrace
from debkiss_infer.report import (
    ReportPaths,
    band_table,
    format_table,
    frame_to_table,
    run_provenance,
    write_markdown_report,
)


def test_format_table_aligns_columns():
    table = format_table([["kappa", 0.891234], ["logJMv", -4.8]], ["parameter", "mean"])
    lines = table.splitlines()
    assert len(lines) == 4
    assert lines[0].startswith("| parameter")
    assert "0.8912" in lines[2]
    assert len({len(line) for line in lines}) == 1
    with pytest.raises(ValueError):
        format_table([["a"]], ["x", "y"])


def test_frame_and_band_tables():
    df = pd.DataFrame({"mean": [0.5], "sd": [0.1]}, index=pd.Index(["kappa"], name="parameter"))
    assert "| parameter" in frame_to_table(df)
    times = np.array([0.0, 1.0, 2.0])
    band = {"mean": np.array([1.0, 2.0, 3.0]), "lo": np.zeros(3), "hi": np.full(3, 4.0)}
    assert len(band_table(times, band, at=[0.0, 2.0]).splitlines()) == 4


def test_report_paths_layout(tmp_path):
    paths = ReportPaths(out_dir=tmp_path / "run")
    assert paths.chain_npz(3).name == "chain_03.npz"
    paths.make_dirs()
    assert paths.samples_dir.is_dir()
    assert paths.posterior_csv.parent.is_dir()
    assert paths.trajectories_npz.parent == paths.samples_dir
    write_markdown_report(paths=paths, markdown="# hi\n")
    assert paths.report_md.read_text(encoding="utf-8") == "# hi\n"


def test_trace_npz_keeps_names(tmp_path):
    trace = SampleTrace(
        names=("kappa", "logJMv"),
        samples=np.zeros((4, 2)),
        log_posterior=np.zeros(4),
        log_likelihood=np.zeros(4),
        n_proposed=np.array([4, 4]),
        n_accepted=np.array([1, 2]),
    )
    path = ReportPaths(out_dir=tmp_path).chain_npz(0)
    trace.save_npz(path)
    with np.load(path) as data:
        assert data["names"].tolist() == ["kappa", "logJMv"]
        assert data["samples"].shape == (4, 2)


def test_provenance_fields(tmp_path):
    prov = run_provenance(repo_root=tmp_path, argv=["run.py", "--out", "a b"])
    assert prov["command"] == "run.py --out 'a b'"
    assert set(prov) == {"command", "git_sha", "git_dirty", "utc", "python"}
    assert prov["utc"].endswith("Z")


def test_provenance_outside_git_checkout(tmp_path):
    prov = run_provenance(repo_root=tmp_path / "missing", argv=["run.py"])
    assert prov["git_sha"] is None
    assert prov["git_dirty"] is None
    assert prov["command"] == "run.py"
