"""Pytest fixtures for dexanno tests."""

from __future__ import annotations

import subprocess
from pathlib import Path

import numpy as np
import pandas as pd
import pytest


@pytest.fixture(scope="session")
def test_data(tmp_path_factory) -> dict[str, Path]:
    """Generate synthetic inputs and tool outputs once per session."""
    from tests.generate_test_data import generate_all

    d = tmp_path_factory.mktemp("dexanno_test")
    return generate_all(d)


@pytest.fixture
def genome(test_data) -> Path:
    return test_data["genome"]


@pytest.fixture
def featurecounts_table(test_data) -> Path:
    return test_data["featurecounts"]


@pytest.fixture
def sample_sheet(test_data) -> Path:
    return test_data["samples"]


@pytest.fixture
def countset(featurecounts_table, sample_sheet):
    from dexanno.counts import parse_featurecounts, read_sample_sheet

    return parse_featurecounts(featurecounts_table).with_samples(read_sample_sheet(sample_sheet))


@pytest.fixture
def recorded_cmds(monkeypatch):
    """Replace ``run_cmd`` and ``require_tool`` in the tool wrappers with recorders."""
    calls: list[dict] = []

    def fake_run_cmd(cmd, **kwargs):
        calls.append({"cmd": [str(c) for c in cmd], **kwargs})
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    def fake_require_tool(name):
        return f"/usr/bin/{name}"

    for mod in ("counts", "rrna", "trna", "ncrna", "crispr", "rscript"):
        monkeypatch.setattr(f"dexanno.{mod}.run_cmd", fake_run_cmd)
        if mod != "rscript":
            monkeypatch.setattr(f"dexanno.{mod}.require_tool", fake_require_tool)
    return calls


@pytest.fixture
def fake_r(monkeypatch):
    """Stand in for Rscript: write an edgeR-shaped result table for every gene."""
    calls: list[dict] = []

    def fake_run_rscript(method, workdir, args, *, cfg=None):
        workdir = Path(workdir)
        counts = pd.read_csv(workdir / "counts.tsv", sep="\t", index_col=0)
        samples = pd.read_csv(workdir / "samples.tsv", sep="\t", index_col=0)
        calls.append({"method": method, "args": list(args), "samples": samples})
        n = len(counts)
        pd.DataFrame(
            {
                "gene_id": counts.index,
                "logFC": np.linspace(-3, 3, n),
                "logCPM": 5.0,
                "F": 10.0,
                "PValue": np.linspace(1e-6, 1, n),
                "FDR": np.linspace(1e-5, 1, n),
            }
        ).to_csv(workdir / "de_results.tsv", sep="\t", index=False)
        pd.DataFrame({"sample": counts.columns, "norm_factors": 1.0}).to_csv(
            workdir / "norm_factors.tsv", sep="\t", index=False
        )
        return workdir / "de_results.tsv"

    monkeypatch.setattr("dexanno.de.run_rscript", fake_run_rscript)
    return calls
