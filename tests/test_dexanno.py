"""Tests for dexanno core and expression modules."""

from __future__ import annotations

import gzip
import shutil
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from dexanno.config import DexAnnoConfig, default_threads, find_tools, total_memory_gb


# ──────────────────────────────────────────────────────────────────────
# Config tests
# ──────────────────────────────────────────────────────────────────────


class TestConfig:
    def test_default_config(self):
        cfg = DexAnnoConfig()
        assert cfg.threads >= 1
        assert cfg.max_memory_gb > 0
        assert cfg.de_method == "edger"
        assert cfg.min_count == 10
        assert cfg.metaxa2_cpu == 1
        assert cfg.metaxa2_genes == ("ssu", "lsu")

    def test_ensure_dirs(self, tmp_path):
        cfg = DexAnnoConfig(output_dir=tmp_path / "out")
        cfg.ensure_dirs()
        assert cfg.output_dir.exists()
        assert cfg.temp_dir.exists()
        assert cfg.log_file == tmp_path / "out" / "dexanno.log"

    def test_system_summary(self):
        s = DexAnnoConfig().system_summary
        assert "CPUs=" in s
        assert "RAM=" in s

    def test_de_method_is_normalised(self):
        assert DexAnnoConfig(de_method="DESeq2").de_method == "deseq2"

    def test_unknown_de_method(self):
        with pytest.raises(ValueError, match="Unknown DE method"):
            DexAnnoConfig(de_method="wilcoxon")

    def test_bad_strandedness(self):
        with pytest.raises(ValueError, match="strandedness"):
            DexAnnoConfig(strandedness=3)

    def test_clanin_defaults_next_to_cm(self, tmp_path):
        cfg = DexAnnoConfig(rfam_cm=tmp_path / "rfam" / "Rfam.cm")
        assert cfg.rfam_clanin == tmp_path / "rfam" / "Rfam.clanin"

    def test_find_tools_returns_dict(self):
        tools = find_tools()
        assert isinstance(tools, dict)
        for name in ("featureCounts", "Rscript", "metaxa2", "aragorn", "cmscan", "CRISPRDigger.pl"):
            assert name in tools

    def test_default_threads(self):
        assert default_threads() >= 1

    def test_total_memory(self):
        assert total_memory_gb() > 0


# ──────────────────────────────────────────────────────────────────────
# Utility tests
# ──────────────────────────────────────────────────────────────────────


class TestUtils:
    def test_fmt_elapsed(self):
        from dexanno.utils import fmt_elapsed

        assert fmt_elapsed(65) == "1:05"
        assert fmt_elapsed(3661) == "1:01:01"
        assert fmt_elapsed(5) == "0:05"

    def test_file_size_human(self, tmp_path):
        from dexanno.utils import file_size_human

        f = tmp_path / "test.txt"
        f.write_text("x" * 2048)
        assert file_size_human(f) == "2.0 KB"

    def test_ensure_parent(self, tmp_path):
        from dexanno.utils import ensure_parent

        p = tmp_path / "a" / "b" / "c.txt"
        ensure_parent(p)
        assert p.parent.exists()

    def test_genome_stem(self):
        from dexanno.utils import genome_stem

        assert genome_stem(Path("/x/ecoli.fna.gz")) == "ecoli"
        assert genome_stem(Path("strain.v2.fasta")) == "strain.v2"

    def test_fasta_lengths(self, genome):
        from dexanno.utils import fasta_lengths, genome_size

        assert fasta_lengths(genome) == {"contig_1": 12_000, "contig_2": 6_000}
        assert genome_size(genome) == 18_000

    def test_iter_fasta_gz(self, tmp_path):
        from dexanno.utils import iter_fasta

        p = tmp_path / "x.fa.gz"
        with gzip.open(p, "wt") as fh:
            fh.write(">a desc\nACGT\nAC\n>b\nGG\n")
        assert list(iter_fasta(p)) == [("a", "ACGTAC"), ("b", "GG")]

    def test_iter_fasta_rejects_non_fasta(self, tmp_path):
        from dexanno.utils import iter_fasta

        p = tmp_path / "x.txt"
        p.write_text("ACGT\n")
        with pytest.raises(ValueError, match="FASTA"):
            list(iter_fasta(p))

    def test_duplicate_fasta_ids(self, tmp_path):
        from dexanno.utils import fasta_lengths

        p = tmp_path / "dup.fa"
        p.write_text(">a\nAC\n>a\nGT\n")
        with pytest.raises(ValueError, match="Duplicate"):
            fasta_lengths(p)


# ──────────────────────────────────────────────────────────────────────
# Test data generation tests
# ──────────────────────────────────────────────────────────────────────


class TestTestData:
    def test_generate_all(self, tmp_path):
        from tests.generate_test_data import generate_all

        files = generate_all(tmp_path)
        for path in files.values():
            assert path.exists()
            assert path.stat().st_size > 0
        assert (tmp_path / "featurecounts.txt.summary").exists()


# ──────────────────────────────────────────────────────────────────────
# Count tests
# ──────────────────────────────────────────────────────────────────────


@pytest.fixture
def fc_cmds(monkeypatch):
    """Record featureCounts commands and leave an empty output behind."""
    calls: list[list[str]] = []

    def fake_run_cmd(cmd, **kwargs):
        cmd = [str(c) for c in cmd]
        calls.append(cmd)
        Path(cmd[cmd.index("-o") + 1]).write_text("")

    monkeypatch.setattr("dexanno.counts.run_cmd", fake_run_cmd)
    monkeypatch.setattr("dexanno.counts.require_tool", lambda name: f"/usr/bin/{name}")
    return calls


class TestCounts:
    def test_sample_name_from_path(self):
        from dexanno.counts import sample_name_from_path

        assert sample_name_from_path("/data/S1Aligned.sortedByCoord.out.bam") == "S1"
        assert sample_name_from_path("S2.sorted.bam") == "S2"
        assert sample_name_from_path("plain") == "plain"

    def test_parse_featurecounts(self, featurecounts_table):
        from dexanno.counts import parse_featurecounts

        cs = parse_featurecounts(featurecounts_table)
        assert cs.n_genes == 40
        assert cs.n_samples == 6
        assert list(cs.counts.columns) == ["ctrl_1", "ctrl_2", "ctrl_3", "trt_1", "trt_2", "trt_3"]
        # two-exon gene collapsed to its outer coordinates
        gene5 = cs.genes.loc["gene5"]
        assert gene5["Chr"] == "chr1"
        assert gene5["Start"] == 5000
        assert gene5["End"] == 5700
        assert gene5["Length"] == 501
        assert (cs.counts.loc["gene40"] == 0).all()

    def test_lib_size_from_summary(self, featurecounts_table):
        from dexanno.counts import parse_featurecounts, parse_featurecounts_summary

        cs = parse_featurecounts(featurecounts_table)
        summary = parse_featurecounts_summary(featurecounts_table.with_name("featurecounts.txt.summary"))
        assert (cs.lib_size == summary.loc["Assigned"]).all()
        assert (cs.lib_size < summary.sum(axis=0)).all()

    def test_lib_size_uses_assigned_row(self, featurecounts_table, tmp_path):
        from dexanno.counts import parse_featurecounts

        table = Path(shutil.copy(featurecounts_table, tmp_path / "fc.txt"))
        summary = featurecounts_table.with_name("featurecounts.txt.summary").read_text().splitlines()
        header = summary[0].split("\t")
        assigned = ["Assigned"] + ["5000"] * (len(header) - 1)
        unassigned = ["Unassigned_NoFeatures"] + ["900"] * (len(header) - 1)
        (tmp_path / "fc.txt.summary").write_text(
            "\n".join(["\t".join(header), "\t".join(assigned), "\t".join(unassigned)]) + "\n"
        )
        cs = parse_featurecounts(table)
        assert cs.lib_size.tolist() == [5000] * 6
        assert cs.lib_size.name == "lib_size"

    def test_summary_without_assigned_row(self, featurecounts_table, tmp_path):
        from dexanno.counts import parse_featurecounts

        summary = tmp_path / "odd.summary"
        summary.write_text("Status\tctrl_1\nUnassigned_NoFeatures\t10\n")
        with pytest.raises(ValueError, match="Assigned"):
            parse_featurecounts(featurecounts_table, summary=summary)

    def test_lib_size_defaults_to_column_sums(self, featurecounts_table, tmp_path):
        from dexanno.counts import parse_featurecounts

        table = shutil.copy(featurecounts_table, tmp_path / "fc.txt")
        cs = parse_featurecounts(Path(table))
        assert (cs.lib_size == cs.counts.sum(axis=0)).all()

    def test_not_a_featurecounts_table(self, tmp_path):
        from dexanno.counts import parse_featurecounts

        p = tmp_path / "bad.txt"
        p.write_text("gene\ta\nx\t1\n")
        with pytest.raises(ValueError, match="not a featureCounts table"):
            parse_featurecounts(p)

    def test_assignment_rates(self, featurecounts_table):
        from dexanno.counts import assignment_rates, parse_featurecounts_summary

        rates = assignment_rates(parse_featurecounts_summary(featurecounts_table.with_name("featurecounts.txt.summary")))
        assert ((rates > 0.85) & (rates < 0.95)).all()

    def test_with_samples_reorders(self, featurecounts_table, sample_sheet):
        from dexanno.counts import parse_featurecounts, read_sample_sheet

        meta = read_sample_sheet(sample_sheet)
        assert list(meta.index) != ["ctrl_1", "ctrl_2", "ctrl_3", "trt_1", "trt_2", "trt_3"]
        cs = parse_featurecounts(featurecounts_table).with_samples(meta)
        assert list(cs.samples.index) == list(cs.counts.columns)
        assert cs.samples.loc["ctrl_1", "group"] == "control"
        assert cs.samples.loc["trt_3", "group"] == "treated"
        cs.validate()

    def test_with_samples_id_column(self, countset):
        meta = countset.samples.reset_index().rename(columns={"sample": "library"})
        cs = countset.with_samples(meta, id_col="library")
        assert list(cs.samples.index) == list(cs.counts.columns)

    def test_with_samples_missing(self, countset):
        meta = countset.samples.drop(index="trt_2")
        with pytest.raises(ValueError, match="missing from metadata"):
            countset.with_samples(meta)

    def test_with_samples_extra(self, countset):
        meta = pd.concat([countset.samples, pd.DataFrame({"group": ["control"]}, index=["ghost"])])
        with pytest.raises(ValueError, match="ghost"):
            countset.with_samples(meta)

    def test_validate_detects_misaligned_samples(self, countset):
        from dexanno.counts import CountSet

        bad = CountSet(
            counts=countset.counts,
            genes=countset.genes,
            samples=countset.samples.iloc[::-1],
            lib_size=countset.lib_size,
        )
        with pytest.raises(ValueError, match="not in the same order"):
            bad.validate()

    def test_validate_detects_negative_counts(self, countset):
        from dexanno.counts import CountSet

        counts = countset.counts.copy()
        counts.iloc[0, 0] = -1
        with pytest.raises(ValueError, match="negative"):
            CountSet(counts=counts).validate()

    def test_validate_detects_missing_lib_size(self, countset):
        from dexanno.counts import CountSet

        lib = countset.lib_size.astype(float)
        lib.iloc[2] = np.nan
        with pytest.raises(ValueError, match="no library size"):
            CountSet(counts=countset.counts, lib_size=lib).validate()

    def test_subset(self, countset):
        sub = countset.subset(genes=["gene1", "gene2"], samples=["trt_1", "ctrl_1"])
        assert sub.counts.shape == (2, 2)
        assert list(sub.samples.index) == ["trt_1", "ctrl_1"]
        sub.validate()

    def test_to_dir_from_dir(self, countset, tmp_path):
        from dexanno.counts import CountSet

        paths = countset.to_dir(tmp_path / "cs")
        assert set(paths) == {"counts", "genes", "samples", "lib_size"}
        header = paths["samples"].read_text().splitlines()[0].split("\t")
        assert header == ["sample", "group", "batch"]
        back = CountSet.from_dir(tmp_path / "cs")
        assert list(back.samples.index) == list(countset.samples.index)
        assert (back.lib_size == countset.lib_size).all()

    def test_read_lib_sizes(self, tmp_path):
        from dexanno.counts import read_lib_sizes

        p = tmp_path / "libs.csv"
        p.write_text("sample,reads\nA,1000\nB,2000\n")
        s = read_lib_sizes(p)
        assert s.name == "lib_size"
        assert s["B"] == 2000

    def test_check_r_names(self):
        from dexanno.counts import check_r_names

        assert check_r_names(["control", "treated.24h", "1st", "knock-out"]) == ["1st", "knock-out"]

    def test_run_featurecounts_command(self, fc_cmds, tmp_path):
        from dexanno.counts import run_featurecounts

        cfg = DexAnnoConfig(output_dir=tmp_path, threads=4, paired_end=True, strandedness=2)
        out = run_featurecounts([Path("a.bam"), Path("b.bam")], Path("genes.gtf"), tmp_path / "counts", cfg=cfg)
        assert out == tmp_path / "counts" / "featurecounts.txt"
        cmd = fc_cmds[0]
        assert cmd[0] == "/usr/bin/featureCounts"
        assert cmd[cmd.index("-T") + 1] == "4"
        assert cmd[cmd.index("-s") + 1] == "2"
        assert cmd[cmd.index("-t") + 1] == "exon"
        assert cmd[cmd.index("-g") + 1] == "gene_id"
        assert "--countReadPairs" in cmd
        assert cmd[-2:] == ["a.bam", "b.bam"]

    def test_run_featurecounts_saf(self, fc_cmds, tmp_path):
        from dexanno.counts import run_featurecounts

        cfg = DexAnnoConfig(output_dir=tmp_path, annotation_format="SAF")
        run_featurecounts([Path("a.bam")], Path("genes.saf"), tmp_path, cfg=cfg)
        cmd = fc_cmds[0]
        assert "-t" not in cmd
        assert "-p" not in cmd

    def test_run_featurecounts_skips_existing(self, fc_cmds, tmp_path):
        from dexanno.counts import run_featurecounts

        (tmp_path / "featurecounts.txt").write_text("done\n")
        run_featurecounts([Path("a.bam")], Path("genes.gtf"), tmp_path, cfg=DexAnnoConfig(output_dir=tmp_path))
        assert fc_cmds == []

    def test_run_featurecounts_requires_bams(self, tmp_path):
        from dexanno.counts import run_featurecounts

        with pytest.raises(ValueError, match="No BAM"):
            run_featurecounts([], Path("genes.gtf"), tmp_path)


# ──────────────────────────────────────────────────────────────────────
# Normalisation tests
# ──────────────────────────────────────────────────────────────────────


@pytest.fixture
def small_counts() -> pd.DataFrame:
    return pd.DataFrame({"a": [1, 9], "b": [3, 7]}, index=["g1", "g2"])


class TestNormalize:
    def test_cpm(self, small_counts):
        from dexanno.normalize import cpm

        out = cpm(small_counts)
        assert out.loc["g1", "a"] == pytest.approx(1e5)
        assert out.loc["g2", "b"] == pytest.approx(7e5)
        assert out.sum(axis=0).tolist() == pytest.approx([1e6, 1e6])

    def test_cpm_with_norm_factors(self, small_counts):
        from dexanno.normalize import cpm

        nf = pd.Series({"a": 0.5, "b": 1.0})
        out = cpm(small_counts, norm_factors=nf)
        assert out.loc["g1", "a"] == pytest.approx(2e5)
        assert out.loc["g1", "b"] == pytest.approx(3e5)

    def test_log_cpm_prior(self, small_counts):
        from dexanno.normalize import cpm

        out = cpm(small_counts, log=True)
        # equal libraries: prior 2 per sample, library inflated by 4
        assert out.loc["g1", "a"] == pytest.approx(np.log2(3 / 14 * 1e6))

    def test_log_cpm_of_zero_is_finite(self):
        from dexanno.normalize import cpm

        out = cpm(pd.DataFrame({"a": [0, 10]}, index=["g1", "g2"]), log=True)
        assert np.isfinite(out.values).all()

    def test_lib_size_must_cover_samples(self, small_counts):
        from dexanno.normalize import cpm

        with pytest.raises(ValueError, match="lib_size"):
            cpm(small_counts, lib_size=pd.Series({"a": 10}))

    def test_rpkm(self, small_counts):
        from dexanno.normalize import rpkm

        out = rpkm(small_counts, pd.Series({"g1": 2000, "g2": 500}))
        assert out.loc["g1", "a"] == pytest.approx(5e4)
        assert out.loc["g2", "a"] == pytest.approx(1.8e6)

    def test_tpm(self, small_counts):
        from dexanno.normalize import tpm

        out = tpm(small_counts, pd.Series({"g1": 2000, "g2": 500}))
        assert out.sum(axis=0).tolist() == pytest.approx([1e6, 1e6])
        assert out.loc["g1", "a"] == pytest.approx(0.5 / 18.5 * 1e6)

    def test_missing_gene_length(self, small_counts):
        from dexanno.normalize import tpm

        with pytest.raises(ValueError, match="No gene length"):
            tpm(small_counts, pd.Series({"g1": 1000}))

    def test_filter_low_counts(self, countset):
        from dexanno.normalize import filter_low_counts

        kept = filter_low_counts(countset)
        assert "gene40" not in kept.counts.index
        assert kept.n_genes == 39
        kept.validate()

    @pytest.fixture
    def condition_counts(self):
        from dexanno.counts import CountSet

        counts = pd.DataFrame(
            {"s1": [100, 500], "s2": [100, 0], "s3": [100, 0], "s4": [100, 0]},
            index=["g1", "g2"],
        )
        samples = pd.DataFrame({"condition": ["a", "a", "b", "b"]}, index=counts.columns)
        return CountSet(counts=counts, samples=samples)

    def test_filter_low_counts_uses_config_group_col(self, condition_counts):
        from dexanno.normalize import filter_low_counts

        kept = filter_low_counts(condition_counts, cfg=DexAnnoConfig(group_col="condition"))
        assert kept.counts.index.tolist() == ["g1"]

    def test_filter_low_counts_explicit_group_col(self, condition_counts):
        from dexanno.normalize import filter_low_counts

        assert filter_low_counts(condition_counts, group_col="condition").counts.index.tolist() == ["g1"]
        # default "group" column is absent, so a single sample is enough
        assert filter_low_counts(condition_counts).counts.index.tolist() == ["g1", "g2"]

    def test_filter_low_counts_unknown_group_col(self, condition_counts):
        from dexanno.normalize import filter_low_counts

        with pytest.raises(ValueError, match="batch"):
            filter_low_counts(condition_counts, group_col="batch")

    def test_normalised_tables(self, countset):
        from dexanno.normalize import normalised_tables

        tables = normalised_tables(countset)
        assert set(tables) == {"cpm", "logcpm", "rpkm", "tpm"}
        assert tables["tpm"].sum(axis=0).tolist() == pytest.approx([1e6] * 6)


# ──────────────────────────────────────────────────────────────────────
# R bridge tests
# ──────────────────────────────────────────────────────────────────────


class TestRScript:
    def test_render_edger(self):
        from dexanno.rscript import render_script

        src = render_script("edger")
        for step in ("DGEList", "filterByExpr", "calcNormFactors", "estimateDisp", "glmQLFit", "glmQLFTest"):
            assert step in src
        assert "stopifnot(identical(colnames(counts), rownames(samples)))" in src

    def test_render_deseq2(self):
        from dexanno.rscript import render_script

        src = render_script("DESeq2")
        assert "DESeqDataSetFromMatrix" in src
        assert 'contrast = c("group", treat, ref)' in src

    def test_render_limma(self):
        from dexanno.rscript import render_script

        src = render_script("limma")
        assert "voom(" in src
        assert "eBayes" in src

    def test_render_unknown(self):
        from dexanno.rscript import render_script

        with pytest.raises(ValueError):
            render_script("sleuth")

    def test_run_rscript_without_output(self, recorded_cmds, tmp_path):
        from dexanno.rscript import run_rscript

        with pytest.raises(RuntimeError, match="did not write"):
            run_rscript("edger", tmp_path, ["group", "control", "treated", "10", ""])
        assert (tmp_path / "de_edger.R").exists()
        call = recorded_cmds[0]
        assert call["cmd"][:3] == ["Rscript", "--vanilla", "de_edger.R"]
        assert call["cmd"][3:6] == ["group", "control", "treated"]
        assert call["cwd"] == tmp_path

    def test_check_r_packages(self, monkeypatch):
        import subprocess

        from dexanno import rscript

        monkeypatch.setattr(
            rscript, "run_cmd", lambda cmd, **kw: subprocess.CompletedProcess(cmd, 0, stdout="TRUE\tFALSE", stderr="")
        )
        assert rscript.check_r_packages(["edgeR", "DESeq2"]) == {"edgeR": True, "DESeq2": False}


# ──────────────────────────────────────────────────────────────────────
# Differential expression tests
# ──────────────────────────────────────────────────────────────────────


class TestDE:
    def test_standardise_edger(self):
        from dexanno.de import RESULT_COLUMNS, standardise_results

        raw = pd.DataFrame(
            {
                "gene_id": ["b", "a"],
                "Length": [100, 200],
                "logFC": [1.0, -2.0],
                "logCPM": [5.0, 6.0],
                "F": [3.0, 40.0],
                "PValue": [0.2, 0.001],
                "FDR": [0.2, 0.002],
            }
        )
        out = standardise_results(raw, "edger")
        assert list(out.columns[:6]) == RESULT_COLUMNS
        assert "Length" in out.columns
        assert out["gene_id"].tolist() == ["a", "b"]

    def test_standardise_deseq2_na_padj(self):
        from dexanno.de import standardise_results

        raw = pd.DataFrame(
            {
                "gene_id": ["a", "b"],
                "baseMean": [100.0, 0.5],
                "log2FoldChange": [1.5, 0.1],
                "lfcSE": [0.2, 2.0],
                "stat": [7.5, 0.05],
                "pvalue": [1e-10, np.nan],
                "padj": [1e-8, np.nan],
            }
        )
        out = standardise_results(raw, "deseq2")
        assert out.loc[out["gene_id"] == "b", "fdr"].item() == 1.0
        assert "lfc_se" in out.columns

    def test_standardise_limma(self):
        from dexanno.de import standardise_results

        raw = pd.DataFrame(
            {"gene_id": ["a"], "logFC": [1.0], "AveExpr": [4.0], "t": [5.0], "P.Value": [0.01], "adj.P.Val": [0.02], "B": [1.1]}
        )
        out = standardise_results(raw, "limma")
        assert out.loc[0, "log_odds"] == pytest.approx(1.1)

    def test_standardise_missing_columns(self):
        from dexanno.de import standardise_results

        with pytest.raises(ValueError, match="lacks columns"):
            standardise_results(pd.DataFrame({"gene_id": ["a"], "logFC": [1.0]}), "edger")

    def test_check_design(self, countset):
        from dexanno.de import check_design

        sizes = check_design(countset, "group", "control", "treated")
        assert sizes.to_dict() == {"control": 3, "treated": 3}

    def test_check_design_unknown_level(self, countset):
        from dexanno.de import check_design

        with pytest.raises(ValueError, match="not found"):
            check_design(countset, "group", "control", "knockout")

    def test_check_design_same_level(self, countset):
        from dexanno.de import check_design

        with pytest.raises(ValueError, match="must differ"):
            check_design(countset, "group", "control", "control")

    def test_check_design_unknown_column(self, countset):
        from dexanno.de import check_design

        with pytest.raises(ValueError, match="not in sample metadata"):
            check_design(countset, "condition", "control", "treated")

    def test_run_de(self, countset, fake_r, tmp_path):
        from dexanno.de import run_de

        cfg = DexAnnoConfig(output_dir=tmp_path)
        result = run_de(countset, "control", "treated", tmp_path / "de", covariates=["batch"], cfg=cfg)

        assert fake_r[0]["args"] == ["group", "control", "treated", "10", "batch"]
        # R sees samples in count-column order
        assert list(fake_r[0]["samples"].index) == list(countset.counts.columns)
        assert result.paths["table"] == tmp_path / "de" / "de_edger_treated_vs_control.tsv"
        assert result.paths["table"].exists()
        assert result.n_tested == 40
        assert result.contrast == "treated_vs_control"
        assert result.table.loc[0, "gene_id"] == "gene1"
        assert result.norm_factors.index.tolist() == list(countset.counts.columns)
        assert len(result.significant()) == 2
        assert "2 down" in result.summary()

    def test_run_de_unknown_covariate(self, countset, fake_r, tmp_path):
        from dexanno.de import run_de

        with pytest.raises(ValueError, match="Covariate"):
            run_de(countset, "control", "treated", tmp_path, covariates=["sex"], cfg=DexAnnoConfig(output_dir=tmp_path))

    def test_neg_log10_clips_zero(self):
        from dexanno.de import neg_log10

        out = neg_log10(pd.Series([0.0, 0.01]))
        assert np.isfinite(out).all()
        assert out[1] == pytest.approx(2.0)


def _r_ready(method: str) -> bool:
    if find_tools().get("Rscript") is None:
        return False
    from dexanno.rscript import R_PACKAGES, check_r_packages

    return all(check_r_packages(R_PACKAGES[method]).values())


class TestDEWithR:
    @pytest.mark.parametrize(
        "method",
        [
            pytest.param(m, marks=pytest.mark.skipif(not _r_ready(m), reason=f"R packages for {m} not installed"))
            for m in ("edger", "deseq2", "limma")
        ],
    )
    def test_run_de_end_to_end(self, countset, method, tmp_path):
        from dexanno.de import RESULT_COLUMNS, run_de

        cfg = DexAnnoConfig(output_dir=tmp_path, de_method=method)
        result = run_de(countset, "control", "treated", tmp_path / method, covariates=["batch"], cfg=cfg)

        assert list(result.table.columns[:6]) == RESULT_COLUMNS
        assert result.paths["table"].exists()
        assert (result.paths["inputs"] / f"de_{method}.R").exists()
        assert 0 < result.n_tested < 40
        assert "gene40" not in result.table["gene_id"].tolist()
        assert result.norm_factors.index.tolist() == list(countset.counts.columns)

        table = result.table.set_index("gene_id")
        spiked = [f"gene{i}" for i in range(1, 6)]
        # gene1..gene5 are four-fold higher in the treated samples
        assert (table.loc[spiked, "log_fc"] > 1).all()
        assert set(spiked) <= set(result.significant()["gene_id"])


# ──────────────────────────────────────────────────────────────────────
# Visualisation tests
# ──────────────────────────────────────────────────────────────────────


@pytest.fixture
def de_result():
    from dexanno.de import DEResult

    table = pd.DataFrame(
        {
            "gene_id": [f"g{i}" for i in range(30)],
            "log_fc": np.linspace(-4, 4, 30),
            "mean_expr": np.linspace(1, 10, 30),
            "statistic": 1.0,
            "p_value": np.linspace(1e-8, 0.5, 30),
            "fdr": np.linspace(1e-6, 0.01, 30),
        }
    )
    return DEResult(method="edger", reference="control", treatment="treated", table=table, n_tested=30)


class TestVisualize:
    def test_volcano_labels_top_n(self, de_result, tmp_path, monkeypatch):
        from dexanno import visualize

        figures = []
        monkeypatch.setattr(visualize, "_save", lambda fig, path, **kw: figures.append(fig) or [])
        visualize.plot_volcano(de_result, tmp_path / "v.png", cfg=DexAnnoConfig(output_dir=tmp_path, top_n=4))
        visualize.plot_volcano(de_result, tmp_path / "v.png", label_top=7, cfg=DexAnnoConfig(output_dir=tmp_path))
        assert len(figures[0].axes[0].texts) == 4
        assert len(figures[1].axes[0].texts) == 7

    def test_plot_format_svg(self, de_result, tmp_path):
        from dexanno.visualize import plot_ma

        paths = plot_ma(de_result, tmp_path / "ma.png", cfg=DexAnnoConfig(output_dir=tmp_path, plot_format="svg"))
        assert [p.name for p in paths] == ["ma.svg", "ma.pdf"]
        assert all(p.exists() for p in paths)

    def test_plot_format_pdf_only(self, de_result, tmp_path):
        from dexanno.visualize import plot_volcano

        paths = plot_volcano(de_result, tmp_path / "v.png", cfg=DexAnnoConfig(output_dir=tmp_path, plot_format="pdf"))
        assert [p.name for p in paths] == ["v.pdf"]
        assert not (tmp_path / "v.png").exists()

    def test_unknown_plot_format(self, de_result, tmp_path):
        from dexanno.visualize import plot_ma

        with pytest.raises(ValueError, match="plot format"):
            plot_ma(de_result, tmp_path / "ma.png", cfg=DexAnnoConfig(output_dir=tmp_path, plot_format="tiff"))


# ──────────────────────────────────────────────────────────────────────
# Expression pipeline tests
# ──────────────────────────────────────────────────────────────────────


class TestExpressionPipeline:
    def test_run_expression_from_counts(self, featurecounts_table, sample_sheet, fake_r, tmp_path):
        from dexanno.counts import read_sample_sheet
        from dexanno.pipeline import run_expression

        cfg = DexAnnoConfig(output_dir=tmp_path / "expr")
        result = run_expression(
            read_sample_sheet(sample_sheet),
            "control",
            "treated",
            counts_file=featurecounts_table,
            cfg=cfg,
        )
        assert result.de is not None
        assert (tmp_path / "expr" / "02_countset" / "counts.tsv").exists()
        assert set(result.normalised) == {"cpm", "logcpm", "rpkm", "tpm"}
        assert any(p.name.startswith("volcano_") for p in result.plots)
        assert (tmp_path / "expr" / "04_normalised" / "output_manifest.csv").exists()

    def test_run_expression_needs_input(self, sample_sheet, tmp_path):
        from dexanno.counts import read_sample_sheet
        from dexanno.pipeline import run_expression

        with pytest.raises(ValueError, match="BAM"):
            run_expression(read_sample_sheet(sample_sheet), "control", "treated", cfg=DexAnnoConfig(output_dir=tmp_path))


# ──────────────────────────────────────────────────────────────────────
# CLI tests
# ──────────────────────────────────────────────────────────────────────


class TestCLI:
    def test_cli_help(self):
        from click.testing import CliRunner
        from dexanno.cli import main

        runner = CliRunner()
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "dexanno" in result.output

    def test_cli_version(self):
        from click.testing import CliRunner
        from dexanno import __version__
        from dexanno.cli import main

        runner = CliRunner()
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_cli_check(self):
        from click.testing import CliRunner
        from dexanno.cli import main

        runner = CliRunner()
        result = runner.invoke(main, ["check", "--no-r-packages"])
        assert result.exit_code == 0

    def test_cli_de_help(self):
        from click.testing import CliRunner
        from dexanno.cli import main

        runner = CliRunner()
        result = runner.invoke(main, ["de", "--help"])
        assert result.exit_code == 0
        assert "--reference" in result.output
        assert "--covariate" in result.output

    def test_cli_normalize(self, featurecounts_table, tmp_path):
        from click.testing import CliRunner
        from dexanno.cli import main

        runner = CliRunner()
        result = runner.invoke(main, ["normalize", "--counts", str(featurecounts_table), "--output-dir", str(tmp_path)])
        assert result.exit_code == 0, result.output
        for name in ("cpm", "logcpm", "rpkm", "tpm"):
            assert (tmp_path / f"{name}.tsv").exists()

    def test_cli_de(self, featurecounts_table, sample_sheet, fake_r, tmp_path):
        from click.testing import CliRunner
        from dexanno.cli import main

        runner = CliRunner()
        result = runner.invoke(
            main,
            [
                "de",
                "--counts", str(featurecounts_table),
                "--samples", str(sample_sheet),
                "--reference", "control",
                "--treatment", "treated",
                "--output-dir", str(tmp_path),
            ],
        )
        assert result.exit_code == 0, result.output
        assert (tmp_path / "de_edger_treated_vs_control.tsv").exists()

    def test_cli_plot(self, tmp_path):
        from click.testing import CliRunner
        from dexanno.cli import main

        table = pd.DataFrame(
            {
                "gene_id": [f"g{i}" for i in range(20)],
                "log_fc": np.linspace(-4, 4, 20),
                "mean_expr": np.linspace(1, 10, 20),
                "statistic": 1.0,
                "p_value": np.linspace(1e-8, 1, 20),
                "fdr": np.linspace(1e-6, 1, 20),
            }
        )
        path = tmp_path / "de.tsv"
        table.to_csv(path, sep="\t", index=False)
        runner = CliRunner()
        result = runner.invoke(main, ["plot", "--de-table", str(path), "--output-dir", str(tmp_path / "plots_out")])
        assert result.exit_code == 0, result.output
        assert (tmp_path / "plots_out" / "plots" / "volcano_edger_treatment_vs_reference.png").exists()
        assert (tmp_path / "plots_out" / "plots" / "ma_edger_treatment_vs_reference.pdf").exists()

    def test_cli_plot_svg(self, tmp_path):
        from click.testing import CliRunner
        from dexanno.cli import main

        table = pd.DataFrame(
            {
                "gene_id": ["a", "b", "c"],
                "log_fc": [-2.0, 0.1, 3.0],
                "mean_expr": [4.0, 5.0, 6.0],
                "statistic": 1.0,
                "p_value": [1e-5, 0.5, 1e-6],
                "fdr": [1e-4, 0.6, 1e-5],
            }
        )
        path = tmp_path / "de.tsv"
        table.to_csv(path, sep="\t", index=False)
        result = CliRunner().invoke(
            main, ["plot", "-d", str(path), "-o", str(tmp_path / "out"), "--format", "svg", "--top-n", "1"]
        )
        assert result.exit_code == 0, result.output
        plots = tmp_path / "out" / "plots"
        assert (plots / "volcano_edger_treatment_vs_reference.svg").exists()
        assert not (plots / "volcano_edger_treatment_vs_reference.png").exists()
