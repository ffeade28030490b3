"""
Pipeline orchestrators.

Annotation:  rRNA (MeTaxa2) → tRNA (Aragorn) → ncRNA (cmscan) →
             CRISPR (CRISPRdigger) → merged GFF3 + tables
Expression:  featureCounts → sample metadata → normalised tables →
             DE (edgeR / DESeq2 / limma) → plots + tables

Each step can be skipped for partial reruns, and steps whose outputs
already exist are not run again.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

import pandas as pd
from rich.console import Console
from rich.panel import Panel

from dexanno.config import DexAnnoConfig
from dexanno.counts import CountSet, parse_featurecounts, run_featurecounts
from dexanno.crispr import detect_crispr
from dexanno.de import DEResult, run_de
from dexanno.features import feature_summary, merge_features, to_gff3
from dexanno.ncrna import detect_ncrna
from dexanno.normalize import normalised_tables
from dexanno.rrna import detect_rrna
from dexanno.trna import detect_trna
from dexanno.utils import fasta_lengths, file_size_human, fmt_elapsed, genome_stem, get_logger
from dexanno.visualize import generate_de_plots, plot_feature_types

console = Console(stderr=True)


# ---------------------------------------------------------------------------
# Output manifest
# ---------------------------------------------------------------------------


def _write_manifest(output_dir: Path, tables_dir: Path) -> Path:
    manifest_rows = []
    for d in sorted(output_dir.rglob("*")):
        if d.is_file() and "tmp" not in d.relative_to(output_dir).parts:
            rel = d.relative_to(output_dir)
            manifest_rows.append((str(rel), d.stat().st_size, file_size_human(d)))
    manifest_df = pd.DataFrame(manifest_rows, columns=["File", "Bytes", "Size"])
    manifest_path = tables_dir / "output_manifest.csv"
    manifest_df.to_csv(manifest_path, index=False)
    get_logger().info(f"Saved output manifest → {manifest_path}")
    return manifest_path


# ===========================================================================
# Annotation
# ===========================================================================


@dataclass
class AnnotationResult:
    """Container for genome-annotation outputs."""

    genome: Optional[Path] = None
    features: pd.DataFrame = field(default_factory=pd.DataFrame)
    summary: pd.DataFrame = field(default_factory=pd.DataFrame)
    gff3: Optional[Path] = None
    table: Optional[Path] = None
    per_tool: dict[str, int] = field(default_factory=dict)
    plots: list[Path] = field(default_factory=list)
    elapsed_seconds: float = 0.0


def run_annotation(
    genome: Path,
    *,
    cfg: Optional[DexAnnoConfig] = None,
    skip_rrna: bool = False,
    skip_trna: bool = False,
    skip_ncrna: bool = False,
    skip_crispr: bool = False,
    skip_visualize: bool = False,
) -> AnnotationResult:
    """
    Annotate rRNA, tRNA/tmRNA, other ncRNA and CRISPR arrays in *genome*.

    Returns
    -------
    AnnotationResult with the merged features and output paths.
    """
    log = get_logger()
    if cfg is None:
        cfg = DexAnnoConfig()
    genome = Path(genome)
    if not genome.exists():
        raise FileNotFoundError(f"Genome FASTA not found: {genome}")
    if not skip_ncrna and cfg.rfam_cm is None:
        raise ValueError("Rfam database not set. Use --rfam-cm or 'dexanno download rfam' first.")

    cfg.ensure_dirs()
    log.info(f"System: {cfg.system_summary}")
    result = AnnotationResult(genome=genome)
    t0 = time.perf_counter()

    console.print(
        Panel.fit(
            "[bold magenta]dexanno[/bold magenta]: genome feature annotation\n"
            f"Input: {genome.name}\n"
            f"Output: {cfg.output_dir}",
            border_style="blue",
        )
    )

    seq_lengths = fasta_lengths(genome)
    log.info(f"{len(seq_lengths)} sequence(s), {sum(seq_lengths.values()):,} bp")

    steps = [
        ("rRNA", "MeTaxa2", skip_rrna, detect_rrna, "01_rrna"),
        ("tRNA", "Aragorn", skip_trna, detect_trna, "02_trna"),
        ("ncRNA", "cmscan", skip_ncrna, detect_ncrna, "03_ncrna"),
        ("CRISPR", "CRISPRdigger", skip_crispr, detect_crispr, "04_crispr"),
    ]
    frames = []
    for i, (label, tool, skip, func, subdir) in enumerate(steps, start=1):
        if skip:
            log.info(f"Skipping {label} ({tool})")
            continue
        log.info(f"[bold]Step {i}/5: {label} ({tool})[/bold]")
        df = func(genome, cfg.output_dir / subdir, cfg=cfg)
        result.per_tool[tool] = len(df)
        frames.append(df)

    log.info("[bold]Step 5/5: Aggregating features[/bold]")
    unknown = set()
    for df in frames:
        unknown.update(set(df["seqid"]) - set(seq_lengths))
    if unknown:
        raise ValueError(f"Features reference sequences not in the genome: {sorted(unknown)[:5]}")

    merged = merge_features(frames)
    result.features = merged
    result.summary = feature_summary(merged)

    out_dir = cfg.output_dir / "05_features"
    out_dir.mkdir(parents=True, exist_ok=True)
    stem = genome_stem(genome)
    result.gff3 = to_gff3(merged, out_dir / f"{stem}.gff3", seq_lengths=seq_lengths)
    result.table = out_dir / f"{stem}_features.tsv"
    merged.to_csv(result.table, sep="\t", index=False)
    result.summary.to_csv(out_dir / f"{stem}_feature_summary.csv", index=False)

    if not skip_visualize and not result.summary.empty:
        result.plots = plot_feature_types(
            result.summary, out_dir / "plots" / f"{stem}_feature_types.png", cfg=cfg
        )

    _write_manifest(cfg.output_dir, out_dir)
    result.elapsed_seconds = time.perf_counter() - t0
    console.print(
        Panel.fit(
            f"[bold green]Annotation completed in {fmt_elapsed(result.elapsed_seconds)}[/bold green]\n"
            f"{len(merged):,} features → {result.gff3}",
            border_style="green",
        )
    )
    return result


# ===========================================================================
# Expression
# ===========================================================================


@dataclass
class ExpressionResult:
    """Container for count / DE outputs."""

    counts_path: Optional[Path] = None
    countset: Optional[CountSet] = None
    normalised: dict[str, Path] = field(default_factory=dict)
    de: Optional[DEResult] = None
    plots: list[Path] = field(default_factory=list)
    elapsed_seconds: float = 0.0


def run_expression(
    samples: pd.DataFrame,
    reference: str,
    treatment: str,
    *,
    bams: Sequence[Path] = (),
    counts_file: Optional[Path] = None,
    sample_id_col: Optional[str] = None,
    covariates: Sequence[str] = (),
    cfg: Optional[DexAnnoConfig] = None,
    skip_de: bool = False,
    skip_visualize: bool = False,
) -> ExpressionResult:
    """
    Count reads (or load an existing featureCounts table) and test
    *treatment* against *reference*.

    Parameters
    ----------
    samples : DataFrame
        Sample metadata; one row per BAM / count column.
    bams : sequence of Path
        Aligned reads for featureCounts.  Ignored when *counts_file* is given.
    counts_file : Path, optional
        Existing featureCounts output.
    """
    log = get_logger()
    if cfg is None:
        cfg = DexAnnoConfig()
    if counts_file is None and not bams:
        raise ValueError("Give either BAM files or an existing featureCounts table")

    cfg.ensure_dirs()
    log.info(f"System: {cfg.system_summary}")
    result = ExpressionResult()
    t0 = time.perf_counter()

    console.print(
        Panel.fit(
            "[bold magenta]dexanno[/bold magenta]: differential expression\n"
            f"Contrast: {treatment} vs {reference}  ({cfg.de_method})\n"
            f"Output: {cfg.output_dir}",
            border_style="blue",
        )
    )

    # ---- Step 1: counts ----
    if counts_file is None:
        log.info("[bold]Step 1/4: Read counting (featureCounts)[/bold]")
        if cfg.annotation is None:
            raise ValueError("Annotation (GTF/SAF) not set. Use --annotation.")
        counts_file = run_featurecounts(bams, cfg.annotation, cfg.output_dir / "01_counts", cfg=cfg)
    else:
        log.info(f"Step 1/4: Using existing count table {Path(counts_file).name}")
    result.counts_path = Path(counts_file)

    # ---- Step 2: metadata ----
    log.info("[bold]Step 2/4: Attaching sample metadata[/bold]")
    cs = parse_featurecounts(result.counts_path).with_samples(samples, id_col=sample_id_col)
    cs.validate()
    result.countset = cs
    log.info(cs.summary())
    cs.to_dir(cfg.output_dir / "02_countset")

    # ---- Step 3: DE ----
    norm_factors = None
    if not skip_de:
        log.info(f"[bold]Step 3/4: Differential expression ({cfg.de_method})[/bold]")
        result.de = run_de(
            cs,
            reference,
            treatment,
            cfg.output_dir / "03_de",
            group_col=cfg.group_col,
            covariates=covariates,
            cfg=cfg,
        )
        if cfg.de_method != "deseq2":
            norm_factors = result.de.norm_factors
    else:
        log.info("Skipping differential expression")

    # ---- Normalised tables (TMM factors when edgeR/limma ran) ----
    norm_dir = cfg.output_dir / "04_normalised"
    norm_dir.mkdir(parents=True, exist_ok=True)
    if norm_factors is not None:
        norm_factors = norm_factors.reindex(cs.counts.columns)
    for name, table in normalised_tables(cs, norm_factors).items():
        path = norm_dir / f"{name}.tsv"
        table.to_csv(path, sep="\t", index_label="gene_id", float_format="%.4f")
        result.normalised[name] = path
    log.info(f"Saved normalised tables → {norm_dir}")

    # ---- Step 4: plots ----
    if not skip_visualize and result.de is not None:
        log.info("[bold]Step 4/4: Generating Visualisations[/bold]")
        result.plots = generate_de_plots(
            result.de,
            cfg.output_dir / "05_visualisation",
            lib_size=cs.lib_size,
            groups=cs.samples[cfg.group_col],
            cfg=cfg,
        )
    else:
        log.info("Skipping visualisation")

    _write_manifest(cfg.output_dir, norm_dir)
    result.elapsed_seconds = time.perf_counter() - t0
    console.print(
        Panel.fit(
            f"[bold green]Pipeline completed in {fmt_elapsed(result.elapsed_seconds)}[/bold green]\n"
            f"Output directory: {cfg.output_dir}",
            border_style="green",
        )
    )
    return result
