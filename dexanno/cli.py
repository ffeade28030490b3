"""
Command-line interface for dexanno.

Usage examples
--------------
# Check tool availability
dexanno check

# Download Rfam for cmscan
dexanno download rfam --output-dir ./refs/rfam

# Genome annotation (all four tools + merged GFF3)
dexanno annotate all --genome genome.fna --rfam-cm ./refs/rfam/Rfam.cm --output-dir ./annot

# Individual annotation steps
dexanno annotate rrna   --genome genome.fna --output-dir ./annot/rrna
dexanno annotate trna   --genome genome.fna --output-dir ./annot/trna
dexanno annotate ncrna  --genome genome.fna --rfam-cm Rfam.cm --output-dir ./annot/ncrna
dexanno annotate crispr --genome genome.fna --output-dir ./annot/crispr

# Expression: counts → DE
dexanno counts --bam a.bam --bam b.bam --annotation genes.gtf --output-dir ./counts
dexanno de --counts ./counts/featurecounts.txt --samples samples.csv \\
    --reference control --treatment treated --method edger --output-dir ./de
dexanno expression --bam *.bam --annotation genes.gtf --samples samples.csv \\
    --reference control --treatment treated --output-dir ./results
"""

from __future__ import annotations

from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from dexanno import __version__
from dexanno.config import DE_METHODS, DexAnnoConfig, find_tools
from dexanno.utils import get_logger

console = Console(stderr=True)

BANNER = r"""
     _
  __| | _____  ____ _ _ __  _ __   ___
 / _` |/ _ \ \/ / _` | '_ \| '_ \ / _ \
| (_| |  __/>  < (_| | | | | | | | (_) |
 \__,_|\___/_/\_\__,_|_| |_|_| |_|\___/
  Differential expression & genome feature annotation
"""


def _cfg(output_dir, threads=None, **kwargs) -> DexAnnoConfig:
    cfg = DexAnnoConfig(output_dir=Path(output_dir), **kwargs)
    if threads:
        cfg.threads = threads
    get_logger(cfg.log_file)
    return cfg


# ======================================================================
# Top-level group
# ======================================================================


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(__version__, prog_name="dexanno")
def main():
    """dexanno: RNA-seq differential expression and genome feature annotation."""
    pass


# ======================================================================
# dexanno check: verify external tools
# ======================================================================


@main.command()
@click.option("--r-packages/--no-r-packages", default=True, help="Also check edgeR/DESeq2/limma.")
def check(r_packages: bool):
    """Check that the external tools (and R packages) are installed."""
    console.print(BANNER, style="bold magenta")
    tools = find_tools()
    tbl = Table(title="External Tool Availability", show_lines=True)
    tbl.add_column("Tool", style="bold")
    tbl.add_column("Status")
    tbl.add_column("Path")

    all_ok = True
    for name, path in tools.items():
        if path:
            tbl.add_row(name, "[green]✔ Found[/green]", path)
        else:
            tbl.add_row(name, "[red]✘ Missing[/red]", "-")
            all_ok = False

    if r_packages and tools.get("Rscript"):
        from dexanno.rscript import check_r_packages

        for pkg, ok in check_r_packages(["edgeR", "DESeq2", "limma"]).items():
            tbl.add_row(f"R::{pkg}", "[green]✔ Found[/green]" if ok else "[red]✘ Missing[/red]", "")
            all_ok = all_ok and ok

    console.print(tbl)
    if all_ok:
        console.print("[bold green]All tools available![/bold green]")
    else:
        console.print(
            "[yellow]Some tools are missing. Install them and add to PATH.[/yellow]\n"
            "Only the tools for the steps you run are required."
        )


# ======================================================================
# dexanno download
# ======================================================================


@main.group()
def download():
    """Download reference databases."""
    pass


@download.command("rfam")
@click.option("--output-dir", "-o", required=True, type=click.Path(), help="Directory for Rfam files.")
@click.option("--release", default="CURRENT", help="Rfam release (e.g. 14.10; default: CURRENT).")
@click.option("--no-press", is_flag=True, help="Do not run cmpress after download.")
def download_rfam_cmd(output_dir: str, release: str, no_press: bool):
    """Download Rfam.cm + Rfam.clanin and index them with cmpress."""
    from dexanno.download import download_rfam

    get_logger(Path(output_dir) / "download.log")
    result = download_rfam(Path(output_dir), release=release, press=not no_press)
    console.print(f"[green]Rfam {release} downloaded to {output_dir}[/green]")
    for k, v in result.items():
        console.print(f"  {k}: {v}")


# ======================================================================
# dexanno counts: featureCounts
# ======================================================================


@main.command("counts")
@click.option("--bam", "-b", "bams", required=True, multiple=True, type=click.Path(exists=True), help="Aligned BAM (repeatable).")
@click.option("--annotation", "-a", required=True, type=click.Path(exists=True), help="GTF/GFF or SAF annotation.")
@click.option("--output-dir", "-o", required=True, type=click.Path(), help="Output directory.")
@click.option("--format", "annotation_format", default="GTF", type=click.Choice(["GTF", "SAF"]), help="Annotation format.")
@click.option("--feature-type", "-t", default="exon", help="GTF feature type to count (default: exon).")
@click.option("--attribute", "-g", default="gene_id", help="GTF attribute used as gene ID.")
@click.option("--paired/--single", default=False, help="Count read pairs instead of reads.")
@click.option("--strandedness", "-s", default=0, type=click.IntRange(0, 2), help="0 unstranded, 1 stranded, 2 reverse.")
@click.option("--threads", "-T", default=None, type=int, help="Number of threads.")
def counts_cmd(bams, annotation, output_dir, annotation_format, feature_type, attribute, paired, strandedness, threads):
    """Count reads per gene with featureCounts."""
    from dexanno.counts import parse_featurecounts, run_featurecounts

    cfg = _cfg(
        output_dir,
        threads,
        annotation=Path(annotation),
        annotation_format=annotation_format,
        feature_type=feature_type,
        attribute=attribute,
        paired_end=paired,
        strandedness=strandedness,
    )
    out = run_featurecounts([Path(b) for b in bams], Path(annotation), Path(output_dir), cfg=cfg)
    cs = parse_featurecounts(out)
    console.print(Panel(cs.summary(), title="Count Matrix", border_style="blue"))


# ======================================================================
# dexanno normalize: CPM / RPKM / TPM
# ======================================================================


@main.command("normalize")
@click.option("--counts", "-c", "counts_file", required=True, type=click.Path(exists=True), help="featureCounts table.")
@click.option("--output-dir", "-o", required=True, type=click.Path(), help="Output directory.")
@click.option("--lib-sizes", default=None, type=click.Path(exists=True), help="Two-column table of library sizes.")
def normalize_cmd(counts_file, output_dir, lib_sizes):
    """Write CPM, log-CPM, RPKM and TPM tables from a count table."""
    from dexanno.counts import CountSet, parse_featurecounts, read_lib_sizes
    from dexanno.normalize import normalised_tables

    _cfg(output_dir)
    cs = parse_featurecounts(Path(counts_file))
    if lib_sizes:
        cs = CountSet(counts=cs.counts, genes=cs.genes, lib_size=read_lib_sizes(Path(lib_sizes)).reindex(cs.counts.columns))
        cs.validate()
    out_dir = Path(output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    for name, table in normalised_tables(cs).items():
        table.to_csv(out_dir / f"{name}.tsv", sep="\t", index_label="gene_id", float_format="%.4f")
        console.print(f"  {name}: {out_dir / f'{name}.tsv'}")


# ======================================================================
# dexanno de: differential expression
# ======================================================================


def _de_options(func):
    options = [
        click.option("--samples", "-s", "sample_sheet", required=True, type=click.Path(exists=True), help="Sample sheet (CSV/TSV)."),
        click.option("--sample-id-col", default=None, help="Sample-name column (default: first column)."),
        click.option("--group-col", default="group", help="Column holding the condition (default: group)."),
        click.option("--reference", "-r", required=True, help="Reference (control) level."),
        click.option("--treatment", "-x", required=True, help="Treatment level."),
        click.option("--method", "-m", default="edger", type=click.Choice(list(DE_METHODS)), help="DE engine."),
        click.option("--covariate", "covariates", multiple=True, help="Extra design column, e.g. batch (repeatable)."),
        click.option("--fdr", default=0.05, help="FDR threshold for reporting (default: 0.05)."),
        click.option("--min-lfc", default=0.0, help="Minimum |log2 FC| for reporting."),
        click.option("--min-count", default=10, help="filterByExpr min.count (default: 10)."),
        click.option("--rscript", default="Rscript", help="Rscript executable."),
    ]
    for opt in reversed(options):
        func = opt(func)
    return func


@main.command("de")
@click.option("--counts", "-c", "counts_file", required=True, type=click.Path(exists=True), help="featureCounts table.")
@click.option("--output-dir", "-o", required=True, type=click.Path(), help="Output directory.")
@_de_options
def de_cmd(counts_file, output_dir, sample_sheet, sample_id_col, group_col, reference, treatment, method, covariates, fdr, min_lfc, min_count, rscript):
    """Differential expression with edgeR, DESeq2 or limma-voom."""
    from dexanno.counts import parse_featurecounts, read_sample_sheet
    from dexanno.de import run_de

    cfg = _cfg(
        output_dir,
        de_method=method,
        group_col=group_col,
        fdr=fdr,
        min_abs_lfc=min_lfc,
        min_count=min_count,
        rscript=rscript,
    )
    cs = parse_featurecounts(Path(counts_file)).with_samples(read_sample_sheet(Path(sample_sheet), sample_id_col))
    result = run_de(cs, reference, treatment, Path(output_dir), covariates=covariates, cfg=cfg)
    console.print(Panel(result.summary(fdr, min_lfc), title="Differential Expression", border_style="green"))


@main.command("expression")
@click.option("--bam", "-b", "bams", multiple=True, type=click.Path(exists=True), help="Aligned BAM (repeatable).")
@click.option("--annotation", "-a", default=None, type=click.Path(exists=True), help="GTF/GFF annotation.")
@click.option("--counts", "-c", "counts_file", default=None, type=click.Path(exists=True), help="Existing featureCounts table.")
@click.option("--output-dir", "-o", default="dexanno_output", type=click.Path(), help="Output directory.")
@click.option("--paired/--single", default=False, help="Count read pairs instead of reads.")
@click.option("--strandedness", default=0, type=click.IntRange(0, 2), help="0 unstranded, 1 stranded, 2 reverse.")
@click.option("--threads", "-t", default=None, type=int, help="Number of threads (default: auto).")
@click.option("--skip-visualize", is_flag=True, help="Skip plots.")
@_de_options
def expression_cmd(bams, annotation, counts_file, output_dir, paired, strandedness, threads, skip_visualize, sample_sheet, sample_id_col, group_col, reference, treatment, method, covariates, fdr, min_lfc, min_count, rscript):
    """Run the complete expression pipeline: counts → DE → plots."""
    from dexanno.counts import read_sample_sheet
    from dexanno.pipeline import run_expression

    console.print(BANNER, style="bold magenta")
    if not bams and not counts_file:
        raise click.UsageError("Give --bam files or an existing --counts table.")
    if bams and not annotation and not counts_file:
        raise click.UsageError("--annotation is required with --bam.")

    cfg = _cfg(
        output_dir,
        threads,
        annotation=Path(annotation) if annotation else None,
        paired_end=paired,
        strandedness=strandedness,
        de_method=method,
        group_col=group_col,
        fdr=fdr,
        min_abs_lfc=min_lfc,
        min_count=min_count,
        rscript=rscript,
    )
    result = run_expression(
        read_sample_sheet(Path(sample_sheet), sample_id_col),
        reference,
        treatment,
        bams=[Path(b) for b in bams],
        counts_file=Path(counts_file) if counts_file else None,
        covariates=covariates,
        cfg=cfg,
        skip_visualize=skip_visualize,
    )

    tbl = Table(title="Pipeline Results", show_lines=True)
    tbl.add_column("Output", style="bold cyan")
    tbl.add_column("Path", style="green")
    tbl.add_row("Count table", str(result.counts_path))
    if result.de is not None:
        tbl.add_row("DE table", str(result.de.paths.get("table")))
    for name, p in result.normalised.items():
        tbl.add_row(name.upper(), str(p))
    if result.plots:
        tbl.add_row("Plots", f"{len(result.plots)} files in {output_dir}/05_visualisation/")
    console.print(tbl)


# ======================================================================
# dexanno annotate: genome feature annotation
# ======================================================================


@main.group()
def annotate():
    """Annotate rRNA, tRNA, ncRNA and CRISPR arrays in a genome."""
    pass


_genome_opt = click.option("--genome", "-g", required=True, type=click.Path(exists=True), help="Genome FASTA.")
_out_opt = click.option("--output-dir", "-o", required=True, type=click.Path(), help="Output directory.")


def _write_features(df, output_dir: Path, name: str) -> Path:
    from dexanno.features import merge_features

    path = Path(output_dir) / f"{name}_features.tsv"
    merge_features([df]).to_csv(path, sep="\t", index=False)
    return path


@annotate.command("rrna")
@_genome_opt
@_out_opt
@click.option("--gene", "genes", multiple=True, default=("ssu", "lsu"), type=click.Choice(["ssu", "lsu"]), help="Gene family (repeatable).")
@click.option("--cpu", default=1, help="MeTaxa2 --cpu (default: 1).")
def annotate_rrna(genome, output_dir, genes, cpu):
    """Find SSU/LSU rRNA genes with MeTaxa2."""
    from dexanno.rrna import detect_rrna

    cfg = _cfg(output_dir, metaxa2_genes=tuple(genes), metaxa2_cpu=cpu)
    df = detect_rrna(Path(genome), Path(output_dir), cfg=cfg)
    console.print(f"[green]{len(df)} rRNA gene(s) → {_write_features(df, Path(output_dir), 'rrna')}[/green]")


@annotate.command("trna")
@_genome_opt
@_out_opt
def annotate_trna(genome, output_dir):
    """Find tRNA and tmRNA genes with Aragorn."""
    from dexanno.trna import detect_trna

    cfg = _cfg(output_dir)
    df = detect_trna(Path(genome), Path(output_dir), cfg=cfg)
    console.print(f"[green]{len(df)} tRNA/tmRNA gene(s) → {_write_features(df, Path(output_dir), 'trna')}[/green]")


@annotate.command("ncrna")
@_genome_opt
@_out_opt
@click.option("--rfam-cm", required=True, type=click.Path(exists=True), help="Rfam.cm (pressed or not).")
@click.option("--rfam-clanin", default=None, type=click.Path(exists=True), help="Rfam.clanin (default: next to Rfam.cm).")
@click.option("--keep-redundant", is_flag=True, help="Keep SSU/LSU rRNA and tRNA hits too.")
@click.option("--threads", "-t", default=None, type=int, help="cmscan --cpu.")
def annotate_ncrna(genome, output_dir, rfam_cm, rfam_clanin, keep_redundant, threads):
    """Find ncRNAs with cmscan against Rfam."""
    from dexanno.ncrna import detect_ncrna

    cfg = _cfg(output_dir, threads, rfam_cm=Path(rfam_cm), rfam_clanin=Path(rfam_clanin) if rfam_clanin else None)
    df = detect_ncrna(Path(genome), Path(output_dir), cfg=cfg, drop_redundant=not keep_redundant)
    console.print(f"[green]{len(df)} ncRNA feature(s) → {_write_features(df, Path(output_dir), 'ncrna')}[/green]")


@annotate.command("crispr")
@_genome_opt
@_out_opt
@click.option("--crisprdigger", default="CRISPRDigger.pl", help="CRISPRdigger script or executable.")
def annotate_crispr(genome, output_dir, crisprdigger):
    """Find CRISPR arrays with CRISPRdigger."""
    from dexanno.crispr import detect_crispr

    cfg = _cfg(output_dir, crisprdigger=crisprdigger)
    df = detect_crispr(Path(genome), Path(output_dir), cfg=cfg)
    console.print(f"[green]{len(df)} CRISPR array(s) → {_write_features(df, Path(output_dir), 'crispr')}[/green]")


@annotate.command("all")
@_genome_opt
@click.option("--output-dir", "-o", default="dexanno_output", type=click.Path(), help="Output directory.")
@click.option("--rfam-cm", default=None, type=click.Path(exists=True), help="Rfam.cm for cmscan.")
@click.option("--rfam-clanin", default=None, type=click.Path(exists=True), help="Rfam.clanin.")
@click.option("--crisprdigger", default="CRISPRDigger.pl", help="CRISPRdigger script or executable.")
@click.option("--threads", "-t", default=None, type=int, help="Number of threads (default: auto).")
@click.option("--skip-rrna", is_flag=True, help="Skip MeTaxa2.")
@click.option("--skip-trna", is_flag=True, help="Skip Aragorn.")
@click.option("--skip-ncrna", is_flag=True, help="Skip cmscan.")
@click.option("--skip-crispr", is_flag=True, help="Skip CRISPRdigger.")
@click.option("--skip-visualize", is_flag=True, help="Skip plots.")
def annotate_all(genome, output_dir, rfam_cm, rfam_clanin, crisprdigger, threads, skip_rrna, skip_trna, skip_ncrna, skip_crispr, skip_visualize):
    """Run every annotation tool and merge the results into one GFF3."""
    from dexanno.pipeline import run_annotation

    console.print(BANNER, style="bold magenta")
    if not skip_ncrna and rfam_cm is None:
        raise click.UsageError("--rfam-cm is required unless --skip-ncrna is given.")
    cfg = _cfg(
        output_dir,
        threads,
        rfam_cm=Path(rfam_cm) if rfam_cm else None,
        rfam_clanin=Path(rfam_clanin) if rfam_clanin else None,
        crisprdigger=crisprdigger,
    )
    result = run_annotation(
        Path(genome),
        cfg=cfg,
        skip_rrna=skip_rrna,
        skip_trna=skip_trna,
        skip_ncrna=skip_ncrna,
        skip_crispr=skip_crispr,
        skip_visualize=skip_visualize,
    )

    tbl = Table(title="Annotated Features", show_lines=True)
    tbl.add_column("Source", style="bold cyan")
    tbl.add_column("Type")
    tbl.add_column("Count", justify="right", style="green")
    for _, row in result.summary.iterrows():
        tbl.add_row(row["source"], row["type"], f"{int(row['count']):,}")
    console.print(tbl)
    console.print(f"GFF3: {result.gff3}")


# ======================================================================
# dexanno plot: plots from an existing DE table
# ======================================================================


@main.command("plot")
@click.option("--de-table", "-d", required=True, type=click.Path(exists=True), help="dexanno DE table (TSV).")
@click.option("--output-dir", "-o", required=True, type=click.Path(), help="Output directory for plots.")
@click.option("--method", "-m", default="edger", type=click.Choice(list(DE_METHODS)))
@click.option("--reference", "-r", default="reference", help="Reference label.")
@click.option("--treatment", "-x", default="treatment", help="Treatment label.")
@click.option("--fdr", default=0.05, help="FDR threshold.")
@click.option("--min-lfc", default=0.0, help="Minimum |log2 FC|.")
@click.option("--top-n", default=20, show_default=True, help="Genes labelled on the volcano plot.")
@click.option(
    "--format",
    "fmt",
    default="png",
    type=click.Choice(["png", "pdf", "svg"]),
    help="Plot output format (always accompanied by a PDF).",
)
def plot_cmd(de_table, output_dir, method, reference, treatment, fdr, min_lfc, top_n, fmt):
    """Volcano and MA plots from a saved DE table."""
    import pandas as pd

    from dexanno.de import DEResult
    from dexanno.visualize import generate_de_plots

    cfg = _cfg(output_dir, de_method=method, fdr=fdr, min_abs_lfc=min_lfc, top_n=top_n, plot_format=fmt)
    table = pd.read_csv(de_table, sep="\t")
    result = DEResult(method=method, reference=reference, treatment=treatment, table=table, n_tested=len(table))
    plots = generate_de_plots(result, Path(output_dir), cfg=cfg)
    console.print(f"[green]Generated {len(plots)} plots in {output_dir}[/green]")


if __name__ == "__main__":
    main()
