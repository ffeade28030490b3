"""
Read-counting module: wraps **featureCounts** (Subread) and holds the
resulting count data in a :class:`CountSet`.

A ``CountSet`` is the Python-side equivalent of edgeR's ``DGEList``:

  • ``counts``  : genes × samples integer matrix
  • ``genes``   : per-gene features (Chr, Start, End, Strand, Length)
  • ``samples`` : per-sample metadata (group, batch, …)
  • ``lib_size``: per-sample library size

The four parts are aligned *positionally* when handed to R.  Any
mismatch between the counts columns and the metadata rows silently
assigns samples to the wrong group, so alignment is checked by
:meth:`CountSet.validate` before anything leaves Python.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

import pandas as pd

from dexanno.config import DexAnnoConfig, require_tool
from dexanno.utils import file_size_human, get_logger, run_cmd

GENE_COLUMNS = ["Chr", "Start", "End", "Strand", "Length"]

_BAM_SUFFIXES = (
    "Aligned.sortedByCoord.out",
    "Aligned.out",
    ".sorted",
    "_sorted",
    ".dedup",
)


def sample_name_from_path(path: str) -> str:
    """``/data/S1Aligned.sortedByCoord.out.bam`` → ``S1``."""
    name = Path(str(path)).name
    if name.endswith(".bam") or name.endswith(".sam"):
        name = name[:-4]
    for suffix in _BAM_SUFFIXES:
        if name.endswith(suffix):
            name = name[: -len(suffix)]
    return name.rstrip("._-") or name


# ---------------------------------------------------------------------------
# CountSet container
# ---------------------------------------------------------------------------


@dataclass
class CountSet:
    """Counts, gene features, sample metadata and library sizes kept in step."""

    counts: pd.DataFrame
    genes: pd.DataFrame = field(default_factory=pd.DataFrame)
    samples: pd.DataFrame = field(default_factory=pd.DataFrame)
    lib_size: Optional[pd.Series] = None

    def __post_init__(self) -> None:
        if self.genes.empty:
            self.genes = pd.DataFrame(index=self.counts.index.copy())
        if self.samples.empty:
            self.samples = pd.DataFrame(index=self.counts.columns.copy())
        if self.lib_size is None:
            self.lib_size = self.counts.sum(axis=0).astype("int64")
        self.lib_size = self.lib_size.rename("lib_size")

    # -- shape ------------------------------------------------------------

    @property
    def n_genes(self) -> int:
        return self.counts.shape[0]

    @property
    def n_samples(self) -> int:
        return self.counts.shape[1]

    # -- checks -----------------------------------------------------------

    def validate(self) -> None:
        """Raise ``ValueError`` unless all four parts are aligned."""
        problems: list[str] = []
        if self.counts.index.has_duplicates:
            dups = self.counts.index[self.counts.index.duplicated()].unique()[:5].tolist()
            problems.append(f"duplicated gene IDs in counts: {dups}")
        if self.counts.columns.has_duplicates:
            dups = self.counts.columns[self.counts.columns.duplicated()].unique().tolist()
            problems.append(f"duplicated sample names in counts: {dups}")
        if list(self.genes.index) != list(self.counts.index):
            problems.append("gene features are not in the same order as the count matrix rows")
        if list(self.samples.index) != list(self.counts.columns):
            problems.append(
                "sample metadata rows are not in the same order as the count matrix columns "
                f"(counts: {list(self.counts.columns)}; samples: {list(self.samples.index)})"
            )
        if list(self.lib_size.index) != list(self.counts.columns):
            problems.append("library sizes are not in the same order as the count matrix columns")
        numeric = self.counts.apply(pd.to_numeric, errors="coerce")
        if numeric.isna().any().any():
            problems.append("count matrix contains non-numeric or missing values")
        elif (numeric < 0).any().any():
            problems.append("count matrix contains negative values")
        if self.lib_size.isna().any():
            problems.append(f"no library size for samples: {self.lib_size[self.lib_size.isna()].index.tolist()}")
        elif (self.lib_size <= 0).any():
            zero = self.lib_size[self.lib_size <= 0].index.tolist()
            problems.append(f"non-positive library size for samples: {zero}")
        if problems:
            raise ValueError("CountSet is inconsistent:\n  - " + "\n  - ".join(problems))

    # -- metadata ---------------------------------------------------------

    def with_samples(self, samples: pd.DataFrame, id_col: Optional[str] = None) -> "CountSet":
        """
        Attach sample metadata, reordered to match the count columns.

        *samples* is indexed by sample name, or *id_col* names the column
        holding it.  Every count column must have exactly one metadata
        row; extra metadata rows are an error too, since they usually
        mean the sheet belongs to a different run.
        """
        meta = samples.copy()
        if id_col is not None:
            if id_col not in meta.columns:
                raise ValueError(f"Sample ID column '{id_col}' not in metadata: {list(meta.columns)}")
            meta = meta.set_index(id_col)
        meta.index = meta.index.astype(str)
        if meta.index.has_duplicates:
            raise ValueError(f"Duplicated sample IDs in metadata: {meta.index[meta.index.duplicated()].tolist()}")

        wanted = [str(c) for c in self.counts.columns]
        missing = [s for s in wanted if s not in meta.index]
        extra = [s for s in meta.index if s not in wanted]
        if missing or extra:
            raise ValueError(
                "Sample metadata does not match count columns.\n"
                f"  missing from metadata: {missing}\n"
                f"  not in count matrix:   {extra}"
            )
        if list(meta.index) != wanted:
            get_logger().warning("Reordering sample metadata to match count matrix columns")
        meta = meta.loc[wanted]
        meta.index.name = "sample"
        return CountSet(
            counts=self.counts.copy(),
            genes=self.genes.copy(),
            samples=meta,
            lib_size=self.lib_size.copy(),
        )

    def subset(
        self,
        genes: Optional[Sequence] = None,
        samples: Optional[Sequence] = None,
    ) -> "CountSet":
        """Return a new CountSet restricted to *genes* and/or *samples*."""
        g = list(self.counts.index) if genes is None else list(genes)
        s = list(self.counts.columns) if samples is None else list(samples)
        return CountSet(
            counts=self.counts.loc[g, s].copy(),
            genes=self.genes.loc[g].copy(),
            samples=self.samples.loc[s].copy(),
            lib_size=self.lib_size.loc[s].copy(),
        )

    # -- I/O --------------------------------------------------------------

    def to_dir(self, path: Path) -> dict[str, Path]:
        """Write the four tables as TSV files (the layout the R scripts read)."""
        path = Path(path)
        path.mkdir(parents=True, exist_ok=True)
        out = {
            "counts": path / "counts.tsv",
            "genes": path / "genes.tsv",
            "samples": path / "samples.tsv",
            "lib_size": path / "lib_size.tsv",
        }
        self.counts.to_csv(out["counts"], sep="\t", index_label="gene_id")
        self.genes.to_csv(out["genes"], sep="\t", index_label="gene_id")
        self.samples.to_csv(out["samples"], sep="\t", index_label="sample")
        self.lib_size.to_frame().to_csv(out["lib_size"], sep="\t", index_label="sample")
        return out

    @classmethod
    def from_dir(cls, path: Path) -> "CountSet":
        path = Path(path)
        counts = pd.read_csv(path / "counts.tsv", sep="\t", index_col=0)
        genes = pd.read_csv(path / "genes.tsv", sep="\t", index_col=0)
        samples = pd.read_csv(path / "samples.tsv", sep="\t", index_col=0, dtype=str)
        lib_size = pd.read_csv(path / "lib_size.tsv", sep="\t", index_col=0)["lib_size"]
        for df in (counts, genes):
            df.index = df.index.astype(str)
        counts.columns = counts.columns.astype(str)
        samples.index = samples.index.astype(str)
        lib_size.index = lib_size.index.astype(str)
        cs = cls(counts=counts, genes=genes, samples=samples, lib_size=lib_size)
        cs.validate()
        return cs

    def summary(self) -> str:
        ls = self.lib_size
        return (
            f"Genes: {self.n_genes:,}  Samples: {self.n_samples}\n"
            f"Library size: min {ls.min():,}  median {int(ls.median()):,}  max {ls.max():,}\n"
            f"Genes with zero counts in all samples: {(self.counts.sum(axis=1) == 0).sum():,}"
        )


# ---------------------------------------------------------------------------
# featureCounts
# ---------------------------------------------------------------------------


def run_featurecounts(
    bams: Sequence[Path],
    annotation: Path,
    output_dir: Path,
    *,
    cfg: Optional[DexAnnoConfig] = None,
) -> Path:
    """
    Count reads per gene with featureCounts.

    Returns the path to ``<output_dir>/featurecounts.txt``; the
    ``.summary`` file is written next to it.
    """
    log = get_logger()
    if cfg is None:
        cfg = DexAnnoConfig()
    if not bams:
        raise ValueError("No BAM files given to featureCounts")

    featurecounts = require_tool("featureCounts")
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    out_path = output_dir / "featurecounts.txt"

    if out_path.exists():
        log.info(f"featureCounts output already exists, skipping: {out_path.name}")
        return out_path

    cmd = [
        featurecounts,
        "-T",
        str(cfg.threads),
        "-a",
        str(annotation),
        "-F",
        cfg.annotation_format,
        "-o",
        str(out_path),
        "-s",
        str(cfg.strandedness),
    ]
    if cfg.annotation_format.upper() == "GTF":
        cmd.extend(["-t", cfg.feature_type, "-g", cfg.attribute])
    if cfg.paired_end:
        cmd.extend(["-p", "--countReadPairs"])
    if cfg.featurecounts_extra_args:
        cmd.extend(cfg.featurecounts_extra_args.split())
    cmd.extend(str(b) for b in bams)

    log.info(f"Counting {len(bams)} BAM file(s) against {Path(annotation).name}")
    run_cmd(cmd, desc="featureCounts read summarisation")
    log.info(f"Count table: {out_path}  ({file_size_human(out_path)})")
    return out_path


def _collapse(value: str, how: str):
    parts = str(value).split(";")
    if how == "first":
        return parts[0]
    nums = [int(p) for p in parts if p.strip()]
    return min(nums) if how == "min" else max(nums)


def parse_featurecounts(path: Path, *, summary: Optional[Path] = None) -> CountSet:
    """
    Parse a featureCounts table into a :class:`CountSet`.

    Multi-exon genes list one Chr/Start/End/Strand per exon separated by
    ``;``; these are collapsed to the first chromosome and strand and the
    outermost coordinates.  When *summary* is given (or
    ``<path>.summary`` exists) library sizes are the reads featureCounts
    assigned per sample; otherwise they are the column
    sums of the count matrix, as ``DGEList`` does by default.
    """
    path = Path(path)
    df = pd.read_csv(path, sep="\t", comment="#", dtype={"Geneid": str})
    missing = [c for c in ["Geneid"] + GENE_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"{path} is not a featureCounts table (missing columns {missing})")

    df = df.set_index("Geneid")
    df.index.name = "gene_id"
    sample_cols = [c for c in df.columns if c not in GENE_COLUMNS]
    if not sample_cols:
        raise ValueError(f"{path} contains no sample columns")

    counts = df[sample_cols].astype("int64")
    counts.columns = [sample_name_from_path(c) for c in sample_cols]

    genes = df[GENE_COLUMNS].copy()
    genes["Chr"] = genes["Chr"].map(lambda v: _collapse(v, "first"))
    genes["Start"] = genes["Start"].map(lambda v: _collapse(v, "min"))
    genes["End"] = genes["End"].map(lambda v: _collapse(v, "max"))
    genes["Strand"] = genes["Strand"].map(lambda v: _collapse(v, "first"))
    genes["Length"] = genes["Length"].astype("int64")

    if summary is None:
        candidate = path.with_name(path.name + ".summary")
        summary = candidate if candidate.exists() else None

    lib_size = None
    if summary is not None:
        stats = parse_featurecounts_summary(summary)
        if "Assigned" not in stats.index:
            raise ValueError(f"{summary} has no 'Assigned' row")
        lib_size = stats.loc["Assigned"].reindex(counts.columns)
        if lib_size.isna().any():
            raise ValueError(f"{summary} does not describe the same samples as {path}")
        lib_size = lib_size.astype("int64")

    cs = CountSet(counts=counts, genes=genes, lib_size=lib_size)
    cs.validate()
    return cs


def parse_featurecounts_summary(path: Path) -> pd.DataFrame:
    """
    Parse a featureCounts ``.summary`` file.

    Returns a DataFrame indexed by status (Assigned, Unassigned_NoFeatures,
    …) with one column per sample.
    """
    df = pd.read_csv(path, sep="\t", index_col=0)
    df.columns = [sample_name_from_path(c) for c in df.columns]
    return df.astype("int64")


def assignment_rates(summary: pd.DataFrame) -> pd.Series:
    """Fraction of reads assigned to a feature, per sample."""
    total = summary.sum(axis=0)
    assigned = summary.loc["Assigned"] if "Assigned" in summary.index else 0
    return (assigned / total.where(total > 0)).fillna(0.0).rename("assigned_rate")


# ---------------------------------------------------------------------------
# Sample sheets & library-size tables
# ---------------------------------------------------------------------------


def _read_table(path: Path, **kwargs) -> pd.DataFrame:
    path = Path(path)
    sep = "," if path.suffix.lower() == ".csv" else "\t"
    return pd.read_csv(path, sep=sep, **kwargs)


def read_sample_sheet(path: Path, id_col: Optional[str] = None) -> pd.DataFrame:
    """
    Read a CSV/TSV sample sheet indexed by sample name.

    Without *id_col* the first column holds the sample names.
    """
    df = _read_table(path, dtype=str)
    key = id_col or df.columns[0]
    if key not in df.columns:
        raise ValueError(f"Sample ID column '{key}' not found in {path}")
    df[key] = df[key].str.strip()
    return df.set_index(key)


def read_lib_sizes(path: Path) -> pd.Series:
    """Read a two-column (sample, library size) table."""
    df = _read_table(path)
    if df.shape[1] < 2:
        raise ValueError(f"{path} needs two columns: sample and library size")
    s = pd.Series(df.iloc[:, 1].astype("int64").values, index=df.iloc[:, 0].astype(str))
    return s.rename("lib_size")


_SAFE_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9._]*$")


def check_r_names(names: Sequence[str]) -> list[str]:
    """Return the names that R would mangle with ``make.names``."""
    return [n for n in names if not _SAFE_NAME.match(str(n))]
