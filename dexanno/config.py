"""
Configuration management for dexanno.

Centralises default parameters, external tool paths, resource limits,
and pipeline-wide settings so that every module shares a single source
of truth.
"""

from __future__ import annotations

import multiprocessing
import platform
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import psutil


# ---------------------------------------------------------------------------
# External tool discovery
# ---------------------------------------------------------------------------

TOOL_URLS = {
    "featureCounts": "https://subread.sourceforge.net/",
    "Rscript": "https://www.r-project.org/ (+ Bioconductor edgeR, DESeq2, limma)",
    "metaxa2": "https://microbiology.se/software/metaxa2/",
    "aragorn": "http://www.ansikte.se/ARAGORN/",
    "cmscan": "http://eddylab.org/infernal/",
    "cmpress": "http://eddylab.org/infernal/",
    "CRISPRDigger.pl": "https://github.com/greatfireball/CRISPRDigger",
}


def _find_tool(name: str) -> Optional[str]:
    """Return the absolute path to *name* if it is on PATH, else None."""
    return shutil.which(name)


def find_tools() -> dict[str, Optional[str]]:
    """Scan PATH for every external binary dexanno may call."""
    found: dict[str, Optional[str]] = {}
    for n in TOOL_URLS:
        found[n] = _find_tool(n)
    # CRISPRdigger is often installed without the .pl suffix
    if found.get("CRISPRDigger.pl") is None:
        found["CRISPRDigger.pl"] = _find_tool("CRISPRDigger")
    return found


def require_tool(name: str) -> str:
    """Return the path to *name* or raise with a helpful message."""
    path = _find_tool(name)
    if path is None:
        hints = "\n".join(f"  - {tool:<16s}{url}" for tool, url in TOOL_URLS.items())
        raise EnvironmentError(
            f"Required external tool '{name}' was not found on PATH.\n"
            f"Please install it and make sure it is accessible.\n{hints}\n"
        )
    return path


# ---------------------------------------------------------------------------
# System resource helpers
# ---------------------------------------------------------------------------


def available_memory_gb() -> float:
    """Return available physical memory in GiB."""
    return psutil.virtual_memory().available / (1024**3)


def total_memory_gb() -> float:
    """Return total physical memory in GiB."""
    return psutil.virtual_memory().total / (1024**3)


def default_threads() -> int:
    """Sensible default thread count (leave 1–2 cores free)."""
    n = multiprocessing.cpu_count()
    return max(1, n - 2)


# ---------------------------------------------------------------------------
# Pipeline configuration dataclass
# ---------------------------------------------------------------------------

DE_METHODS = ("edger", "deseq2", "limma")


@dataclass
class DexAnnoConfig:
    """Master configuration object passed through both pipelines."""

    # --- I/O ---
    output_dir: Path = field(default_factory=lambda: Path("dexanno_output"))
    temp_dir: Optional[Path] = None  # defaults to output_dir / "tmp"
    log_file: Optional[Path] = None  # defaults to output_dir / "dexanno.log"

    # --- Computing resources ---
    threads: int = field(default_factory=default_threads)
    max_memory_gb: float = field(default_factory=lambda: min(total_memory_gb() * 0.8, 28.0))

    # --- Read counting (featureCounts) ---
    annotation: Optional[Path] = None  # GTF / GFF / SAF
    annotation_format: str = "GTF"  # GTF | SAF
    feature_type: str = "exon"  # -t
    attribute: str = "gene_id"  # -g
    paired_end: bool = False
    strandedness: int = 0  # 0 unstranded, 1 stranded, 2 reversely stranded
    featurecounts_extra_args: str = ""

    # --- Differential expression (R) ---
    de_method: str = "edger"  # edger | deseq2 | limma
    group_col: str = "group"
    fdr: float = 0.05
    min_abs_lfc: float = 0.0
    min_count: int = 10  # filterByExpr(min.count=)
    rscript: str = "Rscript"

    # --- rRNA (MeTaxa2) ---
    metaxa2_genes: tuple[str, ...] = ("ssu", "lsu")
    metaxa2_cpu: int = 1  # extra threads rarely help for one genome

    # --- ncRNA (cmscan / Rfam) ---
    rfam_cm: Optional[Path] = None
    rfam_clanin: Optional[Path] = None
    cmscan_extra_args: str = ""

    # --- CRISPR (CRISPRdigger) ---
    crisprdigger: str = "CRISPRDigger.pl"

    # --- Visualisation ---
    top_n: int = 20
    plot_format: str = "png"  # png | pdf | svg
    dpi: int = 300

    def __post_init__(self) -> None:
        self.output_dir = Path(self.output_dir)
        if self.temp_dir is None:
            self.temp_dir = self.output_dir / "tmp"
        else:
            self.temp_dir = Path(self.temp_dir)
        if self.log_file is None:
            self.log_file = self.output_dir / "dexanno.log"
        else:
            self.log_file = Path(self.log_file)
        self.de_method = self.de_method.lower()
        if self.de_method not in DE_METHODS:
            raise ValueError(f"Unknown DE method '{self.de_method}'. Choose from: {DE_METHODS}")
        if self.strandedness not in (0, 1, 2):
            raise ValueError(f"strandedness must be 0, 1 or 2 (got {self.strandedness})")
        if self.rfam_cm is not None:
            self.rfam_cm = Path(self.rfam_cm)
            if self.rfam_clanin is None:
                self.rfam_clanin = self.rfam_cm.parent / "Rfam.clanin"
        if self.rfam_clanin is not None:
            self.rfam_clanin = Path(self.rfam_clanin)
        if self.annotation is not None:
            self.annotation = Path(self.annotation)

    def ensure_dirs(self) -> None:
        """Create output and temp directories if they do not exist."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.temp_dir.mkdir(parents=True, exist_ok=True)

    @property
    def system_summary(self) -> str:
        mem = total_memory_gb()
        cpu = multiprocessing.cpu_count()
        return (
            f"OS={platform.system()} {platform.release()}  "
            f"CPUs={cpu}  RAM={mem:.1f} GiB  "
            f"Threads={self.threads}  MaxMem={self.max_memory_gb:.1f} GiB"
        )
