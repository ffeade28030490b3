"""
Non-coding RNA detection module: wraps **cmscan** (Infernal) against
the Rfam covariance-model library.

The search follows the Rfam genome-annotation recipe::

    cmscan --cpu N -Z <Z> --cut_ga --rfam --nohmmonly \\
           --tblout genome.tblout --fmt 2 --clanin Rfam.clanin --oclan \\
           Rfam.cm genome.fna > genome.cmscan

``-Z`` is the search space in megabases and drives every E-value.  Rfam
defines it as twice the genome length (both strands) divided by 10^6;
a guessed value makes significance meaningless, so it is always
computed from the FASTA here.

With ``--fmt 2 --clanin`` cmscan marks hits that overlap a better hit
from the same clan with ``=`` in the ``olp`` column; those are dropped.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

import pandas as pd

from dexanno.config import DexAnnoConfig, require_tool
from dexanno.features import features_frame, make_feature
from dexanno.utils import genome_size, genome_stem, get_logger, run_cmd

SOURCE = "Infernal"

CM_INDEX_SUFFIXES = (".i1m", ".i1i", ".i1f", ".i1p")

TBLOUT_COLUMNS = [
    "idx",
    "target_name",
    "target_accession",
    "query_name",
    "query_accession",
    "clan_name",
    "mdl",
    "mdl_from",
    "mdl_to",
    "seq_from",
    "seq_to",
    "strand",
    "trunc",
    "pass",
    "gc",
    "bias",
    "score",
    "evalue",
    "inc",
    "olp",
    "anyidx",
    "afrct1",
    "afrct2",
    "winidx",
    "wfrct1",
    "wfrct2",
    "description",
]

# Families already covered by MeTaxa2 (SSU/LSU) and Aragorn (tRNA/tmRNA)
REDUNDANT_FAMILIES = re.compile(r"^(SSU_rRNA|LSU_rRNA|tRNA$|tRNA-Sec$|tmRNA)")


def cmscan_z(genome: Path) -> float:
    """Search-space size (Mb) for ``cmscan -Z``: both strands of the genome."""
    total = genome_size(genome)
    if total == 0:
        raise ValueError(f"Genome {genome} contains no sequence")
    return total * 2 / 1e6


def ensure_cmpress(cm: Path) -> Path:
    """Press *cm* with ``cmpress`` unless all four index files exist."""
    log = get_logger()
    cm = Path(cm)
    if not cm.exists():
        raise FileNotFoundError(f"Covariance model file not found: {cm}")
    missing = [s for s in CM_INDEX_SUFFIXES if not cm.with_name(cm.name + s).exists()]
    if not missing:
        return cm
    cmpress = require_tool("cmpress")
    log.info(f"Indexing {cm.name} (missing {', '.join(missing)})")
    run_cmd([cmpress, "-F", str(cm)], desc="cmpress covariance models")
    return cm


def run_cmscan(
    genome: Path,
    rfam_cm: Path,
    output_dir: Path,
    *,
    clanin: Optional[Path] = None,
    cfg: Optional[DexAnnoConfig] = None,
) -> Path:
    """
    Search *genome* against Rfam.

    Returns the ``.tblout`` path; the full report goes to ``.cmscan``.
    """
    log = get_logger()
    if cfg is None:
        cfg = DexAnnoConfig()

    cmscan = require_tool("cmscan")
    ensure_cmpress(rfam_cm)
    clanin = Path(clanin) if clanin else cfg.rfam_clanin
    if clanin is None or not Path(clanin).exists():
        raise FileNotFoundError(
            f"Rfam clan file not found ({clanin}). Run 'dexanno download rfam' first."
        )

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    stem = genome_stem(genome)
    tblout = output_dir / f"{stem}.tblout"
    report = output_dir / f"{stem}.cmscan"

    if tblout.exists():
        log.info(f"cmscan output already exists, skipping: {tblout.name}")
        return tblout

    z = cmscan_z(genome)
    log.info(f"cmscan search space Z = {z:.6f} Mb")
    cmd = [
        cmscan,
        "--cpu",
        str(cfg.threads),
        "-Z",
        f"{z:.6f}",
        "--cut_ga",
        "--rfam",
        "--nohmmonly",
        "--tblout",
        str(tblout),
        "--fmt",
        "2",
        "--clanin",
        str(clanin),
        "--oclan",
    ]
    if cfg.cmscan_extra_args:
        cmd.extend(cfg.cmscan_extra_args.split())
    cmd.extend([str(rfam_cm), str(genome)])

    run_cmd(cmd, desc="cmscan Rfam search", stdout_path=report)
    return tblout


def parse_cmscan_tblout(path: Path, *, drop_overlaps: bool = True) -> pd.DataFrame:
    """
    Parse a ``cmscan --fmt 2 --tblout`` table.

    Returns one row per hit with :data:`TBLOUT_COLUMNS`; numeric fields
    are converted.  Lower-scoring clan overlaps (``olp == "="``) are
    removed unless *drop_overlaps* is False.
    """
    rows = []
    with open(path, encoding="utf-8") as fh:
        for line in fh:
            if line.startswith("#") or not line.strip():
                continue
            parts = line.split(None, len(TBLOUT_COLUMNS) - 1)
            if len(parts) < len(TBLOUT_COLUMNS) - 1:
                raise ValueError(
                    f"{path}: expected a --fmt 2 table with {len(TBLOUT_COLUMNS)} columns, "
                    f"got {len(parts)}"
                )
            if len(parts) == len(TBLOUT_COLUMNS) - 1:
                parts.append("")
            parts[-1] = parts[-1].strip()
            rows.append(parts)
    df = pd.DataFrame(rows, columns=TBLOUT_COLUMNS)
    if df.empty:
        return df
    for c in ("idx", "mdl_from", "mdl_to", "seq_from", "seq_to"):
        df[c] = df[c].astype("int64")
    for c in ("gc", "bias", "score", "evalue"):
        df[c] = df[c].astype(float)
    if drop_overlaps:
        df = df[df["olp"] != "="].reset_index(drop=True)
    return df


def classify_rfam(target_name: str, description: str = "") -> str:
    """Map an Rfam family to a feature type."""
    name = target_name
    desc = description.lower()
    if re.match(r"^tRNA", name):
        return "tRNA"
    if name.startswith("tmRNA"):
        return "tmRNA"
    if "rRNA" in name:
        return "rRNA"
    if "riboswitch" in desc:
        return "riboswitch"
    if "ribozyme" in desc or "intron" in desc:
        return "ribozyme"
    if name.startswith("RNaseP"):
        return "RNase_P_RNA"
    if "SRP" in name:
        return "SRP_RNA"
    if name.startswith("CRISPR"):
        return "direct_repeat"
    if "antitoxin" in desc or "antisense" in desc:
        return "antisense_RNA"
    return "ncRNA"


def tblout_to_features(df: pd.DataFrame, *, drop_redundant: bool = False) -> pd.DataFrame:
    """
    Convert cmscan hits into features.

    With *drop_redundant*, families that MeTaxa2 and Aragorn already
    annotate (SSU/LSU rRNA, tRNA, tmRNA) are left out; 5S and 5.8S rRNA
    are kept since only cmscan finds them.
    """
    rows = []
    for hit in df.itertuples(index=False):
        if drop_redundant and REDUNDANT_FAMILIES.match(hit.target_name):
            continue
        note = f"rfam={hit.target_accession};evalue={hit.evalue:g}"
        if hit.trunc not in ("no", "-"):
            note += f";truncated={hit.trunc}"
        rows.append(
            make_feature(
                hit.query_name,
                SOURCE,
                classify_rfam(hit.target_name, hit.description),
                hit.seq_from,
                hit.seq_to,
                hit.strand,
                score=float(hit.score),
                product=hit.description or hit.target_name,
                note=note,
            )
        )
    return features_frame(rows)


def detect_ncrna(
    genome: Path,
    output_dir: Path,
    *,
    cfg: Optional[DexAnnoConfig] = None,
    drop_redundant: bool = True,
) -> pd.DataFrame:
    """Run cmscan against Rfam and return ncRNA features."""
    log = get_logger()
    if cfg is None:
        cfg = DexAnnoConfig()
    if cfg.rfam_cm is None:
        raise ValueError("Rfam database not set. Use --rfam-cm or 'dexanno download rfam' first.")
    tblout = run_cmscan(genome, cfg.rfam_cm, output_dir, clanin=cfg.rfam_clanin, cfg=cfg)
    hits = parse_cmscan_tblout(tblout)
    df = tblout_to_features(hits, drop_redundant=drop_redundant)
    log.info(f"cmscan: {len(hits)} hits → {len(df)} ncRNA features")
    return df
