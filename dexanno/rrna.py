"""
rRNA detection module: wraps **MeTaxa2**.

MeTaxa2 searches each input sequence with profile HMMs built from
conserved rRNA regions and reports where the SSU (16S/18S) or LSU
(23S/28S) gene sits and which domain or organelle it most likely comes
from.  One run per gene family::

    metaxa2 --cpu 1 -g ssu -i genome.fna -o <prefix>_ssu
    metaxa2 --cpu 1 -g lsu -i genome.fna -o <prefix>_lsu

MeTaxa2 can use several threads but a single genome rarely benefits, so
``--cpu`` defaults to 1 (``DexAnnoConfig.metaxa2_cpu``).
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

import pandas as pd

from dexanno.config import DexAnnoConfig, require_tool
from dexanno.features import features_frame, make_feature
from dexanno.utils import genome_stem, get_logger, run_cmd

SOURCE = "MeTaxa2"

ORIGINS = {
    "A": "Archaea",
    "B": "Bacteria",
    "E": "Eukaryota",
    "C": "Chloroplast",
    "M": "Mitochondria",
    "N": "Nucleomorph",
    "O": "Other",
}

# gene family → origin code → product name
PRODUCTS = {
    "ssu": {"A": "16S", "B": "16S", "C": "16S", "E": "18S", "M": "12S", "N": "18S"},
    "lsu": {"A": "23S", "B": "23S", "C": "23S", "E": "28S", "M": "16S", "N": "28S"},
}

_RANGE = re.compile(r"^(\d+)\s*-\s*(\d+)$")


def run_metaxa2(
    genome: Path,
    output_dir: Path,
    *,
    gene: str = "ssu",
    cfg: Optional[DexAnnoConfig] = None,
) -> Path:
    """
    Run MeTaxa2 on *genome* for one gene family (``ssu`` or ``lsu``).

    Returns the ``.extraction.results`` path.
    """
    log = get_logger()
    if cfg is None:
        cfg = DexAnnoConfig()
    gene = gene.lower()
    if gene not in PRODUCTS:
        raise ValueError(f"MeTaxa2 gene must be 'ssu' or 'lsu' (got '{gene}')")

    metaxa2 = require_tool("metaxa2")
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    prefix = output_dir / f"{genome_stem(genome)}_{gene}"
    results = prefix.with_name(prefix.name + ".extraction.results")

    if results.exists():
        log.info(f"MeTaxa2 {gene.upper()} output already exists, skipping: {results.name}")
        return results

    cmd = [
        metaxa2,
        "--cpu",
        str(cfg.metaxa2_cpu),
        "-g",
        gene,
        "-i",
        str(genome),
        "-o",
        str(prefix),
    ]
    run_cmd(cmd, desc=f"MeTaxa2 {gene.upper()} rRNA detection")
    if not results.exists():
        # MeTaxa2 writes nothing to .extraction.results when no rRNA is found
        results.touch()
        log.warning(f"MeTaxa2 found no {gene.upper()} rRNA in {Path(genome).name}")
    return results


def _positions(fields: list[str]) -> list[int]:
    """Pull coordinate values from the region columns of a result row."""
    out: list[int] = []
    for f in fields:
        f = f.strip()
        m = _RANGE.match(f)
        if m:
            out.extend([int(m.group(1)), int(m.group(2))])
        elif f.isdigit():
            out.append(int(f))
    return out


def parse_metaxa2_extraction(path: Path, gene: str = "ssu") -> pd.DataFrame:
    """
    Parse a MeTaxa2 ``.extraction.results`` table into features.

    Each row is ``ID, length, origin, …`` followed by the positions of the
    conserved regions found on that sequence.  The feature spans the
    outermost positions; rows whose positions run backwards are on the
    minus strand.  Rows without any positions are reported with a warning
    and skipped.
    """
    log = get_logger()
    gene = gene.lower()
    rows = []
    with open(path, encoding="utf-8") as fh:
        for line in fh:
            if not line.strip() or line.startswith("#") or line.lower().startswith("id\t"):
                continue
            parts = line.rstrip("\n").split("\t")
            if len(parts) < 3:
                continue
            seqid, origin = parts[0].split()[0], parts[2].strip()[:1].upper()
            pos = _positions(parts[3:])
            if not pos:
                log.warning(f"MeTaxa2 row for {seqid} has no region positions; skipped")
                continue
            strand = "-" if pos[0] > pos[-1] else "+"
            product = PRODUCTS[gene].get(origin, "SSU" if gene == "ssu" else "LSU")
            rows.append(
                make_feature(
                    seqid,
                    SOURCE,
                    "rRNA",
                    min(pos),
                    max(pos),
                    strand,
                    product=f"{product} ribosomal RNA",
                    note=f"origin={ORIGINS.get(origin, origin)}",
                )
            )
    return features_frame(rows)


def parse_metaxa2_taxonomy(path: Path) -> pd.DataFrame:
    """
    Parse a MeTaxa2 ``.taxonomy.txt`` file.

    Columns: seqid, taxonomy (``;``-separated lineage), identity,
    length, reliability. Missing trailing fields are left empty.
    """
    rows = []
    with open(path, encoding="utf-8") as fh:
        for line in fh:
            parts = line.rstrip("\n").split("\t")
            if len(parts) < 2 or not parts[0]:
                continue
            parts += [""] * (5 - len(parts))
            rows.append(
                {
                    "seqid": parts[0].split()[0],
                    "taxonomy": parts[1].strip(),
                    "identity": pd.to_numeric(parts[2], errors="coerce"),
                    "length": pd.to_numeric(parts[3], errors="coerce"),
                    "reliability": pd.to_numeric(parts[4], errors="coerce"),
                }
            )
    return pd.DataFrame(rows, columns=["seqid", "taxonomy", "identity", "length", "reliability"])


def detect_rrna(
    genome: Path,
    output_dir: Path,
    *,
    cfg: Optional[DexAnnoConfig] = None,
) -> pd.DataFrame:
    """Run MeTaxa2 for every configured gene family and return all rRNA features."""
    log = get_logger()
    if cfg is None:
        cfg = DexAnnoConfig()
    frames = []
    for gene in cfg.metaxa2_genes:
        results = run_metaxa2(genome, output_dir, gene=gene, cfg=cfg)
        df = parse_metaxa2_extraction(results, gene)
        log.info(f"MeTaxa2 {gene.upper()}: {len(df)} rRNA gene(s)")
        frames.append(df)
    frames = [f for f in frames if len(f)]
    if not frames:
        return features_frame([])
    return pd.concat(frames, ignore_index=True)
