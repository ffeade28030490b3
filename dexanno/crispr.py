"""
CRISPR array detection module: wraps **CRISPRdigger**.

CRISPRdigger finds repeat/spacer arrays in a genome and reports them as
GFF3: one parent feature per array with the direct repeats (and
sometimes spacers) as children.  Only the arrays are kept as features;
the number of repeats and the consensus repeat go into the note.
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Optional

import pandas as pd

from dexanno.config import DexAnnoConfig, require_tool
from dexanno.features import features_frame, make_feature, read_gff3
from dexanno.utils import genome_stem, get_logger, run_cmd

SOURCE = "CRISPRdigger"

ARRAY_TYPES = {"CRISPR", "CRISPR_array", "repeat_region", "crispr_array"}
REPEAT_TYPES = {"direct_repeat", "repeat_unit", "CRISPR_repeat", "repeat"}
CONSENSUS_KEYS = ("rpt_unit_seq", "Consensus", "consensus", "DR", "repeat")


def _crisprdigger_cmd(cfg: DexAnnoConfig) -> list[str]:
    """Resolve the CRISPRdigger entry point (a Perl script)."""
    script = Path(cfg.crisprdigger)
    if script.exists():
        path = str(script)
    else:
        path = shutil.which(cfg.crisprdigger) or require_tool("CRISPRDigger.pl")
    if path.endswith(".pl"):
        return [require_tool("perl"), path]
    return [path]


def run_crisprdigger(
    genome: Path,
    output_dir: Path,
    *,
    cfg: Optional[DexAnnoConfig] = None,
) -> Path:
    """Run CRISPRdigger on *genome*; returns the GFF3 it produced."""
    log = get_logger()
    if cfg is None:
        cfg = DexAnnoConfig()

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    prefix = output_dir / genome_stem(genome)
    gff = prefix.with_name(prefix.name + ".gff3")

    if gff.exists():
        log.info(f"CRISPRdigger output already exists, skipping: {gff.name}")
        return gff

    cmd = [*_crisprdigger_cmd(cfg), "-i", str(Path(genome).resolve()), "-o", str(prefix.resolve())]
    run_cmd(cmd, desc="CRISPRdigger array search", cwd=output_dir)

    if not gff.exists():
        produced = sorted(output_dir.glob("*.gff3")) + sorted(output_dir.glob("*.gff"))
        if produced:
            produced[0].rename(gff)
        else:
            # no arrays found: CRISPRdigger leaves no GFF behind
            gff.write_text("##gff-version 3\n", encoding="utf-8")
            log.warning(f"CRISPRdigger found no CRISPR arrays in {Path(genome).name}")
    return gff


def parse_crispr_gff(path: Path) -> pd.DataFrame:
    """
    Convert a CRISPRdigger GFF3 into CRISPR array features.

    Arrays are the parent records; repeats are counted through their
    ``Parent`` attribute.  When a file has repeats but no parent records,
    repeats sharing a ``Parent`` are collapsed into one array.
    """
    gff = read_gff3(path)
    if gff.empty:
        return features_frame([])

    repeats = gff[gff["type"].isin(REPEAT_TYPES)]
    n_repeats: dict[str, int] = {}
    if "Parent" in repeats.columns:
        n_repeats = repeats["Parent"].value_counts().to_dict()

    arrays = gff[gff["type"].isin(ARRAY_TYPES)]
    rows = []
    if len(arrays):
        for _, rec in arrays.iterrows():
            aid = rec.get("ID")
            count = n_repeats.get(aid) if isinstance(aid, str) else None
            if count is None and pd.notna(rec.get("Number_of_repeats", None)):
                count = int(rec["Number_of_repeats"])
            consensus = next(
                (str(rec[k]) for k in CONSENSUS_KEYS if k in rec.index and pd.notna(rec[k])), ""
            )
            rows.append(_array_row(rec["seqid"], rec["start"], rec["end"], rec["strand"], count, consensus))
    elif len(repeats) and "Parent" in repeats.columns:
        for parent, grp in repeats.groupby("Parent"):
            rows.append(
                _array_row(grp["seqid"].iloc[0], grp["start"].min(), grp["end"].max(), grp["strand"].iloc[0], len(grp), "")
            )
    return features_frame(rows)


def _array_row(seqid, start, end, strand, n_repeats, consensus) -> dict:
    notes = []
    if n_repeats:
        notes.append(f"repeats={n_repeats}")
    if consensus:
        notes.append(f"consensus={consensus}")
    return make_feature(
        seqid,
        SOURCE,
        "CRISPR",
        start,
        end,
        strand if strand in ("+", "-") else ".",
        product="CRISPR array",
        note=";".join(notes),
    )


def detect_crispr(
    genome: Path,
    output_dir: Path,
    *,
    cfg: Optional[DexAnnoConfig] = None,
) -> pd.DataFrame:
    """Run CRISPRdigger and return CRISPR array features."""
    log = get_logger()
    gff = run_crisprdigger(genome, output_dir, cfg=cfg)
    df = parse_crispr_gff(gff)
    log.info(f"CRISPRdigger: {len(df)} CRISPR array(s)")
    return df
