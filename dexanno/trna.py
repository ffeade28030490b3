"""
tRNA / tmRNA detection module: wraps **Aragorn**.

Invocation follows the standard settings for a bacterial genome::

    aragorn -m -t -gcstd -l -a -q -rn -fon -o <out> genome.fna

  • ``-t`` / ``-m``  search for tRNA and tmRNA genes
  • ``-gcstd``       standard genetic code
  • ``-l``           assume a linear sequence
  • ``-a``           print the tRNA domain of tmRNA genes
  • ``-q``           do not print the configuration line
  • ``-rn``          repeat the sequence name before the summary
  • ``-fon``         FASTA output only (no summary), with sequence and
                     gene numbering in the header
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional, Sequence

import pandas as pd

from dexanno.config import DexAnnoConfig, require_tool
from dexanno.features import features_frame, make_feature
from dexanno.utils import genome_stem, get_logger, iter_fasta, run_cmd

SOURCE = "Aragorn"

ARAGORN_FLAGS = ["-m", "-t", "-gcstd", "-l", "-a", "-q", "-rn", "-fon"]

# >1-3 tRNA-Leu(caa) c[12345,12429]   (trailing sequence name optional)
# >1-4 tRNA-?(Ile|Met)(cat) [500,576]  (ambiguous isotype)
_FASTA_HEADER = re.compile(
    r"^>\s*(?:(?P<seq>\d+)-(?P<gene>\d+)\s+)?"
    r"(?P<name>(?:mt)?tRNA-(?:\?\([A-Za-z|]+\)|[^\s(]+)(?:\((?P<anticodon>[A-Za-z]+)\))?|tmRNA\S*)\s+"
    r"(?P<comp>c?)\[(?P<start>-?\d+),(?P<end>\d+)\](?:\s+(?P<rest>.*))?$"
)

# 1   tRNA-Ile              [225381,225457]   35   (gat)
_BATCH_LINE = re.compile(
    r"^\s*\d+\s+(?P<name>\S+)\s+(?P<comp>c?)\[(?P<start>-?\d+),(?P<end>\d+)\]\s*(?P<rest>.*)$"
)


def run_aragorn(
    genome: Path,
    output_dir: Path,
    *,
    cfg: Optional[DexAnnoConfig] = None,
) -> Path:
    """Run Aragorn on *genome*; returns the FASTA output path."""
    log = get_logger()
    if cfg is None:
        cfg = DexAnnoConfig()

    aragorn = require_tool("aragorn")
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    out_path = output_dir / f"{genome_stem(genome)}.aragorn.fasta"

    if out_path.exists():
        log.info(f"Aragorn output already exists, skipping: {out_path.name}")
        return out_path

    cmd = [aragorn, *ARAGORN_FLAGS, "-o", str(out_path), str(genome)]
    run_cmd(cmd, desc="Aragorn tRNA/tmRNA search")
    return out_path


def _product(name: str, anticodon: Optional[str]) -> tuple[str, str]:
    """Map an Aragorn gene name to (feature type, product)."""
    if name.startswith("tmRNA"):
        return "tmRNA", "transfer-messenger RNA"
    base = re.sub(r"\([A-Za-z]+\)$", "", name)
    if base.startswith("mt"):
        base = base[2:]
    if anticodon:
        return "tRNA", f"{base}({anticodon.lower()})"
    return "tRNA", base


def _seq_order(genome: Optional[Path], seqids: Optional[Sequence[str]]) -> list[str]:
    if seqids is not None:
        return list(seqids)
    if genome is not None:
        return [sid for sid, _ in iter_fasta(genome)]
    return []


def parse_aragorn_fasta(
    path: Path,
    *,
    genome: Optional[Path] = None,
    seqids: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """
    Parse Aragorn ``-fo``/``-fon`` FASTA output into features.

    Headers carry the gene name and coordinates; ``c[...]`` marks the
    complementary strand.  With ``-fon`` the sequence is identified by
    its 1-based position in the input, so either the *genome* FASTA or
    the ordered *seqids* is needed to recover the sequence name.  A name
    after the coordinates, when present, wins.
    """
    order = _seq_order(genome, seqids)
    rows = []
    with open(path, encoding="utf-8") as fh:
        for line in fh:
            if not line.startswith(">"):
                continue
            m = _FASTA_HEADER.match(line.strip())
            if not m:
                get_logger().warning(f"Skipping unrecognised Aragorn header: {line.strip()}")
                continue
            rest = (m.group("rest") or "").strip()
            if rest:
                seqid = rest.split()[0]
            elif m.group("seq") and order:
                idx = int(m.group("seq")) - 1
                if idx >= len(order):
                    raise ValueError(
                        f"Aragorn reports sequence #{idx + 1} but the genome has {len(order)} sequences"
                    )
                seqid = order[idx]
            elif len(order) == 1:
                seqid = order[0]
            else:
                raise ValueError(
                    "Cannot tell which sequence an Aragorn hit belongs to; "
                    "pass the genome FASTA used for the search"
                )
            type_, product = _product(m.group("name"), m.group("anticodon"))
            start = max(1, int(m.group("start")))
            rows.append(
                make_feature(
                    seqid,
                    SOURCE,
                    type_,
                    start,
                    int(m.group("end")),
                    "-" if m.group("comp") else "+",
                    product=product,
                )
            )
    return features_frame(rows)


def parse_aragorn_batch(path: Path) -> pd.DataFrame:
    """
    Parse Aragorn batch output (``-w``).

    Each ``>name`` line opens a sequence, followed by ``N genes found``
    and one numbered line per gene.  tRNA lines end with the anticodon
    in parentheses; tmRNA lines end with the tag peptide.
    """
    rows = []
    seqid: Optional[str] = None
    with open(path, encoding="utf-8") as fh:
        for line in fh:
            if line.startswith(">"):
                seqid = line[1:].split()[0] if line[1:].split() else ""
                continue
            m = _BATCH_LINE.match(line)
            if not m or seqid is None:
                continue
            name = m.group("name")
            rest = m.group("rest")
            ac = re.search(r"\(([A-Za-z]{3})\)", rest)
            type_, product = _product(name, ac.group(1) if ac and not name.startswith("tmRNA") else None)
            note = ""
            if type_ == "tmRNA":
                tag = rest.split()[-1] if rest.split() else ""
                note = f"tag_peptide={tag}" if tag else ""
            rows.append(
                make_feature(
                    seqid,
                    SOURCE,
                    type_,
                    max(1, int(m.group("start"))),
                    int(m.group("end")),
                    "-" if m.group("comp") else "+",
                    product=product,
                    note=note,
                )
            )
    return features_frame(rows)


def detect_trna(
    genome: Path,
    output_dir: Path,
    *,
    cfg: Optional[DexAnnoConfig] = None,
) -> pd.DataFrame:
    """Run Aragorn and return tRNA + tmRNA features."""
    log = get_logger()
    out = run_aragorn(genome, output_dir, cfg=cfg)
    df = parse_aragorn_fasta(out, genome=genome)
    n_trna = int((df["type"] == "tRNA").sum())
    n_tmrna = int((df["type"] == "tmRNA").sum())
    log.info(f"Aragorn: {n_trna} tRNA, {n_tmrna} tmRNA")
    return df
