"""
Feature aggregation. Merges the rRNA, tRNA, ncRNA and CRISPR calls
into one table and writes it as GFF3.

Every annotation parser in dexanno returns a DataFrame with
:data:`FEATURE_COLUMNS`; coordinates are 1-based and inclusive with
``start <= end`` whatever the strand, as in GFF3.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional
from urllib.parse import quote, unquote

import numpy as np
import pandas as pd

from dexanno.utils import ensure_parent, get_logger

FEATURE_COLUMNS = ["seqid", "source", "type", "start", "end", "score", "strand", "product", "note"]

# column 9 reserves ; = & , and %
_GFF_SAFE = " /:.()-_+|[]*'"


def empty_features() -> pd.DataFrame:
    return pd.DataFrame({c: pd.Series(dtype="object") for c in FEATURE_COLUMNS})


def make_feature(
    seqid: str,
    source: str,
    type_: str,
    start: int,
    end: int,
    strand: str = "+",
    *,
    score: float = np.nan,
    product: str = "",
    note: str = "",
) -> dict:
    """Build one feature row, swapping coordinates when start > end."""
    start, end = int(start), int(end)
    if start > end:
        start, end = end, start
    if strand not in ("+", "-", "."):
        raise ValueError(f"Invalid strand '{strand}'")
    return {
        "seqid": str(seqid),
        "source": source,
        "type": type_,
        "start": start,
        "end": end,
        "score": score,
        "strand": strand,
        "product": product,
        "note": note,
    }


def features_frame(rows: Iterable[dict]) -> pd.DataFrame:
    rows = list(rows)
    if not rows:
        return empty_features()
    df = pd.DataFrame(rows)
    for c in FEATURE_COLUMNS:
        if c not in df.columns:
            df[c] = np.nan if c == "score" else ""
    return df[FEATURE_COLUMNS]


def merge_features(frames: Iterable[pd.DataFrame]) -> pd.DataFrame:
    """
    Concatenate per-tool feature tables, sort them along each sequence and
    assign stable IDs (``rRNA_1``, ``tRNA_1``, …) in that order.
    """
    frames = [f for f in frames if f is not None and len(f)]
    if not frames:
        merged = empty_features()
        merged.insert(0, "id", pd.Series(dtype="object"))
        return merged
    merged = pd.concat([f[FEATURE_COLUMNS] for f in frames], ignore_index=True)
    merged["start"] = merged["start"].astype("int64")
    merged["end"] = merged["end"].astype("int64")
    merged = merged.sort_values(["seqid", "start", "end", "type"], kind="mergesort").reset_index(drop=True)
    counter = merged.groupby("type").cumcount() + 1
    merged.insert(0, "id", merged["type"].astype(str) + "_" + counter.astype(str))
    return merged


def feature_summary(df: pd.DataFrame) -> pd.DataFrame:
    """Number of features per source and type."""
    if df.empty:
        return pd.DataFrame(columns=["source", "type", "count"])
    return (
        df.groupby(["source", "type"]).size().rename("count").reset_index()
        .sort_values(["source", "type"]).reset_index(drop=True)
    )


# ---------------------------------------------------------------------------
# GFF3
# ---------------------------------------------------------------------------


def _attr(value) -> str:
    return quote(str(value), safe=_GFF_SAFE)


def to_gff3(
    df: pd.DataFrame,
    path: Path,
    *,
    seq_lengths: Optional[dict[str, int]] = None,
) -> Path:
    """Write features (with an ``id`` column, see :func:`merge_features`) as GFF3."""
    log = get_logger()
    path = ensure_parent(Path(path))
    if "id" not in df.columns:
        df = merge_features([df])

    with open(path, "w", encoding="utf-8") as fh:
        fh.write("##gff-version 3\n")
        for seqid, length in (seq_lengths or {}).items():
            fh.write(f"##sequence-region {seqid} 1 {length}\n")
        for row in df.itertuples(index=False):
            attrs = [f"ID={_attr(row.id)}"]
            if row.product:
                attrs.append(f"product={_attr(row.product)}")
            if row.note:
                attrs.append(f"Note={_attr(row.note)}")
            score = "." if pd.isna(row.score) else f"{float(row.score):g}"
            fh.write(
                "\t".join(
                    [
                        str(row.seqid),
                        str(row.source),
                        str(row.type),
                        str(int(row.start)),
                        str(int(row.end)),
                        score,
                        str(row.strand),
                        ".",
                        ";".join(attrs),
                    ]
                )
                + "\n"
            )
    log.info(f"Wrote {len(df):,} features → {path}")
    return path


def read_gff3(path: Path) -> pd.DataFrame:
    """
    Read a GFF3 file into a DataFrame.

    Columns are the nine GFF fields (``attributes`` kept raw) plus one
    column per attribute key.  A ``##FASTA`` section ends the table.
    """
    cols = ["seqid", "source", "type", "start", "end", "score", "strand", "phase", "attributes"]
    rows = []
    with open(path, encoding="utf-8") as fh:
        for line in fh:
            if line.startswith("##FASTA"):
                break
            if not line.strip() or line.startswith("#"):
                continue
            parts = line.rstrip("\n").split("\t")
            if len(parts) != 9:
                continue
            row = dict(zip(cols, parts))
            for item in parts[8].split(";"):
                if "=" in item:
                    key, value = item.split("=", 1)
                    row.setdefault(key.strip(), unquote(value.strip()))
            rows.append(row)
    df = pd.DataFrame(rows, columns=None if rows else cols)
    if len(df):
        df["start"] = df["start"].astype("int64")
        df["end"] = df["end"].astype("int64")
        df["score"] = pd.to_numeric(df["score"].replace(".", np.nan), errors="coerce")
    return df
