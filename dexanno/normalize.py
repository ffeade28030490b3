"""
Expression-abundance normalisations: CPM, RPKM and TPM.

These are the closed-form scalings the tutorials export alongside the
DE results.  TMM normalisation factors themselves come from edgeR
(``calcNormFactors``) and are passed in as *norm_factors*; they are not
estimated here.
"""

from __future__ import annotations

from typing import Optional

import numpy as np
import pandas as pd

from dexanno.config import DexAnnoConfig
from dexanno.counts import CountSet


def _effective_lib_size(
    counts: pd.DataFrame,
    lib_size: Optional[pd.Series],
    norm_factors: Optional[pd.Series],
) -> pd.Series:
    lib = counts.sum(axis=0) if lib_size is None else lib_size.reindex(counts.columns)
    if lib.isna().any():
        raise ValueError("lib_size does not cover every sample in the count matrix")
    lib = lib.astype(float)
    if norm_factors is not None:
        nf = norm_factors.reindex(counts.columns)
        if nf.isna().any():
            raise ValueError("norm_factors does not cover every sample in the count matrix")
        lib = lib * nf.astype(float)
    if (lib <= 0).any():
        raise ValueError(f"Non-positive library size for: {lib[lib <= 0].index.tolist()}")
    return lib


def cpm(
    counts: pd.DataFrame,
    lib_size: Optional[pd.Series] = None,
    norm_factors: Optional[pd.Series] = None,
    *,
    log: bool = False,
    prior_count: float = 2.0,
) -> pd.DataFrame:
    """
    Counts per million.

    With ``log=True`` the edgeR convention is followed: *prior_count* is
    scaled by each library's size relative to the mean library size
    before the log2 is taken, so small libraries are not over-shrunk.
    """
    lib = _effective_lib_size(counts, lib_size, norm_factors)
    values = counts.astype(float)
    if not log:
        return values.div(lib, axis=1) * 1e6
    prior = prior_count * lib / lib.mean()
    adj_lib = lib + 2 * prior
    return np.log2(values.add(prior, axis=1).div(adj_lib, axis=1) * 1e6)


def _check_lengths(counts: pd.DataFrame, lengths: pd.Series) -> pd.Series:
    lengths = lengths.reindex(counts.index)
    if lengths.isna().any():
        missing = lengths[lengths.isna()].index[:5].tolist()
        raise ValueError(f"No gene length for {lengths.isna().sum()} genes, e.g. {missing}")
    lengths = lengths.astype(float)
    if (lengths <= 0).any():
        raise ValueError("Gene lengths must be positive")
    return lengths


def rpkm(
    counts: pd.DataFrame,
    lengths: pd.Series,
    lib_size: Optional[pd.Series] = None,
    norm_factors: Optional[pd.Series] = None,
    *,
    log: bool = False,
    prior_count: float = 2.0,
) -> pd.DataFrame:
    """Reads per kilobase per million mapped reads."""
    kb = _check_lengths(counts, lengths) / 1e3
    values = cpm(counts, lib_size, norm_factors, log=log, prior_count=prior_count)
    if log:
        return values.sub(np.log2(kb), axis=0)
    return values.div(kb, axis=0)


def tpm(counts: pd.DataFrame, lengths: pd.Series) -> pd.DataFrame:
    """Transcripts per million: length-normalise first, then scale to 1e6."""
    kb = _check_lengths(counts, lengths) / 1e3
    rate = counts.astype(float).div(kb, axis=0)
    totals = rate.sum(axis=0)
    if (totals <= 0).any():
        raise ValueError(f"Samples with no counts: {totals[totals <= 0].index.tolist()}")
    return rate.div(totals, axis=1) * 1e6


def filter_low_counts(
    countset: CountSet,
    min_count: Optional[int] = None,
    min_samples: Optional[int] = None,
    *,
    group_col: Optional[str] = None,
    cfg: Optional[DexAnnoConfig] = None,
) -> CountSet:
    """
    Drop genes that are not expressed in enough samples.

    A gene is kept when its CPM reaches ``min_count`` scaled to the median
    library size in at least *min_samples* samples.  *min_count* and
    *group_col* default to ``cfg.min_count`` and ``cfg.group_col``;
    *min_samples* defaults to the size of the smallest group (or 1 when
    the default group column is absent).
    """
    if cfg is None:
        cfg = DexAnnoConfig()
    if min_count is None:
        min_count = cfg.min_count
    if min_samples is None:
        col = group_col or cfg.group_col
        if col in countset.samples.columns:
            min_samples = int(countset.samples[col].value_counts().min())
        elif group_col is not None:
            raise ValueError(f"Group column '{group_col}' not in sample metadata")
        else:
            min_samples = 1
    lib = countset.lib_size.astype(float)
    threshold = min_count / (lib.median() / 1e6)
    values = cpm(countset.counts, countset.lib_size)
    keep = (values >= threshold).sum(axis=1) >= min_samples
    return countset.subset(genes=countset.counts.index[keep])


def normalised_tables(
    countset: CountSet,
    norm_factors: Optional[pd.Series] = None,
) -> dict[str, pd.DataFrame]:
    """CPM, log-CPM and, when gene lengths are known, RPKM and TPM."""
    out = {
        "cpm": cpm(countset.counts, countset.lib_size, norm_factors),
        "logcpm": cpm(countset.counts, countset.lib_size, norm_factors, log=True),
    }
    if "Length" in countset.genes.columns:
        lengths = countset.genes["Length"]
        out["rpkm"] = rpkm(countset.counts, lengths, countset.lib_size, norm_factors)
        out["tpm"] = tpm(countset.counts, lengths)
    return out
