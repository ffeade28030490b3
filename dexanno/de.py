"""
Differential expression module.

Runs one of three R workflows on a :class:`~dexanno.counts.CountSet`:

  • ``edger`` : DGEList → filterByExpr → TMM → estimateDisp →
    glmQLFit → glmQLFTest (quasi-likelihood F-test)
  • ``deseq2``: DESeqDataSetFromMatrix → DESeq → results (Wald test)
  • ``limma`` : DGEList → TMM → voom → lmFit → contrasts.fit → eBayes

Whatever the method, the result table is returned with the same column
names so that plots and downstream filters do not care which engine
produced it:

    gene_id, log_fc, mean_expr, statistic, p_value, fdr  (+ gene features)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from dexanno.config import DE_METHODS, DexAnnoConfig
from dexanno.counts import CountSet, check_r_names
from dexanno.rscript import run_rscript
from dexanno.utils import get_logger

RESULT_COLUMNS = ["gene_id", "log_fc", "mean_expr", "statistic", "p_value", "fdr"]

_COLUMN_MAPS = {
    "edger": {
        "logFC": "log_fc",
        "logCPM": "mean_expr",
        "F": "statistic",
        "PValue": "p_value",
        "FDR": "fdr",
    },
    "deseq2": {
        "log2FoldChange": "log_fc",
        "baseMean": "mean_expr",
        "stat": "statistic",
        "pvalue": "p_value",
        "padj": "fdr",
        "lfcSE": "lfc_se",
    },
    "limma": {
        "logFC": "log_fc",
        "AveExpr": "mean_expr",
        "t": "statistic",
        "P.Value": "p_value",
        "adj.P.Val": "fdr",
        "B": "log_odds",
    },
}


def standardise_results(df: pd.DataFrame, method: str) -> pd.DataFrame:
    """Rename engine-specific result columns to the shared schema."""
    method = method.lower()
    if method not in _COLUMN_MAPS:
        raise ValueError(f"Unknown DE method '{method}'. Choose from: {DE_METHODS}")
    mapping = _COLUMN_MAPS[method]
    required = [c for c, new in mapping.items() if new in RESULT_COLUMNS]
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ValueError(f"{method} result table lacks columns {missing}")

    out = df.rename(columns=mapping)
    if "gene_id" not in out.columns:
        out = out.reset_index().rename(columns={"index": "gene_id"})
    out["gene_id"] = out["gene_id"].astype(str)
    # DESeq2 reports NA padj for independently-filtered genes
    out["fdr"] = out["fdr"].fillna(1.0)
    out["p_value"] = out["p_value"].fillna(1.0)
    front = [c for c in RESULT_COLUMNS if c in out.columns]
    rest = [c for c in out.columns if c not in front]
    return out[front + rest].sort_values(["p_value", "gene_id"]).reset_index(drop=True)


@dataclass
class DEResult:
    """Parsed output of one differential expression run."""

    method: str
    reference: str
    treatment: str
    table: pd.DataFrame
    norm_factors: Optional[pd.Series] = None
    n_tested: int = 0
    n_input: int = 0
    paths: dict[str, Path] = field(default_factory=dict)

    @property
    def contrast(self) -> str:
        return f"{self.treatment}_vs_{self.reference}"

    def significant(self, fdr: float = 0.05, min_abs_lfc: float = 0.0) -> pd.DataFrame:
        t = self.table
        mask = (t["fdr"] < fdr) & (t["log_fc"].abs() >= min_abs_lfc)
        return t[mask].reset_index(drop=True)

    def summary(self, fdr: float = 0.05, min_abs_lfc: float = 0.0) -> str:
        sig = self.significant(fdr, min_abs_lfc)
        up = int((sig["log_fc"] > 0).sum())
        down = int((sig["log_fc"] < 0).sum())
        top = sig.head(5)[["gene_id", "log_fc", "fdr"]].to_string(index=False) if len(sig) else "(none)"
        return (
            f"Method: {self.method}  Contrast: {self.treatment} vs {self.reference}\n"
            f"Genes tested: {self.n_tested:,} / {self.n_input:,}\n"
            f"Significant (FDR < {fdr}, |logFC| >= {min_abs_lfc}): {len(sig):,} "
            f"({up:,} up, {down:,} down)\n"
            f"\nTop 5 genes:\n{top}"
        )


def check_design(countset: CountSet, group_col: str, reference: str, treatment: str) -> pd.Series:
    """
    Make sure the grouping column exists and both contrast levels have
    samples.  Returns the group sizes.
    """
    log = get_logger()
    if group_col not in countset.samples.columns:
        raise ValueError(
            f"Group column '{group_col}' not in sample metadata "
            f"(available: {list(countset.samples.columns)})"
        )
    groups = countset.samples[group_col].astype(str)
    if groups.isin(["", "nan"]).any():
        raise ValueError(f"Samples without a '{group_col}' value: {groups[groups.isin(['', 'nan'])].index.tolist()}")
    sizes = groups.value_counts()
    for level in (reference, treatment):
        if level not in sizes.index:
            raise ValueError(f"Level '{level}' not found in '{group_col}' (levels: {sorted(sizes.index)})")
    if reference == treatment:
        raise ValueError("Reference and treatment levels must differ")
    if (sizes < 2).any():
        log.warning(
            f"Groups without replicates: {sizes[sizes < 2].index.tolist()}; "
            "dispersion estimates will be unreliable"
        )
    mangled = check_r_names(sizes.index.tolist())
    if mangled:
        log.info(f"Group levels will be renamed by R make.names(): {mangled}")
    return sizes


def run_de(
    countset: CountSet,
    reference: str,
    treatment: str,
    output_dir: Path,
    *,
    group_col: Optional[str] = None,
    method: Optional[str] = None,
    covariates: Sequence[str] = (),
    cfg: Optional[DexAnnoConfig] = None,
) -> DEResult:
    """
    Test *treatment* against *reference* for every gene.

    Parameters
    ----------
    countset : CountSet
        Counts with sample metadata attached.
    reference, treatment : str
        Levels of *group_col* to compare (log fold-changes are
        treatment over reference).
    output_dir : Path
        Where R inputs, the script, its log and result tables go.
    covariates : sequence of str
        Extra sample-metadata columns added to the design (e.g. batch).

    Returns
    -------
    DEResult
    """
    log = get_logger()
    if cfg is None:
        cfg = DexAnnoConfig()
    method = (method or cfg.de_method).lower()
    group_col = group_col or cfg.group_col
    if method not in DE_METHODS:
        raise ValueError(f"Unknown DE method '{method}'. Choose from: {DE_METHODS}")

    countset.validate()
    sizes = check_design(countset, group_col, reference, treatment)
    for cv in covariates:
        if cv not in countset.samples.columns:
            raise ValueError(f"Covariate '{cv}' not in sample metadata")

    output_dir = Path(output_dir)
    workdir = output_dir / method
    workdir.mkdir(parents=True, exist_ok=True)
    final = output_dir / f"de_{method}_{treatment}_vs_{reference}.tsv"

    log.info(
        f"{method}: {treatment} vs {reference}  "
        f"({countset.n_genes:,} genes, groups {sizes.to_dict()})"
    )
    paths = {"inputs": workdir}
    countset.to_dir(workdir)
    raw = run_rscript(
        method,
        workdir,
        [group_col, reference, treatment, str(cfg.min_count), ",".join(covariates)],
        cfg=cfg,
    )
    paths["raw"] = raw

    table = standardise_results(pd.read_csv(raw, sep="\t"), method)
    table.to_csv(final, sep="\t", index=False)
    paths["table"] = final

    norm_factors = None
    nf_path = workdir / "norm_factors.tsv"
    if nf_path.exists():
        nf = pd.read_csv(nf_path, sep="\t")
        norm_factors = pd.Series(nf["norm_factors"].values, index=nf["sample"].astype(str), name="norm_factors")
        paths["norm_factors"] = nf_path

    result = DEResult(
        method=method,
        reference=reference,
        treatment=treatment,
        table=table,
        norm_factors=norm_factors,
        n_tested=len(table),
        n_input=countset.n_genes,
        paths=paths,
    )
    log.info(f"DE complete: {len(result.significant(cfg.fdr, cfg.min_abs_lfc)):,} significant genes")
    log.info(result.summary(cfg.fdr, cfg.min_abs_lfc))
    return result


def neg_log10(p: pd.Series) -> pd.Series:
    """-log10(p) with zeros clipped to the smallest positive float."""
    return -np.log10(p.clip(lower=np.finfo(float).tiny))
