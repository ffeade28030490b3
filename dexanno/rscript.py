"""
R bridge: runs edgeR, DESeq2 and limma-voom through ``Rscript``.

Every statistical step (dispersion estimation, GLM fitting, empirical
Bayes moderation, TMM) happens inside R.  Python only writes the input
tables (see :meth:`dexanno.counts.CountSet.to_dir`), drops one of the
scripts below next to them, and runs it with the working directory set
to that folder.

Scripts take positional arguments::

    Rscript --vanilla de_<method>.R <group_col> <reference> <treatment> <min_count> [covariates]

and write ``de_results.tsv`` and ``norm_factors.tsv``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence

from dexanno.config import DE_METHODS, DexAnnoConfig
from dexanno.utils import get_logger, run_cmd

R_PACKAGES = {
    "edger": ["edgeR"],
    "deseq2": ["DESeq2"],
    "limma": ["limma", "edgeR"],
}

_COMMON = r"""
args <- commandArgs(trailingOnly = TRUE)
group_col <- args[1]
ref <- make.names(args[2])
treat <- make.names(args[3])
min_count <- as.numeric(args[4])
covariates <- if (length(args) >= 5 && nzchar(args[5])) strsplit(args[5], ",")[[1]] else character(0)

counts <- as.matrix(read.delim("counts.tsv", row.names = 1, check.names = FALSE))
genes <- read.delim("genes.tsv", row.names = 1, check.names = FALSE)
samples <- read.delim("samples.tsv", row.names = 1, check.names = FALSE, colClasses = "character")
lib <- read.delim("lib_size.tsv", row.names = 1, check.names = FALSE)

# counts columns, sample rows and gene rows are matched by position
stopifnot(identical(colnames(counts), rownames(samples)))
stopifnot(identical(rownames(counts), rownames(genes)))
stopifnot(identical(colnames(counts), rownames(lib)))

group <- relevel(factor(make.names(samples[[group_col]])), ref = ref)
design_df <- data.frame(group = group)
for (cv in covariates) design_df[[cv]] <- factor(samples[[cv]])
design_formula <- as.formula(paste("~0 +", paste(c("group", covariates), collapse = " + ")))
design <- model.matrix(design_formula, data = design_df)
colnames(design) <- make.names(sub("^group", "", colnames(design)))
contrast <- paste0(treat, " - ", ref)

write_tsv <- function(df, path) {
  write.table(df, path, sep = "\t", quote = FALSE, row.names = FALSE)
}
"""

_EDGER = r"""
suppressPackageStartupMessages(library(edgeR))

extra <- samples[, setdiff(colnames(samples), c("group", "lib.size", "norm.factors")), drop = FALSE]
y <- DGEList(counts = counts, lib.size = lib[colnames(counts), "lib_size"],
             samples = extra, genes = genes, group = group)
keep <- filterByExpr(y, design = design, min.count = min_count)
y <- y[keep, , keep.lib.sizes = TRUE]
y <- calcNormFactors(y, method = "TMM")
y <- estimateDisp(y, design)
fit <- glmQLFit(y, design)
con <- makeContrasts(contrasts = contrast, levels = design)
res <- glmQLFTest(fit, contrast = con)
tab <- topTags(res, n = Inf, sort.by = "none")$table

write_tsv(data.frame(gene_id = rownames(tab), tab, check.names = FALSE), "de_results.tsv")
write_tsv(data.frame(sample = colnames(y), norm_factors = y$samples$norm.factors), "norm_factors.tsv")
"""

_DESEQ2 = r"""
suppressPackageStartupMessages(library(DESeq2))

coldata <- design_df
rownames(coldata) <- colnames(counts)
deseq_formula <- as.formula(paste("~", paste(c(covariates, "group"), collapse = " + ")))
dds <- DESeqDataSetFromMatrix(countData = round(counts), colData = coldata, design = deseq_formula)
keep <- rowSums(counts(dds) >= min_count) >= min(table(coldata$group))
dds <- dds[keep, ]
# small or very uniform gene sets defeat the dispersion trend fit
dds <- tryCatch(DESeq(dds), error = function(e) {
  message("DESeq2 trend fit failed, using gene-wise dispersions: ", conditionMessage(e))
  dds <- estimateSizeFactors(dds)
  dds <- estimateDispersionsGeneEst(dds)
  dispersions(dds) <- mcols(dds)$dispGeneEst
  nbinomWaldTest(dds)
})
res <- results(dds, contrast = c("group", treat, ref))
tab <- cbind(genes[rownames(res), , drop = FALSE], as.data.frame(res))

write_tsv(data.frame(gene_id = rownames(res), tab, check.names = FALSE), "de_results.tsv")
write_tsv(data.frame(sample = colnames(dds), norm_factors = sizeFactors(dds)), "norm_factors.tsv")
"""

_LIMMA = r"""
suppressPackageStartupMessages({
  library(limma)
  library(edgeR)
})

y <- DGEList(counts = counts, lib.size = lib[colnames(counts), "lib_size"], genes = genes, group = group)
keep <- filterByExpr(y, design = design, min.count = min_count)
y <- y[keep, , keep.lib.sizes = TRUE]
y <- calcNormFactors(y, method = "TMM")
v <- voom(y, design)
fit <- lmFit(v, design)
con <- makeContrasts(contrasts = contrast, levels = design)
fit2 <- eBayes(contrasts.fit(fit, con))
tab <- topTable(fit2, coef = 1, number = Inf, sort.by = "none")

write_tsv(data.frame(gene_id = rownames(tab), tab, check.names = FALSE), "de_results.tsv")
write_tsv(data.frame(sample = colnames(y), norm_factors = y$samples$norm.factors), "norm_factors.tsv")
"""

_BODIES = {"edger": _EDGER, "deseq2": _DESEQ2, "limma": _LIMMA}


def render_script(method: str) -> str:
    """Return the complete R source for *method* (edger, deseq2 or limma)."""
    method = method.lower()
    if method not in _BODIES:
        raise ValueError(f"Unknown DE method '{method}'. Choose from: {DE_METHODS}")
    return f"# dexanno: {method} differential expression\n" + _COMMON + _BODIES[method]


def check_r_packages(
    packages: Sequence[str],
    *,
    cfg: Optional[DexAnnoConfig] = None,
) -> dict[str, bool]:
    """Report which R *packages* can be loaded by ``Rscript``."""
    if cfg is None:
        cfg = DexAnnoConfig()
    pkgs = ", ".join(f'"{p}"' for p in packages)
    expr = f"cat(sapply(c({pkgs}), requireNamespace, quietly = TRUE), sep = '\\t')"
    result = run_cmd([cfg.rscript, "--vanilla", "-e", expr], capture=True)
    flags = result.stdout.strip().split("\t")
    return {p: f.strip().upper() == "TRUE" for p, f in zip(packages, flags)}


def run_rscript(
    method: str,
    workdir: Path,
    args: Sequence[str],
    *,
    cfg: Optional[DexAnnoConfig] = None,
) -> Path:
    """
    Write the *method* script into *workdir* and execute it there.

    Returns the path of ``de_results.tsv``.
    """
    log = get_logger()
    if cfg is None:
        cfg = DexAnnoConfig()

    workdir = Path(workdir)
    script = workdir / f"de_{method}.R"
    script.write_text(render_script(method), encoding="utf-8")

    result = run_cmd(
        [cfg.rscript, "--vanilla", script.name, *[str(a) for a in args]],
        desc=f"Running {method} in R",
        capture=True,
        cwd=workdir,
    )
    if result.stderr:
        (workdir / f"de_{method}.Rlog").write_text(result.stderr, encoding="utf-8")
        for line in result.stderr.splitlines():
            log.debug(f"R: {line}")

    out = workdir / "de_results.tsv"
    if not out.exists():
        raise RuntimeError(f"Rscript finished but did not write {out}")
    return out
