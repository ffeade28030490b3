"""
dexanno: command-line glue for RNA-seq differential expression and
genomic feature annotation.

Expression:  BAM → featureCounts → edgeR / DESeq2 / limma-voom (Rscript)
Annotation:  FASTA → MeTaxa2 + Aragorn + cmscan (Rfam) + CRISPRdigger → GFF3
"""

__version__ = "0.2.0"
__author__ = "dexanno Team"
