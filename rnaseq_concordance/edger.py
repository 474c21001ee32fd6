"""
Alternative differential expression with edgeR (through rpy2).

TMM normalization, the common -> trended -> tagwise dispersion estimates,
the GLM fit, the likelihood ratio test and the BH adjustment run in R. The
design matrix is built in Python with the same treatment coding used for the
rank check, so the tested coefficient is exactly the pairwise contrast.
"""

import logging
from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd

from .design import Contrast, format_design, prepare_design
from .errors import ModelFitError
from .results import DEResult, standardize_table

logger = logging.getLogger(__name__)

ENGINE = "edger"
DEFAULT_ALPHA = 0.05

EDGER_LRT = """
function(counts, genes, samples, group, design, design_names, coef) {
    suppressPackageStartupMessages(library(edgeR))
    rownames(counts) <- genes
    colnames(counts) <- samples
    colnames(design) <- design_names
    y <- DGEList(counts=counts, group=group)
    y <- calcNormFactors(y, method="TMM")
    y <- estimateGLMCommonDisp(y, design)
    y <- estimateGLMTrendedDisp(y, design)
    y <- estimateGLMTagwiseDisp(y, design)
    fit <- glmFit(y, design)
    lrt <- glmLRT(fit, coef=coef)
    tt <- topTags(lrt, n=Inf, adjust.method="BH", sort.by="none")$table
    data.frame(
        gene_id=rownames(tt),
        logFC=tt$logFC,
        logCPM=tt$logCPM,
        LR=tt$LR,
        PValue=tt$PValue,
        FDR=tt$FDR,
        tagwise=y$tagwise.dispersion[match(rownames(tt), rownames(y))],
        common=rep(y$common.dispersion, nrow(tt)),
        stringsAsFactors=FALSE
    )
}
"""


def edger_available() -> bool:
    """True when rpy2 imports and the edgeR R package can be loaded."""
    try:
        from rpy2.robjects.packages import isinstalled
    except (ImportError, RuntimeError, OSError):
        return False
    try:
        return bool(isinstalled("edgeR"))
    except Exception as e:
        logger.debug(f"Could not query R for edgeR: {e}")
        return False


def _run_edger_lrt(
    counts: pd.DataFrame,
    group: Sequence[str],
    design: pd.DataFrame,
    coef: int,
) -> pd.DataFrame:
    """Call the edgeR pipeline and return its table as a DataFrame."""
    try:
        import rpy2.robjects as ro
        from rpy2.rinterface_lib.embedded import RRuntimeError
        from rpy2.robjects import numpy2ri, pandas2ri
        from rpy2.robjects.conversion import localconverter
    except (ImportError, RuntimeError, OSError) as e:
        raise ModelFitError(f"rpy2 is not available: {e}") from e

    converter = ro.default_converter + numpy2ri.converter + pandas2ri.converter
    try:
        with localconverter(converter):
            edger_lrt = ro.r(EDGER_LRT)
            table = edger_lrt(
                counts.to_numpy(dtype=np.int32),
                ro.StrVector(list(counts.index.astype(str))),
                ro.StrVector(list(counts.columns.astype(str))),
                ro.StrVector(list(group)),
                design.to_numpy(dtype=float),
                ro.StrVector(list(design.columns.astype(str))),
                coef,
            )
    except RRuntimeError as e:
        raise ModelFitError(f"edgeR failed: {str(e).strip()}") from e

    if not isinstance(table, pd.DataFrame):
        raise ModelFitError(f"Unexpected edgeR result type {type(table).__name__}")
    return table


def run_edger(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    design: str,
    contrast: Contrast,
    alpha: float = DEFAULT_ALPHA,
    declared_levels: Optional[Dict[str, Sequence[str]]] = None,
) -> DEResult:
    """
    Fit an edgeR GLM and run a likelihood ratio test for one contrast.

    Args:
        counts: Gene x sample count matrix
        metadata: Sample metadata indexed by sample ID
        design: Additive design formula, same as for pyDESeq2
        contrast: Pairwise contrast to test
        alpha: FDR threshold for the significant gene set
        declared_levels: Optional level vocabulary per factor

    Returns:
        DEResult with one row per gene

    Raises:
        ModelFitError: If the design is not full rank, the contrast cannot be
            tested, or R/edgeR fail
    """
    aligned, factors, design_matrix = prepare_design(counts, metadata, design, contrast, declared_levels)
    formula = format_design(factors)
    # R indices are 1-based
    coef = list(design_matrix.columns).index(contrast.coefficient) + 1

    logger.info(
        f"Running edgeR {formula} on {aligned.shape[0]} genes x {aligned.shape[1]} samples "
        f"(LRT on {contrast.coefficient})"
    )

    group = metadata.loc[aligned.columns, contrast.factor].astype(str)
    raw = _run_edger_lrt(aligned, group, design_matrix, coef)

    raw = raw.set_index("gene_id")
    raw.index = raw.index.astype(str)
    common_dispersion = float(raw["common"].iloc[0]) if len(raw) else float("nan")

    table = raw.rename(
        columns={
            "logFC": "log2FoldChange",
            "LR": "stat",
            "PValue": "pvalue",
            "FDR": "padj",
            "tagwise": "dispersion",
        }
    )
    table = standardize_table(table, extra_columns=["logCPM", "dispersion"])
    missing = set(aligned.index) - set(table.index)
    if missing:
        raise ModelFitError(f"edgeR returned no result for {len(missing)} genes")
    table = table.loc[list(aligned.index)]

    result = DEResult(
        engine=ENGINE,
        contrast=contrast,
        table=table,
        alpha=alpha,
        design=formula,
        details={
            "coefficients": list(design_matrix.columns),
            "tested_coefficient": contrast.coefficient,
            "common_dispersion": common_dispersion,
        },
    )
    logger.info(
        f"edgeR {contrast}: {len(result.significant_genes())} genes with FDR < {alpha}"
    )
    return result
