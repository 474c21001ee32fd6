"""
Model-based differential expression with pyDESeq2.

Size-factor normalization, dispersion shrinkage towards the fitted trend,
the negative binomial GLM fit, the Wald test, optional LFC shrinkage and the
Benjamini-Hochberg adjustment are all delegated to pyDESeq2. This module
validates the design and contrast before fitting and maps the engine output
onto the shared result table.
"""

import logging
from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd

from .design import Contrast, factor_levels, format_design, prepare_design
from .errors import ModelFitError
from .results import DEResult, standardize_table

logger = logging.getLogger(__name__)

ENGINE = "deseq2"
DEFAULT_ALPHA = 0.1


def _engine_metadata(metadata: pd.DataFrame, factors: Sequence[str], contrast: Contrast) -> pd.DataFrame:
    """Design columns as strings, contrast denominator as the reference category."""
    meta = metadata[list(factors)].astype(str).copy()
    meta.index = meta.index.astype(str)
    levels = factor_levels(meta, contrast.factor, reference=contrast.denominator)
    meta[contrast.factor] = pd.Categorical(meta[contrast.factor], categories=levels)
    return meta


def shrinkage_coefficient(lfc_columns: Sequence[str], contrast: Contrast) -> str:
    """
    Name of the fitted coefficient equal to the pairwise contrast.

    Shrinkage acts on a single coefficient; a coefficient mixing more than
    the two contrasted levels would be a different comparison.

    Raises:
        ModelFitError: If no fitted coefficient encodes the contrast
    """
    candidates = [
        f"{contrast.factor}[T.{contrast.numerator}]",
        f"{contrast.factor}_{contrast.numerator}_vs_{contrast.denominator}",
    ]
    for name in candidates:
        if name in lfc_columns:
            return name
    raise ModelFitError(
        f"Cannot shrink {contrast}: no fitted coefficient equals this contrast "
        f"(coefficients: {list(lfc_columns)})"
    )


def run_deseq2(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    design: str,
    contrast: Contrast,
    alpha: float = DEFAULT_ALPHA,
    shrink_lfc: bool = False,
    n_cpus: int = 1,
    declared_levels: Optional[Dict[str, Sequence[str]]] = None,
) -> DEResult:
    """
    Fit a negative binomial GLM with pyDESeq2 and test one contrast.

    Args:
        counts: Gene x sample count matrix
        metadata: Sample metadata indexed by sample ID
        design: Additive design formula, e.g. ``"~ batch + condition"``
        contrast: Pairwise contrast to test
        alpha: Adjusted p-value threshold used for independent filtering and
            the significant gene set
        shrink_lfc: Apply apeGLM-style shrinkage to the contrast's LFC
        n_cpus: Worker processes for pyDESeq2
        declared_levels: Optional level vocabulary per factor

    Returns:
        DEResult with one row per gene

    Raises:
        ModelFitError: If the design is not full rank, the contrast cannot be
            tested or the engine fails
    """
    aligned, factors, _ = prepare_design(counts, metadata, design, contrast, declared_levels)
    formula = format_design(factors)

    from pydeseq2.dds import DeseqDataSet
    from pydeseq2.default_inference import DefaultInference
    from pydeseq2.ds import DeseqStats

    logger.info(f"Running pyDESeq2 {formula} on {aligned.shape[0]} genes x {aligned.shape[1]} samples")

    # pyDESeq2 expects samples x genes
    engine_counts = aligned.T.astype(int)
    engine_meta = _engine_metadata(metadata, factors, contrast).loc[engine_counts.index]
    inference = DefaultInference(n_cpus=n_cpus)

    try:
        dds = DeseqDataSet(
            counts=engine_counts,
            metadata=engine_meta,
            design=formula,
            refit_cooks=True,
            inference=inference,
            quiet=True,
        )
        dds.deseq2()
    except (ValueError, KeyError, np.linalg.LinAlgError) as e:
        raise ModelFitError(f"pyDESeq2 fit failed for {formula}: {e}") from e

    lfc_columns = list(dds.varm["LFC"].columns)
    coefficient = shrinkage_coefficient(lfc_columns, contrast) if shrink_lfc else None

    try:
        stats = DeseqStats(
            dds,
            contrast=contrast.as_list(),
            alpha=alpha,
            inference=inference,
            quiet=True,
        )
        stats.summary()
        if coefficient is not None:
            logger.info(f"Shrinking log fold changes for {coefficient}")
            stats.lfc_shrink(coeff=coefficient)
    except (ValueError, KeyError) as e:
        raise ModelFitError(f"pyDESeq2 could not test {contrast}: {e}") from e

    table = standardize_table(stats.results_df, extra_columns=["baseMean"])
    missing = set(aligned.index) - set(table.index)
    if missing:
        raise ModelFitError(f"pyDESeq2 returned no result for {len(missing)} genes")
    table = table.loc[list(aligned.index)]

    result = DEResult(
        engine=ENGINE,
        contrast=contrast,
        table=table,
        alpha=alpha,
        design=formula,
        details={
            "lfc_shrinkage": coefficient,
            "coefficients": lfc_columns,
        },
    )
    logger.info(
        f"pyDESeq2 {contrast}: {len(result.significant_genes())} genes with padj < {alpha} "
        f"({result.n_filtered} filtered)"
    )
    return result
