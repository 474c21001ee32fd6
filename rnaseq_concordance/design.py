"""
Design formula and contrast handling shared by both DE engines.

Both pipelines fit the same additive design (for example ``~ batch + condition``)
and test the same pairwise contrast. The checks here run before any engine is
called so that a rank-deficient design or an untestable contrast fails with
ModelFitError instead of producing NaN-filled results.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

from .errors import ConfigurationError, ModelFitError

logger = logging.getLogger(__name__)

_TERM_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")


@dataclass(frozen=True)
class Contrast:
    """Pairwise comparison ``numerator`` vs ``denominator`` of one design factor."""

    factor: str
    numerator: str
    denominator: str

    @classmethod
    def from_sequence(cls, values: Sequence[str]) -> "Contrast":
        values = [str(v) for v in values]
        if len(values) != 3:
            raise ConfigurationError(
                f"Contrast must be [factor, numerator, denominator], got {values}; "
                "contrasts spanning more than two levels are not supported"
            )
        factor, numerator, denominator = values
        if numerator == denominator:
            raise ConfigurationError(f"Contrast compares level '{numerator}' with itself")
        return cls(factor, numerator, denominator)

    @property
    def coefficient(self) -> str:
        """Design matrix column encoding this contrast when the denominator is the reference."""
        return f"{self.factor}_{self.numerator}"

    def as_list(self) -> List[str]:
        return [self.factor, self.numerator, self.denominator]

    def __str__(self) -> str:
        return f"{self.factor}: {self.numerator} vs {self.denominator}"


def parse_design(formula: str) -> List[str]:
    """
    Parse an additive design formula into its factor names.

    Args:
        formula: Formula such as ``"~ batch + condition"``

    Returns:
        Factor names in formula order

    Raises:
        ConfigurationError: If the formula is not a purely additive main-effects design
    """
    text = formula.strip()
    if not text.startswith("~"):
        raise ConfigurationError(f"Design formula must start with '~': {formula!r}")

    terms = [term.strip() for term in text[1:].split("+")]
    if not terms or any(not term for term in terms):
        raise ConfigurationError(f"Empty term in design formula: {formula!r}")

    for term in terms:
        if not _TERM_RE.match(term):
            raise ConfigurationError(
                f"Unsupported design term {term!r} in {formula!r}; only additive factors are allowed"
            )

    if len(set(terms)) != len(terms):
        raise ConfigurationError(f"Repeated factor in design formula: {formula!r}")

    return terms


def format_design(factors: Iterable[str]) -> str:
    return "~" + " + ".join(factors)


def align_counts(counts: pd.DataFrame, metadata: pd.DataFrame) -> pd.DataFrame:
    """
    Reorder count matrix columns to match metadata rows by sample ID.

    Raises:
        ConfigurationError: If the two do not describe the same samples
    """
    count_samples = [str(c) for c in counts.columns]
    meta_samples = [str(s) for s in metadata.index]

    if len(set(count_samples)) != len(count_samples):
        raise ConfigurationError("Duplicate sample columns in count matrix")

    missing = sorted(set(meta_samples) - set(count_samples))
    extra = sorted(set(count_samples) - set(meta_samples))
    if missing or extra:
        raise ConfigurationError(
            f"Count matrix and metadata disagree on samples (missing counts: {missing}, "
            f"no metadata: {extra})"
        )

    aligned = counts.copy()
    aligned.columns = count_samples
    return aligned[meta_samples]


def validate_contrast(metadata: pd.DataFrame, factors: Sequence[str], contrast: Contrast) -> None:
    """
    Check that a contrast is testable with the given design.

    Raises:
        ModelFitError: If the factor is not in the design or a level has no samples
    """
    if contrast.factor not in factors:
        raise ModelFitError(
            f"Contrast factor '{contrast.factor}' is not part of the design {format_design(factors)}"
        )
    if contrast.factor not in metadata.columns:
        raise ModelFitError(f"Metadata has no column '{contrast.factor}'")

    observed = set(metadata[contrast.factor].astype(str))
    for level in (contrast.numerator, contrast.denominator):
        if level not in observed:
            raise ModelFitError(
                f"Contrast level '{level}' of factor '{contrast.factor}' has no samples "
                f"(observed levels: {sorted(observed)})"
            )


def factor_levels(
    metadata: pd.DataFrame,
    factor: str,
    reference: Optional[str] = None,
    declared: Optional[Sequence[str]] = None,
) -> List[str]:
    """Levels of a factor, reference level first, remaining levels sorted."""
    levels = list(declared) if declared else sorted(set(metadata[factor].astype(str)))
    levels = [str(level) for level in levels]
    if reference is None:
        return levels
    if reference not in levels:
        raise ModelFitError(f"Reference level '{reference}' is not a level of '{factor}'")
    return [reference] + [level for level in levels if level != reference]


def build_design_matrix(
    metadata: pd.DataFrame,
    factors: Sequence[str],
    reference_levels: Optional[Dict[str, str]] = None,
    declared_levels: Optional[Dict[str, Sequence[str]]] = None,
) -> pd.DataFrame:
    """
    Build a treatment-coded design matrix with an intercept.

    Columns are ``Intercept`` followed by ``<factor>_<level>`` for every
    non-reference level. A declared level without samples yields an all-zero
    column, which the rank check rejects.

    Args:
        metadata: Sample metadata, one row per sample
        factors: Design factors in formula order
        reference_levels: Optional reference level per factor
        declared_levels: Optional full level vocabulary per factor

    Returns:
        Design matrix indexed like ``metadata``
    """
    reference_levels = reference_levels or {}
    declared_levels = declared_levels or {}

    columns = {"Intercept": np.ones(len(metadata))}
    for factor in factors:
        if factor not in metadata.columns:
            raise ModelFitError(f"Design factor '{factor}' is missing from sample metadata")
        values = metadata[factor].astype(str)
        levels = factor_levels(metadata, factor, reference_levels.get(factor), declared_levels.get(factor))
        unknown = sorted(set(values) - set(levels))
        if unknown:
            raise ModelFitError(f"Factor '{factor}' has undeclared levels {unknown}")
        for level in levels[1:]:
            columns[f"{factor}_{level}"] = (values == level).astype(float).to_numpy()

    return pd.DataFrame(columns, index=metadata.index)


def check_full_rank(design: pd.DataFrame) -> None:
    """
    Raise ModelFitError if the design matrix is not of full column rank.
    """
    n_samples, n_coef = design.shape
    if n_samples <= n_coef:
        raise ModelFitError(
            f"Design has {n_coef} coefficients but only {n_samples} samples; "
            "no residual degrees of freedom"
        )

    empty = [col for col in design.columns if not design[col].any()]
    if empty:
        raise ModelFitError(f"Design columns without samples: {empty}")

    rank = np.linalg.matrix_rank(design.to_numpy(dtype=float))
    if rank < n_coef:
        raise ModelFitError(
            f"Design matrix is not full rank (rank {rank} < {n_coef} coefficients); "
            f"columns: {list(design.columns)}"
        )


def prepare_design(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    formula: str,
    contrast: Contrast,
    declared_levels: Optional[Dict[str, Sequence[str]]] = None,
):
    """
    Common pre-fit checks for both engines.

    Returns:
        Tuple of (aligned counts, design factors, design matrix)
    """
    factors = parse_design(formula)
    aligned = align_counts(counts, metadata)
    validate_contrast(metadata, factors, contrast)
    design = build_design_matrix(
        metadata,
        factors,
        reference_levels={contrast.factor: contrast.denominator},
        declared_levels=declared_levels,
    )
    check_full_rank(design)
    if contrast.coefficient not in design.columns:
        raise ModelFitError(f"No design coefficient encodes contrast {contrast}")
    logger.debug(f"Design {format_design(factors)}: {design.shape[1]} coefficients, {design.shape[0]} samples")
    return aligned, factors, design
