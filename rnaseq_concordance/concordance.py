"""
Agreement between the significant gene sets of two DE engines.
"""

import logging
from dataclasses import dataclass
from typing import FrozenSet, Iterable, Optional

import numpy as np
import pandas as pd

from .results import DEResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConcordanceResult:
    """Shared and engine-specific significant genes for one study."""

    shared: FrozenSet[str]
    only_a: FrozenSet[str]
    only_b: FrozenSet[str]
    label_a: str = "a"
    label_b: str = "b"

    @property
    def union(self) -> FrozenSet[str]:
        return self.shared | self.only_a | self.only_b

    @property
    def jaccard(self) -> float:
        """Jaccard index of the two sets; 0.0 when both are empty."""
        union = self.union
        return len(self.shared) / len(union) if union else 0.0

    def to_frame(self) -> pd.DataFrame:
        """One row per gene in either set with membership flags."""
        genes = sorted(self.union)
        df = pd.DataFrame(
            {
                self.label_a: np.array([g in self.shared or g in self.only_a for g in genes], dtype=bool),
                self.label_b: np.array([g in self.shared or g in self.only_b for g in genes], dtype=bool),
            },
            index=pd.Index(genes, name="gene_id", dtype=object),
        )
        df["category"] = np.select(
            [df[self.label_a] & df[self.label_b], df[self.label_a]],
            ["shared", f"{self.label_a}_only"],
            default=f"{self.label_b}_only",
        )
        return df

    def summary(self) -> dict:
        return {
            "shared": len(self.shared),
            f"{self.label_a}_only": len(self.only_a),
            f"{self.label_b}_only": len(self.only_b),
            "jaccard": round(self.jaccard, 4),
        }


def compare_gene_sets(
    genes_a: Iterable[str],
    genes_b: Iterable[str],
    label_a: str = "a",
    label_b: str = "b",
) -> ConcordanceResult:
    """
    Intersect two gene sets by identifier.

    Empty input is valid and yields an empty intersection.
    """
    set_a = frozenset(str(g) for g in genes_a)
    set_b = frozenset(str(g) for g in genes_b)
    return ConcordanceResult(
        shared=set_a & set_b,
        only_a=set_a - set_b,
        only_b=set_b - set_a,
        label_a=label_a,
        label_b=label_b,
    )


def compare_results(
    result_a: DEResult,
    result_b: DEResult,
    alpha_a: Optional[float] = None,
    alpha_b: Optional[float] = None,
) -> ConcordanceResult:
    """
    Compare the significant gene sets of two engines.

    Each side uses its own result's threshold unless overridden; pass the
    same value for both to compare at equal stringency.
    """
    genes_a = result_a.significant_genes(alpha_a)
    genes_b = result_b.significant_genes(alpha_b)
    concordance = compare_gene_sets(genes_a, genes_b, result_a.engine, result_b.engine)
    logger.info(
        f"{result_a.engine}: {len(genes_a)}, {result_b.engine}: {len(genes_b)}, "
        f"shared: {len(concordance.shared)} (Jaccard {concordance.jaccard:.3f})"
    )
    return concordance


def direction_agreement(result_a: DEResult, result_b: DEResult, genes: Iterable[str]) -> float:
    """
    Fraction of ``genes`` whose log2 fold changes have the same sign in both results.

    Returns NaN for an empty gene list.
    """
    genes = sorted(set(genes))
    if not genes:
        return float("nan")
    lfc_a = np.sign(result_a.table.loc[genes, "log2FoldChange"].to_numpy(dtype=float))
    lfc_b = np.sign(result_b.table.loc[genes, "log2FoldChange"].to_numpy(dtype=float))
    return float(np.mean(lfc_a == lfc_b))
