"""
Fitted model result tables.

Both engines return a DEResult whose table shares the columns
``log2FoldChange, lfcSE, stat, pvalue, padj, filtered`` so the concordance
step can treat them alike. Genes the engine did not test (NaN adjusted
p-value, e.g. independent filtering or Cook's outliers) carry
``filtered=True`` instead of being read as non-significant.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from .design import Contrast

logger = logging.getLogger(__name__)

RESULT_COLUMNS = ["log2FoldChange", "lfcSE", "stat", "pvalue", "padj", "filtered"]


def standardize_table(table: pd.DataFrame, extra_columns: Optional[List[str]] = None) -> pd.DataFrame:
    """Order the shared result columns first and mark untested genes."""
    table = table.copy()
    table.index = table.index.astype(str)
    table.index.name = "gene_id"
    for column in RESULT_COLUMNS[:-1]:
        if column not in table.columns:
            table[column] = np.nan
    table["filtered"] = table["padj"].isna()
    extra = [c for c in (extra_columns or []) if c in table.columns]
    return table[extra + RESULT_COLUMNS]


def significant_genes(table: pd.DataFrame, alpha: float) -> List[str]:
    """
    Gene IDs with adjusted p-value below ``alpha``, ascending by padj.

    Ties are broken by gene ID so repeated calls return the same list.
    """
    if not 0 < alpha <= 1:
        raise ValueError(f"alpha must be in (0, 1], got {alpha}")
    tested = table.loc[~table["filtered"] & (table["padj"] < alpha), ["padj"]]
    ordered = (
        tested.rename_axis("gene_id")
        .reset_index()
        .sort_values(["padj", "gene_id"], kind="mergesort")
    )
    return ordered["gene_id"].astype(str).tolist()


@dataclass
class DEResult:
    """Per-gene results of one engine for one study and contrast."""

    engine: str
    contrast: Contrast
    table: pd.DataFrame
    alpha: float
    design: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def significant_genes(self, alpha: Optional[float] = None) -> List[str]:
        return significant_genes(self.table, self.alpha if alpha is None else alpha)

    @property
    def n_filtered(self) -> int:
        return int(self.table["filtered"].sum())

    def summary(self, alpha: Optional[float] = None) -> Dict[str, Any]:
        alpha = self.alpha if alpha is None else alpha
        genes = self.significant_genes(alpha)
        lfc = self.table.loc[genes, "log2FoldChange"]
        return {
            "engine": self.engine,
            "contrast": self.contrast.as_list(),
            "design": self.design,
            "alpha": alpha,
            "genes_tested": int((~self.table["filtered"]).sum()),
            "genes_filtered": self.n_filtered,
            "significant": len(genes),
            "up": int((lfc > 0).sum()),
            "down": int((lfc < 0).sum()),
            **self.details,
        }
