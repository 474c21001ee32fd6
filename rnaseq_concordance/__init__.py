"""
RNA-seq differential expression concordance workflow.

Builds per-study sample metadata from aligned read files, counts reads per
gene, runs a pyDESeq2 and an edgeR differential expression analysis on the
same design and compares the resulting significant gene sets.
"""

__version__ = "1.0.0"

from .errors import PipelineError, ConfigurationError, CountingError, ModelFitError

__all__ = [
    "__version__",
    "PipelineError",
    "ConfigurationError",
    "CountingError",
    "ModelFitError",
]
