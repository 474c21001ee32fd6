"""
Workflow orchestration.

Runs the stages in order for every study subset: registry -> counting ->
pyDESeq2 -> edgeR -> concordance. Each study's values are passed along
explicitly; nothing computed for one study is visible to another. A study
either produces a complete StudyResult or raises a PipelineError annotated
with the study and stage that failed.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from .concordance import ConcordanceResult, compare_results, direction_agreement
from .config import StudyConfig, WorkflowConfig, validate_alpha
from .counting import CountResult, build_count_matrix, load_count_matrix
from .deseq import run_deseq2
from .edger import run_edger
from .errors import ConfigurationError, PipelineError
from .registry import Sample, build_registry, discover_files, split_by_study, validate_conditions
from .results import DEResult
from .utils import create_output_dirs, save_metrics_json, validate_directory_exists, write_gene_table

logger = logging.getLogger(__name__)


@contextmanager
def stage(name: str, study: Optional[str] = None):
    """Annotate PipelineErrors raised inside the block with study and stage."""
    try:
        yield
    except PipelineError as e:
        raise e.with_context(study=study, stage=name)


@dataclass
class StudyResult:
    """Everything produced for one study subset."""

    study: str
    metadata: pd.DataFrame
    counts: CountResult
    deseq2: DEResult
    edger: DEResult
    concordance: ConcordanceResult

    def summary(self) -> Dict[str, Any]:
        return {
            "samples": len(self.metadata),
            "genes": len(self.counts.counts),
            "genes_removed_zero_count": self.counts.n_genes_removed,
            "assignment_rate": self.counts.assignment_rates,
            "deseq2": self.deseq2.summary(),
            "edger": self.edger.summary(),
            "concordance": self.concordance.summary(),
            "direction_agreement": direction_agreement(
                self.deseq2, self.edger, self.concordance.shared
            ),
        }


@dataclass
class WorkflowResult:
    studies: Dict[str, StudyResult] = field(default_factory=dict)
    failures: Dict[str, PipelineError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


def register_samples(config: WorkflowConfig) -> Dict[str, pd.DataFrame]:
    """
    Discover sample files and build one metadata table per study.

    Raises:
        ConfigurationError: Before any counting, if files and annotations disagree
    """
    with stage("registry"):
        files = discover_files(config.input_dir, config.pattern)
        samples: List[Sample] = build_registry(
            files, config.samples, delimiter=config.delimiter, field=config.sample_field
        )
        tables = split_by_study(samples, list(config.studies))
        for name, metadata in tables.items():
            if config.studies[name].conditions:
                validate_conditions(metadata, config.studies[name].conditions, name)
    return tables


def count_study(config: WorkflowConfig, study: str, metadata: pd.DataFrame) -> CountResult:
    if config.count_matrix is not None:
        logger.info(f"[{study}] Loading count matrix {config.count_matrix}")
        return load_count_matrix(config.count_matrix, metadata)

    work_dir = None
    if config.output_dir is not None:
        work_dir = config.output_dir / study / "featurecounts"
    return build_count_matrix(metadata, config.annotation, config.counting, work_dir)


def run_study(config: WorkflowConfig, study: StudyConfig, metadata: pd.DataFrame) -> StudyResult:
    """
    Run counting, both DE engines and the concordance step for one study.

    Raises:
        PipelineError: Annotated with the study and failing stage
    """
    name = study.name
    logger.info(f"[{name}] {len(metadata)} samples, design {study.design}, contrast {study.contrast}")

    with stage("counting", name):
        counts = count_study(config, name, metadata)

    with stage("deseq2", name):
        deseq2 = run_deseq2(
            counts.counts,
            metadata,
            study.design,
            study.contrast,
            alpha=config.deseq2_alpha,
            shrink_lfc=config.shrink_lfc,
            n_cpus=config.n_cpus,
            declared_levels=study.declared_levels,
        )

    with stage("edger", name):
        edger = run_edger(
            counts.counts,
            metadata,
            study.design,
            study.contrast,
            alpha=config.edger_alpha,
            declared_levels=study.declared_levels,
        )

    with stage("concordance", name):
        concordance = compare_results(deseq2, edger)

    return StudyResult(name, metadata, counts, deseq2, edger, concordance)


def export_study(result: StudyResult, output_dir: Path) -> Dict[str, Path]:
    """Write the study's tables as TSV files under ``output_dir``."""
    output_dir = validate_directory_exists(output_dir, create=True)
    written = {
        "metadata": output_dir / "metadata.tsv",
        "counts": write_gene_table(result.counts.counts, output_dir / "counts.tsv"),
        "deseq2": write_gene_table(result.deseq2.table, output_dir / "deseq2_results.tsv"),
        "edger": write_gene_table(result.edger.table, output_dir / "edger_results.tsv"),
        "concordance": write_gene_table(result.concordance.to_frame(), output_dir / "concordance.tsv"),
    }
    result.metadata.to_csv(written["metadata"], sep='\t', index=False)
    if not result.counts.statistics.empty:
        written["counting_summary"] = output_dir / "counting_summary.tsv"
        result.counts.statistics.to_csv(written["counting_summary"], sep='\t', index_label='status')
    return written


def run_workflow(config: WorkflowConfig, studies: Optional[List[str]] = None) -> WorkflowResult:
    """
    Run every (or the selected) study subset.

    Registry errors abort the whole run because no study can be trusted with
    mis-assigned samples. Errors in a later stage abort only that study.
    """
    validate_alpha(config.deseq2_alpha, "deseq2")
    validate_alpha(config.edger_alpha, "edger")
    tables = register_samples(config)
    selected = studies or list(config.studies)
    unknown = [name for name in selected if name not in config.studies]
    if unknown:
        raise ConfigurationError(f"Unknown studies: {unknown}")

    outputs = {}
    if config.output_dir is not None:
        outputs = create_output_dirs(config.output_dir, selected)

    result = WorkflowResult()
    for name in selected:
        try:
            study_result = run_study(config, config.studies[name], tables[name])
            if name in outputs:
                export_study(study_result, outputs[name])
        except PipelineError as e:
            logger.error(f"Study failed: {e}")
            result.failures[name] = e
            continue
        result.studies[name] = study_result

    if config.output_dir is not None:
        metrics = {
            "studies": {name: r.summary() for name, r in result.studies.items()},
            "failures": {name: str(e) for name, e in result.failures.items()},
        }
        save_metrics_json(metrics, config.output_dir / "metrics.json")

    logger.info(f"Completed {len(result.studies)} of {len(selected)} studies")
    return result
