"""
Count matrix construction.

This module runs featureCounts (Subread) once per aligned read file,
assembles the per-sample counts into a gene x sample matrix and drops genes
without reads. Sample files are counted in a thread pool; results are merged
by sample ID so the matrix columns always follow the study metadata rows.
"""

import concurrent.futures
import logging
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import pandas as pd

from .errors import CountingError
from .utils import validate_directory_exists, validate_file_exists, read_gene_table

logger = logging.getLogger(__name__)

ANNOTATION_LINES_CHECKED = 1000


@dataclass
class CountingParameters:
    """featureCounts options shared by every sample of a study."""

    feature_type: str = "exon"
    attribute_type: str = "gene_id"
    paired_end: bool = False
    min_fragment_length: int = 50
    max_fragment_length: int = 600
    strand_specific: int = 0
    threads: int = 1
    workers: int = 4
    executable: str = "featureCounts"

    def __post_init__(self):
        if self.strand_specific not in (0, 1, 2):
            raise ValueError(f"strand_specific must be 0, 1 or 2, got {self.strand_specific}")
        if self.min_fragment_length > self.max_fragment_length:
            raise ValueError("min_fragment_length is larger than max_fragment_length")

    def command(self, annotation: Path, output_file: Path, bam_file: Path) -> list:
        cmd = [
            self.executable,
            '-a', str(annotation),
            '-o', str(output_file),
            '-t', self.feature_type,
            '-g', self.attribute_type,
            '-s', str(self.strand_specific),
            '-T', str(self.threads),
        ]
        if self.paired_end:
            cmd += [
                '-p', '--countReadPairs', '-P',
                '-d', str(self.min_fragment_length),
                '-D', str(self.max_fragment_length),
            ]
        cmd.append(str(bam_file))
        return cmd


@dataclass
class CountResult:
    """Filtered count matrix plus the per-sample featureCounts summary."""

    counts: pd.DataFrame
    statistics: pd.DataFrame = field(default_factory=pd.DataFrame)
    n_genes_total: int = 0

    @property
    def n_genes_removed(self) -> int:
        return self.n_genes_total - len(self.counts)

    @property
    def assignment_rates(self) -> Dict[str, float]:
        """Fraction of reads assigned to a feature, per sample."""
        return assignment_rates(self.statistics)


def validate_annotation(annotation: Union[str, Path]) -> Path:
    """
    Check that a GTF/GFF annotation file is readable and well formed.

    Only the first data lines are inspected.

    Raises:
        CountingError: If the file is missing or malformed
    """
    try:
        path = validate_file_exists(annotation)
    except FileNotFoundError as e:
        raise CountingError(str(e)) from e

    n_records = 0
    try:
        with open(path, 'r') as f:
            for line_no, line in enumerate(f, start=1):
                if line.startswith('#') or not line.strip():
                    continue
                fields = line.rstrip('\n').split('\t')
                if len(fields) != 9:
                    raise CountingError(
                        f"Malformed annotation {path} line {line_no}: expected 9 tab-separated "
                        f"columns, found {len(fields)}"
                    )
                if not (fields[3].isdigit() and fields[4].isdigit()):
                    raise CountingError(
                        f"Malformed annotation {path} line {line_no}: non-numeric coordinates"
                    )
                n_records += 1
                if n_records >= ANNOTATION_LINES_CHECKED:
                    break
    except (OSError, UnicodeDecodeError) as e:
        raise CountingError(f"Cannot read annotation {path}: {e}") from e

    if n_records == 0:
        raise CountingError(f"Annotation {path} contains no feature records")

    return path


def parse_featurecounts(counts_file: Path, sample_id: str) -> pd.Series:
    """Read featureCounts output; gene IDs from the first column, counts from the last."""
    df = pd.read_csv(counts_file, sep='\t', comment='#')
    gene_col = df.columns[0]  # Geneid
    count_col = df.columns[-1]

    counts = pd.Series(
        df[count_col].to_numpy(dtype='int64'),
        index=df[gene_col].astype(str),
        name=sample_id,
    )
    counts.index.name = 'gene_id'
    return counts


def parse_featurecounts_summary(summary_file: Path, sample_id: str) -> pd.Series:
    """Read a featureCounts ``.summary`` file into a Status -> reads series."""
    df = pd.read_csv(summary_file, sep='\t', index_col=0)
    summary = df.iloc[:, -1].astype('int64')
    summary.name = sample_id
    return summary


def count_sample(
    sample_id: str,
    bam_file: Union[str, Path],
    annotation: Path,
    params: CountingParameters,
    work_dir: Path,
) -> Tuple[pd.Series, pd.Series]:
    """
    Run featureCounts on one aligned read file.

    Returns:
        Tuple of (gene counts, summary statistics) for the sample

    Raises:
        CountingError: If the file is unreadable or featureCounts fails
    """
    bam_file = Path(bam_file)
    if not bam_file.is_file() or not os.access(bam_file, os.R_OK):
        raise CountingError(f"Aligned read file for sample {sample_id} is not readable: {bam_file}")

    output_file = work_dir / f"{sample_id}.featureCounts.txt"
    cmd = params.command(annotation, output_file, bam_file)
    logger.debug(f"Running: {' '.join(cmd)}")

    try:
        subprocess.run(cmd, check=True, capture_output=True, text=True)
    except FileNotFoundError as e:
        raise CountingError(f"{params.executable} not found on PATH") from e
    except subprocess.CalledProcessError as e:
        stderr = (e.stderr or '').strip().splitlines()
        detail = stderr[-1] if stderr else f"exit status {e.returncode}"
        raise CountingError(f"featureCounts failed for sample {sample_id} ({bam_file}): {detail}") from e

    try:
        counts = parse_featurecounts(output_file, sample_id)
        summary_file = output_file.with_name(output_file.name + '.summary')
        summary = parse_featurecounts_summary(summary_file, sample_id) if summary_file.exists() else pd.Series(dtype='int64', name=sample_id)
    except (OSError, ValueError, pd.errors.ParserError) as e:
        raise CountingError(f"Could not parse featureCounts output for sample {sample_id}: {e}") from e

    logger.debug(f"Counted {int(counts.sum())} reads over {len(counts)} genes for {sample_id}")
    return counts, summary


def filter_zero_count_genes(counts: pd.DataFrame) -> pd.DataFrame:
    """Drop genes whose total count across all samples is zero."""
    return counts.loc[counts.sum(axis=1) > 0]


def assemble_count_matrix(sample_counts: Dict[str, pd.Series], sample_order) -> pd.DataFrame:
    """
    Combine per-sample count vectors into a gene x sample matrix.

    Columns follow ``sample_order`` regardless of the order in which samples
    were counted.
    """
    missing = [s for s in sample_order if s not in sample_counts]
    if missing:
        raise CountingError(f"No counts for samples: {missing}")

    matrix = pd.concat([sample_counts[s].rename(s) for s in sample_order], axis=1, join='outer')
    matrix = matrix.fillna(0).astype('int64')
    matrix.index.name = 'gene_id'
    if (matrix.to_numpy() < 0).any():
        raise CountingError("Negative counts in count matrix")
    return matrix


def summarize_statistics(summaries: Dict[str, pd.Series], sample_order) -> pd.DataFrame:
    """Per-sample featureCounts summary, status rows as reported by featureCounts."""
    return pd.concat([summaries[s].rename(s) for s in sample_order], axis=1).fillna(0).astype('int64')


def assignment_rates(statistics: pd.DataFrame) -> Dict[str, float]:
    """Assigned reads over all reads per sample; 0.0 for samples without reads."""
    if statistics.empty:
        return {}
    totals = statistics.sum(axis=0)
    if 'Assigned' not in statistics.index:
        return {str(s): 0.0 for s in statistics.columns}
    rates = (statistics.loc['Assigned'] / totals.where(totals > 0)).fillna(0.0)
    return {str(s): float(r) for s, r in rates.items()}


def build_count_matrix(
    metadata: pd.DataFrame,
    annotation: Union[str, Path],
    params: Optional[CountingParameters] = None,
    work_dir: Optional[Path] = None,
) -> CountResult:
    """
    Count reads per gene for every sample of one study.

    Args:
        metadata: Study metadata with ``sample_id`` and ``source_file`` columns
        annotation: GTF/GFF feature annotation
        params: featureCounts options
        work_dir: Directory for featureCounts output (temporary if None)

    Returns:
        CountResult with zero-count genes removed

    Raises:
        CountingError: If any sample cannot be counted; no partial matrix is returned
    """
    params = params or CountingParameters()
    annotation = validate_annotation(annotation)

    if shutil.which(params.executable) is None:
        raise CountingError(f"{params.executable} not found on PATH")

    sample_files = dict(zip(metadata['sample_id'], metadata['source_file']))
    sample_order = list(metadata['sample_id'])
    for sample_id, bam in sample_files.items():
        if not Path(bam).is_file():
            raise CountingError(f"Aligned read file for sample {sample_id} not found: {bam}")

    logger.info(f"Counting {len(sample_order)} samples with {params.workers} workers")

    cleanup = None
    if work_dir is None:
        cleanup = tempfile.TemporaryDirectory(prefix='featurecounts_')
        work_dir = Path(cleanup.name)
    else:
        work_dir = validate_directory_exists(work_dir, create=True)

    try:
        sample_counts = {}
        summaries = {}
        with concurrent.futures.ThreadPoolExecutor(max_workers=max(1, params.workers)) as executor:
            future_to_sample = {
                executor.submit(count_sample, sample_id, bam, annotation, params, work_dir): sample_id
                for sample_id, bam in sample_files.items()
            }
            for future in concurrent.futures.as_completed(future_to_sample):
                sample_id = future_to_sample[future]
                counts, summary = future.result()
                sample_counts[sample_id] = counts
                summaries[sample_id] = summary
    finally:
        if cleanup is not None:
            cleanup.cleanup()

    matrix = assemble_count_matrix(sample_counts, sample_order)
    filtered = filter_zero_count_genes(matrix)
    logger.info(
        f"Count matrix: {len(filtered)} genes x {filtered.shape[1]} samples "
        f"({len(matrix) - len(filtered)} zero-count genes removed)"
    )

    return CountResult(
        counts=filtered,
        statistics=summarize_statistics(summaries, sample_order),
        n_genes_total=len(matrix),
    )


def load_count_matrix(count_file: Union[str, Path], metadata: Optional[pd.DataFrame] = None) -> CountResult:
    """
    Load a precomputed gene x sample count matrix (TSV).

    When ``metadata`` is given, columns are reordered to its sample order.
    """
    try:
        df = read_gene_table(count_file)
    except (FileNotFoundError, ValueError, pd.errors.ParserError) as e:
        raise CountingError(f"Cannot read count matrix {count_file}: {e}") from e

    # featureCounts tables carry annotation columns before the samples
    df = df.drop(columns=[c for c in ('Chr', 'Start', 'End', 'Strand', 'Length') if c in df.columns])
    if metadata is not None:
        missing = [s for s in metadata['sample_id'] if s not in df.columns]
        if missing:
            raise CountingError(f"Count matrix {count_file} lacks samples {missing}")
        df = df[list(metadata['sample_id'])]

    try:
        df = df.astype('int64')
    except (TypeError, ValueError) as e:
        raise CountingError(f"Count matrix {count_file} contains non-integer values") from e
    if (df.to_numpy() < 0).any():
        raise CountingError(f"Count matrix {count_file} contains negative counts")

    filtered = filter_zero_count_genes(df)
    return CountResult(counts=filtered, n_genes_total=len(df))
