"""
Sample registry.

Discovers aligned read files, derives sample IDs from the file names
(``<prefix>_<sampleID>_...``) and joins each sample to its study, condition
and batch by sample ID. The join is keyed, never positional: reordering the
file listing cannot attach a label to the wrong file.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

import pandas as pd

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

METADATA_COLUMNS = ["sample_id", "source_file", "condition", "batch"]


@dataclass(frozen=True)
class SampleAnnotation:
    """Experimental factors for one sample ID."""

    study: str
    condition: str
    batch: str


@dataclass(frozen=True)
class Sample:
    """One aligned read file and its experimental factors."""

    sample_id: str
    source_file: Path
    study: str
    condition: str
    batch: str


def discover_files(directory: Union[str, Path], pattern: str = "*.bam") -> List[Path]:
    """
    List aligned read files matching ``pattern`` in ``directory``.

    Returns:
        Sorted list of file paths

    Raises:
        ConfigurationError: If the directory is missing or nothing matches
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise ConfigurationError(f"Input directory not found: {directory}")

    files = sorted(p for p in directory.glob(pattern) if p.is_file())
    if not files:
        raise ConfigurationError(f"No files matching '{pattern}' in {directory}")

    logger.info(f"Found {len(files)} files matching '{pattern}' in {directory}")
    return files


def parse_sample_id(path: Union[str, Path], delimiter: str = "_", field: int = 1) -> str:
    """
    Extract the sample ID from a file name.

    Args:
        path: File path following ``<prefix>_<sampleID>_...``
        delimiter: Field delimiter in the file name
        field: Zero-based index of the sample ID field

    Raises:
        ConfigurationError: If the name has too few fields
    """
    name = Path(path).name
    # drop every extension (.bam, .sorted.bam, ...)
    parts = name.split(".")[0].split(delimiter)
    if field >= len(parts) or field < 0:
        raise ConfigurationError(
            f"Cannot take field {field} of '{name}' split by '{delimiter}'"
        )
    sample_id = parts[field].strip()
    if not sample_id:
        raise ConfigurationError(f"Empty sample ID in file name '{name}'")
    return sample_id


def build_registry(
    files: Sequence[Union[str, Path]],
    annotations: Mapping[str, SampleAnnotation],
    delimiter: str = "_",
    field: int = 1,
) -> List[Sample]:
    """
    Join discovered files with their annotations by sample ID.

    Args:
        files: Aligned read files in discovery order
        annotations: Mapping of sample ID to study/condition/batch
        delimiter: File name field delimiter
        field: Index of the sample ID field

    Returns:
        Samples in file-listing order

    Raises:
        ConfigurationError: If samples and annotations do not correspond one to one
    """
    ids = [parse_sample_id(f, delimiter, field) for f in files]

    if len(ids) != len(annotations):
        raise ConfigurationError(
            f"Found {len(ids)} sample files but {len(annotations)} sample annotations"
        )

    duplicates = sorted(sample_id for sample_id, n in Counter(ids).items() if n > 1)
    if duplicates:
        raise ConfigurationError(f"Duplicate sample IDs in file listing: {duplicates}")

    unannotated = sorted(set(ids) - set(annotations))
    unmatched = sorted(set(annotations) - set(ids))
    if unannotated or unmatched:
        raise ConfigurationError(
            f"Sample IDs without annotation: {unannotated}; annotations without files: {unmatched}"
        )

    samples = []
    for sample_id, path in zip(ids, files):
        annotation = annotations[sample_id]
        samples.append(
            Sample(
                sample_id=sample_id,
                source_file=Path(path),
                study=annotation.study,
                condition=str(annotation.condition),
                batch=str(annotation.batch),
            )
        )

    logger.info(f"Registered {len(samples)} samples across {len({s.study for s in samples})} studies")
    return samples


def study_metadata(samples: Iterable[Sample], study: str) -> pd.DataFrame:
    """
    Metadata table for one study subset, rows in file-listing order.

    Columns are ``sample_id, source_file, condition, batch``; the index is the
    sample ID.
    """
    rows = [
        {
            "sample_id": s.sample_id,
            "source_file": str(s.source_file),
            "condition": s.condition,
            "batch": s.batch,
        }
        for s in samples
        if s.study == study
    ]
    if not rows:
        raise ConfigurationError(f"Study '{study}' has no samples")

    df = pd.DataFrame(rows, columns=METADATA_COLUMNS)
    df.index = pd.Index(df["sample_id"], name=None)
    return df


def split_by_study(samples: Sequence[Sample], studies: Optional[Sequence[str]] = None) -> Dict[str, pd.DataFrame]:
    """
    One metadata table per study.

    Args:
        samples: Registered samples
        studies: Expected study names; every sample must belong to one of them

    Raises:
        ConfigurationError: If a sample names an unknown study or a study is empty
    """
    present = list(dict.fromkeys(s.study for s in samples))
    if studies is None:
        studies = present
    else:
        unknown = sorted(set(present) - set(studies))
        if unknown:
            raise ConfigurationError(f"Samples assigned to undefined studies: {unknown}")

    return {study: study_metadata(samples, study) for study in studies}


def validate_conditions(metadata: pd.DataFrame, conditions: Sequence[str], study: str) -> None:
    """Check that every condition label belongs to the study's vocabulary."""
    unexpected = sorted(set(metadata["condition"]) - set(str(c) for c in conditions))
    if unexpected:
        raise ConfigurationError(
            f"Study '{study}' has conditions {unexpected} outside its vocabulary {list(conditions)}"
        )
