"""
Workflow configuration.

A YAML file names the input directory, the annotation, the counting options,
the study subsets (design formula, contrast, condition vocabulary) and one
annotation per sample ID. Relative paths are resolved against the directory
holding the configuration file.
"""

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .counting import CountingParameters
from .deseq import DEFAULT_ALPHA as DESEQ2_ALPHA
from .design import Contrast, parse_design
from .edger import DEFAULT_ALPHA as EDGER_ALPHA
from .errors import ConfigurationError
from .registry import SampleAnnotation

logger = logging.getLogger(__name__)


@dataclass
class StudyConfig:
    """One study subset: its design, contrast and condition vocabulary."""

    name: str
    design: str
    contrast: Contrast
    conditions: List[str] = field(default_factory=list)

    @property
    def declared_levels(self) -> Optional[Dict[str, List[str]]]:
        return {"condition": self.conditions} if self.conditions else None


@dataclass
class WorkflowConfig:
    """Everything needed to run the workflow end to end."""

    input_dir: Path
    annotation: Optional[Path]
    studies: Dict[str, StudyConfig]
    samples: Dict[str, SampleAnnotation]
    pattern: str = "*.bam"
    delimiter: str = "_"
    sample_field: int = 1
    output_dir: Optional[Path] = None
    count_matrix: Optional[Path] = None
    deseq2_alpha: float = DESEQ2_ALPHA
    edger_alpha: float = EDGER_ALPHA
    shrink_lfc: bool = True
    n_cpus: int = 1
    counting: CountingParameters = field(default_factory=CountingParameters)


def _resolve(base: Path, value: Optional[Union[str, Path]]) -> Optional[Path]:
    if value is None:
        return None
    path = Path(value).expanduser()
    return path if path.is_absolute() else base / path


def validate_alpha(value: Any, name: str) -> float:
    try:
        alpha = float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"alpha.{name} must be a number, got {value!r}")
    if not 0 < alpha <= 1:
        raise ConfigurationError(f"alpha.{name} must be in (0, 1], got {alpha}")
    return alpha


def parse_counting(raw: Optional[Dict[str, Any]]) -> CountingParameters:
    raw = raw or {}
    known = {f.name for f in fields(CountingParameters)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigurationError(f"Unknown counting options: {unknown}")
    try:
        return CountingParameters(**raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid counting options: {e}")


def parse_studies(raw: Dict[str, Any]) -> Dict[str, StudyConfig]:
    if not isinstance(raw, dict) or not raw:
        raise ConfigurationError("'studies' must map study names to their design")

    studies = {}
    for name, entry in raw.items():
        if not isinstance(entry, dict):
            raise ConfigurationError(f"Study '{name}' must be a mapping")
        if "contrast" not in entry:
            raise ConfigurationError(f"Study '{name}' has no contrast")
        design = str(entry.get("design", "~ batch + condition"))
        factors = parse_design(design)
        contrast = Contrast.from_sequence(entry["contrast"])
        if contrast.factor not in factors:
            raise ConfigurationError(
                f"Study '{name}': contrast factor '{contrast.factor}' is not in design '{design}'"
            )
        conditions = [str(c) for c in entry.get("conditions") or []]
        if conditions and contrast.factor == "condition":
            for level in (contrast.numerator, contrast.denominator):
                if level not in conditions:
                    raise ConfigurationError(
                        f"Study '{name}': contrast level '{level}' not in conditions {conditions}"
                    )
        studies[str(name)] = StudyConfig(str(name), design, contrast, conditions)
    return studies


def parse_samples(raw: Dict[str, Any], studies: Dict[str, StudyConfig]) -> Dict[str, SampleAnnotation]:
    if not isinstance(raw, dict) or not raw:
        raise ConfigurationError("'samples' must map sample IDs to study, condition and batch")

    samples = {}
    for sample_id, entry in raw.items():
        if not isinstance(sample_id, str):
            raise ConfigurationError(
                f"Sample ID {sample_id!r} was read as {type(sample_id).__name__}; "
                "quote it in the YAML file (e.g. '01':) so it matches the file name"
            )
        if not isinstance(entry, dict):
            raise ConfigurationError(f"Sample '{sample_id}' must be a mapping")
        missing = [key for key in ("study", "condition", "batch") if key not in entry]
        if missing:
            raise ConfigurationError(f"Sample '{sample_id}' is missing {missing}")
        study = str(entry["study"])
        if study not in studies:
            raise ConfigurationError(f"Sample '{sample_id}' refers to undefined study '{study}'")
        samples[str(sample_id)] = SampleAnnotation(
            study=study,
            condition=str(entry["condition"]),
            batch=str(entry["batch"]),
        )
    return samples


def parse_config(raw: Dict[str, Any], base_dir: Union[str, Path] = ".") -> WorkflowConfig:
    """Build a WorkflowConfig from already-loaded YAML content."""
    if not isinstance(raw, dict):
        raise ConfigurationError("Configuration must be a mapping")

    base_dir = Path(base_dir)
    studies = parse_studies(raw.get("studies"))
    samples = parse_samples(raw.get("samples"), studies)

    if "input_dir" not in raw:
        raise ConfigurationError("Configuration has no 'input_dir'")
    annotation = _resolve(base_dir, raw.get("annotation"))
    count_matrix = _resolve(base_dir, raw.get("count_matrix"))
    if annotation is None and count_matrix is None:
        raise ConfigurationError("Configuration needs an 'annotation' or a precomputed 'count_matrix'")

    alpha = raw.get("alpha") or {}
    try:
        sample_field = int(raw.get("sample_field", 1))
        n_cpus = int(raw.get("n_cpus", 1))
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid integer option: {e}")

    return WorkflowConfig(
        input_dir=_resolve(base_dir, raw["input_dir"]),
        annotation=annotation,
        studies=studies,
        samples=samples,
        pattern=str(raw.get("pattern", "*.bam")),
        delimiter=str(raw.get("delimiter", "_")),
        sample_field=sample_field,
        output_dir=_resolve(base_dir, raw.get("output_dir")),
        count_matrix=count_matrix,
        deseq2_alpha=validate_alpha(alpha.get("deseq2", DESEQ2_ALPHA), "deseq2"),
        edger_alpha=validate_alpha(alpha.get("edger", EDGER_ALPHA), "edger"),
        shrink_lfc=bool(raw.get("shrink_lfc", True)),
        n_cpus=n_cpus,
        counting=parse_counting(raw.get("counting")),
    )


def load_config(config_file: Union[str, Path]) -> WorkflowConfig:
    """
    Load and validate a workflow YAML file.

    Raises:
        ConfigurationError: If the file cannot be read or is invalid
    """
    path = Path(config_file)
    try:
        with open(path, 'r') as f:
            raw = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration {path}: {e}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}")

    config = parse_config(raw, base_dir=path.parent)
    logger.info(f"Loaded configuration {path}: {len(config.studies)} studies, {len(config.samples)} samples")
    return config
