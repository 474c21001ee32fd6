"""
Utility functions for the concordance workflow.

This module provides common utility functions used across the workflow,
including logging setup, file validation, and result serialization helpers.
"""

import logging
import json
from pathlib import Path
from typing import Dict, Any, List, Union
import numpy as np
import pandas as pd
from rich.logging import RichHandler
from rich.console import Console

console = Console()

def setup_logging(level: int = logging.INFO) -> None:
    """
    Set up logging with Rich handler for colored output.

    Args:
        level: Logging level (default: INFO)
    """
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True)],
        force=True,
    )

def validate_file_exists(file_path: Union[str, Path]) -> Path:
    """
    Validate that a file exists and return Path object.

    Args:
        file_path: Path to file

    Returns:
        Path object if file exists

    Raises:
        FileNotFoundError: If file doesn't exist
    """
    path = Path(file_path)
    if not path.is_file():
        raise FileNotFoundError(f"File not found: {path}")
    return path

def validate_directory_exists(dir_path: Union[str, Path], create: bool = False) -> Path:
    """
    Validate that a directory exists, optionally create it.

    Args:
        dir_path: Path to directory
        create: Whether to create directory if it doesn't exist

    Returns:
        Path object

    Raises:
        FileNotFoundError: If directory doesn't exist and create=False
    """
    path = Path(dir_path)
    if not path.exists():
        if create:
            path.mkdir(parents=True, exist_ok=True)
        else:
            raise FileNotFoundError(f"Directory not found: {path}")
    return path

def _json_default(value: Any) -> Any:
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        return float(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    if isinstance(value, Path):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")

def _drop_nan(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _drop_nan(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_drop_nan(item) for item in value]
    if isinstance(value, (float, np.floating)) and not np.isfinite(value):
        return None
    return value

def save_metrics_json(metrics: Dict[str, Any], output_file: Union[str, Path]) -> None:
    """
    Save metrics dictionary to JSON file.

    NaN and infinite values are written as null so the file is strict JSON.

    Args:
        metrics: Dictionary of metrics
        output_file: Output JSON file path
    """
    with open(output_file, 'w') as f:
        json.dump(_drop_nan(metrics), f, indent=2, default=_json_default, allow_nan=False)

def load_metrics_json(json_file: Union[str, Path]) -> Dict[str, Any]:
    """
    Load metrics from JSON file.

    Args:
        json_file: Path to JSON file

    Returns:
        Dictionary of metrics
    """
    with open(json_file, 'r') as f:
        return json.load(f)

def read_gene_table(table_file: Union[str, Path]) -> pd.DataFrame:
    """Read a tab-separated table whose first column holds gene identifiers."""
    path = validate_file_exists(table_file)
    df = pd.read_csv(path, sep='\t', comment='#', index_col=0)
    df.index = df.index.astype(str)
    df.index.name = 'gene_id'
    return df

def write_gene_table(df: pd.DataFrame, output_file: Union[str, Path]) -> Path:
    """Write a gene-indexed table as TSV."""
    path = Path(output_file)
    df.to_csv(path, sep='\t', index_label='gene_id')
    return path

def create_output_dirs(base_dir: Path, subdirs: List[str]) -> Dict[str, Path]:
    """
    Create output directory structure.

    Args:
        base_dir: Base output directory
        subdirs: List of subdirectory names

    Returns:
        Dictionary mapping subdir names to Path objects
    """
    dirs = {}

    for subdir in subdirs:
        dir_path = base_dir / subdir
        dir_path.mkdir(parents=True, exist_ok=True)
        dirs[subdir] = dir_path

    return dirs

def format_number(num: Union[int, float], precision: int = 2) -> str:
    """
    Format number with appropriate precision and units.

    Args:
        num: Number to format
        precision: Decimal precision

    Returns:
        Formatted number string
    """
    if num >= 1e9:
        return f"{num/1e9:.{precision}f}B"
    elif num >= 1e6:
        return f"{num/1e6:.{precision}f}M"
    elif num >= 1e3:
        return f"{num/1e3:.{precision}f}K"
    else:
        return f"{num:.{precision}f}"
