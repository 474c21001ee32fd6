#!/usr/bin/env python3
"""
RNA-seq Concordance - Test Data Generator

Generates small synthetic datasets for testing the workflow: negative
binomial count matrices, placeholder aligned-read files following the
``<prefix>_<sampleID>_...`` naming convention, a GTF annotation, featureCounts
style output and a matching workflow configuration.
"""

import argparse
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
import yaml


class CountMatrixGenerator:
    """Generate synthetic gene x sample count matrices."""

    def __init__(self, n_genes: int = 200, seed: int = 42, dispersion: float = 0.1):
        """
        Initialize count generator.

        Args:
            n_genes: Number of genes
            seed: Random seed for reproducibility
            dispersion: Negative binomial dispersion shared by all genes
        """
        self.n_genes = n_genes
        self.dispersion = dispersion
        self.rng = np.random.default_rng(seed)

        self.gene_ids = [f"GENE{i:04d}" for i in range(n_genes)]
        # log-normal baseline expression
        self.base_means = self.rng.lognormal(mean=5.0, sigma=1.5, size=n_genes)

    def _negative_binomial(self, means: np.ndarray) -> np.ndarray:
        n = 1.0 / self.dispersion
        p = n / (n + means)
        return self.rng.negative_binomial(n, p)

    def generate(
        self,
        conditions: Sequence[str],
        de_genes: int = 20,
        fold_change: float = 4.0,
        reference: Optional[str] = None,
        sample_ids: Optional[Sequence[str]] = None,
    ) -> pd.DataFrame:
        """
        Generate counts where the first ``de_genes`` genes change in non-reference conditions.

        Args:
            conditions: Condition label per sample
            de_genes: Number of differentially expressed genes
            fold_change: Fold change applied to DE genes
            reference: Reference condition (defaults to the first label)
            sample_ids: Column names (defaults to S01, S02, ...)
        """
        reference = reference or conditions[0]
        sample_ids = list(sample_ids or [f"S{i + 1:02d}" for i in range(len(conditions))])

        columns = {}
        for sample_id, condition in zip(sample_ids, conditions):
            means = self.base_means.copy()
            if condition != reference:
                means[:de_genes] *= fold_change
            columns[sample_id] = self._negative_binomial(means)

        counts = pd.DataFrame(columns, index=self.gene_ids)
        counts.index.name = 'gene_id'
        return counts


def create_toy_counts() -> pd.DataFrame:
    """The 4-sample, 3-gene matrix used by the two-level contrast scenario."""
    counts = pd.DataFrame(
        {
            'S1': [10, 105, 4],
            'S2': [14, 92, 7],
            'S3': [31, 110, 45],
            'S4': [36, 97, 52],
        },
        index=['GENE_A', 'GENE_B', 'GENE_C'],
    )
    counts.index.name = 'gene_id'
    return counts


def create_metadata(samples: Dict[str, Dict[str, str]]) -> pd.DataFrame:
    """Metadata table in registry layout from ``{sample_id: {condition, batch}}``."""
    rows = [
        {
            'sample_id': sample_id,
            'source_file': f"aln_{sample_id}_sorted.bam",
            'condition': str(values['condition']),
            'batch': str(values['batch']),
        }
        for sample_id, values in samples.items()
    ]
    df = pd.DataFrame(rows)
    df.index = pd.Index(df['sample_id'], name=None)
    return df


def create_bam_files(output_dir: Path, sample_ids: Sequence[str], prefix: str = "aln") -> List[Path]:
    """Create placeholder aligned-read files named ``<prefix>_<sampleID>_sorted.bam``."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    files = []
    for sample_id in sample_ids:
        bam_file = output_dir / f"{prefix}_{sample_id}_sorted.bam"
        bam_file.write_bytes(b"BAM\x01")
        files.append(bam_file)
    return files


def create_gtf(output_file: Path, gene_ids: Sequence[str]) -> Path:
    """Write a minimal GTF with one exon per gene."""
    output_file = Path(output_file)
    with open(output_file, 'w') as f:
        f.write("#!genome-build test\n")
        for i, gene_id in enumerate(gene_ids):
            start = 1000 + i * 2000
            end = start + 999
            f.write(
                f"chr1\ttest\texon\t{start}\t{end}\t.\t+\t.\t"
                f"gene_id \"{gene_id}\"; transcript_id \"{gene_id}.1\";\n"
            )
    return output_file


def write_featurecounts_output(output_file: Path, bam_file: Path, counts: pd.Series) -> None:
    """Write featureCounts-style count and summary files for one sample."""
    output_file = Path(output_file)
    table = pd.DataFrame(
        {
            'Geneid': counts.index,
            'Chr': 'chr1',
            'Start': 1,
            'End': 1000,
            'Strand': '+',
            'Length': 1000,
            str(bam_file): counts.to_numpy(),
        }
    )
    with open(output_file, 'w') as f:
        f.write(f"# Program:featureCounts v2.0.6; Command:\"featureCounts\" \"{bam_file}\"\n")
        table.to_csv(f, sep='\t', index=False)

    assigned = int(counts.sum())
    summary = pd.DataFrame(
        {str(bam_file): [assigned, assigned // 10, 0]},
        index=pd.Index(['Assigned', 'Unassigned_NoFeatures', 'Unassigned_Ambiguity'], name='Status'),
    )
    summary.to_csv(output_file.with_name(output_file.name + '.summary'), sep='\t')


def create_config(
    output_dir: Path,
    samples: Dict[str, Dict[str, str]],
    studies: Dict[str, Dict],
    count_matrix: Optional[str] = None,
    annotation: Optional[str] = "genes.gtf",
    **options,
) -> Path:
    """Write a workflow YAML configuration into ``output_dir``."""
    output_dir = Path(output_dir)
    config = {
        'input_dir': 'bams',
        'pattern': '*.bam',
        'delimiter': '_',
        'sample_field': 1,
        'studies': studies,
        'samples': samples,
    }
    if annotation:
        config['annotation'] = annotation
    if count_matrix:
        config['count_matrix'] = count_matrix
    config.update(options)

    config_file = output_dir / 'workflow.yaml'
    with open(config_file, 'w') as f:
        yaml.safe_dump(config, f, sort_keys=False)
    return config_file


def create_sample_data(output_dir: Path, n_genes: int = 200, seed: int = 42) -> Path:
    """
    Create a complete test dataset with two studies.

    Args:
        output_dir: Directory to create test data
        n_genes: Number of genes in the count matrix
        seed: Random seed

    Returns:
        Path to the workflow configuration
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    samples = {}
    for i, (condition, batch) in enumerate(
        [('control', 1), ('control', 2), ('control', 1), ('treated', 2), ('treated', 1), ('treated', 2)]
    ):
        samples[f"CL{i + 1:02d}"] = {'study': 'cell_line', 'condition': condition, 'batch': batch}
    for i, (condition, batch) in enumerate(
        [('sham', 'a'), ('sham', 'b'), ('sham', 'a'), ('injury', 'b'), ('injury', 'a'), ('injury', 'b')]
    ):
        samples[f"TS{i + 1:02d}"] = {'study': 'tissue', 'condition': condition, 'batch': batch}

    generator = CountMatrixGenerator(n_genes=n_genes, seed=seed)
    counts = generator.generate(
        [s['condition'] for s in samples.values()],
        reference='control',
        sample_ids=list(samples),
    )
    counts.to_csv(output_dir / 'counts.tsv', sep='\t')

    create_bam_files(output_dir / 'bams', list(samples))
    create_gtf(output_dir / 'genes.gtf', generator.gene_ids)

    studies = {
        'cell_line': {
            'design': '~ batch + condition',
            'contrast': ['condition', 'treated', 'control'],
            'conditions': ['control', 'treated'],
        },
        'tissue': {
            'design': '~ batch + condition',
            'contrast': ['condition', 'injury', 'sham'],
        },
    }
    config_file = create_config(output_dir, samples, studies, count_matrix='counts.tsv')

    print(f"Test data generated in: {output_dir}")
    print(f"Samples: {len(samples)}, genes: {n_genes}")
    return config_file


def main():
    """Command-line interface for test data generation."""
    parser = argparse.ArgumentParser(
        description='Generate synthetic test data for the RNA-seq concordance workflow'
    )
    parser.add_argument(
        '--output-dir', '-o',
        type=Path,
        default=Path.cwd() / 'test_data',
        help='Output directory for test data'
    )
    parser.add_argument(
        '--n-genes', '-n',
        type=int,
        default=200,
        help='Number of genes in the count matrix'
    )
    parser.add_argument(
        '--seed', '-s',
        type=int,
        default=42,
        help='Random seed for reproducibility'
    )

    args = parser.parse_args()
    config_file = create_sample_data(args.output_dir, args.n_genes, args.seed)
    print(f"To run the workflow with test data:")
    print(f"  rnaseq_concordance run {config_file}")


if __name__ == '__main__':
    main()
