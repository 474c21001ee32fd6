#!/usr/bin/env python3
"""
RNA-seq Concordance CLI

Command-line interface for the differential expression concordance workflow.
Builds per-study sample metadata, counts reads, runs pyDESeq2 and edgeR on the
same design and reports which significant genes both engines agree on.
"""

import typer
import sys
from pathlib import Path
from typing import Optional, List
from rich.console import Console
from rich.markup import escape
from rich.table import Table
import logging

from . import __version__
from .utils import setup_logging, read_gene_table, write_gene_table, format_number
from .config import load_config, validate_alpha
from .concordance import compare_gene_sets
from .results import significant_genes, standardize_table
from .workflow import register_samples, run_workflow

app = typer.Typer(
    name="rnaseq_concordance",
    help="RNA-seq Concordance - compare pyDESeq2 and edgeR differential expression calls",
    add_completion=False,
)

console = Console()

# Global options
def version_callback(value: bool):
    if value:
        console.print(f"RNA-seq Concordance v{__version__}")
        raise typer.Exit()

def verbose_callback(value: bool):
    if value:
        setup_logging(level=logging.DEBUG)
    else:
        setup_logging(level=logging.INFO)

@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None, "--version", "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit"
    ),
    verbose: bool = typer.Option(
        False, "--verbose",
        callback=verbose_callback,
        help="Enable verbose logging"
    ),
):
    """RNA-seq Concordance CLI"""
    pass

@app.command()
def run(
    config_file: Path = typer.Argument(..., help="Workflow YAML configuration"),
    study: Optional[List[str]] = typer.Option(None, "--study", "-s", help="Run only these studies"),
    output_dir: Optional[Path] = typer.Option(None, help="Override the configured output directory"),
    deseq2_alpha: Optional[float] = typer.Option(None, help="Adjusted p-value threshold for pyDESeq2"),
    edger_alpha: Optional[float] = typer.Option(None, help="FDR threshold for edgeR"),
):
    """Run registry, counting, both DE engines and the concordance report."""
    console.print("[bold blue]Running differential expression concordance workflow[/bold blue]")

    try:
        config = load_config(config_file)
        if output_dir is not None:
            config.output_dir = output_dir
        if deseq2_alpha is not None:
            config.deseq2_alpha = validate_alpha(deseq2_alpha, "deseq2")
        if edger_alpha is not None:
            config.edger_alpha = validate_alpha(edger_alpha, "edger")

        result = run_workflow(config, studies=study or None)

    except Exception as e:
        console.print(f"[bold red]Workflow failed: {escape(str(e))}[/bold red]")
        sys.exit(1)

    table = Table(title="Significant genes per study")
    table.add_column("Study")
    table.add_column(f"pyDESeq2 (padj < {config.deseq2_alpha})", justify="right")
    table.add_column(f"edgeR (FDR < {config.edger_alpha})", justify="right")
    table.add_column("Shared", justify="right")
    table.add_column("Jaccard", justify="right")
    for name, study_result in result.studies.items():
        concordance = study_result.concordance
        table.add_row(
            name,
            str(len(study_result.deseq2.significant_genes())),
            str(len(study_result.edger.significant_genes())),
            str(len(concordance.shared)),
            f"{concordance.jaccard:.3f}",
        )
    console.print(table)

    for name, error in result.failures.items():
        console.print(f"[bold red]{name}: {escape(str(error))}[/bold red]")

    if not result.ok:
        sys.exit(1)

    console.print("[bold green]Workflow completed successfully![/bold green]")
    if config.output_dir is not None:
        console.print(f"Results saved to: {config.output_dir}")

@app.command()
def registry(
    config_file: Path = typer.Argument(..., help="Workflow YAML configuration"),
    output_dir: Optional[Path] = typer.Option(None, help="Write one metadata TSV per study"),
):
    """Validate sample files against the configured annotations."""
    console.print("[bold blue]Validating sample registry[/bold blue]")

    try:
        config = load_config(config_file)
        tables = register_samples(config)
    except Exception as e:
        console.print(f"[bold red]Registry validation failed: {escape(str(e))}[/bold red]")
        sys.exit(1)

    for name, metadata in tables.items():
        table = Table(title=f"{name} ({config.studies[name].design})")
        for column in ("sample_id", "condition", "batch", "source_file"):
            table.add_column(column)
        for row in metadata.itertuples(index=False):
            table.add_row(row.sample_id, row.condition, row.batch, Path(row.source_file).name)
        console.print(table)

        if output_dir:
            output_dir.mkdir(parents=True, exist_ok=True)
            metadata.to_csv(output_dir / f"{name}_metadata.tsv", sep='\t', index=False)

    console.print(f"[bold green]Registry is valid![/bold green] {sum(len(t) for t in tables.values())} samples")

@app.command()
def compare(
    results_a: Path = typer.Argument(..., help="First DE result table (TSV with padj column)"),
    results_b: Path = typer.Argument(..., help="Second DE result table (TSV with padj column)"),
    alpha_a: float = typer.Option(0.1, help="Threshold for the first table"),
    alpha_b: float = typer.Option(0.05, help="Threshold for the second table"),
    label_a: str = typer.Option("deseq2", help="Label for the first table"),
    label_b: str = typer.Option("edger", help="Label for the second table"),
    output_file: Optional[Path] = typer.Option(None, help="Write gene membership table"),
):
    """Compare the significant genes of two result tables."""
    try:
        genes_a = significant_genes(standardize_table(read_gene_table(results_a)), alpha_a)
        genes_b = significant_genes(standardize_table(read_gene_table(results_b)), alpha_b)
    except Exception as e:
        console.print(f"[bold red]Could not read results: {escape(str(e))}[/bold red]")
        sys.exit(1)

    concordance = compare_gene_sets(genes_a, genes_b, label_a, label_b)

    console.print(f"{label_a}: {format_number(len(genes_a), 0)} significant genes (< {alpha_a})")
    console.print(f"{label_b}: {format_number(len(genes_b), 0)} significant genes (< {alpha_b})")
    console.print(
        f"[bold]Shared: {len(concordance.shared)}[/bold]  "
        f"{label_a} only: {len(concordance.only_a)}  {label_b} only: {len(concordance.only_b)}  "
        f"Jaccard: {concordance.jaccard:.3f}"
    )

    if output_file:
        write_gene_table(concordance.to_frame(), output_file)
        console.print(f"Membership table saved to: {output_file}")

if __name__ == "__main__":
    app()
