"""Validation CLI command."""

from __future__ import annotations

from pathlib import Path

import click

from infragraph.cli.main import Context, console, pass_context, print_diagnostics
from infragraph.core.schema import DiagnosticKind


@click.command()
@click.argument("path", type=click.Path(exists=True, path_type=Path))
@click.option(
    "--strict",
    is_flag=True,
    help="Also fail on dangling references",
)
@pass_context
def validate(ctx: Context, path: Path, strict: bool) -> None:
    """
    Derive the graph for PATH without writing it anywhere.

    Fails on syntax diagnostics reported by the parser; in strict mode,
    references to resources missing from the batch fail too.

    Examples:

        # Basic validation
        infragraph validate plan.json

        # Strict validation
        infragraph validate ./parsed --strict
    """
    console.print("[bold]Deriving graph...[/bold]")
    graph = ctx.derive(path)
    console.print(f"  [green]✓[/green] {len(graph)} nodes, {len(graph.relationships)} relationships")

    errors = graph.diagnostics_of(DiagnosticKind.SYNTAX_DIAGNOSTIC)
    dangling = graph.diagnostics_of(DiagnosticKind.DANGLING_REFERENCE)
    if strict:
        errors = errors + dangling

    print_diagnostics(graph.diagnostics, show_info=ctx.verbose)

    console.print("\n[bold]Validation Summary[/bold]")
    console.print(f"  Syntax diagnostics: {len(graph.diagnostics_of(DiagnosticKind.SYNTAX_DIAGNOSTIC))}")
    console.print(f"  Dangling references: {len(dangling)}")

    if errors:
        label = "Validation failed (strict mode)" if strict and dangling else "Validation failed"
        console.print(f"\n[red bold]{label}[/red bold]")
        for err in errors:
            console.print(f"  [red]•[/red] {err}")
        raise SystemExit(1)

    console.print("\n[green bold]Validation passed[/green bold]")
