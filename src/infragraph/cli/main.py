"""Main CLI entry point for infragraph."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from infragraph import __version__
from infragraph.core.schema import Diagnostic, Severity

console = Console()

SEVERITY_STYLES = {Severity.INFO: "dim", Severity.WARNING: "yellow", Severity.ERROR: "red"}


class Context:
    """CLI context object passed to commands."""

    def __init__(self) -> None:
        self.config_path: Path | None = None
        self.verbose: bool = False
        self._settings: Any = None

    @property
    def settings(self) -> Any:
        """Lazy-load settings."""
        if self._settings is None:
            from infragraph.config import Settings

            if self.config_path and not self.config_path.exists():
                raise click.ClickException(f"Config not found: {self.config_path}")
            try:
                self._settings = Settings.load(self.config_path)
            except Exception as e:
                raise click.ClickException(f"Invalid config {self.config_path}: {e}") from e
        return self._settings

    def derive(self, path: Path) -> Any:
        """Load definitions from `path` and build the configuration graph."""
        from infragraph.core.builder import GraphBuilder
        from infragraph.ingest import load_definitions

        settings = self.settings
        loaded = load_definitions(path)
        builder = GraphBuilder(settings.registry(), settings.flattener(), settings.max_workers)
        return builder.build(loaded.definitions, loaded.diagnostics)


pass_context = click.make_pass_decorator(Context, ensure=True)


def print_diagnostics(diagnostics: Iterable[Diagnostic], show_info: bool = False) -> None:
    """Print diagnostics as a table; info-level entries only on request."""
    diagnostics = list(diagnostics)
    shown = [d for d in diagnostics if show_info or d.severity != Severity.INFO]
    hidden = len(diagnostics) - len(shown)
    if shown:
        table = Table(title="Diagnostics")
        table.add_column("Kind")
        table.add_column("Resource", style="cyan")
        table.add_column("Path")
        table.add_column("Message")
        for d in shown:
            style = SEVERITY_STYLES[d.severity]
            table.add_row(
                f"[{style}]{d.kind.value}[/{style}]",
                d.resource_id or "-",
                d.path or "-",
                d.message,
            )
        console.print(table)
    if hidden:
        console.print(f"[dim]{hidden} informational diagnostic(s) hidden (use --verbose)[/dim]")


def print_counts(title: str, counts: dict[str, int]) -> None:
    table = Table(title=title)
    table.add_column("Value", style="cyan")
    table.add_column("Count", justify="right")
    for key, count in sorted(counts.items()):
        table.add_row(key, str(count))
    console.print(table)


@click.group()
@click.version_option(version=__version__, prog_name="infragraph")
@click.option(
    "-c",
    "--config",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to settings YAML file",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@pass_context
def cli(ctx: Context, config: Path | None, verbose: bool) -> None:
    """
    Infragraph - Infrastructure-as-code to property graph.

    Derive resource nodes and typed relationships from parsed resource
    blocks and merge them into a graph store.
    """
    ctx.config_path = config
    ctx.verbose = verbose
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            datefmt="[%X]",
            handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        )


# Import and register subcommands
from infragraph.cli.build import build
from infragraph.cli.validate import validate

cli.add_command(build)
cli.add_command(validate)


@cli.command()
@click.argument("types", nargs=-1, required=True)
@pass_context
def classify(ctx: Context, types: tuple[str, ...]) -> None:
    """Show provider and identity class for resource TYPES."""
    registry = ctx.settings.registry()

    table = Table(title="Classification")
    table.add_column("Type", style="cyan")
    table.add_column("Provider")
    table.add_column("Identity class")
    for rtype in types:
        result = registry.classify(rtype)
        style = "magenta" if result.is_identity else "white"
        table.add_row(rtype, result.provider.value, f"[{style}]{result.identity_class.value}[/{style}]")
    console.print(table)


def print_neighbours(graph: Any, resource_id: str) -> None:
    """Print the relationships leaving and entering one node."""
    if graph.get(resource_id) is None:
        raise click.ClickException(f"Unknown resource: {resource_id}")
    table = Table(title=f"Relationships of {resource_id}")
    table.add_column("Direction")
    table.add_column("Kind", style="cyan")
    table.add_column("Resource")
    for rel in graph.relationships.from_node(resource_id):
        table.add_row("out", rel.kind.value, rel.target_id)
    for rel in graph.relationships.targeting_node(resource_id):
        table.add_row("in", rel.kind.value, rel.source_id)
    console.print(table)


@cli.command()
@click.argument("path", type=click.Path(exists=True, path_type=Path))
@click.option("--resource", "-r", "resource_id", help="Also list the relationships of one resource id")
@pass_context
def info(ctx: Context, path: Path, resource_id: str | None) -> None:
    """Show node and relationship counts for the graph derived from PATH."""
    graph = ctx.derive(path)
    summary = graph.summary()

    console.print(f"\n[bold]Infragraph v{__version__}[/bold]\n")
    console.print(f"  Source: {path}")
    console.print(f"  Nodes: {summary['nodes']}")
    console.print(f"  Relationships: {summary['relationships']}")
    console.print(f"  Diagnostics: {len(graph.diagnostics)}\n")

    print_counts("Nodes by Provider", summary["providers"])
    print_counts("Nodes by Identity Class", summary["identity_classes"])
    if summary["relationship_kinds"]:
        print_counts("Relationships by Kind", summary["relationship_kinds"])
    if resource_id:
        print_neighbours(graph, resource_id)


if __name__ == "__main__":
    cli()
