"""Build CLI command."""

from __future__ import annotations

import json
from pathlib import Path

import click

from infragraph.cli.main import Context, console, pass_context, print_counts, print_diagnostics
from infragraph.errors import MergeError
from infragraph.store.upsert import GraphUpsertEngine, MergeMode, MergeReport


@click.command()
@click.argument("path", type=click.Path(exists=True, path_type=Path))
@click.option(
    "--mode",
    type=click.Choice([m.value for m in MergeMode]),
    default=MergeMode.INCREMENTAL.value,
    show_default=True,
    help="Incremental upsert or full rebuild of the source tag",
)
@click.option(
    "--store",
    "backend",
    type=click.Choice(["memory", "neo4j"]),
    default=None,
    help="Store backend (overrides config)",
)
@click.option("--source", "source_tag", default=None, help="Source tag for written items")
@click.option(
    "--neo4j-password",
    envvar="INFRAGRAPH_NEO4J_PASSWORD",
    default=None,
    help="Neo4j password (or set INFRAGRAPH_NEO4J_PASSWORD)",
)
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@pass_context
def build(
    ctx: Context,
    path: Path,
    mode: str,
    backend: str | None,
    source_tag: str | None,
    neo4j_password: str | None,
    as_json: bool,
) -> None:
    """
    Derive the graph for PATH and merge it into the store.

    PATH is a JSON/YAML document or a directory of them.

    Examples:

        # Dry run against the in-memory store
        infragraph build plan.json

        # Replace everything previously written for this source
        infragraph build ./parsed --store neo4j --mode rebuild --source prod
    """
    settings = ctx.settings
    if backend:
        settings = settings.model_copy(
            update={"store": settings.store.model_copy(update={"backend": backend})}
        )

    graph = ctx.derive(path)
    store = settings.open_store(password=neo4j_password)
    engine = GraphUpsertEngine(
        store,
        retry=settings.retry.policy(),
        source_tag=source_tag or settings.source_tag,
    )

    failure: MergeError | None = None
    try:
        store.ensure_schema()
        report = engine.merge(graph, MergeMode(mode))
    except MergeError as e:
        failure = e
        report = e.report
    finally:
        store.close()

    if as_json:
        click.echo(json.dumps(_as_dict(graph.summary(), report), indent=2, default=str))
    else:
        _print_report(graph.summary(), report, ctx.verbose)

    if failure is not None:
        if not as_json:
            console.print(f"\n[red bold]Merge failed:[/red bold] {failure}")
        raise SystemExit(1)


def _as_dict(summary: dict, report: MergeReport) -> dict:
    return {
        "graph": summary,
        "merge": report.summary(),
        "diagnostics": [d.model_dump(mode="json") for d in report.diagnostics],
    }


def _print_report(summary: dict, report: MergeReport, verbose: bool) -> None:
    merge = report.summary()
    status_style = "green" if report.succeeded else "red"
    console.print(f"\n[bold]Merge ({merge['mode']}, source {merge['source_tag']!r})[/bold]")
    console.print(f"  Status: [{status_style}]{merge['status']}[/{status_style}]")
    console.print(f"  Nodes derived: {summary['nodes']}, written: {merge['nodes_written']}")
    console.print(
        f"  Relationships derived: {summary['relationships']}, written: {merge['edges_written']}\n"
    )
    if summary["relationship_kinds"]:
        print_counts("Relationships by Kind", summary["relationship_kinds"])
    print_diagnostics(report.diagnostics, show_info=verbose)
