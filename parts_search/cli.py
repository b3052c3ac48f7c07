"""CLI entry point for parts-search."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from .log_config import setup_logging
from .models import EnrichedResult, VehicleContext

app = typer.Typer(
    name="parts-search",
    help="Multi-source replacement parts search.",
)
console = Console()


def _results_table(title: str, results: List[EnrichedResult]) -> Table:
    table = Table(title=title)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Part number", style="cyan")
    table.add_column("Description")
    table.add_column("Confidence", justify="right", style="green")
    table.add_column("Found by")
    table.add_column("Reason", style="dim")
    for i, r in enumerate(results, 1):
        description = r.description[:60] + "..." if len(r.description) > 60 else r.description
        table.add_row(
            str(i),
            r.part_number,
            description,
            f"{r.confidence:.0f}",
            ", ".join(s.value for s in r.found_by),
            r.reason,
        )
    return table


@app.command()
def search(
    query: str = typer.Argument(..., help="Search query"),
    tenant: str = typer.Option(..., "--tenant", "-t", help="Tenant (organization) id"),
    vehicle_id: Optional[str] = typer.Option(None, "--vehicle-id", help="Vehicle id"),
    make: Optional[str] = typer.Option(None, "--make"),
    model: Optional[str] = typer.Option(None, "--model"),
    year: Optional[int] = typer.Option(None, "--year"),
    web_only: bool = typer.Option(False, "--web-only", help="Skip internal stores"),
    vehicles: Optional[Path] = typer.Option(
        None, "--vehicles", help="JSON file of vehicle mappings and statuses (default: VEHICLE_REGISTRY_PATH)"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the raw response as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Search parts across the catalog, vector index, graph and web."""
    setup_logging("DEBUG" if verbose else ("WARNING" if as_json else None))
    from .collaborators import InMemoryVehicleRegistry, SettingsCredentialResolver
    from .config import settings
    from .exceptions import PartsSearchError
    from .search.orchestrator import CredentialAdapterFactory, SearchOrchestrator

    vehicle = None
    if any(v is not None for v in (vehicle_id, make, model, year)):
        vehicle = VehicleContext(vehicle_id=vehicle_id, make=make, model=model, year=year)

    registry = None
    registry_path = vehicles or settings.vehicle_registry_path
    if registry_path:
        try:
            registry = InMemoryVehicleRegistry.from_file(registry_path)
        except (OSError, ValueError) as e:
            console.print(f"[red]Cannot load vehicle registry {registry_path}: {e}[/red]")
            raise typer.Exit(1)

    orchestrator = SearchOrchestrator(
        CredentialAdapterFactory(SettingsCredentialResolver(), registry),
        registry,
    )
    try:
        response = asyncio.run(orchestrator.search(query, tenant, vehicle, web_only=web_only))
    except PartsSearchError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1)

    if as_json:
        print(response.model_dump_json(indent=2, exclude_none=True))
        return

    meta = response.metadata
    console.print(f"[bold]Query:[/bold] {query}")
    console.print(
        f"[dim]{meta.total_results} results in {meta.search_time_ms:.0f}ms "
        f"from {', '.join(meta.sources_used) or 'no sources'}[/dim]\n"
    )

    if response.part_groups:
        for group in response.part_groups:
            console.print(_results_table(f"{group.label} ({group.result_count})", group.results))
            if group.web_results:
                console.print(_results_table(f"{group.label}: web", group.web_results))
    else:
        console.print(_results_table("Results", response.results))
        if response.web_results:
            console.print(_results_table("Web results", response.web_results))

    if response.suggested_filters:
        console.print(f"[bold]Filters:[/bold] {', '.join(response.suggested_filters)}")
    if response.related_queries:
        console.print(f"[bold]Related:[/bold] {'; '.join(response.related_queries)}")
    if meta.web_enrichment:
        console.print(f"[yellow]{meta.web_enrichment}[/yellow]")


@app.command()
def analyze(
    query: str = typer.Argument(..., help="Search query"),
    no_llm: bool = typer.Option(False, "--no-llm", help="Use the rule-based analysis only"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Show how a query is understood."""
    setup_logging("DEBUG" if verbose else "WARNING")
    from .config import settings
    from .llm.client import OpenAICompatibleClient
    from .search.query_understanding import analyze as analyze_query

    async def run():
        if no_llm or not settings.llm_api_key:
            return await analyze_query(query)
        client = OpenAICompatibleClient(
            settings.llm_api_key, settings.llm_model, base_url=settings.llm_base_url
        )
        try:
            return await analyze_query(query, llm_client=client)
        finally:
            await client.close()

    processed = asyncio.run(run())
    console.print_json(processed.model_dump_json(exclude_none=True))


@app.command("discover-graph")
def discover_graph(
    manufacturer: Optional[str] = typer.Option(None, "--manufacturer", "-m"),
    model: Optional[str] = typer.Option(None, "--model", help="Also list namespaces, domains and serial ranges for this model"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Summarize the parts graph for building vehicle mappings."""
    setup_logging("DEBUG" if verbose else None)
    from .config import settings
    from .search.graph_schema import GraphSchemaDiscovery

    if not settings.neo4j_uri:
        console.print("[red]NEO4J_URI is not set[/red]")
        raise typer.Exit(1)
    if model and not manufacturer:
        console.print("[red]--model requires --manufacturer[/red]")
        raise typer.Exit(1)

    async def run():
        discovery = GraphSchemaDiscovery.from_credentials(
            {
                "uri": settings.neo4j_uri,
                "username": settings.neo4j_user,
                "password": settings.neo4j_password,
                "database": settings.neo4j_database,
            }
        )
        try:
            schema = await discovery.discover(manufacturer)
            details = await discovery.get_model_details(manufacturer, model) if model else None
            return schema, details
        finally:
            await discovery.close()

    schema, details = asyncio.run(run())

    table = Table(title="Graph Schema")
    table.add_column("Item", style="cyan")
    table.add_column("Count", style="green", justify="right")
    table.add_column("Sample")
    rows = [
        ("Manufacturers", schema.manufacturers),
        ("Models", [f"{m.manufacturer} {m.name}" for m in schema.models]),
        ("Namespaces", schema.namespaces),
        ("Technical domains", schema.technical_domains),
        ("Categories", schema.categories),
        ("Node labels", schema.node_labels),
        ("Relationship types", schema.relationship_types),
    ]
    for label, values in rows:
        table.add_row(label, str(len(values)), ", ".join(values[:5]))
    console.print(table)

    if details is not None:
        table = Table(title=f"{manufacturer} {model}")
        table.add_column("Item", style="cyan")
        table.add_column("Values")
        table.add_row("Namespaces", ", ".join(details.namespaces))
        table.add_row("Technical domains", ", ".join(details.technical_domains))
        table.add_row("Categories", ", ".join(details.categories[:10]))
        table.add_row("Serial ranges", ", ".join(details.serial_ranges))
        console.print(table)


if __name__ == "__main__":
    app()
