#!/usr/bin/env python3
"""search_lifelogs.py

Simple CLI to search a directory of lifelog JSON exports.
"""
from __future__ import annotations
import asyncio
import json
import logging
import os
from typing import Sequence

import click
from rich.console import Console
from rich.table import Table

from lifelog_search.config import SearchConfig
from lifelog_search.document_store import JsonDocumentStore
from lifelog_search.models import SearchOptions, SearchStrategy, UnifiedSearchResult
from lifelog_search.query_service import SearchService
from lifelog_search.reasoning_client import HttpReasoningClient
from lifelog_search.service_interfaces import DocumentStoreUnavailableError

console = Console()


def render_results(result: UnifiedSearchResult, snippet_length: int = 120) -> None:
    table = Table(title=f"Results for '{result.query}'")
    table.add_column("#", justify="right")
    table.add_column("Score", justify="right", style="green")
    table.add_column("Date", style="cyan")
    table.add_column("Title")
    table.add_column("Sources", style="magenta")
    table.add_column("Snippet")

    for rank, item in enumerate(result.results, 1):
        document = item.document
        snippet = item.highlights[0] if item.highlights else (document.content if document else "")
        table.add_row(
            str(rank),
            f"{item.score:.3f}",
            document.created_date.isoformat() if document else "",
            document.title if document else item.id,
            ", ".join(item.metadata.matching_sources) or (item.metadata.source or ""),
            " ".join(snippet.split())[:snippet_length],
        )
    console.print(table)

    performance = result.performance
    console.print(
        f"[cyan]Strategy:[/cyan] {result.strategy.value}  "
        f"[cyan]Total:[/cyan] {performance.total_time_ms:.1f}ms  "
        f"[cyan]Cache hit:[/cyan] {performance.cache_hit}"
    )
    if result.failed_strategies:
        console.print(f"[yellow]Failed strategies:[/yellow] {', '.join(result.failed_strategies)}")
    if result.summary:
        console.print(f"[bold]Summary:[/bold] {result.summary}")


async def run_search(
    data_dir: str,
    query_text: str,
    options: SearchOptions,
    reasoning_url: str | None,
) -> UnifiedSearchResult:
    reasoning = HttpReasoningClient(reasoning_url) if reasoning_url else None
    service = SearchService(
        document_store=JsonDocumentStore(data_dir),
        reasoning=reasoning,
        config=SearchConfig.from_env(),
    )
    try:
        return await service.search(query_text, options)
    finally:
        await service.shutdown()
        if reasoning is not None:
            await reasoning.close()


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--data-dir",
    envvar="LIFELOG_DATA_DIR",
    required=True,
    type=click.Path(file_okay=False),
    help="Directory of lifelog JSON/JSONL exports.",
)
@click.option(
    "--strategy",
    type=click.Choice([s.value for s in SearchStrategy if s != SearchStrategy.DECOMPOSED]),
    default=SearchStrategy.AUTO.value,
    show_default=True,
    help="Search strategy to run.",
)
@click.option("--limit", "-k", type=int, default=20, show_default=True, help="Maximum number of results.")
@click.option("--threshold", type=float, default=None, help="Minimum score for lexical matches.")
@click.option("--no-cache", is_flag=True, default=False, help="Bypass the result cache.")
@click.option("--no-parallel", is_flag=True, default=False, help="Disable parallel strategy execution.")
@click.option("--no-expansion", is_flag=True, default=False, help="Disable synonym query expansion.")
@click.option("--reasoning-url", envvar="LIFELOG_REASONING_URL", help="Base URL of a reasoning service.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the full result as JSON.")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
@click.argument("query", nargs=-1, required=True)
def main(
    data_dir: str,
    strategy: str,
    limit: int,
    threshold: float | None,
    no_cache: bool,
    no_parallel: bool,
    no_expansion: bool,
    reasoning_url: str | None,
    as_json: bool,
    verbose: bool,
    query: Sequence[str],
) -> None:
    """Search lifelog documents in DATA_DIR for QUERY."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    query_text = " ".join(query)
    options = SearchOptions(
        strategy=SearchStrategy(strategy),
        limit=limit,
        score_threshold=threshold,
        enable_cache=not no_cache,
        enable_parallel=not no_parallel,
        enable_query_expansion=not no_expansion,
    )

    if not os.path.isdir(data_dir):
        click.echo(f"[fatal] Data directory not found: {data_dir}", err=True)
        raise SystemExit(1)

    try:
        result = asyncio.run(run_search(data_dir, query_text, options, reasoning_url))
    except DocumentStoreUnavailableError as e:
        click.echo(f"[fatal] {e}", err=True)
        raise SystemExit(1)

    if as_json:
        click.echo(json.dumps(result.model_dump(mode="json"), indent=2))
        return

    if not result.results:
        click.echo("No results found.")
        return
    render_results(result)


if __name__ == "__main__":  # pragma: no cover
    main()
