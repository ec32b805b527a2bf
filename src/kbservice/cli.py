"""
Command-line interface for kbservice.

Commands:
    init      - Create (or recreate) the vector index
    sync      - Synchronize the index with a directory of markdown files
    sync-urls - Synchronize the index with a list of web pages
    search    - Run a similarity search
    version   - Show version information
"""

import threading
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from kbservice.errors import KBServiceError, OperationCancelledError

app = typer.Typer(
    name="kbservice",
    help="Retrieval knowledge base: chunk, embed, sync and search documents",
    add_completion=False,
)
console = Console()


def _knowledge_base():
    from kbservice.logging_utils import setup_logging
    from kbservice.retrieval.resources import get_knowledge_base

    setup_logging()
    return get_knowledge_base()


def _run_sync(kb, source, recursive: bool, max_items: int) -> None:
    from kbservice.retrieval.data_ingestion import LoadOptions

    kb.datasource = source
    cancel = threading.Event()
    options = LoadOptions(recursive=recursive, max_items=max_items)

    try:
        kb.init_store()
        with console.status("[bold green]Synchronizing..."):
            report = kb.sync(options, cancel)
    except KeyboardInterrupt:
        cancel.set()
        console.print("[yellow]Sync interrupted.[/yellow]")
        raise typer.Exit(130)
    except OperationCancelledError:
        console.print("[yellow]Sync cancelled.[/yellow]")
        raise typer.Exit(130)
    except KBServiceError as e:
        console.print(f"[red]Sync failed: {escape(str(e))}[/red]")
        partial = getattr(e, "report", None)
        if partial is not None:
            console.print(
                f"[yellow]{partial.added} documents indexed, "
                f"{partial.skipped} unchanged before the failure.[/yellow]"
            )
        raise typer.Exit(1)
    finally:
        kb.close()

    table = Table(title="Sync report")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Documents indexed", str(report.added))
    table.add_row("Documents unchanged", str(report.skipped))
    table.add_row("Chunks written", str(report.chunks_written))
    console.print(table)


@app.command()
def init(
    force: bool = typer.Option(False, "--force", "-f", help="Drop and recreate the index"),
) -> None:
    """Create the vector index (load it if it already exists)."""
    kb = _knowledge_base()
    try:
        kb.init_store(force_recreate=force)
    except KBServiceError as e:
        console.print(f"[red]Initialization failed: {escape(str(e))}[/red]")
        raise typer.Exit(1)
    kb.close()

    action = "Recreated" if force else "Initialized"
    console.print(f"[green]{action} index {kb.store.name}[/green]")


@app.command()
def sync(
    data_dir: Optional[Path] = typer.Argument(None, help="Directory with markdown files"),
    recursive: bool = typer.Option(True, help="Descend into sub-directories"),
    max_items: int = typer.Option(0, help="Stop after this many documents (0 = all)"),
) -> None:
    """Synchronize the index with a directory of markdown files."""
    from kbservice.retrieval.data_ingestion import FileSystemSource, validate_data_directory

    kb = _knowledge_base()
    source = FileSystemSource(data_dir) if data_dir is not None else kb.datasource

    valid, message = validate_data_directory(source.root)
    if not valid:
        console.print(f"[red]{escape(message)}[/red]")
        raise typer.Exit(1)
    console.print(f"[blue]{escape(message)}[/blue]")

    _run_sync(kb, source, recursive, max_items)


@app.command("sync-urls")
def sync_urls(
    urls: list[str] = typer.Argument(..., help="URLs to fetch"),
    max_items: int = typer.Option(0, help="Stop after this many documents (0 = all)"),
) -> None:
    """Synchronize the index with a list of web pages."""
    from kbservice.retrieval.data_ingestion import WebSource

    kb = _knowledge_base()
    _run_sync(kb, WebSource(urls), recursive=False, max_items=max_items)


@app.command()
def search(
    query: str = typer.Argument(..., help="Query text"),
    limit: Optional[int] = typer.Option(None, "--limit", "-k", help="Number of results"),
    source: Optional[str] = typer.Option(None, help="Only return chunks from this source"),
) -> None:
    """Run a similarity search against the index."""
    kb = _knowledge_base()
    filter = {"source": source} if source else None

    try:
        kb.init_store()
        with console.status("[bold green]Searching..."):
            results = kb.similarity_search(query, limit=limit, filter=filter)
    except (KBServiceError, ValueError) as e:
        console.print(f"[red]Search failed: {escape(str(e))}[/red]")
        raise typer.Exit(1)

    if not results:
        console.print("[yellow]No results.[/yellow]")
        return

    table = Table(title=f"Results for: {escape(query)}")
    table.add_column("Score", style="green")
    table.add_column("Source", style="cyan")
    table.add_column("Content")
    for result in results:
        preview = result.content if len(result.content) <= 200 else result.content[:200] + "..."
        table.add_row(f"{result.score:.3f}", escape(str(result.metadata.get("source", ""))), escape(preview))
    console.print(table)


@app.command()
def version() -> None:
    """Show version information."""
    from kbservice import __version__

    console.print(f"kbservice v{__version__}")


if __name__ == "__main__":
    app()
