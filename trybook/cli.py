"""CLI entry points: `trybook start`, `trybook open` and `trybook notebooks`."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from trybook.config import db_path, ensure_dirs, load_config
from trybook.notebook.store import get_store
from trybook.notebook.workspace import open_notebook
from trybook.validate import parse_repo_input

app = typer.Typer(name="trybook", help="Prompt notebooks over disposable git worktrees.")
console = Console()

_DIR_HELP = "Base directory for Trybook data (default ~/.trybook)"


def _use_dir(base: Path | None) -> None:
    if base is not None:
        os.environ["TRYBOOK_DIR"] = str(base.expanduser().resolve())
    ensure_dirs()


@app.command()
def start(
    port: int | None = typer.Option(None, "--port", "-p", help="Port to serve on"),
    host: str | None = typer.Option(None, "--host", help="Interface to bind"),
    base: Path | None = typer.Option(None, "--dir", "-d", help=_DIR_HELP),
) -> None:
    """Start the Trybook server."""
    import logging

    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    _use_dir(base)
    config = load_config()
    bind_host = host or config.server.host
    bind_port = port or config.server.port

    console.print(f"[bold]Starting Trybook on {bind_host}:{bind_port}...[/bold]")
    uvicorn.run("trybook.server:app", host=bind_host, port=bind_port, reload=False, timeout_graceful_shutdown=5)


@app.command("open")
def open_repo(
    repo: str = typer.Argument(help="org/repo or https://github.com/org/repo"),
    base: Path | None = typer.Option(None, "--dir", "-d", help=_DIR_HELP),
) -> None:
    """Clone a repository (if needed) and create a notebook with its own worktree."""
    parsed = parse_repo_input(repo)
    if not parsed.ok or parsed.data is None:
        console.print(f"[red]Error:[/red] {parsed.message}")
        for d in parsed.diagnostics:
            if d.hint:
                console.print(f"  Hint: {d.hint}")
        raise typer.Exit(1)

    _use_dir(base)
    org, name = parsed.data
    config = load_config()
    store = get_store(db_path())

    console.print(f"[bold]Opening {org}/{name}...[/bold]")
    result = asyncio.run(open_notebook(config, store, org, name))
    if not result.ok or result.data is None:
        for d in result.diagnostics:
            console.print(f"[red]Error:[/red] {d.message}")
            if d.hint:
                console.print(f"  Hint: {d.hint}")
        raise typer.Exit(1)

    nb = result.data
    console.print(f"[green]Notebook [bold]{nb.id}[/bold][/green] on {nb.branch}@{nb.commit_short}")


@app.command()
def notebooks(
    limit: int = typer.Option(20, "--limit", "-n", help="How many notebooks to show"),
    base: Path | None = typer.Option(None, "--dir", "-d", help=_DIR_HELP),
) -> None:
    """List the most recent notebooks."""
    _use_dir(base)
    store = get_store(db_path())
    items = store.list_notebooks(limit)
    if not items:
        console.print("[dim]No notebooks yet. Run [bold]trybook open org/repo[/bold] first.[/dim]")
        return

    t = Table(title="Notebooks", show_lines=False)
    t.add_column("ID", style="cyan")
    t.add_column("Repository")
    t.add_column("Branch", style="green")
    t.add_column("Commit")
    t.add_column("Created")
    for it in items:
        t.add_row(it.id, f"{it.org}/{it.repo}", it.branch, it.commit_short, it.created_at)
    console.print(t)


def main() -> None:
    app()
