"""Resume token management CLI commands."""

from __future__ import annotations

import asyncio
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from feedwatch.core.exceptions import FeedWatchError

console = Console()


def _run(action: str) -> Any:
    async def _execute() -> Any:
        from feedwatch.core.config import get_settings
        from feedwatch.feed.mongo import open_mongo_client
        from feedwatch.watcher.resume_token import MongoResumeTokenStore

        settings = get_settings()
        async with open_mongo_client(settings.mongodb) as client:
            store = MongoResumeTokenStore(
                client,
                database=settings.mongodb.database,
                collection=settings.mongodb.collection,
                tokens_database=settings.mongodb.resume_tokens_database,
                tokens_collection=settings.mongodb.resume_tokens_collection,
            )
            if action == "clear":
                await store.clear()
                return None
            return await store.describe()

    try:
        return asyncio.run(_execute())
    except FeedWatchError as e:
        console.print(f"[red]✗[/red] {e}")
        raise SystemExit(1)


@click.group()
def tokens() -> None:
    """Manage persisted resume tokens."""
    pass


@tokens.command("show")
@click.option("--format", "output_format", type=click.Choice(["table", "json"]), default="table")
def show_token(output_format: str) -> None:
    """Show the stored resume token for the configured collection."""
    record = _run("show")

    if record is None:
        console.print("[yellow]No resume token stored[/yellow]")
        return

    if output_format == "json":
        import json
        console.print(json.dumps(record, indent=2, default=str))
        return

    table = Table(title="Resume Token")
    table.add_column("Namespace", style="cyan")
    table.add_column("Token")
    table.add_column("Updated")
    table.add_column("Age (s)")

    age = record["age_seconds"]
    table.add_row(
        record["namespace"],
        str(record["token"]),
        str(record["updated_at"]),
        f"{age:.1f}" if age is not None else "-",
    )
    console.print(table)


@tokens.command("clear")
@click.confirmation_option(prompt="Forget the stored resume token? The next watch starts from now.")
def clear_token() -> None:
    """Delete the stored resume token for the configured collection."""
    _run("clear")
    console.print("[green]✓[/green] Resume token cleared")
