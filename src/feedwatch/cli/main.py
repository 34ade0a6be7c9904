"""Main CLI entry point."""

from __future__ import annotations

import asyncio
import json
from contextlib import aclosing
from typing import Any

import click
from rich.console import Console

from feedwatch import __version__
from feedwatch.core.config import CheckpointBackend, Settings, configure_settings, get_settings
from feedwatch.core.exceptions import FeedWatchError
from feedwatch.core.types import ChangeEvent, FilterSpec, OperationType, ResumeToken

console = Console()
err_console = Console(stderr=True)


@click.group()
@click.version_option(version=__version__, prog_name="feedwatch")
@click.option("--database", help="Database to watch (overrides FEEDWATCH_MONGODB__DATABASE)")
@click.option("--collection", help="Collection to watch (overrides FEEDWATCH_MONGODB__COLLECTION)")
@click.pass_context
def cli(ctx: click.Context, database: str | None, collection: str | None) -> None:
    """
    feedwatch - Resumable MongoDB change-feed watcher.

    Use 'feedwatch COMMAND --help' for more information on a command.
    """
    ctx.ensure_object(dict)

    updates: dict[str, Any] = {}
    if database:
        updates["database"] = database
    if collection:
        updates["collection"] = collection
    if updates:
        settings = get_settings()
        configure_settings(
            settings.model_copy(update={"mongodb": settings.mongodb.model_copy(update=updates)})
        )


from feedwatch.cli.tokens import tokens  # noqa: E402

cli.add_command(tokens)


def print_event(event: ChangeEvent) -> None:
    console.print(event.to_dict())


def print_gap(position: ResumeToken) -> None:
    err_console.print(
        f"[yellow]Resume point {position} is no longer available; "
        "resubscribed from now, some changes were missed[/yellow]"
    )


class ConsoleSink:
    """Sink that prints each event and a summary on close."""

    def __init__(self, target: Console) -> None:
        self._console = target
        self.count = 0

    async def write(self, event: ChangeEvent) -> None:
        self._console.print(event.to_dict())
        self.count += 1

    def close(self) -> None:
        err_console.print(f"[dim]{self.count} change(s) written[/dim]")


async def _watch(
    settings: Settings,
    filter_spec: FilterSpec,
    duration: float | None,
    style: str,
) -> None:
    from feedwatch.feed.mongo import MongoFeedSource, open_mongo_client
    from feedwatch.resilience.shutdown import GracefulShutdown
    from feedwatch.watcher.controller import WatcherController
    from feedwatch.watcher.resume_token import create_token_store

    shutdown = GracefulShutdown(timeout=settings.backoff.max_delay)

    async with open_mongo_client(settings.mongodb) as client:
        source = MongoFeedSource.from_settings(client, settings.mongodb)
        store = await create_token_store(settings, client)
        controller = WatcherController.from_settings(
            source,
            settings,
            token_store=store,
            on_gap=print_gap,
        )

        shutdown.register("watcher", controller.stop)
        shutdown.register_signals(force_task=asyncio.current_task())

        err_console.print(
            f"[bold]Watching[/bold] {source.namespace}"
            + (f" for {duration:g}s" if duration else " until interrupted")
        )

        try:
            if style == "iterate":
                async with aclosing(controller.iter_events(filter_spec, duration)) as events:
                    async for event in events:
                        print_event(event)
            elif style == "pipe":
                await controller.pipe(ConsoleSink(console), filter_spec, duration)
            else:
                await controller.run(print_event, filter_spec, duration)
        finally:
            shutdown.unregister_signals()


@cli.command()
@click.option(
    "--match",
    "matches",
    multiple=True,
    metavar="PATH=VALUE",
    help="Only changes whose PATH equals VALUE (JSON or string); repeatable",
)
@click.option(
    "--operation",
    "operations",
    multiple=True,
    type=click.Choice([op.value for op in OperationType if op is not OperationType.OTHER]),
    help="Only these operation types; repeatable",
)
@click.option(
    "--duration",
    type=float,
    default=None,
    help="Seconds to watch; 0 runs until interrupted (default from settings)",
)
@click.option(
    "--style",
    type=click.Choice(["callback", "iterate", "pipe"]),
    default="callback",
    show_default=True,
    help="How events are consumed",
)
@click.option(
    "--store",
    type=click.Choice([b.value for b in CheckpointBackend]),
    default=None,
    help="Where resume tokens are kept (default from settings)",
)
def watch(
    matches: tuple[str, ...],
    operations: tuple[str, ...],
    duration: float | None,
    style: str,
    store: str | None,
) -> None:
    """Print changes on the configured collection."""
    from feedwatch.observability.logging import configure_logging
    from feedwatch.observability.metrics import set_app_info, start_metrics_server

    settings = get_settings()
    if store:
        settings = settings.model_copy(
            update={
                "checkpoint": settings.checkpoint.model_copy(
                    update={"backend": CheckpointBackend(store)}
                )
            }
        )

    try:
        filter_spec = FilterSpec.from_pairs(matches, operations)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--match") from e

    if duration is None:
        duration = settings.watcher.duration
    elif duration <= 0:
        duration = None

    configure_logging(
        level=settings.observability.log_level,
        format_type=settings.observability.log_format,
    )
    if settings.observability.metrics_enabled:
        set_app_info(__version__, settings.environment)
        start_metrics_server(settings.observability.metrics_port)

    try:
        asyncio.run(_watch(settings, filter_spec, duration, style))
    except FeedWatchError as e:
        err_console.print(f"[red]✗[/red] {e}")
        raise SystemExit(1)
    except (KeyboardInterrupt, asyncio.CancelledError):
        err_console.print("\n[yellow]Interrupted[/yellow]")


@cli.command()
def info() -> None:
    """Show application information."""
    settings = get_settings()

    console.print(f"[bold]feedwatch[/bold] v{__version__}")
    console.print(f"Environment: {settings.environment}")
    console.print(f"MongoDB: {settings.mongodb.uri.get_secret_value().split('@')[-1]}")
    console.print(f"Watching: {settings.mongodb.database}.{settings.mongodb.collection}")
    console.print(f"Checkpoint backend: {settings.checkpoint.backend.value}")


def redact(obj: Any) -> Any:
    """Mask values whose keys look sensitive."""
    sensitive = ("secret", "password", "token", "uri", "url")
    if isinstance(obj, dict):
        return {
            k: "***" if k.lower().endswith(sensitive) else redact(v)
            for k, v in obj.items()
        }
    if isinstance(obj, list):
        return [redact(v) for v in obj]
    return obj


def flatten_env(obj: dict[str, Any], prefix: str = "") -> list[str]:
    items = []
    for k, v in obj.items():
        key = f"{prefix}__{k}".upper() if prefix else k.upper()
        if isinstance(v, dict):
            items.extend(flatten_env(v, key))
        else:
            items.append(f"FEEDWATCH_{key}={v}")
    return items


@cli.command()
@click.option("--format", "output_format", type=click.Choice(["yaml", "json", "env"]), default="yaml")
def config(output_format: str) -> None:
    """Show current configuration."""
    import yaml

    settings = get_settings()
    redacted = redact(settings.model_dump(mode="json"))

    if output_format == "json":
        console.print(json.dumps(redacted, indent=2))
    elif output_format == "env":
        for line in flatten_env(redacted):
            console.print(line)
    else:
        console.print(yaml.safe_dump(redacted, default_flow_style=False))


if __name__ == "__main__":
    cli()
