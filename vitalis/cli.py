"""Command-line interface for the Vitalis agent."""

import asyncio
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .edge.agent import run_agent
from .edge.buffer import AsyncBatchBuffer, BatchBuffer
from .edge.config import AgentConfig, ConfigError
from .edge.sender import Sender
from .utils.logger import setup_logging

app = typer.Typer(
    name="vitalis-agent",
    help="Host telemetry agent that ships metrics to the Vitalis ingestion API",
    add_completion=False,
)

console = Console()


def run_async(coro):
    """Run async function in sync context."""
    return asyncio.run(coro)


def _load_config(
    config_path: Optional[Path],
    url: Optional[str] = None,
    token: Optional[str] = None,
    validate: bool = True,
) -> AgentConfig:
    try:
        config = AgentConfig.load(config_path, url=url, token=token)
        if validate:
            config.validate()
    except ConfigError as e:
        console.print(f"[red]Configuration error: {escape(str(e))}[/red]")
        raise typer.Exit(1)
    return config


def _mask(token: str) -> str:
    if len(token) <= 8:
        return "*" * len(token)
    return f"{token[:4]}...{token[-4:]}"


@app.command()
def run(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config file"),
    url: Optional[str] = typer.Option(None, "--url", "-u", help="Ingestion server base URL"),
    token: Optional[str] = typer.Option(None, "--token", "-t", help="Machine token"),
):
    """Run the agent until interrupted."""
    config = _load_config(config_path, url, token)
    setup_logging(config.logging.level, config.logging.file)

    console.print(Panel(
        f"""[cyan]Server:[/cyan] {config.server.url}
[cyan]Collect interval:[/cyan] {config.collection.interval:g}s
[cyan]Batch interval:[/cyan] {config.collection.batch_interval:g}s
[cyan]Buffer:[/cyan] {config.buffer.path if config.buffer.enabled else 'disabled'}""",
        title="Vitalis Agent",
        border_style="green",
    ))

    run_agent(config)


@app.command()
def drain(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config file"),
    url: Optional[str] = typer.Option(None, "--url", "-u", help="Ingestion server base URL"),
    token: Optional[str] = typer.Option(None, "--token", "-t", help="Machine token"),
):
    """Deliver buffered batches once and exit."""
    config = _load_config(config_path, url, token)
    setup_logging(config.logging.level, config.logging.file)

    if not config.buffer.enabled:
        console.print("[yellow]Buffer is disabled, nothing to drain[/yellow]")
        return

    async def _drain() -> tuple[int, int]:
        buffer = AsyncBatchBuffer(
            path=config.buffer.path,
            max_size_mb=config.buffer.max_size_mb,
            max_batches=config.buffer.max_batches,
            overflow=config.buffer.overflow,
        )
        async with Sender(
            server_url=config.server.url,
            machine_token=config.server.machine_token,
            buffer=buffer,
            max_retries=config.server.max_retries,
            base_delay=config.server.retry_delay,
            timeout=config.server.timeout,
        ) as sender:
            try:
                sent = await sender.flush_buffer()
                remaining = await buffer.count()
            finally:
                buffer.close()
        return sent, remaining

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        progress.add_task("Draining buffer...", total=None)
        sent, remaining = run_async(_drain())

    console.print(f"[green]Delivered {sent} batches[/green], {remaining} remaining")


@app.command("buffer-status")
def buffer_status(config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config file")):
    """Show local buffer statistics."""
    config = _load_config(config_path, validate=False)

    if not config.buffer.enabled:
        console.print("[yellow]Buffer is disabled[/yellow]")
        return

    with BatchBuffer(
        path=config.buffer.path,
        max_size_mb=config.buffer.max_size_mb,
        max_batches=config.buffer.max_batches,
        overflow=config.buffer.overflow,
    ) as buffer:
        stats = buffer.get_stats()

    table = Table(title="Buffer Status")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Path", stats['path'])
    table.add_row("Batches", str(stats['total_batches']))
    table.add_row("Max Batches", str(stats['max_batches'] or "unlimited"))
    table.add_row("Size", f"{stats['size_mb']:.2f} MB / {stats['max_size_mb']:g} MB")
    table.add_row("Overflow Policy", stats['overflow'])
    table.add_row("Oldest Batch Age", f"{stats['oldest_batch_age']:.0f}s")

    console.print(table)


@app.command("show-config")
def show_config(config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config file")):
    """Print the effective configuration as YAML."""
    config = _load_config(config_path, validate=False)
    data = config.to_dict()
    data['server']['machine_token'] = _mask(data['server']['machine_token'])
    console.print(yaml.safe_dump(data, default_flow_style=False, sort_keys=False), markup=False)


if __name__ == "__main__":
    app()
