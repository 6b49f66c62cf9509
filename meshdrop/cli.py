"""
MeshDrop CLI

Command-line interface for swarm file sharing.

Usage:
    meshdrop share FILE              # Host a file, print its link, seed
    meshdrop receive LINK -o DIR     # Download a file from a link
    meshdrop serve                   # Run the REST control API
    meshdrop config                  # Print an example config file
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn
from rich.panel import Panel
from rich.logging import RichHandler

from .config import Config, EXAMPLE_CONFIG, load_config
from .exceptions import MeshDropError
from .orchestrator import TransferOrchestrator
from .transfer.events import EventType, TransferEvents

console = Console()


def setup_logging(verbose: bool = False, level: str = 'INFO'):
    """Route all logging through a RichHandler on the shared console."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(), default=None,
              help='Config file (JSON)')
@click.option('--relay', default=None, help='Relay URL')
@click.option('--key-provider', default=None, help='Keystream provider URL')
@click.pass_context
def cli(ctx, verbose, config_path, relay, key_provider):
    """MeshDrop - peer-assisted encrypted file transfer."""
    config = load_config(Path(config_path) if config_path else None)
    if relay:
        config.relay_url = relay
    if key_provider:
        config.key_provider_url = key_provider

    setup_logging(verbose, config.log_level)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command()
@click.argument('file_path', type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def share(ctx, file_path):
    """Host a file and seed it until interrupted."""
    config: Config = ctx.obj['config']

    async def run():
        orchestrator = TransferOrchestrator(config)
        events = TransferEvents()
        events.on(EventType.PEER_CONNECTED,
                  lambda e: console.print(f"[dim]Peer connected: {e.data['peer_id']}[/dim]"))
        events.on(EventType.ERROR,
                  lambda e: console.print(f"[red]✗ {e.data['error']}[/red]"))

        try:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
            ) as progress:
                task = progress.add_task("Hashing and fetching keys...", total=None)
                link = await orchestrator.share(Path(file_path), events)
                progress.update(task, description="Ready")

            console.print(Panel.fit(
                f"[bold green]File Shared[/bold green]\n\n"
                f"Name: [cyan]{Path(file_path).name}[/cyan]\n"
                f"Size: [yellow]{format_size(Path(file_path).stat().st_size)}[/yellow]\n\n"
                f"[bold]Link (share this):[/bold]\n"
                f"[green]{link}[/green]",
                title="Seeding"
            ))
            console.print("\n[dim]Seeding. Press Ctrl+C to stop[/dim]\n")

            while True:
                await asyncio.sleep(1)
        except MeshDropError as e:
            console.print(f"\n[red]✗ Share failed: {e}[/red]")
        finally:
            await orchestrator.stop()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/yellow]")


@cli.command()
@click.argument('link')
@click.option('--output', '-o', type=click.Path(file_okay=False), default='.',
              help='Output directory')
@click.option('--seed', is_flag=True, help='Keep seeding after the download')
@click.option('--timeout', type=float, default=None, help='Give up after N seconds')
@click.pass_context
def receive(ctx, link, output, seed, timeout):
    """Download a file from a share link."""
    config: Config = ctx.obj['config']

    async def run():
        orchestrator = TransferOrchestrator(config)
        events = TransferEvents()

        try:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
                console=console,
            ) as progress:
                task = progress.add_task("Connecting to relay...", total=100)

                def update_progress(event):
                    p = event.data
                    progress.update(
                        task,
                        completed=p['progress_percent'],
                        description=(
                            f"Receiving... ({p['held_chunks']}/{p['total_chunks']} chunks, "
                            f"{p['peers']} peers)"
                        ),
                    )

                events.on(EventType.PROGRESS, update_progress)
                session = await orchestrator.receive(link, events)
                result = await orchestrator.wait_complete(session.session_id, timeout)
                events.off(EventType.PROGRESS, update_progress)
                progress.update(task, completed=100, description="Received")

            path = await result.save(Path(output))
            console.print(f"\n[green]✓ Saved to: {path}[/green]")
            console.print(
                f"[dim]Chunks via relay: {result.sources.relay}, "
                f"via peers: {result.sources.p2p}[/dim]"
            )

            if seed:
                console.print("\n[dim]Seeding. Press Ctrl+C to stop[/dim]\n")
                while True:
                    await asyncio.sleep(1)
        except asyncio.TimeoutError:
            console.print("\n[red]✗ Timed out[/red]")
        except MeshDropError as e:
            console.print(f"\n[red]✗ Receive failed: {e}[/red]")
        finally:
            await orchestrator.stop()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/yellow]")


@cli.command()
@click.option('--api-host', default=None, help='REST API host')
@click.option('--api-port', type=int, default=None, help='REST API port')
@click.pass_context
def serve(ctx, api_host, api_port):
    """Run the REST control API."""
    config: Config = ctx.obj['config']
    host = api_host or config.api_host
    port = api_port or config.api_port

    async def run():
        orchestrator = TransferOrchestrator(config)
        console.print(Panel.fit(
            f"[bold green]MeshDrop API[/bold green]\n\n"
            f"Relay: [cyan]{config.relay_url}[/cyan]\n"
            f"Keys: [cyan]{config.key_provider_url}[/cyan]\n"
            f"API: [yellow]http://{host}:{port}[/yellow]\n"
            f"Docs: [yellow]http://{host}:{port}/docs[/yellow]",
            title="Control API"
        ))

        from .api import run_api_server
        try:
            await run_api_server(orchestrator, host=host, port=port)
        finally:
            await orchestrator.stop()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping node...[/yellow]")


@cli.command('config')
@click.pass_context
def show_config(ctx):
    """Print an example config file and the active settings."""
    config: Config = ctx.obj['config']
    console.print(Panel(EXAMPLE_CONFIG.strip(), title="Example config.json"))

    table = Table(title="Active Settings")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="yellow")
    for key, value in config.to_dict().items():
        table.add_row(key, str(value))
    console.print(table)


def format_size(bytes_count: int) -> str:
    """1536 -> '1.5 KB'."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
