"""
peerdrop CLI

Usage:
    peerdrop serve                 # Run the relay server
    peerdrop send FILE             # Create a session and send a file
    peerdrop receive CODE          # Join a session and receive a file
    peerdrop config                # Show effective configuration
"""

import asyncio
import json
import logging
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn

from .config import EXAMPLE_CONFIG, Config, load_config
from .errors import PeerDropError
from .peer import Peer
from .transfer import TransferState

console = Console()


def setup_logging(verbose: bool = False, level: str = 'INFO'):
    """Configure logging with rich output."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)],
    )


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('-c', '--config', 'config_path', type=click.Path(path_type=Path),
              help='JSON config file')
@click.option('--relay', help='Relay WebSocket URL (overrides config)')
@click.pass_context
def cli(ctx, verbose, config_path, relay):
    """peerdrop - send a file directly to a peer using a 6-digit code."""
    config = load_config(config_path)
    if relay:
        config.relay_url = relay
    setup_logging(verbose, config.log_level)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command()
@click.option('--host', help='Interface to bind')
@click.option('--port', type=int, help='Port to listen on')
@click.pass_context
def serve(ctx, host, port):
    """Run the relay server."""
    config: Config = ctx.obj['config']
    if host:
        config.host = host
    if port:
        config.port = port

    console.print(Panel.fit(
        f"[bold green]peerdrop relay[/bold green]\n\n"
        f"Listening: [yellow]{config.host}:{config.port}[/yellow]\n"
        f"WebSocket: [cyan]/ws[/cyan]   Health: [cyan]/health[/cyan]\n"
        f"Session idle timeout: [yellow]{config.session_idle_timeout:.0f}s[/yellow]",
        title="Relay",
    ))

    from .api import run_api_server

    try:
        asyncio.run(run_api_server(config))
    except KeyboardInterrupt:
        console.print("\n[yellow]Relay stopped[/yellow]")


def _progress_bar() -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
        console=console,
    )


def _track(peer: Peer, progress: Progress, task_id):
    """Mirror state machine snapshots onto a progress bar."""
    def update(snapshot: dict):
        transfer = snapshot.get('transfer')
        if transfer:
            progress.update(
                task_id,
                completed=transfer['progressPercent'],
                description=(
                    f"{snapshot['state']} {transfer['fileName']} "
                    f"({transfer['completedChunks']}/{transfer['totalChunks']} chunks, "
                    f"{format_size(transfer['throughput'])}/s)"
                ),
            )
        else:
            progress.update(task_id, description=snapshot['state'])
    peer.machine.on_update(update)


def _report(peer: Peer, state: TransferState):
    machine = peer.machine
    if state == TransferState.COMPLETED:
        if peer.saved_path:
            console.print(f"\n[green]✓ Saved to: {peer.saved_path}[/green]")
        else:
            console.print("\n[green]✓ Transfer complete[/green]")
    elif state == TransferState.IDLE:
        reason = machine.handshake.last_reject_reason or 'declined'
        console.print(f"\n[yellow]✗ Offer rejected ({reason})[/yellow]")
    else:
        error = machine.last_error
        reason = f"{error.reason}: {error.message}" if error else 'unknown'
        console.print(f"\n[red]✗ Transfer failed ({reason})[/red]")


@cli.command()
@click.argument('file_path', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--mime-type', help='Override the guessed mime type')
@click.option('--wait', 'wait_timeout', type=float, default=None,
              help='Seconds to wait for a receiver (default: forever)')
@click.pass_context
def send(ctx, file_path, mime_type, wait_timeout):
    """Create a session and send FILE to whoever joins it."""
    config: Config = ctx.obj['config']

    async def run() -> bool:
        peer = Peer(config)
        try:
            await peer.start()
            code = await peer.create_session()
            console.print(Panel.fit(
                f"Session code: [bold cyan]{code}[/bold cyan]\n\n"
                f"On the other machine run:  [dim]peerdrop receive {code}[/dim]",
                title=file_path.name,
            ))

            with console.status("Waiting for receiver..."):
                await peer.wait_for_peer(wait_timeout)

            with _progress_bar() as progress:
                task_id = progress.add_task("Offering...", total=100)
                _track(peer, progress, task_id)
                await peer.send_file(file_path, mime_type)
                state = await peer.wait_finished()

            _report(peer, state)
            return state == TransferState.COMPLETED
        except asyncio.TimeoutError:
            console.print("\n[red]✗ No receiver joined[/red]")
            return False
        except PeerDropError as e:
            console.print(f"\n[red]✗ {e.reason}: {e.message}[/red]")
            return False
        finally:
            await peer.stop()

    if not asyncio.run(run()):
        ctx.exit(1)


@cli.command()
@click.argument('code')
@click.option('-o', '--output', type=click.Path(file_okay=False, path_type=Path),
              help='Download directory (overrides config)')
@click.option('-y', '--yes', is_flag=True, help='Accept the offer without asking')
@click.pass_context
def receive(ctx, code, output, yes):
    """Join session CODE and receive the offered file."""
    config: Config = ctx.obj['config']
    if output:
        config.download_dir = output

    async def run() -> bool:
        peer = Peer(config)
        try:
            await peer.start()
            await peer.join_session(code)

            with console.status(f"Joined {code}, waiting for an offer..."):
                offer = await peer.wait_for_offer()

            console.print(
                f"Incoming: [bold]{offer.file_name}[/bold] "
                f"({format_size(offer.file_size)}, {offer.mime_type})"
            )
            accepted = yes or await asyncio.to_thread(click.confirm, "Accept?", default=True)
            if not accepted:
                await peer.reject()
                console.print("[yellow]Rejected[/yellow]")
                return False

            with _progress_bar() as progress:
                task_id = progress.add_task("Connecting...", total=100)
                _track(peer, progress, task_id)
                await peer.accept()
                state = await peer.wait_finished()

            _report(peer, state)
            return state == TransferState.COMPLETED
        except PeerDropError as e:
            console.print(f"\n[red]✗ {e.reason}: {e.message}[/red]")
            return False
        finally:
            await peer.stop()

    if not asyncio.run(run()):
        ctx.exit(1)


@cli.command('config')
@click.option('--example', is_flag=True, help='Print an example config file')
@click.option('--save', 'save_path', type=click.Path(dir_okay=False, path_type=Path),
              help='Write the effective configuration to a file')
@click.pass_context
def show_config(ctx, example, save_path):
    """Show the effective configuration."""
    config: Config = ctx.obj['config']
    if example:
        console.print(EXAMPLE_CONFIG.strip())
        return
    if save_path:
        config.save(save_path)
        console.print(f"[green]Saved configuration to {save_path}[/green]")
        return
    console.print_json(json.dumps(config.to_dict()))


def format_size(bytes_count: float) -> str:
    """Format bytes as human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


if __name__ == '__main__':
    cli()
