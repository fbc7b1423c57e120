#!/usr/bin/env python3
"""
shuttlr CLI

Command-line interface for direct peer-to-peer file transfer.

Usage:
    shuttlr relay                          # Run a development signaling relay
    shuttlr send ROOM FILE...              # Join ROOM and send files
    shuttlr receive ROOM -o DIR            # Join ROOM and save incoming files
    shuttlr api                            # Run the local control API
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn

from . import __version__
from .config import Config, load_config
from .errors import ShuttlrError
from .negotiation import SessionStatus
from .session import Session
from .storage import DownloadStore

console = Console()


def setup_logging(verbose: bool = False, level_name: str = 'INFO'):
    """Configure logging with rich output."""
    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )
    # aioice/aiortc are chatty at INFO
    if not verbose:
        for name in ('aioice', 'aiortc'):
            logging.getLogger(name).setLevel(logging.WARNING)


@click.group()
@click.version_option(__version__, prog_name='shuttlr')
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False),
              help='JSON config file')
@click.option('--signaling-url', help='Signaling relay websocket URL')
@click.pass_context
def cli(ctx, verbose, config_path, signaling_url):
    """shuttlr - direct peer-to-peer file transfer."""
    try:
        config = load_config(Path(config_path) if config_path else None)
    except ShuttlrError as e:
        raise click.ClickException(e.message)

    if signaling_url:
        config.signaling_url = signaling_url

    setup_logging(verbose, config.log_level)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


def _session_panel(config: Config, room: str, user: str, is_initiator: bool) -> Panel:
    return Panel.fit(
        f"Room: [cyan]{room}[/cyan]\n"
        f"User: [cyan]{user}[/cyan]\n"
        f"Role: [yellow]{'initiator' if is_initiator else 'responder'}[/yellow]\n"
        f"Relay: [blue]{config.signaling_url}[/blue]",
        title="Session"
    )


@cli.command()
@click.argument('room')
@click.argument('files', nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option('--user', '-u', default='sender', help='User name announced to the room')
@click.option('--initiator/--responder', default=True, help='Negotiation role')
@click.option('--timeout', default=60.0, help='Seconds to wait for the peer')
@click.pass_context
def send(ctx, room, files, user, initiator, timeout):
    """Join ROOM and send FILES to the peer."""
    config = ctx.obj['config']

    async def run() -> int:
        session = Session(config)
        failures = 0

        console.print(_session_panel(config, room, user, initiator))
        try:
            await session.initialize(room, user, initiator)

            with console.status("Waiting for peer..."):
                connected = await session.wait_until_connected(timeout)
            if not connected:
                console.print(f"[red]✗ Could not connect: {session.error or 'timed out'}[/red]")
                return 1

            console.print(f"[green]✓ Connected to {session.remote_peer or 'peer'}[/green]")

            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
                console=console,
            ) as progress:
                for file_path in files:
                    name = Path(file_path).name
                    task = progress.add_task(f"Sending {name}", total=100)

                    def update_progress(percent, bytes_sent, total, task=task):
                        progress.update(task, completed=percent)

                    try:
                        result = await session.send_file(Path(file_path), update_progress)
                    except ShuttlrError as e:
                        failures += 1
                        progress.update(task, description=f"[red]{name} failed[/red]")
                        console.print(f"[red]✗ {name}: {e.message}[/red]")
                        continue

                    progress.update(task, completed=100, description=f"Sent {name}")
                    console.print(f"[green]✓ {result.file_name} "
                                  f"({format_size(result.file_size)}, "
                                  f"{result.total_chunks} chunks)[/green]")

        except ShuttlrError as e:
            console.print(f"[red]✗ {e.message}[/red]")
            return 1
        finally:
            await session.disconnect()

        return 1 if failures else 0

    ctx.exit(asyncio.run(run()))


@cli.command()
@click.argument('room')
@click.option('--user', '-u', default='receiver', help='User name announced to the room')
@click.option('--output', '-o', type=click.Path(file_okay=False), help='Output directory')
@click.option('--initiator/--responder', default=False, help='Negotiation role')
@click.pass_context
def receive(ctx, room, user, output, initiator):
    """Join ROOM and save every file the peer sends."""
    config = ctx.obj['config']
    store = DownloadStore(Path(output) if output else config.download_dir)

    async def run():
        session = Session(config)
        finished = asyncio.Event()
        pending = set()

        def on_status(status: SessionStatus):
            if status == SessionStatus.CONNECTED:
                console.print(f"[green]✓ Connected to {session.remote_peer or 'peer'}[/green]")
            elif status in (SessionStatus.DISCONNECTED, SessionStatus.FAILED):
                finished.set()

        def on_progress(file_name: str, percent: int):
            if percent == 0:
                console.print(f"[dim]Receiving {file_name}...[/dim]")

        def on_complete(payload: bytes, file_name: str, mime_type: str):
            task = asyncio.ensure_future(store.save(payload, file_name))
            pending.add(task)
            task.add_done_callback(pending.discard)
            task.add_done_callback(_report_saved)

        def _report_saved(task):
            if task.cancelled():
                return
            if task.exception() is not None:
                console.print(f"[red]✗ Could not save file: {task.exception()}[/red]")
            else:
                console.print(f"[green]✓ Saved to: {task.result()}[/green]")

        session.set_status_handler(on_status)
        session.set_file_receive_progress_handler(on_progress)
        session.set_file_complete_handler(on_complete)

        console.print(_session_panel(config, room, user, initiator))
        console.print(f"[dim]Saving files to {store.directory}. Press Ctrl+C to stop[/dim]\n")

        try:
            await session.initialize(room, user, initiator)
            await finished.wait()
            if session.error:
                console.print(f"[yellow]Session ended: {session.error}[/yellow]")
            else:
                console.print("[yellow]Peer left[/yellow]")
        except ShuttlrError as e:
            console.print(f"[red]✗ {e.message}[/red]")
        finally:
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            await session.disconnect()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/yellow]")

    console.print(f"[green]{len(store.saved)} file(s) received[/green]")


@cli.command()
@click.option('--host', default=None, help='Host to bind to')
@click.option('--port', default=None, type=int, help='Port to listen on')
@click.pass_context
def relay(ctx, host, port):
    """Run the development signaling relay."""
    config = ctx.obj['config']
    host = host or config.relay_host
    port = port or config.relay_port

    from .signaling.relay import run_relay_server

    console.print(Panel.fit(
        f"[bold green]Signaling relay[/bold green]\n\n"
        f"Listening on [cyan]ws://{host}:{port}/[/cyan]",
        title="shuttlr relay"
    ))
    try:
        asyncio.run(run_relay_server(host, port))
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")


@cli.command()
@click.option('--host', default=None, help='Host to bind to')
@click.option('--port', default=None, type=int, help='Port to listen on')
@click.pass_context
def api(ctx, host, port):
    """Run the local control API."""
    config = ctx.obj['config']
    host = host or config.api_host
    port = port or config.api_port

    from .api import run_api_server

    async def run():
        session = Session(config)
        console.print(f"\n[dim]REST API available at http://{host}:{port}[/dim]")
        console.print(f"[dim]API docs at http://{host}:{port}/docs[/dim]\n")
        await run_api_server(session, host=host, port=port)

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")


def format_size(bytes_count: int) -> str:
    """Format bytes as human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


if __name__ == '__main__':
    cli()
