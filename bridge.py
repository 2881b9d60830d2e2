#!/usr/bin/env python3
"""UDP-MQTT Bridge CLI - relays CloudEvents between a UDP device and an MQTT broker.

Messages received on the UDP port are forwarded to the outbound MQTT topic;
messages received on the inbound MQTT topic are forwarded to the outbound
UDP address. Both directions carry CloudEvents in JSON structured format.

Examples:
    # Use configs/config.yaml (or the per-user config directory)
    python bridge.py start

    # Explicit config file with debug logging
    python bridge.py start --config ./bridge.yaml --verbose

While running, press space to send a ping and measure its round trip,
and 'q', Esc or Ctrl+C to quit.
"""
from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional, TextIO

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

# Ensure the udpmqtt package is importable
if __name__ == "__main__":
    import os
    sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from udpmqtt.bridge import Bridge, KeyboardInput, ManualTrigger
from udpmqtt.config import BridgeConfig, find_config_file, load_config
from udpmqtt.errors import ConfigError, CreationError, TransportInitError

app = typer.Typer(
    name="bridge",
    help="UDP-MQTT Bridge - CloudEvent relay between a UDP device and an MQTT broker",
    add_completion=False,
)
console = Console()


def setup_logging(verbose: bool = False) -> None:
    """Configure logging with rich output."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, console=console)],
    )


def show_config(config: BridgeConfig) -> None:
    table = Table(title="Bridge Configuration", show_header=True)
    table.add_column("Side", style="cyan")
    table.add_column("Direction", style="green")
    table.add_column("Endpoint", style="yellow")

    table.add_row("UDP", "in", f"{config.udp_ip_in}:{config.udp_port_in}")
    table.add_row("UDP", "out", f"{config.udp_ip_out}:{config.udp_port_out}")
    table.add_row("MQTT", "broker", f"{config.broker_url} (client {config.client_id})")
    table.add_row("MQTT", "in", config.topic_in)
    table.add_row("MQTT", "out", config.topic_out)

    console.print(table)
    console.print()


async def run_bridge(bridge: Bridge, stream: Optional[TextIO] = None) -> int:
    """Run the bridge with keyboard control until quit. Returns the exit code.

    Exits 1 when the bridge cannot start or when a transport's inbound
    channel terminates while running (e.g. the broker connection is lost).
    """
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def signal_handler():
        console.print("\n[yellow]Shutting down...[/yellow]")
        stop_event.set()

    # Register signal handlers
    try:
        loop.add_signal_handler(signal.SIGINT, signal_handler)
        loop.add_signal_handler(signal.SIGTERM, signal_handler)
    except NotImplementedError:
        # Windows doesn't support add_signal_handler
        pass

    try:
        await bridge.start()
    except TransportInitError as e:
        console.print(f"[red]Error initializing transports: {e}[/red]")
        return 1

    code = 0
    try:
        with KeyboardInput(stream) as keyboard:
            console.print("Press [bold]space[/bold] to send a ping.")
            console.print("Press [bold]q[/bold], [bold]esc[/bold] or [bold]ctrl+c[/bold] to quit.")

            trigger_task = asyncio.create_task(ManualTrigger(bridge, keyboard.keys()).run())
            stop_task = asyncio.create_task(stop_event.wait())
            closed_task = asyncio.create_task(bridge.wait_terminated())
            try:
                done, _ = await asyncio.wait(
                    {trigger_task, stop_task, closed_task}, return_when=asyncio.FIRST_COMPLETED
                )
                if trigger_task in done and not trigger_task.result():
                    # stdin closed: keep relaying until a signal arrives
                    console.print("[dim]Keyboard input closed; send SIGINT/SIGTERM to stop.[/dim]")
                    done, _ = await asyncio.wait(
                        {stop_task, closed_task}, return_when=asyncio.FIRST_COMPLETED
                    )
                if closed_task in done and closed_task.result() is not None:
                    console.print(f"[red]Transport terminated: {closed_task.result()}[/red]")
                    code = 1
            finally:
                for task in (trigger_task, stop_task, closed_task):
                    task.cancel()
    except CreationError as e:
        console.print(f"[red]Error creating ping event: {e}[/red]")
        return 1
    finally:
        await bridge.stop()
        stats = bridge.get_stats()
        console.print(
            f"[dim]Stats: {stats['forwarded_to_mqtt']} UDP→MQTT, "
            f"{stats['forwarded_to_udp']} MQTT→UDP, {stats['pings_sent']} pings, "
            f"{stats['replies_correlated']} replies, {stats['decode_errors']} decode errors, "
            f"{stats['errors']} handler errors[/dim]"
        )
        console.print("[green]Bridge stopped.[/green]")
    return code


@app.command()
def start(
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to config.yaml (default: ./configs or the user config directory)",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging",
    ),
) -> None:
    """Start the UDP-MQTT bridge.

    \b
    Key bindings while running:
      space          send a ping CloudEvent via UDP
      q / esc / ^C   quit
    """
    setup_logging(verbose)

    try:
        cfg = load_config(config if config is not None else find_config_file())
    except ConfigError as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        raise typer.Exit(1)

    show_config(cfg)
    bridge = Bridge.from_config(cfg)

    console.print(Panel.fit("[bold green]Starting bridge...[/bold green]"))
    try:
        code = asyncio.run(run_bridge(bridge))
    except KeyboardInterrupt:
        code = 0
    if code:
        raise typer.Exit(code)


@app.command("config-path")
def config_path() -> None:
    """Print where the configuration file is looked up."""
    typer.echo(str(find_config_file()))


@app.command()
def info() -> None:
    """Display bridge capabilities and usage information."""
    console.print(
        Panel.fit(
            "[bold]UDP-MQTT Bridge[/bold]\n\n"
            "Relays CloudEvents between a local UDP device and a remote MQTT "
            "broker over TLS.\n\n"
            "[bold]Features:[/bold]\n"
            "  • UDP → MQTT: datagrams forwarded to the outbound topic\n"
            "  • MQTT → UDP: inbound topic forwarded to the device address\n"
            "  • CloudEvents 1.0 JSON framing in both directions\n"
            "  • Ping round-trip timing (press space while running)\n\n"
            "[bold]Configuration:[/bold]\n"
            "  config.yaml in ./configs, else the per-user config directory\n"
            "  (see `config-path`), or pass --config.\n",
            title="About",
        )
    )


if __name__ == "__main__":
    app()
