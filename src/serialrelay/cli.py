"""
Command-line interface for the serial relay.

Provides commands for running the relay, listing serial ports and managing
the configuration file.
"""

import asyncio
import logging
import signal
import sys
from dataclasses import replace
from pathlib import Path

import click
import yaml
from serial.tools import list_ports

from serialrelay import __version__
from serialrelay.core.config import (
    BAUD_RATES,
    DEFAULT_CONFIG_FILE,
    RelayConfig,
    get_default_config,
    load_config,
    save_config,
)
from serialrelay.core.models import ConfigError
from serialrelay.core.supervisor import Supervisor
from serialrelay.health.host import ConsoleHost, LogHost, MultiHost
from serialrelay.serial.discovery import build_port_list

logger = logging.getLogger(__name__)


@click.group()
@click.version_option(version=__version__, prog_name="serialrelay")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option(
    "-c", "--config", "config_path", type=click.Path(exists=True, path_type=Path),
    help="Path to config file"
)
@click.pass_context
def main(ctx: click.Context, verbose: bool, config_path: Path | None) -> None:
    """Serial Relay - Share one serial device with several TCP clients."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    try:
        ctx.obj["config"] = load_config(config_path)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _setup_logging(config: RelayConfig, verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(
        logging, config.log_level.upper(), logging.INFO
    )
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


@main.command("run")
@click.option("--listen-port", "-p", type=int, help="TCP port to listen on")
@click.option("--serial-path", "-s", help="Serial device path")
@click.option("--baud", "-b", type=click.Choice([str(b) for b in BAUD_RATES]),
              help="Baud rate")
@click.option("--response-timeout", type=int, metavar="MS",
              help="Send the error message if the device is silent this long")
@click.option("--select-first", is_flag=True,
              help="Use the first found port if the configured one is missing")
@click.pass_context
def run_cmd(
    ctx: click.Context,
    listen_port: int | None,
    serial_path: str | None,
    baud: str | None,
    response_timeout: int | None,
    select_first: bool,
) -> None:
    """Run the relay until interrupted."""
    verbose = ctx.obj.get("verbose", False)
    config: RelayConfig = ctx.obj["config"]

    overrides = {}
    if listen_port is not None:
        overrides["listen_port"] = listen_port
    if serial_path:
        overrides["serial_path"] = serial_path
    if baud:
        overrides["baud_rate"] = int(baud)
    if response_timeout is not None:
        overrides["response_expected"] = True
        overrides["max_response_ms"] = response_timeout
    if select_first:
        overrides["select_first_found"] = True

    try:
        config = replace(config, **overrides).validate()
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    _setup_logging(config, verbose)
    host = MultiHost(ConsoleHost(), LogHost())

    click.echo(
        f"Relaying {config.serial_path} to TCP port {config.listen_port} "
        "(Ctrl+C to stop)"
    )
    asyncio.run(_run_relay(host, config))


async def _run_relay(host: MultiHost, config: RelayConfig) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler() -> None:
        logger.info("Stopping relay...")
        stop_event.set()

    for signum in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(signum, signal_handler)
        except NotImplementedError:
            pass

    supervisor = Supervisor(host)
    await supervisor.run(config, stop_event)


@main.command("ports")
@click.option(
    "--all", "-a", "show_all", is_flag=True,
    help="Show virtual ports without hardware ids too"
)
@click.pass_context
def ports_cmd(ctx: click.Context, show_all: bool) -> None:
    """List available serial ports."""
    verbose = ctx.obj.get("verbose", False)
    infos = list(list_ports.comports())

    if show_all:
        rows = [(info.device, info.manufacturer or "Internal", info.hwid) for info in infos]
    else:
        rows = [
            (port.path, port.manufacturer, "")
            for port in build_port_list(infos)
            if not port.is_placeholder
        ]

    if not rows:
        click.echo("No serial ports detected")
        return

    click.echo(f"{'DEVICE':<25} {'MANUFACTURER':<25} {'HWID':<30}")
    click.echo("-" * 80)
    for device, manufacturer, hwid in rows:
        click.echo(f"{device:<25} {manufacturer:<25} {hwid or '-':<30}")

    if verbose:
        click.echo(f"\n{len(rows)} port(s) found")


@main.group("config")
def config_group() -> None:
    """Show or create the configuration file."""
    pass


@config_group.command("show")
@click.pass_context
def config_show_cmd(ctx: click.Context) -> None:
    """Print the effective configuration as YAML."""
    config: RelayConfig = ctx.obj["config"]
    click.echo(yaml.dump(config.to_dict(), default_flow_style=False, sort_keys=False))


@config_group.command("init")
@click.option(
    "--path", type=click.Path(path_type=Path), default=DEFAULT_CONFIG_FILE,
    show_default=True, help="Where to write the file"
)
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def config_init_cmd(path: Path, force: bool) -> None:
    """Write a default configuration file."""
    if path.exists() and not force:
        click.echo(f"Error: {path} already exists (use --force)", err=True)
        sys.exit(1)

    save_config(get_default_config(), path)
    click.echo(f"Wrote default configuration to {path}")


if __name__ == "__main__":
    main()
