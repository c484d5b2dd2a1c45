#!/usr/bin/env python3
"""
Main CLI entry point using Typer.
"""

import signal
import sys
from typing import List, Optional

import typer
from oslo_config import cfg
from oslo_log import log as logging

from fip_controller import __version__
from fip_controller.api.server import start_status_server
from fip_controller.configuration import ControllerConfig, register_opts
from fip_controller.controller import NeutronController

LOG = logging.getLogger(__name__)

PROJECT = "fip-controller"

app = typer.Typer(
    name="fipctl",
    help="Neutron floating IP and port reconciliation controller",
    add_completion=False,
)


@app.callback()
def callback():
    """Neutron floating IP and port reconciliation controller."""


def load_conf(config_files: List[str], debug: bool = False) -> cfg.ConfigOpts:
    """Register options, parse ``config_files`` and set up logging."""
    conf = cfg.ConfigOpts()
    logging.register_options(conf)
    register_opts(conf)
    conf(args=[], project=PROJECT, version=__version__, default_config_files=config_files)
    if debug:
        conf.set_override("debug", True)
    logging.setup(conf, PROJECT)
    return conf


@app.command()
def run(
    config_file: List[str] = typer.Option(
        ..., "--config-file", help="oslo.config file; may be given more than once"
    ),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
    status_port: Optional[int] = typer.Option(
        None, "--status-port", help="Status API port (default: from config)"
    ),
):
    """
    Run the controller until SIGTERM or SIGINT.

    Waits for the caches to sync, creates missing Fip records, then starts
    the workers and the periodic sync and gc loops.
    """
    try:
        conf = load_conf(config_file, debug)
        config = ControllerConfig.from_conf(conf)
        controller = NeutronController.from_conf(conf)
    except Exception as e:
        typer.echo(f"Error loading configuration: {e}", err=True)
        raise typer.Exit(1)

    def _handle_signal(signum, frame):
        LOG.info("received signal %d, stopping", signum)
        controller.stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    server = None
    if config.status_api_enabled:
        server = start_status_server(controller, config.status_api_host, status_port or config.status_api_port)

    try:
        controller.run()
    except Exception as e:
        LOG.exception("controller failed")
        typer.echo(f"Error running controller: {e}", err=True)
        raise typer.Exit(1)
    finally:
        if server is not None:
            server.should_exit = True


@app.command()
def version():
    """Print the controller version."""
    typer.echo(__version__)


def main() -> int:
    """Main entry point."""
    try:
        app()
        return 0
    except KeyboardInterrupt:
        typer.echo("\nOperation cancelled by user", err=True)
        return 130
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
