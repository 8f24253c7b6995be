"""``ytdl-vpn``: entrypoint of the VPN readiness sidecar container."""

from __future__ import annotations

import logging
from typing import Optional

import typer

from ..errors import ConfigurationError, VpnMaskingError, VpnNotReadyError
from ..logging_config import setup_logging
from ..Operator.config import load_config
from .sidecar import VpnSidecar, command_summary

app = typer.Typer(help="VPN readiness sidecar for masked worker pods", no_args_is_help=True)
logger = logging.getLogger(__name__)


@app.callback()
def _root() -> None:
    """Keep ``run`` a named subcommand."""


@app.command()
def run(
    config_path: Optional[str] = typer.Option(
        None, "--config", envvar="YTDL_CONFIG", help="YAML/JSON config file"
    ),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", help="Seconds to wait for the public IP to change"
    ),
) -> None:
    """Confirm the VPN masks the pod's IP, then write the readiness file."""
    try:
        config = load_config(config_path, cli_overrides={"vpn": {"ready_timeout_s": timeout}})
    except ConfigurationError as e:
        typer.echo(f"Error: {e.message}", err=True)
        raise typer.Exit(2)
    setup_logging(config.logging)

    vpn = config.vpn
    logger.info(
        f"VPN sidecar starting (connection: "
        f"{command_summary([vpn.connect_command, vpn.killswitch_command])}, "
        f"ready file: {vpn.ready_path})"
    )
    sidecar = VpnSidecar(vpn)
    try:
        sidecar.run()
    except VpnMaskingError as e:
        logger.error(f"VPN masking failed: {e.message}")
        raise typer.Exit(1)
    except VpnNotReadyError as e:
        logger.error(f"VPN did not come up: {e.message}")
        raise typer.Exit(1)
    finally:
        sidecar.ip.close()


def main() -> None:
    app()


if __name__ == "__main__":
    main()
