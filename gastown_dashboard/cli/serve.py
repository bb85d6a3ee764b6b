"""The ``serve`` command."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
import uvicorn

from ..config import DashboardConfig
from ..errors import ConfigError
from .formatting import _markup, configure_logging
from .state import DEFAULT_LOG_LEVEL, THEME, app, console


def load_config(config_path: str | None, **overrides) -> DashboardConfig:
    """Load config for a command, exiting with a readable message on error."""
    try:
        return DashboardConfig.load(config_path, **overrides)
    except ConfigError as exc:
        console.print(_markup(str(exc), THEME.error))
        raise typer.Exit(1) from exc


@app.command()
def serve(
    town_root: Annotated[
        Path | None,
        typer.Option("--town-root", "-t", help="Town directory (default: $TOWN_ROOT or ~/gt)"),
    ] = None,
    host: Annotated[
        str | None,
        typer.Option("--host", help="Interface to bind"),
    ] = None,
    port: Annotated[
        int | None,
        typer.Option("--port", "-p", help="Port to listen on (default: $PORT or 3001)"),
    ] = None,
    config_path: Annotated[
        str | None,
        typer.Option("--config", "-c", help="YAML config file"),
    ] = None,
    log_level: Annotated[
        str,
        typer.Option("--log-level", help="DEBUG, INFO, WARNING or ERROR"),
    ] = DEFAULT_LOG_LEVEL,
) -> None:
    """Run the dashboard API and WebSocket server."""
    from ..server import create_app

    configure_logging(log_level)
    config = load_config(config_path, town_root=town_root, host=host, port=port)

    console.print(_markup(f"Gas Town dashboard on http://{config.host}:{config.port}", THEME.success))
    console.print(_markup(f"Town root: {config.town_root}", THEME.muted))
    console.print(_markup(f"WebSocket: ws://{config.host}:{config.port}/ws", THEME.muted))
    if not config.town_root.is_dir():
        console.print(_markup(f"Town root does not exist: {config.town_root}", THEME.warning))

    uvicorn.run(
        create_app(config),
        host=config.host,
        port=config.port,
        log_level=log_level.lower(),
        log_config=None,
    )
