"""Read-only town commands: events, status."""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Annotated, Any

import typer

from ..control import ControlPlaneRunner, TownClient
from ..realtime import EventLogTailer
from .formatting import _markup, format_event, status_table
from .serve import load_config
from .state import THEME, app, console


def _matching(records: list[dict[str, Any]], event_type: str | None) -> list[dict[str, Any]]:
    if not event_type:
        return records
    return [r for r in records if r.get("type") == event_type]


@app.command()
def events(
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", help="Number of past events to show"),
    ] = 20,
    event_type: Annotated[
        str | None,
        typer.Option("--type", help="Only show events of this type"),
    ] = None,
    follow: Annotated[
        bool,
        typer.Option("--follow", "-f", help="Keep printing new events as they are appended"),
    ] = False,
    town_root: Annotated[
        Path | None,
        typer.Option("--town-root", "-t", help="Town directory"),
    ] = None,
    config_path: Annotated[
        str | None,
        typer.Option("--config", "-c", help="YAML config file"),
    ] = None,
) -> None:
    """Print recent events from the town event log."""
    config = load_config(config_path, town_root=town_root)
    path = config.events_file

    if not path.exists() and not follow:
        console.print(_markup(f"No event log at {path}", THEME.muted))
        raise typer.Exit(0)

    # One read serves the history and primes the tailer, so nothing appended
    # in between is skipped when following.
    tailer = EventLogTailer(path)
    history = _matching(tailer.poll_new_events(), event_type)
    shown = history[-limit:] if limit > 0 else []
    for record in shown:
        console.print(format_event(record))

    if not follow:
        return

    console.print(_markup(f"Following {path} (Ctrl+C to stop)", THEME.muted))
    try:
        while True:
            time.sleep(config.event_poll_interval)
            for record in _matching(tailer.poll_new_events(), event_type):
                console.print(format_event(record))
    except KeyboardInterrupt:
        console.print(_markup("Stopped", THEME.muted))


@app.command()
def status(
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print the raw status snapshot as JSON"),
    ] = False,
    town_root: Annotated[
        Path | None,
        typer.Option("--town-root", "-t", help="Town directory"),
    ] = None,
    config_path: Annotated[
        str | None,
        typer.Option("--config", "-c", help="YAML config file"),
    ] = None,
) -> None:
    """Show rigs and fleet counts for the town."""
    config = load_config(config_path, town_root=town_root)
    client = TownClient(ControlPlaneRunner(config))
    snapshot = asyncio.run(client.town_status())

    if as_json:
        console.print_json(data=snapshot)
    else:
        console.print(status_table(snapshot))

    if not snapshot["connected"]:
        console.print(_markup("Could not reach the town with `gt rig list`", THEME.error))
        raise typer.Exit(1)
