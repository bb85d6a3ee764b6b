"""Rendering helpers for CLI output."""

from __future__ import annotations

import logging
from typing import Any

from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from .state import THEME, console


def _markup(text: str, color: str) -> str:
    """Wrap text in Rich markup with the given color, escaping special chars."""
    return f"[{color}]{escape(text)}[/{color}]"


def configure_logging(level: str) -> None:
    """Route all log records through a Rich handler on the shared console."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def format_event(record: dict[str, Any]) -> str:
    """One-line rendering of an event log record."""
    timestamp = str(record.get("ts") or record.get("timestamp") or "")
    event_type = str(record.get("type") or "?")
    actor = str(record.get("actor") or record.get("source") or "")
    rest = {
        k: v
        for k, v in record.items()
        if k not in ("ts", "timestamp", "type", "actor", "source")
    }
    detail = " ".join(f"{k}={v}" for k, v in rest.items())

    parts = []
    if timestamp:
        parts.append(_markup(timestamp, THEME.muted))
    parts.append(_markup(f"{event_type:<16}", THEME.accent))
    if actor:
        parts.append(_markup(actor, THEME.success))
    if detail:
        parts.append(escape(detail))
    return "  ".join(parts)


def status_table(status: dict[str, Any]) -> Table:
    """Render the aggregated town status as a rig table with a stats caption."""
    town = status.get("town") or {}
    stats = status.get("stats") or {}

    table = Table(
        title=f"Town {town.get('name', '?')} at {town.get('path', '?')}",
        title_justify="left",
        caption=(
            f"{stats.get('rigCount', 0)} rigs, "
            f"{stats.get('runningAgents', 0)} polecats, "
            f"{stats.get('activeConvoys', 0)} convoys, "
            f"{stats.get('openIssues', 0)} open issues"
        ),
        caption_justify="left",
    )
    table.add_column("Rig", style=THEME.accent)
    table.add_column("Polecats", justify="right")
    table.add_column("Crew", justify="right")
    table.add_column("Agents", style=THEME.muted)

    for rig in town.get("rigs") or []:
        table.add_row(
            str(rig.get("name", "")),
            str(rig.get("polecats", 0)),
            str(rig.get("crew", 0)),
            ", ".join(rig.get("agents") or []),
        )
    return table
