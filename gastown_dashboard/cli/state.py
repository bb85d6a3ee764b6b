"""Shared CLI state: console, app, theme."""

from __future__ import annotations

import os
from dataclasses import dataclass

import typer
from dotenv import load_dotenv
from rich.console import Console

load_dotenv()

DEFAULT_LOG_LEVEL = os.getenv("GT_DASHBOARD_LOG_LEVEL", "INFO").upper()


@dataclass(frozen=True)
class CliTheme:
    """Semantic Rich color tokens for CLI output."""

    primary: str = "#E6EDF3"
    muted: str = "#7F848E"
    accent: str = "#61AFEF"
    success: str = "#98C379"
    warning: str = "#E5C07B"
    error: str = "#E06C75"


THEME = CliTheme()

# Rich console for all output
console = Console()

app = typer.Typer(
    name="gastown-dashboard",
    help="Live dashboard backend for a Gas Town agent fleet.",
    epilog=(
        "Examples:\n"
        "  gastown-dashboard serve\n"
        "  gastown-dashboard serve --town-root ~/gt --port 3001\n"
        "  gastown-dashboard events --follow\n"
        "  gastown-dashboard status"
    ),
    add_completion=False,
    no_args_is_help=True,
)
