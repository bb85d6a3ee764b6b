"""CLI package for gastown-dashboard."""

from .state import app

# Import subcommand modules so their @app.command() decorators register
from . import serve as _serve  # noqa: F401
from . import town as _town  # noqa: F401


def cli() -> None:
    """CLI entrypoint."""
    app(prog_name="gastown-dashboard")


__all__ = ["app", "cli"]


if __name__ == "__main__":
    cli()
