"""Incremental reader for the town's append-only event log."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .protocol import EventMessage

if TYPE_CHECKING:
    from .hub import BroadcastHub

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_S = 2.0


@dataclass
class TailerState:
    """Number of non-empty lines already emitted from the log."""

    last_seen_count: int = 0


def _read_lines(path: Path) -> list[str] | None:
    """Return the non-empty lines of ``path``, or None if it does not exist.

    Only empty lines are dropped; a whitespace-only line inside the log still
    counts as a line (and is then skipped as unparsable).
    """
    try:
        content = path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return None
    return [line for line in content.strip().split("\n") if line]


def _parse_records(lines: list[str]) -> list[dict[str, Any]]:
    records: list[dict[str, Any]] = []
    for line in lines:
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping unparsable event line: %.80s", line)
            continue
        if isinstance(record, dict):
            records.append(record)
    return records


class EventLogTailer:
    """Yields only the records appended to the log since the previous poll.

    The log is assumed to be append-only for the lifetime of the process.
    If it is rewritten shorter than ``last_seen_count``, new records are not
    emitted until the file grows past the old count again.
    """

    def __init__(self, path: Path, state: TailerState | None = None) -> None:
        self._path = Path(path)
        self.state = state or TailerState()

    @property
    def path(self) -> Path:
        return self._path

    def poll_new_events(self) -> list[dict[str, Any]]:
        """Return newly appended records in file order (oldest first)."""
        lines = _read_lines(self._path)
        if lines is None:
            return []
        if len(lines) <= self.state.last_seen_count:
            return []

        new_lines = lines[self.state.last_seen_count :]
        self.state.last_seen_count = len(lines)
        return _parse_records(new_lines)

    async def run(self, hub: BroadcastHub, interval: float = DEFAULT_POLL_INTERVAL_S) -> None:
        """Publish new records to ``hub`` every ``interval`` seconds until cancelled."""
        logger.info("Tailing events from %s every %ss", self._path, interval)
        while True:
            try:
                records = await asyncio.to_thread(self.poll_new_events)
            except OSError as exc:
                logger.warning("Could not read event log %s: %s", self._path, exc)
                records = []
            for record in records:
                hub.publish(EventMessage(record=record))
            await asyncio.sleep(interval)


def read_event_history(
    path: Path,
    limit: int = 50,
    event_type: str | None = None,
) -> list[dict[str, Any]]:
    """Most recent ``limit`` records (newest first), optionally of one type."""
    lines = _read_lines(Path(path))
    if not lines:
        return []
    records = _parse_records(lines)
    if event_type:
        records = [r for r in records if r.get("type") == event_type]
    if limit <= 0:
        return []
    return list(reversed(records[-limit:]))
