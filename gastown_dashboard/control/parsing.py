"""Best-effort parsing of control-plane output.

The ``gt`` and ``bd`` binaries print JSON for most commands when asked, but
several listings only exist as human-readable text. These helpers never
raise on any string input; the worst case is ``None`` or an empty list.
"""

from __future__ import annotations

import json
import re
from typing import Any

_RIG_HEADER = re.compile(r"^  \S")
_DETAIL_INDENT = re.compile(r"^\s{4}")
_RIG_COUNTS = re.compile(r"Polecats:\s*(\d+)\s+Crew:\s*(\d+)")
_RIG_AGENTS = re.compile(r"Agents:\s*\[([^\]]*)\]")
_CREW_LINE = re.compile(r"^\s*(\S+)\s+\[(running|stopped)\]\s*(.*)$")
_AGENT_LINE = re.compile(r"^\s*(\S+)\s*\[(running|stopped|error)\]", re.IGNORECASE)


def parse_json(text: str | None) -> Any | None:
    """Strictly parse ``text`` as JSON, returning None on any failure."""
    if text is None:
        return None
    try:
        return json.loads(text.strip())
    except (json.JSONDecodeError, TypeError, ValueError):
        return None


def parse_rig_list(text: str) -> list[dict[str, Any]]:
    """Parse ``gt rig list`` output.

    Expected shape::

        Rigs in /home/user/gt:
          gastown
            Polecats: 3  Crew: 1
            Agents: [witness refinery nux]
    """
    rigs: list[dict[str, Any]] = []
    current: dict[str, Any] | None = None

    for line in (text or "").splitlines():
        trimmed = line.strip()
        if not trimmed or trimmed.startswith("Rigs in"):
            continue

        if _RIG_HEADER.match(line) and not _DETAIL_INDENT.match(line):
            if current is not None:
                rigs.append(current)
            current = {"name": trimmed, "polecats": 0, "crew": 0, "agents": []}
        elif current is None:
            continue
        elif trimmed.startswith("Polecats:"):
            match = _RIG_COUNTS.search(trimmed)
            if match:
                current["polecats"] = int(match.group(1))
                current["crew"] = int(match.group(2))
        elif trimmed.startswith("Agents:"):
            match = _RIG_AGENTS.search(trimmed)
            if match:
                current["agents"] = match.group(1).split()

    if current is not None:
        rigs.append(current)
    return rigs


def parse_crew_list(text: str) -> list[dict[str, str]]:
    """Parse ``gt crew list`` lines like ``joe [running] idle 3m``."""
    crews: list[dict[str, str]] = []
    for line in (text or "").splitlines():
        match = _CREW_LINE.match(line)
        if match:
            crews.append(
                {
                    "name": match.group(1),
                    "status": match.group(2),
                    "info": match.group(3).strip(),
                }
            )
    return crews


def parse_agent_lines(text: str) -> list[dict[str, Any]]:
    """Parse the text form of ``gt agents list`` (``gtf/witness [stopped]``)."""
    agents: list[dict[str, Any]] = []
    for line in (text or "").splitlines():
        match = _AGENT_LINE.match(line)
        if match:
            status = match.group(2).lower()
            agents.append(
                {
                    "name": match.group(1),
                    "address": match.group(1),
                    "running": status == "running",
                    "status": status,
                }
            )
    return agents


def parse_name_lines(text: str) -> list[dict[str, str]]:
    """One ``{"name": ...}`` entry per non-blank line (plain ``formula list``)."""
    return [{"name": line.strip()} for line in (text or "").splitlines() if line.strip()]


# (type, role) keyed by the name fragment that identifies it
_AGENT_KINDS: tuple[tuple[str, str, str], ...] = (
    ("witness", "witness", "Worker Monitor"),
    ("refinery", "refinery", "Merge Queue"),
    ("deacon", "deacon", "Session Daemon"),
    ("polecat", "polecat", "Worker"),
    ("crew/", "polecat", "Worker"),
)


def _classify(name: str) -> tuple[str, str]:
    if name == "mayor" or name.endswith("/mayor"):
        return "core", "Global Coordinator"
    for fragment, kind, role in _AGENT_KINDS:
        if fragment in name:
            return kind, role
    return "agent", "Agent"


def agent_type(name: str) -> str:
    """Categorize an agent address: core, witness, refinery, deacon, polecat or agent."""
    return _classify(name or "")[0]


def agent_role(name: str) -> str:
    """Human-readable role for an agent address."""
    return _classify(name or "")[1]
