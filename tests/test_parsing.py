from __future__ import annotations

import pytest

from gastown_dashboard.control.parsing import (
    agent_role,
    agent_type,
    parse_agent_lines,
    parse_crew_list,
    parse_json,
    parse_name_lines,
    parse_rig_list,
)

RIG_LIST = """\
Rigs in /home/ops/gt:
  gastown
    Polecats: 3  Crew: 1
    Agents: [witness refinery nux]

  beads
    Polecats: 0  Crew: 2
    something we do not understand
"""


def test_parse_json_is_strict_and_total() -> None:
    assert parse_json(' {"a": 1}\n') == {"a": 1}
    assert parse_json("[1, 2]") == [1, 2]
    assert parse_json("not json") is None
    assert parse_json("") is None
    assert parse_json(None) is None


def test_parse_rig_list() -> None:
    rigs = parse_rig_list(RIG_LIST)

    assert rigs == [
        {"name": "gastown", "polecats": 3, "crew": 1, "agents": ["witness", "refinery", "nux"]},
        {"name": "beads", "polecats": 0, "crew": 2, "agents": []},
    ]


def test_parse_rig_list_ignores_details_before_any_header() -> None:
    assert parse_rig_list("    Polecats: 3  Crew: 1\n") == []
    assert parse_rig_list("") == []


def test_parse_crew_list() -> None:
    text = "Crew:\n  joe [running] idle 3m\n  max [stopped]\n  garbage line\n"

    assert parse_crew_list(text) == [
        {"name": "joe", "status": "running", "info": "idle 3m"},
        {"name": "max", "status": "stopped", "info": ""},
    ]


def test_parse_agent_lines_is_case_insensitive() -> None:
    agents = parse_agent_lines("gastown/witness [RUNNING]\nmayor [stopped]\nbroken [Error]\n")

    assert [(a["name"], a["running"], a["status"]) for a in agents] == [
        ("gastown/witness", True, "running"),
        ("mayor", False, "stopped"),
        ("broken", False, "error"),
    ]


def test_parse_name_lines() -> None:
    assert parse_name_lines("release\n\n  review  \n") == [{"name": "release"}, {"name": "review"}]


@pytest.mark.parametrize(
    ("name", "expected_type", "expected_role"),
    [
        ("mayor", "core", "Global Coordinator"),
        ("gastown/witness", "witness", "Worker Monitor"),
        ("gastown/refinery", "refinery", "Merge Queue"),
        ("deacon", "deacon", "Session Daemon"),
        ("gastown/polecats/nux", "polecat", "Worker"),
        ("gastown/crew/joe", "polecat", "Worker"),
        ("something-else", "agent", "Agent"),
        ("", "agent", "Agent"),
    ],
)
def test_agent_classification(name: str, expected_type: str, expected_role: str) -> None:
    assert agent_type(name) == expected_type
    assert agent_role(name) == expected_role
