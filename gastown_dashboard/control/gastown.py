"""Typed operations over the ``gt`` and ``bd`` control plane."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from shlex import quote
from typing import Any

from .parsing import (
    agent_role,
    agent_type,
    parse_agent_lines,
    parse_crew_list,
    parse_json,
    parse_name_lines,
    parse_rig_list,
)
from .runner import ControlPlaneRunner, InvocationResult

logger = logging.getLogger(__name__)

AGENT_ACTIONS = ("start", "stop", "restart")


@dataclass(slots=True)
class TownResult:
    """Result of a control-plane operation, ready for JSON responses."""

    success: bool
    data: Any = None
    output: str = ""
    error: str | None = None
    stderr: str = ""

    @classmethod
    def failed(cls, result: InvocationResult) -> TownResult:
        return cls(
            success=False,
            output=result.output,
            error=result.error,
            stderr=result.error_output,
        )


def _with_json(
    result: InvocationResult,
    fallback: Callable[[str], Any],
) -> TownResult:
    """Parse JSON output, substituting ``fallback(raw_output)`` if unparsable."""
    if not result.success:
        return TownResult.failed(result)
    data = parse_json(result.output)
    if data is None:
        data = fallback(result.output)
    return TownResult(success=True, data=data, output=result.output)


def _plain(result: InvocationResult) -> TownResult:
    if not result.success:
        return TownResult.failed(result)
    return TownResult(success=True, output=result.output)


def _raw(output: str) -> dict[str, Any]:
    return {"raw": output}


def _is_worker(name: str) -> bool:
    return "polecat" in name or "crew/" in name


def _is_deacon(name: str) -> bool:
    return name == "deacon" or "/deacon" in name


class TownClient:
    """High-level operations for one town, shared by REST routes and feeds."""

    def __init__(self, runner: ControlPlaneRunner) -> None:
        self._runner = runner

    @property
    def town_root(self) -> Path:
        return self._runner.config.town_root

    def _rig_dir(self, rig: str | None, *parts: str) -> Path:
        if not rig:
            return self.town_root
        return self.town_root.joinpath(rig, *parts)

    # -- status -----------------------------------------------------------

    async def town_status(self) -> dict[str, Any]:
        """Aggregate rigs, open issues and convoys into one status snapshot.

        Each part degrades to an empty value when its command fails, so the
        snapshot is always well-formed.
        """
        rigs_result = await self._runner.gt("rig list")
        rigs = parse_rig_list(rigs_result.output) if rigs_result.success else []
        for rig in rigs:
            rig["running"] = 0

        open_issues = 0
        issues_result = await self._runner.bd("list --status=open --json")
        if issues_result.success:
            issues = parse_json(issues_result.output)
            open_issues = len(issues) if isinstance(issues, list) else 0

        active_convoys = 0
        convoys_result = await self._runner.gt("convoy list --json")
        if convoys_result.success:
            convoys = parse_json(convoys_result.output)
            if isinstance(convoys, dict) and isinstance(convoys.get("convoys"), list):
                active_convoys = len(convoys["convoys"])

        # Approximation: every registered polecat is counted as running.
        running_agents = sum(rig["polecats"] for rig in rigs)

        return {
            "connected": rigs_result.success,
            "town": {"name": "gt", "path": str(self.town_root), "rigs": rigs},
            "stats": {
                "runningAgents": running_agents,
                "activeConvoys": active_convoys,
                "openIssues": open_issues,
                "rigCount": len(rigs),
            },
        }

    async def list_rigs(self) -> TownResult:
        result = await self._runner.gt("rig list")
        if not result.success:
            return TownResult.failed(result)
        return TownResult(success=True, data=parse_rig_list(result.output), output=result.output)

    # -- convoys ----------------------------------------------------------

    async def list_convoys(self) -> TownResult:
        return _with_json(
            await self._runner.gt("convoy list --json"),
            lambda raw: {"convoys": [], "raw": raw},
        )

    async def convoy_status(self, convoy_id: str) -> TownResult:
        return _with_json(
            await self._runner.gt(f"convoy status {quote(convoy_id)} --json"), _raw
        )

    async def create_convoy(self, title: str, issues: list[str]) -> TownResult:
        args = " ".join(["convoy create", quote(title), *map(quote, issues), "--json"])
        return _with_json(await self._runner.gt(args), _raw)

    async def close_convoy(self, convoy_id: str) -> TownResult:
        return _plain(await self._runner.gt(f"convoy close {quote(convoy_id)}"))

    async def track_issue(self, convoy_id: str, issue_id: str) -> TownResult:
        return _plain(
            await self._runner.gt(f"convoy track {quote(convoy_id)} {quote(issue_id)}")
        )

    # -- issues -----------------------------------------------------------

    async def list_issues(
        self,
        status: str | None = None,
        issue_type: str | None = None,
        assignee: str | None = None,
    ) -> TownResult:
        args = "list --json"
        if status:
            args += f" --status={quote(status)}"
        if issue_type:
            args += f" --type={quote(issue_type)}"
        if assignee:
            args += f" --assignee={quote(assignee)}"
        return _with_json(await self._runner.bd(args), lambda raw: [])

    async def ready_issues(self) -> TownResult:
        return _with_json(await self._runner.bd("ready --json"), lambda raw: [])

    async def show_issue(self, issue_id: str) -> TownResult:
        return _with_json(await self._runner.bd(f"show {quote(issue_id)} --json"), _raw)

    async def create_issue(
        self,
        title: str,
        issue_type: str = "task",
        priority: int = 2,
        description: str | None = None,
    ) -> TownResult:
        args = (
            f"create --title={quote(title)} --type={quote(issue_type)} "
            f"--priority={int(priority)}"
        )
        if description:
            args += f" --description={quote(description)}"
        args += " --json"
        return _with_json(await self._runner.bd(args), _raw)

    async def update_issue(
        self,
        issue_id: str,
        status: str | None = None,
        assignee: str | None = None,
        priority: int | None = None,
    ) -> TownResult:
        args = f"update {quote(issue_id)}"
        if status:
            args += f" --status={quote(status)}"
        if assignee:
            args += f" --assignee={quote(assignee)}"
        if priority is not None:
            args += f" --priority={int(priority)}"
        args += " --json"
        return _with_json(await self._runner.bd(args), _raw)

    async def close_issue(self, issue_id: str, reason: str | None = None) -> TownResult:
        args = f"close {quote(issue_id)}"
        if reason:
            args += f" --reason={quote(reason)}"
        args += " --json"
        return _plain(await self._runner.bd(args))

    # -- mail -------------------------------------------------------------

    async def inbox(self) -> TownResult:
        return _with_json(
            await self._runner.gt("mail inbox --json"),
            lambda raw: {"messages": [], "raw": raw},
        )

    async def read_mail(self, message_id: str) -> TownResult:
        return _with_json(await self._runner.gt(f"mail read {quote(message_id)} --json"), _raw)

    async def send_mail(self, to: str, subject: str, body: str) -> TownResult:
        return _plain(
            await self._runner.gt(
                f"mail send {quote(to)} -s {quote(subject)} -m {quote(body)}"
            )
        )

    # -- agents -----------------------------------------------------------

    async def list_agents(self) -> TownResult:
        """List agents, falling back to the text listing, tagged with type and role."""
        result = await self._runner.gt("agents list --json")
        if not result.success:
            return TownResult.failed(result)

        agents: list[dict[str, Any]] = []
        data = parse_json(result.output)
        if isinstance(data, dict) and isinstance(data.get("agents"), list):
            agents = [a for a in data["agents"] if isinstance(a, dict)]
        if not agents:
            agents = parse_agent_lines(result.output)

        for agent in agents:
            name = str(agent.get("name") or agent.get("address") or "")
            agent["type"] = agent_type(name)
            agent["role"] = agent_role(name)
        return TownResult(success=True, data=agents, output=result.output)

    async def list_polecats(self, rig: str) -> TownResult:
        return _with_json(
            await self._runner.gt(f"polecat list {quote(rig)} --json"),
            lambda raw: {"polecats": [], "raw": raw},
        )

    async def nudge(self, target: str, message: str) -> TownResult:
        return _plain(await self._runner.gt(f"nudge {quote(target)} {quote(message)}"))

    async def agent_state(self, name: str) -> TownResult:
        result = await self._runner.gt(f"agents state {quote(name)}")
        if not result.success:
            return TownResult.failed(result)
        return TownResult(success=True, data=result.output.strip(), output=result.output)

    async def set_agent_state(self, name: str, state: str) -> TownResult:
        return _plain(await self._runner.gt(f"agents state {quote(name)} {quote(state)}"))

    async def control_agent(self, name: str, action: str, rig: str | None = None) -> TownResult:
        """Start, stop or restart an agent with the command its kind uses.

        Polecats and crew members go through ``gt crew`` and the deacon
        through ``gt deacon``, both run from the rig directory. Any other
        agent uses ``gt agents``, which has no restart: that is a stop
        followed by a start.
        """
        if action not in AGENT_ACTIONS:
            raise ValueError(f"unknown agent action: {action}")

        if _is_worker(name):
            worker = name.rsplit("/", 1)[-1]
            return _plain(
                await self._runner.gt(f"crew {action} {quote(worker)}", self._rig_dir(rig))
            )
        if _is_deacon(name):
            return _plain(await self._runner.gt(f"deacon {action}", self._rig_dir(rig)))

        if action == "restart":
            stopped = await self._runner.gt(f"agents stop {quote(name)}")
            if not stopped.success:
                logger.debug("Stopping %s before restart failed: %s", name, stopped.error)
            action = "start"
        return _plain(await self._runner.gt(f"agents {action} {quote(name)}"))

    def agent_log_path(self, name: str, rig: str | None = None) -> Path:
        """Where the runtime log of ``name`` lives under the town or rig."""
        base = self._rig_dir(rig)
        if _is_deacon(name):
            return base / ".runtime" / "deacon.log"
        if "witness" in name:
            return base / ".runtime" / "witness.log"
        if "refinery" in name:
            return base / ".runtime" / "refinery.log"
        if _is_worker(name):
            worker = name.rsplit("/", 1)[-1]
            polecat = base / "polecats" / worker / ".runtime" / "session.log"
            if polecat.exists():
                return polecat
            return base / "crew" / worker / ".runtime" / "session.log"
        if name == "mayor":
            return self.town_root / "mayor" / ".runtime" / "session.log"
        return base / ".runtime" / f"{name}.log"

    async def agent_logs(self, name: str, lines: int = 50, rig: str | None = None) -> TownResult:
        """Last ``lines`` lines of an agent's runtime log.

        A missing log is not a failure; the payload then carries an empty
        ``content`` and an ``error`` note. Raises ValueError if the name or
        rig would place the log outside the town.
        """
        path = self.agent_log_path(name, rig)
        if not path.resolve().is_relative_to(self.town_root.resolve()):
            raise ValueError(f"log path for {name} is outside the town")

        payload: dict[str, Any] = {"agent": name, "logPath": str(path), "lines": lines}
        try:
            content = await asyncio.to_thread(path.read_text, encoding="utf-8", errors="replace")
        except FileNotFoundError:
            payload.update(content="", error="Log file may not exist")
            return TownResult(success=True, data=payload)
        except OSError as exc:
            return TownResult(success=False, error=f"Could not read logs: {exc}")

        payload["content"] = "\n".join(content.split("\n")[-lines:])
        return TownResult(success=True, data=payload)

    async def agent_hook(self, name: str) -> TownResult:
        """Hook of ``name``.

        ``gt`` reports the hook of the session it runs in, so this is the
        current hook whichever agent is asked about.
        """
        return _with_json(await self._runner.gt("hook --json"), _raw)

    # -- crew -------------------------------------------------------------

    async def list_crew(self, rig: str | None = None) -> TownResult:
        result = await self._runner.gt("crew list", self._rig_dir(rig, "mayor", "rig"))
        if not result.success:
            return TownResult.failed(result)
        return TownResult(success=True, data=parse_crew_list(result.output), output=result.output)

    async def add_crew(self, name: str, rig: str | None = None) -> TownResult:
        return _plain(await self._runner.gt(f"crew add {quote(name)}", self._rig_dir(rig)))

    async def start_crew(self, name: str, rig: str | None = None) -> TownResult:
        return _plain(await self._runner.gt(f"crew start {quote(name)}", self._rig_dir(rig)))

    async def crew_status(self, name: str, rig: str | None = None) -> TownResult:
        return _plain(await self._runner.gt(f"crew status {quote(name)}", self._rig_dir(rig)))

    async def restart_crew(self, name: str, rig: str | None = None) -> TownResult:
        return _plain(await self._runner.gt(f"crew restart {quote(name)}", self._rig_dir(rig)))

    async def remove_crew(self, name: str, rig: str | None = None) -> TownResult:
        return _plain(await self._runner.gt(f"crew remove {quote(name)}", self._rig_dir(rig)))

    # -- hooks, molecules, formulas ---------------------------------------

    async def hook_status(self) -> TownResult:
        result = await self._runner.gt("hook status --json")
        if result.success:
            data = parse_json(result.output)
            if data is not None:
                return TownResult(success=True, data=data, output=result.output)
        plain = await self._runner.gt("hook status")
        return TownResult(
            success=True,
            data={"raw": plain.output or result.output or result.error or ""},
            output=plain.output,
        )

    async def attach_hook(self, bead_id: str, subject: str | None = None) -> TownResult:
        args = f"hook {quote(bead_id)}"
        if subject:
            args += f" -s {quote(subject)}"
        return _plain(await self._runner.gt(args))

    async def unsling(self) -> TownResult:
        return _plain(await self._runner.gt("unsling"))

    async def mol_status(self) -> TownResult:
        return _plain(await self._runner.gt("mol status"))

    async def mol_current(self) -> TownResult:
        return _plain(await self._runner.gt("mol current"))

    async def mol_progress(self) -> TownResult:
        return _plain(await self._runner.gt("mol progress"))

    async def mol_step_done(self) -> TownResult:
        return _plain(await self._runner.gt("mol step done"))

    async def mol_attach(self, mol_id: str) -> TownResult:
        return _plain(await self._runner.gt(f"mol attach {quote(mol_id)}"))

    async def mol_detach(self) -> TownResult:
        return _plain(await self._runner.gt("mol detach"))

    async def list_formulas(self) -> TownResult:
        result = await self._runner.gt("formula list --json")
        if result.success:
            data = parse_json(result.output)
            if isinstance(data, dict) and "formulas" in data:
                return TownResult(success=True, data=data["formulas"], output=result.output)
            if data is not None:
                return TownResult(success=True, data=data, output=result.output)

        plain = await self._runner.gt("formula list")
        if plain.success:
            return TownResult(success=True, data=parse_name_lines(plain.output), output=plain.output)
        return TownResult(success=False, data=[], error=result.error, stderr=result.error_output)

    async def pour_formula(
        self,
        formula: str,
        target: str | None = None,
        params: dict[str, Any] | None = None,
    ) -> TownResult:
        """Instantiate ``formula`` as a molecule, passing ``params`` as ``--key=value``."""
        args = f"pour {quote(formula)}"
        if target:
            args += f" {quote(target)}"
        for key, value in (params or {}).items():
            args += f" {quote(f'--{key}={value}')}"
        return _plain(await self._runner.gt(args))

    # -- work dispatch ----------------------------------------------------

    async def sling(
        self,
        issue: str,
        target: str | None = None,
        message: str | None = None,
        naked: bool = False,
    ) -> TownResult:
        args = f"sling {quote(issue)}"
        if target:
            args += f" {quote(target)}"
        if message:
            args += f" -m {quote(message)}"
        if naked:
            args += " --naked"
        return _plain(await self._runner.gt(args))

    async def handoff(self, message: str | None = None, bead_id: str | None = None) -> TownResult:
        args = "handoff"
        if message:
            args += f" -m {quote(message)}"
        if bead_id:
            args += f" {quote(bead_id)}"
        return _plain(await self._runner.gt(args))

    async def quick_create_and_sling(
        self,
        title: str,
        description: str | None = None,
        issue_type: str = "task",
        priority: int = 2,
        target: str | None = None,
    ) -> TownResult:
        """Create an issue and, when ``target`` is given, sling it there."""
        created = await self.create_issue(
            title, issue_type=issue_type, priority=priority, description=description
        )
        if not created.success:
            return TownResult(
                success=False,
                error=f"Failed to create issue: {created.error}",
                stderr=created.stderr,
            )

        issue_id = created.data.get("id") if isinstance(created.data, dict) else None
        if not issue_id:
            return TownResult(success=False, error="Failed to parse issue ID", output=created.output)

        payload: dict[str, Any] = {"issue": created.data, "slung": False}
        if target:
            slung = await self.sling(str(issue_id), target)
            payload["slung"] = slung.success
            payload["target"] = target
            if slung.success:
                payload["slingOutput"] = slung.output
            else:
                payload["slingError"] = slung.error
        return TownResult(success=True, data=payload)
