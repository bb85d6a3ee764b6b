"""One-shot invocation of the control-plane binaries.

Commands are run through the shell with a single pre-joined argument
string. The control plane's argument grammar is opaque here, so any value
that came from a user must be quoted with ``shlex.quote`` by the caller
before it is joined into ``args``.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
from dataclasses import dataclass
from pathlib import Path

from ..config import DashboardConfig

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 30.0


@dataclass(slots=True)
class InvocationResult:
    """Outcome of a single control-plane invocation."""

    success: bool
    output: str = ""
    error_output: str = ""
    error: str | None = None
    exit_code: int | None = None
    timed_out: bool = False


def _decode(data: bytes | None) -> str:
    return data.decode("utf-8", errors="replace") if data else ""


async def run_command(
    executable: str,
    args: str,
    cwd: str | Path,
    timeout: float = DEFAULT_TIMEOUT_S,
) -> InvocationResult:
    """Run ``<executable> <args>`` in ``cwd`` and capture its output.

    Failures (non-zero exit, spawn error, timeout) are reported in the
    result, never raised. A timed-out child is killed.
    """
    command = f"{shlex.quote(executable)} {args}".strip()

    try:
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
        )
    except FileNotFoundError:
        return InvocationResult(success=False, error=f"Working directory not found: {cwd}")
    except OSError as exc:
        return InvocationResult(success=False, error=f"Failed to start '{command}': {exc}")

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.CancelledError:
        process.kill()
        await process.wait()
        raise
    except asyncio.TimeoutError:
        process.kill()
        # Drain whatever made it into the pipes before the kill.
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=2.0)
        except (asyncio.TimeoutError, OSError, ValueError):
            stdout, stderr = b"", b""
        logger.warning("Command timed out after %ss: %s", timeout, command)
        return InvocationResult(
            success=False,
            output=_decode(stdout),
            error_output=_decode(stderr),
            error=f"Command timed out after {timeout}s: {command}",
            exit_code=process.returncode,
            timed_out=True,
        )

    exit_code = process.returncode
    stdout_str = _decode(stdout)
    stderr_str = _decode(stderr)

    if exit_code != 0:
        message = f"Command failed with exit code {exit_code}: {command}"
        if stderr_str.strip():
            message = f"{message}\n{stderr_str.strip()}"
        logger.debug("Command failed (%s): %s", exit_code, command)
        return InvocationResult(
            success=False,
            output=stdout_str,
            error_output=stderr_str,
            error=message,
            exit_code=exit_code,
        )

    return InvocationResult(success=True, output=stdout_str, exit_code=exit_code)


class ControlPlaneRunner:
    """Binds ``run_command`` to the ``gt`` and ``bd`` binaries of one town."""

    def __init__(self, config: DashboardConfig) -> None:
        self._config = config

    @property
    def config(self) -> DashboardConfig:
        return self._config

    async def gt(self, args: str, cwd: str | Path | None = None) -> InvocationResult:
        """Run a ``gt`` command (cwd defaults to the town root)."""
        return await run_command(
            self._config.gt_bin,
            args,
            cwd or self._config.town_root,
            timeout=self._config.command_timeout,
        )

    async def bd(self, args: str, cwd: str | Path | None = None) -> InvocationResult:
        """Run a ``bd`` command (cwd defaults to the town's beads directory)."""
        return await run_command(
            self._config.bd_bin,
            args,
            cwd or self._config.beads_dir,
            timeout=self._config.command_timeout,
        )
