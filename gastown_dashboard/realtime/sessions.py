"""Per-agent live output ("peek") streams shared by many viewers.

Each agent key owns at most one ``gt peek <key>`` subprocess. Its stdout
and stderr lines, and finally its exit, are posted to an inbox consumed by
a single task per stream, which fans each message out to the current
subscribers. Because one task does all delivery for a key, every
subscriber sees that key's messages in the same order.

Key lifecycle::

    absent --attach--> STARTING --spawned--> ACTIVE --exit--> absent
                          |                    |
                          +--spawn failed------+--last detach + grace--> CLOSING --exit--> absent

A key in CLOSING keeps its map entry until the old process has exited, so
an attach that arrives meanwhile waits for it instead of starting a second
process.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from enum import StrEnum
from pathlib import Path
from typing import Any, Protocol

from .protocol import Connection, ErrorMessage, InfoMessage, OutputMessage, PeekMessage

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD_S = 5.0
# How long a terminated peek process gets before it is killed.
KILL_AFTER_S = 5.0
# Per-line buffer for peek output; ANSI-colored lines can be long.
STREAM_LIMIT = 1024 * 1024


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace").rstrip("\r\n")


class PeekProcess(Protocol):
    """The parts of ``asyncio.subprocess.Process`` a stream relies on."""

    pid: int
    returncode: int | None
    stdout: asyncio.StreamReader | None
    stderr: asyncio.StreamReader | None

    async def wait(self) -> int: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


PeekLauncher = Callable[[str], Awaitable[PeekProcess]]


class SubprocessPeekLauncher:
    """Starts ``<gt> peek <key>`` with colored output requested."""

    def __init__(self, gt_bin: str, cwd: str | Path | None = None) -> None:
        self._gt_bin = gt_bin
        self._cwd = cwd

    async def __call__(self, key: str) -> PeekProcess:
        env = os.environ.copy()
        env["FORCE_COLOR"] = "1"
        return await asyncio.create_subprocess_exec(
            self._gt_bin,
            "peek",
            key,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(self._cwd) if self._cwd else None,
            env=env,
            limit=STREAM_LIMIT,
        )


class StreamState(StrEnum):
    STARTING = "starting"
    ACTIVE = "active"
    CLOSING = "closing"


class SessionStream:
    """One peek subprocess and the connections watching it."""

    def __init__(self, key: str) -> None:
        self.key = key
        self.state = StreamState.STARTING
        self.process: PeekProcess | None = None
        self.subscribers: set[Connection] = set()
        self.teardown: asyncio.TimerHandle | None = None
        self.exited = asyncio.Event()
        self.inbox: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()
        self.tasks: list[asyncio.Task[None]] = []

    def send_all(self, message: PeekMessage) -> None:
        data = message.to_json()
        for connection in tuple(self.subscribers):
            if connection.is_open:
                connection.send_text(data)

    def cancel_teardown(self) -> None:
        if self.teardown is not None:
            self.teardown.cancel()
            self.teardown = None


class SessionMultiplexer:
    """Shares one peek subprocess per agent key among all its viewers."""

    def __init__(
        self,
        launcher: PeekLauncher,
        grace_period: float = DEFAULT_GRACE_PERIOD_S,
    ) -> None:
        self._launcher = launcher
        self._grace_period = grace_period
        self._streams: dict[str, SessionStream] = {}

    def stream(self, key: str) -> SessionStream | None:
        return self._streams.get(key)

    @property
    def active_keys(self) -> list[str]:
        return sorted(self._streams)

    async def attach(self, key: str, connection: Connection) -> None:
        """Subscribe ``connection`` to ``key``, starting the subprocess if needed."""
        while True:
            stream = self._streams.get(key)
            if stream is None:
                break
            if stream.state is StreamState.CLOSING:
                await stream.exited.wait()
                continue
            stream.cancel_teardown()
            stream.subscribers.add(connection)
            connection.send_text(
                InfoMessage(message="joined existing stream", details={"session": key}).to_json()
            )
            logger.info(
                "Viewer %s joined peek %s (%d viewers)",
                connection.id,
                key,
                len(stream.subscribers),
            )
            return

        stream = SessionStream(key)
        stream.subscribers.add(connection)
        self._streams[key] = stream
        await self._start(stream)

    def detach(self, key: str, connection: Connection) -> None:
        """Unsubscribe ``connection``; schedule teardown if it was the last viewer."""
        stream = self._streams.get(key)
        if stream is None or connection not in stream.subscribers:
            return
        stream.subscribers.discard(connection)
        logger.info(
            "Viewer %s left peek %s (%d viewers)", connection.id, key, len(stream.subscribers)
        )
        if stream.subscribers or stream.state is StreamState.CLOSING:
            return

        stream.cancel_teardown()
        loop = asyncio.get_running_loop()
        stream.teardown = loop.call_later(self._grace_period, self._expire, stream)

    async def close(self, timeout: float = KILL_AFTER_S) -> None:
        """Stop every stream; used on server shutdown."""
        streams = list(self._streams.values())
        for stream in streams:
            stream.cancel_teardown()
            stream.subscribers.clear()
            self._stop(stream)

        tasks = [task for stream in streams for task in stream.tasks]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        self._streams.clear()

    # -- internals --------------------------------------------------------

    async def _start(self, stream: SessionStream) -> None:
        try:
            process = await self._launcher(stream.key)
        except (OSError, ValueError) as exc:
            logger.warning("Could not start peek for %s: %s", stream.key, exc)
            stream.send_all(ErrorMessage(line=f"Failed to start peek for {stream.key}: {exc}"))
            self._finish(stream)
            return

        stream.process = process
        stream.tasks = [
            asyncio.create_task(self._deliver(stream), name=f"peek-deliver:{stream.key}"),
            asyncio.create_task(self._watch(stream, process), name=f"peek-watch:{stream.key}"),
        ]

        if stream.state is StreamState.CLOSING:
            # Torn down while the process was still starting.
            self._terminate(process)
            return

        stream.state = StreamState.ACTIVE
        logger.info("Started peek %s (pid %s)", stream.key, process.pid)
        stream.send_all(
            InfoMessage(
                message="peek session started",
                details={"session": stream.key, "pid": process.pid},
            )
        )

    async def _watch(self, stream: SessionStream, process: PeekProcess) -> None:
        """Feed the inbox with output lines, then the exit code."""
        readers = [
            self._pump(process.stdout, "output", stream),
            self._pump(process.stderr, "error", stream),
        ]
        await asyncio.gather(*readers)
        code = await process.wait()
        stream.inbox.put_nowait(("exit", code))

    @staticmethod
    async def _pump(
        reader: asyncio.StreamReader | None,
        kind: str,
        stream: SessionStream,
    ) -> None:
        """Post each complete line of ``reader`` to the inbox until EOF.

        A line longer than the reader limit is dropped as a whole: the part
        already buffered is discarded, and so is everything up to and
        including its newline when that arrives later.
        """
        if reader is None:
            return
        discarding = False
        skip = 0
        while True:
            try:
                if skip:
                    await reader.read(skip)
                    skip = 0
                raw = await reader.readuntil(b"\n")
            except asyncio.IncompleteReadError as exc:
                # EOF; a final line without a newline is still delivered
                if exc.partial and not discarding:
                    stream.inbox.put_nowait((kind, _decode(exc.partial)))
                return
            except asyncio.LimitOverrunError as exc:
                skip = exc.consumed
                if not discarding:
                    logger.debug("Dropped oversized %s line from peek %s", kind, stream.key)
                discarding = True
                continue
            except OSError as exc:
                logger.warning("Lost %s pipe of peek %s: %s", kind, stream.key, exc)
                return
            if discarding:
                discarding = False
                continue
            stream.inbox.put_nowait((kind, _decode(raw)))

    async def _deliver(self, stream: SessionStream) -> None:
        """Single consumer of the stream's inbox."""
        try:
            while True:
                kind, value = await stream.inbox.get()
                if kind == "output":
                    stream.send_all(OutputMessage(line=value))
                elif kind == "error":
                    stream.send_all(ErrorMessage(line=value))
                else:
                    logger.info("Peek %s exited with code %s", stream.key, value)
                    stream.send_all(
                        InfoMessage(message=f"exited with code {value}", details={"code": value})
                    )
                    return
        finally:
            self._finish(stream)

    def _expire(self, stream: SessionStream) -> None:
        stream.teardown = None
        if stream.subscribers or self._streams.get(stream.key) is not stream:
            return
        logger.info("No viewers left for peek %s; stopping it", stream.key)
        self._stop(stream)

    def _stop(self, stream: SessionStream) -> None:
        was_starting = stream.state is StreamState.STARTING
        stream.state = StreamState.CLOSING
        if stream.process is not None:
            self._terminate(stream.process)
        elif not was_starting:
            self._finish(stream)

    def _finish(self, stream: SessionStream) -> None:
        stream.cancel_teardown()
        stream.subscribers.clear()
        if self._streams.get(stream.key) is stream:
            del self._streams[stream.key]
        stream.exited.set()

    @staticmethod
    def _terminate(process: PeekProcess) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        loop = asyncio.get_running_loop()
        loop.call_later(KILL_AFTER_S, SessionMultiplexer._kill_if_running, process)

    @staticmethod
    def _kill_if_running(process: PeekProcess) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
