"""Wire messages and the connection protocol for real-time feeds.

Every frame is a JSON text frame ``{"type": <tag>, "data": <payload>}``.
The system feed carries ``status``, ``convoys`` and ``event`` frames; peek
feeds carry ``output``, ``error`` and ``info`` frames.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, ClassVar, Protocol


@dataclass(frozen=True, slots=True)
class _Message:
    type: ClassVar[str]

    @property
    def payload(self) -> Any:
        raise NotImplementedError

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "data": self.payload}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


@dataclass(frozen=True, slots=True)
class StatusMessage(_Message):
    """Full town status snapshot."""

    type: ClassVar[str] = "status"
    status: dict[str, Any] = field(default_factory=dict)

    @property
    def payload(self) -> dict[str, Any]:
        return self.status


@dataclass(frozen=True, slots=True)
class ConvoysMessage(_Message):
    """Full-replace convoy listing."""

    type: ClassVar[str] = "convoys"
    convoys: Any = None

    @property
    def payload(self) -> Any:
        return self.convoys


@dataclass(frozen=True, slots=True)
class EventMessage(_Message):
    """One record appended to the town event log."""

    type: ClassVar[str] = "event"
    record: dict[str, Any] = field(default_factory=dict)

    @property
    def payload(self) -> dict[str, Any]:
        return self.record


@dataclass(frozen=True, slots=True)
class OutputMessage(_Message):
    """A stdout line from a peek subprocess."""

    type: ClassVar[str] = "output"
    line: str = ""

    @property
    def payload(self) -> str:
        return self.line


@dataclass(frozen=True, slots=True)
class ErrorMessage(_Message):
    """A stderr line from a peek subprocess, or a failure to start one."""

    type: ClassVar[str] = "error"
    line: str = ""

    @property
    def payload(self) -> str:
        return self.line


@dataclass(frozen=True, slots=True)
class InfoMessage(_Message):
    """Lifecycle notice for a peek session (started, joined, exited)."""

    type: ClassVar[str] = "info"
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def payload(self) -> dict[str, Any]:
        return {"message": self.message, **self.details}


BroadcastMessage = StatusMessage | ConvoysMessage | EventMessage
PeekMessage = OutputMessage | ErrorMessage | InfoMessage
Message = BroadcastMessage | PeekMessage


class Connection(Protocol):
    """A subscriber endpoint that accepts serialized frames without blocking."""

    @property
    def id(self) -> str: ...

    @property
    def is_open(self) -> bool:
        """False once the transport reported close/error or sending failed."""
        ...

    def send_text(self, data: str) -> bool:
        """Queue a frame; return False if the connection is not open."""
        ...
