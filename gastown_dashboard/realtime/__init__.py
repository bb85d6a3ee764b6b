"""Real-time feeds: the system broadcast and per-agent peek streams."""

from .connection import WebSocketConnection
from .hub import BroadcastHub
from .poller import SnapshotPoller
from .protocol import (
    BroadcastMessage,
    Connection,
    ConvoysMessage,
    ErrorMessage,
    EventMessage,
    InfoMessage,
    Message,
    OutputMessage,
    PeekMessage,
    StatusMessage,
)
from .sessions import PeekLauncher, SessionMultiplexer, SubprocessPeekLauncher
from .tailer import EventLogTailer, TailerState, read_event_history

__all__ = [
    "BroadcastHub",
    "BroadcastMessage",
    "Connection",
    "ConvoysMessage",
    "ErrorMessage",
    "EventLogTailer",
    "EventMessage",
    "InfoMessage",
    "Message",
    "OutputMessage",
    "PeekLauncher",
    "PeekMessage",
    "SessionMultiplexer",
    "SnapshotPoller",
    "StatusMessage",
    "SubprocessPeekLauncher",
    "TailerState",
    "WebSocketConnection",
    "read_event_history",
]
