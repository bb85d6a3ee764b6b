"""gastown-dashboard: live dashboard backend for a Gas Town agent fleet."""

__version__ = "0.1.0"

from .config import DashboardConfig
from .control import ControlPlaneRunner, InvocationResult, TownClient, TownResult
from .errors import ConfigError, DashboardError
from .realtime import BroadcastHub, EventLogTailer, SessionMultiplexer, SnapshotPoller

__all__ = [
    "__version__",
    "BroadcastHub",
    "ConfigError",
    "ControlPlaneRunner",
    "DashboardConfig",
    "DashboardError",
    "EventLogTailer",
    "InvocationResult",
    "SessionMultiplexer",
    "SnapshotPoller",
    "TownClient",
    "TownResult",
]
