"""Access to the external ``gt``/``bd`` control plane."""

from .gastown import TownClient, TownResult
from .runner import ControlPlaneRunner, InvocationResult, run_command

__all__ = [
    "ControlPlaneRunner",
    "InvocationResult",
    "TownClient",
    "TownResult",
    "run_command",
]
