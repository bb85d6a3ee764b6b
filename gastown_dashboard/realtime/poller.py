"""Periodic convoy snapshots for the system feed."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from ..control.parsing import parse_json
from ..control.runner import ControlPlaneRunner
from .protocol import ConvoysMessage

if TYPE_CHECKING:
    from .hub import BroadcastHub

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_S = 5.0
CONVOY_LIST_ARGS = "convoy list --json"


class SnapshotPoller:
    """Publishes the current convoy listing as a full-replace snapshot.

    A failed or unparsable listing skips that tick; the next tick retries.
    """

    def __init__(self, runner: ControlPlaneRunner, hub: BroadcastHub) -> None:
        self._runner = runner
        self._hub = hub

    async def tick(self) -> bool:
        """Fetch and publish one snapshot. Returns True if one was published."""
        result = await self._runner.gt(CONVOY_LIST_ARGS)
        if not result.success:
            logger.debug("Convoy snapshot skipped: %s", result.error)
            return False

        data = parse_json(result.output)
        if data is None:
            logger.debug("Convoy snapshot skipped: output is not JSON")
            return False

        self._hub.publish(ConvoysMessage(convoys=data))
        return True

    async def run(self, interval: float = DEFAULT_POLL_INTERVAL_S) -> None:
        """Tick every ``interval`` seconds until cancelled."""
        logger.info("Polling convoys every %ss", interval)
        while True:
            await asyncio.sleep(interval)
            try:
                await self.tick()
            except Exception:
                logger.exception("Convoy snapshot tick failed")
