"""System-wide broadcast feed."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .protocol import BroadcastMessage, Connection, StatusMessage

logger = logging.getLogger(__name__)

SnapshotProvider = Callable[[], Awaitable[dict[str, Any] | None]]


class BroadcastHub:
    """Fans broadcast messages out to every subscribed connection.

    Delivery is best-effort: connections that are not open at publish time
    are skipped, nothing is queued for them, and nothing is replayed on
    reconnect. Members are iterated over a snapshot, so producers may
    publish while connections subscribe and unsubscribe.
    """

    def __init__(self, snapshot_provider: SnapshotProvider | None = None) -> None:
        self._connections: set[Connection] = set()
        self._snapshot_provider = snapshot_provider

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def __contains__(self, connection: object) -> bool:
        return connection in self._connections

    async def subscribe(self, connection: Connection) -> None:
        """Add ``connection`` and send it the current status snapshot."""
        self._connections.add(connection)
        logger.info(
            "Feed client %s connected (%d total)", connection.id, len(self._connections)
        )

        if self._snapshot_provider is None:
            return
        try:
            status = await self._snapshot_provider()
        except Exception:
            logger.exception("Status snapshot for %s failed", connection.id)
            return
        if status is not None:
            connection.send_text(StatusMessage(status=status).to_json())

    def unsubscribe(self, connection: Connection) -> None:
        """Remove ``connection`` (idempotent)."""
        if connection in self._connections:
            self._connections.discard(connection)
            logger.info(
                "Feed client %s disconnected (%d total)",
                connection.id,
                len(self._connections),
            )

    def publish(self, message: BroadcastMessage) -> int:
        """Queue ``message`` for every open connection; return how many took it."""
        data = message.to_json()
        delivered = 0
        for connection in tuple(self._connections):
            if not connection.is_open:
                continue
            try:
                if connection.send_text(data):
                    delivered += 1
            except Exception:
                logger.exception("Dropping frame for feed client %s", connection.id)
        return delivered
