"""WebSocket connection manager: one connection per participant per room."""

from __future__ import annotations

import logging
import time
from typing import Collection, Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ClientConnection:
    """Wraps a single WebSocket connection with metadata."""

    __slots__ = ("ws", "participant_id", "connected_at")

    def __init__(self, ws: WebSocket, participant_id: str) -> None:
        self.ws = ws
        self.participant_id = participant_id
        self.connected_at = time.time()

    async def send(self, text: str) -> bool:
        """Send text, returning False on failure."""
        try:
            await self.ws.send_text(text)
            return True
        except Exception:
            return False


class ConnectionManager:
    """Manages WebSocket connections per stake-tier room."""

    def __init__(self) -> None:
        # stake -> {participant_id -> ClientConnection}
        self._rooms: dict[int, dict[str, ClientConnection]] = {}

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def connect(self, stake: int, participant_id: str, ws: WebSocket) -> ClientConnection:
        await ws.accept()
        conn = ClientConnection(ws, participant_id)

        if stake not in self._rooms:
            self._rooms[stake] = {}
        # Close previous connection for this participant (stale tab)
        old = self._rooms[stake].get(participant_id)
        if old is not None:
            try:
                await old.ws.close(code=4001, reason="Replaced by new connection")
            except Exception:
                logger.debug("Closing replaced connection for %s failed", participant_id, exc_info=True)
        self._rooms[stake][participant_id] = conn

        logger.info("WS connect: room=%d participant=%s", stake, participant_id)
        return conn

    def disconnect(
        self, stake: int, participant_id: str, conn: Optional[ClientConnection] = None
    ) -> bool:
        """Remove a connection.  If conn is given, only remove if it matches.

        Returns True if a connection was removed.
        """
        conns = self._rooms.get(stake)
        if conns is None:
            return False
        existing = conns.get(participant_id)
        if existing is None or (conn is not None and existing is not conn):
            return False
        del conns[participant_id]
        if not conns:
            del self._rooms[stake]
        logger.info("WS disconnect: room=%d participant=%s", stake, participant_id)
        return True

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def send_to_player(self, stake: int, participant_id: str, message: str) -> None:
        """Send a message to a specific participant."""
        conn = self._rooms.get(stake, {}).get(participant_id)
        if conn:
            if not await conn.send(message):
                self.disconnect(stake, participant_id, conn)

    async def broadcast_to_all(
        self, stake: int, message: str, exclude: Collection[str] = ()
    ) -> None:
        """Send a message to every connection in a room, in call order."""
        stale: list[tuple[str, ClientConnection]] = []
        for pid, conn in list(self._rooms.get(stake, {}).items()):
            if pid in exclude:
                continue
            if not await conn.send(message):
                stale.append((pid, conn))
        for pid, conn in stale:
            self.disconnect(stake, pid, conn)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_connected(self, stake: int, participant_id: str) -> bool:
        return participant_id in self._rooms.get(stake, {})

    def get_connected_ids(self, stake: int) -> set[str]:
        return set(self._rooms.get(stake, {}).keys())

    def get_connection_info(self, stake: int) -> dict:
        return {
            "type": "connection_info",
            "data": {"stake": stake, "connected": len(self._rooms.get(stake, {}))},
        }
