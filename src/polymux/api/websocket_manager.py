"""WebSocket connection fan-out for Polymux

Every user may hold several sockets (tabs, devices). Turn events are written
to all of them; a socket whose send fails is dropped.
"""

import threading
from datetime import datetime
from typing import Any, Dict, List

import structlog

from polymux import metrics
from polymux.models.events import CanonicalEvent


logger = structlog.get_logger(__name__)


class ConnectionManager:
    """Per-user registry of live client connections

    A connection is anything with an async ``send_json(dict)``.
    """

    def __init__(self):
        # user_id -> connections, identity-compared
        self._connections: Dict[str, List[Any]] = {}
        self._connected_at: Dict[int, datetime] = {}
        self._lock = threading.Lock()
        self.total_connections = 0

    def register(self, user_id: str, connection: Any) -> None:
        with self._lock:
            connections = self._connections.setdefault(user_id, [])
            if any(c is connection for c in connections):
                return
            connections.append(connection)
            self._connected_at[id(connection)] = datetime.utcnow()
            self.total_connections += 1
            count = self.total_connections

        metrics.WEBSOCKET_CONNECTIONS.inc()
        logger.info("WebSocket connected", user_id=user_id, total_connections=count)

    def unregister(self, user_id: str, connection: Any) -> bool:
        with self._lock:
            connections = self._connections.get(user_id)
            if not connections:
                return False
            remaining = [c for c in connections if c is not connection]
            if len(remaining) == len(connections):
                return False
            if remaining:
                self._connections[user_id] = remaining
            else:
                del self._connections[user_id]
            connected_at = self._connected_at.pop(id(connection), None)
            self.total_connections -= 1
            count = self.total_connections

        metrics.WEBSOCKET_CONNECTIONS.dec()
        logger.info("WebSocket disconnected",
                    user_id=user_id,
                    duration_seconds=(
                        (datetime.utcnow() - connected_at).total_seconds() if connected_at else None
                    ),
                    total_connections=count)
        return True

    def connections_for(self, user_id: str) -> List[Any]:
        with self._lock:
            return list(self._connections.get(user_id, ()))

    @property
    def connection_count(self) -> int:
        with self._lock:
            return self.total_connections

    async def _send(self, user_id: str, connection: Any, message: Dict[str, Any]) -> bool:
        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            logger.warning("Failed to send message to WebSocket",
                           user_id=user_id,
                           message_type=message.get("type"),
                           error=str(e))
            self.unregister(user_id, connection)
            return False

    async def send_to_connection(self, user_id: str, connection: Any, event: CanonicalEvent) -> bool:
        """Reply on one socket only"""
        return await self._send(user_id, connection, event.to_wire())

    async def send_to_user(self, user_id: str, event: CanonicalEvent) -> int:
        """Write an event to every socket of one user; returns how many succeeded"""
        message = event.to_wire()
        sent_count = 0
        for connection in self.connections_for(user_id):
            if await self._send(user_id, connection, message):
                sent_count += 1
        return sent_count

    async def broadcast_all(self, event: CanonicalEvent) -> int:
        """Write an event to every connected socket"""
        with self._lock:
            snapshot = [(user_id, list(conns)) for user_id, conns in self._connections.items()]

        message = event.to_wire()
        total_sent = 0
        for user_id, connections in snapshot:
            for connection in connections:
                if await self._send(user_id, connection, message):
                    total_sent += 1
        return total_sent

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "total_connections": self.total_connections,
                "connected_users": len(self._connections),
                "connections_per_user": {
                    user_id: len(conns) for user_id, conns in self._connections.items()
                },
            }
