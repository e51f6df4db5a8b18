"""
WebSocket connection manager for real-time event streaming.

Clients subscribe to one run (or to all runs with run_id "*") and receive
the engine events emitted for it.
"""

import logging
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

ALL_RUNS = "*"


class ConnectionManager:
    """
    Manages WebSocket connections grouped by run.

    Features:
    - Run-based connection grouping, plus an "all runs" group
    - Automatic removal of disconnected clients
    - Connection lifecycle logging
    """

    def __init__(self):
        self.active_connections: dict[str, set[WebSocket]] = {}
        self._connection_count = 0

    async def connect(self, websocket: WebSocket, run_id: str) -> None:
        """Accept and register a connection for a run."""
        await websocket.accept()
        self.active_connections.setdefault(run_id, set()).add(websocket)
        self._connection_count += 1

        logger.info(
            f"WebSocket connected: run={run_id}, total_connections={self._connection_count}"
        )

    async def disconnect(self, websocket: WebSocket, run_id: str) -> None:
        """Unregister a connection."""
        connections = self.active_connections.get(run_id)
        if connections and websocket in connections:
            connections.discard(websocket)
            self._connection_count -= 1
            if not connections:
                del self.active_connections[run_id]

        logger.info(
            f"WebSocket disconnected: run={run_id}, total_connections={self._connection_count}"
        )

    async def broadcast(self, event: dict[str, Any]) -> None:
        """
        Send an event to the subscribers of its run and of all runs.

        Args:
            event: JSON-serializable event carrying a "run_id"
        """
        run_id = event.get("run_id", "")
        targets = [
            (group, connection)
            for group in (run_id, ALL_RUNS)
            for connection in list(self.active_connections.get(group, ()))
        ]
        if not targets:
            logger.debug(f"No connections for run {run_id}, skipping broadcast")
            return

        disconnected = []
        for group, connection in targets:
            try:
                await connection.send_json(event)
            except WebSocketDisconnect:
                disconnected.append((group, connection))
                logger.debug(f"Client disconnected during broadcast: {group}")
            except Exception as e:
                logger.warning(f"Error sending to WebSocket: {e}")
                disconnected.append((group, connection))

        for group, connection in disconnected:
            await self.disconnect(connection, group)

    def get_connection_count(self, run_id: str | None = None) -> int:
        """Number of active connections, in total or for one run."""
        if run_id is None:
            return self._connection_count
        return len(self.active_connections.get(run_id, ()))


# Global connection manager instance
_manager: ConnectionManager | None = None


def get_connection_manager() -> ConnectionManager:
    """Get or create the global ConnectionManager."""
    global _manager
    if _manager is None:
        _manager = ConnectionManager()
        logger.info("ConnectionManager initialized")
    return _manager
