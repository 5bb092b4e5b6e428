"""
WebSocket Connection Manager

Registry of open terminal and log sockets:

- connection id -> ConnectionSession
- user id -> set of connection ids (per-user quota)

Both maps change together under one asyncio.Lock. A heartbeat task sweeps
every ``heartbeat_interval`` seconds: sockets silent for more than two
intervals are closed and evicted, the rest are pinged.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from fastapi import WebSocket

from .orchestration.errors import AuthRejected

logger = logging.getLogger(__name__)

# Close code for "going away"
CLOSE_GOING_AWAY = 1001


@dataclass
class ConnectionSession:
    connection_id: str
    user_id: str
    environment_id: str
    channel: str  # "terminal" or "logs"
    websocket: WebSocket
    last_heartbeat: float
    connected_at: float = field(default=0.0)


class ConnectionManager:
    """Tracks open sockets per user and per environment, with heartbeat liveness."""

    def __init__(
        self,
        heartbeat_interval: float = 30.0,
        max_connections_per_user: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.heartbeat_interval = heartbeat_interval
        self.max_connections_per_user = max_connections_per_user
        self._clock = clock
        self._sessions: Dict[str, ConnectionSession] = {}
        self._user_connections: Dict[str, Set[str]] = {}
        self._lock = asyncio.Lock()
        self._heartbeat_task: Optional[asyncio.Task] = None

    # =========================================================================
    # REGISTRY
    # =========================================================================

    def can_accept(self, user_id: str) -> bool:
        return self.get_user_connection_count(user_id) < self.max_connections_per_user

    async def register(
        self,
        user_id: str,
        environment_id: str,
        channel: str,
        websocket: WebSocket,
        connection_id: Optional[str] = None,
    ) -> ConnectionSession:
        """
        Add a socket to both maps.

        Raises:
            AuthRejected: The user already holds ``max_connections_per_user`` sockets
        """
        async with self._lock:
            if self.get_user_connection_count(user_id) >= self.max_connections_per_user:
                raise AuthRejected(f"Connection limit reached ({self.max_connections_per_user})")

            now = self._clock()
            session = ConnectionSession(
                connection_id=connection_id or str(uuid.uuid4()),
                user_id=user_id,
                environment_id=environment_id,
                channel=channel,
                websocket=websocket,
                last_heartbeat=now,
                connected_at=now,
            )
            self._sessions[session.connection_id] = session
            self._user_connections.setdefault(user_id, set()).add(session.connection_id)

        logger.info(
            f"[WS] Registered {channel} connection {session.connection_id} "
            f"(user {user_id}, environment {environment_id})"
        )
        return session

    async def unregister(self, connection_id: str) -> Optional[ConnectionSession]:
        async with self._lock:
            return self._remove(connection_id)

    def _remove(self, connection_id: str) -> Optional[ConnectionSession]:
        # Caller holds self._lock
        session = self._sessions.pop(connection_id, None)
        if session is None:
            return None
        user_connections = self._user_connections.get(session.user_id)
        if user_connections is not None:
            user_connections.discard(connection_id)
            if not user_connections:
                del self._user_connections[session.user_id]
        logger.info(f"[WS] Unregistered connection {connection_id}")
        return session

    def get(self, connection_id: str) -> Optional[ConnectionSession]:
        return self._sessions.get(connection_id)

    def touch(self, connection_id: str) -> None:
        """Record a liveness signal (client ping or pong)."""
        session = self._sessions.get(connection_id)
        if session is not None:
            session.last_heartbeat = self._clock()

    def get_user_connection_count(self, user_id: str) -> int:
        return len(self._user_connections.get(user_id, ()))

    def get_user_connection_ids(self, user_id: str) -> Set[str]:
        return set(self._user_connections.get(user_id, ()))

    def get_connections_by_environment(self, environment_id: str) -> List[ConnectionSession]:
        return [s for s in self._sessions.values() if s.environment_id == environment_id]

    @property
    def active_connection_count(self) -> int:
        return len(self._sessions)

    # =========================================================================
    # MESSAGING
    # =========================================================================

    async def broadcast_to_environment(self, environment_id: str, message: Dict[str, Any]) -> int:
        """Send ``message`` to every socket on an environment; failed sockets are evicted."""
        sent = 0
        for session in self.get_connections_by_environment(environment_id):
            try:
                await session.websocket.send_json(message)
                sent += 1
            except Exception as e:
                logger.warning(f"[WS] Broadcast to {session.connection_id} failed, evicting: {e}")
                await self.unregister(session.connection_id)
        return sent

    # =========================================================================
    # HEARTBEAT
    # =========================================================================

    async def sweep(self) -> List[str]:
        """
        One heartbeat pass.

        Returns:
            Connection ids evicted in this pass
        """
        deadline = self._clock() - 2 * self.heartbeat_interval
        async with self._lock:
            snapshot = list(self._sessions.values())

        evicted = []
        for session in snapshot:
            if session.last_heartbeat < deadline:
                logger.info(f"[WS] Connection {session.connection_id} missed heartbeats, closing")
                try:
                    await session.websocket.close(code=CLOSE_GOING_AWAY)
                except Exception as e:
                    logger.debug(f"[WS] Close of stale connection {session.connection_id} failed: {e}")
                evicted.append(session.connection_id)
                continue

            try:
                await session.websocket.send_json({"type": "ping"})
            except Exception as e:
                logger.info(f"[WS] Ping to {session.connection_id} failed, evicting: {e}")
                evicted.append(session.connection_id)

        if evicted:
            async with self._lock:
                for connection_id in evicted:
                    self._remove(connection_id)
        return evicted

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"[WS] Heartbeat sweep failed: {e}", exc_info=True)

    def start(self) -> None:
        """Start the heartbeat task on the running loop."""
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
            logger.info(f"[WS] Heartbeat started (interval {self.heartbeat_interval}s)")

    async def teardown(self) -> None:
        """Stop the heartbeat and close every socket (process shutdown)."""
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
            self._user_connections.clear()

        for session in sessions:
            try:
                await session.websocket.close(code=CLOSE_GOING_AWAY)
            except Exception as e:
                logger.debug(f"[WS] Close during teardown failed for {session.connection_id}: {e}")

        logger.info(f"[WS] Connection manager torn down ({len(sessions)} connections closed)")
