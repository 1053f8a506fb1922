"""In-memory registry of joined push connections, keyed by user id."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Set, Union

import structlog

from carebridge.config import get_settings
from carebridge.db.models import Notification
from carebridge.frames import OutboundFrame, frame_for_notification
from carebridge.metrics import PUSH_CONNECTIONS, PUSH_FRAMES
from carebridge.time_utils import utc_now


logger = structlog.get_logger(__name__)


@dataclass(eq=False)
class PushConnection:
    """A live transport bound to a user after ``SESSION_JOIN``.

    ``websocket`` is anything exposing ``async send_json`` and ``async close``
    (a Starlette ``WebSocket`` in production). Writes go through ``send`` so
    that frames for one connection are never interleaved.
    """

    websocket: Any
    user_id: int
    device_id: str = ""
    joined_at: datetime = field(default_factory=utc_now)
    _send_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    async def send(self, payload: Mapping[str, Any], *, timeout: Optional[float] = None) -> None:
        """Write one frame; a write that outlasts *timeout* raises ``asyncio.TimeoutError``."""

        async with self._send_lock:
            if timeout and timeout > 0:
                await asyncio.wait_for(self.websocket.send_json(dict(payload)), timeout=timeout)
            else:
                await self.websocket.send_json(dict(payload))

    async def close(self, code: int = 1001) -> None:
        try:
            await self.websocket.close(code=code)
        except Exception as exc:  # pragma: no cover - peer already gone
            logger.debug("push_connection_close_failed", user_id=self.user_id, error=str(exc))


class SessionRegistry:
    """Track live connections per user and fan frames out to them.

    A user may hold any number of connections (one per device or tab). The
    registry is process-local and never persisted. Each write is bounded by
    ``send_timeout`` (``PUSH_SEND_TIMEOUT_SECONDS`` when not given).
    """

    def __init__(self, send_timeout: Optional[float] = None) -> None:
        self._clients: Dict[int, Set[PushConnection]] = defaultdict(set)
        self._lock = asyncio.Lock()
        self._send_timeout = send_timeout

    @property
    def send_timeout(self) -> float:
        if self._send_timeout is not None:
            return self._send_timeout
        return get_settings().push_send_timeout_seconds

    async def register(self, user_id: int, connection: PushConnection) -> bool:
        """Add *connection* for *user_id*; ``True`` if it is the user's first."""

        connection.user_id = user_id
        async with self._lock:
            clients = self._clients[user_id]
            first = not clients
            if connection not in clients:
                clients.add(connection)
                PUSH_CONNECTIONS.inc()
        logger.info(
            "push_session_registered",
            user_id=user_id,
            device_id=connection.device_id,
            first=first,
        )
        return first

    async def unregister(self, connection: PushConnection) -> None:
        """Remove *connection* wherever it is registered. Safe to repeat."""

        async with self._lock:
            removed = self._discard(connection)
        if removed:
            logger.info(
                "push_session_unregistered",
                user_id=connection.user_id,
                device_id=connection.device_id,
            )

    async def push_to_user(
        self,
        user_id: int,
        frame: Union[OutboundFrame, Mapping[str, Any]],
    ) -> int:
        """Write *frame* to every live connection of *user_id*.

        Connections are written concurrently. Returns the number of
        successful writes. Connections that fail or time out are dropped from
        the registry; failures never propagate to the caller.
        """

        async with self._lock:
            targets: List[PushConnection] = list(self._clients.get(user_id, ()))
        if not targets:
            return 0

        payload = frame.to_wire() if hasattr(frame, "to_wire") else dict(frame)
        frame_type = str(payload.get("type", "unknown"))
        timeout = self.send_timeout
        results = await asyncio.gather(
            *(connection.send(payload, timeout=timeout) for connection in targets),
            return_exceptions=True,
        )
        delivered = 0
        dead: List[PushConnection] = []
        for connection, result in zip(targets, results):
            if isinstance(result, Exception):
                dead.append(connection)
                PUSH_FRAMES.labels(type=frame_type, outcome="failed").inc()
                logger.info(
                    "push_write_failed",
                    user_id=user_id,
                    device_id=connection.device_id,
                    type=frame_type,
                    error=str(result) or result.__class__.__name__,
                )
            else:
                delivered += 1
                PUSH_FRAMES.labels(type=frame_type, outcome="delivered").inc()

        if dead:
            async with self._lock:
                for connection in dead:
                    self._discard(connection)
        return delivered

    async def push_notification(self, notification: Notification) -> int:
        """Push the live frame derived from a committed ledger row."""

        frame = frame_for_notification(notification)
        if frame is None:
            logger.debug("push_skipped_unknown_type", type=notification.type)
            return 0
        return await self.push_to_user(notification.user_id, frame)

    async def connection_count(self, user_id: int) -> int:
        async with self._lock:
            return len(self._clients.get(user_id, ()))

    async def connected_users(self) -> List[int]:
        async with self._lock:
            return sorted(user_id for user_id, clients in self._clients.items() if clients)

    async def close_all(self) -> None:
        """Close and forget every connection (process shutdown)."""

        async with self._lock:
            connections = [conn for clients in self._clients.values() for conn in clients]
            for connection in connections:
                self._discard(connection)
        for connection in connections:
            await connection.close()
        if connections:
            logger.info("push_sessions_closed", count=len(connections))

    def _discard(self, connection: PushConnection) -> bool:
        # Caller holds ``self._lock``.
        clients = self._clients.get(connection.user_id)
        if not clients or connection not in clients:
            return False
        clients.discard(connection)
        if not clients:
            self._clients.pop(connection.user_id, None)
        PUSH_CONNECTIONS.dec()
        return True


__all__ = ["PushConnection", "SessionRegistry"]
