"""Per-connection protocol handler for the push channel.

Each connection moves ``Connecting -> Joined -> Closed``. Until a valid
``SESSION_JOIN`` arrives the connection is held open but has no registry
side effects. Malformed or unknown frames are ignored in every state; the
gateway never answers a client with an error.
"""

from __future__ import annotations

import asyncio
import enum
from typing import Any, Optional, Tuple

import jwt
import structlog
from starlette.websockets import WebSocket, WebSocketDisconnect

from carebridge.auth import decode_token, token_user_id
from carebridge.config import Settings, get_settings
from carebridge.errors import CareBridgeError
from carebridge.frames import (
    LabReadFrame,
    NotificationAckFrame,
    PingFrame,
    SessionJoinFrame,
    bootstrap_frame,
    parse_inbound,
)
from carebridge.labs import LabService
from carebridge.notifications_service import NotificationService
from carebridge.ws_notifications import PushConnection, SessionRegistry


logger = structlog.get_logger(__name__)


class ConnectionState(str, enum.Enum):
    CONNECTING = "connecting"
    JOINED = "joined"
    CLOSED = "closed"


class _ConnectionClosed(Exception):
    """Internal signal that the transport is gone."""


def _normalise_token(candidate: Optional[str]) -> Optional[str]:
    if not candidate:
        return None
    value = candidate.strip()
    if value.lower().startswith("bearer "):
        _, _, remainder = value.partition(" ")
        value = remainder.strip()
    return value or None


class PushGateway:
    """Drive one push connection from accept to close."""

    def __init__(
        self,
        registry: SessionRegistry,
        notifications: NotificationService,
        labs: LabService,
        settings: Optional[Settings] = None,
    ) -> None:
        self._registry = registry
        self._notifications = notifications
        self._labs = labs
        self._settings = settings

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    async def handle(self, websocket: WebSocket) -> None:
        await websocket.accept()
        token_present, token_uid = self._token_identity(websocket)
        state = ConnectionState.CONNECTING
        connection: Optional[PushConnection] = None
        try:
            while True:
                raw = await self._receive(websocket, connection)
                if raw is None:
                    continue
                frame = parse_inbound(raw)
                if frame is None:
                    logger.debug("push_frame_ignored", state=state.value, reason="unrecognised")
                    continue

                if state is ConnectionState.CONNECTING:
                    if not isinstance(frame, SessionJoinFrame):
                        logger.debug("push_frame_ignored", state=state.value, type=frame.type)
                        continue
                    if not self._join_allowed(frame.user_id, token_present, token_uid):
                        logger.info("push_join_rejected", user_id=frame.user_id)
                        continue
                    connection = PushConnection(
                        websocket=websocket,
                        user_id=frame.user_id,
                        device_id=frame.device_id,
                    )
                    await self._registry.register(frame.user_id, connection)
                    state = ConnectionState.JOINED
                    await self._send_bootstrap(connection)
                    continue

                if connection is None:
                    continue
                if isinstance(frame, NotificationAckFrame):
                    self._acknowledge(connection, frame.notification_id)
                elif isinstance(frame, LabReadFrame):
                    self._lab_viewed(connection, frame.lab_id)
                else:
                    logger.debug("push_frame_ignored", state=state.value, type=frame.type)
        except (WebSocketDisconnect, _ConnectionClosed):
            pass
        finally:
            state = ConnectionState.CLOSED
            if connection is not None:
                await self._registry.unregister(connection)
            logger.debug(
                "push_connection_closed",
                user_id=connection.user_id if connection else None,
                state=state.value,
            )

    # ------------------------------------------------------------------
    # Transport helpers
    # ------------------------------------------------------------------
    async def _receive(self, websocket: WebSocket, connection: Optional[PushConnection]) -> Any:
        """Return the next text/bytes payload, or ``None`` after a heartbeat."""

        interval = self.settings.push_heartbeat_seconds
        try:
            if interval and interval > 0:
                message = await asyncio.wait_for(websocket.receive(), timeout=interval)
            else:
                message = await websocket.receive()
        except asyncio.TimeoutError:
            await self._ping(websocket, connection)
            return None

        if message.get("type") == "websocket.disconnect":
            raise _ConnectionClosed()
        if message.get("text") is not None:
            return message["text"]
        return message.get("bytes")

    async def _ping(self, websocket: WebSocket, connection: Optional[PushConnection]) -> None:
        payload = PingFrame().to_wire()
        try:
            if connection is not None:
                await connection.send(payload, timeout=self._registry.send_timeout)
            else:
                await websocket.send_json(payload)
        except Exception as exc:
            logger.info(
                "push_heartbeat_failed",
                user_id=connection.user_id if connection else None,
                error=str(exc),
            )
            raise _ConnectionClosed() from exc

    # ------------------------------------------------------------------
    # Protocol actions
    # ------------------------------------------------------------------
    def _token_identity(self, websocket: WebSocket) -> Tuple[bool, Optional[int]]:
        token = _normalise_token(websocket.headers.get("Authorization"))
        if not token:
            token = _normalise_token(websocket.query_params.get("token"))
        if not token:
            return False, None
        try:
            claims = decode_token(token, settings=self.settings)
        except jwt.PyJWTError:
            logger.info("push_token_invalid")
            return True, None
        return True, token_user_id(claims)

    def _join_allowed(self, user_id: int, token_present: bool, token_uid: Optional[int]) -> bool:
        if token_present:
            return token_uid is not None and token_uid == user_id
        return not self.settings.push_require_token

    async def _send_bootstrap(self, connection: PushConnection) -> None:
        limit = self.settings.push_bootstrap_limit
        unread = self._notifications.unread_count(connection.user_id)
        recent = self._notifications.unread_for_user(connection.user_id, limit)
        try:
            await connection.send(
                bootstrap_frame(unread, recent).to_wire(),
                timeout=self._registry.send_timeout,
            )
        except Exception as exc:
            logger.info("push_bootstrap_failed", user_id=connection.user_id, error=str(exc))
            raise _ConnectionClosed() from exc

    def _acknowledge(self, connection: PushConnection, notification_id: int) -> None:
        try:
            marked = self._notifications.mark_read_for_user(notification_id, connection.user_id)
        except Exception:
            logger.exception(
                "push_ack_failed",
                user_id=connection.user_id,
                notification_id=notification_id,
            )
            return
        logger.debug(
            "push_ack",
            user_id=connection.user_id,
            notification_id=notification_id,
            marked=marked,
        )

    def _lab_viewed(self, connection: PushConnection, lab_id: int) -> None:
        try:
            self._labs.mark_viewed(lab_id, user_id=connection.user_id)
        except CareBridgeError as exc:
            logger.debug("push_lab_read_ignored", user_id=connection.user_id, lab_id=lab_id, error=exc.message)
        except Exception:
            logger.exception("push_lab_read_failed", user_id=connection.user_id, lab_id=lab_id)


__all__ = ["ConnectionState", "PushGateway"]
