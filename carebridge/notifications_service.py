"""Durable per-user notification ledger."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from carebridge.db.models import Notification, NotificationType, User
from carebridge.db.session import Database
from carebridge.errors import NotFoundError
from carebridge.metrics import NOTIFICATIONS_CREATED
from carebridge.time_utils import iso_timestamp, utc_now


logger = structlog.get_logger(__name__)


def serialise_notification(notification: Notification) -> Dict[str, Any]:
    """Return the API representation of a ledger row."""

    return {
        "id": notification.id,
        "user_id": notification.user_id,
        "type": notification.type,
        "entity": notification.entity,
        "entity_id": notification.entity_id,
        "payload": dict(notification.payload or {}),
        "created_at": iso_timestamp(notification.created_at),
        "read_at": iso_timestamp(notification.read_at),
    }


class NotificationService:
    """Persist notifications and track their read state.

    Rows are append-only: after insertion the only mutation is setting
    ``read_at``, once. Every method accepts an optional ``session`` so callers
    can record a notification in the same unit of work as the change that
    triggered it.
    """

    def __init__(self, database: Database) -> None:
        self._database = database

    @contextmanager
    def _scope(self, session: Optional[Session]) -> Iterator[Session]:
        if session is not None:
            yield session
            return
        with self._database.session_scope() as scoped:
            yield scoped

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def create(
        self,
        user_id: int,
        notification_type: NotificationType | str,
        entity: Optional[str],
        entity_id: Optional[int],
        payload: Mapping[str, Any],
        *,
        session: Optional[Session] = None,
    ) -> Notification:
        """Append a notification for *user_id* and return the stored row."""

        type_value = (
            notification_type.value
            if isinstance(notification_type, NotificationType)
            else str(notification_type)
        )
        with self._scope(session) as db:
            if db.get(User, user_id) is None:
                raise NotFoundError(f"User {user_id} not found")
            notification = Notification(
                user_id=user_id,
                type=type_value,
                entity=entity,
                entity_id=entity_id,
                payload=dict(payload),
                created_at=utc_now(),
                read_at=None,
            )
            db.add(notification)
            db.flush()
        NOTIFICATIONS_CREATED.labels(type=type_value).inc()
        logger.info(
            "notification_created",
            notification_id=notification.id,
            user_id=user_id,
            type=type_value,
            entity=entity,
            entity_id=entity_id,
        )
        return notification

    def get(self, notification_id: int, *, session: Optional[Session] = None) -> Notification:
        with self._scope(session) as db:
            notification = db.get(Notification, notification_id)
            if notification is None:
                raise NotFoundError(f"Notification {notification_id} not found")
            return notification

    def list_for_user(self, user_id: int, *, session: Optional[Session] = None) -> List[Notification]:
        """Return every notification for *user_id*, newest first."""

        with self._scope(session) as db:
            rows = db.execute(
                select(Notification)
                .where(Notification.user_id == user_id)
                .order_by(Notification.created_at.desc(), Notification.id.desc())
            ).scalars()
            return list(rows)

    def unread_for_user(
        self,
        user_id: int,
        limit: int,
        *,
        session: Optional[Session] = None,
    ) -> List[Notification]:
        with self._scope(session) as db:
            rows = db.execute(
                select(Notification)
                .where(Notification.user_id == user_id, Notification.read_at.is_(None))
                .order_by(Notification.created_at.desc(), Notification.id.desc())
                .limit(max(1, limit))
            ).scalars()
            return list(rows)

    def unread_count(self, user_id: int, *, session: Optional[Session] = None) -> int:
        with self._scope(session) as db:
            total = db.execute(
                select(func.count(Notification.id)).where(
                    Notification.user_id == user_id,
                    Notification.read_at.is_(None),
                )
            ).scalar_one()
            return int(total or 0)

    def mark_read(self, notification_id: int, *, session: Optional[Session] = None) -> Notification:
        """Set ``read_at`` to now unless already set. Re-marking is a no-op."""

        with self._scope(session) as db:
            notification = db.get(Notification, notification_id)
            if notification is None:
                raise NotFoundError(f"Notification {notification_id} not found")
            if notification.read_at is None:
                self._stamp_read(db, notification_id)
                db.refresh(notification)
            return notification

    def mark_read_for_user(
        self,
        notification_id: int,
        user_id: int,
        *,
        session: Optional[Session] = None,
    ) -> bool:
        """Mark *notification_id* read when it belongs to *user_id*.

        Returns ``True`` when the notification exists and is owned by the
        user, whether or not it was already read.
        """

        with self._scope(session) as db:
            notification = db.get(Notification, notification_id)
            if notification is None or notification.user_id != user_id:
                return False
            if notification.read_at is None:
                self._stamp_read(db, notification_id)
            return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _stamp_read(self, db: Session, notification_id: int) -> None:
        # ``read_at IS NULL`` in the WHERE clause keeps the first timestamp
        # even when two acknowledgements race.
        db.execute(
            update(Notification)
            .where(Notification.id == notification_id, Notification.read_at.is_(None))
            .values(read_at=utc_now())
            .execution_options(synchronize_session=False)
        )


__all__ = [
    "NotificationService",
    "serialise_notification",
]
