"""Administrator announcements broadcast to every user."""

from __future__ import annotations

from typing import List

import structlog
from sqlalchemy import select

from carebridge.db.models import Notification, NotificationType, User
from carebridge.db.session import Database
from carebridge.errors import InvalidInputError
from carebridge.notifications_service import NotificationService
from carebridge.ws_notifications import SessionRegistry


logger = structlog.get_logger(__name__)


class AnnouncementService:
    def __init__(
        self,
        database: Database,
        notifications: NotificationService,
        registry: SessionRegistry,
    ) -> None:
        self._database = database
        self._notifications = notifications
        self._registry = registry

    async def broadcast(self, title: str, message: str) -> int:
        """Record an announcement for every user, push it, return the count.

        All ledger rows are committed before the first push.
        """

        title = (title or "").strip()
        message = (message or "").strip()
        if not title or not message:
            raise InvalidInputError("Both title and message are required.")

        created: List[Notification] = []
        with self._database.session_scope() as db:
            user_ids = db.execute(select(User.id).order_by(User.id)).scalars().all()
            for user_id in user_ids:
                created.append(
                    self._notifications.create(
                        user_id,
                        NotificationType.ANNOUNCEMENT,
                        "announcement",
                        None,
                        {"title": title, "message": message},
                        session=db,
                    )
                )

        delivered = 0
        for notification in created:
            delivered += await self._registry.push_notification(notification)
        logger.info("announcement_broadcast", created=len(created), delivered=delivered)
        return len(created)


__all__ = ["AnnouncementService"]
