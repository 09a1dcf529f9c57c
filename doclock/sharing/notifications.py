"""
DocLock Notifications — per-user inbox written as a side effect of sharing
and friend requests.

notify() is best effort: a failed append is logged and reported as False,
never raised to the sharer, and never retried.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel
from sqlalchemy import delete, func, select, update

from doclock.db.base import as_utc
from doclock.db.models import Notification
from doclock.db.session import session_scope
from doclock.engine.errors import DocLockNotFoundError, DocLockValidationError
from doclock.engine.subscriptions import NOTIFICATIONS, ChangeFeed, Listener, Subscription, get_change_feed

logger = logging.getLogger("doclock.sharing.notifications")

NotificationType = Literal["security", "alert"]
NOTIFICATION_TYPES = ("security", "alert")


class NotificationView(BaseModel):
    id: str
    user_id: str
    title: str
    message: str
    type: NotificationType
    is_read: bool = False
    sender_id: Optional[str] = None
    request_type: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Notification) -> "NotificationView":
        return cls(
            id=row.id,
            user_id=row.user_id,
            title=row.title,
            message=row.message,
            type=row.type,
            is_read=row.is_read,
            sender_id=row.sender_id,
            request_type=row.request_type,
            created_at=as_utc(row.created_at),
        )


class NotificationService:
    def __init__(self, db_session_factory, feed: Optional[ChangeFeed] = None):
        self._db_session_factory = db_session_factory
        self._feed = feed or get_change_feed()

    def notify(
        self,
        user_id: str,
        title: str,
        message: str,
        type: str = "alert",
        sender_id: Optional[str] = None,
        request_type: Optional[str] = None,
    ) -> bool:
        """
        Append a notification to user_id's inbox.

        Returns False (after logging) if the write fails.
        """
        if type not in NOTIFICATION_TYPES:
            raise DocLockValidationError(
                f"Notification type must be one of {NOTIFICATION_TYPES}, got '{type}'",
                field="type",
            )
        try:
            with session_scope(self._db_session_factory) as session:
                session.add(Notification(
                    user_id=user_id,
                    title=title,
                    message=message,
                    type=type,
                    sender_id=sender_id,
                    request_type=request_type,
                ))
        except Exception as e:
            logger.error(f"Failed to notify {user_id} ('{title}'): {e}")
            return False

        self._feed.publish(user_id, NOTIFICATIONS)
        return True

    def list_notifications(self, user_id: str, unread_only: bool = False) -> List[NotificationView]:
        """Newest first."""
        with session_scope(self._db_session_factory) as session:
            stmt = select(Notification).where(Notification.user_id == user_id)
            if unread_only:
                stmt = stmt.where(Notification.is_read.is_(False))
            rows = session.scalars(stmt.order_by(Notification.created_at.desc())).all()
            return [NotificationView.from_row(r) for r in rows]

    def watch_notifications(self, user_id: str, listener: Listener) -> Subscription:
        return Subscription(
            self._feed, user_id, NOTIFICATIONS,
            lambda: self.list_notifications(user_id),
            listener,
        )

    def unread_count(self, user_id: str) -> int:
        with session_scope(self._db_session_factory) as session:
            return session.scalar(
                select(func.count()).select_from(Notification).where(
                    Notification.user_id == user_id,
                    Notification.is_read.is_(False),
                )
            ) or 0

    def mark_as_read(self, user_id: str, notification_id: str) -> None:
        with session_scope(self._db_session_factory) as session:
            result = session.execute(
                update(Notification)
                .where(Notification.id == notification_id, Notification.user_id == user_id)
                .values(is_read=True)
            )
            if result.rowcount == 0:
                raise DocLockNotFoundError(
                    f"Notification '{notification_id}' not found",
                    user_id=user_id,
                    object_ref=notification_id,
                )
        self._feed.publish(user_id, NOTIFICATIONS)

    def mark_all_read(self, user_id: str) -> int:
        with session_scope(self._db_session_factory) as session:
            result = session.execute(
                update(Notification)
                .where(Notification.user_id == user_id, Notification.is_read.is_(False))
                .values(is_read=True)
            )
            changed = result.rowcount
        if changed:
            self._feed.publish(user_id, NOTIFICATIONS)
        return changed

    def delete_notification(self, user_id: str, notification_id: str) -> None:
        with session_scope(self._db_session_factory) as session:
            result = session.execute(
                delete(Notification).where(
                    Notification.id == notification_id,
                    Notification.user_id == user_id,
                )
            )
            if result.rowcount == 0:
                raise DocLockNotFoundError(
                    f"Notification '{notification_id}' not found",
                    user_id=user_id,
                    object_ref=notification_id,
                )
        self._feed.publish(user_id, NOTIFICATIONS)
