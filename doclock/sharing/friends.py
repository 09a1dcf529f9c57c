"""
DocLock Friends — the user's "secure circle".

Friendship is symmetric and stored as two directed rows written in one
transaction. Requests for a card or document are delivered through the
notification inbox; they create no grant by themselves.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from doclock.db.base import as_utc
from doclock.db.models import Friend, User
from doclock.db.session import session_scope
from doclock.engine.errors import DocLockNotFoundError, DocLockValidationError
from doclock.engine.subscriptions import FRIENDS, ChangeFeed, Listener, Subscription, get_change_feed
from doclock.sharing.notifications import NotificationService

logger = logging.getLogger("doclock.sharing.friends")

RequestType = Literal["card", "document"]


class UserSummary(BaseModel):
    uid: str
    name: str
    mobile: Optional[str] = None
    profile_image_url: Optional[str] = None


class FriendView(UserSummary):
    added_at: Optional[datetime] = None


def _is_mobile_query(query: str) -> bool:
    return query.isdigit() and len(query) > 6


class FriendsService:
    def __init__(
        self,
        db_session_factory,
        notifications: Optional[NotificationService] = None,
        feed: Optional[ChangeFeed] = None,
    ):
        self._db_session_factory = db_session_factory
        self._feed = feed or get_change_feed()
        self._notifications = notifications or NotificationService(db_session_factory, self._feed)

    def search_user(self, query: str) -> Optional[UserSummary]:
        """Find a user by mobile number (digits only, more than 6) or by uid."""
        text = (query or "").strip()
        if not text:
            return None
        with session_scope(self._db_session_factory) as session:
            if _is_mobile_query(text):
                user = session.scalar(select(User).where(User.mobile == text))
            else:
                user = session.get(User, text)
            if user is None:
                return None
            return UserSummary(
                uid=user.id,
                name=user.name,
                mobile=user.mobile,
                profile_image_url=user.profile_image_url,
            )

    def add_friend(self, user_id: str, friend_id: str) -> FriendView:
        if user_id == friend_id:
            raise DocLockValidationError("You can't add yourself", user_id=user_id, field="friend_id")
        try:
            with session_scope(self._db_session_factory) as session:
                user = self._user(session, user_id)
                friend = self._user(session, friend_id)
                if session.get(Friend, (user_id, friend_id)) is not None:
                    raise DocLockValidationError(
                        "This person is already in your circle",
                        user_id=user_id,
                        object_ref=friend_id,
                    )
                row = Friend(user_id=user_id, friend_id=friend_id)
                session.add_all([row, Friend(user_id=friend_id, friend_id=user_id)])
                session.flush()
                view = FriendView(
                    uid=friend.id,
                    name=friend.name,
                    mobile=friend.mobile,
                    profile_image_url=friend.profile_image_url,
                    added_at=as_utc(row.added_at),
                )
                user_name = user.name
        except IntegrityError as e:
            raise DocLockValidationError(
                "This person is already in your circle",
                user_id=user_id,
                object_ref=friend_id,
            ) from e

        logger.info(f"{user_id} and {friend_id} are now friends")
        self._notifications.notify(
            user_id,
            title="Friend Added",
            message=f"You added {view.name} to your secure circle.",
            type="security",
        )
        self._notifications.notify(
            friend_id,
            title="New Connection",
            message=f"{user_name} added you to their secure circle.",
            type="alert",
            sender_id=user_id,
        )
        self._feed.publish(user_id, FRIENDS)
        self._feed.publish(friend_id, FRIENDS)
        return view

    def remove_friend(self, user_id: str, friend_id: str) -> None:
        """Remove both directions of the friendship. Existing share grants are kept."""
        with session_scope(self._db_session_factory) as session:
            result = session.execute(
                delete(Friend).where(
                    ((Friend.user_id == user_id) & (Friend.friend_id == friend_id))
                    | ((Friend.user_id == friend_id) & (Friend.friend_id == user_id))
                )
            )
            if result.rowcount == 0:
                raise DocLockNotFoundError(
                    f"'{friend_id}' is not in your circle",
                    user_id=user_id,
                    object_ref=friend_id,
                    object_type="friend",
                )

        logger.info(f"{user_id} removed {friend_id} from their circle")
        self._feed.publish(user_id, FRIENDS)
        self._feed.publish(friend_id, FRIENDS)

    def list_friends(self, user_id: str) -> List[FriendView]:
        """Oldest friendship first."""
        with session_scope(self._db_session_factory) as session:
            rows = session.execute(
                select(User, Friend.added_at)
                .join(Friend, Friend.friend_id == User.id)
                .where(Friend.user_id == user_id)
                .order_by(Friend.added_at, User.name)
            ).all()
            return [
                FriendView(
                    uid=u.id,
                    name=u.name,
                    mobile=u.mobile,
                    profile_image_url=u.profile_image_url,
                    added_at=as_utc(added_at),
                )
                for u, added_at in rows
            ]

    def watch_friends(self, user_id: str, listener: Listener) -> Subscription:
        return Subscription(
            self._feed, user_id, FRIENDS, lambda: self.list_friends(user_id), listener,
            id_of=lambda f: f.uid,
        )

    def are_friends(self, user_id: str, other_id: str) -> bool:
        with session_scope(self._db_session_factory) as session:
            return session.get(Friend, (user_id, other_id)) is not None

    def send_request(self, from_user_id: str, to_user_id: str, request_type: RequestType, message: str) -> bool:
        """
        Ask a friend for a card or document.

        The friend gets an alert carrying sender_id and request_type; the
        sender gets a confirmation. Returns whether the friend's copy was written.
        """
        if request_type not in ("card", "document"):
            raise DocLockValidationError(
                f"Request type must be 'card' or 'document', got '{request_type}'",
                field="request_type",
            )
        with session_scope(self._db_session_factory) as session:
            sender = self._user(session, from_user_id)
            recipient = self._user(session, to_user_id)
            sender_name, recipient_name = sender.name, recipient.name

        delivered = self._notifications.notify(
            to_user_id,
            title=f"Request from {sender_name}",
            message=message,
            type="alert",
            sender_id=from_user_id,
            request_type=request_type,
        )
        article = "a card" if request_type == "card" else "a document"
        self._notifications.notify(
            from_user_id,
            title="Request Sent",
            message=f"You requested {article} from {recipient_name}.",
            type="security",
        )
        return delivered

    @staticmethod
    def _user(session, user_id: str) -> User:
        user = session.get(User, user_id)
        if user is None:
            raise DocLockNotFoundError(f"User '{user_id}' not found", user_id=user_id, object_type="user")
        return user
