"""
DocLock Sharing Bridge — cross-user read grants for documents and cards.

A grant references the owner's row; nothing is copied. Recipients see shared
documents in their "Shared" folder and shared cards next to their own.

Items are passed as a tagged union:

    ShareableItem = SharedDocument | SharedCard

and every operation dispatches on the variant through ``item_ref``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Literal, Optional, Tuple, Union

from pydantic import BaseModel
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from doclock.db.base import as_utc, decrement_counter
from doclock.db.models import Card, Document, ShareGrant, User
from doclock.db.session import session_scope
from doclock.engine.errors import (
    DocLockNotFoundError,
    DocLockPermissionError,
    DocLockValidationError,
)
from doclock.engine.logging import log, log_share_event
from doclock.engine.subscriptions import CARDS, DOCUMENTS, FOLDERS, ChangeFeed, get_change_feed
from doclock.sharing.notifications import NotificationService

logger = logging.getLogger("doclock.sharing.service")


# ---------------------------------------------------------------------------
# ShareableItem variants
# ---------------------------------------------------------------------------

class SharedDocument(BaseModel):
    kind: Literal["document"] = "document"
    document_id: str


class SharedCard(BaseModel):
    kind: Literal["card"] = "card"
    card_id: str


ShareableItem = Union[SharedDocument, SharedCard]


def item_ref(item: ShareableItem) -> Tuple[str, str]:
    """(item_type, item_id) of a shareable item."""
    if isinstance(item, SharedDocument):
        return "document", item.document_id
    if isinstance(item, SharedCard):
        return "card", item.card_id
    raise TypeError(f"Unsupported shareable item: {type(item).__name__}")


_MODELS = {"document": Document, "card": Card}
_COUNTERS = {"document": User.shared_docs_count, "card": User.shared_cards_count}
_COLLECTIONS = {"document": (FOLDERS, DOCUMENTS), "card": (CARDS,)}


class ShareGrantView(BaseModel):
    item_type: str
    item_id: str
    owner_id: str
    grantee_id: str
    grantee_name: Optional[str] = None
    created_at: Optional[datetime] = None


class ShareService:
    def __init__(
        self,
        db_session_factory,
        notifications: Optional[NotificationService] = None,
        feed: Optional[ChangeFeed] = None,
    ):
        self._db_session_factory = db_session_factory
        self._feed = feed or get_change_feed()
        self._notifications = notifications or NotificationService(db_session_factory, self._feed)

    def share(self, owner_id: str, item: ShareableItem, grantee_id: str) -> ShareGrantView:
        """
        Grant grantee_id read access to an item owned by owner_id and notify them.

        Raises:
            DocLockNotFoundError: grantee or item does not exist.
            DocLockPermissionError: item belongs to someone else.
            DocLockValidationError: self-share, or grantee already has access.
        """
        item_type, item_id = item_ref(item)
        if grantee_id == owner_id:
            raise DocLockValidationError("You cannot share with yourself", user_id=owner_id, object_ref=item_id)

        try:
            with session_scope(self._db_session_factory) as session:
                owner = self._user(session, owner_id)
                grantee = self._user(session, grantee_id)
                row = self._owned_item(session, owner_id, item_type, item_id)

                existing = session.scalar(
                    select(ShareGrant.id).where(
                        ShareGrant.item_type == item_type,
                        ShareGrant.item_id == item_id,
                        ShareGrant.grantee_id == grantee_id,
                    )
                )
                if existing is not None:
                    raise DocLockValidationError(
                        f"{grantee.name} already has access to this {item_type}",
                        user_id=owner_id,
                        object_ref=item_id,
                    )

                grant = ShareGrant(
                    item_type=item_type,
                    item_id=item_id,
                    owner_id=owner_id,
                    grantee_id=grantee_id,
                )
                session.add(grant)
                counter = _COUNTERS[item_type]
                session.execute(
                    update(User).where(User.id == grantee_id).values({counter.key: counter + 1})
                )
                session.flush()
                view = ShareGrantView(
                    item_type=item_type,
                    item_id=item_id,
                    owner_id=owner_id,
                    grantee_id=grantee_id,
                    grantee_name=grantee.name,
                    created_at=as_utc(grant.created_at),
                )
                sharer_name = owner.name
                item_label = row.name if item_type == "document" else row.card_name
        except IntegrityError as e:
            # Concurrent share of the same item to the same grantee
            raise DocLockValidationError(
                f"User already has access to this {item_type}",
                user_id=owner_id,
                object_ref=item_id,
            ) from e

        logger.info(f"{owner_id} shared {item_type} {item_id} with {grantee_id}")
        log(log_share_event("share_granted", item_type, item_id, owner_id, grantee_id))
        self._notifications.notify(
            grantee_id,
            title=f"{item_type.capitalize()} Shared",
            message=f"{sharer_name} shared '{item_label}' with you",
            type="security",
            sender_id=owner_id,
        )
        self._feed.publish(grantee_id, *_COLLECTIONS[item_type])
        return view

    def revoke(self, owner_id: str, item: ShareableItem, grantee_id: str) -> None:
        """Remove a grant made by owner_id. The item itself is untouched."""
        item_type, item_id = item_ref(item)
        with session_scope(self._db_session_factory) as session:
            self._owned_item(session, owner_id, item_type, item_id)
            self._delete_grant(session, item_type, item_id, grantee_id)

        logger.info(f"{owner_id} revoked {item_type} {item_id} from {grantee_id}")
        log(log_share_event("share_revoked", item_type, item_id, owner_id, grantee_id))
        self._feed.publish(grantee_id, *_COLLECTIONS[item_type])

    def leave(self, grantee_id: str, item: ShareableItem) -> None:
        """A recipient drops their own access to a shared item."""
        item_type, item_id = item_ref(item)
        with session_scope(self._db_session_factory) as session:
            owner_id = self._delete_grant(session, item_type, item_id, grantee_id)

        log(log_share_event("share_left", item_type, item_id, owner_id, grantee_id))
        self._feed.publish(grantee_id, *_COLLECTIONS[item_type])

    def shared_with(self, owner_id: str, item: ShareableItem) -> List[ShareGrantView]:
        """Grantees of an item, oldest grant first."""
        item_type, item_id = item_ref(item)
        with session_scope(self._db_session_factory) as session:
            self._owned_item(session, owner_id, item_type, item_id)
            rows = session.execute(
                select(ShareGrant, User.name)
                .join(User, User.id == ShareGrant.grantee_id)
                .where(ShareGrant.item_type == item_type, ShareGrant.item_id == item_id)
                .order_by(ShareGrant.created_at)
            ).all()
            return [
                ShareGrantView(
                    item_type=g.item_type,
                    item_id=g.item_id,
                    owner_id=g.owner_id,
                    grantee_id=g.grantee_id,
                    grantee_name=name,
                    created_at=as_utc(g.created_at),
                )
                for g, name in rows
            ]

    def has_access(self, user_id: str, item: ShareableItem) -> bool:
        """Owner or grantee."""
        item_type, item_id = item_ref(item)
        with session_scope(self._db_session_factory) as session:
            row = session.get(_MODELS[item_type], item_id)
            if row is None:
                return False
            if row.owner_id == user_id:
                return True
            return session.scalar(
                select(ShareGrant.id).where(
                    ShareGrant.item_type == item_type,
                    ShareGrant.item_id == item_id,
                    ShareGrant.grantee_id == user_id,
                )
            ) is not None

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------

    @staticmethod
    def _user(session, user_id: str) -> User:
        user = session.get(User, user_id)
        if user is None:
            raise DocLockNotFoundError(f"User '{user_id}' not found", user_id=user_id, object_type="user")
        return user

    @staticmethod
    def _owned_item(session, owner_id: str, item_type: str, item_id: str):
        row = session.get(_MODELS[item_type], item_id)
        if row is None:
            raise DocLockNotFoundError(
                f"{item_type.capitalize()} '{item_id}' not found",
                user_id=owner_id,
                object_ref=item_id,
                object_type=item_type,
            )
        if row.owner_id != owner_id:
            raise DocLockPermissionError(
                f"Only the owner can manage sharing for this {item_type}",
                user_id=owner_id,
                object_ref=item_id,
                object_type=item_type,
                required_access="owner",
            )
        return row

    @staticmethod
    def _delete_grant(session, item_type: str, item_id: str, grantee_id: str) -> str:
        grant = session.scalar(
            select(ShareGrant).where(
                ShareGrant.item_type == item_type,
                ShareGrant.item_id == item_id,
                ShareGrant.grantee_id == grantee_id,
            )
        )
        if grant is None:
            raise DocLockNotFoundError(
                f"No share of {item_type} '{item_id}' for user '{grantee_id}'",
                user_id=grantee_id,
                object_ref=item_id,
            )
        owner_id = grant.owner_id
        session.execute(delete(ShareGrant).where(ShareGrant.id == grant.id))
        counter = _COUNTERS[item_type]
        session.execute(
            update(User).where(User.id == grantee_id).values({counter.key: decrement_counter(counter, 1)})
        )
        return owner_id
