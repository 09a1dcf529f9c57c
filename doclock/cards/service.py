"""
DocLock Cards — stored debit/credit cards.

Card number, expiry and CVV are encrypted with FieldCipher before they reach
the database and decrypted only when a view is built. The number of cards a
user may own is capped by AppConfig.max_credit_cards_limit.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field
from sqlalchemy import delete, func, select, update

from doclock.db.base import as_utc, decrement_counter
from doclock.db.models import Card, ShareGrant, User
from doclock.db.session import session_scope
from doclock.engine.config import AppConfig, get_app_config
from doclock.engine.crypto import FieldCipher, mask_card_number
from doclock.engine.errors import (
    DocLockNotFoundError,
    DocLockPermissionError,
    DocLockValidationError,
)
from doclock.engine.logging import log, log_card_operation
from doclock.engine.subscriptions import CARDS, ChangeFeed, Listener, Subscription, get_change_feed
from doclock.sharing.service import SharedCard, ShareGrantView, ShareService

logger = logging.getLogger("doclock.cards.service")

CardType = Literal["Debit Card", "Credit Card"]
HEX_COLOR = r"^#[0-9A-Fa-f]{6}([0-9A-Fa-f]{2})?$"


class CardInput(BaseModel):
    card_type: CardType
    card_name: str = Field(min_length=1, max_length=100)
    card_holder: str = Field(min_length=1, max_length=100)
    card_number: str = Field(min_length=1, max_length=32)
    expiry: str = Field(min_length=1, max_length=10)
    cvv: str = Field(min_length=1, max_length=4)
    color_start_hex: str = Field(default="#1E3A8A", pattern=HEX_COLOR)
    color_end_hex: str = Field(default="#3B82F6", pattern=HEX_COLOR)


class CardView(BaseModel):
    id: str
    owner_id: str
    card_type: CardType
    card_name: str
    card_holder: str
    card_number: str
    expiry: str
    cvv: str
    color_start_hex: str
    color_end_hex: str
    created_at: Optional[datetime] = None
    is_shared: bool = False
    shared_by: Optional[str] = None
    shared_by_name: Optional[str] = None

    @property
    def masked_number(self) -> Optional[str]:
        return mask_card_number(self.card_number)


class CardsService:
    def __init__(
        self,
        db_session_factory,
        cipher: FieldCipher,
        feed: Optional[ChangeFeed] = None,
        app_config: Optional[AppConfig] = None,
        share_service: Optional[ShareService] = None,
    ):
        self._db_session_factory = db_session_factory
        self._cipher = cipher
        self._feed = feed or get_change_feed()
        self._app_config = app_config
        self._shares = share_service or ShareService(db_session_factory, feed=self._feed)

    @property
    def config(self) -> AppConfig:
        return self._app_config or get_app_config()

    def add_card(self, owner_id: str, card: CardInput) -> CardView:
        limit = self.config.max_credit_cards_limit
        with session_scope(self._db_session_factory) as session:
            if session.get(User, owner_id) is None:
                raise DocLockNotFoundError(f"User '{owner_id}' not found", user_id=owner_id)
            owned = session.scalar(
                select(func.count()).select_from(Card).where(Card.owner_id == owner_id)
            ) or 0
            if owned >= limit:
                raise DocLockValidationError(
                    f"You can store at most {limit} cards",
                    user_id=owner_id,
                    field="cards",
                )
            row = Card(owner_id=owner_id)
            self._apply(row, card)
            session.add(row)
            session.flush()
            view = self._view(row)

        log(log_card_operation("added", view.id, owner_id))
        self._feed.publish(owner_id, CARDS)
        return view

    def update_card(self, owner_id: str, card_id: str, card: CardInput) -> CardView:
        with session_scope(self._db_session_factory) as session:
            row = self._owned_card(session, owner_id, card_id)
            self._apply(row, card)
            session.flush()
            view = self._view(row)
            grantees = self._grantees(session, card_id)

        log(log_card_operation("updated", card_id, owner_id))
        self._feed.publish(owner_id, CARDS)
        for grantee_id in grantees:
            self._feed.publish(grantee_id, CARDS)
        return view

    def delete_card(self, owner_id: str, card_id: str) -> None:
        """Delete a card and every share grant on it."""
        with session_scope(self._db_session_factory) as session:
            row = self._owned_card(session, owner_id, card_id)
            grantees = Counter(self._grantees(session, card_id))
            session.execute(
                delete(ShareGrant).where(ShareGrant.item_type == "card", ShareGrant.item_id == card_id)
            )
            for grantee_id, count in grantees.items():
                session.execute(
                    update(User)
                    .where(User.id == grantee_id)
                    .values(shared_cards_count=decrement_counter(User.shared_cards_count, count))
                )
            session.delete(row)

        log(log_card_operation("deleted", card_id, owner_id))
        self._feed.publish(owner_id, CARDS)
        for grantee_id in grantees:
            self._feed.publish(grantee_id, CARDS)

    def get_card(self, user_id: str, card_id: str) -> CardView:
        with session_scope(self._db_session_factory) as session:
            row = session.get(Card, card_id)
            if row is None:
                raise DocLockNotFoundError(f"Card '{card_id}' not found", user_id=user_id, object_ref=card_id)
            if row.owner_id == user_id:
                return self._view(row)
            if user_id not in self._grantees(session, card_id):
                raise DocLockPermissionError(
                    "You do not have access to this card",
                    user_id=user_id,
                    object_ref=card_id,
                    required_access="read",
                )
            return self._view(row, shared_by_name=session.get(User, row.owner_id).name)

    def list_cards(self, user_id: str) -> List[CardView]:
        """Own cards (oldest first) followed by cards shared with user_id."""
        with session_scope(self._db_session_factory) as session:
            own = session.scalars(
                select(Card).where(Card.owner_id == user_id).order_by(Card.created_at)
            ).all()
            shared = session.execute(
                select(Card, User.name)
                .join(ShareGrant, (ShareGrant.item_id == Card.id) & (ShareGrant.item_type == "card"))
                .join(User, User.id == Card.owner_id)
                .where(ShareGrant.grantee_id == user_id)
                .order_by(ShareGrant.created_at)
            ).all()
            return [self._view(r) for r in own] + [self._view(r, shared_by_name=n) for r, n in shared]

    def watch_cards(self, user_id: str, listener: Listener) -> Subscription:
        return Subscription(self._feed, user_id, CARDS, lambda: self.list_cards(user_id), listener)

    def share_card(self, owner_id: str, card_id: str, grantee_user_id: str) -> ShareGrantView:
        return self._shares.share(owner_id, SharedCard(card_id=card_id), grantee_user_id)

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------

    def _apply(self, row: Card, card: CardInput) -> None:
        row.card_type = card.card_type
        row.card_name = card.card_name.strip()
        row.card_holder = card.card_holder.strip()
        row.card_number_enc = self._cipher.encrypt(card.card_number.replace(" ", ""), field="card_number")
        row.expiry_enc = self._cipher.encrypt(card.expiry, field="expiry")
        row.cvv_enc = self._cipher.encrypt(card.cvv, field="cvv")
        row.color_start_hex = card.color_start_hex
        row.color_end_hex = card.color_end_hex

    def _view(self, row: Card, shared_by_name: Optional[str] = None) -> CardView:
        shared = shared_by_name is not None
        return CardView(
            id=row.id,
            owner_id=row.owner_id,
            card_type=row.card_type,
            card_name=row.card_name,
            card_holder=row.card_holder,
            card_number=self._cipher.decrypt(row.card_number_enc, field="card_number"),
            expiry=self._cipher.decrypt(row.expiry_enc, field="expiry"),
            cvv=self._cipher.decrypt(row.cvv_enc, field="cvv"),
            color_start_hex=row.color_start_hex,
            color_end_hex=row.color_end_hex,
            created_at=as_utc(row.created_at),
            is_shared=shared,
            shared_by=row.owner_id if shared else None,
            shared_by_name=shared_by_name,
        )

    @staticmethod
    def _owned_card(session, owner_id: str, card_id: str) -> Card:
        row = session.get(Card, card_id)
        if row is None:
            raise DocLockNotFoundError(f"Card '{card_id}' not found", user_id=owner_id, object_ref=card_id)
        if row.owner_id != owner_id:
            raise DocLockPermissionError(
                "Only the owner can modify this card",
                user_id=owner_id,
                object_ref=card_id,
                required_access="owner",
            )
        return row

    @staticmethod
    def _grantees(session, card_id: str) -> List[str]:
        return list(session.scalars(
            select(ShareGrant.grantee_id).where(ShareGrant.item_type == "card", ShareGrant.item_id == card_id)
        ).all())
