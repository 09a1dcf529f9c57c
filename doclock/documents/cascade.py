"""
Row-level cleanup when documents go away.

Used by both folder and document deletion inside the caller's transaction.
Blobs are not touched here; callers remove them after commit so a rolled-back
delete never loses content.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Iterable, List, NamedTuple, Set

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from doclock.db.base import decrement_counter
from doclock.db.models import Document, Folder, SecureQR, SecureQRDocument, ShareGrant, User

logger = logging.getLogger("doclock.documents.cascade")


class CascadeResult(NamedTuple):
    grantee_ids: Set[str]
    deactivated_qr_ids: Set[str]
    touched_qr_ids: Set[str]


def remove_document_rows(session: Session, owner_id: str, document_ids: Iterable[str]) -> CascadeResult:
    """
    Delete documents plus their share grants and QR memberships.

    A SecureQR left with no documents is kept but marked inactive.
    """
    ids: List[str] = list(document_ids)
    if not ids:
        return CascadeResult(set(), set(), set())

    grantees = Counter(
        session.scalars(
            select(ShareGrant.grantee_id).where(
                ShareGrant.item_type == "document",
                ShareGrant.item_id.in_(ids),
            )
        ).all()
    )
    if grantees:
        session.execute(
            delete(ShareGrant).where(ShareGrant.item_type == "document", ShareGrant.item_id.in_(ids))
        )
        for grantee_id, count in grantees.items():
            session.execute(
                update(User)
                .where(User.id == grantee_id)
                .values(shared_docs_count=decrement_counter(User.shared_docs_count, count))
            )

    touched = set(
        session.scalars(
            select(SecureQRDocument.qr_id).where(SecureQRDocument.document_id.in_(ids))
        ).all()
    )
    deactivated: Set[str] = set()
    if touched:
        session.execute(delete(SecureQRDocument).where(SecureQRDocument.document_id.in_(ids)))
        still_populated = set(
            session.scalars(
                select(SecureQRDocument.qr_id)
                .where(SecureQRDocument.qr_id.in_(touched))
                .group_by(SecureQRDocument.qr_id)
                .having(func.count() > 0)
            ).all()
        )
        deactivated = touched - still_populated
        if deactivated:
            session.execute(
                update(SecureQR).where(SecureQR.id.in_(deactivated)).values(is_active=False)
            )
            logger.info(f"Deactivated {len(deactivated)} secure QR(s) left without documents")

    session.execute(delete(Document).where(Document.owner_id == owner_id, Document.id.in_(ids)))
    return CascadeResult(set(grantees), deactivated, touched)


def adjust_item_count(session: Session, folder_id: str, delta: int) -> None:
    """Atomically move a folder's item_count by delta (never below zero)."""
    value = Folder.item_count + delta if delta >= 0 else decrement_counter(Folder.item_count, -delta)
    session.execute(update(Folder).where(Folder.id == folder_id).values(item_count=value))


def release_storage(session: Session, owner_id: str, size_bytes: int) -> None:
    if size_bytes <= 0:
        return
    session.execute(
        update(User)
        .where(User.id == owner_id)
        .values(storage_used_bytes=decrement_counter(User.storage_used_bytes, size_bytes))
    )
