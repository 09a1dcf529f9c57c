"""
DocLock Secure QR Service — named bundles of a user's documents behind a QR code.

Handles:
- create / diff-based update / delete of bundles
- rendering the QR PNG and storing it as a blob (qr_code_url)
- resolving a scanned payload back to the bundle and its live documents

Membership is kept in secure_qr_documents (ordered, indexed by document id).
Deleting a document prunes it from every bundle; a bundle left empty is
marked inactive and comes back to life when documents are added again.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel, Field
from sqlalchemy import delete, select

from doclock.db.base import as_utc, new_id, utcnow
from doclock.db.models import Document, SecureQR, SecureQRDocument, User
from doclock.db.session import session_scope
from doclock.documents.models import DocumentFile
from doclock.documents.paths import validate_label
from doclock.documents.storage import BlobStore
from doclock.engine.config import QRConfig, get_platform_config
from doclock.engine.errors import (
    DocLockNotFoundError,
    DocLockPermissionError,
    DocLockValidationError,
)
from doclock.engine.logging import log, log_secure_qr_operation
from doclock.engine.subscriptions import SECURE_QRS, ChangeFeed, Listener, Subscription, get_change_feed
from doclock.secure_qr.render import build_payload, decode_qr_payload, render_png

logger = logging.getLogger("doclock.secure_qr.service")


class SecureQRView(BaseModel):
    id: str
    owner_id: str
    label: str
    document_ids: List[str] = Field(default_factory=list)
    qr_code_url: Optional[str] = None
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    is_active: bool = True

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and (now or utcnow()) >= self.expires_at


class ResolvedSecureQR(BaseModel):
    qr: SecureQRView
    documents: List[DocumentFile] = Field(default_factory=list)
    missing_document_ids: List[str] = Field(default_factory=list)


def _unique(ids: Iterable[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for doc_id in ids:
        if doc_id:
            seen.setdefault(doc_id, None)
    return list(seen)


class SecureQRService:
    def __init__(
        self,
        db_session_factory,
        blob_store: BlobStore,
        feed: Optional[ChangeFeed] = None,
        qr_config: Optional[QRConfig] = None,
    ):
        self._db_session_factory = db_session_factory
        self._blobs = blob_store
        self._feed = feed or get_change_feed()
        self._qr_config = qr_config

    @property
    def qr_config(self) -> QRConfig:
        return self._qr_config or get_platform_config().qr

    # -------------------------------------------------------------------
    # Create / update / delete
    # -------------------------------------------------------------------

    def create_secure_qr(
        self,
        owner_id: str,
        label: str,
        document_ids: Sequence[str],
        expires_in_hours: Optional[float] = None,
    ) -> SecureQRView:
        """
        Bundle document_ids (all owned by owner_id) under a new QR code.

        Raises:
            DocLockValidationError: empty label, no documents, bad expiry.
            DocLockNotFoundError: a document does not exist.
            DocLockPermissionError: a document belongs to someone else.
        """
        clean_label = validate_label(label)
        ids = _unique(document_ids)
        if not ids:
            raise DocLockValidationError("Select at least one document", user_id=owner_id, field="document_ids")
        expires_at = None
        if expires_in_hours is not None:
            if expires_in_hours <= 0:
                raise DocLockValidationError("Expiry must be in the future", field="expires_in_hours")
            expires_at = utcnow() + timedelta(hours=expires_in_hours)

        with session_scope(self._db_session_factory) as session:
            if session.get(User, owner_id) is None:
                raise DocLockNotFoundError(f"User '{owner_id}' not found", user_id=owner_id)
            self._check_owned_documents(session, owner_id, ids)

        qr_id = new_id()
        blob = self._blobs.put(
            owner_id, "qr_codes", f"{qr_id}.png",
            render_png(build_payload(qr_id, self.qr_config.payload_prefix), self.qr_config),
        )
        try:
            with session_scope(self._db_session_factory) as session:
                qr = SecureQR(
                    id=qr_id,
                    owner_id=owner_id,
                    label=clean_label,
                    qr_code_url=blob.url,
                    expires_at=expires_at,
                    is_active=True,
                )
                session.add(qr)
                session.flush()
                session.add_all(
                    SecureQRDocument(qr_id=qr_id, document_id=doc_id, position=i)
                    for i, doc_id in enumerate(ids)
                )
                session.flush()
                view = self._view(qr, ids)
        except Exception:
            self._blobs.delete(blob.url)
            raise

        logger.info(f"Created secure QR '{clean_label}' ({qr_id}) with {len(ids)} document(s)")
        log(log_secure_qr_operation("created", qr_id, owner_id, label=clean_label, document_count=len(ids)))
        self._feed.publish(owner_id, SECURE_QRS)
        return view

    def update_secure_qr(
        self,
        owner_id: str,
        qr_id: str,
        label: str,
        document_ids: Sequence[str],
        old_document_ids: Sequence[str],
    ) -> SecureQRView:
        """
        Change label and membership.

        old_document_ids is the membership the caller last saw. If it no
        longer matches what is stored the update is rejected as stale;
        otherwise only added and removed documents are written.
        """
        clean_label = validate_label(label)
        new_ids = _unique(document_ids)
        if not new_ids:
            raise DocLockValidationError("Select at least one document", user_id=owner_id, field="document_ids")

        with session_scope(self._db_session_factory) as session:
            qr = self._owned_qr(session, owner_id, qr_id)
            stored = self._member_ids(session, qr_id)
            if set(stored) != set(_unique(old_document_ids)):
                raise DocLockValidationError(
                    "This Secure QR was changed elsewhere; reload and try again",
                    user_id=owner_id,
                    object_ref=qr_id,
                    field="old_document_ids",
                )

            added = [d for d in new_ids if d not in stored]
            removed = [d for d in stored if d not in new_ids]
            self._check_owned_documents(session, owner_id, added)

            if removed:
                session.execute(
                    delete(SecureQRDocument).where(
                        SecureQRDocument.qr_id == qr_id,
                        SecureQRDocument.document_id.in_(removed),
                    )
                )
            kept = {
                row.document_id: row
                for row in session.scalars(select(SecureQRDocument).where(SecureQRDocument.qr_id == qr_id))
            }
            for position, doc_id in enumerate(new_ids):
                if doc_id in kept:
                    if kept[doc_id].position != position:
                        kept[doc_id].position = position
                else:
                    session.add(SecureQRDocument(qr_id=qr_id, document_id=doc_id, position=position))

            if not stored:
                # Emptied by document deletions; membership restored
                qr.is_active = True
            qr.label = clean_label
            session.flush()
            view = self._view(qr, new_ids)

        logger.info(f"Updated secure QR {qr_id}: +{len(added)} -{len(removed)} document(s)")
        log(log_secure_qr_operation(
            "updated", qr_id, owner_id, label=clean_label,
            document_count=len(new_ids), added=added, removed=removed,
        ))
        self._feed.publish(owner_id, SECURE_QRS)
        return view

    def delete_secure_qr(self, owner_id: str, qr_id: str) -> None:
        """Delete the bundle and its QR image. Documents are untouched."""
        with session_scope(self._db_session_factory) as session:
            qr = self._owned_qr(session, owner_id, qr_id)
            image_url = qr.qr_code_url
            session.execute(delete(SecureQRDocument).where(SecureQRDocument.qr_id == qr_id))
            session.delete(qr)

        if image_url:
            self._blobs.delete(image_url)
        log(log_secure_qr_operation("deleted", qr_id, owner_id))
        self._feed.publish(owner_id, SECURE_QRS)

    def set_active(self, owner_id: str, qr_id: str, active: bool) -> SecureQRView:
        """Turn scanning of a bundle off or back on."""
        with session_scope(self._db_session_factory) as session:
            qr = self._owned_qr(session, owner_id, qr_id)
            ids = self._member_ids(session, qr_id)
            if active and not ids:
                raise DocLockValidationError("A Secure QR without documents cannot be activated", object_ref=qr_id)
            qr.is_active = active
            session.flush()
            view = self._view(qr, ids)

        log(log_secure_qr_operation("activated" if active else "deactivated", qr_id, owner_id))
        self._feed.publish(owner_id, SECURE_QRS)
        return view

    # -------------------------------------------------------------------
    # Reads, rendering, resolution
    # -------------------------------------------------------------------

    def get_secure_qr(self, owner_id: str, qr_id: str) -> SecureQRView:
        with session_scope(self._db_session_factory) as session:
            qr = self._owned_qr(session, owner_id, qr_id)
            return self._view(qr, self._member_ids(session, qr_id))

    def list_secure_qrs(self, owner_id: str) -> List[SecureQRView]:
        """Newest first."""
        with session_scope(self._db_session_factory) as session:
            rows = session.scalars(
                select(SecureQR).where(SecureQR.owner_id == owner_id).order_by(SecureQR.created_at.desc())
            ).all()
            return [self._view(qr, self._member_ids(session, qr.id)) for qr in rows]

    def watch_secure_qrs(self, owner_id: str, listener: Listener) -> Subscription:
        return Subscription(self._feed, owner_id, SECURE_QRS, lambda: self.list_secure_qrs(owner_id), listener)

    def render_qr_image(self, qr: SecureQRView) -> bytes:
        """PNG of the bundle's payload; the same bundle always renders the same image."""
        return render_png(build_payload(qr.id, self.qr_config.payload_prefix), self.qr_config)

    def payload_for(self, qr: SecureQRView) -> str:
        return build_payload(qr.id, self.qr_config.payload_prefix)

    def decode_payload(self, payload: str) -> str:
        return decode_qr_payload(payload, self.qr_config.payload_prefix)

    def resolve_payload(self, payload: str) -> ResolvedSecureQR:
        """
        Look up a scanned payload.

        Inactive and expired bundles are refused. Documents deleted since the
        bundle was created are skipped and reported in missing_document_ids.
        """
        qr_id = self.decode_payload(payload)
        with session_scope(self._db_session_factory) as session:
            qr = session.get(SecureQR, qr_id)
            if qr is None:
                raise DocLockNotFoundError("This QR code does not exist", object_ref=qr_id, object_type="secure_qr")
            ids = self._member_ids(session, qr_id)
            view = self._view(qr, ids)
            if not view.is_active:
                raise DocLockPermissionError("This QR code is no longer active", object_ref=qr_id)
            if view.is_expired():
                raise DocLockPermissionError("This QR code has expired", object_ref=qr_id)

            rows = {
                d.id: d for d in session.scalars(
                    select(Document).where(Document.owner_id == qr.owner_id, Document.id.in_(ids))
                )
            }
            documents = [DocumentFile.from_row(rows[d]) for d in ids if d in rows]
            missing = [d for d in ids if d not in rows]

        log(log_secure_qr_operation("resolved", qr_id, view.owner_id, document_count=len(documents)))
        return ResolvedSecureQR(qr=view, documents=documents, missing_document_ids=missing)

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------

    @staticmethod
    def _view(qr: SecureQR, document_ids: List[str]) -> SecureQRView:
        return SecureQRView(
            id=qr.id,
            owner_id=qr.owner_id,
            label=qr.label,
            document_ids=list(document_ids),
            qr_code_url=qr.qr_code_url,
            created_at=as_utc(qr.created_at),
            expires_at=as_utc(qr.expires_at),
            is_active=qr.is_active,
        )

    @staticmethod
    def _member_ids(session, qr_id: str) -> List[str]:
        return list(session.scalars(
            select(SecureQRDocument.document_id)
            .where(SecureQRDocument.qr_id == qr_id)
            .order_by(SecureQRDocument.position)
        ).all())

    @staticmethod
    def _owned_qr(session, owner_id: str, qr_id: str) -> SecureQR:
        qr = session.get(SecureQR, qr_id)
        if qr is None or qr.owner_id != owner_id:
            raise DocLockNotFoundError(
                f"Secure QR '{qr_id}' not found",
                user_id=owner_id,
                object_ref=qr_id,
                object_type="secure_qr",
            )
        return qr

    @staticmethod
    def _check_owned_documents(session, owner_id: str, ids: List[str]) -> None:
        if not ids:
            return
        owners = dict(session.execute(select(Document.id, Document.owner_id).where(Document.id.in_(ids))).all())
        missing = [d for d in ids if d not in owners]
        if missing:
            raise DocLockNotFoundError(
                f"Document(s) not found: {', '.join(missing)}",
                user_id=owner_id,
                object_type="document",
            )
        foreign = [d for d in ids if owners[d] != owner_id]
        if foreign:
            raise DocLockPermissionError(
                "Secure QR codes can only contain your own documents",
                user_id=owner_id,
                object_ref=foreign[0],
                required_access="owner",
            )
