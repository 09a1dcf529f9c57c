"""
DocLock Document Store — upload, rename, delete, list, search and share.

Handles:
- PDF uploads (type "document") and raster image uploads (type "image")
- storage quota per user (AppConfig.max_storage_limit_mb)
- live listings (watch_documents), including the "Shared" pseudo-folder
- owner-scoped, case-insensitive name search
- sharing through the ShareService

Uploads are two-phase: the blob is written first, then the metadata row,
quota reservation and folder count in one transaction. If that transaction
fails the blob is deleted again, so no orphaned binaries are left behind.
"""

from __future__ import annotations

import logging
import os
from typing import Iterator, List, Optional, Set

from sqlalchemy import String, func, select, update

from doclock.db.models import Document, Folder, ShareGrant, User
from doclock.db.session import session_scope
from doclock.documents.cascade import adjust_item_count, release_storage, remove_document_rows
from doclock.documents.images import IMAGE_MIME_TYPES, check_image
from doclock.documents.models import DocumentFile, StorageUsage
from doclock.documents.paths import is_shared_folder, validate_document_name
from doclock.documents.storage import BlobStore
from doclock.engine.config import AppConfig, get_app_config
from doclock.engine.errors import (
    DocLockNotFoundError,
    DocLockPermissionError,
    DocLockStorageQuotaError,
    DocLockValidationError,
)
from doclock.engine.logging import log, log_document_operation
from doclock.engine.subscriptions import (
    DOCUMENTS,
    FOLDERS,
    SECURE_QRS,
    ChangeFeed,
    Listener,
    Subscription,
    get_change_feed,
)
from doclock.sharing.service import SharedDocument, ShareGrantView, ShareService

logger = logging.getLogger("doclock.documents.service")

PDF_MIME_TYPE = "application/pdf"
PDF_MAGIC = b"%PDF"


class DocumentStore:
    """
    Per-owner document operations.

    Instantiated once per process and shared by all users; every call is
    scoped by owner_id.
    """

    def __init__(
        self,
        db_session_factory,
        blob_store: BlobStore,
        feed: Optional[ChangeFeed] = None,
        app_config: Optional[AppConfig] = None,
        share_service: Optional[ShareService] = None,
        max_upload_size_mb: int = 50,
    ):
        self._db_session_factory = db_session_factory
        self._blobs = blob_store
        self._feed = feed or get_change_feed()
        self._app_config = app_config
        self._shares = share_service or ShareService(db_session_factory, feed=self._feed)
        self._max_upload_size_mb = max_upload_size_mb

    @property
    def config(self) -> AppConfig:
        return self._app_config or get_app_config()

    # -------------------------------------------------------------------
    # Uploads
    # -------------------------------------------------------------------

    def upload_document(
        self,
        owner_id: str,
        folder_id: Optional[str],
        file_bytes: bytes,
        file_name: str,
    ) -> DocumentFile:
        """Upload a PDF into folder_id (None = root)."""
        _, ext = os.path.splitext(file_name or "")
        if ext.lower() != ".pdf":
            raise DocLockValidationError(
                "Only PDF files can be uploaded as documents",
                user_id=owner_id,
                field="file_name",
            )
        if not file_bytes.startswith(PDF_MAGIC):
            raise DocLockValidationError(
                f"'{file_name}' is not a valid PDF file",
                user_id=owner_id,
                field="file_bytes",
            )
        return self._store(owner_id, folder_id, file_bytes, file_name, "document", PDF_MIME_TYPE)

    def upload_image(
        self,
        owner_id: str,
        folder_id: Optional[str],
        image_bytes: bytes,
        file_name: str,
    ) -> DocumentFile:
        """Upload a PNG/JPEG/GIF/WebP/BMP/TIFF/HEIC image into folder_id."""
        mime_type = check_image(image_bytes, file_name, user_id=owner_id)
        return self._store(owner_id, folder_id, image_bytes, file_name, "image", mime_type)

    def _store(
        self,
        owner_id: str,
        folder_id: Optional[str],
        data: bytes,
        file_name: str,
        doc_type: str,
        mime_type: str,
    ) -> DocumentFile:
        if is_shared_folder(folder_id):
            raise DocLockValidationError("Files cannot be uploaded into Shared", user_id=owner_id)
        name = validate_document_name(os.path.basename(file_name))
        size = len(data)
        if size == 0:
            raise DocLockValidationError(f"'{name}' is empty", user_id=owner_id, field="file_bytes")
        max_bytes = self._max_upload_size_mb * 1024 * 1024
        if size > max_bytes:
            raise DocLockValidationError(
                f"File size ({size / 1024 / 1024:.1f} MB) exceeds upload limit "
                f"({self._max_upload_size_mb} MB)",
                user_id=owner_id,
                field="file_bytes",
            )

        limit = self.config.max_storage_limit_bytes

        # Phase 0: cheap checks before any bytes are written
        with session_scope(self._db_session_factory) as session:
            user = session.get(User, owner_id)
            if user is None:
                raise DocLockNotFoundError(f"User '{owner_id}' not found", user_id=owner_id)
            if folder_id is not None:
                self._owned_folder(session, owner_id, folder_id)
            self._check_quota(owner_id, user.storage_used_bytes, size, limit)

        # Phase 1: blob
        blob = self._blobs.put(owner_id, "documents" if doc_type == "document" else "images", name, data)

        # Phase 2: metadata + counters, or undo the blob
        try:
            with session_scope(self._db_session_factory) as session:
                reserved = session.execute(
                    update(User)
                    .where(User.id == owner_id, User.storage_used_bytes + size <= limit)
                    .values(storage_used_bytes=User.storage_used_bytes + size)
                )
                if reserved.rowcount == 0:
                    used = session.scalar(select(User.storage_used_bytes).where(User.id == owner_id)) or 0
                    self._check_quota(owner_id, used, size, limit)
                    raise DocLockNotFoundError(f"User '{owner_id}' not found", user_id=owner_id)
                if folder_id is not None:
                    self._owned_folder(session, owner_id, folder_id)
                    adjust_item_count(session, folder_id, 1)
                document = Document(
                    owner_id=owner_id,
                    folder_id=folder_id,
                    name=name,
                    type=doc_type,
                    url=blob.url,
                    size_bytes=blob.size_bytes,
                    mime_type=mime_type,
                    sha256=blob.sha256,
                )
                session.add(document)
                session.flush()
                view = DocumentFile.from_row(document)
        except Exception as e:
            self._blobs.delete(blob.url)
            log(log_document_operation(
                "upload", "-", owner_id, name=name, doc_type=doc_type,
                size_bytes=size, folder_id=folder_id, success=False, error=str(e),
            ))
            raise

        logger.info(f"Uploaded {doc_type} '{name}' ({size} bytes) for {owner_id} into {folder_id or 'root'}")
        log(log_document_operation(
            "upload", view.id, owner_id, name=name, doc_type=doc_type,
            size_bytes=size, folder_id=folder_id,
        ))
        self._feed.publish(owner_id, DOCUMENTS, FOLDERS)
        return view

    @staticmethod
    def _check_quota(owner_id: str, used: int, size: int, limit: int) -> None:
        if used + size > limit:
            raise DocLockStorageQuotaError(
                f"Storage limit reached: {used / 1024 / 1024:.1f} MB of "
                f"{limit / 1024 / 1024:.0f} MB used",
                user_id=owner_id,
                used_bytes=used,
                limit_bytes=limit,
                requested_bytes=size,
            )

    # -------------------------------------------------------------------
    # Rename / delete
    # -------------------------------------------------------------------

    def rename_document(self, owner_id: str, document_id: str, new_name: str) -> DocumentFile:
        """Rename a document. The new name is trimmed and must be non-empty."""
        clean_name = validate_document_name(new_name)
        with session_scope(self._db_session_factory) as session:
            document = self._owned_document(session, owner_id, document_id)
            if document.name == clean_name:
                return DocumentFile.from_row(document)
            document.name = clean_name
            session.flush()
            view = DocumentFile.from_row(document)
            grantees = self._grantees(session, document_id)

        log(log_document_operation("renamed", document_id, owner_id, name=clean_name))
        self._feed.publish(owner_id, DOCUMENTS)
        for grantee_id in grantees:
            self._feed.publish(grantee_id, DOCUMENTS)
        return view

    def delete_document(self, owner_id: str, document_id: str, folder_id: Optional[str] = None) -> None:
        """
        Delete a document: metadata, counters, share grants, QR memberships,
        then the blob.

        Called with folder_id=SHARED_FOLDER_ID by a recipient, it removes
        only the caller's own access to a document shared with them.
        """
        if is_shared_folder(folder_id):
            self._shares.leave(owner_id, SharedDocument(document_id=document_id))
            return

        with session_scope(self._db_session_factory) as session:
            document = self._owned_document(session, owner_id, document_id)
            if folder_id is not None and document.folder_id != folder_id:
                logger.warning(
                    f"Document {document_id} is in folder {document.folder_id}, caller said {folder_id}"
                )
            url, size, parent = document.url, document.size_bytes, document.folder_id
            name = document.name
            cascade = remove_document_rows(session, owner_id, [document_id])
            if parent is not None:
                adjust_item_count(session, parent, -1)
            release_storage(session, owner_id, size)

        self._blobs.delete(url)
        logger.info(f"Deleted document '{name}' ({document_id}) for {owner_id}, freed {size} bytes")
        log(log_document_operation("deleted", document_id, owner_id, name=name, size_bytes=size, folder_id=parent))
        self._feed.publish(owner_id, DOCUMENTS, FOLDERS)
        if cascade.touched_qr_ids:
            self._feed.publish(owner_id, SECURE_QRS)
        for grantee_id in cascade.grantee_ids:
            self._feed.publish(grantee_id, FOLDERS, DOCUMENTS)

    # -------------------------------------------------------------------
    # Reads & subscriptions
    # -------------------------------------------------------------------

    def list_documents(self, owner_id: str, folder_id: Optional[str] = None) -> List[DocumentFile]:
        """
        Documents in folder_id (None = root), newest first.

        folder_id=SHARED_FOLDER_ID lists documents other users shared with
        owner_id, each marked is_shared with the sharer's id and name.
        """
        with session_scope(self._db_session_factory) as session:
            if is_shared_folder(folder_id):
                rows = session.execute(
                    select(Document, User.name)
                    .join(ShareGrant, (ShareGrant.item_id == Document.id) & (ShareGrant.item_type == "document"))
                    .join(User, User.id == Document.owner_id)
                    .where(ShareGrant.grantee_id == owner_id)
                    .order_by(ShareGrant.created_at.desc())
                ).all()
                return [DocumentFile.from_row(doc, shared_by_name=sharer) for doc, sharer in rows]

            folder_filter = (
                Document.folder_id.is_(None) if folder_id is None else Document.folder_id == folder_id
            )
            rows = session.scalars(
                select(Document)
                .where(Document.owner_id == owner_id, folder_filter)
                .order_by(Document.created_at.desc())
            ).all()
            return [DocumentFile.from_row(r) for r in rows]

    def watch_documents(self, owner_id: str, folder_id: Optional[str], listener: Listener) -> Subscription:
        """Real-time form of list_documents. Start and stop the handle explicitly."""
        return Subscription(
            self._feed,
            owner_id,
            DOCUMENTS,
            lambda: self.list_documents(owner_id, folder_id),
            listener,
        )

    def search_documents(self, owner_id: str, query: str) -> Iterator[DocumentFile]:
        """
        Lazily yield owner_id's own documents whose name contains query,
        ignoring case. Shared-to-me documents are never searched.
        """
        text = (query or "").strip()
        with session_scope(self._db_session_factory) as session:
            # SQLite lower() folds ASCII only; the vault registers casefold() instead
            if session.get_bind().dialect.name == "sqlite":
                fold, needle = func.casefold, text.casefold()
            else:
                fold, needle = func.lower, text.lower()
            stmt = (
                select(Document)
                .where(Document.owner_id == owner_id)
                .order_by(Document.name)
                .execution_options(yield_per=100)
            )
            if needle:
                stmt = stmt.where(fold(Document.name, type_=String).contains(needle, autoescape=True))
            for row in session.scalars(stmt):
                yield DocumentFile.from_row(row)

    def get_document(self, user_id: str, document_id: str) -> DocumentFile:
        """The owner's view, or the recipient view for a grantee."""
        with session_scope(self._db_session_factory) as session:
            document = session.get(Document, document_id)
            if document is None:
                raise DocLockNotFoundError(f"Document '{document_id}' not found", object_ref=document_id)
            if document.owner_id == user_id:
                return DocumentFile.from_row(document)
            if user_id not in self._grantees(session, document_id):
                raise DocLockPermissionError(
                    "You do not have access to this document",
                    user_id=user_id,
                    object_ref=document_id,
                    required_access="read",
                )
            sharer = session.get(User, document.owner_id)
            return DocumentFile.from_row(document, shared_by_name=sharer.name)

    def read_document(self, user_id: str, document_id: str) -> bytes:
        """Binary content for the owner or a grantee."""
        view = self.get_document(user_id, document_id)
        content = self._blobs.read(view.url)
        log(log_document_operation("read", document_id, user_id, size_bytes=len(content)))
        return content

    def storage_usage(self, owner_id: str) -> StorageUsage:
        with session_scope(self._db_session_factory) as session:
            used = session.scalar(select(User.storage_used_bytes).where(User.id == owner_id))
            if used is None:
                raise DocLockNotFoundError(f"User '{owner_id}' not found", user_id=owner_id)
            count = session.scalar(
                select(func.count()).select_from(Document).where(Document.owner_id == owner_id)
            ) or 0
        return StorageUsage(
            used_bytes=used,
            limit_bytes=self.config.max_storage_limit_bytes,
            document_count=count,
        )

    # -------------------------------------------------------------------
    # Sharing
    # -------------------------------------------------------------------

    def share_document(self, owner_id: str, document_id: str, grantee_user_id: str) -> ShareGrantView:
        """Give grantee_user_id read access; they are notified and see it under Shared."""
        return self._shares.share(owner_id, SharedDocument(document_id=document_id), grantee_user_id)

    def unshare_document(self, owner_id: str, document_id: str, grantee_user_id: str) -> None:
        self._shares.revoke(owner_id, SharedDocument(document_id=document_id), grantee_user_id)

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------

    @staticmethod
    def _owned_document(session, owner_id: str, document_id: str) -> Document:
        document = session.get(Document, document_id)
        if document is None:
            raise DocLockNotFoundError(
                f"Document '{document_id}' not found",
                user_id=owner_id,
                object_ref=document_id,
                object_type="document",
            )
        if document.owner_id != owner_id:
            raise DocLockPermissionError(
                "Only the owner can modify this document",
                user_id=owner_id,
                object_ref=document_id,
                required_access="owner",
            )
        return document

    @staticmethod
    def _owned_folder(session, owner_id: str, folder_id: str) -> Folder:
        folder = session.get(Folder, folder_id)
        if folder is None or folder.owner_id != owner_id:
            raise DocLockNotFoundError(
                f"Folder '{folder_id}' not found",
                user_id=owner_id,
                object_ref=folder_id,
                object_type="folder",
            )
        return folder

    @staticmethod
    def _grantees(session, document_id: str) -> Set[str]:
        return set(session.scalars(
            select(ShareGrant.grantee_id).where(
                ShareGrant.item_type == "document",
                ShareGrant.item_id == document_id,
            )
        ).all())
