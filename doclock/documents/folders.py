"""
DocLock Folder Store — per-owner folder tree with depth-limited nesting.

Handles:
- create / rename / recursive delete of folders
- one-shot listings and real-time subscriptions (watch_folders)
- the synthesized "Shared" folder at root when documents are shared to the owner

Counters (item_count, storage usage) change through single UPDATE statements
so concurrent writers never lose increments.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from sqlalchemy import func, select

from doclock.db.models import Document, Folder, ShareGrant, User
from doclock.db.session import session_scope
from doclock.documents.cascade import adjust_item_count, release_storage, remove_document_rows
from doclock.documents.models import DeletionSummary, FolderView
from doclock.documents.paths import (
    SHARED_FOLDER_ID,
    can_create_child_folder,
    can_create_root_folder,
    child_depth,
    is_shared_folder,
    validate_folder_name,
)
from doclock.documents.storage import BlobStore
from doclock.engine.config import AppConfig, get_app_config
from doclock.engine.errors import (
    DocLockDepthLimitError,
    DocLockNotFoundError,
    DocLockValidationError,
)
from doclock.engine.logging import log, log_folder_operation
from doclock.engine.subscriptions import (
    DOCUMENTS,
    FOLDERS,
    SECURE_QRS,
    ChangeFeed,
    Listener,
    Subscription,
    get_change_feed,
)

logger = logging.getLogger("doclock.documents.folders")


class FolderStore:
    """CRUD and live listings over one user's folder tree."""

    def __init__(
        self,
        db_session_factory,
        blob_store: BlobStore,
        feed: Optional[ChangeFeed] = None,
        app_config: Optional[AppConfig] = None,
    ):
        self._db_session_factory = db_session_factory
        self._blobs = blob_store
        self._feed = feed or get_change_feed()
        self._app_config = app_config

    @property
    def config(self) -> AppConfig:
        return self._app_config or get_app_config()

    def _effective_max_depth(self, max_depth: Optional[int]) -> int:
        # A caller may tighten the configured limit, never loosen it
        configured = self.config.max_folder_depth
        return configured if max_depth is None else min(max_depth, configured)

    # -------------------------------------------------------------------
    # Create / rename / delete
    # -------------------------------------------------------------------

    def create_folder(
        self,
        owner_id: str,
        name: str,
        parent_folder_id: Optional[str] = None,
        parent_depth: Optional[int] = None,
        max_depth: Optional[int] = None,
    ) -> FolderView:
        """
        Create a folder at root or under parent_folder_id.

        The parent's stored depth decides the new depth; parent_depth from the
        caller is only checked for drift.

        Raises:
            DocLockValidationError: bad name, or parent is the Shared folder.
            DocLockDepthLimitError: parent depth + 1 would reach max_depth.
            DocLockNotFoundError: owner or parent folder does not exist.
        """
        if is_shared_folder(parent_folder_id):
            raise DocLockValidationError(
                "Folders cannot be created inside Shared",
                user_id=owner_id,
                object_ref=SHARED_FOLDER_ID,
            )
        clean_name = validate_folder_name(name)
        limit = self._effective_max_depth(max_depth)

        with session_scope(self._db_session_factory) as session:
            if session.get(User, owner_id) is None:
                raise DocLockNotFoundError(f"User '{owner_id}' not found", user_id=owner_id)

            if parent_folder_id is None:
                actual_parent_depth = None
                allowed = can_create_root_folder(limit)
            else:
                parent = self._owned_folder(session, owner_id, parent_folder_id)
                actual_parent_depth = parent.depth
                if parent_depth is not None and parent_depth != parent.depth:
                    logger.warning(
                        f"Stale parent depth for folder {parent_folder_id}: "
                        f"caller={parent_depth}, stored={parent.depth}"
                    )
                allowed = can_create_child_folder(parent.depth, limit)

            if not allowed:
                raise DocLockDepthLimitError(
                    f"Maximum folder depth of {limit} reached",
                    user_id=owner_id,
                    object_ref=parent_folder_id,
                    parent_depth=actual_parent_depth,
                    max_depth=limit,
                )

            folder = Folder(
                owner_id=owner_id,
                name=clean_name,
                parent_folder_id=parent_folder_id,
                depth=child_depth(actual_parent_depth),
                item_count=0,
            )
            session.add(folder)
            if parent_folder_id is not None:
                adjust_item_count(session, parent_folder_id, 1)
            session.flush()
            view = FolderView.from_row(folder)

        logger.info(f"Created folder '{clean_name}' ({view.id}) depth={view.depth} for {owner_id}")
        log(log_folder_operation(
            "created", view.id, owner_id,
            name=clean_name, parent_folder_id=parent_folder_id, depth=view.depth,
        ))
        self._feed.publish(owner_id, FOLDERS)
        return view

    def rename_folder(self, owner_id: str, folder_id: str, new_name: str) -> FolderView:
        """
        Rename a folder. Renaming to the current name changes nothing and
        publishes nothing.
        """
        if is_shared_folder(folder_id):
            raise DocLockValidationError("The Shared folder cannot be renamed", object_ref=folder_id)
        clean_name = validate_folder_name(new_name)

        with session_scope(self._db_session_factory) as session:
            folder = self._owned_folder(session, owner_id, folder_id)
            if folder.name == clean_name:
                return FolderView.from_row(folder)
            old_name = folder.name
            folder.name = clean_name
            session.flush()
            view = FolderView.from_row(folder)

        logger.info(f"Renamed folder {folder_id}: '{old_name}' -> '{clean_name}'")
        log(log_folder_operation("renamed", folder_id, owner_id, name=clean_name))
        self._feed.publish(owner_id, FOLDERS)
        return view

    def delete_folder(self, owner_id: str, folder_id: str) -> DeletionSummary:
        """
        Delete a folder with every descendant folder and document.

        Blobs are removed after the rows are committed. Share grants and
        Secure QR memberships of the removed documents go with them.
        """
        if is_shared_folder(folder_id):
            raise DocLockValidationError("The Shared folder cannot be deleted", object_ref=folder_id)

        with session_scope(self._db_session_factory) as session:
            folder = self._owned_folder(session, owner_id, folder_id)
            parent_id = folder.parent_folder_id

            # Walk the subtree level by level
            depth_of: Dict[str, int] = {folder.id: folder.depth}
            frontier = [folder.id]
            while frontier:
                rows = session.execute(
                    select(Folder.id, Folder.depth).where(
                        Folder.owner_id == owner_id,
                        Folder.parent_folder_id.in_(frontier),
                    )
                ).all()
                frontier = [row.id for row in rows]
                depth_of.update((row.id, row.depth) for row in rows)

            documents = session.execute(
                select(Document.id, Document.url, Document.size_bytes).where(
                    Document.owner_id == owner_id,
                    Document.folder_id.in_(list(depth_of)),
                )
            ).all()
            bytes_freed = sum(d.size_bytes for d in documents)
            cascade = remove_document_rows(session, owner_id, [d.id for d in documents])

            for fid in sorted(depth_of, key=depth_of.get, reverse=True):
                session.delete(session.get(Folder, fid))
                session.flush()

            if parent_id is not None:
                adjust_item_count(session, parent_id, -1)
            release_storage(session, owner_id, bytes_freed)

        for doc in documents:
            self._blobs.delete(doc.url)

        summary = DeletionSummary(folders=len(depth_of), documents=len(documents), bytes_freed=bytes_freed)
        logger.info(
            f"Deleted folder {folder_id} for {owner_id}: {summary.folders} folder(s), "
            f"{summary.documents} document(s), {bytes_freed} bytes"
        )
        log(log_folder_operation(
            "deleted", folder_id, owner_id,
            deleted_folders=summary.folders, deleted_documents=summary.documents,
        ))
        self._feed.publish(owner_id, FOLDERS, DOCUMENTS)
        if cascade.touched_qr_ids:
            self._feed.publish(owner_id, SECURE_QRS)
        for grantee_id in cascade.grantee_ids:
            self._feed.publish(grantee_id, FOLDERS, DOCUMENTS)
        return summary

    # -------------------------------------------------------------------
    # Reads & subscriptions
    # -------------------------------------------------------------------

    def get_folder(self, owner_id: str, folder_id: str) -> FolderView:
        if is_shared_folder(folder_id):
            return FolderView.shared_root(owner_id, self.shared_document_count(owner_id))
        with session_scope(self._db_session_factory) as session:
            return FolderView.from_row(self._owned_folder(session, owner_id, folder_id))

    def list_folders(self, owner_id: str, parent_folder_id: Optional[str] = None) -> List[FolderView]:
        """
        Current child folders of parent_folder_id (None = root).

        At root the Shared folder comes first whenever the owner has at least
        one document shared to them. Shared itself has no subfolders.
        """
        if is_shared_folder(parent_folder_id):
            return []
        with session_scope(self._db_session_factory) as session:
            parent_filter = (
                Folder.parent_folder_id.is_(None)
                if parent_folder_id is None
                else Folder.parent_folder_id == parent_folder_id
            )
            rows = session.scalars(
                select(Folder)
                .where(Folder.owner_id == owner_id, parent_filter)
                .order_by(Folder.created_at, Folder.name)
            ).all()
            folders = [FolderView.from_row(r) for r in rows]
            if parent_folder_id is None:
                shared = self._count_shared(session, owner_id)
                if shared > 0:
                    folders.insert(0, FolderView.shared_root(owner_id, shared))
        return folders

    def watch_folders(
        self,
        owner_id: str,
        parent_folder_id: Optional[str],
        listener: Listener,
    ) -> Subscription:
        """
        Real-time form of list_folders. The returned handle is not started:
        call start() (or enter it as a context manager) and stop() it when
        navigating away.
        """
        return Subscription(
            self._feed,
            owner_id,
            FOLDERS,
            lambda: self.list_folders(owner_id, parent_folder_id),
            listener,
        )

    def shared_document_count(self, owner_id: str) -> int:
        with session_scope(self._db_session_factory) as session:
            return self._count_shared(session, owner_id)

    def folder_path(self, owner_id: str, folder_id: str) -> List[FolderView]:
        """Breadcrumb from the root folder down to folder_id."""
        path: List[FolderView] = []
        with session_scope(self._db_session_factory) as session:
            current: Optional[str] = folder_id
            while current is not None:
                row = self._owned_folder(session, owner_id, current)
                path.append(FolderView.from_row(row))
                current = row.parent_folder_id
        path.reverse()
        return path

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------

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
    def _count_shared(session, owner_id: str) -> int:
        return session.scalar(
            select(func.count()).select_from(ShareGrant).where(
                ShareGrant.grantee_id == owner_id,
                ShareGrant.item_type == "document",
            )
        ) or 0
