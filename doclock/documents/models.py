"""
DocLock Folder & Document Views — Pydantic models returned by the stores.

FolderView: a folder as listed to its owner (or the synthesized "Shared" folder).
DocumentFile: a document as seen by a user; is_shared/shared_by are only
    set on a recipient's view.
DeletionSummary / StorageUsage: results of cascade deletes and usage queries.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from doclock.db.base import as_utc
from doclock.documents.paths import SHARED_FOLDER_ID, SHARED_FOLDER_NAME

DocumentType = Literal["document", "image"]


class FolderView(BaseModel):
    id: str
    owner_id: str
    name: str
    parent_folder_id: Optional[str] = None
    depth: int = Field(ge=0)
    item_count: int = 0
    icon: str = "folder"
    created_at: Optional[datetime] = None
    is_virtual: bool = False

    @classmethod
    def from_row(cls, row) -> "FolderView":
        return cls(
            id=row.id,
            owner_id=row.owner_id,
            name=row.name,
            parent_folder_id=row.parent_folder_id,
            depth=row.depth,
            item_count=row.item_count,
            icon=row.icon,
            created_at=as_utc(row.created_at),
        )

    @classmethod
    def shared_root(cls, owner_id: str, shared_count: int) -> "FolderView":
        """The non-persisted root folder listing documents shared to owner_id."""
        return cls(
            id=SHARED_FOLDER_ID,
            owner_id=owner_id,
            name=SHARED_FOLDER_NAME,
            depth=0,
            item_count=shared_count,
            icon="person.2.fill",
            is_virtual=True,
        )


class DocumentFile(BaseModel):
    id: str
    owner_id: str
    name: str
    type: DocumentType
    url: str
    size: int = Field(ge=0)
    mime_type: str = "application/octet-stream"
    created_at: Optional[datetime] = None
    folder_id: Optional[str] = None
    is_shared: bool = False
    shared_by: Optional[str] = None
    shared_by_name: Optional[str] = None

    @classmethod
    def from_row(cls, row, shared_by_name: Optional[str] = None) -> "DocumentFile":
        """Owner view, or a recipient view when shared_by_name is given."""
        shared = shared_by_name is not None
        return cls(
            id=row.id,
            owner_id=row.owner_id,
            name=row.name,
            type=row.type,
            url=row.url,
            size=row.size_bytes,
            mime_type=row.mime_type,
            created_at=as_utc(row.created_at),
            # A recipient sees the document at the root of their Shared folder
            folder_id=SHARED_FOLDER_ID if shared else row.folder_id,
            is_shared=shared,
            shared_by=row.owner_id if shared else None,
            shared_by_name=shared_by_name,
        )


class DeletionSummary(BaseModel):
    folders: int = 0
    documents: int = 0
    bytes_freed: int = 0

    @property
    def total_entities(self) -> int:
        return self.folders + self.documents


class StorageUsage(BaseModel):
    used_bytes: int
    limit_bytes: int
    document_count: int

    @property
    def used_mb(self) -> float:
        return round(self.used_bytes / (1024 * 1024), 2)

    @property
    def percent_used(self) -> float:
        if self.limit_bytes <= 0:
            return 100.0
        return 100.0 * self.used_bytes / self.limit_bytes
