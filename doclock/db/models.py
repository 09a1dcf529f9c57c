"""
DocLock Vault Models — SQLAlchemy tables for the vault database.

Tables:
1.  users               — Account, MPIN hash, device binding, usage counters
2.  auth_sessions       — Bearer tokens (sha256 only)
3.  folders             — Per-owner folder tree (depth + item_count)
4.  documents           — Uploaded PDFs and images (blob references)
5.  share_grants        — Cross-user read access to a document or card
6.  secure_qrs          — QR bundles
7.  secure_qr_documents — QR ↔ document membership (ordered, reverse-indexed)
8.  notifications       — Per-user notification inbox
9.  friends             — Directed friend rows, always written in pairs
10. cards               — Payment cards, sensitive fields encrypted
"""

from __future__ import annotations

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from doclock.db.base import Base, TimestampMixin, new_id, utcnow


# ---------------------------------------------------------------------------
# 1-2. Users & sessions
# ---------------------------------------------------------------------------

class User(Base, TimestampMixin):
    __tablename__ = "users"

    id = Column(String(32), primary_key=True, default=new_id)
    mobile = Column(String(20), unique=True, nullable=False, index=True)
    name = Column(String(100), nullable=False)
    mpin_hash = Column(String(255), nullable=False)
    device_id = Column(String(255), nullable=True)
    failed_attempts = Column(Integer, default=0, nullable=False)
    lockout_until = Column(DateTime(timezone=True), nullable=True)
    storage_used_bytes = Column(BigInteger, default=0, nullable=False)
    shared_docs_count = Column(Integer, default=0, nullable=False)
    shared_cards_count = Column(Integer, default=0, nullable=False)
    profile_image_url = Column(String(500), nullable=True)

    __table_args__ = (
        CheckConstraint("storage_used_bytes >= 0", name="chk_user_storage_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id!r}, mobile={self.mobile!r})>"


class AuthSession(Base):
    __tablename__ = "auth_sessions"

    token_hash = Column(String(64), primary_key=True)
    user_id = Column(String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    device_id = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# 3-4. Folders & documents
# ---------------------------------------------------------------------------

class Folder(Base, TimestampMixin):
    __tablename__ = "folders"

    id = Column(String(32), primary_key=True, default=new_id)
    owner_id = Column(String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(100), nullable=False)
    parent_folder_id = Column(String(32), ForeignKey("folders.id"), nullable=True)
    depth = Column(Integer, default=0, nullable=False)
    item_count = Column(Integer, default=0, nullable=False)
    icon = Column(String(50), default="folder", nullable=False)

    __table_args__ = (
        CheckConstraint("depth >= 0", name="chk_folder_depth_non_negative"),
        Index("idx_folders_owner_parent", "owner_id", "parent_folder_id"),
    )

    def __repr__(self) -> str:
        return f"<Folder(id={self.id!r}, name={self.name!r}, depth={self.depth})>"


class Document(Base, TimestampMixin):
    __tablename__ = "documents"

    id = Column(String(32), primary_key=True, default=new_id)
    owner_id = Column(String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    folder_id = Column(String(32), ForeignKey("folders.id"), nullable=True)
    name = Column(String(255), nullable=False)
    type = Column(String(10), nullable=False)
    url = Column(String(500), nullable=False)
    size_bytes = Column(BigInteger, default=0, nullable=False)
    mime_type = Column(String(100), nullable=False)
    sha256 = Column(String(64), nullable=True)

    __table_args__ = (
        CheckConstraint("type IN ('document', 'image')", name="chk_document_type"),
        CheckConstraint("size_bytes >= 0", name="chk_document_size_non_negative"),
        Index("idx_documents_owner_folder", "owner_id", "folder_id"),
    )

    def __repr__(self) -> str:
        return f"<Document(id={self.id!r}, name={self.name!r}, type={self.type!r})>"


# ---------------------------------------------------------------------------
# 5. Share grants
# ---------------------------------------------------------------------------

class ShareGrant(Base):
    """
    Read access to one item for one grantee. The owner's row stays the
    only copy; recipients see it through this reference.
    """
    __tablename__ = "share_grants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    item_type = Column(String(10), nullable=False)
    item_id = Column(String(32), nullable=False)
    owner_id = Column(String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    grantee_id = Column(String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("item_type", "item_id", "grantee_id", name="uq_share_item_grantee"),
        CheckConstraint("item_type IN ('document', 'card')", name="chk_share_item_type"),
        Index("idx_share_grantee_type", "grantee_id", "item_type"),
        Index("idx_share_item", "item_type", "item_id"),
    )


# ---------------------------------------------------------------------------
# 6-7. Secure QR bundles
# ---------------------------------------------------------------------------

class SecureQR(Base, TimestampMixin):
    __tablename__ = "secure_qrs"

    id = Column(String(32), primary_key=True, default=new_id)
    owner_id = Column(String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    label = Column(String(100), nullable=False)
    qr_code_url = Column(String(500), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)


class SecureQRDocument(Base):
    """
    Ordered QR membership. The document_id index answers "which QRs contain
    this document" when a document is deleted. No foreign key to documents,
    so membership rows can be pruned after the document row is gone.
    """
    __tablename__ = "secure_qr_documents"

    qr_id = Column(String(32), ForeignKey("secure_qrs.id", ondelete="CASCADE"), primary_key=True)
    document_id = Column(String(32), primary_key=True)
    position = Column(Integer, nullable=False)

    __table_args__ = (
        Index("idx_sqd_document_id", "document_id"),
    )


# ---------------------------------------------------------------------------
# 8-9. Notifications & friends
# ---------------------------------------------------------------------------

class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String(32), primary_key=True, default=new_id)
    user_id = Column(String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String(20), default="alert", nullable=False)
    is_read = Column(Boolean, default=False, nullable=False)
    sender_id = Column(String(32), nullable=True)
    request_type = Column(String(50), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("type IN ('security', 'alert')", name="chk_notification_type"),
        Index("idx_notifications_user_created", "user_id", "created_at"),
    )


class Friend(Base):
    __tablename__ = "friends"

    user_id = Column(String(32), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    friend_id = Column(String(32), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    added_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


# ---------------------------------------------------------------------------
# 10. Cards
# ---------------------------------------------------------------------------

class Card(Base, TimestampMixin):
    __tablename__ = "cards"

    id = Column(String(32), primary_key=True, default=new_id)
    owner_id = Column(String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    card_type = Column(String(20), nullable=False)
    card_name = Column(String(100), nullable=False)
    card_holder = Column(String(100), nullable=False)
    card_number_enc = Column(Text, nullable=False)
    expiry_enc = Column(Text, nullable=False)
    cvv_enc = Column(Text, nullable=False)
    color_start_hex = Column(String(9), default="#1E3A8A", nullable=False)
    color_end_hex = Column(String(9), default="#3B82F6", nullable=False)

    __table_args__ = (
        CheckConstraint("card_type IN ('Debit Card', 'Credit Card')", name="chk_card_type"),
    )
