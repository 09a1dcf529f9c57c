"""Tests for doclock.sharing.service — grants, counters and share notifications."""

import pytest

from doclock.db.models import User
from doclock.db.session import session_scope
from doclock.documents.paths import SHARED_FOLDER_ID
from doclock.engine.errors import (
    DocLockNotFoundError,
    DocLockPermissionError,
    DocLockValidationError,
)
from doclock.sharing.service import SharedCard, SharedDocument, item_ref

PDF_BYTES = b"%PDF-1.4\n%%EOF\n"


def _shared_docs_count(db_factory, uid):
    with session_scope(db_factory) as session:
        return session.get(User, uid).shared_docs_count


class TestItemRef:
    def test_variants(self):
        assert item_ref(SharedDocument(document_id="d1")) == ("document", "d1")
        assert item_ref(SharedCard(card_id="c1")) == ("card", "c1")

    def test_unknown_variant(self):
        with pytest.raises(TypeError):
            item_ref("d1")


class TestShareDocument:
    def test_share_creates_grant_and_notification(self, documents, shares, notifications, make_user, db_factory):
        alice, bob = make_user("Alice"), make_user("Bob")
        doc = documents.upload_document(alice, None, PDF_BYTES, "Lease.pdf")

        grant = documents.share_document(alice, doc.id, bob)

        assert grant.grantee_id == bob
        assert grant.grantee_name == "Bob"
        assert _shared_docs_count(db_factory, bob) == 1
        assert shares.has_access(bob, SharedDocument(document_id=doc.id))
        [note] = notifications.list_notifications(bob)
        assert note.title == "Document Shared"
        assert note.message == "Alice shared 'Lease.pdf' with you"
        assert note.type == "security"
        assert note.sender_id == alice
        assert [g.grantee_id for g in shares.shared_with(alice, SharedDocument(document_id=doc.id))] == [bob]

    def test_self_share(self, documents, make_user):
        uid = make_user()
        doc = documents.upload_document(uid, None, PDF_BYTES, "a.pdf")
        with pytest.raises(DocLockValidationError):
            documents.share_document(uid, doc.id, uid)

    def test_duplicate_share(self, documents, make_user, db_factory):
        alice, bob = make_user("Alice"), make_user("Bob")
        doc = documents.upload_document(alice, None, PDF_BYTES, "a.pdf")
        documents.share_document(alice, doc.id, bob)
        with pytest.raises(DocLockValidationError):
            documents.share_document(alice, doc.id, bob)
        assert _shared_docs_count(db_factory, bob) == 1

    def test_share_someone_elses_document(self, documents, make_user):
        alice, bob, carol = make_user("Alice"), make_user("Bob"), make_user("Carol")
        doc = documents.upload_document(alice, None, PDF_BYTES, "a.pdf")
        documents.share_document(alice, doc.id, bob)
        with pytest.raises(DocLockPermissionError):
            documents.share_document(bob, doc.id, carol)

    def test_unknown_grantee(self, documents, make_user):
        uid = make_user()
        doc = documents.upload_document(uid, None, PDF_BYTES, "a.pdf")
        with pytest.raises(DocLockNotFoundError):
            documents.share_document(uid, doc.id, "ghost")

    def test_notification_failure_does_not_fail_share(self, documents, notifications, make_user, monkeypatch):
        alice, bob = make_user("Alice"), make_user("Bob")
        doc = documents.upload_document(alice, None, PDF_BYTES, "a.pdf")

        def broken_scope(factory):
            raise RuntimeError("inbox unavailable")

        import doclock.sharing.notifications as notifications_mod

        monkeypatch.setattr(notifications_mod, "session_scope", broken_scope)
        grant = documents.share_document(alice, doc.id, bob)
        assert grant.grantee_id == bob
        assert [d.id for d in documents.list_documents(bob, SHARED_FOLDER_ID)] == [doc.id]


class TestRevokeAndLeave:
    def test_revoke(self, documents, shares, make_user, db_factory):
        alice, bob = make_user("Alice"), make_user("Bob")
        doc = documents.upload_document(alice, None, PDF_BYTES, "a.pdf")
        documents.share_document(alice, doc.id, bob)

        documents.unshare_document(alice, doc.id, bob)

        assert not shares.has_access(bob, SharedDocument(document_id=doc.id))
        assert _shared_docs_count(db_factory, bob) == 0
        with pytest.raises(DocLockNotFoundError):
            documents.unshare_document(alice, doc.id, bob)

    def test_only_owner_revokes(self, documents, shares, make_user):
        alice, bob = make_user("Alice"), make_user("Bob")
        doc = documents.upload_document(alice, None, PDF_BYTES, "a.pdf")
        documents.share_document(alice, doc.id, bob)
        with pytest.raises(DocLockPermissionError):
            shares.revoke(bob, SharedDocument(document_id=doc.id), bob)

    def test_leave(self, documents, shares, make_user):
        alice, bob = make_user("Alice"), make_user("Bob")
        doc = documents.upload_document(alice, None, PDF_BYTES, "a.pdf")
        documents.share_document(alice, doc.id, bob)
        shares.leave(bob, SharedDocument(document_id=doc.id))
        assert shares.has_access(alice, SharedDocument(document_id=doc.id))
        assert not shares.has_access(bob, SharedDocument(document_id=doc.id))
