"""Tests for doclock.documents.folders — FolderStore against a SQLite vault."""

import pytest

from doclock.db.models import Folder, User
from doclock.db.session import session_scope
from doclock.documents.paths import SHARED_FOLDER_ID
from doclock.engine.errors import (
    DocLockDepthLimitError,
    DocLockNotFoundError,
    DocLockValidationError,
)

PDF_BYTES = b"%PDF-1.4\n1 0 obj << /Type /Catalog >> endobj\n%%EOF\n"


def _item_count(db_factory, folder_id):
    with session_scope(db_factory) as session:
        return session.get(Folder, folder_id).item_count


class TestCreateFolder:
    def test_root_folder(self, folders, make_user):
        uid = make_user()
        folder = folders.create_folder(uid, " Tax ")
        assert folder.name == "Tax"
        assert folder.depth == 0
        assert folder.parent_folder_id is None
        assert folder.item_count == 0
        assert folder.owner_id == uid

    def test_nested_depth_and_parent_count(self, folders, make_user, db_factory):
        uid = make_user()
        root = folders.create_folder(uid, "Tax")
        child = folders.create_folder(uid, "2024", parent_folder_id=root.id, parent_depth=root.depth)
        assert child.depth == 1
        assert _item_count(db_factory, root.id) == 1

    def test_depth_limit(self, folders, make_user):
        uid = make_user()
        a = folders.create_folder(uid, "A")
        b = folders.create_folder(uid, "B", parent_folder_id=a.id)
        c = folders.create_folder(uid, "C", parent_folder_id=b.id)
        assert c.depth == 2
        with pytest.raises(DocLockDepthLimitError) as exc_info:
            folders.create_folder(uid, "D", parent_folder_id=c.id)
        assert exc_info.value.max_depth == 3
        assert exc_info.value.parent_depth == 2
        assert folders.list_folders(uid, c.id) == []

    def test_caller_max_depth_only_tightens(self, folders, make_user):
        uid = make_user()
        a = folders.create_folder(uid, "A")
        with pytest.raises(DocLockDepthLimitError):
            folders.create_folder(uid, "B", parent_folder_id=a.id, max_depth=1)
        b = folders.create_folder(uid, "B", parent_folder_id=a.id, max_depth=10)
        c = folders.create_folder(uid, "C", parent_folder_id=b.id, max_depth=10)
        with pytest.raises(DocLockDepthLimitError):
            folders.create_folder(uid, "D", parent_folder_id=c.id, max_depth=10)

    def test_zero_depth_forbids_root(self, folders, make_user):
        with pytest.raises(DocLockDepthLimitError):
            folders.create_folder(make_user(), "A", max_depth=0)

    def test_stored_parent_depth_wins(self, folders, make_user):
        uid = make_user()
        a = folders.create_folder(uid, "A")
        child = folders.create_folder(uid, "B", parent_folder_id=a.id, parent_depth=7)
        assert child.depth == 1

    def test_invalid_name(self, folders, make_user):
        with pytest.raises(DocLockValidationError):
            folders.create_folder(make_user(), "bad/name")

    def test_unicode_name(self, folders, make_user):
        uid = make_user()
        folder = folders.create_folder(uid, "Café")
        assert folder.name == "Café"
        assert folders.rename_folder(uid, folder.id, "Ümlaut Bills").name == "Ümlaut Bills"

    def test_duplicate_sibling_names_allowed(self, folders, make_user):
        uid = make_user()
        parent = folders.create_folder(uid, "Bills")
        first = folders.create_folder(uid, "2024", parent.id)
        second = folders.create_folder(uid, "2024", parent.id)
        assert first.id != second.id
        assert [f.name for f in folders.list_folders(uid, parent.id)] == ["2024", "2024"]

    def test_inside_shared_rejected(self, folders, make_user):
        with pytest.raises(DocLockValidationError):
            folders.create_folder(make_user(), "X", parent_folder_id=SHARED_FOLDER_ID)

    def test_other_users_parent(self, folders, make_user):
        alice, bob = make_user("Alice"), make_user("Bob")
        parent = folders.create_folder(alice, "A")
        with pytest.raises(DocLockNotFoundError):
            folders.create_folder(bob, "B", parent_folder_id=parent.id)

    def test_unknown_owner(self, folders):
        with pytest.raises(DocLockNotFoundError):
            folders.create_folder("nobody", "A")


class TestRenameFolder:
    def test_rename(self, folders, make_user):
        uid = make_user()
        folder = folders.create_folder(uid, "Old")
        renamed = folders.rename_folder(uid, folder.id, "New")
        assert renamed.name == "New"
        assert folders.get_folder(uid, folder.id).name == "New"

    def test_same_name_publishes_nothing(self, folders, make_user, recorder):
        uid = make_user()
        folder = folders.create_folder(uid, "Same")
        with folders.watch_folders(uid, None, recorder):
            folders.rename_folder(uid, folder.id, "Same")
        assert len(recorder.snapshots) == 1

    def test_shared_cannot_be_renamed(self, folders, make_user):
        with pytest.raises(DocLockValidationError):
            folders.rename_folder(make_user(), SHARED_FOLDER_ID, "Mine")


class TestDeleteFolder:
    def test_recursive_delete(self, folders, documents, make_user, db_factory, blob_store):
        uid = make_user()
        keep = folders.create_folder(uid, "Keep")
        root = folders.create_folder(uid, "Root", parent_folder_id=keep.id)
        sub = folders.create_folder(uid, "Sub", parent_folder_id=root.id)
        d1 = documents.upload_document(uid, root.id, PDF_BYTES, "a.pdf")
        d2 = documents.upload_document(uid, sub.id, PDF_BYTES, "b.pdf")
        outside = documents.upload_document(uid, keep.id, PDF_BYTES, "c.pdf")

        summary = folders.delete_folder(uid, root.id)

        assert summary.folders == 2
        assert summary.documents == 2
        assert summary.bytes_freed == 2 * len(PDF_BYTES)
        assert summary.total_entities == 4
        assert not blob_store.exists(d1.url)
        assert not blob_store.exists(d2.url)
        assert blob_store.exists(outside.url)
        assert [f.id for f in folders.list_folders(uid, keep.id)] == []
        # keep held the subfolder and one document
        assert _item_count(db_factory, keep.id) == 1
        with session_scope(db_factory) as session:
            assert session.get(User, uid).storage_used_bytes == len(PDF_BYTES)
            assert session.get(Folder, sub.id) is None

    def test_delete_revokes_shares(self, folders, documents, make_user, db_factory):
        alice, bob = make_user("Alice"), make_user("Bob")
        folder = folders.create_folder(alice, "F")
        doc = documents.upload_document(alice, folder.id, PDF_BYTES, "a.pdf")
        documents.share_document(alice, doc.id, bob)

        folders.delete_folder(alice, folder.id)

        assert documents.list_documents(bob, SHARED_FOLDER_ID) == []
        assert folders.list_folders(bob) == []
        with session_scope(db_factory) as session:
            assert session.get(User, bob).shared_docs_count == 0

    def test_shared_cannot_be_deleted(self, folders, make_user):
        with pytest.raises(DocLockValidationError):
            folders.delete_folder(make_user(), SHARED_FOLDER_ID)

    def test_delete_other_users_folder(self, folders, make_user):
        alice, bob = make_user("Alice"), make_user("Bob")
        folder = folders.create_folder(alice, "F")
        with pytest.raises(DocLockNotFoundError):
            folders.delete_folder(bob, folder.id)
        assert folders.get_folder(alice, folder.id).id == folder.id


class TestListFolders:
    def test_shared_folder_first_at_root(self, folders, documents, make_user):
        alice, bob = make_user("Alice"), make_user("Bob")
        folders.create_folder(bob, "Mine")
        assert [f.name for f in folders.list_folders(bob)] == ["Mine"]

        doc = documents.upload_document(alice, None, PDF_BYTES, "a.pdf")
        documents.share_document(alice, doc.id, bob)

        listed = folders.list_folders(bob)
        assert [f.id for f in listed][0] == SHARED_FOLDER_ID
        shared = listed[0]
        assert shared.name == "Shared"
        assert shared.is_virtual
        assert shared.item_count == 1
        assert shared.icon == "person.2.fill"
        assert folders.list_folders(bob, SHARED_FOLDER_ID) == []

    def test_only_own_folders(self, folders, make_user):
        alice, bob = make_user("Alice"), make_user("Bob")
        folders.create_folder(alice, "A")
        assert folders.list_folders(bob) == []

    def test_folder_path(self, folders, make_user):
        uid = make_user()
        a = folders.create_folder(uid, "A")
        b = folders.create_folder(uid, "B", parent_folder_id=a.id)
        assert [f.name for f in folders.folder_path(uid, b.id)] == ["A", "B"]

    def test_get_shared_folder(self, folders, make_user):
        view = folders.get_folder(make_user(), SHARED_FOLDER_ID)
        assert view.is_virtual
        assert view.item_count == 0
