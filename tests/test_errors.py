"""Unit tests for doclock.engine.errors — Error hierarchy, serialization, OperationResult."""

import json
from datetime import datetime, timezone

import pytest

from doclock.engine.errors import (
    DocLockConfigError,
    DocLockDepthLimitError,
    DocLockError,
    DocLockNotFoundError,
    DocLockPermissionError,
    DocLockSessionError,
    DocLockStorageQuotaError,
    DocLockTransportError,
    DocLockValidationError,
    OperationResult,
)


class TestDocLockError:
    """Base error class tests."""

    def test_basic_creation(self):
        err = DocLockError("something broke")
        assert err.message == "something broke"
        assert str(err) == "something broke"
        assert err.error_type == "DocLockError"
        assert err.user_id is None
        assert err.object_ref is None

    def test_context_fields(self):
        err = DocLockError("fail", user_id="u1", object_ref="folders/f1", object_type="folder", extra="x")
        assert err.user_id == "u1"
        assert err.object_ref == "folders/f1"
        assert err.object_type == "folder"
        assert err.context["extra"] == "x"

    def test_to_dict(self):
        err = DocLockError("fail", user_id="u1", object_ref="f1", extra=3)
        d = err.to_dict()
        assert d["error_type"] == "DocLockError"
        assert d["message"] == "fail"
        assert d["user_id"] == "u1"
        assert d["context"] == {"extra": "3"}
        assert "timestamp" in d

    def test_to_json(self):
        parsed = json.loads(DocLockError("fail").to_json())
        assert parsed["error_type"] == "DocLockError"
        assert parsed["message"] == "fail"

    def test_repr(self):
        err = DocLockError("fail", object_ref="f1", user_id="u1")
        assert repr(err) == "DocLockError: fail | object_ref=f1 | user_id=u1"


class TestSubclasses:
    def test_all_inherit_from_base(self):
        for cls in (
            DocLockValidationError,
            DocLockDepthLimitError,
            DocLockNotFoundError,
            DocLockPermissionError,
            DocLockStorageQuotaError,
            DocLockTransportError,
            DocLockConfigError,
            DocLockSessionError,
        ):
            assert issubclass(cls, DocLockError)

    def test_depth_limit_is_validation_error(self):
        err = DocLockDepthLimitError("too deep", parent_depth=2, max_depth=3)
        assert isinstance(err, DocLockValidationError)
        d = err.to_dict()
        assert d["parent_depth"] == 2
        assert d["max_depth"] == 3

    def test_validation_fields(self):
        err = DocLockValidationError("bad", field="name", validation_errors=[{"loc": "name"}])
        assert err.to_dict()["field"] == "name"
        assert err.to_dict()["validation_errors"] == [{"loc": "name"}]

    def test_quota_fields(self):
        err = DocLockStorageQuotaError("full", used_bytes=10, limit_bytes=20, requested_bytes=15)
        d = err.to_dict()
        assert (d["used_bytes"], d["limit_bytes"], d["requested_bytes"]) == (10, 20, 15)

    def test_permission_required_access(self):
        assert DocLockPermissionError("no", required_access="owner").to_dict()["required_access"] == "owner"

    def test_session_error_fields(self):
        until = datetime(2026, 1, 1, tzinfo=timezone.utc)
        err = DocLockSessionError("locked", locked_until=until)
        assert err.device_mismatch is False
        assert err.to_dict()["locked_until"] == until.isoformat()
        assert DocLockSessionError("other device", device_mismatch=True).device_mismatch is True


class TestOperationResult:
    def test_success(self):
        result = OperationResult.capture(lambda a, b: a + b, 1, 2)
        assert result
        assert result.success is True
        assert result.value == 3
        assert result.error is None

    def test_captures_doclock_errors(self):
        def fails():
            raise DocLockNotFoundError("Folder 'x' not found")

        result = OperationResult.capture(fails)
        assert not result
        assert result.error == "Folder 'x' not found"
        assert result.error_type == "DocLockNotFoundError"

    def test_other_exceptions_propagate(self):
        def fails():
            raise KeyError("boom")

        with pytest.raises(KeyError):
            OperationResult.capture(fails)
