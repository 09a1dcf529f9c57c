"""
DocLock Error Hierarchy — Structured exceptions for vault operations.

Every error carries the owner/user it concerns and the object it was raised
for, so the same instance can be logged to the JSONL audit files and handed
back to a client as a (success, message) pair.

Hierarchy:
    DocLockError
    ├── DocLockValidationError     — Bad name, unsupported file type, stale edit
    │   └── DocLockDepthLimitError — Folder nesting limit reached
    ├── DocLockNotFoundError       — Missing folder / document / user / QR
    ├── DocLockPermissionError     — Cross-user access denied
    ├── DocLockStorageQuotaError   — Upload would exceed the user's quota
    ├── DocLockTransportError      — Blob storage / rendering I/O failed
    ├── DocLockConfigError         — Configuration error
    └── DocLockSessionError        — Login / token / device error
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, TypeVar

logger = logging.getLogger("doclock.engine.errors")

T = TypeVar("T")


class DocLockError(Exception):
    """
    Base error for all DocLock failures.
    All context is kept so it can be serialized to JSON.
    """

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.user_id: Optional[str] = context.get("user_id")
        self.object_ref: Optional[str] = context.get("object_ref")
        self.object_type: Optional[str] = context.get("object_type")
        self.error_type: str = self.__class__.__name__
        self.context: Dict[str, Any] = context
        self.timestamp: str = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize error to a JSON-compatible dict for logging."""
        return {
            "error_type": self.error_type,
            "message": self.message,
            "user_id": self.user_id,
            "object_ref": self.object_ref,
            "object_type": self.object_type,
            "timestamp": self.timestamp,
            "context": {
                k: str(v) for k, v in self.context.items()
                if k not in ("user_id", "object_ref", "object_type")
            },
        }

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    def __repr__(self) -> str:
        parts = [f"{self.error_type}: {self.message}"]
        if self.object_ref:
            parts.append(f"object_ref={self.object_ref}")
        if self.user_id:
            parts.append(f"user_id={self.user_id}")
        return " | ".join(parts)


class DocLockValidationError(DocLockError):
    """
    Input validation failed (name rules, file type, stale membership).
    Includes field-level error details.
    """

    def __init__(self, message: str, **context: Any):
        self.field: Optional[str] = context.get("field")
        self.validation_errors: Optional[list] = context.get("validation_errors")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["field"] = self.field
        d["validation_errors"] = self.validation_errors
        return d


class DocLockDepthLimitError(DocLockValidationError):
    """Folder creation would exceed the configured nesting depth."""

    def __init__(self, message: str, **context: Any):
        self.parent_depth: Optional[int] = context.get("parent_depth")
        self.max_depth: Optional[int] = context.get("max_depth")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["parent_depth"] = self.parent_depth
        d["max_depth"] = self.max_depth
        return d


class DocLockNotFoundError(DocLockError):
    """Folder, document, user, card or QR does not exist (for this owner)."""
    pass


class DocLockPermissionError(DocLockError):
    """
    Access denied. Raised when a user touches an item they neither own
    nor hold a share grant for.
    """

    def __init__(self, message: str, **context: Any):
        self.required_access: Optional[str] = context.get("required_access")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["required_access"] = self.required_access
        return d


class DocLockStorageQuotaError(DocLockError):
    """Upload would push the owner's storage usage over the limit."""

    def __init__(self, message: str, **context: Any):
        self.used_bytes: Optional[int] = context.get("used_bytes")
        self.limit_bytes: Optional[int] = context.get("limit_bytes")
        self.requested_bytes: Optional[int] = context.get("requested_bytes")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["used_bytes"] = self.used_bytes
        d["limit_bytes"] = self.limit_bytes
        d["requested_bytes"] = self.requested_bytes
        return d


class DocLockTransportError(DocLockError):
    """Blob storage or QR rendering I/O failed."""

    def __init__(self, message: str, **context: Any):
        self.blob_url: Optional[str] = context.get("blob_url")
        super().__init__(message, **context)


class DocLockConfigError(DocLockError):
    """Configuration error (invalid doclock.yaml, missing card key)."""

    def __init__(self, message: str, **context: Any):
        self.config_key: Optional[str] = context.get("config_key")
        super().__init__(message, **context)


class DocLockSessionError(DocLockError):
    """Login, token or device binding error."""

    def __init__(self, message: str, **context: Any):
        self.device_mismatch: bool = bool(context.get("device_mismatch", False))
        self.locked_until: Optional[datetime] = context.get("locked_until")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["device_mismatch"] = self.device_mismatch
        d["locked_until"] = self.locked_until.isoformat() if self.locked_until else None
        return d


# ---------------------------------------------------------------------------
# Success-flag adapter
# ---------------------------------------------------------------------------

class OperationResult:
    """
    The (success, error message) pair clients present to the user.

    Stores raise typed errors; UI-facing callers wrap them with
    ``OperationResult.capture(store.rename_folder, uid, fid, "Tax")``.
    Nothing is retried here.
    """

    __slots__ = ("success", "error", "value", "error_type")

    def __init__(
        self,
        success: bool,
        error: Optional[str] = None,
        value: Any = None,
        error_type: Optional[str] = None,
    ):
        self.success = success
        self.error = error
        self.value = value
        self.error_type = error_type

    @classmethod
    def capture(cls, fn: Callable[..., T], *args: Any, **kwargs: Any) -> "OperationResult":
        try:
            return cls(True, value=fn(*args, **kwargs))
        except DocLockError as e:
            logger.info(f"{fn.__name__} failed: {e!r}")
            return cls(False, error=e.message, error_type=e.error_type)

    def __bool__(self) -> bool:
        return self.success

    def __repr__(self) -> str:
        if self.success:
            return "OperationResult(success=True)"
        return f"OperationResult(success=False, error={self.error!r})"
