"""
Folder depth and naming rules. Pure functions, no I/O.

Root folders have depth 0; a child is one deeper than its parent. A folder
may only be created while the new depth stays below max_depth, so with
max_depth=3 the deepest folder has depth 2.
"""

from __future__ import annotations

import re
from typing import Optional

from doclock.engine.errors import DocLockValidationError

SHARED_FOLDER_ID = "SHARED_ROOT"
SHARED_FOLDER_NAME = "Shared"

MAX_FOLDER_NAME_LENGTH = 30
MAX_LABEL_LENGTH = 30

# \w matches Unicode letters and digits as well as "_"
_NAME_PATTERN = re.compile(r"^[\w \-]+$")


def child_depth(parent_depth: Optional[int]) -> int:
    """Depth of a folder created under a parent of parent_depth (None = root)."""
    return 0 if parent_depth is None else parent_depth + 1


def can_create_child_folder(current_depth: int, max_depth: int) -> bool:
    """True if a folder at current_depth may contain a new child folder."""
    return current_depth + 1 < max_depth


def can_create_root_folder(max_depth: int) -> bool:
    return max_depth > 0


def _check_charset(value: str, field: str, max_length: int) -> str:
    cleaned = value.strip() if value else ""
    if not cleaned:
        raise DocLockValidationError(f"{field.capitalize()} cannot be empty", field=field)
    if len(cleaned) > max_length:
        raise DocLockValidationError(
            f"{field.capitalize()} must be at most {max_length} characters",
            field=field,
        )
    if not _NAME_PATTERN.match(cleaned):
        raise DocLockValidationError(
            f"{field.capitalize()} may only contain letters, digits, spaces, '-' and '_'",
            field=field,
        )
    return cleaned


def validate_folder_name(name: str) -> str:
    """Return the trimmed folder name or raise DocLockValidationError."""
    return _check_charset(name, "name", MAX_FOLDER_NAME_LENGTH)


def validate_label(label: str) -> str:
    """Secure QR labels follow the folder naming rules."""
    return _check_charset(label, "label", MAX_LABEL_LENGTH)


def validate_document_name(name: str) -> str:
    """Document names are free text, trimmed and non-empty."""
    cleaned = name.strip() if name else ""
    if not cleaned:
        raise DocLockValidationError("Document name cannot be empty", field="name")
    if len(cleaned) > 255:
        raise DocLockValidationError("Document name must be at most 255 characters", field="name")
    return cleaned


def is_shared_folder(folder_id: Optional[str]) -> bool:
    return folder_id == SHARED_FOLDER_ID
