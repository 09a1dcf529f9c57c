"""
DocLock Blob Store — binary payloads on the local filesystem.

Layout:
    {blob_root}/users/{owner_id}/{category}/{unique}_{safe_name}

Blobs are addressed by ``blob://`` URLs relative to the root; the stores keep
only the URL in the database.
"""

from __future__ import annotations

import hashlib
import io
import logging
import os
import uuid
from pathlib import Path
from typing import BinaryIO, NamedTuple, Union

from doclock.engine.errors import DocLockNotFoundError, DocLockTransportError

logger = logging.getLogger("doclock.documents.storage")

URL_SCHEME = "blob://"
CHUNK_SIZE = 8192


class StoredBlob(NamedTuple):
    url: str
    size_bytes: int
    sha256: str


class BlobStore:
    def __init__(self, root: Union[str, Path]):
        self._root = Path(root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def put(
        self,
        owner_id: str,
        category: str,
        file_name: str,
        data: Union[bytes, BinaryIO],
    ) -> StoredBlob:
        """Write a payload and return its URL, size and sha256."""
        if isinstance(data, (bytes, bytearray)):
            data = io.BytesIO(data)

        relative = f"users/{owner_id}/{category}/{uuid.uuid4().hex[:12]}_{self._safe_filename(file_name)}"
        physical = self._root / relative
        digest = hashlib.sha256()
        written = 0
        try:
            physical.parent.mkdir(parents=True, exist_ok=True)
            with open(physical, "wb") as f:
                while True:
                    chunk = data.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    f.write(chunk)
                    digest.update(chunk)
                    written += len(chunk)
        except OSError as e:
            if physical.exists():
                physical.unlink()
            raise DocLockTransportError(
                f"Failed to store '{file_name}'",
                user_id=owner_id,
                blob_url=URL_SCHEME + relative,
            ) from e

        logger.info(f"Stored blob {relative} ({written} bytes, sha256={digest.hexdigest()[:12]})")
        return StoredBlob(URL_SCHEME + relative, written, digest.hexdigest())

    def read(self, url: str) -> bytes:
        path = self.path_for(url)
        if not path.is_file():
            raise DocLockNotFoundError(f"Blob not found: {url}", object_ref=url)
        try:
            return path.read_bytes()
        except OSError as e:
            raise DocLockTransportError(f"Failed to read blob {url}", blob_url=url) from e

    def delete(self, url: str) -> bool:
        """Remove a blob. Missing blobs are not an error (returns False)."""
        path = self.path_for(url)
        try:
            if path.exists():
                path.unlink()
                logger.info(f"Deleted blob {url}")
                return True
        except OSError as e:
            logger.error(f"Failed to delete blob {url}: {e}")
        return False

    def exists(self, url: str) -> bool:
        return self.path_for(url).is_file()

    def path_for(self, url: str) -> Path:
        """Physical path of a blob URL. Rejects URLs escaping the root."""
        if not url.startswith(URL_SCHEME):
            raise DocLockNotFoundError(f"Not a blob URL: {url}", object_ref=url)
        path = (self._root / url[len(URL_SCHEME):]).resolve()
        if not path.is_relative_to(self._root):
            raise DocLockNotFoundError(f"Blob URL outside storage root: {url}", object_ref=url)
        return path

    @staticmethod
    def _safe_filename(filename: str) -> str:
        """Strip path components, control characters and leading dots."""
        name = os.path.basename(filename or "")
        name = "".join(c for c in name if c.isprintable() and c not in '<>:"/\\|?*')
        name = name.lstrip(".").replace(" ", "_")
        return name[:120] or "unnamed"
