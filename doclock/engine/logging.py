"""
DocLock Audit Logging — Structured JSONL audit files with an async queue.

Implements:
- FileLogger: per-object-type, per-category files, one per day
  (logs/{object_type}/{category}/{YYYY-MM-DD}.jsonl)
- AsyncLogQueue: non-blocking push, background flush thread
- Entry builders for vault events (folders, documents, shares, QR, auth)
- LogRetentionManager: gzip old files, delete expired ones

Operational messages go through stdlib ``logging`` loggers named
``doclock.<module>``; this module is for the audit trail only.
"""

from __future__ import annotations

import gzip
import json
import logging
import shutil
import threading
import time
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from queue import Empty, Full, Queue
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger("doclock.engine.logging")

OBJECT_TYPE_CATEGORIES = {
    "folders": ["execution", "security"],
    "documents": ["execution", "security"],
    "shares": ["execution", "security"],
    "secure_qrs": ["execution", "security"],
    "cards": ["execution", "security"],
    "friends": ["execution"],
    "notifications": ["execution"],
    "auth": ["execution", "security"],
    "system": ["execution"],
}

DEFAULT_RETENTION = {
    "execution": 90,
    "security": 365,
}


class LogEntry:
    """A structured audit entry destined for one file."""

    __slots__ = ("object_type", "category", "data")

    def __init__(self, object_type: str, category: str, data: Dict[str, Any]):
        if object_type not in OBJECT_TYPE_CATEGORIES:
            object_type = "system"
        if category not in OBJECT_TYPE_CATEGORIES[object_type]:
            category = "execution"
        self.object_type = object_type
        self.category = category
        self.data = data

    def to_json(self) -> str:
        return json.dumps(self.data, default=str, separators=(",", ":"))


class FileLogger:
    """
    Appends JSONL entries under log_dir. Thread-safe (one lock per file).
    """

    def __init__(self, log_dir: str = "logs"):
        self._log_dir = Path(log_dir)
        self._file_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        for obj_type, categories in OBJECT_TYPE_CATEGORIES.items():
            for cat in categories:
                (self._log_dir / obj_type / cat).mkdir(parents=True, exist_ok=True)

    @property
    def log_dir(self) -> Path:
        return self._log_dir

    def _resolve_path(self, object_type: str, category: str, day: Optional[date] = None) -> Path:
        day = day or date.today()
        return self._log_dir / object_type / category / f"{day.isoformat()}.jsonl"

    def write(self, entry: LogEntry) -> None:
        self.write_batch([entry])

    def write_batch(self, entries: List[LogEntry]) -> None:
        """Write entries, opening each target file once."""
        grouped: Dict[str, List[LogEntry]] = defaultdict(list)
        for entry in entries:
            grouped[str(self._resolve_path(entry.object_type, entry.category))].append(entry)

        for file_path, batch in grouped.items():
            with self._file_locks[file_path]:
                with open(file_path, "a", encoding="utf-8") as f:
                    f.writelines(e.to_json() + "\n" for e in batch)

    def query(
        self,
        object_type: str,
        category: str,
        *,
        days: int = 7,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 500,
    ) -> List[Dict[str, Any]]:
        """
        Read back entries for the last ``days`` days, newest first.

        ``filters`` keeps only entries whose top-level keys equal the given values.
        Rotated ``.jsonl.gz`` files are read too.
        """
        base = self._log_dir / object_type / category
        if not base.exists():
            return []

        results: List[Dict[str, Any]] = []
        day = date.today()
        oldest = day - timedelta(days=days)
        while day >= oldest and len(results) < limit:
            plain = self._resolve_path(object_type, category, day)
            day_entries = list(self._read_lines(plain, filters))
            day_entries.extend(self._read_lines(plain.with_suffix(".jsonl.gz"), filters))
            # Lines are chronological within a day
            day_entries.reverse()
            results.extend(day_entries[: limit - len(results)])
            day -= timedelta(days=1)
        return results

    @staticmethod
    def _read_lines(path: Path, filters: Optional[Dict[str, Any]]) -> Iterator[Dict[str, Any]]:
        if not path.exists():
            return
        opener = gzip.open if path.suffix == ".gz" else open
        try:
            with opener(path, "rt", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if filters and not all(data.get(k) == v for k, v in filters.items()):
                        continue
                    yield data
        except OSError as exc:
            logger.warning("Could not read log file %s: %s", path, exc)


class AsyncLogQueue:
    """
    In-memory queue drained by a background thread.

    The thread writes whenever flush_batch_size entries are waiting or
    flush_interval_ms has elapsed, whichever comes first.
    """

    def __init__(
        self,
        file_logger: FileLogger,
        flush_interval_ms: int = 100,
        flush_batch_size: int = 50,
        max_queue_size: int = 10000,
    ):
        self._logger = file_logger
        self._flush_interval = flush_interval_ms / 1000.0
        self._flush_batch_size = flush_batch_size
        self._queue: Queue[LogEntry] = Queue(maxsize=max_queue_size)
        self._running = False
        self._flush_thread: Optional[threading.Thread] = None
        self._dropped_count = 0

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._flush_thread = threading.Thread(
            target=self._flush_loop,
            name="doclock-log-flush",
            daemon=True,
        )
        self._flush_thread.start()
        logger.info("Audit log queue started")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the flush thread, then write whatever is still queued."""
        self._running = False
        if self._flush_thread and self._flush_thread.is_alive():
            self._flush_thread.join(timeout=timeout)
        self._write(self._take(self._queue.qsize()))
        logger.info(f"Audit log queue stopped (dropped: {self._dropped_count})")

    def push(self, entry: LogEntry) -> bool:
        """Queue an entry without blocking. False if the queue is full."""
        try:
            self._queue.put_nowait(entry)
            return True
        except Full:
            self._dropped_count += 1
            return False

    def _flush_loop(self) -> None:
        while self._running:
            batch = self._collect_batch()
            if batch:
                self._write(batch)
            else:
                time.sleep(self._flush_interval)

    def _collect_batch(self) -> List[LogEntry]:
        batch: List[LogEntry] = []
        deadline = time.monotonic() + self._flush_interval
        while len(batch) < self._flush_batch_size:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                batch.append(self._queue.get(timeout=min(remaining, 0.01)))
            except Empty:
                if batch:
                    break
        return batch

    def _take(self, count: int) -> List[LogEntry]:
        batch: List[LogEntry] = []
        for _ in range(count):
            try:
                batch.append(self._queue.get_nowait())
            except Empty:
                break
        return batch

    def _write(self, batch: List[LogEntry]) -> None:
        if not batch:
            return
        try:
            self._logger.write_batch(batch)
        except OSError as e:
            logger.error(f"Audit log flush error: {e}")

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def pending_count(self) -> int:
        return self._queue.qsize()

    @property
    def dropped_count(self) -> int:
        return self._dropped_count


# ---------------------------------------------------------------------------
# Log Entry Builders
# ---------------------------------------------------------------------------

def _base_entry(
    event: str,
    level: str,
    object_ref: str,
    user_id: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    entry: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": level,
        "event": event,
        "object_ref": object_ref,
    }
    if user_id is not None:
        entry["user_id"] = user_id
    entry.update({k: v for k, v in extra.items() if v is not None})
    return entry


def log_folder_operation(
    operation: str,
    folder_id: str,
    user_id: str,
    name: Optional[str] = None,
    parent_folder_id: Optional[str] = None,
    depth: Optional[int] = None,
    deleted_folders: Optional[int] = None,
    deleted_documents: Optional[int] = None,
) -> LogEntry:
    """Build a folder create/rename/delete entry."""
    data = _base_entry(
        event=f"folder_{operation}",
        level="INFO",
        object_ref=f"folders/{folder_id}",
        user_id=user_id,
        name=name,
        parent_folder_id=parent_folder_id,
        depth=depth,
        deleted_folders=deleted_folders,
        deleted_documents=deleted_documents,
    )
    return LogEntry("folders", "execution", data)


def log_document_operation(
    operation: str,
    document_id: str,
    user_id: str,
    name: Optional[str] = None,
    doc_type: Optional[str] = None,
    size_bytes: Optional[int] = None,
    folder_id: Optional[str] = None,
    success: bool = True,
    error: Optional[str] = None,
) -> LogEntry:
    """Build a document upload/rename/delete/read entry."""
    data = _base_entry(
        event=f"document_{operation}",
        level="INFO" if success else "ERROR",
        object_ref=f"documents/{document_id}",
        user_id=user_id,
        name=name,
        type=doc_type,
        size_bytes=size_bytes,
        folder_id=folder_id,
        success=success,
        error=error,
    )
    return LogEntry("documents", "execution", data)


def log_share_event(
    event: str,
    item_type: str,
    item_id: str,
    owner_id: str,
    grantee_id: str,
) -> LogEntry:
    """Build a share granted/revoked entry. Shares are security-relevant."""
    data = _base_entry(
        event=event,
        level="INFO",
        object_ref=f"{item_type}s/{item_id}",
        user_id=owner_id,
        item_type=item_type,
        grantee_id=grantee_id,
    )
    return LogEntry("shares", "security", data)


def log_secure_qr_operation(
    operation: str,
    qr_id: str,
    user_id: str,
    label: Optional[str] = None,
    document_count: Optional[int] = None,
    added: Optional[List[str]] = None,
    removed: Optional[List[str]] = None,
) -> LogEntry:
    """Build a Secure QR create/update/delete/resolve entry."""
    data = _base_entry(
        event=f"secure_qr_{operation}",
        level="INFO",
        object_ref=f"secure_qrs/{qr_id}",
        user_id=user_id,
        label=label,
        document_count=document_count,
        added=added or None,
        removed=removed or None,
    )
    return LogEntry("secure_qrs", "execution", data)


def log_card_operation(operation: str, card_id: str, user_id: str) -> LogEntry:
    """Build a card entry. Card fields are never written to logs."""
    data = _base_entry(
        event=f"card_{operation}",
        level="INFO",
        object_ref=f"cards/{card_id}",
        user_id=user_id,
    )
    return LogEntry("cards", "security", data)


def log_auth_event(
    event: str,
    mobile: Optional[str],
    user_id: Optional[str],
    success: bool,
    device_id: Optional[str] = None,
    failure_reason: Optional[str] = None,
) -> LogEntry:
    """Build a login/signup/MPIN change entry."""
    data = _base_entry(
        event=event,
        level="INFO" if success else "WARNING",
        object_ref=f"auth/{mobile or user_id}",
        user_id=user_id,
        success=success,
        device_id=device_id,
        failure_reason=failure_reason,
    )
    return LogEntry("auth", "security" if not success else "execution", data)


def log_system_event(
    event: str,
    level: str = "INFO",
    details: Optional[Dict[str, Any]] = None,
) -> LogEntry:
    """Build a system event entry (startup, shutdown, cleanup)."""
    data = _base_entry(event=event, level=level, object_ref="system", details=details)
    return LogEntry("system", "execution", data)


# ---------------------------------------------------------------------------
# Log Cleanup / Retention
# ---------------------------------------------------------------------------

class LogRetentionManager:
    """
    Deletes audit files older than their category's retention and gzips
    files older than compress_after_days.
    """

    def __init__(
        self,
        log_dir: str = "logs",
        retention_days: Optional[Dict[str, int]] = None,
        compress_after_days: int = 7,
    ):
        self._log_dir = Path(log_dir)
        self._retention = retention_days or DEFAULT_RETENTION.copy()
        self._compress_after = compress_after_days

    def cleanup(self, today: Optional[date] = None) -> Dict[str, int]:
        """Returns {"deleted": N, "compressed": M}."""
        today = today or date.today()
        deleted = 0
        compressed = 0

        for obj_type, categories in OBJECT_TYPE_CATEGORIES.items():
            for cat in categories:
                cat_dir = self._log_dir / obj_type / cat
                if not cat_dir.exists():
                    continue
                retention = self._retention.get(cat, DEFAULT_RETENTION["execution"])

                for file_path in sorted(cat_dir.iterdir()):
                    file_date = self._parse_file_date(file_path)
                    if file_date is None:
                        continue
                    age_days = (today - file_date).days
                    if age_days > retention:
                        file_path.unlink()
                        deleted += 1
                    elif age_days > self._compress_after and file_path.suffix == ".jsonl":
                        if self._compress_file(file_path):
                            compressed += 1

        result = {"deleted": deleted, "compressed": compressed}
        logger.info(f"Audit log cleanup: {result}")
        return result

    @staticmethod
    def _parse_file_date(file_path: Path) -> Optional[date]:
        """2026-02-12.jsonl or 2026-02-12.jsonl.gz -> date."""
        if not file_path.is_file():
            return None
        try:
            return date.fromisoformat(file_path.name.split(".")[0])
        except ValueError:
            return None

    @staticmethod
    def _compress_file(file_path: Path) -> bool:
        gz_path = file_path.with_suffix(file_path.suffix + ".gz")
        try:
            with open(file_path, "rb") as f_in, gzip.open(gz_path, "wb") as f_out:
                shutil.copyfileobj(f_in, f_out)
            file_path.unlink()
            return True
        except OSError as e:
            logger.error(f"Failed to compress {file_path}: {e}")
            if gz_path.exists():
                gz_path.unlink()
            return False


# ---------------------------------------------------------------------------
# Global Log Queue Singleton
# ---------------------------------------------------------------------------

_global_queue: Optional[AsyncLogQueue] = None


def init_logging(
    log_dir: str = "logs",
    flush_interval_ms: int = 100,
    flush_batch_size: int = 50,
    max_queue_size: int = 10000,
) -> AsyncLogQueue:
    """Initialize and start the global audit queue."""
    global _global_queue
    if _global_queue is not None:
        _global_queue.stop()
    _global_queue = AsyncLogQueue(
        file_logger=FileLogger(log_dir=log_dir),
        flush_interval_ms=flush_interval_ms,
        flush_batch_size=flush_batch_size,
        max_queue_size=max_queue_size,
    )
    _global_queue.start()
    return _global_queue


def get_log_queue() -> Optional[AsyncLogQueue]:
    return _global_queue


def log(entry: LogEntry) -> bool:
    """Push an audit entry to the global queue. Non-blocking."""
    if _global_queue is None:
        logger.debug(f"Audit queue not initialized, dropped {entry.data.get('event')}")
        return False
    return _global_queue.push(entry)


def shutdown_logging() -> None:
    """Flush and stop the global audit queue."""
    global _global_queue
    if _global_queue:
        _global_queue.stop()
        _global_queue = None
