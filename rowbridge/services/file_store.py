"""Transient storage of uploaded file content.

Three places hold a file between upload and import:

- the operator's session storage (quota-bounded, see ``SessionManager``),
  which keeps a :class:`FileSessionRecord` in the best shape that fits;
- :class:`TempContentCache`, an in-memory single-use copy of the full text;
- :class:`LocalFileCache`, JSON files on local disk that expire after a day.
"""

import fcntl
import json
import logging
import os
import re
import time
from pathlib import Path
from typing import Dict, Optional

from rowbridge.core.config import settings
from rowbridge.core.errors import StorageQuotaExceeded
from rowbridge.core.metrics import metrics
from rowbridge.core.session import SessionManager
from rowbridge.models.import_models import FileSessionRecord, OperatorInfo
from rowbridge.services.csv_parser import split_lines

logger = logging.getLogger(__name__)

FILE_SESSION_KEY = "uploaded_file"
TRUNCATION_MARKER = "[...CONTENT_TRUNCATED_FOR_STORAGE...]"


def cache_key(record: FileSessionRecord) -> str:
    if record.record_id is not None:
        return str(record.record_id)
    return re.sub(r"[^A-Za-z0-9_.-]", "_", record.file_name)


class TempContentCache:
    """Full file text held in memory until the import takes it."""

    def __init__(self):
        self._content: Dict[str, str] = {}

    def put(self, key: str, content: str) -> None:
        self._content[key] = content
        logger.debug(f"Cached {len(content)} chars in memory for {key}")

    def pop(self, key: str) -> Optional[str]:
        """Return and forget the content for ``key``."""
        return self._content.pop(key, None)

    def discard(self, key: str) -> None:
        self._content.pop(key, None)

    def clear(self) -> None:
        self._content.clear()


class LocalFileCache:
    """Full file text persisted on local disk, one JSON document per entry."""

    def __init__(self, directory: Optional[str] = None, max_age_seconds: Optional[int] = None):
        self.directory = Path(directory or settings.local_cache_dir)
        self.max_age_seconds = (
            max_age_seconds if max_age_seconds is not None else settings.local_cache_max_age_seconds
        )

    def _ensure_directory(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)

    def save(self, key: str, name: str, content: str, url: Optional[str] = None) -> str:
        """Store ``content`` for ``key`` and return the entry id."""
        self._ensure_directory()
        timestamp = time.time()
        entry_id = f"file_{key}_{int(timestamp * 1000)}"
        document = {
            "id": entry_id,
            "content": content,
            "metadata": {
                "name": name,
                "size": len(content.encode("utf-8")),
                "record_id": key,
                "timestamp": timestamp,
                "url": url,
            },
        }
        path = self.directory / f"{entry_id}.json"
        with open(path, "w", encoding="utf-8") as f:
            fcntl.flock(f, fcntl.LOCK_EX)
            try:
                json.dump(document, f)
                f.flush()
                os.fsync(f.fileno())
            finally:
                fcntl.flock(f, fcntl.LOCK_UN)
        logger.info(f"Saved {name} to local file cache as {entry_id}")
        return entry_id

    def _read(self, path: Path) -> Optional[dict]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                fcntl.flock(f, fcntl.LOCK_SH)
                try:
                    return json.load(f)
                finally:
                    fcntl.flock(f, fcntl.LOCK_UN)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Unreadable cache entry {path.name}: {e}")
            return None

    def _entries(self, key: Optional[str] = None):
        if not self.directory.exists():
            return
        prefix = f"file_{key}_" if key is not None else "file_"
        for path in self.directory.glob(f"{prefix}*.json"):
            document = self._read(path)
            if document is None:
                continue
            if key is not None and document.get("metadata", {}).get("record_id") != key:
                continue
            yield path, document

    def latest(self, key: str) -> Optional[str]:
        """Content of the most recent entry for ``key``."""
        newest = None
        for _, document in self._entries(key):
            if newest is None or document["metadata"]["timestamp"] > newest["metadata"]["timestamp"]:
                newest = document
        return newest["content"] if newest else None

    def remove(self, key: str) -> int:
        removed = 0
        for path, _ in list(self._entries(key)):
            path.unlink(missing_ok=True)
            removed += 1
        return removed

    def cleanup_old_files(self) -> int:
        """Delete entries older than ``max_age_seconds``; returns how many."""
        cutoff = time.time() - self.max_age_seconds
        removed = 0
        for path, document in list(self._entries()):
            if document.get("metadata", {}).get("timestamp", 0) < cutoff:
                path.unlink(missing_ok=True)
                removed += 1
        if removed:
            logger.info(f"Removed {removed} expired local file cache entries")
        return removed


def optimize_content(content: str) -> Optional[str]:
    """Head and tail of a long file joined by the truncation marker.

    Returns None for files too short to be worth shortening.
    """
    lines = content.split("\n")
    if len(lines) <= settings.optimize_min_lines:
        return None
    head = "\n".join(lines[: settings.optimize_head_lines])
    tail = "\n".join(lines[-settings.optimize_tail_lines:])
    return f"{head}\n\n{TRUNCATION_MARKER}\n\n{tail}"


def strip_truncation_marker(content: str) -> str:
    return content.replace(f"\n\n{TRUNCATION_MARKER}\n\n", "\n").replace(TRUNCATION_MARKER, "")


class FileSessionStore:
    """Reads and writes the session's :class:`FileSessionRecord`."""

    def __init__(
        self,
        sessions: SessionManager,
        memory_cache: TempContentCache,
        local_cache: LocalFileCache,
    ):
        self.sessions = sessions
        self.memory_cache = memory_cache
        self.local_cache = local_cache

    def _write(self, session: dict, record: FileSessionRecord) -> None:
        self.sessions.storage_set(session, FILE_SESSION_KEY, record.model_dump_json())

    def store(
        self,
        session: dict,
        file_name: str,
        content: str,
        original_size: int,
        record_id: Optional[int] = None,
        file_url: Optional[str] = None,
        mime_type: Optional[str] = None,
        operator: Optional[OperatorInfo] = None,
    ) -> FileSessionRecord:
        """
        Store the file in the best shape that fits the session quota.

        Shapes are tried in order: full content, head+tail excerpt (files over
        ``optimize_min_lines`` lines only), the first ``header_only_lines``
        lines, and finally no content at all. Whenever the stored shape is
        not the full text, the full text also goes to the in-memory and local
        file caches.
        """
        total_lines = len(split_lines(content))
        base = FileSessionRecord(
            file_name=file_name,
            original_size=original_size,
            total_lines=total_lines,
            record_id=record_id,
            file_url=file_url,
            mime_type=mime_type,
            operator=operator,
            is_large_file=original_size > settings.large_file_bytes,
        )

        candidates = [base.model_copy(update={"content": content})]
        optimized = optimize_content(content)
        if optimized is not None:
            candidates.append(
                base.model_copy(
                    update={
                        "content": optimized,
                        "is_optimized": True,
                        "storage_warning": "Stored a shortened copy; full content is recovered at import time",
                    }
                )
            )
        header = "\n".join(content.split("\n")[: settings.header_only_lines])
        candidates.append(
            base.model_copy(
                update={
                    "content": header,
                    "is_header_only": True,
                    "storage_warning": "Only the header fits session storage; rows are read from the original file",
                }
            )
        )
        candidates.append(
            base.model_copy(
                update={
                    "requires_reupload": True,
                    "storage_warning": "File too large to keep; it must be uploaded again before importing",
                }
            )
        )

        stored = None
        for candidate in candidates:
            try:
                self._write(session, candidate)
            except StorageQuotaExceeded as e:
                logger.info(
                    f"Session storage rejected {candidate.shape} copy of {file_name}",
                    extra={"needed": e.needed, "available": e.available},
                )
                continue
            stored = candidate
            break

        if stored is None:
            # Drop stale data and retry the smallest shape once
            self.sessions.storage_remove(session, FILE_SESSION_KEY)
            stored = candidates[-1]
            self._write(session, stored)

        if stored.shape != "full" or stored.is_large_file:
            key = cache_key(stored)
            self.memory_cache.put(key, content)
            try:
                self.local_cache.save(key, file_name, content, file_url)
            except OSError as e:
                logger.warning(f"Local file cache unavailable: {e}")

        metrics.record_file_session(stored.shape)
        logger.info(
            f"Stored {file_name} in session as {stored.shape}",
            extra={"total_lines": total_lines, "original_size": original_size},
        )
        return stored

    def load(self, session: dict) -> Optional[FileSessionRecord]:
        raw = self.sessions.storage_get(session, FILE_SESSION_KEY)
        if raw is None:
            return None
        return FileSessionRecord.model_validate_json(raw)

    def clear(self, session: dict, record: Optional[FileSessionRecord] = None) -> None:
        """Forget the session record and every cached copy of its content."""
        record = record or self.load(session)
        self.sessions.storage_remove(session, FILE_SESSION_KEY)
        if record is not None:
            key = cache_key(record)
            self.memory_cache.discard(key)
            try:
                self.local_cache.remove(key)
            except OSError as e:
                logger.warning(f"Could not clear local file cache for {key}: {e}")
