"""
Backend - persist job state between calls.

The Backend stores:
- Token state records (one per job id)
- Blobs (large values stored out-of-line, keyed by job id + data key)

It knows nothing about stages. Any object providing the Backend methods
can be used; no base class is required.

Storage implementations:
- In-memory (for testing)
- File-based (one JSON record per job, one file per blob)
"""

import json
import logging
import os
import shutil
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, runtime_checkable
from urllib.parse import quote, unquote

from baton.config import BatonConfig
from baton.errors import (
    BlobNotFoundError,
    JobNotFoundError,
    StorageError,
    TokenError,
)
from baton.token import Token

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass
class CleanupReport:
    """
    Outcome of a cleanup sweep.

    Attributes:
        threshold: Records last modified strictly before this were eligible
        removed: Job ids removed by this sweep
        errors: Job id -> error message for records that could not be removed
    """
    threshold: datetime
    removed: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def count(self) -> int:
        return len(self.removed)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "threshold": self.threshold.isoformat(),
            "removed": self.removed,
            "count": self.count,
            "errors": self.errors,
        }


@runtime_checkable
class Backend(Protocol):
    """Persistence capabilities the job engine relies on."""

    def load(self, job_id: str) -> Token:
        """
        Load persisted state.

        Raises:
            JobNotFoundError: If no record exists for job_id
            StorageError: If the record cannot be read
        """
        ...

    def save(self, token: Token) -> None:
        """
        Persist state for token.id, replacing any previous record.

        Raises:
            StorageError: If the write fails
        """
        ...

    def delete(self, job_id: str) -> None:
        """Remove a job's record and all its blobs. Idempotent."""
        ...

    def store_blob(self, job_id: str, key: str, data: bytes) -> None:
        """Store bytes out-of-line for job_id + key."""
        ...

    def fetch_blob(self, job_id: str, key: str) -> bytes:
        """
        Fetch out-of-line bytes.

        Raises:
            BlobNotFoundError: If nothing is stored for job_id + key
        """
        ...

    def delete_blob(self, job_id: str, key: str) -> None:
        """Remove one out-of-line value. Idempotent."""
        ...

    def cleanup(
        self,
        age: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> CleanupReport:
        """Remove jobs last modified strictly before now - age."""
        ...


class InMemoryBackend:
    """
    In-memory implementation of Backend for testing.

    Records are stored in wire form so callers never share mutable state
    with the backend. All data is lost when the instance is garbage collected.
    """

    def __init__(
        self,
        config: Optional[BatonConfig] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.config = config or BatonConfig(backend="memory")
        self._clock = clock
        self._records: dict[str, str] = {}
        self._blobs: dict[str, dict[str, bytes]] = {}
        self._modified: dict[str, datetime] = {}
        self._lock = threading.Lock()

    def load(self, job_id: str) -> Token:
        with self._lock:
            record = self._records.get(job_id)
        if record is None:
            raise JobNotFoundError(job_id)
        return Token.from_json(record)

    def save(self, token: Token) -> None:
        try:
            record = token.to_json()
        except (TypeError, ValueError) as e:
            raise StorageError(f"Job {token.id} data is not JSON serializable: {e}") from e
        with self._lock:
            self._records[token.id] = record
            self._modified[token.id] = self._clock()

    def delete(self, job_id: str) -> None:
        with self._lock:
            self._records.pop(job_id, None)
            self._blobs.pop(job_id, None)
            self._modified.pop(job_id, None)

    def store_blob(self, job_id: str, key: str, data: bytes) -> None:
        with self._lock:
            self._blobs.setdefault(job_id, {})[key] = bytes(data)
            self._modified[job_id] = self._clock()

    def fetch_blob(self, job_id: str, key: str) -> bytes:
        with self._lock:
            try:
                return self._blobs[job_id][key]
            except KeyError:
                raise BlobNotFoundError(job_id, key) from None

    def delete_blob(self, job_id: str, key: str) -> None:
        with self._lock:
            self._blobs.get(job_id, {}).pop(key, None)

    def exists(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._records

    def touch(self, job_id: str, when: datetime) -> None:
        """Override a job's last-modified time (for testing)."""
        with self._lock:
            self._modified[job_id] = when

    def cleanup(
        self,
        age: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> CleanupReport:
        age = self.config.cleanup_age if age is None else age
        threshold = (now or self._clock()) - age
        report = CleanupReport(threshold=threshold)

        with self._lock:
            stale = sorted(
                job_id for job_id, modified in self._modified.items() if modified < threshold
            )
        for job_id in stale:
            self.delete(job_id)
            report.removed.append(job_id)
        return report

    def clear(self) -> None:
        """Clear all stored data (for testing)."""
        with self._lock:
            self._records.clear()
            self._blobs.clear()
            self._modified.clear()


class FileBackend:
    """
    File-based implementation of Backend.

    Stores state in a directory tree:
        base_path/
            jobs/
                {job_id}.json
            blobs/
                {job_id}/
                    {quoted key, leading "." escaped}

    Records are written to a temporary file and renamed into place, so a
    reader never observes a partial record. Last-modified time is the
    newest mtime among the record and the job's blobs.
    """

    def __init__(self, config: Optional[BatonConfig] = None):
        self.config = config or BatonConfig()
        self._base_path = Path(self.config.base_path)
        self._jobs_dir = self._base_path / "jobs"
        self._blobs_dir = self._base_path / "blobs"
        self._ensure_dirs()

    @property
    def base_path(self) -> Path:
        return self._base_path

    def _ensure_dirs(self) -> None:
        """Create the directory structure if needed."""
        try:
            for directory in (self._jobs_dir, self._blobs_dir):
                directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create storage under {self._base_path}: {e}") from e

    @staticmethod
    def _check_id(job_id: str) -> str:
        if not job_id or job_id.startswith(".") or "/" in job_id or "\\" in job_id:
            raise TokenError(f"Job id is not usable as a storage key: {job_id!r}")
        return job_id

    def _record_path(self, job_id: str) -> Path:
        return self._jobs_dir / f"{self._check_id(job_id)}.json"

    def _blob_dir(self, job_id: str) -> Path:
        return self._blobs_dir / self._check_id(job_id)

    @staticmethod
    def _blob_name(key: str) -> str:
        """Filename for a blob key. A leading dot is escaped so "." and ".." stay files."""
        name = quote(key, safe="")
        if name.startswith("."):
            name = "%2E" + name[1:]
        return name

    def _blob_path(self, job_id: str, key: str) -> Path:
        return self._blob_dir(job_id) / self._blob_name(key)

    def _write_atomic(self, path: Path, payload: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def load(self, job_id: str) -> Token:
        path = self._record_path(job_id)
        try:
            text = path.read_text()
        except FileNotFoundError:
            raise JobNotFoundError(job_id) from None
        except OSError as e:
            raise StorageError(f"Cannot read record for job {job_id}: {e}") from e

        try:
            return Token.from_json(text)
        except TokenError as e:
            raise StorageError(f"Corrupt record for job {job_id}: {e}") from e

    def save(self, token: Token) -> None:
        path = self._record_path(token.id)
        try:
            payload = json.dumps(token.to_dict(), indent=2).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise StorageError(f"Job {token.id} data is not JSON serializable: {e}") from e
        try:
            self._write_atomic(path, payload)
        except OSError as e:
            raise StorageError(f"Cannot write record for job {token.id}: {e}") from e
        logger.debug(
            f"Saved job {token.id}",
            extra={"event": "record_saved", "job_id": token.id, "stage": token.stage_name},
        )

    def delete(self, job_id: str) -> None:
        record = self._record_path(job_id)
        blob_dir = self._blob_dir(job_id)
        try:
            record.unlink(missing_ok=True)
            if blob_dir.exists():
                shutil.rmtree(blob_dir)
        except OSError as e:
            raise StorageError(f"Cannot delete job {job_id}: {e}") from e
        logger.debug(f"Deleted job {job_id}", extra={"event": "record_deleted", "job_id": job_id})

    def store_blob(self, job_id: str, key: str, data: bytes) -> None:
        try:
            self._write_atomic(self._blob_path(job_id, key), bytes(data))
        except OSError as e:
            raise StorageError(f"Cannot write blob {job_id}/{key}: {e}") from e

    def fetch_blob(self, job_id: str, key: str) -> bytes:
        try:
            return self._blob_path(job_id, key).read_bytes()
        except FileNotFoundError:
            raise BlobNotFoundError(job_id, key) from None
        except OSError as e:
            raise StorageError(f"Cannot read blob {job_id}/{key}: {e}") from e

    def delete_blob(self, job_id: str, key: str) -> None:
        try:
            self._blob_path(job_id, key).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot delete blob {job_id}/{key}: {e}") from e

    def exists(self, job_id: str) -> bool:
        return self._record_path(job_id).exists()

    def list_jobs(self) -> list[str]:
        """Job ids with a record or blobs on disk."""
        ids = {p.stem for p in self._jobs_dir.glob("*.json") if not p.name.startswith(".")}
        if self._blobs_dir.exists():
            ids.update(
                p.name for p in self._blobs_dir.iterdir() if p.is_dir() and not p.name.startswith(".")
            )
        return sorted(ids)

    def blob_keys(self, job_id: str) -> list[str]:
        """Keys with stored blobs for a job."""
        blob_dir = self._blob_dir(job_id)
        if not blob_dir.exists():
            return []
        return sorted(
            unquote(p.name) for p in blob_dir.iterdir() if p.is_file() and not p.name.startswith(".")
        )

    def last_modified(self, job_id: str) -> Optional[datetime]:
        """Newest mtime across a job's record and blobs, or None if nothing exists."""
        mtimes = []
        record = self._record_path(job_id)
        try:
            mtimes.append(record.stat().st_mtime)
        except FileNotFoundError:
            pass
        blob_dir = self._blob_dir(job_id)
        if blob_dir.exists():
            for path in blob_dir.iterdir():
                try:
                    mtimes.append(path.stat().st_mtime)
                except FileNotFoundError:
                    continue
            if not mtimes:
                mtimes.append(blob_dir.stat().st_mtime)
        if not mtimes:
            return None
        return datetime.fromtimestamp(max(mtimes), tz=timezone.utc)

    def cleanup(
        self,
        age: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> CleanupReport:
        age = self.config.cleanup_age if age is None else age
        threshold = (now or _utcnow()) - age
        report = CleanupReport(threshold=threshold)

        for job_id in self.list_jobs():
            try:
                modified = self.last_modified(job_id)
                if modified is None or modified >= threshold:
                    continue
                self.delete(job_id)
                report.removed.append(job_id)
            except (OSError, StorageError, TokenError) as e:
                report.errors[job_id] = str(e)
                logger.warning(
                    f"Cleanup failed for job {job_id}: {e}",
                    extra={"event": "cleanup_error", "job_id": job_id},
                )
        return report


def get_backend(config: Optional[BatonConfig] = None) -> Backend:
    """Create the backend selected by config.backend."""
    config = config or BatonConfig()
    if config.backend == "memory":
        return InMemoryBackend(config)
    return FileBackend(config)
