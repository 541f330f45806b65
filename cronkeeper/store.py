"""
JSON-backed job store.

The file is the only durability mechanism. Writes are plain overwrites (no
temp file + rename), so a crash mid-write can leave a truncated document.
Edits made by other processes are picked up through a ChangeDetector.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Set, Union

from cronkeeper.errors import LoadError, PersistError
from cronkeeper.models import Job, StoreData

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileStat:
    mtime_ns: int
    size: int


def stat_file(path: Path) -> Optional[FileStat]:
    try:
        info = path.stat()
    except OSError:
        return None
    return FileStat(mtime_ns=info.st_mtime_ns, size=info.st_size)


class ChangeDetector:
    """Decides whether the backing file was modified by someone else."""

    def mark(self, path: Path) -> None:
        """Record the file as in sync with memory (after our write or reload)."""
        raise NotImplementedError

    def changed(self, path: Path) -> bool:
        raise NotImplementedError


class FileStatDetector(ChangeDetector):
    """Compares modification time and size against the last recorded values.

    Coarse: an edit that keeps both mtime and size is missed, and a bare
    touch triggers a reload. A missing file is never reported as changed.
    """

    def __init__(self) -> None:
        self._last: Optional[FileStat] = None

    def mark(self, path: Path) -> None:
        self._last = stat_file(path)

    def changed(self, path: Path) -> bool:
        current = stat_file(path)
        if current is None:
            return False
        return current != self._last


class JobStore:
    """In-memory mirror of the jobs file. Callers provide locking."""

    def __init__(self, path: Union[Path, str], detector: Optional[ChangeDetector] = None) -> None:
        self.path = Path(path)
        self.detector = detector if detector is not None else FileStatDetector()
        self.data = StoreData()

    @property
    def jobs(self) -> List[Job]:
        return self.data.jobs

    def load(self) -> StoreData:
        """Replace the in-memory jobs with the file contents.

        A missing file gives an empty store. On LoadError the previous
        in-memory jobs are left untouched.
        """
        if not self.path.exists():
            self.data = StoreData()
            return self.data

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            data = StoreData.from_payload(raw)
        except (OSError, UnicodeDecodeError) as exc:
            raise LoadError(f"Failed to read job store {self.path}: {exc}") from exc
        except (ValueError, RecursionError) as exc:
            raise LoadError(f"Failed to parse job store {self.path}: {exc}") from exc

        data.jobs = self._dedupe(data.jobs)
        self.data = data
        return self.data

    def _dedupe(self, jobs: List[Job]) -> List[Job]:
        seen: Set[str] = set()
        unique: List[Job] = []
        for job in jobs:
            if job.id in seen:
                logger.warning("Dropping duplicate job id %s (%s) from %s", job.id, job.name, self.path)
                continue
            seen.add(job.id)
            unique.append(job)
        return unique

    def save(self) -> None:
        text = json.dumps(self.data.to_payload(), indent=2, ensure_ascii=False) + "\n"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(text, encoding="utf-8")
        except OSError as exc:
            raise PersistError(f"Failed to write job store {self.path}: {exc}") from exc
        self.detector.mark(self.path)

    def reconcile_if_changed(self) -> bool:
        """Reload when the detector reports an outside edit.

        Returns True if a reload happened. The file is marked as seen even
        when the reload raises LoadError, so a broken file is parsed once
        per edit rather than once per tick.
        """
        if not self.detector.changed(self.path):
            return False
        try:
            self.load()
        finally:
            self.detector.mark(self.path)
        return True

    def mark_synced(self) -> None:
        self.detector.mark(self.path)

    def find(self, job_id: str) -> Optional[Job]:
        for job in self.data.jobs:
            if job.id == job_id:
                return job
        return None

    def has_id(self, job_id: str) -> bool:
        return self.find(job_id) is not None

    def append(self, job: Job) -> None:
        self.data.jobs.append(job)

    def remove(self, job_id: str) -> bool:
        before = len(self.data.jobs)
        self.data.jobs = [job for job in self.data.jobs if job.id != job_id]
        return len(self.data.jobs) < before
