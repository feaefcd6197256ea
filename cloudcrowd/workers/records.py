"""Durable pid-file records for worker slots, shared across crowd invocations."""

from __future__ import annotations

import json
import logging
import os
import re
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

import psutil
from pydantic import BaseModel, ValidationError

from cloudcrowd.errors import RecordConflict

logger = logging.getLogger("cloudcrowd.workers.records")

RECORD_PATTERN = re.compile(r"^worker_(\d+)\.pid$")
# psutil derives creation times from clock ticks, so allow for rounding.
CREATE_TIME_TOLERANCE_SECONDS = 1.0


class WorkerRecord(BaseModel):
    id: int
    pid: int
    started_at: datetime
    record_path: Path
    create_time: float | None = None


def process_create_time(pid: int) -> float | None:
    try:
        return psutil.Process(pid).create_time()
    except psutil.Error:
        return None


def _lock_file(handle: Any) -> None:
    if os.name == "nt":
        import msvcrt

        msvcrt.locking(handle.fileno(), msvcrt.LK_LOCK, 1)
    else:
        import fcntl

        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)


def _unlock_file(handle: Any) -> None:
    try:
        if os.name == "nt":
            import msvcrt

            msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
        else:
            import fcntl

            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    finally:
        handle.close()


class DaemonRecordStore:
    """One JSON pid file per slot in a shared pid directory."""

    def __init__(self, pid_dir: Path):
        self.pid_dir = Path(pid_dir)

    def record_path(self, slot: int) -> Path:
        return self.pid_dir / f"worker_{slot}.pid"

    def _lock_path(self, slot: int) -> Path:
        return self.pid_dir / f"worker_{slot}.lock"

    @contextmanager
    def slot_lock(self, slot: int) -> Iterator[None]:
        """Hold the exclusive per-slot lock for register/remove/spawn sequences."""
        self.pid_dir.mkdir(parents=True, exist_ok=True)
        handle = self._lock_path(slot).open("a+", encoding="utf-8")
        _lock_file(handle)
        try:
            yield
        finally:
            _unlock_file(handle)

    def _read(self, path: Path) -> WorkerRecord | None:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Unreadable worker record %s: %s", path, exc)
            return None
        if not isinstance(payload, dict):
            logger.warning("Malformed worker record %s", path)
            return None
        match = RECORD_PATTERN.match(path.name)
        if not match:
            return None
        # The file name owns the slot; a mismatched payload id must not redirect stop/lookup.
        slot = int(match.group(1))
        if payload.get("id", slot) != slot:
            logger.warning("Worker record %s claims slot %s; using %s", path, payload.get("id"), slot)
        payload["id"] = slot
        try:
            return WorkerRecord(record_path=path, **payload)
        except (TypeError, ValidationError) as exc:
            logger.warning("Malformed worker record %s: %s", path, exc)
            return None

    def is_alive(self, record: WorkerRecord) -> bool:
        """True when the recorded pid is still the process that was registered."""
        if record.pid <= 0:
            return False
        try:
            proc = psutil.Process(record.pid)
            if proc.status() == psutil.STATUS_ZOMBIE:
                return False
            if record.create_time is not None:
                if abs(proc.create_time() - record.create_time) > CREATE_TIME_TOLERANCE_SECONDS:
                    logger.debug("PID %s was recycled; worker %s is stale", record.pid, record.id)
                    return False
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            return True
        return True

    def register(self, slot: int, pid: int) -> WorkerRecord:
        """Persist a record for slot, refusing to overwrite a live one."""
        self.pid_dir.mkdir(parents=True, exist_ok=True)
        path = self.record_path(slot)
        record = WorkerRecord(
            id=slot,
            pid=pid,
            started_at=datetime.now(timezone.utc),
            record_path=path,
            create_time=process_create_time(pid),
        )
        payload = {
            "id": record.id,
            "pid": record.pid,
            "started_at": record.started_at.isoformat(),
            "create_time": record.create_time,
        }
        temp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
        temp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        try:
            for _ in range(2):
                try:
                    # link() refuses to replace an existing record and publishes a fully written file.
                    os.link(temp_path, path)
                    logger.info("Registered worker %s (PID: %s)", slot, pid)
                    return record
                except FileExistsError:
                    existing = self._read(path)
                    if existing is not None and self.is_alive(existing):
                        raise RecordConflict(slot, existing.pid)
                    logger.info("Pruning stale record for worker %s", slot)
                    path.unlink(missing_ok=True)
            raise RecordConflict(slot, pid)
        finally:
            temp_path.unlink(missing_ok=True)

    def lookup(self, slot: int) -> WorkerRecord | None:
        """Return the live record for slot; stale or corrupt records are pruned."""
        path = self.record_path(slot)
        if not path.exists():
            return None
        record = self._read(path)
        if record is None or not self.is_alive(record):
            logger.info("Pruning stale record for worker %s", slot)
            path.unlink(missing_ok=True)
            return None
        return record

    def slots(self) -> list[int]:
        """Slot ids of every record file on disk, readable or not."""
        if not self.pid_dir.is_dir():
            return []
        slots = []
        for path in self.pid_dir.iterdir():
            match = RECORD_PATTERN.match(path.name)
            if match:
                slots.append(int(match.group(1)))
        return sorted(slots)

    def all(self) -> list[WorkerRecord]:
        """Every readable record ordered by slot, stale ones included."""
        if not self.pid_dir.is_dir():
            return []
        records: list[WorkerRecord] = []
        for path in self.pid_dir.iterdir():
            match = RECORD_PATTERN.match(path.name)
            if not match:
                continue
            record = self._read(path)
            if record is not None:
                records.append(record)
        return sorted(records, key=lambda item: item.id)

    def remove(self, slot: int) -> None:
        self.record_path(slot).unlink(missing_ok=True)
        logger.debug("Removed record for worker %s", slot)
