"""
Persistent store for the last-applied resource records.

The state file is JSON, versioned and written atomically (temp file +
os.replace) after every record change, so an interrupted apply leaves the
records of every node that did finish.  A lock file next to the state file
keeps two runs from reconciling the same state at once.
"""
import json
import logging
import os
import shutil
import socket
import tempfile
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from converge.errors import StateError, StateLockedError
from converge.models.state import AppliedRecord, StateSnapshot

logger = logging.getLogger(__name__)


class StateStore:
    def __init__(self, path: Optional[str] = None):
        """*path* None keeps the state in memory only."""
        self.path = path
        self.snapshot = self._load()
        self._write_lock = threading.Lock()
        self._guard = threading.Lock()
        self._node_locks: Dict[str, threading.RLock] = {}

    @property
    def lock_path(self) -> Optional[str]:
        return f"{self.path}.lock" if self.path else None

    @property
    def backup_path(self) -> Optional[str]:
        return f"{self.path}.backup" if self.path else None

    # ------------------------------------------------------------------ loading
    def _load(self) -> StateSnapshot:
        if not self.path or not os.path.exists(self.path):
            return StateSnapshot(lineage=str(uuid.uuid4()))
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except ValueError as exc:
            raise StateError(f"state file {self.path} is not valid JSON: {exc}") from exc
        except OSError as exc:
            raise StateError(f"cannot read state file {self.path}: {exc}") from exc
        snapshot = StateSnapshot.from_dict(data)
        logger.debug("loaded %d record(s) from %s (serial %d)", len(snapshot.resources), self.path, snapshot.serial)
        return snapshot

    def reload(self) -> None:
        """Re-read the state file, picking up writes made by another run."""
        if not self.path:
            return
        with self._write_lock:
            self.snapshot = self._load()

    # ------------------------------------------------------------------ reads
    def get(self, address: str) -> Optional[AppliedRecord]:
        return self.snapshot.resources.get(address)

    def records(self) -> List[AppliedRecord]:
        return sorted(self.snapshot.resources.values(), key=lambda r: (r.order, r.address))

    def __contains__(self, address: object) -> bool:
        return address in self.snapshot.resources

    def __len__(self) -> int:
        return len(self.snapshot.resources)

    # ------------------------------------------------------------------ writes
    @contextmanager
    def node_lock(self, address: str) -> Iterator[None]:
        """Hold the per-node lock; released on completion or failure."""
        with self._guard:
            lock = self._node_locks.setdefault(address, threading.RLock())
        with lock:
            yield

    def put(self, record: AppliedRecord) -> None:
        with self.node_lock(record.address):
            with self._write_lock:
                self.snapshot.resources[record.address] = record
                self._persist()

    def remove(self, address: str) -> None:
        with self.node_lock(address):
            with self._write_lock:
                if self.snapshot.resources.pop(address, None) is not None:
                    self._persist()

    def set_outputs(self, outputs: Dict[str, Any]) -> None:
        with self._write_lock:
            self.snapshot.outputs = dict(outputs)
            self._persist()

    def _persist(self) -> None:
        self.snapshot.serial += 1
        if not self.path:
            return
        data = self.snapshot.to_dict()
        data["resources"] = [r.to_dict() for r in self.records()]
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=directory, prefix=".state-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as fh:
                json.dump(data, fh, indent=2, sort_keys=False)
                fh.write("\n")
            if os.path.exists(self.path):
                shutil.copy2(self.path, self.backup_path)
            os.replace(tmp, self.path)
        except OSError as exc:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise StateError(f"cannot write state file {self.path}: {exc}") from exc

    # ------------------------------------------------------------------ run lock
    @contextmanager
    def run_lock(self, operation: str = "apply") -> Iterator[None]:
        """Exclusive lock for the duration of a run; no-op for in-memory state."""
        lock_path = self.lock_path
        if lock_path is None:
            yield
            return
        info = {
            "id": str(uuid.uuid4()),
            "operation": operation,
            "who": f"{os.getpid()}@{socket.gethostname()}",
            "created": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        }
        directory = os.path.dirname(os.path.abspath(lock_path))
        os.makedirs(directory, exist_ok=True)
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            raise StateLockedError(lock_path, self._lock_holder()) from None
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(info, fh)
        try:
            yield
        finally:
            if os.path.exists(lock_path):
                os.unlink(lock_path)

    def _lock_holder(self) -> Optional[str]:
        try:
            with open(self.lock_path, "r", encoding="utf-8") as fh:
                info = json.load(fh)
            return f"{info.get('who')} ({info.get('operation')}, since {info.get('created')})"
        except (OSError, ValueError):
            return None

    def force_unlock(self) -> bool:
        """Remove a stale lock file; returns False when there was none."""
        if self.lock_path and os.path.exists(self.lock_path):
            os.unlink(self.lock_path)
            return True
        return False
