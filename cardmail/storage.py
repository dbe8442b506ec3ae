"""
Job snapshot persistence.

A simple keyed JSON store: one document per job id. Only the JobStore
talks to it.
"""

import json
import logging
import os
import queue
import re
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]+$")


class SnapshotStore(Protocol):
    def persist_job_snapshot(self, snapshot: Dict[str, Any]) -> None: ...

    def load_job_snapshot(self, job_id: str) -> Optional[Dict[str, Any]]: ...

    def flush(self) -> None: ...


# -------------------------------------------------
# In-memory store (tests, local dev)
# -------------------------------------------------
class InMemorySnapshotStore:
    def __init__(self):
        self._snapshots: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def persist_job_snapshot(self, snapshot: Dict[str, Any]) -> None:
        with self._lock:
            self._snapshots[snapshot["job_id"]] = json.loads(json.dumps(snapshot))

    def load_job_snapshot(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            data = self._snapshots.get(job_id)
            return json.loads(json.dumps(data)) if data is not None else None

    def flush(self) -> None:
        pass


# -------------------------------------------------
# JSON file store
# -------------------------------------------------
class JsonSnapshotStore:
    """Stores each job snapshot as ``<folder>/<job_id>.json``.

    Writes happen on a single background thread in the order they were
    persisted, so callers holding locks never wait on the disk. Until a
    snapshot is on disk, load_job_snapshot answers from the pending copy.
    """

    def __init__(self, folder: str = "./snapshots"):
        self.folder = Path(folder)
        self.folder.mkdir(parents=True, exist_ok=True)
        self._file_lock = threading.Lock()
        self._pending_lock = threading.Lock()
        self._unwritten: Dict[str, Dict[str, Any]] = {}
        self._queue: "queue.Queue[str]" = queue.Queue()
        self._writer = threading.Thread(target=self._write_loop, name="snapshot-writer", daemon=True)
        self._writer.start()

    def _path(self, job_id: str) -> Path:
        if not _SAFE_ID.match(job_id):
            raise ValueError(f"Invalid job id: {job_id!r}")
        return self.folder / f"{job_id}.json"

    def persist_job_snapshot(self, snapshot: Dict[str, Any]) -> None:
        job_id = snapshot["job_id"]
        self._path(job_id)
        with self._pending_lock:
            self._unwritten[job_id] = json.loads(json.dumps(snapshot))
        self._queue.put(job_id)

    def load_job_snapshot(self, job_id: str) -> Optional[Dict[str, Any]]:
        try:
            path = self._path(job_id)
        except ValueError:
            return None
        with self._pending_lock:
            data = self._unwritten.get(job_id)
            if data is not None:
                return json.loads(json.dumps(data))
        with self._file_lock:
            if not path.exists():
                return None
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)

    def flush(self) -> None:
        """Block until every persisted snapshot has been written."""
        self._queue.join()

    def _write_loop(self) -> None:
        while True:
            job_id = self._queue.get()
            try:
                with self._pending_lock:
                    snapshot = self._unwritten.get(job_id)
                # Already written by an earlier queue entry for the same job
                if snapshot is None:
                    continue
                self._write(snapshot)
                with self._pending_lock:
                    if self._unwritten.get(job_id) is snapshot:
                        del self._unwritten[job_id]
            except OSError as e:
                logger.error(f"Failed to write snapshot for {job_id}: {e}")
            finally:
                self._queue.task_done()

    def _write(self, snapshot: Dict[str, Any]) -> None:
        path = self._path(snapshot["job_id"])
        tmp_path = path.with_suffix(".json.tmp")
        with self._file_lock:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(snapshot, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, path)
        logger.debug(f"Persisted snapshot for {snapshot['job_id']} ({snapshot['status']})")
