"""
Persistence of learning state.

Serializes snapshots through an explicit schema, writes them off the
calling thread and retries failed writes with bounded exponential
backoff. Snapshots that still fail after ``max_retries`` retries are
dropped: that is the engine's data-loss boundary.
"""
from __future__ import annotations

import json
import logging
import shutil
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = "1.0"

# Errors a backend may raise for an unreachable or corrupt store
PERSISTENCE_ERRORS = (OSError, ValueError, TypeError)


@dataclass
class LearningSnapshot:
    """
    Full image of the engine's learning state.

    Attributes:
        epsilon: Shared exploration rate (None when never persisted)
        entities: Entity id -> serialized LearningState payload
        timestamp: Epoch seconds when the snapshot was taken
    """
    epsilon: Optional[float] = None
    entities: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @property
    def is_empty(self) -> bool:
        return self.epsilon is None and not self.entities

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": SNAPSHOT_VERSION,
            "epsilon": self.epsilon,
            "timestamp": self.timestamp,
            "learning_data": self.entities,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LearningSnapshot":
        """
        Validate and decode a persisted payload.

        Raises:
            ValueError: On version mismatch or malformed structure
        """
        if not isinstance(data, dict):
            raise ValueError(f"Snapshot must be an object, got {type(data).__name__}")
        version = data.get("version")
        if version != SNAPSHOT_VERSION:
            raise ValueError(f"Incompatible snapshot version: {version!r}")
        entities = data.get("learning_data") or {}
        if not isinstance(entities, dict):
            raise ValueError("Snapshot learning_data must be an object")
        epsilon = data.get("epsilon")
        return cls(
            epsilon=float(epsilon) if epsilon is not None else None,
            entities={str(k): v for k, v in entities.items() if isinstance(v, dict)},
            timestamp=float(data.get("timestamp", time.time())),
        )


class SnapshotBackend(Protocol):
    """Durable store for one snapshot payload."""

    def read(self) -> Optional[Dict[str, Any]]:
        ...

    def write(self, data: Dict[str, Any]) -> None:
        ...


class JsonFileBackend:
    """
    Snapshot file on local disk.

    Features:
    - Atomic writes (temp file + rename)
    - One backup copy of the previous snapshot
    - Recovery from the backup when the main file is corrupt
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self.backup_path = self.path.with_suffix(self.path.suffix + ".bak")

    def read(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            if not self.backup_path.exists():
                raise
            logger.warning(f"Snapshot {self.path} unreadable ({e}); recovering from backup")
            with open(self.backup_path, "r", encoding="utf-8") as f:
                return json.load(f)

    def write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_suffix(".tmp")
        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            if self.path.exists():
                shutil.copy2(str(self.path), str(self.backup_path))
            temp_path.replace(self.path)
        finally:
            if temp_path.exists():
                temp_path.unlink()
        logger.debug(f"Snapshot written to {self.path}")

    def delete(self) -> None:
        for path in (self.path, self.backup_path):
            if path.exists():
                path.unlink()


class InMemoryBackend:
    """Process-local backend; payloads are JSON round-tripped like on disk."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._payload = json.dumps(initial) if initial is not None else None
        self._lock = threading.Lock()
        self.writes = 0

    def read(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            return json.loads(self._payload) if self._payload is not None else None

    def write(self, data: Dict[str, Any]) -> None:
        payload = json.dumps(data)
        with self._lock:
            self._payload = payload
            self.writes += 1


@dataclass
class PendingSave:
    """A snapshot waiting to be written."""
    snapshot: LearningSnapshot
    failures: int = 0
    not_before: float = 0.0


class PersistenceGateway:
    """
    Best-effort, non-blocking persistence for learning snapshots.

    ``save`` only enqueues; a background writer thread performs the I/O.
    A newer snapshot supersedes any older one still waiting, since each
    snapshot is a full state image.

    Example:
        >>> gateway = PersistenceGateway(JsonFileBackend("./state/learning.json"))
        >>> snapshot = gateway.load()
        >>> gateway.save(snapshot)
        >>> gateway.close()
    """

    def __init__(
        self,
        backend: SnapshotBackend,
        max_retries: int = 3,
        base_backoff: float = 1.0,
        max_backoff: float = 60.0,
        metrics=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the gateway.

        Args:
            backend: Where snapshots are stored
            max_retries: Retries after the first failed write before dropping
            base_backoff: Delay before the first retry (seconds)
            max_backoff: Upper bound of the retry delay (seconds)
            metrics: Optional MetricsCollector
            clock: Monotonic time source
        """
        self.backend = backend
        self.max_retries = max(0, max_retries)
        self.base_backoff = max(0.0, base_backoff)
        self.max_backoff = max(self.base_backoff, max_backoff)
        self.metrics = metrics
        self.clock = clock

        self._pending: Deque[PendingSave] = deque()
        self._in_flight = False
        self._closed = False
        self._cond = threading.Condition()
        self._worker: Optional[threading.Thread] = None

    def load(self) -> LearningSnapshot:
        """
        Load the last saved snapshot.

        Any failure degrades to an empty snapshot and is logged as
        non-fatal.
        """
        try:
            data = self.backend.read()
        except PERSISTENCE_ERRORS as e:
            logger.warning(f"Failed to load learning state, starting fresh: {e}")
            self._count("persistence.load_failed")
            return LearningSnapshot()

        if data is None:
            logger.info("No saved learning state found")
            return LearningSnapshot()

        try:
            snapshot = LearningSnapshot.from_dict(data)
        except (ValueError, TypeError) as e:
            logger.warning(f"Ignoring saved learning state: {e}")
            self._count("persistence.load_failed")
            return LearningSnapshot()

        logger.info(f"Loaded learning state for {len(snapshot.entities)} entities")
        return snapshot

    def save(self, snapshot: LearningSnapshot) -> None:
        """Queue a snapshot for writing. Never blocks on I/O."""
        with self._cond:
            if self._closed:
                logger.warning("Persistence gateway closed; snapshot not saved")
                return
            if self._pending:
                logger.debug(f"Superseding {len(self._pending)} pending snapshot(s)")
                self._pending.clear()
            self._pending.append(PendingSave(snapshot=snapshot))
            self._ensure_worker()
            self._cond.notify_all()

    @property
    def pending_count(self) -> int:
        with self._cond:
            return len(self._pending) + (1 if self._in_flight else 0)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until nothing is pending. Returns False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._pending or self._in_flight:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return True

    def close(self, timeout: float = 5.0) -> None:
        """
        Stop the writer after one final attempt at anything pending.

        Idempotent.
        """
        with self._cond:
            self._closed = True
            self._cond.notify_all()
            worker = self._worker
        if worker is not None:
            worker.join(timeout=timeout)

    def _ensure_worker(self) -> None:
        if self._worker is None or not self._worker.is_alive():
            self._worker = threading.Thread(
                target=self._run,
                daemon=True,
                name="snapshot-writer",
            )
            self._worker.start()

    def _run(self) -> None:
        while True:
            with self._cond:
                while not self._pending and not self._closed:
                    self._cond.wait()
                if not self._pending:
                    return
                item = self._pending[0]
                delay = item.not_before - self.clock()
                if delay > 0 and not self._closed:
                    self._cond.wait(delay)
                    continue
                self._pending.popleft()
                self._in_flight = True

            succeeded = self._write(item)

            with self._cond:
                self._in_flight = False
                if not succeeded:
                    self._handle_failure(item)
                self._cond.notify_all()

    def _write(self, item: PendingSave) -> bool:
        try:
            self.backend.write(item.snapshot.to_dict())
        except PERSISTENCE_ERRORS as e:
            logger.warning(f"Snapshot write failed (attempt {item.failures + 1}): {e}")
            return False
        self._count("persistence.saved")
        return True

    def _handle_failure(self, item: PendingSave) -> None:
        """Requeue with backoff, or drop. Caller holds the condition."""
        item.failures += 1
        if self._pending:
            # A newer snapshot is already waiting
            return
        if item.failures > self.max_retries or self._closed:
            self._count("persistence.dropped")
            logger.error(
                f"Dropping learning snapshot after {item.failures} failed attempts; "
                f"engine continues unpersisted"
            )
            return
        backoff = min(self.max_backoff, self.base_backoff * (2 ** (item.failures - 1)))
        item.not_before = self.clock() + backoff
        self._pending.append(item)
        self._count("persistence.retried")
        logger.warning(f"Retrying snapshot write in {backoff:.2f}s")

    def _count(self, name: str) -> None:
        if self.metrics is not None:
            self.metrics.increment(name)
