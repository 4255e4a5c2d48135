"""Stage-gate workflow engine - Instance store.

``InstanceStore`` is the persistence contract the state machine uses:
versioned loads and compare-and-swap saves. ``InMemoryInstanceStore`` is
the thread-safe implementation used in tests and single-process embeds;
``repository.SqlInstanceStore`` is the database-backed one.

``InstanceLockRegistry`` hands out one lock per instance id so mutations
of the same instance serialize while different instances run in parallel.
"""

import copy
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Protocol, Tuple, runtime_checkable

from .config import InstanceStatus
from .errors import InstanceNotFoundError, VersionConflictError
from .models import WorkflowInstance

logger = logging.getLogger(__name__)


@runtime_checkable
class InstanceStore(Protocol):
    """Versioned persistence for workflow instances."""

    def create(self, instance: WorkflowInstance) -> int:
        """Insert a new instance. Returns its initial version."""
        ...

    def load(self, instance_id: str) -> Tuple[WorkflowInstance, int]:
        """Return ``(instance, version)`` or raise ``InstanceNotFoundError``."""
        ...

    def save(self, instance_id: str, instance: WorkflowInstance, expected_version: int) -> int:
        """Write if the stored version equals ``expected_version``.

        Returns the new version; raises ``VersionConflictError`` otherwise.
        """
        ...

    def list_ids(self, status: Optional[InstanceStatus] = None) -> List[str]:
        ...


class InMemoryInstanceStore:
    """Thread-safe in-memory store with optimistic versioning.

    Instances are deep-copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._records: Dict[str, Tuple[WorkflowInstance, int]] = {}

    def create(self, instance: WorkflowInstance) -> int:
        with self._lock:
            if instance.id in self._records:
                raise VersionConflictError(instance.id, 0, self._records[instance.id][1])
            self._records[instance.id] = (copy.deepcopy(instance), 1)
        logger.debug("Created instance %s", instance.id)
        return 1

    def load(self, instance_id: str) -> Tuple[WorkflowInstance, int]:
        with self._lock:
            record = self._records.get(instance_id)
            if record is None:
                raise InstanceNotFoundError(instance_id)
            instance, version = record
            return copy.deepcopy(instance), version

    def save(self, instance_id: str, instance: WorkflowInstance, expected_version: int) -> int:
        with self._lock:
            record = self._records.get(instance_id)
            if record is None:
                raise InstanceNotFoundError(instance_id)
            current_version = record[1]
            if current_version != expected_version:
                raise VersionConflictError(instance_id, expected_version, current_version)
            new_version = current_version + 1
            self._records[instance_id] = (copy.deepcopy(instance), new_version)
        logger.debug("Saved instance %s at version %d", instance_id, new_version)
        return new_version

    def list_ids(self, status: Optional[InstanceStatus] = None) -> List[str]:
        with self._lock:
            return [
                iid for iid, (inst, _) in self._records.items()
                if status is None or inst.status == status
            ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


@dataclass
class _LockEntry:
    lock: threading.RLock = field(default_factory=threading.RLock)
    users: int = 0


class InstanceLockRegistry:
    """Per-instance locks, created on demand and dropped when unused."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, _LockEntry] = {}

    @contextmanager
    def hold(self, instance_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(instance_id, _LockEntry())
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    self._locks.pop(instance_id, None)

    def active(self) -> int:
        """Number of instance ids with a lock currently held or awaited."""
        with self._guard:
            return len(self._locks)
