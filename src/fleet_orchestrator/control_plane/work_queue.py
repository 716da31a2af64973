"""
fleet-orchestrator — work queue

File: src/fleet_orchestrator/control_plane/work_queue.py

Purpose
- File-backed FIFO of work items shared by every worker of a run.

Functional requirements
- Producers seed the queue once, in deterministic order, before any worker
  drains it.
- Every dequeue happens under the portable mutex as "read, pop front, persist
  remainder", so no two workers ever receive the same item, whether they are
  threads in one process or separate processes sharing the state directory.
- A corrupt or foreign-schema queue file is a ``StateStoreError``, never an
  empty queue.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from pathlib import Path
from typing import Any

import structlog

from fleet_orchestrator.constants import QUEUE_LOCK_NAME, WORK_QUEUE_SCHEMA_VERSION
from fleet_orchestrator.control_plane.locking import PortableMutex
from fleet_orchestrator.domain.errors import InvalidInvocation, StateStoreError
from fleet_orchestrator.domain.models import WorkItem
from fleet_orchestrator.utils.fs import atomic_write_json, read_json


def sort_work_items(items: Iterable[WorkItem]) -> list[WorkItem]:
    """Deterministic enqueue order: by repository id, duplicates removed."""

    unique: dict[str, WorkItem] = {}
    for item in items:
        unique.setdefault(item.item_id, item)
    return [unique[key] for key in sorted(unique)]


class WorkQueue:
    """Persistent FIFO of :class:`WorkItem` guarded by a :class:`PortableMutex`."""

    def __init__(
        self,
        queue_path: Path | str,
        mutex: PortableMutex,
        *,
        lock_timeout_seconds: float = 30.0,
        lock_name: str = QUEUE_LOCK_NAME,
        on_locked: Callable[[], None] | None = None,
        logger: Any | None = None,
    ) -> None:
        self._path = Path(queue_path)
        self._mutex = mutex
        self._lock_timeout = lock_timeout_seconds
        self._lock_name = lock_name
        self._on_locked = on_locked
        self._draining = False
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def path(self) -> Path:
        return self._path

    def enqueue_all(self, items: Sequence[WorkItem], *, presorted: bool = False) -> int:
        """Replace the queue contents with ``items``. Only valid before draining starts."""

        if self._draining:
            raise InvalidInvocation("cannot enqueue after workers started draining the queue")
        ordered = list(items) if presorted else sort_work_items(items)
        with self._mutex.held(self._lock_name, self._lock_timeout):
            self._write(ordered)
        self._logger.info("work_queue_seeded", path=self._path.as_posix(), items=len(ordered))
        return len(ordered)

    def dequeue(self) -> WorkItem | None:
        """Pop the front item and persist the remainder; ``None`` when empty."""

        self._draining = True
        with self._mutex.held(self._lock_name, self._lock_timeout):
            if self._on_locked is not None:
                self._on_locked()
            items = self._read()
            if not items:
                return None
            head, remainder = items[0], items[1:]
            self._write(remainder)
        return head

    def pending(self) -> tuple[WorkItem, ...]:
        """Snapshot of queued items in order (read under the lock)."""

        with self._mutex.held(self._lock_name, self._lock_timeout):
            return tuple(self._read())

    def __len__(self) -> int:
        return len(self.pending())

    def clear(self) -> None:
        with self._mutex.held(self._lock_name, self._lock_timeout):
            self._path.unlink(missing_ok=True)

    def _read(self) -> list[WorkItem]:
        try:
            payload = read_json(self._path)
        except ValueError as exc:
            raise StateStoreError(str(exc)) from exc
        if payload is None:
            return []
        if not isinstance(payload, dict) or not isinstance(payload.get("items"), list):
            raise StateStoreError(f"work queue file is malformed: {self._path}")
        version = payload.get("schema_version")
        if version != WORK_QUEUE_SCHEMA_VERSION:
            raise StateStoreError(f"unsupported work queue schema version: {version!r}")
        try:
            return [WorkItem.from_dict(entry) for entry in payload["items"]]
        except (TypeError, ValueError) as exc:
            raise StateStoreError(f"work queue entry is malformed: {exc}") from exc

    def _write(self, items: Sequence[WorkItem]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            atomic_write_json(
                self._path,
                {
                    "schema_version": WORK_QUEUE_SCHEMA_VERSION,
                    "items": [item.to_dict() for item in items],
                },
            )
        except OSError as exc:
            raise StateStoreError(f"unable to persist work queue {self._path}: {exc}") from exc


__all__ = ["WorkQueue", "sort_work_items"]
