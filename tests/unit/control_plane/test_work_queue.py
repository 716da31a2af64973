"""Unit tests for the file-backed work queue."""

from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from fleet_orchestrator.control_plane.locking import PortableMutex
from fleet_orchestrator.control_plane.work_queue import WorkQueue, sort_work_items
from fleet_orchestrator.domain.errors import InvalidInvocation, StateStoreError
from fleet_orchestrator.domain.models import ExecutionMode, RepositoryTarget, TaskKind, WorkItem


def _item(root: Path, name: str) -> WorkItem:
    return WorkItem(
        target=RepositoryTarget(path=root / name),
        mode=ExecutionMode.FULL,
        task=TaskKind.COMMIT,
    )


def _queue(tmp_path: Path) -> WorkQueue:
    mutex = PortableMutex(tmp_path / "locks", poll_interval_seconds=0.001)
    return WorkQueue(tmp_path / "state" / "work_queue.json", mutex, lock_timeout_seconds=10.0)


def test_sort_work_items_orders_by_id_and_drops_duplicates(tmp_path: Path) -> None:
    items = [_item(tmp_path, "c"), _item(tmp_path, "a"), _item(tmp_path, "b"), _item(tmp_path, "a")]

    ordered = sort_work_items(items)

    assert [item.target.name for item in ordered] == ["a", "b", "c"]


def test_dequeue_is_fifo_and_persists_remainder(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    assert queue.enqueue_all([_item(tmp_path, "zeta"), _item(tmp_path, "alpha")]) == 2

    assert len(queue) == 2
    first = queue.dequeue()
    assert first is not None and first.target.name == "alpha"

    on_disk = json.loads(queue.path.read_text(encoding="utf-8"))
    assert [entry["target"]["path"] for entry in on_disk["items"]] == [
        (tmp_path / "zeta").resolve().as_posix()
    ]

    second = queue.dequeue()
    assert second is not None and second.target.name == "zeta"
    assert queue.dequeue() is None


def test_presorted_enqueue_keeps_caller_order(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    queue.enqueue_all([_item(tmp_path, "b"), _item(tmp_path, "a")], presorted=True)

    assert [item.target.name for item in queue.pending()] == ["b", "a"]


def test_enqueue_after_draining_is_rejected(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    queue.enqueue_all([_item(tmp_path, "a")])
    queue.dequeue()

    with pytest.raises(InvalidInvocation):
        queue.enqueue_all([_item(tmp_path, "b")])


def test_queue_survives_reopen_from_disk(tmp_path: Path) -> None:
    _queue(tmp_path).enqueue_all([_item(tmp_path, "a"), _item(tmp_path, "b")])

    reopened = _queue(tmp_path)

    assert [item.target.name for item in reopened.pending()] == ["a", "b"]
    reopened.clear()
    assert not reopened.path.exists()
    assert reopened.dequeue() is None


def test_on_locked_hook_runs_inside_the_lock(tmp_path: Path) -> None:
    mutex = PortableMutex(tmp_path / "locks")
    seen: list[bool] = []
    queue = WorkQueue(
        tmp_path / "q.json",
        mutex,
        on_locked=lambda: seen.append(mutex.is_held("work-queue")),
    )
    queue.enqueue_all([_item(tmp_path, "a")])

    queue.dequeue()

    assert seen == [True]


@pytest.mark.parametrize(
    "payload",
    [
        "not json",
        json.dumps({"items": "nope", "schema_version": 1}),
        json.dumps({"items": [], "schema_version": 999}),
        json.dumps({"items": [{"target": {}}], "schema_version": 1}),
    ],
)
def test_corrupt_queue_file_raises_state_store_error(tmp_path: Path, payload: str) -> None:
    queue = _queue(tmp_path)
    queue.path.parent.mkdir(parents=True)
    queue.path.write_text(payload, encoding="utf-8")

    with pytest.raises(StateStoreError):
        queue.dequeue()


def test_concurrent_dequeue_hands_each_item_to_exactly_one_worker(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    names = [f"repo-{index:02d}" for index in range(24)]
    queue.enqueue_all([_item(tmp_path, name) for name in names])
    taken: list[str] = []
    taken_lock = threading.Lock()

    def worker() -> None:
        while True:
            item = queue.dequeue()
            if item is None:
                return
            with taken_lock:
                taken.append(item.target.name)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60.0)

    assert sorted(taken) == names
    assert len(taken) == len(set(taken))
