"""Thread-based concurrency primitives used by the run controller and its workers."""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

from fleet_orchestrator.domain.errors import Interrupted, PhaseTimeout

if TYPE_CHECKING:
    from collections.abc import Callable

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation token backed by ``threading.Event``.

    Every suspension point in the engine (session waits, lock polling, backoff
    sleeps) waits on this token rather than ``time.sleep`` so a signal handler
    that calls :meth:`cancel` wakes all workers promptly.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            if self._reason is None:
                self._reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        with self._lock:
            return self._reason

    def wait(self, timeout_seconds: float | None = None) -> bool:
        """Block up to ``timeout_seconds``; return ``True`` when cancelled."""

        if timeout_seconds is not None and timeout_seconds <= 0:
            return self._event.is_set()
        return self._event.wait(timeout_seconds)

    def sleep(self, seconds: float) -> bool:
        """Sleep for ``seconds``; return ``False`` if cancelled before it elapsed."""

        return not self.wait(seconds)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Interrupted(f"operation cancelled: {self.reason or 'cancelled'}")


@dataclass(frozen=True, slots=True)
class WorkerResult(Generic[T]):
    """Return value or exception captured from one pool worker."""

    worker_id: int
    value: T | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class WorkerPool(Generic[T]):
    """Fixed-size pool of OS threads, each running the same worker loop once."""

    size: int
    name_prefix: str = "fleet-worker"
    _started: bool = field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.size <= 0:
            raise ValueError("size must be > 0")

    def run(self, worker: Callable[[int], T]) -> list[WorkerResult[T]]:
        """Run ``worker(worker_id)`` on every pool thread and wait for all of them.

        Exceptions never escape a worker thread; they are returned so the caller
        decides which ones are fatal.
        """

        if self._started:
            raise RuntimeError("worker pool can only be run once")
        self._started = True

        with ThreadPoolExecutor(
            max_workers=self.size, thread_name_prefix=self.name_prefix
        ) as executor:
            futures = [executor.submit(worker, worker_id) for worker_id in range(self.size)]
            results: list[WorkerResult[T]] = []
            for worker_id, future in enumerate(futures):
                try:
                    results.append(WorkerResult(worker_id=worker_id, value=future.result()))
                except BaseException as exc:  # noqa: BLE001 - reported to the caller.
                    results.append(WorkerResult(worker_id=worker_id, error=exc))
        return results


def remaining_seconds(deadline: float, *, clock: Callable[[], float] = time.monotonic) -> float:
    """Seconds left until ``deadline`` on ``clock``; never negative."""

    return max(0.0, deadline - clock())


@dataclass(frozen=True, slots=True)
class Deadline:
    """One phase budget shared by every subprocess the phase starts."""

    phase: str
    budget_seconds: float
    expires_at: float
    clock: Callable[[], float] = time.monotonic

    @classmethod
    def start(
        cls, phase: str, budget_seconds: float, *, clock: Callable[[], float] = time.monotonic
    ) -> Deadline:
        return cls(phase, budget_seconds, clock() + budget_seconds, clock)

    def remaining(self) -> float:
        return remaining_seconds(self.expires_at, clock=self.clock)

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def check(self) -> None:
        if self.expired:
            raise PhaseTimeout(self.phase, self.budget_seconds)

    def bound(self, timeout: float | None) -> float:
        """``timeout`` capped by the time left. Raises ``PhaseTimeout`` once spent."""

        left = self.remaining()
        if left <= 0.0:
            raise PhaseTimeout(self.phase, self.budget_seconds)
        return left if timeout is None else min(timeout, left)


__all__ = [
    "CancellationToken",
    "Deadline",
    "WorkerPool",
    "WorkerResult",
    "remaining_seconds",
]
