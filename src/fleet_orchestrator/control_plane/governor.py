"""
fleet-orchestrator — rate governor

File: src/fleet_orchestrator/control_plane/governor.py

Purpose
- Global backoff shared by every worker through a lock-guarded state file.
- Run-wide circuit breaker over a trailing error window.

Functional requirements
- Workers consult ``wait_for_clearance`` before dequeuing; it sleeps through an
  active pause and blocks while the breaker is open.
- A rate-limit signal doubles the previous delay (capped), applies jitter and
  never moves ``pause_until`` backwards.
- The breaker opens past a threshold of errors in a trailing window, half-opens
  after a quiet cool-down and admits exactly one trial request before closing again.

Non-functional requirements
- Clock, sleep source and random generator are injectable for deterministic tests.
- Every suspension honours the run's cancellation token.
"""

from __future__ import annotations

import random
import re
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from fleet_orchestrator.constants import BACKOFF_LOCK_NAME
from fleet_orchestrator.control_plane.locking import PortableMutex
from fleet_orchestrator.domain.errors import Interrupted, StateStoreError
from fleet_orchestrator.utils.fs import atomic_write_json, read_json

if TYPE_CHECKING:
    from fleet_orchestrator.utils.concurrency import CancellationToken

Clock = Callable[[], float]

RATE_LIMIT_PATTERNS: Final[tuple[str, ...]] = (
    r"\b429\b",
    r"rate limit",
    r"rate-limit",
    r"too many requests",
    r"overloaded",
)
_RATE_LIMIT_RE = re.compile("|".join(RATE_LIMIT_PATTERNS), re.IGNORECASE)

_MAX_CLEARANCE_SLICE_SECONDS: Final[float] = 1.0


def detect_rate_limit(text: str) -> bool:
    """Whether agent output carries a rate-limit signal."""

    return bool(text) and _RATE_LIMIT_RE.search(text) is not None


@dataclass(frozen=True, slots=True)
class GovernorConfig:
    base_delay_seconds: float = 30.0
    max_delay_seconds: float = 900.0
    jitter_ratio: float = 0.25
    breaker_threshold: int = 5
    breaker_window_seconds: float = 300.0
    breaker_cooldown_seconds: float = 60.0

    def __post_init__(self) -> None:
        if self.base_delay_seconds <= 0:
            raise ValueError("base_delay_seconds must be > 0")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        if not 0.0 <= self.jitter_ratio < 1.0:
            raise ValueError("jitter_ratio must be in [0, 1)")
        if self.breaker_threshold <= 0:
            raise ValueError("breaker_threshold must be > 0")
        if self.breaker_window_seconds <= 0:
            raise ValueError("breaker_window_seconds must be > 0")
        if self.breaker_cooldown_seconds <= 0:
            raise ValueError("breaker_cooldown_seconds must be > 0")


@dataclass(frozen=True, slots=True)
class BackoffState:
    """Shared pause record. ``pause_until`` is wall-clock epoch seconds."""

    reason: str
    pause_until: float
    delay: float

    def is_active(self, now: float) -> bool:
        return self.pause_until > now

    def to_dict(self) -> dict[str, object]:
        return {"reason": self.reason, "pause_until": self.pause_until, "delay": self.delay}

    @classmethod
    def from_dict(cls, payload: object) -> BackoffState:
        if not isinstance(payload, dict):
            raise ValueError("backoff state must be an object")
        reason = payload.get("reason")
        pause_until = payload.get("pause_until")
        delay = payload.get("delay")
        if not isinstance(reason, str):
            raise ValueError("backoff state 'reason' must be a string")
        for key, value in (("pause_until", pause_until), ("delay", delay)):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"backoff state {key!r} must be a number")
        return cls(reason=reason, pause_until=float(pause_until), delay=float(delay))


class BackoffStore:
    """Backoff State persisted as JSON under the ``backoff`` lease."""

    def __init__(
        self,
        path: Path | str,
        mutex: PortableMutex,
        *,
        lock_timeout_seconds: float = 30.0,
    ) -> None:
        self._path = Path(path)
        self._mutex = mutex
        self._lock_timeout = lock_timeout_seconds

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> BackoffState | None:
        with self._mutex.held(BACKOFF_LOCK_NAME, self._lock_timeout):
            return self._read()

    def update(
        self, mutate: Callable[[BackoffState | None], BackoffState | None]
    ) -> BackoffState | None:
        """Read-modify-write under the lease. ``None`` from ``mutate`` clears the file."""

        with self._mutex.held(BACKOFF_LOCK_NAME, self._lock_timeout):
            updated = mutate(self._read())
            if updated is None:
                self._path.unlink(missing_ok=True)
            else:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                try:
                    atomic_write_json(self._path, updated.to_dict())
                except OSError as exc:
                    raise StateStoreError(f"unable to persist backoff state: {exc}") from exc
            return updated

    def _read(self) -> BackoffState | None:
        try:
            return BackoffState.from_dict(read_json(self._path)) if self._path.exists() else None
        except ValueError:
            # A torn or hand-edited file must not wedge every worker; treat as no pause.
            return None


class BreakerState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class Admission(StrEnum):
    DENIED = "denied"
    ADMITTED = "admitted"
    TRIAL = "trial"


class CircuitBreaker:
    """Error-rate gate shared by all workers of one run."""

    def __init__(
        self,
        *,
        threshold: int = 5,
        window_seconds: float = 300.0,
        cooldown_seconds: float = 60.0,
        clock: Clock = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        if threshold <= 0:
            raise ValueError("threshold must be > 0")
        self._threshold = threshold
        self._window = window_seconds
        self._cooldown = cooldown_seconds
        self._clock = clock
        self._errors: deque[float] = deque()
        self._state = BreakerState.CLOSED
        self._opened_at: float | None = None
        self._last_error_at: float | None = None
        self._trial_in_flight = False
        self._lock = threading.Lock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def state(self) -> BreakerState:
        with self._lock:
            self._advance_locked(self._clock())
            return self._state

    @property
    def error_count(self) -> int:
        with self._lock:
            self._prune_locked(self._clock())
            return len(self._errors)

    @property
    def window_start(self) -> float | None:
        with self._lock:
            self._prune_locked(self._clock())
            return self._errors[0] if self._errors else None

    def allow(self) -> bool:
        """Whether a worker may dequeue a new item now.

        In ``half_open`` only the first caller is admitted; it becomes the trial request.
        """

        return self.admit() is not Admission.DENIED

    def admit(self) -> Admission:
        """Like ``allow`` but tells the caller whether it holds the trial slot."""

        with self._lock:
            self._advance_locked(self._clock())
            if self._state is BreakerState.CLOSED:
                return Admission.ADMITTED
            if self._state is BreakerState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                self._logger.info("circuit_breaker_trial_admitted")
                return Admission.TRIAL
            return Admission.DENIED

    def record_error(self, reason: str = "error") -> BreakerState:
        with self._lock:
            now = self._clock()
            self._last_error_at = now
            self._errors.append(now)
            self._prune_locked(now)
            if self._state is BreakerState.HALF_OPEN:
                self._open_locked(now, reason=f"trial_failed:{reason}")
            elif self._state is BreakerState.CLOSED and len(self._errors) >= self._threshold:
                self._open_locked(now, reason=reason)
            return self._state

    def record_success(self) -> BreakerState:
        with self._lock:
            self._advance_locked(self._clock())
            if self._state is BreakerState.HALF_OPEN and self._trial_in_flight:
                self._state = BreakerState.CLOSED
                self._trial_in_flight = False
                self._errors.clear()
                self._opened_at = None
                self._logger.info("circuit_breaker_closed")
            return self._state

    def release_trial(self) -> None:
        """Return an unused trial slot, for example when the queue was empty."""

        with self._lock:
            self._trial_in_flight = False

    def seconds_until_half_open(self) -> float:
        with self._lock:
            now = self._clock()
            self._advance_locked(now)
            if self._state is not BreakerState.OPEN:
                return 0.0
            quiet_since = max(self._opened_at or now, self._last_error_at or now)
            return max(0.0, quiet_since + self._cooldown - now)

    def _open_locked(self, now: float, *, reason: str) -> None:
        self._state = BreakerState.OPEN
        self._opened_at = now
        self._trial_in_flight = False
        self._logger.warning(
            "circuit_breaker_opened",
            reason=reason,
            error_count=len(self._errors),
            window_seconds=self._window,
        )

    def _advance_locked(self, now: float) -> None:
        if self._state is not BreakerState.OPEN:
            return
        quiet_since = max(self._opened_at or now, self._last_error_at or now)
        if now - quiet_since >= self._cooldown:
            self._state = BreakerState.HALF_OPEN
            self._trial_in_flight = False
            self._logger.info("circuit_breaker_half_open")

    def _prune_locked(self, now: float) -> None:
        cutoff = now - self._window
        while self._errors and self._errors[0] <= cutoff:
            self._errors.popleft()


class RateGovernor:
    """Backoff plus circuit breaker, consulted by every worker before dequeue."""

    def __init__(
        self,
        store: BackoffStore,
        *,
        config: GovernorConfig | None = None,
        breaker: CircuitBreaker | None = None,
        cancel_token: CancellationToken | None = None,
        wall_clock: Clock = time.time,
        sleep: Callable[[float], None] | None = None,
        rng: random.Random | None = None,
        logger: Any | None = None,
    ) -> None:
        self._store = store
        self._config = config or GovernorConfig()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._breaker = breaker or CircuitBreaker(
            threshold=self._config.breaker_threshold,
            window_seconds=self._config.breaker_window_seconds,
            cooldown_seconds=self._config.breaker_cooldown_seconds,
            logger=self._logger,
        )
        self._cancel = cancel_token
        self._wall_clock = wall_clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._rng_lock = threading.Lock()

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def config(self) -> GovernorConfig:
        return self._config

    def current_backoff(self) -> BackoffState | None:
        """Active backoff, clearing the shared record once its window has lapsed."""

        now = self._wall_clock()

        def _expire(state: BackoffState | None) -> BackoffState | None:
            if state is None or state.is_active(now):
                return state
            self._logger.info("backoff_cleared", reason=state.reason)
            return None

        return self._store.update(_expire)

    def wait_for_clearance(self) -> bool:
        """Block until no pause is active and the breaker admits new work.

        Returns ``True`` when this caller was admitted as the half-open trial
        request and so owns the trial slot. Raises ``Interrupted`` when the
        cancellation token fires during the wait.
        """

        while True:
            self._raise_if_cancelled()
            backoff = self.current_backoff()
            if backoff is not None:
                remaining = backoff.pause_until - self._wall_clock()
                self._logger.info(
                    "backoff_wait",
                    reason=backoff.reason,
                    remaining_seconds=round(max(remaining, 0.0), 3),
                )
                self._pause(max(remaining, 0.0))
                continue
            admission = self._breaker.admit()
            if admission is not Admission.DENIED:
                return admission is Admission.TRIAL
            self._pause(self._breaker.seconds_until_half_open())

    def record_rate_limit(self, reason: str = "rate_limited") -> BackoffState:
        """Extend the shared pause after a rate-limit signal."""

        config = self._config
        now = self._wall_clock()

        def _extend(previous: BackoffState | None) -> BackoffState:
            if previous is None or not previous.is_active(now):
                delay = config.base_delay_seconds
            else:
                delay = min(previous.delay * 2.0, config.max_delay_seconds)
            candidate = now + self._jitter(delay)
            pause_until = candidate if previous is None else max(previous.pause_until, candidate)
            return BackoffState(reason=reason, pause_until=pause_until, delay=delay)

        state = self._store.update(_extend)
        if state is None:
            raise StateStoreError("backoff store returned no state after extending the pause")
        self._logger.warning(
            "backoff_extended",
            reason=reason,
            delay_seconds=state.delay,
            pause_until=state.pause_until,
        )
        self._breaker.record_error(reason)
        return state

    def record_error(self, reason: str = "error") -> BreakerState:
        return self._breaker.record_error(reason)

    def record_success(self) -> BreakerState:
        return self._breaker.record_success()

    def effective_parallelism(self, requested: int) -> int:
        if self._breaker.state is BreakerState.OPEN:
            return 0
        if self.current_backoff() is not None:
            return 1
        return max(1, requested)

    def _jitter(self, delay: float) -> float:
        ratio = self._config.jitter_ratio
        if ratio == 0:
            return delay
        with self._rng_lock:
            factor = self._rng.uniform(1.0 - ratio, 1.0 + ratio)
        return delay * factor

    def _pause(self, seconds: float) -> None:
        # Short slices so clearance is re-evaluated even with a huge pause.
        seconds = min(max(seconds, 0.01), _MAX_CLEARANCE_SLICE_SECONDS)
        if self._sleep is not None:
            self._sleep(seconds)
            return
        if self._cancel is not None:
            if self._cancel.wait(seconds):
                raise Interrupted("interrupted while waiting for governor clearance")
            return
        time.sleep(seconds)

    def _raise_if_cancelled(self) -> None:
        if self._cancel is not None and self._cancel.is_cancelled:
            raise Interrupted("interrupted while waiting for governor clearance")


__all__ = [
    "RATE_LIMIT_PATTERNS",
    "Admission",
    "BackoffState",
    "BackoffStore",
    "BreakerState",
    "CircuitBreaker",
    "GovernorConfig",
    "RateGovernor",
    "detect_rate_limit",
]
