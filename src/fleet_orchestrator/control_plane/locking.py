"""
fleet-orchestrator — portable filesystem mutex

File: src/fleet_orchestrator/control_plane/locking.py

Purpose
- Cross-process leases built only from ``mkdir`` atomicity, usable on every
  platform without advisory-lock primitives.

Functional requirements
- ``acquire(name, timeout)`` returns ``{ok, owner_pid}``; never retries forever.
- A lease whose owner process is gone, whose info is unreadable past a short
  grace period, or whose age exceeds the staleness threshold is reclaimed
  after a warning is logged.
- ``release(name)`` is idempotent and only removes leases this instance holds.
- Lock polling honours a ``CancellationToken`` so signals interrupt waiting.
"""

from __future__ import annotations

import contextlib
import json
import os
import re
import secrets
import shutil
import socket
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import psutil  # type: ignore[import-untyped]
import structlog

from fleet_orchestrator.domain.errors import Interrupted, LockTimeout
from fleet_orchestrator.utils.fs import atomic_write_json

if TYPE_CHECKING:
    from fleet_orchestrator.utils.concurrency import CancellationToken

DEFAULT_STALE_AFTER_SECONDS: Final[float] = 3600.0
DEFAULT_POLL_INTERVAL_SECONDS: Final[float] = 0.05
INFO_GRACE_SECONDS: Final[float] = 2.0

_LOCK_DIR_SUFFIX: Final[str] = ".lock.d"
_INFO_FILENAME: Final[str] = "owner.json"
_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")

PidCheck = Callable[[int], bool]


@dataclass(frozen=True, slots=True)
class LockInfo:
    """Owner metadata stored inside a held lock directory."""

    pid: int
    hostname: str
    token: str
    acquired_at: float
    run_id: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "pid": self.pid,
            "hostname": self.hostname,
            "token": self.token,
            "acquired_at": self.acquired_at,
            "run_id": self.run_id,
        }

    @classmethod
    def from_dict(cls, payload: object) -> LockInfo:
        if not isinstance(payload, dict):
            raise ValueError("lock info must be an object")
        pid = payload.get("pid")
        hostname = payload.get("hostname")
        token = payload.get("token")
        acquired_at = payload.get("acquired_at")
        run_id = payload.get("run_id")
        if isinstance(pid, bool) or not isinstance(pid, int) or pid <= 0:
            raise ValueError("lock info 'pid' must be a positive integer")
        if not isinstance(hostname, str) or not isinstance(token, str) or not token:
            raise ValueError("lock info requires 'hostname' and 'token' strings")
        if isinstance(acquired_at, bool) or not isinstance(acquired_at, (int, float)):
            raise ValueError("lock info 'acquired_at' must be a number")
        return cls(
            pid=pid,
            hostname=hostname,
            token=token,
            acquired_at=float(acquired_at),
            run_id=run_id if isinstance(run_id, str) else None,
        )


@dataclass(frozen=True, slots=True)
class LockAcquisition:
    """Outcome of one ``acquire`` call."""

    name: str
    ok: bool
    owner_pid: int | None
    waited_seconds: float
    reclaimed_stale: bool = False
    interrupted: bool = False


def pid_is_alive(pid: int) -> bool:
    """Best-effort liveness check for a local process id."""

    if pid <= 0:
        return False
    try:
        if not psutil.pid_exists(pid):
            return False
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return False
    except psutil.AccessDenied:
        return True


class PortableMutex:
    """Named leases under one lock directory, shared by threads and processes."""

    def __init__(
        self,
        lock_root: Path | str,
        *,
        stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        run_id: str | None = None,
        cancel_token: CancellationToken | None = None,
        pid_check: PidCheck | None = None,
        clock: Callable[[], float] = time.time,
        logger: Any | None = None,
    ) -> None:
        if stale_after_seconds <= 0:
            raise ValueError("stale_after_seconds must be > 0")
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")
        self._root = Path(lock_root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._stale_after = stale_after_seconds
        self._poll_interval = poll_interval_seconds
        self._run_id = run_id
        self._cancel = cancel_token
        self._pid_check = pid_check or pid_is_alive
        self._clock = clock
        self._hostname = socket.gethostname()
        self._held: dict[tuple[str, int], str] = {}
        self._held_lock = threading.Lock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def lock_root(self) -> Path:
        return self._root

    def lock_path(self, name: str) -> Path:
        return self._root / f"{_validate_name(name)}{_LOCK_DIR_SUFFIX}"

    def is_held(self, name: str) -> bool:
        """Whether the calling thread holds ``name`` through this instance."""

        with self._held_lock:
            return (name, threading.get_ident()) in self._held

    def acquire(self, name: str, timeout: float) -> LockAcquisition:
        """Try to take ``name`` for up to ``timeout`` seconds (0 means one attempt)."""

        if timeout < 0:
            raise ValueError("timeout must be >= 0")
        lock_dir = self.lock_path(name)
        started = time.monotonic()
        deadline = started + timeout
        reclaimed = False

        while True:
            token = secrets.token_hex(16)
            if self._try_create(lock_dir, token):
                with self._held_lock:
                    self._held[(name, threading.get_ident())] = token
                return LockAcquisition(
                    name=name,
                    ok=True,
                    owner_pid=os.getpid(),
                    waited_seconds=time.monotonic() - started,
                    reclaimed_stale=reclaimed,
                )

            info = self.read_info(name)
            if self._reclaim_if_stale(name, lock_dir, info):
                reclaimed = True
                continue

            now = time.monotonic()
            if now >= deadline:
                return LockAcquisition(
                    name=name,
                    ok=False,
                    owner_pid=info.pid if info is not None else None,
                    waited_seconds=now - started,
                    reclaimed_stale=reclaimed,
                )

            pause = min(self._poll_interval, deadline - now)
            if self._cancel is not None:
                if self._cancel.wait(pause):
                    return LockAcquisition(
                        name=name,
                        ok=False,
                        owner_pid=info.pid if info is not None else None,
                        waited_seconds=time.monotonic() - started,
                        reclaimed_stale=reclaimed,
                        interrupted=True,
                    )
            else:
                time.sleep(pause)

    def release(self, name: str) -> bool:
        """Release ``name`` if the calling thread holds it. Safe to call repeatedly."""

        with self._held_lock:
            token = self._held.pop((name, threading.get_ident()), None)
        if token is None:
            return False

        lock_dir = self.lock_path(name)
        info = self.read_info(name)
        if info is None or info.token != token:
            # Someone reclaimed it from under us; their lease is not ours to drop.
            self._logger.warning(
                "lock_release_lost_ownership",
                lock=name,
                path=lock_dir.as_posix(),
            )
            return False
        self._discard(lock_dir)
        return True

    @contextmanager
    def held(self, name: str, timeout: float) -> Iterator[LockAcquisition]:
        """Context manager form; raises ``LockTimeout`` or ``Interrupted`` on failure."""

        acquisition = self.acquire(name, timeout)
        if not acquisition.ok:
            if acquisition.interrupted:
                raise Interrupted(f"interrupted while waiting for lock {name!r}")
            raise LockTimeout(name, timeout, owner_pid=acquisition.owner_pid)
        try:
            yield acquisition
        finally:
            self.release(name)

    def read_info(self, name: str) -> LockInfo | None:
        """Return owner info for ``name`` or ``None`` if missing or unreadable."""

        info_path = self.lock_path(name) / _INFO_FILENAME
        try:
            raw = info_path.read_text(encoding="utf-8")
            return LockInfo.from_dict(json.loads(raw))
        except (OSError, ValueError):
            return None

    def is_stale(self, name: str) -> bool:
        lock_dir = self.lock_path(name)
        if not lock_dir.exists():
            return False
        return self._stale_reason(lock_dir, self.read_info(name)) is not None

    def _try_create(self, lock_dir: Path, token: str) -> bool:
        try:
            os.mkdir(lock_dir)
        except FileExistsError:
            return False
        info = LockInfo(
            pid=os.getpid(),
            hostname=self._hostname,
            token=token,
            acquired_at=self._clock(),
            run_id=self._run_id,
        )
        try:
            atomic_write_json(lock_dir / _INFO_FILENAME, info.to_dict())
        except OSError:
            shutil.rmtree(lock_dir, ignore_errors=True)
            raise
        return True

    def _stale_reason(self, lock_dir: Path, info: LockInfo | None) -> str | None:
        now = self._clock()
        if info is None:
            try:
                age = now - lock_dir.stat().st_mtime
            except FileNotFoundError:
                return None
            return "unreadable_owner_info" if age > INFO_GRACE_SECONDS else None
        if now - info.acquired_at > self._stale_after:
            return "expired"
        if info.hostname == self._hostname and not self._pid_check(info.pid):
            return "owner_dead"
        return None

    def _reclaim_if_stale(self, name: str, lock_dir: Path, info: LockInfo | None) -> bool:
        reason = self._stale_reason(lock_dir, info)
        if reason is None:
            return False

        # Re-read right before the rename so a lease that changed hands is left alone.
        current = self.read_info(name)
        if (current is None) != (info is None):
            return False
        if current is not None and info is not None and current.token != info.token:
            return False

        tombstone = lock_dir.with_name(f"{lock_dir.name}.stale-{secrets.token_hex(6)}")
        try:
            os.rename(lock_dir, tombstone)
        except FileNotFoundError:
            return True
        except OSError:
            return False

        self._logger.warning(
            "stale_lock_reclaimed",
            lock=name,
            reason=reason,
            owner_pid=info.pid if info is not None else None,
            owner_host=info.hostname if info is not None else None,
            owner_run_id=info.run_id if info is not None else None,
        )
        shutil.rmtree(tombstone, ignore_errors=True)
        return True

    def _discard(self, lock_dir: Path) -> None:
        tombstone = lock_dir.with_name(f"{lock_dir.name}.released-{secrets.token_hex(6)}")
        try:
            os.rename(lock_dir, tombstone)
        except FileNotFoundError:
            return
        with contextlib.suppress(OSError):
            shutil.rmtree(tombstone)


def _validate_name(name: str) -> str:
    if not isinstance(name, str) or not _NAME_RE.fullmatch(name):
        raise ValueError(f"invalid lock name: {name!r}")
    return name


__all__ = [
    "DEFAULT_POLL_INTERVAL_SECONDS",
    "DEFAULT_STALE_AFTER_SECONDS",
    "INFO_GRACE_SECONDS",
    "LockAcquisition",
    "LockInfo",
    "PortableMutex",
    "pid_is_alive",
]
