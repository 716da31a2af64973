"""
fleet-orchestrator — filesystem utilities

File: src/fleet_orchestrator/utils/fs.py

Purpose
- Durable writes for shared run artifacts: checkpoints, queue snapshots,
  backoff state, plan archives and the append-only result ledger.

Functional requirements
- Atomic writes use temp files in the destination directory and replace in a single step.
- Ledger appends are one complete line per call, flushed and fsynced.

Non-functional requirements
- Standard library only and cross-platform behavior where feasible.
"""

from __future__ import annotations

import contextlib
import json
import os
import tempfile
from pathlib import Path

PathLike = str | os.PathLike[str]

__all__ = [
    "append_json_line",
    "atomic_write",
    "atomic_write_json",
    "read_json",
]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """
    Atomically write ``data`` to ``path``.

    The write strategy is:
    1. create temp file in the same directory,
    2. write + flush + fsync file data,
    3. replace target via ``os.replace``.
    """

    target = Path(path)
    target_parent = target.parent.resolve(strict=True)
    if not target_parent.is_dir():
        raise NotADirectoryError(f"{target_parent!s} is not a directory")

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)
    payload = data if isinstance(data, bytes) else data.encode(encoding)

    try:
        with os.fdopen(fd, "wb") as file_handle:
            file_handle.write(payload)
            file_handle.flush()
            os.fsync(file_handle.fileno())
        os.replace(temp_path, target)
        _fsync_directory(target_parent)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def atomic_write_json(path: PathLike, payload: object) -> None:
    """Serialize ``payload`` deterministically and write it atomically."""

    text = json.dumps(payload, sort_keys=True, indent=2, ensure_ascii=False) + "\n"
    atomic_write(path, text)


def read_json(path: PathLike) -> object | None:
    """Return parsed JSON from ``path`` or ``None`` when the file does not exist.

    Corrupt content raises ``ValueError`` so callers can decide whether it is fatal.
    """

    target = Path(path)
    try:
        text = target.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"corrupt JSON in {target}: {exc}") from exc


def append_json_line(path: PathLike, payload: object) -> None:
    """Append ``payload`` as one compact JSON line and fsync it."""

    line = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    if "\n" in line:  # pragma: no cover - json.dumps escapes newlines.
        raise ValueError("ledger lines must not contain raw newlines")
    target = Path(path)
    with target.open("a", encoding="utf-8") as handle:
        handle.write(line + "\n")
        handle.flush()
        os.fsync(handle.fileno())


def _fsync_directory(path: Path) -> None:
    """
    Best-effort directory fsync for metadata durability after ``os.replace``.

    Some platforms/filesystems do not support fsync on directories.
    """

    if os.name == "nt":
        return

    flags = os.O_RDONLY
    if hasattr(os, "O_DIRECTORY"):
        flags |= os.O_DIRECTORY

    try:
        dir_fd = os.open(path, flags)
    except OSError:
        return

    try:
        os.fsync(dir_fd)
    except OSError:
        return
    finally:
        os.close(dir_fd)
