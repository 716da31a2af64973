"""Run-scoped structured logging.

Every component logs through ``structlog.get_logger(__name__)``. Once
:func:`setup_structured_logging` has run, those events are rendered into the
stdlib logger ``fleet_orchestrator``, handed to a bounded queue on the emitting
thread, and written by a single listener thread as one JSON object per line to
``<log_dir>/<run_id>/orchestrator.jsonl``.

Each line carries ``timestamp``, ``level``, ``logger`` and ``event``, the
correlation keys bound with :func:`correlation_scope` (``run_id``, ``repo_id``,
``worker_id``, ``session_id``, ``phase``) and any remaining key/value pairs
under ``fields``. Secrets are masked before anything reaches disk unless the
``[observability] redact_secrets`` setting turns that off.

A full queue drops records instead of blocking a worker; the number dropped is
exposed on the handle.
"""

from __future__ import annotations

import atexit
import contextvars
import json
import logging
import logging.handlers
import math
import queue
import sys
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from functools import singledispatch
from pathlib import Path
from typing import Any, Final, cast

import structlog

from fleet_orchestrator.security.redaction import REDACTED_VALUE, redact_structure

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]

LOG_FILENAME: Final[str] = "orchestrator.jsonl"
ROOT_LOGGER_NAME: Final[str] = "fleet_orchestrator"
DEFAULT_QUEUE_SIZE: Final[int] = 4096
DEFAULT_LOG_DIR: Final[str] = ".fleet/logs"

CORRELATION_KEYS: Final[tuple[str, ...]] = ("run_id", "repo_id", "worker_id", "session_id", "phase")

# Attributes every LogRecord already has; anything else on a record is an extra.
_RECORD_ATTRS: Final[frozenset[str]] = frozenset(logging.makeLogRecord({}).__dict__) | {
    "message",
    "asctime",
    "taskName",
    "correlation",
}

_Bindings = tuple[tuple[str, str], ...]
_correlation: contextvars.ContextVar[_Bindings] = contextvars.ContextVar(
    "fleet_log_correlation", default=()
)

_active_lock = threading.Lock()
_active: StructuredLoggingHandle | None = None
_atexit_hooked = False


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Settings for one run's log sink."""

    run_id: str
    base_log_dir: Path | str = Path(DEFAULT_LOG_DIR)
    logger_name: str = ROOT_LOGGER_NAME
    level: int | str = "INFO"
    queue_size: int = DEFAULT_QUEUE_SIZE
    log_filename: str = LOG_FILENAME
    log_to_stderr: bool = False
    redactor: LogRedactor | None = None


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
) -> StructuredLoggingHandle:
    """Start run logging from an ``[observability]`` config section."""

    section = observability_config or {}
    level = section.get("log_level", "INFO")
    directory = log_dir if log_dir is not None else section.get("log_dir", DEFAULT_LOG_DIR)
    return setup_structured_logging(
        LoggingConfig(
            run_id=run_id,
            base_log_dir=directory if isinstance(directory, (str, Path)) else DEFAULT_LOG_DIR,
            level=level if isinstance(level, (int, str)) else "INFO",
            log_to_stderr=bool(section.get("log_to_stderr", False)),
            redactor=None if section.get("redact_secrets", True) else _passthrough,
        )
    )


class _DroppingQueueHandler(logging.handlers.QueueHandler):
    """Enqueue without blocking; snapshot correlation on the caller's thread."""

    def __init__(self, log_queue: queue.Queue[object]) -> None:
        super().__init__(log_queue)
        self._dropped = 0
        self._dropped_lock = threading.Lock()

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        bindings = _correlation.get()
        if bindings:
            record.correlation = dict(bindings)
        return cast("logging.LogRecord", super().prepare(record))

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self._dropped += 1


class _JsonLinesFormatter(logging.Formatter):
    def __init__(self, run_id: str, redactor: LogRedactor) -> None:
        super().__init__()
        self._run_id = run_id
        self._redact = redactor

    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, JSONValue] = {
            "timestamp": _utc_millis(record.created),
            "level": record.levelname,
            "logger": record.name,
            "event": _as_text(self._redact(record.getMessage())),
            "run_id": self._run_id,
        }
        bound = getattr(record, "correlation", None)
        if isinstance(bound, Mapping):
            line.update(sorted(bound.items()))

        extras = {
            key: _jsonable(value)
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        }
        if extras:
            line["fields"] = self._redact(extras)
        if record.exc_info is not None:
            line["exception"] = _as_text(self._redact(self.formatException(record.exc_info)))
        return json.dumps(line, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


@dataclass(slots=True)
class StructuredLoggingHandle:
    """The live sink for one run; ``shutdown`` is idempotent."""

    logger: logging.Logger
    run_id: str
    log_path: Path
    _queue: queue.Queue[object]
    _handler: _DroppingQueueHandler
    _sinks: tuple[logging.Handler, ...]
    _listener: logging.handlers.QueueListener
    _lock: threading.Lock = field(default_factory=threading.Lock)
    _closed: bool = False

    @property
    def dropped_records(self) -> int:
        return self._handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while self._queue.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.01)
        for sink in self._sinks:
            sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._lock:
            if self._closed:
                return
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self.logger.removeHandler(self._handler)
            self._handler.close()
            for sink in self._sinks:
                sink.flush()
                sink.close()
            self._closed = True


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Replace any active sink with a new one for ``config.run_id``."""

    run_id = _nonblank(config.run_id, "run_id")
    filename = _nonblank(config.log_filename, "log_filename")
    if Path(filename).name != filename:
        raise ValueError("log_filename must not include path separators")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    level = _level(config.level)

    _close_active()

    log_path = Path(config.base_log_dir) / run_id / filename
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = _JsonLinesFormatter(run_id, config.redactor or default_log_redactor)
    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if config.log_to_stderr:
        sinks.append(logging.StreamHandler(sys.stderr))
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(config.logger_name)
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    logger.setLevel(level)
    logger.propagate = False

    log_queue: queue.Queue[object] = queue.Queue(maxsize=config.queue_size)
    handler = _DroppingQueueHandler(log_queue)
    handler.setLevel(level)
    listener = logging.handlers.QueueListener(log_queue, *sinks, respect_handler_level=True)
    listener.start()
    logger.addHandler(handler)

    configure_structlog()

    handle = StructuredLoggingHandle(
        logger=logger,
        run_id=run_id,
        log_path=log_path,
        _queue=log_queue,
        _handler=handler,
        _sinks=tuple(sinks),
        _listener=listener,
    )
    _activate(handle)
    return handle


def configure_structlog() -> None:
    """Render structlog events as stdlib records so they share the run sink."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.format_exc_info,
            _prefix_reserved_keys,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def _prefix_reserved_keys(_logger: object, _name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    # makeRecord raises KeyError for extras that collide with LogRecord attributes.
    clashes = [key for key in event_dict if key != "event" and key in _RECORD_ATTRS]
    for key in clashes:
        event_dict[f"field_{key}"] = event_dict.pop(key)
    return event_dict


def flush_logging(
    handle: StructuredLoggingHandle | None = None, *, timeout_seconds: float = 2.0
) -> None:
    target = handle or get_active_logging_handle()
    if target is not None:
        target.flush(timeout_seconds=timeout_seconds)


def shutdown_logging(
    handle: StructuredLoggingHandle | None = None, *, timeout_seconds: float = 2.0
) -> None:
    """Stop the listener and close the sinks; structlog reverts to its defaults."""

    global _active
    target = handle or get_active_logging_handle()
    if target is None:
        return
    target.shutdown(timeout_seconds=timeout_seconds)
    with _active_lock:
        if _active is target:
            _active = None
            structlog.reset_defaults()


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    with _active_lock:
        return _active


def get_correlation_context() -> dict[str, str]:
    return dict(_correlation.get())


def set_correlation_fields(**fields: str | None) -> contextvars.Token[_Bindings]:
    """Bind (or, with ``None``, unbind) correlation keys for the current context."""

    bindings = dict(_correlation.get())
    for key, value in fields.items():
        if key not in CORRELATION_KEYS:
            raise ValueError(f"unknown correlation key {key!r}")
        if value is None:
            bindings.pop(key, None)
        else:
            bindings[key] = _nonblank(value, key)
    return _correlation.set(tuple(bindings.items()))


def reset_correlation_fields(token: contextvars.Token[_Bindings]) -> None:
    _correlation.reset(token)


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    token = set_correlation_fields(**fields)
    try:
        yield
    finally:
        reset_correlation_fields(token)


def default_log_redactor(value: JSONValue) -> JSONValue:
    return cast("JSONValue", redact_structure(value))


def _passthrough(value: JSONValue) -> JSONValue:
    return value


def _activate(handle: StructuredLoggingHandle) -> None:
    global _active, _atexit_hooked
    with _active_lock:
        _active = handle
        if not _atexit_hooked:
            atexit.register(shutdown_logging)
            _atexit_hooked = True


def _close_active() -> None:
    global _active
    with _active_lock:
        previous, _active = _active, None
    if previous is not None:
        previous.shutdown()


def _nonblank(value: object, name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a string, got {type(value).__name__}")
    text = value.strip()
    if not text:
        raise ValueError(f"{name} must not be empty")
    return text


def _level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    resolved = logging.getLevelName(value.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"unsupported logging level {value!r}")
    return resolved


def _utc_millis(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, tz=UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def _as_text(value: JSONValue) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


@singledispatch
def _jsonable(value: object) -> JSONValue:
    return repr(value)


@_jsonable.register(type(None))
@_jsonable.register(bool)
@_jsonable.register(int)
@_jsonable.register(str)
def _(value: JSONScalar) -> JSONValue:
    return value


@_jsonable.register
def _(value: float) -> JSONValue:
    return value if math.isfinite(value) else REDACTED_VALUE


@_jsonable.register
def _(value: datetime) -> JSONValue:
    aware = value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)
    return aware.isoformat(timespec="microseconds").replace("+00:00", "Z")


@_jsonable.register
def _(value: Path) -> JSONValue:
    return value.as_posix()


@_jsonable.register
def _(value: bytes) -> JSONValue:
    return value.decode("utf-8", errors="replace")


@_jsonable.register(dict)
@_jsonable.register(Mapping)
def _(value: Mapping[object, object]) -> JSONValue:
    return {str(key): _jsonable(item) for key, item in value.items()}


@_jsonable.register(list)
@_jsonable.register(tuple)
def _(value: list[object] | tuple[object, ...]) -> JSONValue:
    return [_jsonable(item) for item in value]


@_jsonable.register(set)
@_jsonable.register(frozenset)
def _(value: set[object] | frozenset[object]) -> JSONValue:
    return sorted((_jsonable(item) for item in value), key=lambda item: json.dumps(item, sort_keys=True))


__all__ = [
    "CORRELATION_KEYS",
    "JSONScalar",
    "JSONValue",
    "LogRedactor",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "flush_logging",
    "get_active_logging_handle",
    "get_correlation_context",
    "reset_correlation_fields",
    "set_correlation_fields",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
