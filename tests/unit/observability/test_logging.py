"""
fleet-orchestrator — unit tests for observability logging

File: tests/unit/observability/test_logging.py

Purpose
- Validate structured JSON logging with redaction, correlation metadata, and
  queue-backed reliability, for both stdlib and structlog emitters.

Functional requirements
- Offline operation.

Non-functional requirements
- Deterministic and non-flaky.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import threading
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest
import structlog

from fleet_orchestrator.observability.logging import (
    LoggingConfig,
    correlation_scope,
    get_active_logging_handle,
    get_correlation_context,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture(autouse=True)
def _cleanup_logging() -> Iterator[None]:
    yield
    shutdown_logging()


def _logger_name() -> str:
    return f"fleet_orchestrator.tests.logging.{uuid4().hex}"


def _read_json_lines(path: Path) -> list[dict[str, object]]:
    lines = path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_json_logging_redacts_secrets_and_preserves_correlation_fields(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(run_id="run-logging-redaction", base_log_dir=tmp_path, logger_name=logger_name)
    )
    logger = logging.getLogger(logger_name)

    with correlation_scope(repo_id="/repos/api", worker_id="worker-0"):
        logger.info(
            "payload password=hunter2hunter2 and key sk-FAKE123456789012345678",
            extra={"nested": {"api_key": "plain-value", "safe": "ok"}},
        )

    shutdown_logging(handle)

    parsed = _read_json_lines(handle.log_path)
    assert len(parsed) == 1
    first = parsed[0]
    assert first["run_id"] == "run-logging-redaction"
    assert first["repo_id"] == "/repos/api"
    assert first["worker_id"] == "worker-0"
    assert first["fields"] == {"nested": {"api_key": "***REDACTED***", "safe": "ok"}}

    line = handle.log_path.read_text(encoding="utf-8")
    assert "hunter2" not in line
    assert "sk-FAKE" not in line
    assert "plain-value" not in line


def test_structlog_events_are_routed_into_the_run_log(tmp_path: Path) -> None:
    handle = setup_structured_logging(LoggingConfig(run_id="run-structlog", base_log_dir=tmp_path))
    log = structlog.get_logger("fleet_orchestrator.control_plane.test")

    with correlation_scope(phase="planning"):
        log.info("plan_extracted", repo="api", files=3, filename="shadowed")
    log.debug("below_threshold")

    shutdown_logging(handle)

    parsed = _read_json_lines(handle.log_path)
    assert [entry["event"] for entry in parsed] == ["plan_extracted"]
    assert parsed[0]["phase"] == "planning"
    assert parsed[0]["logger"] == "fleet_orchestrator.control_plane.test"
    assert parsed[0]["fields"] == {"repo": "api", "files": 3, "field_filename": "shadowed"}


def test_setup_logging_wrapper_uses_observability_config(tmp_path: Path) -> None:
    handle = setup_logging(
        {"log_level": "DEBUG", "log_dir": str(tmp_path), "redact_secrets": True},
        run_id="run-wrapper",
    )

    handle.logger.debug("hello", extra={"token": "t-123"})
    assert get_active_logging_handle() is handle
    shutdown_logging()

    assert get_active_logging_handle() is None
    assert handle.log_path == tmp_path / "run-wrapper" / "orchestrator.jsonl"
    content = handle.log_path.read_text(encoding="utf-8")
    assert "hello" in content
    assert "t-123" not in content


def test_redaction_can_be_disabled(tmp_path: Path) -> None:
    handle = setup_logging({"redact_secrets": False}, run_id="run-raw", log_dir=tmp_path)

    handle.logger.info("raw", extra={"token": "t-456"})
    shutdown_logging(handle)

    assert "t-456" in handle.log_path.read_text(encoding="utf-8")


def test_correlation_scope_validates_and_restores() -> None:
    with correlation_scope(run_id="run-1"):
        with correlation_scope(repo_id="/r", run_id=None):
            assert get_correlation_context() == {"repo_id": "/r"}
        assert get_correlation_context() == {"run_id": "run-1"}
    assert get_correlation_context() == {}

    with pytest.raises(ValueError, match="unknown correlation key"), correlation_scope(work_item="x"):
        pass


@pytest.mark.parametrize(
    "config_kwargs",
    [
        {"run_id": "  "},
        {"run_id": "r", "queue_size": 0},
        {"run_id": "r", "log_filename": "../escape.jsonl"},
        {"run_id": "r", "level": "LOUD"},
    ],
)
def test_invalid_configuration_is_rejected(tmp_path: Path, config_kwargs: dict[str, object]) -> None:
    with pytest.raises(ValueError):
        setup_structured_logging(LoggingConfig(base_log_dir=tmp_path, **config_kwargs))  # type: ignore[arg-type]


def test_multithreaded_logging_produces_valid_json_lines(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(run_id="run-threaded", base_log_dir=tmp_path, logger_name=logger_name, queue_size=4096)
    )
    logger = logging.getLogger(logger_name)

    total_threads = 8
    per_thread = 40

    def worker(thread_idx: int) -> None:
        with correlation_scope(worker_id=f"worker-{thread_idx}"):
            for i in range(per_thread):
                logger.info(
                    f"thread={thread_idx} index={i} password=secret-{thread_idx}-{i}",
                    extra={"api_key": f"sk-FAKE-{thread_idx}-{i}"},
                )

    threads = [threading.Thread(target=worker, args=(idx,)) for idx in range(total_threads)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    shutdown_logging(handle)

    lines = handle.log_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == total_threads * per_thread
    for line in lines:
        parsed = json.loads(line)
        assert isinstance(parsed, dict)
        assert str(parsed["worker_id"]).startswith("worker-")
        assert f"thread={str(parsed['worker_id']).removeprefix('worker-')} " in str(parsed["event"])
        assert "secret-" not in line
        assert "sk-FAKE" not in line


def test_queue_handler_non_blocking_and_shutdown_flushes(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(run_id="run-flush", base_log_dir=tmp_path, logger_name=logger_name, queue_size=10_000)
    )
    logger = logging.getLogger(logger_name)

    queue_handlers = [h for h in logger.handlers if isinstance(h, logging.handlers.QueueHandler)]
    assert queue_handlers, "expected queue-backed non-blocking logging"

    expected = 300
    for i in range(expected):
        logger.info("message %s", i)

    shutdown_logging(handle)
    shutdown_logging(handle)

    lines = handle.log_path.read_text(encoding="utf-8").splitlines()
    assert handle.dropped_records == 0
    assert handle.is_shutdown
    assert len(lines) == expected
