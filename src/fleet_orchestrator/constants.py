"""Stable constants shared across orchestrator planes."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
RUN_STATE_SCHEMA_VERSION: Final[int] = 1
WORK_QUEUE_SCHEMA_VERSION: Final[int] = 1
PLAN_SCHEMA_VERSION: Final[int] = 1
LEDGER_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the config file unless overridden).
STATE_DIR: Final[PurePosixPath] = PurePosixPath(".fleet/state")
LOCK_DIR: Final[PurePosixPath] = PurePosixPath(".fleet/locks")
LOG_DIR: Final[PurePosixPath] = PurePosixPath(".fleet/logs")

# File names inside the state directory.
RUN_STATE_FILENAME: Final[str] = "run_state.json"
WORK_QUEUE_FILENAME: Final[str] = "work_queue.json"
BACKOFF_STATE_FILENAME: Final[str] = "backoff.json"
LEDGER_FILENAME: Final[str] = "ledger.jsonl"
PLANS_DIRNAME: Final[str] = "plans"
RUNS_DIRNAME: Final[str] = "runs"
ARTIFACTS_DIRNAME: Final[str] = "artifacts"

# Lock names for the shared resources guarded by the portable mutex.
RUN_LOCK_NAME: Final[str] = "run"
QUEUE_LOCK_NAME: Final[str] = "work-queue"
STATE_LOCK_NAME: Final[str] = "run-state"
BACKOFF_LOCK_NAME: Final[str] = "backoff"
LEDGER_LOCK_NAME: Final[str] = "ledger"

# Plan sentinels. Each must appear alone on its own line in agent output.
PLAN_BEGIN_MARKER: Final[str] = "<<<FLEET_PLAN_BEGIN>>>"
PLAN_END_MARKER: Final[str] = "<<<FLEET_PLAN_END>>>"

# Environment variable carrying extra denylist patterns (whitespace separated).
DENYLIST_EXTRA_ENV: Final[str] = "FLEET_DENYLIST_EXTRA"

__all__ = [
    "ARTIFACTS_DIRNAME",
    "BACKOFF_LOCK_NAME",
    "BACKOFF_STATE_FILENAME",
    "CONFIG_SCHEMA_VERSION",
    "DENYLIST_EXTRA_ENV",
    "LEDGER_FILENAME",
    "LEDGER_LOCK_NAME",
    "LEDGER_SCHEMA_VERSION",
    "LOCK_DIR",
    "LOG_DIR",
    "PLANS_DIRNAME",
    "PLAN_BEGIN_MARKER",
    "PLAN_END_MARKER",
    "PLAN_SCHEMA_VERSION",
    "QUEUE_LOCK_NAME",
    "RUNS_DIRNAME",
    "RUN_LOCK_NAME",
    "RUN_STATE_FILENAME",
    "RUN_STATE_SCHEMA_VERSION",
    "STATE_DIR",
    "STATE_LOCK_NAME",
    "WORK_QUEUE_FILENAME",
    "WORK_QUEUE_SCHEMA_VERSION",
]
