"""
fleet-orchestrator config package public API.

File: src/fleet_orchestrator/config/__init__.py

Purpose
- Export config loading/validation entrypoints and public error types.

What should be included in this file
- Public schema constants and validation/report types.
- Loader APIs for effective runtime config and redacted dumps.
- Repository list loading from CLI paths and YAML repos files.

Functional requirements
- Support loading from ``fleet.toml`` + ``FLEET_`` env overrides.
- Fail fast with clear structured validation/load errors.
"""

from fleet_orchestrator.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    dump_effective_config,
    effective_config,
    env_name_for_path,
    load_config,
    normalize_paths,
)
from fleet_orchestrator.config.repos import collect_targets, load_repos_file, targets_from_paths
from fleet_orchestrator.config.schema import (
    BUILTIN_PROFILE_NAMES,
    DEFAULT_CONFIG,
    DRIVER_CHOICES,
    MODE_CHOICES,
    PATH_FIELDS,
    PUSH_POLICY_CHOICES,
    TASK_CHOICES,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    FleetConfig,
    ProfileOverlay,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)

__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "DRIVER_CHOICES",
    "ENV_PREFIX",
    "FleetConfig",
    "MODE_CHOICES",
    "PATH_FIELDS",
    "PUSH_POLICY_CHOICES",
    "ProfileOverlay",
    "TASK_CHOICES",
    "apply_profile_overlay",
    "assert_valid_config",
    "collect_targets",
    "default_config",
    "dump_effective_config",
    "effective_config",
    "env_name_for_path",
    "load_config",
    "load_repos_file",
    "merge_config",
    "migration_guidance",
    "normalize_paths",
    "redact_config",
    "targets_from_paths",
    "validate_config",
]
