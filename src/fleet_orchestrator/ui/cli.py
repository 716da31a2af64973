"""Command-line interface router for fleet-orchestrator."""

from __future__ import annotations

import argparse
import json
import os
import shlex
import shutil
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, NoReturn

from fleet_orchestrator.config import (
    DRIVER_CHOICES,
    MODE_CHOICES,
    PUSH_POLICY_CHOICES,
    TASK_CHOICES,
    ConfigLoadError,
    ConfigValidationError,
    collect_targets,
    effective_config,
    load_config,
)
from fleet_orchestrator.control_plane import RunController, RunOptions, RunReport
from fleet_orchestrator.domain.models import RepositoryTarget, TaskKind
from fleet_orchestrator.integration_plane import GitEngineError, GitRepository
from fleet_orchestrator.main import ExitCode
from fleet_orchestrator.observability import configure_structlog, setup_logging, shutdown_logging
from fleet_orchestrator.synthesis_plane.session import MockBehavior
from fleet_orchestrator.ui.render import CLIRenderer, create_renderer
from fleet_orchestrator.verification_plane import ProposedPlan, extract_plan_block


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = int(ExitCode.PARTIAL_FAILURE)

    def __str__(self) -> str:
        return self.message


class _ArgumentParser(argparse.ArgumentParser):
    """Usage errors exit with the invalid-invocation code instead of argparse's 2."""

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(int(ExitCode.INVALID_INVOCATION), f"{self.prog}: error: {message}\n")


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = _ArgumentParser(
        prog="fleet",
        description=(
            "fleet-orchestrator — drive a coding agent across many git repositories.\n\n"
            "Common workflows:\n"
            "  fleet preflight ~/src/*          Check which repositories are safe to touch\n"
            "  fleet run ~/src/* --mode plan    Collect and validate plans without committing\n"
            "  fleet run --resume               Continue an interrupted run\n"
            "  fleet status                     Show the checkpoint and latest results\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to fleet TOML config (default: ./fleet.toml if present).",
    )
    common.add_argument("--profile", default=None, help="Optional config profile overlay name.")
    common.add_argument(
        "--verbose", "-v", action="store_true", default=False, help="Show detailed output."
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )
    common.add_argument("--json", action="store_true", help="Emit deterministic JSON output")

    targets = argparse.ArgumentParser(add_help=False)
    targets.add_argument("repos", nargs="*", help="Repository paths")
    targets.add_argument(
        "--repos-file", default=None, help="YAML file listing repositories and overrides"
    )
    targets.add_argument(
        "--push-policy", choices=PUSH_POLICY_CHOICES, default=None, help="Push after committing"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # run -----------------------------------------------------------------
    run_parser = subparsers.add_parser(
        "run",
        parents=[common, targets],
        help="Plan, validate and apply changes across repositories",
        description=(
            "Run the agent against each repository with bounded parallelism.\n\n"
            "Examples:\n"
            "  fleet run repo-a repo-b --parallel 2\n"
            "  fleet run --repos-file repos.yaml --mode plan\n"
            "  fleet run --resume\n"
            "  fleet run repo-a --driver mock --mock-plan plan.json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    run_parser.add_argument("--mode", choices=MODE_CHOICES, default=None, help="Execution mode")
    run_parser.add_argument("--task", choices=TASK_CHOICES, default=None, help="Plan kind")
    run_parser.add_argument(
        "--parallel", type=_positive_int, default=None, help="Worker count (default from config)"
    )
    startup = run_parser.add_mutually_exclusive_group()
    startup.add_argument(
        "--resume", action="store_true", default=False, help="Continue from the checkpoint"
    )
    startup.add_argument(
        "--restart", action="store_true", default=False, help="Discard the checkpoint first"
    )
    run_parser.add_argument("--driver", choices=DRIVER_CHOICES, default=None, help="Session backend")
    run_parser.add_argument(
        "--mock-plan",
        action="append",
        default=[],
        metavar="[NAME=]PATH",
        help="Plan file the mock driver answers with (all repos, or the repo named NAME)",
    )
    run_parser.add_argument(
        "--dry-run",
        action="store_true",
        default=False,
        help="Print queue order and preflight verdicts without spawning sessions",
    )
    run_parser.set_defaults(handler=_cmd_run)

    # preflight -----------------------------------------------------------
    preflight_parser = subparsers.add_parser(
        "preflight",
        parents=[common, targets],
        help="Run the read-only safety checks",
        description="Report which repositories would be skipped and how to fix them.",
    )
    preflight_parser.set_defaults(handler=_cmd_preflight)

    # validate-plan -------------------------------------------------------
    validate_parser = subparsers.add_parser(
        "validate-plan",
        parents=[common],
        help="Run the guardrails against a plan file",
        description=(
            "Validate a JSON plan (or agent output containing a plan block)\n"
            "against a repository without executing it.\n\n"
            "Examples:\n"
            "  fleet validate-plan plan.json --repo ./repo-a\n"
            "  fleet validate-plan release.json --repo ./repo-a --task release\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    validate_parser.add_argument("plan_file", help="Plan JSON or captured agent output")
    validate_parser.add_argument("--repo", default=".", help="Repository path (default: .)")
    validate_parser.add_argument("--task", choices=TASK_CHOICES, default=None, help="Plan kind")
    validate_parser.set_defaults(handler=_cmd_validate_plan)

    # status --------------------------------------------------------------
    status_parser = subparsers.add_parser(
        "status",
        parents=[common],
        help="Show checkpoint, backoff and latest results",
    )
    status_parser.set_defaults(handler=_cmd_status)

    # doctor --------------------------------------------------------------
    doctor_parser = subparsers.add_parser(
        "doctor",
        parents=[common],
        help="Check external tools and configuration",
    )
    doctor_parser.set_defaults(handler=_cmd_doctor)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show effective configuration (redacted)",
        description=(
            "Display the effective config after merging defaults, file, env, and profile.\n"
            "Sensitive values are redacted.\n\n"
            "Examples:\n"
            "  fleet config\n"
            "  fleet config --profile fast --json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return int(ExitCode.INVALID_INVOCATION)

    configure_structlog()
    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


def main(argv: Sequence[str] | None = None) -> int:
    return run_cli(argv)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace) -> int:
    config = _load_effective_config(
        args,
        overrides={
            "run.mode": args.mode,
            "run.task": args.task,
            "run.parallelism": args.parallel,
            "run.push_policy": args.push_policy,
            "session.driver": args.driver,
        },
    )
    options = RunOptions(
        targets=tuple(_targets(args)),
        resume=_flag(args, "resume"),
        restart=_flag(args, "restart"),
        dry_run=_flag(args, "dry_run"),
    )
    mock_default, mock_behaviors = _mock_behaviors(args.mock_plan)
    controller = RunController(
        config, mock_default=mock_default, mock_behaviors=mock_behaviors
    )

    if options.dry_run:
        report = controller.run(options)
        return _render_report(args, report, log_path=None)

    # Logs land under the run id the checkpoint and ledger use.
    run_id = controller.resolve_run_id(options)
    options = replace(options, run_id=run_id)
    handle = setup_logging(config["observability"], run_id=run_id)
    try:
        report = controller.run(options)
    finally:
        shutdown_logging(handle)
    return _render_report(args, report, log_path=handle.log_path)


def _cmd_preflight(args: argparse.Namespace) -> int:
    config = _load_effective_config(args, overrides={"run.push_policy": args.push_policy})
    targets = _targets(args)
    if not targets:
        raise CLIError(
            "no repositories given; pass paths or --repos-file",
            exit_code=int(ExitCode.INVALID_INVOCATION),
        )
    controller = RunController(config)
    validator = controller.preflight_validator()
    results = [validator.check(target) for target in targets]
    exit_code = 0 if all(result.safe for result in results) else int(ExitCode.PARTIAL_FAILURE)

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "preflight",
                "exit_code": exit_code,
                "results": [result.to_dict() for result in results],
            }
        )
        return exit_code

    renderer = _get_renderer(args)
    renderer.heading("fleet preflight")
    renderer.preflight(results)
    safe = sum(1 for result in results if result.safe)
    renderer.kv("\nSafe", f"{safe}/{len(results)}")
    return exit_code


def _cmd_validate_plan(args: argparse.Namespace) -> int:
    config = _load_effective_config(args, overrides={"run.task": args.task})
    kind = TaskKind(str(config["run"]["task"]))
    payload = _read_plan_file(Path(args.plan_file))
    target = RepositoryTarget(path=Path(args.repo).expanduser())

    repo = GitRepository(target.path)
    try:
        fingerprint = repo.fingerprint().value
    except GitEngineError as exc:
        raise CLIError(
            f"cannot fingerprint {target.path}: {exc}", exit_code=int(ExitCode.INVALID_INVOCATION)
        ) from exc

    proposed = ProposedPlan(kind=kind, payload=payload, fingerprint=fingerprint)
    result = RunController(config).guardrails().validate(proposed, target, repo=repo)
    exit_code = 0 if result.ok else int(ExitCode.VALIDATION_REJECTED)

    if _flag(args, "json"):
        _emit_json({"command": "validate-plan", "repo": target.repo_id, **result.to_dict()})
        return exit_code

    renderer = _get_renderer(args)
    renderer.heading(f"fleet validate-plan ({kind.value})")
    renderer.kv("Repository", target.repo_id)
    for check in result.checks:
        label = f"{check.name}: {check.detail}" if check.detail else check.name
        if not check.evaluated:
            renderer.text(f"  -     {check.name}: not evaluated")
        elif check.passed:
            renderer.ok(label)
        else:
            renderer.fail(label)
    if result.errors:
        renderer.section("Errors:")
        renderer.items(list(result.errors))
    if result.warnings:
        renderer.section("Warnings:")
        renderer.items(list(result.warnings))
    renderer.kv("\nVerdict", "accepted" if result.ok else f"rejected ({result.reason})")
    return exit_code


def _cmd_status(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    snapshot = RunController(config).status()

    if _flag(args, "json"):
        _emit_json({"command": "status", **snapshot})
        return 0

    renderer = _get_renderer(args)
    renderer.kv("State dir", snapshot["state_dir"])
    renderer.kv("Run ID", snapshot["run_id"] or "(none)")
    owner = snapshot["run_lock"]
    if isinstance(owner, Mapping):
        renderer.kv("Run lock", f"held by pid {owner.get('pid')} on {owner.get('hostname')}")

    checkpoint = snapshot["checkpoint"]
    if isinstance(checkpoint, Mapping):
        renderer.kv("Lifecycle", checkpoint["lifecycle"])
        renderer.kv("Completed", f"{checkpoint['completed']}/{checkpoint['items']}")
        remaining = checkpoint["remaining"]
        if isinstance(remaining, list) and remaining:
            renderer.section("Remaining:")
            renderer.items([str(item) for item in remaining])
    else:
        renderer.kv("Checkpoint", "(none)")

    backoff = snapshot["backoff"]
    if isinstance(backoff, Mapping):
        renderer.kv(
            "Backoff",
            f"{backoff.get('reason')}: paused until epoch {backoff.get('pause_until')} "
            f"(delay {backoff.get('delay')}s)",
        )

    outcomes = snapshot["outcomes"]
    if isinstance(outcomes, list) and outcomes:
        rows = [
            [str(entry["repo"]), str(entry["status"]), str(entry["reason"] or "-")]
            for entry in outcomes
        ]
        renderer.table(["repository", "status", "reason"], rows, title="Latest results")

    if isinstance(checkpoint, Mapping):
        renderer.next_steps(["fleet run --resume", "fleet run --restart <repos...>"])
    return 0


def _cmd_doctor(args: argparse.Namespace) -> int:
    checks: list[tuple[str, bool, str]] = []
    config: dict[str, Any] | None = None
    try:
        config = _load_effective_config(args)
        checks.append(("config", True, "loaded successfully"))
    except CLIError as exc:
        checks.append(("config", False, str(exc)))

    git_path = shutil.which("git")
    checks.append(
        ("git", git_path is not None, f"found at {git_path}" if git_path else "not found in PATH")
    )

    if config is not None:
        session = config["session"]
        driver = str(session["driver"])
        tmux_path = shutil.which("tmux")
        checks.append(
            (
                "tmux",
                tmux_path is not None or driver != "tmux",
                f"found at {tmux_path}"
                if tmux_path
                else f"not found in PATH ({'required' if driver == 'tmux' else 'optional'})",
            )
        )
        command = shlex.split(str(session["agent_command"]))
        agent = command[0] if command else ""
        agent_path = shutil.which(agent) if agent else None
        checks.append(
            (
                f"agent:{agent or '(empty)'}",
                agent_path is not None or driver == "mock",
                f"found at {agent_path}" if agent_path else "not found in PATH",
            )
        )

        state_dir = Path(config["paths"]["state_dir"])
        candidate = state_dir if state_dir.exists() else _nearest_existing(state_dir)
        writable = candidate is not None and _is_writable(candidate)
        checks.append(
            ("state_dir", writable, f"{state_dir} ({'writable' if writable else 'not writable'})")
        )

    for tool in ("gitleaks", "detect-secrets"):
        path = shutil.which(tool)
        checks.append(
            (
                f"optional:{tool}",
                True,
                f"found at {path}" if path else "not installed (heuristic scan used)",
            )
        )

    all_passed = all(passed for _, passed, _ in checks)
    if _flag(args, "json"):
        _emit_json(
            {
                "command": "doctor",
                "ok": all_passed,
                "checks": [
                    {"name": name, "status": "ok" if passed else "fail", "detail": detail}
                    for name, passed, detail in checks
                ],
            }
        )
        return 0 if all_passed else int(ExitCode.DEPENDENCY_MISSING)

    renderer = _get_renderer(args)
    renderer.heading("fleet doctor")
    for name, passed, detail in checks:
        if passed:
            renderer.ok(f"{name}: {detail}")
        else:
            renderer.fail(f"{name}: {detail}")
    renderer.text("\nAll checks passed." if all_passed else "\nSome checks failed. See details above.")
    return 0 if all_passed else int(ExitCode.DEPENDENCY_MISSING)


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    profile = _optional_str(getattr(args, "profile", None))
    redacted = effective_config(config)

    if _flag(args, "json"):
        _emit_json({"command": "config", "active_profile": profile, "config": redacted})
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Active profile", profile or "(default)")
    renderer.text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _render_report(args: argparse.Namespace, report: RunReport, *, log_path: Path | None) -> int:
    exit_code = report.exit_code
    if _flag(args, "json"):
        payload: dict[str, object] = {"command": "run", **report.to_dict()}
        payload["log"] = log_path.as_posix() if log_path is not None else None
        _emit_json(payload)
        return exit_code

    renderer = _get_renderer(args)
    if report.dry_run:
        renderer.heading("fleet run --dry-run")
        renderer.section("Queue order:")
        renderer.items(list(report.queue_order), prefix="")
        renderer.section("Preflight:")
        renderer.preflight(report.preflight)
        return 0

    renderer.kv("Run ID", report.run_id)
    renderer.kv("Lifecycle", report.lifecycle.value)
    if report.resumed:
        renderer.kv("Resumed", "yes")
    renderer.outcomes(report.outcomes)
    renderer.blank()
    renderer.counts(report.counts())
    if report.ledger is not None:
        renderer.kv("Ledger", report.ledger.as_posix())
    if log_path is not None:
        renderer.kv("Log", log_path.as_posix())
    if report.interrupted:
        renderer.next_steps(["fleet run --resume", "fleet status"])
    return exit_code


def _load_effective_config(
    args: argparse.Namespace, *, overrides: Mapping[str, object] | None = None
) -> dict[str, Any]:
    config_path = _optional_str(getattr(args, "config_path", None))
    profile = _optional_str(getattr(args, "profile", None))
    try:
        return load_config(config_path, profile=profile, cli_overrides=overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=int(ExitCode.INVALID_INVOCATION)) from exc


def _targets(args: argparse.Namespace) -> list[RepositoryTarget]:
    try:
        return collect_targets(list(args.repos), repos_file=args.repos_file)
    except ConfigLoadError as exc:
        raise CLIError(str(exc), exit_code=int(ExitCode.INVALID_INVOCATION)) from exc


def _mock_behaviors(
    specs: Sequence[str],
) -> tuple[MockBehavior | None, dict[str, MockBehavior]]:
    default: MockBehavior | None = None
    named: dict[str, MockBehavior] = {}
    for spec in specs:
        name, sep, raw_path = spec.partition("=")
        if not sep:
            name, raw_path = "", spec
        behavior = MockBehavior(plan=_read_plan_file(Path(raw_path)))
        if name:
            named[name] = behavior
        else:
            default = behavior
    return default, named


def _read_plan_file(path: Path) -> dict[str, object]:
    """Load a plan from raw JSON or from captured agent output with a plan block."""

    try:
        text = path.expanduser().read_text(encoding="utf-8")
    except OSError as exc:
        raise CLIError(
            f"cannot read plan file {path}: {exc}", exit_code=int(ExitCode.INVALID_INVOCATION)
        ) from exc

    extraction = extract_plan_block(text)
    if extraction.payload is not None:
        return extraction.payload
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise CLIError(
            f"plan file {path} is neither JSON nor contains a plan block: {exc}",
            exit_code=int(ExitCode.INVALID_INVOCATION),
        ) from exc
    if not isinstance(payload, dict):
        raise CLIError(
            f"plan file {path} must contain a JSON object",
            exit_code=int(ExitCode.INVALID_INVOCATION),
        )
    return payload


def _nearest_existing(path: Path) -> Path | None:
    for candidate in (path, *path.parents):
        if candidate.exists():
            return candidate
    return None


def _is_writable(path: Path) -> bool:
    return os.access(path, os.W_OK)


def _positive_int(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer, got {raw!r}") from exc
    if value < 1:
        raise argparse.ArgumentTypeError("must be >= 1")
    return value


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = ["CLIError", "build_parser", "main", "run_cli"]
