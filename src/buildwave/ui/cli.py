"""Command-line interface router for buildwave."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from buildwave.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    load_config,
)
from buildwave.control_plane import RunResult, RunState, RunStateStore, build_controller
from buildwave.domain.errors import ValidationError
from buildwave.domain.ids import generate_run_id
from buildwave.domain.models import ResolutionOption
from buildwave.domain.roles import RoleId, parse_role
from buildwave.knowledge_plane import KnowledgeBase, confidence_tier, open_learning_store
from buildwave.observability.logging import LoggingConfig, LoggingHandle, configure_logging
from buildwave.planning.request import WorkRequest, load_work_request
from buildwave.ui.render import CLIRenderer, create_renderer


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="buildwave",
        description=(
            "buildwave: dispatch dependency waves to workers, integrate in merge order,\n"
            "verify, and iterate on a quality score until the run ships.\n\n"
            "Common workflows:\n"
            "  buildwave plan request.yaml         Show waves and the critical path\n"
            "  buildwave run request.yaml --dry-run\n"
            "  buildwave status                    Show the last run\n"
            "  buildwave resume --option retry_with_guidance --guidance '...'\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to buildwave TOML config (default: ./buildwave.toml if present).",
    )
    common.add_argument(
        "--log-level",
        default=None,
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        help="Override [observability].log_level.",
    )
    common.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Emit machine-readable JSON instead of text.",
    )
    common.add_argument("--verbose", "-v", action="store_true", default=False)

    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser(
        "validate", parents=[common], help="Validate a work request and the config"
    )
    validate_parser.add_argument("request_path", help="Work request (.yaml, .yml or .json).")
    validate_parser.set_defaults(handler=_cmd_validate)

    plan_parser = subparsers.add_parser(
        "plan", parents=[common], help="Show the wave plan for a work request"
    )
    plan_parser.add_argument("request_path")
    plan_parser.set_defaults(handler=_cmd_plan)

    run_parser = subparsers.add_parser("run", parents=[common], help="Execute a work request")
    run_parser.add_argument("request_path")
    run_parser.add_argument(
        "--dry-run",
        action="store_true",
        default=False,
        help="In-memory integration line, no-op workers and always-pass stages.",
    )
    run_parser.add_argument("--run-id", default=None, help="Explicit run identifier.")
    run_parser.set_defaults(handler=_cmd_run)

    status_parser = subparsers.add_parser(
        "status", parents=[common], help="Show the persisted state of the last run"
    )
    status_parser.set_defaults(handler=_cmd_status)

    resume_parser = subparsers.add_parser(
        "resume", parents=[common], help="Resolve the open escalation and continue the run"
    )
    resume_parser.add_argument(
        "--option",
        required=True,
        choices=[option.value for option in ResolutionOption],
    )
    resume_parser.add_argument("--guidance", default=None, help="Guidance for the retry.")
    resume_parser.set_defaults(handler=_cmd_resume)

    patterns_parser = subparsers.add_parser(
        "patterns", parents=[common], help="List learned patterns"
    )
    patterns_parser.add_argument("--role", default=None, help="Only this role.")
    patterns_parser.add_argument(
        "--prune",
        action="store_true",
        default=False,
        help="Delete contradicted patterns with fewer than three observations first.",
    )
    patterns_parser.set_defaults(handler=_cmd_patterns)

    config_parser = subparsers.add_parser(
        "config", parents=[common], help="Print the effective configuration"
    )
    config_parser.set_defaults(handler=_cmd_config)
    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return the process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

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


def _cmd_validate(args: argparse.Namespace) -> int:
    _load_effective_config(args)
    request = _load_request(args.request_path)
    payload = {
        "command": "validate",
        "valid": True,
        "request": request.name,
        "features": len(request.features),
        "waves": len(request.plan),
        "digest": request.digest,
    }
    if args.json:
        _emit_json(payload)
        return 0
    renderer = _get_renderer(args)
    renderer.text(
        f"{request.name}: {len(request.features)} features in {len(request.plan)} waves"
    )
    return 0


def _cmd_plan(args: argparse.Namespace) -> int:
    request = _load_request(args.request_path)
    plan = request.plan
    if args.json:
        _emit_json(
            {
                "command": "plan",
                "request": request.name,
                "complexity": request.complexity.value,
                **plan.to_dict(),
                "merge_order": list(plan.merge_order()),
            }
        )
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Request", request.name)
    renderer.kv("Complexity", request.complexity.value)
    renderer.table(
        ("Wave", "Features"),
        [(str(wave.index), ", ".join(wave.features)) for wave in plan],
        title="Waves:",
    )
    renderer.section("Critical path:")
    renderer.text("  " + " -> ".join(plan.critical_path()))
    return 0


def _cmd_run(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    request = _load_request(args.request_path)
    run_id = args.run_id or generate_run_id()
    request_path = str(Path(args.request_path).expanduser().resolve())

    handle = _configure_logging(config, run_id)
    try:
        try:
            controller = build_controller(
                request,
                config,
                request_path=request_path,
                dry_run=args.dry_run,
                run_id=run_id,
            )
        except (ValidationError, ValueError) as exc:
            raise CLIError(str(exc), exit_code=2) from exc
        result = asyncio.run(controller.run())
    finally:
        handle.close()
    return _render_result(args, "run", result, log_path=handle.log_path)


def _cmd_status(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    store = RunStateStore(config["paths"]["state_dir"])
    state = store.load()
    if state is None:
        if args.json:
            _emit_json({"command": "status", "run": None})
            return 0
        _get_renderer(args).text(f"No run state found in {store.path.parent}")
        return 0

    payload = _status_payload(state)
    if args.json:
        _emit_json({"command": "status", "run": payload})
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Run ID", state.run_id)
    renderer.kv("Phase", state.phase.value)
    renderer.kv("Request", state.request_path)
    renderer.kv("Dry run", str(state.dry_run).lower())
    renderer.kv("Iteration", state.iteration)
    renderer.table(
        ("Feature", "Status"),
        sorted(state.features.items()),
        title="Features:",
    )
    if state.last_score:
        renderer.section("Last score:")
        renderer.kv(
            "  overall",
            f"{state.last_score['overall']:.3f} (threshold {state.last_score['threshold']:.3f})",
        )
        renderer.kv("  decision", state.last_score["decision"])
    escalation = state.open_escalation
    if escalation is not None:
        renderer.section(escalation.render())
        renderer.next_steps(
            [f"buildwave resume --option {option.value}" for option in ResolutionOption]
        )
    return 0


def _cmd_resume(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    store = RunStateStore(config["paths"]["state_dir"])
    state = store.load()
    if state is None:
        raise CLIError("no run state to resume", exit_code=2)
    if state.open_escalation is None:
        raise CLIError(f"run {state.run_id} has no open escalation", exit_code=2)
    request = _load_request(state.request_path)

    handle = _configure_logging(config, state.run_id)
    try:
        try:
            controller = build_controller(
                request,
                config,
                request_path=state.request_path,
                dry_run=state.dry_run,
                run_id=state.run_id,
            )
            controller.restore(state)
        except (ValidationError, ValueError) as exc:
            raise CLIError(str(exc), exit_code=2) from exc
        result = asyncio.run(controller.resume(args.option, args.guidance))
    finally:
        handle.close()
    return _render_result(args, "resume", result, log_path=handle.log_path)


def _cmd_patterns(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    learning = config["learning"]
    knowledge = KnowledgeBase(
        open_learning_store(
            learning["backend"],
            local_path=learning["local_path"],
            shared_path=learning["shared_path"],
        )
    )
    role: RoleId | None = None
    if args.role:
        try:
            role = parse_role(args.role)
        except ValueError as exc:
            raise CLIError(str(exc), exit_code=2) from exc

    pruned = knowledge.prune() if args.prune else []
    patterns = knowledge.patterns(role)
    if args.json:
        _emit_json(
            {
                "command": "patterns",
                "pruned": [pattern.id for pattern in pruned],
                "patterns": [pattern.to_dict() for pattern in patterns],
            }
        )
        return 0

    renderer = _get_renderer(args)
    if args.prune:
        renderer.kv("Pruned", len(pruned))
    if not patterns:
        renderer.text("No patterns recorded.")
        return 0
    renderer.table(
        ("Role", "Confidence", "Tier", "Seen", "Description"),
        [
            (
                pattern.source_role.value,
                str(pattern.confidence),
                confidence_tier(pattern.confidence).value,
                str(pattern.frequency),
                pattern.description + (" [contradicted]" if pattern.false_memory_flag else ""),
            )
            for pattern in patterns
        ],
    )
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    if args.json:
        print(dump_effective_config(config))
        return 0
    print(json.dumps(config, indent=2, sort_keys=True))
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(verbose=bool(getattr(args, "verbose", False)))


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, object] = {}
    if getattr(args, "log_level", None):
        overrides["observability.log_level"] = args.log_level
    try:
        return load_config(getattr(args, "config_path", None), cli_overrides=overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _load_request(path: str) -> WorkRequest:
    try:
        return load_work_request(path)
    except ValidationError as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _configure_logging(config: Mapping[str, Any], run_id: str) -> LoggingHandle:
    observability = config["observability"]
    return configure_logging(
        LoggingConfig(
            run_id=run_id,
            base_log_dir=observability["log_dir"],
            level=observability["log_level"],
            log_to_console=observability["log_to_console"],
            redact_secrets=observability["redact_secrets"],
        )
    )


def _status_payload(state: RunState) -> dict[str, Any]:
    escalation = state.open_escalation
    return {
        "run_id": state.run_id,
        "phase": state.phase.value,
        "request_path": state.request_path,
        "dry_run": state.dry_run,
        "iteration": state.iteration,
        "features": dict(sorted(state.features.items())),
        "merged": list(state.integration.get("merged", ())),
        "last_score": state.last_score,
        "escalation": escalation.surface() if escalation is not None else None,
        "outcome": state.outcome,
    }


def _render_result(
    args: argparse.Namespace, command: str, result: RunResult, *, log_path: Path
) -> int:
    if args.json:
        _emit_json({"command": command, **result.to_dict(), "log_path": str(log_path)})
        return result.exit_code

    renderer = _get_renderer(args)
    renderer.kv("Run ID", result.run_id)
    renderer.kv("Status", result.status.value)
    renderer.kv("Merged", ", ".join(result.merged) or "-")
    renderer.kv("Iterations", result.iterations)
    if result.score is not None:
        renderer.kv(
            "Score", f"{result.score.overall:.3f} (threshold {result.score.threshold:.3f})"
        )
    if result.notes:
        renderer.section("Notes:")
        renderer.items(list(result.notes))
    if result.escalation is not None:
        renderer.section(result.escalation.render())
        renderer.next_steps(
            [f"buildwave resume --option {option.value}" for option in ResolutionOption]
        )
    if renderer.verbose:
        renderer.kv("Log", log_path)
    return result.exit_code


__all__ = ["CLIError", "build_parser", "main", "run_cli"]
