"""Controllers for loop CLI commands."""

from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path

from ralph_hybrid.config import ConfigurationError, Settings
from ralph_hybrid.orchestrator import circuit_breaker
from ralph_hybrid.orchestrator.backend import CliAgentBackend
from ralph_hybrid.orchestrator.callbacks import LifecycleCallbacks, detect_feature
from ralph_hybrid.orchestrator.controller import IterationController
from ralph_hybrid.orchestrator.gate import BackpressureGate, discover_gate_command
from ralph_hybrid.orchestrator.ledger import TaskLedger
from ralph_hybrid.orchestrator.models import CircuitThresholds, RunSummary, SessionStatus
from ralph_hybrid.orchestrator.rate_limiter import RateLimiter
from ralph_hybrid.orchestrator.signals import SentinelMarkers
from ralph_hybrid.orchestrator.state_store import StateStore


@dataclass(slots=True)
class LoopRunCommand:
    """CLI input for running the loop."""

    state_dir: Path | None
    ledger_path: Path | None
    max_iterations: int | None = None
    agent_command: str | None = None
    gate_command: str | None = None
    non_blocking_rate_limit: bool = False


@dataclass(slots=True)
class LoopStateCommand:
    """CLI input for commands that only touch persisted state."""

    state_dir: Path | None
    ledger_path: Path | None


@dataclass(slots=True)
class LoopHistoryCommand:
    """CLI input for iteration history listing."""

    state_dir: Path | None
    ledger_path: Path | None
    limit: int = 20


@dataclass(slots=True)
class LoopRunResult:
    """Run report to render in CLI."""

    lines: list[str]
    success: bool


class LoopCliController:
    """Coordinates run, status, reset and history CLI operations."""

    def run(self, command: LoopRunCommand) -> LoopRunResult:
        settings = _settings(command.state_dir, command.ledger_path)
        if command.agent_command:
            settings.agent = replace(settings.agent, command_template=command.agent_command)
        if command.gate_command:
            settings.gate = replace(settings.gate, command=command.gate_command)
        if command.non_blocking_rate_limit:
            settings.rate_limit = replace(settings.rate_limit, blocking=False)
        if command.max_iterations is not None:
            settings.loop = replace(settings.loop, max_iterations=command.max_iterations)
        _validate(settings)

        controller = build_controller(settings)
        summary = controller.run(max_iterations=settings.loop.max_iterations)
        return LoopRunResult(
            lines=_summary_lines(summary),
            success=summary.status == SessionStatus.ALL_COMPLETE,
        )

    def status(self, command: LoopStateCommand) -> list[str]:
        settings = _settings(command.state_dir, command.ledger_path)
        store = StateStore(settings.state_dir)
        session = store.load_session()
        breaker = store.load_circuit_breaker()
        limiter = RateLimiter.from_state(
            store.load_rate_limiter(),
            limit=settings.rate_limit.limit,
            window_seconds=settings.rate_limit.window_seconds,
        )

        lines = [
            f"Session: {session.status.value} after {session.iteration_count} iteration(s)",
        ]
        if session.reason:
            lines.append(f"Reason: {session.reason.splitlines()[0]}")
        ledger = TaskLedger(settings.ledger_path)
        if ledger.exists():
            snapshot = ledger.snapshot()
            lines.append(
                f"Ledger: {len(snapshot.completed_ids)}/{snapshot.total} items complete "
                f"({settings.ledger_path})",
            )
            next_item = ledger.next_item()
            if next_item is not None:
                lines.append(f"Next item: {next_item.id} {next_item.title}")
        else:
            lines.append(f"Ledger: not found ({settings.ledger_path})")
        lines.extend(circuit_breaker.describe(breaker, _thresholds(settings)))
        lines.append(limiter.status_line())
        history = store.read_iterations(limit=1)
        if history:
            last = history[0]
            lines.append(f"Last iteration: #{last.iteration} {last.outcome.value}")
        return lines

    def reset_circuit(self, command: LoopStateCommand) -> list[str]:
        settings = _settings(command.state_dir, command.ledger_path)
        session = build_controller(settings).reset_circuit()
        return [
            "Circuit breaker reset.",
            f"Session: {session.status.value}",
        ]

    def resume(self, command: LoopStateCommand) -> list[str]:
        settings = _settings(command.state_dir, command.ledger_path)
        controller = build_controller(settings)
        previous = controller.store.load_session().status
        session = controller.resume()
        lines = [f"Session resumed: {previous.value} -> {session.status.value}"]
        if circuit_breaker.is_tripped(controller.store.load_circuit_breaker(), _thresholds(settings)):
            lines.append("Circuit breaker is still tripped; run `ralph-hybrid reset-circuit`.")
        return lines

    def history(self, command: LoopHistoryCommand) -> list[str]:
        settings = _settings(command.state_dir, command.ledger_path)
        records = StateStore(settings.state_dir).read_iterations(limit=command.limit)
        if not records:
            return ["No iterations recorded."]
        lines = []
        for record in records:
            line = (
                f"#{record.iteration} {record.timestamp.isoformat(timespec='seconds')} "
                f"{record.outcome.value} {record.duration_seconds:.1f}s"
            )
            if record.exit_code is not None:
                line += f" exit={record.exit_code}"
            if record.completed_item_ids:
                line += f" completed={','.join(record.completed_item_ids)}"
            if record.gate_verdict is not None:
                line += f" gate={record.gate_verdict.value}"
            if record.error_fingerprint:
                line += f" fingerprint={record.error_fingerprint}"
            lines.append(line)
            if record.detail:
                lines.append(f"    {record.detail}")
        return lines


def build_controller(settings: Settings) -> IterationController:
    """Wire the loop collaborators from settings."""

    feature = resolve_feature(settings)
    gate_command = discover_gate_command(settings.gate.command, settings.state_dir, feature)
    return IterationController(
        ledger=TaskLedger(settings.ledger_path),
        store=StateStore(settings.state_dir),
        backend=CliAgentBackend(grace_seconds=settings.agent.grace_seconds),
        command_template=settings.agent.command_template,
        gate=BackpressureGate(
            gate_command,
            timeout_seconds=settings.gate.timeout_seconds,
            verification_failed_code=settings.gate.verification_failed_code,
        ),
        callbacks=LifecycleCallbacks(
            settings.state_dir,
            feature=feature,
            timeout_seconds=settings.callbacks.timeout_seconds,
        ),
        thresholds=_thresholds(settings),
        rate_limit=settings.rate_limit.limit,
        rate_window_seconds=settings.rate_limit.window_seconds,
        rate_limit_blocking=settings.rate_limit.blocking,
        iteration_timeout_seconds=settings.loop.iteration_timeout_seconds,
        iteration_sleep_seconds=settings.loop.iteration_sleep_seconds,
        markers=SentinelMarkers(
            all_complete=settings.sentinels.all_complete,
            unit_complete=settings.sentinels.unit_complete,
            blocked_prefix=settings.sentinels.blocked_prefix,
        ),
        workdir=settings.agent.workdir,
    )


def resolve_feature(settings: Settings) -> str | None:
    """Explicit feature name, else the current git branch when detection is on."""

    if settings.callbacks.feature:
        return settings.callbacks.feature
    if settings.callbacks.detect_feature:
        return detect_feature(settings.agent.workdir)
    return None


def _settings(state_dir: Path | None, ledger_path: Path | None) -> Settings:
    try:
        return Settings.from_env(state_dir=state_dir, ledger_path=ledger_path)
    except ValueError as error:
        raise ConfigurationError(str(error)) from error


def _validate(settings: Settings) -> None:
    try:
        settings.validate()
    except ValueError as error:
        raise ConfigurationError(str(error)) from error


def _thresholds(settings: Settings) -> CircuitThresholds:
    return CircuitThresholds(
        no_progress=settings.circuit_breaker.no_progress_threshold,
        same_error=settings.circuit_breaker.same_error_threshold,
    )


def _summary_lines(summary: RunSummary) -> list[str]:
    lines = [
        "Loop summary: "
        f"iterations={summary.iterations} completed_items={summary.unit_completions} "
        f"no_progress={summary.no_progress} errors={summary.errors} "
        f"timeouts={summary.timeouts} verification_failures={summary.verification_failures}",
        f"Status: {summary.status.value}" + (" (interrupted)" if summary.interrupted else ""),
    ]
    if summary.reason:
        lines.extend(summary.reason.splitlines())
    return lines
