"""Iteration controller: the state machine that drives the agent loop.

Each iteration runs RATE_GATE -> INVOKE -> DETECT -> BACKPRESSURE ->
UPDATE_STATE and then decides whether the session continues or halts in one
of the terminal statuses. All state is reloaded from disk at the start of
every iteration so a crashed loop resumes from the files alone.
"""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from ralph_hybrid.orchestrator import circuit_breaker
from ralph_hybrid.orchestrator.backend import AgentBackend, BackendRunError, InvokeRequest
from ralph_hybrid.orchestrator.callbacks import CallbackPoint, LifecycleCallbacks
from ralph_hybrid.orchestrator.failure_classifier import fingerprint
from ralph_hybrid.orchestrator.gate import BackpressureGate, GateRequest, GateResult, tail_lines
from ralph_hybrid.orchestrator.ledger import LedgerError, LedgerSnapshot, TaskLedger
from ralph_hybrid.orchestrator.models import (
    CircuitBreakerState,
    CircuitThresholds,
    GateVerdict,
    IterationRecord,
    Outcome,
    RunSummary,
    SessionState,
    SessionStatus,
    TripReason,
)
from ralph_hybrid.orchestrator.prompt import build_prompt
from ralph_hybrid.orchestrator.rate_limiter import RateLimiter, RateLimitExceeded
from ralph_hybrid.orchestrator.signals import (
    DEFAULT_MARKERS,
    Detection,
    SentinelMarkers,
    detect_outcome,
)
from ralph_hybrid.orchestrator.state_store import StateStore

logger = logging.getLogger(__name__)

_COMPLETION_OUTCOMES = frozenset({Outcome.UNIT_COMPLETE, Outcome.ALL_COMPLETE})
_FAILURE_OUTCOMES = frozenset({Outcome.ERROR, Outcome.TIMEOUT})
_GATE_FAILURES = frozenset({GateVerdict.VERIFICATION_FAILED, GateVerdict.ERROR})
LEDGER_INVALID_FINGERPRINT = "ledger:invalid"


@dataclass(slots=True)
class IterationReport:
    """What one iteration did and where it left the session."""

    iteration: int
    outcome: Outcome
    status: SessionStatus
    reason: str | None = None
    completed_item_ids: tuple[str, ...] = ()
    reverted_item_ids: tuple[str, ...] = ()
    gate_verdict: GateVerdict | None = None
    trip: TripReason | None = None
    error_fingerprint: str | None = None
    interrupted: bool = False
    notes: list[str] = field(default_factory=list)


class IterationController:
    """Runs the agent against the task ledger until a terminal status."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        ledger: TaskLedger,
        store: StateStore,
        backend: AgentBackend,
        command_template: str,
        gate: BackpressureGate | None = None,
        callbacks: LifecycleCallbacks | None = None,
        thresholds: CircuitThresholds | None = None,
        rate_limit: int = 100,
        rate_window_seconds: float = 3600.0,
        rate_limit_blocking: bool = True,
        iteration_timeout_seconds: float = 900.0,
        iteration_sleep_seconds: float = 2.0,
        markers: SentinelMarkers = DEFAULT_MARKERS,
        workdir: Path | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.ledger = ledger
        self.store = store
        self.backend = backend
        self.command_template = command_template
        self.gate = gate or BackpressureGate()
        self.callbacks = callbacks
        self.thresholds = thresholds or CircuitThresholds()
        self.rate_limit = rate_limit
        self.rate_window_seconds = rate_window_seconds
        self.rate_limit_blocking = rate_limit_blocking
        self.iteration_timeout_seconds = iteration_timeout_seconds
        self.iteration_sleep_seconds = iteration_sleep_seconds
        self.markers = markers
        self.workdir = workdir
        self._clock = clock
        self._wall_clock = wall_clock
        self._sleep = sleep
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self, *, signal_name: str = "manual") -> None:
        if not self._stop_requested:
            logger.warning("Stop requested (%s); finishing the current iteration", signal_name)
        self._stop_requested = True
        self._stop_signal_name = signal_name

    def preflight(self) -> None:
        """Fail on configuration errors before any rate-limit budget is spent."""

        self.backend.preflight(self.command_template)
        self.gate.preflight()
        if not self.ledger.exists():
            raise LedgerError(f"Task ledger not found: {self.ledger.path}")
        if self.ledger.snapshot().total == 0:
            raise LedgerError(f"Task ledger has no work items: {self.ledger.path}")

    def run(self, *, max_iterations: int = 20) -> RunSummary:
        """Iterate until a terminal status, a stop request or ``max_iterations``."""

        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")

        summary = RunSummary()
        self.store.ensure_layout()
        session = self.store.load_session()
        if session.status.is_terminal:
            logger.info("Session is already %s; nothing to do", session.status.value)
            summary.status = session.status
            summary.reason = session.reason or self.store.read_halt_reason()
            return summary

        self.preflight()
        self._fire(CallbackPoint.PRE_RUN, max_iterations=max_iterations)
        try:
            with self._signal_handlers():
                self._loop(summary, max_iterations)
        finally:
            self._fire(
                CallbackPoint.POST_RUN,
                status=summary.status.value,
                reason=summary.reason,
                iterations=summary.iterations,
            )
        return summary

    def _loop(self, summary: RunSummary, max_iterations: int) -> None:
        while True:
            if self._stop_requested:
                summary.interrupted = True
                summary.reason = f"stopped by {self._stop_signal_name}"
                return

            halted = self._check_halt_before_invoke()
            if halted is not None:
                summary.status = halted.status
                summary.reason = halted.reason
                self._fire_halt(halted)
                return

            if summary.iterations >= max_iterations:
                reason = self._max_iterations_reason(max_iterations)
                self._halt(SessionStatus.MAX_ITERATIONS, reason)
                summary.status = SessionStatus.MAX_ITERATIONS
                summary.reason = reason
                self._fire(CallbackPoint.ON_ERROR, status=summary.status.value, reason=reason)
                return

            try:
                report = self.run_iteration()
            except RateLimitExceeded as error:
                logger.warning("%s", error)
                summary.reason = str(error)
                return
            except InterruptedError:
                summary.interrupted = True
                summary.reason = f"stopped by {self._stop_signal_name}"
                return

            _accumulate(summary, report)
            if report.status.is_terminal:
                summary.status = report.status
                summary.reason = report.reason
                self._fire_halt(report)
                return
            if report.outcome in _FAILURE_OUTCOMES:
                self._fire(
                    CallbackPoint.ON_ERROR,
                    iteration=report.iteration,
                    outcome=report.outcome.value,
                    error_fingerprint=report.error_fingerprint,
                )
            if report.interrupted:
                summary.interrupted = True
                summary.reason = f"stopped by {self._stop_signal_name}"
                return
            self._sleep_with_stop(self.iteration_sleep_seconds)

    def run_iteration(self) -> IterationReport:  # noqa: C901, PLR0912, PLR0915
        """Run exactly one iteration against freshly reloaded state."""

        session = self.store.load_session()
        breaker = self.store.load_circuit_breaker()
        document = self.ledger.load()
        item = self.ledger.next_item()
        if item is None:
            raise LedgerError("No open work item left in the task ledger.")

        limiter = RateLimiter.from_state(
            self.store.load_rate_limiter(),
            limit=self.rate_limit,
            window_seconds=self.rate_window_seconds,
            clock=self._clock,
            wall_clock=self._wall_clock,
            sleep=self._sleep,
            stop_requested=lambda: self._stop_requested,
        )
        limiter.acquire(blocking=self.rate_limit_blocking)
        self.store.save_rate_limiter(limiter.to_state())

        iteration = session.iteration_count + 1
        session.iteration_count = iteration
        self.store.save_session(session)
        self._fire(CallbackPoint.PRE_ITERATION, iteration=iteration, item_id=item.id)

        before = self.ledger.snapshot()
        previous = self.store.read_iterations(limit=1)
        prompt = build_prompt(
            ledger=document,
            item=item,
            iteration=iteration,
            ledger_path=self.ledger.path,
            markers=self.markers,
            previous_failure=self._previous_failure(previous[0]) if previous else None,
        )
        log_path = self.store.iteration_log_path(iteration)
        logger.info("Iteration %d: working on %s (%s)", iteration, item.id, item.title)

        try:
            result = self.backend.run(
                InvokeRequest(
                    command_template=self.command_template,
                    prompt=prompt,
                    iteration=iteration,
                    log_path=log_path,
                    ledger_path=self.ledger.path,
                    timeout_seconds=self.iteration_timeout_seconds,
                    workdir=self.workdir,
                    stop_requested=lambda: self._stop_requested,
                ),
            )
        except BackendRunError as error:
            if error.is_configuration:
                raise
            logger.error("Iteration %d: agent failed to start: %s", iteration, error)
            return self._record_failure(
                iteration=iteration,
                session=session,
                detail=str(error),
                error_fingerprint=fingerprint("error", str(error)),
                ledger_hash=before.digest(),
            )

        if result.interrupted:
            record = IterationRecord(
                iteration=iteration,
                timestamp=datetime.now(tz=UTC),
                outcome=Outcome.NO_PROGRESS,
                duration_seconds=result.duration_seconds,
                exit_code=result.exit_code,
                detail="interrupted by stop request",
            )
            self.store.append_iteration(record)
            logger.warning("Iteration %d interrupted; ledger left as-is", iteration)
            return IterationReport(
                iteration=iteration,
                outcome=Outcome.NO_PROGRESS,
                status=SessionStatus.RUNNING,
                interrupted=True,
            )

        try:
            after = self.ledger.snapshot()
        except LedgerError as error:
            logger.error("Iteration %d: agent left an unreadable ledger: %s", iteration, error)
            return self._record_failure(
                iteration=iteration,
                session=session,
                detail=str(error),
                error_fingerprint=LEDGER_INVALID_FINGERPRINT,
                ledger_hash=before.digest(),
                duration_seconds=result.duration_seconds,
                exit_code=result.exit_code,
            )
        detection = detect_outcome(
            output=result.raw_output,
            exit_code=result.exit_code,
            timed_out=result.timed_out,
            before=before,
            after=after,
            markers=self.markers,
        )
        outcome = detection.outcome
        error_fingerprint = detection.error_fingerprint
        notes = list(detection.notes)
        progressed = detection.progressed
        gate_result: GateResult | None = None
        reverted: tuple[str, ...] = ()
        completed = detection.diff.completed_ids

        if completed:
            verify_flags = {entry.id: entry.verify for entry in self.ledger.load().items}
            to_verify = tuple(item_id for item_id in completed if verify_flags.get(item_id, True))
            if not self.gate.enabled or not to_verify:
                gate_result = GateResult(verdict=GateVerdict.SKIPPED)
            else:
                gate_result = self.gate.verify(
                    GateRequest(
                        item_ids=to_verify,
                        iteration=iteration,
                        output_path=log_path,
                        ledger_path=self.ledger.path,
                    ),
                    log_path=self.store.gate_log_path(iteration),
                )
            if gate_result.verdict in _GATE_FAILURES:
                reverted = tuple(self.ledger.revert_completion(to_verify))
                completed = tuple(item_id for item_id in completed if item_id not in reverted)
                progressed = bool(completed)
                after = self.ledger.snapshot()
                if gate_result.verdict == GateVerdict.VERIFICATION_FAILED:
                    notes.append(f"gate rejected {', '.join(reverted)}")
                else:
                    notes.append(
                        f"gate error (exit {gate_result.exit_code}); reverted {', '.join(reverted)}",
                    )
                outcome, gate_fingerprint = _outcome_after_veto(
                    outcome,
                    gate_result,
                    progressed=progressed,
                    all_complete=after.all_complete,
                )
                if gate_fingerprint is not None:
                    error_fingerprint = gate_fingerprint
                elif outcome not in _FAILURE_OUTCOMES:
                    error_fingerprint = None

        update = circuit_breaker.record_outcome(
            breaker,
            outcome,
            progressed=progressed,
            fingerprint=error_fingerprint,
            ledger_hash=after.digest(),
            thresholds=self.thresholds,
        )
        self.store.save_circuit_breaker(update.state)

        status, reason = self._next_status(outcome, detection, update.trip, update.state, after)
        record = IterationRecord(
            iteration=iteration,
            timestamp=datetime.now(tz=UTC),
            outcome=outcome,
            duration_seconds=result.duration_seconds,
            error_fingerprint=error_fingerprint,
            exit_code=result.exit_code,
            timed_out=result.timed_out,
            completed_item_ids=completed,
            gate_verdict=gate_result.verdict if gate_result else None,
            detail=_detail(detection, notes, gate_result),
        )
        self.store.append_iteration(record)

        session.status = status
        session.reason = reason
        self.store.save_session(session)
        if status.is_terminal:
            self.store.write_halt_reason(reason or status.value)
            log = logger.error if status == SessionStatus.CIRCUIT_TRIPPED else logger.info
            log("Session halted: %s", reason)
        self._write_status(session=session, last_outcome=outcome, snapshot=after, limiter=limiter)

        logger.info(
            "Iteration %d finished: %s in %.1fs (completed: %s)",
            iteration,
            outcome.value,
            result.duration_seconds,
            ", ".join(completed) or "none",
        )
        return IterationReport(
            iteration=iteration,
            outcome=outcome,
            status=status,
            reason=reason,
            completed_item_ids=completed,
            reverted_item_ids=reverted,
            gate_verdict=gate_result.verdict if gate_result else None,
            trip=update.trip,
            error_fingerprint=error_fingerprint,
            notes=notes,
        )

    def reset_circuit(self) -> SessionState:
        """Zero the breaker counters and reopen a tripped session."""

        state = circuit_breaker.reset(self.store.load_circuit_breaker())
        self.store.save_circuit_breaker(state)
        session = self.store.load_session()
        if session.status == SessionStatus.CIRCUIT_TRIPPED:
            session.status = SessionStatus.RUNNING
            session.reason = None
            self.store.clear_halt_reason()
        self.store.save_session(session)
        logger.info("Circuit breaker reset")
        return session

    def resume(self) -> SessionState:
        """Return a terminal session to RUNNING; breaker counters stay as they are."""

        session = self.store.load_session()
        if session.status.is_terminal:
            logger.info("Resuming session halted as %s", session.status.value)
        session.status = SessionStatus.RUNNING
        session.reason = None
        self.store.save_session(session)
        self.store.clear_halt_reason()
        if circuit_breaker.is_tripped(self.store.load_circuit_breaker(), self.thresholds):
            logger.warning("Circuit breaker is still tripped; run reset-circuit before run")
        return session

    def _check_halt_before_invoke(self) -> IterationReport | None:
        session = self.store.load_session()
        if session.status.is_terminal:
            return IterationReport(
                iteration=session.iteration_count,
                outcome=Outcome.NO_PROGRESS,
                status=session.status,
                reason=session.reason,
            )

        snapshot = self.ledger.snapshot()
        if snapshot.all_complete:
            reason = f"All {snapshot.total} work items are complete."
            self._halt(SessionStatus.ALL_COMPLETE, reason)
            return IterationReport(
                iteration=session.iteration_count,
                outcome=Outcome.ALL_COMPLETE,
                status=SessionStatus.ALL_COMPLETE,
                reason=reason,
            )

        breaker = self.store.load_circuit_breaker()
        trip = circuit_breaker.tripped_reason(breaker, self.thresholds)
        if trip is not None:
            reason = circuit_breaker.halt_message(trip, breaker, self.thresholds)
            self._halt(SessionStatus.CIRCUIT_TRIPPED, reason)
            return IterationReport(
                iteration=session.iteration_count,
                outcome=Outcome.NO_PROGRESS,
                status=SessionStatus.CIRCUIT_TRIPPED,
                reason=reason,
                trip=trip,
            )
        return None

    def _halt(self, status: SessionStatus, reason: str) -> None:
        session = self.store.load_session()
        session.status = status
        session.reason = reason
        self.store.save_session(session)
        self.store.write_halt_reason(reason)
        logger.info("Session halted: %s", reason)

    def _next_status(  # noqa: PLR0913
        self,
        outcome: Outcome,
        detection: Detection,
        trip: TripReason | None,
        breaker_state: CircuitBreakerState,
        snapshot: LedgerSnapshot,
    ) -> tuple[SessionStatus, str | None]:
        if outcome == Outcome.ALL_COMPLETE and snapshot.all_complete:
            return SessionStatus.ALL_COMPLETE, f"All {snapshot.total} work items are complete."
        if trip is not None:
            return (
                SessionStatus.CIRCUIT_TRIPPED,
                circuit_breaker.halt_message(trip, breaker_state, self.thresholds),
            )
        if outcome == Outcome.BLOCKED:
            return SessionStatus.BLOCKED, f"Agent reported it is blocked: {detection.blocked_reason}"
        if outcome == Outcome.API_LIMIT:
            line = detection.api_limit.line if detection.api_limit else "quota message"
            return (
                SessionStatus.API_LIMIT_PAUSE,
                f"Provider API limit detected: {line}\n"
                "Wait for the provider quota to reset, then run `ralph-hybrid resume` "
                "followed by `ralph-hybrid run`.",
            )
        return SessionStatus.RUNNING, None

    def _previous_failure(self, record: IterationRecord) -> str | None:
        summary = _failure_summary(record)
        if summary is None or record.gate_verdict not in _GATE_FAILURES:
            return summary
        gate_log = self.store.gate_log_path(record.iteration)
        if not gate_log.is_file():
            return summary
        output = tail_lines(gate_log.read_text("utf-8", errors="replace")).strip()
        if not output:
            return summary
        return (
            f"{summary}\n\nVerification output ({gate_log}):\n\n"
            f"```\n{output}\n```\n\nFix these failures before marking the item complete again."
        )

    def _fire(self, point: CallbackPoint, **context: str | int | None) -> None:
        if self.callbacks is not None:
            self.callbacks.fire(point, ledger_file=str(self.ledger.path), **context)

    def _fire_halt(self, report: IterationReport) -> None:
        point = (
            CallbackPoint.ON_COMPLETION
            if report.status == SessionStatus.ALL_COMPLETE
            else CallbackPoint.ON_ERROR
        )
        self._fire(
            point,
            iteration=report.iteration,
            status=report.status.value,
            reason=report.reason,
            outcome=report.outcome.value,
        )

    def _max_iterations_reason(self, max_iterations: int) -> str:
        snapshot = self.ledger.snapshot()
        remaining = snapshot.total - len(snapshot.completed_ids)
        return (
            f"Reached the limit of {max_iterations} iterations for this run with "
            f"{remaining} work item(s) still open. Run `ralph-hybrid resume` to continue."
        )

    def _record_failure(  # noqa: PLR0913
        self,
        *,
        iteration: int,
        session: SessionState,
        detail: str,
        error_fingerprint: str,
        ledger_hash: str,
        duration_seconds: float = 0.0,
        exit_code: int | None = None,
    ) -> IterationReport:
        """Record an iteration that ended before its outcome could be detected."""

        update = circuit_breaker.record_outcome(
            self.store.load_circuit_breaker(),
            Outcome.ERROR,
            progressed=False,
            fingerprint=error_fingerprint,
            ledger_hash=ledger_hash,
            thresholds=self.thresholds,
        )
        self.store.save_circuit_breaker(update.state)
        self.store.append_iteration(
            IterationRecord(
                iteration=iteration,
                timestamp=datetime.now(tz=UTC),
                outcome=Outcome.ERROR,
                duration_seconds=duration_seconds,
                error_fingerprint=error_fingerprint,
                exit_code=exit_code,
                detail=detail,
            ),
        )
        status = SessionStatus.RUNNING
        reason = None
        if update.trip is not None:
            status = SessionStatus.CIRCUIT_TRIPPED
            reason = circuit_breaker.halt_message(update.trip, update.state, self.thresholds)
            session.status = status
            session.reason = reason
            self.store.save_session(session)
            self.store.write_halt_reason(reason)
        return IterationReport(
            iteration=iteration,
            outcome=Outcome.ERROR,
            status=status,
            reason=reason,
            trip=update.trip,
            error_fingerprint=error_fingerprint,
        )

    def _write_status(
        self,
        *,
        session: SessionState,
        last_outcome: Outcome,
        snapshot: LedgerSnapshot,
        limiter: RateLimiter,
    ) -> None:
        breaker = self.store.load_circuit_breaker()
        self.store.write_status(
            {
                "status": session.status.value,
                "reason": session.reason,
                "iteration_count": session.iteration_count,
                "last_outcome": last_outcome.value,
                "items_total": snapshot.total,
                "items_completed": len(snapshot.completed_ids),
                "consecutive_no_progress": breaker.consecutive_no_progress,
                "consecutive_same_error": breaker.consecutive_same_error,
                "rate_limit_remaining": limiter.remaining(),
            },
        )

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = self._clock() + seconds
        while not self._stop_requested and self._clock() < deadline:
            self._sleep(min(0.1, max(0.0, deadline - self._clock())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _outcome_after_veto(
    outcome: Outcome,
    gate_result: GateResult,
    *,
    progressed: bool,
    all_complete: bool,
) -> tuple[Outcome, str | None]:
    """Reclassify an iteration whose completions the gate vetoed.

    Returns the outcome and, for a gate error, the fingerprint to count. When
    nothing survives the veto the detected outcome no longer matters, a timed
    out iteration included.
    """

    if progressed:
        if outcome in _COMPLETION_OUTCOMES:
            return (Outcome.ALL_COMPLETE if all_complete else Outcome.UNIT_COMPLETE), None
        return outcome, None
    if gate_result.verdict == GateVerdict.ERROR:
        return Outcome.ERROR, gate_result.fingerprint_source
    return Outcome.NO_PROGRESS, None


def _failure_summary(record: IterationRecord) -> str | None:
    if record.outcome in {Outcome.UNIT_COMPLETE, Outcome.ALL_COMPLETE}:
        return None
    parts = [f"Iteration {record.iteration} ended with {record.outcome.value}."]
    if record.detail:
        parts.append(record.detail)
    return " ".join(parts)


def _detail(detection: Detection, notes: list[str], gate_result: GateResult | None) -> str | None:
    parts = list(notes)
    if detection.error_line:
        parts.append(detection.error_line)
    if detection.blocked_reason:
        parts.append(f"blocked: {detection.blocked_reason}")
    if gate_result is not None and gate_result.verdict not in {GateVerdict.PASS, GateVerdict.SKIPPED}:
        if gate_result.output_tail:
            parts.append(gate_result.output_tail.splitlines()[-1])
    return "; ".join(parts) or None


def _accumulate(summary: RunSummary, report: IterationReport) -> None:
    summary.iterations += 1
    summary.outcomes.append(report.outcome)
    if report.completed_item_ids:
        summary.unit_completions += len(report.completed_item_ids)
    if report.outcome == Outcome.NO_PROGRESS:
        summary.no_progress += 1
    elif report.outcome == Outcome.ERROR:
        summary.errors += 1
    elif report.outcome == Outcome.TIMEOUT:
        summary.timeouts += 1
    if report.gate_verdict == GateVerdict.VERIFICATION_FAILED:
        summary.verification_failures += 1
