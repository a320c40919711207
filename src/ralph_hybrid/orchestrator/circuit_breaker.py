"""Pure circuit breaker transitions over persisted counters."""

from __future__ import annotations

from dataclasses import dataclass, replace

from ralph_hybrid.orchestrator.models import (
    CircuitBreakerState,
    CircuitThresholds,
    Outcome,
    TripReason,
)

_ERROR_OUTCOMES = frozenset({Outcome.ERROR, Outcome.TIMEOUT})
_NEUTRAL_OUTCOMES = frozenset({Outcome.BLOCKED, Outcome.API_LIMIT})


@dataclass(frozen=True, slots=True)
class BreakerUpdate:
    """New breaker state and the trip it caused, if any."""

    state: CircuitBreakerState
    trip: TripReason | None = None


def record_outcome(  # noqa: PLR0913
    state: CircuitBreakerState,
    outcome: Outcome,
    *,
    progressed: bool,
    fingerprint: str | None = None,
    ledger_hash: str | None = None,
    thresholds: CircuitThresholds | None = None,
) -> BreakerUpdate:
    """Apply one classified iteration to the breaker counters.

    ``progressed`` means verified progress: the ledger gained completions and
    the gate did not veto them.
    """

    limits = thresholds or CircuitThresholds()
    snapshot_hash = ledger_hash if ledger_hash is not None else state.last_ledger_snapshot_hash

    if progressed:
        return BreakerUpdate(
            state=replace(
                state,
                consecutive_no_progress=0,
                consecutive_same_error=0,
                last_error_fingerprint=None,
                last_ledger_snapshot_hash=snapshot_hash,
            ),
        )

    if outcome in _ERROR_OUTCOMES:
        key = fingerprint or f"{outcome.value}:unknown"
        same = key == state.last_error_fingerprint
        count = state.consecutive_same_error + 1 if same else 1
        history = (*state.recent_fingerprints, key)[-limits.fingerprint_history :]
        updated = replace(
            state,
            consecutive_same_error=count,
            last_error_fingerprint=key,
            last_ledger_snapshot_hash=snapshot_hash,
            recent_fingerprints=history,
        )
        trip = TripReason.REPEATED_ERROR if count >= limits.same_error else None
        return BreakerUpdate(state=updated, trip=trip)

    if outcome in _NEUTRAL_OUTCOMES or outcome == Outcome.ALL_COMPLETE:
        return BreakerUpdate(state=replace(state, last_ledger_snapshot_hash=snapshot_hash))

    updated = replace(
        state,
        consecutive_no_progress=state.consecutive_no_progress + 1,
        last_ledger_snapshot_hash=snapshot_hash,
    )
    trip = (
        TripReason.NO_PROGRESS_EXCEEDED
        if updated.consecutive_no_progress >= limits.no_progress
        else None
    )
    return BreakerUpdate(state=updated, trip=trip)


def tripped_reason(
    state: CircuitBreakerState,
    thresholds: CircuitThresholds | None = None,
) -> TripReason | None:
    """Trip implied by loaded counters alone (a breaker that tripped before a crash)."""

    limits = thresholds or CircuitThresholds()
    if state.consecutive_no_progress >= limits.no_progress:
        return TripReason.NO_PROGRESS_EXCEEDED
    if state.consecutive_same_error >= limits.same_error:
        return TripReason.REPEATED_ERROR
    return None


def is_tripped(state: CircuitBreakerState, thresholds: CircuitThresholds | None = None) -> bool:
    return tripped_reason(state, thresholds) is not None


def reset(state: CircuitBreakerState | None = None) -> CircuitBreakerState:
    """Zeroed counters; the ledger snapshot hash is kept as the new baseline."""

    if state is None:
        return CircuitBreakerState()
    return CircuitBreakerState(last_ledger_snapshot_hash=state.last_ledger_snapshot_hash)


def describe(
    state: CircuitBreakerState,
    thresholds: CircuitThresholds | None = None,
) -> list[str]:
    limits = thresholds or CircuitThresholds()
    reason = tripped_reason(state, limits)
    lines = [
        f"circuit: {'TRIPPED (' + reason.value + ')' if reason else 'closed'}",
        f"no-progress: {state.consecutive_no_progress}/{limits.no_progress}",
        f"same-error: {state.consecutive_same_error}/{limits.same_error}",
    ]
    if state.last_error_fingerprint:
        lines.append(f"last error fingerprint: {state.last_error_fingerprint}")
    if state.recent_fingerprints:
        lines.append(f"recent fingerprints: {', '.join(state.recent_fingerprints)}")
    return lines


def halt_message(
    reason: TripReason,
    state: CircuitBreakerState,
    thresholds: CircuitThresholds | None = None,
) -> str:
    """Human-readable explanation for halt_reason.txt."""

    limits = thresholds or CircuitThresholds()
    if reason == TripReason.NO_PROGRESS_EXCEEDED:
        head = (
            f"Circuit breaker tripped: {state.consecutive_no_progress} consecutive iterations "
            f"without verified progress (threshold {limits.no_progress})."
        )
    else:
        head = (
            f"Circuit breaker tripped: the same error repeated {state.consecutive_same_error} "
            f"times in a row (threshold {limits.same_error})."
        )
    lines = [head]
    if state.recent_fingerprints:
        lines.append("Recent error fingerprints:")
        lines.extend(f"  - {item}" for item in state.recent_fingerprints)
    lines.append("Inspect the iteration logs, fix the cause, then run `ralph-hybrid reset-circuit`.")
    return "\n".join(lines)
