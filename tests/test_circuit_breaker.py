from __future__ import annotations

import allure

from ralph_hybrid.orchestrator.circuit_breaker import (
    describe,
    halt_message,
    is_tripped,
    record_outcome,
    reset,
)
from ralph_hybrid.orchestrator.models import (
    CircuitBreakerState,
    CircuitThresholds,
    Outcome,
    TripReason,
)
from ralph_hybrid.orchestrator.state_store import StateStore

pytestmark = [
    allure.epic("Iteration Loop"),
    allure.feature("Circuit Breaker"),
]


def test_no_progress_trips_exactly_on_threshold() -> None:
    thresholds = CircuitThresholds(no_progress=3, same_error=5)
    state = CircuitBreakerState()
    trips = []
    for _ in range(3):
        update = record_outcome(state, Outcome.NO_PROGRESS, progressed=False, thresholds=thresholds)
        state = update.state
        trips.append(update.trip)

    assert trips == [None, None, TripReason.NO_PROGRESS_EXCEEDED]
    assert state.consecutive_no_progress == 3


def test_same_error_trips_exactly_on_threshold() -> None:
    thresholds = CircuitThresholds(no_progress=3, same_error=5)
    state = CircuitBreakerState()
    trips = []
    for _ in range(5):
        update = record_outcome(
            state,
            Outcome.ERROR,
            progressed=False,
            fingerprint="error:abc",
            thresholds=thresholds,
        )
        state = update.state
        trips.append(update.trip)

    assert trips == [None, None, None, None, TripReason.REPEATED_ERROR]
    assert state.consecutive_no_progress == 0


def test_different_fingerprint_restarts_error_count() -> None:
    state = CircuitBreakerState()
    state = record_outcome(state, Outcome.ERROR, progressed=False, fingerprint="error:a").state
    state = record_outcome(state, Outcome.ERROR, progressed=False, fingerprint="error:a").state
    state = record_outcome(state, Outcome.TIMEOUT, progressed=False, fingerprint="timeout:b").state

    assert state.consecutive_same_error == 1
    assert state.last_error_fingerprint == "timeout:b"
    assert state.recent_fingerprints == ("error:a", "error:a", "timeout:b")


def test_verified_progress_resets_both_counters() -> None:
    state = CircuitBreakerState(
        consecutive_no_progress=2,
        consecutive_same_error=4,
        last_error_fingerprint="error:a",
    )

    update = record_outcome(state, Outcome.UNIT_COMPLETE, progressed=True, ledger_hash="h1")

    assert update.trip is None
    assert update.state.consecutive_no_progress == 0
    assert update.state.consecutive_same_error == 0
    assert update.state.last_error_fingerprint is None
    assert update.state.last_ledger_snapshot_hash == "h1"


def test_blocked_and_api_limit_leave_counters_untouched() -> None:
    state = CircuitBreakerState(consecutive_no_progress=2, consecutive_same_error=1)

    for outcome in (Outcome.BLOCKED, Outcome.API_LIMIT):
        update = record_outcome(state, outcome, progressed=False)
        assert update.trip is None
        assert update.state.consecutive_no_progress == 2
        assert update.state.consecutive_same_error == 1


def test_reloaded_state_is_identical_and_still_tripped(tmp_path) -> None:
    store = StateStore(tmp_path)
    state = CircuitBreakerState()
    for _ in range(3):
        state = record_outcome(state, Outcome.NO_PROGRESS, progressed=False, ledger_hash="h").state
    store.save_circuit_breaker(state)

    reloaded = store.load_circuit_breaker()

    assert reloaded == state
    assert is_tripped(reloaded)
    store.save_circuit_breaker(reloaded)
    assert store.load_circuit_breaker() == state


def test_reset_keeps_ledger_baseline_only() -> None:
    state = CircuitBreakerState(
        consecutive_no_progress=3,
        consecutive_same_error=2,
        last_error_fingerprint="error:a",
        last_ledger_snapshot_hash="h",
        recent_fingerprints=("error:a",),
    )

    cleared = reset(state)

    assert cleared == CircuitBreakerState(last_ledger_snapshot_hash="h")
    assert not is_tripped(cleared)


def test_halt_message_names_threshold_and_fingerprints() -> None:
    state = CircuitBreakerState(
        consecutive_same_error=5,
        recent_fingerprints=("error:a", "error:a"),
    )

    message = halt_message(TripReason.REPEATED_ERROR, state)

    assert "threshold 5" in message
    assert "error:a" in message
    assert "reset-circuit" in message


def test_describe_shows_counters() -> None:
    lines = describe(CircuitBreakerState(consecutive_no_progress=1))

    assert lines[0] == "circuit: closed"
    assert "no-progress: 1/3" in lines
