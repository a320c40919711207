"""Domain models for the iteration loop and its persisted safety state."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class SessionStatus(str, Enum):
    """Session lifecycle states. Every state except RUNNING is terminal."""

    RUNNING = "running"
    ALL_COMPLETE = "all_complete"
    CIRCUIT_TRIPPED = "circuit_tripped"
    MAX_ITERATIONS = "max_iterations"
    BLOCKED = "blocked"
    API_LIMIT_PAUSE = "api_limit_pause"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.RUNNING


class Outcome(str, Enum):
    """Classified result of one agent invocation."""

    UNIT_COMPLETE = "unit_complete"
    ALL_COMPLETE = "all_complete"
    NO_PROGRESS = "no_progress"
    BLOCKED = "blocked"
    API_LIMIT = "api_limit"
    ERROR = "error"
    TIMEOUT = "timeout"


class FailureClass(str, Enum):
    """Normalized failure classes used by the loop's safety policy."""

    CONFIGURATION = "configuration"
    TIMEOUT = "timeout"
    API_LIMIT = "api_limit"
    VERIFICATION_FAILED = "verification_failed"
    INTERNAL_ERROR = "internal_error"


class TripReason(str, Enum):
    """Which circuit breaker threshold was crossed."""

    NO_PROGRESS_EXCEEDED = "no_progress_exceeded"
    REPEATED_ERROR = "repeated_error"


class GateVerdict(str, Enum):
    """Backpressure gate result."""

    PASS = "pass"
    VERIFICATION_FAILED = "verification_failed"
    ERROR = "error"
    SKIPPED = "skipped"


@dataclass(slots=True)
class WorkItem:
    """Smallest trackable unit of work in the task ledger."""

    id: str
    title: str
    completed: bool = False
    priority: int = 100
    notes: str = ""
    verify: bool = True


@dataclass(slots=True)
class IterationRecord:
    """One append-only audit trail entry."""

    iteration: int
    timestamp: datetime
    outcome: Outcome
    duration_seconds: float
    error_fingerprint: str | None = None
    exit_code: int | None = None
    timed_out: bool = False
    completed_item_ids: tuple[str, ...] = ()
    gate_verdict: GateVerdict | None = None
    detail: str | None = None


@dataclass(slots=True)
class CircuitBreakerState:
    """Persisted circuit breaker counters."""

    consecutive_no_progress: int = 0
    consecutive_same_error: int = 0
    last_error_fingerprint: str | None = None
    last_ledger_snapshot_hash: str | None = None
    recent_fingerprints: tuple[str, ...] = ()


@dataclass(slots=True)
class RateLimiterState:
    """Wall-clock timestamps of invocations admitted inside the current window."""

    invocation_timestamps: tuple[float, ...] = ()


@dataclass(slots=True)
class SessionState:
    """Persisted session progress and terminal status."""

    iteration_count: int = 0
    status: SessionStatus = SessionStatus.RUNNING
    reason: str | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class CircuitThresholds:
    """Circuit breaker trip thresholds."""

    no_progress: int = 3
    same_error: int = 5
    fingerprint_history: int = 5


@dataclass(slots=True)
class RunSummary:
    """Aggregate loop counters for CLI reporting."""

    iterations: int = 0
    unit_completions: int = 0
    no_progress: int = 0
    errors: int = 0
    timeouts: int = 0
    verification_failures: int = 0
    status: SessionStatus = SessionStatus.RUNNING
    reason: str | None = None
    interrupted: bool = False
    outcomes: list[Outcome] = field(default_factory=list)
