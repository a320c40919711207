"""On-disk loop state: breaker, limiter and session records plus the audit trail.

Layout under the state directory::

    circuit_breaker.json    rewritten atomically after every iteration
    rate_limiter.json       rewritten atomically after every admission
    session.json            rewritten atomically after every iteration
    iterations.jsonl        append-only audit trail
    logs/iteration-<n>.log  verbatim agent output
    halt_reason.txt         human-readable reason of the last halt
    status.json             snapshot for external monitors
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from ralph_hybrid.orchestrator.contracts import append_jsonl, load_json, read_jsonl, write_json
from ralph_hybrid.orchestrator.models import (
    CircuitBreakerState,
    GateVerdict,
    IterationRecord,
    Outcome,
    RateLimiterState,
    SessionState,
    SessionStatus,
)

logger = logging.getLogger(__name__)

STATE_SCHEMA_VERSION = 1


class StateError(RuntimeError):
    """A persisted state file exists but cannot be trusted."""


class StateStore:
    """Single-writer access to the state directory."""

    def __init__(self, root: Path) -> None:
        self.root = root

    @property
    def circuit_breaker_path(self) -> Path:
        return self.root / "circuit_breaker.json"

    @property
    def rate_limiter_path(self) -> Path:
        return self.root / "rate_limiter.json"

    @property
    def session_path(self) -> Path:
        return self.root / "session.json"

    @property
    def iterations_path(self) -> Path:
        return self.root / "iterations.jsonl"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def halt_reason_path(self) -> Path:
        return self.root / "halt_reason.txt"

    @property
    def status_path(self) -> Path:
        return self.root / "status.json"

    def iteration_log_path(self, iteration: int) -> Path:
        return self.logs_dir / f"iteration-{iteration}.log"

    def gate_log_path(self, iteration: int) -> Path:
        return self.logs_dir / f"iteration-{iteration}.gate.log"

    def ensure_layout(self) -> None:
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    def load_circuit_breaker(self) -> CircuitBreakerState:
        raw = self._load(self.circuit_breaker_path)
        if raw is None:
            return CircuitBreakerState()
        try:
            return CircuitBreakerState(
                consecutive_no_progress=_non_negative(raw, "consecutive_no_progress"),
                consecutive_same_error=_non_negative(raw, "consecutive_same_error"),
                last_error_fingerprint=_optional_str(raw, "last_error_fingerprint"),
                last_ledger_snapshot_hash=_optional_str(raw, "last_ledger_snapshot_hash"),
                recent_fingerprints=tuple(str(item) for item in raw.get("recent_fingerprints", [])),
            )
        except (TypeError, ValueError) as error:
            raise StateError(f"Invalid {self.circuit_breaker_path}: {error}") from error

    def save_circuit_breaker(self, state: CircuitBreakerState) -> None:
        write_json(
            self.circuit_breaker_path,
            {
                "schema_version": STATE_SCHEMA_VERSION,
                "consecutive_no_progress": state.consecutive_no_progress,
                "consecutive_same_error": state.consecutive_same_error,
                "last_error_fingerprint": state.last_error_fingerprint,
                "last_ledger_snapshot_hash": state.last_ledger_snapshot_hash,
                "recent_fingerprints": list(state.recent_fingerprints),
            },
        )

    def load_rate_limiter(self) -> RateLimiterState:
        raw = self._load(self.rate_limiter_path)
        if raw is None:
            return RateLimiterState()
        stamps = raw.get("invocation_timestamps", [])
        if not isinstance(stamps, list) or not all(
            isinstance(stamp, int | float) and not isinstance(stamp, bool) for stamp in stamps
        ):
            raise StateError(f"Invalid {self.rate_limiter_path}: timestamps must be numbers")
        return RateLimiterState(invocation_timestamps=tuple(float(stamp) for stamp in stamps))

    def save_rate_limiter(self, state: RateLimiterState) -> None:
        write_json(
            self.rate_limiter_path,
            {
                "schema_version": STATE_SCHEMA_VERSION,
                "invocation_timestamps": list(state.invocation_timestamps),
            },
        )

    def load_session(self) -> SessionState:
        raw = self._load(self.session_path)
        if raw is None:
            return SessionState()
        try:
            updated_raw = raw.get("updated_at")
            return SessionState(
                iteration_count=_non_negative(raw, "iteration_count"),
                status=SessionStatus(raw.get("status", SessionStatus.RUNNING.value)),
                reason=_optional_str(raw, "reason"),
                updated_at=datetime.fromisoformat(updated_raw) if updated_raw else None,
            )
        except (TypeError, ValueError) as error:
            raise StateError(f"Invalid {self.session_path}: {error}") from error

    def save_session(self, state: SessionState) -> None:
        state.updated_at = datetime.now(tz=UTC)
        write_json(
            self.session_path,
            {
                "schema_version": STATE_SCHEMA_VERSION,
                "iteration_count": state.iteration_count,
                "status": state.status.value,
                "reason": state.reason,
                "updated_at": state.updated_at.isoformat(),
            },
        )

    def append_iteration(self, record: IterationRecord) -> None:
        append_jsonl(self.iterations_path, _record_to_dict(record))

    def read_iterations(self, *, limit: int | None = None) -> list[IterationRecord]:
        try:
            rows = read_jsonl(self.iterations_path)
        except json.JSONDecodeError as error:
            raise StateError(f"Invalid {self.iterations_path}: {error}") from error
        records = [_record_from_dict(row) for row in rows]
        if limit is not None:
            return records[-limit:] if limit > 0 else []
        return records

    def write_halt_reason(self, reason: str) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        tmp_path = self.halt_reason_path.with_name(f".{self.halt_reason_path.name}.tmp")
        tmp_path.write_text(reason.rstrip() + "\n", "utf-8")
        tmp_path.replace(self.halt_reason_path)

    def read_halt_reason(self) -> str | None:
        if not self.halt_reason_path.is_file():
            return None
        return self.halt_reason_path.read_text("utf-8").strip() or None

    def clear_halt_reason(self) -> None:
        self.halt_reason_path.unlink(missing_ok=True)

    def write_status(self, payload: dict[str, Any]) -> None:
        write_json(
            self.status_path,
            {
                **payload,
                "schema_version": STATE_SCHEMA_VERSION,
                "written_at": datetime.now(tz=UTC).isoformat(),
            },
        )

    def _load(self, path: Path) -> dict[str, Any] | None:
        if not path.exists():
            return None
        try:
            return load_json(path)
        except (json.JSONDecodeError, TypeError, UnicodeDecodeError) as error:
            raise StateError(f"Cannot read {path}: {error}") from error


def _record_to_dict(record: IterationRecord) -> dict[str, Any]:
    return {
        "iteration": record.iteration,
        "timestamp": record.timestamp.isoformat(),
        "outcome": record.outcome.value,
        "duration_seconds": round(record.duration_seconds, 3),
        "error_fingerprint": record.error_fingerprint,
        "exit_code": record.exit_code,
        "timed_out": record.timed_out,
        "completed_item_ids": list(record.completed_item_ids),
        "gate_verdict": record.gate_verdict.value if record.gate_verdict else None,
        "detail": record.detail,
    }


def _record_from_dict(row: dict[str, Any]) -> IterationRecord:
    gate_raw = row.get("gate_verdict")
    return IterationRecord(
        iteration=int(row["iteration"]),
        timestamp=datetime.fromisoformat(str(row["timestamp"])),
        outcome=Outcome(row["outcome"]),
        duration_seconds=float(row.get("duration_seconds", 0.0)),
        error_fingerprint=row.get("error_fingerprint"),
        exit_code=row.get("exit_code"),
        timed_out=bool(row.get("timed_out", False)),
        completed_item_ids=tuple(row.get("completed_item_ids") or ()),
        gate_verdict=GateVerdict(gate_raw) if gate_raw else None,
        detail=row.get("detail"),
    )


def _non_negative(raw: dict[str, Any], key: str) -> int:
    value = raw.get(key, 0)
    if not isinstance(value, int) or isinstance(value, bool):
        raise TypeError(f"{key} must be an integer")
    if value < 0:
        raise ValueError(f"{key} must be >= 0")
    return value


def _optional_str(raw: dict[str, Any], key: str) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise TypeError(f"{key} must be a string or null")
    return value
