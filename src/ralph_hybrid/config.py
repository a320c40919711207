"""Runtime configuration for the iteration loop."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(ValueError):
    """Settings cannot be used to run the loop."""


DEFAULT_AGENT_COMMAND = "claude -p --permission-mode acceptEdits"
DEFAULT_STATE_DIR = Path(".ralph-hybrid")
DEFAULT_LEDGER_PATH = Path("prd.json")


@dataclass(slots=True)
class LoopSettings:
    """Iteration budget and pacing."""

    max_iterations: int = 20
    iteration_timeout_seconds: float = 900.0
    iteration_sleep_seconds: float = 2.0


@dataclass(slots=True)
class CircuitBreakerSettings:
    """Circuit breaker trip thresholds."""

    no_progress_threshold: int = 3
    same_error_threshold: int = 5


@dataclass(slots=True)
class RateLimitSettings:
    """Sliding-window invocation limit."""

    limit: int = 100
    window_seconds: float = 3600.0
    blocking: bool = True


@dataclass(slots=True)
class GateSettings:
    """Backpressure gate command."""

    command: str | None = None
    timeout_seconds: float = 300.0
    verification_failed_code: int = 75


@dataclass(slots=True)
class CallbackSettings:
    """Lifecycle callback scripts and the feature directory they are looked up in."""

    timeout_seconds: float = 300.0
    feature: str | None = None
    detect_feature: bool = True


@dataclass(slots=True)
class AgentSettings:
    """External agent command template."""

    command_template: str = DEFAULT_AGENT_COMMAND
    grace_seconds: float = 5.0
    workdir: Path | None = None


@dataclass(slots=True)
class SentinelSettings:
    """Exact sentinel tokens the agent prints."""

    all_complete: str = "<promise>COMPLETE</promise>"
    unit_complete: str = "<promise>STORY_COMPLETE</promise>"
    blocked_prefix: str = "<promise>BLOCKED:"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    state_dir: Path = DEFAULT_STATE_DIR
    ledger_path: Path = DEFAULT_LEDGER_PATH
    loop: LoopSettings = field(default_factory=LoopSettings)
    circuit_breaker: CircuitBreakerSettings = field(default_factory=CircuitBreakerSettings)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    gate: GateSettings = field(default_factory=GateSettings)
    callbacks: CallbackSettings = field(default_factory=CallbackSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    sentinels: SentinelSettings = field(default_factory=SentinelSettings)

    @classmethod
    def from_env(
        cls,
        *,
        state_dir: Path | None = None,
        ledger_path: Path | None = None,
    ) -> Settings:
        """Load settings from environment; explicit arguments win over env vars."""

        workdir_raw = os.getenv("RALPH_HYBRID_AGENT_WORKDIR", "").strip()
        return cls(
            state_dir=state_dir
            or Path(os.getenv("RALPH_HYBRID_STATE_DIR", str(DEFAULT_STATE_DIR))),
            ledger_path=ledger_path
            or Path(os.getenv("RALPH_HYBRID_LEDGER_PATH", str(DEFAULT_LEDGER_PATH))),
            loop=LoopSettings(
                max_iterations=_env_int("RALPH_HYBRID_MAX_ITERATIONS", 20),
                iteration_timeout_seconds=_env_float(
                    "RALPH_HYBRID_ITERATION_TIMEOUT_SECONDS",
                    900.0,
                ),
                iteration_sleep_seconds=_env_float("RALPH_HYBRID_ITERATION_SLEEP_SECONDS", 2.0),
            ),
            circuit_breaker=CircuitBreakerSettings(
                no_progress_threshold=_env_int("RALPH_HYBRID_NO_PROGRESS_THRESHOLD", 3),
                same_error_threshold=_env_int("RALPH_HYBRID_SAME_ERROR_THRESHOLD", 5),
            ),
            rate_limit=RateLimitSettings(
                limit=_env_int("RALPH_HYBRID_RATE_LIMIT", 100),
                window_seconds=_env_float("RALPH_HYBRID_RATE_LIMIT_WINDOW_SECONDS", 3600.0),
                blocking=_env_bool("RALPH_HYBRID_RATE_LIMIT_BLOCKING", default=True),
            ),
            gate=GateSettings(
                command=os.getenv("RALPH_HYBRID_GATE_COMMAND", "").strip() or None,
                timeout_seconds=_env_float("RALPH_HYBRID_GATE_TIMEOUT_SECONDS", 300.0),
                verification_failed_code=_env_int(
                    "RALPH_HYBRID_GATE_VERIFICATION_FAILED_CODE",
                    75,
                ),
            ),
            callbacks=CallbackSettings(
                timeout_seconds=_env_float("RALPH_HYBRID_CALLBACK_TIMEOUT_SECONDS", 300.0),
                feature=os.getenv("RALPH_HYBRID_FEATURE", "").strip() or None,
                detect_feature=_env_bool("RALPH_HYBRID_DETECT_FEATURE", default=True),
            ),
            agent=AgentSettings(
                command_template=os.getenv("RALPH_HYBRID_AGENT_COMMAND", DEFAULT_AGENT_COMMAND),
                grace_seconds=_env_float("RALPH_HYBRID_AGENT_GRACE_SECONDS", 5.0),
                workdir=Path(workdir_raw) if workdir_raw else None,
            ),
            sentinels=SentinelSettings(
                all_complete=os.getenv(
                    "RALPH_HYBRID_SENTINEL_ALL_COMPLETE",
                    "<promise>COMPLETE</promise>",
                ),
                unit_complete=os.getenv(
                    "RALPH_HYBRID_SENTINEL_UNIT_COMPLETE",
                    "<promise>STORY_COMPLETE</promise>",
                ),
                blocked_prefix=os.getenv(
                    "RALPH_HYBRID_SENTINEL_BLOCKED_PREFIX",
                    "<promise>BLOCKED:",
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on values the loop cannot run with."""

        if self.loop.max_iterations <= 0:
            raise ValueError("RALPH_HYBRID_MAX_ITERATIONS must be > 0.")
        if self.loop.iteration_timeout_seconds <= 0:
            raise ValueError("RALPH_HYBRID_ITERATION_TIMEOUT_SECONDS must be > 0.")
        if self.loop.iteration_sleep_seconds < 0:
            raise ValueError("RALPH_HYBRID_ITERATION_SLEEP_SECONDS must be >= 0.")
        if self.circuit_breaker.no_progress_threshold <= 0:
            raise ValueError("RALPH_HYBRID_NO_PROGRESS_THRESHOLD must be > 0.")
        if self.circuit_breaker.same_error_threshold <= 0:
            raise ValueError("RALPH_HYBRID_SAME_ERROR_THRESHOLD must be > 0.")
        if self.rate_limit.limit <= 0:
            raise ValueError("RALPH_HYBRID_RATE_LIMIT must be > 0.")
        if self.rate_limit.window_seconds <= 0:
            raise ValueError("RALPH_HYBRID_RATE_LIMIT_WINDOW_SECONDS must be > 0.")
        if self.gate.timeout_seconds <= 0:
            raise ValueError("RALPH_HYBRID_GATE_TIMEOUT_SECONDS must be > 0.")
        if not 1 <= self.gate.verification_failed_code <= 255:  # noqa: PLR2004
            raise ValueError("RALPH_HYBRID_GATE_VERIFICATION_FAILED_CODE must be in 1..255.")
        if self.callbacks.timeout_seconds <= 0:
            raise ValueError("RALPH_HYBRID_CALLBACK_TIMEOUT_SECONDS must be > 0.")
        if self.callbacks.feature and "/" in self.callbacks.feature:
            raise ValueError("RALPH_HYBRID_FEATURE must not contain \"/\".")
        if not self.agent.command_template.strip():
            raise ValueError("RALPH_HYBRID_AGENT_COMMAND must not be empty.")
        markers = {
            "RALPH_HYBRID_SENTINEL_ALL_COMPLETE": self.sentinels.all_complete,
            "RALPH_HYBRID_SENTINEL_UNIT_COMPLETE": self.sentinels.unit_complete,
            "RALPH_HYBRID_SENTINEL_BLOCKED_PREFIX": self.sentinels.blocked_prefix,
        }
        for name, value in markers.items():
            if not value.strip():
                raise ValueError(f"{name} must not be empty.")
        if len(set(markers.values())) != len(markers):
            raise ValueError("Sentinel markers must be distinct.")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {raw!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
