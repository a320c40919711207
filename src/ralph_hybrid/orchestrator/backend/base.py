"""Backend interface for one agent invocation."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class InvokeRequest:
    """Inputs required to run the agent once."""

    command_template: str
    prompt: str
    iteration: int
    log_path: Path
    ledger_path: Path
    timeout_seconds: float
    workdir: Path | None = None
    extra_env: dict[str, str] = field(default_factory=dict)
    stop_requested: Callable[[], bool] | None = None


@dataclass(slots=True)
class InvokeResult:
    """Captured output and exit metadata from one agent invocation."""

    raw_output: str
    exit_code: int
    timed_out: bool
    duration_seconds: float
    log_path: Path
    interrupted: bool = False


class AgentBackend(Protocol):
    """Protocol implemented by agent invokers."""

    def preflight(self, command_template: str) -> None:
        """Raise a configuration error if the command can never start."""

    def run(self, request: InvokeRequest) -> InvokeResult:
        """Run the agent once and return its captured output."""
