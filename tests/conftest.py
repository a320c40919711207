"""Shared test fixtures."""

from __future__ import annotations

import json
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

from ralph_hybrid.orchestrator.backend import CliAgentBackend
from ralph_hybrid.orchestrator.callbacks import LifecycleCallbacks
from ralph_hybrid.orchestrator.controller import IterationController
from ralph_hybrid.orchestrator.gate import BackpressureGate
from ralph_hybrid.orchestrator.ledger import TaskLedger
from ralph_hybrid.orchestrator.models import CircuitThresholds
from ralph_hybrid.orchestrator.state_store import StateStore


def _echo_agent_command(modes: str) -> str:
    """Command template running the scripted echo agent with the given modes."""

    return (
        f"{sys.executable} -m ralph_hybrid.orchestrator.backend.echo_agent "
        f"--modes {modes} --ledger {{ledger}}"
    )


def _exit_code_command(code: int) -> str:
    return f"{sys.executable} -c 'import sys; sys.exit({code})'"


class FakeClock:
    """Deterministic monotonic + wall clock whose sleep advances both."""

    def __init__(self, monotonic: float = 1_000.0, wall: float = 1_700_000_000.0) -> None:
        self.mono = monotonic
        self.wall = wall
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.mono

    def time(self) -> float:
        return self.wall

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.mono += seconds
        self.wall += seconds


@pytest.fixture()
def agent_command() -> Callable[[str], str]:
    """Command template factory for the scripted echo agent."""

    return _echo_agent_command


@pytest.fixture()
def exit_command() -> Callable[[int], str]:
    """Command factory for a process that exits with the given code."""

    return _exit_code_command


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def write_ledger(tmp_path: Path) -> Callable[..., Path]:
    """Write a task ledger with the given items and return its path."""

    def _write(*items: dict[str, object], description: str = "Test project") -> Path:
        path = tmp_path / "prd.json"
        path.write_text(
            json.dumps({"description": description, "items": list(items)}),
            "utf-8",
        )
        return path

    return _write


@pytest.fixture()
def make_controller(tmp_path: Path) -> Callable[..., IterationController]:
    """Build an iteration controller over ``tmp_path`` with test-friendly timings."""

    def _make(  # noqa: PLR0913
        ledger_path: Path,
        *,
        modes: str = "complete-next",
        command_template: str | None = None,
        gate_command: str | None = None,
        thresholds: CircuitThresholds | None = None,
        rate_limit: int = 100,
        rate_limit_blocking: bool = True,
        iteration_timeout_seconds: float = 30.0,
        callbacks: LifecycleCallbacks | None = None,
    ) -> IterationController:
        return IterationController(
            ledger=TaskLedger(ledger_path),
            store=StateStore(tmp_path / ".ralph-hybrid"),
            backend=CliAgentBackend(grace_seconds=0.5),
            command_template=command_template or _echo_agent_command(modes),
            gate=BackpressureGate(gate_command, timeout_seconds=30.0, grace_seconds=0.5),
            callbacks=callbacks,
            thresholds=thresholds,
            rate_limit=rate_limit,
            rate_limit_blocking=rate_limit_blocking,
            iteration_timeout_seconds=iteration_timeout_seconds,
            iteration_sleep_seconds=0.0,
        )

    return _make
