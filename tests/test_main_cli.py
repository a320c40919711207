from __future__ import annotations

import json
import sys
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from ralph_hybrid.main import ralph_hybrid

pytestmark = [
    allure.epic("Iteration Loop"),
    allure.feature("Command Line"),
]


def _agent(modes: str) -> str:
    return (
        f"{sys.executable} -m ralph_hybrid.orchestrator.backend.echo_agent "
        f"--modes {modes} --ledger {{ledger}}"
    )


@pytest.fixture()
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> tuple[Path, Path]:
    monkeypatch.setenv("RALPH_HYBRID_ITERATION_SLEEP_SECONDS", "0")
    monkeypatch.delenv("RALPH_HYBRID_GATE_COMMAND", raising=False)
    monkeypatch.delenv("RALPH_HYBRID_AGENT_COMMAND", raising=False)
    ledger_path = tmp_path / "prd.json"
    ledger_path.write_text(
        json.dumps(
            {
                "description": "CLI project",
                "items": [
                    {"id": "US-1", "title": "First", "priority": 1},
                    {"id": "US-2", "title": "Second", "priority": 2},
                ],
            },
        ),
        "utf-8",
    )
    return tmp_path / ".ralph-hybrid", ledger_path


def _paths(workspace: tuple[Path, Path]) -> list[str]:
    state_dir, ledger_path = workspace
    return ["--state-dir", str(state_dir), "--ledger", str(ledger_path)]


def test_run_completes_ledger_and_exits_zero(workspace: tuple[Path, Path]) -> None:
    runner = CliRunner()

    result = runner.invoke(
        ralph_hybrid,
        ["run", *_paths(workspace), "--agent-command", _agent("complete-next")],
    )

    assert result.exit_code == 0, result.output
    assert "Loop summary: iterations=2 completed_items=2" in result.output
    assert "Status: all_complete" in result.output

    history = runner.invoke(ralph_hybrid, ["history", *_paths(workspace), "--limit", "1"])
    assert history.exit_code == 0
    assert "#2 " in history.output
    assert "all_complete" in history.output
    assert "completed=US-2" in history.output


def test_run_that_trips_circuit_exits_non_zero(workspace: tuple[Path, Path]) -> None:
    runner = CliRunner()

    result = runner.invoke(
        ralph_hybrid,
        ["run", *_paths(workspace), "--agent-command", _agent("noop")],
    )

    assert result.exit_code != 0
    assert "Status: circuit_tripped" in result.output
    assert "Loop stopped before all work was complete." in result.output

    status = runner.invoke(ralph_hybrid, ["status", *_paths(workspace)])
    assert status.exit_code == 0
    assert "Session: circuit_tripped after 3 iteration(s)" in status.output
    assert "circuit: TRIPPED (no_progress_exceeded)" in status.output
    assert "Ledger: 0/2 items complete" in status.output
    assert "rate limit: 3/100 used" in status.output

    reset = runner.invoke(ralph_hybrid, ["reset-circuit", *_paths(workspace)])
    assert reset.exit_code == 0
    assert "Session: running" in reset.output

    status = runner.invoke(ralph_hybrid, ["status", *_paths(workspace)])
    assert "circuit: closed" in status.output


def test_resume_after_iteration_budget(workspace: tuple[Path, Path]) -> None:
    runner = CliRunner()
    args = ["run", *_paths(workspace), "--agent-command", _agent("complete-next")]

    first = runner.invoke(ralph_hybrid, [*args, "--max-iterations", "1"])
    assert first.exit_code != 0
    assert "Status: max_iterations" in first.output

    resume = runner.invoke(ralph_hybrid, ["resume", *_paths(workspace)])
    assert resume.exit_code == 0
    assert "Session resumed: max_iterations -> running" in resume.output

    second = runner.invoke(ralph_hybrid, args)
    assert second.exit_code == 0
    assert "Status: all_complete" in second.output


def test_history_without_iterations(workspace: tuple[Path, Path]) -> None:
    result = CliRunner().invoke(ralph_hybrid, ["history", *_paths(workspace)])

    assert result.exit_code == 0
    assert "No iterations recorded." in result.output


def test_missing_ledger_is_reported(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RALPH_HYBRID_ITERATION_SLEEP_SECONDS", "0")

    result = CliRunner().invoke(
        ralph_hybrid,
        [
            "run",
            "--state-dir",
            str(tmp_path / ".ralph-hybrid"),
            "--ledger",
            str(tmp_path / "missing.json"),
            "--agent-command",
            _agent("noop"),
        ],
    )

    assert result.exit_code != 0
    assert "Task ledger not found" in result.output


def test_invalid_environment_is_reported(
    workspace: tuple[Path, Path],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("RALPH_HYBRID_RATE_LIMIT", "0")

    result = CliRunner().invoke(
        ralph_hybrid,
        ["run", *_paths(workspace), "--agent-command", _agent("noop")],
    )

    assert result.exit_code != 0
    assert "RALPH_HYBRID_RATE_LIMIT must be > 0." in result.output
