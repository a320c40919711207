from __future__ import annotations

import sys
from pathlib import Path

import allure
import pytest

from ralph_hybrid.orchestrator.backend import BackendRunError, CliAgentBackend, InvokeRequest
from ralph_hybrid.orchestrator.backend.cli_backend import _build_run_args
from ralph_hybrid.orchestrator.models import FailureClass

pytestmark = [
    allure.epic("Iteration Loop"),
    allure.feature("Agent Command Rendering"),
]


def test_build_run_args_posix_quotes_placeholder_values() -> None:
    run_args, command_head = _build_run_args(
        command_template="agent --prompt {prompt} --ledger {ledger} --n {iteration}",
        prompt="fix the 'parser'",
        prompt_file=Path("logs/prompt.md"),
        ledger_path=Path("my ledger.json"),
        iteration=7,
        os_name="posix",
    )

    assert command_head == "agent"
    assert run_args == [
        "agent",
        "--prompt",
        "fix the 'parser'",
        "--ledger",
        "my ledger.json",
        "--n",
        "7",
    ]


def test_build_run_args_windows_returns_command_line_string() -> None:
    run_args, command_head = _build_run_args(
        command_template="agent --prompt-file {prompt_file}",
        prompt="",
        prompt_file=Path("with space/prompt.md"),
        ledger_path=Path("prd.json"),
        iteration=1,
        os_name="nt",
    )

    assert isinstance(run_args, str)
    assert command_head == "agent"
    assert '"with space' in run_args


def test_build_run_args_rejects_unknown_placeholder() -> None:
    with pytest.raises(BackendRunError, match="Unsupported command template placeholder") as info:
        _build_run_args(
            command_template="agent {model}",
            prompt="",
            prompt_file=Path("p.md"),
            ledger_path=Path("prd.json"),
            iteration=1,
        )

    assert info.value.failure_class == FailureClass.CONFIGURATION


def test_build_run_args_rejects_empty_template() -> None:
    with pytest.raises(BackendRunError) as info:
        _build_run_args(
            command_template="   ",
            prompt="",
            prompt_file=Path("p.md"),
            ledger_path=Path("prd.json"),
            iteration=1,
        )

    assert info.value.is_configuration


def test_preflight_reports_missing_executable_as_configuration() -> None:
    backend = CliAgentBackend()

    with pytest.raises(BackendRunError, match="Agent command not found") as info:
        backend.preflight("definitely-not-an-installed-agent-binary --flag")

    assert info.value.failure_class == FailureClass.CONFIGURATION


def test_run_captures_output_and_sends_prompt_on_stdin(tmp_path) -> None:
    backend = CliAgentBackend(grace_seconds=0.5)
    log_path = tmp_path / "logs" / "iteration-1.log"
    script = (
        "import os, sys; "
        "print('prompt:', sys.stdin.read().strip()); "
        "print('iteration:', os.environ['RALPH_HYBRID_ITERATION']); "
        "print('oops', file=sys.stderr)"
    )

    result = backend.run(
        InvokeRequest(
            command_template=f'{sys.executable} -c "{script}"',
            prompt="do the thing",
            iteration=1,
            log_path=log_path,
            ledger_path=tmp_path / "prd.json",
            timeout_seconds=30,
        ),
    )

    assert result.exit_code == 0
    assert result.timed_out is False
    assert "prompt: do the thing" in result.raw_output
    assert "iteration: 1" in result.raw_output
    assert "oops" in result.raw_output
    assert log_path.read_text("utf-8") == result.raw_output
    assert (tmp_path / "logs" / "iteration-1.prompt.md").read_text("utf-8") == "do the thing"


def test_run_timeout_reports_124_and_keeps_partial_log(tmp_path) -> None:
    backend = CliAgentBackend(grace_seconds=0.5)
    log_path = tmp_path / "iteration-2.log"

    result = backend.run(
        InvokeRequest(
            command_template=(
                f"{sys.executable} -c \"import sys, time; print('started'); sys.stdout.flush(); "
                'time.sleep(60)"'
            ),
            prompt="",
            iteration=2,
            log_path=log_path,
            ledger_path=tmp_path / "prd.json",
            timeout_seconds=1,
        ),
    )

    assert result.timed_out is True
    assert result.exit_code == 124
    assert "started" in result.raw_output
