from __future__ import annotations

import json
import os
import sys

import allure
import pytest

from ralph_hybrid.orchestrator.gate import (
    BackpressureGate,
    GateRequest,
    GateRunError,
    discover_gate_command,
)
from ralph_hybrid.orchestrator.models import GateVerdict

pytestmark = [
    allure.epic("Iteration Loop"),
    allure.feature("Backpressure Gate"),
]


def _request(tmp_path) -> GateRequest:
    return GateRequest(
        item_ids=("US-1",),
        iteration=4,
        output_path=tmp_path / "logs" / "iteration-4.log",
        ledger_path=tmp_path / "prd.json",
    )


@pytest.mark.parametrize(
    ("code", "verdict"),
    [
        (0, GateVerdict.PASS),
        (75, GateVerdict.VERIFICATION_FAILED),
        (3, GateVerdict.ERROR),
    ],
)
def test_gate_maps_exit_codes(tmp_path, exit_command, code, verdict) -> None:
    gate = BackpressureGate(exit_command(code), timeout_seconds=30)

    result = gate.verify(_request(tmp_path), log_path=tmp_path / "logs" / "gate.log")

    assert result.verdict == verdict
    assert result.exit_code == code


def test_gate_timeout_is_an_error_with_124(tmp_path) -> None:
    gate = BackpressureGate(
        f"{sys.executable} -c 'import time; time.sleep(60)'",
        timeout_seconds=0.5,
        grace_seconds=0.5,
    )

    result = gate.verify(_request(tmp_path), log_path=tmp_path / "logs" / "gate.log")

    assert result.verdict == GateVerdict.ERROR
    assert result.exit_code == 124
    assert result.timed_out
    assert result.fingerprint_source == "gate:124"


def test_gate_without_command_passes_without_running(tmp_path) -> None:
    gate = BackpressureGate(None)

    result = gate.verify(_request(tmp_path), log_path=tmp_path / "logs" / "gate.log")

    assert not gate.enabled
    assert result.verdict == GateVerdict.PASS
    assert not (tmp_path / "logs").exists()


def test_gate_receives_json_context_file(tmp_path) -> None:
    script = tmp_path / "gate.py"
    script.write_text(
        "import json, os, sys\n"
        "context = json.load(open(sys.argv[1]))\n"
        "assert os.environ['RALPH_HYBRID_GATE_CONTEXT'] == sys.argv[1]\n"
        "print('checked', ','.join(context['item_ids']), context['iteration'])\n",
        "utf-8",
    )
    gate = BackpressureGate(f"{sys.executable} {script}", timeout_seconds=30)

    result = gate.verify(_request(tmp_path), log_path=tmp_path / "logs" / "gate.log")

    assert result.verdict == GateVerdict.PASS
    assert "checked US-1 4" in result.output_tail
    context = json.loads((tmp_path / "logs" / "iteration-4.gate.json").read_text("utf-8"))
    assert context["ledger_file"] == str(tmp_path / "prd.json")
    assert context["output_file"] == str(tmp_path / "logs" / "iteration-4.log")
    assert "timestamp" in context


def test_gate_preflight_rejects_missing_command() -> None:
    gate = BackpressureGate("definitely-not-an-installed-gate --strict")

    with pytest.raises(GateRunError, match="Gate command not found"):
        gate.preflight()


def test_discover_prefers_explicit_command(tmp_path) -> None:
    callbacks = tmp_path / "callbacks"
    callbacks.mkdir()
    (callbacks / "post_iteration.sh").write_text("#!/bin/sh\nexit 0\n", "utf-8")

    assert discover_gate_command("make verify", tmp_path) == "make verify"


@pytest.mark.skipif(os.name == "nt", reason="executable bit is POSIX-only")
def test_discover_falls_back_to_callback_script(tmp_path) -> None:
    callbacks = tmp_path / "callbacks"
    callbacks.mkdir()
    script = callbacks / "post_iteration.sh"
    script.write_text("#!/bin/sh\nexit 0\n", "utf-8")

    assert discover_gate_command(None, tmp_path) == f"bash {script}"
    script.chmod(0o755)
    assert discover_gate_command(None, tmp_path) == str(script)
    assert discover_gate_command(None, tmp_path / "elsewhere") is None
