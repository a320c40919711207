from __future__ import annotations

import json
import os

import allure
import pytest

from ralph_hybrid.orchestrator.callbacks import (
    CallbackPoint,
    LifecycleCallbacks,
    callback_dirs,
    feature_name_from_branch,
    find_callback_script,
)
from ralph_hybrid.orchestrator.gate import discover_gate_command

pytestmark = [
    allure.epic("Iteration Loop"),
    allure.feature("Lifecycle Callbacks"),
]

posix_only = pytest.mark.skipif(os.name == "nt", reason="callback scripts run through bash")


def _script(directory, point: str, body: str):
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{point}.sh"
    path.write_text(body, "utf-8")
    return path


def test_feature_name_replaces_branch_slashes() -> None:
    assert feature_name_from_branch("feature/x") == "feature-x"
    assert feature_name_from_branch(" fix/api/retry\n") == "fix-api-retry"
    assert feature_name_from_branch("main") == "main"


def test_feature_callbacks_take_precedence_over_project_callbacks(tmp_path) -> None:
    project = _script(tmp_path / "callbacks", "pre_run", "exit 0\n")
    feature = _script(tmp_path / "feature-x" / "callbacks", "pre_run", "exit 0\n")

    assert callback_dirs(tmp_path, "feature-x") == (
        tmp_path / "feature-x" / "callbacks",
        tmp_path / "callbacks",
    )
    assert find_callback_script(tmp_path, CallbackPoint.PRE_RUN, "feature-x") == feature
    assert find_callback_script(tmp_path, CallbackPoint.PRE_RUN, "other") == project
    assert find_callback_script(tmp_path, CallbackPoint.PRE_RUN) == project
    assert find_callback_script(tmp_path, CallbackPoint.POST_RUN, "feature-x") is None


def test_fire_without_a_script_does_nothing(tmp_path) -> None:
    callbacks = LifecycleCallbacks(tmp_path)

    assert callbacks.fire(CallbackPoint.ON_ERROR, reason="nothing listens") is None
    assert not (tmp_path / "logs").exists()


def test_post_iteration_is_reserved_for_the_gate(tmp_path) -> None:
    with pytest.raises(ValueError, match="backpressure gate"):
        LifecycleCallbacks(tmp_path).fire(CallbackPoint.POST_ITERATION)


@posix_only
def test_callback_receives_context_file_and_environment(tmp_path) -> None:
    seen = tmp_path / "seen.txt"
    _script(
        tmp_path / "feature-x" / "callbacks",
        "on_error",
        f'cp "$1" {tmp_path / "copied.json"}\n'
        f'echo "$RALPH_HYBRID_CALLBACK_POINT $RALPH_HYBRID_FEATURE_NAME '
        f'$RALPH_HYBRID_ITERATION $RALPH_HYBRID_REASON" > {seen}\n',
    )
    callbacks = LifecycleCallbacks(tmp_path, feature="feature-x", timeout_seconds=30.0)

    result = callbacks.fire(
        CallbackPoint.ON_ERROR,
        iteration=4,
        reason="tripped",
        outcome=None,
    )

    assert result is not None
    assert result.succeeded
    assert seen.read_text("utf-8").split() == ["on_error", "feature-x", "4", "tripped"]
    context = json.loads((tmp_path / "copied.json").read_text("utf-8"))
    assert context["callback_point"] == "on_error"
    assert context["feature"] == "feature-x"
    assert context["iteration"] == 4
    assert context["reason"] == "tripped"
    assert context["outcome"] is None
    assert "timestamp" in context


@posix_only
def test_failing_callback_is_reported_not_raised(tmp_path) -> None:
    _script(tmp_path / "callbacks", "post_run", "echo 'hook broke'\nexit 3\n")
    callbacks = LifecycleCallbacks(tmp_path, timeout_seconds=30.0)

    result = callbacks.fire(CallbackPoint.POST_RUN, status="all_complete")

    assert result is not None
    assert result.exit_code == 3
    assert not result.succeeded
    assert "hook broke" in (tmp_path / "logs" / "post_run.log").read_text("utf-8")


@posix_only
def test_slow_callback_times_out(tmp_path) -> None:
    _script(tmp_path / "callbacks", "pre_iteration", "sleep 60\n")
    callbacks = LifecycleCallbacks(tmp_path, timeout_seconds=0.5, grace_seconds=0.5)

    result = callbacks.fire(CallbackPoint.PRE_ITERATION, iteration=1)

    assert result is not None
    assert result.timed_out
    assert not result.succeeded


def test_gate_discovery_prefers_feature_post_iteration_script(tmp_path) -> None:
    _script(tmp_path / "callbacks", "post_iteration", "exit 0\n")
    feature = _script(tmp_path / "feature-x" / "callbacks", "post_iteration", "exit 0\n")

    assert discover_gate_command(None, tmp_path, "feature-x") == f"bash {feature}"
    assert discover_gate_command("make verify", tmp_path, "feature-x") == "make verify"
