"""Lifecycle callback scripts run at loop transitions.

Scripts live in ``<state_dir>/<feature>/callbacks/<point>.sh`` or
``<state_dir>/callbacks/<point>.sh`` (feature directory first). They receive
the path of a JSON context file as their only argument. A failing callback is
logged and never changes what the loop does next; ``post_iteration`` is the
backpressure gate and is run by :mod:`ralph_hybrid.orchestrator.gate`.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from ralph_hybrid.orchestrator.contracts import write_json
from ralph_hybrid.orchestrator.process import ScopedProcess

logger = logging.getLogger(__name__)

CALLBACKS_DIR_NAME = "callbacks"
_GIT_TIMEOUT_SECONDS = 10


class CallbackPoint(str, Enum):
    """Where in the loop a callback script runs."""

    PRE_RUN = "pre_run"
    POST_RUN = "post_run"
    PRE_ITERATION = "pre_iteration"
    POST_ITERATION = "post_iteration"
    ON_COMPLETION = "on_completion"
    ON_ERROR = "on_error"


@dataclass(slots=True)
class CallbackResult:
    """Exit metadata of one callback script."""

    point: CallbackPoint
    script: Path
    exit_code: int | None
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


def feature_name_from_branch(branch: str) -> str:
    """Feature directory name for a git branch: slashes become dashes."""

    return branch.strip().replace("/", "-")


def detect_feature(workdir: Path | None = None) -> str | None:
    """Feature name of the current git branch, or None outside a branch checkout."""

    try:
        completed = subprocess.run(
            ["git", "branch", "--show-current"],  # noqa: S607
            cwd=workdir,
            capture_output=True,
            text=True,
            timeout=_GIT_TIMEOUT_SECONDS,
            check=False,
        )
    except (OSError, subprocess.SubprocessError) as error:
        logger.debug("Git branch lookup failed: %s", error)
        return None
    branch = completed.stdout.strip()
    if completed.returncode != 0 or not branch:
        return None
    return feature_name_from_branch(branch)


def callback_dirs(state_dir: Path, feature: str | None = None) -> tuple[Path, ...]:
    dirs = [state_dir / feature / CALLBACKS_DIR_NAME] if feature else []
    dirs.append(state_dir / CALLBACKS_DIR_NAME)
    return tuple(dirs)


def find_callback_script(
    state_dir: Path,
    point: CallbackPoint,
    feature: str | None = None,
) -> Path | None:
    for directory in callback_dirs(state_dir, feature):
        candidate = directory / f"{point.value}.sh"
        if candidate.is_file():
            return candidate
    return None


def script_argv(script: Path) -> list[str]:
    """Run executable scripts directly, anything else through bash."""

    if os.access(script, os.X_OK):
        return [str(script)]
    return ["bash", str(script)]


class LifecycleCallbacks:
    """Runs the non-vetoing callback scripts of one state directory."""

    def __init__(
        self,
        state_dir: Path,
        *,
        feature: str | None = None,
        timeout_seconds: float = 300.0,
        grace_seconds: float = 2.0,
    ) -> None:
        self.state_dir = state_dir
        self.feature = feature
        self.timeout_seconds = timeout_seconds
        self.grace_seconds = grace_seconds

    def fire(self, point: CallbackPoint, **context: str | int | None) -> CallbackResult | None:
        """Run the script for ``point`` if one exists; returns None when there is none."""

        if point == CallbackPoint.POST_ITERATION:
            raise ValueError("post_iteration runs as the backpressure gate")
        script = find_callback_script(self.state_dir, point, self.feature)
        if script is None:
            return None

        logs_dir = self.state_dir / "logs"
        log_path = logs_dir / f"{point.value}.log"
        context_path = logs_dir / f"{point.value}.context.json"
        env = os.environ.copy()
        env["RALPH_HYBRID_CALLBACK_POINT"] = point.value
        env["RALPH_HYBRID_CALLBACK_CONTEXT"] = str(context_path)
        env["RALPH_HYBRID_STATE_DIR"] = str(self.state_dir)
        if self.feature:
            env["RALPH_HYBRID_FEATURE_NAME"] = self.feature
        for key, value in context.items():
            if value is not None:
                env[f"RALPH_HYBRID_{key.upper()}"] = str(value)

        logger.info("Running %s callback %s", point.value, script)
        try:
            write_json(
                context_path,
                {
                    "callback_point": point.value,
                    "feature": self.feature,
                    "timestamp": datetime.now(tz=UTC).isoformat(),
                    **context,
                },
            )
            with (
                log_path.open("a", encoding="utf-8") as log_handle,
                ScopedProcess(
                    [*script_argv(script), str(context_path)],
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    env=env,
                    grace_seconds=self.grace_seconds,
                ) as process,
            ):
                outcome = process.wait(timeout_seconds=self.timeout_seconds)
        except OSError as error:
            logger.warning("Callback %s failed to start: %s", script, error)
            return CallbackResult(point=point, script=script, exit_code=None)

        if outcome.timed_out:
            logger.warning(
                "Callback %s timed out after %.0fs",
                script,
                self.timeout_seconds,
            )
        elif outcome.exit_code != 0:
            logger.warning("Callback %s exited with code %d", script, outcome.exit_code)
        return CallbackResult(
            point=point,
            script=script,
            exit_code=outcome.exit_code,
            timed_out=outcome.timed_out,
        )
