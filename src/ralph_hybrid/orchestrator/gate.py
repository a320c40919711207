"""Backpressure gate: an external command that can veto claimed completions."""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from ralph_hybrid.orchestrator.callbacks import CallbackPoint, find_callback_script, script_argv
from ralph_hybrid.orchestrator.contracts import write_json
from ralph_hybrid.orchestrator.models import GateVerdict
from ralph_hybrid.orchestrator.process import ScopedProcess

logger = logging.getLogger(__name__)

DEFAULT_VERIFICATION_FAILED_CODE = 75
OUTPUT_TAIL_LINES = 20
_COMMAND_NOT_FOUND_EXIT_CODE = 127


class GateRunError(RuntimeError):
    """Gate command is misconfigured and can never run."""


@dataclass(slots=True)
class GateRequest:
    """One verification request for the items completed in an iteration."""

    item_ids: tuple[str, ...]
    iteration: int
    output_path: Path
    ledger_path: Path


@dataclass(slots=True)
class GateResult:
    """Gate verdict with process metadata."""

    verdict: GateVerdict
    exit_code: int | None = None
    duration_seconds: float = 0.0
    output_tail: str = ""
    timed_out: bool = False

    @property
    def fingerprint_source(self) -> str:
        return f"gate:{self.exit_code}"


class BackpressureGate:
    """Run the configured gate command with a JSON context file.

    Exit code 0 passes, ``verification_failed_code`` (75 by default) vetoes
    the completion, anything else (including a timeout) is a gate error.
    """

    def __init__(
        self,
        command: str | None = None,
        *,
        timeout_seconds: float = 300.0,
        verification_failed_code: int = DEFAULT_VERIFICATION_FAILED_CODE,
        grace_seconds: float = 2.0,
    ) -> None:
        self.command = command.strip() if command else None
        self.timeout_seconds = timeout_seconds
        self.verification_failed_code = verification_failed_code
        self.grace_seconds = grace_seconds

    @property
    def enabled(self) -> bool:
        return bool(self.command)

    def preflight(self) -> None:
        if not self.command:
            return
        argv = _split_command(self.command)
        head = argv[0]
        if os.sep in head or (os.altsep and os.altsep in head):
            if not Path(head).is_file():
                raise GateRunError(f"Gate command not found: {head}")
        elif shutil.which(head) is None:
            raise GateRunError(f"Gate command not found: {head}")

    def verify(self, request: GateRequest, *, log_path: Path) -> GateResult:
        if not self.command:
            return GateResult(verdict=GateVerdict.PASS)

        context_path = log_path.with_name(f"iteration-{request.iteration}.gate.json")
        write_json(
            context_path,
            {
                "item_ids": list(request.item_ids),
                "iteration": request.iteration,
                "output_file": str(request.output_path),
                "ledger_file": str(request.ledger_path),
                "timestamp": datetime.now(tz=UTC).isoformat(),
            },
        )
        argv = [*_split_command(self.command), str(context_path)]
        env = os.environ.copy()
        env["RALPH_HYBRID_GATE_CONTEXT"] = str(context_path)
        env["RALPH_HYBRID_ITERATION"] = str(request.iteration)
        env["RALPH_HYBRID_ITEM_IDS"] = ",".join(request.item_ids)
        env["RALPH_HYBRID_OUTPUT_FILE"] = str(request.output_path)
        env["RALPH_HYBRID_LEDGER_FILE"] = str(request.ledger_path)

        log_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with (
                log_path.open("w", encoding="utf-8") as log_handle,
                ScopedProcess(
                    argv,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    env=env,
                    grace_seconds=self.grace_seconds,
                ) as process,
            ):
                outcome = process.wait(timeout_seconds=self.timeout_seconds)
        except OSError as error:
            logger.error("Gate command failed to start: %s", error)
            return GateResult(
                verdict=GateVerdict.ERROR,
                exit_code=_COMMAND_NOT_FOUND_EXIT_CODE,
                output_tail=str(error),
            )

        tail = tail_lines(log_path.read_text("utf-8", errors="replace"))
        if outcome.timed_out:
            verdict = GateVerdict.ERROR
            logger.error("Gate timed out after %.0fs", self.timeout_seconds)
        elif outcome.exit_code == 0:
            verdict = GateVerdict.PASS
        elif outcome.exit_code == self.verification_failed_code:
            verdict = GateVerdict.VERIFICATION_FAILED
            logger.warning(
                "Gate rejected completion of %s (exit %d)",
                ", ".join(request.item_ids),
                outcome.exit_code,
            )
        else:
            verdict = GateVerdict.ERROR
            logger.error("Gate failed with exit code %d", outcome.exit_code)
        return GateResult(
            verdict=verdict,
            exit_code=outcome.exit_code,
            duration_seconds=outcome.duration_seconds,
            output_tail=tail,
            timed_out=outcome.timed_out,
        )


def discover_gate_command(
    explicit: str | None,
    state_dir: Path,
    feature: str | None = None,
) -> str | None:
    """Explicit command wins; otherwise the feature or project post_iteration callback."""

    if explicit and explicit.strip():
        return explicit.strip()
    callback = find_callback_script(state_dir, CallbackPoint.POST_ITERATION, feature)
    if callback is None:
        return None
    return shlex.join(script_argv(callback))


def _split_command(command: str) -> list[str]:
    argv = shlex.split(command, posix=os.name != "nt")
    if not argv:
        raise GateRunError("Gate command is empty.")
    return argv


def tail_lines(text: str, limit: int = OUTPUT_TAIL_LINES) -> str:
    lines = text.splitlines()
    return "\n".join(lines[-limit:])
