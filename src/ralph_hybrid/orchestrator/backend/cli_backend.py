"""Subprocess-based agent invoker for CLI coding agents."""

from __future__ import annotations

import os
import shlex
import shutil
import subprocess
from pathlib import Path

from ralph_hybrid.orchestrator.backend.base import InvokeRequest, InvokeResult
from ralph_hybrid.orchestrator.models import FailureClass
from ralph_hybrid.orchestrator.process import ScopedProcess

_PLACEHOLDERS = ("prompt", "prompt_file", "ledger", "iteration")


class BackendRunError(RuntimeError):
    """Agent invocation error with failure classification."""

    def __init__(self, message: str, *, failure_class: FailureClass) -> None:
        super().__init__(message)
        self.failure_class = failure_class

    @property
    def is_configuration(self) -> bool:
        return self.failure_class == FailureClass.CONFIGURATION


class CliAgentBackend:
    """Run the configured command template once per iteration."""

    def __init__(self, *, grace_seconds: float = 5.0) -> None:
        self.grace_seconds = grace_seconds

    def preflight(self, command_template: str) -> None:
        _, command_head = _build_run_args(
            command_template=command_template,
            prompt="",
            prompt_file=Path("prompt.md"),
            ledger_path=Path("ledger.json"),
            iteration=0,
        )
        if _resolve_executable(command_head) is None:
            raise BackendRunError(
                f"Agent command not found: {command_head}",
                failure_class=FailureClass.CONFIGURATION,
            )

    def run(self, request: InvokeRequest) -> InvokeResult:
        request.log_path.parent.mkdir(parents=True, exist_ok=True)
        prompt_file = request.log_path.with_name(f"iteration-{request.iteration}.prompt.md")
        prompt_file.write_text(request.prompt, "utf-8")

        run_args, command_head = _build_run_args(
            command_template=request.command_template,
            prompt=request.prompt,
            prompt_file=prompt_file,
            ledger_path=request.ledger_path,
            iteration=request.iteration,
        )
        stdin_path = None if _uses_prompt_placeholder(request.command_template) else prompt_file

        env = os.environ.copy()
        env["RALPH_HYBRID_ITERATION"] = str(request.iteration)
        env["RALPH_HYBRID_LEDGER_FILE"] = str(request.ledger_path)
        env["RALPH_HYBRID_PROMPT_FILE"] = str(prompt_file)
        env.update(request.extra_env)

        try:
            with (
                request.log_path.open("w", encoding="utf-8") as log_handle,
                ScopedProcess(
                    run_args,
                    stdout=log_handle,
                    stdin_path=stdin_path,
                    env=env,
                    cwd=request.workdir,
                    grace_seconds=self.grace_seconds,
                ) as process,
            ):
                outcome = process.wait(
                    timeout_seconds=request.timeout_seconds,
                    stop_requested=request.stop_requested,
                )
        except FileNotFoundError as error:
            raise BackendRunError(
                f"Agent command not found: {command_head}",
                failure_class=FailureClass.CONFIGURATION,
            ) from error
        except PermissionError as error:
            raise BackendRunError(
                f"Agent command is not executable: {command_head}",
                failure_class=FailureClass.CONFIGURATION,
            ) from error
        except OSError as error:
            raise BackendRunError(
                f"Agent command failed to start: {error}",
                failure_class=FailureClass.INTERNAL_ERROR,
            ) from error

        return InvokeResult(
            raw_output=request.log_path.read_text("utf-8", errors="replace"),
            exit_code=outcome.exit_code,
            timed_out=outcome.timed_out,
            duration_seconds=outcome.duration_seconds,
            log_path=request.log_path,
            interrupted=outcome.interrupted,
        )


def _uses_prompt_placeholder(command_template: str) -> bool:
    return "{prompt}" in command_template or "{prompt_file}" in command_template


def _build_run_args(
    *,
    command_template: str,
    prompt: str,
    prompt_file: Path,
    ledger_path: Path,
    iteration: int,
    os_name: str | None = None,
) -> tuple[str | list[str], str]:
    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError(
            "Agent command template is empty.",
            failure_class=FailureClass.CONFIGURATION,
        )

    values = {
        "prompt": prompt,
        "prompt_file": str(prompt_file),
        "ledger": str(ledger_path),
        "iteration": str(iteration),
    }
    current_os_name = os_name or os.name
    quote = _quote_windows if current_os_name == "nt" else shlex.quote
    try:
        rendered = stripped.format(**{key: quote(values[key]) for key in _PLACEHOLDERS})
    except (KeyError, IndexError, ValueError) as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            failure_class=FailureClass.CONFIGURATION,
        ) from error

    if current_os_name == "nt":
        rendered = rendered.strip()
        if not rendered:
            raise BackendRunError(
                "Agent command template rendered empty command.",
                failure_class=FailureClass.CONFIGURATION,
            )
        return rendered, rendered.split(maxsplit=1)[0]

    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError(
            "Agent command template rendered empty command.",
            failure_class=FailureClass.CONFIGURATION,
        )
    return argv, argv[0]


def _quote_windows(value: str) -> str:
    return subprocess.list2cmdline([value])


def _resolve_executable(command_head: str) -> str | None:
    if os.sep in command_head or (os.altsep and os.altsep in command_head):
        candidate = Path(command_head)
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)
        return None
    return shutil.which(command_head)
