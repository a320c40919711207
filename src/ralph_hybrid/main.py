"""CLI entrypoint for ralph-hybrid."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from ralph_hybrid import __version__
from ralph_hybrid.orchestrator.backend import BackendRunError
from ralph_hybrid.orchestrator.controllers import (
    LoopCliController,
    LoopHistoryCommand,
    LoopRunCommand,
    LoopStateCommand,
)
from ralph_hybrid.orchestrator.gate import GateRunError
from ralph_hybrid.orchestrator.ledger import LedgerError
from ralph_hybrid.orchestrator.state_store import StateError

click.rich_click.USE_MARKDOWN = True
LOOP_CONTROLLER = LoopCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

state_dir_option = click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="State directory. Defaults to RALPH_HYBRID_STATE_DIR or `.ralph-hybrid`.",
)
ledger_option = click.option(
    "--ledger",
    "ledger_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Task ledger JSON. Defaults to RALPH_HYBRID_LEDGER_PATH or `prd.json`.",
)


@click.group()
@click.version_option(version=__version__, prog_name="ralph-hybrid")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging verbosity.",
)
def ralph_hybrid(log_level: str) -> None:
    """Run a coding agent in a loop until the task ledger is done, safely."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@ralph_hybrid.command("run")
@state_dir_option
@ledger_option
@click.option(
    "--max-iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Iteration budget for this run. Defaults to RALPH_HYBRID_MAX_ITERATIONS or 20.",
)
@click.option(
    "--agent-command",
    default=None,
    help=(
        "Agent command template. Supports {prompt}, {prompt_file}, {ledger} and {iteration}; "
        "without a prompt placeholder the prompt is sent on stdin."
    ),
)
@click.option(
    "--gate-command",
    default=None,
    help="Backpressure gate command. Exit 0 passes, 75 rejects the completion.",
)
@click.option(
    "--non-blocking-rate-limit",
    is_flag=True,
    default=False,
    help="Stop instead of waiting when the rate limit window is full.",
)
def run(  # noqa: PLR0913
    state_dir: Path | None,
    ledger_path: Path | None,
    max_iterations: int | None,
    agent_command: str | None,
    gate_command: str | None,
    non_blocking_rate_limit: bool,
) -> None:
    """Iterate the agent until all work is complete or a safety stop triggers."""

    with _domain_errors():
        result = LOOP_CONTROLLER.run(
            LoopRunCommand(
                state_dir=state_dir,
                ledger_path=ledger_path,
                max_iterations=max_iterations,
                agent_command=agent_command,
                gate_command=gate_command,
                non_blocking_rate_limit=non_blocking_rate_limit,
            ),
        )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Loop stopped before all work was complete.")


@ralph_hybrid.command("status")
@state_dir_option
@ledger_option
def status(state_dir: Path | None, ledger_path: Path | None) -> None:
    """Show session status, circuit breaker counters and rate limit usage."""

    with _domain_errors():
        lines = LOOP_CONTROLLER.status(
            LoopStateCommand(state_dir=state_dir, ledger_path=ledger_path),
        )
    _emit_lines(lines)


@ralph_hybrid.command("reset-circuit")
@state_dir_option
@ledger_option
def reset_circuit(state_dir: Path | None, ledger_path: Path | None) -> None:
    """Zero circuit breaker counters and reopen a tripped session."""

    with _domain_errors():
        lines = LOOP_CONTROLLER.reset_circuit(
            LoopStateCommand(state_dir=state_dir, ledger_path=ledger_path),
        )
    _emit_lines(lines)


@ralph_hybrid.command("resume")
@state_dir_option
@ledger_option
def resume(state_dir: Path | None, ledger_path: Path | None) -> None:
    """Return a halted session to RUNNING."""

    with _domain_errors():
        lines = LOOP_CONTROLLER.resume(
            LoopStateCommand(state_dir=state_dir, ledger_path=ledger_path),
        )
    _emit_lines(lines)


@ralph_hybrid.command("history")
@state_dir_option
@ledger_option
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=20,
    show_default=True,
    help="How many latest iterations to display.",
)
def history(state_dir: Path | None, ledger_path: Path | None, limit: int) -> None:
    """Show the latest iteration records."""

    with _domain_errors():
        lines = LOOP_CONTROLLER.history(
            LoopHistoryCommand(state_dir=state_dir, ledger_path=ledger_path, limit=limit),
        )
    _emit_lines(lines)


@contextmanager
def _domain_errors() -> Iterator[None]:
    try:
        yield
    except (BackendRunError, GateRunError, LedgerError, StateError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    ralph_hybrid()
