"""Scoped child process with process-group cleanup on every exit path."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType
from typing import IO

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
_KILL_SIGNAL = getattr(signal, "SIGKILL", signal.SIGTERM)
_POLL_INTERVAL_SECONDS = 0.1


@dataclass(slots=True)
class ProcessResult:
    """Exit metadata of one scoped process run."""

    exit_code: int
    timed_out: bool
    interrupted: bool
    duration_seconds: float


class ScopedProcess:
    """Run a command in its own process group and always reap the whole group.

    Usage::

        with ScopedProcess(argv, stdout=handle) as process:
            result = process.wait(timeout_seconds=60)

    Leaving the ``with`` block while the child is still alive (timeout,
    exception, KeyboardInterrupt) terminates the group: SIGTERM first, SIGKILL
    after ``grace_seconds``.
    """

    def __init__(  # noqa: PLR0913
        self,
        args: str | list[str],
        *,
        stdout: IO[str] | int | None,
        stderr: IO[str] | int | None = subprocess.STDOUT,
        stdin_path: Path | None = None,
        env: dict[str, str] | None = None,
        cwd: Path | None = None,
        grace_seconds: float = 2.0,
    ) -> None:
        self.args = args
        self.stdout = stdout
        self.stderr = stderr
        self.stdin_path = stdin_path
        self.env = env
        self.cwd = cwd
        self.grace_seconds = grace_seconds
        self._process: subprocess.Popen[str] | None = None
        self._stdin_handle: IO[str] | None = None
        self._started_at = 0.0

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    def __enter__(self) -> ScopedProcess:
        if self.stdin_path is not None:
            self._stdin_handle = self.stdin_path.open("r", encoding="utf-8")
        try:
            self._process = subprocess.Popen(  # noqa: S603
                self.args,
                stdin=self._stdin_handle if self._stdin_handle is not None else subprocess.DEVNULL,
                stdout=self.stdout,
                stderr=self.stderr,
                env=self.env,
                cwd=self.cwd,
                text=True,
                start_new_session=os.name != "nt",
            )
        except BaseException:
            self._close_stdin()
            raise
        self._started_at = time.monotonic()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        try:
            if self._process is not None:
                if self._process.poll() is None:
                    logger.warning(
                        "Terminating still-running process group pid=%s",
                        self._process.pid,
                    )
                    self.terminate_group()
                else:
                    # Leader exited on its own; background children must not outlive it.
                    self._signal_group(_KILL_SIGNAL)
        finally:
            self._close_stdin()

    def wait(
        self,
        *,
        timeout_seconds: float,
        stop_requested: Callable[[], bool] | None = None,
    ) -> ProcessResult:
        """Wait for exit, killing the group on timeout or on a stop request."""

        process = self._require_process()
        deadline = self._started_at + timeout_seconds
        while True:
            returncode = process.poll()
            if returncode is not None:
                return ProcessResult(
                    exit_code=returncode,
                    timed_out=False,
                    interrupted=False,
                    duration_seconds=time.monotonic() - self._started_at,
                )
            now = time.monotonic()
            if now >= deadline:
                self.terminate_group()
                return ProcessResult(
                    exit_code=TIMEOUT_EXIT_CODE,
                    timed_out=True,
                    interrupted=False,
                    duration_seconds=now - self._started_at,
                )
            if stop_requested is not None and stop_requested():
                self.terminate_group()
                return ProcessResult(
                    exit_code=process.returncode if process.returncode is not None else -1,
                    timed_out=False,
                    interrupted=True,
                    duration_seconds=time.monotonic() - self._started_at,
                )
            time.sleep(min(_POLL_INTERVAL_SECONDS, max(0.0, deadline - now)))

    def terminate_group(self) -> None:
        process = self._require_process()
        if process.poll() is not None:
            return
        self._signal_group(signal.SIGTERM)
        try:
            process.wait(timeout=self.grace_seconds)
        except subprocess.TimeoutExpired:
            self._signal_group(_KILL_SIGNAL)
            try:
                process.wait(timeout=self.grace_seconds)
            except subprocess.TimeoutExpired:
                logger.error("Process pid=%s did not exit after SIGKILL", process.pid)
                return
        # Group leader is gone; sweep descendants that ignored SIGTERM.
        self._signal_group(_KILL_SIGNAL)

    def _signal_group(self, signum: int) -> None:
        process = self._require_process()
        if hasattr(os, "killpg"):
            try:
                os.killpg(process.pid, signum)
            except ProcessLookupError:
                return
            except PermissionError:
                if process.poll() is None:
                    process.send_signal(signum)
            return
        if process.poll() is not None:
            return
        try:
            if signum == signal.SIGTERM:
                process.terminate()
            else:
                process.kill()
        except OSError:
            return

    def _require_process(self) -> subprocess.Popen[str]:
        if self._process is None:
            raise RuntimeError("ScopedProcess used outside of its context.")
        return self._process

    def _close_stdin(self) -> None:
        if self._stdin_handle is not None:
            self._stdin_handle.close()
            self._stdin_handle = None
