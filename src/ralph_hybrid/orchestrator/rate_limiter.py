"""Sliding-window admission control for agent invocations."""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable

from ralph_hybrid.orchestrator.models import RateLimiterState

logger = logging.getLogger(__name__)

_COUNTDOWN_LOG_INTERVAL_SECONDS = 60.0


class RateLimitExceeded(RuntimeError):
    """Window is full and the limiter runs in non-blocking mode."""

    def __init__(self, wait_seconds: float) -> None:
        super().__init__(f"Rate limit reached; next slot opens in {wait_seconds:.0f}s")
        self.wait_seconds = wait_seconds


class RateLimiter:
    """At most ``limit`` admissions within any trailing ``window_seconds``.

    Window arithmetic uses the monotonic ``clock`` so wall-clock jumps cannot
    reopen or extend the window. Persisted state carries wall-clock timestamps;
    on reload each age is clamped to ``[0, window]`` and re-anchored on the
    monotonic clock.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        limit: int = 100,
        window_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        stop_requested: Callable[[], bool] | None = None,
    ) -> None:
        if limit <= 0:
            raise ValueError("Rate limit must be a positive integer.")
        if window_seconds <= 0:
            raise ValueError("Rate limit window must be positive.")
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._wall_clock = wall_clock
        self._sleep = sleep
        self._stop_requested = stop_requested
        self._admitted: deque[float] = deque()

    @classmethod
    def from_state(  # noqa: PLR0913
        cls,
        state: RateLimiterState,
        *,
        limit: int = 100,
        window_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        stop_requested: Callable[[], bool] | None = None,
    ) -> RateLimiter:
        limiter = cls(
            limit=limit,
            window_seconds=window_seconds,
            clock=clock,
            wall_clock=wall_clock,
            sleep=sleep,
            stop_requested=stop_requested,
        )
        now_mono = clock()
        now_wall = wall_clock()
        anchored = []
        for stamp in state.invocation_timestamps:
            age = min(max(now_wall - stamp, 0.0), window_seconds)
            if age >= window_seconds:
                continue
            anchored.append(now_mono - age)
        limiter._admitted.extend(sorted(anchored))
        return limiter

    def to_state(self) -> RateLimiterState:
        self._purge()
        now_mono = self._clock()
        now_wall = self._wall_clock()
        return RateLimiterState(
            invocation_timestamps=tuple(now_wall - (now_mono - stamp) for stamp in self._admitted),
        )

    def in_window(self) -> int:
        self._purge()
        return len(self._admitted)

    def remaining(self) -> int:
        return max(self.limit - self.in_window(), 0)

    def wait_seconds(self) -> float:
        """Seconds until a slot frees up; zero when admission is possible now."""

        self._purge()
        if len(self._admitted) < self.limit:
            return 0.0
        return max(self._admitted[0] + self.window_seconds - self._clock(), 0.0)

    def try_acquire(self) -> bool:
        self._purge()
        if len(self._admitted) >= self.limit:
            return False
        self._admitted.append(self._clock())
        return True

    def acquire(self, *, blocking: bool = True) -> float:
        """Admit one invocation; returns the seconds spent waiting.

        Non-blocking mode raises ``RateLimitExceeded`` instead of waiting. A
        stop request while waiting raises ``InterruptedError``.
        """

        waited = 0.0
        last_logged: float | None = None
        while not self.try_acquire():
            delay = self.wait_seconds()
            if not blocking:
                raise RateLimitExceeded(delay)
            if self._stop_requested is not None and self._stop_requested():
                raise InterruptedError("Stop requested while waiting for a rate limit slot.")
            if last_logged is None or waited - last_logged >= _COUNTDOWN_LOG_INTERVAL_SECONDS:
                logger.info(
                    "Rate limit of %d per %.0fs reached; waiting %.0fs for the next slot",
                    self.limit,
                    self.window_seconds,
                    delay,
                )
                last_logged = waited
            step = max(delay, 0.01)
            if self._stop_requested is not None:
                step = min(step, 1.0)
            self._sleep(step)
            waited += step
        return waited

    def status_line(self) -> str:
        used = self.in_window()
        line = f"rate limit: {used}/{self.limit} used in the last {self.window_seconds:.0f}s"
        delay = self.wait_seconds()
        if delay > 0:
            line += f", next slot in {delay:.0f}s"
        return line

    def _purge(self) -> None:
        cutoff = self._clock() - self.window_seconds
        while self._admitted and self._admitted[0] <= cutoff:
            self._admitted.popleft()
