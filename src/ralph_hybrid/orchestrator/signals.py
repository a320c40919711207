"""Classify one invocation from its output text and the ledger before/after it.

Precedence (first match wins):

1. ``TIMEOUT``: the invoker killed the agent.
2. ``API_LIMIT``: provider quota message and no ledger progress.
3. ``ERROR``: non-zero exit or internal-error pattern, no ledger progress.
4. ``BLOCKED``: blocked sentinel present.
5. ``ALL_COMPLETE``: every ledger item is complete.
6. ``UNIT_COMPLETE``: at least one item flipped incomplete -> complete.
7. ``NO_PROGRESS``: anything else, including completion claims the ledger
   does not back.

The ledger diff is the only authority on progress. Sentinels express intent
(stop, continue, blocked) and never create progress on their own.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum

from ralph_hybrid.orchestrator.failure_classifier import (
    ApiLimitMatch,
    detect_api_limit,
    extract_error_line,
    fingerprint,
    last_nonempty_line,
)
from ralph_hybrid.orchestrator.ledger import LedgerSnapshot
from ralph_hybrid.orchestrator.models import FailureClass, Outcome

logger = logging.getLogger(__name__)

_API_LIMIT_TAIL_LINES = 10
_INTERNAL_ERROR_RE = re.compile(
    r"internal (?:server )?error|traceback \(most recent call last\)|^panic:|fatal error",
    re.IGNORECASE | re.MULTILINE,
)


class SentinelKind(str, Enum):
    """Intent declared by the agent through a sentinel marker."""

    NONE = "none"
    ALL_COMPLETE = "all_complete"
    UNIT_COMPLETE = "unit_complete"
    BLOCKED = "blocked"


# Most conservative first: a blocked agent is further from done than one
# reporting a single unit, which is further than one claiming everything.
_SENTINEL_PRECEDENCE: tuple[SentinelKind, ...] = (
    SentinelKind.BLOCKED,
    SentinelKind.UNIT_COMPLETE,
    SentinelKind.ALL_COMPLETE,
)


@dataclass(frozen=True, slots=True)
class SentinelMarkers:
    """Exact-match sentinel tokens."""

    all_complete: str = "<promise>COMPLETE</promise>"
    unit_complete: str = "<promise>STORY_COMPLETE</promise>"
    blocked_prefix: str = "<promise>BLOCKED:"
    blocked_suffix: str = "</promise>"


DEFAULT_MARKERS = SentinelMarkers()


@dataclass(frozen=True, slots=True)
class SentinelSignal:
    """Parsed sentinel result: winning kind, its payload, and everything seen."""

    kind: SentinelKind
    payload: str | None = None
    found: tuple[SentinelKind, ...] = ()

    @property
    def conflicting(self) -> bool:
        return len(self.found) > 1


@dataclass(frozen=True, slots=True)
class LedgerDiff:
    """Completion flips between two ledger snapshots."""

    completed_ids: tuple[str, ...] = ()
    reopened_ids: tuple[str, ...] = ()

    @property
    def progressed(self) -> bool:
        return bool(self.completed_ids)


@dataclass(slots=True)
class Detection:
    """Full classification of one invocation."""

    outcome: Outcome
    signal: SentinelSignal
    diff: LedgerDiff
    claim_rejected: bool = False
    error_line: str | None = None
    error_fingerprint: str | None = None
    failure_class: FailureClass | None = None
    api_limit: ApiLimitMatch | None = None
    notes: list[str] = field(default_factory=list)

    @property
    def progressed(self) -> bool:
        return self.diff.progressed

    @property
    def blocked_reason(self) -> str | None:
        if self.signal.kind != SentinelKind.BLOCKED:
            return None
        return self.signal.payload


def parse_sentinels(text: str, markers: SentinelMarkers = DEFAULT_MARKERS) -> SentinelSignal:
    """Find sentinel markers and resolve conflicts by conservative precedence."""

    if not text:
        return SentinelSignal(kind=SentinelKind.NONE)

    found: dict[SentinelKind, str | None] = {}
    blocked_at = text.find(markers.blocked_prefix)
    if blocked_at != -1:
        found[SentinelKind.BLOCKED] = _blocked_reason(text, blocked_at, markers)
    if markers.unit_complete in text:
        found[SentinelKind.UNIT_COMPLETE] = None
    if markers.all_complete in text:
        found[SentinelKind.ALL_COMPLETE] = None

    if not found:
        return SentinelSignal(kind=SentinelKind.NONE)

    ordered = tuple(kind for kind in _SENTINEL_PRECEDENCE if kind in found)
    winner = ordered[0]
    if len(ordered) > 1:
        logger.warning(
            "Conflicting sentinels %s; using %s",
            ", ".join(kind.value for kind in ordered),
            winner.value,
        )
    return SentinelSignal(kind=winner, payload=found[winner], found=ordered)


def diff_ledger(before: LedgerSnapshot, after: LedgerSnapshot) -> LedgerDiff:
    """Items that flipped state; items added by the agent count when already complete."""

    previous = dict(before.completion)
    completed: list[str] = []
    reopened: list[str] = []
    for item_id, done in after.completion:
        was_done = previous.get(item_id, False)
        if done and not was_done:
            completed.append(item_id)
        elif was_done and not done:
            reopened.append(item_id)
    return LedgerDiff(completed_ids=tuple(completed), reopened_ids=tuple(reopened))


def detect_outcome(  # noqa: PLR0913
    *,
    output: str,
    exit_code: int,
    timed_out: bool,
    before: LedgerSnapshot,
    after: LedgerSnapshot,
    markers: SentinelMarkers = DEFAULT_MARKERS,
) -> Detection:
    """Classify one invocation; see the module docstring for precedence."""

    signal = parse_sentinels(output, markers)
    diff = diff_ledger(before, after)
    detection = Detection(outcome=Outcome.NO_PROGRESS, signal=signal, diff=diff)

    if timed_out:
        error_line = extract_error_line(output) or last_nonempty_line(output)
        detection.outcome = Outcome.TIMEOUT
        detection.failure_class = FailureClass.TIMEOUT
        detection.error_line = error_line
        detection.error_fingerprint = fingerprint("timeout", error_line)
        return detection

    if not diff.progressed:
        api_limit = detect_api_limit(output if exit_code != 0 else _tail(output))
        if api_limit is not None:
            detection.outcome = Outcome.API_LIMIT
            detection.failure_class = FailureClass.API_LIMIT
            detection.api_limit = api_limit
            detection.error_line = api_limit.line
            return detection

        if exit_code != 0 or _INTERNAL_ERROR_RE.search(output):
            error_line = extract_error_line(output) or last_nonempty_line(output)
            detection.outcome = Outcome.ERROR
            detection.failure_class = FailureClass.INTERNAL_ERROR
            detection.error_line = error_line
            detection.error_fingerprint = fingerprint(
                "error",
                f"exit={exit_code} {error_line or ''}",
            )
            return detection
    elif exit_code != 0:
        detection.notes.append(f"agent exited {exit_code} after completing items")

    if signal.kind == SentinelKind.BLOCKED:
        detection.outcome = Outcome.BLOCKED
        return detection

    if after.all_complete:
        detection.outcome = Outcome.ALL_COMPLETE
        return detection

    if signal.kind == SentinelKind.ALL_COMPLETE or SentinelKind.ALL_COMPLETE in signal.found:
        detection.claim_rejected = True
        open_count = after.total - len(after.completed_ids)
        detection.notes.append(f"completion claimed with {open_count} open item(s)")
        logger.warning(
            "Agent claimed all work complete but %d ledger item(s) remain open",
            open_count,
        )

    if diff.progressed:
        detection.outcome = Outcome.UNIT_COMPLETE
        return detection

    if signal.kind == SentinelKind.UNIT_COMPLETE:
        detection.claim_rejected = True
        detection.notes.append("unit completion claimed without a ledger change")
    detection.outcome = Outcome.NO_PROGRESS
    return detection


def _blocked_reason(text: str, start: int, markers: SentinelMarkers) -> str:
    reason_start = start + len(markers.blocked_prefix)
    line_end = text.find("\n", reason_start)
    if line_end == -1:
        line_end = len(text)
    suffix_at = text.find(markers.blocked_suffix, reason_start, line_end)
    reason_end = suffix_at if suffix_at != -1 else line_end
    return text[reason_start:reason_end].strip() or "no reason given"


def _tail(text: str) -> str:
    lines = [line for line in text.splitlines() if line.strip()]
    return "\n".join(lines[-_API_LIMIT_TAIL_LINES:])
