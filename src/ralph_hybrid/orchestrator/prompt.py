"""Per-iteration task context handed to the agent."""

from __future__ import annotations

from pathlib import Path

from ralph_hybrid.orchestrator.contracts import LedgerDocument
from ralph_hybrid.orchestrator.models import WorkItem
from ralph_hybrid.orchestrator.signals import DEFAULT_MARKERS, SentinelMarkers


def build_prompt(  # noqa: PLR0913
    *,
    ledger: LedgerDocument,
    item: WorkItem,
    iteration: int,
    ledger_path: Path,
    markers: SentinelMarkers = DEFAULT_MARKERS,
    previous_failure: str | None = None,
) -> str:
    """Render the instructions for one agent turn working on ``item``."""

    done = sum(1 for entry in ledger.items if entry.completed)
    lines = [
        f"# Iteration {iteration}",
        "",
    ]
    if ledger.description.strip():
        lines.extend(["## Project", "", ledger.description.strip(), ""])
    lines.extend(
        [
            "## Current work item",
            "",
            f"- id: {item.id}",
            f"- title: {item.title}",
            f"- priority: {item.priority}",
        ],
    )
    if item.notes.strip():
        lines.append(f"- notes: {item.notes.strip()}")
    lines.extend(
        [
            "",
            f"Progress: {done}/{len(ledger.items)} items complete.",
            "",
        ],
    )
    if previous_failure:
        lines.extend(["## Previous attempt", "", previous_failure.strip(), ""])
    lines.extend(
        [
            "## Rules",
            "",
            "1. Work on the current item only.",
            f"2. When it is done and verified, set `completed` to true for `{item.id}` "
            f"in {ledger_path}.",
            f"3. Then print {markers.unit_complete} on its own line.",
            f"4. If every item in the ledger is complete, print {markers.all_complete} instead.",
            f"5. If you cannot proceed, print {markers.blocked_prefix} <reason>"
            f"{markers.blocked_suffix} and stop.",
            "",
            "Completion is taken from the ledger file, not from these markers.",
        ],
    )
    return "\n".join(lines) + "\n"
