"""Local scripted agent for controller integration tests.

Each iteration picks a behaviour from ``--modes`` (comma-separated, indexed
by ``RALPH_HYBRID_ITERATION``; the last entry repeats):

- ``complete-next``: mark the highest-priority open item complete and print
  the unit sentinel (or the all-complete sentinel when nothing is left);
- ``complete-all``: mark every item complete and print the all-complete sentinel;
- ``claim-all``: print the all-complete sentinel without touching the ledger;
- ``noop``: print some chatter and exit 0;
- ``error``: print a deterministic error line and exit 1;
- ``blocked``: print the blocked sentinel;
- ``api-limit``: print a provider usage-limit message and exit 1;
- ``sleep``: sleep far beyond any test timeout;
- ``complete-sleep``: mark the next open item complete, then sleep like ``sleep``;
- ``corrupt-ledger``: overwrite the ledger with invalid JSON.
"""

from __future__ import annotations

import argparse
import os
import sys
import time
from pathlib import Path

from ralph_hybrid.orchestrator.contracts import read_ledger, write_ledger
from ralph_hybrid.orchestrator.signals import DEFAULT_MARKERS


def main(argv: list[str] | None = None) -> int:  # noqa: C901, PLR0911
    """Run one scripted agent turn."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--modes", default="complete-next")
    parser.add_argument("--ledger", default=os.getenv("RALPH_HYBRID_LEDGER_FILE", ""))
    args = parser.parse_args(argv)

    iteration = int(os.getenv("RALPH_HYBRID_ITERATION", "1"))
    modes = [mode.strip() for mode in args.modes.split(",") if mode.strip()]
    mode = modes[min(iteration, len(modes)) - 1] if modes else "noop"
    ledger_path = Path(args.ledger)

    print(f"echo_agent iteration={iteration} mode={mode}")
    if mode in {"complete-next", "complete-sleep"}:
        ledger = read_ledger(ledger_path)
        pending = sorted(
            (item for item in ledger.items if not item.completed),
            key=lambda item: item.priority,
        )
        if pending:
            pending[0].completed = True
            write_ledger(ledger_path, ledger)
            print(f"Implemented {pending[0].id}")
        if mode == "complete-sleep":
            sys.stdout.flush()
            time.sleep(3600)
        if all(item.completed for item in ledger.items):
            print(DEFAULT_MARKERS.all_complete)
        else:
            print(DEFAULT_MARKERS.unit_complete)
        return 0
    if mode == "complete-all":
        ledger = read_ledger(ledger_path)
        for item in ledger.items:
            item.completed = True
        write_ledger(ledger_path, ledger)
        print(DEFAULT_MARKERS.all_complete)
        return 0
    if mode == "claim-all":
        print(DEFAULT_MARKERS.all_complete)
        return 0
    if mode == "error":
        print("Error: build failed in module core")
        return 1
    if mode == "blocked":
        print(f"{DEFAULT_MARKERS.blocked_prefix}missing credentials{DEFAULT_MARKERS.blocked_suffix}")
        return 0
    if mode == "api-limit":
        print("Claude usage limit reached. Your limit will reset at 5pm.", file=sys.stderr)
        return 1
    if mode == "corrupt-ledger":
        ledger_path.write_text("{not json", "utf-8")
        print("Rewrote the ledger by hand.")
        return 0
    if mode == "sleep":
        sys.stdout.flush()
        time.sleep(3600)
        return 0
    print("Looked around, nothing to change.")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
