"""Task ledger access: snapshots, completion checks and controller-side reverts."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path

from ralph_hybrid.orchestrator.contracts import LedgerDocument, read_ledger, write_ledger
from ralph_hybrid.orchestrator.models import WorkItem

logger = logging.getLogger(__name__)


class LedgerError(RuntimeError):
    """Ledger file is missing or does not match the ledger contract."""


@dataclass(frozen=True, slots=True)
class LedgerSnapshot:
    """Immutable completion state of every work item at one point in time."""

    completion: tuple[tuple[str, bool], ...]

    @property
    def total(self) -> int:
        return len(self.completion)

    @property
    def completed_ids(self) -> frozenset[str]:
        return frozenset(item_id for item_id, done in self.completion if done)

    @property
    def all_complete(self) -> bool:
        # An empty ledger is never complete.
        return self.total > 0 and all(done for _, done in self.completion)

    def digest(self) -> str:
        """Stable hash of the completion vector."""

        encoded = ",".join(f"{item_id}={int(done)}" for item_id, done in self.completion)
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()[:16]


EMPTY_SNAPSHOT = LedgerSnapshot(completion=())


class TaskLedger:
    """File-backed task ledger shared with the external agent."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> LedgerDocument:
        try:
            return read_ledger(self.path)
        except FileNotFoundError as error:
            raise LedgerError(f"Task ledger not found: {self.path}") from error
        except (TypeError, ValueError) as error:
            raise LedgerError(f"Invalid task ledger {self.path}: {error}") from error

    def snapshot(self) -> LedgerSnapshot:
        document = self.load()
        return snapshot_of(document.items)

    def next_item(self) -> WorkItem | None:
        """Highest-priority incomplete item; lower number wins, file order breaks ties."""

        pending = [item for item in self.load().items if not item.completed]
        if not pending:
            return None
        return min(enumerate(pending), key=lambda pair: (pair[1].priority, pair[0]))[1]

    def get(self, item_id: str) -> WorkItem | None:
        for item in self.load().items:
            if item.id == item_id:
                return item
        return None

    def revert_completion(self, item_ids: tuple[str, ...] | list[str]) -> list[str]:
        """Flip the given items back to incomplete; returns ids actually reverted."""

        if not item_ids:
            return []
        document = self.load()
        targets = set(item_ids)
        reverted: list[str] = []
        for item in document.items:
            if item.id in targets and item.completed:
                item.completed = False
                reverted.append(item.id)
        if reverted:
            write_ledger(self.path, document)
            logger.warning("Reverted unverified completion for items: %s", ", ".join(reverted))
        return reverted


def snapshot_of(items: list[WorkItem]) -> LedgerSnapshot:
    return LedgerSnapshot(completion=tuple((item.id, item.completed) for item in items))
