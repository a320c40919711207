"""File-based contracts for the task ledger and persisted loop state."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ralph_hybrid.orchestrator.models import WorkItem

_MISSING = object()
_ITEM_DEFAULTS: dict[str, Any] = {"completed": False, "priority": 100, "notes": "", "verify": True}


@dataclass(slots=True)
class LedgerDocument:
    """Top-level task ledger payload.

    ``raw`` is the JSON object as loaded; keys outside the ledger contract are
    written back untouched.
    """

    description: str
    items: list[WorkItem] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


def write_json(path: Path, payload: dict[str, Any], *, sort_keys: bool = True) -> None:
    """Persist JSON payload atomically using deterministic formatting.

    The document is written to a sibling temp file and moved into place, so a
    reader never observes a partially written file.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=sort_keys))
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def append_jsonl(path: Path, payload: dict[str, Any]) -> None:
    """Append one JSON line and flush it to disk."""

    path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(payload, ensure_ascii=False, sort_keys=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(line + "\n")
        handle.flush()
        os.fsync(handle.fileno())


def read_jsonl(path: Path) -> list[dict[str, Any]]:
    """Read JSON lines, skipping a torn trailing line left by a crash."""

    if not path.exists():
        return []
    rows: list[dict[str, Any]] = []
    lines = path.read_text("utf-8").splitlines()
    for index, line in enumerate(lines):
        if not line.strip():
            continue
        try:
            row = json.loads(line)
        except json.JSONDecodeError:
            if index == len(lines) - 1:
                break
            raise
        if isinstance(row, dict):
            rows.append(row)
    return rows


def read_ledger(path: Path) -> LedgerDocument:
    """Deserialize and validate the task ledger."""

    raw = load_json(path)
    description = raw.get("description", "")
    raw_items = raw.get("items")
    if not isinstance(description, str):
        raise TypeError("ledger.description must be a string")
    if not isinstance(raw_items, list):
        raise TypeError("ledger.items must be an array")

    items: list[WorkItem] = []
    seen: set[str] = set()
    for item in raw_items:
        if not isinstance(item, dict):
            raise TypeError("ledger item must be an object")
        item_id = item.get("id")
        title = item.get("title", "")
        completed = item.get("completed", False)
        priority = item.get("priority", 100)
        notes = item.get("notes", "")
        verify = item.get("verify", True)
        if not isinstance(item_id, str) or not item_id.strip():
            raise ValueError("ledger item id must be a non-empty string")
        if item_id in seen:
            raise ValueError(f"Duplicate ledger item id: {item_id}")
        if not isinstance(title, str):
            raise TypeError("ledger item title must be a string")
        if not isinstance(completed, bool):
            raise TypeError(f"ledger item {item_id} completed must be a boolean")
        if not isinstance(priority, int) or isinstance(priority, bool):
            raise TypeError(f"ledger item {item_id} priority must be an integer")
        if notes is None:
            notes = ""
        if not isinstance(notes, str):
            raise TypeError(f"ledger item {item_id} notes must be a string")
        if not isinstance(verify, bool):
            raise TypeError(f"ledger item {item_id} verify must be a boolean")
        seen.add(item_id)
        items.append(
            WorkItem(
                id=item_id,
                title=title,
                completed=completed,
                priority=priority,
                notes=notes,
                verify=verify,
            ),
        )
    return LedgerDocument(description=description, items=items, raw=raw)


def write_ledger(path: Path, ledger: LedgerDocument) -> None:
    """Persist the task ledger on top of the loaded JSON, preserving key order.

    Contract fields are written when the loaded item already had them or when
    they differ from the default, so a pure completion flip changes nothing
    else in the file.
    """

    payload = dict(ledger.raw)
    if "description" in payload or ledger.description:
        payload["description"] = ledger.description
    loaded_items = {
        entry.get("id"): entry for entry in ledger.raw.get("items") or () if isinstance(entry, dict)
    }
    items: list[dict[str, Any]] = []
    for item in ledger.items:
        entry = dict(loaded_items.get(item.id, {"id": item.id}))
        for key, value in _item_fields(item).items():
            if key in entry or _ITEM_DEFAULTS.get(key, _MISSING) != value:
                entry[key] = value
        items.append(entry)
    payload["items"] = items
    write_json(path, payload, sort_keys=False)


def _item_fields(item: WorkItem) -> dict[str, Any]:
    return {
        "title": item.title,
        "completed": item.completed,
        "priority": item.priority,
        "notes": item.notes,
        "verify": item.verify,
    }
