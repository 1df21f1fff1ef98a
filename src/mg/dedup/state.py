"""Dedup progress (.dedup-state.json) and the append-only audit log (.dedup-audit.jsonl)."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from mg.dedup.merge import AuditEntry
from mg.store import atomic_write, read_text_or_none

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger("mg.dedup")

DEDUP_STATE_FILENAME = ".dedup-state.json"
AUDIT_LOG_FILENAME = ".dedup-audit.jsonl"


@dataclass
class DedupState:
    last_dedup_at: str | None = None
    runs_completed: int = 0
    total_merges: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "lastDedupAt": self.last_dedup_at,
            "runsCompleted": self.runs_completed,
            "totalMerges": self.total_merges,
        }


def _count(value: Any) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) and value >= 0 else 0


def load_dedup_state(graph_dir: Path) -> DedupState:
    """Missing or unreadable state reads as a fresh DedupState."""
    path = graph_dir / DEDUP_STATE_FILENAME
    try:
        raw = read_text_or_none(path)
    except OSError:
        logger.exception("cannot read %s", path)
        return DedupState()
    if raw is None:
        return DedupState()
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("corrupt dedup state %s, starting over", path)
        return DedupState()
    if not isinstance(data, dict):
        return DedupState()
    last = data.get("lastDedupAt")
    return DedupState(
        last_dedup_at=last if isinstance(last, str) else None,
        runs_completed=_count(data.get("runsCompleted")),
        total_merges=_count(data.get("totalMerges")),
    )


def save_dedup_state(graph_dir: Path, state: DedupState) -> None:
    atomic_write(graph_dir / DEDUP_STATE_FILENAME, json.dumps(state.to_dict(), indent=2))


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


def append_audit_entry(graph_dir: Path, entry: AuditEntry) -> None:
    path = graph_dir / AUDIT_LOG_FILENAME
    with path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")


def read_audit_log(graph_dir: Path) -> list[AuditEntry]:
    path = graph_dir / AUDIT_LOG_FILENAME
    raw = read_text_or_none(path)
    if raw is None:
        return []
    entries: list[AuditEntry] = []
    for lineno, line in enumerate(raw.splitlines(), 1):
        if not line.strip():
            continue
        try:
            entries.append(AuditEntry.from_dict(json.loads(line)))
        except (json.JSONDecodeError, ValueError) as exc:
            logger.warning("%s:%d: skipping malformed audit entry (%s)", path.name, lineno, exc)
    return entries
