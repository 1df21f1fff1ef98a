"""Bootstrap diagnostics: the per-batch failure log and post-run quality report.

.bootstrap-failures.jsonl holds one JSON object per failed batch:
    {"batchIndex": 4, "labels": ["memory/a.md"], "errorType": "parse-empty",
     "error": "...", "timestamp": "...", "diagnostics": null, "chunkCount": 1}
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from mg.models import utcnow
from mg.store import atomic_write, read_text_or_none

if TYPE_CHECKING:
    from mg.models import RegistryEntry

logger = logging.getLogger("mg.bootstrap")

FAILURE_LOG_FILENAME = ".bootstrap-failures.jsonl"
IDENTITY_PREFERENCE_MIN_PERCENT = 5.0

ErrorType = Literal["llm-error", "parse-empty", "zero-operations", "write-all-failed"]
_ERROR_TYPES = ("llm-error", "parse-empty", "zero-operations", "write-all-failed")


@dataclass(frozen=True)
class FailureEntry:
    batch_index: int
    labels: list[str]
    error_type: ErrorType
    error: str
    chunk_count: int
    timestamp: str = field(default_factory=utcnow)
    diagnostics: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, d: Any) -> FailureEntry:
        if not isinstance(d, dict):
            raise ValueError("entry is not an object")
        if d.get("errorType") not in _ERROR_TYPES:
            raise ValueError(f"unknown errorType: {d.get('errorType')!r}")
        return cls(
            batch_index=int(d["batchIndex"]),
            labels=[str(x) for x in d.get("labels", [])],
            error_type=d["errorType"],
            error=str(d.get("error", "")),
            chunk_count=int(d.get("chunkCount", 0)),
            timestamp=str(d.get("timestamp", "")),
            diagnostics=d.get("diagnostics"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "batchIndex": self.batch_index,
            "labels": self.labels,
            "errorType": self.error_type,
            "error": self.error,
            "timestamp": self.timestamp,
            "diagnostics": self.diagnostics,
            "chunkCount": self.chunk_count,
        }


class FailureLog:
    def __init__(self, graph_dir: Path) -> None:
        self.path = graph_dir / FAILURE_LOG_FILENAME

    def append(self, entry: FailureEntry) -> None:
        """Best effort: a lost diagnostic line must not fail the batch bookkeeping."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(entry.to_dict()) + "\n")
        except OSError:
            logger.exception("failed to append to %s", self.path)

    def read(self) -> list[FailureEntry]:
        raw = read_text_or_none(self.path)
        if not raw:
            return []
        entries: list[FailureEntry] = []
        for lineno, line in enumerate(raw.splitlines(), 1):
            if not line.strip():
                continue
            try:
                entries.append(FailureEntry.from_dict(json.loads(line)))
            except (json.JSONDecodeError, ValueError, KeyError, TypeError):
                logger.warning("%s line %d is malformed, skipping", self.path.name, lineno)
        return entries

    def write_entries(self, entries: list[FailureEntry]) -> None:
        if not entries:
            self.clear()
            return
        atomic_write(self.path, "".join(json.dumps(e.to_dict()) + "\n" for e in entries))

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Quality report
# ---------------------------------------------------------------------------


@dataclass
class QualityReport:
    total_nodes: int
    type_counts: dict[str, int]
    warnings: list[str]


def compute_quality(entries: list[RegistryEntry]) -> QualityReport:
    """Type distribution over live nodes, warning when personal data looks missing."""
    counts = Counter(e.type for e in entries if not e.archived)
    total = sum(counts.values())
    identity, preference = counts.get("identity", 0), counts.get("preference", 0)
    warnings: list[str] = []
    if total and identity == 0:
        warnings.append("bootstrap produced 0 identity nodes; personal data may not have been extracted")
    if total and preference == 0:
        warnings.append("bootstrap produced 0 preference nodes; user preferences may not have been extracted")
    if total and identity + preference > 0:
        percent = (identity + preference) / total * 100
        if percent < IDENTITY_PREFERENCE_MIN_PERCENT:
            warnings.append(
                f"identity + preference nodes are only {percent:.1f}% of total "
                f"({identity + preference}/{total}); review {FAILURE_LOG_FILENAME} for parse issues",
            )
    return QualityReport(total_nodes=total, type_counts=dict(counts.most_common()), warnings=warnings)


def log_quality(report: QualityReport) -> None:
    summary = ", ".join(f"{t}={n}" for t, n in report.type_counts.items()) or "(none)"
    logger.info("bootstrap quality: %d nodes, %s", report.total_nodes, summary)
    for warning in report.warnings:
        logger.warning("bootstrap quality: %s", warning)
