"""Bootstrap source readers. Missing directories yield nothing."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger("mg.bootstrap")

_LOG_SUFFIXES = {"", ".txt", ".log", ".jsonl", ".md"}


@dataclass(frozen=True)
class SourceEntry:
    label: str
    text: str


def _read_entries(paths: list[Path], base: Path) -> list[SourceEntry]:
    entries: list[SourceEntry] = []
    for path in paths:
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.warning("skipping unreadable source %s: %s", path, exc)
            continue
        if not text.strip():
            continue
        entries.append(SourceEntry(label=path.relative_to(base).as_posix(), text=text))
    return sorted(entries, key=lambda e: e.label)


def read_workspace_memory(workspace: Path, graph_dir: Path) -> list[SourceEntry]:
    """All memory/**/*.md under the workspace, excluding the graph's own files."""
    memory_dir = workspace / "memory"
    if not memory_dir.is_dir():
        return []
    graph_abs = graph_dir.resolve()
    paths = [
        p for p in memory_dir.rglob("*.md")
        if p.is_file() and not p.resolve().is_relative_to(graph_abs)
    ]
    return _read_entries(paths, workspace)


def read_log_dir(log_dir: Path) -> list[SourceEntry]:
    """Text-like files (no suffix, .txt, .log, .jsonl, .md) anywhere under log_dir."""
    if not log_dir.is_dir():
        logger.info("log source %s does not exist, skipping", log_dir)
        return []
    paths = [p for p in log_dir.rglob("*") if p.is_file() and p.suffix.lower() in _LOG_SUFFIXES]
    return _read_entries(paths, log_dir.parent)


def gather_sources(workspace: Path, graph_dir: Path, *, workspace_memory: bool, log_dirs: list[str]) -> list[SourceEntry]:
    entries: list[SourceEntry] = []
    if workspace_memory:
        entries.extend(read_workspace_memory(workspace, graph_dir))
    for d in log_dirs:
        path = Path(d).expanduser()
        if not path.is_absolute():
            path = workspace / path
        entries.extend(read_log_dir(path))
    return entries
