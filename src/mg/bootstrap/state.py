"""Persisted, resumable bootstrap progress (.bootstrap-state.json).

Transitions are pure: each returns a new BootstrapState and leaves its input
alone, so callers hold the latest snapshot and pass it back in.

    state = create_initial(total=12)
    state = advance_batch(state, 3, chunk_count=2, succeeded=True)
    state.cursor       # 0: batch 0 is not done yet
    state = finalize(state)

A state file that fails validation is treated as absent. When only the legacy
`.bootstrap-done` sentinel exists, a completed state is synthesized from it and
written out once.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Literal

from mg.models import parse_ts
from mg.store import atomic_write, read_text_or_none

logger = logging.getLogger("mg.state")

STATE_VERSION = 2
STATE_FILENAME = ".bootstrap-state.json"
LEGACY_SENTINEL_FILENAME = ".bootstrap-done"
STALE_AFTER = timedelta(minutes=5)
FLUSH_DELAY = 0.5   # seconds

Status = Literal["running", "paused", "completed", "failed"]
_STATUSES = ("running", "paused", "completed", "failed")


def _now() -> str:
    return datetime.now(UTC).isoformat()


def compute_cursor(done: tuple[int, ...] | set[int] | list[int], total: int) -> int:
    """Smallest index in [0, total) not in done; total when the prefix is complete."""
    completed = set(done)
    for i in range(total):
        if i not in completed:
            return i
    return total


@dataclass(frozen=True)
class BootstrapState:
    status: Status
    started_at: str
    updated_at: str
    cursor: int = 0
    total: int = 0
    ok: int = 0                        # chunks in succeeded batches
    fail: int = 0                      # chunks in failed batches
    done: tuple[int, ...] = ()         # completed batch indices, sorted
    last_error: str | None = None
    maintenance_done: bool = False
    version: int = STATE_VERSION

    @classmethod
    def from_dict(cls, data: Any) -> BootstrapState:
        """Validate a decoded state document. Raises ValueError."""
        if not isinstance(data, dict):
            raise ValueError("state is not an object")
        if data.get("version") != STATE_VERSION:
            raise ValueError(f"unsupported state version: {data.get('version')!r}")
        if data.get("status") not in _STATUSES:
            raise ValueError(f"invalid status: {data.get('status')!r}")
        for key in ("startedAt", "updatedAt"):
            if not isinstance(data.get(key), str):
                raise ValueError(f"{key} must be a string")
        counters = {}
        for key in ("cursor", "total", "ok", "fail"):
            value = data.get(key)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ValueError(f"{key} must be a non-negative integer")
            counters[key] = value
        done = data.get("done")
        if not isinstance(done, list) or not all(isinstance(i, int) and not isinstance(i, bool) and i >= 0 for i in done):
            raise ValueError("done must be a list of non-negative integers")
        last_error = data.get("lastError")
        if last_error is not None and not isinstance(last_error, str):
            raise ValueError("lastError must be a string or null")
        return cls(
            status=data["status"],
            started_at=data["startedAt"],
            updated_at=data["updatedAt"],
            cursor=counters["cursor"],
            total=counters["total"],
            ok=counters["ok"],
            fail=counters["fail"],
            done=tuple(sorted(set(done))),
            last_error=last_error,
            maintenance_done=bool(data.get("maintenanceDone", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "status": self.status,
            "startedAt": self.started_at,
            "updatedAt": self.updated_at,
            "cursor": self.cursor,
            "total": self.total,
            "ok": self.ok,
            "fail": self.fail,
            "done": list(self.done),
            "lastError": self.last_error,
            "maintenanceDone": self.maintenance_done,
        }


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def create_initial(total: int) -> BootstrapState:
    now = _now()
    return BootstrapState(status="running", started_at=now, updated_at=now, cursor=0, total=total)


def resume(state: BootstrapState) -> BootstrapState:
    """Re-enter running from a paused/failed/stale state, keeping the done set."""
    return replace(state, status="running", updated_at=_now())


def advance_batch(state: BootstrapState, batch_index: int, *, chunk_count: int, succeeded: bool) -> BootstrapState:
    """Record one finished batch. Re-recording an index already done is a no-op."""
    if batch_index in state.done:
        return state
    done = tuple(sorted((*state.done, batch_index)))
    return replace(
        state,
        updated_at=_now(),
        done=done,
        cursor=compute_cursor(done, state.total),
        ok=state.ok + (chunk_count if succeeded else 0),
        fail=state.fail + (0 if succeeded else chunk_count),
        last_error=state.last_error if succeeded else "batch observation failed",
    )


def pause(state: BootstrapState) -> BootstrapState:
    return replace(state, status="paused", updated_at=_now())


def mark_failed(state: BootstrapState, error: str) -> BootstrapState:
    """Stop without finalizing: the done set is kept so the next run resumes."""
    return replace(state, status="failed", updated_at=_now(), last_error=error)


def finalize(state: BootstrapState) -> BootstrapState:
    status: Status = "completed" if state.ok > 0 or state.total == 0 else "failed"
    return replace(
        state,
        status=status,
        updated_at=_now(),
        done=(),
        cursor=state.total,
        maintenance_done=False,
    )


def mark_maintenance_done(state: BootstrapState) -> BootstrapState:
    return replace(state, maintenance_done=True, updated_at=_now())


def apply_retry(state: BootstrapState, recovered_chunks: int) -> BootstrapState:
    """Move chunks from fail to ok after a selective retry; the done set is untouched."""
    moved = min(recovered_chunks, state.fail)
    ok = state.ok + moved
    status: Status = "completed" if state.status == "failed" and ok > 0 else state.status
    return replace(state, ok=ok, fail=state.fail - moved, status=status, updated_at=_now())


@dataclass(frozen=True)
class RunDecision:
    needed: bool
    resume_from_done: tuple[int, ...] | None = None   # None means start fresh
    reason: str = ""


def should_run(state: BootstrapState | None, force: bool = False, *, now: datetime | None = None) -> RunDecision:
    if force:
        return RunDecision(needed=True, reason="forced")
    if state is None:
        return RunDecision(needed=True, reason="no previous run")
    if state.status == "completed":
        return RunDecision(needed=False, reason="already completed")
    if state.status in ("failed", "paused"):
        return RunDecision(needed=True, resume_from_done=state.done, reason=f"resuming {state.status} run")
    # running
    updated = parse_ts(state.updated_at)
    current = now or datetime.now(UTC)
    if updated is None or current - updated > STALE_AFTER:
        return RunDecision(needed=True, resume_from_done=state.done, reason="resuming stale run")
    return RunDecision(needed=False, reason="another instance is running")


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def state_path(graph_dir: Path) -> Path:
    return graph_dir / STATE_FILENAME


def _migrate_sentinel(graph_dir: Path) -> BootstrapState | None:
    raw = read_text_or_none(graph_dir / LEGACY_SENTINEL_FILENAME)
    if raw is None:
        return None
    try:
        legacy = json.loads(raw)
    except json.JSONDecodeError:
        legacy = {}
    if not isinstance(legacy, dict):
        legacy = {}
    completed_at = legacy.get("completedAt") if isinstance(legacy.get("completedAt"), str) else _now()
    succeeded = legacy.get("chunksSucceeded")
    migrated = BootstrapState(
        status="completed",
        started_at=completed_at,
        updated_at=completed_at,
        ok=succeeded if isinstance(succeeded, int) and succeeded >= 0 else 0,
        maintenance_done=True,
    )
    logger.info("migrated legacy %s to %s", LEGACY_SENTINEL_FILENAME, STATE_FILENAME)
    write_state(graph_dir, migrated)
    return migrated


def read_state(graph_dir: Path) -> BootstrapState | None:
    """Load the state file. Missing or corrupt reads as None (after legacy migration)."""
    try:
        raw = read_text_or_none(state_path(graph_dir))
        if raw is not None:
            try:
                return BootstrapState.from_dict(json.loads(raw))
            except (json.JSONDecodeError, ValueError) as exc:
                logger.error("corrupt bootstrap state %s, treating as absent: %s", state_path(graph_dir), exc)
                return None
        return _migrate_sentinel(graph_dir)
    except OSError:
        logger.exception("cannot read bootstrap state in %s", graph_dir)
        return None


def write_state(graph_dir: Path, state: BootstrapState) -> bool:
    try:
        atomic_write(state_path(graph_dir), json.dumps(state.to_dict(), indent=2))
    except OSError:
        logger.exception("failed to write bootstrap state in %s", graph_dir)
        return False
    return True


class DebouncedStateWriter:
    """Coalesces state pushes into at most one write per delay window.

    Owns one pending slot and one timer handle on the running event loop.
    flush_now() cancels the timer and writes synchronously.
    """

    def __init__(self, graph_dir: Path, delay: float = FLUSH_DELAY) -> None:
        self.graph_dir = graph_dir
        self.delay = delay
        self._pending: BootstrapState | None = None
        self._handle: asyncio.TimerHandle | None = None
        self.writes = 0

    def push(self, state: BootstrapState) -> None:
        self._pending = state
        if self._handle is None:
            loop = asyncio.get_running_loop()
            self._handle = loop.call_later(self.delay, self._fire)

    def _fire(self) -> None:
        self._handle = None
        state, self._pending = self._pending, None
        if state is not None:
            self._write(state)

    def _write(self, state: BootstrapState) -> bool:
        ok = write_state(self.graph_dir, state)
        if ok:
            self.writes += 1
        return ok

    def flush_now(self, state: BootstrapState | None = None) -> bool:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        target = state if state is not None else self._pending
        self._pending = None
        if target is None:
            return True
        return self._write(target)
