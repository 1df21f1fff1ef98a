"""Lease lock: keeps one bootstrap process per graph root.

The lock file holds {pid, token, startedAt, updatedAt}. It is created fully
written via a hard link from a temp file, so no reader ever sees a partial
record. A fresh token is minted on every acquire; release and refresh act only
when both pid and token on disk match this holder's claim.

Acquisition fails open after two contended attempts: an unexpected filesystem
condition must not wedge bootstrap forever, at the cost of mutual exclusion
in that pathological case.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from mg.models import parse_ts
from mg.store import atomic_write, read_text_or_none

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger("mg.lock")

LOCK_FILENAME = ".bootstrap-lock"
LOCK_TTL = timedelta(minutes=5)
_MAX_ATTEMPTS = 2

Liveness = Literal["alive", "dead", "unknown"]


def probe_pid(pid: int) -> Liveness:
    """Signal-0 probe. Permission denied is indeterminate, not alive."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return "dead"
    except OSError:
        return "unknown"
    return "alive"


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class LockRecord:
    pid: int
    token: str
    started_at: str
    updated_at: str

    @classmethod
    def parse(cls, raw: str) -> LockRecord | None:
        """Validated record, or None when the content is not a usable lock."""
        try:
            data: Any = json.loads(raw)
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict):
            return None
        pid, token = data.get("pid"), data.get("token")
        started, updated = data.get("startedAt"), data.get("updatedAt")
        if not isinstance(pid, int) or isinstance(pid, bool) or pid <= 0:
            return None
        if not isinstance(token, str) or not token:
            return None
        started_dt, updated_dt = parse_ts(started), parse_ts(updated)
        if started_dt is None or updated_dt is None or updated_dt < started_dt:
            return None
        return cls(pid=pid, token=token, started_at=started, updated_at=updated)

    def to_json(self) -> str:
        return json.dumps({
            "pid": self.pid,
            "token": self.token,
            "startedAt": self.started_at,
            "updatedAt": self.updated_at,
        })


class LeaseLock:
    """Cross-process lease over <graph_dir>/.bootstrap-lock.

    The instance owns its claim (the token it minted); nothing is shared
    between instances, so two LeaseLocks in one process contend like two
    processes would.
    """

    def __init__(
        self,
        graph_dir: Path | str,
        *,
        ttl: timedelta = LOCK_TTL,
        pid: int | None = None,
        clock: Callable[[], datetime] = _utcnow,
        probe: Callable[[int], Liveness] = probe_pid,
    ) -> None:
        self.path = Path(graph_dir) / LOCK_FILENAME
        self.ttl = ttl
        self.pid = pid or os.getpid()
        self._clock = clock
        self._probe = probe
        self._token: str | None = None

    @property
    def held(self) -> bool:
        return self._token is not None

    def read(self) -> LockRecord | None:
        raw = read_text_or_none(self.path)
        return LockRecord.parse(raw) if raw is not None else None

    # ------------------------------------------------------------------
    # Acquire
    # ------------------------------------------------------------------

    def _create(self, record: LockRecord) -> None:
        """Create the lock file with full content. Raises FileExistsError on collision."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f"{self.path.name}.{record.token}.tmp")
        try:
            tmp.write_text(record.to_json())
            os.link(tmp, self.path)
        finally:
            tmp.unlink(missing_ok=True)

    def _should_steal(self, record: LockRecord) -> bool:
        liveness = self._probe(record.pid)
        if liveness == "alive":
            return False
        if liveness == "dead":
            return True
        updated = parse_ts(record.updated_at)
        return updated is None or self._clock() - updated > self.ttl

    def acquire(self) -> bool:
        for _ in range(_MAX_ATTEMPTS):
            now = self._clock().isoformat()
            record = LockRecord(pid=self.pid, token=uuid.uuid4().hex, started_at=now, updated_at=now)
            try:
                self._create(record)
            except FileExistsError:
                pass
            except OSError:
                logger.exception("unexpected error creating %s, proceeding without lock", self.path)
                return True
            else:
                self._token = record.token
                return True

            try:
                raw = read_text_or_none(self.path)
            except OSError:
                logger.exception("cannot read %s", self.path)
                continue
            if raw is None:
                continue  # released between our create and read
            existing = LockRecord.parse(raw)
            if existing is None:
                logger.warning("removing corrupt lock file %s", self.path)
                self.path.unlink(missing_ok=True)
                continue
            if not self._should_steal(existing):
                logger.info("bootstrap lock held by pid %d since %s", existing.pid, existing.started_at)
                return False
            logger.warning(
                "stealing bootstrap lock from pid %d (last heartbeat %s)", existing.pid, existing.updated_at,
            )
            self.path.unlink(missing_ok=True)

        logger.warning("could not acquire %s after %d attempts, proceeding without lock", self.path, _MAX_ATTEMPTS)
        return True

    # ------------------------------------------------------------------
    # Release / heartbeat
    # ------------------------------------------------------------------

    def _owned_record(self) -> LockRecord | None:
        if self._token is None:
            return None
        record = self.read()
        if record is None or record.pid != self.pid or record.token != self._token:
            return None
        return record

    def release(self) -> None:
        """Delete the lock file if it is still ours. Never raises."""
        if self._token is None:
            return
        try:
            if self._owned_record() is not None:
                self.path.unlink(missing_ok=True)
            else:
                logger.warning("lock %s no longer ours, leaving it in place", self.path)
        except OSError:
            logger.exception("failed to release %s", self.path)
        finally:
            self._token = None

    def refresh(self) -> None:
        """Advance the heartbeat if the lock is still ours. Never raises."""
        try:
            record = self._owned_record()
            if record is None:
                return
            now = self._clock()
            previous = parse_ts(record.updated_at)
            updated = max(now, previous) if previous else now
            refreshed = LockRecord(
                pid=record.pid, token=record.token,
                started_at=record.started_at, updated_at=updated.isoformat(),
            )
            atomic_write(self.path, refreshed.to_json())
        except OSError:
            logger.exception("failed to refresh %s", self.path)
