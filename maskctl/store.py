import logging
from typing import Callable, Dict, List

from .errors import InvalidTransition, NotFound, VersionConflict
from .models import (
    Job, STATUSES, QUEUED, RUNNING, COMPLETE, FAILED, stage_index,
)
from .utils import SYSTEM_CLOCK, now_iso

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id", "owner_id", "tier", "mode", "input_ref", "segmentation_point",
    "stage", "status", "attempts", "version", "progress_percent",
    "error_detail", "outputs", "output_ref", "params",
    "created_at", "updated_at", "started_at", "completed_at",
)
_IMMUTABLE = ("id", "owner_id", "tier", "mode", "input_ref", "segmentation_point", "created_at")

_ALLOWED_STATUS_MOVES = {
    (QUEUED, RUNNING),
    (QUEUED, FAILED),
    (RUNNING, COMPLETE),
    (RUNNING, FAILED),
}


class JobStore:
    """Durable, versioned job records. Every write is checked against the version the caller read."""

    def __init__(self, db, clock=SYSTEM_CLOCK):
        self.db = db
        self.clock = clock

    def create(self, job: Job, conn=None) -> str:
        if job.version != 0:
            raise ValueError("new jobs start at version 0")
        ts = now_iso(self.clock)
        job.created_at = job.created_at or ts
        job.updated_at = ts
        row = job.to_row()
        placeholders = ", ".join("?" for _ in _COLUMNS)
        with self.db.transaction(conn) as conn:
            conn.execute(
                f"INSERT INTO jobs ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                tuple(row[c] for c in _COLUMNS),
            )
        logger.debug("Created job %s (tier=%s, mode=%s)", job.id, job.tier, job.mode)
        return job.id

    def get(self, job_id: str) -> Job:
        rows = self.db.query("SELECT * FROM jobs WHERE id=?", (job_id,))
        if not rows:
            raise NotFound(f"job {job_id} not found")
        return Job.from_row(rows[0])

    def update(self, job_id: str, expected_version: int, mutation: Callable[[Job], None]) -> Job:
        """
        Apply `mutation` to a copy of the stored job and persist it.

        Raises VersionConflict if the stored version is not `expected_version`;
        the caller must re-read and decide whether its mutation still applies.
        """
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
            if row is None:
                raise NotFound(f"job {job_id} not found")
            current = Job.from_row(row)
            if current.version != expected_version:
                raise VersionConflict(job_id, expected_version, current.version)

            updated = current.copy()
            mutation(updated)
            self._check_transition(current, updated)
            updated.version = current.version + 1
            updated.updated_at = now_iso(self.clock)

            values = updated.to_row()
            mutable = [c for c in _COLUMNS if c not in _IMMUTABLE]
            res = conn.execute(
                f"UPDATE jobs SET {', '.join(c + '=?' for c in mutable)} WHERE id=? AND version=?",
                tuple(values[c] for c in mutable) + (job_id, expected_version),
            )
            if res.rowcount != 1:
                raise VersionConflict(job_id, expected_version, -1)
        return updated

    def update_with_retry(self, job_id: str, mutation: Callable[[Job], None], tries: int = 5) -> Job:
        """Read-check-write loop. `mutation` may raise to abandon the write."""
        for _ in range(tries):
            job = self.get(job_id)
            try:
                return self.update(job_id, job.version, mutation)
            except VersionConflict:
                logger.debug("Version conflict on job %s, re-reading", job_id)
        raise VersionConflict(job_id, job.version, -1)

    def list_by_status(self, status: str) -> List[Job]:
        if status not in STATUSES:
            raise ValueError(f"Unknown status {status!r}")
        rows = self.db.query(
            "SELECT * FROM jobs WHERE status=? ORDER BY created_at ASC", (status,)
        )
        return [Job.from_row(r) for r in rows]

    def counts(self) -> Dict[str, int]:
        out = {s: 0 for s in STATUSES}
        for r in self.db.query("SELECT status, COUNT(1) AS c FROM jobs GROUP BY status"):
            out[r["status"]] = r["c"]
        return out

    @staticmethod
    def _check_transition(old: Job, new: Job):
        if old.is_terminal:
            raise InvalidTransition(f"job {old.id} is {old.status}; terminal jobs are immutable")
        for name in _IMMUTABLE + ("version",):
            if getattr(old, name) != getattr(new, name):
                raise InvalidTransition(f"job field {name!r} is immutable")
        if stage_index(new.stage) < stage_index(old.stage):
            raise InvalidTransition(f"job {old.id}: stage cannot move {old.stage} -> {new.stage}")
        if new.status != old.status and (old.status, new.status) not in _ALLOWED_STATUS_MOVES:
            raise InvalidTransition(f"job {old.id}: status cannot move {old.status} -> {new.status}")
