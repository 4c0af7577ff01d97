import logging
from typing import Callable, Dict, List, Optional

from .errors import LeaseLost
from .models import (
    QueueEntry, ENTRY_PENDING, ENTRY_LEASED, ENTRY_DEAD, DELIVERY_EXHAUSTED,
)
from .utils import SYSTEM_CLOCK

logger = logging.getLogger(__name__)

_ELIGIBLE_SQL = """
    SELECT * FROM queue_entries
    WHERE (state=? AND available_at <= ?)
       OR (state=? AND lease_expires_at <= ?)
    ORDER BY priority_score DESC, enqueued_at ASC
    LIMIT 1
"""


class JobQueue:
    """
    Lease-based delivery of job ids to workers.

    A leased entry is invisible to other workers until its lease expires.
    An expired lease makes the entry visible again, and the next lease counts
    as a new delivery. Entries delivered more than `max_deliveries` times in a
    row without being acknowledged are moved to the dead-letter state.
    """

    def __init__(self, db, clock=SYSTEM_CLOCK, max_deliveries: int = 5,
                 on_dead_letter: Optional[Callable[[str], None]] = None,
                 poll_interval: float = 0.5):
        self.db = db
        self.clock = clock
        self.max_deliveries = max_deliveries
        self.on_dead_letter = on_dead_letter
        self.poll_interval = poll_interval

    # ---------- producer side ----------
    def enqueue(self, job_id: str, priority: int = 0, delay: float = 0, conn=None) -> bool:
        """Add an entry for `job_id`. Returns False if the job already has one.

        `conn` joins a transaction the caller already holds open.
        """
        now = self.clock.time()
        with self.db.transaction(conn) as conn:
            res = conn.execute(
                """INSERT OR IGNORE INTO queue_entries
                   (job_id, priority_score, enqueued_at, available_at, state, delivery_count)
                   VALUES (?, ?, ?, ?, ?, 0)""",
                (job_id, int(priority), now, now + max(0.0, delay), ENTRY_PENDING),
            )
        return res.rowcount == 1

    # ---------- consumer side ----------
    def lease(self, worker_id: str, lease_duration: float, wait: float = 0) -> Optional[QueueEntry]:
        """Lease the best eligible entry, polling for up to `wait` seconds."""
        deadline = self.clock.time() + wait
        while True:
            entry = self._try_lease(worker_id, lease_duration)
            remaining = deadline - self.clock.time()
            if entry is not None or remaining <= 0:
                return entry
            self.clock.sleep(min(self.poll_interval, remaining))

    def _try_lease(self, worker_id: str, lease_duration: float) -> Optional[QueueEntry]:
        now = self.clock.time()
        dead = []
        entry = None
        with self.db.transaction() as conn:
            while entry is None:
                rows = conn.execute(
                    _ELIGIBLE_SQL, (ENTRY_PENDING, now, ENTRY_LEASED, now)
                ).fetchall()
                if not rows:
                    break
                candidate = QueueEntry.from_row(rows[0])
                deliveries = candidate.delivery_count + 1
                if deliveries > self.max_deliveries:
                    if self._bury(conn, candidate):
                        dead.append(candidate.job_id)
                    continue
                if not self._claim(conn, candidate, worker_id, now + lease_duration):
                    # another connection claimed it between our read and our write
                    logger.debug("Lost the race for job %s; picking again", candidate.job_id)
                    continue
                if candidate.state == ENTRY_LEASED:
                    logger.warning(
                        "Lease on job %s held by %s expired; redelivering",
                        candidate.job_id, candidate.lease_owner,
                    )
                candidate.state = ENTRY_LEASED
                candidate.lease_owner = worker_id
                candidate.lease_expires_at = now + lease_duration
                candidate.delivery_count = deliveries
                entry = candidate

        for job_id in dead:
            logger.error("Job %s exceeded %d deliveries; moved to dead-letter", job_id, self.max_deliveries)
            if self.on_dead_letter:
                self.on_dead_letter(job_id)
        return entry

    def _claim(self, conn, candidate: QueueEntry, worker_id: str, expires_at: float) -> bool:
        """Conditional UPDATE on the state we read; False if the row changed since."""
        res = conn.execute(
            """UPDATE queue_entries
               SET state=?, lease_owner=?, lease_expires_at=?, delivery_count=?
               WHERE job_id=? AND state=? AND delivery_count=? AND lease_expires_at IS ?""",
            (ENTRY_LEASED, worker_id, expires_at, candidate.delivery_count + 1,
             candidate.job_id, candidate.state, candidate.delivery_count, candidate.lease_expires_at),
        )
        return res.rowcount == 1

    def _bury(self, conn, candidate: QueueEntry) -> bool:
        res = conn.execute(
            """UPDATE queue_entries
               SET state=?, lease_owner=NULL, lease_expires_at=NULL, last_error=?
               WHERE job_id=? AND state=? AND delivery_count=? AND lease_expires_at IS ?""",
            (ENTRY_DEAD, DELIVERY_EXHAUSTED, candidate.job_id, candidate.state,
             candidate.delivery_count, candidate.lease_expires_at),
        )
        return res.rowcount == 1

    def heartbeat(self, worker_id: str, job_id: str, lease_duration: float):
        self._owned_update(
            worker_id, job_id,
            "UPDATE queue_entries SET lease_expires_at=? WHERE job_id=? AND state=? AND lease_owner=?",
            (self.clock.time() + lease_duration, job_id, ENTRY_LEASED, worker_id),
        )

    def complete(self, worker_id: str, job_id: str):
        self._owned_update(
            worker_id, job_id,
            "DELETE FROM queue_entries WHERE job_id=? AND state=? AND lease_owner=?",
            (job_id, ENTRY_LEASED, worker_id),
        )

    def release(self, worker_id: str, job_id: str):
        """Hand the entry back immediately; the interrupted delivery is not counted."""
        self._owned_update(
            worker_id, job_id,
            """UPDATE queue_entries
               SET state=?, lease_owner=NULL, lease_expires_at=NULL, available_at=?,
                   delivery_count=MAX(delivery_count - 1, 0)
               WHERE job_id=? AND state=? AND lease_owner=?""",
            (ENTRY_PENDING, self.clock.time(), job_id, ENTRY_LEASED, worker_id),
        )

    def requeue(self, worker_id: str, job_id: str, delay: float = 0, error: Optional[str] = None):
        """Return an acknowledged entry to the pending pool after `delay` seconds."""
        self._owned_update(
            worker_id, job_id,
            """UPDATE queue_entries
               SET state=?, lease_owner=NULL, lease_expires_at=NULL, available_at=?,
                   delivery_count=0, last_error=?
               WHERE job_id=? AND state=? AND lease_owner=?""",
            (ENTRY_PENDING, self.clock.time() + max(0.0, delay), error, job_id, ENTRY_LEASED, worker_id),
        )

    def _owned_update(self, worker_id: str, job_id: str, sql: str, params):
        with self.db.transaction() as conn:
            res = conn.execute(sql, params)
        if res.rowcount != 1:
            raise LeaseLost(f"{worker_id} does not hold the lease on job {job_id}")

    # ---------- maintenance / queries ----------
    def drop_pending(self, job_id: str) -> bool:
        """Remove a not-currently-leased entry (used on cancellation)."""
        with self.db.transaction() as conn:
            res = conn.execute(
                "DELETE FROM queue_entries WHERE job_id=? AND state=?",
                (job_id, ENTRY_PENDING),
            )
        return res.rowcount == 1

    def purge_dead(self, job_id: str) -> bool:
        with self.db.transaction() as conn:
            res = conn.execute(
                "DELETE FROM queue_entries WHERE job_id=? AND state=?",
                (job_id, ENTRY_DEAD),
            )
        return res.rowcount == 1

    def get(self, job_id: str) -> Optional[QueueEntry]:
        rows = self.db.query("SELECT * FROM queue_entries WHERE job_id=?", (job_id,))
        return QueueEntry.from_row(rows[0]) if rows else None

    def depth(self) -> int:
        """Pending plus leased-but-not-complete entries."""
        rows = self.db.query(
            "SELECT COUNT(1) AS c FROM queue_entries WHERE state IN (?, ?)",
            (ENTRY_PENDING, ENTRY_LEASED),
        )
        return rows[0]["c"]

    def dead_letters(self) -> List[QueueEntry]:
        rows = self.db.query(
            "SELECT * FROM queue_entries WHERE state=? ORDER BY enqueued_at ASC",
            (ENTRY_DEAD,),
        )
        return [QueueEntry.from_row(r) for r in rows]

    def counts(self) -> Dict[str, int]:
        out = {ENTRY_PENDING: 0, ENTRY_LEASED: 0, ENTRY_DEAD: 0}
        for r in self.db.query("SELECT state, COUNT(1) AS c FROM queue_entries GROUP BY state"):
            out[r["state"]] = r["c"]
        return out
