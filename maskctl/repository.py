from typing import Dict, List, Optional

from .config import ALLOWED_CONFIG_KEYS, Settings, coerce_value
from .errors import NotFound
from .models import Worker, W_DRAINING, W_IDLE, W_TERMINATED


# ---------- Config ----------
def get_config(db) -> Dict[str, str]:
    return {r["key"]: r["value"] for r in db.query("SELECT key, value FROM config")}


def set_config(db, key: str, value: str):
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    coerce_value(key, value)
    cfg = get_config(db)
    cfg[key] = str(value)
    Settings.from_config(cfg)
    with db.transaction() as conn:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, str(value)),
        )


def load_settings(db) -> Settings:
    return Settings.from_config(get_config(db))


# ---------- Workers ----------
class WorkerRegistry:
    """Shared view of pool members; written by agents, read by the pool controller."""

    def __init__(self, db):
        self.db = db

    def register(self, worker_id: str, now: float) -> Worker:
        with self.db.transaction() as conn:
            conn.execute(
                """INSERT INTO workers
                   (id, state, current_job_id, last_heartbeat_at, idle_since, termination_requested, started_at)
                   VALUES (?, ?, NULL, ?, ?, 0, ?)""",
                (worker_id, W_IDLE, now, now, now),
            )
        return self.get(worker_id)

    def get(self, worker_id: str) -> Worker:
        rows = self.db.query("SELECT * FROM workers WHERE id=?", (worker_id,))
        if not rows:
            raise NotFound(f"worker {worker_id} not found")
        return Worker.from_row(rows[0])

    def set_state(self, worker_id: str, state: str, now: float,
                  current_job_id: Optional[str] = None, idle_since: Optional[float] = None):
        with self.db.transaction() as conn:
            conn.execute(
                """UPDATE workers
                   SET state=?, current_job_id=?, last_heartbeat_at=?,
                       idle_since=COALESCE(?, idle_since)
                   WHERE id=?""",
                (state, current_job_id, now, idle_since, worker_id),
            )

    def heartbeat(self, worker_id: str, now: float):
        with self.db.transaction() as conn:
            conn.execute("UPDATE workers SET last_heartbeat_at=? WHERE id=?", (now, worker_id))

    def request_termination(self, worker_id: str):
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE workers SET termination_requested=1 WHERE id=? AND state != ?",
                (worker_id, W_TERMINATED),
            )

    def termination_requested(self, worker_id: str) -> bool:
        return self.get(worker_id).termination_requested

    def expire_stale(self, cutoff: float) -> List[str]:
        """Mark workers with no heartbeat since `cutoff` terminated; their process is gone."""
        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT id FROM workers WHERE state NOT IN (?, ?) AND last_heartbeat_at < ?",
                (W_DRAINING, W_TERMINATED, cutoff),
            ).fetchall()
            stale = [r["id"] for r in rows]
            for worker_id in stale:
                conn.execute(
                    "UPDATE workers SET state=?, current_job_id=NULL WHERE id=? AND last_heartbeat_at < ?",
                    (W_TERMINATED, worker_id, cutoff),
                )
        return stale

    def list(self, include_gone: bool = False) -> List[Worker]:
        rows = self.db.query("SELECT * FROM workers ORDER BY started_at ASC, id ASC")
        workers = [Worker.from_row(r) for r in rows]
        if include_gone:
            return workers
        return [w for w in workers if w.state != W_TERMINATED]

    def active(self) -> List[Worker]:
        return [w for w in self.list() if w.is_active]
