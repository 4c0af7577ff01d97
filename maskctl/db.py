import logging
import sqlite3
import threading
from contextlib import contextmanager

from .config import DB_FILE, DEFAULT_CONFIG

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    tier TEXT NOT NULL,
    mode TEXT NOT NULL,
    input_ref TEXT NOT NULL,
    segmentation_point TEXT NOT NULL,
    stage TEXT NOT NULL,
    status TEXT NOT NULL,
    attempts TEXT NOT NULL,
    version INTEGER NOT NULL,
    progress_percent INTEGER NOT NULL DEFAULT 0,
    error_detail TEXT,
    outputs TEXT NOT NULL,
    output_ref TEXT,
    params TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status, created_at);

CREATE TABLE IF NOT EXISTS queue_entries (
    job_id TEXT PRIMARY KEY,
    priority_score INTEGER NOT NULL DEFAULT 0,
    enqueued_at REAL NOT NULL,
    available_at REAL NOT NULL,
    state TEXT NOT NULL,
    lease_owner TEXT,
    lease_expires_at REAL,
    delivery_count INTEGER NOT NULL DEFAULT 0,
    last_error TEXT
);

CREATE INDEX IF NOT EXISTS idx_queue_order
    ON queue_entries(state, priority_score DESC, enqueued_at ASC);

CREATE TABLE IF NOT EXISTS workers (
    id TEXT PRIMARY KEY,
    state TEXT NOT NULL,
    current_job_id TEXT,
    last_heartbeat_at REAL,
    idle_since REAL,
    termination_requested INTEGER NOT NULL DEFAULT 0,
    started_at REAL
);

CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class Database:
    """
    One SQLite connection shared by every thread of the process.

    The lock is held only while statements run, never across engine calls.
    Row-level exclusivity comes from version checks and leases, not from it.
    """

    def __init__(self, path: str = None):
        self.path = path or DB_FILE
        self.conn = sqlite3.connect(self.path, check_same_thread=False, timeout=30)
        self.conn.row_factory = sqlite3.Row
        if self.path != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL")
        self._lock = threading.RLock()
        self._migrate()

    def _migrate(self):
        with self._lock, self.conn:
            self.conn.executescript(SCHEMA)
            # seed defaults
            for k, v in DEFAULT_CONFIG.items():
                self.conn.execute(
                    "INSERT OR IGNORE INTO config(key, value) VALUES(?,?)", (k, v)
                )

    @contextmanager
    def transaction(self, conn=None):
        """
        Serialised transaction; commits on success, rolls back on error.

        Passing the connection of an open transaction joins it instead, so the
        outermost caller decides when the writes commit.
        """
        if conn is not None:
            yield conn
            return
        with self._lock:
            try:
                with self.conn:
                    yield self.conn
            except sqlite3.Error:
                logger.exception("SQLite transaction failed on %s", self.path)
                raise

    def query(self, sql: str, params=()):
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def close(self):
        with self._lock:
            self.conn.close()


def connect_db(path: str = None) -> Database:
    return Database(path)
