import logging
import sqlite3
from typing import Optional

from .config import DB_FILE, DEFAULT_CONFIG
from .errors import StoreUnavailableError

log = logging.getLogger(__name__)

SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS jobs (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    principal TEXT NOT NULL,
    operation TEXT NOT NULL,
    arguments TEXT NOT NULL,
    record_key TEXT NOT NULL,
    state TEXT NOT NULL,
    attempts INTEGER NOT NULL,
    max_attempts INTEGER NOT NULL,
    result BLOB,
    last_error TEXT,
    enqueued_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    next_run_at TEXT,
    picked_by TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_state_next ON jobs(state, next_run_at);
CREATE INDEX IF NOT EXISTS idx_jobs_key_state ON jobs(record_key, state);
CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS api_keys (
    key_hash TEXT PRIMARY KEY,
    principal TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS identities (
    principal TEXT PRIMARY KEY,
    msp_id TEXT NOT NULL,
    credential TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


def connect_db(path: Optional[str] = None, check_same_thread: bool = True) -> sqlite3.Connection:
    try:
        conn = sqlite3.connect(path or DB_FILE, timeout=30, check_same_thread=check_same_thread)
        conn.row_factory = sqlite3.Row
        conn.executescript(SCHEMA)
    except sqlite3.Error as e:
        raise StoreUnavailableError(f"cannot open job store {path or DB_FILE}: {e}") from e
    return conn


def init_db(path: Optional[str] = None):
    conn = connect_db(path)
    try:
        with conn:
            # seed defaults
            for k, v in DEFAULT_CONFIG.items():
                conn.execute(
                    "INSERT OR IGNORE INTO config(key, value) VALUES(?,?)", (k, v)
                )
    finally:
        conn.close()
    log.debug("Job store ready at %s", path or DB_FILE)
