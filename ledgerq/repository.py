import json
import logging
import sqlite3
import uuid
from typing import Dict, List, Optional, Sequence

from .config import ALLOWED_CONFIG_KEYS, config_int
from .models import Job, QUEUED, IN_FLIGHT, SUCCEEDED, FAILED, STATES
from .utils import now_iso, iso_in_utc_from_seconds_from_now, backoff_delay_ms

log = logging.getLogger(__name__)

MAX_ERROR_LEN = 500

# A queued job is blocked while an earlier job on the same record is unfinished.
_EARLIER_SAME_KEY_PENDING = """
    EXISTS (
        SELECT 1 FROM jobs AS prev
        WHERE prev.record_key = jobs.record_key
          AND prev.seq < jobs.seq
          AND prev.state IN ('queued', 'in_flight')
    )
"""


# ---------- Config ----------
def get_config(conn) -> Dict[str, str]:
    cur = conn.execute("SELECT key, value FROM config")
    return {r["key"]: r["value"] for r in cur.fetchall()}


def set_config(conn, key: str, value: str):
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    try:
        number = int(value)
        if number < 0:
            raise ValueError
    except ValueError:
        raise ValueError(f"{key} must be a non-negative integer.")
    if key == "timeout_seconds" and number < 1:
        raise ValueError("timeout_seconds must be at least 1.")
    if key in ("timeout_seconds", "claim_lease_seconds"):
        cfg = get_config(conn)
        cfg[key] = str(number)
        # the lease has to outlast a full submit attempt
        if config_int(cfg, "claim_lease_seconds") <= config_int(cfg, "timeout_seconds"):
            raise ValueError("claim_lease_seconds must be greater than timeout_seconds.")
    with conn:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, str(number)),
        )


# ---------- Jobs: enqueue / claim / complete / retry ----------
def enqueue_job(
    conn,
    *,
    principal: str,
    operation: str,
    arguments: Sequence[str] = (),
    record_key: Optional[str] = None,
    max_attempts: Optional[int] = None,
) -> str:
    """Insert a new queued job and return its generated id."""
    if not principal or not principal.strip():
        raise ValueError("Principal cannot be empty.")
    if not operation or not operation.strip():
        raise ValueError("Operation cannot be empty.")

    args = [str(a) for a in arguments]
    if record_key is None:
        record_key = args[0] if args else ""

    if max_attempts is None:
        max_attempts = config_int(get_config(conn), "max_attempts")
    if int(max_attempts) < 1:
        raise ValueError("max_attempts must be >= 1.")

    job_id = uuid.uuid4().hex
    ts = now_iso()
    try:
        with conn:
            conn.execute(
                """INSERT INTO jobs
                   (id, principal, operation, arguments, record_key, state, attempts,
                    max_attempts, enqueued_at, updated_at, next_run_at)
                   VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?)""",
                (job_id, principal, operation, json.dumps(args), record_key,
                 QUEUED, int(max_attempts), ts, ts, ts),
            )
    except sqlite3.Error as e:
        raise RuntimeError(f"DB error while inserting job: {e}")
    log.debug("Enqueued job %s %s%r for %s", job_id, operation, tuple(args), principal)
    return job_id


def claim_one(conn, worker_name: str) -> Optional[Job]:
    """
    Claim the oldest eligible job for `worker_name`.

    The claim is exclusive: the UPDATE only succeeds while the job is still
    queued and unblocked, so a concurrent claimer sees rowcount 0 and gets None.
    `attempts` is counted here, right before the Submit call it stands for.
    """
    now = now_iso()
    with conn:
        row = conn.execute(
            f"""SELECT id FROM jobs
               WHERE state=? AND (next_run_at IS NULL OR next_run_at <= ?)
                 AND NOT {_EARLIER_SAME_KEY_PENDING}
               ORDER BY seq ASC
               LIMIT 1""",
            (QUEUED, now),
        ).fetchone()
        if not row:
            return None
        job_id = row["id"]
        updated = conn.execute(
            f"""UPDATE jobs
               SET state=?, picked_by=?, attempts=attempts+1, updated_at=?
               WHERE id=? AND state=? AND NOT {_EARLIER_SAME_KEY_PENDING}""",
            (IN_FLIGHT, worker_name, now, job_id, QUEUED),
        )
        if updated.rowcount != 1:
            return None
        return get_job(conn, job_id)


def _finish(conn, job_id: str, worker_name: str, sql: str, params: tuple) -> bool:
    # Only the current owner may record an outcome.
    with conn:
        res = conn.execute(
            sql + " WHERE id=? AND state=? AND picked_by=?",
            params + (job_id, IN_FLIGHT, worker_name),
        )
    if res.rowcount != 1:
        log.warning("Job %s is no longer owned by %s; outcome dropped", job_id, worker_name)
        return False
    return True


def complete(conn, job_id: str, worker_name: str, result: bytes) -> bool:
    return _finish(
        conn, job_id, worker_name,
        "UPDATE jobs SET state=?, result=?, last_error=NULL, updated_at=?, "
        "next_run_at=NULL, picked_by=NULL",
        (SUCCEEDED, sqlite3.Binary(result or b""), now_iso()),
    )


def fail(conn, job_id: str, worker_name: str, error: str) -> bool:
    return _finish(
        conn, job_id, worker_name,
        "UPDATE jobs SET state=?, result=NULL, last_error=?, updated_at=?, "
        "next_run_at=NULL, picked_by=NULL",
        (FAILED, error[:MAX_ERROR_LEN], now_iso()),
    )


def reject(conn, job_id: str, worker_name: str, error: str) -> bool:
    """Fail a claimed job that was never submitted; its attempt is not counted."""
    return _finish(
        conn, job_id, worker_name,
        "UPDATE jobs SET state=?, attempts=attempts-1, result=NULL, last_error=?, "
        "updated_at=?, next_run_at=NULL, picked_by=NULL",
        (FAILED, error[:MAX_ERROR_LEN], now_iso()),
    )


def schedule_retry(conn, job: Job, worker_name: str, error: str,
                   base_ms: int, cap_ms: int) -> Optional[str]:
    """
    Put a transiently failed job back in the queue with backoff, or fail it
    for good once it has used all its attempts. Returns the resulting state,
    or None when `worker_name` no longer owns the job.
    """
    if job.attempts >= job.max_attempts:
        return FAILED if fail(conn, job.id, worker_name, error) else None

    delay_ms = backoff_delay_ms(job.attempts, base_ms, cap_ms)
    next_at = iso_in_utc_from_seconds_from_now(delay_ms / 1000.0)
    requeued = _finish(
        conn, job.id, worker_name,
        "UPDATE jobs SET state=?, last_error=?, updated_at=?, next_run_at=?, picked_by=NULL",
        (QUEUED, error[:MAX_ERROR_LEN], now_iso(), next_at),
    )
    return QUEUED if requeued else None


def requeue_stale(conn, lease_seconds: int) -> int:
    """
    Release claims older than `lease_seconds` whose worker went away.
    Jobs that already used every attempt become failed instead.
    """
    cutoff = iso_in_utc_from_seconds_from_now(-lease_seconds)
    now = now_iso()
    with conn:
        failed = conn.execute(
            """UPDATE jobs
               SET state=?, last_error=?, updated_at=?, next_run_at=NULL, picked_by=NULL
               WHERE state=? AND updated_at < ? AND attempts >= max_attempts""",
            (FAILED, "worker lost while job was in flight", now, IN_FLIGHT, cutoff),
        ).rowcount
        requeued = conn.execute(
            """UPDATE jobs
               SET state=?, last_error=?, updated_at=?, next_run_at=?, picked_by=NULL
               WHERE state=? AND updated_at < ?""",
            (QUEUED, "worker lost while job was in flight", now, now, IN_FLIGHT, cutoff),
        ).rowcount
    if failed or requeued:
        log.warning("Recovered stale claims: %d requeued, %d failed", requeued, failed)
    return failed + requeued


def reap_expired(conn, ttl_seconds: int) -> int:
    """Delete terminal jobs not touched for `ttl_seconds`."""
    cutoff = iso_in_utc_from_seconds_from_now(-ttl_seconds)
    with conn:
        res = conn.execute(
            "DELETE FROM jobs WHERE state IN (?, ?) AND updated_at < ?",
            (SUCCEEDED, FAILED, cutoff),
        )
    if res.rowcount:
        log.info("Reaped %d expired job(s)", res.rowcount)
    return res.rowcount


# ---------- Queries ----------
def get_job(conn, job_id: str) -> Optional[Job]:
    row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
    return Job.from_row(row) if row else None


def list_jobs(conn, state: Optional[str] = None,
              principal: Optional[str] = None) -> List[Job]:
    clauses, params = [], []
    if state:
        clauses.append("state=?")
        params.append(state)
    if principal:
        clauses.append("principal=?")
        params.append(principal)
    where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
    rows = conn.execute(f"SELECT * FROM jobs {where}ORDER BY seq ASC", params).fetchall()
    return [Job.from_row(r) for r in rows]


def counts(conn) -> Dict[str, int]:
    out = {s: 0 for s in STATES}
    for r in conn.execute("SELECT state, COUNT(1) AS c FROM jobs GROUP BY state"):
        out[r["state"]] = r["c"]
    return out
