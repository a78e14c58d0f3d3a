import logging
import signal
import sqlite3
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Callable, Optional

from .backend import Backend
from .config import config_int
from .credentials import CredentialStore
from .db import connect_db
from .errors import StoreUnavailableError, SubmitError
from .models import Job, SUCCEEDED, FAILED
from .repository import (
    claim_one, complete, fail, reject, schedule_retry, get_config, requeue_stale,
    reap_expired,
)

log = logging.getLogger(__name__)

HOUSEKEEPING_INTERVAL = 5.0


class SubmitTimeout(Exception):
    pass


class Submitter:
    """
    Runs backend submits on a helper thread so each one can be bounded.

    A call that overruns keeps running in the background (the transaction may
    still commit), so the executor is swapped out and the next submit is not
    stuck behind it.
    """

    def __init__(self, backend: Backend, name: str):
        self.backend = backend
        self.name = name
        self._executor = self._new_executor()

    def _new_executor(self):
        return ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{self.name}-submit")

    def submit(self, identity, job: Job, timeout: float) -> bytes:
        future = self._executor.submit(self.backend.submit, identity, job.operation, *job.arguments)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            self._executor.shutdown(wait=False)
            self._executor = self._new_executor()
            raise SubmitTimeout(f"submit timed out after {timeout}s; transaction may still commit")

    def close(self):
        self._executor.shutdown(wait=False)


class WorkerPool:
    """
    A pool of submission workers sharing one job store.

    Each worker claims one job at a time, submits it under the job principal's
    identity and records the outcome. A housekeeping thread releases stale
    claims and reaps expired jobs.
    """

    def __init__(self, backend: Backend, count: int = 1, db_path: Optional[str] = None,
                 credentials: Optional[CredentialStore] = None,
                 on_fatal: Optional[Callable[[BaseException], None]] = None):
        if count < 1:
            raise ValueError("count must be >= 1")
        self.backend = backend
        self.count = count
        self.db_path = db_path
        self.credentials = credentials or CredentialStore(db_path)
        self.fatal: Optional[BaseException] = None
        self.on_fatal = on_fatal
        self._stop = threading.Event()
        self._threads = []

    def start(self):
        for i in range(self.count):
            t = threading.Thread(target=self.worker_loop, args=(f"worker-{i+1}",),
                                 name=f"worker-{i+1}", daemon=True)
            t.start()
            self._threads.append(t)
            log.info("Started %s", t.name)
        t = threading.Thread(target=self.housekeeping_loop, name="housekeeping", daemon=True)
        t.start()
        self._threads.append(t)

    def stop(self):
        self._stop.set()

    def join(self, timeout: Optional[float] = None):
        for t in self._threads:
            t.join(timeout)

    def alive(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def run_until_stopped(self):
        """Block until stop() or a signal; returns False on a fatal store error."""
        setup_signal_handlers(self)
        self.start()
        try:
            while self.alive() and not self._stop.is_set():
                time.sleep(0.5)
        finally:
            self._stop.set()
            self.join()
            log.info("All workers stopped gracefully.")
        return self.fatal is None

    def _die(self, name: str, exc: BaseException):
        log.critical("[%s] Job store unavailable, stopping pool: %s", name, exc)
        self.fatal = exc
        self._stop.set()
        if self.on_fatal is not None:
            self.on_fatal(exc)

    # ---------- Worker ----------
    def worker_loop(self, name: str):
        try:
            conn = connect_db(self.db_path)
        except StoreUnavailableError as e:
            self._die(name, e)
            return
        submitter = Submitter(self.backend, name)
        try:
            while not self._stop.is_set():
                try:
                    cfg = get_config(conn)
                    job = claim_one(conn, worker_name=name)
                    if not job:
                        self._stop.wait(config_int(cfg, "poll_interval_ms") / 1000.0)
                        continue
                    self.process(conn, name, submitter, job, cfg)
                except (sqlite3.Error, StoreUnavailableError) as e:
                    self._die(name, e)
                except Exception:
                    log.exception("[%s] Unexpected error", name)
                    self._stop.wait(1)
        finally:
            submitter.close()
            conn.close()
            log.info("[%s] Worker stopped.", name)

    def process(self, conn, name: str, submitter: Submitter, job: Job, cfg) -> Optional[str]:
        """
        Submit one claimed job and record its outcome. Returns the new state,
        or None if another worker took the job over in the meantime.
        """
        log.info("[%s] Submitting job %s: %s (attempt %d/%d)",
                 name, job.id, job.operation, job.attempts, job.max_attempts)

        identity = self.credentials.get_identity(job.principal)
        if identity is None:
            # nothing reaches the backend, so the claimed attempt is handed back
            log.warning("[%s] Job %s: no backend identity for %s", name, job.id, job.principal)
            reject(conn, job.id, name, f"no backend identity registered for {job.principal}")
            return FAILED

        timeout = max(1, config_int(cfg, "timeout_seconds"))
        try:
            result = submitter.submit(identity, job, timeout)
        except SubmitError as e:
            if e.transient:
                return self._retry(conn, name, job, cfg, f"transient: {e}")
            log.info("[%s] Job %s rejected permanently: %s", name, job.id, e)
            fail(conn, job.id, name, f"permanent: {e}")
            return FAILED
        except SubmitTimeout as e:
            return self._retry(conn, name, job, cfg, f"timeout: {e}")
        except Exception as e:
            log.exception("[%s] Job %s: unclassified backend error", name, job.id)
            return self._retry(conn, name, job, cfg, f"transient: {type(e).__name__}: {e}")

        log.info("[%s] Job %s completed successfully.", name, job.id)
        complete(conn, job.id, name, result)
        return SUCCEEDED

    def _retry(self, conn, name: str, job: Job, cfg, error: str) -> Optional[str]:
        state = schedule_retry(
            conn, job, name, error,
            base_ms=config_int(cfg, "backoff_base_ms"),
            cap_ms=config_int(cfg, "backoff_cap_ms"),
        )
        if state is None:
            log.warning("[%s] Job %s was taken over before its retry was recorded", name, job.id)
        elif state == FAILED:
            log.warning("[%s] Job %s failed after %d attempts: %s",
                        name, job.id, job.attempts, error)
        else:
            log.info("[%s] Job %s failed (%s), scheduling retry...", name, job.id, error)
        return state

    # ---------- Housekeeping ----------
    def housekeeping_loop(self):
        try:
            conn = connect_db(self.db_path)
        except StoreUnavailableError as e:
            self._die("housekeeping", e)
            return
        try:
            while not self._stop.is_set():
                try:
                    cfg = get_config(conn)
                    requeue_stale(conn, config_int(cfg, "claim_lease_seconds"))
                    reap_expired(conn, config_int(cfg, "job_ttl_seconds"))
                except (sqlite3.Error, StoreUnavailableError) as e:
                    self._die("housekeeping", e)
                self._stop.wait(HOUSEKEEPING_INTERVAL)
        finally:
            conn.close()


def setup_signal_handlers(pool: WorkerPool):
    def _handler(signum, frame):
        log.info("Received signal %s. Stopping workers", signum)
        pool.stop()

    # signal handlers can only be installed from the main thread
    if threading.current_thread() is not threading.main_thread():
        return
    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _handler)


def start_workers(backend: Backend, count: int, db_path: Optional[str] = None) -> bool:
    """Start `count` worker threads and block until they stop."""
    return WorkerPool(backend, count=count, db_path=db_path).run_until_stopped()
