import threading
import time
from collections import defaultdict

import pytest

from ledgerq.backend import LocalLedger
from ledgerq.credentials import CredentialStore
from ledgerq.db import connect_db, init_db
from ledgerq.errors import PermanentSubmitError, TransientSubmitError
from ledgerq.repository import get_job, set_config


def wait_for(predicate, timeout=15.0, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return False


class StubBackend:
    """
    Records every submit in call order.

    The first argument of a call identifies the job in these tests; a second
    concurrent submit with the same first argument is counted as a duplicate.
    `failures[key]` transient failures are raised before a key succeeds.
    """

    def __init__(self, failures=None, always_fail=False, permanent=False, delay=0.0):
        self.failures = dict(failures or {})
        self.always_fail = always_fail
        self.permanent = permanent
        self.delay = delay
        self.calls = []
        self.duplicates = 0
        self.per_key = defaultdict(int)
        self._active = set()
        self._lock = threading.Lock()

    def submit(self, identity, operation, *args):
        key = args[0] if args else ""
        with self._lock:
            if key in self._active:
                self.duplicates += 1
            self._active.add(key)
            self.calls.append((operation,) + tuple(args))
            self.per_key[key] += 1
            n = self.per_key[key]
        try:
            if self.delay:
                time.sleep(self.delay)
            if self.permanent:
                raise PermanentSubmitError(f"The message {key} already exists")
            if self.always_fail or n <= self.failures.get(key, 0):
                raise TransientSubmitError("connection reset by peer")
            return f"ok:{key}".encode()
        finally:
            with self._lock:
                self._active.discard(key)

    def evaluate(self, identity, operation, *args):
        return b"[]"


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "jobs.db")
    init_db(path)
    # keep worker tests fast
    conn = connect_db(path)
    try:
        set_config(conn, "poll_interval_ms", "10")
        set_config(conn, "backoff_base_ms", "5")
        set_config(conn, "backoff_cap_ms", "20")
    finally:
        conn.close()
    return path


@pytest.fixture
def conn(db_path):
    c = connect_db(db_path)
    yield c
    c.close()


@pytest.fixture
def credentials(db_path):
    store = CredentialStore(db_path)
    store.put_identity("alice", "Org1MSP", "alice-cert")
    store.put_identity("bob", "Org2MSP", "bob-cert")
    return store


@pytest.fixture
def ledger(tmp_path):
    backend = LocalLedger(str(tmp_path / "ledger.db"))
    yield backend
    backend.close()


@pytest.fixture
def job_state(db_path):
    def _state(job_id):
        c = connect_db(db_path)
        try:
            return get_job(c, job_id)
        finally:
            c.close()
    return _state
