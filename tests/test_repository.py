import time

import pytest

from ledgerq.models import QUEUED, IN_FLIGHT, SUCCEEDED, FAILED
from ledgerq.repository import (
    enqueue_job, claim_one, complete, fail, reject, schedule_retry, requeue_stale,
    reap_expired, get_job, list_jobs, counts, get_config, set_config,
)
from ledgerq.utils import backoff_delay_ms


def _enqueue(conn, key, *rest, **kw):
    return enqueue_job(conn, principal="alice", operation="UpdateMessage",
                       arguments=(key,) + rest, **kw)


def test_enqueue_creates_queued_job(conn):
    job_id = enqueue_job(conn, principal="alice", operation="CreateMessage",
                         arguments=["m1", 3, 5, "hi", 0, "2025-04-04T10:00:00Z"])
    job = get_job(conn, job_id)
    assert job.state == QUEUED
    assert job.attempts == 0
    assert job.max_attempts == 5
    assert job.record_key == "m1"
    assert job.arguments == ["m1", "3", "5", "hi", "0", "2025-04-04T10:00:00Z"]
    assert job.result is None and job.last_error is None


def test_enqueue_generates_unique_ids(conn):
    ids = {_enqueue(conn, "m1") for _ in range(50)}
    assert len(ids) == 50


@pytest.mark.parametrize("principal,operation", [("", "CreateMessage"), ("alice", "  ")])
def test_enqueue_rejects_missing_fields(conn, principal, operation):
    with pytest.raises(ValueError):
        enqueue_job(conn, principal=principal, operation=operation, arguments=["m1"])
    assert list_jobs(conn) == []


def test_claim_is_exclusive_and_counts_attempt(conn):
    job_id = _enqueue(conn, "m1")
    job = claim_one(conn, "worker-1")
    assert job.id == job_id
    assert job.state == IN_FLIGHT
    assert job.picked_by == "worker-1"
    assert job.attempts == 1
    assert claim_one(conn, "worker-2") is None


def test_claim_keeps_fifo_per_record(conn):
    a = _enqueue(conn, "m1", "first")
    b = _enqueue(conn, "m1", "second")
    c = _enqueue(conn, "m2")

    assert claim_one(conn, "w1").id == a
    # b waits behind a; unrelated key is free to go
    assert claim_one(conn, "w2").id == c
    assert claim_one(conn, "w3") is None

    complete(conn, a, "w1", b"")
    assert claim_one(conn, "w3").id == b


def test_job_in_backoff_still_blocks_later_job_on_same_record(conn):
    a = _enqueue(conn, "m1")
    b = _enqueue(conn, "m1")

    job = claim_one(conn, "w1")
    assert schedule_retry(conn, job, "w1", "timeout", base_ms=60000, cap_ms=60000) == QUEUED
    assert get_job(conn, a).next_run_at > get_job(conn, a).updated_at
    assert claim_one(conn, "w1") is None
    assert get_job(conn, b).state == QUEUED


def test_schedule_retry_requeues_until_attempts_exhausted(conn):
    job_id = _enqueue(conn, "m1", max_attempts=2)

    job = claim_one(conn, "w1")
    assert schedule_retry(conn, job, "w1", "connection reset", base_ms=0, cap_ms=0) == QUEUED
    requeued = get_job(conn, job_id)
    assert requeued.state == QUEUED
    assert requeued.attempts == 1
    assert requeued.last_error == "connection reset"
    assert requeued.picked_by is None

    job = claim_one(conn, "w1")
    assert job.attempts == 2
    assert schedule_retry(conn, job, "w1", "connection reset", base_ms=0, cap_ms=0) == FAILED
    failed = get_job(conn, job_id)
    assert failed.state == FAILED
    assert failed.attempts == 2
    assert failed.result is None


def test_complete_sets_result_and_clears_error(conn):
    job_id = _enqueue(conn, "m1")
    job = claim_one(conn, "w1")
    schedule_retry(conn, job, "w1", "timeout", base_ms=0, cap_ms=0)
    claim_one(conn, "w1")
    assert complete(conn, job_id, "w1", b'{"ok":true}')

    job = get_job(conn, job_id)
    assert job.state == SUCCEEDED
    assert job.result == b'{"ok":true}'
    assert job.last_error is None
    assert job.to_status()["result"] == '{"ok":true}'
    assert "lastError" not in job.to_status()


def test_outcome_from_non_owner_is_dropped(conn):
    job_id = _enqueue(conn, "m1")
    claim_one(conn, "w1")
    assert not complete(conn, job_id, "w2", b"stolen")
    assert not fail(conn, job_id, "w2", "nope")
    assert get_job(conn, job_id).state == IN_FLIGHT


def test_retry_from_non_owner_reports_no_state(conn):
    job_id = _enqueue(conn, "m1", max_attempts=2)
    job = claim_one(conn, "w1")
    assert schedule_retry(conn, job, "w2", "timeout", base_ms=0, cap_ms=0) is None
    job.attempts = job.max_attempts
    assert schedule_retry(conn, job, "w2", "timeout", base_ms=0, cap_ms=0) is None
    stored = get_job(conn, job_id)
    assert stored.state == IN_FLIGHT
    assert stored.picked_by == "w1"


def test_terminal_jobs_do_not_move(conn):
    job_id = _enqueue(conn, "m1")
    claim_one(conn, "w1")
    fail(conn, job_id, "w1", "The message m1 does not exist")
    assert not complete(conn, job_id, "w1", b"late")
    assert claim_one(conn, "w1") is None
    assert get_job(conn, job_id).state == FAILED


def test_reject_hands_back_the_attempt(conn):
    job_id = _enqueue(conn, "m1")
    claim_one(conn, "w1")
    reject(conn, job_id, "w1", "no identity")
    job = get_job(conn, job_id)
    assert job.state == FAILED
    assert job.attempts == 0


def test_requeue_stale_releases_abandoned_claims(conn):
    live = _enqueue(conn, "m1")
    spent = _enqueue(conn, "m2", max_attempts=1)
    claim_one(conn, "dead-worker")
    claim_one(conn, "dead-worker")
    time.sleep(0.01)

    assert requeue_stale(conn, 0) == 2
    assert get_job(conn, live).state == QUEUED
    assert get_job(conn, live).attempts == 1
    assert get_job(conn, spent).state == FAILED


def test_requeue_stale_leaves_fresh_claims(conn):
    job_id = _enqueue(conn, "m1")
    claim_one(conn, "w1")
    assert requeue_stale(conn, 120) == 0
    assert get_job(conn, job_id).state == IN_FLIGHT


def test_reap_expired_removes_only_terminal_jobs(conn):
    done = _enqueue(conn, "m1")
    waiting = _enqueue(conn, "m2")
    claim_one(conn, "w1")
    complete(conn, done, "w1", b"")
    time.sleep(0.01)

    assert reap_expired(conn, 0) == 1
    assert get_job(conn, done) is None
    assert get_job(conn, waiting) is not None
    assert reap_expired(conn, 3600) == 0


def test_counts_and_list_filters(conn):
    a = _enqueue(conn, "m1")
    enqueue_job(conn, principal="bob", operation="DeleteMessage", arguments=["m2"])
    claim_one(conn, "w1")
    complete(conn, a, "w1", b"")

    assert counts(conn) == {QUEUED: 1, IN_FLIGHT: 0, SUCCEEDED: 1, FAILED: 0}
    assert [j.principal for j in list_jobs(conn, principal="bob")] == ["bob"]
    assert [j.id for j in list_jobs(conn, state=SUCCEEDED)] == [a]


def test_config_defaults_and_validation(conn):
    cfg = get_config(conn)
    assert cfg["max_attempts"] == "5"
    assert cfg["timeout_seconds"] == "20"
    set_config(conn, "max_attempts", "3")
    assert get_config(conn)["max_attempts"] == "3"
    with pytest.raises(ValueError):
        set_config(conn, "bogus", "1")
    with pytest.raises(ValueError):
        set_config(conn, "max_attempts", "many")


def test_backoff_doubles_and_caps():
    assert [backoff_delay_ms(n, 500, 30000) for n in range(1, 9)] == [
        500, 1000, 2000, 4000, 8000, 16000, 30000, 30000,
    ]
    assert backoff_delay_ms(10_000, 500, 30000) == 30000


def test_config_keeps_lease_longer_than_submit_timeout(conn):
    with pytest.raises(ValueError, match="at least 1"):
        set_config(conn, "timeout_seconds", "0")
    with pytest.raises(ValueError, match="greater than timeout_seconds"):
        set_config(conn, "claim_lease_seconds", "20")
    with pytest.raises(ValueError, match="greater than timeout_seconds"):
        set_config(conn, "timeout_seconds", "120")
    assert get_config(conn)["timeout_seconds"] == "20"
    assert get_config(conn)["claim_lease_seconds"] == "120"

    set_config(conn, "timeout_seconds", "5")
    set_config(conn, "claim_lease_seconds", "6")
    assert get_config(conn)["claim_lease_seconds"] == "6"


def test_live_claim_cannot_be_recovered_by_config(conn):
    job_id = _enqueue(conn, "m1")
    for key, value in (("timeout_seconds", "0"), ("claim_lease_seconds", "0")):
        with pytest.raises(ValueError):
            set_config(conn, key, value)
    claim_one(conn, "w1")

    lease = int(get_config(conn)["claim_lease_seconds"])
    assert requeue_stale(conn, lease) == 0
    assert claim_one(conn, "w2") is None
    assert get_job(conn, job_id).picked_by == "w1"
