import threading
from datetime import timedelta

import pytest

from botjobs.exceptions import StorageError
from botjobs.models import PENDING, IN_FLIGHT, COMPLETED, FAILED
from botjobs.storage import Storage
from botjobs.utils import utcnow, to_iso


def test_enqueue_creates_pending_job(storage):
    job = storage.enqueue_job("ok", {"room": "ABCD"})

    stored = storage.get_job(job.id)
    assert stored.status == PENDING
    assert stored.kind == "ok"
    assert stored.payload == {"room": "ABCD"}
    assert stored.attempts == 0
    assert stored.claimed_at is None
    assert stored.error is None


def test_enqueue_with_same_dedupe_key_returns_existing_job(storage):
    first = storage.enqueue_job("ok", {"n": 1}, dedupe_key="ABCD:1:7")
    second = storage.enqueue_job("ok", {"n": 2}, dedupe_key="ABCD:1:7")

    assert second.id == first.id
    assert second.payload == {"n": 1}
    assert len(storage.list_jobs()) == 1


def test_enqueue_rejects_duplicate_id_and_bad_input(storage):
    storage.enqueue_job("ok", job_id="job-1")

    with pytest.raises(ValueError):
        storage.enqueue_job("ok", job_id="job-1")
    with pytest.raises(ValueError):
        storage.enqueue_job("")
    with pytest.raises(ValueError):
        storage.enqueue_job("ok", {"when": object()})


def test_get_job_missing_returns_none(storage):
    assert storage.get_job("nope") is None


def test_claim_batch_is_oldest_first_and_bounded(storage):
    ids = [storage.enqueue_job("ok", {"i": i}).id for i in range(5)]

    claimed = storage.claim_batch(3)

    assert [job.id for job in claimed] == ids[:3]
    for job in claimed:
        assert job.status == IN_FLIGHT
        assert job.attempts == 1
        assert job.claimed_at is not None
    assert storage.get_job_counts()[PENDING] == 2


def test_claim_batch_with_nothing_eligible_is_empty(storage):
    assert storage.claim_batch(10) == []
    storage.enqueue_job("ok")
    assert storage.claim_batch(0) == []


def test_claimed_jobs_are_not_claimed_again(storage):
    storage.enqueue_job("ok")
    assert len(storage.claim_batch(5, stale_after=60)) == 1
    assert storage.claim_batch(5, stale_after=60) == []


def test_concurrent_claims_never_share_a_job(db_path):
    seed = Storage(db_path)
    ids = {seed.enqueue_job("ok", {"i": i}).id for i in range(40)}

    barrier = threading.Barrier(8)
    results = []
    lock = threading.Lock()

    def claimer():
        store = Storage(db_path)
        barrier.wait()
        mine = []
        while True:
            batch = store.claim_batch(3, stale_after=60)
            if not batch:
                break
            mine.extend(job.id for job in batch)
        with lock:
            results.append(mine)

    threads = [threading.Thread(target=claimer) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    claimed = [job_id for batch in results for job_id in batch]
    assert len(claimed) == len(set(claimed))
    assert set(claimed) == ids


def test_stale_in_flight_job_is_reclaimed(storage):
    job = storage.enqueue_job("ok")
    long_ago = utcnow() - timedelta(seconds=120)
    storage.claim_batch(1, now=long_ago)

    # Fresh claims are left alone, stale ones come back
    assert storage.claim_batch(1, now=long_ago + timedelta(seconds=30), stale_after=60) == []
    reclaimed = storage.claim_batch(1, stale_after=60)

    assert [j.id for j in reclaimed] == [job.id]
    assert reclaimed[0].attempts == 2


def test_stale_recovery_disabled_without_threshold(storage):
    storage.enqueue_job("ok")
    storage.claim_batch(1, now=utcnow() - timedelta(days=1))
    assert storage.claim_batch(1) == []


def test_terminal_writes_require_the_current_claim(storage):
    storage.enqueue_job("ok")
    job = storage.claim_batch(1)[0]

    assert storage.complete_job(job.id, "2000-01-01T00:00:00.000000Z") is False
    assert storage.complete_job(job.id, job.claimed_at) is True

    stored = storage.get_job(job.id)
    assert stored.status == COMPLETED
    assert stored.completed_at is not None


def test_start_job_refreshes_the_current_claim_only(storage):
    storage.enqueue_job("ok")
    old = storage.claim_batch(1, now=utcnow() - timedelta(minutes=5))[0]

    token = storage.start_job(old.id, old.claimed_at)

    assert token is not None and token > old.claimed_at
    assert storage.get_job(old.id).claimed_at == token
    # The refreshed claim is no longer stale, and the old token is spent
    assert storage.claim_batch(1, stale_after=60) == []
    assert storage.start_job(old.id, old.claimed_at) is None
    assert storage.complete_job(old.id, token) is True
    assert storage.start_job(old.id, token) is None


def test_terminal_state_is_immutable(storage):
    storage.enqueue_job("ok")
    job = storage.claim_batch(1)[0]
    storage.fail_job(job.id, job.claimed_at, "first reason")

    assert storage.complete_job(job.id, job.claimed_at) is False
    assert storage.fail_job(job.id, job.claimed_at, "second reason") is False
    assert storage.claim_batch(5, now=utcnow() + timedelta(days=1), stale_after=1) == []

    stored = storage.get_job(job.id)
    assert stored.status == FAILED
    assert stored.error == "first reason"
    assert stored.attempts == 1


def test_fail_job_truncates_long_errors(storage):
    storage.enqueue_job("ok")
    job = storage.claim_batch(1)[0]
    storage.fail_job(job.id, job.claimed_at, "x" * 2000)
    assert len(storage.get_job(job.id).error) == 500


def test_job_counts_cover_every_status(storage):
    for _ in range(3):
        storage.enqueue_job("ok")
    job = storage.claim_batch(1)[0]
    storage.complete_job(job.id, job.claimed_at)
    storage.claim_batch(1)

    assert storage.get_job_counts() == {PENDING: 1, IN_FLIGHT: 1, COMPLETED: 1, FAILED: 0}


def test_list_jobs_filters_and_limits(storage):
    for i in range(4):
        storage.enqueue_job("ok", {"i": i})
    storage.claim_batch(1)

    assert len(storage.list_jobs(status=PENDING)) == 3
    assert [job.payload["i"] for job in storage.list_jobs(limit=2)] == [0, 1]
    with pytest.raises(ValueError):
        storage.list_jobs(status="dead")


def test_config_round_trip(storage):
    assert storage.get_config("batch-size") is None
    assert storage.get_config("batch-size", "10") == "10"

    storage.set_config("batch-size", "20")
    storage.set_config("batch-size", "25")

    assert storage.get_config("batch-size") == "25"
    assert storage.list_config() == {"batch-size": "25"}


def test_unreachable_store_raises_storage_error(tmp_path):
    with pytest.raises(StorageError):
        Storage(str(tmp_path / "missing-dir" / "jobs.db"))


def test_timestamps_sort_lexically():
    earlier = utcnow().replace(microsecond=0)
    later = earlier + timedelta(microseconds=5)
    assert to_iso(earlier) < to_iso(later)
    assert len(to_iso(earlier)) == len(to_iso(later))
