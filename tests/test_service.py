import sqlite3

import pytest

from maskctl.config import Settings
from maskctl.errors import NotFound
from maskctl.models import (
    QUEUED, FAILED, VALIDATE, EXTRACT, PRIORITY, STANDARD, REMOVAL, CANCELLED,
    DELIVERY_EXHAUSTED, ENTRY_PENDING,
)
from maskctl.service import Orchestrator

INPUT_REF = "inputs/clip.mp4"


def test_submit_creates_queued_job_and_entry(orch, submit):
    job_id = submit(tier=PRIORITY, mode=REMOVAL, batch_size=4)

    job = orch.store.get(job_id)
    assert (job.status, job.stage, job.version) == (QUEUED, VALIDATE, 0)
    assert job.tier == PRIORITY
    assert job.params == {"batch_size": 4}
    entry = orch.queue.get(job_id)
    assert entry.state == ENTRY_PENDING
    assert entry.priority_score == 1
    assert entry.delivery_count == 0


@pytest.mark.parametrize("tier,mode,input_ref", [
    ("gold", "blur", INPUT_REF),
    (STANDARD, "pixelate", INPUT_REF),
    (STANDARD, "blur", "  "),
])
def test_submit_rejects_bad_requests(orch, tier, mode, input_ref):
    with pytest.raises(ValueError):
        orch.submit("owner-1", tier, mode, input_ref, (1, 1))
    assert orch.list_jobs() == []


def test_get_status(orch, submit):
    job_id = submit()
    view = orch.get_status(job_id)
    assert view.job_id == job_id
    assert (view.stage, view.status, view.progress_percent) == (VALIDATE, QUEUED, 0)
    assert view.output_ref is None
    with pytest.raises(NotFound):
        orch.get_status("missing")


def test_cancel_queued_job(orch, submit, notifier):
    job_id = submit()
    assert orch.cancel(job_id) is True

    job = orch.store.get(job_id)
    assert job.status == FAILED
    assert job.error_detail == CANCELLED
    assert orch.queue.get(job_id) is None
    assert notifier.kinds(job_id) == ["failed"]
    assert orch.cancel(job_id) is False


def test_expired_lease_does_not_touch_job_state(orch, submit, clock):
    job_id = submit()
    orch.machine.step(job_id)
    before = orch.store.get(job_id)

    orch.queue.lease("w-a", orch.settings.lease_seconds)
    clock.advance(121)
    entry = orch.queue.lease("w-b", orch.settings.lease_seconds)

    assert entry.job_id == job_id
    assert entry.lease_owner == "w-b"
    assert entry.delivery_count == 2
    after = orch.store.get(job_id)
    assert after.stage == before.stage == EXTRACT
    assert after.attempts == before.attempts
    assert after.version == before.version


def test_dead_lettered_job_is_failed_and_can_be_resubmitted(db, engines, notifier, clock):
    orch = Orchestrator(db, engines=engines, settings=Settings(max_deliveries=2), clock=clock)
    job_id = orch.submit("owner-1", STANDARD, "blur", INPUT_REF, (3, 4))
    for worker in ("w1", "w2"):
        orch.queue.lease(worker, 10)
        clock.advance(10)

    assert orch.queue.lease("w3", 10) is None
    job = orch.store.get(job_id)
    assert job.status == FAILED
    assert job.error_detail == DELIVERY_EXHAUSTED
    assert notifier.kinds(job_id) == ["failed"]
    assert [e.job_id for e in orch.dead_letters()] == [job_id]

    new_id = orch.retry_dead_letter(job_id)
    assert new_id != job_id
    assert orch.dead_letters() == []
    assert orch.store.get(job_id).status == FAILED
    clone = orch.store.get(new_id)
    assert clone.status == QUEUED
    assert clone.segmentation_point == (3, 4)
    assert orch.queue.get(new_id).state == ENTRY_PENDING


def test_retry_dead_letter_rejects_other_jobs(orch, submit):
    job_id = submit()
    with pytest.raises(ValueError):
        orch.retry_dead_letter(job_id)
    orch.cancel(job_id)
    with pytest.raises(ValueError):
        orch.retry_dead_letter(job_id)


def test_stats(orch, submit, clock):
    submit()
    cancelled = submit()
    orch.cancel(cancelled)
    orch.registry.register("w1", clock.time())

    stats = orch.stats()
    assert stats["jobs"][QUEUED] == 1
    assert stats["jobs"][FAILED] == 1
    assert stats["queue"][ENTRY_PENDING] == 1
    assert stats["workers"] == {"active": 1}


def test_machine_requires_engines(db, clock):
    orch = Orchestrator(db, clock=clock)
    assert orch.settings.max_deliveries == 5
    with pytest.raises(RuntimeError):
        orch.machine


def test_failed_enqueue_leaves_no_job_behind(orch, monkeypatch):
    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(orch.queue, "enqueue", locked)
    with pytest.raises(sqlite3.OperationalError):
        orch.submit("owner-1", STANDARD, "blur", INPUT_REF, (3, 4))

    assert orch.list_jobs() == []
    assert orch.stats()["jobs"][QUEUED] == 0
