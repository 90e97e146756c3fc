"""Tests for the SQLite job store."""
from steamdl.jobs.models import JobRecord, JobStatus


async def test_save_and_load(store):
    rec = JobRecord(identity_id="alice", target="431960")
    await store.save(rec)

    fetched = await store.load(rec.job_id)
    assert fetched is not None
    assert fetched == rec
    assert fetched.status == JobStatus.queued


async def test_save_overwrites(store):
    rec = JobRecord(identity_id="alice", target="431960")
    await store.save(rec)
    rec.status = JobStatus.running
    rec.started_at = "2026-01-01T00:00:00+00:00"
    rec.progress = 0.5
    rec.phase = "downloading"
    await store.save(rec)

    fetched = await store.load(rec.job_id)
    assert fetched.status == JobStatus.running
    assert fetched.started_at == "2026-01-01T00:00:00+00:00"
    assert fetched.progress == 0.5
    assert fetched.phase == "downloading"


async def test_load_nonexistent(store):
    assert await store.load("nonexistent") is None


async def test_list_by_status(store):
    queued = JobRecord(identity_id="alice", target="1")
    running = JobRecord(identity_id="alice", target="2", status=JobStatus.running)
    done = JobRecord(identity_id="bob", target="3", status=JobStatus.succeeded)
    for rec in (queued, running, done):
        await store.save(rec)

    active = await store.list_by_status(JobStatus.queued, JobStatus.running)
    assert {r.job_id for r in active} == {queued.job_id, running.job_id}
    assert [r.job_id for r in await store.list_by_status(JobStatus.succeeded)] == [done.job_id]
    assert await store.list_by_status() == []


async def test_list_jobs_by_identity(store):
    await store.save(JobRecord(identity_id="alice", target="1"))
    await store.save(JobRecord(identity_id="alice", target="2"))
    await store.save(JobRecord(identity_id="bob", target="3"))
    assert len(await store.list_jobs()) == 3
    assert {r.target for r in await store.list_jobs(identity_id="alice")} == {"1", "2"}
