"""Tests for the job state machine and registry."""

import asyncio

import pytest

from archive_relay.errors import ErrorKind, InvalidSession, MissingField, SourceUnreachable
from archive_relay.jobs import InvalidTransition, JobRegistry, JobState, RelayJob, RelayRequest
from archive_relay.pipeline import RelayPipeline
from archive_relay.sessions import SessionStore
from fakes import FakeStorage, no_sleep


def _job() -> RelayJob:
    return RelayJob(id="j1", source_url="https://cdn.example.com/a.mp4", title="T", collection="c")


def test_happy_path_transitions():
    job = _job()
    for state in (
        JobState.VERIFYING, JobState.DOWNLOADING, JobState.UPLOADING,
        JobState.FINALIZING, JobState.COMPLETE,
    ):
        job.advance(state, now=10.0)

    assert job.state is JobState.COMPLETE
    assert job.finished_at == 10.0


@pytest.mark.parametrize("target", [JobState.DOWNLOADING, JobState.UPLOADING, JobState.COMPLETE])
def test_skipping_a_state_is_rejected(target):
    job = _job()

    with pytest.raises(InvalidTransition):
        job.advance(target)
    assert job.state is JobState.IDLE


def test_error_is_reachable_from_any_active_state():
    job = _job()
    job.advance(JobState.VERIFYING)
    job.advance(JobState.DOWNLOADING)

    assert job.fail(SourceUnreachable("gone"), now=5.0)

    assert job.state is JobState.ERROR
    assert job.failed_during is JobState.DOWNLOADING
    assert job.error_kind is ErrorKind.SOURCE_UNREACHABLE
    assert job.last_error == "gone"
    assert job.finished_at == 5.0


def test_terminal_states_are_final():
    job = _job()
    job.fail(SourceUnreachable("gone"))

    assert not job.fail(SourceUnreachable("again"))
    assert job.last_error == "gone"
    with pytest.raises(InvalidTransition):
        job.advance(JobState.VERIFYING)


def test_percent_split_between_download_and_upload():
    job = _job()
    job.advance(JobState.VERIFYING)
    job.advance(JobState.DOWNLOADING)
    job.total_bytes = 200
    job.bytes_transferred = 100
    assert job.percent == 25.0

    job.advance(JobState.UPLOADING)
    job.bytes_transferred = 100
    assert job.percent == 75.0

    job.advance(JobState.FINALIZING)
    assert job.percent == 100.0


def test_missing_fields():
    request = RelayRequest(session_id="s", source_url=" ", title="T", collection="")

    assert request.missing_fields() == ["source_url", "collection"]


@pytest.fixture
def sessions(clock) -> SessionStore:
    return SessionStore(clock=clock)


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def registry(sessions, storage, channel, config, clock) -> JobRegistry:
    pipeline = RelayPipeline(storage, channel, config, sleep=no_sleep, clock=clock)
    return JobRegistry(sessions, pipeline, retention=3600, clock=clock)


def _request(session_id, **overrides) -> RelayRequest:
    values = dict(
        session_id=session_id,
        source_url="https://cdn.example.com/a.mp4",
        title="Holiday",
        collection="opensource_movies",
        subscriber_id="sub-1",
    )
    values.update(overrides)
    return RelayRequest(**values)


async def test_submit_with_missing_title_creates_no_job(registry, sessions):
    session_id = sessions.create("AK", "SK", "Tester")

    with pytest.raises(MissingField) as info:
        registry.submit(_request(session_id, title=""))

    assert info.value.fields == ["title"]
    assert len(registry) == 0


async def test_submit_with_unknown_session(registry):
    with pytest.raises(InvalidSession):
        registry.submit(_request("not-a-session"))

    assert len(registry) == 0


async def test_invalid_session_reported_before_missing_fields(registry):
    with pytest.raises(InvalidSession):
        registry.submit(_request("not-a-session", title="", collection=""))


async def test_submit_runs_job_to_completion(registry, sessions, storage):
    session_id = sessions.create("AK", "SK", "Tester")

    job_id = registry.submit(_request(session_id))
    job = registry.get(job_id)
    await job.task

    status = registry.get_status(job_id)
    assert status["state"] == "complete"
    assert status["percent"] == 100.0
    assert status["result"]["identifier"] == "holiday_1700000000000"
    assert storage.put_objects[0]["credentials"] == ("AK", "SK")


async def test_job_ids_are_unique(registry, sessions):
    session_id = sessions.create("AK", "SK", "Tester")

    ids = {registry.submit(_request(session_id)) for _ in range(20)}
    await asyncio.gather(*(registry.get(i).task for i in ids))

    assert len(ids) == 20


async def test_finished_jobs_evicted_after_retention(registry, sessions, clock):
    session_id = sessions.create("AK", "SK", "Tester")
    job_id = registry.submit(_request(session_id))
    await registry.get(job_id).task

    clock.advance(3599)
    assert registry.get(job_id) is not None

    clock.advance(2)
    assert registry.get(job_id) is None
    assert len(registry) == 0


async def test_sweep_evicts_only_expired(registry, sessions, clock):
    session_id = sessions.create("AK", "SK", "Tester")
    old = registry.submit(_request(session_id))
    await registry.get(old).task
    clock.advance(3000)
    fresh = registry.submit(_request(session_id))
    await registry.get(fresh).task
    clock.advance(1000)

    assert registry.sweep() == 1
    assert registry.get(old) is None
    assert registry.get(fresh) is not None


async def test_cancel_running_job(sessions, storage, channel, config, clock):
    blocked = asyncio.Event()

    async def slow_sleep(_seconds):
        blocked.set()
        await asyncio.sleep(3600)

    pipeline = RelayPipeline(storage, channel, config, sleep=slow_sleep, clock=clock)
    registry = JobRegistry(sessions, pipeline, clock=clock)
    session_id = sessions.create("AK", "SK", "Tester")
    job_id = registry.submit(_request(session_id))
    await asyncio.wait_for(blocked.wait(), timeout=2)

    assert registry.cancel(job_id)
    with pytest.raises(asyncio.CancelledError):
        await registry.get(job_id).task

    status = registry.get_status(job_id)
    assert status["state"] == "error"
    assert status["error_kind"] == "Cancelled"
    assert not registry.cancel(job_id)
    assert not registry.cancel("unknown")


async def test_jobs_for_subscriber_lists_active_only(sessions, storage, channel, config, clock):
    gate = asyncio.Event()

    async def gated_sleep(_seconds):
        await gate.wait()

    pipeline = RelayPipeline(storage, channel, config, sleep=gated_sleep, clock=clock)
    registry = JobRegistry(sessions, pipeline, clock=clock)
    session_id = sessions.create("AK", "SK", "Tester")
    mine = registry.submit(_request(session_id, subscriber_id="me"))
    registry.submit(_request(session_id, subscriber_id=None), subscriber_id="other")

    assert registry.jobs_for_subscriber("me") == [mine]

    gate.set()
    await registry.get(mine).task
    assert registry.jobs_for_subscriber("me") == []
    await registry.shutdown()


async def test_shutdown_cancels_running_jobs(sessions, storage, channel, config, clock):
    async def never(_seconds):
        await asyncio.sleep(3600)

    pipeline = RelayPipeline(storage, channel, config, sleep=never, clock=clock)
    registry = JobRegistry(sessions, pipeline, clock=clock)
    session_id = sessions.create("AK", "SK", "Tester")
    job_id = registry.submit(_request(session_id))
    await asyncio.sleep(0)

    await registry.shutdown()

    assert registry.get(job_id).state is JobState.ERROR
    assert registry.get(job_id).cancel_requested


async def test_shutdown_flags_every_job_before_cancelling(registry, sessions):
    session_id = sessions.create("AK", "SK", "Tester")
    job_ids = [registry.submit(_request(session_id)) for _ in range(3)]

    await registry.shutdown()

    assert all(registry.get(job_id).cancel_requested for job_id in job_ids)
    assert all(registry.get(job_id).task.done() for job_id in job_ids)
