"""
Tests for the job status reader.
"""

import pytest

from conftest import FakeImageProvider, FakePollingProvider, FakeStoryGenerator, make_processing_job
from genbroker.errors import NotFoundError, ProviderUnavailableError, UnauthorisedError
from genbroker.jobs import GenerationJob, InMemoryJobStore, JobKind, JobStatus
from genbroker.providers import RemoteJobStatus, RemoteState
from genbroker.status import DEFAULT_ESTIMATED_SECONDS, JobStatusReader, estimate_progress


@pytest.fixture
def jobs():
    return InMemoryJobStore()


class TestEstimateProgress:
    def test_proportional(self):
        assert estimate_progress(15, 30) == 50

    def test_capped_below_completion(self):
        assert estimate_progress(600, 30) == 95

    def test_never_negative(self):
        assert estimate_progress(-5, 30) == 0

    def test_zero_estimate(self):
        assert estimate_progress(10, 0) == 95


class TestGetStatus:
    async def test_missing_job(self, jobs, guest):
        reader = JobStatusReader(jobs)

        with pytest.raises(NotFoundError):
            await reader.get_status("nope", guest)

    async def test_other_owner(self, jobs, guest, user):
        job = await jobs.create(GenerationJob(owner_key=user.key, kind=JobKind.IMAGE))
        reader = JobStatusReader(jobs)

        with pytest.raises(UnauthorisedError):
            await reader.get_status(job.job_id, guest)

    async def test_pending(self, jobs, guest):
        job = await jobs.create(GenerationJob(owner_key=guest.key, kind=JobKind.IMAGE, provider="replicate"))

        view = await JobStatusReader(jobs).get_status(job.job_id, guest)

        assert view.status == "pending"
        assert view.progress is None
        assert view.result is None

    async def test_completed_returns_result(self, jobs, guest):
        job = await make_processing_job(jobs, guest)
        await jobs.update(job.complete({"imageUrl": "memory://blobs/a.png"}))

        view = await JobStatusReader(jobs).get_status(job.job_id, guest)

        assert view.status == "completed"
        assert view.result == {"imageUrl": "memory://blobs/a.png"}
        assert view.progress is None
        assert view.completed_at is not None

    async def test_failed_returns_error(self, jobs, guest):
        job = await make_processing_job(jobs, guest)
        await jobs.update(job.fail("Generation timed out", "ERR_1005"))

        view = await JobStatusReader(jobs).get_status(job.job_id, guest)

        assert view.status == "failed"
        assert view.error == "Generation timed out"

    async def test_to_dict(self, jobs, guest):
        job = await make_processing_job(jobs, guest)
        await jobs.update(job.complete({"title": "A Story"}))

        data = (await JobStatusReader(jobs).get_status(job.job_id, guest)).to_dict()

        assert data["jobId"] == job.job_id
        assert data["status"] == "completed"
        assert data["kind"] == "IMAGE"
        assert data["result"] == {"title": "A Story"}
        assert "progress" not in data
        assert "error" not in data


class TestProgress:
    async def test_local_estimate(self, jobs, guest, clock):
        job = await make_processing_job(jobs, guest, provider="openai", started_at=clock.now - 10)
        reader = JobStatusReader(jobs, image_providers={"openai": FakeImageProvider("openai", estimated_seconds=20)}, clock=clock)

        view = await reader.get_status(job.job_id, guest)

        assert view.status == "processing"
        assert view.progress == 50

    async def test_unknown_provider_uses_default_estimate(self, jobs, guest, clock):
        job = await make_processing_job(jobs, guest, provider="mystery", started_at=clock.now - 9)
        reader = JobStatusReader(jobs, clock=clock)

        view = await reader.get_status(job.job_id, guest)

        assert view.progress == round(9 / DEFAULT_ESTIMATED_SECONDS * 100)

    async def test_story_uses_generator_estimate(self, jobs, guest, clock):
        job = await make_processing_job(jobs, guest, provider="openai", kind=JobKind.STORY, started_at=clock.now - 5)
        reader = JobStatusReader(jobs, story_generator=FakeStoryGenerator(), clock=clock)

        view = await reader.get_status(job.job_id, guest)

        assert view.progress == 25

    async def test_remote_progress_preferred(self, jobs, guest, clock):
        provider = FakePollingProvider("replicate")
        provider.remote_status = RemoteJobStatus(state=RemoteState.PROCESSING, progress=70)
        job = await make_processing_job(jobs, guest, started_at=clock.now - 1, provider_job_id="pred_1")
        reader = JobStatusReader(jobs, image_providers={"replicate": provider}, clock=clock)

        view = await reader.get_status(job.job_id, guest)

        assert view.progress == 70
        assert provider.status_calls == ["pred_1"]

    async def test_remote_terminal_reports_cap(self, jobs, guest, clock):
        provider = FakePollingProvider("replicate")
        provider.remote_status = RemoteJobStatus(state=RemoteState.COMPLETED)
        job = await make_processing_job(jobs, guest, started_at=clock.now - 1, provider_job_id="pred_1")
        reader = JobStatusReader(jobs, image_providers={"replicate": provider}, clock=clock)

        view = await reader.get_status(job.job_id, guest)

        assert view.status == "processing"
        assert view.progress == 95

    async def test_remote_error_falls_back_to_estimate(self, jobs, guest, clock):
        provider = FakePollingProvider("replicate", estimated_seconds=30)
        provider.status_error = ProviderUnavailableError()
        job = await make_processing_job(jobs, guest, started_at=clock.now - 15, provider_job_id="pred_1")
        reader = JobStatusReader(jobs, image_providers={"replicate": provider}, clock=clock)

        view = await reader.get_status(job.job_id, guest)

        assert view.progress == 50

    async def test_no_remote_id_skips_remote(self, jobs, guest, clock):
        provider = FakePollingProvider("replicate", estimated_seconds=30)
        job = await make_processing_job(jobs, guest, started_at=clock.now - 3)
        reader = JobStatusReader(jobs, image_providers={"replicate": provider}, clock=clock)

        view = await reader.get_status(job.job_id, guest)

        assert view.progress == 10
        assert provider.status_calls == []

    async def test_reader_never_writes(self, jobs, guest, clock):
        job = await make_processing_job(jobs, guest, started_at=clock.now - 600)
        reader = JobStatusReader(jobs, clock=clock)

        await reader.get_status(job.job_id, guest)

        stored = await jobs.get(job.job_id)
        assert stored == job
        assert stored.status == JobStatus.PROCESSING
