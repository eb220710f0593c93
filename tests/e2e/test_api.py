"""
End-to-end tests for the v1 API.

The metadata store, checkpoint store and job queue are replaced with
in-memory fakes through FastAPI dependency overrides, so no database,
Redis or broker is needed. Image store routes run against a LocalStorage
in a temporary directory.
"""

import pytest
from httpx import ASGITransport, AsyncClient

from listing_pipeline.api.dependencies import get_checkpoint_store, get_job_queue, get_metadata_store
from listing_pipeline.core.config import settings
from listing_pipeline.core.exceptions import InfrastructureError
from listing_pipeline.core.storage import LocalStorage, StorageFactory
from listing_pipeline.main import app
from listing_pipeline.modules.listings.models import JobStatus, PhotoStatus, PreparationStatus
from listing_pipeline.pipeline.schemas import JobPriority, ProcessingCheckpoint, Strategy
from tests.fakes import RecordingJobQueue


@pytest.fixture
def queue():
    return RecordingJobQueue()


@pytest.fixture
def api(store, checkpoints, queue):
    app.dependency_overrides[get_metadata_store] = lambda: store
    app.dependency_overrides[get_checkpoint_store] = lambda: checkpoints
    app.dependency_overrides[get_job_queue] = lambda: queue
    yield app
    app.dependency_overrides.clear()


def client_for(api) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=api), base_url="http://test")


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, api):
        async with client_for(api) as client:
            response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_metrics(self, api):
        async with client_for(api) as client:
            response = await client.get("/api/v1/metrics")

        assert response.status_code == 200
        assert "listing_jobs_total" in response.text


class TestPrepare:

    @pytest.mark.asyncio
    async def test_prepare_enqueues_job(self, api, store, queue):
        # Act
        async with client_for(api) as client:
            response = await client.post("/api/v1/listings/listing-1/prepare", json={"priority": "rush"})

        # Assert
        assert response.status_code == 202
        data = response.json()
        assert data["status"] == JobStatus.QUEUED.value
        assert data["priority"] == "rush"
        assert store.listings["listing-1"].preparation_status == PreparationStatus.PREPARING.value
        message = queue.messages[0]
        assert message.job_id == data["job_id"]
        assert message.owner_id == "owner-1"
        assert message.priority == JobPriority.RUSH

    @pytest.mark.asyncio
    async def test_prepare_without_body_uses_standard_priority(self, api, queue):
        async with client_for(api) as client:
            response = await client.post("/api/v1/listings/listing-1/prepare")

        assert response.status_code == 202
        assert queue.messages[0].priority == JobPriority.STANDARD

    @pytest.mark.asyncio
    async def test_second_prepare_conflicts(self, api, queue):
        # Act
        async with client_for(api) as client:
            first = await client.post("/api/v1/listings/listing-1/prepare")
            second = await client.post("/api/v1/listings/listing-1/prepare")

        # Assert
        assert second.status_code == 409
        assert second.json()["details"]["active_job_id"] == first.json()["job_id"]
        assert len(queue.messages) == 1

    @pytest.mark.asyncio
    async def test_unknown_listing_is_404(self, api):
        async with client_for(api) as client:
            response = await client.post("/api/v1/listings/missing/prepare")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_enqueue_failure_fails_job(self, api, store, queue):
        # Arrange
        queue.error = InfrastructureError("broker unreachable", component="job_queue")

        # Act
        async with client_for(api) as client:
            response = await client.post("/api/v1/listings/listing-1/prepare")

        # Assert
        assert response.status_code == 503
        job = next(iter(store.jobs.values()))
        assert job.status == JobStatus.FAILED.value
        assert job.error_kind == "infrastructure"
        assert store.listings["listing-1"].preparation_status == PreparationStatus.FAILED.value


class TestStatus:

    @pytest.mark.asyncio
    async def test_listing_status_counts_photos(self, api, store):
        # Arrange
        store.add_photo("p1", upload_order=0)
        store.add_photo("p2", upload_order=1).status = PhotoStatus.FAILED.value
        job = store.add_job(status=JobStatus.PROCESSING.value)

        # Act
        async with client_for(api) as client:
            response = await client.get("/api/v1/listings/listing-1/status")

        # Assert
        assert response.status_code == 200
        data = response.json()
        assert data["active_job_id"] == job.id
        assert data["photo_counts"] == {"pending": 1, "failed": 1}

    @pytest.mark.asyncio
    async def test_job_status_includes_photos(self, api, store):
        # Arrange
        store.add_photo("p1").assigned_tools = ["declutter"]
        store.add_job()

        # Act
        async with client_for(api) as client:
            response = await client.get("/api/v1/jobs/job-1")

        # Assert
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == JobStatus.QUEUED.value
        assert "owner_id" not in data
        assert data["photos"][0]["assigned_tools"] == ["declutter"]

    @pytest.mark.asyncio
    async def test_job_status_reports_quality_review(self, api, store):
        photo = store.add_photo("p1")
        photo.quality_score = 0.42
        photo.needs_review = True
        store.add_job()

        async with client_for(api) as client:
            response = await client.get("/api/v1/jobs/job-1")

        photo_data = response.json()["photos"][0]
        assert photo_data["needs_review"] is True
        assert photo_data["quality_score"] == pytest.approx(0.42)

    @pytest.mark.asyncio
    async def test_unknown_job_is_404(self, api):
        async with client_for(api) as client:
            response = await client.get("/api/v1/jobs/missing")

        assert response.status_code == 404


class TestCheckpointAudit:

    @pytest.mark.asyncio
    async def test_checkpoint_is_returned(self, api, store, checkpoints, monkeypatch):
        # Arrange
        monkeypatch.setattr(settings, "WORKER_ADMIN_KEY", None)
        store.add_job(status=JobStatus.PROCESSING.value)
        strategy = Strategy(listing_id="listing-1", assignments={"p1": ["declutter"]}, hero_photo_id="p1")
        await checkpoints.save(ProcessingCheckpoint(job_id="job-1", strategy=strategy, completed_photo_ids=["p1"]))

        # Act
        async with client_for(api) as client:
            response = await client.get("/api/v1/jobs/job-1/checkpoint")

        # Assert
        assert response.status_code == 200
        data = response.json()
        assert data["stage"] == "processing"
        assert data["completed_photo_ids"] == ["p1"]
        assert data["strategy"]["hero_photo_id"] == "p1"

    @pytest.mark.asyncio
    async def test_admin_key_is_enforced(self, api, store, monkeypatch):
        # Arrange
        monkeypatch.setattr(settings, "WORKER_ADMIN_KEY", "secret")
        store.add_job()

        # Act
        async with client_for(api) as client:
            denied = await client.get("/api/v1/jobs/job-1/checkpoint")
            allowed = await client.get("/api/v1/jobs/job-1/checkpoint", headers={"x-admin-key": "secret"})

        # Assert
        assert denied.status_code == 401
        assert allowed.status_code == 200
        assert allowed.json()["stage"] is None


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_queued_job_fails_it(self, api, store, checkpoints):
        store.add_job()

        async with client_for(api) as client:
            response = await client.delete("/api/v1/jobs/job-1")

        assert response.status_code == 202
        assert response.json()["status"] == JobStatus.FAILED.value
        assert store.jobs["job-1"].error_kind == "cancelled"
        assert store.listings["listing-1"].preparation_status == PreparationStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_cancel_processing_job_sets_flag(self, api, store, checkpoints):
        store.add_job(status=JobStatus.PROCESSING.value)

        async with client_for(api) as client:
            response = await client.delete("/api/v1/jobs/job-1")

        assert response.status_code == 202
        assert response.json()["status"] == JobStatus.PROCESSING.value
        assert await checkpoints.is_cancelled("job-1")

    @pytest.mark.asyncio
    async def test_cancel_terminal_job_conflicts(self, api, store):
        store.add_job(status=JobStatus.COMPLETED.value)

        async with client_for(api) as client:
            response = await client.delete("/api/v1/jobs/job-1")

        assert response.status_code == 409


class TestImageStore:

    @pytest.fixture
    def local_storage(self, tmp_path):
        storage = LocalStorage(
            base_path=str(tmp_path / "storage"),
            public_base_url="http://test",
            signing_secret="api-secret"
        )
        StorageFactory._instance = storage
        return storage

    @pytest.mark.asyncio
    async def test_signed_url_serves_the_image(self, api, local_storage):
        await local_storage.put("enhanced/p1/declutter-1.jpg", b"jpeg-bytes")
        url = await local_storage.get_url("enhanced/p1/declutter-1.jpg", expires_in=60)

        async with client_for(api) as client:
            response = await client.get(url)

        assert response.status_code == 200
        assert response.content == b"jpeg-bytes"

    @pytest.mark.asyncio
    async def test_unsigned_or_tampered_url_is_forbidden(self, api, local_storage):
        await local_storage.put("raw/p1.jpg", b"raw")
        url = await local_storage.get_url("raw/p1.jpg", expires_in=60)

        async with client_for(api) as client:
            unsigned = await client.get("/static/storage/raw/p1.jpg")
            tampered = await client.get(url.replace("sig=", "sig=0"))

        assert unsigned.status_code == 403
        assert tampered.status_code == 403

    @pytest.mark.asyncio
    async def test_expired_url_is_forbidden(self, api, local_storage):
        await local_storage.put("raw/p1.jpg", b"raw")
        url = await local_storage.get_url("raw/p1.jpg", expires_in=-10)

        async with client_for(api) as client:
            response = await client.get(url)

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_deleted_image_is_not_found(self, api, local_storage):
        await local_storage.put("raw/p1.jpg", b"raw")
        url = await local_storage.get_url("raw/p1.jpg", expires_in=60)
        await local_storage.delete("raw/p1.jpg")

        async with client_for(api) as client:
            response = await client.get(url)

        assert response.status_code == 404
