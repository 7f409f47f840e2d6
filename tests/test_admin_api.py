"""Tests for the retry queue admin endpoints.

Tests cover:
- Listing with status filter and pagination
- Per-status statistics
- Worker state
- Reset and delete (404 for unknown jobs, 409 for conflicting reset,
  503 for store failures), including reset against a real async session
- On-demand drain (409 when busy, 503 without a worker)
"""

import uuid
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from pulseguard.api.dependencies import get_db_session, get_worker
from pulseguard.db.models.base import Base, RetryJobStatus
from pulseguard.db.models.retry_jobs import RetryJob
from pulseguard.worker.main import DrainResult, RetryWorker
from tests.factories import create_job, result_returning


@pytest.fixture
def worker(worker_settings, retry_settings) -> RetryWorker:
    return RetryWorker(MagicMock(), MagicMock(), worker_settings, retry_settings)


@pytest.fixture
def client(app, mock_session) -> TestClient:
    async def override_session():
        yield mock_session

    app.dependency_overrides[get_db_session] = override_session
    app.dependency_overrides[get_worker] = lambda: None
    return TestClient(app)


def attach(app, worker):
    app.dependency_overrides[get_worker] = lambda: worker


class TestListJobs:
    """Tests for GET /api/admin/retry-queue."""

    def test_list_with_filter(self, client, mock_session):
        jobs = [
            create_job(status=RetryJobStatus.FAILED, attempts=5, last_error="exhausted"),
            create_job(status=RetryJobStatus.FAILED, attempts=5),
        ]
        mock_session.execute.side_effect = [result_returning(12), result_returning(rows=jobs)]

        response = client.get(
            "/api/admin/retry-queue", params={"status": "failed", "page": 2, "page_size": 2}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 12
        assert body["page"] == 2
        assert body["page_size"] == 2
        assert [item["job_id"] for item in body["items"]] == [str(j.job_id) for j in jobs]
        assert body["items"][0]["status"] == "failed"
        assert body["items"][0]["last_error"] == "exhausted"

    def test_invalid_status(self, client):
        response = client.get("/api/admin/retry-queue", params={"status": "bogus"})
        assert response.status_code == 422

    def test_page_size_bounds(self, client):
        response = client.get("/api/admin/retry-queue", params={"page_size": 500})
        assert response.status_code == 422


class TestStats:
    """Tests for GET /api/admin/retry-queue/stats."""

    def test_counts(self, client, mock_session):
        mock_session.execute.return_value = result_returning(
            rows=[(RetryJobStatus.PENDING, 3), (RetryJobStatus.COMPLETED, 10)]
        )

        response = client.get("/api/admin/retry-queue/stats")

        assert response.status_code == 200
        assert response.json() == {
            "pending": 3,
            "processing": 0,
            "completed": 10,
            "failed": 0,
            "total": 13,
        }


class TestWorkerState:
    """Tests for GET /api/admin/retry-queue/worker."""

    def test_no_worker(self, client):
        response = client.get("/api/admin/retry-queue/worker")

        assert response.status_code == 200
        assert response.json()["attached"] is False

    def test_worker_snapshot(self, app, client, worker):
        worker.state.passes_run = 4
        worker.state.jobs_failed = 2
        attach(app, worker)

        body = client.get("/api/admin/retry-queue/worker").json()

        assert body["attached"] is True
        assert body["running"] is False
        assert body["worker_id"] == "worker-test"
        assert body["passes_run"] == 4
        assert body["jobs_failed"] == 2
        assert body["is_draining"] is False


class TestResetJob:
    """Tests for POST /api/admin/retry-queue/{job_id}/reset."""

    def test_reset(self, client, mock_session):
        job = create_job(status=RetryJobStatus.FAILED, attempts=5)
        mock_session.execute.return_value = result_returning(job)

        response = client.post(f"/api/admin/retry-queue/{job.job_id}/reset")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "pending"
        assert body["attempts"] == 0
        mock_session.commit.assert_awaited_once()

    def test_unknown_job(self, client):
        response = client.post(f"/api/admin/retry-queue/{uuid.uuid4()}/reset")

        assert response.status_code == 404

    def test_conflicting_active_job(self, client, mock_session):
        job = create_job(status=RetryJobStatus.FAILED, attempts=5)
        mock_session.execute.return_value = result_returning(job)
        mock_session.flush.side_effect = IntegrityError("UPDATE", {}, Exception("duplicate"))

        response = client.post(f"/api/admin/retry-queue/{job.job_id}/reset")

        assert response.status_code == 409
        mock_session.commit.assert_not_awaited()

    def test_store_failure(self, client, mock_session):
        job = create_job(status=RetryJobStatus.FAILED, attempts=5)
        mock_session.execute.return_value = result_returning(job)
        mock_session.flush.side_effect = SQLAlchemyError("connection lost")

        response = client.post(f"/api/admin/retry-queue/{job.job_id}/reset")

        assert response.status_code == 503
        assert response.json()["error"] == "storage_unavailable"


class TestDeleteJob:
    """Tests for DELETE /api/admin/retry-queue/{job_id}."""

    def test_delete(self, client, mock_session):
        job_id = uuid.uuid4()
        mock_session.execute.return_value = result_returning(job_id)

        response = client.delete(f"/api/admin/retry-queue/{job_id}")

        assert response.status_code == 204
        mock_session.commit.assert_awaited_once()

    def test_unknown_job(self, client, mock_session):
        response = client.delete(f"/api/admin/retry-queue/{uuid.uuid4()}")

        assert response.status_code == 404
        mock_session.commit.assert_not_awaited()


class TestProcessNow:
    """Tests for POST /api/admin/retry-queue/process."""

    def test_no_worker(self, client):
        response = client.post("/api/admin/retry-queue/process")

        assert response.status_code == 503

    def test_drain(self, app, client, worker):
        worker.drain_once = AsyncMock(return_value=DrainResult(processed=2, succeeded=1, failed=1))
        attach(app, worker)

        response = client.post("/api/admin/retry-queue/process", params={"limit": 5})

        assert response.status_code == 200
        assert response.json() == {"processed": 2, "succeeded": 1, "failed": 1, "skipped": 0}
        worker.drain_once.assert_awaited_once_with(5)

    def test_pass_already_running(self, app, client, worker):
        worker.state.is_draining = True
        attach(app, worker)

        response = client.post("/api/admin/retry-queue/process")

        assert response.status_code == 409
        assert response.json()["message"] == "A drain pass is already running"

    def test_invalid_limit(self, app, client, worker):
        attach(app, worker)

        response = client.post("/api/admin/retry-queue/process", params={"limit": 0})

        assert response.status_code == 422


@pytest.fixture
async def sqlite_sessions():
    """Real async sessions over an in-memory SQLite retry job table."""
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _record):
        # SQLAlchemy emits BEGIN itself so SAVEPOINTs nest correctly
        dbapi_connection.isolation_level = None
        dbapi_connection.create_function(
            "now", 0, lambda: datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S.%f")
        )
        dbapi_connection.create_function("gen_random_uuid", 0, lambda: uuid.uuid4().hex)

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, tables=[RetryJob.__table__])

    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


class TestResetWithDatabase:
    """Reset through the API against a real async session."""

    @pytest.mark.asyncio
    async def test_reset_failed_job(self, app, api_client, sqlite_sessions):
        job = create_job(status=RetryJobStatus.FAILED, attempts=5, last_error="exhausted")
        async with sqlite_sessions() as session:
            session.add(job)
            await session.commit()

        async def override_session():
            async with sqlite_sessions() as session:
                yield session

        app.dependency_overrides[get_db_session] = override_session

        response = await api_client.post(f"/api/admin/retry-queue/{job.job_id}/reset")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "pending"
        assert body["attempts"] == 0
        assert body["last_error"] == "exhausted"
        assert body["updated_at"] is not None

        async with sqlite_sessions() as session:
            stored = await session.get(RetryJob, job.job_id)
            assert stored.status == RetryJobStatus.PENDING
            assert stored.attempts == 0
