"""
HTTP tests for the v1 API.

The service container is assembled from fakes (in-memory vector store,
scripted LLM, stubbed Celery) with AsyncMock ledger/event store, and
installed before the TestClient starts the app.
"""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from eventsight.core.database.models import IngestionAttempt
from eventsight.core.models.llm_models import LLMConnectionStatus, LLMTaskType
from eventsight.core.query.intents import IntentDetector
from eventsight.core.query.router import QueryRouter
from eventsight.core.query.strategies import ResponseStrategies
from eventsight.core.queue.constants import EVENT_SYNC_QUEUE, EventSyncJob, PosthogEventsJob
from eventsight.dependencies import ServiceContainer, set_container
from eventsight.main import app


@pytest.fixture
def container(settings, make_llm, embeddings, vector_store, job_queue):
    llm = make_llm({LLMTaskType.QUICK: '{"intent": "help", "confidence": 0.95}'})
    database = AsyncMock()
    database.health_check.return_value = {"status": "healthy", "database": "sqlite"}
    pipeline = AsyncMock()
    pipeline.retry_failed.return_value = {"retryable": 2, "requeued": 1, "exhausted": 1}
    return ServiceContainer(
        settings=settings,
        database=database,
        event_store=AsyncMock(),
        ledger=AsyncMock(),
        llm=llm,
        embeddings=embeddings,
        vector_store=vector_store,
        job_queue=job_queue,
        pipeline=pipeline,
        router=QueryRouter(
            settings,
            llm,
            embeddings,
            IntentDetector(llm),
            ResponseStrategies(settings, llm, embeddings, vector_store, job_queue),
        ),
    )


@pytest.fixture
def client(container):
    set_container(container)
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        set_container(None)


class TestSystemEndpoints:
    """Test /system endpoints and startup."""

    def test_startup_creates_collections(self, client, vector_store, settings):
        """Test startup ensures every collection exists."""
        assert set(vector_store.collections) == set(settings.collection_names)

    def test_root(self, client):
        """Test root endpoint."""
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "running"

    def test_health(self, client):
        """Test health reports database, vector store and LLM."""
        response = client.get("/api/v1/system/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"]["status"] == "healthy"
        assert data["vector_store"]["status"] == "healthy"
        assert data["llm_available"] is True

    def test_health_degraded(self, client, container):
        """Test an unhealthy database degrades the status."""
        container.database.health_check.return_value = {"status": "unhealthy", "error": "refused"}

        assert client.get("/api/v1/system/health").json()["status"] == "degraded"

    def test_llm_status(self, client, container):
        """Test the LLM connection probe is passed through."""
        container.llm = MagicMock()
        container.llm.test_connection = AsyncMock(
            return_value=LLMConnectionStatus(connected=False, error="LLM client not initialized")
        )

        response = client.get("/api/v1/system/llm/status")

        assert response.status_code == 200
        assert response.json()["connected"] is False

    def test_collection_count(self, client):
        """Test counting an existing collection."""
        response = client.get("/api/v1/system/collections/posthog_events/count")

        assert response.status_code == 200
        assert response.json() == {"collection": "posthog_events", "count": 0}

    def test_unknown_collection_is_404(self, client):
        """Test the error envelope for a missing collection."""
        response = client.get("/api/v1/system/collections/nope/count")

        assert response.status_code == 404
        body = response.json()
        assert body["error"] == "HTTP 404"
        assert "nope" in body["detail"]


class TestQueryEndpoint:
    """Test POST /query."""

    def test_buffered_answer(self, client):
        """Test a JSON answer for a help question."""
        response = client.post("/api/v1/query", json={"question": "What can you do?"})

        assert response.status_code == 200
        data = response.json()
        assert data["intent"] == "help"
        assert data["cached"] is False
        assert "Count users" in data["answer"]

    def test_streamed_answer(self, client):
        """Test stream=true returns the answer as plain text."""
        response = client.post("/api/v1/query", json={"question": "What can you do?", "stream": True})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "Count users" in response.text

    def test_question_too_long_is_400(self, client, settings):
        """Test the pre-flight ceiling maps to 400 with the error envelope."""
        response = client.post(
            "/api/v1/query", json={"question": "x" * (settings.max_question_chars + 1)}
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Prompt Too Long"

    def test_empty_question_is_422(self, client):
        """Test request validation."""
        assert client.post("/api/v1/query", json={"question": ""}).status_code == 422


class TestIngestionEndpoints:
    """Test /ingestion endpoints."""

    def test_enqueue_job(self, client, celery_stub):
        """Test a discovery sweep is enqueued with the requested batch size."""
        response = client.post("/api/v1/ingestion/jobs", json={"batchSize": 25})

        assert response.status_code == 202
        assert response.json()["batch_size"] == 25
        assert response.json()["job_id"] == "job-1"
        call = celery_stub.send_task.call_args
        assert call.args[0] == PosthogEventsJob.FIND_USERS
        assert call.kwargs["kwargs"] == {"batch_size": 25}

    def test_enqueue_job_default_batch(self, client):
        """Test the default batch size."""
        response = client.post("/api/v1/ingestion/jobs", json={})
        assert response.json()["batch_size"] == 3

    def test_enqueue_job_rejects_zero(self, client):
        """Test batch size bounds."""
        assert client.post("/api/v1/ingestion/jobs", json={"batch_size": 0}).status_code == 422

    def test_enqueue_raw_sync(self, client, celery_stub):
        """Test the raw sync goes to its own queue."""
        response = client.post("/api/v1/ingestion/raw-sync", json={})

        assert response.status_code == 202
        call = celery_stub.send_task.call_args
        assert call.args[0] == EventSyncJob.SYNC_EVENTS
        assert call.kwargs["queue"] == EVENT_SYNC_QUEUE
        assert call.kwargs["kwargs"] == {"batch_size": 100}

    def test_retry_sweep(self, client):
        """Test the retry sweep summary."""
        response = client.post("/api/v1/ingestion/retry")

        assert response.status_code == 200
        assert response.json() == {"retryable": 2, "requeued": 1, "exhausted": 1}

    def test_failed_attempts_for_person(self, client, container):
        """Test failed attempts are listed from the ledger."""
        container.ledger.get_failed_attempts_by_person.return_value = [
            IngestionAttempt(
                id=uuid.uuid4(),
                person_id="p-1",
                job_type="process_user",
                status="failed",
                failure_reason="qdrant_upsert_failed",
                error_message="Qdrant upsert failed: timeout",
                retry_count=1,
            )
        ]

        response = client.get("/api/v1/ingestion/attempts/failed/p-1")

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["attempts"][0]["failure_reason"] == "qdrant_upsert_failed"
        container.ledger.get_failed_attempts_by_person.assert_awaited_once_with("p-1")

    def test_recent_attempts_limit(self, client, container):
        """Test the limit query parameter reaches the ledger."""
        container.ledger.get_recent_attempts.return_value = []

        response = client.get("/api/v1/ingestion/attempts/recent?limit=5")

        assert response.json() == {"attempts": [], "total": 0}
        container.ledger.get_recent_attempts.assert_awaited_once_with(5)

    def test_user_stats(self, client, container):
        """Test user ingestion stats are passed through."""
        stats = {"ingested_users": 4, "uningested_users": 2, "total_events": 30, "ingested_events": 20}
        container.event_store.get_user_ingestion_stats.return_value = stats

        assert client.get("/api/v1/ingestion/users/stats").json() == stats
