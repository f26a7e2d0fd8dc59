"""
API endpoint tests
"""

import pytest
from datetime import datetime
from types import SimpleNamespace
from fastapi.testclient import TestClient
from api.main import app
from api.dependencies import get_db
from core.config import settings
from core.exceptions import AuthenticationError
from ingestion.resilience.circuit_breaker import CircuitBreaker
from models.base import RequestStatus, SyncPhase, TriggerSource
from schemas.progress import SyncProgress, SyncResult
from tests.conftest import FakeExtractor


class FakeSession:
    def __init__(self, fail=False):
        self.fail = fail

    async def execute(self, statement):
        if self.fail:
            raise ConnectionRefusedError("database down")
        return None


@pytest.fixture
def db_session():
    return FakeSession()


@pytest.fixture
def client(db_session, repository, registry, search_index, watchdog):
    """Test client wired to in-memory doubles (startup events are not run)"""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.state.repository = repository
    app.state.registry = registry
    app.state.indexer = search_index
    app.state.watchdog = watchdog
    app.state.worker = None

    yield TestClient(app)

    app.dependency_overrides.clear()


def archived_run(integration_id=1, status=RequestStatus.COMPLETED, **counts):
    now = datetime.utcnow()
    return SyncResult(
        integration_id=integration_id,
        integration_name="Acme Parts",
        status=status,
        phase=SyncPhase.COMPLETED if status == RequestStatus.COMPLETED else SyncPhase.FAILED,
        started_at=now,
        completed_at=now,
        duration_seconds=1.5,
        **counts
    )


class TestHealth:

    def test_healthy(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database_connected"] is True
        assert data["search_index_connected"] is True
        assert data["memory"]["safe"] is True
        assert data["worker_running"] is False
        assert "X-Request-ID" in response.headers

    def test_database_down_is_unhealthy(self, client, db_session):
        db_session.fail = True

        data = client.get("/health").json()

        assert data["status"] == "unhealthy"
        assert data["database_connected"] is False

    def test_open_breaker_is_degraded(self, client):
        breaker = CircuitBreaker("search-index", failure_threshold=1, cooldown=60.0)
        breaker.record_failure()
        app.state.worker = SimpleNamespace(breakers=[breaker])

        data = client.get("/health").json()

        assert data["status"] == "degraded"
        assert data["worker_running"] is True
        assert data["breakers"][0]["name"] == "search-index"
        assert data["breakers"][0]["state"] == "open"

    def test_reuses_incoming_request_id(self, client):
        response = client.get("/health", headers={"X-Request-ID": "abc123"})

        assert response.headers["X-Request-ID"] == "abc123"


class TestTriggerSync:

    def test_queues_request(self, client, repository):
        response = client.post("/integrations/1/sync")

        assert response.status_code == 202
        data = response.json()
        assert data["integration_id"] == 1
        assert data["status"] == "pending"
        assert data["triggered_by"] == "api"
        assert repository.requests[data["request_id"]].triggered_by == TriggerSource.API

    def test_second_trigger_conflicts(self, client):
        assert client.post("/integrations/1/sync").status_code == 202

        response = client.post("/integrations/1/sync")

        assert response.status_code == 409
        assert "already queued or running" in response.json()["detail"]

    def test_unknown_integration(self, client):
        assert client.post("/integrations/99/sync").status_code == 404

    def test_api_key_required_when_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "API_KEY", "s3cret")

        assert client.post("/integrations/1/sync").status_code == 401
        assert client.post("/integrations/1/sync", headers={"X-API-Key": "wrong"}).status_code == 401
        assert client.post("/integrations/1/sync", headers={"X-API-Key": "s3cret"}).status_code == 202


class TestSyncStatus:

    def test_live_progress_wins(self, client, registry, repository):
        repository.history.append(SimpleNamespace(
            result=archived_run(records_inserted=10), request_id=None, triggered_by=TriggerSource.ADMIN
        ))
        registry.publish(SyncProgress(integration_id=1, phase=SyncPhase.IMPORTING, records_inserted=4))

        data = client.get("/integrations/1/sync").json()

        assert data["source"] == "live"
        assert data["progress"]["recordsInserted"] == 4
        assert data["progress"]["phase"] == "importing"
        assert data["last_run"]["records_inserted"] == 10

    def test_mirrored_request_progress(self, client, repository):
        request = SimpleNamespace(
            id=1, integration_id=1, status=RequestStatus.PROCESSING, triggered_by=TriggerSource.API,
            progress={"integrationId": 1, "phase": "downloading", "filesTotal": 3},
            result=None, error=None, created_at=datetime.utcnow(), completed_at=None,
        )
        repository.requests[1] = request

        data = client.get("/integrations/1/sync").json()

        assert data["source"] == "request"
        assert data["progress"]["filesTotal"] == 3
        assert data["last_run"] is None

    def test_falls_back_to_history(self, client, repository):
        repository.history.append(SimpleNamespace(
            result=archived_run(status=RequestStatus.FAILED, error_message="All 2 files failed"),
            request_id=None,
            triggered_by=TriggerSource.SCHEDULE,
        ))

        data = client.get("/integrations/1/sync").json()

        assert data["source"] == "history"
        assert data["progress"] is None
        assert data["last_run"]["status"] == "failed"
        assert data["last_run"]["triggered_by"] == "schedule"
        assert data["last_run"]["error_message"] == "All 2 files failed"

    def test_never_synced(self, client):
        data = client.get("/integrations/1/sync").json()

        assert data["source"] == "none"
        assert data["last_run"] is None

    def test_unknown_integration(self, client):
        assert client.get("/integrations/99/sync").status_code == 404


class TestSyncHistory:

    def test_newest_first_with_limit(self, client, repository):
        for inserted in (1, 2, 3):
            repository.history.append(SimpleNamespace(
                result=archived_run(records_inserted=inserted), request_id=None, triggered_by=TriggerSource.ADMIN
            ))

        data = client.get("/integrations/1/history?limit=2").json()

        assert [run["records_inserted"] for run in data["runs"]] == [3, 2]
        assert data["runs"][0]["run_id"] == "3"

    def test_limit_is_validated(self, client):
        assert client.get("/integrations/1/history?limit=0").status_code == 422


class TestConnectionCheck:

    def test_reports_source_outcome(self, client, monkeypatch):
        monkeypatch.setattr(
            "ingestion.runner.build_extractor",
            lambda config, policy: FakeExtractor({"a.csv": [], "b.csv": []}),
        )

        response = client.post("/integrations/1/test-connection")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["files_found"] == 2

    def test_rejected_credentials_are_reported_in_body(self, client, monkeypatch):
        monkeypatch.setattr(
            "ingestion.runner.build_extractor",
            lambda config, policy: FakeExtractor({}, listing_error=AuthenticationError("530 Login incorrect")),
        )

        data = client.post("/integrations/1/test-connection").json()

        assert data["success"] is False
        assert data["error"] == "AuthenticationError"
        assert data["message"] == "530 Login incorrect"

    def test_unknown_integration(self, client):
        assert client.post("/integrations/99/test-connection").status_code == 404
