from unittest.mock import MagicMock

import pytest

from mediamirror.db.database import get_db_session
from mediamirror.db.models import SyncRun
from mediamirror.main import create_app
from mediamirror.sync.models import MediaKind, SourceLibrary
from mediamirror.sync.status import RunStatus, run_registry


@pytest.fixture(autouse=True)
def reset_registry():
    """Clear the process-wide registry around each test."""
    run_registry._runs.clear()
    run_registry._active = None
    run_registry._latest = None
    yield
    run_registry._runs.clear()
    run_registry._active = None
    run_registry._latest = None


@pytest.fixture
def configured_env(monkeypatch):
    monkeypatch.setenv("PLEX_URL", "http://plex.local:32400")
    monkeypatch.setenv("PLEX_TOKEN", "t")
    monkeypatch.setenv("JELLYFIN_URL", "http://jellyfin.local:8096")
    monkeypatch.setenv("JELLYFIN_API_KEY", "k")
    monkeypatch.delenv("SELECTED_LIBRARIES", raising=False)
    return monkeypatch


@pytest.fixture
def client():
    app = create_app()
    app.testing = True
    return app.test_client()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"


class TestTriggerSync:
    def test_starts_dry_run_from_query(self, client, mocker):
        engine = MagicMock()
        engine.start_run.return_value = RunStatus("abc123", dry_run=True)
        mocker.patch("mediamirror.web.routes.api.create_sync_engine_from_config", return_value=engine)

        response = client.post("/api/sync?dry_run=1")

        assert response.status_code == 202
        assert response.get_json()["run_id"] == "abc123"
        engine.start_run.assert_called_once_with(dry_run=True)

    def test_dry_run_endpoint(self, client, mocker):
        engine = MagicMock()
        engine.start_run.return_value = RunStatus("abc123", dry_run=True)
        mocker.patch("mediamirror.web.routes.api.create_sync_engine_from_config", return_value=engine)

        assert client.post("/api/sync/dry-run").status_code == 202
        engine.start_run.assert_called_once_with(dry_run=True)

    def test_json_body_flag(self, client, mocker):
        engine = MagicMock()
        engine.start_run.return_value = RunStatus("abc123")
        mocker.patch("mediamirror.web.routes.api.create_sync_engine_from_config", return_value=engine)

        client.post("/api/sync", json={"dry_run": False})

        engine.start_run.assert_called_once_with(dry_run=False)

    def test_missing_configuration_is_400(self, client, monkeypatch):
        for name in ("PLEX_URL", "PLEX_TOKEN", "JELLYFIN_URL", "JELLYFIN_API_KEY"):
            monkeypatch.delenv(name, raising=False)

        response = client.post("/api/sync")

        assert response.status_code == 400
        assert "Missing configuration" in response.get_json()["error"]

    def test_busy_is_409(self, client, configured_env):
        run_registry.acquire(RunStatus("busy01"))

        response = client.post("/api/sync")

        assert response.status_code == 409
        assert response.get_json()["run_id"] == "busy01"


class TestRunStatus:
    def test_poll_active_run(self, client):
        status = RunStatus("r1")
        run_registry.acquire(status)

        data = client.get("/api/sync/r1").get_json()

        assert data["id"] == "r1"
        assert data["is_complete"] is False
        assert client.get("/api/status").get_json()["id"] == "r1"

    def test_unknown_run_is_404(self, client):
        assert client.get("/api/sync/missing").status_code == 404

    def test_persisted_run_found(self, client):
        with get_db_session() as session:
            session.add(SyncRun(run_id="old1", status="completed", items_matched=3))

        data = client.get("/api/sync/old1").get_json()

        assert data["status"] == "completed"
        assert data["items_matched"] == 3

    def test_idle_status(self, client):
        data = client.get("/api/status").get_json()
        assert data["state"] == "idle"
        assert data["last_run"] is None

    def test_cancel(self, client):
        status = RunStatus("r1")
        run_registry.acquire(status)

        response = client.post("/api/sync/r1/cancel")

        assert response.status_code == 202
        assert status.cancel_requested

    def test_cancel_finished_run_is_409(self, client):
        status = RunStatus("r1")
        run_registry.acquire(status)
        status.complete()

        assert client.post("/api/sync/r1/cancel").status_code == 409


class TestHistory:
    def test_runs_newest_first(self, client):
        with get_db_session() as session:
            session.add(SyncRun(run_id="a"))
            session.add(SyncRun(run_id="b"))

        runs = client.get("/api/runs?limit=5").get_json()

        assert {r["run_id"] for r in runs} == {"a", "b"}

    def test_matches_empty(self, client):
        assert client.get("/api/matches?outcome=unmatched").get_json() == []


class TestLibraries:
    def test_list_with_selection(self, client, configured_env, mocker):
        configured_env.setenv("SELECTED_LIBRARIES", "1")
        mocker.patch(
            "mediamirror.web.routes.api.PlexClient.list_libraries",
            return_value=[
                SourceLibrary(id="1", title="Movies", kind=MediaKind.MOVIE),
                SourceLibrary(id="2", title="TV", kind=MediaKind.SHOW),
            ],
        )

        data = client.get("/api/libraries").get_json()

        assert [(lib["id"], lib["is_selected"]) for lib in data] == [("1", True), ("2", False)]

    def test_list_requires_plex(self, client, monkeypatch):
        monkeypatch.delenv("PLEX_URL", raising=False)
        assert client.get("/api/libraries").status_code == 400

    def test_store_selection(self, client, configured_env, mocker):
        response = client.put("/api/libraries", json={"libraries": ["2"]})
        assert response.status_code == 200

        mocker.patch(
            "mediamirror.web.routes.api.PlexClient.list_libraries",
            return_value=[SourceLibrary(id="2", title="TV", kind=MediaKind.SHOW)],
        )
        data = client.get("/api/libraries").get_json()
        assert data[0]["is_selected"] is True

    def test_invalid_selection(self, client):
        assert client.put("/api/libraries", json={"libraries": "2"}).status_code == 400
