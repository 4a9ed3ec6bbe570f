"""
Unit tests for the on-demand HTTP trigger.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from telesync.orchestrator import ConfigurationMissing, PublishFailure
from telesync.trigger import create_app, parse_initial_load_flag


@pytest.fixture
def orchestrator():
    orch = MagicMock()
    orch.run_incremental = AsyncMock(return_value=7)
    orch.run_bulk_load = AsyncMock(return_value=1200)
    return orch


@pytest.fixture
def client(orchestrator):
    return TestClient(create_app(orchestrator))


class TestParseInitialLoadFlag:
    @pytest.mark.parametrize(
        "body",
        [
            b'{"initialLoad": true}',
            b'{"initialLoad": "true"}',
            b'{"initialLoad": "TRUE", "x": 1}',
            b'{"initialLoad": 1}',
            b'{"initialLoad": 2.5}',
        ],
    )
    def test_true(self, body):
        assert parse_initial_load_flag(body) is True

    @pytest.mark.parametrize(
        "body",
        [
            b"",
            b"   ",
            b"not json",
            b"[true]",
            b'{"initialLoad": false}',
            b'{"initialLoad": 0}',
            b'{"initialLoad": null}',
            b'{"initialLoad": "1"}',
            b'{"other": true}',
            b"\xff\xfe",
        ],
    )
    def test_false(self, body):
        assert parse_initial_load_flag(body) is False


class TestManualSync:
    def test_incremental_by_default(self, client, orchestrator):
        response = client.post("/api/sync")

        assert response.status_code == 200
        assert response.text == "Manual sync completed. Processed 7 new records."
        assert response.headers["content-type"].startswith("text/plain")
        orchestrator.run_incremental.assert_awaited_once_with(manual=True)
        orchestrator.run_bulk_load.assert_not_awaited()

    def test_invalid_json_falls_back_to_incremental(self, client, orchestrator):
        response = client.post("/api/sync", content=b"{oops")
        assert response.status_code == 200
        orchestrator.run_incremental.assert_awaited_once()

    def test_initial_load(self, client, orchestrator):
        response = client.post("/api/sync", json={"initialLoad": True})

        assert response.status_code == 200
        assert response.text == "Initial load completed successfully"
        orchestrator.run_bulk_load.assert_awaited_once()
        orchestrator.run_incremental.assert_not_awaited()

    def test_numeric_initial_load_flag(self, client, orchestrator):
        response = client.post("/api/sync", json={"initialLoad": 1})

        assert response.text == "Initial load completed successfully"
        orchestrator.run_bulk_load.assert_awaited_once()

    def test_bulk_failure_returns_500(self, client, orchestrator):
        orchestrator.run_bulk_load.side_effect = PublishFailure("Failed to push batch at offset 1000")

        response = client.post("/api/sync", json={"initialLoad": True})

        assert response.status_code == 500
        assert response.text == "Error: Failed to push batch at offset 1000"

    def test_missing_configuration_returns_500(self, client, orchestrator):
        orchestrator.run_bulk_load.side_effect = ConfigurationMissing("Missing configuration")

        response = client.post("/api/sync", json={"initialLoad": True})

        assert response.status_code == 500
        assert response.text.startswith("Error: Missing configuration")

    def test_get_not_allowed(self, client):
        assert client.get("/api/sync").status_code == 405


class TestHealthz:
    def test_ok_without_state_pool(self, client):
        response = client.get("/api/healthz")
        assert response.status_code == 200
        assert response.text == "ok"

    def test_unavailable_when_state_db_down(self, orchestrator):
        app = create_app(orchestrator, state_pool=MagicMock())
        with patch("telesync.trigger.health_check", new_callable=AsyncMock, return_value=False):
            response = TestClient(app).get("/api/healthz")
        assert response.status_code == 503
        assert response.text == "unavailable"
