"""
API endpoint tests.

Tests cover:
- POST /commands, GET /commands/{id} - submission and record access
- GET /commands/{id}/rows, /export, /watch - result retrieval
- DELETE /commands/{id}, DELETE /channels - cleanup policies
- POST/GET /templates, /targets - registry administration
- POST /api/pull/client-data - bulk pull
- GET /healthz, /health

The real application runs against the in-memory store backend. Agent work
is simulated by driving an ExecutorBinding on the app's own event loop.
"""

import json
import os
from typing import Any, Dict, List

import pytest
from fastapi.testclient import TestClient

os.environ["STORE_BACKEND"] = "memory"
os.environ["WATCH_MODE"] = "pull"
os.environ["WATCH_POLL_INTERVAL"] = "0.01"
os.environ["WATCH_TIMEOUT"] = "2"
os.environ["API_KEYS"] = "control-plane:test-key"
os.environ["PULL_API_KEY"] = "pull-key"

import sse_starlette.sse as sse

from queryrelay import main
from queryrelay.errors import DocumentExists
from queryrelay.modules.executor import ExecutorBinding, QueryResult
from queryrelay.modules.registry import QueryTemplate, StoreTargetRegistry, StoreTemplateRepository, Target

from conftest import AGENT_ID, TARGET_ID, TARGET_NAME, TEMPLATE_ID, TEMPLATE_SQL, ScriptedRunner, rows_result

HEADERS = {"X-API-Key": "test-key"}
SALES = [{"id": 1, "total": "10"}, {"id": 2, "total": "20"}]
BINDINGS = {"fromDate": "2024-01-01", "toDate": "2024-01-31"}


@pytest.fixture
def client():
    # sse-starlette keeps a class-level exit event bound to the first event loop
    if hasattr(sse, "AppStatus"):
        sse.AppStatus.should_exit_event = None

    with TestClient(main.app) as test_client:
        targets = StoreTargetRegistry(main.store)
        templates = StoreTemplateRepository(main.store)
        test_client.portal.call(
            targets.save, Target(id=TARGET_ID, name=TARGET_NAME, agent_principal_id=AGENT_ID)
        )
        test_client.portal.call(
            templates.save, QueryTemplate(id=TEMPLATE_ID, name="Sales by range", sql_text=TEMPLATE_SQL)
        )
        yield test_client


def run_agent(client: TestClient, command_id: str, runner: ScriptedRunner):
    """Claim and execute one command as the target's agent."""
    binding = ExecutorBinding(
        main.store,
        main.channels,
        principal_id=AGENT_ID,
        target_id=TARGET_ID,
        template_store=StoreTemplateRepository(main.store),
    )
    record = client.portal.call(main.dispatcher.get, command_id)
    return client.portal.call(binding.process, record, runner)


def submit(client: TestClient, **body) -> str:
    payload = {"requester_context": TARGET_ID, "template_id": TEMPLATE_ID, "bindings": BINDINGS}
    payload.update(body)
    response = client.post("/commands", json=payload, headers=HEADERS)
    assert response.status_code == 201, response.text
    return response.json()["command_id"]


def sse_events(text: str) -> List[Dict[str, Any]]:
    events, current = [], {}
    for line in text.splitlines():
        line = line.strip()
        if not line:
            if current:
                events.append(current)
                current = {}
            continue
        field, _, value = line.partition(":")
        if field in ("event", "data"):
            current[field] = value.strip()
    if current:
        events.append(current)
    return [e for e in events if "event" in e]


class TestHealth:
    def test_healthz(self, client):
        assert client.get("/healthz").json() == {"status": "ok"}

    def test_health_reports_store(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["backend"] == "memory"


class TestSubmit:
    def test_missing_key_rejected(self, client):
        response = client.post("/commands", json={"requester_context": TARGET_ID, "literal_text": "SELECT 1"})

        assert response.status_code == 422

    def test_wrong_key_rejected(self, client):
        response = client.post(
            "/commands",
            json={"requester_context": TARGET_ID, "literal_text": "SELECT 1"},
            headers={"X-API-Key": "nope"},
        )

        assert response.status_code == 401

    def test_submit_defaults_issuer_to_service_identity(self, client):
        command_id = submit(client)

        response = client.get(f"/commands/{command_id}", headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "pending"
        assert body["issuer_id"] == "control-plane"
        assert body["payload"]["bindings"] == BINDINGS
        assert body["completed_at"] is None

    def test_missing_binding_is_bad_request(self, client):
        response = client.post(
            "/commands",
            json={"requester_context": TARGET_ID, "template_id": TEMPLATE_ID, "bindings": {"fromDate": "2024-01-01"}},
            headers=HEADERS,
        )

        assert response.status_code == 400
        assert response.json()["error"] == "InvalidRequest"

    def test_both_payload_shapes_is_bad_request(self, client):
        response = client.post(
            "/commands",
            json={"requester_context": TARGET_ID, "template_id": TEMPLATE_ID, "literal_text": "SELECT 1"},
            headers=HEADERS,
        )

        assert response.status_code == 400

    def test_unknown_target_unavailable(self, client):
        response = client.post(
            "/commands", json={"requester_context": "globex", "literal_text": "SELECT 1"}, headers=HEADERS
        )

        assert response.status_code == 503
        assert response.json()["error"] == "TargetUnavailable"

    def test_unknown_command_not_found(self, client):
        assert client.get("/commands/missing", headers=HEADERS).status_code == 404


class TestResults:
    def test_rows_not_ready(self, client):
        command_id = submit(client)

        response = client.get(f"/commands/{command_id}/rows", headers=HEADERS)

        assert response.status_code == 409

    def test_rows_of_row_producing_command(self, client):
        command_id = submit(client)
        run_agent(client, command_id, ScriptedRunner(rows_result(SALES)))

        response = client.get(f"/commands/{command_id}/rows", headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["result_kind"] == "row-producing"
        assert body["rows"] == SALES
        assert body["columns"] == ["id", "total"]
        assert body["row_count"] == 2
        assert body["channel_key"] == f"{command_id}:{AGENT_ID}"

    def test_rows_of_non_row_producing_command(self, client):
        command_id = submit(client, template_id=None, bindings={}, literal_text="UPDATE sales SET total = '0'")
        run_agent(client, command_id, ScriptedRunner(QueryResult(rows_affected=3)))

        body = client.get(f"/commands/{command_id}/rows", headers=HEADERS).json()

        assert body["result_kind"] == "non-row-producing"
        assert body["result_message"] == "3 rows affected"
        assert body["rows"] == []

    def test_rows_of_failed_command(self, client):
        command_id = submit(client)
        run_agent(client, command_id, ScriptedRunner(error=RuntimeError("no such table: sales")))

        response = client.get(f"/commands/{command_id}/rows", headers=HEADERS)

        assert response.status_code == 502
        assert response.json()["error_detail"] == "no such table: sales"

    def test_export_then_cleanup(self, client):
        command_id = submit(client)
        run_agent(client, command_id, ScriptedRunner(rows_result(SALES)))

        response = client.get(f"/commands/{command_id}/export", headers=HEADERS)

        assert response.status_code == 200
        assert response.text == "id,total\n1,10\n2,20\n"
        assert response.headers["x-row-count"] == "2"
        assert f"query-{command_id}.csv" in response.headers["content-disposition"]

        assert client.get(f"/commands/{command_id}", headers=HEADERS).status_code == 404
        rows = client.portal.call(main.channels.list_rows, f"{command_id}:{AGENT_ID}")
        assert rows == []

    def test_export_without_cleanup_keeps_data(self, client):
        command_id = submit(client)
        run_agent(client, command_id, ScriptedRunner(rows_result(SALES)))

        response = client.get(f"/commands/{command_id}/export?cleanup=false", headers=HEADERS)

        assert response.status_code == 200
        assert client.get(f"/commands/{command_id}/rows", headers=HEADERS).json()["rows"] == SALES

    def test_watch_streams_status_rows_and_completion(self, client):
        command_id = submit(client)
        run_agent(client, command_id, ScriptedRunner(rows_result(SALES)))

        response = client.get(f"/commands/{command_id}/watch", headers=HEADERS)

        events = sse_events(response.text)
        kinds = [e["event"] for e in events]
        assert kinds[0] == "status"
        assert kinds[-1] == "complete"
        assert kinds.count("row") == 2
        first_row = json.loads(next(e["data"] for e in events if e["event"] == "row"))
        assert first_row == {"row": SALES[0], "columns": ["id", "total"]}
        complete = json.loads(events[-1]["data"])
        assert complete["status"] == "success"
        assert complete["row_count"] == 2

    def test_watch_unknown_command(self, client):
        assert client.get("/commands/missing/watch", headers=HEADERS).status_code == 404


class TestCleanup:
    def test_delete_command_tears_down_channel(self, client):
        command_id = submit(client)
        run_agent(client, command_id, ScriptedRunner(rows_result(SALES)))

        response = client.delete(f"/commands/{command_id}", headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["deleted"] is True
        assert body["channels_torn_down"] == [f"temp_query_results/{command_id}:{AGENT_ID}"]
        assert client.portal.call(main.channels.list_rows, f"{command_id}:{AGENT_ID}") == []

    def test_bulk_channel_teardown(self, client):
        ids = [submit(client) for _ in range(2)]
        for command_id in ids:
            run_agent(client, command_id, ScriptedRunner(rows_result(SALES)))

        response = client.delete("/channels", params={"principal_id": AGENT_ID}, headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert sorted(body["succeeded"]) == sorted(f"{i}:{AGENT_ID}" for i in ids)
        assert body["failures"] == []

    def test_sweep_of_every_channel(self, client):
        command_id = submit(client)
        run_agent(client, command_id, ScriptedRunner(rows_result(SALES)))

        response = client.delete("/channels", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["succeeded"] == [f"{command_id}:{AGENT_ID}"]
        assert client.portal.call(main.channels.list_rows, f"{command_id}:{AGENT_ID}") == []


class TestErrorMapping:
    def test_create_conflict_is_409(self, client, monkeypatch):
        async def conflicting_submit(*args, **kwargs):
            raise DocumentExists("commands/duplicate already exists")

        monkeypatch.setattr(main.dispatcher, "submit", conflicting_submit)

        response = client.post(
            "/commands", json={"requester_context": TARGET_ID, "literal_text": "SELECT 1"}, headers=HEADERS
        )

        assert response.status_code == 409
        assert response.json()["error"] == "DocumentExists"


class TestRegistry:
    def test_template_registration_declares_placeholders(self, client):
        response = client.post(
            "/templates",
            json={"id": "refunds", "name": "Refunds since", "sql_text": "SELECT * FROM refunds WHERE day >= {{since}}"},
            headers=HEADERS,
        )

        assert response.status_code == 201
        assert response.json()["declared_variables"] == ["since"]
        listed = client.get("/templates", headers=HEADERS).json()
        assert {t["id"] for t in listed} == {TEMPLATE_ID, "refunds"}

    def test_registered_target_accepts_commands(self, client):
        response = client.post(
            "/targets",
            json={"id": "globex", "name": "Globex", "agent_principal_id": "agent-globex"},
            headers=HEADERS,
        )

        assert response.status_code == 201
        assert response.json()["status"] == "active"
        assert {t["id"] for t in client.get("/targets", headers=HEADERS).json()} == {TARGET_ID, "globex"}

        submitted = client.post(
            "/commands", json={"requester_context": "globex", "literal_text": "SELECT 1"}, headers=HEADERS
        )
        assert submitted.status_code == 201

    def test_disabled_target_is_unavailable(self, client):
        client.post(
            "/targets",
            json={"id": "globex", "name": "Globex", "agent_principal_id": "agent-globex", "status": "disabled"},
            headers=HEADERS,
        )

        response = client.post(
            "/commands", json={"requester_context": "globex", "literal_text": "SELECT 1"}, headers=HEADERS
        )

        assert response.status_code == 503

    @pytest.mark.parametrize(
        "body",
        [
            {"id": "globex", "name": "Globex", "agent_principal_id": "agent:globex"},
            {"id": "globex", "name": "Globex", "agent_principal_id": "agent-globex", "status": "paused"},
        ],
    )
    def test_invalid_target_rejected(self, client, body):
        assert client.post("/targets", json=body, headers=HEADERS).status_code == 422

    def test_registry_requires_key(self, client):
        assert client.get("/targets").status_code == 422
        assert client.get("/templates", headers={"X-API-Key": "nope"}).status_code == 401


class TestPull:
    def test_single_client(self, client):
        command_id = submit(client)
        run_agent(client, command_id, ScriptedRunner(rows_result(SALES)))

        response = client.post(
            "/api/pull/client-data", json={"clientName": TARGET_NAME}, headers={"X-API-Key": "pull-key"}
        )

        assert response.status_code == 200
        assert response.json() == {"clientName": TARGET_NAME, "data": SALES}

    def test_single_client_without_data(self, client):
        response = client.post(
            "/api/pull/client-data", json={"clientName": TARGET_NAME}, headers={"X-API-Key": "pull-key"}
        )

        assert response.status_code == 404
        assert response.json() == {"error": "No data found for client"}

    def test_many_clients_with_exact_addressing(self, client):
        first = submit(client)
        run_agent(client, first, ScriptedRunner(rows_result(SALES)))
        second = submit(client)
        run_agent(client, second, ScriptedRunner(rows_result([{"id": 9, "total": "90"}])))

        response = client.post(
            "/api/pull/client-data",
            json={"client_names": [TARGET_NAME, "Umbrella"], "command_ids": {TARGET_NAME: first}},
            headers=HEADERS,
        )

        clients = response.json()["clients"]
        assert clients[TARGET_NAME]["data"] == SALES
        assert clients[TARGET_NAME]["selected_by"] == "command_id"
        assert clients["Umbrella"] == {"error": "Client not found"}

    def test_pull_requires_key(self, client):
        response = client.post("/api/pull/client-data", json={"clientName": TARGET_NAME})

        assert response.status_code == 401
