"""Tests for the REST API, health endpoints and the push WebSocket."""

import pytest
from fastapi.testclient import TestClient

from flow_engine.config import AppConfig
from flow_engine.factory import create_app, get_app_state


@pytest.fixture
def client(temp_db):
    """Application wired against the temporary database, with lifespan run."""
    config = AppConfig(
        database_url=f"sqlite:///{temp_db}",
        enable_performance_monitoring=True,
        max_steps_per_instance=20,
        shutdown_grace_seconds=2.0,
    )
    with TestClient(create_app(config)) as test_client:
        yield test_client


def support_flow(name="support", status="active", version="1.0"):
    """Complaints are escalated, everything else ends politely."""
    return {
        "name": name,
        "version": version,
        "status": status,
        "trigger_type": "message",
        "nodes": [
            {"id": "classify", "type": "intent", "config": {"intentKeywords": {"complaint": ["投诉"]}}},
            {"id": "route", "type": "decision", "config": {
                "conditions": [{"expression": "context.intent === 'complaint'", "targetNodeId": "escalate"}],
                "defaultTarget": "done",
            }},
            {"id": "escalate", "type": "end", "config": {"message": "escalated"}},
            {"id": "done", "type": "end", "config": {"message": "handled"}},
        ],
        "edges": [{"id": "e1", "source": "classify", "target": "route"}],
        "retry_config": {"maxRetries": 1, "retryInterval": 10},
    }


def create_flow(client, **kwargs):
    response = client.post("/api/v1/flows", json=support_flow(**kwargs))
    assert response.status_code == 201, response.text
    return response.json()["flow"]


class TestHealthEndpoints:
    def test_basic_endpoints(self, client):
        assert client.get("/").status_code == 200
        assert client.get("/health").json()["status"] == "healthy"
        assert client.get("/health/live").json()["alive"] is True

    def test_readiness_and_detailed(self, client):
        ready = client.get("/health/ready")
        assert ready.status_code == 200
        assert set(ready.json()["checks"]) == {"database", "executor_registry"}

        detailed = client.get("/health/detailed")
        assert detailed.status_code == 200
        assert detailed.json()["overall_status"] == "healthy"

    def test_response_time_header(self, client):
        response = client.get("/health")
        assert response.headers["X-Response-Time"].endswith("s")

    def test_app_state_is_populated(self, client):
        state = get_app_state()
        assert state.engine is not None
        assert state.registry.is_initialized


class TestFlowEndpoints:
    def test_create_and_get(self, client):
        flow = create_flow(client)

        fetched = client.get(f"/api/v1/flows/{flow['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["name"] == "support"
        assert [edge["id"] for edge in fetched.json()["edges"]] == ["e1"]

    def test_invalid_flow_is_rejected(self, client):
        payload = support_flow()
        payload["edges"].append({"id": "e2", "source": "route", "target": "ghost"})

        response = client.post("/api/v1/flows", json=payload)

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "GraphValidationError"

    def test_duplicate_version_is_rejected(self, client):
        create_flow(client)
        assert client.post("/api/v1/flows", json=support_flow()).status_code == 400

    def test_validate_without_saving(self, client):
        response = client.post("/api/v1/flows/validate", json=support_flow())
        assert response.status_code == 200
        assert response.json()["is_valid"] is True
        assert client.get("/api/v1/flows").json() == []

    def test_list_with_filters(self, client):
        create_flow(client)
        create_flow(client, name="drafty", status="draft")

        names = [flow["name"] for flow in client.get("/api/v1/flows", params={"status": "draft"}).json()]
        assert names == ["drafty"]

    def test_update(self, client):
        flow = create_flow(client)
        response = client.put(f"/api/v1/flows/{flow['id']}", json={"description": "updated"})
        assert response.status_code == 200
        assert response.json()["description"] == "updated"

    def test_missing_flow(self, client):
        assert client.get("/api/v1/flows/missing").status_code == 404
        assert client.delete("/api/v1/flows/missing").status_code == 404

    def test_delete_refused_while_in_use(self, client):
        flow = create_flow(client)
        client.post("/api/v1/instances", json={"flow_definition_id": flow["id"]})

        assert client.delete(f"/api/v1/flows/{flow['id']}").status_code == 409

    def test_node_types(self, client):
        types = {item["type"] for item in client.get("/api/v1/node-types").json()}
        assert len(types) == 18
        assert {"start", "intent", "decision", "risk_handler", "webhook"} <= types


class TestInstanceEndpoints:
    def test_create_and_execute_synchronously(self, client):
        flow = create_flow(client)
        created = client.post("/api/v1/instances", json={
            "flow_definition_id": flow["id"],
            "trigger_data": {"content": "我要投诉"},
        })
        assert created.status_code == 201
        instance_id = created.json()["id"]
        assert created.json()["status"] == "pending"

        executed = client.post(f"/api/v1/instances/{instance_id}/execute", params={"wait": True})
        assert executed.status_code == 200
        assert executed.json()["status"] == "completed"
        assert executed.json()["execution_path"] == ["classify", "route", "escalate"]

        logs = client.get(f"/api/v1/instances/{instance_id}/logs").json()
        assert [log["node_id"] for log in logs] == ["classify", "route", "escalate"]

    def test_execute_is_accepted_in_background(self, client):
        flow = create_flow(client)
        instance_id = client.post("/api/v1/instances", json={"flow_definition_id": flow["id"]}).json()["id"]

        response = client.post(f"/api/v1/instances/{instance_id}/execute")

        assert response.status_code == 202
        assert response.json()["instance_id"] == instance_id

    def test_inactive_flow_conflicts(self, client):
        flow = create_flow(client, status="draft")
        response = client.post("/api/v1/instances", json={"flow_definition_id": flow["id"]})
        assert response.status_code == 409

    def test_cancel(self, client):
        flow = create_flow(client)
        instance_id = client.post("/api/v1/instances", json={"flow_definition_id": flow["id"]}).json()["id"]

        cancelled = client.post(f"/api/v1/instances/{instance_id}/cancel")
        assert cancelled.json()["cancelled"] is True
        assert client.get(f"/api/v1/instances/{instance_id}").json()["status"] == "cancelled"

        again = client.post(f"/api/v1/instances/{instance_id}/cancel")
        assert again.json()["cancelled"] is False

    def test_missing_instance(self, client):
        assert client.get("/api/v1/instances/missing").status_code == 404
        assert client.post("/api/v1/instances/missing/cancel").status_code == 404

    def test_list_instances(self, client):
        flow = create_flow(client)
        for _ in range(3):
            client.post("/api/v1/instances", json={"flow_definition_id": flow["id"]})

        listed = client.get("/api/v1/instances", params={"status": "pending", "limit": 2}).json()
        assert len(listed) == 2


class TestTriggerEndpoints:
    def test_trigger_without_flow(self, client):
        response = client.post("/api/v1/triggers/webhook", json={"content": "hi"})
        assert response.status_code == 202
        assert response.json()["instance"] is None

    def test_trigger_starts_default_flow(self, client):
        create_flow(client)
        response = client.post("/api/v1/triggers/message", json={"content": "你好"})

        assert response.status_code == 202
        assert response.json()["instance"]["trigger_data"] == {"content": "你好"}

    def test_test_trigger_runs_drafts(self, client):
        draft = create_flow(client, status="draft")

        response = client.post("/api/v1/test-trigger", params={"wait": True}, json={
            "flow_id": draft["id"],
            "payload": {"content": "随便问问"},
        })

        body = response.json()
        assert response.status_code == 200
        assert body["instance"]["status"] == "completed"
        assert body["instance"]["execution_path"] == ["classify", "route", "done"]
        assert len(body["logs"]) == 3
        assert body["poll_url"] == f"/api/v1/instances/{body['instance']['id']}"
        assert body["poll_interval_seconds"] > 0

    def test_test_trigger_by_name_uses_newest_draft(self, client):
        create_flow(client, status="draft", version="1.0")
        newest = create_flow(client, status="draft", version="1.2")

        response = client.post("/api/v1/test-trigger", params={"wait": True}, json={"flow_name": "support"})

        assert response.json()["instance"]["flow_definition_id"] == newest["id"]

    def test_test_trigger_needs_a_flow(self, client):
        assert client.post("/api/v1/test-trigger", json={"payload": {}}).status_code == 400
        assert client.post("/api/v1/test-trigger", json={"flow_name": "nobody"}).status_code == 404


class TestVersionEndpoints:
    def test_version_lifecycle(self, client):
        original = create_flow(client)

        created = client.post("/api/v1/versions/support", json={"changes": {"description": "v2"}})
        assert created.status_code == 201
        draft = created.json()
        assert draft["version"] == "1.1"
        assert draft["status"] == "draft"

        activated = client.post(f"/api/v1/versions/activate/{draft['id']}")
        assert activated.json()["status"] == "active"
        assert client.get(f"/api/v1/flows/{original['id']}").json()["status"] == "inactive"

        rolled_back = client.post(f"/api/v1/versions/rollback/{original['id']}")
        assert rolled_back.json()["id"] == original["id"]

        listed = client.get("/api/v1/versions/support").json()
        assert [item["version"] for item in listed] == ["1.1", "1.0"]
        assert [item["status"] for item in listed] == ["inactive", "active"]

    def test_version_of_unknown_flow(self, client):
        assert client.post("/api/v1/versions/nobody").status_code == 404
        assert client.post("/api/v1/versions/activate/missing").status_code == 404


class TestMonitorEndpoints:
    def test_monitor_after_run(self, client):
        flow = create_flow(client)
        instance_id = client.post("/api/v1/instances", json={"flow_definition_id": flow["id"]}).json()["id"]
        client.post(f"/api/v1/instances/{instance_id}/execute", params={"wait": True})

        statuses = {item["status"]: item["count"] for item in client.get("/api/v1/monitor/status").json()}
        assert statuses == {"completed": 1}

        trend = client.get("/api/v1/monitor/trend", params={"days": 3}).json()
        assert len(trend) == 3
        assert trend[-1]["completed"] == 1

        flows = client.get("/api/v1/monitor/flows").json()
        assert flows[0]["flow_name"] == "support"
        assert flows[0]["success_rate"] == 100.0

        assert client.get("/api/v1/monitor/instances").json() == []
        overview = client.get("/api/v1/monitor/overview").json()
        assert set(overview) >= {"status_stats", "trend", "flow_stats", "running_instances"}

    def test_trend_days_are_bounded(self, client):
        assert client.get("/api/v1/monitor/trend", params={"days": 0}).status_code == 422


class TestPushWebSocket:
    def test_ping_and_errors(self, client):
        with client.websocket_connect("/api/v1/ws/messages") as websocket:
            assert websocket.receive_json()["event_type"] == "connection_established"

            websocket.send_json({"action": "ping"})
            assert websocket.receive_json()["event_type"] == "pong"

            websocket.send_text("not json")
            assert websocket.receive_json()["event_type"] == "error"

            websocket.send_json({"action": "subscribe"})
            assert websocket.receive_json()["message"] == "Unknown action"

    def test_finished_instances_are_pushed(self, client):
        flow = create_flow(client)
        instance_id = client.post("/api/v1/instances", json={"flow_definition_id": flow["id"]}).json()["id"]

        with client.websocket_connect("/api/v1/ws/messages") as websocket:
            websocket.receive_json()
            client.post(f"/api/v1/instances/{instance_id}/execute", params={"wait": True})

            event = websocket.receive_json()
            assert event["event_type"] == "instance_finished"
            assert event["data"]["instanceId"] == instance_id
