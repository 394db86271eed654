"""Webhook 接收与健康检查接口测试。"""
import json

import pytest

from tests.conftest import alert_payload, make_rule


class TestWebhookIngestion:
    @pytest.mark.asyncio
    async def test_generic_alert_is_recorded(self, client):
        resp = await client.post("/api/v1/webhooks/generic", json=alert_payload("H1"))
        assert resp.status_code == 200
        data = resp.json()
        assert data["received"] is True
        assert data["external_id"] == "generic:H1"
        assert data["status"] == "pending"

    @pytest.mark.asyncio
    async def test_duplicate_delivery_returns_same_event(self, client):
        first = (await client.post("/api/v1/webhooks/generic", json=alert_payload("H2"))).json()
        second = (await client.post("/api/v1/webhooks/generic", json=alert_payload("H2"))).json()
        assert first["event_id"] == second["event_id"]

        resp = await client.get("/api/v1/automation/events", params={"source": "generic"})
        assert resp.json()["total"] == 1

    @pytest.mark.asyncio
    async def test_malformed_body_is_accepted_and_recorded_failed(self, client):
        resp = await client.post(
            "/api/v1/webhooks/nable", content=b"{not json", headers={"Content-Type": "application/json"},
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "failed"

        events = (await client.get("/api/v1/automation/events", params={"status": "failed"})).json()
        assert events["total"] == 1
        assert "Invalid JSON" in events["items"][0]["last_error"]

    @pytest.mark.asyncio
    async def test_connectwise_non_ticket_callback_is_ignored(self, client):
        body = json.dumps({"ID": 12, "Type": "company", "Action": "updated"})
        resp = await client.post("/api/v1/webhooks/connectwise", content=body)
        assert resp.json()["status"] == "ignored"

    @pytest.mark.asyncio
    async def test_connectwise_scalar_company_is_recorded(self, client):
        body = {"ID": 77, "Type": "ticket", "Action": "added", "Entity": {"id": 77, "company": "Acme"}}
        resp = await client.post("/api/v1/webhooks/connectwise", json=body)
        assert resp.status_code == 200
        assert resp.json()["status"] == "pending"

    @pytest.mark.asyncio
    async def test_running_engine_processes_webhook(self, client, automation_engine, store, script_runner):
        await store.create_rule(make_rule())
        await automation_engine.start(recover=False)
        ack = (await client.post("/api/v1/webhooks/generic", json=alert_payload("H3"))).json()
        await automation_engine.join()

        executions = (await client.get(
            "/api/v1/automation/executions", params={"event_id": ack["event_id"]},
        )).json()
        assert executions["total"] == 1
        assert executions["items"][0]["status"] == "success"
        assert script_runner.scripts() == ["disk_cleanup"]


class TestHealth:
    @pytest.mark.asyncio
    async def test_reports_stopped_engine_as_degraded(self, client, db_engine, monkeypatch):
        monkeypatch.setattr("app.main.engine", db_engine)
        resp = await client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["checks"]["database"] == "ok"
        assert data["checks"]["automation"] == "stopped"
        assert "redis" not in data["checks"]
        assert data["status"] == "degraded"

    @pytest.mark.asyncio
    async def test_running_engine_is_healthy(self, client, automation_engine, db_engine, monkeypatch):
        monkeypatch.setattr("app.main.engine", db_engine)
        await automation_engine.start(recover=False)
        data = (await client.get("/api/v1/health")).json()
        assert data["status"] == "ok"
