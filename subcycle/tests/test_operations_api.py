from __future__ import annotations

import asyncio
from types import SimpleNamespace

import httpx
import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from conftest import ScriptedGateway, make_plan, make_subscription
from subcycle.app.billing import InMemoryPlanStore, InMemorySubscriptionStore
from subcycle.app.routes import operations as operations_routes
from subcycle.app.schemas.operations import WebhookRegistrationRequest
from subcycle.app_context import build_context
from subcycle.config import EngineConfig
from subcycle.main import create_app


@pytest.fixture
def context():
    ctx = build_context(
        EngineConfig(scheduler_enabled=False, batch_delay_seconds=0),
        subscriptions=InMemorySubscriptionStore([make_subscription()]),
        plans=InMemoryPlanStore([make_plan()]),
        gateway=ScriptedGateway(["ref_api"]),
        client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(204))),
    )
    yield ctx
    ctx.close()


def test_get_context_requires_configured_app():
    request = SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace()))

    with pytest.raises(HTTPException) as excinfo:
        operations_routes.get_context(request)

    assert excinfo.value.status_code == 503


def test_process_due_now_runs_a_cycle(context):
    response = operations_routes.process_due_now(context=context)

    assert response.ran is True
    assert context.subscriptions.get("sub_1").total_payments == 1
    assert context.events.pending() == 1


def test_process_due_now_conflicts_while_cycle_runs(context, monkeypatch):
    monkeypatch.setattr(context.scheduler, "process_due_now", lambda: False)

    with pytest.raises(HTTPException) as excinfo:
        operations_routes.process_due_now(context=context)

    assert excinfo.value.status_code == 409
    assert excinfo.value.detail["error"] == "cycle_in_progress"


def test_register_list_and_delete_webhook(context):
    payload = WebhookRegistrationRequest(url="https://hooks.example.com/in", eventTypes=["payment.processed"])

    created = operations_routes.register_webhook(payload, context=context)
    listed = operations_routes.list_webhooks(context=context)

    assert created.secret is not None
    assert [item.id for item in listed.webhooks] == [created.id]
    assert listed.webhooks[0].secret is None

    operations_routes.delete_webhook(created.id, context=context)
    with pytest.raises(HTTPException) as excinfo:
        operations_routes.delete_webhook(created.id, context=context)
    assert excinfo.value.status_code == 404


def test_register_webhook_with_bad_url_is_rejected(context):
    payload = WebhookRegistrationRequest(url="mailto:ops@example.com", eventTypes=["payment.failed"])

    with pytest.raises(HTTPException) as excinfo:
        operations_routes.register_webhook(payload, context=context)

    assert excinfo.value.status_code == 400
    assert excinfo.value.detail["error"] == "invalid_request"


def test_test_webhook_delivers_and_reports(context):
    endpoint = context.register_endpoint("https://hooks.example.com/in", ["payment.processed"])

    result = asyncio.run(operations_routes.test_webhook(endpoint.id, context=context))

    assert result.success is True
    assert result.status_code == 204

    with pytest.raises(HTTPException) as excinfo:
        asyncio.run(operations_routes.test_webhook("webhook_missing", context=context))
    assert excinfo.value.status_code == 404


def test_reactivate_webhook(context):
    endpoint = context.register_endpoint("https://hooks.example.com/in", ["payment.processed"])
    context.registry.record_failure(endpoint.id, threshold=1)

    response = operations_routes.reactivate_webhook(endpoint.id, context=context)

    assert response.active is True
    assert response.failure_count == 0


def test_status_endpoint_over_http(context):
    client = TestClient(create_app(context))

    response = client.get("/api/operations/status")

    assert response.status_code == 200
    body = response.json()
    assert body["is_running"] is False
    assert body["cycle_in_progress"] is False
    assert body["stats"]["due_for_payment"] == 1


def test_webhook_registration_over_http_uses_camel_case(context):
    client = TestClient(create_app(context))

    response = client.post(
        "/api/operations/webhooks",
        json={"url": "https://hooks.example.com/in", "eventTypes": ["plan.created"]},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["eventTypes"] == ["plan.created"]
    assert body["failureCount"] == 0
    assert len(body["secret"]) == 64
