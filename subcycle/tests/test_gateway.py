from __future__ import annotations

import json
import threading

import httpx
import pytest

from subcycle.app.billing import HttpSettlementGateway, SandboxSettlementGateway, SettlementReference, TimeoutBoundGateway
from subcycle.app.errors import SettlementError, SettlementTimeout


class HangingGateway:
    def __init__(self) -> None:
        self.release = threading.Event()

    def settle(self, payer_id: str, payee_id: str, amount: int) -> SettlementReference:
        self.release.wait(timeout=5)
        return SettlementReference(reference="too_late")


class BrokenGateway:
    def settle(self, payer_id: str, payee_id: str, amount: int) -> SettlementReference:
        raise ConnectionResetError("peer reset")


class MisconfiguredGateway:
    def settle(self, payer_id: str, payee_id: str, amount: int) -> SettlementReference:
        raise AttributeError("'NoneType' object has no attribute 'post'")


def test_timeout_bound_gateway_raises_settlement_timeout():
    inner = HangingGateway()
    gateway = TimeoutBoundGateway(inner, timeout=0.05)
    try:
        with pytest.raises(SettlementTimeout) as excinfo:
            gateway.settle("payer", "payee", 10)
        assert excinfo.value.code == "settlement_timeout"
    finally:
        inner.release.set()
        gateway.close()


def test_timeout_bound_gateway_wraps_socket_errors():
    gateway = TimeoutBoundGateway(BrokenGateway(), timeout=1)
    try:
        with pytest.raises(SettlementError, match="ConnectionResetError"):
            gateway.settle("payer", "payee", 10)
    finally:
        gateway.close()


def test_timeout_bound_gateway_lets_programming_errors_through():
    gateway = TimeoutBoundGateway(MisconfiguredGateway(), timeout=1)
    try:
        with pytest.raises(AttributeError):
            gateway.settle("payer", "payee", 10)
    finally:
        gateway.close()


def test_sandbox_gateway_returns_reference():
    reference = SandboxSettlementGateway().settle("payer", "payee", 10)

    assert reference.reference.startswith("sandbox_")


def _http_gateway(handler) -> HttpSettlementGateway:
    client = httpx.Client(base_url="https://ledger.example.com", transport=httpx.MockTransport(handler))
    return HttpSettlementGateway("https://ledger.example.com", client=client)


def test_http_gateway_posts_transfer_and_reads_reference():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"reference": "tx_123"})

    reference = _http_gateway(handler).settle("payer", "payee", 2500)

    assert reference.reference == "tx_123"
    assert seen == {"path": "/settlements", "body": {"payer": "payer", "payee": "payee", "amount": 2500}}


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(402, json={"error": "insufficient balance"}),
        httpx.Response(200, json={"status": "ok"}),
        httpx.Response(200, content=b"not json"),
    ],
)
def test_http_gateway_failures_raise_settlement_error(response):
    gateway = _http_gateway(lambda request: response)

    with pytest.raises(SettlementError):
        gateway.settle("payer", "payee", 10)
