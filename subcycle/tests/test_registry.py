from __future__ import annotations

import pytest

from subcycle.app.errors import NotFoundError, ValidationError
from subcycle.app.webhooks import EndpointRegistry, EventType


def test_register_generates_id_and_secret():
    registry = EndpointRegistry()

    endpoint = registry.register("https://hooks.example.com/in", ["payment.processed", "payment.failed"])

    assert endpoint.id.startswith("webhook_")
    assert len(endpoint.secret) == 64
    assert endpoint.event_types == {EventType.PAYMENT_PROCESSED, EventType.PAYMENT_FAILED}
    assert endpoint.active is True
    assert endpoint.failure_count == 0
    assert endpoint.secret not in repr(endpoint)


@pytest.mark.parametrize(
    "url,event_types",
    [
        ("ftp://hooks.example.com", ["payment.processed"]),
        ("https://hooks.example.com", []),
        ("https://hooks.example.com", ["payment.refunded"]),
    ],
)
def test_register_rejects_invalid_input(url, event_types):
    with pytest.raises(ValidationError):
        EndpointRegistry().register(url, event_types)


def test_failures_disable_at_threshold_and_reactivate_resets():
    registry = EndpointRegistry()
    endpoint = registry.register("https://hooks.example.com/in", [EventType.PLAN_CREATED])

    for _ in range(2):
        registry.record_failure(endpoint.id, threshold=3)
    assert registry.get(endpoint.id).active is True

    disabled = registry.record_failure(endpoint.id, threshold=3)
    assert disabled.active is False
    assert registry.matching(EventType.PLAN_CREATED) == []

    restored = registry.reactivate(endpoint.id)
    assert restored.active is True
    assert restored.failure_count == 0
    assert registry.matching(EventType.PLAN_CREATED) == [restored]


def test_success_after_disable_does_not_reactivate():
    registry = EndpointRegistry()
    endpoint = registry.register("https://hooks.example.com/in", [EventType.PLAN_CREATED])
    registry.record_failure(endpoint.id, threshold=1)

    registry.record_success(endpoint.id)

    stored = registry.get(endpoint.id)
    assert stored.failure_count == 0
    assert stored.active is False


def test_delete_and_missing_lookups():
    registry = EndpointRegistry()
    endpoint = registry.register("https://hooks.example.com/in", [EventType.PLAN_CREATED])

    assert registry.delete(endpoint.id) is True
    assert registry.delete(endpoint.id) is False
    assert registry.record_failure(endpoint.id, threshold=5) is None
    with pytest.raises(NotFoundError):
        registry.require(endpoint.id)
    with pytest.raises(NotFoundError):
        registry.reactivate(endpoint.id)
