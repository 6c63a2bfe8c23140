"""Operator routes: manual payment trigger, scheduler status, webhook endpoints."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ...app_context import BillingContext
from ...scheduler import SchedulerStatus
from ..errors import SubcycleError
from ..schemas.operations import (
    ProcessDueResponse,
    WebhookEndpointResponse,
    WebhookListResponse,
    WebhookRegistrationRequest,
)
from ..webhooks import DeliveryResult


def get_context(request: Request) -> BillingContext:
    context = getattr(request.app.state, "context", None)
    if context is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "not_ready", "message": "Billing context is not configured"},
        )
    return context


router = APIRouter(prefix="/api/operations", tags=["operations"])


@router.post("/payments/process", response_model=ProcessDueResponse)
def process_due_now(context: BillingContext = Depends(get_context)) -> ProcessDueResponse:
    ran = context.scheduler.process_due_now()
    if not ran:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "cycle_in_progress", "message": "A payment cycle is already running"},
        )
    return ProcessDueResponse(ran=True, message="Payment cycle completed")


@router.get("/status", response_model=SchedulerStatus)
def get_status(context: BillingContext = Depends(get_context)) -> SchedulerStatus:
    return context.scheduler.get_status()


@router.get("/webhooks", response_model=WebhookListResponse)
def list_webhooks(context: BillingContext = Depends(get_context)) -> WebhookListResponse:
    endpoints = context.list_endpoints()
    return WebhookListResponse(webhooks=[WebhookEndpointResponse.from_endpoint(endpoint) for endpoint in endpoints])


@router.post("/webhooks", response_model=WebhookEndpointResponse, status_code=status.HTTP_201_CREATED)
def register_webhook(
    payload: WebhookRegistrationRequest,
    context: BillingContext = Depends(get_context),
) -> WebhookEndpointResponse:
    try:
        endpoint = context.register_endpoint(payload.url, payload.event_types, payload.secret)
    except SubcycleError as exc:
        raise exc.to_http_exception() from exc
    return WebhookEndpointResponse.from_endpoint(endpoint, include_secret=True)


@router.post("/webhooks/{endpoint_id}/test", response_model=DeliveryResult)
async def test_webhook(endpoint_id: str, context: BillingContext = Depends(get_context)) -> DeliveryResult:
    try:
        return await context.events.send_test_event(endpoint_id)
    except SubcycleError as exc:
        raise exc.to_http_exception() from exc


@router.post("/webhooks/{endpoint_id}/reactivate", response_model=WebhookEndpointResponse)
def reactivate_webhook(endpoint_id: str, context: BillingContext = Depends(get_context)) -> WebhookEndpointResponse:
    try:
        endpoint = context.registry.reactivate(endpoint_id)
    except SubcycleError as exc:
        raise exc.to_http_exception() from exc
    return WebhookEndpointResponse.from_endpoint(endpoint)


@router.delete("/webhooks/{endpoint_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_webhook(endpoint_id: str, context: BillingContext = Depends(get_context)) -> None:
    if not context.registry.delete(endpoint_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "not_found", "message": f"Webhook {endpoint_id} not found"},
        )
