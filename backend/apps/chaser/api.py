"""Credit control HTTP API: overdue invoices, chase history and operator actions."""

import json
from functools import lru_cache
from typing import Any

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, Request, status
from pydantic import BaseModel

from agents.chaser.billing import verify_signature
from agents.chaser.errors import (
    ChaseDeliveryError,
    ContentGenerationError,
    InvoiceNotFoundError,
)
from agents.chaser.service import ChaseService
from backend.core.config import settings
from backend.core.observability.logging import logger
from backend.core.observability.metrics import get_metrics

router = APIRouter(prefix="/api")


class PauseRequest(BaseModel):
    paused: bool = False


@lru_cache(maxsize=1)
def get_chase_service() -> ChaseService:
    return ChaseService.from_settings()


def _error(status_code: int, code: str, detail: Any):
    raise HTTPException(status_code=status_code, detail={"error": code, "detail": detail})


def _not_found(exc: InvoiceNotFoundError):
    _error(status.HTTP_404_NOT_FOUND, "invoice_not_found", str(exc))


def get_webhook_secret() -> str | None:
    """Shared secret for billing webhooks; None accepts unsigned events."""
    if settings.BILLING_WEBHOOK_SECRET:
        return settings.BILLING_WEBHOOK_SECRET
    if settings.app_env == "production":
        _error(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "webhook_not_configured",
            "BILLING_WEBHOOK_SECRET is not set",
        )
    return None


async def _raw_body(request: Request) -> bytes:
    return await request.body()


@router.get("/invoices/overdue", response_model=dict[str, Any])
def list_overdue_invoices(
    limit: int = Query(50, ge=1),
    offset: int = Query(0, ge=0),
    service: ChaseService = Depends(get_chase_service),
):
    limit = min(limit, settings.READ_MAX_LIMIT)
    items = service.list_overdue(limit=limit, offset=offset)
    return {"items": items, "count": len(items), "limit": limit, "offset": offset}


@router.get("/invoices/{invoice_id}/chase-emails", response_model=dict[str, Any])
def list_chase_emails(invoice_id: int, service: ChaseService = Depends(get_chase_service)):
    try:
        records = service.chase_history(invoice_id)
    except InvoiceNotFoundError as e:
        _not_found(e)
    return {"invoice_id": invoice_id, "items": [record.to_dict() for record in records]}


@router.get("/invoices/{invoice_id}/next-chaser-preview", response_model=dict[str, Any])
def preview_next_chaser(invoice_id: int, service: ChaseService = Depends(get_chase_service)):
    try:
        return service.preview_next(invoice_id)
    except InvoiceNotFoundError as e:
        _not_found(e)
    except ContentGenerationError as e:
        _error(status.HTTP_502_BAD_GATEWAY, "content_generation_failed", str(e))


@router.post("/invoices/{invoice_id}/pause", response_model=dict[str, Any])
def pause_invoice(
    invoice_id: int,
    payload: PauseRequest | None = None,
    service: ChaseService = Depends(get_chase_service),
):
    try:
        invoice = service.pause(invoice_id, payload.paused if payload else False)
    except InvoiceNotFoundError as e:
        _not_found(e)
    return {"invoice": invoice.to_dict()}


@router.post("/invoices/{invoice_id}/expedite", response_model=dict[str, Any])
def expedite_invoice(invoice_id: int, service: ChaseService = Depends(get_chase_service)):
    try:
        outcome = service.expedite(invoice_id)
    except InvoiceNotFoundError as e:
        _not_found(e)
    except ChaseDeliveryError as e:
        _error(
            status.HTTP_502_BAD_GATEWAY,
            "chase_failed",
            {"message": str(e), "record": e.record.to_dict() if e.record else None},
        )
    logger.info(
        "chase_expedited",
        extra={"invoice_id": invoice_id, "sent": outcome.sent, "state": outcome.state.value},
    )
    return outcome.to_dict()


@router.post("/chase/run", response_model=dict[str, Any])
def run_chase_batch(service: ChaseService = Depends(get_chase_service)):
    return service.run_batch().to_dict()


@router.post("/webhooks/billing", response_model=dict[str, Any])
def billing_webhook(
    body: bytes = Depends(_raw_body),
    signature: str | None = Header(None, alias="Stripe-Signature"),
    secret: str | None = Depends(get_webhook_secret),
    service: ChaseService = Depends(get_chase_service),
):
    if secret is not None and not verify_signature(
        body, signature, secret, service.clock(), settings.BILLING_WEBHOOK_TOLERANCE_S
    ):
        logger.warning("billing_webhook_rejected", extra={"signed": signature is not None})
        _error(status.HTTP_401_UNAUTHORIZED, "invalid_signature", "Signature check failed")

    try:
        event = json.loads(body)
    except ValueError as e:
        _error(status.HTTP_400_BAD_REQUEST, "invalid_event", f"Body is not JSON: {e}")
    if not isinstance(event, dict):
        _error(status.HTTP_400_BAD_REQUEST, "invalid_event", "Event must be a JSON object")

    try:
        action = service.billing.handle_event(event)
    except (KeyError, ValueError) as e:
        _error(status.HTTP_400_BAD_REQUEST, "invalid_event", str(e))
    return {"received": True, "action": action}


@router.post("/billing/sync", response_model=dict[str, Any])
def sync_billing(
    invoices: list[dict[str, Any]] = Body(..., embed=True),
    service: ChaseService = Depends(get_chase_service),
):
    return service.sync_billing(invoices).to_dict()


@router.get("/dashboard/stats", response_model=dict[str, Any])
def dashboard_stats(service: ChaseService = Depends(get_chase_service)):
    return service.dashboard_stats()


@router.get("/metrics", response_model=dict[str, Any])
def chase_metrics():
    return get_metrics()
