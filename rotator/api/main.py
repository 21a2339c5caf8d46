"""FastAPI application for event ingestion, rotation state and operator actions."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy.engine import Engine

from rotator.attribution.engine import AttributionEngine
from rotator.attribution.ingest import EventIngestor, EventInput
from rotator.attribution.webhooks import purchase_from_order
from rotator.catalog.shopify import ShopifyCatalogClient
from rotator.db.session import create_engine_from_env
from rotator.errors import (
    ConcurrencyConflict,
    DataIntegrityError,
    EventValidationError,
    PermanentValidationError,
    RemoteRequestError,
    RotationError,
    SlotNotFound,
    TransientRemoteError,
)
from rotator.rotation.ledger import RotationLedger
from rotator.rotation.scheduler import RotationScheduler
from rotator.rotation.store import ACTIVE, RotationSlot, SlotStore
from rotator.utils.dates import isoformat_z, parse_timestamp
from rotator.utils.ids import normalize_product_id, normalize_variant_id

logger = logging.getLogger(__name__)

app = FastAPI(title="Media Rotation API")

ERROR_STATUS = {
    SlotNotFound: 404,
    PermanentValidationError: 400,
    ConcurrencyConflict: 409,
    DataIntegrityError: 502,
    RemoteRequestError: 502,
    TransientRemoteError: 502,
}


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EventRequest(CamelModel):
    test_id: str
    session_id: str
    event_type: str
    product_id: str
    occurred_at: str
    variant_id: str | None = None
    revenue: float | None = None
    quantity: int | None = None
    order_id: str | None = None
    active_case: str | None = None


class SwitchRequest(CamelModel):
    variant: str


class PauseRequest(CamelModel):
    reason: str = "Paused by operator"


def get_engine() -> Engine:
    return create_engine_from_env()


def get_scheduler(engine: Engine = Depends(get_engine)) -> RotationScheduler:
    return RotationScheduler(engine, ShopifyCatalogClient.from_env)


@app.exception_handler(RotationError)
async def rotation_error_handler(request: Request, exc: RotationError) -> JSONResponse:
    status = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500)
    body: dict[str, Any] = {"error": type(exc).__name__, "detail": str(exc)}
    if isinstance(exc, DataIntegrityError):
        body["phase"] = exc.phase
        body["missingKeys"] = exc.missing_keys
    logger.warning("%s %s -> %s %s", request.method, request.url.path, status, body["error"])
    return JSONResponse(body, status_code=status)


@app.exception_handler(EventValidationError)
async def event_validation_handler(request: Request, exc: EventValidationError) -> JSONResponse:
    return JSONResponse({"error": "EventValidationError", "detail": str(exc)}, status_code=400)


def slot_payload(slot: RotationSlot) -> dict[str, Any]:
    return {
        "slotId": slot.id,
        "testId": slot.test_id,
        "productId": slot.product_id,
        "variantId": slot.variant_id,
        "status": slot.status,
        "activeVariant": slot.active_variant,
        "intervalMinutes": slot.interval_minutes,
        "lastSwitchAt": isoformat_z(slot.last_switch_at),
        "nextSwitchDueAt": isoformat_z(slot.next_switch_due_at),
        "consecutiveFailures": slot.consecutive_failures,
        "pausedReason": slot.paused_reason,
    }


@app.post("/events")
async def ingest_event(payload: EventRequest, engine: Engine = Depends(get_engine)) -> JSONResponse:
    try:
        occurred_at = parse_timestamp(payload.occurred_at)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid occurredAt: {payload.occurred_at}") from exc
    event = EventInput(
        test_id=payload.test_id,
        session_id=payload.session_id,
        event_type=payload.event_type,
        product_id=payload.product_id,
        occurred_at=occurred_at,
        variant_id=payload.variant_id,
        revenue=payload.revenue,
        quantity=payload.quantity,
        order_id=payload.order_id,
        active_case=payload.active_case,
    )
    result = EventIngestor(engine).ingest(event)
    return JSONResponse(result.as_dict())


@app.post("/webhooks/orders-paid")
async def orders_paid(
    payload: dict[str, Any],
    shop_domain: str | None = Header(default=None, alias="X-Shopify-Shop-Domain"),
    engine: Engine = Depends(get_engine),
) -> JSONResponse:
    event = purchase_from_order(payload, SlotStore(engine), shop_domain)
    if event is None:
        return JSONResponse({"status": "ignored"})
    result = EventIngestor(engine).ingest(event)
    return JSONResponse({"status": "ok", **result.as_dict()})


@app.get("/rotation-state")
async def rotation_state(
    product_id: str = Query(..., alias="productId"),
    variant_id: str | None = Query(None, alias="variantId"),
    shop: str | None = None,
    engine: Engine = Depends(get_engine),
) -> JSONResponse:
    product_gid = normalize_product_id(product_id)
    if product_gid is None:
        raise HTTPException(status_code=400, detail="productId is required")
    slot = SlotStore(engine).find_for_product(product_gid, normalize_variant_id(variant_id), shop)
    if slot is None:
        return JSONResponse({"slotId": None, "testId": None, "activeVariant": None, "status": None})
    return JSONResponse(
        {
            "slotId": slot.id,
            "testId": slot.test_id,
            "activeVariant": slot.active_variant,
            "status": slot.status,
            "rotating": slot.status == ACTIVE,
        }
    )


@app.post("/rotation/trigger")
async def trigger_rotation(scheduler: RotationScheduler = Depends(get_scheduler)) -> JSONResponse:
    summary = await scheduler.run_due()
    return JSONResponse(summary.as_dict())


@app.post("/rotation/slots/{slot_id}/switch")
async def switch_slot(
    slot_id: str,
    payload: SwitchRequest,
    scheduler: RotationScheduler = Depends(get_scheduler),
) -> JSONResponse:
    outcome = await scheduler.switch_now(slot_id, payload.variant.upper())
    body = outcome.as_dict()
    if outcome.entry is not None:
        body["switchedAt"] = isoformat_z(outcome.entry.switched_at)
        body["historyId"] = outcome.entry.id
    return JSONResponse(body)


@app.post("/rotation/slots/{slot_id}/pause")
async def pause_slot(slot_id: str, payload: PauseRequest | None = None, engine: Engine = Depends(get_engine)) -> JSONResponse:
    reason = payload.reason if payload else PauseRequest().reason
    return JSONResponse(slot_payload(SlotStore(engine).pause(slot_id, reason)))


@app.post("/rotation/slots/{slot_id}/resume")
async def resume_slot(slot_id: str, engine: Engine = Depends(get_engine)) -> JSONResponse:
    return JSONResponse(slot_payload(SlotStore(engine).resume(slot_id)))


@app.get("/rotation/slots/{slot_id}/history")
async def slot_history(
    slot_id: str,
    limit: int = Query(50, ge=1, le=500),
    engine: Engine = Depends(get_engine),
) -> JSONResponse:
    slot = SlotStore(engine).get(slot_id)
    entries = RotationLedger(engine).entries(slot.id, limit=limit)
    return JSONResponse(
        {
            "slot": slot_payload(slot),
            "entries": [
                {
                    "id": entry.id,
                    "switchedVariant": entry.switched_variant,
                    "triggeredBy": entry.triggered_by,
                    "switchedAt": isoformat_z(entry.switched_at),
                    "context": entry.context,
                }
                for entry in entries
            ],
        }
    )


@app.get("/tests/{test_id}/statistics")
async def test_statistics(test_id: str, engine: Engine = Depends(get_engine)) -> JSONResponse:
    return JSONResponse(AttributionEngine(engine).statistics(test_id).as_dict())


@app.post("/tests/{test_id}/reconcile")
async def reconcile_labels(test_id: str, engine: Engine = Depends(get_engine)) -> JSONResponse:
    corrected = AttributionEngine(engine).reconcile_capture_labels(test_id)
    return JSONResponse({"testId": test_id, "corrected": corrected})


@app.get("/health/rotation")
async def rotation_health(engine: Engine = Depends(get_engine)) -> JSONResponse:
    mismatches = RotationLedger(engine).consistency_report()
    return JSONResponse({"ok": not mismatches, "mismatches": mismatches}, status_code=200 if not mismatches else 503)
