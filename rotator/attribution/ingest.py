"""Validation, attribution and deduplication of incoming customer events."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import insert, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from rotator.db.tables import ab_test_events
from rotator.errors import EventValidationError
from rotator.rotation.ledger import RotationLedger
from rotator.rotation.store import CONTROL, TEST, SlotStore
from rotator.utils.dates import to_utc_naive, utcnow
from rotator.utils.ids import normalize_product_id, normalize_variant_id

logger = logging.getLogger(__name__)

IMPRESSION = "IMPRESSION"
ADD_TO_CART = "ADD_TO_CART"
PURCHASE = "PURCHASE"
EVENT_TYPES = (IMPRESSION, ADD_TO_CART, PURCHASE)

CASE_ALIASES = {
    "CONTROL": CONTROL,
    "BASE": CONTROL,
    "A": CONTROL,
    "TEST": TEST,
    "B": TEST,
}


@dataclass(slots=True)
class EventInput:
    test_id: str
    session_id: str
    event_type: str
    product_id: str
    occurred_at: datetime
    variant_id: str | None = None
    revenue: float | None = None
    quantity: int | None = None
    order_id: str | None = None
    active_case: str | None = None
    source: str = "pixel"


@dataclass(slots=True)
class IngestResult:
    event_id: int
    deduplicated: bool
    attributed_variant: str | None
    note: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "eventId": self.event_id,
            "deduplicated": self.deduplicated,
            "attributedVariant": self.attributed_variant,
            "note": self.note,
        }


def normalize_case(value: str | None) -> str | None:
    if value is None:
        return None
    return CASE_ALIASES.get(str(value).strip().upper())


def validate_event(event: EventInput) -> EventInput:
    """Check required fields for the event type and normalize identifiers."""
    if event.event_type not in EVENT_TYPES:
        raise EventValidationError(f"Unknown eventType {event.event_type!r}")
    for name in ("test_id", "session_id", "product_id"):
        if not (getattr(event, name) or "").strip():
            raise EventValidationError(f"{name} is required")
    if event.occurred_at is None:
        raise EventValidationError("occurred_at is required")
    if event.event_type == PURCHASE:
        if event.revenue is None:
            raise EventValidationError("revenue is required for PURCHASE events")
        if event.revenue < 0:
            raise EventValidationError("revenue must not be negative")
    elif event.order_id:
        raise EventValidationError("orderId is only accepted on PURCHASE events")
    quantity = event.quantity
    if quantity is not None and quantity < 1:
        raise EventValidationError("quantity must be at least 1")
    if quantity is None and event.event_type == ADD_TO_CART:
        quantity = 1
    if event.active_case is not None and normalize_case(event.active_case) is None:
        raise EventValidationError(f"Unknown activeCase {event.active_case!r}")
    return EventInput(
        test_id=event.test_id.strip(),
        session_id=event.session_id.strip(),
        event_type=event.event_type,
        product_id=normalize_product_id(event.product_id),
        occurred_at=to_utc_naive(event.occurred_at),
        variant_id=normalize_variant_id(event.variant_id),
        revenue=event.revenue if event.event_type == PURCHASE else None,
        quantity=quantity,
        order_id=str(event.order_id) if event.order_id else None,
        active_case=normalize_case(event.active_case),
        source=event.source,
    )


def dedup_key(event: EventInput, attributed_variant: str | None) -> str | None:
    if event.event_type == IMPRESSION:
        return f"impression:{event.test_id}:{event.session_id}:{attributed_variant or 'UNATTRIBUTED'}"
    if event.event_type == PURCHASE:
        if event.order_id:
            return f"order:{event.order_id}"
        return f"purchase:{event.test_id}:{event.session_id}"
    return None


class EventIngestor:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self.store = SlotStore(engine)
        self.ledger = RotationLedger(engine)

    def attribute(self, event: EventInput) -> str | None:
        """Ledger variant at ``occurred_at``; the captured label only when no slot matches."""
        slot = self.store.slot_for_event(event.test_id, event.variant_id)
        if slot is None:
            return event.active_case
        variant = self.ledger.variant_at(slot.id, event.occurred_at)
        if event.active_case and event.active_case != variant:
            logger.debug(
                "Captured label %s for session %s overridden by ledger variant %s",
                event.active_case, event.session_id, variant,
            )
        return variant

    def ingest(self, raw: EventInput) -> IngestResult:
        event = validate_event(raw)
        variant = self.attribute(event)
        key = dedup_key(event, variant)
        if key is not None:
            existing = self._find(key)
            if existing is not None:
                return self._duplicate(existing, variant, key)
        row = {
            "test_id": event.test_id,
            "session_id": event.session_id,
            "event_type": event.event_type,
            "occurred_at": event.occurred_at,
            "created_at": utcnow(),
            "product_id": event.product_id,
            "variant_id": event.variant_id,
            "active_case_at_capture": event.active_case,
            "revenue": event.revenue,
            "quantity": event.quantity,
            "order_id": event.order_id,
            "source": event.source,
            "dedup_key": key,
        }
        try:
            with self.engine.begin() as conn:
                result = conn.execute(insert(ab_test_events).values(**row))
                event_id = result.inserted_primary_key[0]
        except IntegrityError:
            # lost a race with an identical event
            existing = self._find(key) if key else None
            if existing is None:
                raise
            return self._duplicate(existing, variant, key)
        logger.info("Stored %s %s for test %s (%s)", event.event_type, event_id, event.test_id, variant)
        return IngestResult(event_id=event_id, deduplicated=False, attributed_variant=variant)

    def _find(self, key: str) -> int | None:
        with self.engine.connect() as conn:
            return conn.execute(
                select(ab_test_events.c.id).where(ab_test_events.c.dedup_key == key)
            ).scalar_one_or_none()

    def _duplicate(self, event_id: int, variant: str | None, key: str) -> IngestResult:
        logger.info("Duplicate event %s matched existing %s", key, event_id)
        return IngestResult(
            event_id=event_id,
            deduplicated=True,
            attributed_variant=variant,
            note=f"duplicate of event {event_id}",
        )
