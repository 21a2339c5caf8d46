"""Turn Shopify order-paid payloads into PURCHASE events."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping

from rotator.attribution.ingest import PURCHASE, EventInput
from rotator.rotation.store import ACTIVE, SlotStore
from rotator.utils.dates import parse_timestamp, utcnow
from rotator.utils.ids import normalize_product_id, normalize_variant_id

logger = logging.getLogger(__name__)

AB_ATTRIBUTE = "ModelSwapAB"


@dataclass(slots=True)
class AbMeta:
    test_id: str | None
    session_id: str | None
    variant: str | None
    product_id: str | None


def parse_ab_attribute(value: Any) -> AbMeta | None:
    if not value:
        return None
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed %s attribute", AB_ATTRIBUTE)
            return None
    if not isinstance(value, Mapping):
        return None
    return AbMeta(
        test_id=value.get("testId"),
        session_id=value.get("sessionId"),
        variant=value.get("variant"),
        product_id=value.get("productId"),
    )


def order_totals(line_items: list[Mapping[str, Any]]) -> tuple[float, int]:
    revenue = 0.0
    quantity = 0
    for item in line_items:
        try:
            price = float(item.get("price") or 0)
            count = int(item.get("quantity") or 0)
        except (TypeError, ValueError):
            continue
        revenue += price * count
        quantity += count
    return round(revenue, 2), quantity


def purchase_from_order(payload: Mapping[str, Any], store: SlotStore, shop_id: str | None = None) -> EventInput | None:
    """Build a PURCHASE event, or None when the order cannot be tied to a running test."""
    order_id = str(payload["id"]) if payload.get("id") is not None else None
    attributes = payload.get("note_attributes") or []
    raw_meta = next((attr.get("value") for attr in attributes if attr.get("name") == AB_ATTRIBUTE), None)
    meta = parse_ab_attribute(raw_meta)
    line_items = [item for item in payload.get("line_items") or [] if isinstance(item, Mapping)]
    first_item = line_items[0] if line_items else {}

    product_id = normalize_product_id((meta and meta.product_id) or first_item.get("product_id"))
    variant_id = normalize_variant_id(first_item.get("variant_id"))
    test_id = meta.test_id if meta else None
    if not test_id and product_id:
        slot = store.find_for_product(product_id, variant_id, shop_id)
        if slot is not None and slot.status == ACTIVE:
            test_id = slot.test_id
    if not test_id or not product_id:
        logger.info("Order %s has no trackable test; ignoring", order_id)
        return None

    revenue, quantity = order_totals(line_items)
    timestamp = payload.get("processed_at") or payload.get("created_at")
    occurred_at = parse_timestamp(timestamp) if timestamp else utcnow()
    return EventInput(
        test_id=test_id,
        session_id=(meta and meta.session_id) or f"order:{order_id or 'unknown'}",
        event_type=PURCHASE,
        product_id=product_id,
        occurred_at=occurred_at,
        variant_id=variant_id,
        revenue=revenue,
        quantity=quantity or None,
        order_id=order_id,
        active_case=meta.variant if meta else None,
        source="webhook",
    )
