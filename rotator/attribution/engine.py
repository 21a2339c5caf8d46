"""Per-variant statistics rebuilt from raw events and the rotation ledger.

Events are attributed by replaying the ledger at ``occurred_at``; the label a
client captured is used only when the event matches no slot.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping

from sqlalchemy import select, update
from sqlalchemy.engine import Engine

from rotator.attribution.ingest import ADD_TO_CART, IMPRESSION, PURCHASE
from rotator.attribution.significance import CONFIDENCE_THRESHOLD, lift, safe_rate, two_proportion_z_test
from rotator.db.tables import ab_test_events
from rotator.rotation.ledger import RotationLedger, Timeline
from rotator.rotation.store import CONTROL, TEST, RotationSlot, SlotStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StoredEvent:
    id: int
    test_id: str
    session_id: str
    event_type: str
    occurred_at: datetime
    created_at: datetime
    product_id: str
    variant_id: str | None
    active_case_at_capture: str | None
    revenue: float | None
    quantity: int | None
    order_id: str | None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> StoredEvent:
        return cls(
            id=row["id"],
            test_id=row["test_id"],
            session_id=row["session_id"],
            event_type=row["event_type"],
            occurred_at=row["occurred_at"],
            created_at=row["created_at"],
            product_id=row["product_id"],
            variant_id=row["variant_id"],
            active_case_at_capture=row["active_case_at_capture"],
            revenue=row["revenue"],
            quantity=row["quantity"],
            order_id=row["order_id"],
        )


@dataclass(slots=True)
class AttributedEvent:
    event: StoredEvent
    variant: str | None
    from_ledger: bool


@dataclass(slots=True)
class VariantStats:
    impressions: int = 0
    add_to_carts: int = 0
    purchases: int = 0
    revenue: float = 0.0
    conversion_rate: float = 0.0
    add_to_cart_rate: float = 0.0

    def finalize(self) -> None:
        self.revenue = round(self.revenue, 2)
        self.conversion_rate = safe_rate(self.purchases, self.impressions)
        self.add_to_cart_rate = safe_rate(self.add_to_carts, self.impressions)

    def as_dict(self) -> dict[str, Any]:
        return {
            "impressions": self.impressions,
            "addToCarts": self.add_to_carts,
            "purchases": self.purchases,
            "revenue": self.revenue,
            "conversionRate": self.conversion_rate,
            "addToCartRate": self.add_to_cart_rate,
        }


@dataclass(slots=True)
class ExperimentStatistics:
    test_id: str
    control: VariantStats
    test: VariantStats
    lift: float = 0.0
    z_score: float = 0.0
    p_value: float = 1.0
    confidence: float = 0.0
    is_significant: bool = False
    winner: str | None = None
    unattributed: int = 0
    duplicates_dropped: int = 0
    label_overrides: int = 0

    @property
    def sample_size(self) -> int:
        return self.control.impressions + self.test.impressions

    def as_dict(self) -> dict[str, Any]:
        return {
            "testId": self.test_id,
            "control": self.control.as_dict(),
            "test": self.test.as_dict(),
            "lift": self.lift,
            "zScore": self.z_score,
            "pValue": self.p_value,
            "confidence": self.confidence,
            "isSignificant": self.is_significant,
            "winner": self.winner,
            "sampleSize": self.sample_size,
            "unattributed": self.unattributed,
            "duplicatesDropped": self.duplicates_dropped,
            "labelOverrides": self.label_overrides,
        }


@dataclass(slots=True)
class SlotIndex:
    """Resolves the slot that governs an event: variant-level first, then product-level."""

    by_variant: dict[str, RotationSlot] = field(default_factory=dict)
    product_level: RotationSlot | None = None

    @classmethod
    def from_slots(cls, slots: Iterable[RotationSlot]) -> SlotIndex:
        index = cls()
        for slot in slots:
            if slot.variant_id:
                index.by_variant[slot.variant_id] = slot
            elif index.product_level is None:
                index.product_level = slot
        return index

    def slot_for(self, variant_id: str | None) -> RotationSlot | None:
        if variant_id and variant_id in self.by_variant:
            return self.by_variant[variant_id]
        return self.product_level


def attribute_events(
    events: Iterable[StoredEvent],
    slots: SlotIndex,
    timelines: Mapping[str, Timeline],
) -> list[AttributedEvent]:
    attributed = []
    for event in events:
        slot = slots.slot_for(event.variant_id)
        if slot is not None and slot.id in timelines:
            variant = timelines[slot.id].variant_at(event.occurred_at)
            attributed.append(AttributedEvent(event=event, variant=variant, from_ledger=True))
        else:
            attributed.append(AttributedEvent(event=event, variant=event.active_case_at_capture, from_ledger=False))
    return attributed


def deduplicate(events: Iterable[AttributedEvent]) -> tuple[list[AttributedEvent], int]:
    """Apply the per-type dedup rules; the earliest created record wins."""
    ordered = sorted(events, key=lambda item: (item.event.created_at, item.event.id))
    seen_impressions: set[tuple[str, str, str | None]] = set()
    seen_purchases: set[tuple[str, ...]] = set()
    kept: list[AttributedEvent] = []
    dropped = 0
    for item in ordered:
        event = item.event
        if event.event_type == IMPRESSION:
            key = (event.test_id, event.session_id, item.variant)
            if key in seen_impressions:
                dropped += 1
                continue
            seen_impressions.add(key)
        elif event.event_type == PURCHASE:
            purchase_key = ("order", event.order_id) if event.order_id else ("session", event.test_id, event.session_id)
            if purchase_key in seen_purchases:
                dropped += 1
                continue
            seen_purchases.add(purchase_key)
        kept.append(item)
    return kept, dropped


def aggregate(test_id: str, events: Iterable[AttributedEvent]) -> ExperimentStatistics:
    stats = {CONTROL: VariantStats(), TEST: VariantStats()}
    unattributed = 0
    overrides = 0
    for item in events:
        bucket = stats.get(item.variant)
        if bucket is None:
            unattributed += 1
            continue
        label = item.event.active_case_at_capture
        if item.from_ledger and label and label != item.variant:
            overrides += 1
        if item.event.event_type == IMPRESSION:
            bucket.impressions += 1
        elif item.event.event_type == ADD_TO_CART:
            bucket.add_to_carts += 1
        elif item.event.event_type == PURCHASE:
            bucket.purchases += 1
            bucket.revenue += float(item.event.revenue or 0)
    for bucket in stats.values():
        bucket.finalize()
    control, test = stats[CONTROL], stats[TEST]
    significance = two_proportion_z_test(control.purchases, control.impressions, test.purchases, test.impressions)
    winner = None
    if significance.is_significant:
        if test.conversion_rate > control.conversion_rate:
            winner = TEST
        elif control.conversion_rate > test.conversion_rate:
            winner = CONTROL
    return ExperimentStatistics(
        test_id=test_id,
        control=control,
        test=test,
        lift=lift(test.conversion_rate, control.conversion_rate),
        z_score=significance.z_score,
        p_value=significance.p_value,
        confidence=significance.confidence,
        is_significant=significance.confidence >= CONFIDENCE_THRESHOLD,
        winner=winner,
        unattributed=unattributed,
        label_overrides=overrides,
    )


class AttributionEngine:
    """Read-only over slots and the ledger; writes only label corrections."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self.store = SlotStore(engine)
        self.ledger = RotationLedger(engine)

    def load_events(self, test_id: str) -> list[StoredEvent]:
        query = (
            select(ab_test_events)
            .where(ab_test_events.c.test_id == test_id)
            .order_by(ab_test_events.c.created_at, ab_test_events.c.id)
        )
        with self.engine.connect() as conn:
            return [StoredEvent.from_row(row) for row in conn.execute(query).mappings()]

    def attributed_events(self, test_id: str) -> list[AttributedEvent]:
        slots = self.store.list_slots(test_id)
        timelines = self.ledger.timelines([slot.id for slot in slots])
        return attribute_events(self.load_events(test_id), SlotIndex.from_slots(slots), timelines)

    def statistics(self, test_id: str) -> ExperimentStatistics:
        kept, dropped = deduplicate(self.attributed_events(test_id))
        stats = aggregate(test_id, kept)
        stats.duplicates_dropped = dropped
        logger.info(
            "Statistics for test %s: control=%s test=%s lift=%.4f",
            test_id, stats.control.as_dict(), stats.test.as_dict(), stats.lift,
        )
        return stats

    def reconcile_capture_labels(self, test_id: str) -> int:
        """Rewrite captured labels that disagree with the ledger. Safe to repeat."""
        corrections = [
            (item.event.id, item.variant)
            for item in self.attributed_events(test_id)
            if item.from_ledger and item.variant != item.event.active_case_at_capture
        ]
        if not corrections:
            return 0
        with self.engine.begin() as conn:
            for event_id, variant in corrections:
                conn.execute(
                    update(ab_test_events)
                    .where(ab_test_events.c.id == event_id)
                    .values(active_case_at_capture=variant)
                )
        logger.info("Reconciled %s captured labels for test %s", len(corrections), test_id)
        return len(corrections)
