"""Persistence of rotation slots.

Every state transition is a single conditional UPDATE so that concurrent
scheduler invocations, in any process, agree on who owns a slot.
"""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping

from sqlalchemy import and_, delete, insert, or_, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from rotator.db.tables import ab_test_events, rotation_audit, rotation_history, rotation_slots
from rotator.errors import PermanentValidationError, SlotNotFound
from rotator.media.models import MediaDescriptor, dump_media, load_media
from rotator.rotation.ledger import HistoryEntry, append_entry
from rotator.utils.dates import add_minutes, utcnow
from rotator.utils.ids import normalize_product_id, normalize_variant_id

logger = logging.getLogger(__name__)

CONTROL = "CONTROL"
TEST = "TEST"
VARIANTS = (CONTROL, TEST)

ACTIVE = "ACTIVE"
PAUSED = "PAUSED"
DISABLED = "DISABLED"

DEFAULT_INTERVAL_MINUTES = float(os.environ.get("DEFAULT_INTERVAL_MINUTES", 10))
CLAIM_MINUTES = float(os.environ.get("ROTATION_CLAIM_MINUTES", 15))


def opposite(variant: str) -> str:
    return TEST if variant == CONTROL else CONTROL


@dataclass(slots=True)
class RotationSlot:
    id: str
    shop_id: str
    product_id: str
    variant_id: str | None
    test_id: str
    status: str
    active_variant: str
    initial_variant: str
    interval_minutes: float
    created_at: datetime
    last_switch_at: datetime | None
    next_switch_due_at: datetime | None
    locked_until: datetime | None = None
    consecutive_failures: int = 0
    paused_reason: str | None = None
    control_media: list[MediaDescriptor] = field(default_factory=list)
    test_media: list[MediaDescriptor] = field(default_factory=list)

    def media_for(self, variant: str) -> list[MediaDescriptor]:
        return self.control_media if variant == CONTROL else self.test_media

    @property
    def schedule_anchor(self) -> datetime:
        return self.last_switch_at or self.created_at

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> RotationSlot:
        return cls(
            id=row["id"],
            shop_id=row["shop_id"],
            product_id=row["product_id"],
            variant_id=row["variant_id"],
            test_id=row["test_id"],
            status=row["status"],
            active_variant=row["active_variant"],
            initial_variant=row["initial_variant"],
            interval_minutes=row["interval_minutes"],
            created_at=row["created_at"],
            last_switch_at=row["last_switch_at"],
            next_switch_due_at=row["next_switch_due_at"],
            locked_until=row["locked_until"],
            consecutive_failures=row["consecutive_failures"] or 0,
            paused_reason=row["paused_reason"],
            control_media=load_media(row["control_media"]),
            test_media=load_media(row["test_media"]),
        )


class SlotStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # -- lifecycle -----------------------------------------------------------------

    def create_slot(
        self,
        *,
        shop_id: str,
        product_id: str,
        test_id: str,
        control_media: Iterable[MediaDescriptor],
        test_media: Iterable[MediaDescriptor],
        variant_id: str | None = None,
        interval_minutes: float | None = None,
        active_variant: str = CONTROL,
        now: datetime | None = None,
    ) -> RotationSlot:
        interval = DEFAULT_INTERVAL_MINUTES if interval_minutes is None else interval_minutes
        _validate_interval(interval)
        if active_variant not in VARIANTS:
            raise PermanentValidationError(f"Unknown variant {active_variant!r}")
        created_at = now or utcnow()
        product_gid = normalize_product_id(product_id)
        variant_gid = normalize_variant_id(variant_id)
        row = {
            "id": uuid.uuid4().hex,
            "shop_id": shop_id,
            "product_id": product_gid,
            "variant_id": variant_gid,
            "variant_key": variant_gid or "",
            "test_id": test_id,
            "status": ACTIVE,
            "active_variant": active_variant,
            "initial_variant": active_variant,
            "interval_minutes": interval,
            "created_at": created_at,
            "last_switch_at": None,
            "next_switch_due_at": add_minutes(created_at, interval),
            "consecutive_failures": 0,
            "control_media": dump_media(control_media),
            "test_media": dump_media(test_media),
        }
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(rotation_slots).values(**row))
        except IntegrityError as exc:
            raise PermanentValidationError(
                f"A rotation slot already exists for {shop_id} {product_gid} {variant_gid or '(product)'}"
            ) from exc
        logger.info("Created rotation slot %s for test %s (%s)", row["id"], test_id, product_gid)
        return self.get(row["id"])

    def update_media(
        self,
        slot_id: str,
        *,
        control_media: Iterable[MediaDescriptor] | None = None,
        test_media: Iterable[MediaDescriptor] | None = None,
    ) -> RotationSlot:
        values: dict[str, Any] = {}
        if control_media is not None:
            values["control_media"] = dump_media(control_media)
        if test_media is not None:
            values["test_media"] = dump_media(test_media)
        if values:
            self._update(slot_id, values)
        return self.get(slot_id)

    def set_interval(self, slot_id: str, minutes: float) -> RotationSlot:
        _validate_interval(minutes)
        slot = self.get(slot_id)
        self._update(
            slot_id,
            {"interval_minutes": minutes, "next_switch_due_at": add_minutes(slot.schedule_anchor, minutes)},
        )
        return self.get(slot_id)

    def pause(self, slot_id: str, reason: str) -> RotationSlot:
        self._update(slot_id, {"status": PAUSED, "paused_reason": reason})
        logger.info("Paused slot %s: %s", slot_id, reason)
        return self.get(slot_id)

    def resume(self, slot_id: str) -> RotationSlot:
        slot = self.get(slot_id)
        self._update(
            slot_id,
            {
                "status": ACTIVE,
                "paused_reason": None,
                "consecutive_failures": 0,
                "next_switch_due_at": add_minutes(slot.schedule_anchor, slot.interval_minutes),
            },
        )
        logger.info("Resumed slot %s", slot_id)
        return self.get(slot_id)

    def delete_test(self, test_id: str) -> int:
        """Delete every slot of a test with its ledger, audit rows and events."""
        with self.engine.begin() as conn:
            slot_ids = [row[0] for row in conn.execute(select(rotation_slots.c.id).where(rotation_slots.c.test_id == test_id))]
            if slot_ids:
                conn.execute(delete(rotation_history).where(rotation_history.c.slot_id.in_(slot_ids)))
                conn.execute(delete(rotation_audit).where(rotation_audit.c.slot_id.in_(slot_ids)))
                conn.execute(delete(rotation_slots).where(rotation_slots.c.id.in_(slot_ids)))
            conn.execute(delete(ab_test_events).where(ab_test_events.c.test_id == test_id))
        logger.info("Deleted %s slots for test %s", len(slot_ids), test_id)
        return len(slot_ids)

    # -- reads ---------------------------------------------------------------------

    def get(self, slot_id: str) -> RotationSlot:
        with self.engine.connect() as conn:
            row = conn.execute(select(rotation_slots).where(rotation_slots.c.id == slot_id)).mappings().first()
        if row is None:
            raise SlotNotFound(f"Rotation slot {slot_id} not found")
        return RotationSlot.from_row(row)

    def list_slots(self, test_id: str | None = None) -> list[RotationSlot]:
        query = select(rotation_slots).order_by(rotation_slots.c.created_at)
        if test_id is not None:
            query = query.where(rotation_slots.c.test_id == test_id)
        with self.engine.connect() as conn:
            return [RotationSlot.from_row(row) for row in conn.execute(query).mappings()]

    def list_due(self, now: datetime) -> list[RotationSlot]:
        query = (
            select(rotation_slots)
            .where(
                rotation_slots.c.status == ACTIVE,
                rotation_slots.c.next_switch_due_at <= now,
                or_(rotation_slots.c.locked_until.is_(None), rotation_slots.c.locked_until <= now),
            )
            .order_by(rotation_slots.c.next_switch_due_at)
        )
        with self.engine.connect() as conn:
            return [RotationSlot.from_row(row) for row in conn.execute(query).mappings()]

    def find_for_product(
        self,
        product_id: str,
        variant_id: str | None = None,
        shop_id: str | None = None,
    ) -> RotationSlot | None:
        """Variant-level slot when one exists, otherwise the product-level slot."""
        product_gid = normalize_product_id(product_id)
        variant_gid = normalize_variant_id(variant_id)
        keys = [variant_gid, ""] if variant_gid else [""]
        query = select(rotation_slots).where(
            rotation_slots.c.product_id == product_gid,
            rotation_slots.c.variant_key.in_(keys),
            rotation_slots.c.status != DISABLED,
        )
        if shop_id:
            query = query.where(rotation_slots.c.shop_id == shop_id)
        with self.engine.connect() as conn:
            rows = [RotationSlot.from_row(row) for row in conn.execute(query).mappings()]
        return _prefer_variant(rows)

    def slot_for_event(self, test_id: str, variant_id: str | None) -> RotationSlot | None:
        variant_gid = normalize_variant_id(variant_id)
        keys = [variant_gid, ""] if variant_gid else [""]
        query = select(rotation_slots).where(
            rotation_slots.c.test_id == test_id,
            rotation_slots.c.variant_key.in_(keys),
        )
        with self.engine.connect() as conn:
            rows = [RotationSlot.from_row(row) for row in conn.execute(query).mappings()]
        return _prefer_variant(rows)

    # -- claim and commit ------------------------------------------------------------

    def claim(self, slot_id: str, now: datetime, *, require_due: bool = True) -> str | None:
        """Take the slot's lease. Returns a claim token, or None if someone else holds it."""
        token = uuid.uuid4().hex
        conditions = [
            rotation_slots.c.id == slot_id,
            rotation_slots.c.status == ACTIVE,
            or_(rotation_slots.c.locked_until.is_(None), rotation_slots.c.locked_until <= now),
        ]
        if require_due:
            conditions.append(rotation_slots.c.next_switch_due_at <= now)
        with self.engine.begin() as conn:
            result = conn.execute(
                update(rotation_slots)
                .where(and_(*conditions))
                .values(locked_until=add_minutes(now, CLAIM_MINUTES), claim_token=token)
            )
        if result.rowcount != 1:
            return None
        return token

    def release(self, slot_id: str, token: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                update(rotation_slots)
                .where(rotation_slots.c.id == slot_id, rotation_slots.c.claim_token == token)
                .values(locked_until=None, claim_token=None)
            )
        return result.rowcount == 1

    def commit_switch(
        self,
        slot: RotationSlot,
        token: str,
        *,
        variant: str,
        trigger: str,
        switched_at: datetime,
        refreshed_media: list[MediaDescriptor] | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> HistoryEntry:
        """Write the new state and its ledger entry in one transaction, or nothing."""
        values: dict[str, Any] = {
            "active_variant": variant,
            "last_switch_at": switched_at,
            "next_switch_due_at": add_minutes(switched_at, slot.interval_minutes),
            "consecutive_failures": 0,
            "locked_until": None,
            "claim_token": None,
        }
        if refreshed_media is not None:
            column = "control_media" if variant == CONTROL else "test_media"
            values[column] = dump_media(refreshed_media)
        with self.engine.begin() as conn:
            result = conn.execute(
                update(rotation_slots)
                .where(rotation_slots.c.id == slot.id, rotation_slots.c.claim_token == token)
                .values(**values)
            )
            if result.rowcount != 1:
                raise ClaimLost(f"Claim on slot {slot.id} was lost before commit")
            entry = append_entry(conn, slot.id, variant, trigger, context=context, switched_at=switched_at)
        logger.info("Slot %s now shows %s (trigger=%s)", slot.id, variant, trigger)
        return entry

    def record_failure(
        self,
        slot: RotationSlot,
        token: str,
        *,
        attempted_variant: str,
        trigger: str,
        error: Exception,
        at: datetime,
        max_failures: int,
        pause_now: bool = False,
    ) -> tuple[int, bool] | None:
        """Count a failed attempt and release the claim. Schedule fields are left alone.

        Returns the new consecutive failure count and whether the slot was paused,
        or None when ``token`` no longer owns the slot and nothing was recorded.
        """
        owned = and_(rotation_slots.c.id == slot.id, rotation_slots.c.claim_token == token)
        with self.engine.begin() as conn:
            result = conn.execute(
                update(rotation_slots)
                .where(owned)
                .values(consecutive_failures=rotation_slots.c.consecutive_failures + 1)
            )
            if result.rowcount != 1:
                logger.warning("Slot %s changed owner before its failure was recorded", slot.id)
                return None
            failures = conn.execute(select(rotation_slots.c.consecutive_failures).where(owned)).scalar_one()
            paused = pause_now or failures >= max_failures
            values: dict[str, Any] = {"locked_until": None, "claim_token": None}
            if paused:
                values["status"] = PAUSED
                values["paused_reason"] = _failure_reason(error, failures)
            conn.execute(update(rotation_slots).where(owned).values(**values))
            _insert_audit(conn, slot.id, attempted_variant, trigger, error, at)
        return failures, paused

    def _update(self, slot_id: str, values: Mapping[str, Any]) -> None:
        with self.engine.begin() as conn:
            result = conn.execute(update(rotation_slots).where(rotation_slots.c.id == slot_id).values(**values))
        if result.rowcount != 1:
            raise SlotNotFound(f"Rotation slot {slot_id} not found")


class ClaimLost(RuntimeError):
    pass


def _validate_interval(minutes: float) -> None:
    if minutes is None or minutes <= 0:
        raise PermanentValidationError("intervalMinutes must be positive")


def _prefer_variant(rows: list[RotationSlot]) -> RotationSlot | None:
    if not rows:
        return None
    rows.sort(key=lambda slot: (slot.variant_id is None, slot.status != ACTIVE, slot.created_at))
    return rows[0]


def _failure_reason(error: Exception, failures: int) -> str:
    return f"{type(error).__name__} after {failures} consecutive failure(s): {error}"


def _insert_audit(conn: Connection, slot_id: str, variant: str, trigger: str, error: Exception, at: datetime) -> None:
    conn.execute(
        insert(rotation_audit).values(
            slot_id=slot_id,
            attempted_variant=variant,
            triggered_by=trigger,
            error_type=type(error).__name__,
            phase=getattr(error, "phase", None),
            message=str(error)[:2000],
            at=at,
        )
    )
