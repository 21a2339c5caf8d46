"""Append-only rotation history, the timeline attribution is reconstructed from."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Mapping, Sequence

import numpy as np
from sqlalchemy import insert, select
from sqlalchemy.engine import Connection, Engine

from rotator.db.tables import rotation_history, rotation_slots
from rotator.errors import SlotNotFound
from rotator.utils.dates import utcnow

logger = logging.getLogger(__name__)

TRIGGERS = ("CRON", "MANUAL", "ROLLBACK")


@dataclass(slots=True)
class HistoryEntry:
    id: int
    slot_id: str
    switched_variant: str
    triggered_by: str
    switched_at: datetime
    context: dict[str, Any] | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> HistoryEntry:
        return cls(
            id=row["id"],
            slot_id=row["slot_id"],
            switched_variant=row["switched_variant"],
            triggered_by=row["triggered_by"],
            switched_at=row["switched_at"],
            context=row["context"],
        )


class Timeline:
    """Switches of one slot ordered by time, plus the variant shown before the first."""

    def __init__(self, initial_variant: str, entries: Iterable[HistoryEntry]) -> None:
        self.initial_variant = initial_variant
        # equal timestamps keep insertion order, so the later row wins
        self.entries = sorted(entries, key=lambda entry: (entry.switched_at, entry.id))
        self._times = np.array([entry.switched_at for entry in self.entries], dtype="datetime64[us]")

    def __len__(self) -> int:
        return len(self.entries)

    def variant_at(self, at: datetime) -> str:
        """Variant of the last switch at or before ``at``; the initial variant before any switch."""
        index = int(np.searchsorted(self._times, np.datetime64(at, "us"), side="right"))
        if index == 0:
            return self.initial_variant
        return self.entries[index - 1].switched_variant

    @property
    def latest(self) -> HistoryEntry | None:
        return self.entries[-1] if self.entries else None

    @property
    def current_variant(self) -> str:
        latest = self.latest
        return latest.switched_variant if latest else self.initial_variant


def append_entry(
    conn: Connection,
    slot_id: str,
    variant: str,
    trigger: str,
    *,
    context: Mapping[str, Any] | None = None,
    switched_at: datetime | None = None,
) -> HistoryEntry:
    """Insert one ledger row inside the caller's transaction."""
    if trigger not in TRIGGERS:
        raise ValueError(f"Unknown trigger {trigger!r}")
    values = {
        "slot_id": slot_id,
        "switched_variant": variant,
        "triggered_by": trigger,
        "switched_at": switched_at or utcnow(),
        "context": dict(context) if context else None,
    }
    result = conn.execute(insert(rotation_history).values(**values))
    return HistoryEntry(id=result.inserted_primary_key[0], **values)


class RotationLedger:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def append_entry(
        self,
        slot_id: str,
        variant: str,
        trigger: str,
        context: Mapping[str, Any] | None = None,
        *,
        switched_at: datetime | None = None,
    ) -> HistoryEntry:
        with self.engine.begin() as conn:
            return append_entry(conn, slot_id, variant, trigger, context=context, switched_at=switched_at)

    def entries(self, slot_id: str, limit: int = 50) -> list[HistoryEntry]:
        """Most recent entries first."""
        query = (
            select(rotation_history)
            .where(rotation_history.c.slot_id == slot_id)
            .order_by(rotation_history.c.switched_at.desc(), rotation_history.c.id.desc())
            .limit(limit)
        )
        with self.engine.connect() as conn:
            return [HistoryEntry.from_row(row) for row in conn.execute(query).mappings()]

    def timeline(self, slot_id: str) -> Timeline:
        with self.engine.connect() as conn:
            initial = conn.execute(
                select(rotation_slots.c.initial_variant).where(rotation_slots.c.id == slot_id)
            ).scalar_one_or_none()
            if initial is None:
                raise SlotNotFound(f"Rotation slot {slot_id} not found")
            rows = conn.execute(select(rotation_history).where(rotation_history.c.slot_id == slot_id)).mappings()
            return Timeline(initial, [HistoryEntry.from_row(row) for row in rows])

    def timelines(self, slot_ids: Sequence[str]) -> dict[str, Timeline]:
        if not slot_ids:
            return {}
        with self.engine.connect() as conn:
            initials = dict(
                conn.execute(
                    select(rotation_slots.c.id, rotation_slots.c.initial_variant).where(rotation_slots.c.id.in_(slot_ids))
                ).all()
            )
            grouped: dict[str, list[HistoryEntry]] = {slot_id: [] for slot_id in initials}
            rows = conn.execute(select(rotation_history).where(rotation_history.c.slot_id.in_(list(initials)))).mappings()
            for row in rows:
                grouped[row["slot_id"]].append(HistoryEntry.from_row(row))
        return {slot_id: Timeline(initials[slot_id], grouped[slot_id]) for slot_id in initials}

    def variant_at(self, slot_id: str, at: datetime) -> str:
        return self.timeline(slot_id).variant_at(at)

    def consistency_report(self) -> list[dict[str, Any]]:
        """Slots whose cached ``active_variant`` disagrees with the ledger."""
        with self.engine.connect() as conn:
            slots = conn.execute(
                select(rotation_slots.c.id, rotation_slots.c.active_variant, rotation_slots.c.status)
            ).all()
        timelines = self.timelines([row.id for row in slots])
        mismatches = []
        for row in slots:
            ledger_variant = timelines[row.id].current_variant
            if ledger_variant != row.active_variant:
                logger.error(
                    "Slot %s cached variant %s disagrees with ledger %s", row.id, row.active_variant, ledger_variant
                )
                mismatches.append(
                    {
                        "slotId": row.id,
                        "status": row.status,
                        "activeVariant": row.active_variant,
                        "ledgerVariant": ledger_variant,
                    }
                )
        return mismatches
