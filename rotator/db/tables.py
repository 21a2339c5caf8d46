"""Table definitions for slots, the rotation ledger and customer events."""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

rotation_slots = Table(
    "rotation_slots",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("shop_id", Text, nullable=False),
    Column("product_id", Text, nullable=False),
    Column("variant_id", Text),
    # variant_id with NULL folded to '' so the unique constraint covers product-level slots
    Column("variant_key", Text, nullable=False, default=""),
    Column("test_id", Text, nullable=False, index=True),
    Column("status", String(16), nullable=False, default="ACTIVE"),
    Column("active_variant", String(16), nullable=False, default="CONTROL"),
    Column("initial_variant", String(16), nullable=False, default="CONTROL"),
    Column("interval_minutes", Float, nullable=False),
    Column("created_at", DateTime, nullable=False),
    Column("last_switch_at", DateTime),
    Column("next_switch_due_at", DateTime),
    Column("locked_until", DateTime),
    Column("claim_token", String(32)),
    Column("consecutive_failures", Integer, nullable=False, default=0),
    Column("paused_reason", Text),
    Column("control_media", JSON, nullable=False),
    Column("test_media", JSON, nullable=False),
    UniqueConstraint("shop_id", "product_id", "variant_key", name="uq_rotation_slot_target"),
)

Index("ix_rotation_slots_due", rotation_slots.c.status, rotation_slots.c.next_switch_due_at)

rotation_history = Table(
    "rotation_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("slot_id", String(36), ForeignKey("rotation_slots.id", ondelete="CASCADE"), nullable=False),
    Column("switched_variant", String(16), nullable=False),
    Column("triggered_by", String(16), nullable=False),
    Column("switched_at", DateTime, nullable=False),
    Column("context", JSON),
)

Index("ix_rotation_history_slot_time", rotation_history.c.slot_id, rotation_history.c.switched_at)

rotation_audit = Table(
    "rotation_audit",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("slot_id", String(36), ForeignKey("rotation_slots.id", ondelete="CASCADE"), nullable=False),
    Column("attempted_variant", String(16), nullable=False),
    Column("triggered_by", String(16), nullable=False),
    Column("error_type", Text, nullable=False),
    Column("phase", Text),
    Column("message", Text),
    Column("at", DateTime, nullable=False),
)

ab_test_events = Table(
    "ab_test_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("test_id", Text, nullable=False),
    Column("session_id", Text, nullable=False),
    Column("event_type", String(16), nullable=False),
    Column("occurred_at", DateTime, nullable=False),
    Column("created_at", DateTime, nullable=False),
    Column("product_id", Text, nullable=False),
    Column("variant_id", Text),
    Column("active_case_at_capture", String(16)),
    Column("revenue", Numeric(12, 2, asdecimal=False)),
    Column("quantity", Integer),
    Column("order_id", Text),
    Column("source", String(16), nullable=False, default="pixel"),
    # NULL for ADD_TO_CART, which is never deduplicated
    Column("dedup_key", Text, unique=True),
)

Index("ix_ab_test_events_test", ab_test_events.c.test_id, ab_test_events.c.occurred_at)
