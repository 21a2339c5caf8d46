"""Rotation job entry points."""

from __future__ import annotations

import logging
from typing import Any

from dotenv import load_dotenv
from sqlalchemy.engine import Engine

from rotator.catalog.shopify import ShopifyCatalogClient
from rotator.db.session import create_engine_from_env
from rotator.rotation.ledger import RotationLedger
from rotator.rotation.scheduler import RotationScheduler

logger = logging.getLogger(__name__)


async def run_rotations(engine: Engine | None = None) -> dict[str, Any]:
    load_dotenv()
    engine = engine or create_engine_from_env()
    scheduler = RotationScheduler(engine, ShopifyCatalogClient.from_env)
    summary = await scheduler.run_due()
    for outcome in summary.failed:
        logger.warning("Slot %s not switched: %s", outcome.slot_id, outcome.error)
    return summary.as_dict()


def check_consistency(engine: Engine | None = None) -> list[dict[str, Any]]:
    load_dotenv()
    engine = engine or create_engine_from_env()
    mismatches = RotationLedger(engine).consistency_report()
    if mismatches:
        logger.error("%s slot(s) disagree with the rotation ledger", len(mismatches))
    return mismatches
