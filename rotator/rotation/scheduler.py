"""Due-switch detection and the claim -> synchronize -> commit cycle.

The scheduler keeps no state between invocations. Each call claims due slots
through a conditional update, so overlapping triggers (threads, processes or
machines) never switch the same slot twice.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from rotator.alerts.notify import AlertNotifier
from rotator.catalog.base import CatalogClient
from rotator.errors import ConcurrencyConflict, PermanentValidationError, RotationError, SlotNotFound
from rotator.rotation.ledger import HistoryEntry, RotationLedger
from rotator.rotation.store import VARIANTS, ClaimLost, RotationSlot, SlotStore, opposite
from rotator.rotation.sync import MediaSynchronizer
from rotator.utils.dates import utcnow

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_FAILURES = int(os.environ.get("ROTATION_MAX_FAILURES", 5))

CatalogFactory = Callable[[str], CatalogClient]


@dataclass(slots=True)
class SwitchOutcome:
    slot_id: str
    variant: str
    ok: bool
    counts: dict[str, int] = field(default_factory=dict)
    entry: HistoryEntry | None = None
    error: RotationError | Exception | None = None
    paused: bool = False

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"slotId": self.slot_id, "variant": self.variant}
        if self.ok:
            data["counts"] = self.counts
        else:
            data["error"] = type(self.error).__name__
            data["message"] = str(self.error)
            data["paused"] = self.paused
        return data


@dataclass(slots=True)
class RotationSummary:
    processed: int = 0
    skipped: int = 0
    succeeded: list[SwitchOutcome] = field(default_factory=list)
    failed: list[SwitchOutcome] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "skipped": self.skipped,
            "succeeded": [outcome.as_dict() for outcome in self.succeeded],
            "failed": [outcome.as_dict() for outcome in self.failed],
        }


class RotationScheduler:
    def __init__(
        self,
        engine: Engine,
        catalog_factory: CatalogFactory,
        *,
        notifier: AlertNotifier | None = None,
        max_failures: int | None = None,
        clock: Callable[[], datetime] = utcnow,
        synchronizer_options: dict[str, Any] | None = None,
    ) -> None:
        self.store = SlotStore(engine)
        self.ledger = RotationLedger(engine)
        self.catalog_factory = catalog_factory
        self.notifier = notifier or AlertNotifier()
        self.max_failures = max_failures or MAX_CONSECUTIVE_FAILURES
        self.clock = clock
        self.synchronizer_options = synchronizer_options or {}
        self._catalogs: dict[str, CatalogClient] = {}

    async def run_due(self) -> RotationSummary:
        """Attempt exactly one switch for every slot that is due now."""
        started = self.clock()
        summary = RotationSummary()
        due = self.store.list_due(started)
        logger.info("Rotation tick at %s: %s slot(s) due", started.isoformat(), len(due))
        try:
            for slot in due:
                # earlier switches in this tick may have taken a while; lease from the real time
                token = self.store.claim(slot.id, self.clock(), require_due=True)
                if token is None:
                    logger.debug("Slot %s already claimed; skipping", slot.id)
                    summary.skipped += 1
                    continue
                fresh = self.store.get(slot.id)
                outcome = await self._run_to_completion(fresh, token, self._next_variant(fresh), "CRON")
                if outcome is None:
                    summary.skipped += 1
                    continue
                summary.processed += 1
                (summary.succeeded if outcome.ok else summary.failed).append(outcome)
        finally:
            await self.close()
        logger.info(
            "Rotation tick done: processed=%s skipped=%s failed=%s",
            summary.processed, summary.skipped, len(summary.failed),
        )
        return summary

    async def switch_now(self, slot_id: str, variant: str, *, trigger: str = "MANUAL") -> SwitchOutcome:
        """Operator-forced switch. Skips the due check, never the claim."""
        if variant not in VARIANTS:
            raise PermanentValidationError(f"Unknown variant {variant!r}")
        slot = self.store.get(slot_id)
        token = self.store.claim(slot.id, self.clock(), require_due=False)
        if token is None:
            raise ConcurrencyConflict(f"Slot {slot_id} is claimed by another switch or is not ACTIVE")
        try:
            outcome = await self._run_to_completion(self.store.get(slot.id), token, variant, trigger)
        finally:
            await self.close()
        if outcome is None:
            raise ConcurrencyConflict(f"Claim on slot {slot_id} was lost during the switch")
        if not outcome.ok and outcome.error is not None:
            raise outcome.error
        return outcome

    async def close(self) -> None:
        catalogs, self._catalogs = self._catalogs, {}
        for catalog in catalogs.values():
            await catalog.close()

    def _next_variant(self, slot: RotationSlot) -> str:
        """Opposite of the variant the ledger says is live."""
        current = self.ledger.timeline(slot.id).current_variant
        if current != slot.active_variant:
            logger.warning(
                "Slot %s flag says %s but its ledger says %s; rotating from the ledger",
                slot.id, slot.active_variant, current,
            )
        return opposite(current)

    async def _run_to_completion(
        self, slot: RotationSlot, token: str, target: str, trigger: str
    ) -> SwitchOutcome | None:
        # a cancelled trigger must not abandon a switch halfway through EXECUTE
        task = asyncio.ensure_future(self._attempt(slot, token, target, trigger))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            logger.warning("Trigger cancelled while slot %s was switching; waiting for it to finish", slot.id)
            await task
            raise

    async def _attempt(self, slot: RotationSlot, token: str, target: str, trigger: str) -> SwitchOutcome | None:
        try:
            synchronizer = MediaSynchronizer(self._catalog_for(slot.shop_id), **self.synchronizer_options)
            result = await synchronizer.synchronize(slot, target)
        except Exception as exc:
            return await self._fail(slot, token, target, trigger, exc)

        context = {"productId": slot.product_id, "variantId": slot.variant_id, **result.counts()}
        try:
            entry = self.store.commit_switch(
                slot,
                token,
                variant=target,
                trigger=trigger,
                switched_at=self.clock(),
                refreshed_media=result.media,
                context=context,
            )
        except ClaimLost:
            logger.error("Slot %s lost its claim before commit; leaving state for the new owner", slot.id)
            return None
        except SQLAlchemyError as exc:
            logger.error("Could not commit switch of slot %s to %s: %s", slot.id, target, exc)
            return await self._fail(slot, token, target, trigger, exc)
        return SwitchOutcome(slot_id=slot.id, variant=target, ok=True, counts=result.counts(), entry=entry)

    async def _fail(
        self, slot: RotationSlot, token: str, target: str, trigger: str, exc: Exception
    ) -> SwitchOutcome:
        if isinstance(exc, RotationError):
            level = logging.WARNING if exc.retryable else logging.ERROR
            logger.log(level, "Switch of slot %s to %s failed: %s: %s", slot.id, target, type(exc).__name__, exc)
        elif not isinstance(exc, SQLAlchemyError):
            logger.exception("Unexpected error switching slot %s to %s", slot.id, target)
        try:
            recorded = self.store.record_failure(
                slot,
                token,
                attempted_variant=target,
                trigger=trigger,
                error=exc,
                at=self.clock(),
                max_failures=self.max_failures,
                pause_now=isinstance(exc, PermanentValidationError),
            )
        except SQLAlchemyError:
            logger.exception("Could not record failed switch of slot %s; its claim expires with the lease", slot.id)
            recorded = None
        if recorded is None:
            return SwitchOutcome(slot_id=slot.id, variant=target, ok=False, error=exc)
        failures, paused = recorded
        if paused:
            logger.error("Slot %s paused after %s consecutive failure(s)", slot.id, failures)
            try:
                await self.notifier.slot_paused(self.store.get(slot.id), exc)
            except SlotNotFound:
                logger.warning("Slot %s vanished before the pause alert was sent", slot.id)
        return SwitchOutcome(slot_id=slot.id, variant=target, ok=False, error=exc, paused=paused)

    def _catalog_for(self, shop_id: str) -> CatalogClient:
        if shop_id not in self._catalogs:
            self._catalogs[shop_id] = self.catalog_factory(shop_id)
        return self._catalogs[shop_id]
