import asyncio
import logging
from datetime import datetime

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError

from rotator.db.tables import rotation_audit, rotation_history, rotation_slots
from rotator.errors import ConcurrencyConflict, RollbackRequired, TransientRemoteError
from rotator.rotation.ledger import RotationLedger
from rotator.rotation.scheduler import RotationScheduler
from rotator.rotation.store import ACTIVE, CONTROL, PAUSED, TEST

from conftest import A, B, D, FakeCatalog, media


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def make_scheduler(engine, catalog, clock, notifier=None, **kwargs):
    return RotationScheduler(
        engine,
        lambda shop_id: catalog,
        notifier=notifier,
        clock=clock,
        synchronizer_options={"retry_delay": 0, "attempts": 2},
        **kwargs,
    )


def history_count(engine):
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(rotation_history)).scalar_one()


@pytest.mark.asyncio
async def test_due_slot_switches_and_reschedules(engine, store, make_slot, notifier):
    # 10:00 switch to CONTROL, then 11:05 -> TEST with the next switch at 12:05
    slot = make_slot(active_variant=TEST, now=datetime(2024, 5, 1, 9, 0))
    catalog = FakeCatalog(gallery_urls=[A, D])
    clock = Clock(datetime(2024, 5, 1, 10, 0))
    scheduler = make_scheduler(engine, catalog, clock, notifier)

    first = await scheduler.run_due()
    assert [outcome.variant for outcome in first.succeeded] == [CONTROL]

    clock.now = datetime(2024, 5, 1, 11, 5)
    summary = await scheduler.run_due()

    assert summary.processed == 1
    refreshed = store.get(slot.id)
    assert refreshed.active_variant == TEST
    assert refreshed.last_switch_at == datetime(2024, 5, 1, 11, 5)
    assert refreshed.next_switch_due_at == datetime(2024, 5, 1, 12, 5)
    assert refreshed.next_switch_due_at > refreshed.last_switch_at
    assert refreshed.locked_until is None
    latest = RotationLedger(engine).entries(slot.id, limit=1)[0]
    assert latest.switched_variant == refreshed.active_variant
    assert latest.triggered_by == "CRON"


@pytest.mark.asyncio
async def test_slot_not_due_is_left_alone(engine, store, make_slot, notifier):
    slot = make_slot()
    catalog = FakeCatalog(gallery_urls=[A, B])
    scheduler = make_scheduler(engine, catalog, Clock(datetime(2024, 5, 1, 9, 30)), notifier)

    summary = await scheduler.run_due()

    assert summary.processed == 0
    assert catalog.calls == []
    assert store.get(slot.id).active_variant == CONTROL


@pytest.mark.asyncio
async def test_overlapping_triggers_switch_once(engine, store, make_slot, notifier):
    slot = make_slot()
    catalog = FakeCatalog(gallery_urls=[A, B])
    clock = Clock(datetime(2024, 5, 1, 10, 1))
    first = make_scheduler(engine, catalog, clock, notifier)
    second = make_scheduler(engine, catalog, clock, notifier)

    results = await asyncio.gather(first.run_due(), second.run_due())
    again = await first.run_due()

    assert sum(summary.processed for summary in results) == 1
    assert again.processed == 0
    assert history_count(engine) == 1
    assert store.get(slot.id).active_variant == TEST


@pytest.mark.asyncio
async def test_failed_switch_leaves_state_untouched(engine, store, make_slot, notifier):
    slot = make_slot()
    catalog = FakeCatalog(gallery_urls=[A, B])
    catalog.fail("upload_media", TransientRemoteError("503 from catalog"))
    scheduler = make_scheduler(engine, catalog, Clock(datetime(2024, 5, 1, 10, 1)), notifier)

    summary = await scheduler.run_due()

    assert len(summary.failed) == 1
    refreshed = store.get(slot.id)
    assert refreshed.active_variant == CONTROL
    assert refreshed.last_switch_at is None
    assert refreshed.next_switch_due_at == slot.next_switch_due_at
    assert refreshed.consecutive_failures == 1
    assert refreshed.locked_until is None
    assert history_count(engine) == 0
    with engine.connect() as conn:
        audit = conn.execute(select(rotation_audit)).mappings().one()
    assert audit["error_type"] == "TransientRemoteError"
    assert audit["attempted_variant"] == TEST


@pytest.mark.asyncio
async def test_verify_failure_keeps_pre_switch_state(engine, store, make_slot, notifier):
    slot = make_slot()
    catalog = FakeCatalog(gallery_urls=[A, B])
    catalog.dropped_urls.add(D)
    scheduler = make_scheduler(engine, catalog, Clock(datetime(2024, 5, 1, 10, 1)), notifier)

    summary = await scheduler.run_due()

    assert isinstance(summary.failed[0].error, RollbackRequired)
    refreshed = store.get(slot.id)
    assert refreshed.active_variant == CONTROL
    assert refreshed.last_switch_at is None
    assert history_count(engine) == 0


@pytest.mark.asyncio
async def test_repeated_failures_pause_slot_and_alert(engine, store, make_slot, notifier):
    slot = make_slot()
    catalog = FakeCatalog(gallery_urls=[A, B])
    catalog.fail("fetch_media", TransientRemoteError("catalog down"))
    scheduler = make_scheduler(engine, catalog, Clock(datetime(2024, 5, 1, 10, 1)), notifier, max_failures=5)

    for _ in range(5):
        await scheduler.run_due()
    after_pause = await scheduler.run_due()

    refreshed = store.get(slot.id)
    assert refreshed.status == PAUSED
    assert refreshed.consecutive_failures == 5
    assert "TransientRemoteError" in refreshed.paused_reason
    assert notifier.paused == [(slot.id, "TransientRemoteError")]
    assert after_pause.processed == 0


@pytest.mark.asyncio
async def test_invalid_media_pauses_immediately(engine, store, make_slot, notifier):
    slot = make_slot(test_media=[media("not-a-url")])
    catalog = FakeCatalog(gallery_urls=[A, B])
    scheduler = make_scheduler(engine, catalog, Clock(datetime(2024, 5, 1, 10, 1)), notifier)

    await scheduler.run_due()

    assert store.get(slot.id).status == PAUSED
    assert catalog.calls == []


@pytest.mark.asyncio
async def test_success_resets_failure_counter(engine, store, make_slot, notifier):
    slot = make_slot()
    catalog = FakeCatalog(gallery_urls=[A, B])
    catalog.fail("upload_media", TransientRemoteError("blip"), times=2)
    scheduler = make_scheduler(engine, catalog, Clock(datetime(2024, 5, 1, 10, 1)), notifier)

    await scheduler.run_due()
    assert store.get(slot.id).consecutive_failures == 1
    await scheduler.run_due()

    refreshed = store.get(slot.id)
    assert refreshed.active_variant == TEST
    assert refreshed.consecutive_failures == 0


@pytest.mark.asyncio
async def test_manual_switch_skips_due_check(engine, store, make_slot, notifier):
    slot = make_slot()
    catalog = FakeCatalog(gallery_urls=[A, B])
    scheduler = make_scheduler(engine, catalog, Clock(datetime(2024, 5, 1, 9, 15)), notifier)

    outcome = await scheduler.switch_now(slot.id, TEST)

    assert outcome.ok
    assert outcome.entry.triggered_by == "MANUAL"
    refreshed = store.get(slot.id)
    assert refreshed.active_variant == TEST
    assert refreshed.next_switch_due_at == datetime(2024, 5, 1, 10, 15)


@pytest.mark.asyncio
async def test_manual_switch_respects_existing_claim(engine, store, make_slot, notifier):
    slot = make_slot()
    now = datetime(2024, 5, 1, 9, 15)
    assert store.claim(slot.id, now, require_due=False) is not None
    scheduler = make_scheduler(engine, FakeCatalog(gallery_urls=[A, B]), Clock(now), notifier)

    with pytest.raises(ConcurrencyConflict):
        await scheduler.switch_now(slot.id, TEST)
    assert history_count(engine) == 0


@pytest.mark.asyncio
async def test_expired_claim_can_be_taken_over(engine, store, make_slot, notifier):
    slot = make_slot()
    assert store.claim(slot.id, datetime(2024, 5, 1, 10, 0)) is not None
    catalog = FakeCatalog(gallery_urls=[A, B])
    scheduler = make_scheduler(engine, catalog, Clock(datetime(2024, 5, 1, 10, 20)), notifier)

    summary = await scheduler.run_due()

    assert summary.processed == 1
    assert store.get(slot.id).active_variant == TEST


@pytest.mark.asyncio
async def test_cancelled_trigger_lets_switch_finish(engine, store, make_slot, notifier):
    slot = make_slot()
    catalog = FakeCatalog(gallery_urls=[A, B])
    catalog.gate = asyncio.Event()
    scheduler = make_scheduler(engine, catalog, Clock(datetime(2024, 5, 1, 9, 15)), notifier)

    runner = asyncio.create_task(scheduler.switch_now(slot.id, TEST))
    await catalog.entered.wait()
    runner.cancel()
    await asyncio.sleep(0)
    catalog.gate.set()

    with pytest.raises(asyncio.CancelledError):
        await runner
    refreshed = store.get(slot.id)
    assert refreshed.active_variant == TEST
    assert refreshed.status == ACTIVE
    assert history_count(engine) == 1


@pytest.mark.asyncio
async def test_lease_starts_when_each_slot_is_claimed(engine, store, make_slot, notifier):
    # slot one is due first; its switch runs long enough to outlast a lease taken at the tick start
    slot_one = make_slot(shop_id="one.myshopify.com", now=datetime(2024, 5, 1, 9, 0))
    slot_two = make_slot(shop_id="two.myshopify.com", now=datetime(2024, 5, 1, 9, 1))
    catalogs = {
        slot_one.shop_id: FakeCatalog(gallery_urls=[A, B]),
        slot_two.shop_id: FakeCatalog(gallery_urls=[A, B]),
    }
    for catalog in catalogs.values():
        catalog.gate = asyncio.Event()
    clock = Clock(datetime(2024, 5, 1, 10, 1))

    def scheduler():
        return RotationScheduler(
            engine, catalogs.__getitem__, notifier=notifier, clock=clock,
            synchronizer_options={"retry_delay": 0, "attempts": 2},
        )

    first = asyncio.create_task(scheduler().run_due())
    await catalogs[slot_one.shop_id].entered.wait()
    clock.now = datetime(2024, 5, 1, 10, 21)
    catalogs[slot_one.shop_id].gate.set()
    await catalogs[slot_two.shop_id].entered.wait()

    second = await scheduler().run_due()
    catalogs[slot_two.shop_id].gate.set()
    summary = await first

    assert second.processed == 0
    assert summary.processed == 2
    assert catalogs[slot_two.shop_id].call_names().count("upload_media") == 1
    assert history_count(engine) == 2
    assert store.get(slot_one.id).last_switch_at == datetime(2024, 5, 1, 10, 21)
    assert store.get(slot_two.id).active_variant == TEST


@pytest.mark.asyncio
async def test_switch_time_is_taken_at_commit(engine, store, make_slot, notifier):
    slot = make_slot()
    catalog = FakeCatalog(gallery_urls=[A, B])
    catalog.gate = asyncio.Event()
    clock = Clock(datetime(2024, 5, 1, 10, 1))
    runner = asyncio.create_task(make_scheduler(engine, catalog, clock, notifier).run_due())

    await catalog.entered.wait()
    clock.now = datetime(2024, 5, 1, 10, 4)
    catalog.gate.set()
    await runner

    refreshed = store.get(slot.id)
    assert refreshed.last_switch_at == datetime(2024, 5, 1, 10, 4)
    assert refreshed.next_switch_due_at == datetime(2024, 5, 1, 11, 4)
    assert RotationLedger(engine).entries(slot.id)[0].switched_at == datetime(2024, 5, 1, 10, 4)


@pytest.mark.asyncio
async def test_cron_target_follows_the_ledger(engine, store, make_slot, notifier, caplog):
    slot = make_slot()
    with engine.begin() as conn:
        conn.execute(update(rotation_slots).where(rotation_slots.c.id == slot.id).values(active_variant=TEST))
    catalog = FakeCatalog(gallery_urls=[A, B])
    scheduler = make_scheduler(engine, catalog, Clock(datetime(2024, 5, 1, 10, 1)), notifier)

    with caplog.at_level(logging.WARNING, logger="rotator.rotation.scheduler"):
        summary = await scheduler.run_due()

    # the ledger has no switches, so CONTROL is live and TEST is next
    assert [outcome.variant for outcome in summary.succeeded] == [TEST]
    assert "its ledger says CONTROL" in caplog.text


@pytest.mark.asyncio
async def test_commit_error_is_recorded_and_tick_continues(engine, store, make_slot, notifier, monkeypatch):
    broken = make_slot(shop_id="one.myshopify.com", now=datetime(2024, 5, 1, 9, 0))
    healthy = make_slot(shop_id="two.myshopify.com", now=datetime(2024, 5, 1, 9, 1))
    catalogs = {broken.shop_id: FakeCatalog(gallery_urls=[A, B]), healthy.shop_id: FakeCatalog(gallery_urls=[A, B])}
    scheduler = RotationScheduler(
        engine, catalogs.__getitem__, notifier=notifier, clock=Clock(datetime(2024, 5, 1, 10, 1)),
        synchronizer_options={"retry_delay": 0, "attempts": 2},
    )
    commit_switch = scheduler.store.commit_switch

    def flaky_commit(slot, token, **kwargs):
        if slot.id == broken.id:
            raise OperationalError("UPDATE rotation_slots", {}, Exception("database is locked"))
        return commit_switch(slot, token, **kwargs)

    monkeypatch.setattr(scheduler.store, "commit_switch", flaky_commit)

    summary = await scheduler.run_due()

    assert summary.processed == 2
    assert [outcome.slot_id for outcome in summary.failed] == [broken.id]
    assert isinstance(summary.failed[0].error, OperationalError)
    assert [outcome.slot_id for outcome in summary.succeeded] == [healthy.id]
    refreshed = store.get(broken.id)
    assert refreshed.active_variant == CONTROL
    assert refreshed.consecutive_failures == 1
    assert refreshed.locked_until is None
    assert store.get(healthy.id).active_variant == TEST


@pytest.mark.asyncio
async def test_failure_after_lost_claim_does_not_alert(engine, store, make_slot, notifier):
    slot = make_slot()
    catalog = FakeCatalog(gallery_urls=[A, B])
    catalog.gate = asyncio.Event()
    catalog.fail("upload_media", TransientRemoteError("503 from catalog"))
    clock = Clock(datetime(2024, 5, 1, 10, 1))
    runner = asyncio.create_task(make_scheduler(engine, catalog, clock, notifier, max_failures=1).run_due())

    await catalog.entered.wait()
    assert store.claim(slot.id, datetime(2024, 5, 1, 10, 30)) is not None
    catalog.gate.set()
    summary = await runner

    assert summary.failed[0].paused is False
    assert notifier.paused == []
    refreshed = store.get(slot.id)
    assert refreshed.status == ACTIVE
    assert refreshed.consecutive_failures == 0
