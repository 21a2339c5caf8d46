"""Celery configuration for the rotation trigger."""

from __future__ import annotations

import os

from celery import Celery

broker_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")
backend_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")
tick_seconds = float(os.environ.get("ROTATION_TICK_SECONDS", "60"))

celery_app = Celery("rotator", broker=broker_url, backend=backend_url, include=["rotator.jobs.rotate"])
celery_app.conf.timezone = "UTC"
celery_app.conf.beat_schedule = {
    "rotate-due-slots": {
        "task": "rotator.jobs.rotate.run_rotations",
        "schedule": tick_seconds,
        # a tick that waited longer than one interval is superseded by the next
        "options": {"expires": tick_seconds},
    },
    "rotation-consistency": {
        "task": "rotator.jobs.rotate.check_consistency",
        "schedule": 3600.0,
    },
}


@celery_app.task(name="rotator.jobs.rotate.run_rotations")
def run_rotations_task():  # pragma: no cover - executed by worker
    import asyncio

    from rotator.jobs.rotate import run_rotations

    return asyncio.run(run_rotations())


@celery_app.task(name="rotator.jobs.rotate.check_consistency")
def check_consistency_task():  # pragma: no cover - executed by worker
    from rotator.jobs.rotate import check_consistency

    return check_consistency()
