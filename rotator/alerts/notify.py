"""Operator alerts raised by the rotation engine."""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING

import httpx

from rotator.alerts.esp import EmailMessage, EmailProvider
from rotator.alerts.render import render_alert

if TYPE_CHECKING:
    from rotator.rotation.store import RotationSlot

logger = logging.getLogger(__name__)


class AlertNotifier:
    def __init__(self, provider: EmailProvider | None = None, recipient: str | None = None) -> None:
        self.provider = provider or EmailProvider()
        self.recipient = recipient or os.environ.get("ALERT_EMAIL_TO", "ops@example.com")

    async def slot_paused(self, slot: RotationSlot, error: Exception) -> None:
        subject, html = render_alert(
            "slot_paused",
            {
                "subject": f"Rotation paused for {slot.product_id}",
                "slot_id": slot.id,
                "shop_id": slot.shop_id,
                "product_id": slot.product_id,
                "variant_id": slot.variant_id,
                "test_id": slot.test_id,
                "active_variant": slot.active_variant,
                "failures": slot.consecutive_failures,
                "reason": slot.paused_reason,
                "error_type": type(error).__name__,
                "error": str(error),
                "missing_keys": getattr(error, "missing_keys", []),
            },
        )
        try:
            await self.provider.send(EmailMessage(to=self.recipient, subject=subject, html=html))
        except httpx.HTTPError as exc:
            logger.warning("Could not deliver pause alert for slot %s: %s", slot.id, exc)
