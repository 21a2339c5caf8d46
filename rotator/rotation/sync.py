"""Publish a slot's control or test media to the remote catalog.

The switch runs in four phases: CAPTURE the live catalog state, BUILD the
deduplicated target, EXECUTE the keyed diff between them, VERIFY the result.
Media identity is the normalized URL key throughout. Remote ids are only a
cache of what the catalog currently calls an asset.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable
from urllib.parse import urlsplit

from rotator.catalog.base import CatalogClient, CatalogSnapshot, RemoteMedia
from rotator.errors import PermanentValidationError, RollbackRequired, TransientRemoteError
from rotator.media.models import MediaDescriptor, normalize_url
from rotator.media.registry import MediaRegistry, RegistryEntry, build_from_media_set
from rotator.rotation.store import ACTIVE, RotationSlot
from rotator.utils.retry import retry_async

logger = logging.getLogger(__name__)

CALL_TIMEOUT_SECONDS = float(os.environ.get("CATALOG_TIMEOUT_SECONDS", 20))


@dataclass(slots=True)
class CapturedMedia:
    key: str
    media: RemoteMedia


@dataclass(slots=True)
class MediaPlan:
    uploads: list[RegistryEntry] = field(default_factory=list)
    reused: dict[str, str] = field(default_factory=dict)
    deletions: list[CapturedMedia] = field(default_factory=list)
    hero_assignments: dict[str, str] = field(default_factory=dict)
    order: list[str] = field(default_factory=list)


@dataclass(slots=True)
class SyncResult:
    snapshot: CatalogSnapshot
    uploaded: int
    reused: int
    deleted: int
    media: list[MediaDescriptor]

    def counts(self) -> dict[str, int]:
        return {"uploaded": self.uploaded, "reused": self.reused, "deleted": self.deleted}


class KeyResolver:
    """Maps catalog media to descriptor keys.

    A remote id the engine has seen before resolves to the key it was recorded
    under; anything else falls back to the URL the catalog reports.
    """

    def __init__(self, known: dict[str, str] | None = None) -> None:
        self.known = dict(known or {})

    @classmethod
    def for_slot(cls, slot: RotationSlot) -> KeyResolver:
        known = {}
        for descriptor in [*slot.control_media, *slot.test_media]:
            if descriptor.remote_id:
                known[descriptor.remote_id] = descriptor.key
        return cls(known)

    def remember(self, remote_id: str, key: str) -> None:
        self.known[remote_id] = key

    def key_for(self, media: RemoteMedia) -> str:
        if media.remote_id in self.known:
            return self.known[media.remote_id]
        origin = media.source_url or media.url
        if origin:
            return normalize_url(origin)
        return f"remote:{media.remote_id}"

    def resolve(self, snapshot: CatalogSnapshot) -> list[CapturedMedia]:
        return [CapturedMedia(key=self.key_for(media), media=media) for media in snapshot.gallery]


def validate_target(slot: RotationSlot, target_variant: str) -> list[MediaDescriptor]:
    if slot.status != ACTIVE:
        raise PermanentValidationError(f"Slot {slot.id} is {slot.status}, not ACTIVE")
    media = slot.media_for(target_variant)
    if not media:
        raise PermanentValidationError(f"Slot {slot.id} has no {target_variant} media")
    for descriptor in media:
        parts = urlsplit(descriptor.origin_url or "")
        if parts.scheme not in {"http", "https"} or not parts.netloc:
            raise PermanentValidationError(f"Slot {slot.id} has media with invalid URL {descriptor.origin_url!r}")
        if not descriptor.usage.gallery and not descriptor.usage.hero_variant_ids:
            raise PermanentValidationError(f"Media {descriptor.key} is not used in the gallery or as a hero")
    return media


def plan_changes(captured: list[CapturedMedia], registry: MediaRegistry, current_heroes: dict[str, str | None]) -> MediaPlan:
    """Diff captured state against the target by key. Never by remote id or position."""
    plan = MediaPlan()
    by_key: dict[str, RemoteMedia] = {}
    for item in captured:
        if item.key in by_key:
            if item.key in registry:
                logger.warning("Catalog holds duplicate copies of %s; leaving extras in place", item.key)
            else:
                plan.deletions.append(item)
            continue
        by_key[item.key] = item.media
        if item.key not in registry:
            plan.deletions.append(item)
    key_by_remote_id = {item.media.remote_id: item.key for item in captured}
    for entry in registry.ordered():
        if entry.key in by_key:
            plan.reused[entry.key] = by_key[entry.key].remote_id
        else:
            plan.uploads.append(entry)
        plan.order.append(entry.key)
    for variant_id, key in registry.heroes().items():
        current = current_heroes.get(variant_id)
        if current is None or key_by_remote_id.get(current) != key:
            plan.hero_assignments[variant_id] = key
    return plan


class MediaSynchronizer:
    def __init__(
        self,
        catalog: CatalogClient,
        *,
        call_timeout: float | None = None,
        attempts: int | None = None,
        retry_delay: float | None = None,
    ) -> None:
        self.catalog = catalog
        self.call_timeout = call_timeout or CALL_TIMEOUT_SECONDS
        self.attempts = attempts
        self.retry_delay = retry_delay

    async def synchronize(self, slot: RotationSlot, target_variant: str) -> SyncResult:
        target_media = validate_target(slot, target_variant)
        resolver = KeyResolver.for_slot(slot)

        captured_snapshot = await self.capture(slot)
        captured = resolver.resolve(captured_snapshot)
        logger.info("CAPTURE slot=%s gallery=%s heroes=%s", slot.id, len(captured), len(captured_snapshot.heroes))

        registry = self.build(target_media)
        logger.info("BUILD slot=%s variant=%s entries=%s", slot.id, target_variant, len(registry))

        plan = plan_changes(captured, registry, captured_snapshot.heroes)
        remote_ids, deleted = await self.execute(slot, registry, plan, resolver)

        snapshot = await self.verify(slot, registry, resolver)
        refreshed = [descriptor.with_remote_id(remote_ids.get(descriptor.key)) for descriptor in target_media]
        result = SyncResult(
            snapshot=snapshot,
            uploaded=len(plan.uploads),
            reused=len(plan.reused),
            deleted=deleted,
            media=refreshed,
        )
        logger.info("VERIFY slot=%s ok %s", slot.id, result.counts())
        return result

    async def capture(self, slot: RotationSlot) -> CatalogSnapshot:
        return await self._call(self.catalog.fetch_media, slot.product_id)

    def build(self, target_media: list[MediaDescriptor]) -> MediaRegistry:
        registry = build_from_media_set(target_media)
        if not len(registry):
            raise PermanentValidationError("Target media set is empty after deduplication")
        return registry

    async def execute(
        self,
        slot: RotationSlot,
        registry: MediaRegistry,
        plan: MediaPlan,
        resolver: KeyResolver,
    ) -> tuple[dict[str, str], int]:
        """Apply ``plan``: uploads, hero assignments, deletions, reorder.

        Returns key -> remote id for every target entry and the number of deleted media.
        """
        product_id = slot.product_id
        remote_ids = dict(plan.reused)

        for entry in plan.uploads:
            remote_id = await self._call(self.catalog.upload_media, product_id, entry.descriptor)
            remote_ids[entry.key] = remote_id
            resolver.remember(remote_id, entry.key)
            logger.info("EXECUTE slot=%s uploaded %s as %s", slot.id, entry.key, remote_id)

        for variant_id, key in sorted(plan.hero_assignments.items()):
            await self._call(self.catalog.assign_variant_hero, product_id, variant_id, remote_ids[key])

        in_use = set(remote_ids.values())
        doomed = [
            item.media.remote_id
            for item in plan.deletions
            if item.key not in registry and item.media.remote_id not in in_use
        ]
        if doomed:
            await self._call(self.catalog.delete_media, product_id, doomed)
            logger.info("EXECUTE slot=%s deleted %s media", slot.id, len(doomed))

        ordered = [remote_ids[key] for key in plan.order]
        await self._call(self.catalog.reorder_media, product_id, ordered)
        logger.info(
            "EXECUTE slot=%s uploads=%s reused=%s heroes=%s deletions=%s",
            slot.id, len(plan.uploads), len(plan.reused), len(plan.hero_assignments), len(doomed),
        )
        return remote_ids, len(doomed)

    async def verify(self, slot: RotationSlot, registry: MediaRegistry, resolver: KeyResolver) -> CatalogSnapshot:
        snapshot = await self._call(self.catalog.fetch_media, slot.product_id)
        observed = resolver.resolve(snapshot)
        key_by_remote_id = {item.media.remote_id: item.key for item in observed}
        missing = registry.keys() - {item.key for item in observed}
        for variant_id, key in registry.heroes().items():
            hero = snapshot.heroes.get(variant_id)
            if hero is None or key_by_remote_id.get(hero) != key:
                missing.add(f"hero:{variant_id}")
        if missing:
            logger.error("VERIFY slot=%s missing %s", slot.id, sorted(missing))
            raise RollbackRequired(
                f"Catalog state for slot {slot.id} does not match the target after EXECUTE",
                missing_keys=missing,
            )
        return snapshot

    async def _call(self, method: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        async def bounded(*call_args: Any) -> Any:
            try:
                return await asyncio.wait_for(method(*call_args), timeout=self.call_timeout)
            except asyncio.TimeoutError as exc:
                raise TransientRemoteError(
                    f"{getattr(method, '__name__', 'catalog call')} timed out after {self.call_timeout}s"
                ) from exc

        bounded.__name__ = getattr(method, "__name__", "catalog_call")
        return await retry_async(bounded, attempts=self.attempts, base_delay=self.retry_delay)(*args)
