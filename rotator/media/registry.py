"""Deduplicating index of media descriptors keyed by normalized URL."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, Mapping

from rotator.media.models import MediaDescriptor, MediaUsage

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RegistryEntry:
    key: str
    descriptor: MediaDescriptor
    usage: MediaUsage
    order: int

    @property
    def in_gallery(self) -> bool:
        return self.usage.gallery


class MediaRegistry:
    """key -> entry. Each key appears once, carrying every context it is used in."""

    def __init__(self) -> None:
        self._entries: dict[str, RegistryEntry] = {}

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[RegistryEntry]:
        return iter(self._entries.values())

    def get(self, key: str) -> RegistryEntry | None:
        return self._entries.get(key)

    def keys(self) -> set[str]:
        return set(self._entries)

    def add(self, descriptor: MediaDescriptor, usage: MediaUsage) -> RegistryEntry:
        key = descriptor.key
        existing = self._entries.get(key)
        if existing is None:
            entry = RegistryEntry(key=key, descriptor=descriptor, usage=usage.copy(), order=len(self._entries))
            self._entries[key] = entry
            return entry
        existing.usage.merge(usage)
        if usage.gallery and descriptor.position < existing.descriptor.position:
            existing.descriptor.position = descriptor.position
        if existing.descriptor.remote_id is None and descriptor.remote_id:
            existing.descriptor.remote_id = descriptor.remote_id
        if not existing.descriptor.alt_text and descriptor.alt_text:
            existing.descriptor.alt_text = descriptor.alt_text
        logger.debug("Merged duplicate media %s into existing registry entry", key)
        return existing

    def ordered(self) -> list[RegistryEntry]:
        """Gallery entries by position, then hero-only entries in insertion order."""
        return sorted(
            self._entries.values(),
            key=lambda entry: (not entry.in_gallery, entry.descriptor.position, entry.order),
        )

    def heroes(self) -> dict[str, str]:
        """variant id -> key of its hero image."""
        assignments: dict[str, str] = {}
        for entry in self.ordered():
            for variant_id in sorted(entry.usage.hero_variant_ids):
                assignments.setdefault(variant_id, entry.key)
        return assignments


def build(
    gallery_targets: Iterable[MediaDescriptor],
    hero_targets_by_variant: Mapping[str, MediaDescriptor],
) -> MediaRegistry:
    """Index gallery and variant-hero targets, merging usages that share a key."""
    registry = MediaRegistry()
    for descriptor in gallery_targets:
        registry.add(_detached(descriptor), MediaUsage(gallery=True))
    for variant_id, descriptor in hero_targets_by_variant.items():
        registry.add(_detached(descriptor), MediaUsage(hero_variant_ids={variant_id}))
    return registry


def build_from_media_set(descriptors: Iterable[MediaDescriptor]) -> MediaRegistry:
    """Split a stored media set by usage and build its registry."""
    gallery: list[MediaDescriptor] = []
    heroes: dict[str, MediaDescriptor] = {}
    for descriptor in descriptors:
        if descriptor.usage.gallery:
            gallery.append(descriptor)
        for variant_id in sorted(descriptor.usage.hero_variant_ids):
            heroes.setdefault(variant_id, descriptor)
    return build(gallery, heroes)


def _detached(descriptor: MediaDescriptor) -> MediaDescriptor:
    # the registry mutates positions and remote ids; keep caller objects intact
    return descriptor.with_remote_id(descriptor.remote_id)
