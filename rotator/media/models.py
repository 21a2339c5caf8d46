"""Media value objects."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Mapping
from urllib.parse import urlsplit, urlunsplit

GALLERY = "GALLERY"
VARIANT_HERO = "VARIANT_HERO"


def normalize_url(url: str) -> str:
    """Identity form of a media URL.

    Query string and fragment are dropped, trailing slashes removed and the
    scheme and host lower-cased. The path keeps its case.
    """
    parts = urlsplit(url.strip())
    path = parts.path.rstrip("/")
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, "", ""))


@dataclass(slots=True)
class MediaUsage:
    gallery: bool = False
    hero_variant_ids: set[str] = field(default_factory=set)

    @property
    def kinds(self) -> set[str]:
        kinds = set()
        if self.gallery:
            kinds.add(GALLERY)
        if self.hero_variant_ids:
            kinds.add(VARIANT_HERO)
        return kinds

    def merge(self, other: MediaUsage) -> None:
        self.gallery = self.gallery or other.gallery
        self.hero_variant_ids |= other.hero_variant_ids

    def copy(self) -> MediaUsage:
        return MediaUsage(gallery=self.gallery, hero_variant_ids=set(self.hero_variant_ids))


@dataclass(slots=True)
class MediaDescriptor:
    """One image usable in a gallery or as a variant hero.

    ``remote_id`` is whatever the catalog currently calls the asset. It changes
    on every re-upload and is never used for identity; use ``key``.
    """

    source_url: str
    permanent_url: str | None = None
    remote_id: str | None = None
    position: int = 0
    alt_text: str | None = None
    usage: MediaUsage = field(default_factory=lambda: MediaUsage(gallery=True))

    @property
    def origin_url(self) -> str:
        return self.permanent_url or self.source_url

    @property
    def key(self) -> str:
        return normalize_url(self.origin_url)

    def with_remote_id(self, remote_id: str | None) -> MediaDescriptor:
        return replace(self, remote_id=remote_id, usage=self.usage.copy())

    def to_dict(self) -> dict[str, Any]:
        return {
            "sourceUrl": self.source_url,
            "permanentUrl": self.permanent_url,
            "remoteId": self.remote_id,
            "position": self.position,
            "altText": self.alt_text,
            "usage": {
                "gallery": self.usage.gallery,
                "heroVariantIds": sorted(self.usage.hero_variant_ids),
            },
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MediaDescriptor:
        usage = data.get("usage") or {}
        return cls(
            source_url=data.get("sourceUrl") or "",
            permanent_url=data.get("permanentUrl"),
            remote_id=data.get("remoteId"),
            position=int(data.get("position") or 0),
            alt_text=data.get("altText"),
            usage=MediaUsage(
                gallery=bool(usage.get("gallery", True)),
                hero_variant_ids=set(usage.get("heroVariantIds") or []),
            ),
        )


def dump_media(descriptors: Iterable[MediaDescriptor]) -> list[dict[str, Any]]:
    return [descriptor.to_dict() for descriptor in descriptors]


def load_media(rows: Iterable[Mapping[str, Any]] | None) -> list[MediaDescriptor]:
    return [MediaDescriptor.from_dict(row) for row in rows or []]
