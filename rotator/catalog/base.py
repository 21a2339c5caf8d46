"""Boundary of the remote catalog the synchronizer talks to."""

from __future__ import annotations

from dataclasses import dataclass, field

from rotator.media.models import MediaDescriptor


@dataclass(slots=True)
class RemoteMedia:
    remote_id: str
    url: str | None = None
    alt_text: str | None = None
    position: int = 0
    # origin URL when the catalog can report it
    source_url: str | None = None


@dataclass(slots=True)
class CatalogSnapshot:
    product_id: str
    gallery: list[RemoteMedia] = field(default_factory=list)
    heroes: dict[str, str | None] = field(default_factory=dict)

    def remote_ids(self) -> list[str]:
        return [media.remote_id for media in self.gallery]


class CatalogClient:
    """The five catalog capabilities the rotation engine depends on."""

    async def fetch_media(self, product_id: str) -> CatalogSnapshot:
        """Current gallery and each variant's hero assignment."""
        raise NotImplementedError

    async def upload_media(self, product_id: str, descriptor: MediaDescriptor) -> str:
        """Upload ``descriptor`` to the product and return its new remote id."""
        raise NotImplementedError

    async def assign_variant_hero(self, product_id: str, variant_id: str, remote_id: str) -> None:
        raise NotImplementedError

    async def delete_media(self, product_id: str, remote_ids: list[str]) -> None:
        raise NotImplementedError

    async def reorder_media(self, product_id: str, remote_ids: list[str]) -> None:
        """Reorder the gallery so ``remote_ids`` come first, in this order."""
        raise NotImplementedError

    async def close(self) -> None:
        return None
