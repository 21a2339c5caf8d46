import asyncio
from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from rotator.catalog.base import CatalogClient, CatalogSnapshot, RemoteMedia
from rotator.db.tables import metadata
from rotator.media.models import MediaDescriptor, MediaUsage
from rotator.rotation.store import SlotStore


class FakeCatalog(CatalogClient):
    """In-memory catalog that re-issues remote ids on every upload, like Shopify does."""

    def __init__(self, gallery_urls=(), variant_ids=()):
        self.calls = []
        self.gallery = []
        self.heroes = {variant_id: None for variant_id in variant_ids}
        self.failures = {}
        self.dropped_urls = set()
        self.gate = None
        self.entered = asyncio.Event()
        self._counter = 0
        for url in gallery_urls:
            self.gallery.append(RemoteMedia(remote_id=self._next_id(), url=url, position=len(self.gallery)))

    def _next_id(self):
        self._counter += 1
        return f"gid://shopify/MediaImage/{self._counter}"

    def fail(self, method, exc, times=None):
        self.failures[method] = [exc, times]

    def remote_id_for(self, url):
        return next(media.remote_id for media in self.gallery if media.url.split("?")[0] == url)

    def _maybe_fail(self, method):
        failure = self.failures.get(method)
        if not failure:
            return
        exc, times = failure
        if times is not None:
            if times <= 0:
                return
            failure[1] = times - 1
        raise exc

    async def fetch_media(self, product_id):
        self.calls.append(("fetch_media", product_id))
        self._maybe_fail("fetch_media")
        gallery = [
            RemoteMedia(remote_id=media.remote_id, url=media.url, alt_text=media.alt_text, position=index)
            for index, media in enumerate(self.gallery)
        ]
        return CatalogSnapshot(product_id=product_id, gallery=gallery, heroes=dict(self.heroes))

    async def upload_media(self, product_id, descriptor):
        self.calls.append(("upload_media", descriptor.key))
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        self._maybe_fail("upload_media")
        remote_id = self._next_id()
        if descriptor.key not in self.dropped_urls:
            # the catalog serves its own CDN copy with a cache-busting query
            url = f"{descriptor.origin_url}?v={self._counter}"
            self.gallery.append(RemoteMedia(remote_id=remote_id, url=url, alt_text=descriptor.alt_text))
        return remote_id

    async def assign_variant_hero(self, product_id, variant_id, remote_id):
        self.calls.append(("assign_variant_hero", variant_id, remote_id))
        self._maybe_fail("assign_variant_hero")
        self.heroes[variant_id] = remote_id

    async def delete_media(self, product_id, remote_ids):
        self.calls.append(("delete_media", sorted(remote_ids)))
        self._maybe_fail("delete_media")
        doomed = set(remote_ids)
        self.gallery = [media for media in self.gallery if media.remote_id not in doomed]
        for variant_id, hero in self.heroes.items():
            if hero in doomed:
                self.heroes[variant_id] = None

    async def reorder_media(self, product_id, remote_ids):
        self.calls.append(("reorder_media", list(remote_ids)))
        self._maybe_fail("reorder_media")
        rank = {remote_id: index for index, remote_id in enumerate(remote_ids)}
        self.gallery.sort(key=lambda media: rank.get(media.remote_id, len(rank)))

    def call_names(self):
        return [call[0] for call in self.calls]


class RecordingNotifier:
    def __init__(self):
        self.paused = []

    async def slot_paused(self, slot, error):
        self.paused.append((slot.id, type(error).__name__))


def media(url, position=0, heroes=(), gallery=True):
    return MediaDescriptor(
        source_url=url,
        position=position,
        usage=MediaUsage(gallery=gallery, hero_variant_ids=set(heroes)),
    )


A = "https://cdn.example.com/a.jpg"
B = "https://cdn.example.com/b.jpg"
C = "https://cdn.example.com/c.jpg"
D = "https://cdn.example.com/d.jpg"


@pytest.fixture()
def engine():
    # one shared connection so TestClient threads see the same in-memory database
    engine = create_engine(
        "sqlite://",
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def store(engine):
    return SlotStore(engine)


@pytest.fixture()
def catalog():
    return FakeCatalog(gallery_urls=[A, B])


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def make_slot(store):
    def factory(**overrides):
        values = {
            "shop_id": "demo.myshopify.com",
            "product_id": "1001",
            "test_id": "test-1",
            "control_media": [media(A, 0), media(B, 1)],
            "test_media": [media(A, 0), media(D, 1)],
            "interval_minutes": 60,
            "now": datetime(2024, 5, 1, 9, 0),
        }
        values.update(overrides)
        return store.create_slot(**values)

    return factory
