import json
from pathlib import Path

import httpx
import pytest
import respx

from rotator.catalog.shopify import API_VERSION, ShopifyCatalogClient
from rotator.errors import RemoteRequestError, TransientRemoteError
from rotator.media.models import MediaDescriptor
from rotator.utils.rate_limit import RateLimiter

FIXTURES = Path(__file__).parent / "fixtures" / "http"
SHOP = "demo.myshopify.com"
ENDPOINT = f"https://{SHOP}/admin/api/{API_VERSION}/graphql.json"
PRODUCT = "gid://shopify/Product/1001"


def load_fixture(path: str) -> str:
    return (FIXTURES / path).read_text()


def client(session):
    return ShopifyCatalogClient(SHOP, "shpat_test", session=session, rate_limiter=RateLimiter(rate=1000))


@pytest.mark.asyncio
async def test_fetch_media_reads_gallery_and_heroes():
    async with respx.mock(assert_all_called=True) as router:
        router.post(ENDPOINT).mock(return_value=httpx.Response(200, text=load_fixture("shopify/product_media.json")))
        async with httpx.AsyncClient() as session:
            snapshot = await client(session).fetch_media(PRODUCT)

    assert snapshot.remote_ids() == ["gid://shopify/MediaImage/31", "gid://shopify/MediaImage/32"]
    assert snapshot.gallery[0].alt_text == "Front"
    assert snapshot.gallery[1].position == 1
    assert snapshot.heroes == {
        "gid://shopify/ProductVariant/71": "gid://shopify/MediaImage/32",
        "gid://shopify/ProductVariant/72": None,
    }


@pytest.mark.asyncio
async def test_upload_sends_origin_url_and_returns_new_id():
    descriptor = MediaDescriptor(
        source_url="https://shop.example.com/uploads/front.jpg?width=800",
        permanent_url="https://backup.example.com/front.jpg",
        alt_text="Front",
    )
    async with respx.mock(assert_all_called=True) as router:
        route = router.post(ENDPOINT).mock(
            return_value=httpx.Response(200, text=load_fixture("shopify/create_media.json"))
        )
        async with httpx.AsyncClient() as session:
            remote_id = await client(session).upload_media(PRODUCT, descriptor)

    assert remote_id == "gid://shopify/MediaImage/40"
    request = route.calls.last.request
    assert request.headers["X-Shopify-Access-Token"] == "shpat_test"
    body = json.loads(request.content)
    assert body["variables"]["media"][0]["originalSource"] == "https://backup.example.com/front.jpg"
    assert body["variables"]["productId"] == PRODUCT


@pytest.mark.asyncio
async def test_reorder_sends_moves_in_target_order():
    payload = {"data": {"productReorderMedia": {"job": {"id": "gid://shopify/Job/1"}, "mediaUserErrors": []}}}
    async with respx.mock(assert_all_called=True) as router:
        route = router.post(ENDPOINT).mock(return_value=httpx.Response(200, json=payload))
        async with httpx.AsyncClient() as session:
            await client(session).reorder_media(PRODUCT, ["gid://shopify/MediaImage/2", "gid://shopify/MediaImage/1"])

    moves = json.loads(route.calls.last.request.content)["variables"]["moves"]
    assert moves == [
        {"id": "gid://shopify/MediaImage/2", "newPosition": "0"},
        {"id": "gid://shopify/MediaImage/1", "newPosition": "1"},
    ]


@pytest.mark.asyncio
async def test_empty_delete_makes_no_request():
    async with respx.mock(assert_all_called=False) as router:
        route = router.post(ENDPOINT)
        async with httpx.AsyncClient() as session:
            await client(session).delete_media(PRODUCT, [])
    assert not route.called


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(429, text="Too Many Requests"),
        httpx.Response(503, text="Service Unavailable"),
        httpx.Response(200, text=load_fixture("shopify/throttled.json")),
    ],
)
async def test_throttling_and_outages_are_transient(response):
    async with respx.mock() as router:
        router.post(ENDPOINT).mock(return_value=response)
        async with httpx.AsyncClient() as session:
            with pytest.raises(TransientRemoteError):
                await client(session).fetch_media(PRODUCT)


@pytest.mark.asyncio
async def test_timeouts_are_transient():
    async with respx.mock() as router:
        router.post(ENDPOINT).mock(side_effect=httpx.ConnectTimeout("timed out"))
        async with httpx.AsyncClient() as session:
            with pytest.raises(TransientRemoteError):
                await client(session).fetch_media(PRODUCT)


@pytest.mark.asyncio
async def test_user_errors_are_permanent():
    payload = {
        "data": {
            "productDeleteMedia": {
                "deletedMediaIds": None,
                "mediaUserErrors": [{"field": ["mediaIds"], "message": "Media does not exist"}],
            }
        }
    }
    async with respx.mock() as router:
        router.post(ENDPOINT).mock(return_value=httpx.Response(200, json=payload))
        async with httpx.AsyncClient() as session:
            with pytest.raises(RemoteRequestError, match="Media does not exist"):
                await client(session).delete_media(PRODUCT, ["gid://shopify/MediaImage/9"])


@pytest.mark.asyncio
async def test_unauthorized_is_permanent():
    async with respx.mock() as router:
        router.post(ENDPOINT).mock(return_value=httpx.Response(401, text="Invalid API key"))
        async with httpx.AsyncClient() as session:
            with pytest.raises(RemoteRequestError):
                await client(session).fetch_media(PRODUCT)


def test_from_env_requires_token(monkeypatch):
    monkeypatch.delenv("SHOPIFY_ACCESS_TOKEN", raising=False)
    with pytest.raises(RemoteRequestError):
        ShopifyCatalogClient.from_env(SHOP)
