"""Shopify Admin GraphQL implementation of the catalog boundary."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any

import httpx

from rotator.catalog.base import CatalogClient, CatalogSnapshot, RemoteMedia
from rotator.errors import RemoteRequestError, TransientRemoteError
from rotator.media.models import MediaDescriptor
from rotator.utils.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

API_VERSION = os.environ.get("SHOPIFY_API_VERSION", "2024-10")
TIMEOUT_SECONDS = float(os.environ.get("CATALOG_TIMEOUT_SECONDS", 20))
THROTTLED_CODES = {"THROTTLED", "MAX_COST_EXCEEDED"}

PRODUCT_MEDIA_QUERY = """
query ProductMedia($id: ID!) {
  product(id: $id) {
    id
    media(first: 250) {
      nodes {
        id
        alt
        ... on MediaImage { image { url } }
      }
    }
    variants(first: 250) {
      nodes {
        id
        media(first: 1) { nodes { id } }
      }
    }
  }
}
"""

CREATE_MEDIA_MUTATION = """
mutation CreateMedia($productId: ID!, $media: [CreateMediaInput!]!) {
  productCreateMedia(productId: $productId, media: $media) {
    media { id }
    mediaUserErrors { field message }
  }
}
"""

APPEND_VARIANT_MEDIA_MUTATION = """
mutation AppendVariantMedia($productId: ID!, $variantMedia: [ProductVariantAppendMediaInput!]!) {
  productVariantAppendMedia(productId: $productId, variantMedia: $variantMedia) {
    userErrors { field message }
  }
}
"""

DELETE_MEDIA_MUTATION = """
mutation DeleteMedia($productId: ID!, $mediaIds: [ID!]!) {
  productDeleteMedia(productId: $productId, mediaIds: $mediaIds) {
    deletedMediaIds
    mediaUserErrors { field message }
  }
}
"""

REORDER_MEDIA_MUTATION = """
mutation ReorderMedia($id: ID!, $moves: [MoveInput!]!) {
  productReorderMedia(id: $id, moves: $moves) {
    job { id }
    mediaUserErrors { field message }
  }
}
"""


class ShopifyCatalogClient(CatalogClient):
    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        *,
        session: httpx.AsyncClient | None = None,
        rate_limiter: RateLimiter | None = None,
        concurrency: int = 2,
    ) -> None:
        self.shop_domain = shop_domain.removeprefix("https://").rstrip("/")
        self.endpoint = f"https://{self.shop_domain}/admin/api/{API_VERSION}/graphql.json"
        self._session = session or httpx.AsyncClient(timeout=TIMEOUT_SECONDS)
        self._headers = {"X-Shopify-Access-Token": access_token, "Content-Type": "application/json"}
        self._rate_limiter = rate_limiter or RateLimiter(rate=2.0)
        self._semaphore = asyncio.Semaphore(concurrency)

    @classmethod
    def from_env(cls, shop_domain: str) -> ShopifyCatalogClient:
        token = os.environ.get("SHOPIFY_ACCESS_TOKEN")
        if not token:
            raise RemoteRequestError("SHOPIFY_ACCESS_TOKEN is not set")
        return cls(shop_domain, token)

    async def close(self) -> None:
        await self._session.aclose()

    async def fetch_media(self, product_id: str) -> CatalogSnapshot:
        data = await self._graphql(PRODUCT_MEDIA_QUERY, {"id": product_id})
        product = data.get("product")
        if not product:
            raise RemoteRequestError(f"Product {product_id} not found on {self.shop_domain}")
        gallery = []
        for position, node in enumerate((product.get("media") or {}).get("nodes", [])):
            image = node.get("image") or {}
            gallery.append(
                RemoteMedia(
                    remote_id=node["id"],
                    url=image.get("url"),
                    alt_text=node.get("alt"),
                    position=position,
                )
            )
        heroes: dict[str, str | None] = {}
        for variant in (product.get("variants") or {}).get("nodes", []):
            media_nodes = (variant.get("media") or {}).get("nodes", [])
            heroes[variant["id"]] = media_nodes[0]["id"] if media_nodes else None
        return CatalogSnapshot(product_id=product_id, gallery=gallery, heroes=heroes)

    async def upload_media(self, product_id: str, descriptor: MediaDescriptor) -> str:
        media_input = {
            "originalSource": descriptor.origin_url,
            "alt": descriptor.alt_text or "",
            "mediaContentType": "IMAGE",
        }
        data = await self._graphql(CREATE_MEDIA_MUTATION, {"productId": product_id, "media": [media_input]})
        payload = data.get("productCreateMedia") or {}
        _raise_user_errors(payload.get("mediaUserErrors"), "productCreateMedia")
        created = payload.get("media") or []
        if not created:
            raise RemoteRequestError(f"productCreateMedia returned no media for {descriptor.key}")
        return created[0]["id"]

    async def assign_variant_hero(self, product_id: str, variant_id: str, remote_id: str) -> None:
        variables = {
            "productId": product_id,
            "variantMedia": [{"variantId": variant_id, "mediaIds": [remote_id]}],
        }
        data = await self._graphql(APPEND_VARIANT_MEDIA_MUTATION, variables)
        _raise_user_errors((data.get("productVariantAppendMedia") or {}).get("userErrors"), "productVariantAppendMedia")

    async def delete_media(self, product_id: str, remote_ids: list[str]) -> None:
        if not remote_ids:
            return
        data = await self._graphql(DELETE_MEDIA_MUTATION, {"productId": product_id, "mediaIds": remote_ids})
        _raise_user_errors((data.get("productDeleteMedia") or {}).get("mediaUserErrors"), "productDeleteMedia")

    async def reorder_media(self, product_id: str, remote_ids: list[str]) -> None:
        if not remote_ids:
            return
        moves = [{"id": remote_id, "newPosition": str(index)} for index, remote_id in enumerate(remote_ids)]
        data = await self._graphql(REORDER_MEDIA_MUTATION, {"id": product_id, "moves": moves})
        _raise_user_errors((data.get("productReorderMedia") or {}).get("mediaUserErrors"), "productReorderMedia")

    async def _graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        # retries live in the synchronizer; one attempt per call here
        async with self._semaphore:
            await self._rate_limiter.wait_for_host(self.shop_domain)
            try:
                response = await self._session.post(
                    self.endpoint,
                    json={"query": query, "variables": variables},
                    headers=self._headers,
                )
            except httpx.TimeoutException as exc:
                raise TransientRemoteError(f"Timed out calling {self.shop_domain}") from exc
            except httpx.TransportError as exc:
                raise TransientRemoteError(f"Transport error calling {self.shop_domain}: {exc}") from exc
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientRemoteError(f"Shopify returned {response.status_code}")
        if response.status_code >= 400:
            raise RemoteRequestError(f"Shopify returned {response.status_code}: {response.text[:200]}")
        body = response.json()
        errors = body.get("errors") or []
        if errors:
            codes = {(error.get("extensions") or {}).get("code") for error in errors}
            message = "; ".join(str(error.get("message")) for error in errors)
            if codes & THROTTLED_CODES:
                raise TransientRemoteError(f"Shopify throttled request: {message}")
            raise RemoteRequestError(message)
        return body.get("data") or {}


def _raise_user_errors(errors: list[dict[str, Any]] | None, operation: str) -> None:
    if errors:
        message = "; ".join(error.get("message", "unknown error") for error in errors)
        raise RemoteRequestError(f"{operation}: {message}")
