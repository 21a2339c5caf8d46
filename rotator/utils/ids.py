"""Shopify identifier normalization."""

from __future__ import annotations

import re

PRODUCT_GID_PREFIX = "gid://shopify/Product/"
VARIANT_GID_PREFIX = "gid://shopify/ProductVariant/"
NUMERIC_RE = re.compile(r"^\d+$")


def _normalize(value: str | int | None, prefix: str) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if NUMERIC_RE.match(text):
        return f"{prefix}{text}"
    return text


def normalize_product_id(value: str | int | None) -> str | None:
    """Accept ``123`` or ``gid://shopify/Product/123`` and return the GID form."""
    return _normalize(value, PRODUCT_GID_PREFIX)


def normalize_variant_id(value: str | int | None) -> str | None:
    return _normalize(value, VARIANT_GID_PREFIX)
