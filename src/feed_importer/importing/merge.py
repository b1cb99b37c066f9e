"""Allow-listed conversion of decoded feed rows into catalog product fields."""

from __future__ import annotations

import math
from collections.abc import Mapping
from datetime import datetime

from feed_importer.importing.errors import RowValidationError
from feed_importer.importing.models import ProductFields
from feed_importer.importing.storage.sqlmodel_models import Product

# Feed column -> ProductFields attribute. Columns outside this map are ignored.
FEED_COLUMNS: dict[str, str] = {
    "url": "url",
    "title": "title",
    "price": "price",
    "old_price": "old_price",
    "product_id": "external_id",
    "aff_code": "aff_code",
    "campaign_name": "campaign_name",
    "image_urls": "image_urls",
    "category": "category",
    "subcategory": "subcategory",
    "brand": "brand",
    "description": "description",
}
REQUIRED_COLUMNS = ("url", "title", "price")
TEXT_FIELDS = (
    "title",
    "external_id",
    "aff_code",
    "campaign_name",
    "image_urls",
    "category",
    "subcategory",
    "brand",
    "description",
)


def parse_row(row: Mapping[str, str]) -> ProductFields:
    """Validate one decoded row and keep only allow-listed fields."""

    values = _allow_listed_values(row)
    missing = [name for name in REQUIRED_COLUMNS if not values.get(name)]
    if missing:
        raise RowValidationError(
            message=f"Missing required fields: {', '.join(missing)}",
            field=missing[0],
        )

    price = parse_price(values["price"])
    if price is None:
        raise RowValidationError(
            message=f"Invalid price: {values['price']!r}",
            field="price",
        )

    return ProductFields(
        url=values["url"],
        title=values["title"],
        price=price,
        old_price=parse_price(values.get("old_price", "")),
        external_id=values.get("product_id") or None,
        aff_code=values.get("aff_code") or None,
        campaign_name=values.get("campaign_name") or None,
        image_urls=values.get("image_urls") or None,
        category=values.get("category") or None,
        subcategory=values.get("subcategory") or None,
        brand=values.get("brand") or None,
        description=values.get("description") or None,
    )


def parse_price(raw: str | None) -> float | None:
    """Parse a non-negative finite price, returning None when unusable."""

    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        price = float(value)
    except ValueError:
        return None
    if not math.isfinite(price) or price < 0:
        return None
    return price


def build_product(
    *,
    product_id: str,
    feed_id: str,
    fields: ProductFields,
    now: datetime,
) -> Product:
    """New catalog row for a url the catalog has not seen before."""

    return Product(
        product_id=product_id,
        feed_id=feed_id,
        url=fields.url,
        title=fields.title,
        price=fields.price,
        old_price=fields.old_price,
        active=True,
        external_id=fields.external_id,
        aff_code=fields.aff_code,
        campaign_name=fields.campaign_name,
        image_urls=fields.image_urls,
        category=fields.category,
        subcategory=fields.subcategory,
        brand=fields.brand,
        description=fields.description,
        last_updated_at=now,
        created_at=now,
    )


def merge_product(product: Product, fields: ProductFields, *, now: datetime) -> None:
    """Apply feed values onto an existing catalog row.

    Non-empty values overwrite; empty ones keep the stored value. The old
    price is always overwritten so a dropped discount is cleared. ``url``,
    ``feed_id`` and ``active`` are never touched here.
    """

    product.price = fields.price
    product.old_price = fields.old_price
    for name in TEXT_FIELDS:
        value = getattr(fields, name)
        if value:
            setattr(product, name, value)
    product.last_updated_at = now


def _allow_listed_values(row: Mapping[str, str]) -> dict[str, str]:
    values: dict[str, str] = {}
    for key, raw_value in row.items():
        column = key.strip().lower()
        if column not in FEED_COLUMNS or column in values:
            continue
        values[column] = (raw_value or "").strip()
    return values
