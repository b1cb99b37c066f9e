from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from feed_importer.importing.errors import RowValidationError
from feed_importer.importing.merge import build_product, merge_product, parse_price, parse_row
from feed_importer.importing.models import ProductFields

pytestmark = [
    allure.epic("Feed Import"),
    allure.feature("Row Validation & Merge"),
]

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


def test_parse_row_keeps_allow_listed_columns_only() -> None:
    fields = parse_row(
        {
            "URL": " http://a ",
            "Title": "Item A",
            "price": "10.50",
            "old_price": "12",
            "product_id": "SKU-1",
            "brand": "Acme",
            "active": "false",
            "feed_id": "someone-elses-feed",
        },
    )

    assert fields == ProductFields(
        url="http://a",
        title="Item A",
        price=10.5,
        old_price=12.0,
        external_id="SKU-1",
        brand="Acme",
    )


@pytest.mark.parametrize(
    ("row", "message"),
    [
        ({"url": "", "title": "A", "price": "1"}, "Missing required fields: url"),
        ({"url": "http://a", "price": "1"}, "Missing required fields: title"),
        ({"url": "http://a", "title": "A", "price": "bad"}, "Invalid price: 'bad'"),
        ({"url": "http://a", "title": "A", "price": "-1"}, "Invalid price"),
        ({"url": "http://a", "title": "A", "price": "nan"}, "Invalid price"),
    ],
)
def test_parse_row_rejects_invalid_rows(row: dict[str, str], message: str) -> None:
    with pytest.raises(RowValidationError, match=message):
        parse_row(row)


def test_unusable_old_price_is_dropped_not_rejected() -> None:
    fields = parse_row({"url": "http://a", "title": "A", "price": "5", "old_price": "n/a"})

    assert fields.old_price is None


@pytest.mark.parametrize(("raw", "expected"), [("0", 0.0), (" 7.25 ", 7.25), ("inf", None)])
def test_parse_price(raw: str, expected: float | None) -> None:
    assert parse_price(raw) == expected


def test_merge_overwrites_non_empty_values_and_clears_old_price() -> None:
    product = build_product(
        product_id="p1",
        feed_id="f1",
        fields=ProductFields(
            url="http://a",
            title="Old title",
            price=10.0,
            old_price=15.0,
            brand="Acme",
            description="Long text",
        ),
        now=NOW,
    )
    product.active = False

    merge_product(
        product,
        ProductFields(url="http://a", title="New title", price=9.0, brand=None),
        now=NOW,
    )

    assert product.title == "New title"
    assert product.price == 9.0
    assert product.old_price is None
    assert product.brand == "Acme"
    assert product.description == "Long text"
    assert product.active is False
    assert product.feed_id == "f1"
