import math
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from conftest import make_order
from sales_ledger.models.raw_orders import RawOrder
from sales_ledger.services.errors import NormalizationAnomaly
from sales_ledger.services.normalization import (
    allocate_shipping,
    normalize_order,
    normalize_orders,
    normalize_status,
    synthesize_item_id,
    to_utc,
)

CANONICAL = {"completed", "pending", "cancelled", "refunded", "unknown"}


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("Complete", "completed"),
        ("DELIVERY_PENDING", "pending"),
        ("refunded", "refunded"),
        ("", "unknown"),
        (None, "unknown"),
        ("  Canceled ", "cancelled"),
        ("Partially-Shipped", "pending"),
        ("FULFILLED", "completed"),
        ("PartiallyShipped", "pending"),
        ("Unshipped", "pending"),
        ("FULLY_REFUNDED", "refunded"),
        ("something new", "unknown"),
        (42, "unknown"),
        ({"status": "complete"}, "unknown"),
    ],
)
def test_status_normalization_is_total(raw, expected):
    result = normalize_status(raw)
    assert result == expected
    assert result in CANONICAL


def test_shipping_is_spread_per_unit():
    order = make_order(
        shipping_total=10.0,
        items=[{"item_id": "A", "title": "Mug", "unit_price": 5.0, "quantity": 2}],
    )

    records, anomalies = normalize_order("user-1", "swell", order)

    assert anomalies == []
    assert len(records) == 1
    assert records[0].price == pytest.approx(10.0)
    assert records[0].revenue == pytest.approx(20.0)


def test_shipping_allocation_conserves_total_across_items():
    items = [
        {"item_id": "A", "title": "Mug", "unit_price": 4.99, "quantity": 3},
        {"item_id": "B", "title": "Plate", "unit_price": 12.5, "quantity": 1},
        {"item_id": "C", "title": "Bowl", "unit_price": 7.25, "quantity": 2},
    ]
    order = make_order(shipping_total=13.37, items=items)

    records, _ = normalize_order("user-1", "ebay", order)

    allocated = sum((r.price - item["unit_price"]) * item["quantity"] for r, item in zip(records, items))
    assert allocated == pytest.approx(13.37)


def test_zero_quantity_order_is_flagged_not_divided():
    order = make_order(
        shipping_total=5.0,
        items=[{"item_id": "A", "title": "Mug", "unit_price": 3.0, "quantity": 0}],
    )

    records, anomalies = normalize_order("user-1", "etsy", order)

    assert len(anomalies) == 1
    assert isinstance(anomalies[0], NormalizationAnomaly)
    assert anomalies[0].order_id == order.order_id
    assert records[0].price == 3.0


def test_allocate_shipping_returns_none_without_units():
    assert allocate_shipping(10.0, []) is None
    assert allocate_shipping(10.0, [0, 0]) is None
    assert allocate_shipping(9.0, [1, 2]) == pytest.approx(3.0)


def test_nan_shipping_is_reported_and_ignored():
    order = make_order(shipping_total=float("nan"))

    records, anomalies = normalize_order("user-1", "swell", order)

    assert len(anomalies) == 1
    assert not math.isnan(records[0].price)
    assert records[0].price == 5.0


def test_missing_item_ids_are_synthesized_deterministically():
    items = [
        {"title": "Mug", "unit_price": 5.0, "quantity": 1},
        {"title": "Plate", "unit_price": 6.0, "quantity": 1},
    ]
    first, _ = normalize_order("user-1", "etsy", make_order(order_id="R-9", items=items))
    second, _ = normalize_order("user-1", "etsy", make_order(order_id="R-9", items=items))

    assert [r.item_id for r in first] == ["R-9:0", "R-9:1"]
    assert [r.identity for r in first] == [r.identity for r in second]
    assert synthesize_item_id("R-9", 1) == "R-9:1"


def test_record_carries_order_fields():
    order = make_order(
        status="Shipped",
        currency="EUR",
        shipping_address={"city": "Berlin", "country": "DE"},
        tracking_number="TRK1",
    )

    record = normalize_order("user-1", "swell", order)[0][0]

    assert record.status == "Shipped"
    assert record.normalized_status == "completed"
    assert record.currency == "EUR"
    assert record.buyer_email == "ann@example.com"
    assert record.shipping_address == '{"city": "Berlin", "country": "DE"}'
    assert record.tracking_number == "TRK1"


def test_duplicate_orders_across_pages_keep_last_copy():
    orders = [
        make_order(order_id="1", status="pending"),
        make_order(order_id="2"),
        make_order(order_id="1", status="complete"),
    ]

    records, anomalies = normalize_orders("user-1", "swell", orders)

    assert anomalies == []
    assert len(records) == 2
    by_order = {r.order_id: r for r in records}
    assert by_order["1"].normalized_status == "completed"


def test_raw_order_requires_core_fields():
    with pytest.raises(ValidationError):
        RawOrder.model_validate({"order_id": "1", "items": [], "created_at": "2026-10-01T00:00:00Z"})
    with pytest.raises(ValidationError):
        RawOrder.model_validate(
            {"order_id": "1", "items": [{"title": "Mug", "unit_price": None, "quantity": 1}],
             "created_at": "2026-10-01T00:00:00Z"}
        )


def test_sale_date_is_converted_to_utc():
    central = timezone(timedelta(hours=-5))
    order = make_order(created_at=datetime(2026, 10, 1, 23, 30, tzinfo=central))

    record = normalize_order("user-1", "swell", order)[0][0]

    assert record.sale_date == datetime(2026, 10, 2, 4, 30, tzinfo=timezone.utc)
    assert record.sale_date.utcoffset() == timedelta(0)
    assert to_utc(datetime(2026, 10, 1, 8, 0)) == datetime(2026, 10, 1, 8, 0, tzinfo=timezone.utc)


def test_item_without_title_is_rejected():
    with pytest.raises(ValidationError):
        make_order(items=[{"item_id": "1-A", "title": "", "unit_price": 5.0, "quantity": 1}])
