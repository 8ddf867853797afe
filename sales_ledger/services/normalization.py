"""Raw order -> canonical Sale normalization.

Three concerns live here: spreading an order's shipping charge over its
units, folding every marketplace's status vocabulary into five canonical
values, and deriving a stable identity for each line item.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sales_ledger.models.raw_orders import RawOrder
from sales_ledger.models_sqlalchemy.models import NormalizedStatus
from sales_ledger.services.errors import NormalizationAnomaly
from sales_ledger.utils.logger import logger


# Keys are lower-case with runs of spaces/hyphens folded to "_".
STATUS_MAP: Dict[str, NormalizedStatus] = {
    # completed
    "complete": NormalizedStatus.completed,
    "completed": NormalizedStatus.completed,
    "fulfilled": NormalizedStatus.completed,
    "shipped": NormalizedStatus.completed,
    "delivered": NormalizedStatus.completed,
    "closed": NormalizedStatus.completed,
    # pending
    "pending": NormalizedStatus.pending,
    "delivery_pending": NormalizedStatus.pending,
    "payment_pending": NormalizedStatus.pending,
    "payment_processing": NormalizedStatus.pending,
    "paid": NormalizedStatus.pending,
    "open": NormalizedStatus.pending,
    "processing": NormalizedStatus.pending,
    "hold": NormalizedStatus.pending,
    "in_progress": NormalizedStatus.pending,
    "not_started": NormalizedStatus.pending,
    "unshipped": NormalizedStatus.pending,
    "partiallyshipped": NormalizedStatus.pending,
    "partially_shipped": NormalizedStatus.pending,
    "partially_fulfilled": NormalizedStatus.pending,
    "awaiting_shipment": NormalizedStatus.pending,
    "pendingavailability": NormalizedStatus.pending,
    "invoiceunconfirmed": NormalizedStatus.pending,
    # cancelled
    "cancelled": NormalizedStatus.cancelled,
    "canceled": NormalizedStatus.cancelled,
    "canceled_pending": NormalizedStatus.cancelled,
    "unfulfillable": NormalizedStatus.cancelled,
    # refunded
    "refunded": NormalizedStatus.refunded,
    "fully_refunded": NormalizedStatus.refunded,
    "partially_refunded": NormalizedStatus.refunded,
    "returned": NormalizedStatus.refunded,
}

_SEPARATORS = re.compile(r"[\s\-]+")


def normalize_status(raw_status: Any) -> str:
    """Map a marketplace status string to a canonical status value.

    Never raises: anything unrecognised, empty or not a string is ``unknown``.
    """
    if not isinstance(raw_status, str):
        return NormalizedStatus.unknown.value
    key = _SEPARATORS.sub("_", raw_status.strip().lower())
    if not key:
        return NormalizedStatus.unknown.value
    return STATUS_MAP.get(key, NormalizedStatus.unknown).value


def to_utc(value: datetime) -> datetime:
    """Convert to UTC; naive timestamps are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def synthesize_item_id(order_id: str, item_index: int) -> str:
    return f"{order_id}:{item_index}"


def allocate_shipping(shipping_total: float, quantities: List[int]) -> Optional[float]:
    """Return the shipping share per unit, or None when there are no units."""
    total_units = sum(quantities)
    if total_units <= 0:
        return None
    return shipping_total / total_units


@dataclass
class SaleRecord:
    user_id: str
    platform: str
    order_id: str
    item_id: str
    item_title: str
    quantity: int
    price: float
    currency: str
    buyer_name: str
    buyer_email: str
    sale_date: datetime
    status: Optional[str]
    normalized_status: str
    shipping_address: Optional[str]
    tracking_number: Optional[str]

    @property
    def identity(self) -> Tuple[str, str, str, str]:
        return (self.user_id, self.platform, self.order_id, self.item_id)

    @property
    def revenue(self) -> float:
        return self.price * self.quantity


def normalize_order(
    user_id: str,
    platform: str,
    order: RawOrder,
) -> Tuple[List[SaleRecord], List[NormalizationAnomaly]]:
    """Turn one raw order into one SaleRecord per line item.

    An order whose items sum to zero units keeps its unit prices unchanged and
    is reported as an anomaly instead of dividing by zero.
    """
    anomalies: List[NormalizationAnomaly] = []

    shipping_total = order.shipping_total
    if shipping_total is None or not math.isfinite(shipping_total):
        anomalies.append(
            NormalizationAnomaly(platform, order.order_id, f"invalid shipping_total {shipping_total!r}")
        )
        shipping_total = 0.0

    per_unit = allocate_shipping(shipping_total, [item.quantity for item in order.items])
    if per_unit is None:
        anomalies.append(
            NormalizationAnomaly(
                platform,
                order.order_id,
                f"order has zero total quantity; shipping {shipping_total} not allocated",
            )
        )
        per_unit = 0.0

    normalized_status = normalize_status(order.status)
    shipping_address = (
        json.dumps(order.shipping_address, sort_keys=True) if order.shipping_address else None
    )

    records: List[SaleRecord] = []
    for index, item in enumerate(order.items):
        item_id = item.item_id or synthesize_item_id(order.order_id, index)
        records.append(
            SaleRecord(
                user_id=user_id,
                platform=platform,
                order_id=order.order_id,
                item_id=item_id,
                item_title=item.title,
                quantity=item.quantity,
                price=item.unit_price + per_unit,
                currency=order.currency or "USD",
                buyer_name=order.buyer.name,
                buyer_email=order.buyer.email,
                sale_date=to_utc(order.created_at),
                status=order.status,
                normalized_status=normalized_status,
                shipping_address=shipping_address,
                tracking_number=order.tracking_number,
            )
        )
    return records, anomalies


def normalize_orders(
    user_id: str,
    platform: str,
    orders: Iterable[RawOrder],
) -> Tuple[List[SaleRecord], List[NormalizationAnomaly]]:
    """Normalize a batch, logging anomalies and continuing past them."""
    by_identity: Dict[Tuple[str, str, str, str], SaleRecord] = {}
    anomalies: List[NormalizationAnomaly] = []

    for order in orders:
        order_records, order_anomalies = normalize_order(user_id, platform, order)
        for anomaly in order_anomalies:
            logger.warning(f"Normalization anomaly: {anomaly}")
        anomalies.extend(order_anomalies)

        for record in order_records:
            # The same order can appear on two pages when a marketplace shifts
            # results between requests; keep the last copy.
            by_identity.pop(record.identity, None)
            by_identity[record.identity] = record

    return list(by_identity.values()), anomalies
