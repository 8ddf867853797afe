from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from sales_ledger.config import settings
from sales_ledger.models.raw_orders import RawOrder
from sales_ledger.services.credential_provider import Credential
from sales_ledger.services.errors import InvalidCredential
from sales_ledger.utils.logger import platform_logger
from .base import Page, PlatformAdapter, parse_timestamp, to_float, to_str

SWELL_PAGE_LIMIT = 100  # Swell API max


class SwellAdapter(PlatformAdapter):
    """Swell backend API. Page-numbered, reports ``count``."""

    platform = "swell"
    page_size = SWELL_PAGE_LIMIT

    def __init__(self, client: httpx.AsyncClient, base_url: Optional[str] = None):
        super().__init__(client, base_url or settings.SWELL_API_BASE_URL)

    def initial_cursor(self) -> int:
        return 1

    def order_id_of(self, payload: Dict[str, Any]) -> Optional[str]:
        value = payload.get("number") or payload.get("id")
        return str(value) if value is not None else None

    async def fetch_page(
        self,
        credential: Credential,
        start_date: datetime,
        end_date: datetime,
        cursor: Any,
    ) -> Page:
        if not credential.store_id or not credential.secret_key:
            raise InvalidCredential(self.platform, "store id and secret key are required")

        page = int(cursor or 1)
        params = {
            "limit": self.page_size,
            "page": page,
            "expand": "items",
            "where[date_created][$gte]": start_date.isoformat(),
            "where[date_created][$lte]": end_date.isoformat(),
        }
        platform_logger.log_platform_event(
            self.platform,
            "fetch_orders_request",
            f"Fetching Swell orders page {page}",
            request_data={"store_id": credential.store_id, "params": params},
        )
        data = await self._get_json(
            f"{self.base_url}/orders",
            headers={"Accept": "application/json"},
            params=params,
            auth=(credential.store_id, credential.secret_key),
        )

        results = data.get("results") or []
        orders, anomalies = self._parse_orders(results)
        return Page(
            orders=orders,
            next_cursor=page + 1 if results else None,
            raw_count=len(results),
            page_size=self.page_size,
            total=data.get("count"),
            anomalies=anomalies,
        )

    def parse_order(self, payload: Dict[str, Any]) -> RawOrder:
        account = payload.get("account") or {}
        billing = payload.get("billing") or {}
        shipping_total = payload.get("shipping_total")
        if shipping_total is None:
            shipping_total = payload.get("shipment_total")

        items = []
        for item in payload.get("items") or []:
            items.append(
                {
                    "item_id": to_str(item.get("id")),
                    "title": item.get("product_name") or item.get("name"),
                    "unit_price": to_float(item.get("price")),
                    "quantity": item.get("quantity"),
                }
            )

        return RawOrder.model_validate(
            {
                "order_id": self.order_id_of(payload),
                "shipping_total": to_float(shipping_total) or 0.0,
                "currency": payload.get("currency") or "USD",
                "status": payload.get("status"),
                "buyer": {
                    "name": account.get("name") or billing.get("name") or "",
                    "email": account.get("email") or billing.get("email") or "",
                },
                "created_at": parse_timestamp(payload.get("date_created")),
                "items": items,
                "shipping_address": payload.get("shipping") or None,
                "tracking_number": _first_tracking_number(payload),
            }
        )


def _first_tracking_number(payload: Dict[str, Any]) -> Optional[str]:
    shipments = payload.get("shipments") or {}
    if isinstance(shipments, dict):
        shipments = shipments.get("results") or []
    for shipment in shipments:
        if isinstance(shipment, dict) and shipment.get("tracking_code"):
            return str(shipment["tracking_code"])
    return None
