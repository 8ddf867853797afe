from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from sales_ledger.config import settings
from sales_ledger.models.raw_orders import RawOrder
from sales_ledger.services.credential_provider import Credential
from sales_ledger.services.errors import InvalidCredential, NormalizationAnomaly
from sales_ledger.utils.logger import platform_logger
from .base import Page, PlatformAdapter, parse_timestamp, to_float, to_str

ORDERS_PAGE_LIMIT = 100  # SP-API Orders max
ORDER_ITEMS_MAX_PAGES = 20


def _iso(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


class AmazonAdapter(PlatformAdapter):
    """Amazon Selling Partner Orders API.

    Token-paged (``NextToken``) with no reported total. Line items live behind
    a second endpoint, so each order costs one extra request; pages come back
    with every order pending until ``fetch_order_details`` has run for it.
    """

    platform = "amazon"
    page_size = ORDERS_PAGE_LIMIT

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: Optional[str] = None,
        marketplace_id: Optional[str] = None,
    ):
        super().__init__(client, base_url or settings.AMAZON_API_BASE_URL)
        self.marketplace_id = marketplace_id or settings.AMAZON_MARKETPLACE_ID

    def order_id_of(self, payload: Dict[str, Any]) -> Optional[str]:
        return to_str(payload.get("AmazonOrderId"))

    def _headers(self, credential: Credential) -> Dict[str, str]:
        return {
            "x-amz-access-token": credential.access_token,
            "Accept": "application/json",
        }

    async def fetch_page(
        self,
        credential: Credential,
        start_date: datetime,
        end_date: datetime,
        cursor: Any,
    ) -> Page:
        if not credential.access_token:
            raise InvalidCredential(self.platform, "Amazon access token required")

        if cursor:
            # Continuation requests must not repeat the original filters.
            params = {"MarketplaceIds": self.marketplace_id, "NextToken": cursor}
        else:
            # CreatedBefore must be at least two minutes in the past.
            latest = datetime.now(timezone.utc) - timedelta(minutes=2)
            if end_date.tzinfo is None:
                end_date = end_date.replace(tzinfo=timezone.utc)
            params = {
                "MarketplaceIds": self.marketplace_id,
                "CreatedAfter": _iso(start_date),
                "CreatedBefore": _iso(min(end_date, latest)),
                "MaxResultsPerPage": self.page_size,
            }
        platform_logger.log_platform_event(
            self.platform,
            "fetch_orders_request",
            "Fetching Amazon orders" + (" (continuation)" if cursor else ""),
            request_data={"marketplace_id": self.marketplace_id},
        )
        data = await self._get_json(
            f"{self.base_url}/orders/v0/orders",
            headers=self._headers(credential),
            params=params,
        )
        payload = data.get("payload") or {}
        results = payload.get("Orders") or []
        # Items are fetched per order by the pagination controller, one retried
        # request at a time, so a throttled items call does not refetch the page.
        return Page(
            orders=[],
            next_cursor=payload.get("NextToken"),
            raw_count=len(results),
            page_size=self.page_size,
            total=None,
            pending=list(results),
        )

    async def fetch_order_details(self, credential: Credential, payload: Dict[str, Any]) -> None:
        if not isinstance(payload, dict) or "OrderItems" in payload:
            return
        order_id = self.order_id_of(payload)
        if order_id:
            payload["OrderItems"] = await self._fetch_order_items(credential, order_id)

    async def _fetch_order_items(self, credential: Credential, order_id: str) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        next_token = None
        for _ in range(ORDER_ITEMS_MAX_PAGES):
            params = {"NextToken": next_token} if next_token else None
            data = await self._get_json(
                f"{self.base_url}/orders/v0/orders/{order_id}/orderItems",
                headers=self._headers(credential),
                params=params,
            )
            payload = data.get("payload") or {}
            items.extend(payload.get("OrderItems") or [])
            next_token = payload.get("NextToken")
            if not next_token:
                break
        return items

    def parse_order(self, payload: Dict[str, Any]) -> RawOrder:
        order_id = self.order_id_of(payload)
        buyer = payload.get("BuyerInfo") or {}
        order_items = payload.get("OrderItems") or []
        if not order_items:
            raise NormalizationAnomaly(self.platform, order_id, "order has no line items")

        items = []
        shipping_total = 0.0
        currency = (payload.get("OrderTotal") or {}).get("CurrencyCode")
        for item in order_items:
            quantity = item.get("QuantityOrdered")
            item_price = item.get("ItemPrice") or {}
            # ItemPrice covers the whole quantity ordered.
            line_total = to_float(item_price.get("Amount"))
            unit_price = line_total
            if line_total is not None and quantity:
                unit_price = line_total / int(quantity)
            currency = currency or item_price.get("CurrencyCode")
            shipping_total += to_float((item.get("ShippingPrice") or {}).get("Amount")) or 0.0
            items.append(
                {
                    "item_id": to_str(item.get("OrderItemId")),
                    "title": item.get("Title"),
                    "unit_price": unit_price,
                    "quantity": quantity,
                }
            )

        return RawOrder.model_validate(
            {
                "order_id": order_id,
                "shipping_total": shipping_total,
                "currency": currency or "USD",
                "status": payload.get("OrderStatus"),
                "buyer": {
                    "name": buyer.get("BuyerName") or "",
                    "email": buyer.get("BuyerEmail") or "",
                },
                "created_at": parse_timestamp(payload.get("PurchaseDate")),
                "items": items,
                "shipping_address": payload.get("ShippingAddress"),
            }
        )
