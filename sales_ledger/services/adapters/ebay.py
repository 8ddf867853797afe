from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from sales_ledger.config import settings
from sales_ledger.models.raw_orders import RawOrder
from sales_ledger.services.credential_provider import Credential
from sales_ledger.services.errors import InvalidCredential
from sales_ledger.utils.logger import platform_logger
from .base import Page, PlatformAdapter, parse_timestamp, to_float, to_str

ORDERS_PAGE_LIMIT = 200  # Fulfillment API max


def _ebay_timestamp(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.000Z")


class EbayAdapter(PlatformAdapter):
    """eBay Sell Fulfillment API. Offset-paged, reports ``total``."""

    platform = "ebay"
    page_size = ORDERS_PAGE_LIMIT

    def __init__(self, client: httpx.AsyncClient, base_url: Optional[str] = None):
        super().__init__(client, base_url or settings.EBAY_API_BASE_URL)

    def initial_cursor(self) -> int:
        return 0

    def order_id_of(self, payload: Dict[str, Any]) -> Optional[str]:
        return to_str(payload.get("orderId"))

    async def fetch_page(
        self,
        credential: Credential,
        start_date: datetime,
        end_date: datetime,
        cursor: Any,
    ) -> Page:
        if not credential.access_token:
            raise InvalidCredential(self.platform, "eBay access token required")

        offset = int(cursor or 0)
        params = {
            "limit": self.page_size,
            "offset": offset,
            # The Fulfillment API expects the field name in lower case.
            "filter": f"creationdate:[{_ebay_timestamp(start_date)}..{_ebay_timestamp(end_date)}]",
        }
        headers = {
            "Authorization": f"Bearer {credential.access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
            "X-EBAY-C-MARKETPLACE-ID": "EBAY_US",
        }
        platform_logger.log_platform_event(
            self.platform,
            "fetch_orders_request",
            f"Fetching eBay orders offset={offset}",
            request_data={"params": params},
        )
        data = await self._get_json(f"{self.base_url}/sell/fulfillment/v1/order", headers=headers, params=params)

        results = data.get("orders") or []
        orders, anomalies = self._parse_orders(results)
        return Page(
            orders=orders,
            next_cursor=offset + len(results) if results else None,
            raw_count=len(results),
            page_size=self.page_size,
            total=data.get("total"),
            anomalies=anomalies,
        )

    def parse_order(self, payload: Dict[str, Any]) -> RawOrder:
        pricing = payload.get("pricingSummary") or {}
        delivery_cost = pricing.get("deliveryCost") or {}
        order_total = pricing.get("total") or {}
        buyer = payload.get("buyer") or {}
        registration = buyer.get("buyerRegistrationAddress") or {}

        items = []
        for line in payload.get("lineItems") or []:
            quantity = line.get("quantity")
            # lineItemCost covers the whole quantity of the line.
            line_cost = to_float((line.get("lineItemCost") or {}).get("value"))
            unit_price = line_cost
            if line_cost is not None and quantity:
                unit_price = line_cost / int(quantity)
            items.append(
                {
                    "item_id": to_str(line.get("lineItemId")),
                    "title": line.get("title"),
                    "unit_price": unit_price,
                    "quantity": quantity,
                }
            )

        ship_to = None
        for instruction in payload.get("fulfillmentStartInstructions") or []:
            ship_to = (instruction.get("shippingStep") or {}).get("shipTo")
            if ship_to:
                break

        return RawOrder.model_validate(
            {
                "order_id": self.order_id_of(payload),
                "shipping_total": to_float(delivery_cost.get("value")) or 0.0,
                "currency": order_total.get("currency") or delivery_cost.get("currency") or "USD",
                "status": _ebay_status(payload),
                "buyer": {
                    "name": registration.get("fullName") or buyer.get("username") or "",
                    "email": registration.get("email") or "",
                },
                "created_at": parse_timestamp(payload.get("creationDate")),
                "items": items,
                "shipping_address": ship_to,
            }
        )


def _ebay_status(payload: Dict[str, Any]) -> Optional[str]:
    """Refund and cancellation states win over the fulfillment state."""
    payment_status = payload.get("orderPaymentStatus")
    if payment_status in ("FULLY_REFUNDED", "PARTIALLY_REFUNDED"):
        return payment_status
    cancel_state = (payload.get("cancelStatus") or {}).get("cancelState")
    if cancel_state == "CANCELED":
        return cancel_state
    return payload.get("orderFulfillmentStatus")
