from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from sales_ledger.config import settings
from sales_ledger.models.raw_orders import RawOrder
from sales_ledger.services.credential_provider import Credential
from sales_ledger.services.errors import InvalidCredential
from sales_ledger.utils.logger import platform_logger
from .base import Page, PlatformAdapter, parse_timestamp, to_str

RECEIPTS_PAGE_LIMIT = 100  # Etsy v3 max


def _money(value: Optional[Dict[str, Any]]) -> Optional[float]:
    """Etsy money objects are ``{amount, divisor, currency_code}``."""
    if not value:
        return None
    divisor = value.get("divisor") or 1
    return float(value["amount"]) / float(divisor)


class EtsyAdapter(PlatformAdapter):
    """Etsy Open API v3 shop receipts. Offset-paged, reports ``count``."""

    platform = "etsy"
    page_size = RECEIPTS_PAGE_LIMIT

    def __init__(self, client: httpx.AsyncClient, base_url: Optional[str] = None):
        super().__init__(client, base_url or settings.ETSY_API_BASE_URL)

    def initial_cursor(self) -> int:
        return 0

    def order_id_of(self, payload: Dict[str, Any]) -> Optional[str]:
        return to_str(payload.get("receipt_id"))

    async def fetch_page(
        self,
        credential: Credential,
        start_date: datetime,
        end_date: datetime,
        cursor: Any,
    ) -> Page:
        if not credential.access_token or not credential.store_id:
            raise InvalidCredential(self.platform, "Etsy access token and shop id are required")
        api_key = credential.public_key or settings.ETSY_CLIENT_ID
        if not api_key:
            raise InvalidCredential(self.platform, "Etsy API key (client id) is not configured")

        offset = int(cursor or 0)
        params = {
            "limit": self.page_size,
            "offset": offset,
            "min_created": int(start_date.timestamp()),
            "max_created": int(end_date.timestamp()),
        }
        headers = {
            "x-api-key": api_key,
            "Authorization": f"Bearer {credential.access_token}",
            "Accept": "application/json",
        }
        platform_logger.log_platform_event(
            self.platform,
            "fetch_orders_request",
            f"Fetching Etsy receipts offset={offset}",
            request_data={"shop_id": credential.store_id, "params": params},
        )
        data = await self._get_json(
            f"{self.base_url}/application/shops/{credential.store_id}/receipts",
            headers=headers,
            params=params,
        )

        results = data.get("results") or []
        orders, anomalies = self._parse_orders(results)
        return Page(
            orders=orders,
            next_cursor=offset + len(results) if results else None,
            raw_count=len(results),
            page_size=self.page_size,
            total=data.get("count"),
            anomalies=anomalies,
        )

    def parse_order(self, payload: Dict[str, Any]) -> RawOrder:
        shipping = payload.get("total_shipping_cost") or {}

        items = []
        currency = shipping.get("currency_code")
        for transaction in payload.get("transactions") or []:
            price = transaction.get("price") or {}
            currency = currency or price.get("currency_code")
            items.append(
                {
                    "item_id": to_str(transaction.get("transaction_id")),
                    "title": transaction.get("title"),
                    "unit_price": _money(price),
                    "quantity": transaction.get("quantity"),
                }
            )

        tracking_number = None
        for shipment in payload.get("shipments") or []:
            if shipment.get("tracking_code"):
                tracking_number = str(shipment["tracking_code"])
                break

        address = None
        if payload.get("formatted_address"):
            address = {
                "name": payload.get("name"),
                "formatted_address": payload.get("formatted_address"),
                "country_iso": payload.get("country_iso"),
            }

        created = payload.get("create_timestamp") or payload.get("created_timestamp")
        return RawOrder.model_validate(
            {
                "order_id": self.order_id_of(payload),
                "shipping_total": _money(shipping) or 0.0,
                "currency": currency or "USD",
                "status": payload.get("status"),
                "buyer": {
                    "name": payload.get("name") or "",
                    "email": payload.get("buyer_email") or "",
                },
                "created_at": parse_timestamp(created),
                "items": items,
                "shipping_address": address,
                "tracking_number": tracking_number,
            }
        )
