from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx
from pydantic import ValidationError

from sales_ledger.models.raw_orders import RawOrder
from sales_ledger.services.credential_provider import Credential
from sales_ledger.services.errors import (
    AuthExpired,
    InvalidCredential,
    NormalizationAnomaly,
    PermanentAPIError,
    RateLimited,
    TransientNetworkError,
)
from sales_ledger.utils.logger import platform_logger

TRANSIENT_STATUS_CODES = (502, 503, 504)


@dataclass
class Page:
    orders: List[RawOrder]
    next_cursor: Optional[Any]
    # Number of orders the marketplace returned, including ones that failed parsing.
    raw_count: int
    page_size: int
    total: Optional[int] = None
    anomalies: List[NormalizationAnomaly] = field(default_factory=list)
    # Raw payloads that need fetch_order_details before they can be parsed.
    pending: List[Dict[str, Any]] = field(default_factory=list)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept ISO-8601 strings (with or without ``Z``) and unix seconds."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


def to_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


class PlatformAdapter:
    """Fetches one page of orders from a marketplace.

    Subclasses set ``platform`` and ``page_size`` and implement
    ``fetch_page`` and ``parse_order``; status handling and per-order parsing
    failures are shared here.
    """

    platform: str = ""
    page_size: int = 100
    default_base_url: str = ""

    def __init__(self, client: httpx.AsyncClient, base_url: Optional[str] = None):
        self.client = client
        self.base_url = (base_url or self.default_base_url).rstrip("/")

    def initial_cursor(self) -> Any:
        return None

    async def fetch_page(
        self,
        credential: Credential,
        start_date: datetime,
        end_date: datetime,
        cursor: Any,
    ) -> Page:
        raise NotImplementedError

    def parse_order(self, payload: Dict[str, Any]) -> RawOrder:
        raise NotImplementedError

    def order_id_of(self, payload: Dict[str, Any]) -> Optional[str]:
        return None

    async def fetch_order_details(self, credential: Credential, payload: Dict[str, Any]) -> None:
        """Complete one pending payload in place with a follow-up request."""
        raise NotImplementedError

    def complete_page(self, page: Page) -> Page:
        orders, anomalies = self._parse_orders(page.pending)
        page.orders.extend(orders)
        page.anomalies.extend(anomalies)
        page.pending = []
        return page

    def _parse_orders(self, payloads: List[Dict[str, Any]]) -> Tuple[List[RawOrder], List[NormalizationAnomaly]]:
        orders: List[RawOrder] = []
        anomalies: List[NormalizationAnomaly] = []
        for payload in payloads:
            try:
                orders.append(self.parse_order(payload))
            except NormalizationAnomaly as anomaly:
                anomalies.append(anomaly)
            except (ValidationError, KeyError, TypeError, ValueError) as exc:
                order_id = None
                if isinstance(payload, dict):
                    order_id = self.order_id_of(payload)
                anomalies.append(NormalizationAnomaly(self.platform, order_id, f"malformed order payload: {exc}"))
        return orders, anomalies

    async def _get_json(
        self,
        url: str,
        *,
        headers: Dict[str, str],
        params: Optional[Dict[str, Any]] = None,
        auth: Optional[Tuple[str, str]] = None,
    ) -> Any:
        try:
            response = await self.client.get(url, headers=headers, params=params, auth=auth)
        except httpx.TimeoutException as exc:
            raise TransientNetworkError(self.platform, f"request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientNetworkError(self.platform, f"HTTP request failed: {exc}") from exc

        if response.status_code == 200:
            try:
                return response.json()
            except ValueError as exc:
                raise PermanentAPIError(self.platform, "response body is not valid JSON", status_code=200) from exc

        detail = response.text[:500]
        platform_logger.log_platform_event(
            self.platform,
            "fetch_orders_failed",
            f"Orders request failed: {response.status_code}",
            request_data={"url": url, "params": params},
            status="error",
            error=detail,
        )

        if response.status_code == 401:
            raise AuthExpired(self.platform, "access token expired or revoked", status_code=401)
        if response.status_code == 403:
            raise InvalidCredential(self.platform, f"access denied: {detail}", status_code=403)
        if response.status_code == 429:
            retry_after = None
            try:
                retry_after = float(response.headers.get("Retry-After", ""))
            except ValueError:
                pass
            raise RateLimited(self.platform, "rate limited", retry_after=retry_after)
        if response.status_code in TRANSIENT_STATUS_CODES:
            raise TransientNetworkError(
                self.platform, "marketplace temporarily unavailable", status_code=response.status_code
            )
        raise PermanentAPIError(self.platform, f"orders request failed: {detail}", status_code=response.status_code)
