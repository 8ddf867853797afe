"""Pagination controller shared by every platform adapter.

Pages are fetched strictly in order because each cursor comes from the
previous response. Each fetch runs under a timeout and a bounded retry
policy; a hard page cap guards against adapters whose reported total is
wrong.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional, Tuple, TypeVar

from sales_ledger.config import settings
from sales_ledger.models.raw_orders import RawOrder
from sales_ledger.services.adapters.base import Page, PlatformAdapter
from sales_ledger.services.credential_provider import Credential
from sales_ledger.services.errors import (
    AuthExpired,
    InvalidCredential,
    NormalizationAnomaly,
    RateLimited,
    RETRYABLE_ERRORS,
    TransientNetworkError,
)
from sales_ledger.utils.logger import logger

RefreshCallback = Callable[[Credential], Awaitable[Credential]]
SleepFunc = Callable[[float], Awaitable[Any]]
T = TypeVar("T")


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    timeout: float = 30.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.SYNC_MAX_ATTEMPTS,
            base_delay=settings.SYNC_BACKOFF_BASE_SECONDS,
            max_delay=settings.SYNC_BACKOFF_MAX_SECONDS,
            timeout=settings.SYNC_PAGE_TIMEOUT_SECONDS,
        )

    def delay_for(self, attempt: int, error: Exception) -> float:
        """Exponential backoff; a server-provided Retry-After wins when larger."""
        delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        if isinstance(error, RateLimited) and error.retry_after:
            delay = min(self.max_delay, max(delay, error.retry_after))
        return delay


@dataclass
class PaginationResult:
    orders: List[RawOrder]
    credential: Credential
    anomalies: List[NormalizationAnomaly] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    pages_fetched: int = 0
    raw_count: int = 0
    capped: bool = False


async def call_with_retry(
    platform: str,
    request: Callable[[Credential], Awaitable[T]],
    credential: Credential,
    *,
    policy: RetryPolicy,
    refresh_credential: Optional[RefreshCallback] = None,
    sleep: SleepFunc = asyncio.sleep,
    what: str = "page fetch",
) -> Tuple[T, Credential]:
    """Run one marketplace request, retrying transient failures.

    ``AuthExpired`` triggers exactly one credential refresh followed by a retry
    of the same request; it does not use up a backoff attempt. Non-retryable
    errors propagate on the first occurrence.
    """
    attempt = 0
    refreshed = False
    while True:
        attempt += 1
        try:
            value = await asyncio.wait_for(request(credential), timeout=policy.timeout)
            return value, credential
        except asyncio.TimeoutError:
            error: Exception = TransientNetworkError(platform, f"{what} exceeded {policy.timeout:.0f}s timeout")
        except AuthExpired as exc:
            if refreshed or refresh_credential is None:
                raise InvalidCredential(
                    platform, "access token rejected after refresh", status_code=exc.status_code
                ) from exc
            logger.info(f"[{platform}] access token expired; refreshing and retrying {what}")
            credential = await refresh_credential(credential)
            refreshed = True
            attempt -= 1
            continue
        except RETRYABLE_ERRORS as exc:
            error = exc

        if attempt >= policy.max_attempts:
            logger.error(f"[{platform}] {what} gave up after {attempt} attempts: {error}")
            raise error
        delay = policy.delay_for(attempt, error)
        logger.warning(
            f"[{platform}] {what} attempt {attempt}/{policy.max_attempts} failed: {error}; retrying in {delay:.1f}s"
        )
        await sleep(delay)


async def fetch_with_retry(
    adapter: PlatformAdapter,
    credential: Credential,
    start_date: datetime,
    end_date: datetime,
    cursor: Any,
    *,
    policy: RetryPolicy,
    refresh_credential: Optional[RefreshCallback] = None,
    sleep: SleepFunc = asyncio.sleep,
) -> Tuple[Page, Credential]:
    """Fetch one page and complete its pending orders.

    The page request and each per-order detail request are retried on their
    own, so a detail request that gets throttled never refetches the page or
    the details already in hand.
    """
    page, credential = await call_with_retry(
        adapter.platform,
        lambda current: adapter.fetch_page(current, start_date, end_date, cursor),
        credential,
        policy=policy,
        refresh_credential=refresh_credential,
        sleep=sleep,
    )
    if not page.pending:
        return page, credential

    for payload in page.pending:
        _, credential = await call_with_retry(
            adapter.platform,
            lambda current, payload=payload: adapter.fetch_order_details(current, payload),
            credential,
            policy=policy,
            refresh_credential=refresh_credential,
            sleep=sleep,
            what="order details fetch",
        )
    return adapter.complete_page(page), credential


async def paginate(
    adapter: PlatformAdapter,
    credential: Credential,
    start_date: datetime,
    end_date: datetime,
    *,
    max_pages: Optional[int] = None,
    policy: Optional[RetryPolicy] = None,
    refresh_credential: Optional[RefreshCallback] = None,
    sleep: SleepFunc = asyncio.sleep,
) -> PaginationResult:
    """Drive ``adapter`` until the data is exhausted or the page cap is hit.

    Stops on a short page, when the accumulated count reaches the reported
    total, or when the adapter has no next cursor. Reaching ``max_pages``
    keeps everything fetched so far and records a warning.
    """
    max_pages = max_pages or settings.SYNC_MAX_PAGES
    policy = policy or RetryPolicy.from_settings()
    result = PaginationResult(orders=[], credential=credential)
    cursor = adapter.initial_cursor()

    for page_number in range(1, max_pages + 1):
        page, result.credential = await fetch_with_retry(
            adapter,
            result.credential,
            start_date,
            end_date,
            cursor,
            policy=policy,
            refresh_credential=refresh_credential,
            sleep=sleep,
        )
        result.pages_fetched = page_number
        result.raw_count += page.raw_count
        result.orders.extend(page.orders)
        result.anomalies.extend(page.anomalies)
        logger.info(
            f"[{adapter.platform}] page {page_number}: {page.raw_count} orders, "
            f"total so far {result.raw_count}/{page.total if page.total is not None else '?'}"
        )

        if page.raw_count < page.page_size:
            break
        if page.total is not None and result.raw_count >= page.total:
            break
        if page.next_cursor is None:
            break
        cursor = page.next_cursor
    else:
        result.capped = True
        warning = f"reached safety limit of {max_pages} pages; keeping {result.raw_count} orders fetched so far"
        result.warnings.append(warning)
        logger.warning(f"[{adapter.platform}] {warning}")

    return result
