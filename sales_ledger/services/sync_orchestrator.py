"""Per-user sync across every connected marketplace.

Each platform runs as its own task (bounded by a semaphore) through
adapter -> pagination -> normalization -> ledger upsert, then records one
SyncRun. A platform failure is reported in the result and never stops the
other platforms; only an unreadable credential store escapes ``run_sync``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx

from sales_ledger.config import settings
from sales_ledger.models_sqlalchemy.models import SyncOutcome
from sales_ledger.services.adapters import ADAPTERS, AdapterFactory
from sales_ledger.services.credential_provider import Credential, CredentialProvider
from sales_ledger.services.errors import PermanentAPIError, PlatformError
from sales_ledger.services.ledger_store import LedgerStore
from sales_ledger.services.normalization import normalize_orders
from sales_ledger.services.pagination import RetryPolicy, SleepFunc, paginate
from sales_ledger.utils.logger import logger

NO_CONNECTIONS_MESSAGE = "No active platform connections found"
CANCELLED_DETAIL = "cancelled"


@dataclass
class PlatformSyncResult:
    platform: str
    outcome: str
    items_synced: int = 0
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.outcome != SyncOutcome.error.value

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "platform": self.platform,
            "success": self.success,
            "outcome": self.outcome,
            "warnings": list(self.warnings),
        }
        if self.success:
            data["itemsSynced"] = self.items_synced
        if self.error:
            data["error"] = self.error
        return data


def _default_client_factory() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=settings.SYNC_PAGE_TIMEOUT_SECONDS)


class SyncOrchestrator:
    def __init__(
        self,
        credential_provider: CredentialProvider,
        ledger: LedgerStore,
        *,
        adapters: Optional[Mapping[str, AdapterFactory]] = None,
        client_factory: Callable[[], httpx.AsyncClient] = _default_client_factory,
        retry_policy: Optional[RetryPolicy] = None,
        max_pages: Optional[int] = None,
        max_concurrency: Optional[int] = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.credentials = credential_provider
        self.ledger = ledger
        self.adapters = dict(adapters if adapters is not None else ADAPTERS)
        self.client_factory = client_factory
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.max_pages = max_pages or settings.SYNC_MAX_PAGES
        self.max_concurrency = max_concurrency or settings.SYNC_MAX_CONCURRENT_PLATFORMS
        self.sleep = sleep

    async def run_sync(
        self,
        user_id: str,
        days_back: int = 30,
        *,
        deadline_seconds: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Sync every active platform for ``user_id`` over the last ``days_back`` days.

        With ``deadline_seconds`` set, platforms still running at the deadline
        are cancelled and reported as ``partial``; rows already written stay.
        """
        credentials = self.credentials.get_active_credentials(user_id)
        run_started = datetime.now(timezone.utc)

        if not credentials:
            logger.info(f"Sync requested for user {user_id} with no active connections")
            await self.ledger.record_sync_run(
                user_id=user_id,
                platform="all",
                started_at=run_started,
                items_synced=0,
                outcome=SyncOutcome.success.value,
                warnings=["no active platform connections"],
            )
            return {"message": NO_CONNECTIONS_MESSAGE, "results": [], "summary": {}}

        end_date = run_started
        start_date = end_date - timedelta(days=int(days_back))
        semaphore = asyncio.Semaphore(self.max_concurrency)
        results: Dict[str, PlatformSyncResult] = {}

        tasks = [
            asyncio.ensure_future(
                self._sync_platform(user_id, credential, start_date, end_date, results, semaphore)
            )
            for credential in credentials
        ]
        try:
            done, pending = await asyncio.wait(tasks, timeout=deadline_seconds)
        except asyncio.CancelledError:
            await self._cancel(tasks)
            raise
        if pending:
            logger.warning(
                f"Sync for user {user_id} hit its {deadline_seconds}s deadline; "
                f"cancelling {len(pending)} platform(s)"
            )
            await self._cancel(pending)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                # _sync_platform records every failure itself; this is a bug guard.
                logger.error(f"Platform task for user {user_id} crashed: {task.exception()!r}")

        ordered = [
            results.get(c.platform)
            or PlatformSyncResult(c.platform, SyncOutcome.error.value, error="platform task did not report")
            for c in credentials
        ]
        total = sum(r.items_synced for r in ordered)
        summary = {
            r.platform: ({"itemsSynced": r.items_synced} if r.success else {"errorDetail": r.error})
            for r in ordered
        }
        logger.info(f"Sync for user {user_id} finished: {summary}")
        return {
            "message": f"Sync completed. Total sales synced: {total}",
            "results": [r.to_dict() for r in ordered],
            "summary": summary,
        }

    async def _cancel(self, tasks) -> None:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _sync_platform(
        self,
        user_id: str,
        credential: Credential,
        start_date: datetime,
        end_date: datetime,
        results: Dict[str, PlatformSyncResult],
        semaphore: asyncio.Semaphore,
    ) -> None:
        platform = credential.platform
        started_at = datetime.now(timezone.utc)
        items_synced = 0
        warnings: List[str] = []

        try:
            async with semaphore:
                factory = self.adapters.get(platform)
                if factory is None:
                    raise PermanentAPIError(platform, f"no adapter registered for platform '{platform}'")

                if credential.is_expired(threshold_minutes=settings.TOKEN_REFRESH_THRESHOLD_MINUTES):
                    logger.info(f"[{platform}] credential for user {user_id} expired; refreshing before sync")
                    credential = await self.credentials.refresh(credential)

                async with self.client_factory() as client:
                    fetched = await paginate(
                        factory(client),
                        credential,
                        start_date,
                        end_date,
                        max_pages=self.max_pages,
                        policy=self.retry_policy,
                        refresh_credential=self.credentials.refresh,
                        sleep=self.sleep,
                    )

                warnings.extend(fetched.warnings)
                records, anomalies = normalize_orders(user_id, platform, fetched.orders)
                anomalies = fetched.anomalies + anomalies
                upserted = await self.ledger.upsert_sales(user_id, records)
                items_synced = upserted.written

            warnings.extend(f"skipped: {a}" for a in anomalies)
            warnings.extend(f"write failed: {e}" for e in upserted.failed)
            outcome = SyncOutcome.success.value
            if fetched.capped or anomalies or upserted.failed:
                outcome = SyncOutcome.partial.value
            result = PlatformSyncResult(platform, outcome, items_synced=items_synced, warnings=warnings)

        except asyncio.CancelledError:
            result = PlatformSyncResult(
                platform,
                SyncOutcome.partial.value,
                items_synced=items_synced,
                error=CANCELLED_DETAIL,
                warnings=warnings,
            )
            results[platform] = result
            await asyncio.shield(self._record(user_id, started_at, result))
            raise
        except PlatformError as exc:
            logger.error(f"[{platform}] sync failed for user {user_id}: {exc}")
            result = PlatformSyncResult(platform, SyncOutcome.error.value, error=str(exc), warnings=warnings)
        except Exception as exc:
            logger.error(f"[{platform}] unexpected sync failure for user {user_id}: {exc}", exc_info=True)
            result = PlatformSyncResult(
                platform, SyncOutcome.error.value, error=f"unexpected error: {exc}", warnings=warnings
            )

        results[platform] = result
        await self._record(user_id, started_at, result)

    async def _record(self, user_id: str, started_at: datetime, result: PlatformSyncResult) -> None:
        await self.ledger.record_sync_run(
            user_id=user_id,
            platform=result.platform,
            started_at=started_at,
            items_synced=result.items_synced,
            outcome=result.outcome,
            error_detail=result.error,
            warnings=result.warnings,
        )
