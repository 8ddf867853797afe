import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from conftest import make_order
from sales_ledger.models_sqlalchemy.models import Sale, SyncRun
from sales_ledger.services.adapters.base import Page, PlatformAdapter
from sales_ledger.services.credential_provider import CredentialProvider
from sales_ledger.services.errors import (
    CredentialProviderUnavailable,
    NormalizationAnomaly,
    PermanentAPIError,
)
from sales_ledger.services.ledger_store import LedgerStore
from sales_ledger.services.pagination import RetryPolicy
from sales_ledger.services.sync_orchestrator import NO_CONNECTIONS_MESSAGE, SyncOrchestrator


class StaticAdapter(PlatformAdapter):
    """Returns one short page with the given orders."""

    page_size = 50

    def __init__(self, platform, orders, anomalies=None, seen_tokens=None):
        super().__init__(client=None, base_url="https://example.invalid")
        self.platform = platform
        self.orders = orders
        self.anomalies = anomalies or []
        self.seen_tokens = seen_tokens if seen_tokens is not None else []

    async def fetch_page(self, credential, start_date, end_date, cursor):
        self.seen_tokens.append(credential.access_token)
        return Page(
            orders=list(self.orders),
            next_cursor=None,
            raw_count=len(self.orders) + len(self.anomalies),
            page_size=self.page_size,
            anomalies=list(self.anomalies),
        )


class BrokenAdapter(PlatformAdapter):
    page_size = 50

    def __init__(self, platform):
        super().__init__(client=None, base_url="https://example.invalid")
        self.platform = platform

    async def fetch_page(self, credential, start_date, end_date, cursor):
        raise PermanentAPIError(self.platform, "seller account suspended", status_code=400)


class HangingAdapter(PlatformAdapter):
    page_size = 50

    def __init__(self, platform):
        super().__init__(client=None, base_url="https://example.invalid")
        self.platform = platform

    async def fetch_page(self, credential, start_date, end_date, cursor):
        await asyncio.sleep(60)


def _client_factory():
    return httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))


def _orchestrator(session_factory, adapters, provider=None):
    return SyncOrchestrator(
        provider or CredentialProvider(session_factory),
        LedgerStore(session_factory),
        adapters=adapters,
        client_factory=_client_factory,
        retry_policy=RetryPolicy(max_attempts=1, timeout=120),
    )


def _swell_orders():
    recent = datetime.now(timezone.utc) - timedelta(days=1)
    return [
        make_order(order_id="S-1", created_at=recent),
        make_order(order_id="S-2", created_at=recent, items=[
            {"item_id": "S-2-A", "title": "Mug", "unit_price": 5.0, "quantity": 2},
            {"title": "Plate", "unit_price": 7.0, "quantity": 1},
        ]),
    ]


def _sales(session_factory):
    db = session_factory()
    try:
        return db.query(Sale).order_by(Sale.platform, Sale.order_id, Sale.item_id).all()
    finally:
        db.close()


def _runs(session_factory):
    db = session_factory()
    try:
        return {run.platform: run for run in db.query(SyncRun).all()}
    finally:
        db.close()


@pytest.mark.asyncio
async def test_one_failing_platform_does_not_stop_the_others(session_factory, add_credential):
    add_credential(platform="swell")
    add_credential(platform="ebay")
    orchestrator = _orchestrator(
        session_factory,
        {
            "swell": lambda client: StaticAdapter("swell", _swell_orders()),
            "ebay": lambda client: BrokenAdapter("ebay"),
        },
    )

    result = await orchestrator.run_sync("user-1", days_back=30)

    assert result["summary"]["swell"] == {"itemsSynced": 3}
    assert "seller account suspended" in result["summary"]["ebay"]["errorDetail"]
    by_platform = {r["platform"]: r for r in result["results"]}
    assert by_platform["swell"]["success"] is True
    assert by_platform["ebay"]["success"] is False
    assert {s.platform for s in _sales(session_factory)} == {"swell"}

    runs = _runs(session_factory)
    assert runs["swell"].outcome == "success"
    assert runs["swell"].items_synced == 3
    assert runs["ebay"].outcome == "error"


@pytest.mark.asyncio
async def test_running_twice_leaves_the_same_ledger(session_factory, add_credential):
    add_credential(platform="swell")
    orchestrator = _orchestrator(
        session_factory, {"swell": lambda client: StaticAdapter("swell", _swell_orders())}
    )

    await orchestrator.run_sync("user-1")
    first = [(s.order_id, s.item_id, s.price, s.quantity) for s in _sales(session_factory)]
    await orchestrator.run_sync("user-1")
    second = [(s.order_id, s.item_id, s.price, s.quantity) for s in _sales(session_factory)]

    assert first == second
    assert len(first) == 3
    assert ("S-2", "S-2:1", 7.0, 1) in first


@pytest.mark.asyncio
async def test_no_connections_records_informational_run(session_factory):
    orchestrator = _orchestrator(session_factory, {})

    result = await orchestrator.run_sync("user-1")

    assert result == {"message": NO_CONNECTIONS_MESSAGE, "results": [], "summary": {}}
    runs = _runs(session_factory)
    assert runs["all"].outcome == "success"
    assert runs["all"].warnings == ["no active platform connections"]


@pytest.mark.asyncio
async def test_inactive_credentials_are_skipped(session_factory, add_credential):
    add_credential(platform="swell", is_active=False)
    orchestrator = _orchestrator(session_factory, {"swell": lambda client: BrokenAdapter("swell")})

    result = await orchestrator.run_sync("user-1")

    assert result["message"] == NO_CONNECTIONS_MESSAGE


@pytest.mark.asyncio
async def test_expired_credential_is_refreshed_before_fetching(session_factory, add_credential):
    add_credential(
        platform="ebay",
        access_token="stale",
        expires_at=datetime.now(timezone.utc) - timedelta(hours=1),
    )

    class RefreshingProvider(CredentialProvider):
        async def refresh(self, credential):
            return replace(
                credential,
                access_token="fresh",
                expires_at=datetime.now(timezone.utc) + timedelta(hours=2),
            )

    seen = []
    orchestrator = _orchestrator(
        session_factory,
        {"ebay": lambda client: StaticAdapter("ebay", _swell_orders(), seen_tokens=seen)},
        provider=RefreshingProvider(session_factory),
    )

    result = await orchestrator.run_sync("user-1")

    assert seen == ["fresh"]
    assert result["summary"]["ebay"] == {"itemsSynced": 3}


@pytest.mark.asyncio
async def test_skipped_orders_make_the_run_partial(session_factory, add_credential):
    add_credential(platform="etsy")
    anomaly = NormalizationAnomaly("etsy", "E-9", "order has no line items")
    orchestrator = _orchestrator(
        session_factory,
        {"etsy": lambda client: StaticAdapter("etsy", _swell_orders(), anomalies=[anomaly])},
    )

    result = await orchestrator.run_sync("user-1")

    etsy = result["results"][0]
    assert etsy["outcome"] == "partial"
    assert etsy["itemsSynced"] == 3
    assert any("E-9" in w for w in etsy["warnings"])
    assert _runs(session_factory)["etsy"].outcome == "partial"


@pytest.mark.asyncio
async def test_platform_without_adapter_is_reported_as_error(session_factory, add_credential):
    add_credential(platform="shopify")
    orchestrator = _orchestrator(session_factory, {})

    result = await orchestrator.run_sync("user-1")

    assert result["results"][0]["success"] is False
    assert "no adapter registered" in result["summary"]["shopify"]["errorDetail"]


@pytest.mark.asyncio
async def test_deadline_cancels_slow_platforms_and_keeps_finished_ones(session_factory, add_credential):
    add_credential(platform="swell")
    add_credential(platform="amazon")
    orchestrator = _orchestrator(
        session_factory,
        {
            "swell": lambda client: StaticAdapter("swell", _swell_orders()),
            "amazon": lambda client: HangingAdapter("amazon"),
        },
    )

    result = await orchestrator.run_sync("user-1", deadline_seconds=0.2)

    by_platform = {r["platform"]: r for r in result["results"]}
    assert by_platform["swell"]["outcome"] == "success"
    assert by_platform["amazon"]["outcome"] == "partial"
    assert by_platform["amazon"]["error"] == "cancelled"
    assert len(_sales(session_factory)) == 3

    runs = _runs(session_factory)
    assert runs["amazon"].outcome == "partial"
    assert runs["amazon"].error_detail == "cancelled"


@pytest.mark.asyncio
async def test_unreadable_credential_store_propagates(session_factory):
    class DownProvider(CredentialProvider):
        def get_active_credentials(self, user_id):
            raise CredentialProviderUnavailable("credential store unavailable")

    orchestrator = _orchestrator(session_factory, {}, provider=DownProvider(session_factory))

    with pytest.raises(CredentialProviderUnavailable):
        await orchestrator.run_sync("user-1")
