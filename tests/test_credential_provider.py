from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from sales_ledger.config import settings
from sales_ledger.models_sqlalchemy.models import ApiCredential
from sales_ledger.services.credential_provider import Credential, CredentialProvider
from sales_ledger.services.errors import (
    CredentialProviderUnavailable,
    InvalidCredential,
    TransientNetworkError,
)
from sales_ledger.utils.logger import platform_logger


@pytest.fixture(autouse=True)
def _oauth_clients(monkeypatch):
    monkeypatch.setattr(settings, "EBAY_CLIENT_ID", "ebay-client")
    monkeypatch.setattr(settings, "EBAY_CLIENT_SECRET", "ebay-secret")
    monkeypatch.setattr(settings, "ETSY_CLIENT_ID", "etsy-keystring")
    monkeypatch.setattr(settings, "AMAZON_CLIENT_ID", "amzn-client")
    monkeypatch.setattr(settings, "AMAZON_CLIENT_SECRET", "amzn-secret")


def _load(session_factory, credential_id):
    db = session_factory()
    try:
        return db.query(ApiCredential).filter(ApiCredential.id == credential_id).one()
    finally:
        db.close()


def test_only_active_credentials_are_returned(session_factory, add_credential):
    add_credential(platform="swell")
    add_credential(platform="ebay", is_active=False)
    add_credential(user_id="user-2", platform="etsy")

    credentials = CredentialProvider(session_factory).get_active_credentials("user-1")

    assert [c.platform for c in credentials] == ["swell"]
    assert credentials[0].store_id == "swell-store"


def test_store_failure_raises_unavailable():
    class BrokenSession:
        def query(self, *args):
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))

        def close(self):
            pass

    with pytest.raises(CredentialProviderUnavailable):
        CredentialProvider(BrokenSession).get_active_credentials("user-1")


def test_expiry_honours_threshold():
    now = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
    credential = Credential(id=1, user_id="u", platform="ebay", expires_at=now + timedelta(minutes=3))

    assert credential.is_expired(now=now) is False
    assert credential.is_expired(now=now, threshold_minutes=5) is True
    assert Credential(id=2, user_id="u", platform="swell").is_expired(now=now) is False


@pytest.mark.asyncio
async def test_ebay_refresh_persists_new_token(session_factory, add_credential):
    credential_id = add_credential(platform="ebay", access_token="old", refresh_token="v^refresh")
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"access_token": "new-access", "expires_in": 7200})

    provider = CredentialProvider(session_factory, transport=httpx.MockTransport(handler))
    credential = provider.get_active_credentials("user-1")[0]

    refreshed = await provider.refresh(credential)

    assert refreshed.access_token == "new-access"
    assert refreshed.refresh_token == "v^refresh"
    assert refreshed.expires_at > datetime.now(timezone.utc) + timedelta(minutes=100)
    assert requests[0].headers["Authorization"].startswith("Basic ")
    assert b"grant_type=refresh_token" in requests[0].content

    row = _load(session_factory, credential_id)
    assert row.access_token == "new-access"

    # Tokens never reach the event log in clear text.
    events = [e for e in platform_logger.get_logs() if e["event_type"] == "token_refresh_success"]
    assert events and events[-1]["response_data"]["access_token"] != "new-access"


@pytest.mark.asyncio
async def test_amazon_refresh_rotates_refresh_token(session_factory, add_credential):
    add_credential(platform="amazon", refresh_token="Atzr|old")

    def handler(request):
        assert b"client_secret=amzn-secret" in request.content
        return httpx.Response(200, json={"access_token": "Atza|new", "refresh_token": "Atzr|new"})

    provider = CredentialProvider(session_factory, transport=httpx.MockTransport(handler))
    refreshed = await provider.refresh(provider.get_active_credentials("user-1")[0])

    assert refreshed.refresh_token == "Atzr|new"


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [400, 401, 403])
async def test_rejected_refresh_is_invalid_credential(session_factory, add_credential, status_code):
    add_credential(platform="etsy")
    provider = CredentialProvider(
        session_factory,
        transport=httpx.MockTransport(lambda request: httpx.Response(status_code, json={"error": "invalid_grant"})),
    )

    with pytest.raises(InvalidCredential):
        await provider.refresh(provider.get_active_credentials("user-1")[0])


@pytest.mark.asyncio
async def test_token_endpoint_outage_is_transient(session_factory, add_credential):
    add_credential(platform="ebay")
    provider = CredentialProvider(
        session_factory, transport=httpx.MockTransport(lambda request: httpx.Response(503))
    )

    with pytest.raises(TransientNetworkError):
        await provider.refresh(provider.get_active_credentials("user-1")[0])


@pytest.mark.asyncio
async def test_swell_keys_are_not_refreshed(session_factory):
    credential = Credential(id=1, user_id="u", platform="swell", store_id="s", secret_key="k")

    assert await CredentialProvider(session_factory).refresh(credential) is credential


@pytest.mark.asyncio
async def test_missing_refresh_token_requires_reconnect(session_factory):
    credential = Credential(id=1, user_id="u", platform="ebay", access_token="a")

    with pytest.raises(InvalidCredential):
        await CredentialProvider(session_factory).refresh(credential)


def test_connection_status_reports_store_details(session_factory, add_credential):
    add_credential(platform="swell", store_url="https://my-store.swell.store")

    [status] = CredentialProvider(session_factory).connection_status("user-1")

    assert status["storeId"] == "swell-store"
    assert status["storeName"] == "Swell Store"
    assert status["storeUrl"] == "https://my-store.swell.store"


def test_disconnect_is_a_soft_delete(session_factory, add_credential):
    credential_id = add_credential(platform="etsy")
    provider = CredentialProvider(session_factory)

    assert [c["platform"] for c in provider.connection_status("user-1")] == ["etsy"]
    assert provider.disconnect("user-1", "etsy") is True
    assert provider.disconnect("user-1", "etsy") is False
    assert provider.connection_status("user-1") == []
    assert _load(session_factory, credential_id).is_active is False
