"""Credential Provider backed by the ``api_credentials`` table.

The sync engine only reads credentials through this module; the single
write it performs is storing a refreshed access token back onto the row.

Usage:
    provider = CredentialProvider()
    for credential in provider.get_active_credentials(user_id):
        if credential.is_expired():
            credential = await provider.refresh(credential)
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sales_ledger.config import settings
from sales_ledger.models_sqlalchemy import SessionLocal
from sales_ledger.models_sqlalchemy.models import ApiCredential
from sales_ledger.services.errors import (
    CredentialProviderUnavailable,
    InvalidCredential,
    PermanentAPIError,
    TransientNetworkError,
)
from sales_ledger.utils.logger import logger, platform_logger


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; treat them as UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class Credential:
    """Read-only snapshot of one marketplace connection."""

    id: int
    user_id: str
    platform: str
    store_id: Optional[str] = None
    store_name: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    public_key: Optional[str] = None
    secret_key: Optional[str] = None
    is_active: bool = True

    def is_expired(self, now: Optional[datetime] = None, threshold_minutes: int = 0) -> bool:
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return _as_utc(self.expires_at) <= now + timedelta(minutes=threshold_minutes)

    @classmethod
    def from_row(cls, row: ApiCredential) -> "Credential":
        return cls(
            id=row.id,
            user_id=row.user_id,
            platform=row.platform,
            store_id=row.store_id,
            store_name=row.store_name,
            access_token=row.access_token,
            refresh_token=row.refresh_token,
            expires_at=_as_utc(row.expires_at),
            public_key=row.public_key,
            secret_key=row.secret_key,
            is_active=bool(row.is_active),
        )


def _basic_auth(client_id: str, client_secret: str) -> str:
    raw = f"{client_id}:{client_secret}".encode("utf-8")
    return "Basic " + base64.b64encode(raw).decode("ascii")


def _ebay_refresh_request(credential: Credential) -> Tuple[str, Dict[str, str], Dict[str, str]]:
    if not settings.EBAY_CLIENT_ID or not settings.EBAY_CLIENT_SECRET:
        raise InvalidCredential("ebay", "eBay OAuth client is not configured")
    headers = {
        "Content-Type": "application/x-www-form-urlencoded",
        "Authorization": _basic_auth(settings.EBAY_CLIENT_ID, settings.EBAY_CLIENT_SECRET),
    }
    data = {"grant_type": "refresh_token", "refresh_token": credential.refresh_token}
    return settings.EBAY_TOKEN_URL, headers, data


def _etsy_refresh_request(credential: Credential) -> Tuple[str, Dict[str, str], Dict[str, str]]:
    if not settings.ETSY_CLIENT_ID:
        raise InvalidCredential("etsy", "Etsy OAuth client is not configured")
    headers = {"Content-Type": "application/x-www-form-urlencoded"}
    data = {
        "grant_type": "refresh_token",
        "client_id": settings.ETSY_CLIENT_ID,
        "refresh_token": credential.refresh_token,
    }
    return settings.ETSY_TOKEN_URL, headers, data


def _amazon_refresh_request(credential: Credential) -> Tuple[str, Dict[str, str], Dict[str, str]]:
    if not settings.AMAZON_CLIENT_ID or not settings.AMAZON_CLIENT_SECRET:
        raise InvalidCredential("amazon", "Amazon LWA client is not configured")
    headers = {"Content-Type": "application/x-www-form-urlencoded"}
    data = {
        "grant_type": "refresh_token",
        "refresh_token": credential.refresh_token,
        "client_id": settings.AMAZON_CLIENT_ID,
        "client_secret": settings.AMAZON_CLIENT_SECRET,
    }
    return settings.AMAZON_TOKEN_URL, headers, data


REFRESH_BUILDERS: Dict[str, Callable[[Credential], Tuple[str, Dict[str, str], Dict[str, str]]]] = {
    "ebay": _ebay_refresh_request,
    "etsy": _etsy_refresh_request,
    "amazon": _amazon_refresh_request,
}


class CredentialProvider:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ):
        self._session_factory = session_factory
        self._transport = transport
        self._timeout = timeout

    def get_active_credentials(self, user_id: str) -> List[Credential]:
        db = self._session_factory()
        try:
            rows = (
                db.query(ApiCredential)
                .filter(ApiCredential.user_id == user_id, ApiCredential.is_active == True)  # noqa: E712
                .order_by(ApiCredential.platform)
                .all()
            )
            return [Credential.from_row(row) for row in rows]
        except SQLAlchemyError as exc:
            logger.error(f"Credential lookup failed for user={user_id}: {exc}", exc_info=True)
            raise CredentialProviderUnavailable(f"credential store unavailable: {exc}") from exc
        finally:
            db.close()

    async def refresh(self, credential: Credential) -> Credential:
        """Exchange the refresh token for a new access token and persist it.

        Platforms without expiring tokens (Swell keys) are returned unchanged.
        """
        builder = REFRESH_BUILDERS.get(credential.platform)
        if builder is None:
            return credential
        if not credential.refresh_token:
            raise InvalidCredential(credential.platform, "no refresh token stored; reconnect required")

        url, headers, data = builder(credential)
        platform_logger.log_platform_event(
            credential.platform,
            "token_refresh_request",
            f"Refreshing access token for user {credential.user_id}",
            request_data={"grant_type": "refresh_token", "refresh_token": credential.refresh_token},
        )

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(url, headers=headers, data=data)
        except httpx.TransportError as exc:
            raise TransientNetworkError(credential.platform, f"token refresh request failed: {exc}") from exc

        if response.status_code in (400, 401, 403):
            platform_logger.log_platform_event(
                credential.platform,
                "token_refresh_failed",
                f"Token refresh rejected with status {response.status_code}",
                status="error",
                error=response.text[:500],
            )
            raise InvalidCredential(
                credential.platform,
                "refresh token rejected; reconnect required",
                status_code=response.status_code,
            )
        if response.status_code >= 500:
            raise TransientNetworkError(
                credential.platform, "token endpoint unavailable", status_code=response.status_code
            )
        if response.status_code != 200:
            raise PermanentAPIError(
                credential.platform, f"token refresh failed: {response.text[:500]}", status_code=response.status_code
            )

        try:
            token_data: Dict[str, Any] = response.json()
        except ValueError as exc:
            raise PermanentAPIError(credential.platform, "token endpoint returned invalid JSON") from exc

        access_token = token_data.get("access_token")
        if not access_token:
            raise InvalidCredential(credential.platform, "token endpoint returned no access_token")
        expires_in = int(token_data.get("expires_in") or 3600)
        refreshed = replace(
            credential,
            access_token=access_token,
            refresh_token=token_data.get("refresh_token") or credential.refresh_token,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        )

        self._store_refreshed(refreshed)
        platform_logger.log_platform_event(
            credential.platform,
            "token_refresh_success",
            f"Access token refreshed for user {credential.user_id}",
            response_data={"access_token": access_token, "expires_in": expires_in},
            status="success",
        )
        return refreshed

    def _store_refreshed(self, credential: Credential) -> None:
        db = self._session_factory()
        try:
            row = db.query(ApiCredential).filter(ApiCredential.id == credential.id).first()
            if row is None:
                raise InvalidCredential(credential.platform, "credential was removed during refresh")
            row.access_token = credential.access_token
            row.refresh_token = credential.refresh_token
            row.expires_at = credential.expires_at
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise CredentialProviderUnavailable(f"could not store refreshed token: {exc}") from exc
        finally:
            db.close()

    def connection_status(self, user_id: str) -> List[Dict[str, Any]]:
        db = self._session_factory()
        try:
            rows = (
                db.query(ApiCredential)
                .filter(ApiCredential.user_id == user_id, ApiCredential.is_active == True)  # noqa: E712
                .order_by(ApiCredential.platform)
                .all()
            )
            return [
                {
                    "platform": row.platform,
                    "connected": True,
                    "storeId": row.store_id,
                    "storeName": row.store_name,
                    "storeUrl": row.store_url,
                    "expiresAt": row.expires_at.isoformat() if row.expires_at else None,
                    "lastSync": row.updated_at.isoformat() if row.updated_at else None,
                }
                for row in rows
            ]
        finally:
            db.close()

    def disconnect(self, user_id: str, platform: str) -> bool:
        """Soft-delete a connection. Returns False when nothing was active."""
        db = self._session_factory()
        try:
            row = (
                db.query(ApiCredential)
                .filter(
                    ApiCredential.user_id == user_id,
                    ApiCredential.platform == platform,
                    ApiCredential.is_active == True,  # noqa: E712
                )
                .first()
            )
            if row is None:
                return False
            row.is_active = False
            db.commit()
            logger.info(f"Disconnected {platform} for user {user_id}")
            return True
        finally:
            db.close()
