"""Error taxonomy for the ingestion pipeline.

Platform errors fall in two groups: recoverable ones (``AuthExpired``,
``RateLimited``, ``TransientNetworkError``) that the pagination controller
retries, and non-recoverable ones (``PermanentAPIError`` and its subclass
``InvalidCredential``) that abort the sync of that one platform.
"""

from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base class for every error raised by the sync engine."""


class PlatformError(SyncError):
    def __init__(self, platform: str, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.platform = platform
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"{self.platform}: {self.message} (HTTP {self.status_code})"
        return f"{self.platform}: {self.message}"


class AuthExpired(PlatformError):
    """Access token rejected; refresh the credential and retry the page once."""


class RateLimited(PlatformError):
    def __init__(
        self,
        platform: str,
        message: str = "rate limited",
        *,
        retry_after: Optional[float] = None,
        status_code: Optional[int] = 429,
    ):
        super().__init__(platform, message, status_code=status_code)
        self.retry_after = retry_after


class TransientNetworkError(PlatformError):
    """Timeouts, connection resets and gateway errors."""


class PermanentAPIError(PlatformError):
    """Marketplace refused the request for a reason retrying will not fix."""


class InvalidCredential(PermanentAPIError):
    """Credential is missing, revoked or cannot be refreshed."""


RETRYABLE_ERRORS = (RateLimited, TransientNetworkError)


class NormalizationAnomaly(SyncError):
    """A raw order (or part of one) could not be normalized."""

    def __init__(self, platform: str, order_id: Optional[str], detail: str):
        super().__init__(f"{platform} order {order_id or '<unknown>'}: {detail}")
        self.platform = platform
        self.order_id = order_id
        self.detail = detail


class LedgerWriteError(SyncError):
    """A single Sale row failed to persist."""

    def __init__(self, order_id: str, item_id: str, detail: str):
        super().__init__(f"order {order_id} item {item_id}: {detail}")
        self.order_id = order_id
        self.item_id = item_id
        self.detail = detail


class CredentialProviderUnavailable(SyncError):
    """The credential store itself could not be read."""
