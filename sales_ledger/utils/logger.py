import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger("sales_ledger")


SENSITIVE_KEYS = (
    "client_secret", "secret_key", "access_token", "refresh_token",
    "password", "authorization", "x-amz-access-token", "x-api-key",
)


def mask_secret(value: Optional[str]) -> str:
    if not value:
        return "<none>"
    value = str(value)
    if len(value) > 8:
        return f"{value[:4]}...{value[-4:]}"
    return "***"


class PlatformEventLogger:
    """Bounded in-memory trail of marketplace API events.

    Adapters and the credential provider record request/response summaries
    here; every sensitive value is masked before it is stored or logged.
    """

    def __init__(self, max_logs: int = 1000):
        self.logs = []
        self.max_logs = max_logs

    def log_platform_event(
        self,
        platform: str,
        event_type: str,
        description: str,
        request_data: Optional[Dict[str, Any]] = None,
        response_data: Optional[Dict[str, Any]] = None,
        status: str = "info",
        error: Optional[str] = None,
    ) -> Dict[str, Any]:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "platform": platform,
            "event_type": event_type,
            "description": description,
            "request_data": self._sanitize_credentials(request_data) if request_data else None,
            "response_data": self._sanitize_credentials(response_data) if response_data else None,
            "status": status,
            "error": error,
        }

        self.logs.append(log_entry)
        if len(self.logs) > self.max_logs:
            self.logs.pop(0)

        log_msg = f"[{platform}:{event_type}] {description}"
        if error:
            logger.error(f"{log_msg} - Error: {error}")
        else:
            logger.info(log_msg)

        return log_entry

    def _sanitize_credentials(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if not data:
            return {}

        sanitized = data.copy()
        for key in list(sanitized.keys()):
            if str(key).lower() in SENSITIVE_KEYS:
                sanitized[key] = mask_secret(sanitized[key])
        return sanitized

    def get_logs(self, limit: Optional[int] = None) -> list:
        if limit:
            return self.logs[-limit:]
        return self.logs

    def clear_logs(self):
        self.logs = []
        logger.info("Cleared platform event logs")


platform_logger = PlatformEventLogger()
