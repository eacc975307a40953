"""
Review Desk Configuration

Environment-driven settings for the review engine:
- Service base URLs (finance API, task API, realtime sockets)
- Polling and read-receipt timing
- Cache lifetime
- Viewer time zone for day headers in comment threads
"""

import os
from dataclasses import dataclass, asdict
from typing import Any, Dict

FINANCE_API_URL = os.getenv("FINANCE_API_URL", "http://127.0.0.1:8003")
TASK_API_URL = os.getenv("TASK_API_URL", "http://127.0.0.1:8005")
FINANCE_SOCKET_URL = os.getenv("FINANCE_SOCKET_URL", FINANCE_API_URL)
TASK_SOCKET_URL = os.getenv("TASK_SOCKET_URL", TASK_API_URL)


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return float(raw)


@dataclass
class ReviewDeskConfig:
    """Runtime settings. Built from the environment unless given explicitly."""
    finance_api_url: str = FINANCE_API_URL
    task_api_url: str = TASK_API_URL
    finance_socket_url: str = FINANCE_SOCKET_URL
    task_socket_url: str = TASK_SOCKET_URL
    http_timeout_seconds: float = 30.0
    comment_poll_interval_seconds: float = 10.0
    read_receipt_dwell_seconds: float = 1.0
    api_cache_ttl_seconds: float = 300.0
    viewer_timezone: str = "Asia/Kolkata"

    def __post_init__(self):
        if self.comment_poll_interval_seconds <= 0:
            raise ValueError("comment_poll_interval_seconds must be positive")
        if self.read_receipt_dwell_seconds < 0:
            raise ValueError("read_receipt_dwell_seconds cannot be negative")
        if self.api_cache_ttl_seconds <= 0:
            raise ValueError("api_cache_ttl_seconds must be positive")
        if self.http_timeout_seconds <= 0:
            raise ValueError("http_timeout_seconds must be positive")

    @classmethod
    def from_env(cls) -> "ReviewDeskConfig":
        return cls(
            finance_api_url=os.getenv("FINANCE_API_URL", FINANCE_API_URL),
            task_api_url=os.getenv("TASK_API_URL", TASK_API_URL),
            finance_socket_url=os.getenv("FINANCE_SOCKET_URL", FINANCE_SOCKET_URL),
            task_socket_url=os.getenv("TASK_SOCKET_URL", TASK_SOCKET_URL),
            http_timeout_seconds=_float_env("HTTP_TIMEOUT_SECONDS", 30.0),
            comment_poll_interval_seconds=_float_env("COMMENT_POLL_INTERVAL_SECONDS", 10.0),
            read_receipt_dwell_seconds=_float_env("READ_RECEIPT_DWELL_SECONDS", 1.0),
            api_cache_ttl_seconds=_float_env("API_CACHE_TTL_SECONDS", 300.0),
            viewer_timezone=os.getenv("VIEWER_TIMEZONE", "Asia/Kolkata"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


_config: ReviewDeskConfig = None


def get_config() -> ReviewDeskConfig:
    """Get the process-wide configuration, loading it from the environment once."""
    global _config
    if _config is None:
        _config = ReviewDeskConfig.from_env()
    return _config
