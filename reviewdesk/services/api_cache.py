"""
Read-through cache for backend reads.

Entries are keyed by endpoint name plus canonical JSON of the call parameters
and expire after a fixed lifetime. Writers invalidate by endpoint (all params)
or by exact params.
"""

import json
import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 5 * 60


class ApiCache:
    """TTL cache of API responses, owned by one screen/session."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}

    @staticmethod
    def key(endpoint: str, params: Optional[Dict[str, Any]] = None) -> str:
        param_string = json.dumps(params, sort_keys=True, default=str) if params else ""
        return f"{endpoint}:{param_string}"

    def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        key = self.key(endpoint, params)
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, data = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[key]
            return None
        return data

    def set(self, endpoint: str, params: Optional[Dict[str, Any]], data: Any) -> None:
        self._entries[self.key(endpoint, params)] = (self._clock(), data)

    def invalidate(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> int:
        """Drop one entry, or every entry for the endpoint when params is None."""
        if params is not None:
            removed = 1 if self._entries.pop(self.key(endpoint, params), None) is not None else 0
        else:
            prefix = f"{endpoint}:"
            stale = [k for k in self._entries if k.startswith(prefix)]
            for k in stale:
                del self._entries[k]
            removed = len(stale)
        if removed:
            logger.debug(f"Invalidated {removed} cache entries for {endpoint}")
        return removed

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
