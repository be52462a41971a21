"""Per-tenant rate limiting for inbound Slack events."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict


@dataclass
class RateLimitWindow:
    tenant_id: str
    count: int
    window_reset_at: float


class TenantRateLimiter:
    """Count accepted events per tenant inside fixed windows."""

    def __init__(
        self,
        *,
        limit: int = 100,
        window: timedelta = timedelta(seconds=60),
        timer: Callable[[], float] | None = None,
    ) -> None:
        if limit <= 0:
            raise ValueError("Rate limit must be greater than zero.")
        if window.total_seconds() <= 0:
            raise ValueError("Rate limit window must be greater than zero seconds.")

        self._limit = limit
        self._window = window
        self._timer = timer or time.monotonic
        self._lock = threading.Lock()
        self._windows: Dict[str, RateLimitWindow] = {}

    @property
    def limit(self) -> int:
        return self._limit

    def hit(self, tenant_id: str | None) -> bool:
        """Record an event for *tenant_id* and return False once over the ceiling.

        A window resets only after its reset time has passed. Events without a
        tenant are not limited.
        """

        if not tenant_id:
            return True

        now = self._timer()
        with self._lock:
            window = self._windows.get(tenant_id)
            if window is None or now > window.window_reset_at:
                window = RateLimitWindow(
                    tenant_id=tenant_id,
                    count=0,
                    window_reset_at=now + self._window.total_seconds(),
                )
                self._windows[tenant_id] = window

            window.count += 1
            return window.count <= self._limit

    def window(self, tenant_id: str) -> RateLimitWindow | None:
        with self._lock:
            window = self._windows.get(tenant_id)
            if window is None:
                return None
            return RateLimitWindow(window.tenant_id, window.count, window.window_reset_at)

    def clear(self, tenant_id: str | None = None) -> None:
        with self._lock:
            if tenant_id is None:
                self._windows.clear()
            else:
                self._windows.pop(tenant_id, None)
