"""Process-local, tenant-scoped record of leads with an in-flight or finished reply."""

from __future__ import annotations

import time
from typing import Callable, Dict, Optional


class ProcessedLeadCache:
    """Keyed map ``tenant -> lead -> expiry`` with a fixed entry lifetime.

    Membership only prevents re-entrant work inside this process. The durable
    ``auto_replied`` flag in the store stays the source of truth across
    processes. All methods are synchronous, so a :meth:`claim` can never be
    interleaved with another coroutine on the same event loop.
    """

    def __init__(self, ttl_seconds: float = 24 * 3600, *, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._entries: Dict[str, Dict[str, float]] = {}

    def _scope(self, tenant_id: str) -> Dict[str, float]:
        scope = self._entries.setdefault(tenant_id, {})
        now = self._clock()
        for lead_id in [key for key, expires in scope.items() if expires <= now]:
            del scope[lead_id]
        return scope

    def contains(self, tenant_id: str, lead_id: str) -> bool:
        return lead_id in self._scope(tenant_id)

    def claim(self, tenant_id: str, lead_id: str) -> bool:
        """Add ``lead_id`` unless present. Returns ``True`` when this caller owns it."""
        scope = self._scope(tenant_id)
        if lead_id in scope:
            return False
        scope[lead_id] = self._clock() + self.ttl_seconds
        return True

    def release(self, tenant_id: str, lead_id: str) -> None:
        """Forget a claim so a later pass may retry the lead."""
        scope = self._entries.get(tenant_id)
        if scope is not None:
            scope.pop(lead_id, None)

    def clear(self, tenant_id: str) -> None:
        """Drop every entry of one tenant (auto-reply toggled off, tenant switch)."""
        self._entries.pop(tenant_id, None)

    def clear_all(self) -> None:
        self._entries.clear()

    def size(self, tenant_id: Optional[str] = None) -> int:
        if tenant_id is not None:
            return len(self._scope(tenant_id))
        return sum(len(self._scope(key)) for key in list(self._entries))
