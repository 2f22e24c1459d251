"""Daily auto-reply cap that relies on the persisted reply flags."""

import time
from typing import Optional

from .models import AutoReplySettings
from .persistence import Persistence

DAY_SECONDS = 86400


class RateLimiter:
    """Rolling 24 hour limiter built on top of :class:`Persistence`."""

    def __init__(self, persistence: Persistence, *, clock=time.time):
        """Store the persistence helper used to read reply counters."""
        self.persistence = persistence
        self._clock = clock

    async def remaining(self, tenant_id: str, settings: AutoReplySettings) -> Optional[int]:
        """Return how many more automatic replies may be sent, ``None`` if unlimited.

        A ``max_daily_replies`` of zero disables the cap.
        """
        limit = settings.max_daily_replies
        if not limit:
            return None
        now = int(self._clock())
        sent = await self.persistence.count_auto_replies_since(tenant_id, now - DAY_SECONDS)
        return max(0, limit - sent)
