"""Select the tenants due for a sync pass."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from .logger import get_logger
from .models import TenantSyncProfile, utc_now

# Shorter than the 5 minute sweep cadence so scheduler jitter never skips a tenant.
DEFAULT_STALENESS_WINDOW = timedelta(minutes=4)

logger = get_logger("LeadAutoSync.eligibility")


def is_due(profile: TenantSyncProfile, now: datetime, window: timedelta = DEFAULT_STALENESS_WINDOW) -> bool:
    """Return ``True`` when ``profile`` must be synced at ``now``."""
    if not profile.auto_sync_enabled or not profile.provider_refresh_credential:
        return False
    if profile.last_auto_sync_at is None:
        return True
    return now - profile.last_auto_sync_at >= window


def select_eligible(
    profiles: Iterable[TenantSyncProfile],
    now: Optional[datetime] = None,
    window: timedelta = DEFAULT_STALENESS_WINDOW,
) -> List[TenantSyncProfile]:
    """Filter ``profiles`` down to the tenants due for this sweep.

    Never-synced tenants are always included. The filter is pure: it reads the
    profiles and writes nothing.
    """
    now = now or utc_now()
    selected: List[TenantSyncProfile] = []
    for profile in profiles:
        if is_due(profile, now, window):
            if profile.last_auto_sync_at is None:
                logger.debug("Tenant %s never synced, adding to sync queue", profile.label)
            else:
                minutes = int((now - profile.last_auto_sync_at).total_seconds() // 60)
                logger.debug("Tenant %s last synced %dm ago, adding to sync queue", profile.label, minutes)
            selected.append(profile)
        elif profile.auto_sync_enabled:
            logger.debug("Tenant %s recently synced, skipping", profile.label)
    return selected
