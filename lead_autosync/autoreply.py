"""Select newly ingested leads that deserve an automatic reply and send it once."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable, List, Optional, Sequence
from zoneinfo import ZoneInfo

import aiosqlite

from .dedup import ProcessedLeadCache
from .errors import LeadSyncError
from .fetcher import ReplyGenerator, ReplySender
from .logger import get_logger
from .models import (
    AUTO_REPLY_PRIORITIES,
    AutoReplySettings,
    AutoReplySummary,
    Lead,
    LeadReplyResult,
    utc_now,
)
from .persistence import Persistence
from .rate_limit import RateLimiter


def is_candidate(lead: Lead) -> bool:
    """Hot or warm, and not answered by anyone yet."""
    return lead.priority_status in AUTO_REPLY_PRIORITIES and not lead.answered and not lead.auto_replied


class AutoReplyDispatcher:
    """Generate and send automatic replies with at-most-once delivery per lead.

    Every selected lead is claimed in the :class:`ProcessedLeadCache` before
    the first network call. A generation or send failure releases the claim
    and leaves the lead untouched so a later pass can retry it. On success the
    store flags are written with a conditional update that only matches leads
    not yet auto-replied.
    """

    def __init__(
        self,
        persistence: Optional[Persistence],
        generator: ReplyGenerator,
        sender: ReplySender,
        cache: ProcessedLeadCache,
        *,
        rate_limiter: Optional[RateLimiter] = None,
        metrics=None,
        timezone: str = "UTC",
        business_start_hour: int = 9,
        business_end_hour: int = 17,
        clock: Callable[[], datetime] = utc_now,
        logger=None,
    ):
        self.persistence = persistence
        self.generator = generator
        self.sender = sender
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.metrics = metrics
        self.tz = ZoneInfo(timezone)
        self.business_start_hour = business_start_hour
        self.business_end_hour = business_end_hour
        self._clock = clock
        self.logger = logger or get_logger("LeadAutoSync.autoreply")

    def within_business_hours(self, moment: Optional[datetime] = None) -> bool:
        """Monday to Friday, between the configured hours, in the configured timezone."""
        local = (moment or self._clock()).astimezone(self.tz)
        return local.weekday() < 5 and self.business_start_hour <= local.hour < self.business_end_hour

    def _count(self, tenant_id: str, status: str, amount: int = 1) -> None:
        if self.metrics is None:
            return
        for _ in range(amount):
            self.metrics.inc_auto_reply(tenant_id, status)

    async def _select(self, tenant_id: str, leads: Sequence[Lead], settings: AutoReplySettings) -> tuple:
        """Return ``(claimed_leads, skipped_count)``; claims are taken here."""
        candidates = [lead for lead in leads if is_candidate(lead)]
        if not candidates:
            return [], 0
        if settings.business_hours_only and not self.within_business_hours():
            self.logger.info("Outside business hours, skipping %d auto-replies for %s", len(candidates), tenant_id)
            return [], len(candidates)

        remaining = None
        if self.rate_limiter is not None:
            remaining = await self.rate_limiter.remaining(tenant_id, settings)

        selected: List[Lead] = []
        skipped = 0
        capped = False
        for lead in candidates:
            if lead.confidence is not None and lead.confidence < settings.confidence_threshold:
                self.logger.debug("Lead %s below confidence threshold (%d)", lead.id, lead.confidence)
                skipped += 1
                continue
            if self.persistence is not None and await self.persistence.is_auto_replied(tenant_id, lead.id):
                lead.auto_replied = True
                lead.answered = True
                continue
            if remaining is not None and len(selected) >= remaining:
                capped = True
                skipped += 1
                continue
            if not self.cache.claim(tenant_id, lead.id):
                self.logger.debug("Lead %s already being processed, skipping", lead.id)
                continue
            selected.append(lead)
        if capped:
            self.logger.info("Daily auto-reply cap reached for %s", tenant_id)
        return selected, skipped

    async def _reply(
        self, tenant_id: str, lead: Lead, settings: AutoReplySettings, access_token: str
    ) -> LeadReplyResult:
        try:
            body = await self.generator.generate(tenant_id, lead, settings)
            message_id = await self.sender.send(tenant_id, lead, body, access_token)
        except LeadSyncError as exc:
            self.cache.release(tenant_id, lead.id)
            self.logger.warning("Auto-reply failed for lead %s (%s): %s", lead.id, exc.code, exc)
            return LeadReplyResult(
                lead_id=lead.id,
                success=False,
                error=str(exc),
                error_code=exc.code,
                reauth_required=exc.reauth_required,
            )

        responded_at = self._clock()
        lead.answered = True
        lead.auto_replied = True
        lead.responded_at = responded_at
        lead.reply_message_id = message_id
        result = LeadReplyResult(lead_id=lead.id, success=True, reply_message_id=message_id)
        if self.persistence is not None:
            # The reply is out: from here on the claim is kept whatever happens.
            try:
                recorded = await self.persistence.mark_lead_auto_replied(
                    tenant_id, lead.id, responded_at, message_id
                )
            except aiosqlite.Error as exc:
                self.logger.exception("Reply sent but lead %s could not be flagged", lead.id)
                result.error = f"reply sent, flag not persisted: {exc}"
                return result
            if not recorded:
                self.logger.warning("Lead %s was already flagged as auto-replied", lead.id)
        self.logger.info("Auto-replied to lead %s (%s)", lead.id, lead.sender_address)
        return result

    async def dispatch(
        self,
        tenant_id: str,
        leads: Sequence[Lead],
        settings: AutoReplySettings,
        access_token: str,
    ) -> AutoReplySummary:
        """Reply to every eligible lead concurrently and return the aggregate."""
        summary = AutoReplySummary(tenant_id=tenant_id)
        if not settings.enabled:
            return summary

        selected, summary.skipped = await self._select(tenant_id, leads, settings)
        self._count(tenant_id, "skipped", summary.skipped)
        if not selected:
            return summary

        self.logger.info("Auto-replying to %d leads for %s", len(selected), tenant_id)
        settled = await asyncio.gather(
            *(self._reply(tenant_id, lead, settings, access_token) for lead in selected),
            return_exceptions=True,
        )
        for lead, result in zip(selected, settled):
            if isinstance(result, Exception):
                # Unexpected failure: the send may not have happened, allow a retry.
                self.cache.release(tenant_id, lead.id)
                self.logger.error("Unexpected error replying to lead %s: %s", lead.id, result, exc_info=result)
                result = LeadReplyResult(lead_id=lead.id, success=False, error=str(result), error_code="unexpected")
            elif isinstance(result, BaseException):
                raise result
            summary.results.append(result)
            self._count(tenant_id, "sent" if result.success else "failed")
        return summary
