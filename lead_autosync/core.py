"""Core orchestration logic for the scheduled lead sync sweep."""

from __future__ import annotations

import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .autoreply import AutoReplyDispatcher
from .config import Settings
from .dedup import ProcessedLeadCache
from .dispatcher import BatchDispatcher
from .eligibility import select_eligible
from .errors import CredentialRevokedError, LeadSyncError, TenantBusyError
from .fetcher import MANUAL_LOOKBACK_DAYS, MailboxSyncClient, ReplyGenerator, ReplySender
from .logger import get_logger
from .models import AutoReplySettings, Lead, SweepSummary, SyncOutcome, TenantSyncProfile, format_timestamp, utc_now
from .oauth import CredentialRefresher
from .persistence import Persistence
from .prometheus import SyncMetrics
from .rate_limit import RateLimiter
from .state import InvalidTransition, TenantState, TenantStateRegistry


class SyncOrchestrator:
    """Coordinate eligibility, credential refresh, ingestion and auto-replies.

    Every collaborator can be injected; the defaults are built from
    :class:`~lead_autosync.config.Settings`.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        persistence: Persistence | None = None,
        refresher: CredentialRefresher | None = None,
        mailbox: MailboxSyncClient | None = None,
        generator: ReplyGenerator | None = None,
        sender: ReplySender | None = None,
        cache: ProcessedLeadCache | None = None,
        metrics: SyncMetrics | None = None,
        states: TenantStateRegistry | None = None,
        dispatcher: BatchDispatcher | None = None,
        clock: Callable[[], datetime] = utc_now,
        logger=None,
    ):
        """Prepare the runtime collaborators."""
        self.settings = settings or Settings()
        cfg = self.settings
        self.logger = logger or get_logger()
        self.persistence = persistence or Persistence(cfg.db_path)
        self.refresher = refresher or CredentialRefresher(
            cfg.google_client_id or "",
            cfg.google_client_secret or "",
            cfg.token_url,
            timeout=cfg.http_timeout_seconds,
        )
        functions_url = cfg.functions_url or ""
        service_key = cfg.service_key or ""
        self.mailbox = mailbox or MailboxSyncClient(functions_url, service_key, timeout=cfg.http_timeout_seconds)
        self.generator = generator or ReplyGenerator(functions_url, service_key, timeout=cfg.http_timeout_seconds)
        self.sender = sender or ReplySender(functions_url, service_key, timeout=cfg.http_timeout_seconds)
        self.cache = cache or ProcessedLeadCache(cfg.cache_ttl_seconds)
        self.metrics = metrics or SyncMetrics()
        self.states = states or TenantStateRegistry()
        self.dispatcher = dispatcher or BatchDispatcher(cfg.batch_size, cfg.batch_pause_seconds)
        self._clock = clock
        self.auto_reply = AutoReplyDispatcher(
            self.persistence,
            self.generator,
            self.sender,
            self.cache,
            rate_limiter=RateLimiter(self.persistence, clock=lambda: self._clock().timestamp()),
            metrics=self.metrics,
            timezone=cfg.timezone,
            business_start_hour=cfg.business_start_hour,
            business_end_hour=cfg.business_end_hour,
            clock=clock,
        )
        self.last_summary: Optional[SweepSummary] = None

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "SyncOrchestrator":
        return cls(settings=settings, **kwargs)

    async def init(self) -> None:
        """Initialise persistence."""
        await self.persistence.init_db()

    # -------------------------------------------------------------------- sweep
    async def sweep(self) -> SweepSummary:
        """Run one scheduled pass over every due tenant.

        Raises :class:`~lead_autosync.errors.ConfigurationError` before any
        tenant is touched when required settings are missing. Per-tenant
        failures never escape; they are aggregated in the summary.
        """
        self.settings.validate()
        started = time.monotonic()
        now = self._clock()
        self.metrics.inc_sweep()
        self.logger.info("Starting auto-sync sweep")

        profiles = await self.persistence.list_sync_profiles()
        eligible = select_eligible(profiles, now, timedelta(seconds=self.settings.staleness_seconds))
        if not eligible:
            self.logger.info("No users need syncing at this time")
            summary = SweepSummary(message="No users need syncing at this time", timestamp=now)
            return self._finish_sweep(summary, started)

        self.logger.info("Auto-syncing %d of %d enabled users", len(eligible), len(profiles))
        results = await self.dispatcher.run(eligible, self.sync_tenant)

        outcomes: List[SyncOutcome] = []
        for profile, result in zip(eligible, results):
            if isinstance(result, SyncOutcome):
                outcomes.append(result)
                continue
            self.logger.error("Unexpected error syncing %s: %s", profile.label, result, exc_info=result)
            self.metrics.inc_tenant_sync(profile.id, False)
            outcomes.append(SyncOutcome(tenant_id=profile.id, success=False, error=str(result), error_code="unexpected"))

        summary = SweepSummary(message="", timestamp=now, outcomes=outcomes)
        summary.message = (
            f"Processed {summary.users_processed} users: {summary.successful} successful, {summary.failed} failed"
        )
        self.logger.info("Auto-sync complete: %s, %d new leads", summary.message, summary.total_new_leads)
        for outcome in outcomes:
            if not outcome.success:
                self.logger.warning("Tenant %s failed: %s", outcome.tenant_id, outcome.error)
        return self._finish_sweep(summary, started)

    def _finish_sweep(self, summary: SweepSummary, started: float) -> SweepSummary:
        elapsed = time.monotonic() - started
        summary.execution_time_ms = int(elapsed * 1000)
        self.metrics.set_sweep_duration(elapsed)
        self.last_summary = summary
        return summary

    # ------------------------------------------------------------------- tenant
    async def sync_tenant(
        self,
        profile: TenantSyncProfile,
        period_days: Optional[int] = None,
        *,
        update_marker: bool = True,
    ) -> SyncOutcome:
        """Sync one tenant under its lease and return the outcome.

        ``update_marker`` advances ``last_auto_sync`` on success; client
        triggered syncs leave it alone.
        """
        holder = uuid.uuid4().hex
        now_ts = int(self._clock().timestamp())
        if not await self.persistence.acquire_lease(profile.id, holder, now_ts, self.settings.lease_seconds):
            exc = TenantBusyError(profile.id)
            self.logger.info("Tenant %s: %s, skipping", profile.label, exc)
            self.metrics.inc_tenant_sync(profile.id, False)
            return self._failed(profile, exc)
        try:
            if self.states.get(profile.id) is TenantState.DISABLED:
                # Only a re-enabled profile reaches this point.
                self.states.reset(profile.id)
            self.states.begin_sync(profile.id)
        except InvalidTransition as exc:
            # An expired lease let us in while the previous pass is still running.
            await self.persistence.release_lease(profile.id, holder)
            self.logger.warning("Tenant %s: %s", profile.label, exc)
            self.metrics.inc_tenant_sync(profile.id, False)
            return self._failed(profile, TenantBusyError(profile.id))
        try:
            return await self._sync_locked(profile, period_days or self.settings.lookback_days, update_marker)
        finally:
            if self.states.get(profile.id) in (TenantState.SYNCING, TenantState.REPLYING):
                self.states.finish(profile.id)
            await self.persistence.release_lease(profile.id, holder)

    async def _sync_locked(self, profile: TenantSyncProfile, period_days: int, update_marker: bool) -> SyncOutcome:
        previous_marker = await self.persistence.get_last_auto_sync(profile.id)

        try:
            credential = await self.refresher.refresh(profile.provider_refresh_credential or "")
        except CredentialRevokedError as exc:
            self.logger.error("Tenant %s: refresh credential revoked (%s), disabling auto-sync", profile.label, exc.provider_error)
            await self.persistence.disable_auto_sync(profile.id)
            self.states.disable(profile.id)
            self.metrics.inc_credential_revoked(profile.id)
            self.metrics.inc_tenant_sync(profile.id, False)
            return self._failed(profile, exc, credential_revoked=True)
        except LeadSyncError as exc:
            self.logger.warning("Tenant %s: token refresh failed: %s", profile.label, exc)
            self.metrics.inc_tenant_sync(profile.id, False)
            return self._failed(profile, exc)

        try:
            result = await self.mailbox.fetch_new_leads(profile.id, credential.access_token, period_days)
        except LeadSyncError as exc:
            self.logger.warning("Tenant %s: mailbox sync failed: %s", profile.label, exc)
            self.metrics.inc_tenant_sync(profile.id, False)
            return self._failed(profile, exc)

        await self.persistence.record_leads(profile.id, result.new_leads)
        self.metrics.inc_new_leads(profile.id, result.new_lead_count)

        replies = None
        reply_settings = await self.persistence.get_auto_reply_settings(profile.id)
        if reply_settings.enabled:
            candidates = await self._reply_candidates(profile.id, result.new_leads, period_days)
            if candidates:
                self.states.begin_replies(profile.id)
                replies = await self.auto_reply.dispatch(
                    profile.id, candidates, reply_settings, credential.access_token
                )
        self.states.finish(profile.id)

        if update_marker:
            synced_at = self._clock()
            if not await self.persistence.mark_synced(profile.id, synced_at, previous_marker):
                self.logger.warning("Tenant %s: completion marker changed by another writer", profile.label)

        self.logger.info(
            "Tenant %s: %d new leads from %d emails, %d auto-replies sent",
            profile.label,
            result.new_lead_count,
            result.total_emails,
            replies.sent if replies else 0,
        )
        self.metrics.inc_tenant_sync(profile.id, True)
        return SyncOutcome(
            tenant_id=profile.id,
            success=True,
            new_lead_count=result.new_lead_count,
            total_emails=result.total_emails,
            replies=replies,
        )

    async def _reply_candidates(self, tenant_id: str, new_leads: List[Lead], period_days: int) -> List[Lead]:
        """New leads plus stored ones still waiting for a reply inside the lookback."""
        since = self._clock() - timedelta(days=period_days)
        stored = await self.persistence.list_reply_candidates(tenant_id, since)
        seen = {lead.id for lead in new_leads}
        return list(new_leads) + [lead for lead in stored if lead.id not in seen]

    @staticmethod
    def _failed(profile: TenantSyncProfile, exc: LeadSyncError, *, credential_revoked: bool = False) -> SyncOutcome:
        return SyncOutcome(
            tenant_id=profile.id,
            success=False,
            error=str(exc),
            error_code=exc.code,
            reauth_required=exc.reauth_required,
            credential_revoked=credential_revoked,
        )

    async def manual_sync(self, tenant_id: str, period_days: int = 1) -> SyncOutcome:
        """Client-triggered sync with a user chosen lookback."""
        if period_days not in MANUAL_LOOKBACK_DAYS:
            raise ValueError(f"period must be one of {', '.join(str(p) for p in MANUAL_LOOKBACK_DAYS)}")
        profile = await self.persistence.get_profile(tenant_id)
        if profile is None:
            raise LookupError(f"Unknown tenant {tenant_id}")
        return await self.sync_tenant(profile, period_days, update_marker=False)

    # ----------------------------------------------------------------- settings
    async def add_tenant(self, payload: Dict[str, Any]) -> None:
        """Register (or re-authenticate) a tenant profile."""
        await self.persistence.add_profile(payload)
        self.states.reset(payload["id"])

    async def set_auto_sync(self, tenant_id: str, enabled: bool) -> bool:
        changed = await self.persistence.set_auto_sync_enabled(tenant_id, enabled)
        if changed and enabled:
            self.states.reset(tenant_id)
        return changed

    async def set_auto_reply_settings(self, tenant_id: str, settings: AutoReplySettings) -> None:
        """Persist auto-reply settings; turning replies off forgets the tenant's dedup entries."""
        await self.persistence.save_auto_reply_settings(tenant_id, settings)
        if not settings.enabled:
            self.cache.clear(tenant_id)

    def describe_tenant(self, profile: TenantSyncProfile) -> Dict[str, Any]:
        return {
            "id": profile.id,
            "email": profile.email,
            "auto_sync_enabled": profile.auto_sync_enabled,
            "has_credential": bool(profile.provider_refresh_credential),
            "last_auto_sync": format_timestamp(profile.last_auto_sync_at),
            "state": self.states.get(profile.id).value,
        }

    # ----------------------------------------------------------------- commands
    async def handle_command(self, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute one of the external control commands."""
        payload = payload or {}
        if cmd == "sweep":
            summary = await self.sweep()
            return {"ok": True, **summary.as_dict()}
        if cmd == "syncTenant":
            try:
                outcome = await self.manual_sync(payload.get("id", ""), int(payload.get("period", 1)))
            except LookupError as exc:
                return {"ok": False, "error": str(exc), "not_found": True}
            except ValueError as exc:
                return {"ok": False, "error": str(exc)}
            return {"ok": outcome.success, **outcome.as_dict()}
        if cmd == "addTenant":
            try:
                await self.add_tenant(payload)
            except ValueError as exc:
                return {"ok": False, "error": str(exc)}
            return {"ok": True}
        if cmd == "listTenants":
            profiles = await self.persistence.list_profiles()
            return {"ok": True, "tenants": [self.describe_tenant(p) for p in profiles]}
        if cmd == "setAutoSync":
            changed = await self.set_auto_sync(payload.get("id", ""), bool(payload.get("enabled")))
            if not changed:
                return {"ok": False, "error": "tenant not found or missing refresh credential"}
            return {"ok": True, "auto_sync_enabled": bool(payload.get("enabled"))}
        if cmd == "setAutoReply":
            settings = AutoReplySettings.model_validate(payload.get("settings") or {})
            await self.set_auto_reply_settings(payload.get("id", ""), settings)
            return {"ok": True, "settings": settings.model_dump(by_alias=True)}
        if cmd == "getAutoReply":
            settings = await self.persistence.get_auto_reply_settings(payload.get("id", ""))
            return {"ok": True, "settings": settings.model_dump(by_alias=True)}
        if cmd == "status":
            last = self.last_summary.as_dict() if self.last_summary else None
            return {"ok": True, "states": self.states.snapshot(), "last_sweep": last}
        return {"ok": False, "error": "unknown command"}
