"""Client-side reconciliation loop of a signed-in session.

A session performs one immediate sync when it starts, then watches the
tenant's server-side completion marker and asks the caller to refresh its
lead list whenever a scheduled sweep has finished in the meantime.
"""

from __future__ import annotations

import asyncio
import inspect
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

from .fetcher import AUTO_SYNC_LOOKBACK_DAYS, MANUAL_LOOKBACK_DAYS
from .logger import get_logger
from .models import SyncOutcome

DEFAULT_POLL_INTERVAL = 120.0

RefreshCallback = Callable[[str, Optional[SyncOutcome]], Any]


class PeriodicTask:
    """Run ``callback`` every ``interval`` seconds until cancelled.

    The owner keeps the instance as its cancellation handle; :meth:`stop`
    cancels the underlying task and waits for it to finish.
    """

    def __init__(
        self,
        interval: float,
        callback: Callable[[], Awaitable[None]],
        *,
        name: str = "periodic-task",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger=None,
    ):
        self.interval = max(0.0, float(interval))
        self.callback = callback
        self.name = name
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self.logger = logger or get_logger("LeadAutoSync.reconcile")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)

    async def _loop(self) -> None:
        # Exits once stop() has detached this task, including from inside the callback.
        while self._task is asyncio.current_task():
            await self._sleep(self.interval)
            try:
                await self.callback()
            except Exception as exc:
                self.logger.exception("Unhandled error in %s: %s", self.name, exc)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


class Notifier(Protocol):
    """User-facing notification sink of the client session."""

    def reauth_required(self, tenant_id: str, message: str) -> None:
        """Credential problem: the user has to sign in again."""

    def soft_warning(self, tenant_id: str, message: str) -> None:
        """Transient problem: a non-blocking hint, the next cycle retries."""


class LoggingNotifier:
    """Notifier writing to the application log."""

    def __init__(self, logger=None):
        self.logger = logger or get_logger("LeadAutoSync.notify")

    def reauth_required(self, tenant_id: str, message: str) -> None:
        self.logger.warning("Tenant %s must sign in again: %s", tenant_id, message)

    def soft_warning(self, tenant_id: str, message: str) -> None:
        self.logger.info("Tenant %s: %s", tenant_id, message)


class SessionState(str, Enum):
    IDLE = "idle"
    INITIAL_SYNC_IN_FLIGHT = "initial_sync_in_flight"
    POLLING = "polling"
    REFRESH_TRIGGERED = "refresh_triggered"
    STOPPED = "stopped"


class ReconciliationSession:
    """Per-session loop bound to one tenant.

    Errors never propagate to the caller: credential problems go to
    :meth:`Notifier.reauth_required`, everything else to
    :meth:`Notifier.soft_warning`.
    """

    def __init__(
        self,
        tenant_id: str,
        orchestrator,
        *,
        notifier: Optional[Notifier] = None,
        on_leads_refreshed: Optional[RefreshCallback] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger=None,
    ):
        self.tenant_id = tenant_id
        self.orchestrator = orchestrator
        self.persistence = orchestrator.persistence
        self.notifier = notifier or LoggingNotifier()
        self.on_leads_refreshed = on_leads_refreshed
        self.poll_interval = poll_interval
        self._sleep = sleep
        self.logger = logger or get_logger("LeadAutoSync.reconcile")
        self.state = SessionState.IDLE
        self._poller: Optional[PeriodicTask] = None
        self._initial_sync_done = False
        self._observed_marker: Optional[str] = None
        self._sync_in_flight = False

    # ---------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Start the session: initial sync once, then marker polling."""
        self.state = SessionState.IDLE
        self._observed_marker = await self.persistence.get_last_auto_sync(self.tenant_id)
        if not self._initial_sync_done:
            self._initial_sync_done = True
            self.state = SessionState.INITIAL_SYNC_IN_FLIGHT
            await self._client_sync(AUTO_SYNC_LOOKBACK_DAYS)
            if self.state is SessionState.STOPPED:
                return
            self.state = SessionState.IDLE
        await self._update_polling()

    async def stop(self) -> None:
        """Tear the session down (logout or unmount)."""
        await self._stop_polling()
        self.state = SessionState.STOPPED

    async def switch_tenant(self, tenant_id: str) -> None:
        """Drop every local cache of the current tenant and start over for ``tenant_id``."""
        await self.stop()
        self.orchestrator.cache.clear(self.tenant_id)
        self.tenant_id = tenant_id
        self._observed_marker = None
        self._initial_sync_done = False
        await self.start()

    async def _update_polling(self) -> None:
        profile = await self.persistence.get_profile(self.tenant_id)
        if profile is not None and profile.auto_sync_enabled:
            if self._poller is None:
                self._poller = PeriodicTask(
                    self.poll_interval,
                    self.poll_once,
                    name=f"marker-poll-{self.tenant_id}",
                    sleep=self._sleep,
                    logger=self.logger,
                )
            self._poller.start()
            self.state = SessionState.POLLING
        else:
            await self._stop_polling()
            self.state = SessionState.IDLE

    async def _stop_polling(self) -> None:
        poller, self._poller = self._poller, None
        if poller is not None:
            await poller.stop()

    @property
    def polling(self) -> bool:
        return self._poller is not None and self._poller.running

    # ------------------------------------------------------------------ polling
    async def poll_once(self) -> bool:
        """Check the completion marker; returns ``True`` when a refresh was triggered."""
        if self.state is SessionState.STOPPED:
            return False
        profile = await self.persistence.get_profile(self.tenant_id)
        if profile is None or not profile.auto_sync_enabled:
            # Turned off server side, typically after the refresh credential was revoked.
            await self._stop_polling()
            self.state = SessionState.IDLE
            self.notifier.reauth_required(self.tenant_id, "Auto-sync was turned off. Please sign in again to resume it")
            return False
        marker = await self.persistence.get_last_auto_sync(self.tenant_id)
        if not marker or marker == self._observed_marker:
            return False
        self._observed_marker = marker
        self.logger.debug("Tenant %s: server sync finished at %s, refreshing leads", self.tenant_id, marker)
        self.state = SessionState.REFRESH_TRIGGERED
        await self._refreshed(None)
        if self.state is SessionState.REFRESH_TRIGGERED:
            self.state = SessionState.POLLING
        return True

    # ------------------------------------------------------------------ actions
    async def manual_sync(self, period_days: int = 1) -> Optional[SyncOutcome]:
        """User-triggered sync; refused while another client sync runs."""
        if period_days not in MANUAL_LOOKBACK_DAYS:
            raise ValueError(f"period must be one of {', '.join(str(p) for p in MANUAL_LOOKBACK_DAYS)}")
        if self._sync_in_flight:
            self.notifier.soft_warning(self.tenant_id, "sync already in progress")
            return None
        return await self._client_sync(period_days)

    async def set_auto_reply_enabled(self, enabled: bool) -> None:
        """Toggle auto-reply; turning it off forgets the tenant's in-flight claims."""
        settings = await self.persistence.get_auto_reply_settings(self.tenant_id)
        await self.orchestrator.set_auto_reply_settings(self.tenant_id, settings.model_copy(update={"enabled": enabled}))

    async def set_auto_sync_enabled(self, enabled: bool) -> bool:
        """Toggle server-side auto-sync and start or stop marker polling to match."""
        changed = await self.orchestrator.set_auto_sync(self.tenant_id, enabled)
        if not changed and enabled:
            self.notifier.reauth_required(self.tenant_id, "Connect your mailbox before enabling auto-sync")
        if self.state is not SessionState.STOPPED:
            await self._update_polling()
        return changed

    # ------------------------------------------------------------------ helpers
    async def _client_sync(self, period_days: int) -> Optional[SyncOutcome]:
        self._sync_in_flight = True
        try:
            profile = await self.persistence.get_profile(self.tenant_id)
            if profile is None:
                self.notifier.soft_warning(self.tenant_id, "tenant profile not found")
                return None
            outcome = await self.orchestrator.sync_tenant(profile, period_days, update_marker=False)
        except Exception as exc:
            self.logger.exception("Client sync failed for %s", self.tenant_id)
            self.notifier.soft_warning(self.tenant_id, f"Sync failed: {exc}")
            return None
        finally:
            self._sync_in_flight = False

        self._report(outcome)
        if outcome.success:
            await self._refreshed(outcome)
        return outcome

    def _report(self, outcome: SyncOutcome) -> None:
        if not outcome.success:
            if outcome.reauth_required:
                self.notifier.reauth_required(self.tenant_id, outcome.error or "Please sign in again")
            else:
                self.notifier.soft_warning(self.tenant_id, outcome.error or "Sync failed")
            return
        if outcome.replies is None:
            return
        failures = [item for item in outcome.replies.results if not item.success]
        reauth = next((item for item in failures if item.reauth_required), None)
        if reauth is not None:
            self.notifier.reauth_required(self.tenant_id, reauth.error or "Please sign in again")
        elif failures:
            self.notifier.soft_warning(self.tenant_id, f"{len(failures)} auto-replies failed, retrying later")

    async def _refreshed(self, outcome: Optional[SyncOutcome]) -> None:
        if self.on_leads_refreshed is None:
            return
        try:
            result = self.on_leads_refreshed(self.tenant_id, outcome)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            self.logger.exception("Lead refresh callback failed for %s", self.tenant_id)
            self.notifier.soft_warning(self.tenant_id, f"Refresh failed: {exc}")
