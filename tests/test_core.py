import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import pytest

from lead_autosync.config import Settings
from lead_autosync.core import SyncOrchestrator
from lead_autosync.dispatcher import BatchDispatcher
from lead_autosync.errors import (
    ConfigurationError,
    CredentialRefreshError,
    CredentialRevokedError,
    MailboxSyncError,
    ReplySendError,
)
from lead_autosync.models import AccessCredential, AutoReplySettings, Lead, MailboxSyncResult, PriorityStatus
from lead_autosync.prometheus import SyncMetrics
from lead_autosync.state import TenantState

NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


class DummyRefresher:
    def __init__(self):
        self.calls: List[str] = []
        self.revoked = set()
        self.failing = set()

    async def refresh(self, credential):
        self.calls.append(credential)
        if credential in self.revoked:
            raise CredentialRevokedError("Refresh credential rejected: invalid_grant", status=400)
        if credential in self.failing:
            raise CredentialRefreshError("Token refresh failed: 503", status=503)
        return AccessCredential(access_token=f"access-{credential}")


class DummyMailbox:
    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.results: Dict[str, Any] = {}
        self.hooks: Dict[str, Any] = {}

    async def fetch_new_leads(self, tenant_id, access_token, period_days=1):
        self.calls.append({"tenant": tenant_id, "token": access_token, "period": period_days})
        await asyncio.sleep(0)
        if tenant_id in self.hooks:
            await self.hooks[tenant_id]()
        # like the real collaborator, a lead is reported as new only once
        result = self.results.pop(tenant_id, MailboxSyncResult())
        if isinstance(result, Exception):
            raise result
        return result


class DummyGenerator:
    async def generate(self, tenant_id, lead, settings):
        return "Thanks, we will be in touch."


class DummySender:
    def __init__(self):
        self.sent: List[str] = []
        self.status_for: Dict[str, int] = {}

    async def send(self, tenant_id, lead, body, access_token):
        status = self.status_for.get(lead.id)
        if status:
            raise ReplySendError("send failed", status=status)
        self.sent.append(lead.id)
        return f"gm-{lead.id}"


def leads_result(*leads):
    return MailboxSyncResult(new_leads=list(leads), new_lead_count=len(leads), total_emails=len(leads) + 1)


def make_lead(lead_id, status=PriorityStatus.HOT):
    return Lead(id=lead_id, sender_address=f"{lead_id}@example.com", subject="Hello", priority_status=status)


SETTINGS = Settings(
    google_client_id="client-id",
    google_client_secret="client-secret",
    functions_url="https://functions.example.test",
    service_key="service-key",
)


@pytest.fixture
def orchestrator(store, silent_logger):
    core = SyncOrchestrator(
        settings=SETTINGS,
        persistence=store,
        refresher=DummyRefresher(),
        mailbox=DummyMailbox(),
        generator=DummyGenerator(),
        sender=DummySender(),
        metrics=SyncMetrics(),
        dispatcher=BatchDispatcher(3, 0, logger=silent_logger),
        clock=lambda: NOW,
        logger=silent_logger,
    )
    core.auto_reply.logger = silent_logger
    return core


async def add_tenant(core, tenant_id, *, credential=None, last=None, auto_reply=True):
    await core.persistence.add_profile(
        {
            "id": tenant_id,
            "email": f"{tenant_id}@example.com",
            "refresh_credential": credential or f"rt-{tenant_id}",
            "auto_sync_enabled": True,
            "last_auto_sync": last,
        }
    )
    if auto_reply:
        await core.persistence.save_auto_reply_settings(
            tenant_id, AutoReplySettings(enabled=True, businessHoursOnly=False)
        )


@pytest.mark.asyncio
async def test_new_tenant_gets_one_reply_for_hot_lead(orchestrator):
    await add_tenant(orchestrator, "t1")
    orchestrator.mailbox.results["t1"] = leads_result(make_lead("hot"), make_lead("cold", PriorityStatus.COLD))

    summary = await orchestrator.sweep()

    assert summary.users_processed == 1 and summary.successful == 1
    assert summary.total_new_leads == 2
    assert orchestrator.sender.sent == ["hot"]
    hot = await orchestrator.persistence.get_lead("t1", "hot")
    assert hot.auto_replied is True
    profile = await orchestrator.persistence.get_profile("t1")
    assert profile.last_auto_sync_at == NOW
    assert orchestrator.mailbox.calls[0]["period"] == 1
    assert orchestrator.states.get("t1") is TenantState.IDLE


@pytest.mark.asyncio
async def test_revoked_credential_disables_tenant(orchestrator):
    await add_tenant(orchestrator, "t1")
    orchestrator.refresher.revoked.add("rt-t1")

    summary = await orchestrator.sweep()

    [outcome] = summary.outcomes
    assert outcome.success is False
    assert outcome.credential_revoked is True
    assert outcome.error_code == "credential_revoked"
    assert "invalid_grant" in outcome.error
    assert orchestrator.mailbox.calls == []
    assert (await orchestrator.persistence.get_profile("t1")).auto_sync_enabled is False
    assert orchestrator.states.get("t1") is TenantState.DISABLED

    # not retried by the next sweep
    orchestrator.refresher.calls.clear()
    summary = await orchestrator.sweep()
    assert summary.users_processed == 0
    assert orchestrator.refresher.calls == []


@pytest.mark.asyncio
async def test_transient_refresh_failure_keeps_tenant_enabled(orchestrator):
    await add_tenant(orchestrator, "t1")
    orchestrator.refresher.failing.add("rt-t1")

    summary = await orchestrator.sweep()

    assert summary.failed == 1
    assert summary.outcomes[0].credential_revoked is False
    assert (await orchestrator.persistence.get_profile("t1")).auto_sync_enabled is True
    assert await orchestrator.persistence.get_last_auto_sync("t1") is None


@pytest.mark.asyncio
async def test_failing_tenant_does_not_affect_siblings(orchestrator):
    for tenant in ("a", "b", "c"):
        await add_tenant(orchestrator, tenant)
    orchestrator.mailbox.results["a"] = MailboxSyncError("Mailbox sync failed: 502", status=502)
    orchestrator.mailbox.results["b"] = leads_result(make_lead("b-hot"))
    orchestrator.mailbox.results["c"] = leads_result(make_lead("c-warm", PriorityStatus.WARM))

    summary = await orchestrator.sweep()

    outcomes = {item.tenant_id: item for item in summary.outcomes}
    assert outcomes["a"].success is False
    assert outcomes["b"].success is True and outcomes["b"].new_lead_count == 1
    assert outcomes["c"].success is True and outcomes["c"].new_lead_count == 1
    assert sorted(orchestrator.sender.sent) == ["b-hot", "c-warm"]
    assert summary.message == "Processed 3 users: 2 successful, 1 failed"
    assert summary.total_new_leads == 2
    assert await orchestrator.persistence.get_last_auto_sync("a") is None


@pytest.mark.asyncio
async def test_unexpected_error_is_isolated(orchestrator):
    await add_tenant(orchestrator, "a")
    await add_tenant(orchestrator, "b")
    orchestrator.mailbox.results["a"] = RuntimeError("boom")

    summary = await orchestrator.sweep()

    outcomes = {item.tenant_id: item for item in summary.outcomes}
    assert outcomes["a"].success is False and outcomes["a"].error == "boom"
    assert outcomes["b"].success is True
    assert orchestrator.states.get("a") is TenantState.IDLE
    # lease released even though the task crashed
    assert await orchestrator.persistence.acquire_lease("a", "next-sweep", int(NOW.timestamp()), 60)


@pytest.mark.asyncio
async def test_send_403_fails_lead_but_not_tenant(orchestrator):
    await add_tenant(orchestrator, "t1")
    orchestrator.mailbox.results["t1"] = leads_result(make_lead("hot"))
    orchestrator.sender.status_for["hot"] = 403

    summary = await orchestrator.sweep()

    [outcome] = summary.outcomes
    assert outcome.success is True
    assert outcome.replies.failed == 1
    assert outcome.replies.results[0].reauth_required is True
    hot = await orchestrator.persistence.get_lead("t1", "hot")
    assert hot.answered is False and hot.auto_replied is False
    assert not orchestrator.cache.contains("t1", "hot")
    assert (await orchestrator.persistence.get_profile("t1")).last_auto_sync_at == NOW


@pytest.mark.asyncio
async def test_failed_reply_is_retried_by_a_later_sync(orchestrator):
    await add_tenant(orchestrator, "t1")
    orchestrator.mailbox.results["t1"] = leads_result(make_lead("hot"), make_lead("cold", PriorityStatus.COLD))
    orchestrator.sender.status_for["hot"] = 403
    await orchestrator.sweep()
    assert orchestrator.sender.sent == []

    # the user grants the send scope again; the mailbox has nothing new
    orchestrator.sender.status_for.clear()
    outcome = await orchestrator.sync_tenant(await orchestrator.persistence.get_profile("t1"))

    assert outcome.success is True and outcome.new_lead_count == 0
    assert outcome.replies.sent == 1
    assert orchestrator.sender.sent == ["hot"]
    assert (await orchestrator.persistence.get_lead("t1", "hot")).auto_replied is True

    # once replied it is never picked up again
    await orchestrator.sync_tenant(await orchestrator.persistence.get_profile("t1"))
    assert orchestrator.sender.sent == ["hot"]


@pytest.mark.asyncio
async def test_stored_leads_outside_the_lookback_are_not_retried(orchestrator):
    await add_tenant(orchestrator, "t1")
    old = make_lead("old")
    old.received_at = NOW - timedelta(days=3)
    await orchestrator.persistence.record_leads("t1", [old])

    await orchestrator.sync_tenant(await orchestrator.persistence.get_profile("t1"))
    assert orchestrator.sender.sent == []

    await orchestrator.manual_sync("t1", 7)
    assert orchestrator.sender.sent == ["old"]


@pytest.mark.asyncio
async def test_toggling_auto_reply_clears_dedup_scope(orchestrator):
    await add_tenant(orchestrator, "t1")
    orchestrator.mailbox.results["t1"] = leads_result(make_lead("hot"))
    # a claim left behind by an interrupted attempt
    orchestrator.cache.claim("t1", "hot")

    await orchestrator.sync_tenant(await orchestrator.persistence.get_profile("t1"))
    assert orchestrator.sender.sent == []

    settings = await orchestrator.persistence.get_auto_reply_settings("t1")
    await orchestrator.set_auto_reply_settings("t1", settings.model_copy(update={"enabled": False}))
    await orchestrator.set_auto_reply_settings("t1", settings.model_copy(update={"enabled": True}))

    await orchestrator.sync_tenant(await orchestrator.persistence.get_profile("t1"))
    assert orchestrator.sender.sent == ["hot"]


@pytest.mark.asyncio
async def test_recently_synced_tenants_are_skipped(orchestrator):
    await add_tenant(orchestrator, "t1", last=NOW - timedelta(minutes=1))

    summary = await orchestrator.sweep()

    assert summary.users_processed == 0
    assert summary.message == "No users need syncing at this time"
    assert orchestrator.refresher.calls == []


@pytest.mark.asyncio
async def test_missing_configuration_aborts_before_any_tenant(store, silent_logger):
    core = SyncOrchestrator(
        settings=Settings(google_client_id="id"),
        persistence=store,
        refresher=DummyRefresher(),
        mailbox=DummyMailbox(),
        logger=silent_logger,
    )
    await store.add_profile({"id": "t1", "refresh_credential": "rt", "auto_sync_enabled": True})

    with pytest.raises(ConfigurationError) as excinfo:
        await core.sweep()

    assert "GOOGLE_CLIENT_SECRET" in excinfo.value.missing
    assert core.refresher.calls == []


@pytest.mark.asyncio
async def test_held_lease_skips_tenant(orchestrator):
    await add_tenant(orchestrator, "t1")
    assert await orchestrator.persistence.acquire_lease("t1", "other-sweep", int(NOW.timestamp()), 240)

    summary = await orchestrator.sweep()

    [outcome] = summary.outcomes
    assert outcome.success is False
    assert outcome.error == "sync already in progress"
    assert orchestrator.refresher.calls == []


@pytest.mark.asyncio
async def test_overlapping_syncs_of_one_tenant_are_serialised(orchestrator):
    await add_tenant(orchestrator, "t1")
    orchestrator.mailbox.results["t1"] = leads_result(make_lead("hot"))
    profile = await orchestrator.persistence.get_profile("t1")

    first, second = await asyncio.gather(orchestrator.sync_tenant(profile), orchestrator.sync_tenant(profile))

    assert sorted([first.success, second.success]) == [False, True]
    assert len(orchestrator.mailbox.calls) == 1
    assert orchestrator.sender.sent == ["hot"]


@pytest.mark.asyncio
async def test_expired_lease_does_not_reset_a_running_sync(orchestrator):
    await add_tenant(orchestrator, "t1")
    # a previous pass is still running but its lease has already expired
    orchestrator.states.begin_sync("t1")

    outcome = await orchestrator.sync_tenant(await orchestrator.persistence.get_profile("t1"))

    assert outcome.success is False
    assert outcome.error_code == "sync_in_progress"
    assert orchestrator.mailbox.calls == []
    assert orchestrator.states.get("t1") is TenantState.SYNCING
    assert await orchestrator.persistence.acquire_lease("t1", "next", int(NOW.timestamp()), 60)


@pytest.mark.asyncio
async def test_marker_moved_by_another_writer_is_not_overwritten(orchestrator):
    await add_tenant(orchestrator, "t1")
    other = NOW + timedelta(seconds=30)

    async def concurrent_writer():
        await orchestrator.persistence.mark_synced("t1", other, None)

    orchestrator.mailbox.hooks["t1"] = concurrent_writer

    summary = await orchestrator.sweep()

    assert summary.successful == 1
    assert (await orchestrator.persistence.get_profile("t1")).last_auto_sync_at == other


@pytest.mark.asyncio
async def test_manual_sync(orchestrator):
    await add_tenant(orchestrator, "t1")
    orchestrator.mailbox.results["t1"] = leads_result(make_lead("hot"))

    with pytest.raises(ValueError):
        await orchestrator.manual_sync("t1", 5)
    with pytest.raises(LookupError):
        await orchestrator.manual_sync("missing", 7)

    outcome = await orchestrator.manual_sync("t1", 30)

    assert outcome.success is True
    assert orchestrator.mailbox.calls[-1]["period"] == 30
    # client triggered syncs leave the sweep marker alone
    assert await orchestrator.persistence.get_last_auto_sync("t1") is None


@pytest.mark.asyncio
async def test_re_enabling_a_disabled_tenant(orchestrator):
    await add_tenant(orchestrator, "t1")
    orchestrator.refresher.revoked.add("rt-t1")
    await orchestrator.sweep()
    assert orchestrator.states.get("t1") is TenantState.DISABLED

    # the user signs in again with a new grant
    await orchestrator.add_tenant({"id": "t1", "refresh_credential": "rt-new", "auto_sync_enabled": True})
    summary = await orchestrator.sweep()

    assert summary.successful == 1
    assert orchestrator.refresher.calls[-1] == "rt-new"


@pytest.mark.asyncio
async def test_handle_command(orchestrator):
    result = await orchestrator.handle_command(
        "addTenant", {"id": "t1", "email": "t1@example.com", "refresh_credential": "rt"}
    )
    assert result == {"ok": True}

    assert (await orchestrator.handle_command("addTenant", {"id": "t2", "auto_sync_enabled": True}))["ok"] is False

    result = await orchestrator.handle_command("setAutoSync", {"id": "t1", "enabled": True})
    assert result == {"ok": True, "auto_sync_enabled": True}

    result = await orchestrator.handle_command("listTenants")
    tenant = next(t for t in result["tenants"] if t["id"] == "t1")
    assert tenant["auto_sync_enabled"] is True
    assert tenant["has_credential"] is True
    assert "refresh_credential" not in tenant

    result = await orchestrator.handle_command("setAutoReply", {"id": "t1", "settings": {"enabled": True, "tone": "casual"}})
    assert result["settings"]["tone"] == "casual"
    assert (await orchestrator.handle_command("getAutoReply", {"id": "t1"}))["settings"]["enabled"] is True

    result = await orchestrator.handle_command("syncTenant", {"id": "t1", "period": 3})
    assert result["ok"] is True and result["tenant_id"] == "t1"

    result = await orchestrator.handle_command("sweep")
    assert result["ok"] is True and result["users_processed"] == 1

    status = await orchestrator.handle_command("status")
    assert status["last_sweep"]["users_processed"] == 1

    assert (await orchestrator.handle_command("nope"))["ok"] is False
