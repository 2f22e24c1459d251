import pytest
from aioresponses import aioresponses
from yarl import URL

from lead_autosync.errors import (
    MailboxSyncError,
    ReauthenticationRequired,
    ReplyGenerationError,
    ReplySendError,
)
from lead_autosync.fetcher import MailboxSyncClient, ReplyGenerator, ReplySender
from lead_autosync.models import AutoReplySettings, Lead, PriorityStatus

BASE = "https://functions.example.test/v1/"
FETCH_URL = "https://functions.example.test/v1/fetch-gmail-leads"
GENERATE_URL = "https://functions.example.test/v1/generate-ai-response"
SEND_URL = "https://functions.example.test/v1/send-email-reply"


def make_lead():
    return Lead(
        id="lead-1",
        sender_address="buyer@example.com",
        subject="Pricing",
        priority_status=PriorityStatus.HOT,
        content="How much for 10 seats?",
    )


@pytest.mark.asyncio
async def test_mailbox_sync_posts_period_and_tokens(silent_logger):
    client = MailboxSyncClient(BASE, "service-key", logger=silent_logger)
    with aioresponses() as m:
        m.post(
            FETCH_URL,
            status=200,
            payload={
                "new_leads": 2,
                "total_new_emails": 5,
                "new_leads_data": [
                    {"id": "l1", "sender_email": "a@example.com", "subject": "Hi", "status": "hot"},
                    {"id": "l2", "sender_email": "b@example.com", "subject": "Spam", "status": "cold"},
                ],
            },
        )

        result = await client.fetch_new_leads("tenant-1", "access-1", 1)

        request = m.requests[("POST", URL(FETCH_URL))][0]
        assert request.kwargs["json"] == {"period": 1, "user_id": "tenant-1"}
        assert request.kwargs["headers"]["X-Google-Token"] == "access-1"
        assert request.kwargs["headers"]["Authorization"] == "Bearer service-key"

    assert result.new_lead_count == 2
    assert result.total_emails == 5
    assert [lead.priority_status for lead in result.new_leads] == [PriorityStatus.HOT, PriorityStatus.COLD]


@pytest.mark.asyncio
async def test_mailbox_sync_401_requires_reauthentication(silent_logger):
    client = MailboxSyncClient(BASE, "service-key", logger=silent_logger)
    with aioresponses() as m:
        m.post(FETCH_URL, status=401, payload={"error": "unauthorized"})
        with pytest.raises(ReauthenticationRequired):
            await client.fetch_new_leads("tenant-1", "access-1")


@pytest.mark.asyncio
async def test_mailbox_sync_5xx_is_transient(silent_logger):
    client = MailboxSyncClient(BASE, "service-key", logger=silent_logger)
    with aioresponses() as m:
        m.post(FETCH_URL, status=502, body="bad gateway")
        with pytest.raises(MailboxSyncError) as excinfo:
            await client.fetch_new_leads("tenant-1", "access-1")
    assert excinfo.value.reauth_required is False


@pytest.mark.asyncio
@pytest.mark.parametrize("body", ["<html>oops</html>", "", "[1, 2]"])
async def test_mailbox_sync_malformed_success_body_fails(silent_logger, body):
    client = MailboxSyncClient(BASE, "service-key", logger=silent_logger)
    with aioresponses() as m:
        m.post(FETCH_URL, status=200, body=body)
        with pytest.raises(MailboxSyncError) as excinfo:
            await client.fetch_new_leads("tenant-1", "access-1")
    assert excinfo.value.status == 200


@pytest.mark.asyncio
async def test_generator_forwards_tone_and_length(silent_logger):
    generator = ReplyGenerator(BASE, "service-key", logger=silent_logger)
    settings = AutoReplySettings(enabled=True, tone="friendly", length="short")
    with aioresponses() as m:
        m.post(GENERATE_URL, status=200, payload={"response": "Thanks for reaching out!"})

        text = await generator.generate("tenant-1", make_lead(), settings)

        body = m.requests[("POST", URL(GENERATE_URL))][0].kwargs["json"]
    assert text == "Thanks for reaching out!"
    assert body["tone"] == "friendly"
    assert body["length"] == "short"
    assert body["emailSubject"] == "Pricing"
    assert body["senderEmail"] == "buyer@example.com"
    assert body["emailContent"] == "How much for 10 seats?"


@pytest.mark.asyncio
async def test_generator_without_text_fails(silent_logger):
    generator = ReplyGenerator(BASE, "service-key", logger=silent_logger)
    with aioresponses() as m:
        m.post(GENERATE_URL, status=200, payload={"response": ""})
        with pytest.raises(ReplyGenerationError):
            await generator.generate("tenant-1", make_lead(), AutoReplySettings())


@pytest.mark.asyncio
async def test_sender_builds_reply(silent_logger):
    sender = ReplySender(BASE, "service-key", logger=silent_logger)
    with aioresponses() as m:
        m.post(SEND_URL, status=200, payload={"success": True, "messageId": "gm-1"})

        message_id = await sender.send("tenant-1", make_lead(), "Hello", "access-1")

        request = m.requests[("POST", URL(SEND_URL))][0]
    assert message_id == "gm-1"
    assert request.kwargs["headers"]["X-Google-Token"] == "access-1"
    assert request.kwargs["json"]["subject"] == "Re: Pricing"
    assert request.kwargs["json"]["recipientEmail"] == "buyer@example.com"
    assert request.kwargs["json"]["leadId"] == "lead-1"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,code,reauth",
    [(401, "send_credential_expired", True), (403, "send_scope_denied", True), (500, "reply_send_failed", False)],
)
async def test_sender_errors(silent_logger, status, code, reauth):
    sender = ReplySender(BASE, "service-key", logger=silent_logger)
    with aioresponses() as m:
        m.post(SEND_URL, status=status, payload={"error": "nope"})
        with pytest.raises(ReplySendError) as excinfo:
            await sender.send("tenant-1", make_lead(), "Hello", "access-1")
    assert excinfo.value.code == code
    assert excinfo.value.reauth_required is reauth
