"""Transport helpers for the ingestion, response-generation and send collaborators.

All three collaborators are HTTP functions living under one base URL and
authorised with the service key. Their internals (classification, prompt
building, provider wire format) are out of scope; only the request/response
contract is encoded here.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Optional, Tuple

import aiohttp

from .errors import (
    MailboxSyncError,
    ReauthenticationRequired,
    ReplyGenerationError,
    ReplySendError,
)
from .logger import get_logger
from .models import AutoReplySettings, Lead, MailboxSyncResult

JsonDict = Dict[str, Any]

# Lookback choices offered to a manual trigger; the sweep always uses 1 day.
MANUAL_LOOKBACK_DAYS = (1, 3, 7, 30)
AUTO_SYNC_LOOKBACK_DAYS = 1

PROVIDER_TOKEN_HEADER = "X-Google-Token"


class FunctionsClient:
    """Base class posting JSON to a named collaborator function."""

    function_name = ""

    def __init__(self, base_url: str, service_key: str, *, timeout: float = 30.0, logger=None):
        self.base_url = base_url
        self.service_key = service_key
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self.logger = logger or get_logger("LeadAutoSync.fetcher")

    def _endpoint(self, suffix: Optional[str] = None) -> str:
        """Build the full URL for the given function name."""
        base = self.base_url.rstrip("/")
        return f"{base}/{(suffix or self.function_name).lstrip('/')}"

    async def _post(self, payload: JsonDict, access_token: Optional[str] = None) -> Tuple[int, str]:
        headers = {"Authorization": f"Bearer {self.service_key}"}
        if access_token:
            headers[PROVIDER_TOKEN_HEADER] = access_token
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            async with session.post(self._endpoint(), json=payload, headers=headers) as resp:
                return resp.status, await resp.text()

    @staticmethod
    def _decode(body: str) -> JsonDict:
        try:
            data = json.loads(body) if body else {}
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}


class MailboxSyncClient(FunctionsClient):
    """Ask the ingestion collaborator for the tenant's newly created leads."""

    function_name = "fetch-gmail-leads"

    async def fetch_new_leads(
        self,
        tenant_id: str,
        access_token: str,
        period_days: int = AUTO_SYNC_LOOKBACK_DAYS,
    ) -> MailboxSyncResult:
        """Return the leads created by this ingestion pass, already classified.

        Raises:
            ReauthenticationRequired: the access credential was rejected (401).
            MailboxSyncError: any other failure, transient for the tenant.
        """
        try:
            status, body = await self._post({"period": int(period_days), "user_id": tenant_id}, access_token)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise MailboxSyncError(f"Mailbox sync unreachable: {exc}") from exc
        if status == 401:
            raise ReauthenticationRequired("Mailbox access expired. Please sign in again.", status=status)
        if status >= 400:
            self.logger.warning("Mailbox sync failed for tenant %s (%s): %s", tenant_id, status, body[:200])
            raise MailboxSyncError(f"Mailbox sync failed: {status} - {body[:200]}", status=status)
        try:
            data = json.loads(body)
        except ValueError as exc:
            raise MailboxSyncError(f"Mailbox sync returned malformed JSON: {body[:200]}", status=status) from exc
        if not isinstance(data, dict):
            raise MailboxSyncError("Mailbox sync returned an unexpected payload", status=status)
        return MailboxSyncResult.from_payload(data)


class ReplyGenerator(FunctionsClient):
    """Generate the body of an automatic reply."""

    function_name = "generate-ai-response"

    async def generate(self, tenant_id: str, lead: Lead, settings: AutoReplySettings) -> str:
        payload = {
            "emailContent": lead.content or lead.subject,
            "emailSubject": lead.subject,
            "senderEmail": lead.sender_address,
            "tone": settings.tone,
            "length": settings.length,
            "writingStyle": settings.writing_style,
            "user_id": tenant_id,
        }
        try:
            status, body = await self._post(payload)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ReplyGenerationError(f"Response generator unreachable: {exc}") from exc
        if status >= 400:
            raise ReplyGenerationError(f"Response generation failed: {status}", status=status)
        text = self._decode(body).get("response")
        if not isinstance(text, str) or not text.strip():
            raise ReplyGenerationError("Response generator returned no text", status=status)
        return text


class ReplySender(FunctionsClient):
    """Send a reply through the tenant's mailbox."""

    function_name = "send-email-reply"

    async def send(self, tenant_id: str, lead: Lead, body_text: str, access_token: str) -> Optional[str]:
        """Send the reply and return the provider message id when reported.

        Raises:
            ReplySendError: with ``reauth_required`` set for 401 and 403.
        """
        payload = {
            "leadId": lead.id,
            "recipientEmail": lead.sender_address,
            "subject": f"Re: {lead.subject}",
            "body": body_text,
            "user_id": tenant_id,
        }
        try:
            status, body = await self._post(payload, access_token)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ReplySendError(f"Send collaborator unreachable: {exc}") from exc
        if status == 401:
            raise ReplySendError("Mailbox credential expired. Please sign in again.", status=status)
        if status == 403:
            raise ReplySendError("Send permission denied. Please grant send access and sign in again.", status=status)
        if status >= 400:
            raise ReplySendError(f"Failed to send reply: {status}", status=status)
        return self._decode(body).get("messageId")
