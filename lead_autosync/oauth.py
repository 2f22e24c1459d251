"""OAuth2 refresh-token grant against the mail provider's token endpoint."""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from typing import Any, Dict, Optional

import aiohttp

from .config import GOOGLE_TOKEN_URL
from .errors import CredentialRefreshError, CredentialRevokedError
from .logger import get_logger
from .models import AccessCredential, utc_now

# Provider error codes meaning the refresh credential itself is dead.
FATAL_GRANT_ERRORS = frozenset({"invalid_grant", "unauthorized_client"})


def _parse_error_code(body: str) -> Optional[str]:
    """Extract the OAuth ``error`` code from a response body, if any."""
    try:
        data = json.loads(body)
    except (TypeError, ValueError):
        return None
    if isinstance(data, dict):
        code = data.get("error")
        if isinstance(code, str):
            return code
    return None


class CredentialRefresher:
    """Exchange a long-lived refresh credential for a short-lived access token."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        token_url: str = GOOGLE_TOKEN_URL,
        *,
        timeout: float = 30.0,
        logger=None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self.logger = logger or get_logger("LeadAutoSync.oauth")

    def _form(self, refresh_credential: str) -> Dict[str, str]:
        return {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_credential,
            "grant_type": "refresh_token",
        }

    async def refresh(self, refresh_credential: str) -> AccessCredential:
        """Return a fresh access credential.

        Raises:
            CredentialRevokedError: the provider reported the grant as revoked
                or expired; the caller must stop using this credential.
            CredentialRefreshError: any other failure; safe to retry later.
        """
        if not refresh_credential:
            raise CredentialRevokedError("No refresh credential stored", provider_error="missing_credential")
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(self.token_url, data=self._form(refresh_credential)) as resp:
                    body = await resp.text()
                    status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise CredentialRefreshError(f"Token endpoint unreachable: {exc}") from exc

        if status >= 400:
            error_code = _parse_error_code(body)
            if error_code in FATAL_GRANT_ERRORS:
                self.logger.error("Refresh token rejected (%s): user needs to re-authenticate", error_code)
                raise CredentialRevokedError(
                    f"Refresh credential rejected: {error_code}", provider_error=error_code, status=status
                )
            self.logger.warning("Failed to refresh access token (%s): %s", status, body[:200])
            raise CredentialRefreshError(f"Token refresh failed: {status} {error_code or ''}".strip(), status=status)

        try:
            payload: Dict[str, Any] = json.loads(body)
        except ValueError as exc:
            raise CredentialRefreshError("Token endpoint returned invalid JSON", status=status) from exc
        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not token:
            raise CredentialRefreshError("Token endpoint response has no access_token", status=status)

        expires_in = payload.get("expires_in")
        expires_at = utc_now() + timedelta(seconds=int(expires_in)) if isinstance(expires_in, (int, float)) else None
        self.logger.debug("Access token refreshed")
        return AccessCredential(access_token=token, expires_at=expires_at, token_type=payload.get("token_type"))
