"""Exception hierarchy shared by the sweep and the client reconciliation loop.

Every error carries a short machine readable ``code`` and a ``reauth_required``
flag. The flag is what the client path uses to decide between prompting the
user to sign in again and a silent background retry.
"""

from __future__ import annotations

from typing import Optional


class LeadSyncError(RuntimeError):
    """Base class for orchestrator failures."""

    code = "sync_error"
    reauth_required = False

    def __init__(self, message: str, *, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ConfigurationError(LeadSyncError):
    """Raised at startup when required settings are missing."""

    code = "missing_configuration"

    def __init__(self, missing: list[str]):
        super().__init__(f"Missing required configuration: {', '.join(missing)}")
        self.missing = list(missing)


class CredentialRefreshError(LeadSyncError):
    """Transient refresh failure: network error, 5xx or malformed response."""

    code = "credential_refresh_failed"


class CredentialRevokedError(CredentialRefreshError):
    """The refresh credential can never succeed again without re-authentication."""

    code = "credential_revoked"
    reauth_required = True

    def __init__(self, message: str, *, provider_error: str = "invalid_grant", status: Optional[int] = None):
        super().__init__(message, status=status)
        self.provider_error = provider_error


class MailboxSyncError(LeadSyncError):
    """The ingestion collaborator failed for this tenant."""

    code = "mailbox_sync_failed"


class ReauthenticationRequired(MailboxSyncError):
    """The access credential was rejected by the ingestion collaborator."""

    code = "reauthentication_required"
    reauth_required = True


class ReplyGenerationError(LeadSyncError):
    """The response-generation collaborator did not return a reply."""

    code = "reply_generation_failed"


class ReplySendError(LeadSyncError):
    """The send collaborator rejected or failed to deliver the reply.

    401 (expired credential) and 403 (send scope denied) require the user to
    authenticate again; anything else is a plain transient failure.
    """

    code = "reply_send_failed"

    def __init__(self, message: str, *, status: Optional[int] = None):
        super().__init__(message, status=status)
        self.reauth_required = status in (401, 403)
        if status == 401:
            self.code = "send_credential_expired"
        elif status == 403:
            self.code = "send_scope_denied"


class TenantBusyError(LeadSyncError):
    """Another sweep currently holds the tenant's lease."""

    code = "sync_in_progress"

    def __init__(self, tenant_id: str):
        super().__init__("sync already in progress")
        self.tenant_id = tenant_id
