"""Records exchanged between the sweep, the collaborators and the store.

Models:
    - TenantSyncProfile: one row of the tenant profile table
    - Lead: a message-derived lead returned by the ingestion collaborator
    - AccessCredential: short-lived access token from the refresh grant
    - AutoReplySettings: per-tenant auto-reply configuration (validated)
    - LeadReplyResult / AutoReplySummary: outcome of one auto-reply pass
    - MailboxSyncResult: response of the ingestion collaborator
    - SyncOutcome / SweepSummary: per-tenant and per-sweep reporting
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Coerce ISO strings, epoch numbers or datetimes into aware UTC datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialise a datetime the way the store keeps it (ISO-8601, ``Z`` suffix)."""
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class PriorityStatus(str, Enum):
    """Classification assigned to a lead by the ingestion collaborator."""

    UNCLASSIFIED = "unclassified"
    HOT = "hot"
    WARM = "warm"
    COLD = "cold"

    @classmethod
    def coerce(cls, value: Any) -> "PriorityStatus":
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.UNCLASSIFIED


AUTO_REPLY_PRIORITIES = frozenset({PriorityStatus.HOT, PriorityStatus.WARM})


@dataclass
class TenantSyncProfile:
    """Sync profile of a single tenant."""

    id: str
    provider_refresh_credential: Optional[str] = None
    auto_sync_enabled: bool = False
    last_auto_sync_at: Optional[datetime] = None
    email: Optional[str] = None

    @property
    def label(self) -> str:
        """Identifier used in log lines."""
        return self.email or self.id

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TenantSyncProfile":
        return cls(
            id=row["id"],
            provider_refresh_credential=row.get("refresh_credential"),
            auto_sync_enabled=bool(row.get("auto_sync_enabled")),
            last_auto_sync_at=parse_timestamp(row.get("last_auto_sync")),
            email=row.get("email"),
        )


@dataclass
class Lead:
    """A lead created by the ingestion collaborator."""

    id: str
    sender_address: str
    subject: str = ""
    priority_status: PriorityStatus = PriorityStatus.UNCLASSIFIED
    answered: bool = False
    auto_replied: bool = False
    received_at: Optional[datetime] = None
    content: str = ""
    confidence: Optional[int] = None
    responded_at: Optional[datetime] = None
    reply_message_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Lead":
        """Build a lead from the collaborator's JSON or a store row."""
        confidence = data.get("confidence", data.get("ai_confidence"))
        return cls(
            id=str(data["id"]),
            sender_address=data.get("sender_email") or data.get("sender_address") or "",
            subject=data.get("subject") or "",
            priority_status=PriorityStatus.coerce(data.get("status", data.get("priority_status"))),
            answered=bool(data.get("answered")),
            auto_replied=bool(data.get("auto_replied")),
            received_at=parse_timestamp(data.get("received_at")),
            content=data.get("full_content") or data.get("content") or data.get("snippet") or "",
            confidence=int(confidence) if confidence is not None else None,
            responded_at=parse_timestamp(data.get("responded_at")),
            reply_message_id=data.get("gmail_reply_id") or data.get("reply_message_id"),
        )


@dataclass(frozen=True)
class AccessCredential:
    """Short-lived access token returned by the refresh grant."""

    access_token: str
    expires_at: Optional[datetime] = None
    token_type: Optional[str] = None


class AutoReplySettings(BaseModel):
    """Per-tenant auto-reply configuration.

    Attributes:
        enabled: Master switch for automatic replies.
        tone: Voice of the generated reply.
        length: Target reply length.
        writing_style: Free-form style hint forwarded to the generator.
        confidence_threshold: Minimum classification confidence (0-100).
        business_hours_only: Only reply during business hours.
        max_daily_replies: Cap on automatic replies per rolling 24 hours.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    enabled: bool = False
    tone: Literal["professional", "friendly", "casual"] = "professional"
    length: Literal["short", "medium", "detailed"] = "medium"
    writing_style: Annotated[str, Field(default="business", alias="writingStyle")]
    confidence_threshold: Annotated[int, Field(default=80, ge=0, le=100, alias="confidenceThreshold")]
    business_hours_only: Annotated[bool, Field(default=True, alias="businessHoursOnly")]
    max_daily_replies: Annotated[int, Field(default=50, ge=0, alias="maxDailyReplies")]


@dataclass
class LeadReplyResult:
    """Outcome of a single auto-reply attempt."""

    lead_id: str
    success: bool
    error: Optional[str] = None
    error_code: Optional[str] = None
    reauth_required: bool = False
    reply_message_id: Optional[str] = None


@dataclass
class AutoReplySummary:
    """Aggregate of one auto-reply pass for a tenant."""

    tenant_id: str
    results: List[LeadReplyResult] = field(default_factory=list)
    skipped: int = 0

    @property
    def sent(self) -> int:
        return sum(1 for item in self.results if item.success)

    @property
    def failed(self) -> int:
        return sum(1 for item in self.results if not item.success)


@dataclass
class MailboxSyncResult:
    """Response of the ingestion collaborator."""

    new_leads: List[Lead] = field(default_factory=list)
    new_lead_count: int = 0
    total_emails: int = 0

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "MailboxSyncResult":
        raw_leads = data.get("new_leads_data") or []
        leads = [Lead.from_dict(item) for item in raw_leads if isinstance(item, dict)]
        count = data.get("new_leads", data.get("count"))
        return cls(
            new_leads=leads,
            new_lead_count=int(count) if count is not None else len(leads),
            total_emails=int(data.get("total_new_emails") or 0),
        )


@dataclass
class SyncOutcome:
    """Per-tenant result of a sweep. Never persisted."""

    tenant_id: str
    success: bool
    new_lead_count: int = 0
    total_emails: int = 0
    error: Optional[str] = None
    error_code: Optional[str] = None
    reauth_required: bool = False
    credential_revoked: bool = False
    replies: Optional[AutoReplySummary] = None

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "tenant_id": self.tenant_id,
            "success": self.success,
            "new_leads": self.new_lead_count,
            "total_emails": self.total_emails,
        }
        if not self.success:
            data.update(error=self.error, error_code=self.error_code, reauth_required=self.reauth_required)
        if self.replies is not None:
            data["auto_replies"] = {
                "sent": self.replies.sent,
                "failed": self.replies.failed,
                "skipped": self.replies.skipped,
            }
        return data


@dataclass
class SweepSummary:
    """Aggregate counts reported at the end of a sweep."""

    message: str
    timestamp: datetime
    execution_time_ms: int = 0
    outcomes: List[SyncOutcome] = field(default_factory=list)

    @property
    def users_processed(self) -> int:
        return len(self.outcomes)

    @property
    def successful(self) -> int:
        return sum(1 for item in self.outcomes if item.success)

    @property
    def failed(self) -> int:
        return sum(1 for item in self.outcomes if not item.success)

    @property
    def total_new_leads(self) -> int:
        return sum(item.new_lead_count for item in self.outcomes if item.success)

    def as_dict(self) -> Dict[str, Any]:
        """Return the summary in the shape exposed by the HTTP API."""
        return {
            "success": True,
            "message": self.message,
            "users_processed": self.users_processed,
            "successful": self.successful,
            "failed": self.failed,
            "total_new_leads": self.total_new_leads,
            "execution_time_ms": self.execution_time_ms,
            "timestamp": format_timestamp(self.timestamp),
            "failures": [
                {"tenant_id": item.tenant_id, "error": item.error, "error_code": item.error_code}
                for item in self.outcomes
                if not item.success
            ],
        }
