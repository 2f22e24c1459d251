"""SQLite backed tenant store used by the sync orchestrator."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import aiosqlite

from .models import (
    AutoReplySettings,
    Lead,
    TenantSyncProfile,
    format_timestamp,
    utc_now,
)


class Persistence:
    """Helper class responsible for reading and writing tenant state."""

    def __init__(self, db_path: str = "/data/lead_autosync.db"):
        """Persist data to the given database path (``:memory:`` allowed)."""
        self.db_path = db_path or ":memory:"

    async def init_db(self) -> None:
        """Create (or migrate) the database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS profiles (
                    id TEXT PRIMARY KEY,
                    email TEXT,
                    refresh_credential TEXT,
                    auto_sync_enabled INTEGER NOT NULL DEFAULT 0,
                    last_auto_sync TEXT,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS leads (
                    id TEXT NOT NULL,
                    tenant_id TEXT NOT NULL,
                    sender_email TEXT,
                    subject TEXT,
                    status TEXT NOT NULL DEFAULT 'unclassified',
                    answered INTEGER NOT NULL DEFAULT 0,
                    auto_replied INTEGER NOT NULL DEFAULT 0,
                    received_at TEXT,
                    content TEXT,
                    confidence INTEGER,
                    responded_at TEXT,
                    responded_ts INTEGER,
                    reply_message_id TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (tenant_id, id)
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_leads_replied ON leads(tenant_id, auto_replied, responded_ts)"
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS tenant_settings (
                    tenant_id TEXT PRIMARY KEY,
                    settings TEXT NOT NULL,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_leases (
                    tenant_id TEXT PRIMARY KEY,
                    holder TEXT NOT NULL,
                    expires_ts INTEGER NOT NULL
                )
                """
            )
            await db.commit()

    # Profiles -----------------------------------------------------------------
    async def add_profile(self, profile: Dict[str, Any]) -> None:
        """Insert or overwrite a tenant sync profile.

        Enabling auto-sync without a refresh credential is rejected with ``ValueError``.
        """
        enabled = bool(profile.get("auto_sync_enabled", False))
        credential = profile.get("refresh_credential")
        if enabled and not credential:
            raise ValueError("auto_sync_enabled requires a refresh credential")
        last_sync = profile.get("last_auto_sync")
        if isinstance(last_sync, datetime):
            last_sync = format_timestamp(last_sync)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO profiles (id, email, refresh_credential, auto_sync_enabled, last_auto_sync)
                VALUES (?, ?, ?, ?, ?)
                """,
                (profile["id"], profile.get("email"), credential, 1 if enabled else 0, last_sync),
            )
            await db.commit()

    async def _fetch_profiles(self, query: str, params: Iterable[Any] = ()) -> List[TenantSyncProfile]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, tuple(params)) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [TenantSyncProfile.from_row(dict(zip(cols, row))) for row in rows]

    async def get_profile(self, tenant_id: str) -> Optional[TenantSyncProfile]:
        """Return the profile for ``tenant_id`` or ``None``."""
        profiles = await self._fetch_profiles(
            "SELECT id, email, refresh_credential, auto_sync_enabled, last_auto_sync FROM profiles WHERE id = ?",
            (tenant_id,),
        )
        return profiles[0] if profiles else None

    async def list_profiles(self) -> List[TenantSyncProfile]:
        """Return every known profile ordered by id."""
        return await self._fetch_profiles(
            "SELECT id, email, refresh_credential, auto_sync_enabled, last_auto_sync FROM profiles ORDER BY id"
        )

    async def list_sync_profiles(self) -> List[TenantSyncProfile]:
        """Return profiles opted into auto-sync that still hold a credential."""
        return await self._fetch_profiles(
            """
            SELECT id, email, refresh_credential, auto_sync_enabled, last_auto_sync
            FROM profiles
            WHERE auto_sync_enabled = 1 AND refresh_credential IS NOT NULL
            ORDER BY id
            """
        )

    async def set_auto_sync_enabled(self, tenant_id: str, enabled: bool) -> bool:
        """Flip the auto-sync switch. Returns ``True`` when a row changed."""
        async with aiosqlite.connect(self.db_path) as db:
            if enabled:
                cur = await db.execute(
                    """
                    UPDATE profiles SET auto_sync_enabled = 1, updated_at = CURRENT_TIMESTAMP
                    WHERE id = ? AND refresh_credential IS NOT NULL
                    """,
                    (tenant_id,),
                )
            else:
                cur = await db.execute(
                    "UPDATE profiles SET auto_sync_enabled = 0, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    (tenant_id,),
                )
            await db.commit()
            return cur.rowcount > 0

    async def disable_auto_sync(self, tenant_id: str) -> None:
        """Stop sweeping a tenant whose credential can no longer be refreshed."""
        await self.set_auto_sync_enabled(tenant_id, False)

    async def get_last_auto_sync(self, tenant_id: str) -> Optional[str]:
        """Return the raw completion marker (as stored) for ``tenant_id``."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT last_auto_sync FROM profiles WHERE id = ?", (tenant_id,)) as cur:
                row = await cur.fetchone()
        return row[0] if row else None

    async def mark_synced(self, tenant_id: str, synced_at: datetime, previous: Optional[str]) -> bool:
        """Advance the completion marker only if it still equals ``previous``.

        Returns ``False`` when another writer moved the marker in between.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute(
                """
                UPDATE profiles SET last_auto_sync = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND last_auto_sync IS ?
                """,
                (format_timestamp(synced_at), tenant_id, previous),
            )
            await db.commit()
            return cur.rowcount > 0

    # Leases -------------------------------------------------------------------
    async def acquire_lease(self, tenant_id: str, holder: str, now_ts: int, ttl_seconds: int) -> bool:
        """Take the per-tenant sync lease unless a live one is held by someone else."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO sync_leases (tenant_id, holder, expires_ts) VALUES (?, ?, ?)
                ON CONFLICT(tenant_id) DO UPDATE SET holder = excluded.holder, expires_ts = excluded.expires_ts
                WHERE sync_leases.expires_ts <= ?
                """,
                (tenant_id, holder, now_ts + int(ttl_seconds), now_ts),
            )
            await db.commit()
            async with db.execute("SELECT holder FROM sync_leases WHERE tenant_id = ?", (tenant_id,)) as cur:
                row = await cur.fetchone()
        return bool(row) and row[0] == holder

    async def release_lease(self, tenant_id: str, holder: str) -> None:
        """Drop the lease if it is still ours."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM sync_leases WHERE tenant_id = ? AND holder = ?", (tenant_id, holder))
            await db.commit()

    # Leads --------------------------------------------------------------------
    async def record_leads(self, tenant_id: str, leads: Iterable[Lead]) -> int:
        """Mirror newly ingested leads. Existing rows keep their reply flags."""
        rows = [
            (
                lead.id,
                tenant_id,
                lead.sender_address,
                lead.subject,
                lead.priority_status.value,
                1 if lead.answered else 0,
                1 if lead.auto_replied else 0,
                format_timestamp(lead.received_at),
                lead.content,
                lead.confidence,
            )
            for lead in leads
        ]
        if not rows:
            return 0
        async with aiosqlite.connect(self.db_path) as db:
            before = db.total_changes
            await db.executemany(
                """
                INSERT OR IGNORE INTO leads
                (id, tenant_id, sender_email, subject, status, answered, auto_replied, received_at, content, confidence)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            await db.commit()
            return db.total_changes - before

    async def _fetch_leads(self, query: str, params: Iterable[Any]) -> List[Lead]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, tuple(params)) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [Lead.from_dict(dict(zip(cols, row))) for row in rows]

    async def get_lead(self, tenant_id: str, lead_id: str) -> Optional[Lead]:
        leads = await self._fetch_leads("SELECT * FROM leads WHERE tenant_id = ? AND id = ?", (tenant_id, lead_id))
        return leads[0] if leads else None

    async def list_leads(self, tenant_id: str, unanswered_only: bool = False) -> List[Lead]:
        """Return a tenant's leads, newest first."""
        query = "SELECT * FROM leads WHERE tenant_id = ?"
        if unanswered_only:
            query += " AND answered = 0"
        query += " ORDER BY received_at DESC"
        return await self._fetch_leads(query, (tenant_id,))

    async def list_reply_candidates(self, tenant_id: str, since: Optional[datetime] = None) -> List[Lead]:
        """Hot and warm leads nobody has answered yet, oldest first.

        Leads whose reply failed earlier stay here until a later pass answers
        them. ``since`` bounds ``received_at``; leads without one always match.
        """
        query = """
            SELECT * FROM leads
            WHERE tenant_id = ? AND status IN ('hot', 'warm') AND answered = 0 AND auto_replied = 0
        """
        params: List[Any] = [tenant_id]
        if since is not None:
            query += " AND (received_at IS NULL OR received_at >= ?)"
            params.append(format_timestamp(since))
        query += " ORDER BY received_at"
        return await self._fetch_leads(query, params)

    async def is_auto_replied(self, tenant_id: str, lead_id: str) -> bool:
        """Durable source of truth for "already replied"."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT auto_replied FROM leads WHERE tenant_id = ? AND id = ?", (tenant_id, lead_id)
            ) as cur:
                row = await cur.fetchone()
        return bool(row and row[0])

    async def mark_lead_auto_replied(
        self,
        tenant_id: str,
        lead_id: str,
        responded_at: datetime,
        reply_message_id: Optional[str] = None,
    ) -> bool:
        """Flag a lead as answered by an automatic reply.

        The update only matches rows that are not auto-replied yet, so a second
        writer gets ``False`` instead of silently overwriting the first reply.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute(
                """
                UPDATE leads
                SET answered = 1, auto_replied = 1, responded_at = ?, responded_ts = ?, reply_message_id = ?
                WHERE tenant_id = ? AND id = ? AND auto_replied = 0
                """,
                (
                    format_timestamp(responded_at),
                    int(responded_at.timestamp()),
                    reply_message_id,
                    tenant_id,
                    lead_id,
                ),
            )
            await db.commit()
            return cur.rowcount > 0

    async def mark_lead_answered(self, tenant_id: str, lead_id: str, responded_at: Optional[datetime] = None) -> bool:
        """Record a manual reply. ``auto_replied`` is left untouched."""
        responded_at = responded_at or utc_now()
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute(
                """
                UPDATE leads SET answered = 1, responded_at = COALESCE(responded_at, ?)
                WHERE tenant_id = ? AND id = ?
                """,
                (format_timestamp(responded_at), tenant_id, lead_id),
            )
            await db.commit()
            return cur.rowcount > 0

    async def count_auto_replies_since(self, tenant_id: str, since_ts: int) -> int:
        """Count automatic replies recorded for a tenant since ``since_ts``."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT COUNT(*) FROM leads WHERE tenant_id = ? AND auto_replied = 1 AND responded_ts >= ?",
                (tenant_id, since_ts),
            ) as cur:
                row = await cur.fetchone()
        return int(row[0]) if row else 0

    # Settings -----------------------------------------------------------------
    async def get_auto_reply_settings(self, tenant_id: str) -> AutoReplySettings:
        """Return the tenant's auto-reply settings, defaults when unset."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT settings FROM tenant_settings WHERE tenant_id = ?", (tenant_id,)) as cur:
                row = await cur.fetchone()
        if not row:
            return AutoReplySettings()
        data = json.loads(row[0])
        return AutoReplySettings.model_validate(data.get("autoReply") or {})

    async def save_auto_reply_settings(self, tenant_id: str, settings: AutoReplySettings) -> None:
        """Persist auto-reply settings, keeping unrelated keys of the blob."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT settings FROM tenant_settings WHERE tenant_id = ?", (tenant_id,)) as cur:
                row = await cur.fetchone()
            blob = json.loads(row[0]) if row else {}
            blob["autoReply"] = settings.model_dump(by_alias=True)
            await db.execute(
                """
                INSERT INTO tenant_settings (tenant_id, settings) VALUES (?, ?)
                ON CONFLICT(tenant_id) DO UPDATE SET settings = excluded.settings, updated_at = CURRENT_TIMESTAMP
                """,
                (tenant_id, json.dumps(blob)),
            )
            await db.commit()
