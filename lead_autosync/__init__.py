"""Scheduled mailbox sync and auto-reply orchestrator for lead inboxes.

This package keeps every opted-in tenant's mailbox in sync with the lead
store and answers hot and warm leads automatically, exactly once. Features:

- Staleness-based tenant selection for each scheduled sweep
- OAuth refresh-token handling with automatic disabling of revoked grants
- Bounded-concurrency batches with per-tenant failure isolation
- At-most-once auto replies guarded by a tenant-scoped dedup cache and a
  conditional update on the durable ``auto_replied`` flag
- A per-session reconciliation loop for interactive clients
- Prometheus metrics, a FastAPI control surface and a click CLI

Example:
    Run a single sweep::

        from lead_autosync.config import load_settings
        from lead_autosync.core import SyncOrchestrator

        orchestrator = SyncOrchestrator.from_settings(load_settings().validate())
        await orchestrator.init()
        summary = await orchestrator.sweep()
"""
