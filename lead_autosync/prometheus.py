"""Prometheus metrics exposed by the sync orchestrator."""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class SyncMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.sweeps = Counter("las_sweeps_total", "Total sweeps executed", registry=self.registry)
        self.tenant_syncs = Counter(
            "las_tenant_sync_total", "Tenant sync attempts", ["tenant_id", "status"], registry=self.registry
        )
        self.new_leads = Counter("las_new_leads_total", "Leads ingested", ["tenant_id"], registry=self.registry)
        self.auto_replies = Counter(
            "las_auto_replies_total", "Automatic reply attempts", ["tenant_id", "status"], registry=self.registry
        )
        self.credential_revoked = Counter(
            "las_credential_revoked_total", "Refresh credentials found revoked", ["tenant_id"], registry=self.registry
        )
        self.last_sweep_duration = Gauge(
            "las_last_sweep_duration_seconds", "Duration of the last sweep", registry=self.registry
        )

    def inc_sweep(self):
        self.sweeps.inc()

    def inc_tenant_sync(self, tenant_id: str, success: bool):
        """Count one tenant pass as ``success`` or ``failed``."""
        status = "success" if success else "failed"
        self.tenant_syncs.labels(tenant_id=tenant_id or "default", status=status).inc()

    def inc_new_leads(self, tenant_id: str, count: int):
        if count > 0:
            self.new_leads.labels(tenant_id=tenant_id or "default").inc(count)

    def inc_auto_reply(self, tenant_id: str, status: str):
        """Count an automatic reply as ``sent``, ``failed`` or ``skipped``."""
        self.auto_replies.labels(tenant_id=tenant_id or "default", status=status).inc()

    def inc_credential_revoked(self, tenant_id: str):
        self.credential_revoked.labels(tenant_id=tenant_id or "default").inc()

    def set_sweep_duration(self, seconds: float):
        """Update the gauge tracking the last sweep duration."""
        self.last_sweep_duration.set(seconds)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
