"""
FastAPI application factory and HTTP schemas for the lead auto-sync service.

The module exposes a `create_app` function that builds the REST API used to
trigger sweeps and manage tenants. Authentication is enforced through a
configurable API token carried in the ``X-API-Token`` header.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .config import Settings
from .core import SyncOrchestrator
from .errors import ConfigurationError
from .models import AutoReplySettings

service: SyncOrchestrator | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    If a token has been configured through :func:`create_app` and a request
    provides either a missing or different value, a ``401`` error is raised.
    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class TenantPayload(BaseModel):
    """Tenant profile registered after the user connects a mailbox."""
    id: str
    email: Optional[str] = None
    refresh_credential: Optional[str] = None
    auto_sync_enabled: bool = False


class TenantInfo(BaseModel):
    """Stored tenant as returned by ``listTenants``. The credential is never exposed."""
    id: str
    email: Optional[str] = None
    auto_sync_enabled: bool
    has_credential: bool
    last_auto_sync: Optional[str] = None
    state: str


class TenantsResponse(CommandStatus):
    tenants: List[TenantInfo]


class AutoSyncPayload(BaseModel):
    enabled: bool


class AutoSyncResponse(CommandStatus):
    auto_sync_enabled: bool


class AutoReplyResponse(CommandStatus):
    settings: Dict[str, Any]


class FailureInfo(BaseModel):
    tenant_id: str
    error: Optional[str] = None
    error_code: Optional[str] = None


class SweepResponse(CommandStatus):
    """Aggregate counts of one sweep."""
    message: str
    users_processed: int
    successful: int
    failed: int
    total_new_leads: int
    execution_time_ms: int
    timestamp: Optional[str] = None
    failures: List[FailureInfo] = Field(default_factory=list)


class ReplyCounts(BaseModel):
    sent: int
    failed: int
    skipped: int


class SyncResponse(CommandStatus):
    """Outcome of a manual tenant sync."""
    tenant_id: str
    success: bool
    new_leads: int = 0
    total_emails: int = 0
    error_code: Optional[str] = None
    reauth_required: bool = False
    auto_replies: Optional[ReplyCounts] = None


class StatusResponse(CommandStatus):
    states: Dict[str, str] = Field(default_factory=dict)
    last_sweep: Optional[Dict[str, Any]] = None


def _require_service() -> SyncOrchestrator:
    if not service:
        raise HTTPException(500, "Service not initialized")
    return service


def create_app(
    svc: SyncOrchestrator,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`lead_autosync.core.SyncOrchestrator` that
        implements the business logic for each command.
    api_token:
        Optional secret used to protect every endpoint. When provided, the
        ``X-API-Token`` header must match this value on every request.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    global service
    service = svc

    api = FastAPI(title="Lead Auto-Sync", lifespan=lifespan)
    api.state.api_token = api_token
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])
    tenants = APIRouter(prefix="/tenants", tags=["tenants"], dependencies=[auth_dependency])

    @api.get("/status", response_model=StatusResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def get_status():
        """Return the health payload with per-tenant states and the last sweep."""
        result = await _require_service().handle_command("status", {})
        return StatusResponse.model_validate(result)

    @router.post("/sweep", response_model=SweepResponse, response_model_exclude_none=True)
    async def run_sweep():
        """Run one sweep over every due tenant and return its summary."""
        try:
            result = await _require_service().handle_command("sweep", {})
        except ConfigurationError as exc:
            raise HTTPException(
                status.HTTP_503_SERVICE_UNAVAILABLE, {"error": str(exc), "missing": exc.missing}
            ) from exc
        return SweepResponse.model_validate(result)

    @tenants.get("", response_model=TenantsResponse, response_model_exclude_none=True)
    async def list_tenants():
        """List the tenants known by the service."""
        result = await _require_service().handle_command("listTenants", {})
        return TenantsResponse.model_validate(result)

    @tenants.post("", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def add_tenant(payload: TenantPayload):
        """Register or re-authenticate a tenant profile."""
        result = await _require_service().handle_command("addTenant", payload.model_dump())
        if result.get("ok") is not True:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, result.get("error"))
        return BasicOkResponse.model_validate(result)

    @tenants.post("/{tenant_id}/sync", response_model=SyncResponse, response_model_exclude_none=True)
    async def sync_tenant(tenant_id: str, period: int = Query(1)):
        """Trigger a client sync for one tenant with the given lookback in days."""
        result = await _require_service().handle_command("syncTenant", {"id": tenant_id, "period": period})
        if result.get("not_found"):
            raise HTTPException(status.HTTP_404_NOT_FOUND, result.get("error"))
        if "tenant_id" not in result:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, result.get("error"))
        return SyncResponse.model_validate(result)

    @tenants.post("/{tenant_id}/auto-sync", response_model=AutoSyncResponse, response_model_exclude_none=True)
    async def set_auto_sync(tenant_id: str, payload: AutoSyncPayload):
        """Enable or disable the scheduled sweep for a tenant."""
        result = await _require_service().handle_command(
            "setAutoSync", {"id": tenant_id, "enabled": payload.enabled}
        )
        if result.get("ok") is not True:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, result.get("error"))
        return AutoSyncResponse.model_validate(result)

    @tenants.get("/{tenant_id}/auto-reply", response_model=AutoReplyResponse, response_model_exclude_none=True)
    async def get_auto_reply(tenant_id: str):
        result = await _require_service().handle_command("getAutoReply", {"id": tenant_id})
        return AutoReplyResponse.model_validate(result)

    @tenants.put("/{tenant_id}/auto-reply", response_model=AutoReplyResponse, response_model_exclude_none=True)
    async def put_auto_reply(tenant_id: str, settings: AutoReplySettings):
        """Replace the tenant's auto-reply settings."""
        result = await _require_service().handle_command(
            "setAutoReply", {"id": tenant_id, "settings": settings.model_dump(by_alias=True)}
        )
        return AutoReplyResponse.model_validate(result)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the orchestrator."""
        return Response(
            content=_require_service().metrics.generate_latest(), media_type="text/plain; version=0.0.4"
        )

    api.include_router(router)
    api.include_router(tenants)
    return api


def build_app(settings: Settings) -> FastAPI:
    """Build the orchestrator for ``settings`` and wrap it in the HTTP app."""
    orchestrator = SyncOrchestrator.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup: make sure the store schema exists
        await orchestrator.init()
        yield

    return create_app(orchestrator, api_token=settings.api_token, lifespan=lifespan)
