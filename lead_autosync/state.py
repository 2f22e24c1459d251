"""Per-tenant lifecycle state owned by a single registry."""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Mapping

from .logger import get_logger


class TenantState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    REPLYING = "replying"
    DISABLED = "disabled"


_ALLOWED: Mapping[TenantState, FrozenSet[TenantState]] = {
    TenantState.IDLE: frozenset({TenantState.SYNCING, TenantState.DISABLED}),
    TenantState.SYNCING: frozenset({TenantState.REPLYING, TenantState.IDLE, TenantState.DISABLED}),
    TenantState.REPLYING: frozenset({TenantState.IDLE, TenantState.DISABLED}),
    TenantState.DISABLED: frozenset({TenantState.DISABLED}),
}


class InvalidTransition(RuntimeError):
    """Raised when a tenant is moved along an edge the lifecycle does not have."""

    def __init__(self, tenant_id: str, current: TenantState, target: TenantState):
        super().__init__(f"Tenant {tenant_id}: cannot move from {current.value} to {target.value}")
        self.tenant_id = tenant_id
        self.current = current
        self.target = target


class TenantStateRegistry:
    """Single owner of every tenant's lifecycle state.

    ``IDLE -> SYNCING -> REPLYING -> IDLE``; a pass with nothing to reply goes
    ``SYNCING -> IDLE``. ``DISABLED`` is reachable from any state and is left
    only through :meth:`reset`, i.e. when the tenant re-authenticates.
    """

    def __init__(self, logger=None):
        self._states: Dict[str, TenantState] = {}
        self.logger = logger or get_logger("LeadAutoSync.state")

    def get(self, tenant_id: str) -> TenantState:
        return self._states.get(tenant_id, TenantState.IDLE)

    def snapshot(self) -> Dict[str, str]:
        return {tenant_id: state.value for tenant_id, state in self._states.items()}

    def _move(self, tenant_id: str, target: TenantState) -> TenantState:
        current = self.get(tenant_id)
        if target not in _ALLOWED[current]:
            raise InvalidTransition(tenant_id, current, target)
        self._states[tenant_id] = target
        self.logger.debug("Tenant %s: %s -> %s", tenant_id, current.value, target.value)
        return target

    def begin_sync(self, tenant_id: str) -> TenantState:
        return self._move(tenant_id, TenantState.SYNCING)

    def begin_replies(self, tenant_id: str) -> TenantState:
        return self._move(tenant_id, TenantState.REPLYING)

    def finish(self, tenant_id: str) -> TenantState:
        return self._move(tenant_id, TenantState.IDLE)

    def disable(self, tenant_id: str) -> TenantState:
        return self._move(tenant_id, TenantState.DISABLED)

    def reset(self, tenant_id: str) -> None:
        """Forget the tenant's state, e.g. after re-authentication."""
        self._states.pop(tenant_id, None)
