"""
Tenant Scope Module

Carries the tenant and optional branch of the caller through the engine.
Tenant resolution (subscriptions, users, branches) happens outside; here the
identifiers are opaque and only stamped onto new loans, from which payments
and journals inherit them.
"""

import contextvars
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional


DEFAULT_TENANT = "default"


@dataclass(frozen=True)
class TenantScope:
    """Opaque tenant/branch pair"""
    tenant_id: str
    branch_id: Optional[str] = None


# Thread-local tenant context using contextvars
_current_scope = contextvars.ContextVar('current_tenant_scope', default=None)


def get_current_scope() -> TenantScope:
    """Get the scope for this context, falling back to the default tenant"""
    scope = _current_scope.get()
    if scope is None:
        return TenantScope(DEFAULT_TENANT)
    return scope


def get_current_tenant() -> Optional[str]:
    """Get the current tenant ID for this context, if one was set"""
    scope = _current_scope.get()
    return scope.tenant_id if scope else None


def set_current_scope(tenant_id: str, branch_id: Optional[str] = None) -> None:
    """Set the current tenant scope for this context"""
    _current_scope.set(TenantScope(tenant_id, branch_id))


@contextmanager
def tenant_context(tenant_id: str, branch_id: Optional[str] = None):
    """Context manager for temporary tenant switching"""
    token = _current_scope.set(TenantScope(tenant_id, branch_id))
    try:
        yield
    finally:
        _current_scope.reset(token)
