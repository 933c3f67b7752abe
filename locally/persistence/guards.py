from __future__ import annotations

from locally.core.config import get_settings
from locally.core.diagnostics import Diagnostics, ErrorKind
from locally.core.errors import DiagnosticsError


TENANT_REQUIRED = "tenant_required"


class TenantPredicateError(DiagnosticsError):
    """A tenant-scoped read or write was attempted without a tenant id."""

    def __init__(self, scope: str) -> None:
        diag = Diagnostics(scope)
        diag.add_error(
            TENANT_REQUIRED,
            f"tenant id is required to query {scope}",
            "persistence",
            {"scope": scope},
            kind=ErrorKind.INPUT,
        )
        super().__init__(diag)
        self.scope = scope


def require_tenant_id(tenant_id: str | None, *, scope: str) -> str:
    # Blank ids would silently match nothing; refuse them unless the guard is disabled.
    if get_settings().authz_require_tenant_predicate and (not tenant_id or not tenant_id.strip()):
        raise TenantPredicateError(scope)
    return tenant_id or ""


def tenant_predicate(model, tenant_id: str | None) -> object:
    return model.tenant_id == require_tenant_id(tenant_id, scope=model.__tablename__)
