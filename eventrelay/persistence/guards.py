from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class TenantPredicateError(RuntimeError):
    message: str

    def __str__(self) -> str:
        return self.message


def require_tenant_id(tenant_id: str | None) -> str:
    # Every registry/store query is tenant-scoped; an empty tenant is a caller bug.
    if not tenant_id or not str(tenant_id).strip():
        raise TenantPredicateError("Tenant predicate required but tenant_id is missing")
    return str(tenant_id)


def tenant_predicate(model, tenant_id: str) -> object:
    return model.tenant_id == require_tenant_id(tenant_id)
