from __future__ import annotations

import hmac
from typing import AsyncGenerator

from fastapi import Header, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.core.config import get_settings
from eventrelay.persistence.db import get_session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    tenant_id: str
    subject_id: str
    auth_method: str


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


async def require_principal(
    authorization: str | None = Header(default=None),
    x_tenant_id: str | None = Header(default=None, alias="X-Tenant-Id"),
) -> Principal:
    """Resolve the operator and the tenant they act for.

    The tenant always comes from ``X-Tenant-Id``. With auth enabled the caller
    must also present the shared admin token as a bearer credential.
    """
    settings = get_settings()
    auth_method = "dev_bypass"
    if settings.auth_enabled:
        token = _parse_bearer_token(authorization)
        if token is None:
            raise _auth_error("Missing or invalid bearer token")
        expected = settings.admin_api_token or ""
        if not expected or not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
            raise _auth_error("Missing or invalid bearer token")
        auth_method = "admin_token"
    tenant_id = (x_tenant_id or "").strip()
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "TENANT_SCOPE_REQUIRED", "message": "X-Tenant-Id header is required"},
        )
    return Principal(tenant_id=tenant_id, subject_id=f"operator-{tenant_id}", auth_method=auth_method)
