"""
Tenant resolution for the billing API.

Clinics sign in with the hosted auth provider; its session JWT carries the
tenant id in `sub`. Outside production an X-Tenant-Id header is accepted
instead (local development, tests).
"""
from typing import Optional
import logging

import jwt
from fastapi import Header, HTTPException, Request

from clinic_billing.core.config import settings
from clinic_billing.core.logging import tenant_id_ctx_var

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


def verify_session_jwt(token: str) -> Optional[str]:
    """
    Verify a session JWT and return its tenant id.

    Returns:
        The `sub` claim, or None when SUPABASE_JWT_SECRET is not configured

    Raises:
        HTTPException 401: expired, forged, wrong audience, or no subject
    """
    secret = settings.SUPABASE_JWT_SECRET
    if not secret:
        logger.debug("SUPABASE_JWT_SECRET not configured; bearer tokens are not accepted")
        return None

    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            audience=settings.SUPABASE_JWT_AUDIENCE,
            options={"require": ["exp", "sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Rejected session token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")

    tenant_id = claims.get("sub")
    if not tenant_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return str(tenant_id)


def _bind_tenant(request: Request, tenant_id: str) -> str:
    from clinic_billing.features.billing.errors import StoreUnavailable
    from clinic_billing.features.billing.service import register_tenant

    request.state.tenant_id = tenant_id
    tenant_id_ctx_var.set(tenant_id)
    # First sight of a tenant creates its default entitlement; auth never fails on it
    try:
        register_tenant(tenant_id)
    except StoreUnavailable as e:
        logger.warning(f"Could not register tenant {tenant_id}: {e}")
    return tenant_id


async def get_current_tenant_id(
    request: Request,
    x_tenant_id: Optional[str] = Header(None, description="Development only: tenant id"),
) -> str:
    """
    FastAPI dependency resolving the calling tenant.

    Priority:
    1. Session JWT from the Authorization header
    2. X-Tenant-Id header (not in production)
    3. 401
    """
    authorization = request.headers.get("Authorization", "")
    if authorization.startswith(BEARER_PREFIX):
        tenant_id = verify_session_jwt(authorization[len(BEARER_PREFIX):])
        if tenant_id:
            return _bind_tenant(request, tenant_id)

    if x_tenant_id and settings.ENV.lower() != "production":
        return _bind_tenant(request, x_tenant_id)

    raise HTTPException(
        status_code=401,
        detail="Missing Authorization (Bearer JWT) or X-Tenant-Id header",
    )
