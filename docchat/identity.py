from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from starlette import status

from . import storage
from .auth import AUTH_FAILURES, AuthenticatedIdentity, TokenVerificationError, TokenVerifier, build_token_verifier

logger = logging.getLogger(__name__)

UNAUTHORIZED_DETAIL = "Invalid or expired token"


@dataclass(frozen=True)
class TenantContext:
    tenant_id: int
    subject: str
    email: Optional[str] = None
    name: Optional[str] = None


def resolve_tenant(identity: AuthenticatedIdentity) -> int:
    """Map a verified external identity to its internal tenant id, creating it on first sight."""
    tenant_id = storage.upsert_tenant(identity.subject, identity.email, identity.name)
    logger.debug("tenant resolved subject=%s tenant_id=%s", identity.subject, tenant_id)
    return tenant_id


@lru_cache(maxsize=1)
def get_token_verifier() -> TokenVerifier:
    return build_token_verifier()


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=UNAUTHORIZED_DETAIL,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _extract_bearer(authorization: Optional[str]) -> str:
    prefix = "bearer "
    if not authorization or not authorization.lower().startswith(prefix):
        return ""
    return authorization[len(prefix):].strip()


def current_tenant(
    request: Request,
    authorization: Optional[str] = Header(None),
    verifier: TokenVerifier = Depends(get_token_verifier),
) -> TenantContext:
    token = _extract_bearer(authorization)
    if not token:
        AUTH_FAILURES.labels(reason="missing-bearer").inc()
        logger.warning("bearer rejected reason=missing-bearer path=%s", request.url.path)
        raise _unauthorized()
    try:
        identity = verifier.verify(token)
    except TokenVerificationError:
        raise _unauthorized() from None
    tenant_id = resolve_tenant(identity)
    request.state.tenant_id = tenant_id
    return TenantContext(
        tenant_id=tenant_id,
        subject=identity.subject,
        email=identity.email,
        name=identity.name,
    )
