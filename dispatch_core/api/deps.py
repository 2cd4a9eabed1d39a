from __future__ import annotations

from collections.abc import Callable
from typing import Annotated, Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from dispatch_core.domain.models import CallerScope
from dispatch_core.domain.permissions import has_permission, is_platform_superuser
from dispatch_core.infra.auth import decode_access_token
from dispatch_core.infra.tenant import set_request_context

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")


def get_current_claims(
    request: Request,
    token: str = Depends(oauth2_scheme),
) -> dict[str, Any]:
    try:
        claims = decode_access_token(token)
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "UNAUTHORIZED", "message": "Invalid token"},
        ) from exc
    request.state.claims = claims
    set_request_context(claims.get("tenant_id"), claims.get("sub"))
    return claims


def get_caller_scope(
    claims: Annotated[dict[str, Any], Depends(get_current_claims)],
) -> CallerScope:
    tenant_id = claims.get("tenant_id")
    if is_platform_superuser(claims):
        return CallerScope(actor_id=claims.get("sub"), role=claims.get("role"), tenant_scope=None)
    if not isinstance(tenant_id, str) or not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "FORBIDDEN", "message": "caller is not bound to a tenant"},
        )
    return CallerScope(actor_id=claims.get("sub"), role=claims.get("role"), tenant_scope=tenant_id)


def require_perm(permission: str) -> Callable[[dict[str, Any]], dict[str, Any]]:
    def _checker(
        claims: Annotated[dict[str, Any], Depends(get_current_claims)],
    ) -> dict[str, Any]:
        if not has_permission(claims, permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"code": "FORBIDDEN", "message": f"Missing permission: {permission}"},
            )
        return claims

    return _checker
