from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status

from printshop.context import get_correlation_id
from printshop.core.auth import AuthUser, get_current_user as get_auth_user
from printshop.core.rbac import is_admin
from printshop.platform.security.context import AuthContext


def get_auth_context(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> AuthContext:
    if auth_user.sub == "anonymous":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")

    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    roles = [str(item) for item in auth_user.roles]
    normalized = {item.lower() for item in roles}

    return AuthContext(
        user_id=auth_user.sub,
        correlation_id=correlation_id,
        is_super_admin=is_admin(auth_user) or "system.admin" in normalized,
        roles=roles,
    )
