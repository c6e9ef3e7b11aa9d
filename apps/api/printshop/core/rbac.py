from collections.abc import Callable

from fastapi import Depends, HTTPException, status

from printshop.core.auth import AuthUser, get_current_user


ADMIN_ROLES = frozenset({"admin", "billing.admin", "system.admin"})


def is_admin(user: AuthUser) -> bool:
    return any(role.lower() in ADMIN_ROLES for role in user.roles)


def require_admin() -> Callable[[AuthUser], AuthUser]:
    async def checker(user: AuthUser = Depends(get_current_user)) -> AuthUser:
        if not is_admin(user):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing role: one of {', '.join(sorted(ADMIN_ROLES))}",
            )
        return user

    return checker
