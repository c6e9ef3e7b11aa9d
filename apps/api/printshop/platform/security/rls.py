from __future__ import annotations

from typing import Any

from sqlalchemy.sql import Select

from printshop.metrics import observe_rls_denied_read
from printshop.platform.security.context import AuthContext
from printshop.platform.security.errors import ScopeViolationError


def is_admin_bypass(ctx: AuthContext) -> bool:
    if ctx.is_super_admin or ctx.is_service:
        return True
    role_set = {item.lower() for item in ctx.roles}
    return bool(role_set & {"admin", "billing.admin", "system.admin"})


def apply_rls_filter(query: Select[Any], resource: str, ctx: AuthContext) -> Select[Any]:
    """Restrict queries over models exposing ``user_id`` to the caller's own rows."""

    if is_admin_bypass(ctx):
        return query

    for description in query.column_descriptions:
        model = description.get("entity")
        if model is None:
            continue
        if hasattr(model, "user_id"):
            query = query.where(getattr(model, "user_id") == ctx.user_id)

    return query


def validate_rls_owner(resource: str, owner_user_id: str, ctx: AuthContext) -> None:
    if is_admin_bypass(ctx):
        return
    if owner_user_id != ctx.user_id:
        observe_rls_denied_read(resource)
        raise ScopeViolationError(resource)
