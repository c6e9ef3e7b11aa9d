from __future__ import annotations

from typing import Any

from sqlalchemy.sql import Select

from printshop.platform.security.context import AuthContext
from printshop.platform.security.rls import apply_rls_filter, validate_rls_owner


class BaseRepository:
    resource = ""

    def apply_scope_query(self, query: Select[Any], ctx: AuthContext) -> Select[Any]:
        return apply_rls_filter(query, self.resource, ctx)

    def validate_owner(self, owner_user_id: str, ctx: AuthContext) -> None:
        validate_rls_owner(self.resource, owner_user_id, ctx)
