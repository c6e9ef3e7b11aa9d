from printshop.platform.security.context import SYSTEM_ACTOR, AuthContext, service_context
from printshop.platform.security.errors import ScopeViolationError
from printshop.platform.security.repository import BaseRepository
from printshop.platform.security.rls import apply_rls_filter, is_admin_bypass, validate_rls_owner

__all__ = [
    "SYSTEM_ACTOR",
    "AuthContext",
    "service_context",
    "ScopeViolationError",
    "BaseRepository",
    "apply_rls_filter",
    "is_admin_bypass",
    "validate_rls_owner",
]
