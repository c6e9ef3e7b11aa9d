from __future__ import annotations

from printshop.core.errors import AuthorizationError


class ScopeViolationError(AuthorizationError):
    """Raised when a caller touches a row outside its user scope."""

    code = "out_of_scope"

    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"Out-of-scope access for resource '{resource}'")
