from __future__ import annotations

from dataclasses import dataclass, field


SYSTEM_ACTOR = "system"


@dataclass(slots=True)
class AuthContext:
    """Caller identity used for row scoping and audit attribution.

    ``is_service`` marks privileged automated paths (webhook reconciler,
    periodic sweeps) that act on any user's rows without being an admin.
    """

    user_id: str
    correlation_id: str | None = None
    is_super_admin: bool = False
    is_service: bool = False
    roles: list[str] = field(default_factory=list)

    @property
    def actor_id(self) -> str | None:
        return None if self.is_service else self.user_id


def service_context(correlation_id: str | None = None) -> AuthContext:
    return AuthContext(user_id=SYSTEM_ACTOR, correlation_id=correlation_id, is_service=True, roles=["service"])
