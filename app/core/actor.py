from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from app.core.permissions import Role


@dataclass(frozen=True)
class RequestMeta:
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class Actor:
    """The authenticated caller on whose behalf a lending operation runs."""

    user_id: UUID
    role: Role
    email: str | None = None
    display_name: str | None = None
    request: RequestMeta = RequestMeta()

    @property
    def is_staff(self) -> bool:
        return self.role.is_staff

    def at_least(self, minimum: Role) -> bool:
        return self.role.at_least(minimum)
