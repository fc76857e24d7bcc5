from enum import Enum


class Role(str, Enum):
    ENTREPRENEUR = "entrepreneur"
    MEMBER = "member"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"

    @property
    def rank(self) -> int:
        return _ROLE_RANKS[self]

    @property
    def is_staff(self) -> bool:
        return self is not Role.ENTREPRENEUR

    def at_least(self, minimum: "Role") -> bool:
        return self.rank >= minimum.rank


_ROLE_RANKS = {
    Role.ENTREPRENEUR: 0,
    Role.MEMBER: 1,
    Role.ADMIN: 2,
    Role.SUPER_ADMIN: 3,
}


def parse_role(value: str | None) -> Role:
    if not value:
        return Role.ENTREPRENEUR
    try:
        return Role(value.strip().lower().replace("-", "_"))
    except ValueError:
        return Role.ENTREPRENEUR


__all__ = ["Role", "parse_role"]
