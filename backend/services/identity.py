"""
Authenticated principal passed explicitly into every ordering operation.

The identity service (token validation, sessions) lives outside this
package; whatever resolves a request hands us a Principal.
"""

from dataclasses import dataclass, field

from backend.core.errors import Forbidden

ADMIN = "ADMIN"


@dataclass(frozen=True)
class Principal:
    """
    An authenticated caller.

    Attributes:
        user_id: The caller's user id
        roles: Role names, e.g. {"USER"} or {"ADMIN"}
    """
    user_id: int
    roles: frozenset[str] = field(default_factory=lambda: frozenset({"USER"}))

    @property
    def is_admin(self) -> bool:
        return ADMIN in self.roles

    def ensure_owns(self, owner_id: int, what: str = "resource") -> None:
        """Raise Forbidden unless the caller owns the resource or is an admin."""
        if self.is_admin or self.user_id == owner_id:
            return
        raise Forbidden(
            f"User #{self.user_id} may not act on this {what}",
            {"user_id": self.user_id, "owner_id": owner_id},
        )

    def ensure_admin(self) -> None:
        if not self.is_admin:
            raise Forbidden(f"User #{self.user_id} is not an administrator", {"user_id": self.user_id})
