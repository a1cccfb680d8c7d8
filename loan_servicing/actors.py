"""
Acting operator identity.

Authentication happens outside the engine; callers pass who is acting so the
audit trail can record it and privileged operations can be checked.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from .exceptions import PermissionDeniedError


SYSTEM_ACTOR_ID = "system"


@dataclass(frozen=True)
class Actor:
    """Operator performing an action"""
    actor_id: str
    role: Optional[str] = None

    def is_privileged(self, privileged_roles: Iterable[str]) -> bool:
        return self.role is not None and self.role in set(privileged_roles)

    def require_privilege(self, privileged_roles: Iterable[str], action: str) -> None:
        """
        Raises:
            PermissionDeniedError: If the actor's role is not privileged
        """
        if not self.is_privileged(privileged_roles):
            raise PermissionDeniedError(
                f"Actor {self.actor_id} (role={self.role}) is not allowed to {action}"
            )


SYSTEM_ACTOR = Actor(actor_id=SYSTEM_ACTOR_ID, role="system")
