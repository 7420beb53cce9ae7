from __future__ import annotations

from dataclasses import dataclass, field

READ_ALL_PERMISSION = "deals.read_all"


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None

    @property
    def can_read_all(self) -> bool:
        return READ_ALL_PERMISSION in self.permissions


def system_actor(correlation_id: str | None = None, user_id: str | None = None) -> ActorUser:
    """Actor used by event handlers and background jobs; ``user_id`` names the requester when known."""
    return ActorUser(user_id=user_id or "system", permissions={READ_ALL_PERMISSION}, correlation_id=correlation_id)
