"""Caller identity as forwarded by the upstream auth gateway."""

from __future__ import annotations

from dataclasses import dataclass

from rental_core.models.status import Role

SYSTEM_ACTOR_ID = "system"


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value

    @property
    def is_system(self) -> bool:
        return self.role == Role.SYSTEM.value

    @property
    def is_privileged(self) -> bool:
        return self.is_admin or self.is_system


SYSTEM = Actor(user_id=SYSTEM_ACTOR_ID, role=Role.SYSTEM.value)
