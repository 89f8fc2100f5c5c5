from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class Actor:
    """Who is performing an action: a member with roles, or the system itself."""

    user_id: int | None
    role_ids: frozenset[int] = field(default_factory=frozenset)
    is_system: bool = False

    @classmethod
    def member(cls, user_id: int, role_ids: Iterable[int] = ()) -> Actor:
        return cls(user_id=user_id, role_ids=frozenset(role_ids))

    @classmethod
    def system(cls) -> Actor:
        return cls(user_id=None, is_system=True)


SYSTEM = Actor.system()
