"""Directives: intended platform operations returned to the external-state applier.

The engines never call the platform. They describe what should happen and
the applier executes it and reports back.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict


class RoleSnapshot(BaseModel):
    """Captured state of one role."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    position: int = 0
    permissions: int = 0


class ChannelSnapshot(BaseModel):
    """Captured state of one channel or category."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    kind: str = "text"
    position: int = 0
    parent_id: int | None = None


class GuildSnapshot(BaseModel):
    """Point-in-time layout of a guild, stored as the snapshot payload."""

    model_config = ConfigDict(extra="allow")

    roles: list[RoleSnapshot] = []
    channels: list[ChannelSnapshot] = []


@dataclass(frozen=True, slots=True)
class Directive:
    kind: ClassVar[str] = "directive"

    guild_id: int
    reason: str = field(default="", kw_only=True)

    def describe(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind
        return data


@dataclass(frozen=True, slots=True)
class GrantRole(Directive):
    kind: ClassVar[str] = "grant-role"

    user_id: int = 0
    role_id: int = 0


@dataclass(frozen=True, slots=True)
class RevokeRole(Directive):
    kind: ClassVar[str] = "revoke-role"

    user_id: int = 0
    role_id: int = 0


@dataclass(frozen=True, slots=True)
class SetTimeout(Directive):
    kind: ClassVar[str] = "set-timeout"

    user_id: int = 0
    until: datetime | None = None


@dataclass(frozen=True, slots=True)
class ClearTimeout(Directive):
    kind: ClassVar[str] = "clear-timeout"

    user_id: int = 0


@dataclass(frozen=True, slots=True)
class KickMember(Directive):
    kind: ClassVar[str] = "kick"

    user_id: int = 0


@dataclass(frozen=True, slots=True)
class BanMember(Directive):
    kind: ClassVar[str] = "ban"

    user_id: int = 0
    delete_message_seconds: int = 0


@dataclass(frozen=True, slots=True)
class SuspendActor(Directive):
    """Strip every role from an actor whose destructive burst crossed the hard ceiling."""

    kind: ClassVar[str] = "suspend-actor"

    user_id: int = 0


@dataclass(frozen=True, slots=True)
class RestoreRole(Directive):
    """Recreate the role if it is gone, otherwise bring it back to the captured state."""

    kind: ClassVar[str] = "restore-role"

    role: RoleSnapshot | None = None
    # None: unknown, the applier checks live state
    exists: bool | None = None


@dataclass(frozen=True, slots=True)
class RestoreChannel(Directive):
    kind: ClassVar[str] = "restore-channel"

    channel: ChannelSnapshot | None = None
    exists: bool | None = None


@dataclass(frozen=True, slots=True)
class DeleteRole(Directive):
    kind: ClassVar[str] = "delete-role"

    role_id: int = 0


@dataclass(frozen=True, slots=True)
class DeleteChannel(Directive):
    kind: ClassVar[str] = "delete-channel"

    channel_id: int = 0
