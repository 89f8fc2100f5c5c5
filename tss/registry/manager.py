from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from sqlalchemy import select

from ..audit import log as audit
from ..audit.log import AuditLog
from ..core.actor import SYSTEM, Actor
from ..core.errors import KindMismatch, NotFound, ValidationError
from ..core.utils import utcnow
from ..database.locking import insert_ignore
from ..database.manager import DatabaseManager
from ..database.models import ResourceEntry
from ..permissions.capabilities import REGISTRY_MANAGE
from ..permissions.manager import CapabilityAuthorizer

logger = logging.getLogger(__name__)

MAX_KEY_LENGTH = 100

# Well-known logical keys
MUTE_ROLE = "mute_role"
MODLOG_CHANNEL = "modlog_channel"
QUARANTINE_ROLE = "quarantine_role"


class ResourceKind(str, Enum):
    ROLE = "ROLE"
    CHANNEL = "CHANNEL"
    WEBHOOK = "WEBHOOK"
    EMOJI = "EMOJI"
    CATEGORY = "CATEGORY"


@dataclass(frozen=True, slots=True)
class ResourceHandle:
    external_id: int
    kind: ResourceKind
    meta: dict[str, Any] = field(default_factory=dict)


class ResourceRegistry:
    """Maps guild-scoped logical keys ("mute_role", "modlog_channel") to platform ids."""

    def __init__(self, db: DatabaseManager, audit_log: AuditLog, authorizer: CapabilityAuthorizer) -> None:
        self.db = db
        self.audit = audit_log
        self.authorizer = authorizer

    @staticmethod
    def _normalize_key(key: str) -> str:
        """The stored form of a key: stripped, non-blank and bounded."""
        key = (key or "").strip()
        if not key:
            raise ValidationError("Resource key must not be blank")
        if len(key) > MAX_KEY_LENGTH:
            raise ValidationError(f"Resource key longer than {MAX_KEY_LENGTH} characters")
        return key

    async def resolve(self, guild_id: int, key: str) -> ResourceHandle:
        handle = await self.resolve_optional(guild_id, key)
        if handle is None:
            raise NotFound(f"No resource '{key}' registered in guild {guild_id}")
        return handle

    async def resolve_optional(self, guild_id: int, key: str) -> ResourceHandle | None:
        key = self._normalize_key(key)
        async with self.db.session() as session:
            entry = await session.get(ResourceEntry, (guild_id, key))
            if entry is None:
                return None
            return ResourceHandle(entry.discord_id, ResourceKind(entry.kind), dict(entry.meta or {}))

    async def register(
        self,
        guild_id: int,
        key: str,
        kind: ResourceKind | str,
        external_id: int,
        meta: dict[str, Any] | None = None,
        actor: Actor = SYSTEM,
    ) -> ResourceHandle:
        """Create or update an entry. The kind of an existing key can never change."""
        key = self._normalize_key(key)
        try:
            kind = ResourceKind(kind.upper() if isinstance(kind, str) else kind)
        except ValueError:
            raise ValidationError(f"Unknown resource kind: {kind!r}") from None
        await self.authorizer.require(guild_id, actor, REGISTRY_MANAGE)

        async with self.db.session() as session:
            created = await insert_ignore(
                session,
                ResourceEntry,
                {"guild_id": guild_id, "key": key, "kind": kind.value, "discord_id": external_id, "meta": meta or {}},
                index_elements=("guild_id", "key"),
            )
            result = await session.execute(
                select(ResourceEntry)
                .where(ResourceEntry.guild_id == guild_id, ResourceEntry.key == key)
                .with_for_update()
            )
            entry = result.scalar_one()

            if entry.kind != kind.value:
                raise KindMismatch(key, entry.kind, kind.value)

            previous_id = None if created else entry.discord_id
            entry.discord_id = external_id
            if meta is not None:
                entry.meta = meta
            entry.updated_at = utcnow()

            await self.audit.record(
                session,
                guild_id,
                actor.user_id,
                audit.REGISTRY_REGISTERED,
                {"key": key, "kind": kind.value, "discord_id": external_id, "previous_id": previous_id},
            )
            handle = ResourceHandle(entry.discord_id, kind, dict(entry.meta or {}))

        logger.info(f"Registered {kind.value} '{key}' -> {external_id} in guild {guild_id}")
        return handle

    async def unregister(self, guild_id: int, key: str, actor: Actor = SYSTEM) -> None:
        key = self._normalize_key(key)
        await self.authorizer.require(guild_id, actor, REGISTRY_MANAGE)

        async with self.db.session() as session:
            entry = await session.get(ResourceEntry, (guild_id, key))
            if entry is None:
                raise NotFound(f"No resource '{key}' registered in guild {guild_id}")

            await session.delete(entry)
            await self.audit.record(
                session,
                guild_id,
                actor.user_id,
                audit.REGISTRY_UNREGISTERED,
                {"key": key, "kind": entry.kind, "discord_id": entry.discord_id},
            )

        logger.info(f"Unregistered '{key}' in guild {guild_id}")

    async def list_entries(self, guild_id: int, kind: ResourceKind | None = None) -> dict[str, ResourceHandle]:
        async with self.db.session() as session:
            query = select(ResourceEntry).where(ResourceEntry.guild_id == guild_id)
            if kind is not None:
                query = query.where(ResourceEntry.kind == ResourceKind(kind).value)
            result = await session.execute(query.order_by(ResourceEntry.key))
            return {
                entry.key: ResourceHandle(entry.discord_id, ResourceKind(entry.kind), dict(entry.meta or {}))
                for entry in result.scalars()
            }
