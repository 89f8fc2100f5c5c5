import logging
from collections.abc import Iterable

from ..audit import log as audit
from ..audit.log import AuditLog
from ..database.locking import insert_ignore
from ..database.manager import DatabaseManager
from ..database.models import Guild
from ..permissions.capabilities import GUILD_CONFIGURE
from ..permissions.manager import CapabilityAuthorizer, seed_role_grants
from .actor import Actor
from .errors import NotFound, ValidationError
from .utils import utcnow

logger = logging.getLogger(__name__)

_UNSET = object()


def _dedupe(role_ids: Iterable[int]) -> list[int]:
    """Drop duplicates while keeping the caller's order."""
    seen: dict[int, None] = {}
    for role_id in role_ids:
        if isinstance(role_id, bool) or not isinstance(role_id, int):
            raise ValidationError(f"Role ids must be integers, got {role_id!r}")
        seen.setdefault(role_id, None)
    return list(seen)


class GuildDirectory:
    """Guild rows: display name, modlog channel and the admin/moderator role sets."""

    def __init__(self, db: DatabaseManager, audit_log: AuditLog, authorizer: CapabilityAuthorizer) -> None:
        self.db = db
        self.audit = audit_log
        self.authorizer = authorizer

    async def ensure_guild(self, guild_id: int, name: str) -> Guild:
        async with self.db.session() as session:
            await insert_ignore(
                session,
                Guild,
                {"guild_id": guild_id, "name": name, "admin_role_ids": [], "moderator_role_ids": []},
                index_elements=("guild_id",),
            )
            guild = await session.get(Guild, guild_id)
            return guild

    async def get(self, guild_id: int) -> Guild:
        async with self.db.session() as session:
            guild = await session.get(Guild, guild_id)
        if guild is None:
            raise NotFound(f"Guild {guild_id} is not configured")
        return guild

    async def configure(
        self,
        guild_id: int,
        actor: Actor,
        name: str | None = None,
        modlog_channel: int | None | object = _UNSET,
        admin_role_ids: Iterable[int] | None = None,
        moderator_role_ids: Iterable[int] | None = None,
    ) -> Guild:
        """
        Update guild settings. Only the arguments given are changed.

        ``modlog_channel=None`` clears the channel; leaving it out keeps it.
        """
        admins = _dedupe(admin_role_ids) if admin_role_ids is not None else None
        moderators = _dedupe(moderator_role_ids) if moderator_role_ids is not None else None
        if name is not None and not name.strip():
            raise ValidationError("Guild name must not be blank")

        await self.authorizer.require(guild_id, actor, GUILD_CONFIGURE)

        changes: dict = {}
        async with self.db.session() as session:
            guild = await session.get(Guild, guild_id, with_for_update=True)
            if guild is None:
                raise NotFound(f"Guild {guild_id} is not configured")

            if name is not None:
                guild.name = changes["name"] = name.strip()
            if modlog_channel is not _UNSET:
                guild.modlog_channel = changes["modlog_channel"] = modlog_channel
            if admins is not None:
                guild.admin_role_ids = changes["admin_role_ids"] = admins
            if moderators is not None:
                guild.moderator_role_ids = changes["moderator_role_ids"] = moderators
            guild.updated_at = utcnow()

            seeded = await seed_role_grants(session, guild_id, admins or (), moderators or ())
            for role_id, capabilities in seeded.items():
                await self.audit.record(
                    session,
                    guild_id,
                    actor.user_id,
                    audit.CAPABILITY_GRANTED,
                    {"role_id": role_id, "capabilities": capabilities},
                )
            await self.audit.record(session, guild_id, actor.user_id, audit.GUILD_CONFIGURED, changes)

        # Newly listed roles were granted their default capabilities
        self.authorizer.clear_guild_cache(guild_id)
        logger.info(f"Configured guild {guild_id}: {sorted(changes)}")
        return guild
