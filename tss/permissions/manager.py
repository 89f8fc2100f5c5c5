import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass, field

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings

from ..audit import log as audit
from ..audit.log import AuditLog
from ..core.actor import SYSTEM, Actor
from ..core.errors import AuthorizationDenied, ValidationError
from ..database.locking import insert_ignore
from ..database.manager import DatabaseManager
from ..database.models import RoleCapability
from .capabilities import ALL_CAPABILITIES, CAPABILITIES_MANAGE, DEFAULT_MODERATOR_CAPABILITIES

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _GuildGrants:
    expires_at: float
    grants: dict[int, set[str]] = field(default_factory=dict)


async def seed_role_grants(
    session: AsyncSession,
    guild_id: int,
    admin_role_ids: Iterable[int] = (),
    moderator_role_ids: Iterable[int] = (),
) -> dict[int, list[str]]:
    """
    Write the grant rows that come with a guild's role sets, inside the caller's transaction.

    Admin roles get every capability and moderator roles the default
    moderator set. Rows that already exist are left alone, so a default
    revoked later is only restored by listing the role again.

    Returns:
        The newly granted capabilities per role
    """
    wanted: dict[int, set[str]] = {}
    for role_id in moderator_role_ids:
        wanted.setdefault(role_id, set()).update(DEFAULT_MODERATOR_CAPABILITIES)
    for role_id in admin_role_ids:
        wanted.setdefault(role_id, set()).update(ALL_CAPABILITIES)

    seeded: dict[int, list[str]] = {}
    for role_id, capabilities in wanted.items():
        for capability in sorted(capabilities):
            inserted = await insert_ignore(
                session,
                RoleCapability,
                {"guild_id": guild_id, "role_id": role_id, "capability": capability},
                index_elements=("guild_id", "role_id", "capability"),
            )
            if inserted:
                seeded.setdefault(role_id, []).append(capability)

    if seeded:
        logger.info(f"Seeded default grants for roles {sorted(seeded)} in guild {guild_id}")
    return seeded


class CapabilityAuthorizer:
    def __init__(self, db: DatabaseManager, audit_log: AuditLog, cache_ttl: int | None = None) -> None:
        self.db = db
        self.audit = audit_log
        self.cache_ttl = settings.capability_cache_ttl if cache_ttl is None else cache_ttl
        self._cache: dict[int, _GuildGrants] = {}

    def _match_wildcard_pattern(self, pattern: str, capability: str) -> bool:
        """Check if a capability name matches a wildcard pattern."""
        if "*" not in pattern:
            return pattern == capability

        if pattern == "*":
            return True
        elif pattern.endswith(".*"):
            # "antinuke.*" matches "antinuke.restore", "antinuke.approve", ...
            return capability.startswith(pattern[:-1])
        elif pattern.startswith("*."):
            # "*.view" matches "warn.view", ...
            return capability.endswith(pattern[1:])
        return False

    def resolve_pattern(self, pattern: str) -> list[str]:
        """Resolve an exact name or wildcard pattern to known capability names."""
        pattern = pattern.strip()
        if "*" not in pattern:
            if pattern not in ALL_CAPABILITIES:
                raise ValidationError(f"Unknown capability: {pattern!r}")
            return [pattern]

        matching = sorted(cap for cap in ALL_CAPABILITIES if self._match_wildcard_pattern(pattern, cap))
        if not matching:
            raise ValidationError(f"No capabilities match pattern: {pattern!r}")
        return matching

    async def has_capability(self, guild_id: int, role_ids: Iterable[int], capability: str) -> bool:
        """True iff one of the roles holds a grant row for the capability."""
        role_ids = set(role_ids)
        if not role_ids:
            return False

        grants = await self._load_guild_grants(guild_id)
        return any(capability in grants.grants.get(role_id, ()) for role_id in role_ids)

    async def require(self, guild_id: int, actor: Actor, capability: str) -> None:
        """Raise AuthorizationDenied unless the actor holds the capability."""
        if actor.is_system:
            return

        if not await self.has_capability(guild_id, actor.role_ids, capability):
            logger.info(f"Denied '{capability}' to {actor.user_id} in guild {guild_id}")
            raise AuthorizationDenied(guild_id, actor.user_id, capability)

    async def _load_guild_grants(self, guild_id: int) -> _GuildGrants:
        cached = self._cache.get(guild_id)
        now = time.monotonic()
        if cached and cached.expires_at > now:
            return cached

        async with self.db.session() as session:
            result = await session.execute(select(RoleCapability).where(RoleCapability.guild_id == guild_id))

            grants: dict[int, set[str]] = {}
            for row in result.scalars():
                grants.setdefault(row.role_id, set()).add(row.capability)

        loaded = _GuildGrants(expires_at=now + self.cache_ttl, grants=grants)
        if self.cache_ttl > 0:
            self._cache[guild_id] = loaded
        return loaded

    async def grant(self, guild_id: int, role_id: int, pattern: str, actor: Actor = SYSTEM) -> list[str]:
        """
        Grant capability(ies) to a role. Supports wildcard patterns.

        Returns:
            The capabilities that were newly granted (already-held ones are skipped)
        """
        await self.require(guild_id, actor, CAPABILITIES_MANAGE)
        capabilities = self.resolve_pattern(pattern)

        async with self.db.session() as session:
            existing = await session.execute(
                select(RoleCapability.capability).where(
                    RoleCapability.guild_id == guild_id,
                    RoleCapability.role_id == role_id,
                    RoleCapability.capability.in_(capabilities),
                )
            )
            held = set(existing.scalars())
            granted = [cap for cap in capabilities if cap not in held]

            for capability in granted:
                await insert_ignore(
                    session,
                    RoleCapability,
                    {"guild_id": guild_id, "role_id": role_id, "capability": capability},
                    index_elements=("guild_id", "role_id", "capability"),
                )

            if granted:
                await self.audit.record(
                    session,
                    guild_id,
                    actor.user_id,
                    audit.CAPABILITY_GRANTED,
                    {"role_id": role_id, "capabilities": granted},
                )

        self.clear_guild_cache(guild_id)
        logger.info(f"Granted {len(granted)} capabilities to role {role_id} in guild {guild_id}: {granted}")
        return granted

    async def revoke(self, guild_id: int, role_id: int, pattern: str, actor: Actor = SYSTEM) -> list[str]:
        """
        Revoke capability(ies) from a role. Supports wildcard patterns.

        Returns:
            The capabilities that were actually removed
        """
        await self.require(guild_id, actor, CAPABILITIES_MANAGE)
        capabilities = self.resolve_pattern(pattern)

        async with self.db.session() as session:
            existing = await session.execute(
                select(RoleCapability.capability).where(
                    RoleCapability.guild_id == guild_id,
                    RoleCapability.role_id == role_id,
                    RoleCapability.capability.in_(capabilities),
                )
            )
            revoked = sorted(existing.scalars())

            if revoked:
                await session.execute(
                    delete(RoleCapability).where(
                        RoleCapability.guild_id == guild_id,
                        RoleCapability.role_id == role_id,
                        RoleCapability.capability.in_(revoked),
                    )
                )
                await self.audit.record(
                    session,
                    guild_id,
                    actor.user_id,
                    audit.CAPABILITY_REVOKED,
                    {"role_id": role_id, "capabilities": revoked},
                )

        self.clear_guild_cache(guild_id)
        logger.info(f"Revoked {len(revoked)} capabilities from role {role_id} in guild {guild_id}: {revoked}")
        return revoked

    async def list_role_capabilities(self, guild_id: int, role_id: int) -> list[str]:
        async with self.db.session() as session:
            result = await session.execute(
                select(RoleCapability.capability)
                .where(RoleCapability.guild_id == guild_id, RoleCapability.role_id == role_id)
                .order_by(RoleCapability.capability)
            )
            return list(result.scalars())

    def clear_guild_cache(self, guild_id: int) -> None:
        self._cache.pop(guild_id, None)

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.info("Capability cache cleared")
