import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.manager import DatabaseManager
from ..database.models import AuditEvent

logger = logging.getLogger(__name__)

# Event names written by the enforcement core
GUILD_CONFIGURED = "guild.configured"
REGISTRY_REGISTERED = "registry.registered"
REGISTRY_UNREGISTERED = "registry.unregistered"
CAPABILITY_GRANTED = "capability.granted"
CAPABILITY_REVOKED = "capability.revoked"
WARN_ISSUED = "warn.issued"
WARN_ESCALATED = "warn.escalated"
WARN_CONFIG_UPDATED = "warn.config_updated"
MUTE_APPLIED = "mute.applied"
MUTE_EXTENDED = "mute.extended"
MUTE_LIFTED = "mute.lifted"
MUTE_CONFIG_UPDATED = "mute.config_updated"
ANTINUKE_ENROLLED = "antinuke.enrolled"
ANTINUKE_UNENROLLED = "antinuke.unenrolled"
ANTINUKE_INCIDENT_OPENED = "antinuke.incident_opened"
ANTINUKE_BURST_APPENDED = "antinuke.burst_appended"
ANTINUKE_SNAPSHOT = "antinuke.snapshot"
ANTINUKE_ACTION = "antinuke.action"
ANTINUKE_ROLLBACK = "antinuke.rollback"
ANTINUKE_CLOSED = "antinuke.closed"


class AuditLog:
    """Append-only event sink. Rows are never updated or deleted."""

    def __init__(self, db: DatabaseManager) -> None:
        self.db = db

    async def record(
        self,
        session: AsyncSession,
        guild_id: int,
        actor_id: int | None,
        event: str,
        payload: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """Append an event inside the caller's transaction so it commits with the change it describes."""
        entry = AuditEvent(guild_id=guild_id, actor_id=actor_id, event=event, payload=payload or {})
        session.add(entry)
        await session.flush()
        logger.debug(f"Audit {event} guild={guild_id} actor={actor_id} id={entry.id}")
        return entry

    async def write(
        self,
        guild_id: int,
        actor_id: int | None,
        event: str,
        payload: dict[str, Any] | None = None,
    ) -> AuditEvent:
        async with self.db.session() as session:
            return await self.record(session, guild_id, actor_id, event, payload)

    async def recent(self, guild_id: int, limit: int = 50, event: str | None = None) -> list[AuditEvent]:
        async with self.db.session() as session:
            query = select(AuditEvent).where(AuditEvent.guild_id == guild_id)
            if event:
                query = query.where(AuditEvent.event == event)
            result = await session.execute(query.order_by(AuditEvent.id.desc()).limit(limit))
            return list(result.scalars())
