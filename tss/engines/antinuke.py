import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import pydantic
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from config.settings import settings

from ..audit import log as audit
from ..audit.log import AuditLog
from ..core.actor import SYSTEM, Actor
from ..core.directives import (
    DeleteChannel,
    DeleteRole,
    Directive,
    GuildSnapshot,
    RestoreChannel,
    RestoreRole,
    SuspendActor,
)
from ..core.errors import Conflict, NotFound, ValidationError
from ..core.utils import ensure_utc, utcnow
from ..database.locking import advisory_lock, insert_ignore
from ..database.manager import DatabaseManager
from ..database.models import AntinukeAction, AntinukeGuild, AntinukeIncident, AntinukeSnapshot
from ..permissions.capabilities import (
    ANTINUKE_APPROVE,
    ANTINUKE_CONFIGURE,
    ANTINUKE_RESPOND,
    ANTINUKE_RESTORE,
    ANTINUKE_STATUS,
)
from ..permissions.manager import CapabilityAuthorizer

logger = logging.getLogger(__name__)

# Action kinds written by the engine itself
BURST = "burst"
THROTTLE_ACTOR = "throttle-actor"
APPROVE = "approve"
ROLLBACK = "rollback"
CLOSE = "close"

# Kinds that change no live state, so they need no snapshot first
BOOKKEEPING_KINDS = frozenset({BURST, THROTTLE_ACTOR, APPROVE, ROLLBACK, CLOSE})
# Review steps still allowed once an incident is closed
REVIEW_KINDS = frozenset({APPROVE, ROLLBACK})


class BurstLevel(str, Enum):
    NONE = "none"
    INCIDENT = "incident"
    THROTTLE = "throttle"


class GuardState(str, Enum):
    DISABLED = "disabled"
    ARMED = "armed"
    INCIDENT_OPEN = "incident_open"


@dataclass(frozen=True, slots=True)
class BurstResponse:
    level: BurstLevel
    incident: AntinukeIncident | None = None
    directives: list[Directive] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class IncidentSummary:
    id: int
    guild_id: int
    reason: str
    created_at: datetime | None
    closed: bool
    action_count: int
    snapshot_count: int
    last_action: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "guild_id": self.guild_id,
            "reason": self.reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "status": "closed" if self.closed else "open",
            "action_count": self.action_count,
            "snapshot_count": self.snapshot_count,
            "last_action": self.last_action,
        }


def _closed_clause():
    return (
        select(AntinukeAction.id)
        .where(AntinukeAction.incident_id == AntinukeIncident.id, AntinukeAction.kind == CLOSE)
        .exists()
    )


def plan_restore(snapshot: GuildSnapshot, current: GuildSnapshot | None, guild_id: int, reason: str) -> list[Directive]:
    """
    Directives that bring the live layout back to ``snapshot``.

    Without ``current`` every captured role and channel is restored and the
    applier decides per resource whether to recreate or edit it. With
    ``current`` only differences are emitted, including deletions of
    resources created after the snapshot. Roles go first, categories before
    their channels, deletions last.
    """
    directives: list[Directive] = []

    if current is None:
        directives.extend(RestoreRole(guild_id, role=role, reason=reason) for role in snapshot.roles)
        channels = sorted(snapshot.channels, key=lambda c: (c.kind != "category", c.position))
        directives.extend(RestoreChannel(guild_id, channel=channel, reason=reason) for channel in channels)
        return directives

    live_roles = {role.id: role for role in current.roles}
    live_channels = {channel.id: channel for channel in current.channels}

    for role in snapshot.roles:
        live = live_roles.get(role.id)
        if live is None:
            directives.append(RestoreRole(guild_id, role=role, exists=False, reason=reason))
        elif live != role:
            directives.append(RestoreRole(guild_id, role=role, exists=True, reason=reason))

    for channel in sorted(snapshot.channels, key=lambda c: (c.kind != "category", c.position)):
        live = live_channels.get(channel.id)
        if live is None:
            directives.append(RestoreChannel(guild_id, channel=channel, exists=False, reason=reason))
        elif live != channel:
            directives.append(RestoreChannel(guild_id, channel=channel, exists=True, reason=reason))

    captured_roles = {role.id for role in snapshot.roles}
    captured_channels = {channel.id for channel in snapshot.channels}
    directives.extend(
        DeleteChannel(guild_id, channel_id=channel_id, reason=reason)
        for channel_id in live_channels
        if channel_id not in captured_channels
    )
    directives.extend(
        DeleteRole(guild_id, role_id=role_id, reason=reason) for role_id in live_roles if role_id not in captured_roles
    )
    return directives


class AntinukeEngine:
    """
    Incident response for bursts of destructive actions.

    Whether a guild is armed or has an open incident is always derived from
    the store: an incident is open until it has an action of kind ``close``.
    """

    def __init__(
        self,
        db: DatabaseManager,
        audit_log: AuditLog,
        authorizer: CapabilityAuthorizer,
        threshold: int | None = None,
        window_seconds: int | None = None,
        hard_ceiling: int | None = None,
        cooldown_minutes: int | None = None,
    ) -> None:
        self.db = db
        self.audit = audit_log
        self.authorizer = authorizer
        self.threshold = settings.antinuke_threshold if threshold is None else threshold
        self.window_seconds = settings.antinuke_window_seconds if window_seconds is None else window_seconds
        self.hard_ceiling = settings.antinuke_hard_ceiling if hard_ceiling is None else hard_ceiling
        if cooldown_minutes is None:
            cooldown_minutes = settings.antinuke_cooldown_minutes
        self.cooldown = timedelta(minutes=cooldown_minutes)

    # Enrollment

    async def enroll(self, guild_id: int, actor: Actor = SYSTEM) -> bool:
        """Opt a guild into monitoring. Returns False if it already was."""
        await self.authorizer.require(guild_id, actor, ANTINUKE_CONFIGURE)

        async with self.db.session() as session:
            if not await insert_ignore(session, AntinukeGuild, {"guild_id": guild_id}, index_elements=("guild_id",)):
                return False
            await self.audit.record(session, guild_id, actor.user_id, audit.ANTINUKE_ENROLLED, {})

        logger.info(f"Guild {guild_id} enrolled in antinuke monitoring")
        return True

    async def unenroll(self, guild_id: int, actor: Actor = SYSTEM) -> None:
        """Stop monitoring. Incidents, snapshots and actions go with the guild row."""
        await self.authorizer.require(guild_id, actor, ANTINUKE_CONFIGURE)

        async with self.db.session() as session:
            guild = await session.get(AntinukeGuild, guild_id)
            if guild is None:
                raise NotFound(f"Guild {guild_id} is not enrolled in antinuke monitoring")

            await session.delete(guild)
            await self.audit.record(session, guild_id, actor.user_id, audit.ANTINUKE_UNENROLLED, {})

        logger.info(f"Guild {guild_id} removed from antinuke monitoring")

    async def is_enrolled(self, guild_id: int) -> bool:
        async with self.db.session() as session:
            return await session.get(AntinukeGuild, guild_id) is not None

    # Policy

    def assess_burst(self, count: int, window_seconds: float) -> BurstLevel:
        """
        Classify ``count`` destructive actions observed over ``window_seconds``.

        Counts taken over a longer window than the configured one are scaled
        down to it. Shorter windows are taken as-is.
        """
        if count < 0:
            raise ValidationError("Burst count must not be negative")
        if window_seconds <= 0:
            raise ValidationError("Burst window must be positive")

        effective = count
        if window_seconds > self.window_seconds:
            effective = count * self.window_seconds / window_seconds

        if effective >= self.hard_ceiling:
            return BurstLevel.THROTTLE
        if effective >= self.threshold:
            return BurstLevel.INCIDENT
        return BurstLevel.NONE

    # Incidents

    async def _open_incident(self, session: AsyncSession, guild_id: int) -> AntinukeIncident | None:
        result = await session.execute(
            select(AntinukeIncident)
            .where(AntinukeIncident.guild_id == guild_id, ~_closed_clause())
            .order_by(AntinukeIncident.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _is_closed(self, session: AsyncSession, incident_id: int) -> bool:
        result = await session.execute(
            select(func.count(AntinukeAction.id)).where(
                AntinukeAction.incident_id == incident_id, AntinukeAction.kind == CLOSE
            )
        )
        return result.scalar_one() > 0

    async def _incident_guild(self, incident_id: int) -> int:
        async with self.db.session() as session:
            result = await session.execute(
                select(AntinukeIncident.guild_id).where(AntinukeIncident.id == incident_id)
            )
            guild_id = result.scalar_one_or_none()
        if guild_id is None:
            raise NotFound(f"Incident {incident_id} does not exist")
        return guild_id

    async def _lock_incident(self, session: AsyncSession, incident_id: int) -> AntinukeIncident:
        incident = await session.get(AntinukeIncident, incident_id)
        if incident is None:
            raise NotFound(f"Incident {incident_id} does not exist")
        await advisory_lock(session, "antinuke", incident.guild_id)
        return incident

    async def _append_action(
        self,
        session: AsyncSession,
        incident: AntinukeIncident,
        kind: str,
        actor_id: int | None,
        now: datetime,
    ) -> AntinukeAction:
        action = AntinukeAction(incident_id=incident.id, actor_id=actor_id, kind=kind, created_at=now)
        session.add(action)
        await session.flush()
        return action

    async def _record_burst(
        self,
        session: AsyncSession,
        guild_id: int,
        reason: str,
        evidence: dict[str, Any] | None,
        offender_id: int | None,
        now: datetime,
    ) -> AntinukeIncident:
        await advisory_lock(session, "antinuke", guild_id)

        if await session.get(AntinukeGuild, guild_id) is None:
            raise NotFound(f"Guild {guild_id} is not enrolled in antinuke monitoring")

        payload = {"reason": reason, "offender_id": offender_id, "evidence": evidence or {}}
        incident = await self._open_incident(session, guild_id)
        if incident is not None:
            await self._append_action(session, incident, BURST, None, now)
            await self.audit.record(
                session, guild_id, None, audit.ANTINUKE_BURST_APPENDED, {"incident_id": incident.id, **payload}
            )
            logger.info(f"Burst appended to open incident #{incident.id} in guild {guild_id}")
            return incident

        incident = AntinukeIncident(guild_id=guild_id, reason=reason, created_at=now)
        session.add(incident)
        await session.flush()
        await self.audit.record(
            session, guild_id, None, audit.ANTINUKE_INCIDENT_OPENED, {"incident_id": incident.id, **payload}
        )
        logger.warning(f"Antinuke incident #{incident.id} opened in guild {guild_id}: {reason}")
        return incident

    async def record_suspicious_burst(
        self,
        guild_id: int,
        reason: str,
        evidence: dict[str, Any] | None = None,
        offender_id: int | None = None,
        now: datetime | None = None,
    ) -> AntinukeIncident:
        """Open an incident, or append to the one already open. Never opens a second one."""
        if not reason or not reason.strip():
            raise ValidationError("Incident reason must not be blank")
        now = ensure_utc(now) or utcnow()

        async with self.db.session() as session:
            return await self._record_burst(session, guild_id, reason.strip(), evidence, offender_id, now)

    async def handle_burst(
        self,
        guild_id: int,
        offender_id: int | None,
        kind: str,
        count: int,
        window_seconds: float,
        evidence: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> BurstResponse:
        """
        React to a counted burst from the event tap.

        At the hard ceiling the engine records a ``throttle-actor`` step and
        asks the applier to suspend the offender. It never tries to repair the
        damage on its own; that is what ``rollback`` is for.
        """
        level = self.assess_burst(count, window_seconds)
        if level is BurstLevel.NONE:
            return BurstResponse(level)

        if not await self.is_enrolled(guild_id):
            logger.debug(f"Ignoring {level.value} burst in guild {guild_id}: not enrolled")
            return BurstResponse(level)

        now = ensure_utc(now) or utcnow()
        reason = f"{count} x {kind} in {window_seconds:g}s by {offender_id}"
        evidence = {"kind": kind, "count": count, "window_seconds": window_seconds, **(evidence or {})}
        directives: list[Directive] = []

        async with self.db.session() as session:
            incident = await self._record_burst(session, guild_id, reason, evidence, offender_id, now)

            if level is BurstLevel.THROTTLE:
                await self._append_action(session, incident, THROTTLE_ACTOR, None, now)
                await self.audit.record(
                    session,
                    guild_id,
                    None,
                    audit.ANTINUKE_ACTION,
                    {"incident_id": incident.id, "kind": THROTTLE_ACTOR, "offender_id": offender_id},
                )
                if offender_id is not None:
                    directives.append(
                        SuspendActor(guild_id, user_id=offender_id, reason=f"Antinuke incident #{incident.id}")
                    )

        if directives:
            logger.warning(f"Throttling user {offender_id} in guild {guild_id} (incident #{incident.id})")
        return BurstResponse(level, incident, directives)

    async def snapshot(
        self,
        incident_id: int,
        state: GuildSnapshot | dict[str, Any],
        actor: Actor = SYSTEM,
        now: datetime | None = None,
    ) -> AntinukeSnapshot:
        """Store the pre-containment layout. Must precede the first containment action."""
        try:
            snapshot = GuildSnapshot.model_validate(state)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid snapshot payload: {e}") from e

        guild_id = await self._incident_guild(incident_id)
        await self.authorizer.require(guild_id, actor, ANTINUKE_RESPOND)

        async with self.db.session() as session:
            incident = await self._lock_incident(session, incident_id)
            if await self._is_closed(session, incident_id):
                raise Conflict(f"Incident {incident_id} is closed")

            row = AntinukeSnapshot(
                incident_id=incident.id,
                data=snapshot.model_dump(mode="json"),
                created_at=ensure_utc(now) or utcnow(),
            )
            session.add(row)
            await session.flush()
            await self.audit.record(
                session,
                guild_id,
                actor.user_id,
                audit.ANTINUKE_SNAPSHOT,
                {"incident_id": incident_id, "snapshot_id": row.id,
                 "roles": len(snapshot.roles), "channels": len(snapshot.channels)},
            )

        logger.info(f"Snapshot #{row.id} stored for incident #{incident_id}")
        return row

    async def record_action(
        self,
        incident_id: int,
        kind: str,
        actor: Actor = SYSTEM,
        now: datetime | None = None,
    ) -> AntinukeAction:
        """Append one containment step. Steps keep their insertion order."""
        kind = (kind or "").strip().lower()
        if not kind:
            raise ValidationError("Action kind must not be blank")

        guild_id = await self._incident_guild(incident_id)
        capability = ANTINUKE_APPROVE if kind == APPROVE else ANTINUKE_RESTORE if kind == ROLLBACK else ANTINUKE_RESPOND
        await self.authorizer.require(guild_id, actor, capability)

        async with self.db.session() as session:
            action = await self._checked_append(session, incident_id, kind, actor, now=now)
        return action

    async def _checked_append(
        self,
        session: AsyncSession,
        incident_id: int,
        kind: str,
        actor: Actor,
        payload: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> AntinukeAction:
        incident = await self._lock_incident(session, incident_id)

        if kind not in REVIEW_KINDS and await self._is_closed(session, incident_id):
            raise Conflict(f"Incident {incident_id} is closed")

        if kind not in BOOKKEEPING_KINDS:
            result = await session.execute(
                select(func.count(AntinukeSnapshot.id)).where(AntinukeSnapshot.incident_id == incident_id)
            )
            if result.scalar_one() == 0:
                raise ValidationError(f"Incident {incident_id} needs a snapshot before containment actions")

        action = await self._append_action(session, incident, kind, actor.user_id, ensure_utc(now) or utcnow())
        event = {CLOSE: audit.ANTINUKE_CLOSED, ROLLBACK: audit.ANTINUKE_ROLLBACK}.get(kind, audit.ANTINUKE_ACTION)
        await self.audit.record(
            session,
            incident.guild_id,
            actor.user_id,
            event,
            {"incident_id": incident_id, "action_id": action.id, "kind": kind, **(payload or {})},
        )
        logger.info(f"Incident #{incident_id}: {kind} recorded (action #{action.id})")
        return action

    async def rollback(
        self,
        incident_id: int,
        actor: Actor,
        current: GuildSnapshot | dict[str, Any] | None = None,
    ) -> list[Directive]:
        """
        Restorative directives from the incident's earliest snapshot.

        Passing the ``current`` layout limits the output to what actually changed.
        """
        try:
            live = GuildSnapshot.model_validate(current) if current is not None else None
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid current-state payload: {e}") from e

        guild_id = await self._incident_guild(incident_id)
        await self.authorizer.require(guild_id, actor, ANTINUKE_RESTORE)

        async with self.db.session() as session:
            result = await session.execute(
                select(AntinukeSnapshot)
                .where(AntinukeSnapshot.incident_id == incident_id)
                .order_by(AntinukeSnapshot.id)
                .limit(1)
            )
            row = result.scalar_one_or_none()
            if row is None:
                raise NotFound(f"Incident {incident_id} has no snapshot to roll back to")

            directives = plan_restore(
                GuildSnapshot.model_validate(row.data), live, guild_id, f"Rollback of antinuke incident #{incident_id}"
            )
            await self._checked_append(
                session,
                incident_id,
                ROLLBACK,
                actor,
                {"snapshot_id": row.id, "directives": len(directives)},
            )

        logger.info(f"Rollback of incident #{incident_id} produced {len(directives)} directive(s)")
        return directives

    async def approve(self, incident_id: int, actor: Actor, now: datetime | None = None) -> AntinukeAction:
        """Sign off on the containment taken during an incident."""
        return await self.record_action(incident_id, APPROVE, actor, now=now)

    async def close_incident(
        self, incident_id: int, actor: Actor = SYSTEM, now: datetime | None = None
    ) -> AntinukeAction:
        guild_id = await self._incident_guild(incident_id)
        await self.authorizer.require(guild_id, actor, ANTINUKE_RESPOND)

        async with self.db.session() as session:
            return await self._checked_append(session, incident_id, CLOSE, actor, now=now)

    async def _last_activity(self, session: AsyncSession, incident: AntinukeIncident) -> datetime:
        last_action = await session.execute(
            select(func.max(AntinukeAction.created_at)).where(AntinukeAction.incident_id == incident.id)
        )
        last_snapshot = await session.execute(
            select(func.max(AntinukeSnapshot.created_at)).where(AntinukeSnapshot.incident_id == incident.id)
        )
        moments = [incident.created_at, ensure_utc(last_action.scalar()), ensure_utc(last_snapshot.scalar())]
        return max(moment for moment in moments if moment is not None)

    async def close_quiet_incidents(self, now: datetime | None = None) -> list[int]:
        """
        Close open incidents with no activity for the cooldown period.

        Each candidate is re-checked under its guild lock, so concurrent
        sweeps close an incident once.
        """
        now = ensure_utc(now) or utcnow()
        cutoff = now - self.cooldown

        async with self.db.session() as session:
            result = await session.execute(
                select(AntinukeIncident.id)
                .where(~_closed_clause(), AntinukeIncident.created_at <= cutoff)
                .order_by(AntinukeIncident.id)
                .limit(settings.sweep_batch_size)
            )
            candidates = list(result.scalars())

        closed: list[int] = []
        for incident_id in candidates:
            async with self.db.session() as session:
                incident = await self._lock_incident(session, incident_id)
                if await self._is_closed(session, incident_id):
                    continue
                if await self._last_activity(session, incident) > cutoff:
                    continue

                await self._checked_append(session, incident_id, CLOSE, SYSTEM, {"reason": "cooldown"}, now=now)
                closed.append(incident_id)

        if closed:
            logger.info(f"Closed {len(closed)} quiet incident(s): {closed}")
        return closed

    async def guard_state(self, guild_id: int) -> GuardState:
        async with self.db.session() as session:
            if await session.get(AntinukeGuild, guild_id) is None:
                return GuardState.DISABLED
            if await self._open_incident(session, guild_id) is not None:
                return GuardState.INCIDENT_OPEN
            return GuardState.ARMED

    async def list_incidents(self, guild_id: int, limit: int = 20, actor: Actor = SYSTEM) -> list[IncidentSummary]:
        if not 1 <= limit <= 100:
            raise ValidationError("limit must be between 1 and 100")
        await self.authorizer.require(guild_id, actor, ANTINUKE_STATUS)

        async with self.db.session() as session:
            result = await session.execute(
                select(AntinukeIncident)
                .where(AntinukeIncident.guild_id == guild_id)
                .options(selectinload(AntinukeIncident.actions), selectinload(AntinukeIncident.snapshots))
                .order_by(AntinukeIncident.id.desc())
                .limit(limit)
            )
            return [
                IncidentSummary(
                    id=incident.id,
                    guild_id=incident.guild_id,
                    reason=incident.reason,
                    created_at=incident.created_at,
                    closed=any(action.kind == CLOSE for action in incident.actions),
                    action_count=len(incident.actions),
                    snapshot_count=len(incident.snapshots),
                    last_action=incident.actions[-1].kind if incident.actions else None,
                )
                for incident in result.scalars()
            ]
