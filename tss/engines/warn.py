import logging
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings

from ..audit import log as audit
from ..audit.log import AuditLog
from ..core.actor import SYSTEM, Actor
from ..core.directives import BanMember, Directive, KickMember, SetTimeout
from ..core.errors import MisconfiguredThresholds, ValidationError
from ..core.utils import ensure_utc, utcnow
from ..database.locking import insert_ignore
from ..database.manager import DatabaseManager
from ..database.models import WarnCase, WarnConfig, WarnPoints
from ..permissions.capabilities import WARN_CONFIGURE, WARN_ESCALATE, WARN_ISSUE, WARN_VIEW
from ..permissions.manager import CapabilityAuthorizer

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class EscalationAction(str, Enum):
    TIMEOUT = "timeout"
    KICK = "kick"
    BAN = "ban"


@dataclass(frozen=True, slots=True)
class Escalation:
    action: EscalationAction
    threshold: int
    duration: timedelta | None = None


@dataclass(frozen=True, slots=True)
class WarnPolicy:
    """Effective warn configuration of a guild. Defaults mirror the warn_config column defaults."""

    decay_days: int = 30
    timeout_pts: int = 3
    timeout_hours: int = 12
    kick_pts: int = 6
    ban_pts: int = 9

    @classmethod
    def from_row(cls, row: WarnConfig) -> "WarnPolicy":
        return cls(
            decay_days=row.decay_days,
            timeout_pts=row.timeout_pts,
            timeout_hours=row.timeout_hours,
            kick_pts=row.kick_pts,
            ban_pts=row.ban_pts,
        )

    def validate(self) -> None:
        for name, value in asdict(self).items():
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise MisconfiguredThresholds(f"{name} must be a positive integer, got {value!r}")
        if not self.timeout_pts <= self.kick_pts <= self.ban_pts:
            raise MisconfiguredThresholds(
                f"Thresholds must ascend (timeout {self.timeout_pts} <= kick {self.kick_pts} <= ban {self.ban_pts})"
            )

    def evaluate(self, total: int) -> Escalation | None:
        """Return the highest tier whose threshold the total meets, never more than one."""
        tiers = (
            Escalation(EscalationAction.TIMEOUT, self.timeout_pts, timedelta(hours=self.timeout_hours)),
            Escalation(EscalationAction.KICK, self.kick_pts),
            Escalation(EscalationAction.BAN, self.ban_pts),
        )
        reached = None
        for tier in tiers:
            if total >= tier.threshold:
                reached = tier
        return reached


@dataclass(frozen=True, slots=True)
class WarnResult:
    case: WarnCase
    total_points: int
    escalation: Escalation | None


def apply_decay(
    total: int,
    anchor: datetime | None,
    now: datetime,
    interval_days: int,
    amount: int,
) -> tuple[int, datetime | None]:
    """
    Remove ``amount`` points for every whole decay interval elapsed since ``anchor``.

    The anchor only moves forward by whole intervals, so progress towards the
    next interval is kept. The total never goes below zero.
    """
    if anchor is None or interval_days <= 0 or amount <= 0:
        return total, anchor

    interval = timedelta(days=interval_days)
    elapsed = now - anchor
    if elapsed < interval:
        return total, anchor

    intervals = elapsed // interval
    return max(0, total - intervals * amount), anchor + intervals * interval


class WarnEngine:
    def __init__(
        self,
        db: DatabaseManager,
        audit_log: AuditLog,
        authorizer: CapabilityAuthorizer,
        decay_amount: int | None = None,
    ) -> None:
        self.db = db
        self.audit = audit_log
        self.authorizer = authorizer
        self.decay_amount = settings.warn_decay_amount if decay_amount is None else decay_amount

    async def _load_policy(self, session: AsyncSession, guild_id: int) -> WarnPolicy:
        row = await session.get(WarnConfig, guild_id)
        if row is None:
            return WarnPolicy()

        policy = WarnPolicy.from_row(row)
        try:
            policy.validate()
        except MisconfiguredThresholds as e:
            # A broken config must never block moderation
            logger.warning(f"Guild {guild_id} warn config rejected, using defaults: {e}")
            return WarnPolicy()
        return policy

    async def _earliest_case_at(self, session: AsyncSession, guild_id: int, user_id: int) -> datetime | None:
        result = await session.execute(
            select(func.min(WarnCase.created_at)).where(WarnCase.guild_id == guild_id, WarnCase.user_id == user_id)
        )
        return ensure_utc(result.scalar_one_or_none())

    async def _lock_points(self, session: AsyncSession, guild_id: int, user_id: int) -> WarnPoints:
        await insert_ignore(
            session,
            WarnPoints,
            {"guild_id": guild_id, "user_id": user_id, "total_points": 0},
            index_elements=("guild_id", "user_id"),
        )
        result = await session.execute(
            select(WarnPoints)
            .where(WarnPoints.guild_id == guild_id, WarnPoints.user_id == user_id)
            .with_for_update()
        )
        return result.scalar_one()

    async def issue_warn(
        self,
        guild_id: int,
        user_id: int,
        moderator: Actor,
        points: int,
        reason: str,
        evidence: str | None = None,
        now: datetime | None = None,
    ) -> WarnResult:
        """
        Record a warning and add its points to the member's running total.

        Returns:
            The stored case, the post-update total and the highest escalation
            tier reached. The escalation is reported only; see ``escalate``.
        """
        if isinstance(points, bool) or not isinstance(points, int) or points <= 0:
            raise ValidationError(f"Warn points must be a positive integer, got {points!r}")
        if not reason or not reason.strip():
            raise ValidationError("Warn reason must not be blank")

        await self.authorizer.require(guild_id, moderator, WARN_ISSUE)
        now = ensure_utc(now) or utcnow()

        async with self.db.session() as session:
            policy = await self._load_policy(session, guild_id)
            row = await self._lock_points(session, guild_id, user_id)

            anchor = row.last_decay_at or await self._earliest_case_at(session, guild_id, user_id)
            total, anchor = apply_decay(row.total_points, anchor, now, policy.decay_days, self.decay_amount)
            if total == 0:
                anchor = now

            case = WarnCase(
                guild_id=guild_id,
                user_id=user_id,
                moderator_id=moderator.user_id or 0,
                points=points,
                reason=reason.strip(),
                evidence=evidence,
                created_at=now,
            )
            session.add(case)
            await session.flush()

            total += points
            row.total_points = total
            row.last_decay_at = anchor
            row.updated_at = now

            escalation = policy.evaluate(total)
            await self.audit.record(
                session,
                guild_id,
                moderator.user_id,
                audit.WARN_ISSUED,
                {
                    "case_id": case.id,
                    "user_id": user_id,
                    "points": points,
                    "total_points": total,
                    "escalation": escalation.action.value if escalation else None,
                },
            )

        logger.info(
            f"Warn #{case.id} in guild {guild_id}: user {user_id} +{points} -> {total}"
            + (f" ({escalation.action.value} threshold reached)" if escalation else "")
        )
        return WarnResult(case, total, escalation)

    async def get_points(
        self,
        guild_id: int,
        user_id: int,
        now: datetime | None = None,
        actor: Actor = SYSTEM,
    ) -> int:
        """Current total after lazy decay. Decay is persisted once a whole interval has passed."""
        await self.authorizer.require(guild_id, actor, WARN_VIEW)
        now = ensure_utc(now) or utcnow()

        async with self.db.session() as session:
            result = await session.execute(
                select(WarnPoints)
                .where(WarnPoints.guild_id == guild_id, WarnPoints.user_id == user_id)
                .with_for_update()
            )
            row = result.scalar_one_or_none()
            if row is None:
                return 0

            policy = await self._load_policy(session, guild_id)
            anchor = row.last_decay_at or await self._earliest_case_at(session, guild_id, user_id)
            total, new_anchor = apply_decay(row.total_points, anchor, now, policy.decay_days, self.decay_amount)

            if new_anchor != anchor:
                logger.debug(f"Decayed user {user_id} in guild {guild_id}: {row.total_points} -> {total}")
                row.total_points = total
                row.last_decay_at = new_anchor
                row.updated_at = now
            return total

    async def list_cases(
        self,
        guild_id: int,
        user_id: int,
        limit: int = 10,
        before: int | None = None,
        actor: Actor = SYSTEM,
    ) -> list[WarnCase]:
        """Cases newest first. ``before`` is the id of the last case of the previous page."""
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        await self.authorizer.require(guild_id, actor, WARN_VIEW)

        async with self.db.session() as session:
            query = select(WarnCase).where(WarnCase.guild_id == guild_id, WarnCase.user_id == user_id)
            if before is not None:
                query = query.where(WarnCase.id < before)
            result = await session.execute(
                query.order_by(WarnCase.created_at.desc(), WarnCase.id.desc()).limit(limit)
            )
            return list(result.scalars())

    async def get_config(self, guild_id: int) -> WarnPolicy:
        async with self.db.session() as session:
            return await self._load_policy(session, guild_id)

    async def update_config(self, guild_id: int, actor: Actor, **changes: Any) -> WarnPolicy:
        known = {f.name for f in fields(WarnPolicy)}
        unknown = set(changes) - known
        if unknown:
            raise ValidationError(f"Unknown warn config fields: {', '.join(sorted(unknown))}")
        await self.authorizer.require(guild_id, actor, WARN_CONFIGURE)

        async with self.db.session() as session:
            await insert_ignore(session, WarnConfig, {"guild_id": guild_id}, index_elements=("guild_id",))
            result = await session.execute(
                select(WarnConfig).where(WarnConfig.guild_id == guild_id).with_for_update()
            )
            row = result.scalar_one()

            policy = WarnPolicy(**{**asdict(WarnPolicy.from_row(row)), **changes})
            try:
                policy.validate()
            except MisconfiguredThresholds as e:
                raise ValidationError(str(e)) from e
            if policy.timeout_hours > settings.mute_max_timeout_days * 24:
                raise ValidationError(f"timeout_hours may not exceed {settings.mute_max_timeout_days * 24}")

            for name, value in changes.items():
                setattr(row, name, value)
            row.updated_at = utcnow()

            await self.audit.record(session, guild_id, actor.user_id, audit.WARN_CONFIG_UPDATED, asdict(policy))

        logger.info(f"Updated warn config for guild {guild_id}: {changes}")
        return policy

    async def escalate(
        self,
        guild_id: int,
        user_id: int,
        escalation: Escalation,
        actor: Actor,
        reason: str,
        dry_run: bool = False,
        now: datetime | None = None,
    ) -> list[Directive]:
        """
        Turn a reported escalation into applier directives.

        With ``dry_run`` the directives are returned without being audit-logged,
        so a confirmation flow can show them first.
        """
        await self.authorizer.require(guild_id, actor, WARN_ESCALATE)
        now = ensure_utc(now) or utcnow()
        reason = reason or f"Reached {escalation.threshold} warn points"

        if escalation.action is EscalationAction.TIMEOUT:
            ceiling = timedelta(days=settings.mute_max_timeout_days)
            duration = min(escalation.duration or ceiling, ceiling)
            directives: list[Directive] = [SetTimeout(guild_id, user_id=user_id, until=now + duration, reason=reason)]
        elif escalation.action is EscalationAction.KICK:
            directives = [KickMember(guild_id, user_id=user_id, reason=reason)]
        else:
            directives = [BanMember(guild_id, user_id=user_id, reason=reason)]

        if dry_run:
            logger.debug(f"Dry-run escalation for user {user_id} in guild {guild_id}: {escalation.action.value}")
            return directives

        await self.audit.write(
            guild_id,
            actor.user_id,
            audit.WARN_ESCALATED,
            {"user_id": user_id, "action": escalation.action.value, "threshold": escalation.threshold, "reason": reason},
        )
        logger.info(f"Escalated user {user_id} in guild {guild_id}: {escalation.action.value}")
        return directives
