import logging
from datetime import datetime, timedelta
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings

from ..audit import log as audit
from ..audit.log import AuditLog
from ..core.actor import SYSTEM, Actor
from ..core.directives import ClearTimeout, Directive, GrantRole, RevokeRole, SetTimeout
from ..core.errors import Conflict, NotFound, ValidationError
from ..core.utils import ensure_utc, human_duration, utcnow
from ..database.locking import advisory_lock, dialect_of, insert_ignore
from ..database.manager import DatabaseManager
from ..database.models import MuteCase, MuteConfig, MuteEnforcement, PlatformTimeout, RoleMute
from ..permissions.capabilities import MUTE_APPLY, MUTE_CONFIGURE, MUTE_LIFT
from ..permissions.manager import CapabilityAuthorizer
from ..registry.manager import MUTE_ROLE, ResourceKind, ResourceRegistry

logger = logging.getLogger(__name__)

EXPIRED_REASON = "expired"


class MuteSettings(BaseModel):
    """Per-guild mute preferences stored in mute_config.cfg."""

    model_config = ConfigDict(extra="allow")

    role_id: int | None = None
    default_minutes: int | None = Field(default=None, gt=0)

    @property
    def default_duration(self) -> timedelta | None:
        """Duration command surfaces should offer when the moderator gives none."""
        return timedelta(minutes=self.default_minutes) if self.default_minutes else None


def mute_directives(case: MuteCase) -> list[Directive]:
    enforcement = case.enforcement
    if isinstance(enforcement, RoleMute):
        return [GrantRole(case.guild_id, user_id=case.user_id, role_id=enforcement.role_id, reason=case.reason)]
    return [SetTimeout(case.guild_id, user_id=case.user_id, until=case.until, reason=case.reason)]


def unmute_directives(case: MuteCase) -> list[Directive]:
    reason = case.unmute_reason or ""
    enforcement = case.enforcement
    if isinstance(enforcement, RoleMute):
        return [RevokeRole(case.guild_id, user_id=case.user_id, role_id=enforcement.role_id, reason=reason)]
    return [ClearTimeout(case.guild_id, user_id=case.user_id, reason=reason)]


class MuteEngine:
    def __init__(
        self,
        db: DatabaseManager,
        audit_log: AuditLog,
        authorizer: CapabilityAuthorizer,
        registry: ResourceRegistry,
    ) -> None:
        self.db = db
        self.audit = audit_log
        self.authorizer = authorizer
        self.registry = registry

    @property
    def max_timeout(self) -> timedelta:
        return timedelta(days=settings.mute_max_timeout_days)

    async def _resolve_method(self, guild_id: int) -> MuteEnforcement:
        handle = await self.registry.resolve_optional(guild_id, MUTE_ROLE)
        if handle is not None:
            if handle.kind is ResourceKind.ROLE:
                return RoleMute(handle.external_id)
            logger.warning(f"Registry entry '{MUTE_ROLE}' in guild {guild_id} is a {handle.kind.value}, ignoring it")

        config = await self.get_config(guild_id)
        if config.role_id is not None:
            return RoleMute(config.role_id)
        return PlatformTimeout()

    def _check_timeout_window(self, until: datetime | None, now: datetime) -> None:
        if until is None:
            raise ValidationError("A platform timeout needs a finite duration")
        if until - now > self.max_timeout:
            raise ValidationError(f"A platform timeout may last at most {settings.mute_max_timeout_days} days")

    async def _find_active(self, session: AsyncSession, guild_id: int, user_id: int) -> MuteCase | None:
        result = await session.execute(
            select(MuteCase)
            .where(MuteCase.guild_id == guild_id, MuteCase.user_id == user_id, MuteCase.unmuted_at.is_(None))
            .order_by(MuteCase.id.desc())
            .limit(1)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def _lift(
        self,
        session: AsyncSession,
        case: MuteCase,
        actor_id: int | None,
        reason: str,
        now: datetime,
    ) -> bool:
        """Stamp the lift unless another worker got there first."""
        result = await session.execute(
            update(MuteCase)
            .where(MuteCase.id == case.id, MuteCase.unmuted_at.is_(None))
            .values(unmuted_at=now, unmuted_by=actor_id, unmute_reason=reason)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        await session.refresh(case)
        return True

    async def apply_mute(
        self,
        guild_id: int,
        user_id: int,
        moderator: Actor,
        reason: str,
        evidence: str | None = None,
        duration: timedelta | None = None,
        method: MuteEnforcement | None = None,
        now: datetime | None = None,
    ) -> MuteCase:
        """
        Open a mute for a member. ``duration=None`` mutes indefinitely.

        Raises:
            Conflict: the member already has an active mute
            ValidationError: blank reason, non-positive duration, or a timeout outside the platform limits
        """
        if not reason or not reason.strip():
            raise ValidationError("Mute reason must not be blank")
        if duration is not None and duration <= timedelta(0):
            raise ValidationError("Mute duration must be positive")

        await self.authorizer.require(guild_id, moderator, MUTE_APPLY)
        now = ensure_utc(now) or utcnow()
        until = now + duration if duration is not None else None

        if method is None:
            method = await self._resolve_method(guild_id)
        if isinstance(method, PlatformTimeout):
            self._check_timeout_window(until, now)

        async with self.db.session() as session:
            await advisory_lock(session, "mute", guild_id, user_id)

            active = await self._find_active(session, guild_id, user_id)
            if active is not None:
                raise Conflict(f"User {user_id} already has an active mute (case #{active.id}) in guild {guild_id}")

            case = MuteCase(
                guild_id=guild_id,
                user_id=user_id,
                moderator_id=moderator.user_id or 0,
                reason=reason.strip(),
                evidence=evidence,
                created_at=now,
                until=until,
            )
            case.enforcement = method
            session.add(case)
            await session.flush()

            await self.audit.record(
                session,
                guild_id,
                moderator.user_id,
                audit.MUTE_APPLIED,
                {"case_id": case.id, "user_id": user_id, "method": case.method, "role_id": case.role_id,
                 "until": until.isoformat() if until else None},
            )

        logger.info(
            f"Muted user {user_id} in guild {guild_id} via {case.method} "
            f"for {human_duration(duration)} (case #{case.id})"
        )
        return case

    async def extend_mute(
        self,
        guild_id: int,
        user_id: int,
        new_until: datetime | None,
        actor: Actor,
        now: datetime | None = None,
    ) -> MuteCase:
        """Move the expiry of the active mute. ``None`` makes a role mute indefinite."""
        await self.authorizer.require(guild_id, actor, MUTE_APPLY)
        now = ensure_utc(now) or utcnow()
        new_until = ensure_utc(new_until)
        if new_until is not None and new_until <= now:
            raise ValidationError("The new expiry must be in the future")

        async with self.db.session() as session:
            await advisory_lock(session, "mute", guild_id, user_id)

            case = await self._find_active(session, guild_id, user_id)
            if case is None:
                raise NotFound(f"User {user_id} has no active mute in guild {guild_id}")
            if isinstance(case.enforcement, PlatformTimeout):
                self._check_timeout_window(new_until, now)

            previous = case.until
            case.until = new_until

            await self.audit.record(
                session,
                guild_id,
                actor.user_id,
                audit.MUTE_EXTENDED,
                {"case_id": case.id, "user_id": user_id,
                 "previous_until": previous.isoformat() if previous else None,
                 "until": new_until.isoformat() if new_until else None},
            )

        logger.info(f"Extended mute #{case.id} of user {user_id} in guild {guild_id} to {new_until}")
        return case

    async def lift_mute(
        self,
        guild_id: int,
        user_id: int,
        actor: Actor,
        reason: str,
        now: datetime | None = None,
    ) -> MuteCase:
        await self.authorizer.require(guild_id, actor, MUTE_LIFT)
        now = ensure_utc(now) or utcnow()
        reason = (reason or "").strip() or "lifted"

        async with self.db.session() as session:
            await advisory_lock(session, "mute", guild_id, user_id)

            case = await self._find_active(session, guild_id, user_id)
            if case is None or not await self._lift(session, case, actor.user_id, reason, now):
                raise NotFound(f"User {user_id} has no active mute in guild {guild_id}")

            await self.audit.record(
                session,
                guild_id,
                actor.user_id,
                audit.MUTE_LIFTED,
                {"case_id": case.id, "user_id": user_id, "reason": reason},
            )

        logger.info(f"Lifted mute #{case.id} of user {user_id} in guild {guild_id}")
        return case

    async def sweep_expired(self, now: datetime | None = None, limit: int | None = None) -> list[MuteCase]:
        """
        Lift every active mute whose expiry has passed, as the system actor.

        Safe to run from several workers at once: each lift is conditioned on
        the case still being active, so a case is returned by exactly one sweep.
        The caller reconciles platform state with ``unmute_directives``.
        """
        now = ensure_utc(now) or utcnow()
        if limit is None:
            limit = settings.sweep_batch_size
        lifted: list[MuteCase] = []

        async with self.db.session() as session:
            query = (
                select(MuteCase)
                .where(MuteCase.unmuted_at.is_(None), MuteCase.until.is_not(None), MuteCase.until <= now)
                .order_by(MuteCase.until, MuteCase.id)
                .limit(limit)
            )
            if dialect_of(session) == "postgresql":
                query = query.with_for_update(skip_locked=True)
            result = await session.execute(query)

            for case in result.scalars().all():
                if not await self._lift(session, case, SYSTEM.user_id, EXPIRED_REASON, now):
                    logger.debug(f"Mute #{case.id} was already lifted, skipping")
                    continue
                await self.audit.record(
                    session,
                    case.guild_id,
                    SYSTEM.user_id,
                    audit.MUTE_LIFTED,
                    {"case_id": case.id, "user_id": case.user_id, "reason": EXPIRED_REASON},
                )
                lifted.append(case)

        if lifted:
            logger.info(f"Mute sweep lifted {len(lifted)} expired case(s)")
        return lifted

    async def get_active(self, guild_id: int, user_id: int) -> MuteCase | None:
        async with self.db.session() as session:
            return await self._find_active(session, guild_id, user_id)

    async def history(self, guild_id: int, user_id: int, limit: int = 10) -> list[MuteCase]:
        async with self.db.session() as session:
            result = await session.execute(
                select(MuteCase)
                .where(MuteCase.guild_id == guild_id, MuteCase.user_id == user_id)
                .order_by(MuteCase.created_at.desc(), MuteCase.id.desc())
                .limit(limit)
            )
            return list(result.scalars())

    async def get_config(self, guild_id: int) -> MuteSettings:
        async with self.db.session() as session:
            row = await session.get(MuteConfig, guild_id)
            try:
                return MuteSettings.model_validate(row.cfg if row and row.cfg else {})
            except pydantic.ValidationError as e:
                logger.warning(f"Guild {guild_id} mute config is invalid, using defaults: {e}")
                return MuteSettings()

    async def update_config(self, guild_id: int, actor: Actor, **changes: Any) -> MuteSettings:
        await self.authorizer.require(guild_id, actor, MUTE_CONFIGURE)

        async with self.db.session() as session:
            await insert_ignore(session, MuteConfig, {"guild_id": guild_id, "cfg": {}}, index_elements=("guild_id",))
            result = await session.execute(select(MuteConfig).where(MuteConfig.guild_id == guild_id).with_for_update())
            row = result.scalar_one()

            try:
                config = MuteSettings.model_validate({**(row.cfg or {}), **changes})
            except pydantic.ValidationError as e:
                raise ValidationError(f"Invalid mute config: {e}") from e

            # Reassign so the JSON column is flagged dirty
            row.cfg = config.model_dump(exclude_none=True)

            await self.audit.record(session, guild_id, actor.user_id, audit.MUTE_CONFIG_UPDATED, dict(row.cfg))

        logger.info(f"Updated mute config for guild {guild_id}: {changes}")
        return config
