from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Text,
    TypeDecorator,
    func,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from ..core.utils import ensure_utc, utcnow

SCHEMA = "tss"

# BIGSERIAL on PostgreSQL, INTEGER PRIMARY KEY (rowid alias) on SQLite
BigSerial = BigInteger().with_variant(Integer, "sqlite")
JsonDocument = JSON().with_variant(JSONB(), "postgresql")
RoleIdArray = JSON().with_variant(ARRAY(BigInteger), "postgresql")


class UTCDateTime(TypeDecorator):
    """TIMESTAMPTZ that always round-trips as an aware UTC datetime."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        return ensure_utc(value)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        return ensure_utc(value)


class Base(DeclarativeBase):
    metadata = MetaData(schema=SCHEMA)


class Guild(Base):
    __tablename__ = "guilds"

    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(Text)
    modlog_channel: Mapped[int | None] = mapped_column(BigInteger)
    admin_role_ids: Mapped[list[int]] = mapped_column(RoleIdArray, default=list)
    moderator_role_ids: Mapped[list[int]] = mapped_column(RoleIdArray, default=list)
    created_at: Mapped[datetime | None] = mapped_column(UTCDateTime, default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, server_default=func.now()
    )


class ResourceEntry(Base):
    __tablename__ = "resource_registry"

    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    key: Mapped[str] = mapped_column(Text, primary_key=True)
    kind: Mapped[str] = mapped_column(Text)
    discord_id: Mapped[int] = mapped_column(BigInteger)
    meta: Mapped[dict[str, Any]] = mapped_column(JsonDocument, default=dict)
    updated_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "kind IN ('ROLE','CHANNEL','WEBHOOK','EMOJI','CATEGORY')",
            name="resource_registry_kind_check",
        ),
    )


class RoleCapability(Base):
    __tablename__ = "role_capabilities"

    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    role_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    capability: Mapped[str] = mapped_column(Text, primary_key=True)
    granted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, default=utcnow, server_default=func.now())


class AuditEvent(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(BigSerial, primary_key=True)
    guild_id: Mapped[int] = mapped_column(BigInteger)
    actor_id: Mapped[int | None] = mapped_column(BigInteger)
    event: Mapped[str] = mapped_column(Text)
    payload: Mapped[dict[str, Any] | None] = mapped_column(JsonDocument)
    created_at: Mapped[datetime | None] = mapped_column(UTCDateTime, default=utcnow, server_default=func.now())


class WarnConfig(Base):
    __tablename__ = "warn_config"

    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    decay_days: Mapped[int] = mapped_column(Integer, default=30, server_default="30")
    timeout_pts: Mapped[int] = mapped_column(Integer, default=3, server_default="3")
    timeout_hours: Mapped[int] = mapped_column(Integer, default=12, server_default="12")
    kick_pts: Mapped[int] = mapped_column(Integer, default=6, server_default="6")
    ban_pts: Mapped[int] = mapped_column(Integer, default=9, server_default="9")
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, server_default=func.now()
    )


class WarnCase(Base):
    __tablename__ = "warn_cases"

    id: Mapped[int] = mapped_column(BigSerial, primary_key=True)
    guild_id: Mapped[int] = mapped_column(BigInteger)
    user_id: Mapped[int] = mapped_column(BigInteger)
    moderator_id: Mapped[int] = mapped_column(BigInteger)
    points: Mapped[int] = mapped_column(Integer, default=1, server_default="1")
    reason: Mapped[str] = mapped_column(Text)
    evidence: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, server_default=func.now())

    __table_args__ = (
        CheckConstraint("points > 0", name="warn_cases_points_check"),
        Index("idx_warn_cases_guild_user", "guild_id", "user_id"),
    )


class WarnPoints(Base):
    __tablename__ = "warn_points"

    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    total_points: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    last_decay_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, server_default=func.now())

    __table_args__ = (Index("idx_warn_points_guild", "guild_id"),)


class MuteConfig(Base):
    __tablename__ = "mute_config"

    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    cfg: Mapped[dict[str, Any]] = mapped_column(JsonDocument, default=dict, server_default="{}")


@dataclass(frozen=True, slots=True)
class RoleMute:
    """Mute enforced by granting a dedicated role."""

    role_id: int
    method = "role"


@dataclass(frozen=True, slots=True)
class PlatformTimeout:
    """Mute enforced by the platform's native communication timeout."""

    method = "timeout"


MuteEnforcement = RoleMute | PlatformTimeout


class MuteCase(Base):
    __tablename__ = "mute_cases"

    id: Mapped[int] = mapped_column(BigSerial, primary_key=True)
    guild_id: Mapped[int] = mapped_column(BigInteger)
    user_id: Mapped[int] = mapped_column(BigInteger)
    moderator_id: Mapped[int] = mapped_column(BigInteger)
    reason: Mapped[str] = mapped_column(Text)
    evidence: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, server_default=func.now())
    until: Mapped[datetime | None] = mapped_column(UTCDateTime)
    unmuted_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    unmuted_by: Mapped[int | None] = mapped_column(BigInteger)
    unmute_reason: Mapped[str | None] = mapped_column(Text)
    method: Mapped[str] = mapped_column(Text, default="role", server_default="role")
    role_id: Mapped[int | None] = mapped_column(BigInteger)

    __table_args__ = (Index("idx_mute_cases_gid_until", "guild_id", "until"),)

    @property
    def enforcement(self) -> MuteEnforcement:
        if self.method == RoleMute.method and self.role_id is not None:
            return RoleMute(self.role_id)
        return PlatformTimeout()

    @enforcement.setter
    def enforcement(self, value: MuteEnforcement) -> None:
        self.method = value.method
        self.role_id = value.role_id if isinstance(value, RoleMute) else None

    @property
    def is_active(self) -> bool:
        return self.unmuted_at is None


class AntinukeGuild(Base):
    __tablename__ = "antinuke_guilds"

    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    created_at: Mapped[datetime | None] = mapped_column(UTCDateTime, default=utcnow, server_default=func.now())

    # Relationships
    incidents: Mapped[list["AntinukeIncident"]] = relationship(
        back_populates="guild", cascade="all, delete-orphan", passive_deletes=True
    )


class AntinukeIncident(Base):
    __tablename__ = "antinuke_incidents"

    id: Mapped[int] = mapped_column(BigSerial, primary_key=True)
    guild_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tss.antinuke_guilds.guild_id", ondelete="CASCADE")
    )
    reason: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime | None] = mapped_column(UTCDateTime, default=utcnow, server_default=func.now())

    # Relationships
    guild: Mapped["AntinukeGuild"] = relationship(back_populates="incidents")
    snapshots: Mapped[list["AntinukeSnapshot"]] = relationship(
        back_populates="incident",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="AntinukeSnapshot.id",
    )
    actions: Mapped[list["AntinukeAction"]] = relationship(
        back_populates="incident",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="AntinukeAction.id",
    )

    __table_args__ = (Index("idx_anti_incidents_guild", "guild_id"),)


class AntinukeSnapshot(Base):
    __tablename__ = "antinuke_snapshots"

    id: Mapped[int] = mapped_column(BigSerial, primary_key=True)
    incident_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tss.antinuke_incidents.id", ondelete="CASCADE")
    )
    data: Mapped[dict[str, Any]] = mapped_column(JsonDocument)
    created_at: Mapped[datetime | None] = mapped_column(UTCDateTime, default=utcnow, server_default=func.now())

    # Relationships
    incident: Mapped["AntinukeIncident"] = relationship(back_populates="snapshots")

    __table_args__ = (Index("idx_anti_snapshots_incident", "incident_id"),)


class AntinukeAction(Base):
    __tablename__ = "antinuke_actions"

    id: Mapped[int] = mapped_column(BigSerial, primary_key=True)
    incident_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tss.antinuke_incidents.id", ondelete="CASCADE")
    )
    actor_id: Mapped[int | None] = mapped_column(BigInteger)
    kind: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime | None] = mapped_column(UTCDateTime, default=utcnow, server_default=func.now())

    # Relationships
    incident: Mapped["AntinukeIncident"] = relationship(back_populates="actions")

    __table_args__ = (Index("idx_anti_actions_incident", "incident_id"),)


# Descending indexes need the mapped columns, so they are declared after the classes
Index("idx_warn_cases_guild_created", WarnCase.guild_id, WarnCase.created_at.desc())
Index("idx_mute_cases_gid_uid_created", MuteCase.guild_id, MuteCase.user_id, MuteCase.created_at.desc())
