"""Tests for antinuke incidents, containment and rollback."""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from config.settings import settings
from tss.core.directives import (
    ChannelSnapshot,
    DeleteChannel,
    DeleteRole,
    GuildSnapshot,
    RestoreChannel,
    RestoreRole,
    RoleSnapshot,
    SuspendActor,
)
from tss.core.errors import AuthorizationDenied, Conflict, NotFound, ValidationError
from tss.database.models import AntinukeAction, AntinukeIncident
from tss.engines.antinuke import AntinukeEngine, BurstLevel, GuardState, plan_restore

OFFENDER = 555555555
T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

MEMBERS = RoleSnapshot(id=1, name="members", position=1)
STAFF = RoleSnapshot(id=2, name="staff", position=2, permissions=8)
CATEGORY = ChannelSnapshot(id=10, name="community", kind="category", position=0)
GENERAL = ChannelSnapshot(id=11, name="general", position=0, parent_id=10)
SNAPSHOT = GuildSnapshot(roles=[MEMBERS, STAFF], channels=[GENERAL, CATEGORY])


async def action_kinds(db, incident_id):
    async with db.session() as session:
        result = await session.execute(
            select(AntinukeAction.kind).where(AntinukeAction.incident_id == incident_id).order_by(AntinukeAction.id)
        )
        return list(result.scalars())


@pytest_asyncio.fixture
async def enrolled(antinuke, guild):
    await antinuke.enroll(guild)
    return guild


class TestEnrollment:
    """Test opting guilds in and out."""

    @pytest.mark.asyncio
    async def test_enroll_is_idempotent(self, antinuke, guild):
        assert await antinuke.enroll(guild) is True
        assert await antinuke.enroll(guild) is False
        assert await antinuke.is_enrolled(guild)

    @pytest.mark.asyncio
    async def test_enroll_needs_capability(self, antinuke, guild, moderator):
        with pytest.raises(AuthorizationDenied):
            await antinuke.enroll(guild, moderator)

    @pytest.mark.asyncio
    async def test_unenroll_removes_incidents(self, db, antinuke, enrolled):
        incident = await antinuke.record_suspicious_burst(enrolled, "mass ban", now=T0)
        await antinuke.snapshot(incident.id, SNAPSHOT, now=T0)
        await antinuke.record_action(incident.id, "revoke-role", now=T0)

        await antinuke.unenroll(enrolled)

        assert not await antinuke.is_enrolled(enrolled)
        async with db.session() as session:
            assert (await session.execute(select(func.count()).select_from(AntinukeIncident))).scalar_one() == 0
            assert (await session.execute(select(func.count()).select_from(AntinukeAction))).scalar_one() == 0

    @pytest.mark.asyncio
    async def test_unenroll_unknown_guild(self, antinuke, guild):
        with pytest.raises(NotFound):
            await antinuke.unenroll(guild)

    @pytest.mark.asyncio
    async def test_burst_needs_enrollment(self, antinuke, guild):
        with pytest.raises(NotFound):
            await antinuke.record_suspicious_burst(guild, "mass ban")


class TestGuardState:
    """Test the derived guard state."""

    @pytest.mark.asyncio
    async def test_state_transitions(self, antinuke, guild):
        assert await antinuke.guard_state(guild) is GuardState.DISABLED

        await antinuke.enroll(guild)
        assert await antinuke.guard_state(guild) is GuardState.ARMED

        incident = await antinuke.record_suspicious_burst(guild, "mass ban", now=T0)
        assert await antinuke.guard_state(guild) is GuardState.INCIDENT_OPEN

        await antinuke.close_incident(incident.id, now=T0)
        assert await antinuke.guard_state(guild) is GuardState.ARMED


class TestIncidents:
    """Test opening incidents and appending containment steps."""

    @pytest.mark.asyncio
    async def test_one_open_incident_per_guild(self, db, antinuke, audit_log, enrolled):
        first = await antinuke.record_suspicious_burst(enrolled, "mass ban", offender_id=OFFENDER, now=T0)
        second = await antinuke.record_suspicious_burst(enrolled, "more bans", offender_id=OFFENDER, now=T0)

        assert second.id == first.id
        assert await action_kinds(db, first.id) == ["burst"]
        assert len(await audit_log.recent(enrolled, event="antinuke.incident_opened")) == 1
        (appended,) = await audit_log.recent(enrolled, event="antinuke.burst_appended")
        assert appended.payload["reason"] == "more bans"

    @pytest.mark.asyncio
    async def test_new_incident_after_close(self, antinuke, enrolled):
        first = await antinuke.record_suspicious_burst(enrolled, "mass ban", now=T0)
        await antinuke.close_incident(first.id, now=T0)

        second = await antinuke.record_suspicious_burst(enrolled, "mass ban", now=T0)

        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_blank_reason_rejected(self, antinuke, enrolled):
        with pytest.raises(ValidationError):
            await antinuke.record_suspicious_burst(enrolled, "  ")

    @pytest.mark.asyncio
    async def test_containment_needs_snapshot_first(self, db, antinuke, enrolled):
        incident = await antinuke.record_suspicious_burst(enrolled, "mass ban", now=T0)

        with pytest.raises(ValidationError):
            await antinuke.record_action(incident.id, "revoke-role")

        assert await action_kinds(db, incident.id) == []

    @pytest.mark.asyncio
    async def test_actions_keep_insertion_order(self, db, antinuke, enrolled, admin):
        incident = await antinuke.record_suspicious_burst(enrolled, "mass ban", now=T0)
        await antinuke.snapshot(incident.id, SNAPSHOT, now=T0)

        for kind in ("revoke-role", "lock-channel", "Kick"):
            await antinuke.record_action(incident.id, kind, now=T0)
        await antinuke.approve(incident.id, admin, now=T0)
        await antinuke.close_incident(incident.id, now=T0)

        assert await action_kinds(db, incident.id) == ["revoke-role", "lock-channel", "kick", "approve", "close"]

    @pytest.mark.asyncio
    async def test_snapshot_accepts_plain_dicts(self, antinuke, enrolled):
        incident = await antinuke.record_suspicious_burst(enrolled, "mass ban", now=T0)

        row = await antinuke.snapshot(incident.id, {"roles": [{"id": 1, "name": "members"}], "emojis": [5]})

        assert row.data["roles"][0]["name"] == "members"
        assert row.data["emojis"] == [5]

    @pytest.mark.asyncio
    async def test_invalid_snapshot_rejected(self, antinuke, enrolled):
        incident = await antinuke.record_suspicious_burst(enrolled, "mass ban", now=T0)

        with pytest.raises(ValidationError):
            await antinuke.snapshot(incident.id, {"roles": [{"name": "no id"}]})

    @pytest.mark.asyncio
    async def test_closed_incident_rejects_containment(self, antinuke, enrolled):
        incident = await antinuke.record_suspicious_burst(enrolled, "mass ban", now=T0)
        await antinuke.snapshot(incident.id, SNAPSHOT, now=T0)
        await antinuke.close_incident(incident.id, now=T0)

        with pytest.raises(Conflict):
            await antinuke.record_action(incident.id, "revoke-role")
        with pytest.raises(Conflict):
            await antinuke.snapshot(incident.id, SNAPSHOT)
        with pytest.raises(Conflict):
            await antinuke.close_incident(incident.id)

    @pytest.mark.asyncio
    async def test_review_allowed_after_close(self, db, antinuke, enrolled, admin):
        incident = await antinuke.record_suspicious_burst(enrolled, "mass ban", now=T0)
        await antinuke.snapshot(incident.id, SNAPSHOT, now=T0)
        await antinuke.close_incident(incident.id, now=T0)

        await antinuke.approve(incident.id, admin)
        await antinuke.rollback(incident.id, admin)

        assert await action_kinds(db, incident.id) == ["close", "approve", "rollback"]

    @pytest.mark.asyncio
    async def test_unknown_incident(self, antinuke, enrolled):
        with pytest.raises(NotFound):
            await antinuke.record_action(999, "revoke-role")

    @pytest.mark.asyncio
    async def test_capabilities_per_kind(self, antinuke, enrolled, moderator):
        incident = await antinuke.record_suspicious_burst(enrolled, "mass ban", now=T0)
        await antinuke.snapshot(incident.id, SNAPSHOT, now=T0)

        with pytest.raises(AuthorizationDenied):
            await antinuke.record_action(incident.id, "revoke-role", moderator)
        with pytest.raises(AuthorizationDenied):
            await antinuke.approve(incident.id, moderator)
        with pytest.raises(AuthorizationDenied):
            await antinuke.rollback(incident.id, moderator)


class TestBurstHandling:
    """Test burst assessment and the gateway-facing entry point."""

    def test_assess_levels(self, antinuke):
        assert antinuke.assess_burst(4, 10) is BurstLevel.NONE
        assert antinuke.assess_burst(5, 10) is BurstLevel.INCIDENT
        assert antinuke.assess_burst(20, 10) is BurstLevel.THROTTLE

    def test_explicit_zero_overrides_settings(self, db, audit_log, authorizer):
        engine = AntinukeEngine(db, audit_log, authorizer, threshold=0, cooldown_minutes=0)

        assert engine.threshold == 0
        assert engine.cooldown == timedelta(0)
        assert engine.hard_ceiling == settings.antinuke_hard_ceiling
        assert engine.assess_burst(0, 10) is BurstLevel.INCIDENT

    def test_longer_windows_are_scaled_down(self, antinuke):
        assert antinuke.assess_burst(9, 20) is BurstLevel.NONE
        assert antinuke.assess_burst(10, 20) is BurstLevel.INCIDENT
        assert antinuke.assess_burst(5, 2) is BurstLevel.INCIDENT

    @pytest.mark.parametrize("count, window", [(-1, 10), (5, 0)])
    def test_invalid_input(self, antinuke, count, window):
        with pytest.raises(ValidationError):
            antinuke.assess_burst(count, window)

    @pytest.mark.asyncio
    async def test_below_threshold_does_nothing(self, antinuke, enrolled):
        response = await antinuke.handle_burst(enrolled, OFFENDER, "ban", 3, 10, now=T0)

        assert response.level is BurstLevel.NONE
        assert response.incident is None
        assert await antinuke.guard_state(enrolled) is GuardState.ARMED

    @pytest.mark.asyncio
    async def test_threshold_opens_incident(self, antinuke, enrolled):
        response = await antinuke.handle_burst(enrolled, OFFENDER, "ban", 5, 10, now=T0)

        assert response.level is BurstLevel.INCIDENT
        assert response.incident is not None
        assert response.directives == []
        assert str(OFFENDER) in response.incident.reason

    @pytest.mark.asyncio
    async def test_hard_ceiling_throttles_offender(self, db, antinuke, enrolled):
        first = await antinuke.handle_burst(enrolled, OFFENDER, "channel_delete", 5, 10, now=T0)
        response = await antinuke.handle_burst(enrolled, OFFENDER, "channel_delete", 20, 10, now=T0)

        assert response.level is BurstLevel.THROTTLE
        assert response.incident.id == first.incident.id
        assert response.directives == [
            SuspendActor(enrolled, user_id=OFFENDER, reason=f"Antinuke incident #{first.incident.id}")
        ]
        assert await action_kinds(db, first.incident.id) == ["burst", "throttle-actor"]

    @pytest.mark.asyncio
    async def test_unenrolled_guild_is_only_assessed(self, antinuke, guild):
        response = await antinuke.handle_burst(guild, OFFENDER, "ban", 25, 10, now=T0)

        assert response.level is BurstLevel.THROTTLE
        assert response.incident is None
        assert response.directives == []


class TestRollback:
    """Test restorative directives."""

    def test_full_restore_order(self):
        directives = plan_restore(SNAPSHOT, None, 1, "rollback")

        assert [type(d) for d in directives] == [RestoreRole, RestoreRole, RestoreChannel, RestoreChannel]
        assert directives[2].channel == CATEGORY
        assert directives[3].channel == GENERAL
        assert all(d.exists is None for d in directives)

    def test_diff_against_current(self):
        current = GuildSnapshot(
            roles=[MEMBERS, STAFF.model_copy(update={"permissions": 0}), RoleSnapshot(id=3, name="nuker")],
            channels=[CATEGORY, ChannelSnapshot(id=12, name="spam")],
        )

        directives = plan_restore(SNAPSHOT, current, 1, "rollback")

        assert directives == [
            RestoreRole(1, role=STAFF, exists=True, reason="rollback"),
            RestoreChannel(1, channel=GENERAL, exists=False, reason="rollback"),
            DeleteChannel(1, channel_id=12, reason="rollback"),
            DeleteRole(1, role_id=3, reason="rollback"),
        ]

    def test_nothing_to_do_when_unchanged(self):
        assert plan_restore(SNAPSHOT, SNAPSHOT, 1, "rollback") == []

    @pytest.mark.asyncio
    async def test_rollback_uses_earliest_snapshot(self, antinuke, audit_log, enrolled, admin):
        incident = await antinuke.record_suspicious_burst(enrolled, "mass delete", now=T0)
        await antinuke.snapshot(incident.id, SNAPSHOT, now=T0)
        await antinuke.snapshot(incident.id, GuildSnapshot(), now=T0)

        directives = await antinuke.rollback(incident.id, admin)

        assert len(directives) == 4
        (event,) = await audit_log.recent(enrolled, event="antinuke.rollback")
        assert event.payload["kind"] == "rollback"
        assert event.payload["directives"] == 4

    @pytest.mark.asyncio
    async def test_rollback_with_current_state(self, antinuke, enrolled, admin):
        incident = await antinuke.record_suspicious_burst(enrolled, "mass delete", now=T0)
        await antinuke.snapshot(incident.id, SNAPSHOT, now=T0)

        directives = await antinuke.rollback(
            incident.id, admin, current={"roles": [MEMBERS.model_dump()], "channels": [CATEGORY.model_dump()]}
        )

        assert directives == [
            RestoreRole(enrolled, role=STAFF, exists=False, reason=f"Rollback of antinuke incident #{incident.id}"),
            RestoreChannel(
                enrolled, channel=GENERAL, exists=False, reason=f"Rollback of antinuke incident #{incident.id}"
            ),
        ]

    @pytest.mark.asyncio
    async def test_rollback_without_snapshot(self, antinuke, enrolled, admin):
        incident = await antinuke.record_suspicious_burst(enrolled, "mass delete", now=T0)

        with pytest.raises(NotFound):
            await antinuke.rollback(incident.id, admin)


class TestCooldown:
    """Test closing incidents that went quiet."""

    @pytest.mark.asyncio
    async def test_quiet_incident_closed_once(self, antinuke, audit_log, enrolled):
        incident = await antinuke.record_suspicious_burst(enrolled, "mass ban", now=T0)

        assert await antinuke.close_quiet_incidents(now=T0 + timedelta(minutes=14)) == []
        assert await antinuke.close_quiet_incidents(now=T0 + timedelta(minutes=16)) == [incident.id]
        assert await antinuke.close_quiet_incidents(now=T0 + timedelta(minutes=30)) == []

        (event,) = await audit_log.recent(enrolled, event="antinuke.closed")
        assert event.payload["reason"] == "cooldown"
        assert event.actor_id is None

    @pytest.mark.asyncio
    async def test_recent_activity_delays_close(self, antinuke, enrolled):
        incident = await antinuke.record_suspicious_burst(enrolled, "mass ban", now=T0)
        await antinuke.snapshot(incident.id, SNAPSHOT, now=T0 + timedelta(minutes=5))
        await antinuke.record_action(incident.id, "revoke-role", now=T0 + timedelta(minutes=10))

        assert await antinuke.close_quiet_incidents(now=T0 + timedelta(minutes=20)) == []
        assert await antinuke.close_quiet_incidents(now=T0 + timedelta(minutes=26)) == [incident.id]
        assert await antinuke.guard_state(enrolled) is GuardState.ARMED


class TestListIncidents:
    """Test incident summaries."""

    @pytest.mark.asyncio
    async def test_summaries_newest_first(self, antinuke, enrolled, moderator):
        first = await antinuke.record_suspicious_burst(enrolled, "mass ban", now=T0)
        await antinuke.snapshot(incident_id=first.id, state=SNAPSHOT, now=T0)
        await antinuke.close_incident(first.id, now=T0)
        second = await antinuke.record_suspicious_burst(enrolled, "mass kick", now=T0)

        summaries = await antinuke.list_incidents(enrolled, actor=moderator)

        assert [s.id for s in summaries] == [second.id, first.id]
        assert summaries[0].to_dict()["status"] == "open"
        assert summaries[1].closed
        assert summaries[1].snapshot_count == 1
        assert summaries[1].action_count == 1
        assert summaries[1].last_action == "close"

    @pytest.mark.asyncio
    async def test_needs_capability(self, antinuke, enrolled, bystander):
        with pytest.raises(AuthorizationDenied):
            await antinuke.list_incidents(enrolled, actor=bystander)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [0, 101])
    async def test_limit_bounds(self, antinuke, enrolled, limit):
        with pytest.raises(ValidationError):
            await antinuke.list_incidents(enrolled, limit=limit)
