"""Tests for warn points, decay and escalation."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from tss.core.directives import BanMember, KickMember, SetTimeout
from tss.core.errors import AuthorizationDenied, ValidationError
from tss.database.models import WarnConfig, WarnPoints
from tss.engines.warn import Escalation, EscalationAction, WarnEngine, WarnPolicy, apply_decay

TARGET = 222222222
T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class TestApplyDecay:
    """Test the pure decay function."""

    def test_no_anchor_means_no_decay(self):
        assert apply_decay(5, None, T0, 30, 1) == (5, None)

    def test_partial_interval_keeps_total_and_anchor(self):
        assert apply_decay(5, T0, T0 + timedelta(days=29, hours=23), 30, 1) == (5, T0)

    def test_whole_intervals_only(self):
        total, anchor = apply_decay(9, T0, T0 + timedelta(days=61), 30, 3)

        assert total == 3
        assert anchor == T0 + timedelta(days=60)

    def test_clamped_at_zero(self):
        total, _ = apply_decay(2, T0, T0 + timedelta(days=365), 30, 1)

        assert total == 0

    def test_zero_amount_disables_decay(self):
        assert apply_decay(4, T0, T0 + timedelta(days=90), 30, 0) == (4, T0)


class TestWarnPolicy:
    """Test threshold evaluation."""

    def test_highest_tier_wins(self):
        policy = WarnPolicy()

        assert policy.evaluate(2) is None
        assert policy.evaluate(3).action is EscalationAction.TIMEOUT
        assert policy.evaluate(3).duration == timedelta(hours=12)
        assert policy.evaluate(7).action is EscalationAction.KICK
        assert policy.evaluate(9).action is EscalationAction.BAN
        assert policy.evaluate(50).action is EscalationAction.BAN

    def test_equal_thresholds_pick_the_heaviest(self):
        policy = WarnPolicy(timeout_pts=5, kick_pts=5, ban_pts=5)

        assert policy.evaluate(5).action is EscalationAction.BAN


class TestWarnEngine:
    """Test issuing warns against the store."""

    @pytest.mark.asyncio
    async def test_points_sum_without_decay(self, warns, guild, moderator):
        for points in (1, 2, 3, 1):
            await warns.issue_warn(guild, TARGET, moderator, points, "spam", now=T0)

        assert await warns.get_points(guild, TARGET, now=T0) == 7

    @pytest.mark.asyncio
    async def test_issue_returns_case_and_total(self, warns, guild, moderator):
        result = await warns.issue_warn(guild, TARGET, moderator, 2, "  rude  ", evidence="msg:1", now=T0)

        assert result.case.id is not None
        assert result.case.points == 2
        assert result.case.reason == "rude"
        assert result.case.evidence == "msg:1"
        assert result.case.moderator_id == moderator.user_id
        assert result.total_points == 2
        assert result.escalation is None

    @pytest.mark.asyncio
    async def test_decay_over_sixty_one_days(self, db, audit_log, authorizer, guild, moderator):
        warns = WarnEngine(db, audit_log, authorizer, decay_amount=3)
        for _ in range(3):
            await warns.issue_warn(guild, TARGET, moderator, 3, "spam", now=T0)

        assert await warns.get_points(guild, TARGET, now=T0 + timedelta(days=61)) == 3
        assert await warns.get_points(guild, TARGET, now=T0 + timedelta(days=400)) == 0

    @pytest.mark.asyncio
    async def test_decay_persisted_only_after_whole_interval(self, db, warns, guild, moderator):
        await warns.issue_warn(guild, TARGET, moderator, 4, "spam", now=T0)

        await warns.get_points(guild, TARGET, now=T0 + timedelta(days=10))
        async with db.session() as session:
            row = await session.get(WarnPoints, (guild, TARGET))
            assert (row.total_points, row.last_decay_at) == (4, T0)

        assert await warns.get_points(guild, TARGET, now=T0 + timedelta(days=31)) == 3
        async with db.session() as session:
            row = await session.get(WarnPoints, (guild, TARGET))
            assert (row.total_points, row.last_decay_at) == (3, T0 + timedelta(days=30))

    @pytest.mark.asyncio
    async def test_anchor_restarts_when_fully_decayed(self, warns, guild, moderator):
        await warns.issue_warn(guild, TARGET, moderator, 1, "spam", now=T0)
        await warns.issue_warn(guild, TARGET, moderator, 1, "spam", now=T0 + timedelta(days=45))

        assert await warns.get_points(guild, TARGET, now=T0 + timedelta(days=74)) == 1
        assert await warns.get_points(guild, TARGET, now=T0 + timedelta(days=75)) == 0

    @pytest.mark.asyncio
    async def test_decay_applied_before_new_points(self, warns, guild, moderator):
        await warns.issue_warn(guild, TARGET, moderator, 5, "spam", now=T0)
        result = await warns.issue_warn(guild, TARGET, moderator, 1, "spam", now=T0 + timedelta(days=60))

        assert result.total_points == 4

    @pytest.mark.asyncio
    async def test_unknown_user_has_zero_points(self, warns, guild):
        assert await warns.get_points(guild, TARGET) == 0

    @pytest.mark.asyncio
    async def test_threshold_two_to_three_is_timeout(self, warns, guild, moderator):
        first = await warns.issue_warn(guild, TARGET, moderator, 2, "spam", now=T0)
        second = await warns.issue_warn(guild, TARGET, moderator, 1, "spam", now=T0)

        assert first.escalation is None
        assert second.total_points == 3
        assert second.escalation.action is EscalationAction.TIMEOUT

    @pytest.mark.asyncio
    async def test_threshold_five_to_seven_is_kick(self, warns, guild, moderator):
        await warns.issue_warn(guild, TARGET, moderator, 5, "spam", now=T0)
        result = await warns.issue_warn(guild, TARGET, moderator, 2, "spam", now=T0)

        assert result.total_points == 7
        assert result.escalation.action is EscalationAction.KICK

    @pytest.mark.asyncio
    @pytest.mark.parametrize("points", [0, -1, True, 1.5, "2"])
    async def test_invalid_points_rejected(self, warns, guild, moderator, points):
        with pytest.raises(ValidationError):
            await warns.issue_warn(guild, TARGET, moderator, points, "spam")

        assert await warns.list_cases(guild, TARGET) == []

    @pytest.mark.asyncio
    async def test_blank_reason_rejected(self, warns, guild, moderator):
        with pytest.raises(ValidationError):
            await warns.issue_warn(guild, TARGET, moderator, 1, "   ")

    @pytest.mark.asyncio
    async def test_unauthorized_moderator(self, warns, guild, bystander):
        with pytest.raises(AuthorizationDenied):
            await warns.issue_warn(guild, TARGET, bystander, 1, "spam")

        assert await warns.get_points(guild, TARGET) == 0

    @pytest.mark.asyncio
    async def test_misconfigured_thresholds_fall_back_to_defaults(self, db, warns, guild, moderator):
        async with db.session() as session:
            session.add(WarnConfig(guild_id=guild, decay_days=30, timeout_pts=8, timeout_hours=1, kick_pts=2, ban_pts=4))

        result = await warns.issue_warn(guild, TARGET, moderator, 3, "spam", now=T0)

        assert result.escalation.action is EscalationAction.TIMEOUT
        assert result.escalation.threshold == 3
        assert await warns.get_config(guild) == WarnPolicy()

    @pytest.mark.asyncio
    async def test_custom_config_is_used(self, warns, guild, moderator, admin):
        await warns.update_config(guild, admin, timeout_pts=2, kick_pts=4, ban_pts=6)

        result = await warns.issue_warn(guild, TARGET, moderator, 4, "spam", now=T0)

        assert result.escalation.action is EscalationAction.KICK

    @pytest.mark.asyncio
    async def test_issue_is_audited(self, warns, audit_log, guild, moderator):
        result = await warns.issue_warn(guild, TARGET, moderator, 3, "spam", now=T0)

        (event,) = await audit_log.recent(guild, event="warn.issued")
        assert event.actor_id == moderator.user_id
        assert event.payload["case_id"] == result.case.id
        assert event.payload["total_points"] == 3
        assert event.payload["escalation"] == "timeout"

    @pytest.mark.asyncio
    async def test_list_cases_newest_first_with_cursor(self, warns, guild, moderator):
        ids = []
        for day in range(5):
            result = await warns.issue_warn(guild, TARGET, moderator, 1, f"warn {day}", now=T0 + timedelta(days=day))
            ids.append(result.case.id)

        first_page = await warns.list_cases(guild, TARGET, limit=2)
        second_page = await warns.list_cases(guild, TARGET, limit=2, before=first_page[-1].id)

        assert [case.id for case in first_page] == [ids[4], ids[3]]
        assert [case.id for case in second_page] == [ids[2], ids[1]]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [0, 101])
    async def test_list_cases_limit_bounds(self, warns, guild, limit):
        with pytest.raises(ValidationError):
            await warns.list_cases(guild, TARGET, limit=limit)


class TestWarnConfig:
    """Test config updates."""

    @pytest.mark.asyncio
    async def test_update_and_read_back(self, warns, audit_log, guild, admin):
        policy = await warns.update_config(guild, admin, decay_days=14, timeout_hours=6)

        assert policy.decay_days == 14
        assert await warns.get_config(guild) == policy
        (event,) = await audit_log.recent(guild, event="warn.config_updated")
        assert event.payload["decay_days"] == 14

    @pytest.mark.asyncio
    async def test_descending_thresholds_rejected(self, db, warns, guild, admin):
        with pytest.raises(ValidationError):
            await warns.update_config(guild, admin, kick_pts=1)

        async with db.session() as session:
            assert (await session.execute(select(WarnConfig))).scalar_one_or_none() is None

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, warns, guild, admin):
        with pytest.raises(ValidationError):
            await warns.update_config(guild, admin, mute_pts=3)

    @pytest.mark.asyncio
    async def test_update_needs_capability(self, warns, guild, moderator):
        with pytest.raises(AuthorizationDenied):
            await warns.update_config(guild, moderator, decay_days=10)


class TestEscalate:
    """Test the explicit follow-up step."""

    @pytest.mark.asyncio
    async def test_timeout_directive(self, warns, guild, admin):
        escalation = Escalation(EscalationAction.TIMEOUT, 3, timedelta(hours=12))

        (directive,) = await warns.escalate(guild, TARGET, escalation, admin, "3 points", now=T0)

        assert isinstance(directive, SetTimeout)
        assert directive.user_id == TARGET
        assert directive.until == T0 + timedelta(hours=12)

    @pytest.mark.asyncio
    async def test_kick_and_ban_directives(self, warns, guild, admin):
        kick = await warns.escalate(guild, TARGET, Escalation(EscalationAction.KICK, 6), admin, "")
        ban = await warns.escalate(guild, TARGET, Escalation(EscalationAction.BAN, 9), admin, "")

        assert isinstance(kick[0], KickMember)
        assert isinstance(ban[0], BanMember)
        assert kick[0].reason == "Reached 6 warn points"

    @pytest.mark.asyncio
    async def test_dry_run_is_not_audited(self, warns, audit_log, guild, admin):
        escalation = Escalation(EscalationAction.KICK, 6)

        await warns.escalate(guild, TARGET, escalation, admin, "preview", dry_run=True)
        assert await audit_log.recent(guild, event="warn.escalated") == []

        await warns.escalate(guild, TARGET, escalation, admin, "confirmed")
        (event,) = await audit_log.recent(guild, event="warn.escalated")
        assert event.payload["action"] == "kick"

    @pytest.mark.asyncio
    async def test_escalate_needs_capability(self, warns, guild, moderator):
        with pytest.raises(AuthorizationDenied):
            await warns.escalate(guild, TARGET, Escalation(EscalationAction.BAN, 9), moderator, "ban")
