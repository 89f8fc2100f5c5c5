"""Pytest configuration and shared fixtures."""

import logging
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import hikari
import pytest
import pytest_asyncio

from tss.audit.log import AuditLog
from tss.core.actor import Actor
from tss.database.manager import DatabaseManager
from tss.database.models import Guild
from tss.engines.antinuke import AntinukeEngine
from tss.engines.mute import MuteEngine
from tss.engines.warn import WarnEngine
from tss.permissions.manager import CapabilityAuthorizer, seed_role_grants
from tss.registry.manager import ResourceRegistry

# Disable logging during tests
logging.disable(logging.CRITICAL)

GUILD_ID = 123456789
ADMIN_ROLE = 900000001
MOD_ROLE = 900000002
MEMBER_ROLE = 900000003
MODERATOR_ID = 111111111
TARGET_ID = 222222222

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory SQLite store with every table created."""
    manager = DatabaseManager("sqlite+aiosqlite:///:memory:")
    await manager.create_tables()
    yield manager
    await manager.close()


@pytest_asyncio.fixture
async def file_db(tmp_path):
    """SQLite store in a file, so concurrent sessions get their own connections."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'tss.db'}")
    await manager.create_tables()
    yield manager
    await manager.close()


@pytest_asyncio.fixture
async def guild(db):
    """The test guild with one admin role and one moderator role."""
    async with db.session() as session:
        session.add(
            Guild(
                guild_id=GUILD_ID,
                name="Test Guild",
                admin_role_ids=[ADMIN_ROLE],
                moderator_role_ids=[MOD_ROLE],
            )
        )
        await session.flush()
        await seed_role_grants(session, GUILD_ID, [ADMIN_ROLE], [MOD_ROLE])
    return GUILD_ID


@pytest.fixture
def audit_log(db):
    return AuditLog(db)


@pytest.fixture
def authorizer(db, audit_log):
    # No caching, so grants made inside a test are seen immediately
    return CapabilityAuthorizer(db, audit_log, cache_ttl=0)


@pytest.fixture
def registry(db, audit_log, authorizer):
    return ResourceRegistry(db, audit_log, authorizer)


@pytest.fixture
def warns(db, audit_log, authorizer):
    return WarnEngine(db, audit_log, authorizer, decay_amount=1)


@pytest.fixture
def mutes(db, audit_log, authorizer, registry):
    return MuteEngine(db, audit_log, authorizer, registry)


@pytest.fixture
def antinuke(db, audit_log, authorizer):
    return AntinukeEngine(
        db,
        audit_log,
        authorizer,
        threshold=5,
        window_seconds=10,
        hard_ceiling=20,
        cooldown_minutes=15,
    )


@pytest.fixture
def moderator():
    return Actor.member(MODERATOR_ID, [MOD_ROLE])


@pytest.fixture
def admin():
    return Actor.member(333333333, [ADMIN_ROLE])


@pytest.fixture
def bystander():
    """A member without any capability."""
    return Actor.member(444444444, [MEMBER_ROLE])


@pytest.fixture
def mock_rest():
    """Mock hikari REST client."""
    rest = MagicMock(spec=hikari.api.RESTClient)
    for name in (
        "add_role_to_member",
        "remove_role_from_member",
        "edit_member",
        "kick_user",
        "ban_user",
        "edit_role",
        "create_role",
        "delete_role",
        "edit_channel",
        "delete_channel",
        "create_guild_category",
        "create_guild_text_channel",
        "create_guild_voice_channel",
    ):
        setattr(rest, name, AsyncMock())
    return rest


@pytest.fixture
def mock_hikari_bot():
    """Mock Hikari gateway bot instance."""
    bot = MagicMock(spec=hikari.GatewayBot)
    bot.rest = MagicMock()
    bot.get_me = MagicMock(return_value=MagicMock(id=12345, username="TSS"))
    return bot
