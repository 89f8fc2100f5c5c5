from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable
from typing import TYPE_CHECKING

import hikari

from config.settings import settings

from ..core.errors import EnforcementError

if TYPE_CHECKING:
    from ..core.engine import EnforcementCore

logger = logging.getLogger(__name__)

# Audit log actions that count towards a destructive burst
DESTRUCTIVE_ACTIONS: dict[hikari.AuditLogEventType, str] = {
    hikari.AuditLogEventType.CHANNEL_DELETE: "channel-delete",
    hikari.AuditLogEventType.ROLE_DELETE: "role-delete",
    hikari.AuditLogEventType.WEBHOOK_DELETE: "webhook-delete",
    hikari.AuditLogEventType.MEMBER_BAN_ADD: "ban",
    hikari.AuditLogEventType.MEMBER_KICK: "kick",
    hikari.AuditLogEventType.ROLE_UPDATE: "role-update",
    hikari.AuditLogEventType.MEMBER_ROLE_UPDATE: "member-role-update",
}


class BurstCounter:
    """Sliding-window event counts per key, local to this worker."""

    def __init__(self, window_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.window_seconds = window_seconds
        self.clock = clock
        self._hits: dict[tuple, deque[float]] = {}

    def hit(self, key: tuple) -> int:
        now = self.clock()
        hits = self._hits.setdefault(key, deque())
        hits.append(now)
        self._expire(hits, now)
        return len(hits)

    def count(self, key: tuple) -> int:
        hits = self._hits.get(key)
        if not hits:
            return 0
        self._expire(hits, self.clock())
        return len(hits)

    def prune(self) -> None:
        now = self.clock()
        for key in list(self._hits):
            self._expire(self._hits[key], now)
            if not self._hits[key]:
                del self._hits[key]

    def _expire(self, hits: deque[float], now: float) -> None:
        cutoff = now - self.window_seconds
        while hits and hits[0] <= cutoff:
            hits.popleft()


class GatewayBridge:
    """
    Feeds destructive audit-log entries from the gateway into the antinuke engine.

    The engine is consulted when a (guild, actor, action) count reaches the
    incident threshold and again at the hard ceiling, so a long burst costs a
    bounded number of store writes.
    """

    def __init__(self, core: EnforcementCore, counter: BurstCounter | None = None) -> None:
        self.core = core
        self.counter = counter or BurstCounter(settings.antinuke_window_seconds)

    def attach(self, bot: hikari.GatewayBot) -> None:
        bot.subscribe(hikari.AuditLogEntryCreateEvent, self.on_audit_log_entry)
        logger.info("Gateway bridge subscribed to audit log entries")

    def detach(self, bot: hikari.GatewayBot) -> None:
        bot.unsubscribe(hikari.AuditLogEntryCreateEvent, self.on_audit_log_entry)

    async def on_audit_log_entry(self, event: hikari.AuditLogEntryCreateEvent) -> None:
        entry = event.entry
        kind = DESTRUCTIVE_ACTIONS.get(entry.action_type)
        if kind is None or entry.user_id is None:
            return

        get_me = getattr(event.app, "get_me", None)
        me = get_me() if get_me else None
        if me is not None and entry.user_id == me.id:
            # Our own containment and restores
            return

        await self.observe(int(event.guild_id), int(entry.user_id), kind)

    async def observe(self, guild_id: int, user_id: int, kind: str) -> None:
        antinuke = self.core.antinuke
        count = self.counter.hit((guild_id, user_id, kind))
        if count not in (antinuke.threshold, antinuke.hard_ceiling):
            return

        try:
            response = await antinuke.handle_burst(
                guild_id,
                user_id,
                kind,
                count,
                self.counter.window_seconds,
                evidence={"source": "audit-log"},
            )
        except EnforcementError as e:
            logger.error(f"Antinuke could not handle burst in guild {guild_id}: {e}")
            return

        if response.directives:
            await self.core.dispatch(response.directives)
