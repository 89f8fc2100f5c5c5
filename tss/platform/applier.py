from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

import hikari

from ..core.directives import (
    BanMember,
    ClearTimeout,
    DeleteChannel,
    DeleteRole,
    Directive,
    GrantRole,
    KickMember,
    RestoreChannel,
    RestoreRole,
    RevokeRole,
    SetTimeout,
    SuspendActor,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DirectiveResult:
    directive: Directive
    ok: bool
    error: str | None = None


class HikariApplier:
    """Executes directives against the live platform through hikari's REST client."""

    def __init__(self, rest: hikari.api.RESTClient) -> None:
        self.rest = rest
        self._handlers: dict[type[Directive], Callable[[Directive], Awaitable[None]]] = {
            GrantRole: self._grant_role,
            RevokeRole: self._revoke_role,
            SetTimeout: self._set_timeout,
            ClearTimeout: self._clear_timeout,
            KickMember: self._kick,
            BanMember: self._ban,
            SuspendActor: self._suspend,
            RestoreRole: self._restore_role,
            RestoreChannel: self._restore_channel,
            DeleteRole: self._delete_role,
            DeleteChannel: self._delete_channel,
        }

    async def apply(self, directives: Iterable[Directive]) -> list[DirectiveResult]:
        """Apply each directive in order. One failure never stops the rest."""
        results = []
        for directive in directives:
            handler = self._handlers.get(type(directive))
            if handler is None:
                results.append(DirectiveResult(directive, False, f"Unsupported directive: {directive.kind}"))
                logger.warning(f"No handler for directive {directive.kind}")
                continue

            try:
                await handler(directive)
            except hikari.ForbiddenError as e:
                logger.warning(f"Missing permissions for {directive.kind} in guild {directive.guild_id}: {e}")
                results.append(DirectiveResult(directive, False, f"forbidden: {e}"))
            except hikari.NotFoundError as e:
                logger.warning(f"Target of {directive.kind} in guild {directive.guild_id} is gone: {e}")
                results.append(DirectiveResult(directive, False, f"not found: {e}"))
            except Exception as e:
                logger.error(f"Failed to apply {directive.kind} in guild {directive.guild_id}: {e}")
                results.append(DirectiveResult(directive, False, str(e)))
            else:
                logger.debug(f"Applied {directive.kind} in guild {directive.guild_id}")
                results.append(DirectiveResult(directive, True))

        failed = sum(1 for result in results if not result.ok)
        if failed:
            logger.warning(f"{failed} of {len(results)} directive(s) failed")
        return results

    async def _grant_role(self, directive: GrantRole) -> None:
        await self.rest.add_role_to_member(
            directive.guild_id, directive.user_id, directive.role_id, reason=directive.reason or hikari.UNDEFINED
        )

    async def _revoke_role(self, directive: RevokeRole) -> None:
        await self.rest.remove_role_from_member(
            directive.guild_id, directive.user_id, directive.role_id, reason=directive.reason or hikari.UNDEFINED
        )

    async def _set_timeout(self, directive: SetTimeout) -> None:
        await self.rest.edit_member(
            directive.guild_id,
            directive.user_id,
            communication_disabled_until=directive.until,
            reason=directive.reason or hikari.UNDEFINED,
        )

    async def _clear_timeout(self, directive: ClearTimeout) -> None:
        await self.rest.edit_member(
            directive.guild_id,
            directive.user_id,
            communication_disabled_until=None,
            reason=directive.reason or hikari.UNDEFINED,
        )

    async def _kick(self, directive: KickMember) -> None:
        await self.rest.kick_user(directive.guild_id, directive.user_id, reason=directive.reason or hikari.UNDEFINED)

    async def _ban(self, directive: BanMember) -> None:
        await self.rest.ban_user(
            directive.guild_id,
            directive.user_id,
            delete_message_seconds=directive.delete_message_seconds,
            reason=directive.reason or hikari.UNDEFINED,
        )

    async def _suspend(self, directive: SuspendActor) -> None:
        # Dropping every role removes whatever permissions enabled the burst
        await self.rest.edit_member(
            directive.guild_id, directive.user_id, roles=[], reason=directive.reason or hikari.UNDEFINED
        )

    async def _restore_role(self, directive: RestoreRole) -> None:
        role = directive.role
        reason = directive.reason or hikari.UNDEFINED

        if directive.exists is not False:
            try:
                await self.rest.edit_role(
                    directive.guild_id,
                    role.id,
                    name=role.name,
                    permissions=hikari.Permissions(role.permissions),
                    reason=reason,
                )
                return
            except hikari.NotFoundError:
                if directive.exists:
                    raise
                logger.debug(f"Role {role.id} is gone, recreating '{role.name}'")

        await self.rest.create_role(
            directive.guild_id, name=role.name, permissions=hikari.Permissions(role.permissions), reason=reason
        )

    async def _restore_channel(self, directive: RestoreChannel) -> None:
        channel = directive.channel
        reason = directive.reason or hikari.UNDEFINED
        parent = channel.parent_id if channel.parent_id is not None else hikari.UNDEFINED

        if directive.exists is not False:
            try:
                await self.rest.edit_channel(
                    channel.id, name=channel.name, position=channel.position, parent_category=parent, reason=reason
                )
                return
            except hikari.NotFoundError:
                if directive.exists:
                    raise
                logger.debug(f"Channel {channel.id} is gone, recreating '{channel.name}'")

        if channel.kind == "category":
            await self.rest.create_guild_category(
                directive.guild_id, channel.name, position=channel.position, reason=reason
            )
        elif channel.kind == "voice":
            await self.rest.create_guild_voice_channel(
                directive.guild_id, channel.name, position=channel.position, category=parent, reason=reason
            )
        else:
            await self.rest.create_guild_text_channel(
                directive.guild_id, channel.name, position=channel.position, category=parent, reason=reason
            )

    async def _delete_role(self, directive: DeleteRole) -> None:
        await self.rest.delete_role(directive.guild_id, directive.role_id)

    async def _delete_channel(self, directive: DeleteChannel) -> None:
        await self.rest.delete_channel(directive.channel_id)
