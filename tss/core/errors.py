"""Error taxonomy shared by every enforcement component.

Every failure is scoped to one guild, user or incident. Callers catch
``EnforcementError`` at their boundary; nothing here is fatal to a worker.
"""


class EnforcementError(Exception):
    """Base class for all enforcement failures."""


class ValidationError(EnforcementError):
    """Malformed input, rejected before any write."""


class NotFound(EnforcementError):
    """A referenced guild, user, case, entry or incident does not exist."""


class Conflict(EnforcementError):
    """The requested state already exists (active mute, closed incident...)."""


class KindMismatch(Conflict):
    """A registry key already exists with a different resource kind."""

    def __init__(self, key: str, existing: str, requested: str) -> None:
        super().__init__(f"Resource '{key}' is registered as {existing}, not {requested}")
        self.key = key
        self.existing = existing
        self.requested = requested


class AuthorizationDenied(EnforcementError):
    """The acting roles do not hold the required capability."""

    def __init__(self, guild_id: int, actor_id: int | None, capability: str) -> None:
        super().__init__(f"Actor {actor_id} lacks capability '{capability}' in guild {guild_id}")
        self.guild_id = guild_id
        self.actor_id = actor_id
        self.capability = capability


class MisconfiguredThresholds(EnforcementError):
    """Stored warn thresholds are not ascending; defaults are used instead."""
