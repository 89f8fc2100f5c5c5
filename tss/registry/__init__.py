from .manager import (
    MODLOG_CHANNEL,
    MUTE_ROLE,
    QUARANTINE_ROLE,
    ResourceHandle,
    ResourceKind,
    ResourceRegistry,
)

__all__ = [
    "ResourceRegistry",
    "ResourceHandle",
    "ResourceKind",
    "MUTE_ROLE",
    "MODLOG_CHANNEL",
    "QUARANTINE_ROLE",
]
