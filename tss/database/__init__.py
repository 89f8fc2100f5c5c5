from .manager import DatabaseManager, db_manager
from .models import (
    AntinukeAction,
    AntinukeGuild,
    AntinukeIncident,
    AntinukeSnapshot,
    AuditEvent,
    Base,
    Guild,
    MuteCase,
    MuteConfig,
    PlatformTimeout,
    ResourceEntry,
    RoleCapability,
    RoleMute,
    WarnCase,
    WarnConfig,
    WarnPoints,
)

__all__ = [
    "DatabaseManager",
    "db_manager",
    "Base",
    "Guild",
    "ResourceEntry",
    "RoleCapability",
    "AuditEvent",
    "WarnConfig",
    "WarnCase",
    "WarnPoints",
    "MuteConfig",
    "MuteCase",
    "RoleMute",
    "PlatformTimeout",
    "AntinukeGuild",
    "AntinukeIncident",
    "AntinukeSnapshot",
    "AntinukeAction",
]
