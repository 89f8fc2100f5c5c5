"""Named capabilities grantable to roles."""

WARN_ISSUE = "warn.issue"
WARN_VIEW = "warn.view"
WARN_ESCALATE = "warn.escalate"
WARN_CONFIGURE = "warn.configure"

MUTE_APPLY = "mute.apply"
MUTE_LIFT = "mute.lift"
MUTE_CONFIGURE = "mute.configure"

ANTINUKE_RESPOND = "antinuke.respond"
ANTINUKE_RESTORE = "antinuke.restore"
ANTINUKE_APPROVE = "antinuke.approve"
ANTINUKE_STATUS = "antinuke.status"
ANTINUKE_CONFIGURE = "antinuke.configure"

REGISTRY_MANAGE = "registry.manage"
CAPABILITIES_MANAGE = "capabilities.manage"
GUILD_CONFIGURE = "guild.configure"

CAPABILITY_DESCRIPTIONS: dict[str, str] = {
    WARN_ISSUE: "Issue warnings to members",
    WARN_VIEW: "View warning history and point totals",
    WARN_ESCALATE: "Carry out threshold escalations (timeout, kick, ban)",
    WARN_CONFIGURE: "Change warn decay and thresholds",
    MUTE_APPLY: "Mute members and extend active mutes",
    MUTE_LIFT: "Lift active mutes",
    MUTE_CONFIGURE: "Change mute defaults",
    ANTINUKE_RESPOND: "Record containment actions and snapshots",
    ANTINUKE_RESTORE: "Roll an incident back from its snapshot",
    ANTINUKE_APPROVE: "Approve containment taken during an incident",
    ANTINUKE_STATUS: "View antinuke incidents",
    ANTINUKE_CONFIGURE: "Enroll or remove a guild from antinuke monitoring",
    REGISTRY_MANAGE: "Register logical resources (mute role, modlog channel...)",
    CAPABILITIES_MANAGE: "Grant and revoke capabilities",
    GUILD_CONFIGURE: "Change guild admin/moderator roles and modlog channel",
}

ALL_CAPABILITIES: frozenset[str] = frozenset(CAPABILITY_DESCRIPTIONS)

# Held implicitly by every role listed in tss.guilds.moderator_role_ids
DEFAULT_MODERATOR_CAPABILITIES: frozenset[str] = frozenset(
    {WARN_ISSUE, WARN_VIEW, MUTE_APPLY, MUTE_LIFT, ANTINUKE_STATUS}
)
