from .antinuke import AntinukeEngine, BurstLevel, GuardState
from .mute import MuteEngine, MuteSettings
from .warn import Escalation, EscalationAction, WarnEngine, WarnPolicy, apply_decay

__all__ = [
    "WarnEngine",
    "WarnPolicy",
    "Escalation",
    "EscalationAction",
    "apply_decay",
    "MuteEngine",
    "MuteSettings",
    "AntinukeEngine",
    "BurstLevel",
    "GuardState",
]
