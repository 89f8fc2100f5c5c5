# Only leaf modules here: the database models import tss.core.utils
from .actor import SYSTEM, Actor
from .errors import (
    AuthorizationDenied,
    Conflict,
    EnforcementError,
    KindMismatch,
    MisconfiguredThresholds,
    NotFound,
    ValidationError,
)

__all__ = [
    "Actor",
    "SYSTEM",
    "EnforcementError",
    "ValidationError",
    "NotFound",
    "Conflict",
    "KindMismatch",
    "AuthorizationDenied",
    "MisconfiguredThresholds",
]
