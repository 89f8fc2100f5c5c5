from . import capabilities
from .manager import CapabilityAuthorizer

__all__ = ["CapabilityAuthorizer", "capabilities"]
