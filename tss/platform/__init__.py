from .applier import DirectiveResult, HikariApplier
from .gateway import BurstCounter, GatewayBridge

__all__ = ["HikariApplier", "DirectiveResult", "GatewayBridge", "BurstCounter"]
