from .client import AutomationClient, AutomationClientError, BridgeClient
from .machine import PairingStateMachine, StartResult

__all__ = [
    "AutomationClient",
    "AutomationClientError",
    "BridgeClient",
    "PairingStateMachine",
    "StartResult",
]
