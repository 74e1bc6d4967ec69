"""Gateway: connections, registry, liveness, dispatcher, handlers."""

from imgate.gateway.connection import GatewayConnection
from imgate.gateway.dispatcher import CommandDispatcher, DispatchAttempt, DispatchResult
from imgate.gateway.handlers import GatewayHandler
from imgate.gateway.liveness import LivenessMonitor
from imgate.gateway.registry import SessionRegistry

__all__ = [
    "CommandDispatcher",
    "DispatchAttempt",
    "DispatchResult",
    "GatewayConnection",
    "GatewayHandler",
    "LivenessMonitor",
    "SessionRegistry",
]
