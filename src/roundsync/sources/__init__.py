"""
Transport layer: Socket.IO connection lifecycle and correlated requests
"""

from .connection_manager import ConnectionManager, DisconnectKind, classify_disconnect
from .connection_state import ConnectionState, ConnectionStateMachine, ConnectionStatus
from .request_gateway import CorrelatedRequestGateway, PendingCorrelation
from .transport_fallback import TransportFallbackPolicy

__all__ = [
    "ConnectionManager",
    "ConnectionState",
    "ConnectionStateMachine",
    "ConnectionStatus",
    "CorrelatedRequestGateway",
    "DisconnectKind",
    "PendingCorrelation",
    "TransportFallbackPolicy",
    "classify_disconnect",
]
