from shellbridge.transport.base import Transport
from shellbridge.transport.coordinator import (
    TransportCoordinator,
    TransportPhase,
    TransportState,
)

__all__ = ["Transport", "TransportCoordinator", "TransportPhase", "TransportState"]
