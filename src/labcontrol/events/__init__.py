"""Cross-module events and the in-process event bus."""

from labcontrol.events.bus import EventBus
from labcontrol.events.models import (
    AssayCompleted,
    AssayCompletedPayload,
    CargoUpdated,
    CargoUpdatedPayload,
    CrossModuleEvent,
    EventType,
    PieceStatusChanged,
    PieceStatusChangedPayload,
    ProtocolLinked,
    ProtocolLinkedPayload,
)

__all__ = [
    "AssayCompleted",
    "AssayCompletedPayload",
    "CargoUpdated",
    "CargoUpdatedPayload",
    "CrossModuleEvent",
    "EventBus",
    "EventType",
    "PieceStatusChanged",
    "PieceStatusChangedPayload",
    "ProtocolLinked",
    "ProtocolLinkedPayload",
]
