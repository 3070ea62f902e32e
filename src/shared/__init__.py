from .event import (
    ChainEvent,
    EventVariant,
    InstanceRented,
    InstanceStopped,
    InstanceTerminated,
)
from .message import (
    Dispatch,
    DispatchMessage,
    RentalMessage,
    StopMessage,
    TerminateMessage,
)
from .service import AsyncTask

__all__ = [
    "AsyncTask",
    "ChainEvent",
    "Dispatch",
    "DispatchMessage",
    "EventVariant",
    "InstanceRented",
    "InstanceStopped",
    "InstanceTerminated",
    "RentalMessage",
    "StopMessage",
    "TerminateMessage",
]
