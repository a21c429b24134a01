"""
undnemo_lib - Polling and control library for QSC Attero Tech unDNEMO devices.

Talks to the device over its UDP line protocol (default port 49494).
"""

from undnemo_lib.controller import UndnemoController
from undnemo_lib.errors import (
    CommandFailed,
    InvalidControlValue,
    InvalidResponse,
    NotConnected,
    PollFailed,
    TransportError,
    UndnemoError,
    UnknownControlProperty,
)
from undnemo_lib.models import (
    ChannelRecord,
    ControlDescriptor,
    EngineState,
    ScalarProperties,
    Snapshot,
)

__version__ = "0.1.0"

__all__ = [
    "UndnemoController",
    "ChannelRecord",
    "ControlDescriptor",
    "EngineState",
    "ScalarProperties",
    "Snapshot",
    "UndnemoError",
    "TransportError",
    "NotConnected",
    "InvalidResponse",
    "CommandFailed",
    "InvalidControlValue",
    "UnknownControlProperty",
    "PollFailed",
]
