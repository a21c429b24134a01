"""Custom exceptions for the unDNEMO library."""

from typing import Optional


class UndnemoError(Exception):
    """Base exception for all unDNEMO library errors."""

    pass


class TransportError(UndnemoError):
    """Raised when UDP communication fails (socket closed, no response, etc)."""

    pass


class NotConnected(UndnemoError):
    """Raised when an operation needs a connected device."""

    pass


class InvalidResponse(UndnemoError):
    """Raised when device sends an unexpected or malformed response."""

    pass


class CommandFailed(UndnemoError):
    """Raised when the device does not acknowledge a SET command."""

    def __init__(self, host: Optional[str], command: str, value: object) -> None:
        self.host = host
        self.command = command
        self.value = value
        super().__init__(
            f"Device {host or 'unknown'} did not acknowledge {command} with value {value}"
        )


class InvalidControlValue(UndnemoError):
    """Raised when a control value is rejected before being sent."""

    pass


class UnknownControlProperty(InvalidControlValue):
    """Raised when a control names a property the device does not expose."""

    pass


class PollFailed(UndnemoError):
    """Raised by a read that finds errors collected by background poll workers."""

    pass
