"""Data models for the unDNEMO library."""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Tuple, Union

from undnemo_lib import protocol


class EngineState(Enum):
    """Polling engine states."""

    IDLE = "idle"
    AWAITING_POLL = "awaiting_poll"
    READY = "ready"


class PendingPatch(Enum):
    """What the next read should do after a successful control."""

    NONE = "none"
    SCALARS = "scalars"  # refresh scalars only, keep channel groups
    ACTIVE_CHANNEL = "active_channel"  # serve cache as is


@dataclass(frozen=True)
class ChannelRecord:
    """One channel of the device channel table.

    Attributes:
        index: Channel index (1-64).
        enabled: Channel enable state.
        device_name: Name of the Dante device feeding the channel.
        channel_name: Name of the channel on that device.
        display_name: Name shown on the unDNEMO front panel.
    """

    index: int
    enabled: bool
    device_name: str = ""
    channel_name: str = ""
    display_name: str = ""

    def __post_init__(self) -> None:
        if not (protocol.MIN_CHANNEL_INDEX <= self.index <= protocol.MAX_CHANNEL_INDEX):
            raise ValueError(
                f"index must be {protocol.MIN_CHANNEL_INDEX}-{protocol.MAX_CHANNEL_INDEX}, "
                f"got {self.index}"
            )


@dataclass
class ScalarProperties:
    """Device-wide properties refreshed on every poll cycle.

    Attributes:
        software_version: Firmware version string.
        speaker_muted: Speaker mute state.
        volume: Speaker volume (1-10).
        button_brightness: Front panel button brightness (0-10).
        display_brightness: Front panel display brightness (0-10).
        active_channel_index: Selected channel (0-64, 0 means none).
    """

    software_version: str = ""
    speaker_muted: bool = False
    volume: int = protocol.VOLUME_MIN
    button_brightness: int = protocol.BRIGHTNESS_MIN
    display_brightness: int = protocol.BRIGHTNESS_MIN
    active_channel_index: int = protocol.NO_ACTIVE_CHANNEL

    def __post_init__(self) -> None:
        """Validate property ranges."""
        if not (protocol.VOLUME_MIN <= self.volume <= protocol.VOLUME_MAX):
            raise ValueError(
                f"volume must be {protocol.VOLUME_MIN}-{protocol.VOLUME_MAX}, got {self.volume}"
            )

        for name in ("button_brightness", "display_brightness"):
            value = getattr(self, name)
            if not (protocol.BRIGHTNESS_MIN <= value <= protocol.BRIGHTNESS_MAX):
                raise ValueError(
                    f"{name} must be {protocol.BRIGHTNESS_MIN}-{protocol.BRIGHTNESS_MAX}, "
                    f"got {value}"
                )

        if not (protocol.NO_ACTIVE_CHANNEL <= self.active_channel_index <= protocol.MAX_CHANNEL_INDEX):
            raise ValueError(
                f"active_channel_index must be 0-{protocol.MAX_CHANNEL_INDEX}, "
                f"got {self.active_channel_index}"
            )


@dataclass(frozen=True)
class ControlDescriptor:
    """A control exposed to the host alongside the statistics.

    Attributes:
        name: Property name accepted by apply_control().
        type: "switch", "slider" or "dropdown".
        value: Current value as a string.
        range_start: Lowest slider value (sliders only).
        range_end: Highest slider value (sliders only).
        options: Selectable values (dropdowns only).
    """

    name: str
    type: str
    value: str
    range_start: Optional[int] = None
    range_end: Optional[int] = None
    options: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Snapshot:
    """Read-only view of the engine state handed to callers.

    Attributes:
        scalars: Copy of the scalar properties.
        records: Channel index -> ChannelRecord for every tracked channel.
        statistics: Flat statistics map, channel groups keyed by label.
        controls: Control descriptors consistent with ``statistics``.
        state: Engine state when the view was taken.
        complete: True once channel groups from a finished poll are present.
    """

    scalars: ScalarProperties
    records: Mapping[int, ChannelRecord] = field(default_factory=lambda: MappingProxyType({}))
    statistics: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    controls: Tuple[ControlDescriptor, ...] = ()
    state: EngineState = EngineState.IDLE
    complete: bool = False

    @property
    def active_record(self) -> Optional[ChannelRecord]:
        """Record of the active channel, if it is tracked."""
        return self.records.get(self.scalars.active_channel_index)

    def control(self, name: str) -> Optional[ControlDescriptor]:
        for descriptor in self.controls:
            if descriptor.name == name:
                return descriptor
        return None


@dataclass(frozen=True)
class PollJob:
    """Batch of channel indices assigned to one poll worker."""

    cycle_id: int
    worker_id: int
    indices: Tuple[int, ...]


# ============================================================================
# Decoded Responses
# ============================================================================


@dataclass(frozen=True)
class Acknowledged:
    """Response starting with ACK. ``fields`` holds the parsed values."""

    payload: str
    fields: Tuple[str, ...] = ()


@dataclass(frozen=True)
class NotAcknowledged:
    """Response that does not start with ACK (NACK, error text, noise)."""

    raw: str


@dataclass(frozen=True)
class Malformed:
    """ACK response whose fields could not be extracted."""

    raw: str
    reason: str


Response = Union[Acknowledged, NotAcknowledged, Malformed]
