"""Wire protocol constants for the QSC Attero Tech unDNEMO UDP interface.

This module defines the command names, response tokens, value ranges and
statistics names used by the rest of the library. Nothing here talks to the
network.
"""

import re
from typing import Final

# ============================================================================
# Line Termination
# ============================================================================

# Device expects CR (0x0D) after every request
REQUEST_TERMINATOR: Final[bytes] = b"\r"

# Device responses end with CR, sometimes CRLF
RESPONSE_TERMINATORS: Final[str] = "\r\n"

ENCODING: Final[str] = "ascii"

# ============================================================================
# Response Tokens
# ============================================================================

ACK: Final[str] = "ACK"
NACK: Final[str] = "NACK"

# Channel info responses carry this token right after ACK:
# ACK CH_INFO <enable> (<index>) "<device>" "<channel>" "<display>"
CHANNEL_INFO_MARKER: Final[str] = "CH_INFO"

# Scalar responses are exactly: ACK <ECHO> <value>
SCALAR_RESPONSE_TOKENS: Final[int] = 3

# ============================================================================
# Regular Expressions for Channel Info Responses
# ============================================================================

# Channel index in parentheses: "(7)" or "(07)"
RE_CHANNEL_INDEX: Final[re.Pattern[str]] = re.compile(r"\((\d+)\)")

# Device, channel and display names, in that order. Names may contain spaces.
RE_QUOTED: Final[re.Pattern[str]] = re.compile(r'"([^"]*)"')

# Channel info fields: [index, enable, device, channel, display]
CHANNEL_NAME_FIELDS: Final[int] = 3

# ============================================================================
# Query Commands
# ============================================================================

CMD_VERSION: Final[str] = "VERSION"
CMD_GET_ACTIVE_INDEX: Final[str] = "ACT_CH_IDX"
CMD_GET_CHANNEL_INFO: Final[str] = "CH_INFO"
CMD_GET_MUTE: Final[str] = "SPKR_MUTE"
CMD_GET_VOLUME: Final[str] = "VOLUME"
CMD_GET_BUTTON_BRIGHTNESS: Final[str] = "GBB"
CMD_GET_DISPLAY_BRIGHTNESS: Final[str] = "GDB"

# ============================================================================
# Set Commands
# ============================================================================

CMD_SET_ACTIVE: Final[str] = "SET_ACT_CH_IDX"
CMD_SET_MUTE: Final[str] = "SET_SPKR_MUTE"
CMD_SET_VOLUME: Final[str] = "SET_VOLUME"
CMD_SET_BUTTON_BRIGHTNESS: Final[str] = "SBB"
CMD_SET_DISPLAY_BRIGHTNESS: Final[str] = "SDB"

# ============================================================================
# Network Defaults
# ============================================================================

DEFAULT_PORT: Final[int] = 49494

# Largest channel info line seen is well under this
DEFAULT_BUFFER_SIZE: Final[int] = 1024

# Per-request response timeout (seconds)
RESPONSE_TIMEOUT: Final[float] = 2.0

# ============================================================================
# Channel Table
# ============================================================================

MIN_CHANNEL_INDEX: Final[int] = 1
MAX_CHANNEL_INDEX: Final[int] = 64
NO_ACTIVE_CHANNEL: Final[int] = 0

ALL_CHANNELS: Final[tuple] = tuple(range(MIN_CHANNEL_INDEX, MAX_CHANNEL_INDEX + 1))

# Unfiltered polls: 4 workers x 16 contiguous channels
UNFILTERED_WORKERS: Final[int] = 4

# Filtered polls: at most this many batches, one per worker
FILTERED_WORKERS: Final[int] = 8

# ============================================================================
# Valid Control Values
# ============================================================================

MUTE_OFF: Final[int] = 0
MUTE_ON: Final[int] = 1

VOLUME_MIN: Final[int] = 1
VOLUME_MAX: Final[int] = 10

BRIGHTNESS_MIN: Final[int] = 0
BRIGHTNESS_MAX: Final[int] = 10

# ============================================================================
# Statistics / Control Names
# ============================================================================

STAT_SOFTWARE_VERSION: Final[str] = "SoftwareVersionInfo"
STAT_SPEAKER_MUTE: Final[str] = "SpeakerMute"
STAT_VOLUME: Final[str] = "Volume"
STAT_BUTTON_BRIGHTNESS: Final[str] = "ButtonBrightness"
STAT_DISPLAY_BRIGHTNESS: Final[str] = "DisplayBrightness"

GROUP_SEPARATOR: Final[str] = "#"
ACTIVE_GROUP: Final[str] = "ActiveChannel"
STAT_ACTIVE_CHANNEL_INDEX: Final[str] = f"{ACTIVE_GROUP}{GROUP_SEPARATOR}ChannelIndex"

FIELD_ENABLE_STATE: Final[str] = "EnableState"
FIELD_DEVICE_NAME: Final[str] = "DeviceName"
FIELD_CHANNEL_NAME: Final[str] = "ChannelName"
FIELD_DISPLAY_NAME: Final[str] = "DisplayName"

# Dropdown entry shown while no channel is active. Never sent to the device.
NONE_OPTION: Final[str] = "None"


def channel_group(index: int) -> str:
    """Group label for a channel that is not the active one, e.g. "Channel 07"."""
    return f"Channel {index:02d}"


def group_key(group: str, field: str) -> str:
    """Statistics key for one field of a channel group."""
    return f"{group}{GROUP_SEPARATOR}{field}"
