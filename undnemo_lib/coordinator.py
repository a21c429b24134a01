"""Execution of control commands and in-place patching of the state cache."""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from undnemo_lib import protocol
from undnemo_lib.errors import CommandFailed, InvalidControlValue, UnknownControlProperty
from undnemo_lib.models import Acknowledged, ChannelRecord, PendingPatch, Response
from undnemo_lib.state_cache import StateCache

logger = logging.getLogger(__name__)

# request(command, *args) -> decoded response
Request = Callable[..., Response]

_TRUE_WORDS = ("true", "on")
_FALSE_WORDS = ("false", "off")


class ActivePlan(Enum):
    """How the cache is updated after an active channel change."""

    RELABEL_FROM_NONE = "relabel_from_none"  # no filter, nothing was active
    SWAP = "swap"  # no filter, swap label between old and new
    FILTERED_SWAP = "filtered_swap"  # target is in the filter, already cached
    FETCH_TARGET = "fetch_target"  # target outside the filter, fetch it once


@dataclass(frozen=True)
class ScalarControl:
    """A control that maps onto one scalar property."""

    command: str
    field: str
    minimum: int
    maximum: int


SCALAR_CONTROLS: Dict[str, ScalarControl] = {
    protocol.STAT_SPEAKER_MUTE: ScalarControl(
        protocol.CMD_SET_MUTE, "speaker_muted", protocol.MUTE_OFF, protocol.MUTE_ON
    ),
    protocol.STAT_VOLUME: ScalarControl(
        protocol.CMD_SET_VOLUME, "volume", protocol.VOLUME_MIN, protocol.VOLUME_MAX
    ),
    protocol.STAT_BUTTON_BRIGHTNESS: ScalarControl(
        protocol.CMD_SET_BUTTON_BRIGHTNESS,
        "button_brightness",
        protocol.BRIGHTNESS_MIN,
        protocol.BRIGHTNESS_MAX,
    ),
    protocol.STAT_DISPLAY_BRIGHTNESS: ScalarControl(
        protocol.CMD_SET_DISPLAY_BRIGHTNESS,
        "display_brightness",
        protocol.BRIGHTNESS_MIN,
        protocol.BRIGHTNESS_MAX,
    ),
}


def parse_control_number(value: object, name: str, minimum: int, maximum: int) -> int:
    """Validate a control value and return it as an int.

    Accepts ints, integral floats and their string forms ("5", "5.0").
    For 0/1 switches, "true"/"on" and "false"/"off" are accepted too.

    Raises:
        InvalidControlValue: If the value is not a number or is out of range
    """
    if isinstance(value, bool):
        number = int(value)
    elif isinstance(value, int):
        number = value
    elif isinstance(value, (float, str)):
        text = str(value).strip().lower()
        if (minimum, maximum) == (protocol.MUTE_OFF, protocol.MUTE_ON) and text in _TRUE_WORDS:
            text = "1"
        elif (minimum, maximum) == (protocol.MUTE_OFF, protocol.MUTE_ON) and text in _FALSE_WORDS:
            text = "0"

        try:
            as_float = float(text)
        except ValueError:
            raise InvalidControlValue(f"{name} value must be a number, got {value!r}") from None

        if not as_float.is_integer():
            raise InvalidControlValue(f"{name} value must be a whole number, got {value!r}")
        number = int(as_float)
    else:
        raise InvalidControlValue(f"{name} value must be a number, got {value!r}")

    if not (minimum <= number <= maximum):
        raise InvalidControlValue(f"{name} must be {minimum}-{maximum}, got {value!r}")

    return number


class ControlCoordinator:
    """Validates and runs one control at a time, then patches the cache.

    Scalar controls overwrite one field. Active channel changes move the
    ActiveChannel label between cached records and fetch at most one record,
    only when the new active channel is not cached (outside the filter).
    Nothing in the cache changes when a control fails.
    """

    def __init__(
        self,
        request: Request,
        fetch_channel: Callable[[int], ChannelRecord],
        read_active_index: Callable[[], int],
        cache: StateCache,
        host: Optional[str] = None,
    ) -> None:
        """Initialize coordinator.

        Args:
            request: Sends a command and returns the decoded response
            fetch_channel: Fetches one channel record synchronously
            read_active_index: Reads the device's active channel (0 if unknown)
            cache: State cache to patch
            host: Device address, used in CommandFailed
        """
        self._request = request
        self._fetch_channel = fetch_channel
        self._read_active_index = read_active_index
        self._cache = cache
        self._host = host
        self._lock = threading.Lock()

    def apply(self, name: str, value: object) -> PendingPatch:
        """Run one control.

        Args:
            name: Property name, e.g. "Volume" or "ActiveChannel#ChannelIndex"
            value: Requested value

        Returns:
            What the next read should do with the cache

        Raises:
            UnknownControlProperty: If name is not a control
            InvalidControlValue: If value is rejected before sending
            CommandFailed: If the device does not acknowledge the command
            TransportError: If the device does not answer
        """
        with self._lock:
            if name == protocol.STAT_ACTIVE_CHANNEL_INDEX:
                return self._apply_active_channel(value)

            control = SCALAR_CONTROLS.get(name)
            if control is None:
                raise UnknownControlProperty(f"Unknown control property {name!r}")

            return self._apply_scalar(name, control, value)

    def plan_active_change(self, current: int, target: int) -> ActivePlan:
        """Decide how the cache follows an active channel change."""
        channel_filter = self._cache.channel_filter
        if channel_filter is None:
            if current == protocol.NO_ACTIVE_CHANNEL:
                return ActivePlan.RELABEL_FROM_NONE
            return ActivePlan.SWAP

        if target in channel_filter:
            return ActivePlan.FILTERED_SWAP
        return ActivePlan.FETCH_TARGET

    # ========================================================================
    # Internal Helpers
    # ========================================================================

    def _apply_scalar(self, name: str, control: ScalarControl, value: object) -> PendingPatch:
        number = parse_control_number(value, name, control.minimum, control.maximum)

        logger.info(f"Setting {name} to {number}...")
        self._send_set(control.command, number)

        field_value = bool(number) if control.field == "speaker_muted" else number
        self._cache.patch_scalar(control.field, field_value)
        logger.info(f"{name} set to {number}")
        return PendingPatch.SCALARS

    def _apply_active_channel(self, value: object) -> PendingPatch:
        if value is None or str(value).strip().lower() == protocol.NONE_OPTION.lower():
            raise InvalidControlValue("Active channel cannot be set to None")

        target = parse_control_number(
            value,
            protocol.STAT_ACTIVE_CHANNEL_INDEX,
            protocol.MIN_CHANNEL_INDEX,
            protocol.MAX_CHANNEL_INDEX,
        )

        current = self._read_active_index()
        if target == current:
            logger.info(f"Channel {target} is already active, nothing to send")
            return PendingPatch.NONE

        plan = self.plan_active_change(current, target)
        logger.info(f"Setting active channel {current} -> {target} ({plan.value})...")
        self._send_set(protocol.CMD_SET_ACTIVE, target)

        fetched: List[ChannelRecord] = []
        if plan is ActivePlan.FETCH_TARGET or not self._cache.has_record(target):
            # Not cached: outside the filter, or its poll never succeeded
            fetched.append(self._fetch_channel(target))

        self._cache.patch_active_channel(current, target, fetched)
        return PendingPatch.ACTIVE_CHANNEL

    def _send_set(self, command: str, number: int) -> Tuple[str, ...]:
        response = self._request(command, number)
        if not isinstance(response, Acknowledged):
            logger.warning(f"{command} {number} not acknowledged: {response}")
            raise CommandFailed(self._host, command, number)
        return response.fields
