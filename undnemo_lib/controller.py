"""High-level controller for an unDNEMO device with cached state."""

import logging
import threading
from typing import List, Optional, Tuple, Union

from undnemo_lib import parsing, protocol
from undnemo_lib.channel_poller import ChannelPoller
from undnemo_lib.coordinator import ControlCoordinator
from undnemo_lib.error_aggregator import ErrorAggregator
from undnemo_lib.errors import (
    CommandFailed,
    InvalidResponse,
    NotConnected,
    PollFailed,
    TransportError,
)
from undnemo_lib.models import (
    Acknowledged,
    ChannelRecord,
    EngineState,
    PendingPatch,
    Response,
    ScalarProperties,
    Snapshot,
)
from undnemo_lib.state_cache import StateCache
from undnemo_lib.transport import DatagramLike, Transport

logger = logging.getLogger(__name__)


class UndnemoController:
    """Polling engine for one unDNEMO device.

    Reads never wait for the channel poll: get_snapshot() refreshes the
    scalars, starts a background poll of the tracked channels and returns
    what is cached. Controls patch the cache directly so the read after a
    control does not start a new 64-channel poll.
    """

    def __init__(
        self,
        transport: Optional[Transport] = None,
        channel_filter: Union[str, Tuple[int, ...], None] = None,
    ) -> None:
        """Initialize controller.

        Args:
            transport: Optional pre-configured Transport instance.
                       If None, must call connect() to create one.
            channel_filter: Comma-separated filter string (e.g. "1,2,3") or
                            parsed indices. None or empty tracks all channels.
        """
        self._transport = transport

        if isinstance(channel_filter, str) or channel_filter is None:
            self._filter = parsing.parse_channel_filter(channel_filter)
        else:
            self._filter = parsing.parse_channel_filter(",".join(str(i) for i in channel_filter))

        self._errors = ErrorAggregator()
        self._cache = StateCache(self._filter)
        self._poller = ChannelPoller(self.fetch_channel, self._errors, self._on_poll_complete)
        self._coordinator: Optional[ControlCoordinator] = None

        # Engine state machine plus the pending patch side channel
        self._state = EngineState.IDLE
        self._pending_patch = PendingPatch.NONE
        self._state_lock = threading.RLock()
        self._poll_merged = threading.Event()

        if transport is not None:
            self._coordinator = self._make_coordinator()

    # ========================================================================
    # Connection Management
    # ========================================================================

    def connect(
        self,
        host: Optional[str] = None,
        port: int = protocol.DEFAULT_PORT,
        sock: Optional[DatagramLike] = None,
    ) -> None:
        """Open the transport to the device.

        Args:
            host: Device address. Required if sock not given.
            port: Device UDP port. Default 49494.
            sock: Pre-configured socket object (for testing). If provided,
                  port is ignored and host is only used in messages.

        Raises:
            TransportError: If already connected or the socket cannot be opened
        """
        with self._state_lock:
            if self.is_connected():
                raise TransportError(f"Already connected to {self.host}")

            if sock is not None:
                self._transport = Transport(sock, host=host)
            elif host is not None:
                self._transport = Transport.open(host, port)
            else:
                raise ValueError("Must provide either 'host' or 'sock'")

            self._transport.flush_input()
            self._coordinator = self._make_coordinator()
            self._state = EngineState.IDLE
            self._pending_patch = PendingPatch.NONE
            logger.info(
                f"Connected to {host or 'device'}"
                + (f", channel filter {list(self._filter)}" if self._filter else "")
            )

    def disconnect(self) -> None:
        """Stop polling, drop all cached state and close the transport."""
        logger.info("Disconnecting...")
        # Outside the state lock: the last worker may be waiting on it to merge
        self._poller.stop()

        with self._state_lock:
            self._errors.clear()
            self._cache.clear()
            self._state = EngineState.IDLE
            self._pending_patch = PendingPatch.NONE
            self._poll_merged.clear()

            if self._transport:
                self._transport.close()
                self._transport = None
            self._coordinator = None
            logger.info("Disconnected")

    def is_connected(self) -> bool:
        return self._transport is not None and self._transport.is_open

    @property
    def host(self) -> Optional[str]:
        return self._transport.host if self._transport else None

    @property
    def online(self) -> Optional[bool]:
        """Whether the device answered the last request (None before any)."""
        return self._transport.online if self._transport else None

    @property
    def state(self) -> EngineState:
        """Current engine state."""
        return self._state

    @property
    def pending_patch(self) -> PendingPatch:
        return self._pending_patch

    @property
    def is_polling(self) -> bool:
        """True while a poll cycle is running or being merged."""
        return self._poller.is_polling

    @property
    def channel_filter(self) -> Optional[Tuple[int, ...]]:
        """Parsed channel filter, None when all channels are tracked."""
        return self._filter

    # ========================================================================
    # Read / Write Surface
    # ========================================================================

    def get_snapshot(self) -> Snapshot:
        """Return the current snapshot, starting a poll cycle when due.

        1. Errors from poll workers are raised once, as PollFailed.
        2. After a control: serve the cache (refreshing only the scalars
           after a scalar control).
        3. While a poll cycle runs: serve the cache as is.
        4. Otherwise: refresh the scalars, start a poll cycle of the tracked
           channels and return without waiting for it.

        Raises:
            PollFailed: If background workers reported errors since last read
            NotConnected: If connect() has not been called
            TransportError: If the scalar refresh gets no response
        """
        combined = self._errors.drain()
        if combined is not None:
            raise PollFailed(combined)

        self._ensure_connected()

        with self._state_lock:
            patch = self._pending_patch
            self._pending_patch = PendingPatch.NONE

            if patch is PendingPatch.ACTIVE_CHANNEL and self._cache.has_snapshot:
                logger.debug("Serving cache after active channel change")
                return self._cache.view(self._state)

            if patch is PendingPatch.SCALARS and self._cache.has_snapshot:
                logger.debug("Refreshing scalars only after control")
                self._cache.update_scalars(self._read_scalars())
                return self._cache.view(self._state)

            if self._poller.is_polling:
                logger.debug("Poll cycle in flight, serving current snapshot")
                return self._cache.view(self._state)

            self._cache.update_scalars(self._read_scalars())
            self._start_poll()
            return self._cache.view(self._state)

    def view(self) -> Snapshot:
        """Return the cached state without talking to the device.

        Poll errors stay pending for the next get_snapshot().

        Raises:
            NotConnected: If connect() has not been called
        """
        self._ensure_connected()
        with self._state_lock:
            return self._cache.view(self._state)

    def apply_control(self, name: str, value: object) -> None:
        """Apply one control to the device and patch the cached state.

        Args:
            name: Property name (see protocol.STAT_* names)
            value: Requested value

        Raises:
            UnknownControlProperty: If name is not a control
            InvalidControlValue: If the value is rejected before sending
            CommandFailed: If the device does not acknowledge the command
            NotConnected: If connect() has not been called
        """
        self._ensure_connected()
        assert self._coordinator is not None

        if not self._cache.has_snapshot:
            # Patches need a baseline to apply to
            self._cache.update_scalars(self._read_scalars())

        patch = self._coordinator.apply(name, value)

        with self._state_lock:
            if patch is not PendingPatch.NONE:
                # ACTIVE_CHANNEL wins over SCALARS if both are pending
                if self._pending_patch is not PendingPatch.ACTIVE_CHANNEL:
                    self._pending_patch = patch

    def wait_for_poll(self, timeout: Optional[float] = None) -> bool:
        """Block until the running poll cycle has been merged.

        Args:
            timeout: Max seconds to wait

        Returns:
            True if a merge happened, False on timeout
        """
        return self._poll_merged.wait(timeout=timeout)

    # ========================================================================
    # Device Queries
    # ========================================================================

    def request(self, command: str, *args: object) -> Response:
        """Send one command and decode the response.

        Raises:
            NotConnected: If there is no transport
            TransportError: If the device does not answer
        """
        transport = self._transport
        if transport is None:
            raise NotConnected("Not connected to a device")

        return parsing.decode_response(transport.exchange(command, *args), command)

    def fetch_channel(self, index: int) -> ChannelRecord:
        """Fetch one channel record.

        Raises:
            CommandFailed: If the device does not acknowledge CH_INFO
            InvalidResponse: If the record fields are invalid
            TransportError: If the device does not answer
        """
        response = self.request(protocol.CMD_GET_CHANNEL_INFO, index)
        if not isinstance(response, Acknowledged):
            raise CommandFailed(self.host, protocol.CMD_GET_CHANNEL_INFO, index)

        record = parsing.parse_channel_record(response.fields)
        if record.index != index:
            raise InvalidResponse(f"Asked for channel {index}, device answered channel {record.index}")
        return record

    def read_active_index(self) -> int:
        """Read the active channel index, 0 when the device gives no valid answer."""
        value = self._read_int(protocol.CMD_GET_ACTIVE_INDEX)
        if value is None or not (protocol.NO_ACTIVE_CHANNEL <= value <= protocol.MAX_CHANNEL_INDEX):
            logger.warning(f"No valid active channel index from device ({value}), using 0")
            return protocol.NO_ACTIVE_CHANNEL
        return value

    # ========================================================================
    # Internal Helpers
    # ========================================================================

    def _make_coordinator(self) -> ControlCoordinator:
        return ControlCoordinator(
            request=self.request,
            fetch_channel=self.fetch_channel,
            read_active_index=self.read_active_index,
            cache=self._cache,
            host=self.host,
        )

    def _ensure_connected(self) -> None:
        if not self.is_connected():
            raise NotConnected("Not connected to a device (call connect() first)")

    def _read_int(self, command: str) -> Optional[int]:
        response = self.request(command)
        if not isinstance(response, Acknowledged):
            logger.warning(f"{command} not acknowledged: {response}")
            return None
        try:
            return parsing.parse_int_value(response)
        except InvalidResponse as e:
            logger.warning(f"Bad {command} response: {e}")
            return None

    def _read_scalars(self) -> ScalarProperties:
        """Read the scalar properties, keeping cached values for any not acknowledged."""
        previous = self._cache.scalars() or ScalarProperties()

        version = previous.software_version
        response = self.request(protocol.CMD_VERSION)
        if isinstance(response, Acknowledged) and response.fields:
            version = response.fields[0]
        else:
            logger.warning(f"{protocol.CMD_VERSION} not acknowledged: {response}")

        values = {}
        for command, field, minimum, maximum in (
            (protocol.CMD_GET_MUTE, "speaker_muted", protocol.MUTE_OFF, protocol.MUTE_ON),
            (protocol.CMD_GET_VOLUME, "volume", protocol.VOLUME_MIN, protocol.VOLUME_MAX),
            (
                protocol.CMD_GET_BUTTON_BRIGHTNESS,
                "button_brightness",
                protocol.BRIGHTNESS_MIN,
                protocol.BRIGHTNESS_MAX,
            ),
            (
                protocol.CMD_GET_DISPLAY_BRIGHTNESS,
                "display_brightness",
                protocol.BRIGHTNESS_MIN,
                protocol.BRIGHTNESS_MAX,
            ),
        ):
            value = self._read_int(command)
            if value is None or not (minimum <= value <= maximum):
                values[field] = getattr(previous, field)
                continue
            values[field] = bool(value) if field == "speaker_muted" else value

        return ScalarProperties(
            software_version=version,
            active_channel_index=self.read_active_index(),
            **values,
        )

    def _start_poll(self) -> None:
        indices = self._cache.tracked_indices()
        filtered = self._filter is not None
        self._poll_merged.clear()
        if self._poller.poll(indices, filtered):
            self._state = EngineState.AWAITING_POLL

    def _on_poll_complete(self, cycle_id: int, records: List[ChannelRecord], expected: int) -> None:
        """Merge a finished poll cycle (runs on the last worker thread)."""
        complete = len(records) == expected
        with self._state_lock:
            if cycle_id != self._poller.cycle_id:
                logger.debug(f"Poll cycle {cycle_id} finished after teardown, discarding")
                return
            if self._cache.merge_completed_poll(cycle_id, records, complete):
                self._state = EngineState.READY
                self._poll_merged.set()
