"""Fake UDP socket that simulates an unDNEMO device.

Implements the DatagramLike interface used by Transport, answering each
request datagram the way the device firmware does. Every request is logged
so tests can count what was sent.
"""

import logging
import queue
import socket
import threading
import time
from typing import Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)

# (enabled, device_name, channel_name, display_name)
ChannelRow = Tuple[bool, str, str, str]

UNASSIGNED: ChannelRow = (False, "", "", "No Channel Assigned")


def default_channels() -> Dict[int, ChannelRow]:
    """Channels 1-8 assigned to MXA910 automix outputs, the rest unassigned."""
    channels: Dict[int, ChannelRow] = {}
    for index in range(1, 65):
        if index <= 8:
            device = f"MXA910-{chr(ord('A') + index - 1)}"
            channels[index] = (True, device, "Automix Out", "Automix Out")
        else:
            channels[index] = UNASSIGNED
    return channels


class FakeDevice:
    """Deterministic simulator of the unDNEMO UDP command set.

    Failure injection:
    - nack_commands: commands answered with NACK
    - malformed_commands: commands answered with a bare "ACK"
    - silent_channels: CH_INFO requests that get no answer (timeout)
    - late_channels: CH_INFO answers that arrive only after the host
      gave up waiting for them
    - nack_channels: CH_INFO requests answered with NACK
    - unsolicited: datagrams delivered just ahead of the next response
    """

    def __init__(
        self,
        software_version: str = "1.0.7",
        active_channel: int = 3,
        response_delay_s: float = 0.0,
    ) -> None:
        """Initialize fake device.

        Args:
            software_version: Value returned by VERSION
            active_channel: Initially active channel (0 for none)
            response_delay_s: Delay before each response becomes readable
        """
        # Device state
        self.software_version = software_version
        self.active_channel = active_channel
        self.speaker_muted = False
        self.volume = 5
        self.button_brightness = 7
        self.display_brightness = 8
        self.channels = default_channels()

        # Failure injection
        self.nack_commands: Set[str] = set()
        self.malformed_commands: Set[str] = set()
        self.silent_channels: Set[int] = set()
        self.late_channels: Set[int] = set()
        self.nack_channels: Set[int] = set()
        self.unsolicited: List[str] = []
        self.response_delay_s = response_delay_s
        self._late: List[bytes] = []

        # Request log
        self.requests: List[str] = []
        self._log_lock = threading.Lock()

        self._responses: "queue.Queue[bytes]" = queue.Queue()
        self.timeout: Optional[float] = 0.05
        self.is_open = True

    # ========================================================================
    # DatagramLike interface
    # ========================================================================

    def send(self, data: bytes) -> int:
        """Receive one request datagram (from host perspective: send)."""
        if not self.is_open:
            raise OSError("Socket is closed")

        line = data.decode("ascii", errors="ignore").rstrip("\r")
        with self._log_lock:
            self.requests.append(line)
        logger.debug(f"FakeDevice received: {line!r}")

        while self.unsolicited:
            self._responses.put(self.unsolicited.pop(0).encode("ascii") + b"\r")

        response = self._handle(line)
        if response is None:
            return len(data)

        datagram = response.encode("ascii") + b"\r"
        parts = line.split()
        if parts and parts[0] == "CH_INFO" and self._int_arg(parts[1:]) in self.late_channels:
            self._late.append(datagram)
        else:
            self._responses.put(datagram)
        return len(data)

    def recv(self, bufsize: int) -> bytes:
        """Return the next response datagram, or raise socket.timeout."""
        if not self.is_open:
            raise OSError("Socket is closed")

        try:
            response = self._responses.get(timeout=self.timeout)
        except queue.Empty:
            # The host stopped waiting; late answers land now
            while self._late and self.timeout:
                self._responses.put(self._late.pop(0))
            raise socket.timeout("timed out") from None

        if self.response_delay_s:
            time.sleep(self.response_delay_s)
        return response[:bufsize]

    def settimeout(self, value: Optional[float]) -> None:
        self.timeout = value

    def gettimeout(self) -> Optional[float]:
        return self.timeout

    def close(self) -> None:
        self.is_open = False
        logger.debug("FakeDevice closed")

    # ========================================================================
    # Test helpers
    # ========================================================================

    def count(self, command: str) -> int:
        """Number of requests sent with the given command name."""
        with self._log_lock:
            return sum(1 for line in self.requests if line.split(" ", 1)[0] == command)

    def channel_requests(self) -> List[int]:
        """Channel indices requested with CH_INFO, in order received."""
        with self._log_lock:
            return [
                int(line.split()[1])
                for line in self.requests
                if line.startswith("CH_INFO ") and line.split()[1].isdigit()
            ]

    def clear_log(self) -> None:
        with self._log_lock:
            self.requests.clear()

    # ========================================================================
    # Internal: Command Handling
    # ========================================================================

    def _handle(self, line: str) -> Optional[str]:
        parts = line.split()
        if not parts:
            return "NACK"

        command, args = parts[0], parts[1:]

        if command in self.nack_commands:
            return "NACK"
        if command in self.malformed_commands:
            return "ACK"

        if command == "VERSION":
            return f"ACK VERSION {self.software_version}"
        if command == "ACT_CH_IDX":
            return f"ACK ACT_CH_IDX {self.active_channel}"
        if command == "SPKR_MUTE":
            return f"ACK SPKR_MUTE {int(self.speaker_muted)}"
        if command == "VOLUME":
            return f"ACK VOLUME {self.volume}"
        if command == "GBB":
            return f"ACK GBB {self.button_brightness}"
        if command == "GDB":
            return f"ACK GDB {self.display_brightness}"
        if command == "CH_INFO":
            return self._handle_channel_info(args)

        value = self._int_arg(args)
        if value is None:
            return "NACK"

        if command == "SET_ACT_CH_IDX" and 1 <= value <= 64:
            self.active_channel = value
        elif command == "SET_SPKR_MUTE" and value in (0, 1):
            self.speaker_muted = bool(value)
        elif command == "SET_VOLUME" and 1 <= value <= 10:
            self.volume = value
        elif command == "SBB" and 0 <= value <= 10:
            self.button_brightness = value
        elif command == "SDB" and 0 <= value <= 10:
            self.display_brightness = value
        else:
            return "NACK"

        return f"ACK {command} {value}"

    def _handle_channel_info(self, args: List[str]) -> Optional[str]:
        index = self._int_arg(args)
        if index is None or index not in self.channels:
            return "NACK"
        if index in self.silent_channels:
            return None
        if index in self.nack_channels:
            return "NACK"

        enabled, device, channel, display = self.channels[index]
        return f'ACK CH_INFO {int(enabled)} ({index}) "{device}" "{channel}" "{display}"'

    @staticmethod
    def _int_arg(args: List[str]) -> Optional[int]:
        if len(args) != 1:
            return None
        try:
            return int(args[0])
        except ValueError:
            return None
