"""UDP transport layer for unDNEMO communication."""

import logging
import socket
import threading
from typing import Optional, Protocol

from undnemo_lib import parsing, protocol
from undnemo_lib.errors import TransportError

logger = logging.getLogger(__name__)


class DatagramLike(Protocol):
    """Protocol for a connected datagram socket (allows test doubles)."""

    def send(self, data: bytes) -> int:
        """Send one datagram to the connected peer."""
        ...

    def recv(self, bufsize: int) -> bytes:
        """Receive one datagram, raising socket.timeout when none arrives."""
        ...

    def settimeout(self, value: Optional[float]) -> None:
        """Set the receive timeout."""
        ...

    def gettimeout(self) -> Optional[float]:
        """Return the receive timeout."""
        ...

    def close(self) -> None:
        """Close the socket."""
        ...


class Transport:
    """Request/response wrapper around a connected UDP socket.

    The device answers one request at a time, so every exchange holds a lock
    from send until the matching response (or timeout) is read. Poll workers
    share one Transport.
    """

    def __init__(
        self,
        sock: DatagramLike,
        host: Optional[str] = None,
        buffer_size: int = protocol.DEFAULT_BUFFER_SIZE,
    ) -> None:
        """Initialize transport with a socket instance.

        Args:
            sock: Object implementing DatagramLike
                  (e.g., socket.socket or FakeDevice for testing)
            host: Device address, used in error messages
            buffer_size: Receive buffer size in bytes
        """
        self._sock = sock
        self._host = host
        self._buffer_size = buffer_size
        self._lock = threading.Lock()
        self._open = True
        # None until the first exchange; False after one went unanswered
        self._online: Optional[bool] = None

    @classmethod
    def open(
        cls,
        host: str,
        port: int = protocol.DEFAULT_PORT,
        timeout_s: float = protocol.RESPONSE_TIMEOUT,
    ) -> "Transport":
        """Open a UDP socket connected to the device.

        Args:
            host: Device IP address or hostname
            port: Device UDP port. Default 49494.
            timeout_s: Per-request response timeout in seconds

        Returns:
            Transport instance wrapping the socket

        Raises:
            TransportError: If the socket cannot be created or connected
        """
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            sock.settimeout(timeout_s)
            sock.connect((host, port))
            logger.info(f"Opened UDP socket to {host}:{port}, timeout={timeout_s}s")
            return cls(sock, host=host)
        except OSError as e:
            raise TransportError(f"Failed to open UDP socket to {host}:{port}: {e}") from e

    @property
    def host(self) -> Optional[str]:
        """Device address."""
        return self._host

    @property
    def is_open(self) -> bool:
        """Check if the socket is currently open."""
        return self._open

    @property
    def online(self) -> Optional[bool]:
        """Whether the last exchange got a reply (None before the first one)."""
        return self._online

    def close(self) -> None:
        """Close the socket."""
        if self._open:
            self._open = False
            self._sock.close()
            logger.info("Closed UDP socket")

    def exchange(self, command: str, *args: object) -> str:
        """Send one command and return the raw response text.

        Args:
            command: Wire command name
            *args: Optional command arguments

        Returns:
            Response decoded as ASCII, terminators not yet stripped

        Raises:
            TransportError: If the socket is closed, send fails, or no
                            response arrives before the timeout
        """
        if not self._open:
            raise TransportError("UDP socket is not open")

        data = parsing.encode_request(command, *args)

        with self._lock:
            try:
                self._discard_pending()
                self._sock.send(data)
                logger.debug(f"Sent {data!r}")
                response = self._sock.recv(self._buffer_size)
            except socket.timeout as e:
                self._online = False
                raise TransportError(
                    f"No response from {self._host or 'device'} to {data!r}"
                ) from e
            except OSError as e:
                raise TransportError(f"UDP exchange failed for {data!r}: {e}") from e
            self._online = True

        if not response:
            raise TransportError(f"Empty response from {self._host or 'device'} to {data!r}")

        text = response.decode(protocol.ENCODING, errors="replace")
        logger.debug(f"Received {text!r}")
        return text

    def flush_input(self) -> None:
        """Discard all datagrams already waiting on the socket.

        Raises:
            TransportError: If the socket is closed or cannot be read
        """
        if not self._open:
            raise TransportError("UDP socket is not open")

        with self._lock:
            try:
                self._discard_pending()
            except OSError as e:
                raise TransportError(f"Failed to flush input: {e}") from e

    def _discard_pending(self) -> int:
        # Late answers to timed-out requests would otherwise be read as the
        # answer to the next one. Caller holds the lock.
        timeout = self._sock.gettimeout()
        self._sock.settimeout(0.0)
        discarded = 0
        try:
            while True:
                try:
                    stale = self._sock.recv(self._buffer_size)
                except (BlockingIOError, socket.timeout):
                    break
                if not stale:
                    break
                discarded += 1
                logger.warning(f"Discarded stale datagram {stale!r}")
        finally:
            self._sock.settimeout(timeout)
        return discarded
