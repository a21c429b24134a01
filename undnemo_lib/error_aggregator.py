"""Thread-safe collection of errors raised by background poll workers."""

import logging
import threading
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class ErrorAggregator:
    """Insertion-ordered, de-duplicated set of error messages.

    Poll workers record failures here; the next caller read drains them as a
    single combined message. Each message is delivered at most once.
    """

    def __init__(self) -> None:
        # dict keys keep insertion order and reject duplicates
        self._messages: Dict[str, None] = {}
        self._lock = threading.Lock()

    def record(self, message: str) -> None:
        """Add a message (thread-safe). Repeats of a pending message are ignored.

        Args:
            message: Human readable failure description
        """
        with self._lock:
            if message in self._messages:
                return
            self._messages[message] = None
            logger.debug(f"Recorded poll error ({len(self._messages)} pending): {message}")

    def drain(self) -> Optional[str]:
        """Return all pending messages joined by newlines and clear them.

        Returns:
            Combined message, or None if nothing is pending
        """
        with self._lock:
            if not self._messages:
                return None
            combined = "\n".join(self._messages)
            self._messages.clear()
            return combined

    def snapshot(self) -> List[str]:
        """Copy of pending messages without clearing them (thread-safe)."""
        with self._lock:
            return list(self._messages)

    def clear(self) -> None:
        """Discard all pending messages (thread-safe)."""
        with self._lock:
            count = len(self._messages)
            self._messages.clear()
            logger.debug(f"Cleared {count} pending poll errors")

    def __len__(self) -> int:
        with self._lock:
            return len(self._messages)
