"""Thread-safe channel table store and background snapshot recorder.

This module provides:
- ChannelTableStore: latest merged channel table as a pandas DataFrame, with CSV export
- SnapshotRecorder: background thread that reads the controller on an interval,
  the way a monitoring host drives the engine, and feeds the store

Design notes:
- Only snapshots with merged channel groups update the table. A read that
  returns scalars only (first poll still running) leaves the previous table.
- PollFailed from the controller is logged and the recorder keeps going; the
  next read after it is clean.
"""

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from threading import Event, RLock, Thread
from typing import Any, Dict, Optional

import pandas as pd

from data_store.schemas import SCHEMA, record_to_row
from undnemo_lib.controller import UndnemoController
from undnemo_lib.errors import PollFailed
from undnemo_lib.models import Snapshot

logger = logging.getLogger(__name__)


class ChannelTableStore:
    """Thread-safe DataFrame holding the latest channel table.

    One row per tracked channel with the normalized schema (timestamp,
    channel_index, group, active, enabled, device_name, channel_name,
    display_name).
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._df = pd.DataFrame(columns=list(SCHEMA.keys()))
        self._statistics: Dict[str, str] = {}
        self._updated_at: Optional[datetime] = None

    def update_from_snapshot(self, snapshot: Snapshot) -> bool:
        """Replace the table with the channel records of a snapshot.

        Thread-safe.

        Args:
            snapshot: Snapshot returned by UndnemoController.get_snapshot()

        Returns:
            True if the table was replaced, False if the snapshot had no
            merged channel groups yet
        """
        if not snapshot.complete:
            return False

        ts = datetime.now(timezone.utc)
        active = snapshot.scalars.active_channel_index
        rows = [record_to_row(snapshot.records[i], active, ts) for i in sorted(snapshot.records)]

        with self._lock:
            self._df = pd.DataFrame(rows, columns=list(SCHEMA.keys()))
            self._statistics = dict(snapshot.statistics)
            self._updated_at = ts
            logger.debug(f"Channel table updated: {len(rows)} rows, active channel {active}")
        return True

    def get_dataframe(self) -> pd.DataFrame:
        """Get copy of the channel table.

        Thread-safe. Returns a copy.
        """
        with self._lock:
            return self._df.copy()

    def get_row(self, channel_index: int) -> Optional[Dict[str, Any]]:
        """Get one channel as a dictionary, or None if it is not in the table."""
        with self._lock:
            match = self._df[self._df["channel_index"] == channel_index]
            if match.empty:
                return None
            return match.iloc[0].to_dict()

    def get_statistics(self) -> Dict[str, str]:
        """Copy of the statistics map of the last stored snapshot."""
        with self._lock:
            return dict(self._statistics)

    def get_stats(self) -> Dict[str, Any]:
        """Get summary information about the stored table.

        Thread-safe.

        Returns:
            Dictionary with keys:
                - row_count: Number of channels in the table
                - enabled_count: Number of enabled channels
                - active_index: Index of the active channel row (or None)
                - updated_at: ISO timestamp of the last update (or None)
        """
        with self._lock:
            if self._df.empty:
                return {
                    "row_count": 0,
                    "enabled_count": 0,
                    "active_index": None,
                    "updated_at": None,
                }

            active_rows = self._df[self._df["active"]]
            return {
                "row_count": len(self._df),
                "enabled_count": int(self._df["enabled"].sum()),
                "active_index": int(active_rows["channel_index"].iloc[0]) if not active_rows.empty else None,
                "updated_at": self._updated_at.isoformat() if self._updated_at else None,
            }

    def export_csv(self, path: Optional[str] = None) -> str:
        """Export the channel table to a CSV file.

        Thread-safe. Auto-generates filename if path not provided.

        Args:
            path: Output file path. If None, generates timestamped filename.

        Returns:
            Absolute path to exported file
        """
        with self._lock:
            if path is None:
                timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
                path = f"undnemo_channels_{timestamp}.csv"

            self._df.to_csv(path, index=False)
            abs_path = str(Path(path).resolve())
            logger.info(f"Exported {len(self._df)} channels to CSV: {abs_path}")
            return abs_path

    def clear(self) -> None:
        """Clear the table. Thread-safe."""
        with self._lock:
            self._df = pd.DataFrame(columns=list(SCHEMA.keys()))
            self._statistics = {}
            self._updated_at = None
            logger.debug("ChannelTableStore cleared")


class SnapshotRecorder:
    """Background thread that reads the controller and records channel tables.

    Every ``poll_interval_s`` it calls controller.get_snapshot(). That read
    also starts the next poll cycle inside the controller, so the recorder
    is what keeps the cache fresh when no other caller is reading.
    """

    def __init__(
        self,
        controller: UndnemoController,
        store: ChannelTableStore,
        poll_interval_s: float = 30.0,
    ) -> None:
        """Initialize recorder (does not start automatically).

        Args:
            controller: Connected UndnemoController
            store: ChannelTableStore to update
            poll_interval_s: Seconds between reads (default 30s)
        """
        self._controller = controller
        self._store = store
        self._poll_interval = poll_interval_s

        self._thread: Optional[Thread] = None
        self._stop_event = Event()

        self.reads = 0
        self.failures = 0
        self.last_error: Optional[str] = None

    def start(self) -> None:
        """Start background recording thread.

        Raises:
            RuntimeError: If recorder is already running
        """
        if self._thread and self._thread.is_alive():
            raise RuntimeError("Recorder already running")

        logger.info(f"Starting SnapshotRecorder (interval: {self._poll_interval}s)...")
        self._stop_event.clear()

        self._thread = Thread(
            target=self._recorder_loop,
            name="SnapshotRecorder",
            daemon=True,
        )
        self._thread.start()
        logger.info("SnapshotRecorder started")

    def stop(self) -> None:
        """Stop the recording thread.

        Call this BEFORE disconnecting the controller, otherwise the last
        read fails with NotConnected.
        """
        if not self._thread or not self._thread.is_alive():
            logger.warning("Recorder not running, nothing to stop")
            return

        logger.info("Stopping SnapshotRecorder...")
        self._stop_event.set()
        self._thread.join(timeout=5.0)

        if self._thread.is_alive():
            logger.warning("SnapshotRecorder thread did not stop cleanly")

        self._thread = None
        logger.info("SnapshotRecorder stopped")

    def is_running(self) -> bool:
        """Check if recorder thread is active."""
        return self._thread is not None and self._thread.is_alive()

    def record_once(self) -> bool:
        """Read the controller once and update the store.

        Returns:
            True if the store was updated
        """
        self.reads += 1
        try:
            snapshot = self._controller.get_snapshot()
        except PollFailed as e:
            self.failures += 1
            self.last_error = str(e)
            logger.warning(f"Poll reported errors: {e}")
            return False

        return self._store.update_from_snapshot(snapshot)

    def _recorder_loop(self) -> None:
        """Background thread loop: read, store, wait."""
        logger.info(f"Recorder loop started (thread {threading.get_ident()})")

        while True:
            try:
                self.record_once()
            except Exception as e:
                self.failures += 1
                self.last_error = str(e)
                logger.error(f"Error in recorder loop: {e}", exc_info=True)
                # Don't crash thread on transient errors

            if self._stop_event.wait(timeout=self._poll_interval):
                break

        logger.info("Recorder loop stopped")
