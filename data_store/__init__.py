"""DataFrame layer for unDNEMO channel tables."""

from data_store.schemas import SCHEMA, record_to_row
from data_store.store import ChannelTableStore, SnapshotRecorder

__all__ = ["SCHEMA", "record_to_row", "ChannelTableStore", "SnapshotRecorder"]
