"""Schema normalization for channel records to DataFrame format.

Every row carries the group label the record has in the statistics map, so
an exported table matches what the host displays.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from undnemo_lib import protocol
from undnemo_lib.models import ChannelRecord

# DataFrame schema: column names and their dtypes
SCHEMA = {
    "timestamp": str,  # UTC ISO 8601, when the snapshot was taken
    "channel_index": int,  # 1-64
    "group": str,  # "ActiveChannel" or "Channel NN"
    "active": bool,
    "enabled": bool,
    "device_name": str,
    "channel_name": str,
    "display_name": str,
}


def record_to_row(
    record: ChannelRecord, active_index: int, ts: Optional[datetime] = None
) -> Dict[str, Any]:
    """Convert a ChannelRecord to a DataFrame row dictionary.

    Args:
        record: Channel record from a Snapshot
        active_index: Active channel index of the same Snapshot
        ts: Snapshot time. Defaults to now (UTC). Naive values are taken as UTC.

    Returns:
        Dictionary with all SCHEMA keys
    """
    if ts is None:
        ts = datetime.now(timezone.utc)
    elif ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    else:
        ts = ts.astimezone(timezone.utc)

    active = record.index == active_index
    return {
        "timestamp": ts.isoformat(),
        "channel_index": record.index,
        "group": protocol.ACTIVE_GROUP if active else protocol.channel_group(record.index),
        "active": active,
        "enabled": record.enabled,
        "device_name": record.device_name,
        "channel_name": record.channel_name,
        "display_name": record.display_name,
    }
