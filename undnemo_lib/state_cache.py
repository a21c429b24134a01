"""Thread-safe cache of the device state served to callers."""

import dataclasses
import logging
import threading
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from undnemo_lib import protocol
from undnemo_lib.models import (
    ChannelRecord,
    ControlDescriptor,
    EngineState,
    ScalarProperties,
    Snapshot,
)

logger = logging.getLogger(__name__)


class StateCache:
    """Single source of truth for scalar properties and the channel table.

    Statistics and controls are derived from the scalars and records and are
    always rebuilt together, then published with one assignment, so a reader
    never sees a dropdown that disagrees with the statistics next to it.

    One RLock guards every mutation. Poll merges and control patches both go
    through it.
    """

    def __init__(self, channel_filter: Optional[Tuple[int, ...]] = None) -> None:
        """Initialize an empty cache.

        Args:
            channel_filter: Indices to track, or None to track all 64
        """
        self._lock = threading.RLock()
        self._filter = channel_filter

        self._scalars: Optional[ScalarProperties] = None
        self._records: Dict[int, ChannelRecord] = {}
        self._complete = False
        self._last_merged_cycle = 0

        # (statistics, controls), replaced as a pair
        self._published: Tuple[Mapping[str, str], Tuple[ControlDescriptor, ...]] = (
            MappingProxyType({}),
            (),
        )

    # ========================================================================
    # Queries
    # ========================================================================

    @property
    def channel_filter(self) -> Optional[Tuple[int, ...]]:
        return self._filter

    @property
    def has_snapshot(self) -> bool:
        """True once scalars have been read at least once."""
        with self._lock:
            return self._scalars is not None

    @property
    def complete(self) -> bool:
        """True once a poll cycle has been merged."""
        with self._lock:
            return self._complete

    @property
    def active_channel_index(self) -> int:
        with self._lock:
            if self._scalars is None:
                return protocol.NO_ACTIVE_CHANNEL
            return self._scalars.active_channel_index

    def scalars(self) -> Optional[ScalarProperties]:
        """Copy of the cached scalars, or None before the first read."""
        with self._lock:
            return dataclasses.replace(self._scalars) if self._scalars else None

    def has_record(self, index: int) -> bool:
        with self._lock:
            return index in self._records

    def cached_indices(self) -> FrozenSet[int]:
        with self._lock:
            return frozenset(self._records)

    def tracked_indices(self, active: Optional[int] = None) -> Tuple[int, ...]:
        """Indices that should be polled and displayed.

        With a filter: the filter plus the active channel when it is outside
        the filter. Without: all 64 channels.

        Args:
            active: Active index to use, defaults to the cached one
        """
        if active is None:
            active = self.active_channel_index

        if self._filter is None:
            return protocol.ALL_CHANNELS

        if active != protocol.NO_ACTIVE_CHANNEL and active not in self._filter:
            return self._filter + (active,)
        return self._filter

    def is_tracked(self, index: int, active: Optional[int] = None) -> bool:
        return index in self.tracked_indices(active)

    def view(self, state: EngineState) -> Snapshot:
        """Read-only copy of the current state.

        Args:
            state: Engine state to stamp on the view

        Returns:
            Snapshot sharing no mutable objects with the cache
        """
        with self._lock:
            statistics, controls = self._published
            return Snapshot(
                scalars=dataclasses.replace(self._scalars) if self._scalars else ScalarProperties(),
                records=MappingProxyType(dict(self._records)),
                statistics=statistics,
                controls=controls,
                state=state,
                complete=self._complete,
            )

    # ========================================================================
    # Mutations
    # ========================================================================

    def update_scalars(self, scalars: ScalarProperties) -> None:
        """Replace all scalar properties (after a scalar refresh).

        Channel groups are relabelled against the new active index. A
        previously visible active channel outside the filter is dropped.
        """
        with self._lock:
            self._scalars = dataclasses.replace(scalars)
            self._drop_untracked()
            self._publish()
            logger.debug(f"Scalars updated: {self._scalars}")

    def patch_scalar(self, name: str, value: object) -> None:
        """Overwrite one scalar field in place (after a successful control).

        Raises:
            ValueError: If the value is out of range for the field
        """
        with self._lock:
            current = self._scalars or ScalarProperties()
            self._scalars = dataclasses.replace(current, **{name: value})
            self._publish()
            logger.debug(f"Patched scalar {name}={value!r}")

    def merge_completed_poll(
        self, cycle_id: int, records: Iterable[ChannelRecord], complete: bool
    ) -> bool:
        """Write a finished poll cycle into the cache.

        A complete cycle replaces the records it polled. An incomplete one
        (some fetches failed) overlays what was fetched so failed channels
        keep their last known values. Either way a cached record that is
        tracked now but was not part of the cycle (an active channel fetched
        by a control while the cycle ran) stays. A cycle is merged at most
        once, and an older cycle never overwrites a newer one.

        Args:
            cycle_id: Poll cycle id
            records: Records fetched by the cycle
            complete: True if every requested channel was fetched

        Returns:
            True if the cycle was merged
        """
        with self._lock:
            if cycle_id <= self._last_merged_cycle:
                logger.debug(f"Poll cycle {cycle_id} already merged or superseded, skipping")
                return False

            fetched = {record.index: record for record in records}
            if complete:
                tracked = self.tracked_indices()
                kept = {
                    index: record
                    for index, record in self._records.items()
                    if index in tracked and index not in fetched
                }
                self._records = {**kept, **fetched}
            else:
                self._records.update(fetched)

            self._last_merged_cycle = cycle_id
            self._complete = True
            self._drop_untracked()
            self._publish()

            logger.info(
                f"Merged poll cycle {cycle_id}: {len(fetched)} fetched, "
                f"{len(self._records)} channels cached"
            )
            return True

    def patch_active_channel(
        self,
        old_active: int,
        new_active: int,
        fetched: Iterable[ChannelRecord] = (),
    ) -> None:
        """Move the ActiveChannel label from one index to another.

        No record other than the two involved changes. A record fetched for
        the new active channel is merged first. The old active record is
        dropped if it is no longer tracked (outside the filter).

        Args:
            old_active: Previously active index (0 if none)
            new_active: Newly active index
            fetched: Records fetched for this change (zero or one)
        """
        with self._lock:
            for record in fetched:
                self._records[record.index] = record

            current = self._scalars or ScalarProperties()
            self._scalars = dataclasses.replace(current, active_channel_index=new_active)
            self._drop_untracked()
            self._publish()

            logger.info(f"Active channel relabelled {old_active} -> {new_active}")

    def clear(self) -> None:
        """Forget everything (engine teardown)."""
        with self._lock:
            self._scalars = None
            self._records = {}
            self._complete = False
            self._published = (MappingProxyType({}), ())
            logger.debug("State cache cleared")

    # ========================================================================
    # Internal Helpers
    # ========================================================================

    def _drop_untracked(self) -> None:
        if self._filter is None:
            return

        tracked = set(self.tracked_indices())
        for index in [i for i in self._records if i not in tracked]:
            del self._records[index]
            logger.debug(f"Dropped channel {index} (outside filter and not active)")

    def _publish(self) -> None:
        scalars = self._scalars or ScalarProperties()
        statistics = self._build_statistics(scalars)
        controls = self._build_controls(scalars)
        self._published = (MappingProxyType(statistics), controls)

    def _build_statistics(self, scalars: ScalarProperties) -> Dict[str, str]:
        active = scalars.active_channel_index
        statistics = {
            protocol.STAT_SOFTWARE_VERSION: scalars.software_version,
            protocol.STAT_SPEAKER_MUTE: "1" if scalars.speaker_muted else "0",
            protocol.STAT_VOLUME: str(scalars.volume),
            protocol.STAT_BUTTON_BRIGHTNESS: str(scalars.button_brightness),
            protocol.STAT_DISPLAY_BRIGHTNESS: str(scalars.display_brightness),
            protocol.STAT_ACTIVE_CHANNEL_INDEX: str(active),
        }

        for index in sorted(self._records):
            record = self._records[index]
            group = protocol.ACTIVE_GROUP if index == active else protocol.channel_group(index)
            statistics[protocol.group_key(group, protocol.FIELD_ENABLE_STATE)] = (
                "1" if record.enabled else "0"
            )
            statistics[protocol.group_key(group, protocol.FIELD_DEVICE_NAME)] = record.device_name
            statistics[protocol.group_key(group, protocol.FIELD_CHANNEL_NAME)] = record.channel_name
            statistics[protocol.group_key(group, protocol.FIELD_DISPLAY_NAME)] = record.display_name

        return statistics

    def _build_controls(self, scalars: ScalarProperties) -> Tuple[ControlDescriptor, ...]:
        active = scalars.active_channel_index
        options = [str(index) for index in sorted(self.tracked_indices(active))]
        if active == protocol.NO_ACTIVE_CHANNEL:
            options.insert(0, protocol.NONE_OPTION)
            active_value = protocol.NONE_OPTION
        else:
            active_value = str(active)

        return (
            ControlDescriptor(
                name=protocol.STAT_SPEAKER_MUTE,
                type="switch",
                value="1" if scalars.speaker_muted else "0",
            ),
            ControlDescriptor(
                name=protocol.STAT_VOLUME,
                type="slider",
                value=str(scalars.volume),
                range_start=protocol.VOLUME_MIN,
                range_end=protocol.VOLUME_MAX,
            ),
            ControlDescriptor(
                name=protocol.STAT_BUTTON_BRIGHTNESS,
                type="slider",
                value=str(scalars.button_brightness),
                range_start=protocol.BRIGHTNESS_MIN,
                range_end=protocol.BRIGHTNESS_MAX,
            ),
            ControlDescriptor(
                name=protocol.STAT_DISPLAY_BRIGHTNESS,
                type="slider",
                value=str(scalars.display_brightness),
                range_start=protocol.BRIGHTNESS_MIN,
                range_end=protocol.BRIGHTNESS_MAX,
            ),
            ControlDescriptor(
                name=protocol.STAT_ACTIVE_CHANNEL_INDEX,
                type="dropdown",
                value=active_value,
                options=tuple(options),
            ),
        )
