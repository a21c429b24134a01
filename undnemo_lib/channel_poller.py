"""Parallel channel info fetching across a bounded, per-cycle worker pool."""

import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, List, Optional

from undnemo_lib import protocol
from undnemo_lib.error_aggregator import ErrorAggregator
from undnemo_lib.models import ChannelRecord, PollJob

logger = logging.getLogger(__name__)

# fetch_channel(index) -> record, raising on any failure
FetchChannel = Callable[[int], ChannelRecord]

# on_complete(cycle_id, records, expected_count)
OnComplete = Callable[[int, List[ChannelRecord], int], None]


class ChannelPoller:
    """Fetches channel records in parallel and reports each finished cycle.

    Every poll() call is one cycle: the requested indices are split into
    batches, a fresh pool runs one worker per batch, and when the last batch
    is done the collected records are handed to ``on_complete``. Workers
    never wait for new work.

    Per-channel failures go to the ErrorAggregator and do not stop the batch.
    """

    def __init__(
        self,
        fetch_channel: FetchChannel,
        errors: ErrorAggregator,
        on_complete: OnComplete,
    ) -> None:
        """Initialize poller (no threads are started until poll()).

        Args:
            fetch_channel: Callable fetching one channel record by index
            errors: Aggregator receiving per-channel failure messages
            on_complete: Called once per cycle with the collected records
        """
        self._fetch_channel = fetch_channel
        self._errors = errors
        self._on_complete = on_complete

        # Shared record collection, appended to by all workers of a cycle
        self._records: List[ChannelRecord] = []
        self._records_lock = threading.Lock()

        # Cycle bookkeeping
        self._cycle_lock = threading.Lock()
        self._cycle_id = 0
        self._expected = 0
        self._outstanding = 0
        self._executor: Optional[ThreadPoolExecutor] = None
        self._stop_event = threading.Event()

    # ========================================================================
    # Partitioning
    # ========================================================================

    @staticmethod
    def partition(
        indices: Iterable[int], filtered: bool, cycle_id: int = 0
    ) -> List[PollJob]:
        """Split indices into contiguous batches, one per worker.

        Unfiltered polls use 4 workers (1-16, 17-32, 33-48, 49-64). Filtered
        polls use at most 8 workers. Assigned order is preserved.

        Args:
            indices: Channel indices to fetch, in order
            filtered: True if the indices come from a channel filter
            cycle_id: Cycle the jobs belong to

        Returns:
            List of PollJob, empty if there is nothing to fetch
        """
        ordered = tuple(indices)
        if not ordered:
            return []

        max_workers = protocol.FILTERED_WORKERS if filtered else protocol.UNFILTERED_WORKERS
        batch_size = math.ceil(len(ordered) / min(max_workers, len(ordered)))

        return [
            PollJob(cycle_id=cycle_id, worker_id=worker_id, indices=ordered[start : start + batch_size])
            for worker_id, start in enumerate(range(0, len(ordered), batch_size))
        ]

    # ========================================================================
    # Cycle Control
    # ========================================================================

    def poll(self, indices: Iterable[int], filtered: bool) -> bool:
        """Start a poll cycle in the background.

        Does nothing while a previous cycle is still running, so records that
        cycle already collected are never dropped.

        Args:
            indices: Channel indices to fetch
            filtered: True if the indices come from a channel filter

        Returns:
            True if a new cycle was started
        """
        ordered = tuple(indices)

        with self._cycle_lock:
            if self._outstanding > 0:
                logger.debug(f"Poll cycle {self._cycle_id} still running, not starting another")
                return False

            if not ordered:
                return False

            self._cycle_id += 1
            cycle_id = self._cycle_id
            jobs = self.partition(ordered, filtered, cycle_id)

            with self._records_lock:
                self._records = []

            self._expected = len(ordered)
            self._outstanding = len(jobs)
            self._stop_event.clear()

            executor = ThreadPoolExecutor(
                max_workers=len(jobs),
                thread_name_prefix=f"ChannelPoller-{cycle_id}",
            )
            self._executor = executor
            for job in jobs:
                executor.submit(self._run_job, job)
            # Threads exit once their batch is done
            executor.shutdown(wait=False)

        logger.info(
            f"Started poll cycle {cycle_id}: {len(ordered)} channels across {len(jobs)} workers"
        )
        return True

    def stop(self) -> None:
        """Stop the running cycle and release its threads.

        No new fetches start after this returns; a fetch already waiting on
        the device finishes or times out first. Collected records are dropped
        and the cycle never reports completion.
        """
        with self._cycle_lock:
            # Invalidate the running cycle so late workers do nothing
            self._cycle_id += 1
            self._outstanding = 0
            self._stop_event.set()
            executor = self._executor
            self._executor = None

        with self._records_lock:
            self._records = []

        if executor is not None:
            logger.debug("Stopping poll workers...")
            executor.shutdown(wait=True, cancel_futures=True)
            logger.debug("Poll workers stopped")

    @property
    def is_polling(self) -> bool:
        """True while a cycle has not finished reporting."""
        with self._cycle_lock:
            return self._outstanding > 0

    @property
    def cycle_id(self) -> int:
        """Id of the most recent cycle."""
        return self._cycle_id

    @property
    def expected(self) -> int:
        """Number of records the current cycle should produce."""
        return self._expected

    def collected(self) -> List[ChannelRecord]:
        """Copy of the records collected so far in the current cycle."""
        with self._records_lock:
            return list(self._records)

    # ========================================================================
    # Worker
    # ========================================================================

    def _is_current(self, job: PollJob) -> bool:
        return job.cycle_id == self._cycle_id and not self._stop_event.is_set()

    def _run_job(self, job: PollJob) -> None:
        """Fetch each assigned index in order, then report the batch done."""
        logger.debug(
            f"Worker {job.worker_id} of cycle {job.cycle_id} fetching channels {list(job.indices)}"
        )

        try:
            for index in job.indices:
                if not self._is_current(job):
                    logger.debug(f"Worker {job.worker_id} of cycle {job.cycle_id} stopped")
                    return

                try:
                    record = self._fetch_channel(index)
                except Exception as e:
                    self._errors.record(f"Failed to fetch channel {index} info: {e}")
                    logger.warning(f"Failed to fetch channel {index} info: {e}")
                    continue

                with self._records_lock:
                    if job.cycle_id == self._cycle_id:
                        self._records.append(record)
        finally:
            self._finish_job(job)

    def _finish_job(self, job: PollJob) -> None:
        with self._cycle_lock:
            if job.cycle_id != self._cycle_id:
                return
            if self._outstanding > 1:
                self._outstanding -= 1
                return
            expected = self._expected

        # Last batch of the cycle: the cycle counts as running until the
        # records have been handed over
        with self._records_lock:
            records = self._records
            self._records = []

        logger.info(
            f"Poll cycle {job.cycle_id} finished: {len(records)}/{expected} channels fetched"
        )

        try:
            self._on_complete(job.cycle_id, records, expected)
        except Exception as e:
            logger.error(f"Error handling completed poll cycle {job.cycle_id}: {e}", exc_info=True)
        finally:
            with self._cycle_lock:
                if job.cycle_id == self._cycle_id:
                    self._outstanding = 0
