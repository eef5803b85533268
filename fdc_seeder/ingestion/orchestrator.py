"""Crash-resumable orchestration of the FoodData Central seeding run.

State machine:

    IDLE → RUNNING → PAGINATING → TRANSFORMING → WRITING → CHECKPOINT_SAVED
                         ↑                                        │
                         └──────────── next page ─────────────────┤
                                                                  ▼
                     next partition ←──────────────── PARTITION_COMPLETE
                                                                  │
                                                   ALL_COMPLETE ◄─┘
    any state → ABORTED (retry budget exhausted, checkpoint unwritable,
                         operator interrupt)

Partitions are processed one at a time and pages strictly in order, so the
checkpoint position is always "everything up to currentPage is done".
"""

import logging
import signal
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional

from fdc_seeder.data_layer.models import BatchWriteResult, CanonicalIngredient
from fdc_seeder.ingestion.batch_writer import BatchWriter
from fdc_seeder.ingestion.checkpoint_store import CheckpointStore, IngestionCheckpoint, utc_now
from fdc_seeder.ingestion.ingestion_errors import (
    CheckpointPersistError,
    FatalFetchError,
    TransientFetchError,
)
from fdc_seeder.ingestion.record_transformer import RecordTransformer
from fdc_seeder.ingestion.usda_client import FoodPage, RateLimitedClient

logger = logging.getLogger(__name__)


class RunState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAGINATING = "paginating"
    TRANSFORMING = "transforming"
    WRITING = "writing"
    CHECKPOINT_SAVED = "checkpoint_saved"
    PARTITION_COMPLETE = "partition_complete"
    ALL_COMPLETE = "all_complete"
    ABORTED = "aborted"


@dataclass
class RunOutcome:
    """How a run ended.

    Attributes:
        state: ALL_COMPLETE or ABORTED
        reason: Why the run aborted (None on completion)
        interrupted: True when the abort was an operator stop request
        checkpoint: Final checkpoint state
    """
    state: RunState
    checkpoint: IngestionCheckpoint
    reason: Optional[str] = None
    interrupted: bool = False

    @property
    def exit_code(self) -> int:
        if self.state == RunState.ALL_COMPLETE or self.interrupted:
            return 0
        return 1


class _StopRequested(Exception):
    pass


class _AbortRun(Exception):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class IngestionOrchestrator:
    """Drives the page loop across all data-type partitions.

    Usage:
        orchestrator = IngestionOrchestrator(
            client=RateLimitedClient.from_env(),
            transformer=RecordTransformer(),
            writer=BatchWriter(store, batch_size=100),
            checkpoints=CheckpointStore("usda-seeding-progress.json"),
            partitions=["Foundation", "SR Legacy"],
        )
        with graceful_shutdown(orchestrator):
            outcome = orchestrator.run()
    """

    def __init__(
        self,
        client: RateLimitedClient,
        transformer: RecordTransformer,
        writer: BatchWriter,
        checkpoints: CheckpointStore,
        partitions: List[str],
        page_size: Optional[int] = None,
        page_retry_budget: int = 3,
        page_retry_delay: float = 30.0,
        max_save_failures: int = 10,
        clock: Callable[[], datetime] = utc_now
    ):
        if not partitions:
            raise ValueError("At least one partition is required")
        self.client = client
        self.transformer = transformer
        self.writer = writer
        self.checkpoints = checkpoints
        self.partitions = list(partitions)
        self.page_size = page_size or client.page_size
        self.page_retry_budget = page_retry_budget
        self.page_retry_delay = page_retry_delay
        self.max_save_failures = max_save_failures
        self._clock = clock

        self.state = RunState.IDLE
        self.checkpoint: Optional[IngestionCheckpoint] = None
        self._stop_event = threading.Event()
        self._stop_reason = "interrupted"
        self._save_failures = 0

    def request_stop(self, reason: str = "interrupted") -> None:
        """Ask the run to stop at the next page boundary."""
        self._stop_reason = reason
        self._stop_event.set()
        logger.info("ORCHESTRATOR stop requested reason=%s", reason)

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def run(self) -> RunOutcome:
        """Run (or resume) ingestion until every partition is exhausted.

        Raises:
            CheckpointReadError: If an existing checkpoint cannot be read
        """
        self.state = RunState.RUNNING
        checkpoint = self._load_or_init()
        self.checkpoint = checkpoint

        try:
            self._replay_buffer(checkpoint)
            while checkpoint.current_data_type_index < len(self.partitions):
                index = checkpoint.current_data_type_index
                partition = self.partitions[index]
                checkpoint.current_data_type = partition
                logger.info(
                    "ORCHESTRATOR partition start partition=%s index=%s/%s from_page=%s",
                    partition, index + 1, len(self.partitions), checkpoint.current_page + 1,
                )

                self._process_partition(checkpoint, partition)
                self._flush(checkpoint)
                self.state = RunState.PARTITION_COMPLETE
                logger.info("ORCHESTRATOR partition complete partition=%s", partition)

                if index + 1 >= len(self.partitions):
                    self._persist(checkpoint)
                    break
                checkpoint.current_data_type_index = index + 1
                checkpoint.current_data_type = self.partitions[index + 1]
                checkpoint.current_page = 0
                self._persist(checkpoint)
        except _StopRequested:
            return self._shutdown(checkpoint, self._stop_reason, interrupted=True)
        except _AbortRun as e:
            return self._shutdown(checkpoint, e.reason, interrupted=False)

        self.state = RunState.ALL_COMPLETE
        logger.info(
            "ORCHESTRATOR complete processed=%s inserted=%s duplicates=%s errors=%s",
            checkpoint.processed_items, checkpoint.successful_inserts,
            checkpoint.skipped_duplicates, len(checkpoint.errors),
        )
        return RunOutcome(state=RunState.ALL_COMPLETE, checkpoint=checkpoint)

    # ------------------------------------------------------------------
    # Start / resume
    # ------------------------------------------------------------------

    def _load_or_init(self) -> IngestionCheckpoint:
        checkpoint = self.checkpoints.load()
        if checkpoint is not None:
            self._align_resumed(checkpoint)
            logger.info(
                "ORCHESTRATOR resuming processed=%s/%s partition=%s page=%s buffered=%s",
                checkpoint.processed_items, checkpoint.total_items,
                checkpoint.current_data_type, checkpoint.current_page,
                len(checkpoint.batch_buffer),
            )
            return checkpoint

        logger.info("ORCHESTRATOR starting fresh partitions=%s", ",".join(self.partitions))
        totals: Dict[str, int] = {}
        for partition in self.partitions:
            if self.stop_requested:
                break
            try:
                totals[partition] = self.client.count_partition(partition)
                logger.info("ORCHESTRATOR partition size partition=%s total=%s", partition, totals[partition])
            except (TransientFetchError, FatalFetchError) as e:
                # Learned from the first real page instead.
                logger.warning("ORCHESTRATOR could not count partition=%s error=%s", partition, e)

        checkpoint = IngestionCheckpoint.new(
            self.partitions, self.page_size, partition_totals=totals, now=self._clock()
        )
        self._persist(checkpoint, fatal=False)
        return checkpoint

    def _align_resumed(self, checkpoint: IngestionCheckpoint) -> None:
        if checkpoint.page_size is None:
            checkpoint.page_size = self.page_size
        elif checkpoint.page_size != self.page_size:
            logger.warning(
                "ORCHESTRATOR keeping checkpoint page size %s (configured %s) to stay page-aligned",
                checkpoint.page_size, self.page_size,
            )
            self.page_size = checkpoint.page_size

        name = checkpoint.current_data_type
        if name in self.partitions:
            index = self.partitions.index(name)
            if index != checkpoint.current_data_type_index:
                logger.warning(
                    "ORCHESTRATOR partition list changed; resuming %s at index %s",
                    name, index,
                )
                checkpoint.current_data_type_index = index
        elif name and checkpoint.current_data_type_index < len(self.partitions):
            logger.warning(
                "ORCHESTRATOR checkpoint partition %s is not configured; starting %s from page 1",
                name, self.partitions[checkpoint.current_data_type_index],
            )
            checkpoint.current_page = 0

    def _replay_buffer(self, checkpoint: IngestionCheckpoint) -> None:
        """Write records that were buffered but unflushed when the last run stopped."""
        if not checkpoint.batch_buffer:
            return
        logger.info("ORCHESTRATOR replaying buffered records count=%s", len(checkpoint.batch_buffer))
        for data in checkpoint.batch_buffer:
            try:
                ingredient = CanonicalIngredient.from_dict(data)
            except (KeyError, TypeError, ValueError) as e:
                self.checkpoints.append_error(
                    checkpoint, f"Dropped unreadable buffered record {data.get('fdc_id')}: {e}"
                )
                continue
            result = self.writer.add(ingredient)
            if result is not None:
                self._fold(checkpoint, result)
        self._flush(checkpoint)
        self._persist(checkpoint)

    # ------------------------------------------------------------------
    # Page loop
    # ------------------------------------------------------------------

    def _process_partition(self, checkpoint: IngestionCheckpoint, partition: str) -> None:
        page_number = checkpoint.current_page + 1
        while True:
            if self.stop_requested:
                raise _StopRequested()

            known_total = checkpoint.partition_totals.get(partition)
            if page_number > 1 and known_total is not None and (page_number - 1) * self.page_size >= known_total:
                return

            self.state = RunState.PAGINATING
            try:
                page = self._fetch_with_retry(checkpoint, partition, page_number)
            except FatalFetchError as e:
                logger.error("ORCHESTRATOR partition abandoned partition=%s error=%s", partition, e)
                self.checkpoints.append_error(
                    checkpoint, f"Partition {partition} failed at page {page_number}: {e.message}"
                )
                self._persist(checkpoint)
                return

            checkpoint.set_partition_total(partition, page.total_hits)
            if not page.records and not page.malformed:
                logger.info("ORCHESTRATOR partition exhausted partition=%s page=%s", partition, page_number)
                return

            self._process_page(checkpoint, page)
            checkpoint.current_page = page_number
            self._persist(checkpoint)
            logger.info(
                "ORCHESTRATOR page done partition=%s page=%s processed=%s/%s",
                partition, page_number, checkpoint.processed_items, checkpoint.total_items,
            )

            if page_number * self.page_size >= page.total_hits:
                return
            page_number += 1

    def _fetch_with_retry(
        self,
        checkpoint: IngestionCheckpoint,
        partition: str,
        page_number: int
    ) -> FoodPage:
        failures = 0
        while True:
            try:
                return self.client.fetch_page(partition, page_number, page_size=self.page_size)
            except TransientFetchError as e:
                failures += 1
                if failures > self.page_retry_budget:
                    raise _AbortRun(
                        f"{partition} page {page_number} still failing after "
                        f"{failures} attempts: {e.message}"
                    )
                logger.warning(
                    "ORCHESTRATOR page retry partition=%s page=%s failure=%s/%s error=%s",
                    partition, page_number, failures, self.page_retry_budget, e.message,
                )
                self._persist(checkpoint)
                if self._stop_event.wait(self.page_retry_delay):
                    raise _StopRequested()

    def _process_page(self, checkpoint: IngestionCheckpoint, page: FoodPage) -> None:
        self.state = RunState.TRANSFORMING
        synced_at = self._clock()

        for problem in page.malformed:
            checkpoint.processed_items += 1
            self.checkpoints.append_error(
                checkpoint,
                f"Skipped malformed {page.partition} item on page {page.page_number}: {problem}",
            )

        for record in page.records:
            checkpoint.processed_items += 1
            try:
                ingredient = self.transformer.transform(record, synced_at=synced_at)
            except (ValueError, TypeError, KeyError, AttributeError) as e:
                self.checkpoints.append_error(
                    checkpoint, f"Error processing fdc_id {record.fdc_id} ({record.description[:60]}): {e}"
                )
                continue
            self.state = RunState.WRITING
            result = self.writer.add(ingredient)
            if result is not None:
                self._fold(checkpoint, result)

        checkpoint.total_items = max(checkpoint.total_items, checkpoint.processed_items)
        self._sync_buffer(checkpoint)

    # ------------------------------------------------------------------
    # Writes and persistence
    # ------------------------------------------------------------------

    def _flush(self, checkpoint: IngestionCheckpoint) -> None:
        self.state = RunState.WRITING
        self._fold(checkpoint, self.writer.flush())
        self._sync_buffer(checkpoint)

    def _fold(self, checkpoint: IngestionCheckpoint, result: BatchWriteResult) -> None:
        checkpoint.successful_inserts += result.written
        checkpoint.skipped_duplicates += result.duplicates
        for failure in result.failures:
            self.checkpoints.append_error(
                checkpoint, f"Failed to write fdc_id {failure.fdc_id}: {failure.detail}"
            )

    def _sync_buffer(self, checkpoint: IngestionCheckpoint) -> None:
        checkpoint.batch_buffer = [ingredient.to_dict() for ingredient in self.writer.pending]

    def _persist(self, checkpoint: IngestionCheckpoint, fatal: bool = True) -> None:
        try:
            self.checkpoints.save(checkpoint)
        except CheckpointPersistError as e:
            self._save_failures += 1
            logger.error(
                "CHECKPOINT save failed consecutive=%s/%s error=%s",
                self._save_failures, self.max_save_failures, e,
            )
            if fatal and self._save_failures >= self.max_save_failures:
                raise _AbortRun(f"checkpoint unwritable after {self._save_failures} attempts: {e.message}")
            return
        self._save_failures = 0
        self.state = RunState.CHECKPOINT_SAVED

    def _shutdown(
        self,
        checkpoint: IngestionCheckpoint,
        reason: str,
        interrupted: bool
    ) -> RunOutcome:
        if interrupted:
            logger.info("ORCHESTRATOR shutting down gracefully reason=%s", reason)
        else:
            logger.error("ORCHESTRATOR aborting reason=%s", reason)
            self.checkpoints.append_error(checkpoint, f"Run aborted: {reason}")

        self._flush(checkpoint)
        self._persist(checkpoint, fatal=False)
        self.state = RunState.ABORTED
        return RunOutcome(
            state=RunState.ABORTED,
            checkpoint=checkpoint,
            reason=reason,
            interrupted=interrupted,
        )


@contextmanager
def graceful_shutdown(
    orchestrator: IngestionOrchestrator,
    signals=(signal.SIGINT, signal.SIGTERM)
) -> Iterator[None]:
    """Route SIGINT/SIGTERM to ``orchestrator.request_stop`` for the block's duration."""

    def _handler(signum, frame):
        orchestrator.request_stop(f"received {signal.Signals(signum).name}")

    previous = {}
    for sig in signals:
        previous[sig] = signal.signal(sig, _handler)
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
