"""Durable, file-backed ingestion progress.

The checkpoint is a single JSON document shared by two processes: the
seeding job writes it after every page, the monitor only ever reads it.

DESIGN DECISIONS:
- JSON on local disk, camelCase keys, human readable (indent=2)
- Writes go to a temporary file in the same directory and are renamed
  over the checkpoint, so a reader never sees a half-written document
- The error log is capped; the oldest entries are dropped first
- Records accepted but not yet flushed travel in ``batchBuffer`` and are
  replayed by the orchestrator on resume
- ``currentPage`` is the last fully processed page of the current
  partition (0 before the first page)
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from fdc_seeder.ingestion.ingestion_errors import CheckpointPersistError, CheckpointReadError

logger = logging.getLogger(__name__)

DEFAULT_ERROR_CAP = 50


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class IngestionCheckpoint(BaseModel):
    """Progress record persisted between pages.

    Field names are snake_case in Python and camelCase on disk.
    """

    model_config = ConfigDict(populate_by_name=True)

    total_items: int = Field(0, alias="totalItems", ge=0)
    processed_items: int = Field(0, alias="processedItems", ge=0)
    current_page: int = Field(0, alias="currentPage", ge=0)
    current_data_type: str = Field("", alias="currentDataType")
    current_data_type_index: int = Field(0, alias="currentDataTypeIndex", ge=0)
    start_time: datetime = Field(alias="startTime")
    last_update_time: datetime = Field(alias="lastUpdateTime")
    errors: List[str] = Field(default_factory=list)
    successful_inserts: int = Field(0, alias="successfulInserts", ge=0)
    skipped_duplicates: int = Field(0, alias="skippedDuplicates", ge=0)
    estimated_completion: Optional[datetime] = Field(None, alias="estimatedCompletion")
    batch_buffer: List[Dict[str, Any]] = Field(default_factory=list, alias="batchBuffer")
    page_size: Optional[int] = Field(None, alias="pageSize", ge=1)
    partition_totals: Dict[str, int] = Field(default_factory=dict, alias="partitionTotals")

    @field_validator("start_time", "last_update_time", "estimated_completion")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # Offset-less timestamps are read as UTC so they compare with utc_now().
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @classmethod
    def new(
        cls,
        partitions: List[str],
        page_size: int,
        partition_totals: Optional[Dict[str, int]] = None,
        now: Optional[datetime] = None
    ) -> "IngestionCheckpoint":
        """Fresh checkpoint positioned before page 1 of the first partition."""
        started = now or utc_now()
        totals = dict(partition_totals or {})
        return cls(
            total_items=sum(totals.values()),
            current_data_type=partitions[0] if partitions else "",
            current_data_type_index=0,
            current_page=0,
            start_time=started,
            last_update_time=started,
            page_size=page_size,
            partition_totals=totals,
        )

    def to_document(self) -> Dict[str, Any]:
        """JSON-ready dict with camelCase keys."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)

    def set_partition_total(self, partition: str, total_hits: int) -> None:
        """Record a partition's hit count and keep ``total_items >= processed_items``."""
        self.partition_totals[partition] = max(0, total_hits)
        self.total_items = max(sum(self.partition_totals.values()), self.processed_items)

    @property
    def percent_complete(self) -> Optional[float]:
        if self.total_items <= 0:
            return None
        return min(100.0, self.processed_items / self.total_items * 100)


def estimate_completion(
    checkpoint: IngestionCheckpoint,
    now: Optional[datetime] = None
) -> Optional[datetime]:
    """Project completion time from the average rate since start.

    Returns None when nothing has been processed or no time has elapsed.
    """
    now = now or utc_now()
    elapsed = (now - checkpoint.start_time).total_seconds()
    if checkpoint.processed_items <= 0 or elapsed <= 0:
        return None
    rate = checkpoint.processed_items / elapsed
    remaining = max(0, checkpoint.total_items - checkpoint.processed_items)
    eta = timedelta(seconds=remaining / rate)
    if remaining > 0:
        eta = max(eta, timedelta(microseconds=1))
    return now + eta


class CheckpointStore:
    """Reads and atomically writes the checkpoint file.

    Usage:
        store = CheckpointStore("usda-seeding-progress.json")

        checkpoint = store.load()        # None when no run exists
        store.append_error(checkpoint, "Foundation page 3: timeout")
        store.save(checkpoint)
    """

    DEFAULT_PATH = "usda-seeding-progress.json"

    def __init__(
        self,
        path: Optional[str] = None,
        error_cap: int = DEFAULT_ERROR_CAP,
        clock: Callable[[], datetime] = utc_now
    ):
        if error_cap < 1:
            raise ValueError(f"error_cap must be >= 1, got {error_cap}")
        self.path = Path(path or self.DEFAULT_PATH)
        self.error_cap = error_cap
        self._clock = clock

    def load(self) -> Optional[IngestionCheckpoint]:
        """Load the checkpoint.

        Returns:
            IngestionCheckpoint, or None if the file does not exist

        Raises:
            CheckpointReadError: If the file is unreadable or not a valid checkpoint
        """
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            raise CheckpointReadError(str(self.path), str(e)) from e

        try:
            return IngestionCheckpoint.model_validate(data)
        except ValidationError as e:
            raise CheckpointReadError(
                str(self.path), f"{e.error_count()} invalid field(s): {e.errors()[0]['msg']}"
            ) from e

    def save(self, checkpoint: IngestionCheckpoint) -> None:
        """Stamp and atomically persist the checkpoint.

        Updates ``last_update_time`` and ``estimated_completion`` first.

        Raises:
            CheckpointPersistError: If the file cannot be written
        """
        now = self._clock()
        checkpoint.last_update_time = now
        checkpoint.estimated_completion = estimate_completion(checkpoint, now)

        directory = self.path.parent
        tmp_path = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=directory,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                delete=False,
            ) as f:
                tmp_path = f.name
                json.dump(checkpoint.to_document(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            raise CheckpointPersistError(str(self.path), str(e)) from e

    def append_error(self, checkpoint: IngestionCheckpoint, message: str) -> None:
        """Append to the error log, dropping the oldest entries beyond the cap."""
        checkpoint.errors.append(message)
        overflow = len(checkpoint.errors) - self.error_cap
        if overflow > 0:
            del checkpoint.errors[:overflow]

    def estimate_completion(self, checkpoint: IngestionCheckpoint) -> Optional[datetime]:
        return estimate_completion(checkpoint, self._clock())

    def clear(self) -> bool:
        """Delete the checkpoint file. Returns True if one was removed."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        logger.info("CHECKPOINT cleared path=%s", self.path)
        return True
