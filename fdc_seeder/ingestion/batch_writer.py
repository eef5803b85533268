"""Batched writes of canonical ingredients into the ingredient store.

Outcome classification per record:
- identifier not yet in the store → written
- identifier already in the store (or repeated within the batch) → duplicate;
  the row is still overwritten with the newer record
- any other store rejection → failure, recorded with the fdc_id

A batch is first attempted as one upsert statement. If that statement
fails, the writer falls back to record-by-record writes so that one bad
record cannot sink the rest of the batch.
"""

import logging
from typing import TYPE_CHECKING, Dict, List, Optional

from fdc_seeder.data_layer.models import BatchWriteResult, CanonicalIngredient, RecordFailure
from fdc_seeder.ingestion.ingestion_errors import WriteConflictError, WriteFailureError

if TYPE_CHECKING:
    from fdc_seeder.data_layer.ingredient_store import IngredientStore

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100


class BatchWriter:
    """Buffers ingredients and flushes them in batches.

    Usage:
        writer = BatchWriter(store, batch_size=100)
        result = writer.add(ingredient)   # BatchWriteResult when the buffer filled up
        result = writer.flush()           # explicit flush at partition boundaries
    """

    def __init__(self, store: "IngredientStore", batch_size: int = DEFAULT_BATCH_SIZE):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self.store = store
        self.batch_size = batch_size
        self._buffer: List[CanonicalIngredient] = []

    @property
    def pending(self) -> List[CanonicalIngredient]:
        """Buffered ingredients not yet flushed (copy)."""
        return list(self._buffer)

    def __len__(self) -> int:
        return len(self._buffer)

    def add(self, ingredient: CanonicalIngredient) -> Optional[BatchWriteResult]:
        """Buffer one ingredient, flushing when the batch size is reached.

        Returns:
            BatchWriteResult if a flush happened, otherwise None
        """
        self._buffer.append(ingredient)
        if len(self._buffer) >= self.batch_size:
            return self.flush()
        return None

    def flush(self) -> BatchWriteResult:
        """Write everything buffered and empty the buffer.

        Never raises for store errors; they come back as failures.
        """
        batch = self._buffer
        self._buffer = []
        result = BatchWriteResult()
        if not batch:
            return result

        # Last occurrence of an identifier wins; earlier ones are duplicates.
        unique: Dict[int, CanonicalIngredient] = {}
        for ingredient in batch:
            if ingredient.fdc_id in unique:
                result.duplicates += 1
                del unique[ingredient.fdc_id]
            unique[ingredient.fdc_id] = ingredient
        records = list(unique.values())

        try:
            existing = self.store.existing_ids(unique.keys())
            self.store.upsert_many(records)
        except WriteFailureError as e:
            logger.warning(
                "BATCH_WRITE batch failed size=%s error=%s; retrying per record",
                len(records), e.detail,
            )
            self._write_individually(records, result)
        else:
            result.duplicates += len(existing)
            result.written += len(records) - len(existing)

        logger.info(
            "BATCH_WRITE flushed size=%s written=%s duplicates=%s failures=%s",
            len(batch), result.written, result.duplicates, len(result.failures),
        )
        return result

    def _write_individually(
        self,
        records: List[CanonicalIngredient],
        result: BatchWriteResult
    ) -> None:
        for ingredient in records:
            try:
                try:
                    self.store.insert_one(ingredient)
                    result.written += 1
                except WriteConflictError:
                    self.store.replace_one(ingredient)
                    result.duplicates += 1
            except WriteFailureError as e:
                logger.warning("BATCH_WRITE record failed fdc_id=%s error=%s", ingredient.fdc_id, e.detail)
                result.failures.append(RecordFailure(fdc_id=ingredient.fdc_id, detail=e.detail))
