"""Ingestion pipeline: fetch, transform, write and checkpoint FDC records."""

from fdc_seeder.ingestion.ingestion_errors import (
    IngestionError,
    IngestionErrorCode,
    TransientFetchError,
    FatalFetchError,
    WriteConflictError,
    WriteFailureError,
    CheckpointPersistError,
    CheckpointReadError,
    ConfigError,
)

from fdc_seeder.ingestion.rate_limiter import RateLimiter

from fdc_seeder.ingestion.usda_client import (
    RateLimitedClient,
    FoodPage,
    DataType,
)

from fdc_seeder.ingestion.nutrient_mapper import (
    NutrientMapper,
    NUTRIENT_CODE_MAP,
)

from fdc_seeder.ingestion.record_transformer import RecordTransformer

from fdc_seeder.ingestion.checkpoint_store import (
    CheckpointStore,
    IngestionCheckpoint,
)

from fdc_seeder.ingestion.batch_writer import BatchWriter

from fdc_seeder.ingestion.orchestrator import (
    IngestionOrchestrator,
    RunOutcome,
    RunState,
    graceful_shutdown,
)

__all__ = [
    # Error types
    "IngestionError",
    "IngestionErrorCode",
    "TransientFetchError",
    "FatalFetchError",
    "WriteConflictError",
    "WriteFailureError",
    "CheckpointPersistError",
    "CheckpointReadError",
    "ConfigError",
    # Fetching
    "RateLimiter",
    "RateLimitedClient",
    "FoodPage",
    "DataType",
    # Transformation
    "NutrientMapper",
    "NUTRIENT_CODE_MAP",
    "RecordTransformer",
    # Progress and writes
    "CheckpointStore",
    "IngestionCheckpoint",
    "BatchWriter",
    # Orchestration
    "IngestionOrchestrator",
    "RunOutcome",
    "RunState",
    "graceful_shutdown",
]
