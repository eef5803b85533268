"""Tests for the ingestion state machine: paging, resume, failures, shutdown.

Uses a scripted in-memory client, the real transformer and batch writer,
a SQLite file store and a checkpoint file under tmp_path.
"""

import json
import signal
from typing import Dict, List
from unittest.mock import Mock

import pytest

from fdc_seeder.data_layer.ingredient_store import IngredientStore
from fdc_seeder.data_layer.models import ExternalFoodRecord
from fdc_seeder.ingestion.batch_writer import BatchWriter
from fdc_seeder.ingestion.checkpoint_store import CheckpointStore, IngestionCheckpoint
from fdc_seeder.ingestion.ingestion_errors import (
    CheckpointPersistError,
    CheckpointReadError,
    FatalFetchError,
    TransientFetchError,
)
from fdc_seeder.ingestion.orchestrator import (
    IngestionOrchestrator,
    RunState,
    graceful_shutdown,
)
from fdc_seeder.ingestion.record_transformer import RecordTransformer
from fdc_seeder.ingestion.usda_client import FoodPage


def make_records(data_type: str, start: int, count: int) -> List[ExternalFoodRecord]:
    return [
        ExternalFoodRecord(
            fdc_id=start + i,
            description=f"{data_type} food {start + i}",
            data_type=data_type,
            nutrients=((1008, 100.0 + i),),
        )
        for i in range(count)
    ]


class ScriptedClient:
    """In-memory stand-in for RateLimitedClient.

    ``failures`` maps (partition, page) to exceptions raised on successive
    calls before the page is served normally.
    """

    def __init__(self, data: Dict[str, List[ExternalFoodRecord]], page_size: int = 2):
        self.data = data
        self.page_size = page_size
        self.failures: Dict[tuple, list] = {}
        self.malformed: Dict[tuple, List[str]] = {}
        self.fetched: List[tuple] = []
        self.on_fetch = None

    def count_partition(self, partition):
        return len(self.data.get(partition, []))

    def fetch_page(self, partition, page_number, page_size=None):
        size = page_size or self.page_size
        self.fetched.append((partition, page_number))
        pending = self.failures.get((partition, page_number))
        if pending:
            raise pending.pop(0)
        records = self.data.get(partition, [])
        page = FoodPage(
            partition=partition,
            page_number=page_number,
            records=records[(page_number - 1) * size:page_number * size],
            total_hits=len(records),
            malformed=list(self.malformed.get((partition, page_number), [])),
        )
        if self.on_fetch is not None:
            self.on_fetch(partition, page_number)
        return page


class FlakyCheckpointStore(CheckpointStore):
    """Fails the first ``fail_times`` saves (or every save when negative)."""

    def __init__(self, path, fail_times):
        super().__init__(path)
        self.fail_times = fail_times
        self.attempts = 0

    def save(self, checkpoint):
        self.attempts += 1
        if self.fail_times < 0 or self.attempts <= self.fail_times:
            raise CheckpointPersistError(str(self.path), "disk full")
        super().save(checkpoint)


@pytest.fixture
def store(tmp_path):
    store = IngredientStore.from_url(f"sqlite:///{tmp_path / 'ingredients.db'}")
    store.create_schema()
    return store


@pytest.fixture
def checkpoint_path(tmp_path):
    return str(tmp_path / "usda-seeding-progress.json")


def build(client, store, checkpoints, partitions, page_size=2, batch_size=100, **kwargs):
    kwargs.setdefault("page_retry_delay", 0)
    return IngestionOrchestrator(
        client=client,
        transformer=RecordTransformer(),
        writer=BatchWriter(store, batch_size=batch_size),
        checkpoints=checkpoints,
        partitions=partitions,
        page_size=page_size,
        **kwargs
    )


class TestHappyPath:

    def test_five_hits_page_size_two(self, store, checkpoint_path):
        client = ScriptedClient({"Foundation": make_records("Foundation", 1, 5)})
        orchestrator = build(client, store, CheckpointStore(checkpoint_path), ["Foundation"])

        outcome = orchestrator.run()

        assert outcome.state == RunState.ALL_COMPLETE
        assert outcome.exit_code == 0
        assert client.fetched == [("Foundation", 1), ("Foundation", 2), ("Foundation", 3)]
        checkpoint = CheckpointStore(checkpoint_path).load()
        assert checkpoint.processed_items == 5
        assert checkpoint.total_items == 5
        assert checkpoint.current_page == 3
        assert checkpoint.successful_inserts == 5
        assert checkpoint.skipped_duplicates == 0
        assert checkpoint.errors == []
        assert checkpoint.batch_buffer == []
        assert store.count() == 5

    def test_partitions_processed_in_order(self, store, checkpoint_path):
        client = ScriptedClient({
            "Foundation": make_records("Foundation", 1, 3),
            "SR Legacy": make_records("SR Legacy", 100, 2),
        })
        orchestrator = build(client, store, CheckpointStore(checkpoint_path), ["Foundation", "SR Legacy"])

        outcome = orchestrator.run()

        assert outcome.state == RunState.ALL_COMPLETE
        assert client.fetched == [("Foundation", 1), ("Foundation", 2), ("SR Legacy", 1)]
        checkpoint = outcome.checkpoint
        assert checkpoint.current_data_type == "SR Legacy"
        assert checkpoint.current_data_type_index == 1
        assert checkpoint.current_page == 1
        assert checkpoint.processed_items == 5
        assert checkpoint.partition_totals == {"Foundation": 3, "SR Legacy": 2}
        assert store.count() == 5

    def test_flushes_when_buffer_fills(self, store, checkpoint_path):
        client = ScriptedClient({"Foundation": make_records("Foundation", 1, 5)})
        seen = []
        client.on_fetch = lambda partition, page: seen.append(store.count())
        orchestrator = build(client, store, CheckpointStore(checkpoint_path), ["Foundation"], batch_size=2)

        orchestrator.run()

        # a flush happens as soon as two records are buffered
        assert seen == [0, 2, 4]

    def test_empty_partition(self, store, checkpoint_path):
        client = ScriptedClient({"Foundation": []})
        orchestrator = build(client, store, CheckpointStore(checkpoint_path), ["Foundation"])

        outcome = orchestrator.run()

        assert outcome.state == RunState.ALL_COMPLETE
        assert client.fetched == [("Foundation", 1)]
        assert outcome.checkpoint.processed_items == 0

    def test_counters_never_exceed_processed(self, store, checkpoint_path):
        store.upsert_many([RecordTransformer().transform(r) for r in make_records("Foundation", 1, 2)])
        client = ScriptedClient({"Foundation": make_records("Foundation", 1, 5)})
        client.malformed[("Foundation", 2)] = ["Food item without fdcId"]
        orchestrator = build(client, store, CheckpointStore(checkpoint_path), ["Foundation"])

        checkpoint = orchestrator.run().checkpoint

        assert checkpoint.successful_inserts == 3
        assert checkpoint.skipped_duplicates == 2
        assert len(checkpoint.errors) == 1
        assert checkpoint.processed_items == 6
        total = checkpoint.successful_inserts + checkpoint.skipped_duplicates + len(checkpoint.errors)
        assert total <= checkpoint.processed_items

    def test_duplicates_are_not_errors(self, store, checkpoint_path):
        client = ScriptedClient({"Foundation": make_records("Foundation", 1, 3)})
        build(client, store, CheckpointStore(checkpoint_path), ["Foundation"]).run()

        again = ScriptedClient({"Foundation": make_records("Foundation", 1, 3)})
        outcome = build(again, store, CheckpointStore(checkpoint_path + ".2"), ["Foundation"]).run()

        assert outcome.checkpoint.skipped_duplicates == 3
        assert outcome.checkpoint.successful_inserts == 0
        assert outcome.checkpoint.errors == []
        assert store.count() == 3


class TestResume:

    def test_resume_after_crash_continues_at_next_page(self, store, checkpoint_path):
        records = make_records("Foundation", 1, 5)
        crashing = ScriptedClient({"Foundation": records})
        crashing.failures[("Foundation", 3)] = [RuntimeError("process killed")]

        with pytest.raises(RuntimeError):
            build(crashing, store, CheckpointStore(checkpoint_path), ["Foundation"]).run()

        saved = CheckpointStore(checkpoint_path).load()
        assert saved.current_page == 2
        assert saved.processed_items == 4
        assert len(saved.batch_buffer) == 4
        assert store.count() == 0

        client = ScriptedClient({"Foundation": records})
        outcome = build(client, store, CheckpointStore(checkpoint_path), ["Foundation"]).run()

        assert client.fetched == [("Foundation", 3)]
        assert outcome.state == RunState.ALL_COMPLETE
        assert outcome.checkpoint.processed_items == 5
        assert outcome.checkpoint.current_page == 3
        assert outcome.checkpoint.successful_inserts == 5
        # buffered records from the crashed run were replayed
        assert store.count() == 5

    def test_completed_run_fetches_nothing_more(self, store, checkpoint_path):
        records = make_records("Foundation", 1, 5)
        build(ScriptedClient({"Foundation": records}), store, CheckpointStore(checkpoint_path), ["Foundation"]).run()

        client = ScriptedClient({"Foundation": records})
        outcome = build(client, store, CheckpointStore(checkpoint_path), ["Foundation"]).run()

        assert outcome.state == RunState.ALL_COMPLETE
        assert client.fetched == []
        assert outcome.checkpoint.processed_items == 5

    def test_resume_keeps_checkpoint_page_size(self, store, checkpoint_path):
        checkpoints = CheckpointStore(checkpoint_path)
        checkpoint = IngestionCheckpoint.new(["Foundation"], 2, partition_totals={"Foundation": 5})
        checkpoint.current_page = 1
        checkpoint.processed_items = 2
        checkpoints.save(checkpoint)

        client = ScriptedClient({"Foundation": make_records("Foundation", 1, 5)})
        orchestrator = build(client, store, checkpoints, ["Foundation"], page_size=3)
        outcome = orchestrator.run()

        assert orchestrator.page_size == 2
        assert client.fetched == [("Foundation", 2), ("Foundation", 3)]
        assert outcome.checkpoint.processed_items == 5

    def test_corrupt_checkpoint_is_fatal(self, store, checkpoint_path):
        with open(checkpoint_path, "w") as f:
            f.write("{not json")
        client = ScriptedClient({"Foundation": make_records("Foundation", 1, 1)})

        with pytest.raises(CheckpointReadError):
            build(client, store, CheckpointStore(checkpoint_path), ["Foundation"]).run()
        assert client.fetched == []

    def test_unreadable_buffered_record_logged_and_dropped(self, store, checkpoint_path):
        checkpoints = CheckpointStore(checkpoint_path)
        checkpoint = IngestionCheckpoint.new(["Foundation"], 2, partition_totals={"Foundation": 0})
        checkpoint.batch_buffer = [{"fdc_id": 9}]
        checkpoints.save(checkpoint)

        client = ScriptedClient({"Foundation": []})
        outcome = build(client, store, checkpoints, ["Foundation"]).run()

        assert outcome.state == RunState.ALL_COMPLETE
        assert any("unreadable buffered record 9" in e for e in outcome.checkpoint.errors)
        assert outcome.checkpoint.batch_buffer == []


class TestFetchFailures:

    def test_transient_failure_retries_same_page(self, store, checkpoint_path):
        client = ScriptedClient({"Foundation": make_records("Foundation", 1, 2)})
        client.failures[("Foundation", 1)] = [
            TransientFetchError("Foundation", 1, "server error (HTTP 503)", status_code=503, attempts=3)
        ]
        outcome = build(client, store, CheckpointStore(checkpoint_path), ["Foundation"]).run()

        assert outcome.state == RunState.ALL_COMPLETE
        assert client.fetched == [("Foundation", 1), ("Foundation", 1)]
        assert outcome.checkpoint.errors == []
        assert store.count() == 2

    def test_recovered_retries_keep_counters_within_processed(self, store, checkpoint_path):
        client = ScriptedClient({"Foundation": make_records("Foundation", 1, 2)})
        client.failures[("Foundation", 1)] = [
            TransientFetchError("Foundation", 1, "timeout") for _ in range(3)
        ]
        orchestrator = build(
            client, store, CheckpointStore(checkpoint_path), ["Foundation"], page_retry_budget=3
        )

        checkpoint = orchestrator.run().checkpoint

        assert checkpoint.processed_items == 2
        assert checkpoint.successful_inserts == 2
        total = checkpoint.successful_inserts + checkpoint.skipped_duplicates + len(checkpoint.errors)
        assert total <= checkpoint.processed_items

    def test_transient_exhaustion_aborts(self, store, checkpoint_path):
        client = ScriptedClient({"Foundation": make_records("Foundation", 1, 2)})
        client.failures[("Foundation", 1)] = [
            TransientFetchError("Foundation", 1, "timeout") for _ in range(10)
        ]
        orchestrator = build(
            client, store, CheckpointStore(checkpoint_path), ["Foundation"], page_retry_budget=2
        )

        outcome = orchestrator.run()

        assert outcome.state == RunState.ABORTED
        assert outcome.interrupted is False
        assert outcome.exit_code == 1
        assert "Foundation page 1" in outcome.reason
        assert len(client.fetched) == 3
        saved = CheckpointStore(checkpoint_path).load()
        assert saved.current_page == 0
        assert saved.errors[-1].startswith("Run aborted:")

    def test_fatal_failure_skips_partition(self, store, checkpoint_path):
        client = ScriptedClient({
            "Foundation": make_records("Foundation", 1, 4),
            "SR Legacy": make_records("SR Legacy", 100, 2),
        })
        client.failures[("Foundation", 2)] = [
            FatalFetchError("Foundation", 2, "HTTP 400: bad query", status_code=400)
        ]

        outcome = build(client, store, CheckpointStore(checkpoint_path), ["Foundation", "SR Legacy"]).run()

        assert outcome.state == RunState.ALL_COMPLETE
        assert client.fetched == [("Foundation", 1), ("Foundation", 2), ("SR Legacy", 1)]
        assert any(e.startswith("Partition Foundation failed at page 2") for e in outcome.checkpoint.errors)
        assert store.count() == 4

    def test_unknown_partition_total_learned_from_first_page(self, store, checkpoint_path):
        client = ScriptedClient({"Foundation": make_records("Foundation", 1, 3)})
        client.count_partition = Mock(side_effect=TransientFetchError("Foundation", 1, "timeout"))

        outcome = build(client, store, CheckpointStore(checkpoint_path), ["Foundation"]).run()

        assert outcome.state == RunState.ALL_COMPLETE
        assert outcome.checkpoint.total_items == 3
        assert outcome.checkpoint.processed_items == 3


class TestCheckpointPersistence:

    def test_save_failure_is_not_fatal(self, store, checkpoint_path):
        checkpoints = FlakyCheckpointStore(checkpoint_path, fail_times=2)
        client = ScriptedClient({"Foundation": make_records("Foundation", 1, 5)})

        outcome = build(client, store, checkpoints, ["Foundation"]).run()

        assert outcome.state == RunState.ALL_COMPLETE
        assert store.count() == 5
        assert CheckpointStore(checkpoint_path).load().processed_items == 5

    def test_repeated_save_failure_aborts(self, store, checkpoint_path):
        checkpoints = FlakyCheckpointStore(checkpoint_path, fail_times=-1)
        client = ScriptedClient({"Foundation": make_records("Foundation", 1, 10)})

        outcome = build(client, store, checkpoints, ["Foundation"], max_save_failures=3).run()

        assert outcome.state == RunState.ABORTED
        assert outcome.exit_code == 1
        assert "checkpoint unwritable" in outcome.reason
        # buffered records are still flushed before stopping
        assert store.count() == outcome.checkpoint.processed_items


class TestGracefulShutdown:

    def test_stop_request_flushes_and_saves(self, store, checkpoint_path):
        client = ScriptedClient({"Foundation": make_records("Foundation", 1, 6)})
        orchestrator = build(client, store, CheckpointStore(checkpoint_path), ["Foundation"])
        client.on_fetch = lambda partition, page: orchestrator.request_stop("received SIGINT")

        outcome = orchestrator.run()

        assert outcome.state == RunState.ABORTED
        assert outcome.interrupted is True
        assert outcome.exit_code == 0
        assert client.fetched == [("Foundation", 1)]
        saved = CheckpointStore(checkpoint_path).load()
        assert saved.current_page == 1
        assert saved.batch_buffer == []
        assert store.count() == 2
        assert not any(e.startswith("Run aborted") for e in saved.errors)

    def test_interrupted_run_resumes(self, store, checkpoint_path):
        records = make_records("Foundation", 1, 6)
        first = ScriptedClient({"Foundation": records})
        orchestrator = build(first, store, CheckpointStore(checkpoint_path), ["Foundation"])
        first.on_fetch = lambda partition, page: orchestrator.request_stop()
        orchestrator.run()

        second = ScriptedClient({"Foundation": records})
        outcome = build(second, store, CheckpointStore(checkpoint_path), ["Foundation"]).run()

        assert second.fetched == [("Foundation", 2), ("Foundation", 3)]
        assert outcome.checkpoint.processed_items == 6
        assert store.count() == 6

    def test_signal_handler_requests_stop(self, store, checkpoint_path):
        orchestrator = build(ScriptedClient({}), store, CheckpointStore(checkpoint_path), ["Foundation"])
        previous = signal.getsignal(signal.SIGTERM)

        with graceful_shutdown(orchestrator):
            signal.raise_signal(signal.SIGTERM)
            assert orchestrator.stop_requested

        assert signal.getsignal(signal.SIGTERM) is previous

    def test_checkpoint_document_is_camel_case_on_disk(self, store, checkpoint_path):
        client = ScriptedClient({"Foundation": make_records("Foundation", 1, 1)})
        build(client, store, CheckpointStore(checkpoint_path), ["Foundation"]).run()

        with open(checkpoint_path) as f:
            document = json.load(f)
        assert document["processedItems"] == 1
        assert document["currentDataType"] == "Foundation"
        assert document["pageSize"] == 2


def test_requires_partitions(store, checkpoint_path):
    with pytest.raises(ValueError):
        build(ScriptedClient({}), store, CheckpointStore(checkpoint_path), [])
