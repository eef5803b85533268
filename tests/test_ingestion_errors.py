"""Tests for structured ingestion errors."""

import pytest

from fdc_seeder.ingestion.ingestion_errors import (
    CheckpointPersistError,
    CheckpointReadError,
    ConfigError,
    FatalFetchError,
    IngestionError,
    IngestionErrorCode,
    TransientFetchError,
    WriteConflictError,
    WriteFailureError,
)


class TestIngestionError:

    def test_str_includes_code(self):
        error = IngestionError(IngestionErrorCode.CONFIG, "bad value")
        assert str(error) == "[CONFIG] bad value"

    def test_to_dict(self):
        error = TransientFetchError("Branded", 12, "timeout", status_code=None, attempts=3)
        assert error.to_dict() == {
            "error_code": "TRANSIENT_FETCH",
            "message": "Fetching Branded page 12 failed after 3 attempt(s): timeout",
            "context": {"partition": "Branded", "page": 12, "status_code": None, "attempts": 3},
        }

    def test_repr(self):
        assert "WriteConflictError(" in repr(WriteConflictError(5))

    @pytest.mark.parametrize("error", [
        TransientFetchError("Foundation", 1, "x"),
        FatalFetchError("Foundation", 1, "x"),
        WriteConflictError(1),
        WriteFailureError("x"),
        CheckpointPersistError("/tmp/cp.json", "x"),
        CheckpointReadError("/tmp/cp.json", "x"),
        ConfigError("x"),
    ])
    def test_all_are_ingestion_errors(self, error):
        assert isinstance(error, IngestionError)


class TestSpecificErrors:

    def test_fatal_fetch(self):
        error = FatalFetchError("SR Legacy", 4, "HTTP 400: bad", status_code=400)
        assert error.code == IngestionErrorCode.FATAL_FETCH
        assert error.partition == "SR Legacy"
        assert error.status_code == 400

    def test_write_failure_with_record(self):
        error = WriteFailureError("value too long", fdc_id=77)
        assert error.message == "Failed to write fdc_id 77: value too long"
        assert error.context == {"detail": "value too long", "fdc_id": 77}

    def test_write_failure_for_batch(self):
        error = WriteFailureError("connection reset")
        assert error.fdc_id is None
        assert error.message == "Batch write failed: connection reset"

    def test_checkpoint_errors_carry_path(self):
        assert CheckpointReadError("/x/cp.json", "bad").path == "/x/cp.json"
        assert "disk full" in CheckpointPersistError("/x/cp.json", "disk full").message

    def test_config_error_key(self):
        assert ConfigError("bad", key="page_size").context == {"key": "page_size"}
        assert ConfigError("bad").context == {}
