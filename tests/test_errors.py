"""Tests for baton error classes.

Tests cover:
- Error hierarchy
- Messages and attributes carried by each error
"""

import pytest

from baton.errors import (
    BatonError,
    BlobNotFoundError,
    ConfigError,
    HandlerFailure,
    JobAborted,
    JobNotFoundError,
    NotFoundError,
    StaleStageError,
    StorageError,
    TokenError,
)


class TestHierarchy:
    """Every baton error can be caught as BatonError."""

    @pytest.mark.parametrize(
        "error_class",
        [ConfigError, TokenError, NotFoundError, StorageError, JobAborted, HandlerFailure],
    )
    def test_is_baton_error(self, error_class):
        assert issubclass(error_class, BatonError)

    def test_not_found_variants(self):
        """Job and blob lookups share NotFoundError."""
        assert issubclass(JobNotFoundError, NotFoundError)
        assert issubclass(BlobNotFoundError, NotFoundError)

    def test_storage_is_not_not_found(self):
        assert not issubclass(StorageError, NotFoundError)


class TestMessages:
    """Errors carry enough context to report to a client."""

    def test_job_not_found(self):
        error = JobNotFoundError("j1")
        assert error.job_id == "j1"
        assert str(error) == "Job not found: j1"

    def test_blob_not_found(self):
        error = BlobNotFoundError("j1", "report")
        assert (error.job_id, error.key) == ("j1", "report")
        assert "j1/report" in str(error)

    def test_stale_stage_lists_registered(self):
        error = StaleStageError("gone", ["scan", "load"])
        assert error.stage_name == "gone"
        assert error.registered == ("scan", "load")
        assert "scan, load" in str(error)

    def test_stale_stage_without_registered(self):
        assert "none" in str(StaleStageError("gone"))

    def test_handler_failure_carries_token(self):
        error = HandlerFailure("boom", token="tok", result="res")
        assert error.token == "tok"
        assert error.result == "res"
        assert str(error) == "boom"

    def test_job_aborted_carries_token(self):
        error = JobAborted("stopped", token="tok")
        assert error.token == "tok"
        assert str(error) == "stopped"
