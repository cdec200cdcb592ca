"""Tests for imageprep error classes and exception classification.

Tests cover:
- Error hierarchy
- Messages of structured errors
- classify_exception() mapping to (reason, retryable)
"""

import subprocess

import pytest
import requests

from imageprep.errors import (
    CycleBudgetExhausted,
    ImagePrepError,
    ManifestError,
    PermanentError,
    RebootPending,
    StoreCorrupt,
    TransientError,
    classify_exception,
)


class TestHierarchy:
    """Tests for the error hierarchy."""

    @pytest.mark.parametrize(
        "cls",
        [TransientError, PermanentError, RebootPending, ManifestError, CycleBudgetExhausted],
    )
    def test_subclasses_root(self, cls):
        """Every imageprep error can be caught as ImagePrepError."""
        assert issubclass(cls, ImagePrepError)

    def test_store_corrupt_is_imageprep_error(self):
        with pytest.raises(ImagePrepError):
            raise StoreCorrupt("/var/lib/imageprep/state.json", "bad json")


class TestMessages:
    """Tests for structured error messages."""

    def test_store_corrupt_names_path(self):
        error = StoreCorrupt("state.json", "Expecting value")
        assert error.path == "state.json"
        assert str(error) == "Checkpoint store state.json is corrupt: Expecting value"

    def test_manifest_error_names_step(self):
        error = ManifestError("unknown kind 'bogus'", step_id="install-agent")
        assert error.step_id == "install-agent"
        assert str(error) == "step 'install-agent': unknown kind 'bogus'"

    def test_manifest_error_without_step(self):
        assert str(ManifestError("Manifest not found: x.yaml")) == "Manifest not found: x.yaml"

    def test_cycle_budget_exhausted_carries_numbers(self):
        error = CycleBudgetExhausted(5, 5)
        assert error.cycle_number == 5
        assert error.max_cycles == 5
        assert "5 of 5" in str(error)


class TestClassifyException:
    """Tests for classify_exception()."""

    def test_transient_error_is_retryable(self):
        assert classify_exception(TransientError("service starting")) == ("service starting", True)

    def test_permanent_error_is_not_retryable(self):
        assert classify_exception(PermanentError("unsupported OS")) == ("unsupported OS", False)

    @pytest.mark.parametrize(
        "exc",
        [
            TimeoutError("timed out"),
            subprocess.TimeoutExpired(["msiexec"], 30),
            ConnectionResetError("reset"),
            PermissionError("file is locked"),
            requests.ConnectionError("refused"),
            requests.Timeout("read timeout"),
        ],
    )
    def test_transient_builtin_types(self, exc):
        _, retryable = classify_exception(exc)
        assert retryable is True

    def test_unknown_exception_is_permanent_with_type_name(self):
        reason, retryable = classify_exception(KeyError("missing"))
        assert retryable is False
        assert reason.startswith("KeyError: ")

    def test_empty_message_falls_back_to_class_name(self):
        reason, _ = classify_exception(ValueError())
        assert reason == "ValueError: ValueError"
