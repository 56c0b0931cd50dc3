"""Tests for core/exceptions.py — hierarchy and retry semantics."""
from __future__ import annotations

import pytest

from automaker_sdk.core.exceptions import (
    AbortedError,
    AuthenticationError,
    AutomakerError,
    BackendProtocolError,
    CircularDependencyError,
    ConfigurationError,
    MergeError,
    PipelineError,
    PipelineValidationError,
    ProviderConfigError,
    ProviderError,
    QuotaExhaustedError,
    RateLimitError,
    RepositoryNotAllowedError,
    SpawnError,
    StorageError,
)


# ---------------------------------------------------------------------------
# AutomakerError — base class
# ---------------------------------------------------------------------------


def test_base_exception_message() -> None:
    exc = AutomakerError("something went wrong")
    assert str(exc) == "something went wrong"
    assert exc.message == "something went wrong"


def test_base_exception_defaults() -> None:
    exc = AutomakerError("msg")
    assert exc.code is None
    assert exc.details == {}
    assert exc.status_code is None
    assert exc.retry_after is None
    assert exc.is_retryable is False


def test_base_exception_with_code_and_details() -> None:
    exc = AutomakerError("msg", code="ERR_001", details={"key": "value"}, status_code=500)
    assert exc.code == "ERR_001"
    assert exc.details == {"key": "value"}
    assert exc.status_code == 500


# ---------------------------------------------------------------------------
# Hierarchy
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "cls, parent",
    [
        (ProviderConfigError, ConfigurationError),
        (SpawnError, ProviderError),
        (AuthenticationError, ProviderError),
        (RateLimitError, ProviderError),
        (QuotaExhaustedError, RateLimitError),
        (AbortedError, ProviderError),
        (BackendProtocolError, ProviderError),
        (PipelineValidationError, PipelineError),
        (CircularDependencyError, PipelineValidationError),
        (StorageError, AutomakerError),
        (RepositoryNotAllowedError, AutomakerError),
        (MergeError, AutomakerError),
    ],
)
def test_subclass_relationships(cls: type[Exception], parent: type[Exception]) -> None:
    assert issubclass(cls, parent)
    assert issubclass(cls, AutomakerError)


def test_rate_limit_is_retryable() -> None:
    exc = RateLimitError("slow down", retry_after=30)
    assert exc.is_retryable is True
    assert exc.retry_after == 30


def test_quota_exhausted_inherits_retryable() -> None:
    assert QuotaExhaustedError("quota").is_retryable is True


def test_authentication_not_retryable() -> None:
    assert AuthenticationError("bad key", status_code=401).is_retryable is False


def test_repository_not_allowed_catchable_as_base() -> None:
    with pytest.raises(AutomakerError, match="not allowed"):
        raise RepositoryNotAllowedError("repo not allowed")
