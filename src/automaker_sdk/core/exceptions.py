from __future__ import annotations

from typing import Any


class AutomakerError(Exception):
    """Base exception for all automaker SDK errors.

    Attributes:
        code: Optional machine-readable error code (e.g. ``"ENOENT"``).
        details: Arbitrary key/value context about the error.
        status_code: HTTP-style status code when the error originates from
            a backend API response (``None`` when not applicable).
        retry_after: Suggested delay in seconds before retrying the
            operation (``None`` when unknown or not applicable).
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        *,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}
        self.status_code = status_code
        self.retry_after = retry_after

    @property
    def is_retryable(self) -> bool:
        """Whether the operation that raised this error can be retried."""
        return False


class ConfigurationError(AutomakerError): ...


class ProviderConfigError(ConfigurationError):
    """Invalid :class:`ExecuteOptions` handed to an adapter (missing model, cwd...)."""


# ---------------------------------------------------------------------------
# Provider taxonomy
# ---------------------------------------------------------------------------


class ProviderError(AutomakerError): ...


class SpawnError(ProviderError):
    """The backend binary is missing or cannot be executed."""


class AuthenticationError(ProviderError):
    """Missing or rejected credential (HTTP 401/403, CLI not logged in).

    Never retryable; credentials must be fixed before retrying.
    """


class RateLimitError(ProviderError):
    """The backend returned a rate-limit response.

    Always retryable.  ``retry_after`` is populated when the backend
    supplies a ``Retry-After`` header or equivalent payload field.
    """

    @property
    def is_retryable(self) -> bool:  # noqa: D102
        return True


class QuotaExhaustedError(RateLimitError):
    """Usage quota is spent; retry only after the quota window resets."""


class MalformedOutputError(ProviderError): ...


class AbortedError(ProviderError):
    """The caller cancelled the query (or its timeout fired)."""


class BackendProtocolError(ProviderError): ...


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class PipelineError(AutomakerError): ...


class PipelineValidationError(PipelineError): ...


class CircularDependencyError(PipelineValidationError): ...


class StorageError(AutomakerError): ...


class AutoModeError(AutomakerError): ...


class OutputParsingError(AutomakerError): ...


# ---------------------------------------------------------------------------
# Merge gatekeeper / review
# ---------------------------------------------------------------------------


class RepositoryNotAllowedError(AutomakerError):
    """Hard reject: the repository is not on the merge allow-list.

    Never retryable and never downgraded to a warning.
    """


class MergeError(AutomakerError): ...


class ReviewError(AutomakerError): ...
