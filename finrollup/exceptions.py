"""
Custom exception hierarchy for rollup and reconciliation operations.

Exception Hierarchy:
    RollupError (base)
    ├── SourceError              - Hosted data source failures
    │   ├── SourceConnectionError  - Network/timeout issues (recoverable)
    │   ├── SourceAPIError         - Source returned error response
    │   └── SourceDataError        - Invalid response structure
    ├── GatewayError             - A rollup gateway could not produce rows
    └── DataUnavailableError     - Every data path for a period failed

    ValidationError              - Input validation failed
"""
from typing import Any, List, Optional


class RollupError(Exception):
    """Base exception for all rollup-related errors."""

    def __init__(self, message: str, details: str = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class SourceError(RollupError):
    """Base class for failures talking to the hosted data source."""


class SourceConnectionError(SourceError):
    """
    Network-related errors (timeout, connection refused, etc.).

    These are typically recoverable with retry.
    """

    def __init__(self, message: str, details: str = None, retry_after: int = None):
        super().__init__(message, details)
        self.retry_after = retry_after


class SourceAPIError(SourceError):
    """
    Source returned an error response.

    Check status_code and error_code for specifics.
    """

    def __init__(
        self,
        message: str,
        details: str = None,
        status_code: int = None,
        error_code: str = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code
        self.error_code = error_code


class SourceDataError(SourceError):
    """
    Source response has unexpected structure.

    The source returned data in a format the ingestion boundary
    cannot normalize.
    """

    def __init__(self, message: str, details: str = None, expected: str = None, got: str = None):
        super().__init__(message, details)
        self.expected = expected
        self.got = got


class GatewayError(RollupError):
    """
    A rollup gateway failed to return rows.

    Wraps the underlying source failure. The orchestrator decides
    whether to fall back; gateways never substitute another source.
    """

    def __init__(self, gateway: str, cause: Optional[BaseException] = None):
        self.gateway = gateway
        self.cause = cause
        super().__init__(f"{gateway} rollup unavailable", str(cause) if cause else None)


class DataUnavailableError(RollupError):
    """
    Every data path for the requested period failed.

    Surfaced to the caller so the presentation layer shows an error
    state instead of a zero-valued dashboard.
    """

    def __init__(self, organization_id: str, failed_sources: List[str]):
        self.organization_id = organization_id
        self.failed_sources = list(failed_sources)
        super().__init__(
            f"No data path available for organization {organization_id}",
            ", ".join(self.failed_sources) or None,
        )


class ValidationError(Exception):
    """
    Input validation failed.

    Used for validating report requests before any fetch is issued.
    """

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")

    def __str__(self) -> str:
        if self.value is not None:
            return f"{self.field}: {self.message} (got: {self.value!r})"
        return f"{self.field}: {self.message}"
