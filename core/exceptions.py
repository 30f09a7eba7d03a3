"""
Custom exceptions for the replication engine with structured error context.

This module provides the exception hierarchy used throughout the
replication pipeline. Each exception includes context information for
debugging and monitoring.

Exception Hierarchy:
    ReplicationException (base)
    ├── UpstreamError
    │   ├── NetworkError
    │   ├── RateLimitError
    │   ├── CircuitOpenError
    │   ├── AuthenticationError
    │   ├── ResourceNotFoundError
    │   └── ResponseFormatError
    ├── MappingError
    ├── LoadError
    │   ├── DatabaseError
    │   │   └── DatabaseConnectionError
    │   ├── UpsertError
    │   └── OrphanMediaError
    ├── CheckpointError
    ├── SchemaDiscoveryError
    ├── StartupError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class ReplicationException(Exception):
    """
    Base exception for all replication errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (resource, listing id, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(ReplicationException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts and connection resets
    - Rate limiting (HTTP 429)
    - Temporary database connection issues
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0
    ):
        super().__init__(message, context, original_exception)
        self.max_retries = max_retries
        self.retry_delay = retry_delay


class NonRetryableError(ReplicationException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Authentication failures (HTTP 401, 403)
    - Resource not found (HTTP 404)
    - Malformed upstream responses
    """
    pass


# ============================================================================
# Upstream Errors
# ============================================================================

class UpstreamError(ReplicationException):
    """
    Base exception for upstream API failures.

    Context should include:
        - url: The endpoint that failed
        - operation: Operation class (entity_fetch, media_fetch, ...)
        - status_code: HTTP status code (if applicable)
        - retry_count: Number of attempts made
    """
    pass


class NetworkError(RetryableError, UpstreamError):
    """Network, timeout and 5xx errors that are retried with backoff."""
    pass


class RateLimitError(RetryableError, UpstreamError):
    """Throttling (HTTP 429) that outlasted the retry budget."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after
        if retry_after:
            self.context["retry_after"] = retry_after


class CircuitOpenError(UpstreamError):
    """
    Service unavailable: the circuit breaker for an operation class is open.

    Raised immediately without contacting upstream. Callers pause and retry
    at cycle level instead of retrying the individual call.
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        retry_after: float = 0.0
    ):
        super().__init__(message, context)
        self.retry_after = retry_after
        self.context["retry_after"] = retry_after


class AuthenticationError(NonRetryableError, UpstreamError):
    """Authentication failures (HTTP 401, 403)."""
    pass


class ResourceNotFoundError(NonRetryableError, UpstreamError):
    """HTTP 404; callers treat it as a legitimately empty result."""
    pass


class ResponseFormatError(NonRetryableError, UpstreamError):
    """Upstream returned a body that is not the expected JSON shape."""
    pass


# ============================================================================
# Mapping Errors
# ============================================================================

class MappingError(NonRetryableError):
    """
    Exception raised when an upstream record cannot be mapped to a row.

    Context should include:
        - record_key: Upstream key of the record (if present)
        - field_name: Field that failed
        - field_value: Offending value
    """
    pass


# ============================================================================
# Load Errors
# ============================================================================

class LoadError(ReplicationException):
    """Base exception for storage write failures."""
    pass


class DatabaseError(LoadError):
    """
    Exception raised when database operations fail.

    Context should include:
        - operation: Type of database operation (SELECT, UPSERT, UPDATE)
        - table_name: Name of the table
    """
    pass


class DatabaseConnectionError(RetryableError, DatabaseError):
    """Database connection errors."""
    pass


class UpsertError(LoadError):
    """
    Exception raised when an insert-or-update fails.

    Context should include:
        - record_id: Key of the row being written
        - table_name: Target table
    """
    pass


class OrphanMediaError(NonRetryableError, LoadError):
    """Media item whose parent listing is not in storage. Never retried."""
    pass


# ============================================================================
# Checkpoint / Discovery / Startup Errors
# ============================================================================

class CheckpointError(ReplicationException):
    """
    Exception raised when checkpoint management fails.

    Context should include:
        - resource_name: Checkpoint resource
        - operation: Operation that failed (get, advance, reset)
    """
    pass


class SchemaDiscoveryError(ReplicationException):
    """Metadata could not be fetched or applied; always absorbed by callers."""
    pass


class StartupError(ReplicationException):
    """Unrecoverable failure while bootstrapping the process."""
    pass
