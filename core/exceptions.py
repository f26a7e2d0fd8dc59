"""
Custom exceptions for the sync pipeline with structured error context.

Every failure raised inside the pipeline carries a ``context`` dictionary
(integration, file, batch, status code, ...) so the orchestrator can record
it on the run and the log line can be correlated later.

Exception Hierarchy:
    SyncError (base)
    ├── ExtractionError
    │   ├── FTPExtractionError
    │   └── APIExtractionError
    ├── TransformationError
    │   └── NormalizationError
    ├── LoadError
    │   ├── DocumentStoreError
    │   │   ├── UpsertError
    │   │   └── StoreUnavailableError
    │   └── SearchIndexError
    ├── ResilienceError
    │   ├── CircuitOpenError
    │   └── RetryExhaustedError
    ├── OrchestrationError
    │   ├── SyncInProgressError
    │   └── IntegrationNotFoundError
    └── RetryableError / NonRetryableError (mixins)

How the orchestrator treats each family:
    - RetryableError: retried with backoff at the call site
    - NonRetryableError: fatal for the whole run, never retried
    - NormalizationError: never raised for a single bad row (rows are counted)
    - everything else below file level: recorded on the file, run continues
"""

from typing import Optional, Dict, Any
from datetime import datetime


class SyncError(Exception):
    """
    Base exception for all sync pipeline errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (integration, file, etc.)
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
        self.timestamp = datetime.utcnow()

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
            base_msg += (
                f" | Caused by: {type(self.original_exception).__name__}: "
                f"{self.original_exception}"
            )

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
# Extraction Errors
# ============================================================================

class ExtractionError(SyncError):
    """Base exception for source listing/download failures."""
    pass


class FTPExtractionError(ExtractionError):
    """
    Exception raised when an FTP listing or download fails.

    Context should include:
        - host: FTP host (never the password)
        - remote_path: Directory or file that was requested
        - file_name: File being downloaded (if applicable)
    """
    pass


class APIExtractionError(ExtractionError):
    """
    Exception raised when a paginated API source fails.

    Context should include:
        - api_url: The API endpoint that failed
        - status_code: HTTP status code (if applicable)
        - page: Page or cursor being fetched
    """
    pass


# ============================================================================
# Transformation Errors
# ============================================================================

class TransformationError(SyncError):
    """Base exception for data transformation failures."""
    pass


class NormalizationError(TransformationError):
    """
    Exception raised when a whole input cannot be normalized.

    Single rows are rejected and counted; this is raised only when the
    input as a whole is unreadable (undecodable file, no header line).

    Context should include:
        - file_name: Source file
        - line_number: Line where parsing stopped (if known)
    """
    pass


# ============================================================================
# Load Errors
# ============================================================================

class LoadError(SyncError):
    """Base exception for data loading failures."""
    pass


class DocumentStoreError(LoadError):
    """
    Exception raised when a document store operation fails.

    Context should include:
        - operation: UPSERT, DELETE, ...
        - table_name: Name of the table
        - batch_size: Number of records in the failing statement
    """
    pass


class UpsertError(DocumentStoreError):
    """
    Exception raised when a bulk upsert statement is rejected.

    Context should include:
        - integration_id: Owning integration
        - file_name: Source file of the batch
        - batch_size: Number of records in the statement
    """
    pass


class StoreUnavailableError(DocumentStoreError):
    """The document store stayed unreachable after every retry. Aborts the run."""
    pass


class SearchIndexError(LoadError):
    """
    Exception raised when a search index request fails as a whole.

    Context should include:
        - index: Index name
        - status_code: HTTP status code (if applicable)
    """
    pass


# ============================================================================
# Resilience Errors
# ============================================================================

class ResilienceError(SyncError):
    """Base exception raised by the resilience layer itself."""
    pass


class CircuitOpenError(ResilienceError):
    """Raised instead of calling a dependency whose breaker is open."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        retry_in: Optional[float] = None
    ):
        super().__init__(message, context)
        self.retry_in = retry_in
        if retry_in is not None:
            self.context["retry_in"] = round(retry_in, 2)


class RetryExhaustedError(ResilienceError):
    """Raised when a retry sequence gives up. The last failure is the cause."""
    pass


# ============================================================================
# Orchestration Errors
# ============================================================================

class OrchestrationError(SyncError):
    """Base exception for run-level bookkeeping failures."""
    pass


class SyncInProgressError(OrchestrationError):
    """A run for this integration is already active; the new request is rejected."""
    pass


class IntegrationNotFoundError(OrchestrationError):
    """The requested integration does not exist."""
    pass


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(SyncError):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Connection refused / reset / timeout
    - Rate limiting (HTTP 429)
    - Temporary database connection issues
    """
    pass


class NonRetryableError(SyncError):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Authentication failures (FTP 530, HTTP 401/403)
    - Missing or invalid integration configuration
    """
    pass


# ============================================================================
# Specific Retryable Errors
# ============================================================================

class NetworkError(RetryableError, ExtractionError):
    """Connection-level errors that should be retried."""
    pass


class RateLimitError(RetryableError):
    """Rate limiting errors (HTTP 429) that should be retried with backoff."""

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


class DatabaseConnectionError(RetryableError, DocumentStoreError):
    """Database connection errors that should be retried."""
    pass


# ============================================================================
# Specific Non-Retryable Errors
# ============================================================================

class AuthenticationError(NonRetryableError, ExtractionError):
    """Authentication failures that abort the run without retrying."""
    pass


class ConfigurationError(NonRetryableError, OrchestrationError):
    """An integration is missing configuration it needs to run."""
    pass
