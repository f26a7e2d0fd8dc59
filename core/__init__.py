"""
Core utilities and configuration for the parts sync pipeline.

This package provides foundational components used throughout the pipeline:

Modules:
    config: Application configuration and environment variable management
    database: Document store engine and session management
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and utilities

Usage:
    from core.config import settings
    from core.database import async_session_maker
    from core.exceptions import NetworkError, StoreUnavailableError
    from core.logging import setup_logging
"""

__all__ = [
    "settings",
    "async_session_maker",
    "setup_logging",
    # Exceptions
    "SyncError",
    "ExtractionError",
    "FTPExtractionError",
    "APIExtractionError",
    "TransformationError",
    "NormalizationError",
    "LoadError",
    "DocumentStoreError",
    "UpsertError",
    "StoreUnavailableError",
    "SearchIndexError",
    "ResilienceError",
    "CircuitOpenError",
    "RetryExhaustedError",
    "OrchestrationError",
    "SyncInProgressError",
    "IntegrationNotFoundError",
    "RetryableError",
    "NonRetryableError",
    "NetworkError",
    "RateLimitError",
    "DatabaseConnectionError",
    "AuthenticationError",
    "ConfigurationError",
]
