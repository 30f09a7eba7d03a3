"""
Core utilities and configuration for the listing replication service.

This package provides foundational components used throughout the engine:

Modules:
    config: Application configuration and environment variable management
    database: Engine and session factory construction
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and utilities

Usage:
    from core.config import settings
    from core.database import create_engine, create_session_factory
    from core.exceptions import CircuitOpenError, NetworkError
    from core.logging import setup_logging

Example:
    setup_logging()

    engine = create_engine(settings)
    session_factory = create_session_factory(engine)
    async with session_factory() as session:
        ...
"""

__all__ = [
    "settings",
    "create_engine",
    "create_session_factory",
    "check_connection",
    "setup_logging",
    # Exceptions
    "ReplicationException",
    "RetryableError",
    "NonRetryableError",
    "UpstreamError",
    "NetworkError",
    "RateLimitError",
    "CircuitOpenError",
    "AuthenticationError",
    "ResourceNotFoundError",
    "ResponseFormatError",
    "MappingError",
    "LoadError",
    "DatabaseError",
    "DatabaseConnectionError",
    "UpsertError",
    "OrphanMediaError",
    "CheckpointError",
    "SchemaDiscoveryError",
    "StartupError",
]
