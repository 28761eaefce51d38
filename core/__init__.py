"""
Core utilities and configuration for the event export service.

This package provides foundational components used throughout the pipeline:

Modules:
    config: Application configuration and environment variable management
    database: Async engine and session factory construction
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and the quarantine channel
    sanitizer: Masking of user identifiers and secrets in logs

Usage:
    from core.config import Settings
    from core.database import create_engine, create_session_factory
    from core.exceptions import UnknownTableError, StorageError
    from core.logging import setup_logging

Example:
    settings = Settings()
    setup_logging(settings)

    engine = create_engine(settings)
    session_factory = create_session_factory(engine)
"""

__all__ = [
    "Settings",
    "create_engine",
    "create_session_factory",
    "setup_logging",
    "mask_user_id",
    # Exceptions
    "ExportException",
    "UnknownTableError",
    "TransformError",
    "DeliveryError",
    "CircuitOpenError",
    "StorageError",
    "CheckpointError",
]
