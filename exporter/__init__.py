"""
Export pipeline components for delivering event rows to the analytics endpoint.

This package contains all components of the checkpointed delivery pipeline:

Modules:
    registry: Closed set of exportable tables and their field lists
    runner: Orchestrator for incremental, retry and date-scoped runs
    checkpoints: Durable per-table progress (abstract store + SQL store)
    quarantine: Log channel for permanently failed records
    scheduler: APScheduler cron jobs driving the runner
    bootstrap: Construction of a runner from Settings

Subpackages:
    sources: Row sources (abstract + SQLAlchemy)
    transformers: Raw record to envelope conversion
    delivery: HTTP client, circuit breaker and retry policy

Architecture:
    Each table run is a page loop:

    1. Fetch - Rows awaiting delivery strictly after the checkpoint cursor
    2. Mark - Rows set to PROCESSING before any network call
    3. Transform - Rows converted to envelopes; bad rows quarantined
    4. Deliver - One request per row or per batch, with bounded retries
    5. Checkpoint - Counters and cursor persisted after every page

    A failure in one table never stops the remaining tables.

Usage:
    from exporter.bootstrap import build_runner
    from exporter.runner import ExportRunner, RunSummary

Example:
    runner = build_runner(settings, session_factory)
    try:
        summary = await runner.run_incremental()
        print(f"Delivered {summary.success} of {summary.total} rows")
    finally:
        await runner.client.aclose()

Error Handling:
    Delivery problems never raise; they come back as DeliveryOutcome
    values. Storage problems raise StorageError / CheckpointError from
    core.exceptions and abort only the table being processed.
"""

__all__ = [
    "TableRegistry",
    "ExportRunner",
    "RunSummary",
    "TableResult",
    "CheckpointStore",
    "SqlCheckpointStore",
    "QuarantineLog",
    "ExportScheduler",
    "build_runner",
]
