"""
Wiring of the export pipeline from Settings
"""

from typing import Optional
from sqlalchemy.ext.asyncio import async_sessionmaker
from core.config import Settings
from exporter.checkpoints import SqlCheckpointStore
from exporter.delivery.circuit_breaker import CircuitBreaker
from exporter.delivery.client import DeliveryClient
from exporter.delivery.retry import RetryPolicy
from exporter.quarantine import QuarantineLog
from exporter.registry import TableRegistry
from exporter.runner import ExportRunner
from exporter.sources.sql_row_source import SqlRowSource
from exporter.transformers.envelope_builder import EnvelopeTransformer
import httpx
import logging

logger = logging.getLogger(__name__)


def build_breaker(settings: Settings) -> CircuitBreaker:
    return CircuitBreaker(
        name="report-api",
        failure_rate_threshold=settings.CB_FAILURE_RATE_THRESHOLD,
        sliding_window_size=settings.CB_SLIDING_WINDOW_SIZE,
        minimum_calls=settings.CB_MINIMUM_CALLS,
        wait_duration=settings.CB_WAIT_DURATION_SECONDS,
    )


def build_runner(
    settings: Settings,
    session_factory: async_sessionmaker,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ExportRunner:
    """
    Build a runner over the SQL stores and the configured endpoint.

    The caller owns the returned runner's client and should close it with
    ``await runner.client.aclose()``.
    """
    registry = TableRegistry.default(settings.REPORT_MODE_OVERRIDES)
    client = DeliveryClient.from_settings(settings, build_breaker(settings), transport=transport)

    runner = ExportRunner(
        registry=registry,
        row_source=SqlRowSource(session_factory, registry),
        checkpoint_store=SqlCheckpointStore(session_factory),
        transformer=EnvelopeTransformer(registry),
        client=client,
        retry_policy=RetryPolicy(
            max_attempts=settings.MAX_RETRY_TIMES,
            interval_seconds=settings.RETRY_INTERVAL_MS / 1000,
        ),
        quarantine=QuarantineLog(include_payload=settings.QUARANTINE_INCLUDE_PAYLOAD),
        tables=settings.event_tables,
        page_size=settings.DB_BATCH_SIZE,
        report_batch_size=settings.REPORT_BATCH_SIZE,
        failed_retry_limit=settings.FAILED_RETRY_LIMIT,
    )

    logger.info(f"Export runner ready for tables: {', '.join(runner.tables)}")
    return runner
