# ============================================================================
# File: exporter/runner.py
# Description: Checkpointed delivery pipeline for the event tables
# ============================================================================
"""
Export Runner - Orchestrates fetch, transform, deliver and checkpoint.

This module provides the delivery pipeline with:
- Per-table checkpoints that survive restarts (resume from the stored cursor)
- Rows marked PROCESSING before any network call
- Single and batch delivery with bounded retries
- Quarantine of permanently failed rows
- A separate retry pass for FAILED rows and a stateless date-scoped pass
- Incremental and retry passes of one table never run at the same time
"""

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Dict, List, Optional, Sequence
import asyncio
import logging

from core.exceptions import CheckpointError, ExportException, UnknownTableError
from core.sanitizer import mask_user_id
from exporter.checkpoints import CheckpointStore
from exporter.delivery.client import DeliveryClient
from exporter.delivery.retry import RetryPolicy
from exporter.quarantine import QuarantineLog
from exporter.registry import TableRegistry
from exporter.sources.base import PartitionDate, RowSource, partition_key
from exporter.transformers.envelope_builder import EnvelopeTransformer
from models.base import ReportStatus, RunKind
from schemas.checkpoint import Checkpoint
from schemas.delivery import DeliveryOutcome
from schemas.envelope import Envelope, RawRecord
from schemas.table import ReportMode, TableSchema

logger = logging.getLogger(__name__)


@dataclass
class TableResult:
    """Outcome of one table within a run"""
    table_name: str
    total: int = 0
    success: int = 0
    failed: int = 0
    status: str = "completed"
    error: Optional[str] = None
    run_id: Optional[str] = None


@dataclass
class RunSummary:
    """Per-table results of one entry-point invocation"""
    name: str
    tables: List[TableResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(t.total for t in self.tables)

    @property
    def success(self) -> int:
        return sum(t.success for t in self.tables)

    @property
    def failed(self) -> int:
        return sum(t.failed for t in self.tables)

    def table(self, table_name: str) -> Optional[TableResult]:
        return next((t for t in self.tables if t.table_name == table_name), None)

    def log(self) -> None:
        for t in self.tables:
            logger.info(
                f"[{self.name}] table={t.table_name} status={t.status} "
                f"total={t.total} success={t.success} fail={t.failed}"
            )
        logger.info(f"[{self.name}] Summary: total={self.total}, success={self.success}, fail={self.failed}")


@dataclass
class PageResult:
    success: int = 0
    failed: int = 0


@dataclass
class _Delivery:
    records: List[RawRecord]
    outcome: DeliveryOutcome


class ExportRunner:
    """
    Checkpointed export of the configured event tables.

    Responsibilities:
    - Resume or create one RUNNING checkpoint per table
    - Fetch pages strictly after the cursor until an empty page
    - Deliver per the table's report mode and update row status
    - Advance the cursor to the page's max id even when rows failed
    - Abort only the affected table on storage failures

    The delivery client (and its circuit breaker) is the only object
    shared between table runs.
    """

    def __init__(
        self,
        registry: TableRegistry,
        row_source: RowSource,
        checkpoint_store: CheckpointStore,
        transformer: EnvelopeTransformer,
        client: DeliveryClient,
        retry_policy: RetryPolicy,
        quarantine: QuarantineLog,
        tables: Optional[Sequence[str]] = None,
        page_size: int = 1000,
        report_batch_size: int = 20,
        failed_retry_limit: int = 3,
    ):
        self.registry = registry
        self.row_source = row_source
        self.checkpoint_store = checkpoint_store
        self.transformer = transformer
        self.client = client
        self.retry_policy = retry_policy
        self.quarantine = quarantine
        self.tables = list(tables) if tables is not None else list(registry.all_table_ids())
        self.page_size = page_size
        self.report_batch_size = report_batch_size
        self.failed_retry_limit = failed_retry_limit
        self._stop_requested = False
        self._table_locks: Dict[str, asyncio.Lock] = {}

    def _claim_table(self, table_name: str) -> asyncio.Lock:
        """Lock shared by the passes that write row status for one table"""
        lock = self._table_locks.get(table_name)
        if lock is None:
            lock = self._table_locks[table_name] = asyncio.Lock()
        elif lock.locked():
            logger.info(f"Table {table_name} is busy in another pass, waiting")
        return lock

    def request_stop(self) -> None:
        """Stop after the current page; the table's checkpoint is left PAUSED"""
        logger.info("Stop requested, finishing current page")
        self._stop_requested = True

    # ------------------------------------------------------------------
    # Incremental (checkpointed) export
    # ------------------------------------------------------------------

    async def run_incremental(self) -> RunSummary:
        """Export pending rows of every configured table, one table at a time"""
        self._stop_requested = False
        summary = RunSummary(name="incremental")

        running = await self.checkpoint_store.find_all_running()
        if running:
            logger.info(f"Found {len(running)} running tasks, will resume from checkpoint")

        for table_name in self.tables:
            if self._stop_requested:
                break
            summary.tables.append(await self._guarded(table_name, self.run_table(table_name)))

        summary.log()
        return summary

    async def run_table(self, table_name: str, run_kind: RunKind = RunKind.INCREMENTAL) -> TableResult:
        """
        Run (or resume) the checkpointed export of one table.

        Waits while the retry pass holds the same table.

        Raises:
            UnknownTableError: before any query when the table is not registered
        """
        schema = self.registry.lookup(table_name)
        async with self._claim_table(table_name):
            return await self._run_checkpointed(schema, run_kind)

    async def _run_checkpointed(self, schema: TableSchema, run_kind: RunKind) -> TableResult:
        table_name = schema.table_name
        checkpoint = await self._resolve_checkpoint(table_name, run_kind)
        logger.info(f"Processing table {table_name} with report mode {schema.report_mode.value}")

        try:
            while True:
                if self._stop_requested:
                    checkpoint.pause()
                    await self.checkpoint_store.update(checkpoint)
                    logger.info(f"Task {checkpoint.run_id} paused at id={checkpoint.last_processed_id}")
                    return self._table_result(checkpoint, "paused")

                records = await self.row_source.fetch_pending(
                    table_name, checkpoint.last_processed_id, self.page_size
                )
                if not records:
                    break

                await self._run_page_to_completion(schema, checkpoint, records)

            checkpoint.complete()
            await self.checkpoint_store.update(checkpoint)
            logger.info(
                f"Task completed: {checkpoint.run_id} - success: {checkpoint.success_count}, "
                f"fail: {checkpoint.fail_count}"
            )
            return self._table_result(checkpoint, "completed")

        except CheckpointError as e:
            # Left in its last persisted state; the next run resumes it
            logger.error(
                f"Export of table {table_name} aborted, checkpoint {checkpoint.run_id} not written: {e}",
                extra={"error_context": e.to_dict()}
            )
            return self._table_result(checkpoint, "failed", error=str(e))
        except ExportException as e:
            logger.error(f"Export of table {table_name} aborted: {e}", extra={"error_context": e.to_dict()})
            return await self._abort(checkpoint, e)
        except Exception as e:
            logger.exception(f"Unexpected error while exporting table {table_name}")
            return await self._abort(checkpoint, e)

    async def _run_page_to_completion(self, schema: TableSchema, checkpoint: Checkpoint, records: List[RawRecord]) -> None:
        """Deliver a page and persist the checkpoint; cancellation waits for both"""
        task = asyncio.ensure_future(self._deliver_page(schema, checkpoint, records))
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            logger.warning(f"Cancelled during a page of {schema.table_name}, finishing it before stopping")
            try:
                await task
                checkpoint.pause()
                await self.checkpoint_store.update(checkpoint)
            except Exception as e:
                logger.error(f"Could not finish page of {schema.table_name} after cancellation: {e}")
            raise

    async def _deliver_page(self, schema: TableSchema, checkpoint: Checkpoint, records: List[RawRecord]) -> None:
        page = await self._process_page(schema, records)

        ids = [r.id for r in records if r.id is not None]
        checkpoint.record_page(
            processed=len(records),
            success=page.success,
            failed=page.failed,
            max_id=max(ids) if ids else None,
        )
        await self.checkpoint_store.update(checkpoint)

        logger.info(
            f"Page completed: table={schema.table_name}, size={len(records)}, "
            f"success={page.success}, fail={page.failed}, lastId={checkpoint.last_processed_id}"
        )

    async def _resolve_checkpoint(self, table_name: str, run_kind: RunKind) -> Checkpoint:
        checkpoint = await self.checkpoint_store.find_running(table_name)
        if checkpoint is not None:
            logger.info(
                f"Resuming existing task {checkpoint.run_id} for table {table_name} "
                f"(lastId={checkpoint.last_processed_id})"
            )
            return checkpoint

        checkpoint = await self.checkpoint_store.find_paused(table_name)
        if checkpoint is not None:
            checkpoint.resume()
            await self.checkpoint_store.update(checkpoint)
            logger.info(
                f"Task {checkpoint.run_id} resumed from id={checkpoint.last_processed_id}"
            )
            return checkpoint

        total = await self.row_source.count_pending(table_name)
        checkpoint = await self.checkpoint_store.create(Checkpoint.start(table_name, run_kind, total_count=total))
        logger.info(f"Created new task {checkpoint.run_id} for table {table_name} ({total} pending)")
        return checkpoint

    async def _abort(self, checkpoint: Checkpoint, error: Exception) -> TableResult:
        checkpoint.fail(str(error)[:500])
        try:
            await self.checkpoint_store.update(checkpoint)
        except ExportException as e:
            # Checkpoint keeps its last persisted state and is resumed next time
            logger.error(f"Could not mark task {checkpoint.run_id} as failed: {e.message}")
        return self._table_result(checkpoint, "failed", error=str(error))

    @staticmethod
    def _table_result(checkpoint: Checkpoint, status: str, error: Optional[str] = None) -> TableResult:
        return TableResult(
            table_name=checkpoint.table_name,
            total=checkpoint.processed_count,
            success=checkpoint.success_count,
            failed=checkpoint.fail_count,
            status=status,
            error=error,
            run_id=checkpoint.run_id,
        )

    # ------------------------------------------------------------------
    # Retry pass for FAILED rows
    # ------------------------------------------------------------------

    async def retry_failed(self) -> RunSummary:
        """Deliver FAILED rows below the retry ceiling once; no cursor involved"""
        summary = RunSummary(name="retry")

        for table_name in self.tables:
            summary.tables.append(await self._guarded(table_name, self._retry_table(table_name)))

        summary.log()
        return summary

    async def _retry_table(self, table_name: str) -> TableResult:
        schema = self.registry.lookup(table_name)
        async with self._claim_table(table_name):
            records = await self.row_source.fetch_failed(table_name, self.failed_retry_limit, self.page_size)
            if not records:
                return TableResult(table_name=table_name)

            logger.info(f"Retrying {len(records)} failed records from table {table_name}")
            page = await self._process_page(schema, records)
        return TableResult(table_name=table_name, total=len(records), success=page.success, failed=page.failed)

    # ------------------------------------------------------------------
    # Date-scoped (stateless) export
    # ------------------------------------------------------------------

    async def run_for_date(self, dt: PartitionDate) -> RunSummary:
        """
        Export one calendar partition of every table with offset pagination.

        No checkpoint and no row status writes: running the same date again
        sends the same rows again.
        """
        self._stop_requested = False
        key = partition_key(dt)
        summary = RunSummary(name=f"date:{key}")
        logger.info(f"Processing date: {key}")

        for table_name in self.tables:
            if self._stop_requested:
                break
            summary.tables.append(await self._guarded(table_name, self._run_table_for_date(table_name, key)))

        summary.log()
        return summary

    async def run_yesterday(self, today: Optional[date] = None) -> RunSummary:
        return await self.run_for_date((today or date.today()) - timedelta(days=1))

    async def _run_table_for_date(self, table_name: str, dt: str) -> TableResult:
        schema = self.registry.lookup(table_name)
        total = await self.row_source.count_by_date(table_name, dt)
        logger.info(f"Total records in {table_name} (dt={dt}): {total}")

        result = TableResult(table_name=table_name)
        offset = 0
        while not self._stop_requested:
            records = await self.row_source.fetch_by_date(table_name, dt, self.page_size, offset)
            if not records:
                break

            page = await self._process_page(schema, records, dt=dt, write_status=False)
            result.total += len(records)
            result.success += page.success
            result.failed += page.failed
            offset += len(records)

            logger.info(f"Batch completed: table={table_name}, offset={offset}, success={result.success}, fail={result.failed}")

        if self._stop_requested:
            result.status = "paused"
        return result

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def get_pending_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for table_name in self.tables:
            if not self.registry.is_known(table_name):
                logger.warning(f"Skipping unknown table {table_name}")
                continue
            counts[table_name] = await self.row_source.count_pending(table_name)
        return counts

    async def get_date_counts(self, dt: PartitionDate) -> Dict[str, int]:
        key = partition_key(dt)
        counts: Dict[str, int] = {}
        for table_name in self.tables:
            if not self.registry.is_known(table_name):
                logger.warning(f"Skipping unknown table {table_name}")
                continue
            counts[table_name] = await self.row_source.count_by_date(table_name, key)
        return counts

    # ------------------------------------------------------------------
    # Page processing shared by every pass
    # ------------------------------------------------------------------

    async def _guarded(self, table_name: str, work) -> TableResult:
        """Run one table's work; failures are contained to that table"""
        try:
            return await work
        except UnknownTableError as e:
            logger.error(e.message)
            return TableResult(table_name=table_name, status="skipped", error=e.message)
        except ExportException as e:
            logger.error(f"Failed to process table {table_name}: {e}", extra={"error_context": e.to_dict()})
            return TableResult(table_name=table_name, status="failed", error=str(e))
        except Exception as e:
            logger.exception(f"Unexpected error while processing table {table_name}")
            return TableResult(table_name=table_name, status="failed", error=str(e))

    async def _process_page(
        self,
        schema: TableSchema,
        records: List[RawRecord],
        dt: Optional[str] = None,
        write_status: bool = True,
    ) -> PageResult:
        table_name = schema.table_name
        result = PageResult()

        if write_status:
            await self.row_source.set_status(
                table_name, [r.id for r in records if r.id is not None], ReportStatus.PROCESSING
            )

        transformed = self.transformer.transform_batch(table_name, records)
        for failure in transformed.failures:
            await self._reject(table_name, failure.record, f"Transform failed: {failure.reason}", dt, write_status)
            result.failed += 1

        for delivery in await self._dispatch(schema, transformed.items):
            if delivery.outcome.success:
                result.success += len(delivery.records)
                if write_status:
                    await self.row_source.set_status(
                        table_name, [r.id for r in delivery.records if r.id is not None], ReportStatus.SUCCESS
                    )
                continue

            reason = f"Max retries exceeded: {delivery.outcome.describe()}"
            for record in delivery.records:
                await self._reject(table_name, record, reason, dt, write_status)
            result.failed += len(delivery.records)

        return result

    async def _dispatch(self, schema: TableSchema, items: List[tuple]) -> List[_Delivery]:
        deliveries: List[_Delivery] = []

        if schema.report_mode == ReportMode.SINGLE:
            for record, envelope in items:
                outcome = await self.retry_policy.run(
                    lambda envelope=envelope: self.client.send_single(envelope),
                    description=f"table={schema.table_name}, user={mask_user_id(record.user_unique_id)}",
                )
                deliveries.append(_Delivery(records=[record], outcome=outcome))
            return deliveries

        for start in range(0, len(items), self.report_batch_size):
            chunk = items[start:start + self.report_batch_size]
            envelopes: List[Envelope] = [envelope for _, envelope in chunk]
            outcome = await self.retry_policy.run(
                lambda envelopes=envelopes: self.client.send_batch(envelopes),
                description=f"table={schema.table_name}, size={len(envelopes)}",
            )
            deliveries.append(_Delivery(records=[record for record, _ in chunk], outcome=outcome))
        return deliveries

    async def _reject(
        self, table_name: str, record: RawRecord, reason: str, dt: Optional[str], write_status: bool
    ) -> None:
        self.quarantine.record(table_name, record, reason, dt=dt)
        if write_status and record.id is not None:
            await self.row_source.set_status_with_error(table_name, record.id, ReportStatus.FAILED, reason)
