"""
Pytest configuration and fixtures
"""

import pytest
import pytest_asyncio
import httpx
import json
from typing import Any, Callable, Dict, List, Optional
from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

from core.exceptions import CheckpointError, StorageError
from exporter.checkpoints import CheckpointStore
from exporter.delivery.circuit_breaker import CircuitBreaker
from exporter.delivery.client import DeliveryClient
from exporter.delivery.retry import RetryPolicy
from exporter.quarantine import QuarantineLog
from exporter.registry import TableRegistry
from exporter.runner import ExportRunner
from exporter.sources.base import PartitionDate, RowSource, partition_key
from exporter.transformers.envelope_builder import EnvelopeTransformer
from models.base import Base, CheckpointStatus, ReportStatus
from models.event_table import event_table
from schemas.checkpoint import Checkpoint
from schemas.envelope import RawRecord

FIXED_NOW_MS = 1_700_000_000_000
TEST_BASE_URL = "https://report.example.com"


# ============================================================================
# In-memory collaborators
# ============================================================================

class FakeRowSource(RowSource):
    """Row source over plain dicts, recording every fetch"""

    def __init__(self, registry: TableRegistry):
        self.registry = registry
        self.rows: Dict[str, Dict[int, Dict[str, Any]]] = {}
        self.fetched_ids: Dict[str, List[int]] = {}
        self.fail_fetch_for: set = set()
        self.status_writes: List[tuple] = []

    def add_row(
        self,
        table_name: str,
        row_id: int,
        user_unique_id: Optional[str] = "user-000000001",
        et: Any = None,
        status: ReportStatus = ReportStatus.PENDING,
        retry_count: int = 0,
        dt: str = "2024-03-01",
        **fields,
    ) -> None:
        self.rows.setdefault(table_name, {})[row_id] = {
            "id": row_id,
            "user_unique_id": user_unique_id,
            "et": et,
            "fields": fields,
            "report_status": status,
            "retry_count": retry_count,
            "error_msg": None,
            "dt": dt,
        }

    def add_rows(self, table_name: str, ids, **kwargs) -> None:
        for row_id in ids:
            self.add_row(table_name, row_id, user_unique_id=f"user-{row_id:09d}", **kwargs)

    def row(self, table_name: str, row_id: int) -> Dict[str, Any]:
        return self.rows[table_name][row_id]

    def status_of(self, table_name: str, row_id: int) -> ReportStatus:
        return self.rows[table_name][row_id]["report_status"]

    def _table(self, table_name: str) -> Dict[int, Dict[str, Any]]:
        self.registry.lookup(table_name)
        return self.rows.get(table_name, {})

    def _check_fetch(self, table_name: str) -> None:
        if table_name in self.fail_fetch_for:
            raise StorageError(
                f"Failed to fetch records from table {table_name}",
                context={"operation": "SELECT", "table_name": table_name}
            )

    def _to_records(self, table_name: str, rows) -> List[RawRecord]:
        records = [
            RawRecord(
                id=row["id"],
                user_unique_id=row["user_unique_id"],
                event_time=row["et"],
                retry_count=row["retry_count"],
                fields=dict(row["fields"]),
            )
            for row in rows
        ]
        self.fetched_ids.setdefault(table_name, []).extend(r.id for r in records)
        return records

    async def count_pending(self, table_name: str) -> int:
        return sum(
            1 for row in self._table(table_name).values()
            if row["report_status"] in (ReportStatus.PENDING, ReportStatus.PROCESSING)
        )

    async def fetch_pending(self, table_name: str, after_id: int, limit: int) -> List[RawRecord]:
        self._check_fetch(table_name)
        rows = sorted(
            (
                row for row in self._table(table_name).values()
                if row["id"] > after_id
                and row["report_status"] in (ReportStatus.PENDING, ReportStatus.PROCESSING)
            ),
            key=lambda r: r["id"],
        )
        return self._to_records(table_name, rows[:limit])

    async def count_by_date(self, table_name: str, dt: PartitionDate) -> int:
        key = partition_key(dt)
        return sum(1 for row in self._table(table_name).values() if row["dt"] == key)

    async def fetch_by_date(self, table_name: str, dt: PartitionDate, limit: int, offset: int) -> List[RawRecord]:
        self._check_fetch(table_name)
        key = partition_key(dt)
        rows = sorted(
            (row for row in self._table(table_name).values() if row["dt"] == key),
            key=lambda r: r["id"],
        )
        return self._to_records(table_name, rows[offset:offset + limit])

    async def fetch_failed(self, table_name: str, max_retry: int, limit: int) -> List[RawRecord]:
        self._check_fetch(table_name)
        rows = sorted(
            (
                row for row in self._table(table_name).values()
                if row["report_status"] == ReportStatus.FAILED and row["retry_count"] < max_retry
            ),
            key=lambda r: r["id"],
        )
        return self._to_records(table_name, rows[:limit])

    async def set_status(self, table_name: str, ids: List[int], status: ReportStatus) -> None:
        for row_id in ids:
            self.rows[table_name][row_id]["report_status"] = status
            self.status_writes.append((table_name, row_id, status))

    async def set_status_with_error(
        self, table_name: str, record_id: int, status: ReportStatus, message: Optional[str]
    ) -> None:
        row = self.rows[table_name][record_id]
        row["report_status"] = status
        row["error_msg"] = None if message is None else message[:500]
        row["retry_count"] += 1
        self.status_writes.append((table_name, record_id, status))


class FakeCheckpointStore(CheckpointStore):
    """Checkpoint store keeping copies, so unsaved changes are not visible"""

    def __init__(self):
        self.saved: Dict[int, Checkpoint] = {}
        self.next_id = 1
        self.fail_updates = False
        self.update_count = 0

    def _copy(self, checkpoint: Checkpoint) -> Checkpoint:
        return checkpoint.model_copy(deep=True)

    def _latest(self, table_name: str, status: CheckpointStatus) -> Optional[Checkpoint]:
        matches = [c for c in self.saved.values() if c.table_name == table_name and c.status == status]
        return self._copy(max(matches, key=lambda c: c.id)) if matches else None

    async def find_running(self, table_name: str) -> Optional[Checkpoint]:
        return self._latest(table_name, CheckpointStatus.RUNNING)

    async def find_paused(self, table_name: str) -> Optional[Checkpoint]:
        return self._latest(table_name, CheckpointStatus.PAUSED)

    async def create(self, checkpoint: Checkpoint) -> Checkpoint:
        existing = await self.find_running(checkpoint.table_name)
        if existing is not None:
            return existing
        created = checkpoint.model_copy(update={"id": self.next_id})
        self.next_id += 1
        self.saved[created.id] = self._copy(created)
        return created

    async def update(self, checkpoint: Checkpoint) -> None:
        if self.fail_updates:
            raise CheckpointError("Failed to update checkpoint", context={"run_id": checkpoint.run_id})
        self.update_count += 1
        self.saved[checkpoint.id] = self._copy(checkpoint)

    async def find_by_run_id(self, run_id: str) -> Optional[Checkpoint]:
        for checkpoint in self.saved.values():
            if checkpoint.run_id == run_id:
                return self._copy(checkpoint)
        return None

    async def find_all_running(self) -> List[Checkpoint]:
        return [self._copy(c) for c in self.saved.values() if c.status == CheckpointStatus.RUNNING]

    def for_table(self, table_name: str) -> List[Checkpoint]:
        return sorted((c for c in self.saved.values() if c.table_name == table_name), key=lambda c: c.id)


# ============================================================================
# HTTP helpers
# ============================================================================

def ok_response(request: httpx.Request) -> httpx.Response:
    body = json.loads(request.content)
    count = len(body) if isinstance(body, list) else 1
    return httpx.Response(200, json={"e": 0, "message": "success", "sc": count, "ec": 0})


class RecordingHandler:
    """MockTransport handler that records request bodies"""

    def __init__(self, respond: Callable[[httpx.Request], httpx.Response] = ok_response):
        self.respond = respond
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request)

    @property
    def bodies(self) -> List[Any]:
        return [json.loads(r.content) for r in self.requests]


@pytest.fixture
def registry() -> TableRegistry:
    return TableRegistry.default()


@pytest.fixture
def breaker() -> CircuitBreaker:
    return CircuitBreaker(name="test", failure_rate_threshold=50.0, sliding_window_size=10, minimum_calls=5, wait_duration=30.0)


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def retry_policy(sleeps) -> RetryPolicy:
    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return RetryPolicy(max_attempts=3, interval_seconds=1.0, sleep=fake_sleep)


@pytest.fixture
def transformer(registry) -> EnvelopeTransformer:
    return EnvelopeTransformer(registry, clock=lambda: FIXED_NOW_MS)


@pytest.fixture
def row_source(registry) -> FakeRowSource:
    return FakeRowSource(registry)


@pytest.fixture
def checkpoint_store() -> FakeCheckpointStore:
    return FakeCheckpointStore()


@pytest_asyncio.fixture
async def make_client(breaker):
    """Factory for DeliveryClient instances backed by httpx.MockTransport"""
    clients: List[DeliveryClient] = []

    def factory(handler, breaker_override: Optional[CircuitBreaker] = None, max_batch_size: int = 50) -> DeliveryClient:
        client = DeliveryClient(
            base_url=TEST_BASE_URL,
            app_key="test-app-key",
            breaker=breaker_override or breaker,
            max_batch_size=max_batch_size,
            transport=httpx.MockTransport(handler),
        )
        clients.append(client)
        return client

    yield factory

    for client in clients:
        await client.aclose()


@pytest.fixture
def make_runner(registry, row_source, checkpoint_store, transformer, retry_policy, make_client):
    """Factory for ExportRunner wired to the in-memory collaborators"""

    def factory(handler, tables=None, page_size: int = 1000, report_batch_size: int = 20, **kwargs) -> ExportRunner:
        return ExportRunner(
            registry=registry,
            row_source=row_source,
            checkpoint_store=checkpoint_store,
            transformer=transformer,
            client=make_client(handler),
            retry_policy=retry_policy,
            quarantine=QuarantineLog(include_payload=True),
            tables=tables,
            page_size=page_size,
            report_batch_size=report_batch_size,
            **kwargs,
        )

    return factory


# ============================================================================
# SQLite database
# ============================================================================

@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """SQLite engine with the checkpoint table and every event table"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'export_test.db'}",
        echo=False,
        poolclass=NullPool,
    )

    event_metadata = MetaData()
    for schema in TableRegistry.default():
        event_table(schema, event_metadata)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await conn.run_sync(event_metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
