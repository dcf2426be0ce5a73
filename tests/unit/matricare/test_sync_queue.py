"""
Tests for the SyncQueue state machine.

Uses the real record store and the in-memory remote store; time is driven by a
manually advanced clock so backoff schedules can be asserted exactly.
"""

import asyncio
from datetime import timedelta
from pathlib import Path

import httpx
import pytest
from hypothesis import given
from hypothesis import strategies as st

from matricare.adapters.remote_store import HttpRemoteStore, InMemoryRemoteStore
from matricare.domain.errors import RemoteRejectedError, RemoteUnavailableError, SyncQueueFullError
from matricare.domain.models import (
    RemoteDocument,
    RiskCategory,
    SyncErrorKind,
    SyncState,
    SyncTask,
    TaskState,
)
from matricare.services.record_store import LocalRecordStore
from matricare.services.sync_queue import BackoffPolicy, SyncQueue, SyncQueueConfig

from conftest import FakeClock

OFFLINE = RemoteUnavailableError("network unreachable")


class ConcurrentPutTracker(InMemoryRemoteStore):
    """In-memory remote that records peak concurrency, overall and per record."""

    def __init__(self, latency_seconds: float = 0.01) -> None:
        super().__init__()
        self.put_latency = latency_seconds
        self.active: dict[str, int] = {}
        self.peak = 0
        self.peak_per_record = 0

    async def put(self, record_id, payload, expected_version):
        self.active[record_id] = self.active.get(record_id, 0) + 1
        self.peak = max(self.peak, sum(self.active.values()))
        self.peak_per_record = max(self.peak_per_record, self.active[record_id])
        try:
            await asyncio.sleep(self.put_latency)
            return await super().put(record_id, payload, expected_version)
        finally:
            self.active[record_id] -= 1


class MalformedResponseRemote(InMemoryRemoteStore):
    """Remote whose client fails once per broken record with an error outside the sync family."""

    def __init__(self, broken: set[str]) -> None:
        super().__init__()
        self.broken = set(broken)

    async def put(self, record_id, payload, expected_version):
        if record_id in self.broken:
            self.broken.discard(record_id)
            self.put_calls.append(record_id)
            raise KeyError("version")
        return await super().put(record_id, payload, expected_version)


@pytest.fixture
def remote() -> InMemoryRemoteStore:
    return InMemoryRemoteStore()


@pytest.fixture
def journal_path(tmp_path: Path) -> Path:
    return tmp_path / "sync_journal.log"


@pytest.fixture
def queue(store: LocalRecordStore, remote: InMemoryRemoteStore, clock: FakeClock, journal_path: Path):
    sync_queue = SyncQueue(store, remote, clock=clock, journal_path=journal_path).open()
    yield sync_queue
    sync_queue.close()


class TestBackoffPolicy:
    def test_attempt_three_waits_base_times_eight(self) -> None:
        policy = BackoffPolicy(base_seconds=2.0, max_seconds=300.0, max_attempts=5)
        assert policy.delay(3) == timedelta(seconds=16)

    def test_delay_is_capped(self) -> None:
        policy = BackoffPolicy(base_seconds=2.0, max_seconds=60.0, max_attempts=5)
        assert policy.delay(10) == timedelta(seconds=60)

    @given(n=st.integers(min_value=0, max_value=200))
    def test_delay_never_decreases(self, n: int) -> None:
        policy = BackoffPolicy(base_seconds=1.5, max_seconds=300.0, max_attempts=5)
        assert policy.delay(n) <= policy.delay(n + 1) <= timedelta(seconds=300)

    def test_exhausted_after_max_attempts(self) -> None:
        policy = BackoffPolicy.from_config(SyncQueueConfig())
        assert not policy.exhausted(4)
        assert policy.exhausted(5)


class TestEnqueue:
    def test_duplicate_enqueue_is_a_noop(self, queue: SyncQueue, store: LocalRecordStore, make_assessment) -> None:
        record_id = store.append(make_assessment())

        assert queue.enqueue(record_id) is True
        assert queue.enqueue(record_id) is False
        assert queue.pending_count() == 1

    def test_queue_depth_is_bounded(self, store: LocalRecordStore, remote: InMemoryRemoteStore, make_assessment) -> None:
        queue = SyncQueue(store, remote, config=SyncQueueConfig(max_queue_depth=2))
        queue.enqueue(store.append(make_assessment(minutes=0)))
        queue.enqueue(store.append(make_assessment(minutes=1)))

        with pytest.raises(SyncQueueFullError) as exc_info:
            queue.enqueue(store.append(make_assessment(minutes=2)))

        assert exc_info.value.depth == 2

    def test_discard_stops_delivery(self, queue: SyncQueue, store: LocalRecordStore, make_assessment) -> None:
        record_id = store.append(make_assessment())
        queue.enqueue(record_id)

        assert queue.discard(record_id) is True
        assert queue.discard(record_id) is False
        assert queue.get(record_id) is None
        assert record_id in store


class TestDelivery:
    @pytest.mark.asyncio
    async def test_successful_put_marks_record_synced(
        self, queue: SyncQueue, store: LocalRecordStore, remote: InMemoryRemoteStore, make_assessment
    ) -> None:
        record_id = store.append(make_assessment(category=RiskCategory.HIGH))
        queue.enqueue(record_id)

        report = await queue.run_once()

        assert report.synced == [record_id]
        assert queue.get(record_id) is None
        record = store.get(record_id)
        assert record.sync_state is SyncState.SYNCED
        assert record.version == 1
        assert remote.documents[record_id].body == record.to_remote_body()

    @pytest.mark.asyncio
    async def test_failure_schedules_exponential_retry(
        self, queue: SyncQueue, store: LocalRecordStore, remote: InMemoryRemoteStore, clock: FakeClock, make_assessment
    ) -> None:
        record_id = store.append(make_assessment())
        queue.enqueue(record_id)
        remote.fail_next(OFFLINE, OFFLINE, OFFLINE)

        for _ in range(2):
            await queue.run_once()
            clock.advance(queue.get(record_id).next_retry_at.timestamp() - clock().timestamp())

        failed_at = clock()
        report = await queue.run_once()

        task = queue.get(record_id)
        assert report.failed == [record_id]
        assert task.state is TaskState.FAILED
        assert task.attempts == 3
        assert task.last_error is SyncErrorKind.NETWORK
        assert task.next_retry_at == failed_at + timedelta(seconds=2.0 * 2**3)
        assert store.get(record_id).sync_state is SyncState.UNSYNCED

    @pytest.mark.asyncio
    async def test_task_not_retried_before_backoff_elapses(
        self, queue: SyncQueue, store: LocalRecordStore, remote: InMemoryRemoteStore, clock: FakeClock, make_assessment
    ) -> None:
        record_id = store.append(make_assessment())
        queue.enqueue(record_id)
        remote.fail_next(OFFLINE)
        await queue.run_once()

        clock.advance(3)
        early = await queue.run_once()
        clock.advance(1)
        due = await queue.run_once()

        assert early.attempted == 0
        assert due.synced == [record_id]
        assert remote.put_calls == [record_id, record_id]

    @pytest.mark.asyncio
    async def test_five_failures_abandon_the_task(
        self, store: LocalRecordStore, remote: InMemoryRemoteStore, clock: FakeClock, journal_path: Path, make_assessment
    ) -> None:
        abandoned: list[SyncTask] = []
        queue = SyncQueue(
            store, remote, clock=clock, journal_path=journal_path, on_abandoned=abandoned.append
        ).open()
        record_id = store.append(make_assessment())
        queue.enqueue(record_id)
        remote.fail_next(*[OFFLINE] * 5)

        for _ in range(5):
            await queue.run_once()
            clock.advance(600)

        assert queue.get(record_id).state is TaskState.ABANDONED
        assert [t.record_id for t in abandoned] == [record_id]
        assert [t.record_id for t in queue.abandoned()] == [record_id]

        # Never retried automatically, even once the remote is healthy.
        clock.advance(3600)
        report = await queue.run_once()
        assert report.attempted == 0
        assert len(remote.put_calls) == 5
        queue.close()

    @pytest.mark.asyncio
    async def test_abandoned_state_survives_restart(
        self, store: LocalRecordStore, remote: InMemoryRemoteStore, clock: FakeClock, journal_path: Path, make_assessment
    ) -> None:
        config = SyncQueueConfig(max_attempts=1)
        first = SyncQueue(store, remote, config=config, clock=clock, journal_path=journal_path).open()
        record_id = store.append(make_assessment())
        first.enqueue(record_id)
        remote.fail_next(OFFLINE)
        await first.run_once()
        first.close()

        second = SyncQueue(store, remote, config=config, clock=clock, journal_path=journal_path).open()
        second.restore()

        assert second.get(record_id).state is TaskState.ABANDONED
        assert second.pending_count() == 0

        assert second.retry_abandoned(record_id) is True
        report = await second.run_once()
        assert report.synced == [record_id]
        second.close()

    @pytest.mark.asyncio
    async def test_rejected_put_counts_as_failure(
        self, queue: SyncQueue, store: LocalRecordStore, remote: InMemoryRemoteStore, make_assessment
    ) -> None:
        record_id = store.append(make_assessment())
        queue.enqueue(record_id)
        remote.fail_next(RemoteRejectedError(503, "maintenance"))

        report = await queue.run_once()

        assert report.failed == [record_id]
        assert "503" in report.errors[record_id]
        assert queue.get(record_id).last_error is SyncErrorKind.REMOTE_REJECTED

    @pytest.mark.asyncio
    async def test_attempt_timeout(
        self, store: LocalRecordStore, remote: InMemoryRemoteStore, clock: FakeClock, make_assessment
    ) -> None:
        remote.latency_seconds = 0.2
        queue = SyncQueue(store, remote, config=SyncQueueConfig(attempt_timeout_seconds=0.02), clock=clock)
        record_id = store.append(make_assessment())
        queue.enqueue(record_id)

        report = await queue.run_once()

        assert report.failed == [record_id]
        assert queue.get(record_id).last_error is SyncErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_parallelism_is_capped(self, store: LocalRecordStore, clock: FakeClock, make_assessment) -> None:
        remote = ConcurrentPutTracker()
        queue = SyncQueue(store, remote, config=SyncQueueConfig(parallelism=2), clock=clock)
        for minute in range(6):
            queue.enqueue(store.append(make_assessment(minutes=minute)))

        report = await queue.run_once()

        assert len(report.synced) == 6
        assert remote.peak == 2

    @pytest.mark.asyncio
    async def test_missing_record_is_dropped(self, queue: SyncQueue) -> None:
        queue.enqueue("gone")

        report = await queue.run_once()

        assert report.dropped == ["gone"]
        assert queue.get("gone") is None
        assert report.errors["gone"] == SyncErrorKind.MISSING_RECORD.value


class TestOverlappingPasses:
    @pytest.mark.asyncio
    async def test_concurrent_passes_attempt_each_record_once(
        self, store: LocalRecordStore, clock: FakeClock, make_assessment
    ) -> None:
        remote = ConcurrentPutTracker(latency_seconds=0.05)
        queue = SyncQueue(store, remote, clock=clock)
        record_id = store.append(make_assessment())
        queue.enqueue(record_id)

        first, second = await asyncio.gather(queue.run_once(), queue.run_once())

        assert remote.put_calls == [record_id]
        assert remote.peak_per_record == 1
        assert first.synced + second.synced == [record_id]
        assert store.get(record_id).sync_state is SyncState.SYNCED

    @pytest.mark.asyncio
    async def test_parallelism_cap_spans_passes(
        self, store: LocalRecordStore, clock: FakeClock, make_assessment
    ) -> None:
        remote = ConcurrentPutTracker(latency_seconds=0.05)
        queue = SyncQueue(store, remote, config=SyncQueueConfig(parallelism=2), clock=clock)
        for minute in range(2):
            queue.enqueue(store.append(make_assessment(minutes=minute)))

        running = asyncio.create_task(queue.run_once())
        await asyncio.sleep(0.01)
        for minute in range(2, 4):
            queue.enqueue(store.append(make_assessment(minutes=minute)))
        second = await queue.run_once()
        first = await running

        assert len(first.synced) == 2
        assert len(second.synced) == 2
        assert remote.peak == 2

    @pytest.mark.asyncio
    async def test_cancelled_pass_releases_its_claims(
        self, store: LocalRecordStore, clock: FakeClock, make_assessment
    ) -> None:
        remote = ConcurrentPutTracker(latency_seconds=5.0)
        queue = SyncQueue(store, remote, clock=clock)
        record_id = store.append(make_assessment())
        queue.enqueue(record_id)

        running = asyncio.create_task(queue.run_once())
        await asyncio.sleep(0.01)
        assert store.get(record_id).sync_state is SyncState.SYNCING
        running.cancel()
        with pytest.raises(asyncio.CancelledError):
            await running

        assert queue.get(record_id).state is TaskState.PENDING
        assert store.get(record_id).sync_state is SyncState.UNSYNCED
        assert [t.record_id for t in queue.due_tasks()] == [record_id]


class TestUnexpectedErrors:
    @pytest.mark.asyncio
    async def test_unexpected_client_error_counts_as_failed_attempt(
        self, store: LocalRecordStore, clock: FakeClock, make_assessment
    ) -> None:
        record_id = store.append(make_assessment())
        other_id = store.append(make_assessment(minutes=1))
        queue = SyncQueue(store, MalformedResponseRemote(broken={record_id}), clock=clock)
        queue.enqueue(record_id)
        queue.enqueue(other_id)

        report = await queue.run_once()

        # The sibling delivery is not cancelled.
        assert report.synced == [other_id]
        assert report.failed == [record_id]
        task = queue.get(record_id)
        assert task.state is TaskState.FAILED
        assert task.attempts == 1
        assert task.last_error is SyncErrorKind.REMOTE_REJECTED
        assert store.get(record_id).sync_state is SyncState.UNSYNCED

        clock.advance(4)
        retry = await queue.run_once()
        assert retry.synced == [record_id]

    @pytest.mark.asyncio
    async def test_non_json_success_response_is_retried(
        self, store: LocalRecordStore, clock: FakeClock, make_assessment
    ) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="ok"))
        remote = HttpRemoteStore(
            "https://records.example.org/api", client=httpx.AsyncClient(transport=transport)
        )
        queue = SyncQueue(store, remote, clock=clock)
        record_id = store.append(make_assessment())
        queue.enqueue(record_id)

        async with remote:
            report = await queue.run_once()

        assert report.failed == [record_id]
        assert "not JSON" in report.errors[record_id]
        assert queue.get(record_id).state is TaskState.FAILED
        assert store.get(record_id).sync_state is SyncState.UNSYNCED
        clock.advance(10_000)
        assert [t.record_id for t in queue.due_tasks()] == [record_id]


class TestRestore:
    @pytest.mark.asyncio
    async def test_interrupted_sync_is_resent(
        self, queue: SyncQueue, store: LocalRecordStore, remote: InMemoryRemoteStore, make_assessment
    ) -> None:
        record_id = store.append(make_assessment())
        store.update_sync_state(record_id, SyncState.SYNCING)

        assert queue.restore() == 1
        assert store.get(record_id).sync_state is SyncState.UNSYNCED
        assert queue.get(record_id).state is TaskState.PENDING

        report = await queue.run_once()
        assert report.synced == [record_id]

    @pytest.mark.asyncio
    async def test_resend_after_lost_acknowledgement_is_idempotent(
        self, queue: SyncQueue, store: LocalRecordStore, remote: InMemoryRemoteStore, make_assessment
    ) -> None:
        record_id = store.append(make_assessment())
        # The server stored the upload but the device crashed before recording it.
        await remote.put(record_id, store.get(record_id).to_remote_body(), 0)
        queue.restore()

        report = await queue.run_once()

        assert report.synced == [record_id]
        assert store.get(record_id).version == 1
        assert remote.documents[record_id].version == 1


class TestConflictRouting:
    @pytest.mark.asyncio
    async def test_version_conflict_goes_to_resolver(
        self, queue: SyncQueue, store: LocalRecordStore, remote: InMemoryRemoteStore, make_assessment
    ) -> None:
        record_id = store.append(make_assessment(category=RiskCategory.LOW))
        local = store.get(record_id)
        edited = local.model_copy(
            update={"category": RiskCategory.HIGH, "updated_at": local.updated_at + timedelta(hours=1)}
        )
        remote.seed(
            RemoteDocument(
                record_id=record_id, version=3, updated_at=edited.updated_at, body=edited.to_remote_body()
            )
        )
        queue.enqueue(record_id)

        report = await queue.run_once()

        assert report.conflicts == [record_id]
        assert queue.get(record_id) is None
        record = store.get(record_id)
        assert record.sync_state is SyncState.CONFLICT
        assert record.category is RiskCategory.HIGH
        assert record.version == 3
        assert store.superseded(record_id)[0].category is RiskCategory.LOW
        assert store.conflict_winner(record_id) == "remote"
        # Resolved once, not retried blindly.
        assert remote.put_calls == [record_id]

    @pytest.mark.asyncio
    async def test_conflict_without_timestamp_is_abandoned(
        self, queue: SyncQueue, store: LocalRecordStore, remote: InMemoryRemoteStore, make_assessment
    ) -> None:
        record_id = store.append(make_assessment())
        local = store.get(record_id)
        legacy = local.model_copy(update={"updated_at": None, "category": RiskCategory.CRITICAL})
        remote.seed(RemoteDocument(record_id=record_id, version=2, body=legacy.to_remote_body()))
        queue.enqueue(record_id)

        report = await queue.run_once()

        assert report.abandoned == [record_id]
        assert "no timestamp" in report.errors[record_id]
        assert store.get(record_id).sync_state is SyncState.UNSYNCED
