"""
Retrying delivery of local assessments to the remote store.

Per-task state machine:

    PENDING -> SYNCING -> SYNCED (task destroyed)
                       -> FAILED(n) -> PENDING after min(base * 2^n, cap)
                       -> ABANDONED after max_attempts consecutive failures

Version conflicts are not retried blindly; they go to the ConflictResolver.
Only remote calls suspend. All bookkeeping below is synchronous, so the
queue is safe to drive from a single event loop without further locking.
A pass claims its due tasks before its first await, so overlapping passes
never attempt the same record, and one semaphore caps remote calls for the
whole queue.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

from pydantic import BaseModel, Field

from matricare.adapters.remote_store import RemoteDocumentStore
from matricare.domain.errors import (
    AmbiguousConflictError,
    RecordNotFoundError,
    RemoteRejectedError,
    RemoteUnavailableError,
    SyncQueueFullError,
)
from matricare.domain.models import (
    PutResult,
    RiskAssessment,
    SyncErrorKind,
    SyncState,
    SyncTask,
    TaskState,
)
from matricare.services.append_log import AppendLog
from matricare.services.common import Result, logger
from matricare.services.conflicts import ConflictResolver
from matricare.services.record_store import LocalRecordStore


class SyncQueueConfig(BaseModel):
    """Backoff and backpressure settings."""

    base_delay_seconds: float = Field(default=2.0, gt=0.0)
    max_delay_seconds: float = Field(default=300.0, gt=0.0)
    max_attempts: int = Field(default=5, gt=0)
    parallelism: int = Field(default=4, gt=0, description="Concurrent remote calls")
    max_queue_depth: int = Field(default=1000, gt=0)
    attempt_timeout_seconds: float = Field(default=15.0, gt=0.0)


@dataclass(frozen=True)
class BackoffPolicy:
    base_seconds: float
    max_seconds: float
    max_attempts: int

    @classmethod
    def from_config(cls, config: SyncQueueConfig) -> "BackoffPolicy":
        return cls(config.base_delay_seconds, config.max_delay_seconds, config.max_attempts)

    def delay(self, failed_attempt: int) -> timedelta:
        """Delay after the ``failed_attempt``-th consecutive failure: base * 2^n, capped."""
        seconds = self.base_seconds * (2 ** min(failed_attempt, 62))
        return timedelta(seconds=min(seconds, self.max_seconds))

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts


@dataclass
class SyncReport:
    synced: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    abandoned: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def attempted(self) -> int:
        return len(self.synced) + len(self.failed) + len(self.abandoned) + len(self.conflicts)


class SyncQueue:
    def __init__(
        self,
        store: LocalRecordStore,
        remote: RemoteDocumentStore,
        resolver: ConflictResolver | None = None,
        config: SyncQueueConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        journal_path: str | Path | None = None,
        on_abandoned: Callable[[SyncTask], None] | None = None,
    ) -> None:
        self.store = store
        self.remote = remote
        self.resolver = resolver or ConflictResolver()
        self.config = config or SyncQueueConfig()
        self.backoff = BackoffPolicy.from_config(self.config)
        self.clock = clock or (lambda: datetime.now(UTC))
        self.on_abandoned = on_abandoned
        self.logger = logger.bind(component="sync_queue")
        self.tasks: dict[str, SyncTask] = {}
        self._in_flight: set[str] = set()
        self._semaphore = asyncio.Semaphore(self.config.parallelism)
        self._journal = AppendLog(journal_path) if journal_path is not None else None
        self._abandoned_ids: set[str] = set()

    # Lifecycle

    def open(self) -> "SyncQueue":
        if self._journal is not None:
            for entry in self._journal.open():
                record_id = entry.get("record_id")
                if entry.get("event") == "abandoned":
                    self._abandoned_ids.add(record_id)
                elif entry.get("event") == "cleared":
                    self._abandoned_ids.discard(record_id)
        return self

    def close(self) -> None:
        if self._journal is not None:
            self._journal.close()

    def restore(self) -> int:
        """
        Rebuild tasks after a restart.

        Nothing in flight survives a crash: SYNCING records go back to UNSYNCED
        and are resent with the same record id and expected version.
        """
        for record_id in self.store.ids_in_state(SyncState.SYNCING):
            self.store.update_sync_state(record_id, SyncState.UNSYNCED)

        restored = 0
        for record_id in self.store.ids_in_state(SyncState.UNSYNCED):
            if record_id in self._abandoned_ids:
                self.tasks[record_id] = SyncTask(
                    record_id=record_id,
                    state=TaskState.ABANDONED,
                    attempts=self.config.max_attempts,
                    next_retry_at=self.clock(),
                )
                continue
            try:
                if self.enqueue(record_id):
                    restored += 1
            except SyncQueueFullError as e:
                # Remaining records stay UNSYNCED and are picked up on the next restore.
                self.logger.warning("sync_queue_full_on_restore", depth=e.depth)
                break
        self.logger.info("sync_queue_restored", pending=restored, abandoned=len(self._abandoned_ids))
        return restored

    # Bookkeeping

    def enqueue(self, record_id: str) -> bool:
        """Add a PENDING task. Returns False if the record already has a task (no-op)."""
        existing = self.tasks.get(record_id)
        if existing is not None or record_id in self._in_flight:
            return False
        if len(self.tasks) >= self.config.max_queue_depth:
            raise SyncQueueFullError(len(self.tasks))
        self.tasks[record_id] = SyncTask(record_id=record_id, next_retry_at=self.clock())
        self.logger.debug("sync_task_enqueued", record_id=record_id)
        return True

    def discard(self, record_id: str) -> bool:
        """Explicit user discard. The local record stays; only delivery stops."""
        task = self.tasks.pop(record_id, None)
        if task is None:
            return False
        if record_id in self._abandoned_ids:
            self._journal_event(record_id, "cleared")
        self.logger.info("sync_task_discarded", record_id=record_id, state=task.state.value)
        return True

    def retry_abandoned(self, record_id: str) -> bool:
        """Manual intervention: give an ABANDONED task a fresh set of attempts."""
        task = self.tasks.get(record_id)
        if task is None or task.state is not TaskState.ABANDONED:
            return False
        self._journal_event(record_id, "cleared")
        self.tasks[record_id] = SyncTask(record_id=record_id, next_retry_at=self.clock())
        self.logger.info("abandoned_task_rescheduled", record_id=record_id)
        return True

    def get(self, record_id: str) -> SyncTask | None:
        return self.tasks.get(record_id)

    def abandoned(self) -> list[SyncTask]:
        return [t for t in self.tasks.values() if t.state is TaskState.ABANDONED]

    def pending_count(self) -> int:
        return sum(1 for t in self.tasks.values() if t.is_live)

    def due_tasks(self, now: datetime | None = None) -> list[SyncTask]:
        now = now or self.clock()
        due = []
        for task in self.tasks.values():
            if task.record_id in self._in_flight:
                continue
            if task.state in (TaskState.PENDING, TaskState.FAILED) and task.next_retry_at <= now:
                if task.state is TaskState.FAILED:
                    task.state = TaskState.PENDING
                due.append(task)
        return sorted(due, key=lambda t: t.next_retry_at)

    # Delivery

    async def run_once(self) -> SyncReport:
        """Attempt every due task, at most ``parallelism`` remote calls at a time across passes."""
        report = SyncReport()
        # Claimed before the first suspension point, so an overlapping pass skips them.
        claimed = self._claim(self.due_tasks(), report)
        if not claimed:
            return report

        try:
            async with asyncio.TaskGroup() as task_group:
                for task, record in claimed:
                    task_group.create_task(self._deliver(task, record, report))
        finally:
            for task, _ in claimed:
                if task.record_id in self._in_flight:
                    self._release(task)

        self.logger.info(
            "sync_pass_completed",
            synced=len(report.synced),
            failed=len(report.failed),
            abandoned=len(report.abandoned),
            conflicts=len(report.conflicts),
        )
        return report

    def _claim(
        self, due: list[SyncTask], report: SyncReport
    ) -> list[tuple[SyncTask, RiskAssessment]]:
        claimed = []
        for task in due:
            try:
                record = self.store.get(task.record_id)
            except RecordNotFoundError:
                task.last_error = SyncErrorKind.MISSING_RECORD
                self.tasks.pop(task.record_id, None)
                report.dropped.append(task.record_id)
                report.errors[task.record_id] = task.last_error.value
                self.logger.warning(
                    "sync_record_missing", record_id=task.record_id, error_kind=task.last_error.value
                )
                continue
            self._in_flight.add(task.record_id)
            task.state = TaskState.SYNCING
            self.store.update_sync_state(task.record_id, SyncState.SYNCING)
            claimed.append((task, record))
        return claimed

    def _release(self, task: SyncTask) -> None:
        """Undo a claim whose attempt never finished (cancelled pass)."""
        self._in_flight.discard(task.record_id)
        task.state = TaskState.PENDING
        self.store.update_sync_state(task.record_id, SyncState.UNSYNCED)

    async def _deliver(self, task: SyncTask, record: RiskAssessment, report: SyncReport) -> None:
        try:
            async with self._semaphore:
                result = await self._attempt(record)
                if result.is_err():
                    self._record_failure(task, result.unwrap_err(), report)
                elif result.unwrap().ok:
                    self._mark_synced(task, result.unwrap().version, report)
                else:
                    await self._handle_conflict(task, record, result.unwrap(), report)
        except Exception as e:
            self.logger.exception("sync_attempt_crashed", record_id=task.record_id)
            self._record_failure(task, e, report)
        self._in_flight.discard(task.record_id)

    async def _attempt(self, record: RiskAssessment) -> Result[PutResult, Exception]:
        try:
            put = await asyncio.wait_for(
                self.remote.put(record.record_id, record.to_remote_body(), record.version),
                timeout=self.config.attempt_timeout_seconds,
            )
        except (TimeoutError, RemoteUnavailableError, RemoteRejectedError) as e:
            return Result.err(e)
        return Result.ok(put)

    def _mark_synced(self, task: SyncTask, version: int, report: SyncReport) -> None:
        self.store.update_sync_state(task.record_id, SyncState.SYNCED, version=version)
        task.state = TaskState.SYNCED
        self.tasks.pop(task.record_id, None)
        report.synced.append(task.record_id)
        self.logger.info("record_synced", record_id=task.record_id, version=version)

    def _record_failure(self, task: SyncTask, error: Exception, report: SyncReport) -> None:
        task.attempts += 1
        task.last_error = _error_kind(error)
        self.store.update_sync_state(task.record_id, SyncState.UNSYNCED)
        report.errors[task.record_id] = str(error) or type(error).__name__

        if self.backoff.exhausted(task.attempts):
            self._abandon(task, report)
            return

        delay = self.backoff.delay(task.attempts)
        task.state = TaskState.FAILED
        task.next_retry_at = self.clock() + delay
        report.failed.append(task.record_id)
        self.logger.warning(
            "sync_attempt_failed",
            record_id=task.record_id,
            attempt=task.attempts,
            error_kind=task.last_error.value,
            retry_in_seconds=delay.total_seconds(),
        )

    def _abandon(self, task: SyncTask, report: SyncReport) -> None:
        task.state = TaskState.ABANDONED
        self._journal_event(task.record_id, "abandoned")
        report.abandoned.append(task.record_id)
        self.logger.error(
            "sync_task_abandoned",
            record_id=task.record_id,
            attempts=task.attempts,
            error_kind=task.last_error.value if task.last_error else None,
        )
        if self.on_abandoned is not None:
            self.on_abandoned(task)

    async def _handle_conflict(
        self, task: SyncTask, record: RiskAssessment, put: PutResult, report: SyncReport
    ) -> None:
        task.last_error = SyncErrorKind.VERSION_CONFLICT
        current = put.current
        if current is None:
            try:
                current = await asyncio.wait_for(
                    self.remote.get(record.record_id),
                    timeout=self.config.attempt_timeout_seconds,
                )
            except (TimeoutError, RemoteUnavailableError, RemoteRejectedError) as e:
                self._record_failure(task, e, report)
                return
        if current is None:
            # Server reported a conflict but holds nothing; resend from scratch.
            self._record_failure(task, RemoteRejectedError(409, "conflict on missing document"), report)
            return
        if self.resolver.same_payload(record, current):
            # Our earlier upload landed but its acknowledgement was lost.
            self._mark_synced(task, current.version, report)
            return

        try:
            resolution = self.resolver.resolve(record, current)
        except AmbiguousConflictError as e:
            self.store.update_sync_state(task.record_id, SyncState.UNSYNCED)
            report.errors[task.record_id] = str(e)
            self._abandon(task, report)
            return

        self.store.replace_on_conflict_resolution(
            task.record_id,
            resolved=resolution.winner,
            superseded=resolution.loser,
            winner=resolution.winner_side,
        )
        self.tasks.pop(task.record_id, None)
        report.conflicts.append(task.record_id)

    def _journal_event(self, record_id: str, event: str) -> None:
        if event == "abandoned":
            self._abandoned_ids.add(record_id)
        else:
            self._abandoned_ids.discard(record_id)
        if self._journal is not None:
            self._journal.append(
                {"record_id": record_id, "event": event, "at": self.clock().isoformat()}
            )


def _error_kind(error: Exception) -> SyncErrorKind:
    if isinstance(error, TimeoutError):
        return SyncErrorKind.TIMEOUT
    if isinstance(error, RemoteUnavailableError):
        return SyncErrorKind.NETWORK
    return SyncErrorKind.REMOTE_REJECTED
