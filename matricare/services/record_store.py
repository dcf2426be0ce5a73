"""
Durable local store of risk assessments.

Offline-first: every assessment lands here before anything touches the
network. The store is an append-only log of operations replayed into an
in-memory view with two secondary indexes (sync state, creation time).

Mutation rules:
- append() creates a record; all payload fields are immutable afterwards
- update_sync_state() changes sync bookkeeping only
- replace_on_conflict_resolution() swaps the payload after a conflict and
  keeps the losing copy as a superseded record
Writes go through a single lock (one logical writer); reads work on a snapshot.
"""

import threading
from bisect import bisect_left, insort
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from matricare.domain.errors import DuplicateRecordError, RecordNotFoundError
from matricare.domain.models import Baseline, RiskAssessment, RiskCategory, SyncState
from matricare.services.append_log import AppendLog
from matricare.services.common import logger

LOG_FILE = "assessments.log"

WinnerSide = Literal["local", "remote"]


class RecordFilter(BaseModel):
    """Query over the timeline index. ``end`` is exclusive."""

    model_config = ConfigDict(frozen=True)

    start: datetime | None = None
    end: datetime | None = None
    sync_states: frozenset[SyncState] | None = None
    categories: frozenset[RiskCategory] | None = None
    limit: int | None = Field(default=None, gt=0)
    newest_first: bool = False

    def matches(self, record: RiskAssessment) -> bool:
        if self.sync_states is not None and record.sync_state not in self.sync_states:
            return False
        if self.categories is not None and record.category not in self.categories:
            return False
        return True


class LocalRecordStore:
    def __init__(self, directory: str | Path, fsync: bool = True) -> None:
        self.directory = Path(directory)
        self.logger = logger.bind(component="record_store", directory=str(self.directory))
        self._log = AppendLog(self.directory / LOG_FILE, fsync=fsync)
        self._lock = threading.Lock()
        self._records: dict[str, RiskAssessment] = {}
        self._timeline: list[tuple[datetime, str]] = []
        self._by_state: dict[SyncState, set[str]] = {state: set() for state in SyncState}
        self._superseded: dict[str, list[RiskAssessment]] = {}
        self._winners: dict[str, WinnerSide] = {}
        self._opened = False

    # Lifecycle

    def open(self) -> "LocalRecordStore":
        with self._lock:
            entries = self._log.open()
            for entry in entries:
                self._apply_replayed(entry)
            self._opened = True
        self.logger.info(
            "record_store_opened",
            records=len(self._records),
            quarantined=len(self._log.quarantined),
            torn_bytes=self._log.truncated_bytes,
        )
        return self

    def close(self) -> None:
        with self._lock:
            self._log.close()
            self._opened = False

    def __enter__(self) -> "LocalRecordStore":
        return self.open()

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def quarantined_count(self) -> int:
        return len(self._log.quarantined)

    # Writes

    def append(self, assessment: RiskAssessment) -> str:
        """Durably store a new assessment. Returns only after the write is fsynced."""
        with self._lock:
            self._require_open()
            if assessment.record_id in self._records:
                raise DuplicateRecordError(assessment.record_id)
            if assessment.updated_at is None:
                assessment = assessment.model_copy(update={"updated_at": assessment.created_at})
            self._log.append({"op": "append", "record": assessment.model_dump(mode="json")})
            self._insert(assessment)
        self.logger.info(
            "assessment_appended",
            record_id=assessment.record_id,
            category=assessment.category.value,
        )
        return assessment.record_id

    def update_sync_state(
        self, record_id: str, state: SyncState, version: int | None = None
    ) -> RiskAssessment:
        with self._lock:
            updated = self._update_sync_state_locked(record_id, state, version)
        self.logger.debug("sync_state_updated", record_id=record_id, state=state.value)
        return updated

    def replace_on_conflict_resolution(
        self,
        record_id: str,
        resolved: RiskAssessment,
        superseded: RiskAssessment,
        winner: WinnerSide,
    ) -> RiskAssessment:
        """Store the winning payload in CONFLICT state and keep the losing one alongside."""
        if resolved.record_id != record_id or superseded.record_id != record_id:
            raise ValueError("resolution payloads must carry the record id they resolve")
        with self._lock:
            self._require_open()
            current = self._get_locked(record_id)
            resolved = resolved.with_sync_state(SyncState.CONFLICT)
            self._log.append(
                {
                    "op": "resolve",
                    "record_id": record_id,
                    "winner": winner,
                    "resolved": resolved.model_dump(mode="json"),
                    "superseded": superseded.model_dump(mode="json"),
                }
            )
            self._replace(current, resolved)
            self._superseded.setdefault(record_id, []).append(superseded)
            self._winners[record_id] = winner
        self.logger.info("conflict_resolution_stored", record_id=record_id, winner=winner)
        return resolved

    def acknowledge_conflict(self, record_id: str) -> RiskAssessment:
        """Close a CONFLICT: SYNCED if the remote copy won, UNSYNCED if the local copy must be pushed."""
        with self._lock:
            record = self._get_locked(record_id)
            if record.sync_state is not SyncState.CONFLICT:
                raise ValueError(f"Record {record_id} is not in conflict")
            winner = self._winners.get(record_id, "remote")
            next_state = SyncState.SYNCED if winner == "remote" else SyncState.UNSYNCED
            updated = self._update_sync_state_locked(record_id, next_state, None)
        self.logger.info("conflict_acknowledged", record_id=record_id, state=next_state.value)
        return updated

    # Reads

    def get(self, record_id: str) -> RiskAssessment:
        with self._lock:
            return self._get_locked(record_id)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def superseded(self, record_id: str) -> list[RiskAssessment]:
        with self._lock:
            return list(self._superseded.get(record_id, []))

    def conflict_winner(self, record_id: str) -> WinnerSide | None:
        return self._winners.get(record_id)

    def ids_in_state(self, *states: SyncState) -> list[str]:
        with self._lock:
            ids = set().union(*(self._by_state[s] for s in states))
            return sorted(ids, key=lambda rid: self._records[rid].created_at)

    def query(self, flt: RecordFilter | None = None) -> Iterator[RiskAssessment]:
        """
        Lazily yield records ordered by creation time.

        The snapshot is taken when query() is called; each call starts over.
        """
        flt = flt or RecordFilter()
        with self._lock:
            lo = 0
            hi = len(self._timeline)
            if flt.start is not None:
                lo = bisect_left(self._timeline, flt.start, key=lambda item: item[0])
            if flt.end is not None:
                hi = bisect_left(self._timeline, flt.end, key=lambda item: item[0])
            window = self._timeline[lo:hi]
            snapshot = [self._records[rid] for _, rid in window]
        if flt.newest_first:
            snapshot.reverse()
        return self._iterate(snapshot, flt)

    @staticmethod
    def _iterate(snapshot: list[RiskAssessment], flt: RecordFilter) -> Iterator[RiskAssessment]:
        emitted = 0
        for record in snapshot:
            if not flt.matches(record):
                continue
            yield record
            emitted += 1
            if flt.limit is not None and emitted >= flt.limit:
                return

    def latest_baseline(self, window: int = 20) -> Baseline:
        """Carry-forward baseline from the most recent stored samples."""
        recent = list(self.query(RecordFilter(limit=window, newest_first=True)))
        return Baseline.from_samples([r.sample for r in recent])

    # Internals

    def _require_open(self) -> None:
        if not self._opened:
            raise RuntimeError("Record store is not open")

    def _update_sync_state_locked(
        self, record_id: str, state: SyncState, version: int | None
    ) -> RiskAssessment:
        self._require_open()
        current = self._get_locked(record_id)
        entry: dict[str, Any] = {
            "op": "sync_state",
            "record_id": record_id,
            "state": state.value,
            "at": datetime.now(UTC).isoformat(),
        }
        if version is not None:
            entry["version"] = version
        self._log.append(entry)
        updated = current.with_sync_state(state, version=version)
        self._replace(current, updated)
        if state is not SyncState.CONFLICT:
            self._winners.pop(record_id, None)
        return updated

    def _get_locked(self, record_id: str) -> RiskAssessment:
        try:
            return self._records[record_id]
        except KeyError:
            raise RecordNotFoundError(record_id) from None

    def _insert(self, record: RiskAssessment) -> None:
        self._records[record.record_id] = record
        insort(self._timeline, (record.created_at, record.record_id))
        self._by_state[record.sync_state].add(record.record_id)

    def _replace(self, current: RiskAssessment, updated: RiskAssessment) -> None:
        self._by_state[current.sync_state].discard(current.record_id)
        self._records[updated.record_id] = updated
        self._by_state[updated.sync_state].add(updated.record_id)

    def _apply_replayed(self, entry: dict[str, Any]) -> None:
        op = entry.get("op")
        try:
            if op == "append":
                record = RiskAssessment.model_validate(entry["record"])
                if record.record_id in self._records:
                    # Replayed duplicate of an append that already landed.
                    return
                self._insert(record)
            elif op == "sync_state":
                current = self._records[entry["record_id"]]
                state = SyncState(entry["state"])
                self._replace(current, current.with_sync_state(state, version=entry.get("version")))
                if state is not SyncState.CONFLICT:
                    self._winners.pop(current.record_id, None)
            elif op == "resolve":
                current = self._records[entry["record_id"]]
                resolved = RiskAssessment.model_validate(entry["resolved"])
                superseded = RiskAssessment.model_validate(entry["superseded"])
                self._replace(current, resolved)
                self._superseded.setdefault(current.record_id, []).append(superseded)
                self._winners[current.record_id] = entry["winner"]
            else:
                raise ValueError(f"unknown op {op!r}")
        except (KeyError, ValueError, ValidationError) as e:
            # Entry parsed but does not make sense against the current view.
            self.logger.warning("log_entry_skipped", op=op, error=str(e))
