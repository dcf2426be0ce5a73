"""
Risk assessment service: the end-to-end offline-first pipeline.

    vitals -> features -> inference -> classification -> durable local write
           -> sync queue -> remote store -> conflict resolution on pull

Architecture pattern: one service object owning every scoped resource
(record store, loaded model, sync queue, HTTP client) for the lifetime of a
session, with a circuit breaker turning repeated model load failures into a
"feature unavailable" signal instead of a crash loop.
"""

import asyncio
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from matricare.adapters.remote_store import HttpRemoteStore, RemoteDocumentStore
from matricare.config import AppConfig, get_config
from matricare.domain.errors import (
    AmbiguousConflictError,
    FeatureUnavailableError,
    ModelLoadError,
    RemoteRejectedError,
    RemoteUnavailableError,
    SyncQueueFullError,
)
from matricare.domain.models import (
    Baseline,
    Metric,
    RiskAssessment,
    SyncState,
    SyncTask,
    VitalsSample,
)
from matricare.domain.units import canonicalize
from matricare.services.classifier import RiskClassifier
from matricare.services.common import (
    CancellationToken,
    CircuitBreakerState,
    configure_logging,
    logger,
)
from matricare.services.conflicts import ConflictResolver
from matricare.services.features import FeatureVectorBuilder
from matricare.services.inference import InferenceInvoker, ModelBundle
from matricare.services.record_store import LocalRecordStore
from matricare.services.reporting import TrendPoint, recommendations, trend_series
from matricare.services.sync_queue import SyncQueue, SyncReport

SYNC_JOURNAL_FILE = "sync_journal.log"


@dataclass(frozen=True)
class ActiveModel:
    """Builder and invoker for one model version. Swapped as a unit."""

    bundle: ModelBundle
    builder: FeatureVectorBuilder
    invoker: InferenceInvoker


@dataclass
class PullReport:
    checked: int = 0
    conflicts: list[str] = field(default_factory=list)
    ambiguous: dict[str, str] = field(default_factory=dict)
    unreachable: bool = False


class RiskAssessmentService:
    """
    Main service that orchestrates the complete assessment pipeline.

    Use ``async with service.session():`` to acquire resources; everything is
    released on exit even when a call was abandoned mid-flight.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        remote: RemoteDocumentStore | None = None,
        bundle_loader: Callable[[Path], ModelBundle] = ModelBundle.load,
        on_abandoned: Callable[[SyncTask], None] | None = None,
    ) -> None:
        self.config = config or get_config()
        configure_logging(self.config.logging.level, self.config.logging.format)
        self.logger = logger.bind(component="risk_assessment_service")
        self.bundle_loader = bundle_loader
        self.store = LocalRecordStore(self.config.storage.data_dir, fsync=self.config.storage.fsync)
        self.classifier = RiskClassifier(self.config.classifier)
        self.resolver = ConflictResolver()
        self.model_breaker = CircuitBreakerState(
            failure_threshold=self.config.model.load_failure_threshold,
            recovery_timeout=self.config.model.load_retry_after_seconds,
        )

        self._owns_remote = False
        if remote is None and self.config.remote.base_url is not None:
            remote = HttpRemoteStore(
                self.config.remote.base_url, timeout_seconds=self.config.remote.timeout_seconds
            )
            self._owns_remote = True
        self.remote = remote
        self.queue: SyncQueue | None = None
        if remote is not None:
            self.queue = SyncQueue(
                self.store,
                remote,
                resolver=self.resolver,
                config=self.config.sync,
                journal_path=self.config.storage.data_dir / SYNC_JOURNAL_FILE,
                on_abandoned=on_abandoned,
            )

        self._active: ActiveModel | None = None
        self._model_lock = asyncio.Lock()

    # Lifecycle

    @asynccontextmanager
    async def session(self) -> AsyncIterator["RiskAssessmentService"]:
        self.store.open()
        if self.queue is not None:
            self.queue.open()
            self.queue.restore()
        try:
            try:
                await self._ensure_model()
            except (ModelLoadError, FeatureUnavailableError) as e:
                # Sync and history stay usable without a model.
                self.logger.warning("session_started_without_model", error=str(e))
            yield self
        finally:
            active, self._active = self._active, None
            if active is not None:
                await active.invoker.close()
            if self.queue is not None:
                self.queue.close()
            if self._owns_remote and isinstance(self.remote, HttpRemoteStore):
                await self.remote.close()
            self.store.close()
            self.logger.info("session_closed")

    @property
    def model_available(self) -> bool:
        return self.model_breaker.state != "open"

    @property
    def model_version(self) -> str | None:
        return self._active.bundle.model_version if self._active is not None else None

    async def _ensure_model(self) -> ActiveModel:
        async with self._model_lock:
            if self._active is not None:
                return self._active
            if not self.model_breaker.can_execute():
                raise FeatureUnavailableError("Risk assessment is unavailable: model failed to load")
            try:
                bundle = await asyncio.to_thread(self.bundle_loader, self.config.model.bundle_path)
            except ModelLoadError:
                self.model_breaker.record_failure()
                if self.model_breaker.state == "open":
                    self.logger.error(
                        "model_degraded_mode",
                        failures=self.model_breaker.failure_count,
                        retry_after_seconds=self.model_breaker.recovery_timeout,
                    )
                raise
            self.model_breaker.record_success()
            self._active = await self._activate(bundle)
            return self._active

    async def _activate(self, bundle: ModelBundle) -> ActiveModel:
        invoker = InferenceInvoker(bundle, timeout_seconds=self.config.model.inference_timeout_seconds)
        await invoker.__aenter__()
        return ActiveModel(bundle=bundle, builder=FeatureVectorBuilder(bundle.manifest), invoker=invoker)

    async def swap_model(self, bundle: ModelBundle | str | Path) -> str:
        """
        Replace the active model and its normalization constants in one step.

        Calls already running keep the model they started with; the old
        invoker is closed once they have drained.
        """
        if not isinstance(bundle, ModelBundle):
            bundle = await asyncio.to_thread(self.bundle_loader, Path(bundle))
        new = await self._activate(bundle)
        async with self._model_lock:
            old, self._active = self._active, new
        self.model_breaker.record_success()
        self.logger.info(
            "model_swapped",
            old_version=old.bundle.model_version if old else None,
            new_version=bundle.model_version,
        )
        if old is not None:
            await old.invoker.close(drain=True)
        return bundle.model_version

    # Assessment

    async def assess(
        self,
        sample: VitalsSample,
        baseline: Baseline | None = None,
        cancel: CancellationToken | None = None,
    ) -> RiskAssessment:
        """Classify a sample, store the result durably and queue it for sync."""
        active = await self._ensure_model()
        canonical = canonicalize(sample)
        if baseline is None:
            baseline = self.store.latest_baseline(self.config.storage.baseline_window)

        vector = active.builder.build(canonical, baseline)
        raw = await active.invoker.infer(vector, cancel)
        verdict = self.classifier.classify(raw, vector.imputed_mask)

        # Last point where abandoning leaves no trace.
        if cancel is not None:
            cancel.raise_if_cancelled()

        assessment = RiskAssessment(
            sample=canonical,
            feature_vector=vector,
            category=verdict.category,
            confidence=verdict.confidence,
            model_version=active.bundle.model_version,
            recommendations=recommendations(verdict.category, canonical),
        )
        record_id = self.store.append(assessment)
        self._enqueue(record_id)

        self.logger.info(
            "assessment_created",
            record_id=record_id,
            category=verdict.category.value,
            confidence=round(verdict.confidence, 4),
            imputed_slots=verdict.imputed_count,
            model_version=active.bundle.model_version,
        )
        return self.store.get(record_id)

    def _enqueue(self, record_id: str) -> None:
        if self.queue is None:
            return
        try:
            self.queue.enqueue(record_id)
        except SyncQueueFullError as e:
            # The record is durable and UNSYNCED; restore() picks it up later.
            self.logger.warning("sync_queue_full", record_id=record_id, depth=e.depth)

    # Sync

    async def sync_pending(self) -> SyncReport:
        if self.queue is None:
            return SyncReport()
        return await self.queue.run_once()

    async def sync_continuously(
        self, interval_seconds: float | None = None
    ) -> AsyncIterator[SyncReport]:
        """Yield one report per sync pass. Stops when the consumer breaks out."""
        interval = interval_seconds
        if interval is None:
            interval = self.config.remote.sync_interval_seconds
        while True:
            report = await self.sync_pending()
            yield report
            await asyncio.sleep(interval)

    async def pull(self, record_ids: Iterable[str] | None = None) -> PullReport:
        """Compare local records with the server and resolve divergent copies."""
        report = PullReport()
        if self.remote is None:
            return report
        if record_ids is None:
            record_ids = self.store.ids_in_state(SyncState.SYNCED, SyncState.UNSYNCED)

        for record_id in record_ids:
            local = self.store.get(record_id)
            if local.sync_state in (SyncState.SYNCING, SyncState.CONFLICT):
                continue
            try:
                remote = await asyncio.wait_for(
                    self.remote.get(record_id), timeout=self.config.remote.timeout_seconds
                )
            except (TimeoutError, RemoteUnavailableError, RemoteRejectedError) as e:
                self.logger.warning("pull_interrupted", record_id=record_id, error=str(e))
                report.unreachable = True
                break
            report.checked += 1
            if remote is None:
                continue
            if self.resolver.same_payload(local, remote):
                if local.sync_state is not SyncState.SYNCED or local.version != remote.version:
                    # Upload landed before a crash; only the local bookkeeping is behind.
                    if self.queue is not None:
                        self.queue.discard(record_id)
                    self.store.update_sync_state(record_id, SyncState.SYNCED, version=remote.version)
                continue
            if not self.resolver.needs_resolution(local, remote):
                continue

            try:
                resolution = self.resolver.resolve(local, remote)
            except AmbiguousConflictError as e:
                report.ambiguous[record_id] = str(e)
                continue

            if self.queue is not None:
                self.queue.discard(record_id)
            self.store.replace_on_conflict_resolution(
                record_id,
                resolved=resolution.winner,
                superseded=resolution.loser,
                winner=resolution.winner_side,
            )
            report.conflicts.append(record_id)

        self.logger.info(
            "pull_completed",
            checked=report.checked,
            conflicts=len(report.conflicts),
            ambiguous=len(report.ambiguous),
        )
        return report

    def acknowledge_conflict(self, record_id: str) -> RiskAssessment:
        """User accepted the resolution. A winning local copy is queued for upload."""
        record = self.store.acknowledge_conflict(record_id)
        if record.sync_state is SyncState.UNSYNCED:
            self._enqueue(record_id)
        return record

    def discard_sync(self, record_id: str) -> bool:
        return self.queue.discard(record_id) if self.queue is not None else False

    def retry_abandoned(self, record_id: str) -> bool:
        return self.queue.retry_abandoned(record_id) if self.queue is not None else False

    # Reporting

    def trend(
        self, metric: Metric, start: datetime | None = None, end: datetime | None = None
    ) -> list[TrendPoint]:
        return trend_series(self.store, metric, start=start, end=end)
