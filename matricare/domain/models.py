"""
Domain models for maternal risk assessment.

These models represent the core business concepts and are framework-agnostic.
Everything that crosses a component boundary is an immutable pydantic model;
the record store is the only place that produces modified copies.
"""

import math
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Literal

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Metric(str, Enum):
    """Measurements a sample may carry. Declaration order is the original model slot order."""

    AGE = "age"
    GRAVIDA = "gravida"
    PARA = "para"
    LIVE_BIRTHS = "live_births"
    ABORTIONS = "abortions"
    CHILD_DEATHS = "child_deaths"
    SYSTOLIC_BP = "systolic_bp"
    DIASTOLIC_BP = "diastolic_bp"
    GLUCOSE = "glucose"
    BODY_TEMPERATURE = "body_temperature"
    PULSE_RATE = "pulse_rate"
    HEMOGLOBIN = "hemoglobin"
    RESPIRATION_RATE = "respiration_rate"
    HBA1C = "hba1c"
    WEIGHT = "weight"


class RiskCategory(str, Enum):
    """Closed set of risk levels, ordered by severity."""

    LOW = "LOW"
    MODERATE = "MODERATE"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    @classmethod
    def from_index(cls, index: int) -> "RiskCategory":
        """Map a model output index (LOW, MODERATE, HIGH, CRITICAL order) to a category."""
        return _BY_SEVERITY[index]

    def is_more_severe_than(self, other: "RiskCategory") -> bool:
        return self.severity > other.severity


_SEVERITY = {
    RiskCategory.LOW: 0,
    RiskCategory.MODERATE: 1,
    RiskCategory.HIGH: 2,
    RiskCategory.CRITICAL: 3,
}
_BY_SEVERITY = {severity: category for category, severity in _SEVERITY.items()}


class SyncState(str, Enum):
    """Replication state of a locally stored assessment."""

    UNSYNCED = "UNSYNCED"
    SYNCING = "SYNCING"
    SYNCED = "SYNCED"
    CONFLICT = "CONFLICT"


class TaskState(str, Enum):
    PENDING = "PENDING"
    SYNCING = "SYNCING"
    SYNCED = "SYNCED"
    FAILED = "FAILED"
    ABANDONED = "ABANDONED"


class SyncErrorKind(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    VERSION_CONFLICT = "version_conflict"
    REMOTE_REJECTED = "remote_rejected"
    MISSING_RECORD = "missing_record"


class Measurement(BaseModel):
    """A single numeric reading with its unit, as entered by the user."""

    model_config = ConfigDict(frozen=True)

    value: float
    unit: str

    @field_validator("value")
    @classmethod
    def value_must_be_finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("measurement value must be finite")
        if v < 0:
            raise ValueError("measurement value must be non-negative")
        return v


class VitalsSample(BaseModel):
    """Partially populated set of measurements taken at one point in time."""

    model_config = ConfigDict(frozen=True)

    sample_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    taken_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    measurements: dict[Metric, Measurement] = Field(default_factory=dict)

    @field_validator("taken_at")
    @classmethod
    def taken_at_must_be_aware(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("taken_at must be timezone-aware")
        return v.astimezone(UTC)

    def value_of(self, metric: Metric) -> float | None:
        measurement = self.measurements.get(metric)
        return measurement.value if measurement is not None else None


class Baseline(BaseModel):
    """Last-known canonical values per metric, used for carry-forward imputation."""

    model_config = ConfigDict(frozen=True)

    values: dict[Metric, float] = Field(default_factory=dict)
    observed_at: datetime | None = None

    @classmethod
    def from_samples(cls, samples: list[VitalsSample]) -> "Baseline":
        """Carry the most recent value of each metric forward. Samples must be canonical."""
        values: dict[Metric, float] = {}
        observed_at = None
        for sample in sorted(samples, key=lambda s: s.taken_at):
            for metric, measurement in sample.measurements.items():
                values[metric] = measurement.value
            observed_at = sample.taken_at
        return cls(values=values, observed_at=observed_at)


class FeatureVector(BaseModel):
    """Fixed-length model input. Bit i of imputed_mask is set when slot i was imputed."""

    model_config = ConfigDict(frozen=True)

    values: tuple[float, ...]
    slot_names: tuple[str, ...]
    imputed_mask: int = Field(default=0, ge=0)
    model_version: str

    @model_validator(mode="after")
    def slots_match_values(self) -> "FeatureVector":
        if len(self.values) != len(self.slot_names):
            raise ValueError("values and slot_names must have the same length")
        if self.imputed_mask >> len(self.values):
            raise ValueError("imputed_mask flags slots beyond the vector length")
        return self

    def __len__(self) -> int:
        return len(self.values)

    @property
    def imputed_slots(self) -> list[int]:
        return [i for i in range(len(self.values)) if self.imputed_mask & (1 << i)]

    @property
    def imputed_count(self) -> int:
        return bin(self.imputed_mask).count("1")

    def is_imputed(self, slot: int) -> bool:
        return bool(self.imputed_mask & (1 << slot))

    def to_array(self) -> np.ndarray:
        return np.asarray(self.values, dtype=np.float32)

    def to_bytes(self) -> bytes:
        return self.to_array().tobytes()


class RawOutput(BaseModel):
    """Probabilities in LOW, MODERATE, HIGH, CRITICAL order, straight from the model."""

    model_config = ConfigDict(frozen=True)

    probabilities: tuple[float, ...]
    model_version: str
    elapsed_seconds: float = Field(default=0.0, ge=0.0)


class RiskAssessmentCore(BaseModel):
    """Classifier verdict before it is bound to a record."""

    model_config = ConfigDict(frozen=True)

    category: RiskCategory
    confidence: float = Field(ge=0.0, le=1.0)
    base_confidence: float = Field(ge=0.0, le=1.0)
    probabilities: tuple[float, ...]
    imputed_count: int = Field(default=0, ge=0)


class RiskAssessment(BaseModel):
    """Locally owned assessment record. Only sync fields change after creation."""

    model_config = ConfigDict(frozen=True)

    record_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    sample: VitalsSample
    feature_vector: FeatureVector
    category: RiskCategory
    confidence: float = Field(ge=0.0, le=1.0)
    model_version: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    # Last-write timestamp used for conflict resolution. Copies written by older
    # clients may lack it.
    updated_at: datetime | None = None
    version: int = Field(default=0, ge=0, description="Remote version counter, 0 = never synced")
    sync_state: SyncState = SyncState.UNSYNCED
    recommendations: list[str] = Field(default_factory=list)

    def with_sync_state(self, state: SyncState, version: int | None = None) -> "RiskAssessment":
        update: dict[str, object] = {"sync_state": state}
        if version is not None:
            update["version"] = version
        return self.model_copy(update=update)

    def to_remote_body(self) -> dict:
        """Payload replicated to the remote store. Sync bookkeeping stays local."""
        return self.model_dump(mode="json", exclude={"sync_state", "version"})

    @classmethod
    def from_remote_body(
        cls, body: dict, version: int, sync_state: SyncState = SyncState.SYNCED
    ) -> "RiskAssessment":
        return cls.model_validate({**body, "version": version, "sync_state": sync_state})


class SyncTask(BaseModel):
    """Delivery bookkeeping for one record. Owned by the sync queue."""

    record_id: str
    state: TaskState = TaskState.PENDING
    attempts: int = Field(default=0, ge=0)
    next_retry_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    last_error: SyncErrorKind | None = None

    @property
    def is_live(self) -> bool:
        return self.state in (TaskState.PENDING, TaskState.SYNCING, TaskState.FAILED)


class RemoteDocument(BaseModel):
    """Server-authoritative copy of an assessment."""

    model_config = ConfigDict(frozen=True)

    record_id: str
    version: int = Field(ge=1)
    updated_at: datetime | None = None
    body: dict

    def to_assessment(self) -> RiskAssessment:
        return RiskAssessment.from_remote_body(self.body, version=self.version)


class PutResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["ok", "version_conflict"]
    version: int = Field(ge=0)
    current: RemoteDocument | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"
