"""
Shared fixtures for the risk engine tests.

Fakes are kept small and behave like the real collaborators: the fake model
runtime honours the ModelRuntime protocol and the remote store is the real
in-memory implementation.
"""

import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import numpy as np
import pytest

from matricare.domain.manifest import ImputationRule, ModelManifest, SlotSpec
from matricare.domain.models import (
    FeatureVector,
    Measurement,
    Metric,
    RiskAssessment,
    RiskCategory,
    VitalsSample,
)
from matricare.services.inference import ModelBundle
from matricare.services.record_store import LocalRecordStore

# metric, imputation, mean, std, min, max
SLOT_TABLE = [
    (Metric.AGE, ImputationRule.CARRY_FORWARD, 27.0, 6.0, 15.0, 50.0),
    (Metric.GRAVIDA, ImputationRule.CARRY_FORWARD, 2.0, 1.5, 0.0, 12.0),
    (Metric.PARA, ImputationRule.CARRY_FORWARD, 1.0, 1.2, 0.0, 12.0),
    (Metric.LIVE_BIRTHS, ImputationRule.CARRY_FORWARD, 1.0, 1.2, 0.0, 12.0),
    (Metric.ABORTIONS, ImputationRule.CARRY_FORWARD, 0.3, 0.6, 0.0, 10.0),
    (Metric.CHILD_DEATHS, ImputationRule.CARRY_FORWARD, 0.1, 0.4, 0.0, 10.0),
    (Metric.SYSTOLIC_BP, ImputationRule.REQUIRED, 118.0, 15.0, 60.0, 220.0),
    (Metric.DIASTOLIC_BP, ImputationRule.REQUIRED, 76.0, 10.0, 30.0, 140.0),
    (Metric.GLUCOSE, ImputationRule.POPULATION_MEAN, 95.0, 20.0, 40.0, 400.0),
    (Metric.BODY_TEMPERATURE, ImputationRule.POPULATION_MEAN, 98.2, 0.8, 94.0, 106.0),
    (Metric.PULSE_RATE, ImputationRule.POPULATION_MEAN, 82.0, 12.0, 40.0, 180.0),
    (Metric.HEMOGLOBIN, ImputationRule.CARRY_FORWARD, 11.8, 1.4, 5.0, 20.0),
    (Metric.RESPIRATION_RATE, ImputationRule.POPULATION_MEAN, 18.0, 3.0, 8.0, 40.0),
]

CANONICAL = {
    Metric.SYSTOLIC_BP: "mmHg",
    Metric.DIASTOLIC_BP: "mmHg",
    Metric.GLUCOSE: "mg/dL",
    Metric.BODY_TEMPERATURE: "degF",
    Metric.PULSE_RATE: "bpm",
    Metric.HEMOGLOBIN: "g/dL",
    Metric.RESPIRATION_RATE: "breaths/min",
    Metric.AGE: "years",
    Metric.HBA1C: "percent",
    Metric.WEIGHT: "kg",
}

HIGH_RISK_OUTPUT = (0.1, 0.2, 0.6, 0.1)


def build_manifest(
    model_version: str = "mc-risk-1.0.0", normalization: str = "zscore"
) -> ModelManifest:
    return ModelManifest(
        model_version=model_version,
        normalization=normalization,
        slots=tuple(
            SlotSpec(metric=m, imputation=rule, mean=mean, std=std, min=lo, max=hi)
            for m, rule, mean, std, lo, hi in SLOT_TABLE
        ),
    )


class FakeRuntime:
    """Deterministic ModelRuntime that returns a fixed distribution."""

    def __init__(
        self,
        probabilities: tuple[float, ...] = HIGH_RISK_OUTPUT,
        input_size: int = len(SLOT_TABLE),
        delay_seconds: float = 0.0,
    ) -> None:
        self.probabilities = probabilities
        self.input_size = input_size
        self.output_size = len(probabilities)
        self.delay_seconds = delay_seconds
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self._guard = threading.Lock()

    def run(self, batch: np.ndarray) -> np.ndarray:
        with self._guard:
            self.calls += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay_seconds:
                time.sleep(self.delay_seconds)
            return np.asarray([self.probabilities] * batch.shape[0])
        finally:
            with self._guard:
                self.active -= 1


def sample_of(taken_at: datetime | None = None, **values: float) -> VitalsSample:
    """VitalsSample from canonical-unit keyword values, e.g. ``systolic_bp=150``."""
    measurements = {
        Metric(name): Measurement(value=value, unit=CANONICAL.get(Metric(name), "count"))
        for name, value in values.items()
    }
    if taken_at is None:
        return VitalsSample(measurements=measurements)
    return VitalsSample(taken_at=taken_at, measurements=measurements)


@pytest.fixture
def manifest() -> ModelManifest:
    return build_manifest()


@pytest.fixture
def make_sample() -> Callable[..., VitalsSample]:
    return sample_of


@pytest.fixture
def make_bundle() -> Callable[..., ModelBundle]:
    def _make(
        model_version: str = "mc-risk-1.0.0",
        probabilities: tuple[float, ...] = HIGH_RISK_OUTPUT,
        delay_seconds: float = 0.0,
    ) -> ModelBundle:
        runtime = FakeRuntime(probabilities=probabilities, delay_seconds=delay_seconds)
        return ModelBundle.from_runtime(build_manifest(model_version), runtime)

    return _make


@pytest.fixture
def make_assessment() -> Callable[..., RiskAssessment]:
    base = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)

    def _make(
        minutes: int = 0,
        category: RiskCategory = RiskCategory.LOW,
        record_id: str | None = None,
        **values: float,
    ) -> RiskAssessment:
        created = base + timedelta(minutes=minutes)
        sample = sample_of(taken_at=created, **(values or {"systolic_bp": 120, "diastolic_bp": 80}))
        vector = FeatureVector(
            values=(0.0, 0.5),
            slot_names=("systolic_bp", "diastolic_bp"),
            model_version="mc-risk-1.0.0",
        )
        fields: dict = {
            "sample": sample,
            "feature_vector": vector,
            "category": category,
            "confidence": 0.7,
            "model_version": "mc-risk-1.0.0",
            "created_at": created,
            "recommendations": ["Regular prenatal check-ups"],
        }
        if record_id is not None:
            fields["record_id"] = record_id
        return RiskAssessment(**fields)

    return _make


@pytest.fixture
def store_dir(tmp_path: Path) -> Path:
    return tmp_path / "records"


@pytest.fixture
def store(store_dir: Path):
    with LocalRecordStore(store_dir, fsync=False) as opened:
        yield opened


class FakeClock:
    """Manually advanced clock for backoff scheduling."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
