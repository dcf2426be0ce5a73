"""
Clinical report helpers: reference ranges, per-metric status, advice and
trend series for the chart layer. Everything here is read-only over the store.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from matricare.domain.models import Metric, RiskCategory, VitalsSample
from matricare.services.record_store import LocalRecordStore, RecordFilter


class MetricStatus(str, Enum):
    NORMAL = "NORMAL"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


@dataclass(frozen=True)
class ReferenceRange:
    low: float
    high: float


# In canonical units (matricare.domain.units)
REFERENCE_RANGES: dict[Metric, ReferenceRange] = {
    Metric.SYSTOLIC_BP: ReferenceRange(95.0, 160.0),
    Metric.DIASTOLIC_BP: ReferenceRange(60.0, 100.0),
    Metric.PULSE_RATE: ReferenceRange(60.0, 100.0),
    Metric.BODY_TEMPERATURE: ReferenceRange(97.0, 99.0),
    Metric.HEMOGLOBIN: ReferenceRange(11.0, 16.0),
    Metric.GLUCOSE: ReferenceRange(70.0, 140.0),
    Metric.RESPIRATION_RATE: ReferenceRange(12.0, 20.0),
}

MAX_RECOMMENDATIONS = 4

_CATEGORY_ADVICE: dict[RiskCategory, list[str]] = {
    RiskCategory.CRITICAL: [
        "Seek emergency obstetric care now",
        "Do not wait for the next scheduled visit",
    ],
    RiskCategory.HIGH: [
        "Immediate medical consultation recommended",
        "Regular monitoring of vital signs",
        "Follow strict dietary guidelines",
    ],
    RiskCategory.MODERATE: [
        "Schedule regular check-ups",
        "Maintain balanced diet and exercise",
        "Monitor blood pressure regularly",
    ],
    RiskCategory.LOW: [
        "Continue current healthy lifestyle",
        "Regular prenatal check-ups",
        "Maintain balanced nutrition",
    ],
}


def metric_status(value: float, reference: ReferenceRange) -> MetricStatus:
    """CRITICAL beyond 10% outside the range, WARNING beyond 5%, NORMAL otherwise."""
    if value < reference.low * 0.9 or value > reference.high * 1.1:
        return MetricStatus.CRITICAL
    if value < reference.low * 0.95 or value > reference.high * 1.05:
        return MetricStatus.WARNING
    return MetricStatus.NORMAL


def sample_statuses(sample: VitalsSample) -> dict[Metric, MetricStatus]:
    """Status of every measured metric that has a reference range. Sample must be canonical."""
    return {
        metric: metric_status(measurement.value, REFERENCE_RANGES[metric])
        for metric, measurement in sample.measurements.items()
        if metric in REFERENCE_RANGES
    }


def recommendations(category: RiskCategory, sample: VitalsSample) -> list[str]:
    advice = list(_CATEGORY_ADVICE[category])

    systolic = sample.value_of(Metric.SYSTOLIC_BP)
    diastolic = sample.value_of(Metric.DIASTOLIC_BP)
    if (systolic is not None and systolic > 140) or (diastolic is not None and diastolic > 90):
        advice.append("Blood pressure management required")

    hemoglobin = sample.value_of(Metric.HEMOGLOBIN)
    if hemoglobin is not None and hemoglobin < REFERENCE_RANGES[Metric.HEMOGLOBIN].low:
        advice.append("Iron supplementation may be needed")

    glucose = sample.value_of(Metric.GLUCOSE)
    if glucose is not None and glucose > REFERENCE_RANGES[Metric.GLUCOSE].high:
        advice.append("Monitor blood glucose levels closely")

    # Metric-specific advice outranks generic advice once the list is cut.
    generic = advice[: len(_CATEGORY_ADVICE[category])]
    specific = advice[len(generic):]
    keep_generic = max(1, MAX_RECOMMENDATIONS - len(specific))
    return (generic[:keep_generic] + specific)[:MAX_RECOMMENDATIONS]


@dataclass(frozen=True)
class TrendPoint:
    timestamp: datetime
    value: float
    status: MetricStatus | None


def trend_series(
    store: LocalRecordStore,
    metric: Metric,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[TrendPoint]:
    """Chronological readings of one metric, for the chart collaborator."""
    reference = REFERENCE_RANGES.get(metric)
    points = []
    for record in store.query(RecordFilter(start=start, end=end)):
        value = record.sample.value_of(metric)
        if value is None:
            continue
        status = metric_status(value, reference) if reference is not None else None
        points.append(TrendPoint(timestamp=record.sample.taken_at, value=value, status=status))
    points.sort(key=lambda p: p.timestamp)
    return points