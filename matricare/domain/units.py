"""
Unit normalization for vitals input.

Samples arrive from forms that may use either metric or imperial units. Every
measurement is converted to the canonical unit of its metric before it reaches
the feature builder; unknown units are rejected instead of guessed.
"""

from collections.abc import Callable

from matricare.domain.errors import UnitConversionError
from matricare.domain.models import Measurement, Metric, VitalsSample

CANONICAL_UNITS: dict[Metric, str] = {
    Metric.AGE: "years",
    Metric.GRAVIDA: "count",
    Metric.PARA: "count",
    Metric.LIVE_BIRTHS: "count",
    Metric.ABORTIONS: "count",
    Metric.CHILD_DEATHS: "count",
    Metric.SYSTOLIC_BP: "mmHg",
    Metric.DIASTOLIC_BP: "mmHg",
    Metric.GLUCOSE: "mg/dL",
    Metric.BODY_TEMPERATURE: "degF",
    Metric.PULSE_RATE: "bpm",
    Metric.HEMOGLOBIN: "g/dL",
    Metric.RESPIRATION_RATE: "breaths/min",
    Metric.HBA1C: "percent",
    Metric.WEIGHT: "kg",
}

_ALIASES = {
    "mmhg": "mmHg",
    "kpa": "kPa",
    "mg/dl": "mg/dL",
    "mmol/l": "mmol/L",
    "degf": "degF",
    "°f": "degF",
    "f": "degF",
    "fahrenheit": "degF",
    "degc": "degC",
    "°c": "degC",
    "c": "degC",
    "celsius": "degC",
    "k": "K",
    "kelvin": "K",
    "g/dl": "g/dL",
    "g/l": "g/L",
    "percent": "percent",
    "%": "percent",
    "mmol/mol": "mmol/mol",
    "bpm": "bpm",
    "beats/min": "bpm",
    "breaths/min": "breaths/min",
    "rpm": "breaths/min",
    "years": "years",
    "yrs": "years",
    "count": "count",
    "kg": "kg",
    "lb": "lb",
    "lbs": "lb",
}

# (metric unit family, source unit) -> converter into the canonical unit
_CONVERSIONS: dict[tuple[str, str], Callable[[float], float]] = {
    ("mmHg", "kPa"): lambda v: v * 7.50062,
    ("mg/dL", "mmol/L"): lambda v: v * 18.0182,
    ("degF", "degC"): lambda v: v * 9.0 / 5.0 + 32.0,
    ("degF", "K"): lambda v: (v - 273.15) * 9.0 / 5.0 + 32.0,
    ("g/dL", "g/L"): lambda v: v / 10.0,
    # IFCC (mmol/mol) to NGSP (%)
    ("percent", "mmol/mol"): lambda v: v / 10.929 + 2.15,
    ("kg", "lb"): lambda v: v * 0.45359237,
}


def normalize_unit(unit: str) -> str:
    key = unit.strip().lower()
    if key not in _ALIASES:
        raise UnitConversionError(f"Unknown unit {unit!r}")
    return _ALIASES[key]


def to_canonical(metric: Metric, value: float, unit: str) -> float:
    """Convert a value into the canonical unit for ``metric``."""
    canonical = CANONICAL_UNITS[metric]
    source = normalize_unit(unit)
    if source == canonical:
        return value
    converter = _CONVERSIONS.get((canonical, source))
    if converter is None:
        raise UnitConversionError(f"Cannot convert {metric.value} from {unit!r} to {canonical}")
    return converter(value)


def canonicalize(sample: VitalsSample) -> VitalsSample:
    """Return a copy of ``sample`` with every measurement in its canonical unit."""
    converted = {
        metric: Measurement(
            value=to_canonical(metric, m.value, m.unit), unit=CANONICAL_UNITS[metric]
        )
        for metric, m in sample.measurements.items()
    }
    return sample.model_copy(update={"measurements": converted})
