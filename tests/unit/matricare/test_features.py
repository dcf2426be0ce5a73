"""
Tests for FeatureVectorBuilder.

The builder is pure: identical inputs and manifest must give byte-identical
vectors, and every imputed slot must be flagged for confidence discounting.
"""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from matricare.domain.errors import IncompleteInputError
from matricare.domain.manifest import ModelManifest
from matricare.domain.models import Baseline, Measurement, Metric, VitalsSample
from matricare.services.features import FeatureVectorBuilder

from conftest import build_manifest, sample_of

GLUCOSE_SLOT = 8
HEMOGLOBIN_SLOT = 11


class TestFeatureVectorBuilder:
    @pytest.fixture
    def builder(self, manifest: ModelManifest) -> FeatureVectorBuilder:
        return FeatureVectorBuilder(manifest)

    def test_partial_sample_flags_imputed_glucose(self, builder: FeatureVectorBuilder, make_sample) -> None:
        vector = builder.build(make_sample(systolic_bp=150, diastolic_bp=95))

        assert len(vector) == 13
        assert vector.is_imputed(GLUCOSE_SLOT)
        assert not vector.is_imputed(6)
        assert not vector.is_imputed(7)
        assert vector.imputed_count == 11
        # Population mean imputation normalizes to zero under z-score.
        assert vector.values[GLUCOSE_SLOT] == 0.0
        assert vector.values[6] == pytest.approx((150 - 118) / 15, rel=1e-6)
        assert vector.model_version == "mc-risk-1.0.0"

    def test_missing_required_lists_every_missing_metric(self, builder: FeatureVectorBuilder, make_sample) -> None:
        with pytest.raises(IncompleteInputError) as exc_info:
            builder.build(make_sample(glucose=110))

        assert exc_info.value.missing == ["systolic_bp", "diastolic_bp"]

    def test_carry_forward_uses_baseline(self, builder: FeatureVectorBuilder, make_sample) -> None:
        baseline = Baseline(values={Metric.HEMOGLOBIN: 9.0, Metric.GLUCOSE: 180.0})

        vector = builder.build(make_sample(systolic_bp=120, diastolic_bp=80), baseline)

        assert vector.is_imputed(HEMOGLOBIN_SLOT)
        assert vector.values[HEMOGLOBIN_SLOT] == pytest.approx((9.0 - 11.8) / 1.4, rel=1e-6)
        # Glucose is mean-imputed regardless of the baseline.
        assert vector.values[GLUCOSE_SLOT] == 0.0

    def test_units_converted_before_normalization(self, builder: FeatureVectorBuilder) -> None:
        metric_units = VitalsSample(
            measurements={
                Metric.SYSTOLIC_BP: Measurement(value=150.0, unit="mmHg"),
                Metric.DIASTOLIC_BP: Measurement(value=95.0, unit="mmHg"),
                Metric.BODY_TEMPERATURE: Measurement(value=98.6, unit="degF"),
            }
        )
        other_units = VitalsSample(
            measurements={
                Metric.SYSTOLIC_BP: Measurement(value=150.0 / 7.50062, unit="kPa"),
                Metric.DIASTOLIC_BP: Measurement(value=95.0 / 7.50062, unit="kPa"),
                Metric.BODY_TEMPERATURE: Measurement(value=37.0, unit="degC"),
            }
        )

        a = builder.build(metric_units)
        b = builder.build(other_units)

        assert a.values == pytest.approx(b.values, abs=1e-4)

    def test_metrics_outside_manifest_are_ignored(self, builder: FeatureVectorBuilder, make_sample) -> None:
        plain = builder.build(make_sample(systolic_bp=120, diastolic_bp=80))
        extra = builder.build(make_sample(systolic_bp=120, diastolic_bp=80, hba1c=6.1, weight=70))
        assert plain.to_bytes() == extra.to_bytes()

    def test_minmax_normalization(self, make_sample) -> None:
        builder = FeatureVectorBuilder(build_manifest(normalization="minmax"))

        vector = builder.build(make_sample(systolic_bp=140, diastolic_bp=85))

        assert vector.values[6] == pytest.approx((140 - 60) / (220 - 60), rel=1e-6)

    def test_full_sample_has_no_imputed_slots(self, builder: FeatureVectorBuilder, make_sample) -> None:
        sample = make_sample(
            age=29,
            gravida=2,
            para=1,
            live_births=1,
            abortions=0,
            child_deaths=0,
            systolic_bp=118,
            diastolic_bp=76,
            glucose=92,
            body_temperature=98.4,
            pulse_rate=80,
            hemoglobin=12.1,
            respiration_rate=18,
        )
        assert builder.build(sample).imputed_mask == 0

    @given(
        systolic=st.floats(min_value=60, max_value=220, allow_nan=False),
        diastolic=st.floats(min_value=30, max_value=140, allow_nan=False),
        glucose=st.one_of(st.none(), st.floats(min_value=40, max_value=400, allow_nan=False)),
    )
    def test_build_is_deterministic(self, systolic: float, diastolic: float, glucose: float | None) -> None:
        """Property: two independent builders produce byte-identical vectors."""
        values = {"systolic_bp": systolic, "diastolic_bp": diastolic}
        if glucose is not None:
            values["glucose"] = glucose
        sample = sample_of(**values)

        first = FeatureVectorBuilder(build_manifest()).build(sample)
        second = FeatureVectorBuilder(build_manifest()).build(sample)

        assert first.to_bytes() == second.to_bytes()
        assert first.imputed_mask == second.imputed_mask
        assert first.is_imputed(GLUCOSE_SLOT) == (glucose is None)
