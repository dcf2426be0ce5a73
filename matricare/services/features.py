"""
Feature vector construction.

Turns a partially populated VitalsSample into the fixed-shape input a model
expects. All constants (slot order, normalization, imputation) come from one
immutable ModelManifest, so a builder can never mix two model versions.
"""

import numpy as np

from matricare.domain.errors import IncompleteInputError
from matricare.domain.manifest import ImputationRule, ModelManifest, SlotSpec
from matricare.domain.models import Baseline, FeatureVector, VitalsSample
from matricare.domain.units import canonicalize
from matricare.services.common import logger


class FeatureVectorBuilder:
    """
    Pure, deterministic sample -> vector mapping for one model version.

    Imputation:
    - REQUIRED slots must be present, otherwise IncompleteInputError
    - CARRY_FORWARD uses the baseline value, then the population mean
    - POPULATION_MEAN uses the slot mean
    Imputed slots are flagged in ``imputed_mask`` for confidence discounting.
    """

    def __init__(self, manifest: ModelManifest) -> None:
        self.manifest = manifest
        self.logger = logger.bind(component="feature_builder", model_version=manifest.model_version)

    @property
    def model_version(self) -> str:
        return self.manifest.model_version

    def build(self, sample: VitalsSample, baseline: Baseline | None = None) -> FeatureVector:
        canonical = canonicalize(sample)

        missing = [
            metric.value
            for metric in self.manifest.required_metrics
            if canonical.value_of(metric) is None
        ]
        if missing:
            raise IncompleteInputError(missing)

        raw: list[float] = []
        mask = 0
        for index, slot in enumerate(self.manifest.slots):
            value = canonical.value_of(slot.metric)
            if value is None:
                value = self._impute(slot, baseline)
                mask |= 1 << index
            raw.append(self._normalize(slot, value))

        # Single float32 rounding step keeps the output byte-stable.
        values = tuple(float(v) for v in np.asarray(raw, dtype=np.float64).astype(np.float32))

        if mask:
            self.logger.debug(
                "features_imputed",
                sample_id=sample.sample_id,
                slots=[self.manifest.slot_names[i] for i in range(len(raw)) if mask & (1 << i)],
            )

        return FeatureVector(
            values=values,
            slot_names=self.manifest.slot_names,
            imputed_mask=mask,
            model_version=self.manifest.model_version,
        )

    @staticmethod
    def _impute(slot: SlotSpec, baseline: Baseline | None) -> float:
        if slot.imputation is ImputationRule.CARRY_FORWARD and baseline is not None:
            carried = baseline.values.get(slot.metric)
            if carried is not None:
                return carried
        return slot.mean

    def _normalize(self, slot: SlotSpec, value: float) -> float:
        if self.manifest.normalization == "minmax":
            assert slot.min is not None and slot.max is not None
            return (value - slot.min) / (slot.max - slot.min)
        return (value - slot.mean) / slot.std
