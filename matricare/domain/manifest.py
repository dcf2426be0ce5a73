"""
Model manifest: the versioned contract shipped next to a packaged model.

The manifest owns everything that must change atomically with the model
weights: slot order, normalization constants and imputation rules.
"""

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from matricare.domain.models import Metric, RiskCategory


class ImputationRule(str, Enum):
    REQUIRED = "required"
    CARRY_FORWARD = "carry_forward"
    POPULATION_MEAN = "population_mean"


class SlotSpec(BaseModel):
    """One model input slot and its normalization constants."""

    model_config = ConfigDict(frozen=True)

    metric: Metric
    imputation: ImputationRule = ImputationRule.POPULATION_MEAN
    mean: float = Field(description="Population mean in canonical units, also the fallback imputed value")
    std: float = Field(default=1.0, gt=0.0)
    min: float | None = None
    max: float | None = None

    @model_validator(mode="after")
    def range_is_ordered(self) -> "SlotSpec":
        if self.min is not None and self.max is not None and self.max <= self.min:
            raise ValueError(f"slot {self.metric.value}: max must be greater than min")
        return self


class ModelManifest(BaseModel):
    """Contents of ``manifest.json`` in a model bundle directory."""

    model_config = ConfigDict(frozen=True)

    model_version: str = Field(min_length=1)
    normalization: Literal["zscore", "minmax"] = "zscore"
    slots: tuple[SlotSpec, ...] = Field(min_length=1)
    output_classes: tuple[RiskCategory, ...] = (
        RiskCategory.LOW,
        RiskCategory.MODERATE,
        RiskCategory.HIGH,
        RiskCategory.CRITICAL,
    )
    artifact: str = "model.joblib"
    sha256: str | None = None

    @model_validator(mode="after")
    def check_contract(self) -> "ModelManifest":
        metrics = [slot.metric for slot in self.slots]
        if len(set(metrics)) != len(metrics):
            raise ValueError("each metric may occupy only one slot")
        if self.normalization == "minmax":
            for slot in self.slots:
                if slot.min is None or slot.max is None:
                    raise ValueError(f"slot {slot.metric.value}: minmax needs min and max")
        if [c.severity for c in self.output_classes] != list(range(len(RiskCategory))):
            raise ValueError("output_classes must be LOW, MODERATE, HIGH, CRITICAL in order")
        return self

    @property
    def input_size(self) -> int:
        return len(self.slots)

    @property
    def output_size(self) -> int:
        return len(self.output_classes)

    @property
    def slot_names(self) -> tuple[str, ...]:
        return tuple(slot.metric.value for slot in self.slots)

    @property
    def required_metrics(self) -> list[Metric]:
        return [s.metric for s in self.slots if s.imputation is ImputationRule.REQUIRED]
