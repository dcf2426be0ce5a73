"""
Risk classification from raw model output.

Selection rules, in order:
1. the output must be a valid distribution (no silent renormalization)
2. highest probability wins; exact ties go to the more severe category
3. calibrated escalation floors may lift the verdict to a more severe category
Confidence is the selected probability discounted for every imputed input slot.
"""

import math

from pydantic import BaseModel, Field

from matricare.domain.errors import InvalidDistributionError
from matricare.domain.models import RawOutput, RiskAssessmentCore, RiskCategory
from matricare.services.common import logger


class ClassifierConfig(BaseModel):
    """Calibration constants for turning probabilities into a verdict."""

    tolerance: float = Field(
        default=1e-3, gt=0.0, lt=0.1, description="Allowed deviation of the probability sum from 1"
    )
    imputation_penalty: float = Field(
        default=0.05, ge=0.0, le=1.0, description="Confidence discount per imputed slot"
    )
    escalation_floors: dict[RiskCategory, float] = Field(
        default_factory=dict,
        description="Select a more severe category once its probability reaches this floor",
    )


def discounted_confidence(probability: float, imputed_count: int, penalty: float) -> float:
    """confidence x (1 - penalty x imputed), floored at 0. Non-increasing in imputed_count."""
    return max(0.0, probability * max(0.0, 1.0 - penalty * imputed_count))


class RiskClassifier:
    def __init__(self, config: ClassifierConfig | None = None) -> None:
        self.config = config or ClassifierConfig()
        self.logger = logger.bind(component="risk_classifier")

    def validate(self, raw: RawOutput) -> list[float]:
        probabilities = list(raw.probabilities)
        if len(probabilities) != len(RiskCategory):
            raise InvalidDistributionError(
                f"Expected {len(RiskCategory)} probabilities, got {len(probabilities)}"
            )
        for p in probabilities:
            if not math.isfinite(p) or p < 0.0 or p > 1.0:
                raise InvalidDistributionError(f"Probability {p!r} outside [0, 1]")
        total = math.fsum(probabilities)
        if abs(total - 1.0) > self.config.tolerance:
            raise InvalidDistributionError(
                f"Probabilities sum to {total:.6f}, expected 1 +/- {self.config.tolerance}"
            )
        return probabilities

    def classify(self, raw: RawOutput, imputed_mask: int = 0) -> RiskAssessmentCore:
        probabilities = self.validate(raw)

        # Walk from least to most severe so ">=" hands exact ties to the more severe category.
        selected = RiskCategory.LOW
        best = -1.0
        for index, p in enumerate(probabilities):
            if p >= best:
                best = p
                selected = RiskCategory.from_index(index)

        for category, floor in sorted(
            self.config.escalation_floors.items(), key=lambda item: item[0].severity, reverse=True
        ):
            if category.is_more_severe_than(selected) and probabilities[category.severity] >= floor:
                self.logger.info(
                    "risk_escalated",
                    from_category=selected.value,
                    to_category=category.value,
                    probability=probabilities[category.severity],
                    floor=floor,
                )
                selected = category
                break

        base = probabilities[selected.severity]
        imputed_count = bin(imputed_mask).count("1")
        confidence = discounted_confidence(base, imputed_count, self.config.imputation_penalty)

        return RiskAssessmentCore(
            category=selected,
            confidence=min(1.0, confidence),
            base_confidence=base,
            probabilities=tuple(probabilities),
            imputed_count=imputed_count,
        )
