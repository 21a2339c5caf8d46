"""Significance testing for control/test conversion rates."""

from __future__ import annotations

import math
import os
from dataclasses import dataclass
from statistics import NormalDist

CONFIDENCE_THRESHOLD = float(os.environ.get("SIGNIFICANCE_CONFIDENCE", 95))


@dataclass(slots=True)
class SignificanceResult:
    z_score: float
    p_value: float
    confidence: float

    @property
    def is_significant(self) -> bool:
        return self.confidence >= CONFIDENCE_THRESHOLD


def safe_rate(numerator: float, denominator: float) -> float:
    if not denominator:
        return 0.0
    return numerator / denominator


def lift(test_rate: float, control_rate: float) -> float:
    if not control_rate:
        return 0.0
    return (test_rate - control_rate) / control_rate


def two_proportion_z_test(successes_a: int, trials_a: int, successes_b: int, trials_b: int) -> SignificanceResult:
    if trials_a <= 0 or trials_b <= 0 or successes_a + successes_b <= 0:
        return SignificanceResult(z_score=0.0, p_value=1.0, confidence=0.0)
    pooled = (successes_a + successes_b) / (trials_a + trials_b)
    se = math.sqrt(pooled * (1 - pooled) * (1 / trials_a + 1 / trials_b))
    if se == 0:
        return SignificanceResult(z_score=0.0, p_value=1.0, confidence=0.0)
    z = abs(successes_a / trials_a - successes_b / trials_b) / se
    p_value = 2 * (1 - NormalDist().cdf(z))
    return SignificanceResult(z_score=z, p_value=p_value, confidence=max(0.0, (1 - p_value) * 100))


def sample_size_needed(
    baseline_rate: float,
    minimum_detectable_effect: float,
    power: float = 0.8,
    significance: float = 0.05,
) -> int:
    """Per-variant sample size to detect a relative lift of ``minimum_detectable_effect``."""
    if not 0 < baseline_rate < 1:
        raise ValueError("baseline_rate must be between 0 and 1")
    if minimum_detectable_effect <= 0:
        raise ValueError("minimum_detectable_effect must be positive")
    if not 0 < power < 1 or not 0 < significance < 1:
        raise ValueError("power and significance must be between 0 and 1")
    normal = NormalDist()
    z_alpha = normal.inv_cdf(1 - significance / 2)
    z_beta = normal.inv_cdf(power)
    p1 = baseline_rate
    p2 = min(baseline_rate * (1 + minimum_detectable_effect), 0.9999)
    pooled = (p1 + p2) / 2
    numerator = (
        z_alpha * math.sqrt(2 * pooled * (1 - pooled)) + z_beta * math.sqrt(p1 * (1 - p1) + p2 * (1 - p2))
    ) ** 2
    return math.ceil(numerator / (p2 - p1) ** 2)
