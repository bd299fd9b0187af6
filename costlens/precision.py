"""
Precision and Threshold Policy
Rounding digits, grade boundaries and the reference node shape used by one run
"""

import math
from dataclasses import dataclass, field

from costlens.models import GIB

EMPTY_POLICIES = ("error", "zero")


@dataclass(frozen=True)
class GradeThresholds:
    """
    Efficiency score boundaries (percent).

    - Zombie: score < zombie_below
    - OverProvisioned: zombie_below <= score < healthy_from
    - Healthy: healthy_from <= score <= risk_above
    - Risk: score > risk_above
    """
    zombie_below: float = 20.0
    healthy_from: float = 40.0
    risk_above: float = 90.0

    def __post_init__(self):
        if not (0 < self.zombie_below < self.healthy_from < self.risk_above <= 100):
            raise ValueError(
                f"Grade thresholds must satisfy 0 < zombie_below < healthy_from < risk_above <= 100, "
                f"got {self.zombie_below}/{self.healthy_from}/{self.risk_above}"
            )


@dataclass(frozen=True)
class ReferenceNodeShape:
    """Capacity of the node used to express releasable resources as a node count"""
    cpu_cores: float = 8.0
    mem_bytes: int = 16 * GIB

    def __post_init__(self):
        if self.cpu_cores <= 0 or self.mem_bytes <= 0:
            raise ValueError("Reference node shape must have positive CPU and memory")


@dataclass(frozen=True)
class PrecisionConfig:
    """Snapshot of rounding and classification settings bound to one aggregation run"""
    cost_digits: int = 6
    percent_digits: int = 2
    thresholds: GradeThresholds = field(default_factory=GradeThresholds)
    reference_node: ReferenceNodeShape = field(default_factory=ReferenceNodeShape)
    empty_policy: str = "error"

    def __post_init__(self):
        if self.cost_digits < 0 or self.percent_digits < 0:
            raise ValueError("Rounding digits must be non-negative")
        if self.empty_policy not in EMPTY_POLICIES:
            raise ValueError(f"empty_policy must be one of {EMPTY_POLICIES}, got '{self.empty_policy}'")

    def round_cost(self, value: float) -> float:
        return _round(value, self.cost_digits)

    def round_percent(self, value: float) -> float:
        return _round(value, self.percent_digits)


DEFAULT_PRECISION = PrecisionConfig()


def _round(value: float, digits: int) -> float:
    if math.isnan(value) or math.isinf(value):
        return 0.0
    return round(value, digits)


def efficiency_score(billable: float, usage: float) -> float:
    """usage / billable as a percentage; nothing provisioned means nothing wasted (100)"""
    if billable <= 0:
        return 100.0
    return min(usage, billable) / billable * 100.0
