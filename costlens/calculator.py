"""
Dual-Cost Calculator
Splits the cost of one entity into billable, usage and waste

Cost Model:
- Billable = cpu_request x core_price x hours + mem_request_gib x mem_price x hours
- Usage = same formula with P95 usage, each resource capped at its request
- Waste = Billable - Usage (never negative)
- Efficiency = Usage / Billable x 100 (100 when nothing is billable)
"""

import logging
import math
from typing import Optional

from costlens.errors import InvalidInputError
from costlens.models import GIB, DualCostResult, EfficiencyGrade, EntityRef, ResourceMetric
from costlens.precision import DEFAULT_PRECISION, GradeThresholds, PrecisionConfig, efficiency_score

logger = logging.getLogger(__name__)


def grade_by_score(score: float, thresholds: GradeThresholds) -> EfficiencyGrade:
    """Map an efficiency score onto the configured grade bands"""
    if score < thresholds.zombie_below:
        return EfficiencyGrade.ZOMBIE
    if score < thresholds.healthy_from:
        return EfficiencyGrade.OVER_PROVISIONED
    if score <= thresholds.risk_above:
        return EfficiencyGrade.HEALTHY
    return EfficiencyGrade.RISK


def _validate(metric: ResourceMetric, core_price: float, mem_price: float):
    values = {
        'cpu_request': metric.cpu_request,
        'cpu_usage_p95': metric.cpu_usage_p95,
        'mem_request': metric.mem_request,
        'mem_usage_p95': metric.mem_usage_p95,
        'core_price': core_price,
        'mem_price': mem_price,
    }
    for name, value in values.items():
        if value is None or not math.isfinite(value):
            raise InvalidInputError(f"{name} must be a finite number, got {value}")
        if value < 0:
            raise InvalidInputError(f"{name} cannot be negative, got {value}")
    if metric.window.total_seconds() <= 0:
        raise InvalidInputError(f"Metric window must be positive, got {metric.window}")


def compute_cost(
    metric: ResourceMetric,
    core_price: float,
    mem_price: float,
    precision: Optional[PrecisionConfig] = None,
    entity: Optional[EntityRef] = None
) -> DualCostResult:
    """
    Compute the dual cost of one entity.

    Args:
        metric: Request and P95 usage for the sampled window
        core_price: Price per CPU core per hour
        mem_price: Price per GiB of memory per hour
        precision: Rounding and grade thresholds (defaults apply when omitted)
        entity: Topology of the entity, carried through for aggregation

    Returns:
        DualCostResult with billable = usage + waste

    Raises:
        InvalidInputError: negative or non-finite values, or a non-positive window
    """
    precision = precision or DEFAULT_PRECISION
    _validate(metric, core_price, mem_price)

    hours = metric.hours
    mem_request_gib = metric.mem_request / GIB
    mem_usage_gib = min(metric.mem_usage_p95, metric.mem_request) / GIB

    cpu_billable = metric.cpu_request * core_price * hours
    cpu_usage = min(metric.cpu_usage_p95, metric.cpu_request) * core_price * hours
    mem_billable = mem_request_gib * mem_price * hours
    mem_usage = mem_usage_gib * mem_price * hours

    billable = cpu_billable + mem_billable
    usage = cpu_usage + mem_usage
    score = efficiency_score(billable, usage)

    over_requested = (
        metric.cpu_usage_p95 > metric.cpu_request or
        metric.mem_usage_p95 > metric.mem_request
    )
    if over_requested:
        grade = EfficiencyGrade.RISK
    elif billable == 0:
        grade = EfficiencyGrade.HEALTHY
    else:
        grade = grade_by_score(score, precision.thresholds)

    billable_rounded = precision.round_cost(billable)
    usage_rounded = precision.round_cost(usage)
    waste_rounded = precision.round_cost(max(0.0, billable_rounded - usage_rounded))

    return DualCostResult(
        billable_cost=billable_rounded,
        usage_cost=usage_rounded,
        waste_cost=waste_rounded,
        efficiency_score=precision.round_percent(score),
        grade=grade,
        cpu_billable_cost=precision.round_cost(cpu_billable),
        cpu_usage_cost=precision.round_cost(cpu_usage),
        mem_billable_cost=precision.round_cost(mem_billable),
        mem_usage_cost=precision.round_cost(mem_usage),
        metric=metric,
        entity=entity,
    )


class DualCostCalculator:
    """Calculator bound to one set of unit prices and one precision policy"""

    def __init__(self, cost_per_vcpu_hour: float, cost_per_gb_memory_hour: float,
                 precision: Optional[PrecisionConfig] = None):
        if cost_per_vcpu_hour < 0 or cost_per_gb_memory_hour < 0:
            raise InvalidInputError("Unit prices cannot be negative")
        self.cost_per_vcpu_hour = cost_per_vcpu_hour
        self.cost_per_gb_memory_hour = cost_per_gb_memory_hour
        self.precision = precision or DEFAULT_PRECISION

    def compute(self, metric: ResourceMetric, entity: Optional[EntityRef] = None) -> DualCostResult:
        result = compute_cost(
            metric,
            self.cost_per_vcpu_hour,
            self.cost_per_gb_memory_hour,
            precision=self.precision,
            entity=entity,
        )
        logger.debug(
            f"Cost for {result.identifier}: billable=${result.billable_cost}, "
            f"waste=${result.waste_cost}, grade={result.grade.value}"
        )
        return result
