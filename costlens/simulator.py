"""
Optimization Simulator
Projects a namespace's cost split if its efficiency were raised to a target

Billable cost is held constant: the projection models right-sizing usage,
not re-provisioning. Savings are annualized from the window of the current result.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Optional

from costlens.errors import InvalidTargetError
from costlens.models import AggregationResult, CostSimulationResult
from costlens.precision import DEFAULT_PRECISION, PrecisionConfig

logger = logging.getLogger(__name__)

YEAR = timedelta(days=365)


def validate_target(target_efficiency: float):
    if target_efficiency is None or not math.isfinite(target_efficiency):
        raise InvalidTargetError(f"Target efficiency must be a finite number, got {target_efficiency}")
    if target_efficiency <= 0 or target_efficiency > 100:
        raise InvalidTargetError(f"Target efficiency must be in (0, 100], got {target_efficiency}")


def periods_per_year(window: timedelta) -> float:
    """Number of `window`-sized periods in a 365-day year (0 for an empty window)"""
    seconds = window.total_seconds()
    if seconds <= 0:
        return 0.0
    return YEAR.total_seconds() / seconds


class OptimizationSimulator:
    """What-if projection for a namespace efficiency target"""

    def __init__(self, precision: Optional[PrecisionConfig] = None):
        self.precision = precision or DEFAULT_PRECISION

    def simulate(self, namespace: str, current: AggregationResult, target_efficiency: float,
                 simulated_at: Optional[datetime] = None) -> CostSimulationResult:
        """
        Simulate raising `namespace` from its current efficiency to `target_efficiency`.

        Args:
            namespace: Namespace being simulated
            current: Current aggregation of the namespace
            target_efficiency: Target efficiency percentage, in (0, 100]

        Returns:
            CostSimulationResult. A target at or below the current efficiency is not a
            supported projection and yields a no-op result (applied=False, zero savings).

        Raises:
            InvalidTargetError: target is not a number in (0, 100]
        """
        validate_target(target_efficiency)

        simulated_at = simulated_at or datetime.now()
        periods = periods_per_year(current.window)
        current_efficiency = current.efficiency_score

        if target_efficiency <= current_efficiency:
            logger.info(
                f"Namespace {namespace}: target {target_efficiency}% does not exceed current "
                f"efficiency {current_efficiency}%, no projection applied"
            )
            return CostSimulationResult(
                namespace=namespace,
                current_efficiency=current_efficiency,
                target_efficiency=target_efficiency,
                current_billable_cost=current.total_billable_cost,
                current_usage_cost=current.total_usage_cost,
                current_waste_cost=current.total_waste_cost,
                projected_billable_cost=current.total_billable_cost,
                projected_usage_cost=current.total_usage_cost,
                projected_waste_cost=current.total_waste_cost,
                periods_per_year=periods,
                annual_savings=0.0,
                applied=False,
                simulated_at=simulated_at,
                skipped_entities=current.skipped_entities,
            )

        billable = current.total_billable_cost
        projected_waste = self.precision.round_cost(billable * (1 - target_efficiency / 100))
        projected_usage = self.precision.round_cost(billable - projected_waste)
        saved_per_period = max(0.0, current.total_waste_cost - projected_waste)
        annual_savings = self.precision.round_cost(saved_per_period * periods)

        logger.info(
            f"Namespace {namespace}: {current_efficiency}% -> {target_efficiency}% "
            f"saves ${annual_savings:.2f}/year"
        )

        return CostSimulationResult(
            namespace=namespace,
            current_efficiency=current_efficiency,
            target_efficiency=target_efficiency,
            current_billable_cost=billable,
            current_usage_cost=current.total_usage_cost,
            current_waste_cost=current.total_waste_cost,
            projected_billable_cost=billable,
            projected_usage_cost=projected_usage,
            projected_waste_cost=projected_waste,
            periods_per_year=periods,
            annual_savings=annual_savings,
            applied=True,
            simulated_at=simulated_at,
            skipped_entities=current.skipped_entities,
        )
