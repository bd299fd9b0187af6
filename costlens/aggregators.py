"""
Level Aggregators
Combine per-pod dual-cost results into one result per drill-down scope

Levels:
- L0 Cluster: global totals, cluster health, per-namespace cost breakdown
- L1 Namespace: resource counts, grade distribution, most wasteful workloads
- L2 Node: request allocation and actual utilization against node capacity
- L3 Workload: replica efficiency and workload pattern
- L4 Pod: container details and resource requests

Every aggregator sums billable/usage/waste and derives efficiency from the totals
(total usage / total billable), never from an average of child scores.
Shared logic lives in module-level functions; the aggregator classes only pick
which dimensions to populate.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

import numpy as np

from costlens.calculator import grade_by_score
from costlens.errors import EmptyInputError
from costlens.models import (
    AggregationLevel,
    AggregationResult,
    DualCostResult,
    EfficiencyGrade,
    EntityRef,
)
from costlens.precision import DEFAULT_PRECISION, PrecisionConfig, efficiency_score

logger = logging.getLogger(__name__)

# Replica efficiency spread (percentage points) above which a workload is imbalanced
UNIFORM_STDDEV_THRESHOLD = 10.0


class Aggregator(Protocol):
    """Capability shared by all level aggregators"""

    identifier: str

    def level(self) -> AggregationLevel:
        ...

    def supports_dimension(self, name: str) -> bool:
        ...

    def aggregate(self, results: Sequence[DualCostResult],
                  precision: Optional[PrecisionConfig] = None,
                  timestamp: Optional[datetime] = None) -> AggregationResult:
        ...


@dataclass(frozen=True)
class CostTotals:
    billable: float
    usage: float
    waste: float
    count: int

    @property
    def efficiency(self) -> float:
        return efficiency_score(self.billable, self.usage)


# ============================================
# Shared aggregation functions
# ============================================

def sum_costs(results: Iterable[DualCostResult]) -> CostTotals:
    billable = usage = waste = 0.0
    count = 0
    for r in results:
        billable += r.billable_cost
        usage += r.usage_cost
        waste += r.waste_cost
        count += 1
    return CostTotals(billable=billable, usage=usage, waste=waste, count=count)


def identifier_for(level: AggregationLevel, entity: EntityRef, cluster_name: str = "cluster") -> str:
    """Identifier of the scope at `level` that contains the entity"""
    if level == AggregationLevel.CLUSTER:
        return cluster_name
    if level == AggregationLevel.NAMESPACE:
        return entity.namespace
    if level == AggregationLevel.NODE:
        return entity.node
    if level == AggregationLevel.WORKLOAD:
        return entity.workload_id
    return entity.pod_id


def group_results(results: Iterable[DualCostResult], level: AggregationLevel,
                  cluster_name: str = "cluster") -> Dict[str, List[DualCostResult]]:
    """
    Group child results by their scope at `level`, reading topology only.
    Results without topology can only be grouped at cluster level.
    """
    groups: Dict[str, List[DualCostResult]] = defaultdict(list)
    for r in results:
        if r.entity is None:
            if level == AggregationLevel.CLUSTER:
                groups[cluster_name].append(r)
            else:
                logger.debug(f"Skipping result without topology for {level.value} grouping")
            continue
        groups[identifier_for(level, r.entity, cluster_name)].append(r)
    return dict(groups)


def count_distinct(results: Iterable[DualCostResult], attr: str) -> int:
    return len({getattr(r.entity, attr) for r in results if r.entity is not None})


def grade_distribution(results: Iterable[DualCostResult]) -> Dict[str, int]:
    distribution = {grade.value: 0 for grade in EfficiencyGrade}
    for r in results:
        distribution[r.grade.value] += 1
    return distribution


def rank_by_waste(groups: Dict[str, List[DualCostResult]], precision: PrecisionConfig,
                  limit: Optional[int] = None) -> List[Dict]:
    """Rank groups by waste, highest first; equal waste is ordered by identifier"""
    ranked: List[Tuple[str, CostTotals]] = sorted(
        ((identifier, sum_costs(items)) for identifier, items in groups.items()),
        key=lambda item: (-precision.round_cost(item[1].waste), item[0])
    )
    if limit is not None:
        ranked = ranked[:limit]
    return [
        {
            'identifier': identifier,
            'billable_cost': precision.round_cost(totals.billable),
            'usage_cost': precision.round_cost(totals.usage),
            'waste_cost': precision.round_cost(totals.waste),
            'efficiency_score': precision.round_percent(totals.efficiency),
        }
        for identifier, totals in ranked
    ]


def result_window(results: Iterable[DualCostResult]) -> timedelta:
    return max((r.metric.window for r in results), default=timedelta(0))


def resource_count(results: Sequence[DualCostResult]) -> int:
    anonymous = sum(1 for r in results if r.entity is None)
    return count_distinct(results, 'pod_id') + anonymous


def base_dimensions(totals: CostTotals, precision: PrecisionConfig) -> Dict:
    waste_percent = (totals.waste / totals.billable * 100) if totals.billable > 0 else 0.0
    return {
        'cost': {
            'billable': precision.round_cost(totals.billable),
            'usage': precision.round_cost(totals.usage),
        },
        'efficiency': precision.round_percent(totals.efficiency),
        'waste': {
            'cost': precision.round_cost(totals.waste),
            'percent': precision.round_percent(waste_percent),
        },
    }


def check_not_empty(results: Sequence[DualCostResult], level: AggregationLevel,
                    identifier: str, precision: PrecisionConfig):
    if not results and precision.empty_policy == "error":
        raise EmptyInputError(level, identifier)
    if not results:
        logger.info(f"{level.value} '{identifier}' has no children, returning zero-valued result")


def build_result(level: AggregationLevel, identifier: str, results: Sequence[DualCostResult],
                 precision: PrecisionConfig, timestamp: datetime, dimensions: Dict,
                 degraded: bool = False, grade: Optional[EfficiencyGrade] = None) -> AggregationResult:
    totals = sum_costs(results)
    if grade is None:
        if totals.billable > 0:
            grade = grade_by_score(totals.efficiency, precision.thresholds)
        else:
            grade = EfficiencyGrade.HEALTHY
    return AggregationResult(
        level=level,
        identifier=identifier,
        dimensions=dimensions,
        total_billable_cost=precision.round_cost(totals.billable),
        total_usage_cost=precision.round_cost(totals.usage),
        total_waste_cost=precision.round_cost(totals.waste),
        efficiency_score=precision.round_percent(totals.efficiency),
        grade=grade,
        resource_count=resource_count(results),
        window=result_window(results),
        timestamp=timestamp,
        degraded=degraded,
    )


def _resolve(precision: Optional[PrecisionConfig], timestamp: Optional[datetime]):
    return precision or DEFAULT_PRECISION, timestamp or datetime.now()


def _supports(dimensions: Tuple[str, ...], name: str) -> bool:
    return name in dimensions


# ============================================
# L0: Cluster
# ============================================

class ClusterAggregator:
    """Cluster-wide (L0) aggregation"""

    DIMENSIONS = ("cost", "efficiency", "waste", "global_metrics", "cluster_health", "domain_breakdown")

    def __init__(self, cluster_name: str, degraded: bool = False):
        self.identifier = cluster_name
        self.degraded = degraded

    def level(self) -> AggregationLevel:
        return AggregationLevel.CLUSTER

    def supports_dimension(self, name: str) -> bool:
        return _supports(self.DIMENSIONS, name)

    def aggregate(self, results, precision=None, timestamp=None) -> AggregationResult:
        precision, timestamp = _resolve(precision, timestamp)
        results = list(results)
        check_not_empty(results, self.level(), self.identifier, precision)

        totals = sum_costs(results)
        distribution = grade_distribution(results)
        healthy_percent = (distribution[EfficiencyGrade.HEALTHY.value] / len(results) * 100) if results else 0.0

        dimensions = base_dimensions(totals, precision)
        dimensions['global_metrics'] = {
            'namespaces': count_distinct(results, 'namespace'),
            'nodes': count_distinct(results, 'node'),
            'workloads': count_distinct(results, 'workload_id'),
            'pods': count_distinct(results, 'pod_id'),
        }
        dimensions['cluster_health'] = {
            'healthy_percent': precision.round_percent(healthy_percent),
            'grade_distribution': distribution,
        }
        dimensions['domain_breakdown'] = self._domain_breakdown(results, totals, precision)

        return build_result(self.level(), self.identifier, results, precision, timestamp,
                            dimensions, degraded=self.degraded)

    def _domain_breakdown(self, results, totals: CostTotals, precision: PrecisionConfig) -> List[Dict]:
        """Cost share per namespace, largest first"""
        breakdown = []
        for namespace, items in group_results(results, AggregationLevel.NAMESPACE).items():
            ns_totals = sum_costs(items)
            share = (ns_totals.billable / totals.billable * 100) if totals.billable > 0 else 0.0
            breakdown.append({
                'namespace': namespace,
                'cost_percentage': precision.round_percent(share),
                'billable_cost': precision.round_cost(ns_totals.billable),
                'usage_cost': precision.round_cost(ns_totals.usage),
                'waste_cost': precision.round_cost(ns_totals.waste),
                'pod_count': count_distinct(items, 'pod_id'),
            })
        breakdown.sort(key=lambda item: (-item['billable_cost'], item['namespace']))
        return breakdown


# ============================================
# L1: Namespace
# ============================================

class NamespaceAggregator:
    """Namespace-level (L1) aggregation"""

    DIMENSIONS = ("cost", "efficiency", "waste", "resource_count", "grade_distribution", "top_waste_workloads")

    def __init__(self, namespace: str, top_n: int = 5):
        self.identifier = namespace
        self.namespace = namespace
        self.top_n = top_n

    def level(self) -> AggregationLevel:
        return AggregationLevel.NAMESPACE

    def supports_dimension(self, name: str) -> bool:
        return _supports(self.DIMENSIONS, name)

    def aggregate(self, results, precision=None, timestamp=None) -> AggregationResult:
        precision, timestamp = _resolve(precision, timestamp)
        results = list(results)
        check_not_empty(results, self.level(), self.identifier, precision)

        dimensions = base_dimensions(sum_costs(results), precision)
        dimensions['resource_count'] = {
            'pods': count_distinct(results, 'pod_id'),
            'workloads': count_distinct(results, 'workload_id'),
            'nodes': count_distinct(results, 'node'),
        }
        dimensions['grade_distribution'] = grade_distribution(results)
        dimensions['top_waste_workloads'] = rank_by_waste(
            group_results(results, AggregationLevel.WORKLOAD), precision, limit=self.top_n
        )

        return build_result(self.level(), self.identifier, results, precision, timestamp, dimensions)


# ============================================
# L2: Node
# ============================================

class NodeAggregator:
    """Node-level (L2) aggregation; utilization is measured against node capacity"""

    DIMENSIONS = ("cost", "efficiency", "waste", "resource_allocation", "node_utilization")

    def __init__(self, node_name: str, cpu_capacity: Optional[float] = None,
                 mem_capacity: Optional[float] = None):
        self.identifier = node_name
        self.node_name = node_name
        self.cpu_capacity = cpu_capacity  # cores
        self.mem_capacity = mem_capacity  # bytes

    def level(self) -> AggregationLevel:
        return AggregationLevel.NODE

    def supports_dimension(self, name: str) -> bool:
        return _supports(self.DIMENSIONS, name)

    def aggregate(self, results, precision=None, timestamp=None) -> AggregationResult:
        precision, timestamp = _resolve(precision, timestamp)
        results = list(results)
        check_not_empty(results, self.level(), self.identifier, precision)

        cpu_requested = sum(r.metric.cpu_request for r in results)
        mem_requested = sum(r.metric.mem_request for r in results)
        cpu_used = sum(r.metric.cpu_usage_p95 for r in results)
        mem_used = sum(r.metric.mem_usage_p95 for r in results)

        if not self.cpu_capacity or not self.mem_capacity:
            logger.debug(f"Node {self.node_name}: capacity unknown, utilization not computed")

        dimensions = base_dimensions(sum_costs(results), precision)
        dimensions['resource_allocation'] = {
            'cpu_requested': round(cpu_requested, 3),
            'mem_requested': int(mem_requested),
            'cpu_allocation_percent': self._percent(cpu_requested, self.cpu_capacity, precision),
            'mem_allocation_percent': self._percent(mem_requested, self.mem_capacity, precision),
            'pod_count': count_distinct(results, 'pod_id'),
        }
        dimensions['node_utilization'] = {
            'cpu_capacity': self.cpu_capacity,
            'mem_capacity': self.mem_capacity,
            'cpu_utilization_percent': self._percent(cpu_used, self.cpu_capacity, precision),
            'mem_utilization_percent': self._percent(mem_used, self.mem_capacity, precision),
        }

        return build_result(self.level(), self.identifier, results, precision, timestamp, dimensions)

    @staticmethod
    def _percent(value: float, capacity: Optional[float], precision: PrecisionConfig) -> Optional[float]:
        if not capacity or capacity <= 0:
            return None
        return precision.round_percent(value / capacity * 100)


# ============================================
# L3: Workload
# ============================================

class WorkloadAggregator:
    """Workload-level (L3) aggregation across replicas"""

    DIMENSIONS = ("cost", "efficiency", "waste", "replica_efficiency", "workload_pattern")

    def __init__(self, namespace: str, workload_name: str, workload_type: str = "Deployment"):
        self.identifier = f"{namespace}/{workload_name}" if namespace else workload_name
        self.namespace = namespace
        self.workload_name = workload_name
        self.workload_type = workload_type

    def level(self) -> AggregationLevel:
        return AggregationLevel.WORKLOAD

    def supports_dimension(self, name: str) -> bool:
        return _supports(self.DIMENSIONS, name)

    def aggregate(self, results, precision=None, timestamp=None) -> AggregationResult:
        precision, timestamp = _resolve(precision, timestamp)
        results = list(results)
        check_not_empty(results, self.level(), self.identifier, precision)

        totals = sum_costs(results)
        replicas = group_results(results, AggregationLevel.POD)
        anonymous = [r for r in results if r.entity is None]
        replica_totals = [sum_costs(items) for items in replicas.values()]
        replica_totals.extend(sum_costs([r]) for r in anonymous)
        efficiencies = [t.efficiency for t in replica_totals]
        replica_count = len(replica_totals)

        dimensions = base_dimensions(totals, precision)
        dimensions['replica_efficiency'] = {
            'replica_count': replica_count,
            'average_waste_per_replica': precision.round_cost(totals.waste / replica_count) if replica_count else 0.0,
            'min_efficiency': precision.round_percent(min(efficiencies)) if efficiencies else None,
            'max_efficiency': precision.round_percent(max(efficiencies)) if efficiencies else None,
        }
        dimensions['workload_pattern'] = self._pattern(efficiencies, precision)

        return build_result(self.level(), self.identifier, results, precision, timestamp, dimensions)

    def _pattern(self, efficiencies: List[float], precision: PrecisionConfig) -> Dict:
        if not efficiencies:
            pattern, spread = 'no_replicas', 0.0
        elif len(efficiencies) == 1:
            pattern, spread = 'single_replica', 0.0
        else:
            spread = float(np.std(efficiencies))
            pattern = 'uniform' if spread <= UNIFORM_STDDEV_THRESHOLD else 'imbalanced'
        return {
            'pattern': pattern,
            'efficiency_stddev': precision.round_percent(spread),
            'workload_type': self.workload_type,
        }


# ============================================
# L4: Pod
# ============================================

class PodAggregator:
    """Pod-level (L4) aggregation across the pod's containers"""

    DIMENSIONS = ("cost", "efficiency", "waste", "container_details", "resource_requests")

    def __init__(self, namespace: str, pod_name: str, workload_name: str = "", node_name: str = ""):
        self.identifier = f"{namespace}/{pod_name}" if namespace else pod_name
        self.namespace = namespace
        self.pod_name = pod_name
        self.workload_name = workload_name
        self.node_name = node_name

    def level(self) -> AggregationLevel:
        return AggregationLevel.POD

    def supports_dimension(self, name: str) -> bool:
        return _supports(self.DIMENSIONS, name)

    def aggregate(self, results, precision=None, timestamp=None) -> AggregationResult:
        precision, timestamp = _resolve(precision, timestamp)
        results = list(results)
        check_not_empty(results, self.level(), self.identifier, precision)

        # A single under-provisioned container puts the whole pod at risk
        grade = EfficiencyGrade.RISK if any(r.grade == EfficiencyGrade.RISK for r in results) else None

        dimensions = base_dimensions(sum_costs(results), precision)
        dimensions['container_details'] = {
            'containers': len(results),
            'grade_distribution': grade_distribution(results),
            'workload': self.workload_name,
            'node': self.node_name,
        }
        dimensions['resource_requests'] = {
            'cpu_request': round(sum(r.metric.cpu_request for r in results), 3),
            'cpu_usage_p95': round(sum(r.metric.cpu_usage_p95 for r in results), 3),
            'mem_request': int(sum(r.metric.mem_request for r in results)),
            'mem_usage_p95': int(sum(r.metric.mem_usage_p95 for r in results)),
        }

        return build_result(self.level(), self.identifier, results, precision, timestamp,
                            dimensions, grade=grade)
