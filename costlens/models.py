"""
Cost Model Types
Shared data structures for the dual-cost model and multi-level aggregation

All result types are immutable snapshots created fresh for every aggregation run.
Recomputing produces a new object instead of patching an old one.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

GIB = 1024 ** 3


class EfficiencyGrade(Enum):
    """Efficiency classification of a costed entity"""
    ZOMBIE = "Zombie"
    OVER_PROVISIONED = "OverProvisioned"
    HEALTHY = "Healthy"
    RISK = "Risk"

    @property
    def waste_rank(self) -> int:
        """Higher rank = more wasteful. Risk is under-provisioned, so it ranks lowest."""
        return {
            EfficiencyGrade.ZOMBIE: 3,
            EfficiencyGrade.OVER_PROVISIONED: 2,
            EfficiencyGrade.HEALTHY: 1,
            EfficiencyGrade.RISK: 0,
        }[self]


class AggregationLevel(Enum):
    """Five drill-down scopes, L0 (cluster) to L4 (pod)"""
    CLUSTER = "cluster"
    NAMESPACE = "namespace"
    NODE = "node"
    WORKLOAD = "workload"
    POD = "pod"

    @property
    def depth(self) -> int:
        return list(AggregationLevel).index(self)

    @classmethod
    def parse(cls, value) -> Optional["AggregationLevel"]:
        """Return the level for an enum member or its string value, None if unknown"""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return None


@dataclass(frozen=True)
class ResourceMetric:
    """One sampled window of request and P95 usage for one entity"""
    cpu_request: float  # cores
    cpu_usage_p95: float  # cores
    mem_request: int  # bytes
    mem_usage_p95: int  # bytes
    timestamp: datetime
    window: timedelta = timedelta(hours=1)

    @property
    def hours(self) -> float:
        return self.window.total_seconds() / 3600.0


@dataclass(frozen=True)
class EntityRef:
    """Topology of a single pod: pod -> workload -> namespace, pod -> node"""
    namespace: str
    workload: str
    pod: str
    node: str
    workload_kind: str = "Deployment"

    @property
    def pod_id(self) -> str:
        return f"{self.namespace}/{self.pod}"

    @property
    def workload_id(self) -> str:
        return f"{self.namespace}/{self.workload}"


@dataclass(frozen=True)
class UsageStats:
    """Spread of sampled usage over the run window, used as idle evidence"""
    cpu_avg: float  # cores
    cpu_stddev: float  # cores
    mem_avg: float  # bytes
    mem_stddev: float  # bytes
    sample_count: int


@dataclass(frozen=True)
class DualCostResult:
    """Billable / usage / waste split for one entity"""
    billable_cost: float
    usage_cost: float
    waste_cost: float
    efficiency_score: float
    grade: EfficiencyGrade
    cpu_billable_cost: float
    cpu_usage_cost: float
    mem_billable_cost: float
    mem_usage_cost: float
    metric: ResourceMetric
    entity: Optional[EntityRef] = None
    usage_stats: Optional[UsageStats] = None

    @property
    def identifier(self) -> str:
        return self.entity.pod_id if self.entity else "<anonymous>"


@dataclass(frozen=True)
class AggregationResult:
    """Aggregated costs for one (level, identifier) pair in one run"""
    level: AggregationLevel
    identifier: str
    dimensions: Dict[str, Any]
    total_billable_cost: float
    total_usage_cost: float
    total_waste_cost: float
    efficiency_score: float
    grade: EfficiencyGrade
    resource_count: int
    window: timedelta
    timestamp: datetime
    skipped_entities: int = 0
    degraded: bool = False

    @property
    def partial(self) -> bool:
        """True when some children were excluded because their metrics were missing"""
        return self.skipped_entities > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'level': self.level.value,
            'identifier': self.identifier,
            'dimensions': self.dimensions,
            'total_billable_cost': self.total_billable_cost,
            'total_usage_cost': self.total_usage_cost,
            'total_waste_cost': self.total_waste_cost,
            'efficiency_score': self.efficiency_score,
            'grade': self.grade.value,
            'resource_count': self.resource_count,
            'window_seconds': self.window.total_seconds(),
            'timestamp': self.timestamp.isoformat(),
            'skipped_entities': self.skipped_entities,
            'partial': self.partial,
            'degraded': self.degraded,
        }


@dataclass(frozen=True)
class ZombieAsset:
    """A pod whose grade is Zombie or Risk, with its release potential"""
    namespace: str
    workload: str
    pod: str
    node: str
    grade: EfficiencyGrade
    efficiency_score: float
    waste_cost: float
    releasable_cpu: float  # cores
    releasable_mem: int  # bytes
    equivalent_node_count: float
    detected_at: datetime
    suggestion: str = ""
    idle_confirmed: bool = False  # usage series is flat and below idle thresholds
    reason: str = ""

    @property
    def pod_id(self) -> str:
        return f"{self.namespace}/{self.pod}"

    @property
    def releasable_mem_gib(self) -> float:
        return self.releasable_mem / GIB

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['grade'] = self.grade.value
        data['detected_at'] = self.detected_at.isoformat()
        return data


@dataclass(frozen=True)
class ZombieScan:
    """Flagged pods of one namespace scan, with the pods that could not be costed"""
    namespace: str
    assets: List[ZombieAsset]
    detected_at: datetime
    skipped_entities: int = 0

    @property
    def partial(self) -> bool:
        return self.skipped_entities > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'namespace': self.namespace,
            'assets': [a.to_dict() for a in self.assets],
            'detected_at': self.detected_at.isoformat(),
            'skipped_entities': self.skipped_entities,
            'partial': self.partial,
        }


@dataclass(frozen=True)
class CostSimulationResult:
    """Namespace projection of current vs. target efficiency"""
    namespace: str
    current_efficiency: float
    target_efficiency: float
    current_billable_cost: float
    current_usage_cost: float
    current_waste_cost: float
    projected_billable_cost: float
    projected_usage_cost: float
    projected_waste_cost: float
    periods_per_year: float
    annual_savings: float
    applied: bool
    simulated_at: datetime = field(default_factory=datetime.now)
    skipped_entities: int = 0  # carried from the aggregate the projection is based on

    @property
    def partial(self) -> bool:
        return self.skipped_entities > 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['simulated_at'] = self.simulated_at.isoformat()
        data['partial'] = self.partial
        return data


@dataclass(frozen=True)
class ThrottlingMetric:
    """CPU throttling for one container"""
    namespace: str
    pod: str
    container: str
    throttled_periods: float
    total_periods: float
    timestamp: datetime

    @property
    def throttling_rate(self) -> float:
        if self.total_periods <= 0:
            return 0.0
        return self.throttled_periods / self.total_periods * 100


@dataclass(frozen=True)
class SaturationMetric:
    """Resource saturation (0-100%) for one node"""
    resource_type: str
    node: str
    saturation: float
    timestamp: datetime
