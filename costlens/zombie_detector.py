"""
Zombie and Risk Detector
Flags pods that are idle (Zombie) or running above their requests (Risk)

- Zombie: reports releasable CPU/memory (request - usage) and how many
  reference nodes that is worth
- Risk: reported for attention only, nothing is releasable

Flagging is by grade. When the usage series is available, a Zombie is also
checked for idle evidence: average CPU and memory below the idle thresholds
with a flat ("dead line") series. The outcome is recorded as `idle_confirmed`
and explained in `reason`.
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from costlens.models import GIB, DualCostResult, EfficiencyGrade, UsageStats, ZombieAsset
from costlens.precision import ReferenceNodeShape

logger = logging.getLogger(__name__)

FLAGGED_GRADES = (EfficiencyGrade.ZOMBIE, EfficiencyGrade.RISK)

IDLE_CPU_CORES = 0.1
IDLE_MEM_GIB = 0.1
FLAT_STDDEV = 0.001  # cores for CPU, GiB for memory


def idle_evidence(stats: Optional[UsageStats], idle_cpu: float = IDLE_CPU_CORES,
                  idle_mem_gib: float = IDLE_MEM_GIB, flat_stddev: float = FLAT_STDDEV) -> Tuple[bool, str]:
    """
    Check a usage series for idleness.

    Returns:
        (idle, reason): idle is True only when CPU and memory are both below
        their thresholds and flat; reason lists every criterion that failed
    """
    if stats is None:
        return False, "no usage series available"

    mem_avg_gib = stats.mem_avg / GIB
    mem_stddev_gib = stats.mem_stddev / GIB
    failed = []
    if stats.cpu_avg >= idle_cpu:
        failed.append(f"CPU avg ({stats.cpu_avg:.3f}) >= threshold ({idle_cpu:.3f})")
    if stats.cpu_stddev >= flat_stddev:
        failed.append(f"CPU stddev ({stats.cpu_stddev:.3f}) >= dead line ({flat_stddev:.3f})")
    if mem_avg_gib >= idle_mem_gib:
        failed.append(f"memory avg ({mem_avg_gib:.3f} GiB) >= threshold ({idle_mem_gib:.3f} GiB)")
    if mem_stddev_gib >= flat_stddev:
        failed.append(f"memory stddev ({mem_stddev_gib:.3f}) >= dead line ({flat_stddev:.3f})")

    if not failed:
        return True, (
            f"CPU and memory usage consistently below thresholds with minimal variation "
            f"over {stats.sample_count} samples"
        )
    return False, "not idle: " + "; ".join(failed)


def build_suggestion(asset: ZombieAsset) -> str:
    """Human-readable recommendation for one flagged pod"""
    if asset.grade == EfficiencyGrade.RISK:
        return (
            f"Pod {asset.pod_id} uses more than it requests (efficiency {asset.efficiency_score:.1f}%). "
            f"Raise its CPU/memory requests to avoid throttling or OOM kills."
        )
    action = "Remove it or scale it to zero" if asset.idle_confirmed else "Scale it down or lower its requests"
    return (
        f"Pod {asset.pod_id} is nearly idle (efficiency {asset.efficiency_score:.1f}%). "
        f"{action} to release {asset.releasable_cpu:.2f} cores "
        f"and {asset.releasable_mem_gib:.2f} GiB "
        f"(~{asset.equivalent_node_count:.2f} nodes, ${asset.waste_cost:.2f} wasted per window)."
    )


class ZombieDetector:
    """Scans dual-cost results for Zombie and Risk pods"""

    def __init__(self, reference_node: Optional[ReferenceNodeShape] = None,
                 idle_cpu: float = IDLE_CPU_CORES, idle_mem_gib: float = IDLE_MEM_GIB,
                 flat_stddev: float = FLAT_STDDEV):
        self.reference_node = reference_node or ReferenceNodeShape()
        self.idle_cpu = idle_cpu
        self.idle_mem_gib = idle_mem_gib
        self.flat_stddev = flat_stddev

    def detect(self, results: Iterable[DualCostResult],
               detected_at: Optional[datetime] = None) -> List[ZombieAsset]:
        detected_at = detected_at or datetime.now()
        assets = []

        for result in results:
            if result.grade not in FLAGGED_GRADES:
                continue
            if result.entity is None:
                logger.debug("Skipping flagged result without topology")
                continue
            assets.append(self._to_asset(result, detected_at))

        assets.sort(key=lambda a: (-a.waste_cost, a.pod_id))

        if assets:
            zombies = sum(1 for a in assets if a.grade == EfficiencyGrade.ZOMBIE)
            logger.info(f"Detected {zombies} zombie and {len(assets) - zombies} risk pods")
        return assets

    def _to_asset(self, result: DualCostResult, detected_at: datetime) -> ZombieAsset:
        metric = result.metric
        if result.grade == EfficiencyGrade.ZOMBIE:
            releasable_cpu = max(0.0, metric.cpu_request - metric.cpu_usage_p95)
            releasable_mem = int(max(0, metric.mem_request - metric.mem_usage_p95))
            idle_confirmed, reason = idle_evidence(
                result.usage_stats, self.idle_cpu, self.idle_mem_gib, self.flat_stddev
            )
        else:
            releasable_cpu = 0.0
            releasable_mem = 0
            idle_confirmed, reason = False, "P95 usage above request"

        asset = ZombieAsset(
            namespace=result.entity.namespace,
            workload=result.entity.workload,
            pod=result.entity.pod,
            node=result.entity.node,
            grade=result.grade,
            efficiency_score=result.efficiency_score,
            waste_cost=result.waste_cost,
            releasable_cpu=round(releasable_cpu, 3),
            releasable_mem=releasable_mem,
            equivalent_node_count=round(releasable_cpu / self.reference_node.cpu_cores, 3),
            detected_at=detected_at,
            idle_confirmed=idle_confirmed,
            reason=reason,
        )
        return replace(asset, suggestion=build_suggestion(asset))

    @staticmethod
    def summarize(assets: Iterable[ZombieAsset]) -> Dict:
        """Totals across flagged pods"""
        assets = list(assets)
        return {
            'zombie_count': sum(1 for a in assets if a.grade == EfficiencyGrade.ZOMBIE),
            'risk_count': sum(1 for a in assets if a.grade == EfficiencyGrade.RISK),
            'idle_confirmed_count': sum(1 for a in assets if a.idle_confirmed),
            'releasable_cpu': round(sum(a.releasable_cpu for a in assets), 3),
            'releasable_mem_gib': round(sum(a.releasable_mem for a in assets) / GIB, 3),
            'equivalent_node_count': round(sum(a.equivalent_node_count for a in assets), 3),
            'waste_cost': round(sum(a.waste_cost for a in assets), 6),
        }
