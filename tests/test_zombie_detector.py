"""
Tests for the zombie and risk detector
"""

from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from costlens.calculator import compute_cost
from costlens.models import GIB, EfficiencyGrade, EntityRef, ResourceMetric, UsageStats
from costlens.precision import ReferenceNodeShape
from costlens.zombie_detector import ZombieDetector, idle_evidence

DETECTED_AT = datetime(2025, 2, 1, 0, 0)


def pod_cost(pod, cpu_request, cpu_usage, mem_request_gib, mem_usage_gib, with_entity=True):
    metric = ResourceMetric(
        cpu_request=cpu_request,
        cpu_usage_p95=cpu_usage,
        mem_request=int(mem_request_gib * GIB),
        mem_usage_p95=int(mem_usage_gib * GIB),
        timestamp=DETECTED_AT,
        window=timedelta(hours=1),
    )
    entity = EntityRef("shop", "web", pod, "node-1") if with_entity else None
    return compute_cost(metric, 0.05, 0.01, entity=entity)


def stats(cpu_avg=0.05, cpu_stddev=0.0, mem_avg_gib=0.05, mem_stddev_gib=0.0, count=12):
    return UsageStats(
        cpu_avg=cpu_avg,
        cpu_stddev=cpu_stddev,
        mem_avg=mem_avg_gib * GIB,
        mem_stddev=mem_stddev_gib * GIB,
        sample_count=count,
    )


@pytest.fixture
def detector():
    return ZombieDetector(ReferenceNodeShape(cpu_cores=8.0, mem_bytes=16 * GIB))


class TestZombieDetector:
    """Test zombie and risk detection"""

    def test_zombie_releasable_resources(self, detector):
        assets = detector.detect([pod_cost("idle", 4.0, 0.4, 8.0, 0.8)], detected_at=DETECTED_AT)

        assert len(assets) == 1
        asset = assets[0]
        assert asset.grade == EfficiencyGrade.ZOMBIE
        assert asset.releasable_cpu == pytest.approx(3.6)
        assert asset.releasable_mem_gib == pytest.approx(7.2, abs=0.001)
        assert asset.equivalent_node_count == pytest.approx(0.45)
        assert asset.waste_cost == pytest.approx(0.252)
        assert "shop/idle" in asset.suggestion

    def test_risk_has_nothing_releasable(self, detector):
        assets = detector.detect([pod_cost("hot", 4.0, 4.4, 8.0, 0.8)])

        assert len(assets) == 1
        assert assets[0].grade == EfficiencyGrade.RISK
        assert assets[0].releasable_cpu == 0
        assert assets[0].releasable_mem == 0
        assert assets[0].equivalent_node_count == 0
        assert "requests" in assets[0].suggestion

    def test_healthy_pods_ignored(self, detector):
        assert detector.detect([pod_cost("ok", 2.0, 1.2, 4.0, 2.5)]) == []

    def test_results_without_topology_skipped(self, detector):
        assert detector.detect([pod_cost("idle", 4.0, 0.4, 8.0, 0.8, with_entity=False)]) == []

    def test_sorted_by_waste_then_pod(self, detector):
        results = [
            pod_cost("small-b", 1.0, 0.05, 1.0, 0.05),
            pod_cost("big", 8.0, 0.1, 16.0, 0.2),
            pod_cost("small-a", 1.0, 0.05, 1.0, 0.05),
        ]
        assets = detector.detect(results)

        assert [a.pod for a in assets] == ["big", "small-a", "small-b"]

    def test_summarize(self, detector):
        assets = detector.detect([
            pod_cost("idle", 4.0, 0.4, 8.0, 0.8),
            pod_cost("hot", 4.0, 4.4, 8.0, 0.8),
        ])
        summary = ZombieDetector.summarize(assets)

        assert summary['zombie_count'] == 1
        assert summary['risk_count'] == 1
        assert summary['idle_confirmed_count'] == 0
        assert summary['releasable_cpu'] == pytest.approx(3.6)
        assert summary['equivalent_node_count'] == pytest.approx(0.45)

    def test_asset_serialization(self, detector):
        asset = detector.detect([pod_cost("idle", 4.0, 0.4, 8.0, 0.8)], detected_at=DETECTED_AT)[0]
        data = asset.to_dict()

        assert data['grade'] == "Zombie"
        assert data['detected_at'] == DETECTED_AT.isoformat()
        assert data['idle_confirmed'] is False
        assert data['reason'] == "no usage series available"


class TestIdleEvidence:
    """Test the flat, low-usage check on the usage series"""

    def test_flat_low_series_is_idle(self):
        idle, reason = idle_evidence(stats())

        assert idle is True
        assert "12 samples" in reason

    def test_missing_series(self):
        assert idle_evidence(None) == (False, "no usage series available")

    @pytest.mark.parametrize("overrides,expected", [
        ({'cpu_avg': 0.5}, "CPU avg (0.500) >= threshold (0.100)"),
        ({'cpu_stddev': 0.02}, "CPU stddev (0.020) >= dead line (0.001)"),
        ({'mem_avg_gib': 0.5}, "memory avg (0.500 GiB) >= threshold (0.100 GiB)"),
        ({'mem_stddev_gib': 0.01}, "memory stddev (0.010) >= dead line (0.001)"),
    ])
    def test_each_failing_criterion_reported(self, overrides, expected):
        idle, reason = idle_evidence(stats(**overrides))

        assert idle is False
        assert reason == f"not idle: {expected}"

    def test_failures_joined(self):
        _, reason = idle_evidence(stats(cpu_avg=0.5, mem_avg_gib=0.5))

        assert reason.count("; ") == 1

    def test_custom_thresholds(self):
        assert idle_evidence(stats(cpu_avg=0.15), idle_cpu=0.2)[0] is True


class TestZombieIdleConfirmation:
    """Test how idle evidence shapes flagged assets"""

    def test_confirmed_zombie(self, detector):
        result = replace(pod_cost("idle", 4.0, 0.05, 8.0, 0.05), usage_stats=stats())
        asset = detector.detect([result])[0]

        assert asset.grade == EfficiencyGrade.ZOMBIE
        assert asset.idle_confirmed is True
        assert "Remove it or scale it to zero" in asset.suggestion
        assert ZombieDetector.summarize([asset])['idle_confirmed_count'] == 1

    def test_zombie_with_spiky_series_still_flagged(self, detector):
        result = replace(pod_cost("idle", 4.0, 0.4, 8.0, 0.8), usage_stats=stats(cpu_avg=0.3, cpu_stddev=0.2))
        asset = detector.detect([result])[0]

        assert asset.grade == EfficiencyGrade.ZOMBIE
        assert asset.idle_confirmed is False
        assert asset.reason.startswith("not idle: CPU avg (0.300)")
        assert "Scale it down" in asset.suggestion

    def test_risk_reason(self, detector):
        result = replace(pod_cost("hot", 4.0, 4.4, 8.0, 0.8), usage_stats=stats())
        asset = detector.detect([result])[0]

        assert asset.idle_confirmed is False
        assert asset.reason == "P95 usage above request"
