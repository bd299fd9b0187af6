"""
Tests for the cost engine facade
"""

from dataclasses import replace
from datetime import datetime, timedelta
from unittest.mock import Mock, patch

import pytest

from costlens.config_loader import EngineConfig
from costlens.engine import CostEngine
from costlens.errors import EmptyInputError, InvalidScopeError, InvalidTargetError, SourceUnavailableError
from costlens.metric_source import InMemoryMetricSource
from costlens.models import GIB, AggregationLevel, EfficiencyGrade, EntityRef, ResourceMetric
from costlens.topology import NodeCapacity, StaticTopology

END = datetime(2025, 1, 1, 12, 0)
START = END - timedelta(hours=1)

PODS = [
    EntityRef("shop", "web", "web-1", "node-1"),
    EntityRef("shop", "web", "web-2", "node-2"),
    EntityRef("billing", "api", "api-1", "node-1"),
]

# (cpu request, cpu usage, mem request GiB, mem usage GiB) per pod
USAGE = {
    "shop/web-1": (2.0, 1.0, 4.0, 2.0),
    "shop/web-2": (2.0, 0.2, 4.0, 0.4),
    "billing/api-1": (1.0, 0.5, 2.0, 1.0),
}


def fixture_metric(cpu_request, cpu_usage, mem_request_gib, mem_usage_gib):
    return ResourceMetric(
        cpu_request=cpu_request,
        cpu_usage_p95=cpu_usage,
        mem_request=int(mem_request_gib * GIB),
        mem_usage_p95=int(mem_usage_gib * GIB),
        timestamp=END,
        window=timedelta(hours=1),
    )


@pytest.fixture
def config():
    return EngineConfig(
        cluster_name="test-cluster",
        cost_per_vcpu_hour=0.05,
        cost_per_gb_memory_hour=0.01,
        max_workers=4,
        source_timeout_seconds=0.5,
    )


@pytest.fixture
def source():
    source = InMemoryMetricSource()
    for pod in PODS:
        source.set_resource_metrics(pod.namespace, pod.pod, [fixture_metric(*USAGE[pod.pod_id])])
    return source


@pytest.fixture
def topology():
    return StaticTopology(PODS, {'node-1': NodeCapacity(cpu_cores=8.0, mem_bytes=16 * GIB)})


@pytest.fixture
def engine(config, source, topology):
    return CostEngine(config, source, topology)


class TestAggregate:
    """Test scope aggregation"""

    def test_namespace(self, engine):
        result = engine.aggregate(AggregationLevel.NAMESPACE, "shop", START, END)

        assert result.total_billable_cost == pytest.approx(0.28)
        assert result.total_waste_cost == pytest.approx(0.196)
        assert result.skipped_entities == 0
        assert result.partial is False
        assert result.timestamp == END

    def test_cluster(self, engine):
        result = engine.aggregate("cluster", "test-cluster", START, END)

        assert result.total_billable_cost == pytest.approx(0.35)
        assert result.dimensions['global_metrics']['pods'] == 3

    def test_node_uses_topology_capacity(self, engine):
        result = engine.aggregate(AggregationLevel.NODE, "node-1", START, END)

        assert result.dimensions['node_utilization']['cpu_utilization_percent'] == pytest.approx(18.75)

    def test_workload_and_pod(self, engine):
        workload = engine.aggregate(AggregationLevel.WORKLOAD, "shop/web", START, END)
        pod = engine.aggregate(AggregationLevel.POD, "shop/web-2", START, END)

        assert workload.identifier == "shop/web"
        assert workload.dimensions['replica_efficiency']['replica_count'] == 2
        assert pod.identifier == "shop/web-2"
        assert pod.grade == EfficiencyGrade.ZOMBIE

    def test_repeatable(self, engine):
        first = engine.aggregate(AggregationLevel.CLUSTER, "test-cluster", START, END)
        second = engine.aggregate(AggregationLevel.CLUSTER, "test-cluster", START, END)

        assert first.to_dict() == second.to_dict()


class TestPartialRuns:
    """Test exclusion of pods with failing or missing metrics"""

    def test_failed_pod_is_skipped(self, engine, source):
        source.fail_pod("shop", "web-2")
        result = engine.aggregate(AggregationLevel.NAMESPACE, "shop", START, END)

        assert result.skipped_entities == 1
        assert result.partial is True
        assert result.total_billable_cost == pytest.approx(0.14)

    def test_stalled_pod_is_skipped(self, config, source, topology):
        engine = CostEngine(replace(config, source_timeout_seconds=0.2), source, topology)
        source.delay_pod("billing", "api-1", 1.0)

        result = engine.aggregate(AggregationLevel.CLUSTER, "test-cluster", START, END)

        assert result.skipped_entities == 1
        assert result.total_billable_cost == pytest.approx(0.28)

    def test_all_pods_failing_is_fatal(self, engine, source):
        source.fail_pod("shop", "web-1")
        source.fail_pod("shop", "web-2")

        with pytest.raises(SourceUnavailableError):
            engine.aggregate(AggregationLevel.NAMESPACE, "shop", START, END)

    def test_no_data_yields_zero_partial_result(self, engine, source):
        source.set_resource_metrics("billing", "api-1", [])
        result = engine.aggregate(AggregationLevel.NAMESPACE, "billing", START, END)

        assert result.total_billable_cost == 0
        assert result.partial is True

    def test_namespace_without_pods(self, engine, config, source, topology):
        with pytest.raises(EmptyInputError):
            engine.aggregate(AggregationLevel.NAMESPACE, "ghost", START, END)

        lenient = CostEngine(replace(config, empty_policy="zero"), source, topology)
        result = lenient.aggregate(AggregationLevel.NAMESPACE, "ghost", START, END)
        assert result.total_billable_cost == 0
        assert result.partial is False


class TestScopeValidation:
    """Test misconfigured scopes"""

    def test_unknown_level(self, engine):
        with pytest.raises(InvalidScopeError):
            engine.aggregate("region", "eu", START, END)

    def test_wrong_cluster(self, engine):
        with pytest.raises(InvalidScopeError):
            engine.aggregate(AggregationLevel.CLUSTER, "other-cluster", START, END)

    def test_workload_needs_namespace(self, engine):
        with pytest.raises(InvalidScopeError):
            engine.aggregate(AggregationLevel.WORKLOAD, "web", START, END)

    def test_inverted_window(self, engine):
        with pytest.raises(InvalidScopeError):
            engine.aggregate(AggregationLevel.NAMESPACE, "shop", END, START)


class TestDrilldown:
    """Test listing every identifier at a level"""

    def test_namespaces_sorted_by_waste(self, engine):
        listing = engine.aggregate_all(AggregationLevel.NAMESPACE, START, END)

        assert [r.identifier for r in listing] == ["shop", "billing"]
        assert listing[0].total_waste_cost == pytest.approx(0.196)

    def test_skipped_counted_per_scope(self, engine, source):
        source.fail_pod("shop", "web-2")
        listing = {r.identifier: r for r in engine.aggregate_all(AggregationLevel.NODE, START, END)}

        assert listing["node-2"].skipped_entities == 1
        assert listing["node-2"].total_billable_cost == 0
        assert listing["node-1"].skipped_entities == 0


class TestZombiesAndSimulation:
    """Test the zombie and simulation entry points"""

    def test_detect_zombies(self, engine):
        scan = engine.detect_zombies("shop", START, END)

        assert [a.pod for a in scan.assets] == ["web-2"]
        assert scan.assets[0].releasable_cpu == pytest.approx(1.8)
        assert scan.partial is False

    def test_detect_zombies_counts_skipped_pods(self, engine, source):
        source.fail_pod("shop", "web-1")
        scan = engine.detect_zombies("shop", START, END)

        assert scan.skipped_entities == 1
        assert scan.partial is True
        assert scan.to_dict()["partial"] is True
        assert [a.pod for a in scan.assets] == ["web-2"]

    def test_zombie_carries_idle_evidence(self, engine, source):
        source.set_resource_metrics("shop", "web-2", [
            fixture_metric(2.0, 0.05, 4.0, 0.05),
            fixture_metric(2.0, 0.05, 4.0, 0.05),
        ])
        scan = engine.detect_zombies("shop", START, END)

        assert scan.assets[0].idle_confirmed is True
        assert "minimal variation over 2 samples" in scan.assets[0].reason

    def test_simulate(self, engine):
        result = engine.simulate("shop", 70, START, END)

        assert result.current_efficiency == pytest.approx(30.0)
        assert result.projected_waste_cost == pytest.approx(0.084)
        assert result.annual_savings == pytest.approx((0.196 - 0.084) * 8760, rel=1e-4)

    def test_simulate_reports_skipped_pods(self, engine, source):
        source.fail_pod("shop", "web-2")
        result = engine.simulate("shop", 70, START, END)

        assert result.skipped_entities == 1
        assert result.partial is True
        assert result.to_dict()["partial"] is True

    def test_invalid_target_checked_before_fetching(self, config, topology):
        source = Mock()
        engine = CostEngine(config, source, topology)

        with pytest.raises(InvalidTargetError):
            engine.simulate("shop", 120)
        source.resource_metrics.assert_not_called()


class TestConfigAndExport:
    """Test hot reload and metric export"""

    def test_compute_cost_uses_configured_prices(self, engine):
        result = engine.compute_cost(fixture_metric(4.0, 0.4, 8.0, 0.8))
        assert result.billable_cost == pytest.approx(0.28)

    def test_update_config(self, engine, config):
        engine.update_config(replace(config, cost_per_vcpu_hour=0.10))
        result = engine.compute_cost(fixture_metric(4.0, 0.4, 8.0, 0.8))

        assert result.billable_cost == pytest.approx(0.48)

    def test_invalid_config_rejected(self, engine, config):
        with pytest.raises(ValueError):
            engine.update_config(replace(config, grade_zombie_below=95))

        assert engine.config.grade_zombie_below == 20.0

    def test_exporter_notified(self, config, source, topology):
        exporter = Mock()
        engine = CostEngine(config, source, topology, exporter=exporter)

        result = engine.aggregate(AggregationLevel.NAMESPACE, "shop", START, END)
        scan = engine.detect_zombies("shop", START, END)

        exporter.record_aggregation.assert_called_once_with(result)
        exporter.record_zombies.assert_called_once_with("shop", scan.assets)


class TestNamespaceAnalysis:
    """Test the single-collection namespace pass"""

    def test_metrics_fetched_once_per_pod(self, config, source, topology):
        spy = Mock(wraps=source)
        engine = CostEngine(config, spy, topology)

        analysis = engine.analyze_namespace("shop", target_efficiency=70, start=START, end=END)

        assert spy.resource_metrics.call_count == 2
        assert analysis['result'].total_billable_cost == pytest.approx(0.28)
        assert [a.pod for a in analysis['zombies'].assets] == ["web-2"]
        assert analysis['simulation'].projected_waste_cost == pytest.approx(0.084)

    def test_matches_separate_calls(self, engine):
        analysis = engine.analyze_namespace("shop", target_efficiency=70, start=START, end=END)

        assert analysis['result'].to_dict() == engine.aggregate(
            AggregationLevel.NAMESPACE, "shop", START, END).to_dict()
        assert analysis['simulation'].to_dict() == engine.simulate("shop", 70, START, END).to_dict()

    def test_without_target(self, engine):
        analysis = engine.analyze_namespace("shop", start=START, end=END)

        assert analysis['simulation'] is None

    def test_partial_labels_flow_through(self, engine, source):
        source.fail_pod("shop", "web-1")
        analysis = engine.analyze_namespace("shop", target_efficiency=70, start=START, end=END)

        assert analysis['result'].skipped_entities == 1
        assert analysis['zombies'].skipped_entities == 1
        assert analysis['simulation'].skipped_entities == 1


class TestStalledCalls:
    """Test per-call deadlines on a single worker"""

    @pytest.fixture
    def queued_pods(self):
        return [EntityRef("shop", "web", f"web-{i}", "node-1") for i in range(4)]

    @pytest.fixture
    def queued_source(self, queued_pods):
        source = InMemoryMetricSource()
        for pod in queued_pods:
            source.set_resource_metrics(pod.namespace, pod.pod, [fixture_metric(1.0, 0.5, 2.0, 1.0)])
        return source

    def test_slow_first_pod_does_not_starve_the_queue(self, config, queued_pods, queued_source):
        engine = CostEngine(replace(config, max_workers=1, source_timeout_seconds=0.3),
                            queued_source, StaticTopology(queued_pods))
        queued_source.delay_pod("shop", "web-0", 1.0)

        result = engine.aggregate(AggregationLevel.NAMESPACE, "shop", START, END)

        assert result.skipped_entities == 1
        assert result.dimensions['resource_count']['pods'] == 3
        assert engine.stalled_calls == 1

    def test_stalled_calls_are_bounded(self, config, queued_pods, queued_source):
        engine = CostEngine(replace(config, max_workers=1, source_timeout_seconds=0.2),
                            queued_source, StaticTopology(queued_pods))
        queued_source.delay_pod("shop", "web-0", 1.0)
        queued_source.delay_pod("shop", "web-2", 1.0)

        with patch('costlens.engine.STALLED_CALL_LIMIT', 1):
            result = engine.aggregate(AggregationLevel.NAMESPACE, "shop", START, END)

        # web-3 is never started: both threads are held by stalled calls
        assert result.skipped_entities == 3
        assert result.total_billable_cost == pytest.approx(0.07)
        assert engine.stalled_calls <= 2
