"""
Tests for the periodic runner
"""
from datetime import datetime
from unittest.mock import Mock, patch

import pytest

from costlens.cloud_billing import FetchAccountSummaryResponse
from costlens.config_loader import ConfigLoader, EngineConfig
from costlens.errors import SourceUnavailableError
from costlens.metric_source import InMemoryMetricSource
from costlens.prometheus_source import PrometheusMetricSource
from costlens.runner import CostRunner, build_engine
from costlens.topology import KubernetesTopology, StaticTopology

END = datetime(2025, 1, 1, 12, 0)


@pytest.fixture
def engine():
    config = EngineConfig(cluster_name="demo", max_workers=4, source_timeout_seconds=5.0)
    with patch.dict('os.environ', {'DEMO_SCENARIO': 'zombie'}):
        return build_engine(config, "memory")


class TestBuildEngine:
    """Test backend wiring"""

    def test_memory_mode(self, engine):
        assert isinstance(engine.source, InMemoryMetricSource)
        assert engine.source.scenario == "zombie"
        assert isinstance(engine.topology, StaticTopology)
        assert len(engine.topology.pods()) == 30

    @patch('costlens.runner.KubernetesTopology')
    @patch('costlens.prometheus_source.PrometheusConnect')
    def test_prometheus_mode(self, mock_connect, mock_topology):
        config = EngineConfig(prometheus_url="http://prom:9090", query_step="1m")
        with patch.dict('os.environ', {}, clear=True):
            engine = build_engine(config, "prometheus")

        assert isinstance(engine.source, PrometheusMetricSource)
        assert engine.source.step == "1m"
        assert engine.topology is mock_topology.return_value


class TestRunOnce:
    """Test a single runner pass"""

    def test_full_pass(self, engine):
        summary = CostRunner(engine, simulation_target=80).run_once(end=END)

        assert summary['errors'] == {}
        assert summary['cluster'].identifier == "demo"
        assert set(summary['namespaces']) == set(engine.topology.namespaces())

        default = summary['namespaces']['default']
        assert default['result'].total_billable_cost > 0
        assert default['simulation'].applied is True
        assert default['simulation'].annual_savings > 0
        assert any(e['zombies'].assets for e in summary['namespaces'].values())

    def test_namespace_totals_add_up_to_cluster(self, engine):
        summary = CostRunner(engine).run_once(end=END)

        namespace_total = sum(e['result'].total_billable_cost for e in summary['namespaces'].values())
        assert namespace_total == pytest.approx(summary['cluster'].total_billable_cost, abs=1e-5)

    def test_without_simulation(self, engine):
        summary = CostRunner(engine).run_once(end=END)

        assert all(e['simulation'] is None for e in summary['namespaces'].values())

    def test_cluster_failure_stops_pass(self):
        engine = Mock()
        engine.config = EngineConfig(cluster_name="demo")
        engine.aggregate.side_effect = SourceUnavailableError("prometheus down")

        summary = CostRunner(engine).run_once(end=END)

        assert summary['cluster'] is None
        assert 'prometheus down' in summary['errors']['demo']
        engine.analyze_namespace.assert_not_called()

    def test_namespace_listing_failure_is_recorded(self, engine):
        engine.topology = Mock(wraps=engine.topology)
        engine.topology.namespaces.side_effect = SourceUnavailableError("api server down")

        summary = CostRunner(engine).run_once(end=END)

        assert summary['cluster'] is not None
        assert summary['namespaces'] == {}
        assert 'api server down' in summary['errors']['namespaces']

    def test_each_pod_fetched_once_per_namespace(self, engine):
        pod_count = len(engine.topology.pods())
        engine.source = Mock(wraps=engine.source)

        CostRunner(engine, simulation_target=80).run_once(end=END)

        # one cluster pass plus one pass per namespace
        assert engine.source.resource_metrics.call_count == 2 * pod_count

    def test_namespace_failure_is_isolated(self, engine):
        for pod in engine.topology.pods("monitoring"):
            engine.source.fail_pod(pod.namespace, pod.pod)

        summary = CostRunner(engine).run_once(end=END)

        assert list(summary['errors']) == ["monitoring"]
        assert "monitoring" not in summary['namespaces']
        assert summary['cluster'].partial is True

    def test_billing_reconciliation(self, engine):
        fetcher = Mock()
        fetcher.fetch_account_summary.return_value = FetchAccountSummaryResponse(
            billing_cycle="2025-01", total_amount=100.0, currency="USD", by_category={'compute': 80.0}
        )

        CostRunner(engine, billing_fetcher=fetcher).run_once(end=END)

        request = fetcher.fetch_account_summary.call_args.args[0]
        assert request.billing_cycle == "2025-01"

    def test_billing_failure_does_not_fail_pass(self, engine):
        fetcher = Mock()
        fetcher.fetch_account_summary.side_effect = SourceUnavailableError("gateway down")

        summary = CostRunner(engine, billing_fetcher=fetcher).run_once(end=END)

        assert summary['cluster'] is not None


class TestLifecycle:
    """Test reload wiring and the main loop"""

    def test_registers_reload_callback(self, engine):
        loader = Mock(spec=ConfigLoader)

        CostRunner(engine, config_loader=loader)

        loader.register_reload_callback.assert_called_once_with(engine.update_config)

    @patch('costlens.runner.signal.signal')
    def test_run_stops_on_shutdown(self, mock_signal, engine):
        runner = CostRunner(engine)
        runner.run_once = Mock(side_effect=lambda: runner.shutdown_event.set())

        runner.run()

        runner.run_once.assert_called_once()
        assert mock_signal.call_count == 2

    @patch('costlens.runner.signal.signal')
    def test_run_survives_failing_cycle(self, mock_signal, engine):
        runner = CostRunner(engine)
        calls = []

        def cycle():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("unexpected")
            runner.shutdown_event.set()

        runner.run_once = Mock(side_effect=cycle)
        runner.shutdown_event.wait = Mock(return_value=False)

        runner.run()

        assert runner.run_once.call_count == 2
