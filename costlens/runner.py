"""
Cost Engine Runner
Periodically aggregates the cluster and every namespace, scans for zombies,
projects savings and publishes the results as Prometheus metrics
"""

import logging
import os
import signal
import sys
import threading
from datetime import datetime
from typing import Dict, Optional

from costlens.cloud_billing import FetchAccountSummaryRequest, new_fetcher, reconcile
from costlens.config_loader import ConfigLoader, EngineConfig
from costlens.config_validator import ConfigValidator
from costlens.engine import CostEngine
from costlens.errors import CostEngineError
from costlens.exporter import CostMetricsExporter
from costlens.logging_config import get_logger, setup_structured_logging
from costlens.metric_source import InMemoryMetricSource
from costlens.models import AggregationLevel
from costlens.prometheus_source import create_prometheus_source
from costlens.topology import KubernetesTopology, StaticTopology

logger = logging.getLogger(__name__)


class CostRunner:
    """Drives the engine on a fixed interval until shutdown is requested"""

    def __init__(self, engine: CostEngine, config_loader: Optional[ConfigLoader] = None,
                 simulation_target: Optional[float] = None, billing_fetcher=None):
        self.engine = engine
        self.config_loader = config_loader
        self.simulation_target = simulation_target
        self.billing_fetcher = billing_fetcher
        self.shutdown_event = threading.Event()

        if config_loader:
            config_loader.register_reload_callback(engine.update_config)

    def _setup_signal_handlers(self):
        def handle_signal(signum, frame):
            logger.info(f"Received signal {signum}, initiating graceful shutdown...")
            self.shutdown_event.set()

        signal.signal(signal.SIGTERM, handle_signal)
        signal.signal(signal.SIGINT, handle_signal)

    def run_once(self, end: Optional[datetime] = None) -> Dict:
        """One full pass; a failing namespace is logged and does not stop the others"""
        end = end or datetime.now()
        config = self.engine.config
        summary = {'cluster': None, 'namespaces': {}, 'errors': {}}

        try:
            cluster = self.engine.aggregate(AggregationLevel.CLUSTER, config.cluster_name, end=end)
            summary['cluster'] = cluster
        except CostEngineError as e:
            logger.error(f"Cluster aggregation failed: {e}")
            summary['errors'][config.cluster_name] = str(e)
            return summary

        try:
            namespaces = self.engine.topology.namespaces()
        except CostEngineError as e:
            logger.error(f"Namespace listing failed: {e}")
            summary['errors']['namespaces'] = str(e)
            namespaces = []

        for namespace in namespaces:
            try:
                summary['namespaces'][namespace] = self.engine.analyze_namespace(
                    namespace, target_efficiency=self.simulation_target or None, end=end
                )
            except CostEngineError as e:
                logger.error(f"Namespace {namespace} failed: {e}")
                summary['errors'][namespace] = str(e)

        if self.billing_fetcher:
            self._reconcile(cluster, end)

        logger.info(
            f"Cycle complete: cluster billable=${cluster.total_billable_cost}, "
            f"waste=${cluster.total_waste_cost}, {len(summary['namespaces'])} namespaces, "
            f"{len(summary['errors'])} errors"
        )
        return summary

    def _reconcile(self, cluster, end: datetime):
        request = FetchAccountSummaryRequest(billing_cycle=end.strftime("%Y-%m"), period_type="month")
        try:
            report = reconcile(cluster, self.billing_fetcher.fetch_account_summary(request))
        except CostEngineError as e:
            logger.warning(f"Billing reconciliation skipped: {e}")
            return
        logger.info(
            f"Billing reconciliation {report['billing_cycle']}: engine ${report['engine_billable_cost']} "
            f"vs cloud {report['cloud_amount']} {report['currency']} ({report['difference_percent']}%)"
        )

    def run(self):
        self._setup_signal_handlers()
        if self.config_loader:
            self.config_loader.start_watching()

        logger.info("Cost engine runner started")
        try:
            while not self.shutdown_event.is_set():
                try:
                    self.run_once()
                except Exception as e:
                    logger.error(f"Error in cost cycle: {e}", exc_info=True)
                self.shutdown_event.wait(timeout=self.engine.config.check_interval)
        finally:
            if self.config_loader:
                self.config_loader.stop_watching_configmap()
            logger.info("Cost engine runner stopped")


def build_engine(config: EngineConfig, mode: str, exporter: Optional[CostMetricsExporter] = None) -> CostEngine:
    """Wire the engine to live (prometheus) or synthetic (memory) backends"""
    if mode == "memory":
        source = InMemoryMetricSource(scenario=os.getenv('DEMO_SCENARIO', 'standard'))
        topology = StaticTopology.generate(nodes=source.nodes)
    else:
        source = create_prometheus_source(
            url=config.prometheus_url, timeout=config.source_timeout_seconds, step=config.query_step
        )
        topology = KubernetesTopology()
    return CostEngine(config, source, topology, exporter=exporter)


def main():
    """Main entry point"""
    setup_structured_logging(
        log_level=os.getenv('LOG_LEVEL', 'INFO'),
        json_format=os.getenv('LOG_FORMAT', 'json').lower() == 'json',
        extra_fields={'component': 'costlens'}
    )
    log = get_logger(__name__)

    mode = os.getenv('METRIC_SOURCE', 'prometheus').lower()
    namespace = os.getenv('OPERATOR_NAMESPACE', 'costlens-system')
    configmap_name = os.getenv('CONFIGMAP_NAME', 'costlens-config')

    config_loader = ConfigLoader(namespace=namespace, configmap_name=configmap_name,
                                 use_kubernetes=mode != "memory")
    try:
        config = config_loader.load_config()
        target = os.getenv('SIMULATION_TARGET')
        simulation_target = ConfigValidator.validate_percent(target, 'SIMULATION_TARGET') if target else None
    except ValueError as e:
        log.error(f"Invalid configuration: {e}")
        sys.exit(1)

    exporter = CostMetricsExporter(port=config.exporter_port)
    exporter.start()

    try:
        engine = build_engine(config, mode, exporter)
    except Exception as e:
        log.error(f"Failed to initialise metric source or topology: {e}", exc_info=True)
        sys.exit(1)

    runner = CostRunner(
        engine,
        config_loader=config_loader,
        simulation_target=simulation_target,
        billing_fetcher=new_fetcher(config.billing_config()),
    )
    runner.run()


if __name__ == "__main__":
    main()
