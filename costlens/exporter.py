"""
Prometheus Metrics Exporter
Publishes aggregation, zombie and simulation results as Prometheus gauges
"""

import logging
from typing import Iterable, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Info, REGISTRY, start_http_server

from costlens.models import AggregationResult, CostSimulationResult, EfficiencyGrade, ZombieAsset

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


class CostMetricsExporter:
    """Export cost engine results to Prometheus"""

    def __init__(self, port: int = 8000, registry: Optional[CollectorRegistry] = None):
        self.port = port
        self.registry = registry or REGISTRY
        level_labels = ['level', 'identifier']

        self.engine_info = Info(
            'costlens_engine',
            'Cost engine information',
            registry=self.registry
        )

        self.billable_cost = Gauge(
            'costlens_billable_cost_usd',
            'Billable (request-based) cost over the aggregation window',
            level_labels, registry=self.registry
        )
        self.usage_cost = Gauge(
            'costlens_usage_cost_usd',
            'Usage (P95-based) cost over the aggregation window',
            level_labels, registry=self.registry
        )
        self.waste_cost = Gauge(
            'costlens_waste_cost_usd',
            'Waste cost (billable - usage) over the aggregation window',
            level_labels, registry=self.registry
        )
        self.efficiency_score = Gauge(
            'costlens_efficiency_score_percent',
            'Efficiency score (usage / billable)',
            level_labels, registry=self.registry
        )
        self.skipped_entities = Gauge(
            'costlens_skipped_entities',
            'Entities excluded from the aggregate because metrics were missing',
            level_labels, registry=self.registry
        )

        self.zombie_pods = Gauge(
            'costlens_flagged_pods',
            'Pods flagged by the zombie detector',
            ['namespace', 'grade'], registry=self.registry
        )
        self.releasable_cores = Gauge(
            'costlens_releasable_cpu_cores',
            'CPU cores releasable from zombie pods',
            ['namespace'], registry=self.registry
        )
        self.annual_savings = Gauge(
            'costlens_annual_savings_usd',
            'Projected annual savings at the simulated target efficiency',
            ['namespace'], registry=self.registry
        )

        self.aggregation_runs = Counter(
            'costlens_aggregation_runs_total',
            'Aggregation runs by outcome',
            ['level', 'outcome'], registry=self.registry
        )

    def start(self):
        """Start the metrics HTTP server"""
        try:
            start_http_server(self.port, registry=self.registry)
            logger.info(f"Prometheus metrics server started on port {self.port}")
            self.engine_info.info({'version': VERSION})
        except OSError as e:
            logger.error(f"Failed to start metrics server on port {self.port}: {e}")

    def record_aggregation(self, result: AggregationResult):
        labels = {'level': result.level.value, 'identifier': result.identifier}
        self.billable_cost.labels(**labels).set(result.total_billable_cost)
        self.usage_cost.labels(**labels).set(result.total_usage_cost)
        self.waste_cost.labels(**labels).set(result.total_waste_cost)
        self.efficiency_score.labels(**labels).set(result.efficiency_score)
        self.skipped_entities.labels(**labels).set(result.skipped_entities)
        outcome = 'partial' if result.partial else ('degraded' if result.degraded else 'complete')
        self.aggregation_runs.labels(level=result.level.value, outcome=outcome).inc()

    def record_failure(self, level: str):
        self.aggregation_runs.labels(level=level, outcome='failed').inc()

    def record_zombies(self, namespace: str, assets: Iterable[ZombieAsset]):
        assets = list(assets)
        for grade in (EfficiencyGrade.ZOMBIE, EfficiencyGrade.RISK):
            count = sum(1 for a in assets if a.grade == grade)
            self.zombie_pods.labels(namespace=namespace, grade=grade.value).set(count)
        self.releasable_cores.labels(namespace=namespace).set(sum(a.releasable_cpu for a in assets))

    def record_simulation(self, result: CostSimulationResult):
        self.annual_savings.labels(namespace=result.namespace).set(result.annual_savings)
