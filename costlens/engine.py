"""
Cost Engine
The only entry point used by the API and ETL layers

Flow for one run:
1. Resolve the scope (level, identifier) to pods through the topology
2. Fetch each pod's samples on a bounded worker pool with a per-call timeout
3. Collapse samples and compute dual costs per pod
4. Aggregate through an AggregationContext bound to a precision snapshot

Pods whose metrics fail, time out or are missing are excluded and counted in
`skipped_entities`. If every pod fails the run raises SourceUnavailableError.
"""

import logging
import os
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from threading import Lock
from typing import Dict, List, Optional, Set, Tuple, Union

from costlens.aggregator_factory import AggregatorFactory
from costlens.aggregators import group_results, identifier_for
from costlens.calculator import compute_cost
from costlens.config_loader import EngineConfig
from costlens.context import AggregationContext
from costlens.errors import InvalidInputError, InvalidScopeError, SourceError, SourceUnavailableError
from costlens.metric_source import MetricSource, collapse_samples, usage_stats
from costlens.models import (
    AggregationLevel,
    AggregationResult,
    CostSimulationResult,
    DualCostResult,
    EntityRef,
    ResourceMetric,
    ZombieScan,
)
from costlens.precision import PrecisionConfig
from costlens.simulator import OptimizationSimulator, validate_target
from costlens.topology import Topology
from costlens.zombie_detector import ZombieDetector

logger = logging.getLogger(__name__)

# Abandoned metric calls allowed to hold threads across all runs of one engine
STALLED_CALL_LIMIT = 8


@dataclass(frozen=True)
class CollectedCosts:
    """Per-pod costs for one run plus the pods that could not be costed"""
    results: List[DualCostResult]
    skipped: Set[str]  # pod ids
    failed: int


class CostEngine:
    """Facade over metric collection, costing, aggregation, zombie detection and simulation"""

    def __init__(self, config: EngineConfig, source: MetricSource, topology: Topology, exporter=None):
        self.source = source
        self.topology = topology
        self.exporter = exporter
        self._lock = Lock()
        self._config = config
        self._precision = config.precision()
        self._stalled_lock = Lock()
        self._stalled: Set[Future] = set()

    # ============================================
    # Configuration
    # ============================================

    @property
    def config(self) -> EngineConfig:
        with self._lock:
            return self._config

    def snapshot(self) -> Tuple[EngineConfig, PrecisionConfig]:
        """Config and precision pair for one run; later reloads do not affect it"""
        with self._lock:
            return self._config, self._precision

    def update_config(self, new_config: EngineConfig):
        """Hot reload hook. Runs already in flight keep the snapshot they started with."""
        precision = new_config.precision()
        with self._lock:
            self._config = new_config
            self._precision = precision
        logger.info(
            f"Engine configuration updated: grades={new_config.grade_zombie_below}/"
            f"{new_config.grade_healthy_from}/{new_config.grade_risk_above}, "
            f"prices=${new_config.cost_per_vcpu_hour}/${new_config.cost_per_gb_memory_hour}"
        )

    # ============================================
    # Public surface
    # ============================================

    def compute_cost(self, metric: ResourceMetric, core_price: Optional[float] = None,
                     mem_price: Optional[float] = None, entity: Optional[EntityRef] = None) -> DualCostResult:
        """Cost a single metric; prices default to the configured unit prices"""
        config, precision = self.snapshot()
        return compute_cost(
            metric,
            config.cost_per_vcpu_hour if core_price is None else core_price,
            config.cost_per_gb_memory_hour if mem_price is None else mem_price,
            precision=precision,
            entity=entity,
        )

    def aggregate(self, level: Union[AggregationLevel, str], identifier: str,
                  start: Optional[datetime] = None, end: Optional[datetime] = None) -> AggregationResult:
        """
        Aggregate one scope.

        Raises:
            InvalidScopeError: unknown level, or an identifier that does not fit the level
            EmptyInputError: the scope has no pods and the empty policy is "error"
            SourceUnavailableError: metrics could not be fetched for any pod
        """
        config, precision = self.snapshot()
        parsed = self._parse_level(level)
        start, end = self._window(config, start, end)

        pods = self._scope_pods(config, parsed, identifier)
        collected = self._collect(config, precision, pods, start, end)
        return self._build(parsed, identifier, pods, collected, precision, end)

    def aggregate_all(self, level: Union[AggregationLevel, str],
                      start: Optional[datetime] = None, end: Optional[datetime] = None) -> List[AggregationResult]:
        """Drilldown listing: one result per identifier at `level`, most waste first"""
        config, precision = self.snapshot()
        parsed = self._parse_level(level)
        start, end = self._window(config, start, end)

        pods = self.topology.pods()
        collected = self._collect(config, precision, pods, start, end)

        pods_by_scope: Dict[str, List[EntityRef]] = {}
        for pod in pods:
            pods_by_scope.setdefault(identifier_for(parsed, pod, config.cluster_name), []).append(pod)
        results_by_scope = group_results(collected.results, parsed, config.cluster_name)

        listing = []
        for identifier, scope_pods in pods_by_scope.items():
            pod_ids = {p.pod_id for p in scope_pods}
            scoped = CollectedCosts(
                results=results_by_scope.get(identifier, []),
                skipped=collected.skipped & pod_ids,
                failed=0,
            )
            listing.append(self._build(parsed, identifier, scope_pods, scoped, precision, end))

        listing.sort(key=lambda r: (-r.total_waste_cost, r.identifier))
        return listing

    def detect_zombies(self, namespace: str, start: Optional[datetime] = None,
                       end: Optional[datetime] = None) -> ZombieScan:
        """Zombie and Risk pods of a namespace; the scan records how many pods could not be costed"""
        config, precision = self.snapshot()
        start, end = self._window(config, start, end)

        collected = self._collect(config, precision, self.topology.pods(namespace), start, end)
        return self._scan(namespace, collected, precision, end)

    def simulate(self, namespace: str, target_efficiency: float, start: Optional[datetime] = None,
                 end: Optional[datetime] = None) -> CostSimulationResult:
        validate_target(target_efficiency)
        _, precision = self.snapshot()

        current = self.aggregate(AggregationLevel.NAMESPACE, namespace, start, end)
        return self._project(namespace, current, target_efficiency, precision)

    def analyze_namespace(self, namespace: str, target_efficiency: Optional[float] = None,
                          start: Optional[datetime] = None, end: Optional[datetime] = None) -> Dict:
        """
        Aggregate, zombie scan and (optionally) simulation of one namespace from a single
        metric collection.

        Returns:
            {'result': AggregationResult, 'zombies': ZombieScan,
             'simulation': CostSimulationResult or None}
        """
        if target_efficiency is not None:
            validate_target(target_efficiency)
        config, precision = self.snapshot()
        start, end = self._window(config, start, end)

        pods = self.topology.pods(namespace)
        collected = self._collect(config, precision, pods, start, end)
        result = self._build(AggregationLevel.NAMESPACE, namespace, pods, collected, precision, end)

        return {
            'result': result,
            'zombies': self._scan(namespace, collected, precision, end),
            'simulation': (
                self._project(namespace, result, target_efficiency, precision)
                if target_efficiency is not None else None
            ),
        }

    def _scan(self, namespace: str, collected: CollectedCosts, precision: PrecisionConfig,
              detected_at: datetime) -> ZombieScan:
        assets = ZombieDetector(precision.reference_node).detect(collected.results, detected_at=detected_at)
        scan = ZombieScan(
            namespace=namespace,
            assets=assets,
            detected_at=detected_at,
            skipped_entities=len(collected.skipped),
        )
        if self.exporter:
            self.exporter.record_zombies(namespace, scan.assets)
        return scan

    def _project(self, namespace: str, current: AggregationResult, target_efficiency: float,
                 precision: PrecisionConfig) -> CostSimulationResult:
        result = OptimizationSimulator(precision).simulate(
            namespace, current, target_efficiency, simulated_at=current.timestamp
        )
        if self.exporter:
            self.exporter.record_simulation(result)
        return result

    # ============================================
    # Scope resolution
    # ============================================

    @staticmethod
    def _parse_level(level) -> AggregationLevel:
        parsed = AggregationLevel.parse(level)
        if parsed is None:
            raise InvalidScopeError(f"Unknown aggregation level '{level}'")
        return parsed

    @staticmethod
    def _window(config: EngineConfig, start: Optional[datetime],
                end: Optional[datetime]) -> Tuple[datetime, datetime]:
        end = end or datetime.now()
        start = start or end - timedelta(hours=config.lookback_hours)
        if start >= end:
            raise InvalidScopeError(f"Window start {start.isoformat()} is not before end {end.isoformat()}")
        return start, end

    @staticmethod
    def _split(identifier: str, level: AggregationLevel) -> Tuple[str, str]:
        namespace, sep, name = identifier.partition("/")
        if not sep or not namespace or not name:
            raise InvalidScopeError(f"{level.value} identifier must be '<namespace>/<name>', got '{identifier}'")
        return namespace, name

    def _scope_pods(self, config: EngineConfig, level: AggregationLevel, identifier: str) -> List[EntityRef]:
        if not identifier:
            raise InvalidScopeError(f"{level.value} identifier cannot be empty")

        if level == AggregationLevel.CLUSTER:
            if identifier != config.cluster_name:
                raise InvalidScopeError(
                    f"Cluster '{identifier}' is not served by this engine (cluster '{config.cluster_name}')"
                )
            return self.topology.pods()

        if level == AggregationLevel.NAMESPACE:
            return self.topology.pods(identifier)

        if level == AggregationLevel.NODE:
            return [p for p in self.topology.pods() if p.node == identifier]

        namespace, name = self._split(identifier, level)
        if level == AggregationLevel.WORKLOAD:
            return [p for p in self.topology.pods(namespace) if p.workload == name]
        return [p for p in self.topology.pods(namespace) if p.pod == name]

    def _metadata(self, level: AggregationLevel, identifier: str, pods: List[EntityRef]) -> Dict:
        if level == AggregationLevel.NODE:
            capacity = self.topology.node_capacity(identifier)
            if capacity is None:
                return {}
            return {'cpu_capacity': capacity.cpu_cores, 'mem_capacity': capacity.mem_bytes}

        if level in (AggregationLevel.WORKLOAD, AggregationLevel.POD) and pods:
            first = pods[0]
            return {
                'namespace': first.namespace,
                'workload_type': first.workload_kind,
                'workload_name': first.workload,
                'node_name': first.node,
            }
        return {}

    # ============================================
    # Collection and aggregation
    # ============================================

    @property
    def stalled_calls(self) -> int:
        """Metric calls abandoned after their timeout that are still running"""
        with self._stalled_lock:
            self._stalled = {f for f in self._stalled if not f.done()}
            return len(self._stalled)

    def _abandon(self, future: Future):
        with self._stalled_lock:
            self._stalled.add(future)

    def _collect(self, config: EngineConfig, precision: PrecisionConfig, pods: List[EntityRef],
                 start: datetime, end: datetime) -> CollectedCosts:
        """
        Fetch and cost every pod; failed, stalled or empty pods are skipped.

        Each call gets its own deadline when it is submitted, so a pod queued
        behind a slow one is never charged for the wait. Calls that miss their
        deadline are abandoned; threads cannot be interrupted, so abandoned calls
        are tracked engine-wide and at most STALLED_CALL_LIMIT of them may hold
        threads at once. Once that limit is reached the remaining pods of the
        run are skipped instead of starting more threads.
        """
        if not pods:
            return CollectedCosts(results=[], skipped=set(), failed=0)

        timeout = config.source_timeout_seconds
        workers = max(1, min(config.max_workers, os.cpu_count() or 1, len(pods)))
        headroom = max(0, STALLED_CALL_LIMIT - self.stalled_calls)
        executor = ThreadPoolExecutor(max_workers=workers + headroom, thread_name_prefix="costlens-metrics")

        queue = deque(pods)
        in_flight: Dict[Future, Tuple[EntityRef, float]] = {}
        abandoned = 0
        results: List[DualCostResult] = []
        skipped: Set[str] = set()
        failed = 0

        try:
            while queue or in_flight:
                while queue and len(in_flight) < workers and len(in_flight) + abandoned < workers + headroom:
                    pod = queue.popleft()
                    future = executor.submit(
                        self.source.resource_metrics, pod.namespace, pod.workload, pod.pod, start, end
                    )
                    in_flight[future] = (pod, time.monotonic() + timeout)

                if not in_flight:
                    logger.warning(
                        f"{self.stalled_calls} stalled metric calls hold the pool, "
                        f"excluding {len(queue)} remaining pods"
                    )
                    for pod in queue:
                        skipped.add(pod.pod_id)
                        failed += 1
                    queue.clear()
                    break

                next_deadline = min(deadline for _, deadline in in_flight.values())
                done, _ = wait(
                    list(in_flight),
                    timeout=max(0.0, next_deadline - time.monotonic()),
                    return_when=FIRST_COMPLETED,
                )

                for future in done:
                    pod, _ = in_flight.pop(future)
                    result, was_failure = self._cost_pod(config, precision, pod, future)
                    if result is None:
                        skipped.add(pod.pod_id)
                        failed += int(was_failure)
                    else:
                        results.append(result)

                now = time.monotonic()
                for future, (pod, deadline) in list(in_flight.items()):
                    if deadline > now or future.done():
                        continue
                    del in_flight[future]
                    if not future.cancel():
                        self._abandon(future)
                        abandoned += 1
                    logger.warning(f"Metrics for {pod.pod_id} timed out after {timeout}s, excluding")
                    skipped.add(pod.pod_id)
                    failed += 1
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        if failed == len(pods):
            raise SourceUnavailableError(f"Metric source failed for all {len(pods)} pods in scope")

        results.sort(key=lambda r: r.identifier)
        if skipped:
            logger.warning(f"Partial run: {len(skipped)} of {len(pods)} pods excluded")
        return CollectedCosts(results=results, skipped=skipped, failed=failed)

    def _cost_pod(self, config: EngineConfig, precision: PrecisionConfig, pod: EntityRef,
                  future: Future) -> Tuple[Optional[DualCostResult], bool]:
        """Cost one finished call. Returns (result, False), or (None, counts_as_failure)"""
        try:
            samples = future.result()
        except SourceError as e:
            logger.warning(f"Metrics for {pod.pod_id} unavailable, excluding: {e}")
            return None, True

        metric = collapse_samples(samples)
        if metric is None:
            logger.info(f"No samples for {pod.pod_id} in window, excluding")
            return None, False

        try:
            result = compute_cost(
                metric,
                config.cost_per_vcpu_hour,
                config.cost_per_gb_memory_hour,
                precision=precision,
                entity=pod,
            )
        except InvalidInputError as e:
            logger.warning(f"Malformed metrics for {pod.pod_id}, excluding: {e}")
            return None, False
        return replace(result, usage_stats=usage_stats(samples)), False

    def _build(self, level: AggregationLevel, identifier: str, pods: List[EntityRef],
               collected: CollectedCosts, precision: PrecisionConfig, timestamp: datetime) -> AggregationResult:
        # Pods exist but none had data: report a zero-valued partial result rather than "empty"
        if collected.skipped and not collected.results:
            precision = replace(precision, empty_policy="zero")

        aggregator = AggregatorFactory.create_aggregator(level, identifier, self._metadata(level, identifier, pods))
        context = AggregationContext(aggregator, collected.results, precision=precision, timestamp=timestamp)

        try:
            result = context.execute()
        except Exception:
            if self.exporter:
                self.exporter.record_failure(level.value)
            raise

        result = replace(result, skipped_entities=len(collected.skipped))
        if self.exporter:
            self.exporter.record_aggregation(result)

        logger.info(
            f"Aggregated {level.value} '{identifier}': billable=${result.total_billable_cost}, "
            f"waste=${result.total_waste_cost}, efficiency={result.efficiency_score}%"
            + (f", partial ({result.skipped_entities} skipped)" if result.partial else "")
        )
        return result
