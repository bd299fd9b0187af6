"""
Metric Source Adapter
Interface to the time-series backend plus a deterministic in-memory source

A metric source returns sampled windows of request and P95 usage for pods,
nodes and the cluster, along with throttling and saturation readings.
Implementations translate backend failures into SourceUnavailableError or
SourceTimeoutError.
"""

import logging
import time
import zlib
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

import numpy as np

from costlens.errors import SourceUnavailableError
from costlens.models import GIB, ResourceMetric, SaturationMetric, ThrottlingMetric, UsageStats

logger = logging.getLogger(__name__)


class MetricSource(ABC):
    """Capability set every metrics backend provides"""

    @abstractmethod
    def resource_metrics(self, namespace: str, workload: str, pod: str,
                         start: datetime, end: datetime) -> List[ResourceMetric]:
        ...

    @abstractmethod
    def node_metrics(self, node: str, start: datetime, end: datetime) -> List[ResourceMetric]:
        ...

    @abstractmethod
    def cluster_metrics(self, start: datetime, end: datetime) -> List[ResourceMetric]:
        ...

    @abstractmethod
    def throttling_metrics(self, namespace: str, pod: str,
                           start: datetime, end: datetime) -> List[ThrottlingMetric]:
        ...

    @abstractmethod
    def saturation_metrics(self, resource_type: str,
                           start: datetime, end: datetime) -> List[SaturationMetric]:
        ...

    @abstractmethod
    def health_check(self) -> bool:
        """Return True when the backend answers; raise SourceUnavailableError otherwise"""
        ...


def collapse_samples(samples: Sequence[ResourceMetric]) -> Optional[ResourceMetric]:
    """
    Collapse one entity's samples into a single metric covering the whole run.

    - request: window-weighted mean of the sampled requests
    - usage: 95th percentile of the per-sample P95 usages
    - window: sum of the sample windows

    Returns None when there are no samples.
    """
    if not samples:
        return None
    if len(samples) == 1:
        return samples[0]

    weights = np.array([s.window.total_seconds() for s in samples], dtype=float)
    if weights.sum() <= 0:
        weights = np.ones(len(samples))

    cpu_request = float(np.average([s.cpu_request for s in samples], weights=weights))
    mem_request = float(np.average([s.mem_request for s in samples], weights=weights))
    cpu_usage = float(np.percentile([s.cpu_usage_p95 for s in samples], 95))
    mem_usage = float(np.percentile([s.mem_usage_p95 for s in samples], 95))

    return ResourceMetric(
        cpu_request=cpu_request,
        cpu_usage_p95=cpu_usage,
        mem_request=int(round(mem_request)),
        mem_usage_p95=int(round(mem_usage)),
        timestamp=max(s.timestamp for s in samples),
        window=sum((s.window for s in samples), timedelta(0)),
    )


def usage_stats(samples: Sequence[ResourceMetric]) -> Optional[UsageStats]:
    """Mean and standard deviation of the sampled usage; None when there are no samples"""
    if not samples:
        return None
    cpu = np.array([s.cpu_usage_p95 for s in samples], dtype=float)
    mem = np.array([s.mem_usage_p95 for s in samples], dtype=float)
    return UsageStats(
        cpu_avg=float(cpu.mean()),
        cpu_stddev=float(cpu.std()),
        mem_avg=float(mem.mean()),
        mem_stddev=float(mem.std()),
        sample_count=len(samples),
    )


# ============================================
# In-memory source
# ============================================

SCENARIOS = ("standard", "zombie", "risk", "empty")

SAMPLE_COUNTS = {
    'small': 10,
    'medium': 30,
    'large': 100,
}

# (base, variation) per scope; CPU in cores, memory in GiB
CPU_SHAPES = {
    'pod': (0.5, 4.0),
    'node': (8.0, 16.0),
    'cluster': (32.0, 64.0),
}
MEM_SHAPES = {
    'pod': (1.0, 3.0),
    'node': (16.0, 32.0),
    'cluster': (64.0, 128.0),
}

# Request multiplier per scenario
CPU_REQUEST_SCALE = {'zombie': 5.0, 'risk': 0.8}
MEM_REQUEST_SCALE = {'zombie': 4.0, 'risk': 0.7}

# Usage as a fraction of request: (low, spread)
CPU_USAGE_RATIO = {
    'standard': (0.3, 0.4),
    'zombie': (0.05, 0.1),
    'risk': (0.85, 0.15),
    'empty': (0.0, 0.0),
}
MEM_USAGE_RATIO = {
    'standard': (0.25, 0.5),
    'zombie': (0.08, 0.12),
    'risk': (0.9, 0.1),
    'empty': (0.0, 0.0),
}

THROTTLING_RATE = {
    'standard': (0.01, 0.05),
    'risk': (0.1, 0.2),
    'zombie': (0.0, 0.0),
    'empty': (0.0, 0.0),
}
SATURATION = {
    'standard': (40.0, 30.0),
    'risk': (85.0, 15.0),
    'zombie': (10.0, 20.0),
    'empty': (0.0, 0.0),
}


class InMemoryMetricSource(MetricSource):
    """
    Deterministic metric source for tests, demos and offline runs.

    Samples are generated from a seeded numpy generator keyed by the queried
    entity, so the same query always returns the same data regardless of the
    order in which worker threads issue it. Explicit fixtures override the
    generated data, and individual pods can be configured to fail or stall.
    """

    def __init__(
        self,
        scenario: str = "standard",
        data_size: str = "small",
        seed: int = 42,
        nodes: Optional[List[str]] = None,
        latency: float = 0.0
    ):
        if scenario not in SCENARIOS:
            raise ValueError(f"Unknown scenario '{scenario}', expected one of {SCENARIOS}")
        if data_size not in SAMPLE_COUNTS:
            raise ValueError(f"Unknown data size '{data_size}', expected one of {tuple(SAMPLE_COUNTS)}")

        self.scenario = scenario
        self.sample_count = SAMPLE_COUNTS[data_size]
        self.seed = seed
        self.nodes = nodes or ["node-1", "node-2", "node-3", "node-4"]
        self.latency = latency
        self.healthy = True

        self._fixtures: Dict[str, List[ResourceMetric]] = {}
        self._failures: Dict[str, Exception] = {}
        self._delays: Dict[str, float] = {}

    # ----- fixture configuration -----

    def set_resource_metrics(self, namespace: str, pod: str, metrics: List[ResourceMetric]):
        self._fixtures[f"{namespace}/{pod}"] = list(metrics)

    def fail_pod(self, namespace: str, pod: str, error: Optional[Exception] = None):
        self._failures[f"{namespace}/{pod}"] = error or SourceUnavailableError(
            f"Simulated metrics failure for {namespace}/{pod}"
        )

    def delay_pod(self, namespace: str, pod: str, seconds: float):
        self._delays[f"{namespace}/{pod}"] = seconds

    # ----- MetricSource -----

    def resource_metrics(self, namespace, workload, pod, start, end):
        key = f"{namespace}/{pod}"
        self._wait(self._delays.get(key, 0.0))
        if key in self._failures:
            raise self._failures[key]
        if key in self._fixtures:
            return list(self._fixtures[key])
        if self.scenario == "empty":
            return []

        rng = self._rng("pod", key)
        return [
            self._sample(rng, 'pod', start, end, i, self.sample_count)
            for i in range(self.sample_count)
        ]

    def node_metrics(self, node, start, end):
        self._wait(0.0)
        if self.scenario == "empty":
            return []
        rng = self._rng("node", node)
        count = max(1, self.sample_count // 2)
        return [self._sample(rng, 'node', start, end, i, count) for i in range(count)]

    def cluster_metrics(self, start, end):
        self._wait(0.0)
        if self.scenario == "empty":
            return []
        rng = self._rng("cluster", "cluster")
        scale = len(self.nodes)
        samples = []
        for i in range(5):
            s = self._sample(rng, 'cluster', start, end, i, 5)
            samples.append(ResourceMetric(
                cpu_request=s.cpu_request * scale,
                cpu_usage_p95=s.cpu_usage_p95 * scale,
                mem_request=s.mem_request * scale,
                mem_usage_p95=s.mem_usage_p95 * scale,
                timestamp=s.timestamp,
                window=s.window,
            ))
        return samples

    def throttling_metrics(self, namespace, pod, start, end):
        self._wait(0.0)
        rng = self._rng("throttling", f"{namespace}/{pod}")
        count = max(1, self.sample_count // 3)
        low, spread = THROTTLING_RATE[self.scenario]
        metrics = []
        for i in range(count):
            rate = low + rng.random() * spread
            metrics.append(ThrottlingMetric(
                namespace=namespace,
                pod=pod,
                container=f"container-{i + 1}",
                throttled_periods=rate * 60.0,
                total_periods=60.0,
                timestamp=self._timestamp(start, end, i, count),
            ))
        return metrics

    def saturation_metrics(self, resource_type, start, end):
        self._wait(0.0)
        rng = self._rng("saturation", resource_type)
        count = max(1, self.sample_count // 2)
        low, spread = SATURATION[self.scenario]
        return [
            SaturationMetric(
                resource_type=resource_type,
                node=self.nodes[i % len(self.nodes)],
                saturation=low + rng.random() * spread,
                timestamp=self._timestamp(start, end, i, count),
            )
            for i in range(count)
        ]

    def health_check(self) -> bool:
        if not self.healthy:
            raise SourceUnavailableError("In-memory metric source marked unhealthy")
        return True

    # ----- generation helpers -----

    def _rng(self, kind: str, key: str) -> np.random.Generator:
        return np.random.default_rng(zlib.crc32(f"{self.seed}:{kind}:{key}".encode()))

    def _wait(self, extra: float):
        pause = self.latency + extra
        if pause > 0:
            time.sleep(pause)

    def _sample(self, rng: np.random.Generator, scope: str, start: datetime, end: datetime,
                index: int, count: int) -> ResourceMetric:
        cpu_base, cpu_var = CPU_SHAPES[scope]
        mem_base, mem_var = MEM_SHAPES[scope]
        cpu_request = cpu_base * CPU_REQUEST_SCALE.get(self.scenario, 1.0) + rng.random() * cpu_var
        mem_request_gib = mem_base * MEM_REQUEST_SCALE.get(self.scenario, 1.0) + rng.random() * mem_var

        cpu_low, cpu_spread = CPU_USAGE_RATIO[self.scenario]
        mem_low, mem_spread = MEM_USAGE_RATIO[self.scenario]
        cpu_usage = cpu_request * (cpu_low + rng.random() * cpu_spread)
        mem_usage_gib = mem_request_gib * (mem_low + rng.random() * mem_spread)

        return ResourceMetric(
            cpu_request=round(cpu_request, 3),
            cpu_usage_p95=round(cpu_usage, 3),
            mem_request=int(mem_request_gib * GIB),
            mem_usage_p95=int(mem_usage_gib * GIB),
            timestamp=self._timestamp(start, end, index, count),
            window=self._window(start, end, count),
        )

    @staticmethod
    def _window(start: datetime, end: datetime, count: int) -> timedelta:
        if not start or not end or end <= start:
            return timedelta(hours=1)
        return (end - start) / count

    @staticmethod
    def _timestamp(start: datetime, end: datetime, index: int, count: int) -> datetime:
        if not start or not end or end <= start:
            return datetime.now() - timedelta(hours=count - index)
        return start + (end - start) / count * index
