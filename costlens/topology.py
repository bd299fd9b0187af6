"""
Topology Providers
Read-only pod -> workload -> namespace and pod -> node relationships, plus node capacity
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import Lock
from typing import Dict, Iterable, List, Optional, Tuple

from kubernetes import client
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException

from costlens.errors import SourceUnavailableError
from costlens.models import GIB, EntityRef

logger = logging.getLogger(__name__)

MEMORY_UNITS = {
    'Ki': 1024,
    'Mi': 1024 ** 2,
    'Gi': 1024 ** 3,
    'Ti': 1024 ** 4,
    'K': 1000,
    'M': 1000 ** 2,
    'G': 1000 ** 3,
    'T': 1000 ** 4,
}


def parse_cpu(quantity) -> float:
    """Parse a Kubernetes CPU quantity to cores ('2' -> 2.0, '500m' -> 0.5)"""
    if not quantity:
        return 0.0
    quantity = str(quantity).strip()
    if quantity.endswith('m'):
        return float(quantity[:-1]) / 1000.0
    if quantity.endswith('n'):
        return float(quantity[:-1]) / 1e9
    return float(quantity)


def parse_memory(quantity) -> int:
    """Parse a Kubernetes memory quantity to bytes ('16Gi' -> 17179869184)"""
    if not quantity:
        return 0
    quantity = str(quantity).strip()
    for unit, multiplier in MEMORY_UNITS.items():
        if quantity.endswith(unit):
            return int(float(quantity[:-len(unit)]) * multiplier)
    return int(float(quantity))


@dataclass(frozen=True)
class NodeCapacity:
    cpu_cores: float
    mem_bytes: int


class Topology(ABC):
    """Source of entity relationships; aggregation only ever reads from it"""

    @abstractmethod
    def pods(self, namespace: Optional[str] = None) -> List[EntityRef]:
        ...

    @abstractmethod
    def node_capacity(self, node: str) -> Optional[NodeCapacity]:
        ...

    def namespaces(self) -> List[str]:
        return sorted({p.namespace for p in self.pods()})

    def nodes(self) -> List[str]:
        return sorted({p.node for p in self.pods() if p.node})


class StaticTopology(Topology):
    """Fixed topology, for tests and offline runs"""

    def __init__(self, pods: Iterable[EntityRef], node_capacity: Optional[Dict[str, NodeCapacity]] = None):
        self._pods = list(pods)
        self._capacity = dict(node_capacity or {})

    def pods(self, namespace=None):
        if namespace is None:
            return list(self._pods)
        return [p for p in self._pods if p.namespace == namespace]

    def node_capacity(self, node):
        return self._capacity.get(node)

    @classmethod
    def generate(
        cls,
        namespaces: Optional[List[str]] = None,
        workloads_per_namespace: int = 3,
        pods_per_workload: int = 2,
        nodes: Optional[List[str]] = None,
        capacity: Optional[NodeCapacity] = None
    ) -> "StaticTopology":
        """Build a regular synthetic cluster; pods are spread round-robin across nodes"""
        namespaces = namespaces or ["default", "kube-system", "monitoring", "app-prod", "app-staging"]
        nodes = nodes or ["node-1", "node-2", "node-3", "node-4"]
        capacity = capacity or NodeCapacity(cpu_cores=16.0, mem_bytes=64 * GIB)

        pods = []
        index = 0
        for namespace in namespaces:
            for w in range(workloads_per_namespace):
                workload = f"{namespace}-app-{w + 1}"
                for p in range(pods_per_workload):
                    pods.append(EntityRef(
                        namespace=namespace,
                        workload=workload,
                        pod=f"{workload}-{p + 1}",
                        node=nodes[index % len(nodes)],
                    ))
                    index += 1
        return cls(pods, {node: capacity for node in nodes})


def _owner(pod) -> Tuple[str, str]:
    """Owning workload (name, kind) of a pod; ReplicaSets resolve to their Deployment"""
    refs = pod.metadata.owner_references or []
    if not refs:
        return pod.metadata.name, "Pod"
    owner = refs[0]
    if owner.kind == "ReplicaSet" and "-" in owner.name:
        return owner.name.rsplit("-", 1)[0], "Deployment"
    return owner.name, owner.kind


class KubernetesTopology(Topology):
    """Topology read live from the Kubernetes API"""

    def __init__(self, core_v1: Optional[client.CoreV1Api] = None):
        if core_v1 is None:
            try:
                k8s_config.load_incluster_config()
            except k8s_config.ConfigException:
                k8s_config.load_kube_config()
            core_v1 = client.CoreV1Api()
        self.core_v1 = core_v1
        self._capacity_cache: Dict[str, NodeCapacity] = {}
        self._lock = Lock()

    def pods(self, namespace=None):
        try:
            if namespace:
                listing = self.core_v1.list_namespaced_pod(namespace, field_selector="status.phase=Running")
            else:
                listing = self.core_v1.list_pod_for_all_namespaces(field_selector="status.phase=Running")
        except ApiException as e:
            raise SourceUnavailableError(f"Failed to list pods: {e.reason}") from e

        refs = []
        for pod in listing.items:
            node = pod.spec.node_name if pod.spec else None
            if not node:
                continue
            workload, kind = _owner(pod)
            refs.append(EntityRef(
                namespace=pod.metadata.namespace,
                workload=workload,
                pod=pod.metadata.name,
                node=node,
                workload_kind=kind,
            ))
        logger.debug(f"Listed {len(refs)} running pods{f' in {namespace}' if namespace else ''}")
        return refs

    def node_capacity(self, node):
        with self._lock:
            if node in self._capacity_cache:
                return self._capacity_cache[node]
        try:
            status = self.core_v1.read_node(node).status
        except ApiException as e:
            if e.status == 404:
                logger.warning(f"Node {node} not found, capacity unknown")
                return None
            raise SourceUnavailableError(f"Failed to read node {node}: {e.reason}") from e

        allocatable = status.allocatable or {}
        capacity = NodeCapacity(
            cpu_cores=parse_cpu(allocatable.get('cpu')),
            mem_bytes=parse_memory(allocatable.get('memory')),
        )
        with self._lock:
            self._capacity_cache[node] = capacity
        return capacity
