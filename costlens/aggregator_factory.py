"""
Aggregator Factory
Builds the right level aggregator for a (level, identifier) pair
"""

import logging
from typing import Any, Dict, Optional, Union

from costlens.aggregators import (
    Aggregator,
    ClusterAggregator,
    NamespaceAggregator,
    NodeAggregator,
    PodAggregator,
    WorkloadAggregator,
)
from costlens.models import AggregationLevel

logger = logging.getLogger(__name__)

DEGRADED_CLUSTER_NAME = "default"


def _split_scoped(identifier: str, metadata: Dict[str, Any]):
    """Split 'ns/name' identifiers; a namespace in metadata wins over the prefix"""
    if "/" in identifier:
        prefix, name = identifier.split("/", 1)
    else:
        prefix, name = "", identifier
    namespace = metadata.get('namespace') or prefix
    return namespace, name


class AggregatorFactory:
    """Creates level aggregators from a level and identifier plus optional metadata"""

    @staticmethod
    def create_aggregator(level: Union[AggregationLevel, str], identifier: str,
                          metadata: Optional[Dict[str, Any]] = None) -> Aggregator:
        """
        Create an aggregator.

        Metadata keys used:
        - namespace: owning namespace for workload and pod identifiers
        - workload_type, workload_name: workload kind and owning workload of a pod
        - node_name: node hosting a pod
        - cpu_capacity (cores), mem_capacity (bytes): node capacity

        An unrecognised level yields a cluster aggregator flagged as degraded.
        """
        metadata = metadata or {}
        parsed = AggregationLevel.parse(level)

        if parsed == AggregationLevel.CLUSTER:
            return ClusterAggregator(identifier)

        if parsed == AggregationLevel.NAMESPACE:
            return NamespaceAggregator(identifier)

        if parsed == AggregationLevel.NODE:
            return NodeAggregator(
                identifier,
                cpu_capacity=metadata.get('cpu_capacity'),
                mem_capacity=metadata.get('mem_capacity'),
            )

        if parsed == AggregationLevel.WORKLOAD:
            namespace, name = _split_scoped(identifier, metadata)
            return WorkloadAggregator(
                namespace,
                name,
                workload_type=metadata.get('workload_type', 'Deployment'),
            )

        if parsed == AggregationLevel.POD:
            namespace, name = _split_scoped(identifier, metadata)
            return PodAggregator(
                namespace,
                name,
                workload_name=metadata.get('workload_name', ''),
                node_name=metadata.get('node_name', ''),
            )

        logger.warning(
            f"Unknown aggregation level '{level}' for '{identifier}', "
            f"falling back to degraded cluster aggregation"
        )
        return ClusterAggregator(DEGRADED_CLUSTER_NAME, degraded=True)
