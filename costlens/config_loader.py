"""
Configuration Loader with Hot Reload Support
Builds EngineConfig from environment variables, overlays the costlens ConfigMap,
and reloads when the ConfigMap changes
"""

import logging
import os
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from kubernetes import client, watch
from kubernetes import config as k8s_config

from costlens.cloud_billing import CloudBillingConfig
from costlens.config_validator import ConfigValidator
from costlens.models import GIB
from costlens.precision import GradeThresholds, PrecisionConfig, ReferenceNodeShape

logger = logging.getLogger(__name__)


@dataclass
class EngineConfig:
    """Cost engine configuration"""
    prometheus_url: str = "http://prometheus-server.monitoring:9090"
    cluster_name: str = "cluster"

    # Unit prices
    cost_per_vcpu_hour: float = 0.04
    cost_per_gb_memory_hour: float = 0.004

    # Precision and grading
    cost_digits: int = 6
    percent_digits: int = 2
    grade_zombie_below: float = 20.0
    grade_healthy_from: float = 40.0
    grade_risk_above: float = 90.0
    reference_node_cpu: float = 8.0  # cores
    reference_node_memory_gb: float = 16.0
    empty_policy: str = "error"

    # Concurrency and sampling
    max_workers: int = 8
    source_timeout_seconds: float = 30.0
    lookback_hours: int = 24
    query_step: str = "5m"

    # Runner
    check_interval: int = 300
    exporter_port: int = 8000

    # Billing reconciliation
    cloud_billing_provider: str = ""
    cloud_billing_endpoint: str = ""

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    def precision(self) -> PrecisionConfig:
        """Precision snapshot for one aggregation run"""
        return PrecisionConfig(
            cost_digits=self.cost_digits,
            percent_digits=self.percent_digits,
            thresholds=GradeThresholds(
                zombie_below=self.grade_zombie_below,
                healthy_from=self.grade_healthy_from,
                risk_above=self.grade_risk_above,
            ),
            reference_node=ReferenceNodeShape(
                cpu_cores=self.reference_node_cpu,
                mem_bytes=int(self.reference_node_memory_gb * GIB),
            ),
            empty_policy=self.empty_policy,
        )

    def billing_config(self) -> CloudBillingConfig:
        return CloudBillingConfig.from_env(
            provider=self.cloud_billing_provider,
            endpoint=self.cloud_billing_endpoint,
        )


def _price(name: str) -> Callable[[str], float]:
    return lambda value: ConfigValidator.validate_price(value, name)


def _digits(name: str) -> Callable[[str], int]:
    return lambda value: ConfigValidator.validate_digits(value, name)


def _percent(name: str) -> Callable[[str], float]:
    return lambda value: ConfigValidator.validate_percent(value, name)


def _positive(name: str) -> Callable[[str], float]:
    return lambda value: ConfigValidator.validate_positive(value, name)


# (key, EngineConfig field, parser); the same keys are used in the environment and the ConfigMap
CONFIG_KEYS: List[Tuple[str, str, Callable[[str], Any]]] = [
    ("PROMETHEUS_URL", "prometheus_url", ConfigValidator.validate_prometheus_url),
    ("CLUSTER_NAME", "cluster_name", ConfigValidator.validate_cluster_name),
    ("COST_PER_VCPU_HOUR", "cost_per_vcpu_hour", _price("COST_PER_VCPU_HOUR")),
    ("COST_PER_GB_MEMORY_HOUR", "cost_per_gb_memory_hour", _price("COST_PER_GB_MEMORY_HOUR")),
    ("COST_DIGITS", "cost_digits", _digits("COST_DIGITS")),
    ("PERCENT_DIGITS", "percent_digits", _digits("PERCENT_DIGITS")),
    ("GRADE_ZOMBIE_BELOW", "grade_zombie_below", _percent("GRADE_ZOMBIE_BELOW")),
    ("GRADE_HEALTHY_FROM", "grade_healthy_from", _percent("GRADE_HEALTHY_FROM")),
    ("GRADE_RISK_ABOVE", "grade_risk_above", _percent("GRADE_RISK_ABOVE")),
    ("REFERENCE_NODE_CPU", "reference_node_cpu", _positive("REFERENCE_NODE_CPU")),
    ("REFERENCE_NODE_MEMORY_GB", "reference_node_memory_gb", _positive("REFERENCE_NODE_MEMORY_GB")),
    ("EMPTY_POLICY", "empty_policy", ConfigValidator.validate_empty_policy),
    ("MAX_WORKERS", "max_workers", ConfigValidator.validate_max_workers),
    ("SOURCE_TIMEOUT_SECONDS", "source_timeout_seconds", _positive("SOURCE_TIMEOUT_SECONDS")),
    ("LOOKBACK_HOURS", "lookback_hours", ConfigValidator.validate_lookback_hours),
    ("QUERY_STEP", "query_step", ConfigValidator.validate_query_step),
    ("CHECK_INTERVAL", "check_interval", ConfigValidator.validate_check_interval),
    ("EXPORTER_PORT", "exporter_port", lambda value: ConfigValidator.validate_port(value, "EXPORTER_PORT")),
    ("CLOUD_BILLING_PROVIDER", "cloud_billing_provider", lambda value: value.strip().lower()),
    ("CLOUD_BILLING_ENDPOINT", "cloud_billing_endpoint", lambda value: value.strip()),
    ("LOG_LEVEL", "log_level", ConfigValidator.validate_log_level),
    ("LOG_FORMAT", "log_format", ConfigValidator.validate_log_format),
]


def parse_values(source: Dict[str, str]) -> Dict[str, Any]:
    """Validate the recognised keys of `source` into EngineConfig field values"""
    return {
        field_name: parse(source[key])
        for key, field_name, parse in CONFIG_KEYS
        if source.get(key) not in (None, "")
    }


def validate_config(config: EngineConfig) -> EngineConfig:
    """Cross-field checks that single-key validators cannot do"""
    ConfigValidator.validate_thresholds(
        config.grade_zombie_below, config.grade_healthy_from, config.grade_risk_above
    )
    config.precision()
    return config


class ConfigLoader:
    """Load and hot-reload configuration from environment and ConfigMap"""

    def __init__(self, namespace: str = "costlens-system", configmap_name: str = "costlens-config",
                 core_v1: Optional[client.CoreV1Api] = None, use_kubernetes: bool = True):
        self.namespace = namespace
        self.configmap_name = configmap_name
        self.config: Optional[EngineConfig] = None
        self.config_version: int = 0
        self.last_reload: datetime = datetime.now()

        self.reload_callbacks: List[Callable[[EngineConfig], None]] = []

        self.watch_thread: Optional[threading.Thread] = None
        self.stop_watching = threading.Event()

        self.core_v1 = core_v1
        if self.core_v1 is None and use_kubernetes:
            try:
                try:
                    k8s_config.load_incluster_config()
                    logger.info("Loaded in-cluster Kubernetes config")
                except k8s_config.ConfigException:
                    k8s_config.load_kube_config()
                    logger.info("Loaded local Kubernetes config")
                self.core_v1 = client.CoreV1Api()
            except Exception as e:
                logger.warning(f"Kubernetes client not available, using environment only: {e}")
                self.core_v1 = None
        self.k8s_available = self.core_v1 is not None

    def load_config(self) -> EngineConfig:
        """Load configuration from environment variables, overlaid by the ConfigMap"""
        config = EngineConfig(**parse_values(dict(os.environ)))

        overrides = self._load_from_configmap()
        if overrides:
            config = replace(config, **overrides)
            logger.info(f"Applied {len(overrides)} settings from ConfigMap {self.configmap_name}")

        self.config = validate_config(config)
        self.config_version += 1
        self.last_reload = datetime.now()

        logger.info(
            f"Configuration loaded (version {self.config_version}): "
            f"cluster={config.cluster_name}, "
            f"prices=${config.cost_per_vcpu_hour}/core-h ${config.cost_per_gb_memory_hour}/GiB-h, "
            f"grades={config.grade_zombie_below}/{config.grade_healthy_from}/{config.grade_risk_above}, "
            f"workers={config.max_workers}"
        )
        return self.config

    def _load_from_configmap(self) -> Dict[str, Any]:
        if not self.k8s_available:
            return {}

        try:
            configmap = self.core_v1.read_namespaced_config_map(
                name=self.configmap_name,
                namespace=self.namespace
            )
        except client.exceptions.ApiException as e:
            if e.status == 404:
                logger.debug(f"ConfigMap {self.configmap_name} not found")
            else:
                logger.error(f"Error reading ConfigMap: {e}")
            return {}

        if not configmap.data:
            return {}
        return parse_values({key.upper(): value for key, value in configmap.data.items()})

    def register_reload_callback(self, callback: Callable[[EngineConfig], None]):
        """Register a callback invoked with the new config after each reload"""
        self.reload_callbacks.append(callback)
        logger.info(f"Registered reload callback: {getattr(callback, '__name__', repr(callback))}")

    def reload(self) -> Optional[EngineConfig]:
        """Reload and notify callbacks; a config that fails validation leaves the old one active"""
        try:
            new_config = self.load_config()
        except ValueError as e:
            logger.error(f"Rejected configuration reload, keeping version {self.config_version}: {e}")
            return None

        for callback in self.reload_callbacks:
            try:
                callback(new_config)
            except Exception as e:
                logger.error(f"Error in reload callback {getattr(callback, '__name__', callback)}: {e}",
                             exc_info=True)
        return new_config

    def start_watching(self):
        """Start watching the ConfigMap for changes"""
        if not self.k8s_available:
            logger.warning("Kubernetes not available, hot reload disabled")
            return

        if self.watch_thread and self.watch_thread.is_alive():
            logger.warning("ConfigMap watch already running")
            return

        self.stop_watching.clear()
        self.watch_thread = threading.Thread(
            target=self._watch_configmap,
            daemon=True,
            name="configmap-watcher"
        )
        self.watch_thread.start()
        logger.info(f"Started watching ConfigMap {self.namespace}/{self.configmap_name}")

    def stop_watching_configmap(self):
        if self.watch_thread and self.watch_thread.is_alive():
            self.stop_watching.set()
            self.watch_thread.join(timeout=5)
            logger.info("ConfigMap watch stopped")

    def _watch_configmap(self):
        w = watch.Watch()

        while not self.stop_watching.is_set():
            try:
                for event in w.stream(
                    self.core_v1.list_namespaced_config_map,
                    namespace=self.namespace,
                    field_selector=f"metadata.name={self.configmap_name}",
                    timeout_seconds=60
                ):
                    if self.stop_watching.is_set():
                        break

                    event_type = event['type']
                    if event_type in ('MODIFIED', 'ADDED'):
                        logger.info(f"ConfigMap {event_type.lower()}, reloading configuration")
                        if self.reload():
                            logger.info(f"Configuration reloaded (version {self.config_version})")
                    elif event_type == 'DELETED':
                        logger.warning(f"ConfigMap {self.configmap_name} was deleted, keeping current config")

            except Exception as e:
                if not self.stop_watching.is_set():
                    logger.error(f"Error watching ConfigMap: {e}", exc_info=True)
                    logger.info("Retrying ConfigMap watch in 10 seconds...")
                    time.sleep(10)

    def get_config(self) -> EngineConfig:
        if not self.config:
            return self.load_config()
        return self.config

    def get_config_version(self) -> int:
        return self.config_version
