"""
Prometheus Metric Source
Reads request, P95 usage, throttling and saturation from Prometheus or Grafana Mimir

Queries are evaluated once at the end of the requested window using subqueries:
- requests: avg_over_time of kube-state-metrics resource requests
- usage: quantile_over_time(0.95) of cAdvisor CPU rate / memory working set

Works with plain Prometheus (via PrometheusConnect) and with Mimir tenants,
bearer tokens or custom headers (via native HTTP requests).
"""

import json
import logging
import os
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

import requests
from prometheus_api_client import PrometheusConnect
from prometheus_api_client.exceptions import PrometheusApiClientException

from costlens.errors import SourceError, SourceTimeoutError, SourceUnavailableError
from costlens.metric_source import MetricSource
from costlens.models import ResourceMetric, SaturationMetric, ThrottlingMetric
from costlens.resilience import CircuitBreaker, retry_with_backoff

logger = logging.getLogger(__name__)

USAGE_RATE_WINDOW = "5m"


def _duration(delta: timedelta) -> str:
    """PromQL range literal for a window, in whole seconds"""
    return f"{max(1, int(delta.total_seconds()))}s"


def _selector(**labels) -> str:
    return ",".join(f'{name}="{value}"' for name, value in labels.items() if value)


def _scalar(result: List[Dict[str, Any]]) -> Optional[float]:
    """Sum the values of an instant vector; None when the vector is empty"""
    if not result:
        return None
    return sum(float(series['value'][1]) for series in result)


def _by_label(result: List[Dict[str, Any]], label: str) -> Dict[str, float]:
    return {
        series.get('metric', {}).get(label, ''): float(series['value'][1])
        for series in result
    }


class PrometheusMetricSource(MetricSource):
    """Metric source backed by a Prometheus-compatible query API"""

    def __init__(
        self,
        url: str,
        tenant_id: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        bearer_token: Optional[str] = None,
        custom_headers: Optional[Dict[str, str]] = None,
        disable_ssl: bool = True,
        timeout: float = 30,
        step: str = "1m",
        max_retries: int = 2,
        retry_delay: float = 1.0,
        breaker: Optional[CircuitBreaker] = None
    ):
        """
        Args:
            url: Prometheus/Mimir base URL
            tenant_id: Mimir tenant, sent as X-Scope-OrgID
            username, password: Basic auth credentials
            bearer_token: Bearer token
            custom_headers: Additional request headers
            disable_ssl: Skip TLS verification
            timeout: HTTP timeout in seconds
            step: Subquery resolution
            max_retries: Retries per query on source errors
            retry_delay: Initial backoff in seconds
            breaker: Circuit breaker shared by all queries
        """
        self.url = url.rstrip('/')
        self.tenant_id = tenant_id
        self.timeout = timeout
        self.disable_ssl = disable_ssl
        self.step = step

        self.headers = {'Accept': 'application/json'}
        if tenant_id:
            self.headers['X-Scope-OrgID'] = tenant_id
            logger.info(f"Prometheus source using Mimir tenant: {tenant_id}")
        if custom_headers:
            self.headers.update(custom_headers)

        self.auth = None
        if username and password:
            self.auth = (username, password)
        elif bearer_token:
            self.headers['Authorization'] = f'Bearer {bearer_token}'

        if not tenant_id and not bearer_token and not custom_headers and not self.auth:
            self.prom_client = PrometheusConnect(url=self.url, disable_ssl=disable_ssl)
        else:
            self.prom_client = None

        self.breaker = breaker or CircuitBreaker(failure_threshold=5, timeout=60, name="prometheus")
        self._query_with_retry = retry_with_backoff(
            max_retries=max_retries,
            initial_delay=retry_delay,
            exceptions=(SourceError,),
        )(self._execute)

    # ----- query plumbing -----

    def query(self, promql: str, at: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Run an instant query through the circuit breaker and retry policy"""
        return self.breaker.call(self._query_with_retry, promql, at)

    def _execute(self, promql: str, at: Optional[datetime]) -> List[Dict[str, Any]]:
        params = {}
        if at is not None:
            params['time'] = at.timestamp()

        if self.prom_client is not None:
            try:
                return self.prom_client.custom_query(query=promql, params=params)
            except requests.exceptions.Timeout as e:
                raise SourceTimeoutError(f"Prometheus query timed out: {e}") from e
            except (PrometheusApiClientException, requests.exceptions.RequestException) as e:
                raise SourceUnavailableError(f"Prometheus query failed: {e}") from e

        try:
            response = requests.get(
                urljoin(self.url + '/', 'api/v1/query'),
                params={'query': promql, **params},
                headers=self.headers,
                auth=self.auth,
                timeout=self.timeout,
                verify=not self.disable_ssl
            )
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.Timeout as e:
            raise SourceTimeoutError(f"Prometheus query timed out: {e}") from e
        except (requests.exceptions.RequestException, ValueError) as e:
            raise SourceUnavailableError(f"Prometheus request failed: {e}") from e

        if data.get('status') != 'success':
            raise SourceUnavailableError(f"Prometheus query failed: {data.get('error', 'unknown error')}")

        result = data.get('data', {}).get('result', [])
        logger.debug(f"Query '{promql[:60]}' returned {len(result)} series")
        return result

    def _usage_metric(self, selector: str, start: datetime, end: datetime) -> List[ResourceMetric]:
        window = end - start
        rng = _duration(window)
        cpu_request = _scalar(self.query(
            f'avg_over_time(sum(kube_pod_container_resource_requests{{{selector},resource="cpu"}})[{rng}:{self.step}])',
            end
        ))
        mem_request = _scalar(self.query(
            f'avg_over_time(sum(kube_pod_container_resource_requests{{{selector},resource="memory"}})[{rng}:{self.step}])',
            end
        ))
        if cpu_request is None and mem_request is None:
            return []

        cpu_usage = _scalar(self.query(
            f'quantile_over_time(0.95, sum(rate(container_cpu_usage_seconds_total{{{selector},container!=""}}'
            f'[{USAGE_RATE_WINDOW}]))[{rng}:{self.step}])',
            end
        ))
        mem_usage = _scalar(self.query(
            f'quantile_over_time(0.95, sum(container_memory_working_set_bytes{{{selector},container!=""}})'
            f'[{rng}:{self.step}])',
            end
        ))

        return [ResourceMetric(
            cpu_request=cpu_request or 0.0,
            cpu_usage_p95=cpu_usage or 0.0,
            mem_request=int(mem_request or 0),
            mem_usage_p95=int(mem_usage or 0),
            timestamp=end,
            window=window,
        )]

    # ----- MetricSource -----

    def resource_metrics(self, namespace, workload, pod, start, end):
        return self._usage_metric(_selector(namespace=namespace, pod=pod), start, end)

    def node_metrics(self, node, start, end):
        return self._usage_metric(_selector(node=node), start, end)

    def cluster_metrics(self, start, end):
        return self._usage_metric('job!=""', start, end)

    def throttling_metrics(self, namespace, pod, start, end):
        selector = _selector(namespace=namespace, pod=pod)
        rng = _duration(end - start)
        throttled = _by_label(self.query(
            f'sum by (container) (increase(container_cpu_cfs_throttled_periods_total{{{selector}}}[{rng}]))', end
        ), 'container')
        total = _by_label(self.query(
            f'sum by (container) (increase(container_cpu_cfs_periods_total{{{selector}}}[{rng}]))', end
        ), 'container')

        return [
            ThrottlingMetric(
                namespace=namespace,
                pod=pod,
                container=container,
                throttled_periods=throttled.get(container, 0.0),
                total_periods=periods,
                timestamp=end,
            )
            for container, periods in sorted(total.items())
        ]

    def saturation_metrics(self, resource_type, start, end):
        resource = 'memory' if resource_type.lower().startswith('mem') else 'cpu'
        result = self.query(
            f'100 * sum by (node) (kube_pod_container_resource_requests{{resource="{resource}"}}) '
            f'/ sum by (node) (kube_node_status_allocatable{{resource="{resource}"}})',
            end
        )
        return [
            SaturationMetric(resource_type=resource_type, node=node, saturation=value, timestamp=end)
            for node, value in sorted(_by_label(result, 'node').items())
        ]

    def health_check(self) -> bool:
        result = self.query('up')
        if not result:
            raise SourceUnavailableError(f"Prometheus at {self.url} returned no 'up' series")
        return True


def create_prometheus_source(
    url: Optional[str] = None,
    tenant_id: Optional[str] = None,
    timeout: float = 30,
    step: str = "1m"
) -> PrometheusMetricSource:
    """
    Build a Prometheus source from arguments, falling back to the environment.

    Environment variables:
        PROMETHEUS_URL: Prometheus/Mimir URL (required)
        MIMIR_TENANT_ID: Mimir tenant ID
        PROMETHEUS_USERNAME, PROMETHEUS_PASSWORD: Basic auth
        PROMETHEUS_BEARER_TOKEN: Bearer token
        PROMETHEUS_CUSTOM_HEADERS: JSON object of extra headers
    """
    final_url = url or os.getenv('PROMETHEUS_URL')
    if not final_url:
        raise ValueError("PROMETHEUS_URL is required")

    custom_headers = None
    headers_json = os.getenv('PROMETHEUS_CUSTOM_HEADERS')
    if headers_json:
        try:
            custom_headers = json.loads(headers_json)
        except json.JSONDecodeError as e:
            logger.warning(f"Invalid PROMETHEUS_CUSTOM_HEADERS JSON: {e}")

    return PrometheusMetricSource(
        url=final_url,
        tenant_id=tenant_id or os.getenv('MIMIR_TENANT_ID'),
        username=os.getenv('PROMETHEUS_USERNAME'),
        password=os.getenv('PROMETHEUS_PASSWORD'),
        bearer_token=os.getenv('PROMETHEUS_BEARER_TOKEN'),
        custom_headers=custom_headers,
        timeout=timeout,
        step=step,
    )
