"""
Tests for the Prometheus / Mimir metric source
"""
from datetime import datetime, timedelta
from unittest.mock import Mock, patch

import pytest
import requests

from costlens.errors import SourceTimeoutError, SourceUnavailableError
from costlens.models import GIB
from costlens.prometheus_source import PrometheusMetricSource, create_prometheus_source
from costlens.resilience import CircuitBreaker

END = datetime(2025, 1, 1, 12, 0)
START = END - timedelta(hours=1)


def vector(*values, label=None):
    """Build a Prometheus instant-vector payload"""
    result = []
    for i, value in enumerate(values):
        metric = {label: f"c{i}"} if label else {}
        result.append({'metric': metric, 'value': [END.timestamp(), str(value)]})
    return result


def http_response(result, status='success'):
    response = Mock()
    response.raise_for_status = Mock()
    response.json.return_value = {'status': status, 'data': {'resultType': 'vector', 'result': result}}
    return response


def answer_by_query(query_values):
    """side_effect for requests.get that answers by substring of the PromQL"""
    def respond(url, params=None, **kwargs):
        for fragment, result in query_values.items():
            if fragment in params['query']:
                return http_response(result)
        return http_response([])
    return respond


@pytest.fixture
def mimir_source():
    return PrometheusMetricSource(
        url="http://mimir:9009/prometheus/",
        tenant_id="team-a",
        max_retries=0,
        retry_delay=0,
    )


class TestConfiguration:
    """Test client selection and headers"""

    def test_tenant_header(self, mimir_source):
        """Test Mimir tenant uses native requests with X-Scope-OrgID"""
        assert mimir_source.url == "http://mimir:9009/prometheus"
        assert mimir_source.headers['X-Scope-OrgID'] == "team-a"
        assert mimir_source.prom_client is None

    def test_basic_auth(self):
        source = PrometheusMetricSource(url="http://prom:9090", username="user", password="pass")
        assert source.auth == ("user", "pass")
        assert source.prom_client is None

    def test_bearer_token(self):
        source = PrometheusMetricSource(url="http://prom:9090", bearer_token="token")
        assert source.headers['Authorization'] == "Bearer token"

    @patch('costlens.prometheus_source.PrometheusConnect')
    def test_plain_prometheus_uses_client(self, mock_connect):
        """Test PrometheusConnect is used when no auth or tenant is set"""
        source = PrometheusMetricSource(url="http://prom:9090")

        mock_connect.assert_called_once_with(url="http://prom:9090", disable_ssl=True)
        assert source.prom_client is mock_connect.return_value


class TestQueries:
    """Test PromQL execution and result mapping"""

    @patch('costlens.prometheus_source.requests.get')
    def test_resource_metrics(self, mock_get, mimir_source):
        mock_get.side_effect = answer_by_query({
            'resource="cpu"': vector(0.5, 0.5),
            'resource="memory"': vector(GIB),
            'container_cpu_usage_seconds_total': vector(0.25),
            'container_memory_working_set_bytes': vector(GIB // 2),
        })

        metrics = mimir_source.resource_metrics("shop", "web", "web-1", START, END)

        assert len(metrics) == 1
        metric = metrics[0]
        assert metric.cpu_request == pytest.approx(1.0)
        assert metric.cpu_usage_p95 == pytest.approx(0.25)
        assert metric.mem_request == GIB
        assert metric.mem_usage_p95 == GIB // 2
        assert metric.window == timedelta(hours=1)
        assert metric.timestamp == END

        first_call = mock_get.call_args_list[0]
        assert first_call.args[0] == "http://mimir:9009/prometheus/api/v1/query"
        assert 'namespace="shop",pod="web-1"' in first_call.kwargs['params']['query']
        assert '[3600s:1m]' in first_call.kwargs['params']['query']
        assert first_call.kwargs['params']['time'] == END.timestamp()
        assert first_call.kwargs['headers']['X-Scope-OrgID'] == "team-a"

    @patch('costlens.prometheus_source.requests.get')
    def test_no_requests_means_no_samples(self, mock_get, mimir_source):
        """Test a pod unknown to kube-state-metrics yields no samples"""
        mock_get.return_value = http_response([])

        assert mimir_source.resource_metrics("shop", "web", "gone", START, END) == []
        assert mock_get.call_count == 2

    @patch('costlens.prometheus_source.requests.get')
    def test_throttling_by_container(self, mock_get, mimir_source):
        mock_get.side_effect = answer_by_query({
            'cfs_throttled_periods_total': vector(6, label='container'),
            'cfs_periods_total': vector(60, 100, label='container'),
        })

        metrics = mimir_source.throttling_metrics("shop", "web-1", START, END)

        assert [m.container for m in metrics] == ["c0", "c1"]
        assert metrics[0].throttling_rate == pytest.approx(10.0)
        assert metrics[1].throttled_periods == 0.0

    @patch('costlens.prometheus_source.requests.get')
    def test_saturation_by_node(self, mock_get, mimir_source):
        mock_get.return_value = http_response([
            {'metric': {'node': 'node-2'}, 'value': [0, '55.5']},
            {'metric': {'node': 'node-1'}, 'value': [0, '91']},
        ])

        metrics = mimir_source.saturation_metrics("memory", START, END)

        assert [m.node for m in metrics] == ["node-1", "node-2"]
        assert metrics[0].saturation == pytest.approx(91.0)
        assert 'resource="memory"' in mock_get.call_args.kwargs['params']['query']

    @patch('costlens.prometheus_source.PrometheusConnect')
    def test_client_path(self, mock_connect):
        client = mock_connect.return_value
        client.custom_query.return_value = vector(1)
        source = PrometheusMetricSource(url="http://prom:9090", max_retries=0)

        assert source.health_check() is True
        client.custom_query.assert_called_once_with(query='up', params={})


class TestErrorHandling:
    """Test mapping of backend failures onto source errors"""

    @patch('costlens.prometheus_source.requests.get')
    def test_timeout(self, mock_get, mimir_source):
        mock_get.side_effect = requests.exceptions.Timeout("read timed out")

        with pytest.raises(SourceTimeoutError):
            mimir_source.query('up')

    @patch('costlens.prometheus_source.requests.get')
    def test_connection_error(self, mock_get, mimir_source):
        mock_get.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(SourceUnavailableError):
            mimir_source.query('up')

    @patch('costlens.prometheus_source.requests.get')
    def test_error_status(self, mock_get, mimir_source):
        mock_get.return_value = http_response([], status='error')

        with pytest.raises(SourceUnavailableError):
            mimir_source.query('up')

    @patch('costlens.prometheus_source.requests.get')
    def test_empty_health_check(self, mock_get, mimir_source):
        mock_get.return_value = http_response([])

        with pytest.raises(SourceUnavailableError):
            mimir_source.health_check()

    @patch('costlens.prometheus_source.requests.get')
    def test_retries_then_succeeds(self, mock_get):
        source = PrometheusMetricSource(url="http://mimir:9009", tenant_id="t", max_retries=2, retry_delay=0)
        mock_get.side_effect = [requests.exceptions.ConnectionError("refused"), http_response(vector(1))]

        assert source.query('up') == vector(1)
        assert mock_get.call_count == 2

    @patch('costlens.prometheus_source.requests.get')
    def test_circuit_breaker_fails_fast(self, mock_get):
        """Test an open breaker stops hitting the backend"""
        breaker = CircuitBreaker(failure_threshold=2, timeout=60, name="test")
        source = PrometheusMetricSource(url="http://mimir:9009", tenant_id="t", max_retries=0, breaker=breaker)
        mock_get.side_effect = requests.exceptions.ConnectionError("refused")

        for _ in range(2):
            with pytest.raises(SourceUnavailableError):
                source.query('up')
        assert breaker.state == 'open'

        with pytest.raises(SourceUnavailableError, match="open"):
            source.query('up')
        assert mock_get.call_count == 2


class TestFactory:
    """Test environment-driven construction"""

    def test_missing_url(self):
        with patch.dict('os.environ', {}, clear=True):
            with pytest.raises(ValueError, match="PROMETHEUS_URL"):
                create_prometheus_source()

    def test_from_environment(self):
        env = {
            'PROMETHEUS_URL': 'http://mimir:9009',
            'MIMIR_TENANT_ID': 'team-b',
            'PROMETHEUS_CUSTOM_HEADERS': '{"X-Team": "cost"}',
        }
        with patch.dict('os.environ', env, clear=True):
            source = create_prometheus_source(step="5m")

        assert source.tenant_id == "team-b"
        assert source.headers['X-Team'] == "cost"
        assert source.step == "5m"

    def test_invalid_custom_headers_ignored(self):
        env = {'PROMETHEUS_URL': 'http://mimir:9009', 'PROMETHEUS_CUSTOM_HEADERS': 'not-json'}
        with patch.dict('os.environ', env, clear=True), \
                patch('costlens.prometheus_source.PrometheusConnect') as mock_connect:
            source = create_prometheus_source()

        assert source.prom_client is mock_connect.return_value
