"""
Configuration Validator
Validates environment and ConfigMap values before they reach the engine
"""

import logging
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
LOG_FORMATS = ("json", "text")
EMPTY_POLICIES = ("error", "zero")


def _convert(value: str, name: str, cast: Callable[[str], T], kind: str) -> T:
    try:
        return cast(str(value).strip())
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid {name}: {value}. Must be {kind}") from e


class ConfigValidator:
    """Validate configuration values; every validator raises ValueError on bad input"""

    @staticmethod
    def validate_prometheus_url(url: str) -> str:
        if not url:
            raise ValueError("PROMETHEUS_URL is required")
        url = url.strip()
        if not url.startswith(('http://', 'https://')):
            raise ValueError(f"Invalid PROMETHEUS_URL format: {url}. Must start with http:// or https://")
        if len(url) > 2048:
            raise ValueError("PROMETHEUS_URL too long (max 2048 chars)")
        return url

    @staticmethod
    def validate_cluster_name(name: str) -> str:
        name = (name or "").strip()
        if not name:
            raise ValueError("CLUSTER_NAME cannot be empty")
        if "/" in name:
            raise ValueError(f"CLUSTER_NAME cannot contain '/', got {name}")
        return name

    @staticmethod
    def validate_check_interval(interval: str) -> int:
        value = _convert(interval, "CHECK_INTERVAL", int, "an integer")
        if value < 10:
            raise ValueError(f"CHECK_INTERVAL must be at least 10 seconds, got {value}")
        if value > 86400:
            raise ValueError(f"CHECK_INTERVAL must be at most 86400 seconds (1 day), got {value}")
        return value

    @staticmethod
    def validate_price(value: str, name: str) -> float:
        """Unit price per core-hour or GiB-hour"""
        val = _convert(value, name, float, "a number")
        if val < 0:
            raise ValueError(f"{name} must be non-negative, got {val}")
        if val > 100:
            raise ValueError(f"{name} seems too high: {val}. Check if value is correct")
        return val

    @staticmethod
    def validate_digits(value: str, name: str) -> int:
        val = _convert(value, name, int, "an integer")
        if val < 0 or val > 12:
            raise ValueError(f"{name} must be between 0 and 12, got {val}")
        return val

    @staticmethod
    def validate_percent(value: str, name: str) -> float:
        val = _convert(value, name, float, "a number")
        if val <= 0 or val > 100:
            raise ValueError(f"{name} must be in (0, 100], got {val}")
        return val

    @staticmethod
    def validate_positive(value: str, name: str) -> float:
        val = _convert(value, name, float, "a number")
        if val <= 0:
            raise ValueError(f"{name} must be positive, got {val}")
        return val

    @staticmethod
    def validate_max_workers(value: str) -> int:
        val = _convert(value, "MAX_WORKERS", int, "an integer")
        if val < 1 or val > 256:
            raise ValueError(f"MAX_WORKERS must be between 1 and 256, got {val}")
        return val

    @staticmethod
    def validate_lookback_hours(value: str) -> int:
        val = _convert(value, "LOOKBACK_HOURS", int, "an integer")
        if val < 1 or val > 24 * 90:
            raise ValueError(f"LOOKBACK_HOURS must be between 1 and 2160, got {val}")
        return val

    @staticmethod
    def validate_query_step(value: str) -> str:
        value = (value or "").strip()
        if len(value) < 2 or value[-1] not in "smhd" or not value[:-1].isdigit():
            raise ValueError(f"Invalid QUERY_STEP: {value}. Expected a duration like 30s, 1m or 1h")
        return value

    @staticmethod
    def validate_port(port: str, name: str = "PORT") -> int:
        val = _convert(port, name, int, "an integer")
        if val < 1 or val > 65535:
            raise ValueError(f"{name} must be between 1 and 65535, got {val}")
        return val

    @staticmethod
    def validate_empty_policy(value: str) -> str:
        value = (value or "").strip().lower()
        if value not in EMPTY_POLICIES:
            raise ValueError(f"EMPTY_POLICY must be one of {EMPTY_POLICIES}, got '{value}'")
        return value

    @staticmethod
    def validate_log_level(value: str) -> str:
        value = (value or "").strip().upper()
        if value not in LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {LOG_LEVELS}, got '{value}'")
        return value

    @staticmethod
    def validate_log_format(value: str) -> str:
        value = (value or "").strip().lower()
        if value not in LOG_FORMATS:
            raise ValueError(f"LOG_FORMAT must be one of {LOG_FORMATS}, got '{value}'")
        return value

    @staticmethod
    def validate_thresholds(zombie_below: float, healthy_from: float, risk_above: float):
        if not (0 < zombie_below < healthy_from < risk_above <= 100):
            raise ValueError(
                f"Grade thresholds must satisfy 0 < GRADE_ZOMBIE_BELOW < GRADE_HEALTHY_FROM < "
                f"GRADE_RISK_ABOVE <= 100, got {zombie_below}/{healthy_from}/{risk_above}"
            )
