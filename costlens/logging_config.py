"""
Structured Logging Configuration
JSON logs for aggregation pipelines, plain text for local runs
"""

import logging
import os
import sys
from typing import Optional

from pythonjsonlogger import jsonlogger

TEXT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_structured_logging(
    log_level: str = "INFO",
    json_format: Optional[bool] = None,
    extra_fields: Optional[dict] = None
) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_format: Force JSON on/off (None = read LOG_FORMAT, default json)
        extra_fields: Static fields added to every JSON record (e.g. cluster name)

    Returns:
        Configured root logger
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format is None:
        use_json = os.getenv('LOG_FORMAT', 'json').lower() in ('json', 'structured')
    else:
        use_json = json_format

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)

    if use_json:
        handler.setFormatter(jsonlogger.JsonFormatter(
            '%(asctime)s %(levelname)s %(name)s %(message)s',
            rename_fields={'asctime': 'timestamp', 'levelname': 'level'},
            static_fields=dict(extra_fields or {}),
        ))
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))

    root_logger.addHandler(handler)
    return root_logger


class ContextAdapter(logging.LoggerAdapter):
    """Merges a fixed context (namespace, run id, ...) into every record's extra"""

    def process(self, msg, kwargs):
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs


def get_logger(name: str, extra_context: Optional[dict] = None):
    logger = logging.getLogger(name)
    if extra_context:
        return ContextAdapter(logger, extra_context)
    return logger
