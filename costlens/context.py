"""
Aggregation Context
Binds one aggregator to one immutable snapshot of inputs and settings
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from costlens.aggregators import Aggregator
from costlens.models import AggregationResult, DualCostResult
from costlens.precision import DEFAULT_PRECISION, PrecisionConfig

logger = logging.getLogger(__name__)


class AggregationContext:
    """
    One aggregation run.

    Results and precision are captured when the context is created, so a config
    reload or a caller mutating its list afterwards does not change this run.
    """

    def __init__(self, aggregator: Aggregator, results: Iterable[DualCostResult],
                 precision: Optional[PrecisionConfig] = None,
                 timestamp: Optional[datetime] = None,
                 metadata: Optional[Dict[str, Any]] = None):
        self.aggregator = aggregator
        self.results = tuple(results)
        self.precision = precision or DEFAULT_PRECISION
        self.timestamp = timestamp or datetime.now()
        self.metadata = dict(metadata or {})

    def execute(self) -> AggregationResult:
        logger.debug(
            f"Aggregating {len(self.results)} results at "
            f"{self.aggregator.level().value} '{self.aggregator.identifier}'"
        )
        return self.aggregator.aggregate(self.results, precision=self.precision, timestamp=self.timestamp)
