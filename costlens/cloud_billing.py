"""
Cloud Billing Reconciliation
Optional fetcher for provider account bills, used to check engine totals against the invoice

Provider selection:
- "aliyun", "aws", "tencent" with an endpoint: HTTP fetcher against the billing gateway
- absent, unrecognised, or no endpoint: no fetcher (reconciliation disabled)

Access keys are never read from config files, only from CLOUD_BILL_AK / CLOUD_BILL_SK.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import requests

from costlens.errors import SourceTimeoutError, SourceUnavailableError
from costlens.models import AggregationResult

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("aliyun", "aws", "tencent")
PERIOD_TYPES = ("day", "month")


@dataclass(frozen=True)
class CloudBillingConfig:
    provider: str = ""
    endpoint: str = ""
    period_type: str = "month"
    access_key_id: str = field(default="", repr=False)
    access_key_secret: str = field(default="", repr=False)

    @classmethod
    def from_env(cls, provider: str = "", endpoint: str = "", period_type: str = "month") -> "CloudBillingConfig":
        return cls(
            provider=provider,
            endpoint=endpoint,
            period_type=period_type,
            access_key_id=os.getenv('CLOUD_BILL_AK', ''),
            access_key_secret=os.getenv('CLOUD_BILL_SK', ''),
        )


@dataclass(frozen=True)
class FetchAccountSummaryRequest:
    billing_cycle: str  # "2025-01" (month) or "2025-01-01" (day)
    period_type: str = "month"
    category_filter: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class BillItem:
    product_code: str
    item_code: str
    amount: float
    category: str


@dataclass(frozen=True)
class FetchAccountSummaryResponse:
    billing_cycle: str
    total_amount: float
    currency: str
    by_category: Dict[str, float] = field(default_factory=dict)  # compute/storage/network/other
    items: List[BillItem] = field(default_factory=list)


class CloudBillingFetcher(Protocol):
    def fetch_account_summary(self, request: FetchAccountSummaryRequest) -> FetchAccountSummaryResponse:
        ...


class HttpBillingFetcher:
    """Fetches account summaries from a provider billing gateway over HTTP"""

    def __init__(self, config: CloudBillingConfig, timeout: float = 30):
        self.config = config
        self.timeout = timeout
        self.headers = {'Accept': 'application/json'}
        if config.access_key_id:
            self.headers['X-Access-Key-Id'] = config.access_key_id
            self.headers['X-Access-Key-Secret'] = config.access_key_secret

    def fetch_account_summary(self, request: FetchAccountSummaryRequest) -> FetchAccountSummaryResponse:
        if request.period_type not in PERIOD_TYPES:
            raise ValueError(f"period_type must be one of {PERIOD_TYPES}, got '{request.period_type}'")

        params: Dict[str, Any] = {
            'provider': self.config.provider,
            'billing_cycle': request.billing_cycle,
            'period_type': request.period_type,
        }
        if request.category_filter:
            params['category'] = ",".join(request.category_filter)

        try:
            response = requests.get(
                f"{self.config.endpoint.rstrip('/')}/account-summary",
                params=params,
                headers=self.headers,
                timeout=self.timeout
            )
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.Timeout as e:
            raise SourceTimeoutError(f"{self.config.provider} billing request timed out: {e}") from e
        except (requests.exceptions.RequestException, ValueError) as e:
            raise SourceUnavailableError(f"{self.config.provider} billing request failed: {e}") from e

        summary = FetchAccountSummaryResponse(
            billing_cycle=data.get('billing_cycle', request.billing_cycle),
            total_amount=float(data.get('total_amount', 0.0)),
            currency=data.get('currency', 'USD'),
            by_category={k: float(v) for k, v in (data.get('by_category') or {}).items()},
            items=[
                BillItem(
                    product_code=item.get('product_code', ''),
                    item_code=item.get('item_code', ''),
                    amount=float(item.get('amount', 0.0)),
                    category=item.get('category', 'other'),
                )
                for item in data.get('items') or []
            ],
        )
        logger.info(
            f"Fetched {self.config.provider} bill for {summary.billing_cycle}: "
            f"{summary.total_amount:.2f} {summary.currency}"
        )
        return summary


def new_fetcher(config: Optional[CloudBillingConfig]) -> Optional[CloudBillingFetcher]:
    """
    Return a billing fetcher for the configured provider.

    None means billing reconciliation is disabled; it is not an error.
    """
    provider = (config.provider if config else "").strip().lower()
    if provider not in SUPPORTED_PROVIDERS:
        if provider:
            logger.warning(f"Unrecognised billing provider '{provider}', billing reconciliation disabled")
        else:
            logger.info("No billing provider configured, billing reconciliation disabled")
        return None
    if not config.endpoint:
        logger.info(f"Billing provider '{provider}' has no endpoint, billing reconciliation disabled")
        return None
    return HttpBillingFetcher(config)


def reconcile(cluster_result: AggregationResult, summary: FetchAccountSummaryResponse,
              category: str = "compute") -> Dict[str, Any]:
    """Gap between the engine's billable total and the cloud bill for one category"""
    cloud_amount = summary.by_category.get(category, summary.total_amount)
    engine_amount = cluster_result.total_billable_cost
    difference = engine_amount - cloud_amount
    difference_percent = (difference / cloud_amount * 100) if cloud_amount > 0 else 0.0

    return {
        'billing_cycle': summary.billing_cycle,
        'currency': summary.currency,
        'category': category,
        'engine_billable_cost': round(engine_amount, 6),
        'cloud_amount': round(cloud_amount, 6),
        'difference': round(difference, 6),
        'difference_percent': round(difference_percent, 2),
        'engine_partial': cluster_result.partial,
    }
