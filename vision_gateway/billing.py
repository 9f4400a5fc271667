"""
Cost accounting for the vision gateway.
Converts token usage to USD, keeps a bounded usage ledger and reconciles
monthly totals against vendor cost reports.
"""

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from .models import CostSummary, PricingRule, UsageRecord, local_naive
from .pricing import PricingTable
from .storage import KeyValueStore, MemoryStore

if TYPE_CHECKING:
    from .adapters.base import ProviderAdapter

logger = logging.getLogger(__name__)


class BillingError(Exception):
    """Billing related errors"""
    pass


def month_bounds(now: datetime | None = None) -> tuple[datetime, datetime]:
    """First and last instant of the calendar month containing ``now`` (local time)."""
    now = local_naive(now) if now else datetime.now()
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        next_start = start.replace(year=start.year + 1, month=1)
    else:
        next_start = start.replace(month=start.month + 1)
    return start, next_start - timedelta(microseconds=1)


def format_cost(cost: float) -> str:
    """Format a USD amount for display."""
    if cost == 0:
        return "$0.00"
    if cost < 0.01:
        return f"${cost:.4f}"
    return f"${cost:.2f}"


class CostAccountant:
    """
    计费与用量账本 - 计算成本、记录用量、按月汇总。

    Supports:
    - cost = (input_tokens / 1_000_000) * input_cost_per_1m +
             (output_tokens / 1_000_000) * output_cost_per_1m
    - A ledger of the most recent ``capacity`` usage records, oldest evicted first
    - Monthly summaries from the ledger
    - Reconciliation against a vendor cost report; a successful report always
      wins over the local estimate, only a failed fetch falls back
    """

    LEDGER_KEY = "usage_records"
    DEFAULT_CAPACITY = 1000

    def __init__(
        self,
        store: KeyValueStore | None = None,
        pricing: PricingTable | None = None,
        capacity: int = DEFAULT_CAPACITY,
    ):
        """
        Initialize CostAccountant.

        Args:
            store: Key-value store holding the ledger. If None, uses memory.
            pricing: Pricing table. If None, uses the built-in table.
            capacity: Maximum number of records retained
        """
        if capacity <= 0:
            raise BillingError("capacity must be positive")
        self._store = store or MemoryStore()
        self._pricing = pricing or PricingTable()
        self.capacity = capacity

    @property
    def pricing(self) -> PricingTable:
        return self._pricing

    def get_pricing_rule(self, provider: str, model: str) -> PricingRule | None:
        return self._pricing.get(provider, model)

    def compute_cost(
        self,
        provider: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
    ) -> float:
        """
        Calculate cost for a given token usage.

        Unknown providers cost 0.0; unknown models use the provider's first
        listed price so a pricing gap never blocks a result.

        Raises:
            BillingError: If tokens are negative
        """
        if input_tokens < 0:
            raise BillingError("input_tokens cannot be negative")
        if output_tokens < 0:
            raise BillingError("output_tokens cannot be negative")

        rule = self._pricing.get(provider, model)
        if rule is None:
            return 0.0
        return rule.calculate_cost(input_tokens, output_tokens)

    def record_usage(self, record: UsageRecord) -> UsageRecord:
        """Append a record, trimming the ledger to the most recent ``capacity`` entries."""
        records = self._store.get(self.LEDGER_KEY) or []
        records.append(record.to_dict())
        self._store.set(self.LEDGER_KEY, records[-self.capacity:])
        return record

    def record(
        self,
        provider: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        timestamp: datetime | None = None,
    ) -> UsageRecord:
        """Price a usage and append it to the ledger."""
        cost = self.compute_cost(provider, model, input_tokens, output_tokens)
        return self.record_usage(UsageRecord(
            provider=provider,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=cost,
            timestamp=local_naive(timestamp) if timestamp else datetime.now(),
        ))

    def get_records(self) -> list[UsageRecord]:
        """All retained records in insertion order."""
        records = []
        for raw in self._store.get(self.LEDGER_KEY) or []:
            try:
                records.append(UsageRecord.from_dict(raw))
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed usage record: %r", raw)
        return records

    def get_records_by_time_range(
        self,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        provider: str | None = None,
    ) -> list[UsageRecord]:
        """Records within [start_time, end_time], optionally for one provider."""
        result = []
        for record in self.get_records():
            if start_time is not None and record.timestamp < start_time:
                continue
            if end_time is not None and record.timestamp > end_time:
                continue
            if provider is not None and record.provider != provider:
                continue
            result.append(record)
        return result

    def monthly_summary(self, provider: str | None = None, now: datetime | None = None) -> CostSummary:
        """
        Total, mean and count for the current calendar month from the ledger.

        An empty month yields an all-zero summary.
        """
        start, end = month_bounds(now)
        records = self.get_records_by_time_range(start, end, provider)
        if not records:
            return CostSummary()
        total = sum(record.cost for record in records)
        return CostSummary(
            month_total=total,
            month_average=total / len(records),
            request_count=len(records),
        )

    async def reconciled_summary(
        self,
        provider: str,
        credential: str | None,
        adapter: "ProviderAdapter | None" = None,
        now: datetime | None = None,
    ) -> CostSummary:
        """
        Prefer the vendor's cost report for this month, falling back to the
        local estimate on any failure.

        Args:
            provider: Provider name
            credential: Admin-scoped credential for the vendor's cost API
            adapter: Adapter that can fetch the vendor cost report
            now: Reference time, defaults to the current local time

        Returns:
            CostSummary with source "vendor" on success, otherwise "local"
        """
        local = self.monthly_summary(provider, now)
        if adapter is None or not adapter.SUPPORTS_COST_REPORT:
            return local
        if not credential:
            logger.info("No admin credential for %s cost report, using local estimate", provider)
            return local

        start, end = month_bounds(now)
        end = min(end, local_naive(now) if now else datetime.now())
        try:
            total = await adapter.fetch_cost_report(credential, start, end)
        except Exception as e:
            logger.warning("Cost report for %s unavailable, using local estimate: %s", provider, e)
            return local

        count = local.request_count
        return CostSummary(
            month_total=total,
            month_average=total / count if count else 0.0,
            request_count=count,
            source="vendor",
        )
