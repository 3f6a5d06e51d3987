"""
Client-side rollup recomputation from raw transactions.

Used when the canonical rollup fails, comes back empty while raw
donations exist, or the caller asks for client-side computation. Given
the same transactions and timezone it produces the same daily rows and
period summary as the canonical rollup (within the configured tolerance),
except that unique donor counts here are exact distinct sets.
"""
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from finrollup.daybucket import bucket_by_day
from finrollup.models import DailyRollupRow, PeriodSummary, Transaction
from finrollup.observability import get_logger

logger = get_logger(__name__)


@dataclass
class FallbackResult:
    """Recomputed daily rows and period summary."""
    daily: List[DailyRollupRow] = field(default_factory=list)
    summary: PeriodSummary = field(default_factory=PeriodSummary)
    skipped: int = 0


def split_transactions(transactions: Iterable[Transaction]) -> Tuple[List[Transaction], List[Transaction]]:
    """Separate donations from refunds/cancellations."""
    donations, refunds = [], []
    for txn in transactions:
        if txn.is_refund:
            refunds.append(txn)
        elif txn.is_donation:
            donations.append(txn)
    return donations, refunds


def apply_filter_gate(donations: Iterable[Transaction], allowed_ids: Set[str]) -> List[Transaction]:
    """Keep donations whose id passed the campaign/creative filter gate."""
    return [txn for txn in donations if txn.is_donation and txn.id in allowed_ids]


def _day_row(day: str, donations: Sequence[Transaction], refunds: Sequence[Transaction]) -> DailyRollupRow:
    recurring = [t for t in donations if t.is_recurring]
    gross = sum(t.amount for t in donations)
    recurring_revenue = sum(t.amount for t in recurring)
    return DailyRollupRow(
        day=day,
        gross_raised=gross,
        net_raised=sum(t.net_amount for t in donations),
        refunds=sum(t.refund_amount for t in refunds),
        total_fees=sum(t.fee for t in donations),
        donation_count=len(donations),
        refund_count=len(refunds),
        recurring_count=len(recurring),
        recurring_revenue=recurring_revenue,
        one_time_count=len(donations) - len(recurring),
        one_time_revenue=gross - recurring_revenue,
        unique_donors=len({t.donor_id for t in donations if t.donor_id}),
    )


def aggregate_from_transactions(
    transactions: Sequence[Transaction],
    refunds: Sequence[Transaction],
    timezone: str,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> FallbackResult:
    """
    Recompute daily rows and the period summary from raw records.

    Args:
        transactions: Donations to count (already gated by any filter)
        refunds: Refunds/cancellations; never filtered
        timezone: IANA zone; must be the one the canonical rollup uses
        start: Drop days before this local day
        end: Drop days after this local day

    Returns:
        FallbackResult with rows sorted by day and the count of records
        skipped for invalid timestamps or falling outside the range
    """
    donation_buckets = bucket_by_day(transactions, lambda t: t.occurred_at, timezone)
    refund_buckets = bucket_by_day(refunds, lambda t: t.occurred_at, timezone)

    start_key = start.isoformat() if start else None
    end_key = end.isoformat() if end else None

    def in_range(day: str) -> bool:
        if start_key and day < start_key:
            return False
        if end_key and day > end_key:
            return False
        return True

    days = sorted(d for d in set(donation_buckets) | set(refund_buckets) if in_range(d))
    daily = [
        _day_row(day, donation_buckets.get(day, []), refund_buckets.get(day, []))
        for day in days
    ]

    counted_donations = [t for day in days for t in donation_buckets.get(day, [])]
    counted_refunds = sum(len(refund_buckets.get(day, [])) for day in days)
    skipped = len(transactions) + len(refunds) - len(counted_donations) - counted_refunds

    donors = {t.donor_id for t in counted_donations if t.donor_id}
    summary = PeriodSummary.from_daily(daily, unique_donors=len(donors))

    if skipped:
        logger.debug(
            f"Fallback skipped {skipped} records",
            extra={"timezone": timezone, "skipped": skipped}
        )

    return FallbackResult(daily=daily, summary=summary, skipped=skipped)
