"""
KPI synthesis.

Combines the winning rollup (canonical, filtered or fallback) with
attributed donations and channel spend into the KPI set, period-over-period
trends, per-day time series, sparklines and the channel breakdown.

Every ratio returns 0 for a zero denominator; nothing here produces NaN
or infinity.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

from finrollup.attribution import AttributionRecord, aggregate_by_channel, is_attributed
from finrollup.daybucket import bucket_by_day
from finrollup.models import (
    Channel,
    ChannelBreakdown,
    DailyRollupRow,
    KPISet,
    PeriodSummary,
    SparklinePoint,
    SpendRecord,
    TimeSeriesPoint,
    Transaction,
)
from finrollup.periods import DateRange, day_label

# KPIs compared period over period
TREND_FIELDS = (
    "gross_raised",
    "net_raised",
    "net_revenue",
    "refunds",
    "refund_rate",
    "donation_count",
    "unique_donors",
    "recurring_revenue",
    "recurring_percentage",
    "recurring_churn_rate",
    "avg_donation",
    "total_spend",
    "roi",
    "blended_roi",
    "attribution_rate",
    "deterministic_rate",
    "attributed_donation_rate",
)


# ═══════════════════════════════════════════════════════════════════════════════
# FORMULAS
# ═══════════════════════════════════════════════════════════════════════════════

def safe_div(numerator: float, denominator: float) -> float:
    """numerator / denominator, or 0 when the denominator is 0."""
    if not denominator:
        return 0.0
    return numerator / denominator


def percentage(numerator: float, denominator: float) -> float:
    return safe_div(numerator, denominator) * 100


def trend(current: float, previous: float) -> float:
    """
    Period-over-period change in percent.

    Examples:
        >>> trend(150, 100)
        50.0
        >>> trend(50, 0)
        100.0
        >>> trend(0, 0)
        0.0
    """
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return (current - previous) / previous * 100


def compute_trends(current: KPISet, previous: KPISet, fields: Sequence[str] = TREND_FIELDS) -> Dict[str, float]:
    return {name: trend(getattr(current, name), getattr(previous, name)) for name in fields}


# ═══════════════════════════════════════════════════════════════════════════════
# DONORS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class DonorSplit:
    """Donors of the current period split into new and returning."""
    new: Set[str] = field(default_factory=set)
    returning: Set[str] = field(default_factory=set)

    @property
    def new_count(self) -> int:
        return len(self.new)

    @property
    def returning_count(self) -> int:
        return len(self.returning)


def donor_ids(transactions: Iterable[Transaction]) -> Set[str]:
    """Distinct donor identifiers of the donations in `transactions`."""
    return {t.donor_id for t in transactions if t.is_donation and t.donor_id}


def classify_donors(current_ids: Set[str], previous_ids: Set[str]) -> DonorSplit:
    """New = not seen in the immediately preceding period; returning otherwise."""
    return DonorSplit(new=current_ids - previous_ids, returning=current_ids & previous_ids)


def classify_donors_lifetime(
    current_ids: Set[str],
    first_donation_dates: Mapping[str, date],
    period_start: date,
) -> DonorSplit:
    """
    Lifetime classification: new when the first-ever donation falls in the period.

    Donors with no known first-donation date count as new.
    """
    split = DonorSplit()
    for donor in current_ids:
        first = first_donation_dates.get(donor)
        if first is None or first >= period_start:
            split.new.add(donor)
        else:
            split.returning.add(donor)
    return split


# ═══════════════════════════════════════════════════════════════════════════════
# SPEND
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class SpendTotals:
    meta: float = 0.0
    sms: float = 0.0
    impressions: int = 0
    clicks: int = 0

    @property
    def total(self) -> float:
        return self.meta + self.sms


def summarize_spend(spend: Iterable[SpendRecord]) -> SpendTotals:
    totals = SpendTotals()
    for record in spend:
        if record.channel == Channel.META:
            totals.meta += record.spend
            totals.impressions += record.impressions
            totals.clicks += record.clicks
        elif record.channel == Channel.SMS:
            totals.sms += record.spend
    return totals


def spend_by_day(spend: Iterable[SpendRecord]) -> Dict[str, Dict[Channel, float]]:
    by_day: Dict[str, Dict[Channel, float]] = defaultdict(lambda: defaultdict(float))
    for record in spend:
        by_day[record.day][record.channel] += record.spend
    return by_day


# ═══════════════════════════════════════════════════════════════════════════════
# KPI SET
# ═══════════════════════════════════════════════════════════════════════════════

def synthesize_kpis(
    summary: PeriodSummary,
    records: Sequence[AttributionRecord] = (),
    spend: Iterable[SpendRecord] = (),
    transactions: Sequence[Transaction] = (),
    donor_split: Optional[DonorSplit] = None,
) -> KPISet:
    """
    Build the KPI set for one period.

    Args:
        summary: Period summary from whichever path won
        records: Attributed donations counted in the period
        spend: Channel spend for the period
        transactions: Raw donations and refunds, for recurring churn and
            upsell figures
        donor_split: New/returning split, when donor ids were available

    Returns:
        KPISet
    """
    spend_totals = summarize_spend(spend)
    net_revenue = summary.net_revenue

    attributed = [r for r in records if is_attributed(r.attribution)]
    deterministic = [r for r in records if r.attribution.is_deterministic]
    attributed_revenue = sum(r.transaction.net_amount for r in attributed)

    recurring_records = [t for t in transactions if t.is_recurring]
    churn_events = sum(1 for t in recurring_records if t.is_refund)
    donations = [t for t in transactions if t.is_donation]
    upsell_shown = sum(1 for t in donations if t.recurring_upsell_shown)
    upsell_succeeded = sum(1 for t in donations if t.recurring_upsell_succeeded)

    return KPISet(
        gross_raised=summary.gross_raised,
        net_raised=summary.net_raised,
        refunds=summary.refunds,
        net_revenue=net_revenue,
        total_fees=summary.total_fees,
        fee_percentage=percentage(summary.total_fees, summary.gross_raised),
        refund_rate=percentage(summary.refunds, summary.gross_raised),
        refund_count=summary.refund_count,
        donation_count=summary.donation_count,
        avg_donation=summary.avg_donation,
        recurring_count=summary.recurring_count,
        recurring_revenue=summary.recurring_revenue,
        recurring_percentage=percentage(summary.recurring_count, summary.donation_count),
        recurring_churn_rate=percentage(churn_events, len(recurring_records)),
        upsell_conversion_rate=percentage(upsell_succeeded, upsell_shown),
        unique_donors=summary.unique_donors,
        new_donors=donor_split.new_count if donor_split else 0,
        returning_donors=donor_split.returning_count if donor_split else 0,
        attributed_revenue=attributed_revenue,
        attribution_rate=percentage(attributed_revenue, net_revenue),
        deterministic_rate=percentage(len(deterministic), len(records)),
        attributed_donation_rate=percentage(len(attributed), len(records)),
        total_spend=spend_totals.total,
        meta_spend=spend_totals.meta,
        sms_spend=spend_totals.sms,
        impressions=spend_totals.impressions,
        clicks=spend_totals.clicks,
        roi=safe_div(attributed_revenue, spend_totals.total),
        blended_roi=safe_div(net_revenue, spend_totals.total),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# TIME SERIES
# ═══════════════════════════════════════════════════════════════════════════════

def attribution_share_by_day(records: Iterable[AttributionRecord], timezone: str) -> Dict[str, float]:
    """Percent of each day's donations that were attributed."""
    buckets = bucket_by_day(records, lambda r: r.transaction.occurred_at, timezone)
    return {
        day: percentage(sum(1 for r in day_records if is_attributed(r.attribution)), len(day_records))
        for day, day_records in buckets.items()
    }


def build_time_series(
    date_range: DateRange,
    previous_range: DateRange,
    daily: Iterable[DailyRollupRow],
    previous_daily: Iterable[DailyRollupRow] = (),
    spend: Iterable[SpendRecord] = (),
    previous_spend: Iterable[SpendRecord] = (),
    attribution_share: Optional[Mapping[str, float]] = None,
) -> List[TimeSeriesPoint]:
    """
    One point per calendar day in the range, zero-filled.

    Previous-period values are aligned by position: the first day of the
    range is paired with the first day of the previous range.
    """
    rows = {row.day: row for row in daily}
    previous_rows = {row.day: row for row in previous_daily}
    day_spend = spend_by_day(spend)
    previous_day_spend = spend_by_day(previous_spend)
    attribution_share = attribution_share or {}
    previous_days = previous_range.day_keys()

    points = []
    for index, day in enumerate(date_range.day_keys()):
        row = rows.get(day) or DailyRollupRow(day=day)
        prev_day = previous_days[index] if index < len(previous_days) else None
        prev_row = previous_rows.get(prev_day) or DailyRollupRow(day=prev_day or day)
        spend_today = day_spend.get(day, {})
        spend_prev = previous_day_spend.get(prev_day, {}) if prev_day else {}

        points.append(TimeSeriesPoint(
            date=day,
            label=day_label(day),
            donations=row.gross_raised,
            net_donations=row.net_raised,
            refunds=row.refunds,
            net_revenue=row.net_revenue,
            meta_spend=spend_today.get(Channel.META, 0.0),
            sms_spend=spend_today.get(Channel.SMS, 0.0),
            recurring_revenue=row.recurring_revenue,
            unique_donors=row.unique_donors,
            attributed_share=attribution_share.get(day, 0.0),
            donations_prev=prev_row.gross_raised,
            net_donations_prev=prev_row.net_raised,
            refunds_prev=prev_row.refunds,
            meta_spend_prev=spend_prev.get(Channel.META, 0.0),
            sms_spend_prev=spend_prev.get(Channel.SMS, 0.0),
        ))
    return points


def build_sparklines(time_series: Sequence[TimeSeriesPoint]) -> Dict[str, List[SparklinePoint]]:
    """Per-day projections for the KPI cards."""
    def line(value_of) -> List[SparklinePoint]:
        return [SparklinePoint(date=p.date, value=value_of(p)) for p in time_series]

    return {
        "net_revenue": line(lambda p: p.net_revenue),
        "roi": line(lambda p: safe_div(p.net_revenue, p.spend)),
        "refund_rate": line(lambda p: percentage(p.refunds, p.donations)),
        "recurring_health": line(lambda p: p.recurring_revenue),
        "unique_donors": line(lambda p: float(p.unique_donors)),
        "attribution_quality": line(lambda p: p.attributed_share),
    }


# ═══════════════════════════════════════════════════════════════════════════════
# CHANNEL BREAKDOWN
# ═══════════════════════════════════════════════════════════════════════════════

def build_channel_breakdown(
    records: Sequence[AttributionRecord],
    spend: Iterable[SpendRecord] = (),
) -> List[ChannelBreakdown]:
    """Every channel, including unattributed, with spend and per-channel ROI."""
    totals = aggregate_by_channel(records)
    channel_spend: Dict[Channel, float] = defaultdict(float)
    for record in spend:
        channel_spend[record.channel] += record.spend

    total_donations = len(records)
    breakdown = []
    for channel in Channel:
        bucket = totals[channel]
        cost = channel_spend.get(channel, 0.0)
        breakdown.append(ChannelBreakdown(
            channel=channel,
            donations=bucket.count,
            raised=bucket.raised,
            net=bucket.net,
            donors=len(bucket.donors),
            spend=cost,
            roi=safe_div(bucket.net, cost),
            percentage=percentage(bucket.count, total_donations),
        ))
    return breakdown
