"""
Domain models for fundraising rollups.

Provides type-safe dataclasses for transactions, rollup rows, spend and the
KPI bundle. `from_api` classmethods are the ingestion boundary: field-name
drift is resolved and every numeric field is coerced there (missing,
non-numeric, NaN or infinite values become 0), so downstream code can
assume fully typed, non-null numbers.
"""
import math
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

from finrollup.daybucket import INVALID_DAY, day_key, parse_timestamp


# ═══════════════════════════════════════════════════════════════════════════════
# COERCION HELPERS
# ═══════════════════════════════════════════════════════════════════════════════

def to_float(value: Any) -> float:
    """Coerce a loosely typed number to float; anything unusable becomes 0.0."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number) or math.isinf(number):
        return 0.0
    return number


def to_int(value: Any) -> int:
    """Coerce a loosely typed count to int; anything unusable becomes 0."""
    return int(to_float(value))


def to_bool(value: Any) -> bool:
    """Coerce 't'/'true'/1 style flags from the source."""
    if isinstance(value, str):
        return value.strip().lower() in ("t", "true", "1", "yes")
    return bool(value)


def clean_str(value: Any) -> Optional[str]:
    """Strip a string field; empty or non-string values become None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def first_present(data: Dict[str, Any], aliases: Sequence[str]) -> Any:
    """Return the first alias present (and not None) in a source row."""
    for name in aliases:
        if data.get(name) is not None:
            return data[name]
    return None


def normalize_day(value: Any) -> Optional[str]:
    """Normalize a source 'day' column to YYYY-MM-DD, or None if invalid."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if not isinstance(value, str) or len(value) < 10:
        return None
    try:
        return date.fromisoformat(value[:10]).isoformat()
    except ValueError:
        return None


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class TransactionType(str, Enum):
    """Monetary event types from the payment processor feed."""
    DONATION = "donation"
    REFUND = "refund"
    CANCELLATION = "cancellation"

    @property
    def is_refund_like(self) -> bool:
        """Refunds and cancellations both reduce net revenue."""
        return self in (TransactionType.REFUND, TransactionType.CANCELLATION)


class Channel(str, Enum):
    """Marketing channel a donation is attributed to."""
    META = "meta"
    SMS = "sms"
    OTHER = "other"
    UNATTRIBUTED = "unattributed"

    @property
    def label(self) -> str:
        """Human-readable channel name."""
        labels = {
            Channel.META: "Meta Ads",
            Channel.SMS: "SMS",
            Channel.OTHER: "Other",
            Channel.UNATTRIBUTED: "Unattributed",
        }
        return labels[self]


class AttributionMethod(str, Enum):
    """Which precedence tier produced an attribution."""
    PLATFORM_MAPPING = "platform_mapping"
    CAMPAIGN_MAPPING = "campaign_mapping"
    REFCODE = "refcode"
    CLICK_ID = "click_id"
    CONTRIBUTION_FORM = "contribution_form"
    UNATTRIBUTED = "unattributed"


class ConfidenceLevel(str, Enum):
    """Attribution confidence bands."""
    DETERMINISTIC = "deterministic"
    HIGH = "high"
    MEDIUM = "medium"
    NONE = "none"


class ReconcileMode(str, Enum):
    """Data path chosen for one reconciliation pass."""
    NO_FILTER_CANONICAL = "no_filter_canonical"
    FILTERED = "filtered"
    FALLBACK = "fallback"


# ═══════════════════════════════════════════════════════════════════════════════
# RAW RECORDS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AttributionSignals:
    """Attribution evidence carried by (or joined onto) a donation."""
    platform: Optional[str] = None
    refcode: Optional[str] = None
    click_id: Optional[str] = None
    fbclid: Optional[str] = None
    campaign_id: Optional[str] = None
    creative_id: Optional[str] = None
    ad_id: Optional[str] = None
    source_campaign: Optional[str] = None
    contribution_form: Optional[str] = None

    @classmethod
    def from_api(cls, data: Optional[Dict[str, Any]]) -> "AttributionSignals":
        """Create signals from a transaction or donation_attribution row."""
        if not data:
            return cls()
        return cls(
            platform=clean_str(first_present(data, ("attributed_platform", "platform", "attribution_method"))),
            refcode=clean_str(data.get("refcode")),
            click_id=clean_str(data.get("click_id")),
            fbclid=clean_str(data.get("fbclid")),
            campaign_id=clean_str(first_present(data, ("attributed_campaign_id", "campaign_id"))),
            creative_id=clean_str(first_present(data, ("attributed_creative_id", "creative_id"))),
            ad_id=clean_str(first_present(data, ("attributed_ad_id", "ad_id"))),
            source_campaign=clean_str(data.get("source_campaign")),
            contribution_form=clean_str(data.get("contribution_form")),
        )

    @property
    def has_campaign_mapping(self) -> bool:
        return bool(self.campaign_id or self.creative_id or self.ad_id)

    @property
    def is_empty(self) -> bool:
        return not any((
            self.platform, self.refcode, self.click_id, self.fbclid,
            self.campaign_id, self.creative_id, self.ad_id,
            self.source_campaign, self.contribution_form,
        ))

    def merged_with(self, other: "AttributionSignals") -> "AttributionSignals":
        """Fill fields missing here from `other` (other never overrides)."""
        return AttributionSignals(**{
            name: getattr(self, name) or getattr(other, name)
            for name in self.__dataclass_fields__
        })

    def matches(self, campaign_id: Optional[str], creative_id: Optional[str]) -> bool:
        """Check campaign/creative filters; a None filter matches anything."""
        if campaign_id and self.campaign_id != campaign_id:
            return False
        if creative_id and self.creative_id != creative_id:
            return False
        return True


_EMPTY_SIGNALS = AttributionSignals()


@dataclass(frozen=True)
class Transaction:
    """One monetary event (donation, refund or cancellation)."""
    id: str
    organization_id: str
    amount: float
    net_amount: float
    fee: float
    transaction_type: TransactionType
    occurred_at: Optional[datetime] = None
    is_recurring: bool = False
    donor_id: Optional[str] = None
    recurring_upsell_shown: bool = False
    recurring_upsell_succeeded: bool = False
    signals: AttributionSignals = _EMPTY_SIGNALS

    @classmethod
    def from_api(cls, data: Dict[str, Any], organization_id: str = "") -> Optional["Transaction"]:
        """
        Create Transaction from a raw transaction row.

        Returns None for rows that cannot be identified (no id or an
        unknown transaction type). Refunds and cancellations have their
        attribution signals stripped.
        """
        txn_id = clean_str(first_present(data, ("id", "transaction_id", "lineitem_id")))
        raw_type = clean_str(data.get("transaction_type")) or "donation"
        try:
            txn_type = TransactionType(raw_type.lower())
        except ValueError:
            return None
        if not txn_id:
            return None

        amount = to_float(data.get("amount"))
        # net_amount defaults to gross when absent
        net_raw = data.get("net_amount")
        net_amount = to_float(net_raw) if net_raw is not None else amount
        fee_raw = data.get("fee")
        fee = to_float(fee_raw) if fee_raw is not None else amount - net_amount

        signals = _EMPTY_SIGNALS if txn_type.is_refund_like else AttributionSignals.from_api(data)

        return cls(
            id=txn_id,
            organization_id=clean_str(data.get("organization_id")) or organization_id,
            amount=amount,
            net_amount=net_amount,
            fee=fee,
            transaction_type=txn_type,
            occurred_at=parse_timestamp(first_present(data, ("transaction_date", "occurred_at", "created_at"))),
            is_recurring=to_bool(data.get("is_recurring")),
            donor_id=clean_str(first_present(data, ("donor_id_hash", "donor_email", "donor_id"))),
            recurring_upsell_shown=to_bool(data.get("recurring_upsell_shown")),
            recurring_upsell_succeeded=to_bool(data.get("recurring_upsell_succeeded")),
            signals=signals,
        )

    @property
    def is_donation(self) -> bool:
        return self.transaction_type == TransactionType.DONATION

    @property
    def is_refund(self) -> bool:
        return self.transaction_type.is_refund_like

    @property
    def refund_amount(self) -> float:
        """Absolute amount a refund/cancellation takes back."""
        return abs(self.net_amount)

    def with_signals(self, extra: AttributionSignals) -> "Transaction":
        """Copy with attribution signals merged in (no-op for refunds)."""
        if self.is_refund:
            return self
        return replace(self, signals=self.signals.merged_with(extra))


# ═══════════════════════════════════════════════════════════════════════════════
# ROLLUP ROWS
# ═══════════════════════════════════════════════════════════════════════════════

# Source field aliases seen across rollup releases, preferred name first
ROLLUP_ALIASES: Dict[str, Sequence[str]] = {
    "day": ("day", "date", "local_day", "bucket_day"),
    "gross_raised": ("gross_raised", "gross_donations", "gross", "raised", "total_raised"),
    "net_raised": ("net_raised", "net_donations", "net", "total_net"),
    "refunds": ("refunds", "refund_amount", "refund_total"),
    "total_fees": ("total_fees", "fees", "fee_total"),
    "donation_count": ("donation_count", "transaction_count", "donations", "total_donations"),
    "refund_count": ("refund_count", "refunds_count"),
    "recurring_count": ("recurring_count", "recurring_donations"),
    "recurring_revenue": ("recurring_revenue", "recurring_amount"),
    "one_time_count": ("one_time_count",),
    "one_time_revenue": ("one_time_revenue", "one_time_amount"),
    "unique_donors": ("unique_donors", "unique_donors_approx", "donors"),
    "days_with_donations": ("days_with_donations", "days_active"),
}


def _rollup_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize the numeric fields shared by daily rows and summaries."""
    gross = to_float(first_present(data, ROLLUP_ALIASES["gross_raised"]))
    net = to_float(first_present(data, ROLLUP_ALIASES["net_raised"]))
    fees_raw = first_present(data, ROLLUP_ALIASES["total_fees"])
    donation_count = to_int(first_present(data, ROLLUP_ALIASES["donation_count"]))
    recurring_count = to_int(first_present(data, ROLLUP_ALIASES["recurring_count"]))
    recurring_revenue = to_float(first_present(data, ROLLUP_ALIASES["recurring_revenue"]))
    one_time_count = first_present(data, ROLLUP_ALIASES["one_time_count"])
    one_time_revenue = first_present(data, ROLLUP_ALIASES["one_time_revenue"])

    return {
        "gross_raised": gross,
        "net_raised": net,
        "refunds": abs(to_float(first_present(data, ROLLUP_ALIASES["refunds"]))),
        # Fees derived as the difference when not separately reported
        "total_fees": to_float(fees_raw) if fees_raw is not None else gross - net,
        "donation_count": donation_count,
        "refund_count": to_int(first_present(data, ROLLUP_ALIASES["refund_count"])),
        "recurring_count": recurring_count,
        "recurring_revenue": recurring_revenue,
        "one_time_count": (
            to_int(one_time_count) if one_time_count is not None
            else max(donation_count - recurring_count, 0)
        ),
        "one_time_revenue": (
            to_float(one_time_revenue) if one_time_revenue is not None
            else gross - recurring_revenue
        ),
        "unique_donors": to_int(first_present(data, ROLLUP_ALIASES["unique_donors"])),
    }


@dataclass(frozen=True)
class DailyRollupRow:
    """One organization-local calendar day of financial totals."""
    day: str
    gross_raised: float = 0.0
    net_raised: float = 0.0
    refunds: float = 0.0
    total_fees: float = 0.0
    donation_count: int = 0
    refund_count: int = 0
    recurring_count: int = 0
    recurring_revenue: float = 0.0
    one_time_count: int = 0
    one_time_revenue: float = 0.0
    unique_donors: int = 0

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> Optional["DailyRollupRow"]:
        """Create a row from any rollup release; None when the day is unusable."""
        day = normalize_day(first_present(data, ROLLUP_ALIASES["day"]))
        if day is None:
            return None
        return cls(day=day, **_rollup_fields(data))

    @property
    def net_revenue(self) -> float:
        """Net raised minus refunds; derived, so it always holds exactly."""
        return self.net_raised - self.refunds

    def with_refunds(self, refunds: float, refund_count: int) -> "DailyRollupRow":
        return replace(self, refunds=refunds, refund_count=refund_count)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "day": self.day,
            "gross_raised": round(self.gross_raised, 2),
            "net_raised": round(self.net_raised, 2),
            "refunds": round(self.refunds, 2),
            "net_revenue": round(self.net_revenue, 2),
            "total_fees": round(self.total_fees, 2),
            "donation_count": self.donation_count,
            "refund_count": self.refund_count,
            "recurring_count": self.recurring_count,
            "recurring_revenue": round(self.recurring_revenue, 2),
            "one_time_count": self.one_time_count,
            "one_time_revenue": round(self.one_time_revenue, 2),
            "unique_donors": self.unique_donors,
        }


@dataclass(frozen=True)
class PeriodSummary:
    """Daily rollup fields aggregated across a whole date range."""
    gross_raised: float = 0.0
    net_raised: float = 0.0
    refunds: float = 0.0
    total_fees: float = 0.0
    donation_count: int = 0
    refund_count: int = 0
    recurring_count: int = 0
    recurring_revenue: float = 0.0
    one_time_count: int = 0
    one_time_revenue: float = 0.0
    unique_donors: int = 0
    days_with_donations: int = 0
    # True when unique_donors is a sum of per-day uniques, not a distinct count
    unique_donors_approximate: bool = True

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "PeriodSummary":
        """Create summary from a get_period_summary response row."""
        return cls(
            days_with_donations=to_int(first_present(data, ROLLUP_ALIASES["days_with_donations"])),
            unique_donors_approximate=True,
            **_rollup_fields(data),
        )

    @classmethod
    def from_daily(
        cls,
        rows: Iterable[DailyRollupRow],
        unique_donors: Optional[int] = None,
    ) -> "PeriodSummary":
        """
        Sum daily rows into a period summary.

        Args:
            rows: Daily rows spanning the period
            unique_donors: Exact distinct donor count, when raw rows were
                available; otherwise the per-day uniques are summed and the
                figure is flagged approximate
        """
        rows = list(rows)
        summed_uniques = sum(r.unique_donors for r in rows)
        return cls(
            gross_raised=sum(r.gross_raised for r in rows),
            net_raised=sum(r.net_raised for r in rows),
            refunds=sum(r.refunds for r in rows),
            total_fees=sum(r.total_fees for r in rows),
            donation_count=sum(r.donation_count for r in rows),
            refund_count=sum(r.refund_count for r in rows),
            recurring_count=sum(r.recurring_count for r in rows),
            recurring_revenue=sum(r.recurring_revenue for r in rows),
            one_time_count=sum(r.one_time_count for r in rows),
            one_time_revenue=sum(r.one_time_revenue for r in rows),
            unique_donors=unique_donors if unique_donors is not None else summed_uniques,
            days_with_donations=sum(1 for r in rows if r.donation_count > 0),
            unique_donors_approximate=unique_donors is None,
        )

    @property
    def net_revenue(self) -> float:
        return self.net_raised - self.refunds

    @property
    def avg_donation(self) -> float:
        if self.donation_count <= 0:
            return 0.0
        return self.gross_raised / self.donation_count

    def agrees_with(self, other: "PeriodSummary", tolerance: float = 1e-6) -> bool:
        """Check monetary totals match another summary within tolerance."""
        return all(
            abs(getattr(self, name) - getattr(other, name)) <= tolerance
            for name in ("gross_raised", "net_raised", "refunds", "total_fees")
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "gross_raised": round(self.gross_raised, 2),
            "net_raised": round(self.net_raised, 2),
            "refunds": round(self.refunds, 2),
            "net_revenue": round(self.net_revenue, 2),
            "total_fees": round(self.total_fees, 2),
            "donation_count": self.donation_count,
            "refund_count": self.refund_count,
            "recurring_count": self.recurring_count,
            "recurring_revenue": round(self.recurring_revenue, 2),
            "one_time_count": self.one_time_count,
            "one_time_revenue": round(self.one_time_revenue, 2),
            "unique_donors": self.unique_donors,
            "unique_donors_approximate": self.unique_donors_approximate,
            "avg_donation": round(self.avg_donation, 2),
            "days_with_donations": self.days_with_donations,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# SPEND
# ═══════════════════════════════════════════════════════════════════════════════

def _spend_day(value: Any, tz_name: str) -> Optional[str]:
    """Plain dates are already local days; timestamps are bucketed."""
    if isinstance(value, str) and len(value.strip()) == 10:
        return normalize_day(value)
    if isinstance(value, date) and not isinstance(value, datetime):
        return value.isoformat()
    key = day_key(value, tz_name)
    return None if key == INVALID_DAY else key


@dataclass(frozen=True)
class SpendRecord:
    """Advertising or messaging cost for one channel on one day."""
    day: str
    channel: Channel
    spend: float = 0.0
    impressions: int = 0
    clicks: int = 0
    conversions: int = 0
    messages_sent: int = 0
    campaign_id: Optional[str] = None
    creative_id: Optional[str] = None

    @classmethod
    def from_meta_api(cls, data: Dict[str, Any], tz_name: str) -> Optional["SpendRecord"]:
        """Create from a meta_ad_metrics row."""
        day = _spend_day(data.get("date"), tz_name)
        if day is None:
            return None
        return cls(
            day=day,
            channel=Channel.META,
            spend=to_float(data.get("spend")),
            impressions=to_int(data.get("impressions")),
            clicks=to_int(data.get("clicks")),
            conversions=to_int(data.get("conversions")),
            campaign_id=clean_str(data.get("campaign_id")),
            creative_id=clean_str(first_present(data, ("ad_creative_id", "creative_id"))),
        )

    @classmethod
    def from_sms_api(cls, data: Dict[str, Any], tz_name: str) -> Optional["SpendRecord"]:
        """Create from an sms_campaigns row."""
        day = _spend_day(data.get("send_date"), tz_name)
        if day is None:
            return None
        return cls(
            day=day,
            channel=Channel.SMS,
            spend=to_float(data.get("cost")),
            conversions=to_int(data.get("conversions")),
            messages_sent=to_int(data.get("messages_sent")),
        )


# ═══════════════════════════════════════════════════════════════════════════════
# KPI BUNDLE
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class KPISet:
    """Scalar KPIs for one period."""
    gross_raised: float = 0.0
    net_raised: float = 0.0
    refunds: float = 0.0
    net_revenue: float = 0.0
    total_fees: float = 0.0
    fee_percentage: float = 0.0
    refund_rate: float = 0.0
    refund_count: int = 0
    donation_count: int = 0
    avg_donation: float = 0.0
    recurring_count: int = 0
    recurring_revenue: float = 0.0
    recurring_percentage: float = 0.0
    recurring_churn_rate: float = 0.0
    upsell_conversion_rate: float = 0.0
    unique_donors: int = 0
    new_donors: int = 0
    returning_donors: int = 0
    attributed_revenue: float = 0.0
    attribution_rate: float = 0.0
    deterministic_rate: float = 0.0
    attributed_donation_rate: float = 0.0
    total_spend: float = 0.0
    meta_spend: float = 0.0
    sms_spend: float = 0.0
    impressions: int = 0
    clicks: int = 0
    roi: float = 0.0
    blended_roi: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class TimeSeriesPoint:
    """One calendar day of chart data, with the aligned previous-period day."""
    date: str
    label: str
    donations: float = 0.0
    net_donations: float = 0.0
    refunds: float = 0.0
    net_revenue: float = 0.0
    meta_spend: float = 0.0
    sms_spend: float = 0.0
    recurring_revenue: float = 0.0
    unique_donors: int = 0
    attributed_share: float = 0.0
    donations_prev: float = 0.0
    net_donations_prev: float = 0.0
    refunds_prev: float = 0.0
    meta_spend_prev: float = 0.0
    sms_spend_prev: float = 0.0

    @property
    def spend(self) -> float:
        return self.meta_spend + self.sms_spend


@dataclass
class SparklinePoint:
    date: str
    value: float


@dataclass
class ChannelBreakdown:
    """Revenue, donors and spend for one channel."""
    channel: Channel
    donations: int = 0
    raised: float = 0.0
    net: float = 0.0
    donors: int = 0
    spend: float = 0.0
    roi: float = 0.0
    percentage: float = 0.0

    @property
    def label(self) -> str:
        return self.channel.label


@dataclass
class DataQuality:
    """Flags telling the presentation layer how far to trust the figures."""
    mode: ReconcileMode = ReconcileMode.NO_FILTER_CANONICAL
    used_fallback: bool = False
    attribution_method: str = "canonical"
    unique_donors_approximate: bool = False
    transactions_truncated: bool = False
    rollup_lagging: bool = False
    failed_sources: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def attribution_fallback_mode(self) -> bool:
        return self.attribution_method == "fallback"

    @property
    def is_approximate(self) -> bool:
        return (
            self.used_fallback
            or self.unique_donors_approximate
            or self.transactions_truncated
            or self.rollup_lagging
        )


@dataclass
class KPIBundle:
    """Everything one dashboard request needs; built fresh per request."""
    organization_id: str
    start_date: str
    end_date: str
    previous_start_date: str
    previous_end_date: str
    timezone: str
    kpis: KPISet
    previous_kpis: KPISet
    trends: Dict[str, float] = field(default_factory=dict)
    daily: List[DailyRollupRow] = field(default_factory=list)
    time_series: List[TimeSeriesPoint] = field(default_factory=list)
    sparklines: Dict[str, List[SparklinePoint]] = field(default_factory=dict)
    channel_breakdown: List[ChannelBreakdown] = field(default_factory=list)
    data_quality: DataQuality = field(default_factory=DataQuality)
    generated_at: Optional[datetime] = None
