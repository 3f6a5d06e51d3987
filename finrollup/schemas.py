"""
Pydantic response models for the dashboard contract.

Field names are camelCase to match what the presentation layer reads.
"""
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from finrollup.models import (
    ChannelBreakdown,
    DataQuality,
    KPIBundle,
    KPISet,
    SparklinePoint,
    TimeSeriesPoint,
)


# ═══════════════════════════════════════════════════════════════════════════════
# KPI SET
# ═══════════════════════════════════════════════════════════════════════════════

class KPISetResponse(BaseModel):
    """Scalar KPIs for one period."""
    grossRaised: float = Field(description="Gross donations")
    netRaised: float = Field(description="Donations net of processing fees")
    refunds: float = Field(description="Refunded and cancelled amount (positive)")
    netRevenue: float = Field(description="Net raised minus refunds")
    totalFees: float
    feePercentage: float
    refundRate: float
    refundCount: int
    donationCount: int
    avgDonation: float
    recurringCount: int
    recurringRevenue: float
    recurringPercentage: float
    recurringChurnRate: float
    upsellConversionRate: float
    uniqueDonors: int
    newDonors: int
    returningDonors: int
    attributedRevenue: float
    attributionRate: float
    deterministicRate: float
    attributedDonationRate: float
    totalSpend: float
    metaSpend: float
    smsSpend: float
    impressions: int
    clicks: int
    roi: float = Field(description="Attributed revenue per dollar spent")
    blendedRoi: float = Field(description="Net revenue per dollar spent")


# ═══════════════════════════════════════════════════════════════════════════════
# CHARTS
# ═══════════════════════════════════════════════════════════════════════════════

class TimeSeriesPointResponse(BaseModel):
    """One day of chart data."""
    date: str = Field(description="Local day (YYYY-MM-DD)")
    name: str = Field(description="Chart label, e.g. 'Jan 5'")
    donations: float
    netDonations: float
    refunds: float
    netRevenue: float
    metaSpend: float
    smsSpend: float
    donationsPrev: float
    netDonationsPrev: float
    refundsPrev: float
    metaSpendPrev: float
    smsSpendPrev: float


class SparklinePointResponse(BaseModel):
    date: str
    value: float


class ChannelBreakdownResponse(BaseModel):
    """Revenue and spend for one channel."""
    channel: str
    name: str = Field(description="Display label")
    donations: int
    raised: float
    net: float
    donors: int
    spend: float
    roi: float
    percentage: float = Field(description="Share of donations in percent")


class DataQualityResponse(BaseModel):
    """How far to trust the figures."""
    mode: str
    usedFallback: bool
    attributionMethod: str = Field(description="canonical or fallback")
    attributionFallbackMode: bool
    uniqueDonorsApproximate: bool
    transactionsTruncated: bool
    rollupLagging: bool
    isApproximate: bool
    failedSources: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class KPIBundleResponse(BaseModel):
    """Everything the dashboard renders for one request."""
    organizationId: str
    startDate: str
    endDate: str
    previousStartDate: str
    previousEndDate: str
    timezone: str
    kpis: KPISetResponse
    prevKpis: KPISetResponse
    trends: Dict[str, float]
    timeSeries: List[TimeSeriesPointResponse]
    sparklines: Dict[str, List[SparklinePointResponse]]
    channelBreakdown: List[ChannelBreakdownResponse]
    dataQuality: DataQualityResponse
    generatedAt: Optional[str] = None


# ═══════════════════════════════════════════════════════════════════════════════
# CONVERSION
# ═══════════════════════════════════════════════════════════════════════════════

def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def kpis_to_response(kpis: KPISet) -> KPISetResponse:
    return KPISetResponse(**{_camel(k): v for k, v in kpis.to_dict().items()})


def _point(point: TimeSeriesPoint) -> TimeSeriesPointResponse:
    return TimeSeriesPointResponse(
        date=point.date,
        name=point.label,
        donations=point.donations,
        netDonations=point.net_donations,
        refunds=point.refunds,
        netRevenue=point.net_revenue,
        metaSpend=point.meta_spend,
        smsSpend=point.sms_spend,
        donationsPrev=point.donations_prev,
        netDonationsPrev=point.net_donations_prev,
        refundsPrev=point.refunds_prev,
        metaSpendPrev=point.meta_spend_prev,
        smsSpendPrev=point.sms_spend_prev,
    )


def _channel(row: ChannelBreakdown) -> ChannelBreakdownResponse:
    return ChannelBreakdownResponse(
        channel=row.channel.value,
        name=row.label,
        donations=row.donations,
        raised=row.raised,
        net=row.net,
        donors=row.donors,
        spend=row.spend,
        roi=row.roi,
        percentage=row.percentage,
    )


def _quality(quality: DataQuality) -> DataQualityResponse:
    return DataQualityResponse(
        mode=quality.mode.value,
        usedFallback=quality.used_fallback,
        attributionMethod=quality.attribution_method,
        attributionFallbackMode=quality.attribution_fallback_mode,
        uniqueDonorsApproximate=quality.unique_donors_approximate,
        transactionsTruncated=quality.transactions_truncated,
        rollupLagging=quality.rollup_lagging,
        isApproximate=quality.is_approximate,
        failedSources=list(quality.failed_sources),
        warnings=list(quality.warnings),
    )


def _sparkline(points: List[SparklinePoint]) -> List[SparklinePointResponse]:
    return [SparklinePointResponse(date=p.date, value=p.value) for p in points]


def bundle_to_response(bundle: KPIBundle) -> KPIBundleResponse:
    """Convert a KPI bundle to the camelCase response model."""
    return KPIBundleResponse(
        organizationId=bundle.organization_id,
        startDate=bundle.start_date,
        endDate=bundle.end_date,
        previousStartDate=bundle.previous_start_date,
        previousEndDate=bundle.previous_end_date,
        timezone=bundle.timezone,
        kpis=kpis_to_response(bundle.kpis),
        prevKpis=kpis_to_response(bundle.previous_kpis),
        trends={_camel(k): v for k, v in bundle.trends.items()},
        timeSeries=[_point(p) for p in bundle.time_series],
        sparklines={_camel(k): _sparkline(v) for k, v in bundle.sparklines.items()},
        channelBreakdown=[_channel(row) for row in bundle.channel_breakdown],
        dataQuality=_quality(bundle.data_quality),
        generatedAt=bundle.generated_at.isoformat() if bundle.generated_at else None,
    )
