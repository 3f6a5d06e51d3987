"""
Reconciliation orchestrator.

Decides which rollup path serves a request (canonical, filtered or
client-side fallback), fetches every dataset concurrently, merges them
and emits a KPI bundle with explicit data-quality flags.

Usage:
    async with RollupSourceClient() as source:
        reconciler = Reconciler(source)
        bundle = await reconciler.reconcile(
            ReportRequest("org-1", "2025-01-01", "2025-01-31")
        )

Each pass is independent: nothing is cached or shared between passes
apart from the source client's connection pool and circuit breaker.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime, timezone as dt_timezone
from typing import Any, Awaitable, Dict, List, Optional, Set, Union

from finrollup.attribution import AttributionRecord, AttributionRules, classify_transactions
from finrollup.config import AppConfig, config
from finrollup.exceptions import DataUnavailableError
from finrollup.fallback import aggregate_from_transactions, apply_filter_gate, split_transactions
from finrollup.kpis import (
    attribution_share_by_day,
    build_channel_breakdown,
    build_sparklines,
    build_time_series,
    classify_donors,
    compute_trends,
    donor_ids,
    synthesize_kpis,
)
from finrollup.models import (
    AttributionSignals,
    DailyRollupRow,
    DataQuality,
    KPIBundle,
    PeriodSummary,
    ReconcileMode,
    SpendRecord,
    Transaction,
)
from finrollup.observability import Timer, get_logger, path_stats
from finrollup.periods import DateRange
from finrollup.repositories import (
    AttributionRepository,
    CanonicalRollupGateway,
    FilteredRollupGateway,
    SpendRepository,
    TransactionBatch,
    TransactionRepository,
    matching_transaction_ids,
)
from finrollup.repositories.attribution import embedded_matching_ids
from finrollup.source import RollupSourceClient
from finrollup.validators import (
    validate_date_range,
    validate_filter_id,
    validate_org_id,
    validate_timezone,
)

logger = get_logger(__name__)

# Source names reported in DataQuality.failed_sources
ROLLUP = "rollup"
TRANSACTIONS = "transactions"
ATTRIBUTIONS = "attributions"
META_SPEND = "meta_spend"
SMS_SPEND = "sms_spend"

# PeriodFetch attribute -> reported source name
_FETCH_SOURCES = (
    ("daily", ROLLUP),
    ("summary", ROLLUP),
    ("batch", TRANSACTIONS),
    ("attributions", ATTRIBUTIONS),
    ("meta_spend", META_SPEND),
    ("sms_spend", SMS_SPEND),
)


@dataclass(frozen=True)
class ReportRequest:
    """
    One dashboard request. Validated and normalized on construction.
    The range length cap belongs to the Reconciler serving the request.

    Raises:
        ValidationError: If any field is invalid
    """
    organization_id: str
    start_date: Union[str, date]
    end_date: Union[str, date]
    campaign_id: Optional[str] = None
    creative_id: Optional[str] = None
    timezone: Optional[str] = None
    force_fallback: bool = False

    def __post_init__(self):
        start, end = validate_date_range(self.start_date, self.end_date, max_days=None)
        object.__setattr__(self, "organization_id", validate_org_id(self.organization_id))
        object.__setattr__(self, "start_date", start)
        object.__setattr__(self, "end_date", end)
        object.__setattr__(self, "campaign_id", validate_filter_id(self.campaign_id, "campaign_id"))
        object.__setattr__(self, "creative_id", validate_filter_id(self.creative_id, "creative_id"))
        if self.timezone is not None:
            object.__setattr__(self, "timezone", validate_timezone(self.timezone))

    @property
    def has_filters(self) -> bool:
        return bool(self.campaign_id or self.creative_id)

    @property
    def date_range(self) -> DateRange:
        return DateRange(self.start_date, self.end_date)


@dataclass
class PeriodFetch:
    """Raw results of one period's concurrent fetches; failures kept as exceptions."""
    daily: Any = None
    summary: Any = None
    batch: Any = None
    attributions: Any = None
    meta_spend: Any = None
    sms_spend: Any = None

    def failed(self, name: str) -> bool:
        return isinstance(getattr(self, name), Exception)

    def value(self, name: str, default: Any = None) -> Any:
        result = getattr(self, name)
        if result is None or isinstance(result, Exception):
            return default
        return result


@dataclass
class ResolvedPeriod:
    """One period after the rollup path was chosen."""
    date_range: DateRange
    daily: List[DailyRollupRow] = field(default_factory=list)
    summary: PeriodSummary = field(default_factory=PeriodSummary)
    donations: List[Transaction] = field(default_factory=list)
    refunds: List[Transaction] = field(default_factory=list)
    records: List[AttributionRecord] = field(default_factory=list)
    spend: List[SpendRecord] = field(default_factory=list)
    used_fallback: bool = False
    raw_available: bool = False


async def _empty() -> list:
    return []


class Reconciler:
    """
    Coordinates gateways, raw adapters and KPI synthesis for a request.

    Args:
        source: Shared source client for repositories not passed explicitly
        canonical: Canonical rollup gateway
        filtered: Filtered rollup gateway
        transactions: Raw transaction repository
        attributions: Attribution repository
        spend: Spend repository
        settings: Configuration (default: global config)
    """

    def __init__(
        self,
        source: Optional[RollupSourceClient] = None,
        *,
        canonical: Optional[CanonicalRollupGateway] = None,
        filtered: Optional[FilteredRollupGateway] = None,
        transactions: Optional[TransactionRepository] = None,
        attributions: Optional[AttributionRepository] = None,
        spend: Optional[SpendRepository] = None,
        settings: AppConfig = config,
    ):
        self.settings = settings
        self.canonical = canonical or CanonicalRollupGateway(source)
        self.filtered = filtered or FilteredRollupGateway(source, self.canonical)
        self.transactions = transactions or TransactionRepository(source)
        self.attributions = attributions or AttributionRepository(source)
        self.spend = spend or SpendRepository(source)
        self.rules = AttributionRules.from_config(settings.attribution)

    def initial_mode(self, request: ReportRequest) -> ReconcileMode:
        """Filters select the filtered gateway; otherwise canonical."""
        if request.has_filters:
            return ReconcileMode.FILTERED
        return ReconcileMode.NO_FILTER_CANONICAL

    def resolve_timezone(self, request: ReportRequest) -> str:
        return request.timezone or self.settings.rollup.timezone_for(request.organization_id)

    # ═══════════════════════════════════════════════════════════════════════════
    # FETCH
    # ═══════════════════════════════════════════════════════════════════════════

    async def _fetch_period(
        self,
        request: ReportRequest,
        period: DateRange,
        tz: str,
        mode: ReconcileMode,
    ) -> PeriodFetch:
        """Issue every fetch for one period concurrently; failures are returned, not raised."""
        org_id = request.organization_id

        if mode == ReconcileMode.FILTERED:
            daily = self.filtered.fetch_daily_rollup(
                org_id, period.start, period.end, tz, request.campaign_id, request.creative_id
            )
            summary: Awaitable = _empty()
        else:
            daily = self.canonical.fetch_daily_rollup(org_id, period.start, period.end, tz)
            summary = self.canonical.fetch_period_summary(org_id, period.start, period.end, tz)

        # SMS has no campaign mapping, so it drops out while a filter is active
        sms: Awaitable = (
            _empty() if request.has_filters
            else self.spend.fetch_sms_spend(org_id, period.start, period.end, tz)
        )

        results = await asyncio.gather(
            daily,
            summary,
            self.transactions.fetch_transactions(org_id, period.start, period.end, tz),
            self.attributions.fetch_attributions(org_id),
            self.spend.fetch_meta_spend(
                org_id, period.start, period.end, tz, request.campaign_id, request.creative_id
            ),
            sms,
            return_exceptions=True,
        )

        for result in results:
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result

        fetch = PeriodFetch(*results)
        if mode == ReconcileMode.FILTERED:
            fetch.summary = None
        return fetch

    # ═══════════════════════════════════════════════════════════════════════════
    # RESOLVE
    # ═══════════════════════════════════════════════════════════════════════════

    def _note_failures(self, fetch: PeriodFetch, prefix: str, quality: DataQuality) -> None:
        for attr, name in _FETCH_SOURCES:
            if not fetch.failed(attr):
                continue
            source_name = prefix + name
            if source_name in quality.failed_sources:
                continue
            quality.failed_sources.append(source_name)
            path_stats.record_source_failure(source_name)
            logger.warning(
                f"Fetch failed, continuing without {source_name}",
                extra={"source": source_name, "error": str(getattr(fetch, attr))}
            )

    def _gate_donations(
        self,
        request: ReportRequest,
        donations: List[Transaction],
        attributions: Optional[Dict[str, AttributionSignals]],
    ) -> List[Transaction]:
        """Apply the campaign/creative filter gate to donations (never refunds)."""
        if not request.has_filters:
            return donations
        allowed: Set[str] = embedded_matching_ids(donations, request.campaign_id, request.creative_id)
        if attributions is not None:
            allowed |= matching_transaction_ids(attributions, request.campaign_id, request.creative_id)
        return apply_filter_gate(donations, allowed)

    def _resolve_period(
        self,
        request: ReportRequest,
        period: DateRange,
        fetch: PeriodFetch,
        tz: str,
        mode: ReconcileMode,
        quality: DataQuality,
        is_current: bool,
    ) -> ResolvedPeriod:
        resolved = ResolvedPeriod(date_range=period)
        label = "current" if is_current else "previous"

        batch: Optional[TransactionBatch] = fetch.value("batch")
        attributions: Optional[Dict[str, AttributionSignals]] = fetch.value("attributions")

        if batch is not None:
            donations, refunds = split_transactions(batch.transactions)
            if attributions:
                donations = [t.with_signals(attributions.get(t.id, AttributionSignals())) for t in donations]
            resolved.donations = self._gate_donations(request, donations, attributions)
            resolved.refunds = refunds
            resolved.raw_available = True
            if batch.truncated and is_current:
                quality.transactions_truncated = True

        rollup_failed = fetch.failed("daily") or fetch.failed("summary")
        daily_rows: List[DailyRollupRow] = fetch.value("daily", [])
        rollup_empty = (
            not rollup_failed and not daily_rows and bool(resolved.donations or resolved.refunds)
        )

        if request.force_fallback or rollup_failed or rollup_empty:
            if not resolved.raw_available:
                if is_current and rollup_failed:
                    raise DataUnavailableError(request.organization_id, quality.failed_sources)
                if rollup_failed:
                    quality.warnings.append(f"No data available for the {label} period")
                    return self._finish_period(resolved, fetch)
                quality.warnings.append(
                    f"Raw transactions unavailable; {label} period served from the rollup"
                )
            else:
                if rollup_empty:
                    logger.warning(
                        "Rollup returned no rows while raw transactions exist",
                        extra={"organization_id": request.organization_id, "period": label}
                    )
                result = aggregate_from_transactions(
                    resolved.donations, resolved.refunds, tz, period.start, period.end
                )
                resolved.daily = result.daily
                resolved.summary = result.summary
                resolved.used_fallback = True
                return self._finish_period(resolved, fetch)

        resolved.daily = daily_rows
        summed = PeriodSummary.from_daily(daily_rows)
        summary: Optional[PeriodSummary] = fetch.value("summary")
        if summary is None:
            summary = summed
        elif not summary.agrees_with(summed, self.settings.rollup.sum_tolerance):
            quality.warnings.append(f"Daily rows and period summary disagree for the {label} period")
            logger.warning(
                "Daily rollup does not sum to period summary",
                extra={"organization_id": request.organization_id, "period": label}
            )
        resolved.summary = summary

        if is_current and batch is not None and not batch.truncated:
            if (summary.donation_count < len(resolved.donations)
                    or summary.refund_count < len(resolved.refunds)):
                quality.rollup_lagging = True

        return self._finish_period(resolved, fetch)

    def _finish_period(self, resolved: ResolvedPeriod, fetch: PeriodFetch) -> ResolvedPeriod:
        resolved.records = classify_transactions(resolved.donations, self.rules)
        resolved.spend = list(fetch.value("meta_spend", [])) + list(fetch.value("sms_spend", []))
        return resolved

    # ═══════════════════════════════════════════════════════════════════════════
    # RECONCILE
    # ═══════════════════════════════════════════════════════════════════════════

    async def reconcile(self, request: ReportRequest) -> KPIBundle:
        """
        Produce the KPI bundle for a request.

        Raises:
            DataUnavailableError: If the current period's rollup and raw
                transactions both failed
            ValidationError: If the range exceeds the configured maximum
        """
        validate_date_range(request.start_date, request.end_date, self.settings.rollup.max_range_days)
        tz = self.resolve_timezone(request)
        current_range = request.date_range
        previous_range = current_range.previous()
        mode = self.initial_mode(request)

        with Timer("reconcile", logger) as timer:
            current_fetch, previous_fetch = await asyncio.gather(
                self._fetch_period(request, current_range, tz, mode),
                self._fetch_period(request, previous_range, tz, mode),
            )

            quality = DataQuality(mode=mode)
            self._note_failures(current_fetch, "", quality)
            self._note_failures(previous_fetch, "previous_", quality)

            current = self._resolve_period(request, current_range, current_fetch, tz, mode, quality, True)
            previous = self._resolve_period(request, previous_range, previous_fetch, tz, mode, quality, False)

            bundle = self._build_bundle(request, tz, current, previous, current_fetch, quality)

        path_stats.record_mode(bundle.data_quality.mode.value)
        logger.info(
            f"Reconciled {request.organization_id} via {bundle.data_quality.mode.value}",
            extra={
                "organization_id": request.organization_id,
                "start": current_range.start_str,
                "end": current_range.end_str,
                "timezone": tz,
                "used_fallback": bundle.data_quality.used_fallback,
                "failed_sources": bundle.data_quality.failed_sources,
                "duration_ms": round(timer.elapsed_ms, 2),
            }
        )
        return bundle

    def _build_bundle(
        self,
        request: ReportRequest,
        tz: str,
        current: ResolvedPeriod,
        previous: ResolvedPeriod,
        current_fetch: PeriodFetch,
        quality: DataQuality,
    ) -> KPIBundle:
        quality.used_fallback = current.used_fallback or previous.used_fallback
        if current.used_fallback:
            quality.mode = ReconcileMode.FALLBACK
        quality.unique_donors_approximate = current.summary.unique_donors_approximate
        quality.attribution_method = "fallback" if current_fetch.failed("attributions") else "canonical"

        if quality.used_fallback:
            quality.warnings.append("Figures recomputed from raw transactions")
        if quality.transactions_truncated:
            quality.warnings.append(
                f"Raw transactions capped at {self.settings.source.max_transaction_rows} rows; totals may be partial"
            )
        if quality.rollup_lagging:
            quality.warnings.append("Rollup is behind raw transactions; recent donations may be missing")
        if quality.attribution_fallback_mode:
            quality.warnings.append("Attribution source unavailable; using signals embedded in transactions")

        donor_split = None
        if current.raw_available and previous.raw_available:
            donor_split = classify_donors(donor_ids(current.donations), donor_ids(previous.donations))

        kpis = synthesize_kpis(
            current.summary, current.records, current.spend,
            current.donations + current.refunds, donor_split,
        )
        previous_kpis = synthesize_kpis(
            previous.summary, previous.records, previous.spend,
            previous.donations + previous.refunds,
        )

        time_series = build_time_series(
            current.date_range,
            previous.date_range,
            current.daily,
            previous.daily,
            current.spend,
            previous.spend,
            attribution_share_by_day(current.records, tz),
        )

        return KPIBundle(
            organization_id=request.organization_id,
            start_date=current.date_range.start_str,
            end_date=current.date_range.end_str,
            previous_start_date=previous.date_range.start_str,
            previous_end_date=previous.date_range.end_str,
            timezone=tz,
            kpis=kpis,
            previous_kpis=previous_kpis,
            trends=compute_trends(kpis, previous_kpis),
            daily=current.daily,
            time_series=time_series,
            sparklines=build_sparklines(time_series),
            channel_breakdown=build_channel_breakdown(current.records, current.spend),
            data_quality=quality,
            generated_at=datetime.now(dt_timezone.utc),
        )


class ReportSession:
    """
    Last-request-wins gate for one dashboard view.

    When the user changes the range or filters while a pass is in flight,
    the older pass's result is discarded no matter which finishes first.
    """

    def __init__(self, reconciler: Reconciler):
        self.reconciler = reconciler
        self._latest = 0

    @property
    def latest(self) -> int:
        return self._latest

    async def submit(self, request: ReportRequest) -> Optional[KPIBundle]:
        """
        Reconcile a request unless a newer one supersedes it.

        Returns:
            KPIBundle, or None when a newer request was submitted first

        Raises:
            DataUnavailableError: Only for the latest request
        """
        self._latest += 1
        ticket = self._latest

        try:
            bundle = await self.reconciler.reconcile(request)
        except DataUnavailableError:
            if ticket != self._latest:
                return self._discard(ticket, request)
            raise

        if ticket != self._latest:
            return self._discard(ticket, request)
        return bundle

    def _discard(self, ticket: int, request: ReportRequest) -> None:
        path_stats.record_superseded()
        logger.info(
            "Discarding superseded report",
            extra={"ticket": ticket, "latest": self._latest, "organization_id": request.organization_id}
        )
        return None
