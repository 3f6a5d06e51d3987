"""
Integration tests for finrollup/orchestrator.py

Runs whole reconciliation passes over mocked gateways and repositories.
"""
import asyncio
import pytest
from datetime import date

from finrollup.config import AppConfig, RollupConfig
from finrollup.exceptions import (
    DataUnavailableError,
    GatewayError,
    SourceConnectionError,
    ValidationError,
)
from finrollup.models import (
    AttributionSignals,
    Channel,
    DailyRollupRow,
    ReconcileMode,
    SpendRecord,
)
from finrollup.observability import path_stats
from finrollup.orchestrator import ReportRequest, ReportSession
from finrollup.repositories import TransactionBatch
from finrollup.schemas import bundle_to_response

CURRENT = date(2025, 1, 15)

SCENARIO_A_ROW = DailyRollupRow(
    day="2025-01-15",
    gross_raised=300,
    net_raised=291,
    refunds=48,
    total_fees=9,
    donation_count=3,
    refund_count=1,
    one_time_count=3,
    one_time_revenue=300,
    unique_donors=3,
)


def by_period(current, previous):
    """Mock side effect answering differently for the current and previous period."""
    def pick(organization_id, start=None, *args, **kwargs):
        value = current if start == CURRENT else previous
        if isinstance(value, BaseException):
            raise value
        return value
    return pick


def request(**overrides):
    params = dict(organization_id="org-1", start_date="2025-01-15", end_date="2025-01-15", timezone="UTC")
    params.update(overrides)
    return ReportRequest(**params)


def rollup_down():
    return GatewayError("canonical", SourceConnectionError("connection refused"))


class TestReportRequest:
    """Tests for request validation."""

    def test_normalizes(self):
        req = request(campaign_id="  c1 ", creative_id="")

        assert req.start_date == CURRENT
        assert req.campaign_id == "c1"
        assert req.creative_id is None
        assert req.has_filters
        assert req.date_range.days == 1

    @pytest.mark.parametrize("overrides", [
        {"organization_id": ""},
        {"start_date": "2025-02-01"},
        {"timezone": "Not/AZone"},
        {"campaign_id": "bad id"},
    ])
    def test_invalid(self, overrides):
        with pytest.raises(ValidationError):
            request(**overrides)

    @pytest.mark.asyncio
    async def test_range_cap_comes_from_reconciler_settings(self, reconciler_factory):
        settings = AppConfig(rollup=RollupConfig(default_timezone="UTC", org_timezones={}, max_range_days=7))
        reconciler = reconciler_factory(settings=settings)
        month = request(start_date="2025-01-01", end_date="2025-01-31")

        with pytest.raises(ValidationError) as exc_info:
            await reconciler.reconcile(month)

        assert exc_info.value.field == "date_range"
        reconciler.canonical.fetch_daily_rollup.assert_not_called()

    @pytest.mark.asyncio
    async def test_raised_range_cap_allows_longer_request(self, reconciler_factory):
        settings = AppConfig(rollup=RollupConfig(default_timezone="UTC", org_timezones={}, max_range_days=800))
        long_range = request(start_date="2023-01-01", end_date="2024-12-31")

        bundle = await reconciler_factory(settings=settings).reconcile(long_range)

        assert len(bundle.time_series) == 731

    @pytest.mark.asyncio
    async def test_default_range_cap(self, reconciler_factory):
        with pytest.raises(ValidationError):
            await reconciler_factory().reconcile(request(start_date="2023-01-01", end_date="2024-12-31"))


class TestCanonicalPath:
    """Reconciliation served by the canonical rollup."""

    @pytest.mark.asyncio
    async def test_scenario_a(self, reconciler_factory, scenario_a):
        reconciler = reconciler_factory(
            daily=by_period([SCENARIO_A_ROW], []),
            transactions=by_period(TransactionBatch(scenario_a), TransactionBatch()),
        )

        bundle = await reconciler.reconcile(request())

        assert bundle.kpis.gross_raised == 300
        assert bundle.kpis.net_raised == 291
        assert bundle.kpis.refunds == 48
        assert bundle.kpis.net_revenue == 243
        assert bundle.trends["net_revenue"] == 100.0
        quality = bundle.data_quality
        assert quality.mode == ReconcileMode.NO_FILTER_CANONICAL
        assert not quality.used_fallback
        assert not quality.rollup_lagging
        assert quality.failed_sources == []
        assert path_stats.get_stats()["modes"] == {"no_filter_canonical": 1}

    @pytest.mark.asyncio
    async def test_summary_flags_approximate_donors(self, reconciler_factory, scenario_a):
        reconciler = reconciler_factory(
            daily=by_period([SCENARIO_A_ROW], []),
            transactions=by_period(TransactionBatch(scenario_a), TransactionBatch()),
        )

        bundle = await reconciler.reconcile(request())

        assert bundle.data_quality.unique_donors_approximate
        assert bundle.data_quality.is_approximate

    @pytest.mark.asyncio
    async def test_rollup_lagging(self, reconciler_factory, make_txn):
        donations = [make_txn(100, 97) for _ in range(4)]
        reconciler = reconciler_factory(
            daily=by_period([SCENARIO_A_ROW], []),
            transactions=by_period(TransactionBatch(donations), TransactionBatch()),
        )

        bundle = await reconciler.reconcile(request())

        assert bundle.data_quality.rollup_lagging
        assert bundle.kpis.gross_raised == 300
        assert any("behind" in w for w in bundle.data_quality.warnings)

    @pytest.mark.asyncio
    async def test_summary_disagreement_warns(self, reconciler_factory, scenario_a):
        from finrollup.models import PeriodSummary

        reconciler = reconciler_factory(
            daily=by_period([SCENARIO_A_ROW], []),
            summary=by_period(PeriodSummary(gross_raised=999), PeriodSummary()),
            transactions=by_period(TransactionBatch(scenario_a), TransactionBatch()),
        )

        bundle = await reconciler.reconcile(request())

        assert any("disagree" in w for w in bundle.data_quality.warnings)

    @pytest.mark.asyncio
    async def test_time_series_covers_every_day(self, reconciler_factory):
        reconciler = reconciler_factory(daily=[SCENARIO_A_ROW])

        bundle = await reconciler.reconcile(request(start_date="2025-01-13", end_date="2025-01-19"))

        assert len(bundle.time_series) == 7
        assert [p.date for p in bundle.time_series][2] == "2025-01-15"
        assert bundle.time_series[2].net_revenue == 243
        assert bundle.time_series[0].donations == 0
        assert set(bundle.sparklines) >= {"net_revenue", "roi", "refund_rate"}


class TestFallbackPath:
    """Reconciliation recomputed from raw transactions."""

    @pytest.mark.asyncio
    async def test_scenario_d(self, reconciler_factory, make_txn):
        """Canonical transport error with raw rows available falls back."""
        transactions = [make_txn(25, 24) for _ in range(10)]
        transactions.append(make_txn(-25, -24, transaction_type="refund"))
        reconciler = reconciler_factory(
            daily=rollup_down(),
            transactions=by_period(TransactionBatch(transactions), TransactionBatch()),
        )

        bundle = await reconciler.reconcile(request())

        assert bundle.data_quality.used_fallback
        assert bundle.data_quality.mode == ReconcileMode.FALLBACK
        assert bundle.kpis.gross_raised == 250
        assert bundle.kpis.net_revenue == 216
        assert bundle.kpis.donation_count == 10
        assert "rollup" in bundle.data_quality.failed_sources
        assert "previous_rollup" in bundle.data_quality.failed_sources
        assert not bundle.data_quality.unique_donors_approximate
        assert path_stats.get_stats()["source_failures"]["rollup"] == 1

    @pytest.mark.asyncio
    async def test_fallback_agrees_with_canonical(self, reconciler_factory, scenario_a):
        batches = by_period(TransactionBatch(scenario_a), TransactionBatch())
        canonical = await reconciler_factory(
            daily=by_period([SCENARIO_A_ROW], []), transactions=batches,
        ).reconcile(request())
        fallback = await reconciler_factory(
            daily=by_period([SCENARIO_A_ROW], []), transactions=batches,
        ).reconcile(request(force_fallback=True))

        assert fallback.data_quality.used_fallback
        for name in ("gross_raised", "net_raised", "refunds", "net_revenue", "total_fees"):
            assert getattr(fallback.kpis, name) == pytest.approx(getattr(canonical.kpis, name), abs=1e-6)

    @pytest.mark.asyncio
    async def test_empty_rollup_with_raw_donations(self, reconciler_factory, scenario_a):
        reconciler = reconciler_factory(
            daily=[],
            transactions=by_period(TransactionBatch(scenario_a), TransactionBatch()),
        )

        bundle = await reconciler.reconcile(request())

        assert bundle.data_quality.used_fallback
        assert bundle.kpis.net_revenue == 243

    @pytest.mark.asyncio
    async def test_empty_rollup_with_only_raw_refunds(self, reconciler_factory, make_txn):
        """A refund-only day still falls back when the rollup has no rows."""
        refund = make_txn(-50, -48, transaction_type="refund", transaction_date="2025-01-15T13:00:00Z")
        reconciler = reconciler_factory(
            daily=[],
            transactions=by_period(TransactionBatch([refund]), TransactionBatch()),
        )

        bundle = await reconciler.reconcile(request())

        assert bundle.data_quality.used_fallback
        assert bundle.kpis.refunds == 48
        assert bundle.kpis.net_revenue == -48
        assert bundle.kpis.donation_count == 0

    @pytest.mark.asyncio
    async def test_rollup_missing_refunds_is_lagging(self, reconciler_factory, scenario_a):
        reconciler = reconciler_factory(
            daily=by_period([SCENARIO_A_ROW.with_refunds(0, 0)], []),
            transactions=by_period(TransactionBatch(scenario_a), TransactionBatch()),
        )

        bundle = await reconciler.reconcile(request())

        assert not bundle.data_quality.used_fallback
        assert bundle.data_quality.rollup_lagging

    @pytest.mark.asyncio
    async def test_scenario_b_local_day(self, reconciler_factory, make_txn):
        """A 02:00 UTC donation belongs to the previous New York day."""
        txn = make_txn(40, 40, transaction_date="2025-01-15T02:00:00Z")
        reconciler = reconciler_factory(
            daily=rollup_down(),
            transactions=TransactionBatch([txn]),
        )

        bundle = await reconciler.reconcile(request(
            start_date="2025-01-14", end_date="2025-01-15", timezone="America/New_York",
        ))

        assert [p.donations for p in bundle.time_series] == [40, 0]
        assert bundle.timezone == "America/New_York"

    @pytest.mark.asyncio
    async def test_truncated_read(self, reconciler_factory, scenario_a):
        reconciler = reconciler_factory(
            daily=rollup_down(),
            transactions=by_period(TransactionBatch(scenario_a, truncated=True), TransactionBatch()),
        )

        bundle = await reconciler.reconcile(request())

        assert bundle.data_quality.transactions_truncated
        assert bundle.data_quality.is_approximate
        assert any("capped" in w for w in bundle.data_quality.warnings)

    @pytest.mark.asyncio
    async def test_all_paths_failed(self, reconciler_factory):
        reconciler = reconciler_factory(
            daily=rollup_down(),
            transactions=SourceConnectionError("down"),
        )

        with pytest.raises(DataUnavailableError) as exc_info:
            await reconciler.reconcile(request())

        assert "rollup" in exc_info.value.failed_sources
        assert "transactions" in exc_info.value.failed_sources

    @pytest.mark.asyncio
    async def test_previous_period_failure_is_not_fatal(self, reconciler_factory, scenario_a):
        reconciler = reconciler_factory(
            daily=by_period([SCENARIO_A_ROW], rollup_down()),
            transactions=by_period(TransactionBatch(scenario_a), SourceConnectionError("down")),
        )

        bundle = await reconciler.reconcile(request())

        assert bundle.kpis.net_revenue == 243
        assert bundle.previous_kpis.net_revenue == 0
        assert "previous_rollup" in bundle.data_quality.failed_sources
        assert any("previous period" in w for w in bundle.data_quality.warnings)


class TestFilteredPath:
    """Campaign/creative filters."""

    @pytest.mark.asyncio
    async def test_filtered_gateway(self, reconciler_factory):
        filtered_row = DailyRollupRow(day="2025-01-15", gross_raised=100, net_raised=97,
                                      refunds=48, donation_count=1, refund_count=1)
        reconciler = reconciler_factory(
            filtered_daily=by_period([filtered_row], []),
            meta_spend=by_period([SpendRecord(day="2025-01-15", channel=Channel.META, spend=10)], []),
        )

        bundle = await reconciler.reconcile(request(campaign_id="c1"))

        assert bundle.data_quality.mode == ReconcileMode.FILTERED
        assert bundle.kpis.net_revenue == 49
        assert bundle.kpis.refunds == 48
        assert bundle.kpis.sms_spend == 0
        reconciler.spend.fetch_sms_spend.assert_not_called()
        reconciler.canonical.fetch_period_summary.assert_not_called()
        meta_args = reconciler.spend.fetch_meta_spend.call_args.args
        assert meta_args[4:] == ("c1", None)

    @pytest.mark.asyncio
    async def test_refunds_survive_filter(self, reconciler_factory, make_txn):
        """Refunds carry no campaign, yet always count under a filter."""
        transactions = [
            make_txn(100, 97, campaign_id="c1"),
            make_txn(100, 97, campaign_id="c2"),
            make_txn(-50, -48, transaction_type="refund"),
        ]
        reconciler = reconciler_factory(
            transactions=by_period(TransactionBatch(transactions), TransactionBatch()),
        )

        bundle = await reconciler.reconcile(request(campaign_id="c1", force_fallback=True))

        assert bundle.data_quality.mode == ReconcileMode.FALLBACK
        assert bundle.kpis.gross_raised == 100
        assert bundle.kpis.refunds == 48
        assert bundle.kpis.net_revenue == 49

    @pytest.mark.asyncio
    async def test_attribution_rows_gate_donations(self, reconciler_factory, make_txn):
        transactions = [make_txn(100, 97, id="a1"), make_txn(60, 58, id="a2")]
        reconciler = reconciler_factory(
            daily=rollup_down(),
            filtered_daily=rollup_down(),
            transactions=by_period(TransactionBatch(transactions), TransactionBatch()),
            attributions={"a2": AttributionSignals(campaign_id="c9", creative_id="cr9")},
        )

        bundle = await reconciler.reconcile(request(creative_id="cr9"))

        assert bundle.kpis.gross_raised == 60
        meta = next(row for row in bundle.channel_breakdown if row.channel == Channel.META)
        assert meta.donations == 1


class TestPartialFailures:
    """Optional sources fail without sinking the bundle."""

    @pytest.mark.asyncio
    async def test_spend_failure(self, reconciler_factory, scenario_a):
        reconciler = reconciler_factory(
            daily=by_period([SCENARIO_A_ROW], []),
            transactions=by_period(TransactionBatch(scenario_a), TransactionBatch()),
            meta_spend=SourceConnectionError("meta down"),
        )

        bundle = await reconciler.reconcile(request())

        assert bundle.kpis.net_revenue == 243
        assert bundle.kpis.total_spend == 0
        assert bundle.kpis.roi == 0
        assert "meta_spend" in bundle.data_quality.failed_sources
        assert "previous_meta_spend" in bundle.data_quality.failed_sources

    @pytest.mark.asyncio
    async def test_attribution_failure(self, reconciler_factory, scenario_a):
        reconciler = reconciler_factory(
            daily=by_period([SCENARIO_A_ROW], []),
            transactions=by_period(TransactionBatch(scenario_a), TransactionBatch()),
            attributions=SourceConnectionError("down"),
        )

        bundle = await reconciler.reconcile(request())

        assert bundle.data_quality.attribution_method == "fallback"
        assert bundle.data_quality.attribution_fallback_mode
        assert bundle.kpis.net_revenue == 243

    @pytest.mark.asyncio
    async def test_donor_split(self, reconciler_factory, make_txn):
        current = [make_txn(10, donor="d1"), make_txn(10, donor="d2"), make_txn(10, donor="d3")]
        previous = [make_txn(10, transaction_date="2025-01-14T12:00:00Z", donor="d1")]
        reconciler = reconciler_factory(
            daily=rollup_down(),
            transactions=by_period(TransactionBatch(current), TransactionBatch(previous)),
        )

        bundle = await reconciler.reconcile(request())

        assert bundle.kpis.new_donors == 2
        assert bundle.kpis.returning_donors == 1
        assert bundle.previous_kpis.gross_raised == 10


class TestReportSession:
    """Last-request-wins handling."""

    @pytest.mark.asyncio
    async def test_superseded_request_discarded(self, reconciler_factory):
        reconciler = reconciler_factory(daily=[SCENARIO_A_ROW])
        original = reconciler.reconcile

        async def slow_for_first(req):
            if req.start_date == date(2025, 1, 1):
                await asyncio.sleep(0.05)
            return await original(req)

        reconciler.reconcile = slow_for_first
        session = ReportSession(reconciler)

        first, second = await asyncio.gather(
            session.submit(request(start_date="2025-01-01", end_date="2025-01-31")),
            session.submit(request()),
        )

        assert first is None
        assert second is not None
        assert second.start_date == "2025-01-15"
        assert path_stats.get_stats()["superseded"] == 1

    @pytest.mark.asyncio
    async def test_superseded_failure_swallowed(self, reconciler_factory):
        reconciler = reconciler_factory(daily=[SCENARIO_A_ROW])
        original = reconciler.reconcile

        async def fail_first(req):
            if req.start_date == date(2025, 1, 1):
                await asyncio.sleep(0.05)
                raise DataUnavailableError(req.organization_id, ["rollup", "transactions"])
            return await original(req)

        reconciler.reconcile = fail_first
        session = ReportSession(reconciler)

        first, second = await asyncio.gather(
            session.submit(request(start_date="2025-01-01", end_date="2025-01-31")),
            session.submit(request()),
        )

        assert first is None
        assert second.kpis.net_revenue == 243

    @pytest.mark.asyncio
    async def test_latest_failure_raised(self, reconciler_factory):
        session = ReportSession(reconciler_factory(daily=rollup_down(), transactions=SourceConnectionError("x")))

        with pytest.raises(DataUnavailableError):
            await session.submit(request())
        assert session.latest == 1


class TestResponseContract:
    """camelCase response built from a bundle."""

    @pytest.mark.asyncio
    async def test_bundle_to_response(self, reconciler_factory, scenario_a):
        reconciler = reconciler_factory(
            daily=by_period([SCENARIO_A_ROW], []),
            transactions=by_period(TransactionBatch(scenario_a), TransactionBatch()),
        )
        bundle = await reconciler.reconcile(request())

        payload = bundle_to_response(bundle).model_dump()

        assert payload["kpis"]["netRevenue"] == 243
        assert payload["prevKpis"]["netRevenue"] == 0
        assert payload["trends"]["netRevenue"] == 100.0
        assert payload["timeSeries"][0]["name"] == "Jan 15"
        assert "recurringHealth" in payload["sparklines"]
        assert payload["sparklines"]["netRevenue"][0]["date"] == "2025-01-15"
        assert "attributedDonationRate" in payload["kpis"]
        assert payload["dataQuality"]["mode"] == "no_filter_canonical"
        assert payload["dataQuality"]["usedFallback"] is False
        assert {row["channel"] for row in payload["channelBreakdown"]} == {c.value for c in Channel}
        assert payload["generatedAt"].endswith("+00:00")
