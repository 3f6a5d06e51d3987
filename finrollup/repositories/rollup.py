"""
Rollup gateways over the source's stored procedures.

CanonicalRollupGateway serves unfiltered daily rows and period summaries.
FilteredRollupGateway serves campaign/creative-filtered rows; refunds carry
no attribution, so its refund figures always come from the unfiltered
canonical rollup for the same range and timezone.

Gateways raise GatewayError on any failure and never substitute another
source; choosing a fallback is the orchestrator's job.
"""
import asyncio
from datetime import date
from typing import Any, Dict, List, Optional

from finrollup.exceptions import GatewayError, SourceError
from finrollup.models import DailyRollupRow, PeriodSummary
from finrollup.observability import get_logger
from finrollup.repositories.base import BaseRepository, as_rows
from finrollup.resilience import CircuitOpenError
from finrollup.source import RollupSourceClient

logger = get_logger(__name__)

DAILY_ROLLUP_RPC = "get_actblue_daily_rollup"
PERIOD_SUMMARY_RPC = "get_actblue_period_summary"
FILTERED_ROLLUP_RPC = "get_actblue_filtered_rollup"


def _rollup_params(organization_id: str, start: date, end: date, timezone: str) -> Dict[str, Any]:
    return {
        "p_organization_id": organization_id,
        "p_start_date": start.isoformat(),
        "p_end_date": end.isoformat(),
        "p_timezone": timezone,
        "p_use_utc": False,
    }


def parse_daily_rows(raw_rows: List[Dict[str, Any]], start: date, end: date, gateway: str) -> List[DailyRollupRow]:
    """Normalize raw rows, dropping unusable or out-of-range days, sorted by day."""
    rows = []
    skipped = 0
    start_key, end_key = start.isoformat(), end.isoformat()

    for raw in raw_rows:
        row = DailyRollupRow.from_api(raw)
        if row is None or not (start_key <= row.day <= end_key):
            skipped += 1
            continue
        rows.append(row)

    if skipped:
        logger.warning(
            f"Dropped {skipped} unusable rollup rows",
            extra={"gateway": gateway, "skipped": skipped}
        )

    rows.sort(key=lambda r: r.day)
    return rows


class CanonicalRollupGateway(BaseRepository):
    """Unfiltered, timezone-aware daily rollups."""

    name = "canonical"

    async def _call(self, function: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        try:
            result = await self.source.rpc(function, params)
            return as_rows(result, function)
        except (SourceError, CircuitOpenError) as e:
            raise GatewayError(self.name, e) from e

    async def fetch_daily_rollup(
        self,
        organization_id: str,
        start: date,
        end: date,
        timezone: str,
    ) -> List[DailyRollupRow]:
        """
        Get one row per local day with activity in [start, end].

        Args:
            organization_id: Organization to read
            start: First local day (inclusive)
            end: Last local day (inclusive)
            timezone: IANA zone for day boundaries

        Raises:
            GatewayError: If the rollup cannot be read
        """
        raw = await self._call(DAILY_ROLLUP_RPC, _rollup_params(organization_id, start, end, timezone))
        return parse_daily_rows(raw, start, end, self.name)

    async def fetch_period_summary(
        self,
        organization_id: str,
        start: date,
        end: date,
        timezone: str,
    ) -> PeriodSummary:
        """
        Get the period summary (unique donors are a sum of daily uniques).

        Raises:
            GatewayError: If the summary cannot be read
        """
        raw = await self._call(PERIOD_SUMMARY_RPC, _rollup_params(organization_id, start, end, timezone))
        if not raw:
            return PeriodSummary()
        return PeriodSummary.from_api(raw[0])


class FilteredRollupGateway(CanonicalRollupGateway):
    """Campaign/creative-filtered daily rollups with unfiltered refunds."""

    name = "filtered"

    def __init__(
        self,
        source: Optional[RollupSourceClient] = None,
        canonical: Optional[CanonicalRollupGateway] = None,
    ):
        super().__init__(source)
        self.canonical = canonical or CanonicalRollupGateway(source)

    async def fetch_daily_rollup(
        self,
        organization_id: str,
        start: date,
        end: date,
        timezone: str,
        campaign_id: Optional[str] = None,
        creative_id: Optional[str] = None,
    ) -> List[DailyRollupRow]:
        """
        Get filtered daily rows with refunds overlaid from the canonical rollup.

        Days that have refunds but no matching donations appear as rows
        with zero donations, so a filter never hides a refund.

        Raises:
            GatewayError: If either rollup cannot be read
        """
        params = _rollup_params(organization_id, start, end, timezone)
        params["p_campaign_id"] = campaign_id
        params["p_creative_id"] = creative_id

        try:
            raw, canonical_rows = await asyncio.gather(
                self._call(FILTERED_ROLLUP_RPC, params),
                self.canonical.fetch_daily_rollup(organization_id, start, end, timezone),
            )
        except GatewayError as e:
            if e.gateway == self.name:
                raise
            raise GatewayError(self.name, e) from e

        refunds_by_day = {
            row.day: (row.refunds, row.refund_count) for row in canonical_rows
        }

        merged: Dict[str, DailyRollupRow] = {}
        for row in parse_daily_rows(raw, start, end, self.name):
            refunds, refund_count = refunds_by_day.get(row.day, (0.0, 0))
            merged[row.day] = row.with_refunds(refunds, refund_count)

        for day, (refunds, refund_count) in refunds_by_day.items():
            if day not in merged and (refunds or refund_count):
                merged[day] = DailyRollupRow(day=day, refunds=refunds, refund_count=refund_count)

        return [merged[day] for day in sorted(merged)]

    async def fetch_period_summary(
        self,
        organization_id: str,
        start: date,
        end: date,
        timezone: str,
        campaign_id: Optional[str] = None,
        creative_id: Optional[str] = None,
    ) -> PeriodSummary:
        """Sum of the filtered daily rows; unique donors are approximate."""
        rows = await self.fetch_daily_rollup(
            organization_id, start, end, timezone, campaign_id, creative_id
        )
        return PeriodSummary.from_daily(rows)
