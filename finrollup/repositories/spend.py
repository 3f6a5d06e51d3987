"""
Spend reads: Meta ad metrics and SMS campaign cost.

Zero rows is a valid "no spend" answer. Meta spend can be narrowed to a
campaign/creative; SMS spend has no campaign mapping.
"""
from datetime import date, timedelta
from typing import List, Optional

from finrollup.models import SpendRecord
from finrollup.observability import get_logger
from finrollup.repositories.base import BaseRepository
from finrollup.source import eq, gte, lte, neq

logger = get_logger(__name__)

META_TABLE = "meta_ad_metrics"
SMS_TABLE = "sms_campaigns"


class SpendRepository(BaseRepository):
    """Channel spend reads."""

    async def fetch_meta_spend(
        self,
        organization_id: str,
        start: date,
        end: date,
        timezone: str,
        campaign_id: Optional[str] = None,
        creative_id: Optional[str] = None,
    ) -> List[SpendRecord]:
        """
        Get Meta ad spend per day, optionally for one campaign/creative.

        Raises:
            SourceError: If the source read fails
        """
        filters = {
            "organization_id": eq(organization_id),
            "date": [gte(start.isoformat()), lte(end.isoformat())],
        }
        if campaign_id:
            filters["campaign_id"] = eq(campaign_id)
        if creative_id:
            filters["ad_creative_id"] = eq(creative_id)

        rows = await self.source.select(
            META_TABLE,
            filters,
            columns="date,spend,impressions,clicks,conversions,campaign_id,ad_creative_id",
            order="date.asc",
        )
        records = [SpendRecord.from_meta_api(row, timezone) for row in rows]
        return [r for r in records if r is not None]

    async def fetch_sms_spend(
        self,
        organization_id: str,
        start: date,
        end: date,
        timezone: str,
    ) -> List[SpendRecord]:
        """
        Get SMS campaign cost per send day; draft campaigns are excluded.

        Raises:
            SourceError: If the source read fails
        """
        filters = {
            "organization_id": eq(organization_id),
            "status": neq("draft"),
            # Widened by a day each side; exact local days are checked below
            "send_date": [
                gte((start - timedelta(days=1)).isoformat()),
                lte((end + timedelta(days=2)).isoformat()),
            ],
        }
        rows = await self.source.select(
            SMS_TABLE,
            filters,
            columns="send_date,messages_sent,conversions,cost,amount_raised,status",
            order="send_date.asc",
        )

        start_key, end_key = start.isoformat(), end.isoformat()
        records = []
        for row in rows:
            record = SpendRecord.from_sms_api(row, timezone)
            if record is not None and start_key <= record.day <= end_key:
                records.append(record)
        return records
