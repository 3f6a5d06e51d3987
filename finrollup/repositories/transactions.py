"""
Raw transaction reads for client-side recomputation.

Reads are bounded by the organization-local day boundaries converted to
UTC, paged, and capped at `max_transaction_rows`. A read that reaches the
cap is flagged truncated so totals computed from it are marked partial.
"""
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional

from finrollup.config import config
from finrollup.daybucket import local_day_bounds
from finrollup.models import Transaction
from finrollup.observability import get_logger, timed
from finrollup.repositories.base import BaseRepository
from finrollup.source import RollupSourceClient, eq, gte, lte

logger = get_logger(__name__)

TRANSACTIONS_TABLE = "actblue_transactions_secure"

TRANSACTION_COLUMNS = (
    "id,organization_id,amount,net_amount,fee,transaction_type,transaction_date,"
    "is_recurring,donor_id_hash,donor_email,recurring_upsell_shown,"
    "recurring_upsell_succeeded,refcode,source_campaign,click_id,fbclid,contribution_form"
)


@dataclass
class TransactionBatch:
    """Parsed transactions plus whether the read hit the row cap."""
    transactions: List[Transaction] = field(default_factory=list)
    truncated: bool = False
    skipped: int = 0

    @property
    def donations(self) -> List[Transaction]:
        return [t for t in self.transactions if t.is_donation]

    @property
    def refunds(self) -> List[Transaction]:
        return [t for t in self.transactions if t.is_refund]


class TransactionRepository(BaseRepository):
    """Raw transaction reads."""

    def __init__(
        self,
        source: Optional[RollupSourceClient] = None,
        max_rows: Optional[int] = None,
        page_size: Optional[int] = None,
    ):
        super().__init__(source)
        self.max_rows = max_rows or config.source.max_transaction_rows
        self.page_size = page_size or config.source.page_size

    @timed("fetch_transactions")
    async def fetch_transactions(
        self,
        organization_id: str,
        start: date,
        end: date,
        timezone: str,
    ) -> TransactionBatch:
        """
        Read raw transactions between local midnight of start and end-of-day of end.

        Args:
            organization_id: Organization to read
            start: First local day (inclusive)
            end: Last local day (inclusive)
            timezone: IANA zone for the day boundaries

        Returns:
            TransactionBatch; unparseable rows are skipped and counted

        Raises:
            SourceError: If the source read fails
        """
        utc_start, utc_end = local_day_bounds(start, end, timezone)
        filters = {
            "organization_id": eq(organization_id),
            "transaction_date": [gte(utc_start.isoformat()), lte(utc_end.isoformat())],
        }

        raw_rows = []
        offset = 0
        while len(raw_rows) < self.max_rows:
            limit = min(self.page_size, self.max_rows - len(raw_rows))
            page = await self.source.select(
                TRANSACTIONS_TABLE,
                filters,
                columns=TRANSACTION_COLUMNS,
                order="transaction_date.asc,id.asc",
                limit=limit,
                offset=offset,
            )
            raw_rows.extend(page)
            if len(page) < limit:
                break
            offset += len(page)

        truncated = len(raw_rows) >= self.max_rows
        if truncated:
            logger.warning(
                f"Transaction read hit the {self.max_rows} row cap",
                extra={"organization_id": organization_id, "start": start.isoformat(), "end": end.isoformat()}
            )

        batch = TransactionBatch(truncated=truncated)
        for raw in raw_rows:
            txn = Transaction.from_api(raw, organization_id)
            if txn is None:
                batch.skipped += 1
                continue
            batch.transactions.append(txn)

        if batch.skipped:
            logger.debug(
                f"Skipped {batch.skipped} unparseable transactions",
                extra={"organization_id": organization_id}
            )

        return batch
