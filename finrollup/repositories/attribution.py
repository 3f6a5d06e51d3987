"""
Donation attribution rows.

Attribution rows join campaign/creative/ad ids onto donations. They gate
which donations a campaign or creative filter counts; refunds never pass
through the gate. Reads are paged until a short page so a server-side
row limit cannot silently drop rows.
"""
from typing import Any, Dict, Iterable, List, Optional, Set

from finrollup.config import config
from finrollup.models import AttributionSignals, Transaction
from finrollup.observability import get_logger, timed
from finrollup.repositories.base import BaseRepository
from finrollup.source import RollupSourceClient, eq, in_

logger = get_logger(__name__)

ATTRIBUTION_TABLE = "donation_attribution"

ATTRIBUTION_COLUMNS = (
    "transaction_id,attributed_platform,attributed_campaign_id,"
    "attributed_creative_id,attributed_ad_id,refcode,attribution_method"
)

# Keep id lists short enough for a query string
_ID_CHUNK = 200


class AttributionRepository(BaseRepository):
    """Attribution row reads."""

    def __init__(self, source: Optional[RollupSourceClient] = None, page_size: Optional[int] = None):
        super().__init__(source)
        self.page_size = page_size or config.source.page_size

    async def _select_paged(self, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        offset = 0
        while True:
            page = await self.source.select(
                ATTRIBUTION_TABLE,
                filters,
                columns=ATTRIBUTION_COLUMNS,
                order="transaction_id.asc",
                limit=self.page_size,
                offset=offset,
            )
            rows.extend(page)
            if len(page) < self.page_size:
                return rows
            offset += len(page)

    @timed("fetch_attributions")
    async def fetch_attributions(
        self,
        organization_id: str,
        transaction_ids: Optional[Iterable[str]] = None,
    ) -> Dict[str, AttributionSignals]:
        """
        Get attribution signals keyed by transaction id.

        Args:
            organization_id: Organization to read
            transaction_ids: Restrict to these transactions (default: all)

        Raises:
            SourceError: If the source read fails
        """
        base_filters = {"organization_id": eq(organization_id)}

        if transaction_ids is None:
            rows = await self._select_paged(base_filters)
        else:
            ids = sorted(set(transaction_ids))
            rows = []
            for i in range(0, len(ids), _ID_CHUNK):
                filters = dict(base_filters, transaction_id=in_(ids[i:i + _ID_CHUNK]))
                rows.extend(await self._select_paged(filters))

        signals: Dict[str, AttributionSignals] = {}
        for row in rows:
            txn_id = row.get("transaction_id")
            if txn_id is None:
                continue
            signals[str(txn_id)] = AttributionSignals.from_api(row)

        logger.debug(
            f"Loaded {len(signals)} attribution rows",
            extra={"organization_id": organization_id}
        )
        return signals


def matching_transaction_ids(
    attributions: Dict[str, AttributionSignals],
    campaign_id: Optional[str],
    creative_id: Optional[str],
) -> Set[str]:
    """Transaction ids whose attribution matches the campaign/creative filter."""
    return {
        txn_id for txn_id, signals in attributions.items()
        if signals.matches(campaign_id, creative_id)
    }


def embedded_matching_ids(
    transactions: Iterable[Transaction],
    campaign_id: Optional[str],
    creative_id: Optional[str],
) -> Set[str]:
    """Filter gate built from signals embedded in the transactions themselves."""
    return {
        txn.id for txn in transactions
        if txn.is_donation and txn.signals.has_campaign_mapping
        and txn.signals.matches(campaign_id, creative_id)
    }
