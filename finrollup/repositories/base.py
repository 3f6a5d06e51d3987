"""
Base repository owning the hosted source client.

All domain repositories inherit from this class.
"""
from typing import Any, Dict, List, Optional

from finrollup.exceptions import SourceDataError
from finrollup.source import RollupSourceClient


def as_rows(result: Any, name: str) -> List[Dict[str, Any]]:
    """
    Normalize an RPC result to a list of row dicts.

    RPCs may return a list, a single object, or nothing.

    Raises:
        SourceDataError: If the result is some other shape
    """
    if result is None:
        return []
    if isinstance(result, dict):
        return [result]
    if isinstance(result, list) and all(isinstance(row, dict) for row in result):
        return result
    raise SourceDataError(
        f"Unexpected result from {name}",
        expected="list of objects",
        got=type(result).__name__,
    )


class BaseRepository:
    """
    Base repository sharing one source client.

    Usage:
        class SpendRepository(BaseRepository):
            async def fetch(self, org_id):
                return await self.source.select("meta_ad_metrics", {...})
    """

    def __init__(self, source: Optional[RollupSourceClient] = None):
        self._source = source

    @property
    def source(self) -> RollupSourceClient:
        """Source client, created lazily from config."""
        if self._source is None:
            self._source = RollupSourceClient()
        return self._source
