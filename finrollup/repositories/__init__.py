"""
Repository layer over the hosted data source.

- BaseRepository: Owns the source client, row-list normalization
- CanonicalRollupGateway / FilteredRollupGateway: Pre-aggregated rollups
- TransactionRepository: Capped raw transaction reads
- AttributionRepository: Donation attribution rows and filter gates
- SpendRepository: Meta ad spend and SMS campaign cost
"""
from finrollup.repositories.base import BaseRepository
from finrollup.repositories.rollup import CanonicalRollupGateway, FilteredRollupGateway
from finrollup.repositories.transactions import TransactionBatch, TransactionRepository
from finrollup.repositories.attribution import AttributionRepository, matching_transaction_ids
from finrollup.repositories.spend import SpendRepository

__all__ = [
    "BaseRepository",
    "CanonicalRollupGateway",
    "FilteredRollupGateway",
    "TransactionBatch",
    "TransactionRepository",
    "AttributionRepository",
    "matching_transaction_ids",
    "SpendRepository",
]
