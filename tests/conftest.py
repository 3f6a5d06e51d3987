"""
Pytest configuration and shared fixtures.
"""
import pytest
from typing import Any, Callable, Dict, List
from unittest.mock import AsyncMock, MagicMock

from finrollup.config import config
from finrollup.models import PeriodSummary, Transaction
from finrollup.observability import path_stats
from finrollup.orchestrator import Reconciler
from finrollup.repositories import (
    AttributionRepository,
    CanonicalRollupGateway,
    FilteredRollupGateway,
    SpendRepository,
    TransactionBatch,
    TransactionRepository,
)


@pytest.fixture(autouse=True)
def reset_path_stats():
    """Path statistics are process-global; start every test from zero."""
    path_stats.reset()
    yield
    path_stats.reset()


@pytest.fixture
def sample_transaction_row() -> Dict[str, Any]:
    """Sample raw transaction row from the source."""
    return {
        "id": "txn-1001",
        "organization_id": "org-1",
        "amount": "100.00",
        "net_amount": "97.00",
        "fee": "3.00",
        "transaction_type": "donation",
        "transaction_date": "2025-01-15T14:30:00Z",
        "is_recurring": False,
        "donor_id_hash": "donor-a",
        "donor_email": "a@example.com",
        "recurring_upsell_shown": True,
        "recurring_upsell_succeeded": False,
        "refcode": "jp_spring",
        "source_campaign": None,
        "click_id": None,
        "fbclid": None,
        "contribution_form": "main",
    }


@pytest.fixture
def make_txn() -> Callable[..., Transaction]:
    """Factory building a Transaction through the ingestion boundary."""
    counter = {"n": 0}

    def build(
        amount: float = 100.0,
        net_amount: float = None,
        transaction_type: str = "donation",
        transaction_date: str = "2025-01-15T14:00:00Z",
        donor: str = None,
        **extra,
    ) -> Transaction:
        counter["n"] += 1
        row = {
            "id": extra.pop("id", f"txn-{counter['n']}"),
            "organization_id": "org-1",
            "amount": amount,
            "net_amount": net_amount,
            "transaction_type": transaction_type,
            "transaction_date": transaction_date,
            "donor_id_hash": donor or f"donor-{counter['n']}",
        }
        row.update(extra)
        txn = Transaction.from_api(row)
        assert txn is not None
        return txn

    return build


@pytest.fixture
def scenario_a(make_txn) -> List[Transaction]:
    """Three $100/$97 donations and one $50 refund (net -48) on one UTC day."""
    return [
        make_txn(100, 97, transaction_date="2025-01-15T10:00:00Z", donor="d1"),
        make_txn(100, 97, transaction_date="2025-01-15T11:00:00Z", donor="d2"),
        make_txn(100, 97, transaction_date="2025-01-15T12:00:00Z", donor="d3"),
        make_txn(-50, -48, transaction_type="refund", transaction_date="2025-01-15T13:00:00Z"),
    ]


def _mock_method(result: Any) -> AsyncMock:
    """AsyncMock returning `result`, raising it if it is an exception, or calling it."""
    if isinstance(result, BaseException):
        return AsyncMock(side_effect=result)
    if callable(result):
        return AsyncMock(side_effect=result)
    return AsyncMock(return_value=result)


@pytest.fixture
def reconciler_factory() -> Callable[..., Reconciler]:
    """
    Build a Reconciler over mocked repositories.

    Each argument is a return value, an exception to raise, or a function
    called with the method's arguments (to vary results by period).
    """
    def build(
        daily: Any = None,
        summary: Any = None,
        filtered_daily: Any = None,
        transactions: Any = None,
        attributions: Any = None,
        meta_spend: Any = None,
        sms_spend: Any = None,
        settings: Any = None,
    ) -> Reconciler:
        canonical = MagicMock(spec=CanonicalRollupGateway)
        canonical.fetch_daily_rollup = _mock_method([] if daily is None else daily)
        canonical.fetch_period_summary = _mock_method(summary if summary is not None else _summary_of(daily))

        filtered = MagicMock(spec=FilteredRollupGateway)
        filtered.fetch_daily_rollup = _mock_method([] if filtered_daily is None else filtered_daily)

        txn_repo = MagicMock(spec=TransactionRepository)
        txn_repo.fetch_transactions = _mock_method(
            TransactionBatch() if transactions is None else transactions
        )

        attribution_repo = MagicMock(spec=AttributionRepository)
        attribution_repo.fetch_attributions = _mock_method({} if attributions is None else attributions)

        spend_repo = MagicMock(spec=SpendRepository)
        spend_repo.fetch_meta_spend = _mock_method([] if meta_spend is None else meta_spend)
        spend_repo.fetch_sms_spend = _mock_method([] if sms_spend is None else sms_spend)

        return Reconciler(
            canonical=canonical,
            filtered=filtered,
            transactions=txn_repo,
            attributions=attribution_repo,
            spend=spend_repo,
            settings=settings or config,
        )

    return build


def _summary_of(daily: Any):
    """Period summary consistent with a static daily rollup."""
    if isinstance(daily, list):
        return PeriodSummary.from_daily(daily)
    if isinstance(daily, BaseException):
        return daily
    if callable(daily):
        def summarize(organization_id, start, end, timezone):
            return PeriodSummary.from_daily(daily(organization_id, start, end, timezone))
        return summarize
    return PeriodSummary()
