"""
Financial rollup and attribution reconciliation engine.

Turns raw donation, ad-spend and messaging records into timezone-correct
daily and period KPIs, preferring the canonical pre-aggregated rollup and
recomputing from raw rows when it is unavailable:
- daybucket: Organization-local day keys
- attribution: Deterministic channel classifier
- repositories: Rollup gateways and raw data adapters
- fallback: Client-side recomputation
- kpis: KPI synthesis, time series, channel breakdown
- orchestrator: Per-request path selection and merging
"""

# Import in dependency order
from finrollup.exceptions import (
    RollupError,
    SourceError,
    SourceConnectionError,
    SourceAPIError,
    SourceDataError,
    GatewayError,
    DataUnavailableError,
    ValidationError,
)

from finrollup.config import config, validate_config, ConfigurationError

from finrollup.daybucket import INVALID_DAY, day_key, bucket_by_day, local_day_bounds

from finrollup.models import (
    Channel,
    ReconcileMode,
    Transaction,
    DailyRollupRow,
    PeriodSummary,
    SpendRecord,
    KPISet,
    KPIBundle,
    DataQuality,
)

from finrollup.attribution import Attribution, classify

from finrollup.source import RollupSourceClient

from finrollup.orchestrator import Reconciler, ReportRequest, ReportSession

__version__ = config.version

__all__ = [
    # Exceptions
    "RollupError",
    "SourceError",
    "SourceConnectionError",
    "SourceAPIError",
    "SourceDataError",
    "GatewayError",
    "DataUnavailableError",
    "ValidationError",
    # Config
    "config",
    "validate_config",
    "ConfigurationError",
    # Day bucketing
    "INVALID_DAY",
    "day_key",
    "bucket_by_day",
    "local_day_bounds",
    # Models
    "Channel",
    "ReconcileMode",
    "Transaction",
    "DailyRollupRow",
    "PeriodSummary",
    "SpendRecord",
    "KPISet",
    "KPIBundle",
    "DataQuality",
    # Attribution
    "Attribution",
    "classify",
    # Source
    "RollupSourceClient",
    # Orchestration
    "Reconciler",
    "ReportRequest",
    "ReportSession",
]
