"""Service layer encapsulating the recomputation engine and its read access."""

from .alerts import AlertGenerator
from .current_balances import CurrentBalanceService
from .data_access import MetricsDataAccess
from .financial_snapshots import FinancialSnapshotService
from .idempotency import acquire_lock, release_lock
from .ledger_classification import LedgerBalanceService, map_ledgers_to_cfo_totals
from .liquidity import LiquidityService
from .metrics_runner import run_catalog_metrics
from .reads import MetricsReadService, UnknownCounterpartyKind
from .recompute import (
    RecomputeError,
    RecomputeOrchestrator,
    start_recompute_scheduler,
    stop_recompute_scheduler,
)
from .snapshot_consistency import SnapshotConsistencyService
from .term_mapping import TermMappingResolver

__all__ = [
    "AlertGenerator",
    "CurrentBalanceService",
    "MetricsDataAccess",
    "FinancialSnapshotService",
    "acquire_lock",
    "release_lock",
    "LedgerBalanceService",
    "map_ledgers_to_cfo_totals",
    "LiquidityService",
    "run_catalog_metrics",
    "MetricsReadService",
    "UnknownCounterpartyKind",
    "RecomputeError",
    "RecomputeOrchestrator",
    "start_recompute_scheduler",
    "stop_recompute_scheduler",
    "SnapshotConsistencyService",
    "TermMappingResolver",
]
