"""
Ledger Services -- orchestration over the ledger kernel.

- AccrualScheduler: accrual rules and due / reversal / period-end runs
- ReconciliationService: cached vs. recomputed balances, auto-correct
- PeriodCloseOrchestrator: close preview, close, roll-forward
- LedgerApi: canonical response envelope and idempotency keys
"""

from ledger_services._close_types import (
    BlockerKind,
    CloseBlocker,
    ClosePreview,
    CloseResult,
    RollForwardResult,
)
from ledger_services.accrual_scheduler import AccrualScheduler
from ledger_services.ledger_api import ApiError, ApiResponse, LedgerApi
from ledger_services.period_close_orchestrator import PeriodCloseOrchestrator
from ledger_services.reconciliation_service import (
    AutoCorrectResult,
    Correction,
    DiscrepancyDetail,
    ReconciliationDiff,
    ReconciliationReport,
    ReconciliationService,
)

__all__ = [
    "AccrualScheduler",
    "ApiError",
    "ApiResponse",
    "AutoCorrectResult",
    "BlockerKind",
    "CloseBlocker",
    "ClosePreview",
    "CloseResult",
    "Correction",
    "DiscrepancyDetail",
    "LedgerApi",
    "PeriodCloseOrchestrator",
    "ReconciliationDiff",
    "ReconciliationReport",
    "ReconciliationService",
    "RollForwardResult",
]
