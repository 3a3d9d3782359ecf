"""Services for the ledger kernel (write side)."""

from ledger_kernel.services.account_service import AccountService
from ledger_kernel.services.idempotency_service import IdempotencyService
from ledger_kernel.services.journal_service import JournalService, RejectResult
from ledger_kernel.services.period_service import PeriodService
from ledger_kernel.services.posting_service import (
    BatchItemResult,
    BatchItemStatus,
    BatchPostResult,
    PostingService,
    VoidResult,
)

__all__ = [
    "AccountService",
    "BatchItemResult",
    "BatchItemStatus",
    "BatchPostResult",
    "IdempotencyService",
    "JournalService",
    "PeriodService",
    "PostingService",
    "RejectResult",
    "VoidResult",
]
