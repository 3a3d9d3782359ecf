"""Selectors for the ledger kernel (read side)."""

from ledger_kernel.selectors.journal_selector import JournalSelector
from ledger_kernel.selectors.ledger_selector import (
    Activity,
    LedgerSelector,
    PostingLine,
    TrialBalanceRow,
    normal_sign_minor,
)

__all__ = [
    "Activity",
    "JournalSelector",
    "LedgerSelector",
    "PostingLine",
    "TrialBalanceRow",
    "normal_sign_minor",
]
