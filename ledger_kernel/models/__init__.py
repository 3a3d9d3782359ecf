"""Domain models for the ledger kernel."""

from ledger_kernel.models.account import (
    Account,
    AccountStatus,
    AccountTag,
    AccountType,
    NormalBalance,
)
from ledger_kernel.models.accrual import (
    AccrualEntryKey,
    AccrualFrequency,
    AccrualRule,
    AccrualRuleLine,
    AccrualRuleStatus,
    AccrualRuleType,
    AccrualRun,
    AccrualRunItem,
    AccrualRunKind,
    AccrualRunStatus,
    RunItemOutcome,
)
from ledger_kernel.models.fiscal_period import FiscalPeriod, PeriodStatus
from ledger_kernel.models.idempotency import IdempotencyRecord
from ledger_kernel.models.journal import (
    EntrySource,
    JournalEntry,
    JournalEntryStatus,
    JournalEntryType,
    JournalLine,
    LineSide,
)
from ledger_kernel.models.ledger import AccountPeriodBalance, LedgerPosting

__all__ = [
    "Account",
    "AccountPeriodBalance",
    "AccountStatus",
    "AccountTag",
    "AccountType",
    "AccrualEntryKey",
    "AccrualFrequency",
    "AccrualRule",
    "AccrualRuleLine",
    "AccrualRuleStatus",
    "AccrualRuleType",
    "AccrualRun",
    "AccrualRunItem",
    "AccrualRunKind",
    "AccrualRunStatus",
    "EntrySource",
    "FiscalPeriod",
    "IdempotencyRecord",
    "JournalEntry",
    "JournalEntryStatus",
    "JournalEntryType",
    "JournalLine",
    "LedgerPosting",
    "LineSide",
    "NormalBalance",
    "PeriodStatus",
    "RunItemOutcome",
]
