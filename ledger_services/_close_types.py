"""
ledger_services._close_types -- Period close DTOs for the close orchestrator.

Responsibility:
    Frozen dataclasses describing what blocks a period close and what a
    close or roll-forward produced.

Architecture position:
    Services.  These types live in ledger_services/ because the
    orchestrator that produces and consumes them lives here.

Invariants enforced:
    - All DTOs are frozen.
    - ClosePreview.blockers is ordered (kind, entry, account) so preview and
      close report the same set in the same order.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from uuid import UUID

from ledger_kernel.domain.dtos import AccrualRunInfo, PeriodInfo


class BlockerKind(str, Enum):
    """Conditions that prevent a period close."""
    DRAFT_ENTRY = "draft_entry"
    SUBMITTED_ENTRY = "submitted_entry"
    UNPOSTED_APPROVED_ENTRY = "unposted_approved_entry"
    RECONCILIATION_MISMATCH = "reconciliation_mismatch"


@dataclass(frozen=True)
class CloseBlocker:
    kind: BlockerKind
    detail: str
    journal_entry_id: UUID | None = None
    account_id: UUID | None = None

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "detail": self.detail,
            "journal_entry_id": str(self.journal_entry_id) if self.journal_entry_id else None,
            "account_id": str(self.account_id) if self.account_id else None,
        }


@dataclass(frozen=True)
class ClosePreview:
    """Read-only answer to "could this period close right now?"."""
    period: PeriodInfo
    blockers: tuple[CloseBlocker, ...] = ()

    @property
    def can_close(self) -> bool:
        return self.period.is_open and not self.blockers


@dataclass(frozen=True)
class CloseResult:
    period: PeriodInfo
    forced: bool
    overridden_blockers: tuple[CloseBlocker, ...] = ()
    accrual_run: AccrualRunInfo | None = None


@dataclass(frozen=True)
class RollForwardResult:
    """Closing entry that moved a period's net income into retained earnings."""
    source_period_id: UUID
    target_period_id: UUID
    journal_entry_id: UUID | None
    net_income: Decimal
    already_rolled: bool = False
    closed_account_ids: tuple[UUID, ...] = field(default_factory=tuple)
