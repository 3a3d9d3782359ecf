"""
DTOs -- Pure domain data transfer objects.

Responsibility:
    Immutable structures that cross the service boundary: line input for
    journal creation and the read-side records returned by services and
    selectors.  Services never hand ORM instances to callers.

Architecture position:
    Kernel > Domain -- zero I/O.  from_model() class methods are boundary
    converters invoked only from services and selectors.

Invariants enforced:
    - LineInput has exactly one side and a non-negative amount expressible
      in minor units (validated on construction).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from ledger_kernel.domain.amounts import from_minor, to_decimal, to_minor
from ledger_kernel.exceptions import InvalidEntryError
from ledger_kernel.models.account import AccountStatus, AccountType, NormalBalance
from ledger_kernel.models.accrual import (
    AccrualFrequency,
    AccrualRuleStatus,
    AccrualRuleType,
    AccrualRunKind,
    AccrualRunStatus,
    RunItemOutcome,
)
from ledger_kernel.models.fiscal_period import PeriodStatus
from ledger_kernel.models.journal import (
    EntrySource,
    JournalEntryStatus,
    JournalEntryType,
    LineSide,
)

if TYPE_CHECKING:
    from ledger_kernel.models.account import Account as AccountModel
    from ledger_kernel.models.accrual import AccrualRule as AccrualRuleModel
    from ledger_kernel.models.accrual import AccrualRun as AccrualRunModel
    from ledger_kernel.models.fiscal_period import FiscalPeriod as FiscalPeriodModel
    from ledger_kernel.models.journal import JournalEntry as JournalEntryModel


# =============================================================================
# Input
# =============================================================================


@dataclass(frozen=True)
class LineInput:
    """
    One journal line as supplied by a caller.

    Build with ``LineInput.debit(...)`` / ``LineInput.credit(...)`` or from
    the debit/credit pair the UI sends with ``LineInput.from_pair(...)``.
    """

    account_id: UUID
    side: LineSide
    amount: Decimal
    description: str | None = None

    def __post_init__(self):
        object.__setattr__(self, "side", LineSide(self.side))
        # Raises InvalidAmountError for negative or sub-minor amounts
        to_minor(self.amount)

    @property
    def amount_minor(self) -> int:
        return to_minor(self.amount)

    @classmethod
    def debit(cls, account_id: UUID, amount, description: str | None = None) -> LineInput:
        return cls(account_id, LineSide.DEBIT, to_decimal(amount), description)

    @classmethod
    def credit(cls, account_id: UUID, amount, description: str | None = None) -> LineInput:
        return cls(account_id, LineSide.CREDIT, to_decimal(amount), description)

    @classmethod
    def from_pair(
        cls,
        account_id: UUID,
        debit=None,
        credit=None,
        description: str | None = None,
    ) -> LineInput:
        """Exactly one of debit/credit must be populated."""
        if (debit is None) == (credit is None):
            raise InvalidEntryError(
                "each line must populate exactly one of debit or credit"
            )
        if debit is not None:
            return cls.debit(account_id, debit, description)
        return cls.credit(account_id, credit, description)


# =============================================================================
# Read side
# =============================================================================


@dataclass(frozen=True)
class AccountInfo:
    id: UUID
    code: str
    name: str
    account_type: AccountType
    normal_balance: NormalBalance
    is_postable: bool
    status: AccountStatus
    parent_id: UUID | None = None
    tags: tuple[str, ...] = ()

    @classmethod
    def from_model(cls, model: AccountModel) -> AccountInfo:
        return cls(
            id=model.id,
            code=model.code,
            name=model.name,
            account_type=model.account_type,
            normal_balance=model.normal_balance,
            is_postable=model.is_postable,
            status=model.status,
            parent_id=model.parent_id,
            tags=tuple(model.tags or ()),
        )


@dataclass(frozen=True)
class PeriodInfo:
    """Read-only snapshot of a fiscal period."""

    id: UUID
    period_code: str
    name: str
    fiscal_year: int
    start_date: date
    end_date: date
    status: PeriodStatus
    closed_at: datetime | None = None
    closed_by_id: UUID | None = None
    close_justification: str | None = None

    @property
    def is_open(self) -> bool:
        return self.status == PeriodStatus.OPEN

    def contains_date(self, check_date: date) -> bool:
        return self.start_date <= check_date <= self.end_date

    @classmethod
    def from_model(cls, model: FiscalPeriodModel) -> PeriodInfo:
        return cls(
            id=model.id,
            period_code=model.period_code,
            name=model.name,
            fiscal_year=model.fiscal_year,
            start_date=model.start_date,
            end_date=model.end_date,
            status=model.status,
            closed_at=model.closed_at,
            closed_by_id=model.closed_by_id,
            close_justification=model.close_justification,
        )


@dataclass(frozen=True)
class JournalLineInfo:
    line_no: int
    account_id: UUID
    side: LineSide
    amount: Decimal
    description: str | None = None

    @property
    def debit(self) -> Decimal | None:
        return self.amount if self.side == LineSide.DEBIT else None

    @property
    def credit(self) -> Decimal | None:
        return self.amount if self.side == LineSide.CREDIT else None

    def as_input(self) -> LineInput:
        return LineInput(self.account_id, self.side, self.amount, self.description)


@dataclass(frozen=True)
class JournalEntryInfo:
    """
    Read-side record of a journal entry.

    Guarantees:
        - lines are ordered by line_no.
        - total_debit / total_credit are exact sums of the lines.
    """

    id: UUID
    period_id: UUID
    entry_date: date
    entry_type: JournalEntryType
    status: JournalEntryStatus
    source: EntrySource
    version: int
    lines: tuple[JournalLineInfo, ...]
    memo: str | None = None
    source_ref: str | None = None
    derived_from_id: UUID | None = None
    reversal_of_id: UUID | None = None
    rejection_reason: str | None = None
    void_reason: str | None = None
    cancel_reason: str | None = None
    posted_at: datetime | None = None

    @property
    def total_debit(self) -> Decimal:
        return sum((l.amount for l in self.lines if l.side == LineSide.DEBIT), Decimal("0.00"))

    @property
    def total_credit(self) -> Decimal:
        return sum((l.amount for l in self.lines if l.side == LineSide.CREDIT), Decimal("0.00"))

    @property
    def is_balanced(self) -> bool:
        return self.total_debit == self.total_credit

    @classmethod
    def from_model(cls, model: JournalEntryModel) -> JournalEntryInfo:
        lines = tuple(
            JournalLineInfo(
                line_no=line.line_no,
                account_id=line.account_id,
                side=line.side,
                amount=from_minor(line.amount_minor),
                description=line.description,
            )
            for line in sorted(model.lines, key=lambda x: x.line_no)
        )
        return cls(
            id=model.id,
            period_id=model.period_id,
            entry_date=model.entry_date,
            entry_type=model.entry_type,
            status=model.status,
            source=model.source,
            version=model.version,
            lines=lines,
            memo=model.memo,
            source_ref=model.source_ref,
            derived_from_id=model.derived_from_id,
            reversal_of_id=model.reversal_of_id,
            rejection_reason=model.rejection_reason,
            void_reason=model.void_reason,
            cancel_reason=model.cancel_reason,
            posted_at=model.posted_at,
        )


@dataclass(frozen=True)
class RuleLineInput:
    """Accrual template line.  Exactly one of amount / formula for non-deferral rules."""

    account_id: UUID
    side: LineSide
    amount: Decimal | None = None
    formula: str | None = None
    description: str | None = None

    def __post_init__(self):
        object.__setattr__(self, "side", LineSide(self.side))
        if self.amount is not None:
            to_minor(self.amount)


@dataclass(frozen=True)
class DeferralScheduleInput:
    total_amount: Decimal
    period_count: int
    start_period_id: UUID


@dataclass(frozen=True)
class AccrualRuleInfo:
    id: UUID
    code: str
    name: str
    rule_type: AccrualRuleType
    frequency: AccrualFrequency
    status: AccrualRuleStatus
    lines: tuple[RuleLineInput, ...]
    start_date: date | None = None
    memo: str | None = None
    deferral: DeferralScheduleInput | None = None
    last_run_date: date | None = None

    @classmethod
    def from_model(cls, model: AccrualRuleModel) -> AccrualRuleInfo:
        deferral = None
        if model.deferral_total_minor is not None:
            deferral = DeferralScheduleInput(
                total_amount=from_minor(model.deferral_total_minor),
                period_count=model.deferral_period_count,
                start_period_id=model.deferral_start_period_id,
            )
        return cls(
            id=model.id,
            code=model.code,
            name=model.name,
            rule_type=model.rule_type,
            frequency=model.frequency,
            status=model.status,
            lines=tuple(
                RuleLineInput(
                    account_id=line.account_id,
                    side=line.side,
                    amount=(
                        from_minor(line.amount_minor)
                        if line.amount_minor is not None else None
                    ),
                    formula=line.formula,
                    description=line.description,
                )
                for line in model.lines
            ),
            start_date=model.start_date,
            memo=model.memo,
            deferral=deferral,
        )


@dataclass(frozen=True)
class RunItemInfo:
    rule_id: UUID
    rule_code: str
    outcome: RunItemOutcome
    journal_entry_id: UUID | None = None
    occurrence_date: date | None = None
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class AccrualRunInfo:
    """Result of an accrual run.  failures lists the per-rule errors."""

    id: UUID
    kind: AccrualRunKind
    status: AccrualRunStatus
    as_of_date: date | None
    period_id: UUID | None
    items: tuple[RunItemInfo, ...] = field(default_factory=tuple)
    failure_reason: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def journal_entry_ids(self) -> tuple[UUID, ...]:
        return tuple(i.journal_entry_id for i in self.items if i.journal_entry_id is not None)

    @property
    def failures(self) -> tuple[RunItemInfo, ...]:
        return tuple(i for i in self.items if i.outcome == RunItemOutcome.FAILED)

    @classmethod
    def from_model(cls, model: AccrualRunModel) -> AccrualRunInfo:
        return cls(
            id=model.id,
            kind=model.kind,
            status=model.status,
            as_of_date=model.as_of_date,
            period_id=model.period_id,
            items=tuple(
                RunItemInfo(
                    rule_id=i.rule_id,
                    rule_code=i.rule_code,
                    outcome=i.outcome,
                    journal_entry_id=i.journal_entry_id,
                    occurrence_date=i.occurrence_date,
                    error_code=i.error_code,
                    error_message=i.error_message,
                )
                for i in model.items
            ),
            failure_reason=model.failure_reason,
            started_at=model.started_at,
            completed_at=model.completed_at,
        )
