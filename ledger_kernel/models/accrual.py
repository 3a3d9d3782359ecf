"""
Module: ledger_kernel.models.accrual
Responsibility: ORM persistence for accrual rules, accrual runs and the
    idempotency keys that link a rule occurrence to the draft it produced.
Architecture position: Kernel > Models.  May import from db/ and models/journal.

Invariants enforced:
    - AccrualRule.code is unique.
    - A rule is referenced, never rewritten, by runs.  Its last-run date is
      derived from run items rather than stored on the rule.
    - AccrualEntryKey.idempotency_key is unique: one draft per
      (rule, target period, kind[, occurrence]).
    - An AccrualRun is immutable once COMPLETED or FAILED.
"""

from datetime import date, datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_kernel.db.base import TrackedBase, UUIDString
from ledger_kernel.db.types import EnumString
from ledger_kernel.models.journal import LineSide


class AccrualRuleType(str, Enum):
    REVERSING = "reversing"
    RECURRING = "recurring"
    DEFERRAL = "deferral"
    DERIVED = "derived"


class AccrualFrequency(str, Enum):
    """How often a rule fires.  PERIOD_END and ON_DEMAND never fire in run_due."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    PERIOD_END = "period_end"
    ON_DEMAND = "on_demand"


class AccrualRuleStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class AccrualRunKind(str, Enum):
    DUE = "due"
    REVERSAL = "reversal"
    PERIOD_END = "period_end"


class AccrualRunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RunItemOutcome(str, Enum):
    CREATED = "created"
    EXISTING = "existing"
    SKIPPED = "skipped"
    FAILED = "failed"


class AccrualRule(TrackedBase):
    """
    Template that synthesizes draft journal entries on a schedule.

    Contract:
        DEFERRAL rules carry deferral_total_minor, deferral_period_count and
        deferral_start_period_id, and exactly one debit and one credit
        template line whose amounts come from the allocation.
        DERIVED rules carry a formula on each template line.
    """

    __tablename__ = "accrual_rules"

    __table_args__ = (
        UniqueConstraint("code", name="uq_accrual_rule_code"),
        Index("idx_accrual_rule_status_freq", "status", "frequency"),
    )

    code: Mapped[str] = mapped_column(String(50), nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    rule_type: Mapped[AccrualRuleType] = mapped_column(
        EnumString(AccrualRuleType),
        nullable=False,
    )

    frequency: Mapped[AccrualFrequency] = mapped_column(
        EnumString(AccrualFrequency),
        nullable=False,
    )

    status: Mapped[AccrualRuleStatus] = mapped_column(
        EnumString(AccrualRuleStatus),
        default=AccrualRuleStatus.ACTIVE,
        nullable=False,
    )

    # First date the rule may fire in a due run
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    memo: Mapped[str | None] = mapped_column(String(500), nullable=True)

    deferral_total_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    deferral_period_count: Mapped[int | None] = mapped_column(Integer, nullable=True)

    deferral_start_period_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("fiscal_periods.id"),
        nullable=True,
    )

    lines: Mapped[list["AccrualRuleLine"]] = relationship(
        back_populates="rule",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="AccrualRuleLine.line_no",
    )

    def __repr__(self) -> str:
        return f"<AccrualRule {self.code} {self.rule_type.value}/{self.frequency.value}>"


class AccrualRuleLine(TrackedBase):
    """Template line: an account, a side and either a fixed amount or a formula."""

    __tablename__ = "accrual_rule_lines"

    rule_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("accrual_rules.id"),
        nullable=False,
    )

    line_no: Mapped[int] = mapped_column(Integer, nullable=False)

    account_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("accounts.id"),
        nullable=False,
    )

    side: Mapped[LineSide] = mapped_column(
        EnumString(LineSide, length=10),
        nullable=False,
    )

    amount_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    formula: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    description: Mapped[str | None] = mapped_column(String(500), nullable=True)

    rule: Mapped[AccrualRule] = relationship(back_populates="lines")


class AccrualRun(TrackedBase):
    """One invocation of run_due, run_reversals or run_period_end."""

    __tablename__ = "accrual_runs"

    __table_args__ = (
        Index("idx_accrual_run_kind_status", "kind", "status"),
        Index("idx_accrual_run_period", "period_id"),
    )

    kind: Mapped[AccrualRunKind] = mapped_column(EnumString(AccrualRunKind), nullable=False)

    as_of_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    period_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("fiscal_periods.id"),
        nullable=True,
    )

    status: Mapped[AccrualRunStatus] = mapped_column(
        EnumString(AccrualRunStatus),
        default=AccrualRunStatus.PENDING,
        nullable=False,
    )

    failure_reason: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    rules_attempted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    entries_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    entries_existing: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rules_skipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rules_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    items: Mapped[list["AccrualRunItem"]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="AccrualRunItem.seq",
    )


class AccrualRunItem(TrackedBase):
    """Per-rule outcome within a run."""

    __tablename__ = "accrual_run_items"

    __table_args__ = (
        Index("idx_accrual_item_run", "run_id"),
        Index("idx_accrual_item_rule", "rule_id"),
    )

    run_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("accrual_runs.id"),
        nullable=False,
    )

    seq: Mapped[int] = mapped_column(Integer, nullable=False)

    rule_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("accrual_rules.id"),
        nullable=False,
    )

    rule_code: Mapped[str] = mapped_column(String(50), nullable=False)

    outcome: Mapped[RunItemOutcome] = mapped_column(EnumString(RunItemOutcome), nullable=False)

    # Date the occurrence was generated for (as_of for due runs)
    occurrence_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    journal_entry_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    idempotency_key: Mapped[str | None] = mapped_column(String(300), nullable=True)

    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)

    error_message: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    run: Mapped[AccrualRun] = relationship(back_populates="items")


class AccrualEntryKey(TrackedBase):
    """Idempotency key -> journal entry produced for a rule occurrence."""

    __tablename__ = "accrual_entry_keys"

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_accrual_entry_key"),
    )

    idempotency_key: Mapped[str] = mapped_column(String(300), nullable=False)

    rule_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("accrual_rules.id"),
        nullable=False,
    )

    period_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("fiscal_periods.id"),
        nullable=False,
    )

    kind: Mapped[AccrualRunKind] = mapped_column(EnumString(AccrualRunKind), nullable=False)

    journal_entry_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("journal_entries.id"),
        nullable=False,
    )
