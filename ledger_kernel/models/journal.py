"""
Module: ledger_kernel.models.journal
Responsibility: ORM persistence for journal entries and their lines.
Architecture position: Kernel > Models.  May import from db/ and domain/amounts.

Invariants enforced:
    - sum(debit) == sum(credit) in minor units before SUBMITTED and again
      before POSTED (JournalService / PostingService).
    - Lines are frozen once the entry leaves DRAFT (db/immutability.py).
    - A posted entry changes only through void (db/immutability.py).
    - version is SQLAlchemy's version_id_col: a concurrent transition on a
      stale row raises StaleDataError, surfaced as OptimisticLockError.

Lifecycle:

    DRAFT -> SUBMITTED -> APPROVED -> POSTED -> VOIDED
                     \\-> REJECTED (a fresh DRAFT is cloned)
    DRAFT / SUBMITTED / APPROVED -> CANCELLED
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_kernel.db.base import TrackedBase, UUIDString
from ledger_kernel.db.types import EnumString
from ledger_kernel.domain.amounts import from_minor

if TYPE_CHECKING:
    from ledger_kernel.models.account import Account


class JournalEntryStatus(str, Enum):
    """Lifecycle status of a journal entry."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    POSTED = "posted"
    VOIDED = "voided"
    CANCELLED = "cancelled"


class JournalEntryType(str, Enum):
    GENERAL = "general"
    ADJUSTMENT = "adjustment"
    CLOSING = "closing"


class EntrySource(str, Enum):
    """What produced the entry."""

    MANUAL = "manual"
    ACCRUAL = "accrual"
    RECONCILIATION = "reconciliation"
    ROLL_FORWARD = "roll_forward"
    VOID = "void"


class LineSide(str, Enum):
    """Debit or credit side of a journal line."""

    DEBIT = "debit"
    CREDIT = "credit"

    def opposite(self) -> "LineSide":
        return LineSide.CREDIT if self is LineSide.DEBIT else LineSide.DEBIT


class JournalEntry(TrackedBase):
    """
    A set of debit and credit lines representing one accounting transaction.

    Contract:
        Only DRAFT entries may be edited.  Posting writes LedgerPosting rows
        and is the only operation that moves account balances.

    Guarantees:
        - lines are ordered by line_no.
        - version increments on every flush that changes the row.
    """

    __tablename__ = "journal_entries"

    __table_args__ = (
        Index("idx_journal_period_status", "period_id", "status"),
        Index("idx_journal_reversal_of", "reversal_of_id"),
        Index("idx_journal_source", "source", "source_ref"),
    )

    period_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("fiscal_periods.id"),
        nullable=False,
    )

    entry_date: Mapped[date] = mapped_column(Date, nullable=False)

    entry_type: Mapped[JournalEntryType] = mapped_column(
        EnumString(JournalEntryType),
        default=JournalEntryType.GENERAL,
        nullable=False,
    )

    memo: Mapped[str | None] = mapped_column(String(500), nullable=True)

    status: Mapped[JournalEntryStatus] = mapped_column(
        EnumString(JournalEntryStatus),
        default=JournalEntryStatus.DRAFT,
        nullable=False,
    )

    source: Mapped[EntrySource] = mapped_column(
        EnumString(EntrySource),
        default=EntrySource.MANUAL,
        nullable=False,
    )

    # e.g. accrual rule code or reconciled account code
    source_ref: Mapped[str | None] = mapped_column(String(200), nullable=True)

    # Draft cloned from a rejected entry
    derived_from_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("journal_entries.id"),
        nullable=True,
    )

    # Void reversal or accrual mirror entry
    reversal_of_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("journal_entries.id"),
        nullable=True,
    )

    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    submitted_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(String(300), nullable=True)

    posted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    posted_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    voided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    voided_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    void_reason: Mapped[str | None] = mapped_column(String(300), nullable=True)

    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(String(300), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    lines: Mapped[list["JournalLine"]] = relationship(
        back_populates="entry",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="JournalLine.line_no",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<JournalEntry {self.id} status={self.status.value}>"

    @property
    def is_draft(self) -> bool:
        return self.status == JournalEntryStatus.DRAFT

    @property
    def is_posted(self) -> bool:
        return self.status == JournalEntryStatus.POSTED

    @property
    def total_debit_minor(self) -> int:
        return sum(l.amount_minor for l in self.lines if l.side == LineSide.DEBIT)

    @property
    def total_credit_minor(self) -> int:
        return sum(l.amount_minor for l in self.lines if l.side == LineSide.CREDIT)

    @property
    def is_balanced(self) -> bool:
        """Exact comparison in minor units; there is no tolerance."""
        return self.total_debit_minor == self.total_credit_minor


class JournalLine(TrackedBase):
    """
    One debit or credit line within a journal entry.

    Guarantees:
        - amount_minor >= 0; the side column determines direction.
        - line_no gives a stable, 1-based order within the entry.
    """

    __tablename__ = "journal_lines"

    __table_args__ = (
        Index("idx_line_entry", "journal_entry_id"),
        Index("idx_line_account", "account_id"),
        CheckConstraint("amount_minor >= 0", name="ck_line_amount_non_negative"),
    )

    journal_entry_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("journal_entries.id"),
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

    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)

    description: Mapped[str | None] = mapped_column(String(500), nullable=True)

    entry: Mapped[JournalEntry] = relationship(back_populates="lines")

    account: Mapped["Account"] = relationship()

    def __repr__(self) -> str:
        return f"<JournalLine {self.line_no} {self.side.value} {self.amount}>"

    @property
    def amount(self) -> Decimal:
        return from_minor(self.amount_minor)

    @property
    def debit(self) -> Decimal | None:
        return self.amount if self.side == LineSide.DEBIT else None

    @property
    def credit(self) -> Decimal | None:
        return self.amount if self.side == LineSide.CREDIT else None
