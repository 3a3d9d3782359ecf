"""
Module: ledger_kernel.models.ledger
Responsibility: The Ledger Store.  LedgerPosting is the append-only source of
    truth for balances; AccountPeriodBalance is the cached (reported) GL
    balance per account and period.
Architecture position: Kernel > Models.  May import from db/ and domain/amounts.

Invariants enforced:
    - LedgerPosting rows are written only by PostingService.post and are
      never updated or deleted (db/immutability.py).
    - One posting per JournalLine (uq_posting_line), so an entry cannot be
      applied to the ledger twice.
    - AccountPeriodBalance is updated in the same transaction as the
      postings it summarizes.  Reconciliation detects drift between them.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import Base, UUIDString
from ledger_kernel.db.types import EnumString
from ledger_kernel.domain.amounts import from_minor
from ledger_kernel.models.journal import LineSide


class LedgerPosting(Base):
    """
    One posted journal line as recorded in the ledger.

    Guarantees:
        - posting_seq is unique within the period and increases in posting
          order.
        - amount_minor >= 0, direction given by side.
    """

    __tablename__ = "ledger_postings"

    __table_args__ = (
        UniqueConstraint("journal_line_id", name="uq_posting_line"),
        UniqueConstraint("period_id", "posting_seq", name="uq_posting_period_seq"),
        Index("idx_posting_period_account", "period_id", "account_id"),
        Index("idx_posting_entry", "journal_entry_id"),
    )

    journal_entry_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("journal_entries.id"),
        nullable=False,
    )

    journal_line_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("journal_lines.id"),
        nullable=False,
    )

    account_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("accounts.id"),
        nullable=False,
    )

    period_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("fiscal_periods.id"),
        nullable=False,
    )

    side: Mapped[LineSide] = mapped_column(
        EnumString(LineSide, length=10),
        nullable=False,
    )

    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)

    posting_seq: Mapped[int] = mapped_column(BigInteger, nullable=False)

    posted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    posted_by_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    @property
    def signed_minor(self) -> int:
        """Debit-positive signed amount."""
        return self.amount_minor if self.side == LineSide.DEBIT else -self.amount_minor

    @property
    def amount(self) -> Decimal:
        return from_minor(self.amount_minor)


class AccountPeriodBalance(Base):
    """
    Cached GL balance per (account, period), maintained at post time.

    Contract:
        debit_minor and credit_minor are running totals of what posting
        reported for the account in the period.  They are a cache: the
        postings table remains authoritative.
    """

    __tablename__ = "account_period_balances"

    __table_args__ = (
        UniqueConstraint("account_id", "period_id", name="uq_balance_account_period"),
        Index("idx_balance_period", "period_id"),
    )

    account_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("accounts.id"),
        nullable=False,
    )

    period_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("fiscal_periods.id"),
        nullable=False,
    )

    debit_minor: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    credit_minor: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def net_debit_minor(self) -> int:
        return self.debit_minor - self.credit_minor
