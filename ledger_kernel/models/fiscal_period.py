"""
Module: ledger_kernel.models.fiscal_period
Responsibility: ORM persistence for the fiscal period lifecycle, which
    controls which date ranges accept postings.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Postings are accepted only while status = OPEN (PeriodService).
    - Date ranges never overlap (PeriodService.create_period).
    - A period with ledger postings cannot be deleted.

State machine:

    OPEN <--close/reopen--> CLOSED <--lock/unlock--> LOCKED

A LOCKED period must be unlocked before it can be reopened.
"""

from datetime import date, datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import Date, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import TrackedBase, UUIDString
from ledger_kernel.db.types import EnumString


class PeriodStatus(str, Enum):
    """Lifecycle status of a fiscal period."""

    OPEN = "open"
    CLOSED = "closed"
    LOCKED = "locked"


class FiscalPeriod(TrackedBase):
    """
    Fiscal period for accounting control.

    Contract:
        No journal entry may be posted into a period unless it is OPEN.
        Locking is only possible from CLOSED and is a stronger guarantee:
        reopen() refuses a locked period.

    Guarantees:
        - period_code is unique (uq_period_code).
        - start_date <= end_date (enforced by service layer).
    """

    __tablename__ = "fiscal_periods"

    __table_args__ = (
        UniqueConstraint("period_code", name="uq_period_code"),
        Index("idx_period_dates", "start_date", "end_date"),
        Index("idx_period_status", "status"),
    )

    period_code: Mapped[str] = mapped_column(String(20), nullable=False)

    name: Mapped[str] = mapped_column(String(100), nullable=False)

    fiscal_year: Mapped[int] = mapped_column(Integer, nullable=False)

    start_date: Mapped[date] = mapped_column(Date, nullable=False)

    end_date: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[PeriodStatus] = mapped_column(
        EnumString(PeriodStatus),
        default=PeriodStatus.OPEN,
        nullable=False,
    )

    closed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    closed_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    # Set when a close overrides blockers
    close_justification: Mapped[str | None] = mapped_column(
        String(1000),
        nullable=True,
    )

    locked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    locked_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    def __repr__(self) -> str:
        return f"<FiscalPeriod {self.period_code}: {self.start_date} to {self.end_date}>"

    @property
    def is_open(self) -> bool:
        return self.status == PeriodStatus.OPEN

    @property
    def is_locked(self) -> bool:
        return self.status == PeriodStatus.LOCKED

    def contains_date(self, check_date: date) -> bool:
        """Check if a date falls within this period (inclusive)."""
        return self.start_date <= check_date <= self.end_date
