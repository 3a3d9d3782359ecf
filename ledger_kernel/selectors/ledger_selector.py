"""
Module: ledger_kernel.selectors.ledger_selector
Responsibility: Read-only balance queries over the Ledger Store.  Recomputes
    per-account activity from LedgerPosting rows, reads the cached
    AccountPeriodBalance rows, and lists the postings behind a balance.
Architecture position: Kernel > Selectors.  May import from models/ and
    domain/.  MUST NOT import from services/.

Invariants enforced:
    - Recomputed balances derive only from LedgerPosting rows.
    - Every amount is computed in integer minor units; Decimal appears only
      at the DTO surface.
    - Balances are reported in the account's normal-balance sign: a debit
      normal account shows debit - credit, a credit normal account shows
      credit - debit.

Failure modes:
    - Returns empty results when a period has no postings.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import case, func, select

from ledger_kernel.domain.amounts import from_minor
from ledger_kernel.models.account import Account, AccountType, NormalBalance
from ledger_kernel.models.journal import LineSide
from ledger_kernel.models.ledger import AccountPeriodBalance, LedgerPosting
from ledger_kernel.selectors.base import BaseSelector


def normal_sign_minor(normal_balance: NormalBalance, debit_minor: int, credit_minor: int) -> int:
    """Net activity in the account's normal-balance direction."""
    if normal_balance == NormalBalance.DEBIT:
        return debit_minor - credit_minor
    return credit_minor - debit_minor


@dataclass(frozen=True)
class TrialBalanceRow:
    """A single row in a trial balance report."""

    account_id: UUID
    account_code: str
    account_name: str
    account_type: AccountType
    normal_balance: NormalBalance
    debit_minor: int
    credit_minor: int

    @property
    def debit_total(self) -> Decimal:
        return from_minor(self.debit_minor)

    @property
    def credit_total(self) -> Decimal:
        return from_minor(self.credit_minor)

    @property
    def balance_minor(self) -> int:
        return normal_sign_minor(self.normal_balance, self.debit_minor, self.credit_minor)

    @property
    def balance(self) -> Decimal:
        return from_minor(self.balance_minor)


@dataclass(frozen=True)
class PostingLine:
    """One ledger posting, for drill-down."""

    posting_seq: int
    journal_entry_id: UUID
    journal_line_id: UUID
    account_id: UUID
    period_id: UUID
    side: LineSide
    amount: Decimal
    posted_at: datetime


@dataclass(frozen=True)
class Activity:
    """Debit and credit totals of one account in one period, minor units."""

    debit_minor: int = 0
    credit_minor: int = 0


class LedgerSelector(BaseSelector):
    """
    Selector for ledger balances.

    Contract:
        ``recomputed_activity`` is the source of truth.  ``cached_activity``
        is whatever posting recorded in account_period_balances; the two are
        compared by the reconciliation engine.
    """

    def recomputed_activity(self, period_id: UUID) -> dict[UUID, Activity]:
        """Per-account totals summed from ledger postings."""
        debit_sum = func.sum(
            case(
                (LedgerPosting.side == LineSide.DEBIT, LedgerPosting.amount_minor),
                else_=0,
            )
        )
        credit_sum = func.sum(
            case(
                (LedgerPosting.side == LineSide.CREDIT, LedgerPosting.amount_minor),
                else_=0,
            )
        )
        rows = self.session.execute(
            select(LedgerPosting.account_id, debit_sum, credit_sum)
            .where(LedgerPosting.period_id == period_id)
            .group_by(LedgerPosting.account_id)
        ).all()
        return {
            account_id: Activity(int(debits or 0), int(credits or 0))
            for account_id, debits, credits in rows
        }

    def cached_activity(self, period_id: UUID) -> dict[UUID, Activity]:
        """Per-account totals as reported by account_period_balances."""
        rows = self.session.execute(
            select(
                AccountPeriodBalance.account_id,
                AccountPeriodBalance.debit_minor,
                AccountPeriodBalance.credit_minor,
            ).where(AccountPeriodBalance.period_id == period_id)
        ).all()
        return {
            account_id: Activity(debits, credits)
            for account_id, debits, credits in rows
        }

    def trial_balance(self, period_id: UUID) -> list[TrialBalanceRow]:
        """
        Trial balance for one period, from postings.

        Sum of debit_minor over all rows equals sum of credit_minor.
        """
        return self._balance_rows(self.recomputed_activity(period_id))

    def gl_balances(self, period_id: UUID) -> list[TrialBalanceRow]:
        """The same rows as trial_balance, read from account_period_balances."""
        return self._balance_rows(self.cached_activity(period_id))

    def _balance_rows(self, activity: dict[UUID, Activity]) -> list[TrialBalanceRow]:
        if not activity:
            return []
        accounts = self.session.scalars(
            select(Account).where(Account.id.in_(activity.keys())).order_by(Account.code)
        )
        return [
            TrialBalanceRow(
                account_id=account.id,
                account_code=account.code,
                account_name=account.name,
                account_type=account.account_type,
                normal_balance=account.normal_balance,
                debit_minor=activity[account.id].debit_minor,
                credit_minor=activity[account.id].credit_minor,
            )
            for account in accounts
        ]

    def postings(
        self,
        period_id: UUID | None = None,
        account_id: UUID | None = None,
        journal_entry_id: UUID | None = None,
    ) -> list[PostingLine]:
        """Postings in posting order, optionally filtered."""
        query = select(LedgerPosting).order_by(
            LedgerPosting.posted_at, LedgerPosting.posting_seq
        )
        if period_id is not None:
            query = query.where(LedgerPosting.period_id == period_id)
        if account_id is not None:
            query = query.where(LedgerPosting.account_id == account_id)
        if journal_entry_id is not None:
            query = query.where(LedgerPosting.journal_entry_id == journal_entry_id)
        return [
            PostingLine(
                posting_seq=p.posting_seq,
                journal_entry_id=p.journal_entry_id,
                journal_line_id=p.journal_line_id,
                account_id=p.account_id,
                period_id=p.period_id,
                side=p.side,
                amount=p.amount,
                posted_at=p.posted_at,
            )
            for p in self.session.scalars(query)
        ]

    def posting_count(self, journal_entry_id: UUID) -> int:
        return self.session.execute(
            select(func.count(LedgerPosting.id)).where(
                LedgerPosting.journal_entry_id == journal_entry_id
            )
        ).scalar_one()
