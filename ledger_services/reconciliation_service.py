"""
ledger_services.reconciliation_service -- Cached GL balance vs. recomputed postings.

Responsibility:
    Compares, per (period, account), the cached balance maintained at post
    time with the balance recomputed from ledger postings; drills down into
    the postings behind a discrepancy; and books threshold-bounded
    correcting entries against a suspense/rounding account.

Architecture position:
    Services -- orchestration over the kernel.
    Reads through LedgerSelector; corrections go through JournalService and
    PostingService like any other entry.

Invariants enforced:
    - Balances are in the account's normal-balance sign.
    - is_match iff the difference is exactly 0 minor units.
    - Auto-correct touches only diffs with 0 < |difference| <= threshold.
      Nothing else in the ledger rounds or coerces.
    - A mismatch on the suspense account itself is never corrected; it is
      reported with the above-threshold diffs.
    - A correction posts into the account and the suspense account, but
      leaves the corrected account's cached balance where it was, so after
      the correction the recomputed balance equals the reported one.
    - dry_run never writes.

Failure modes:
    - PeriodNotFoundError, AccountNotFoundError.
    - InvalidAmountError: negative or sub-minor threshold.
    - InvalidFieldError: threshold above the configured ceiling, or no
      suspense account available for a write.
    - PeriodNotOpenError: corrections into a closed period.

Audit relevance:
    Each correction is a normal ADJUSTMENT entry with source
    ``reconciliation`` and the account code as source_ref.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger_kernel.domain.amounts import from_minor, to_minor
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.dtos import AccountInfo, LineInput
from ledger_kernel.exceptions import InvalidAmountError, InvalidFieldError
from ledger_kernel.logging_config import LogContext, get_logger
from ledger_kernel.models.account import Account, AccountTag, NormalBalance
from ledger_kernel.models.journal import EntrySource, JournalEntryType, LineSide
from ledger_kernel.selectors.ledger_selector import (
    Activity,
    LedgerSelector,
    PostingLine,
    normal_sign_minor,
)
from ledger_kernel.services.account_service import AccountService
from ledger_kernel.services.journal_service import JournalService
from ledger_kernel.services.period_service import PeriodService
from ledger_kernel.services.posting_service import PostingService

logger = get_logger("services.reconciliation")

DEFAULT_MAX_THRESHOLD = Decimal("1.00")


@dataclass(frozen=True)
class ReconciliationDiff:
    """Cached vs. recomputed balance of one account in one period."""

    account_id: UUID
    account_code: str
    account_name: str
    normal_balance: NormalBalance
    gl_balance_minor: int
    recomputed_balance_minor: int

    @property
    def difference_minor(self) -> int:
        return self.gl_balance_minor - self.recomputed_balance_minor

    @property
    def gl_balance(self) -> Decimal:
        return from_minor(self.gl_balance_minor)

    @property
    def recomputed_balance(self) -> Decimal:
        return from_minor(self.recomputed_balance_minor)

    @property
    def balance_difference(self) -> Decimal:
        return from_minor(self.difference_minor)

    @property
    def is_match(self) -> bool:
        return self.difference_minor == 0


@dataclass(frozen=True)
class ReconciliationReport:
    period_id: UUID
    diffs: tuple[ReconciliationDiff, ...]

    @property
    def mismatches(self) -> tuple[ReconciliationDiff, ...]:
        return tuple(d for d in self.diffs if not d.is_match)

    @property
    def is_reconciled(self) -> bool:
        return not self.mismatches


@dataclass(frozen=True)
class DiscrepancyDetail:
    """Drill-down for one account: the diff plus every posting behind it."""

    diff: ReconciliationDiff
    postings: tuple[PostingLine, ...]
    cached_debit: Decimal
    cached_credit: Decimal
    recomputed_debit: Decimal
    recomputed_credit: Decimal


@dataclass(frozen=True)
class Correction:
    account_id: UUID
    account_code: str
    amount: Decimal
    journal_entry_id: UUID | None = None


@dataclass(frozen=True)
class AutoCorrectResult:
    period_id: UUID
    threshold: Decimal
    dry_run: bool
    corrections: tuple[Correction, ...]
    above_threshold: tuple[ReconciliationDiff, ...]
    suspense_account_id: UUID | None = None

    @property
    def corrected_count(self) -> int:
        return len(self.corrections)

    @property
    def total_variance(self) -> Decimal:
        return sum((c.amount for c in self.corrections), Decimal("0.00"))


class ReconciliationService:
    """
    Reconciliation engine.

    Contract:
        All reads of one call happen inside the caller's transaction, so
        cached and recomputed figures come from one snapshot.

    Non-goals:
        - Does NOT reconcile against external statements.
        - Does NOT correct differences above the threshold; those are
          reported for investigation.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        max_threshold: Decimal | None = None,
        suspense_account_code: str | None = None,
    ) -> None:
        self._session = session
        self._clock = clock or SystemClock()
        self._max_threshold = max_threshold if max_threshold is not None else DEFAULT_MAX_THRESHOLD
        self._suspense_account_code = suspense_account_code
        self._ledger = LedgerSelector(session)
        self._accounts = AccountService(session, self._clock)
        self._periods = PeriodService(session, self._clock)

    def reconcile_period(
        self,
        period_id: UUID,
        only_mismatches: bool = False,
    ) -> ReconciliationReport:
        """Diff every account with cached or posted activity in the period."""
        period = self._periods.get_period(period_id)
        cached = self._ledger.cached_activity(period.id)
        recomputed = self._ledger.recomputed_activity(period.id)

        account_ids = set(cached) | set(recomputed)
        accounts = {
            account.id: account
            for account in self._session.scalars(select(Account).where(Account.id.in_(account_ids)))
        } if account_ids else {}

        diffs = sorted(
            (
                self._diff(accounts[account_id], cached.get(account_id), recomputed.get(account_id))
                for account_id in account_ids
            ),
            key=lambda d: d.account_code,
        )
        report = ReconciliationReport(period_id=period.id, diffs=tuple(diffs))

        logger.info(
            "reconciliation_completed",
            extra={
                "period_code": period.period_code,
                "accounts": len(report.diffs),
                "mismatches": len(report.mismatches),
            },
        )
        if only_mismatches:
            return ReconciliationReport(period_id=period.id, diffs=report.mismatches)
        return report

    def discrepancy_details(self, period_id: UUID, account_id: UUID) -> DiscrepancyDetail:
        period = self._periods.get_period(period_id)
        account = self._accounts.get_account(account_id)
        cached = self._ledger.cached_activity(period.id).get(account.id, Activity())
        recomputed = self._ledger.recomputed_activity(period.id).get(account.id, Activity())
        diff = self._diff(account, cached, recomputed)
        return DiscrepancyDetail(
            diff=diff,
            postings=tuple(self._ledger.postings(period_id=period.id, account_id=account.id)),
            cached_debit=from_minor(cached.debit_minor),
            cached_credit=from_minor(cached.credit_minor),
            recomputed_debit=from_minor(recomputed.debit_minor),
            recomputed_credit=from_minor(recomputed.credit_minor),
        )

    def auto_correct(
        self,
        period_id: UUID,
        threshold,
        actor_id: UUID,
        dry_run: bool = True,
        suspense_account_id: UUID | None = None,
    ) -> AutoCorrectResult:
        """
        Book correcting entries for small differences.

        A positive difference (cached above recomputed) debits the account
        on its normal side; a negative one the reverse.  The suspense
        account takes the other side.

        Raises:
            InvalidAmountError: threshold negative or finer than one minor unit.
            InvalidFieldError: threshold above the configured maximum, or
                no suspense account while not in dry-run.
        """
        threshold_minor = to_minor(threshold, allow_negative=True)
        if threshold_minor < 0:
            raise InvalidAmountError(str(threshold), "threshold must not be negative")
        if threshold_minor > to_minor(self._max_threshold):
            raise InvalidFieldError(
                "threshold", f"must not exceed {self._max_threshold}"
            )

        period = self._periods.get_period(period_id)
        suspense = self._resolve_suspense(suspense_account_id)

        with LogContext.bind(period_id=period.id):
            report = self.reconcile_period(period.id, only_mismatches=True)
            to_fix = []
            above = []
            for diff in report.diffs:
                # The suspense account cannot offset itself; left for review
                if suspense is not None and diff.account_id == suspense.id:
                    above.append(diff)
                elif abs(diff.difference_minor) <= threshold_minor:
                    to_fix.append(diff)
                else:
                    above.append(diff)

            if to_fix and suspense is None and not dry_run:
                raise InvalidFieldError(
                    "suspense_account_id",
                    "no suspense or rounding account is configured",
                )

            corrections = []
            if dry_run:
                corrections = [
                    Correction(d.account_id, d.account_code, d.balance_difference)
                    for d in to_fix
                ]
            else:
                journal = JournalService(self._session, self._clock)
                posting = PostingService(self._session, self._clock)
                for diff in to_fix:
                    entry_id = self._book_correction(
                        journal, posting, period, diff, suspense.id, actor_id
                    )
                    corrections.append(Correction(
                        diff.account_id, diff.account_code, diff.balance_difference, entry_id
                    ))

            result = AutoCorrectResult(
                period_id=period.id,
                threshold=from_minor(threshold_minor),
                dry_run=dry_run,
                corrections=tuple(corrections),
                above_threshold=tuple(above),
                suspense_account_id=suspense.id if suspense else None,
            )
            logger.info(
                "auto_correct_completed",
                extra={
                    "dry_run": dry_run,
                    "corrected": result.corrected_count,
                    "above_threshold": len(above),
                    "total_variance": str(result.total_variance),
                },
            )
        return result

    def _book_correction(
        self,
        journal: JournalService,
        posting: PostingService,
        period,
        diff: ReconciliationDiff,
        suspense_id: UUID,
        actor_id: UUID,
    ) -> UUID:
        amount = from_minor(abs(diff.difference_minor))
        normal_side = (
            LineSide.DEBIT if diff.normal_balance == NormalBalance.DEBIT else LineSide.CREDIT
        )
        account_side = normal_side if diff.difference_minor > 0 else normal_side.opposite()
        entry = journal.create(
            period_id=period.id,
            entry_date=period.end_date,
            lines=[
                LineInput(diff.account_id, account_side, amount, "Reconciliation correction"),
                LineInput(suspense_id, account_side.opposite(), amount, "Reconciliation correction"),
            ],
            actor_id=actor_id,
            memo=f"Reconciliation correction for {diff.account_code}",
            entry_type=JournalEntryType.ADJUSTMENT,
            source=EntrySource.RECONCILIATION,
            source_ref=diff.account_code,
        )
        journal.submit_and_approve(entry.id, actor_id)
        posting.post(entry.id, actor_id, cache_exempt_account_ids={diff.account_id})
        logger.info(
            "reconciliation_correction_posted",
            extra={
                "entry_id": str(entry.id),
                "account_code": diff.account_code,
                "amount": str(diff.balance_difference),
            },
        )
        return entry.id

    def _resolve_suspense(self, suspense_account_id: UUID | None) -> AccountInfo | None:
        if suspense_account_id is not None:
            self._accounts.require_postable(suspense_account_id)
            return self._accounts.get_account(suspense_account_id)
        if self._suspense_account_code:
            return self._accounts.get_account_by_code(self._suspense_account_code)
        for tag in (AccountTag.SUSPENSE, AccountTag.ROUNDING):
            tagged = self._accounts.find_tagged(tag)
            if tagged is not None:
                return tagged
        return None

    @staticmethod
    def _diff(account, cached: Activity | None, recomputed: Activity | None) -> ReconciliationDiff:
        cached = cached or Activity()
        recomputed = recomputed or Activity()
        return ReconciliationDiff(
            account_id=account.id,
            account_code=account.code,
            account_name=account.name,
            normal_balance=account.normal_balance,
            gl_balance_minor=normal_sign_minor(
                account.normal_balance, cached.debit_minor, cached.credit_minor
            ),
            recomputed_balance_minor=normal_sign_minor(
                account.normal_balance, recomputed.debit_minor, recomputed.credit_minor
            ),
        )
