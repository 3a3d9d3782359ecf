"""
ledger_services.period_close_orchestrator -- Period close, blockers and roll-forward.

Responsibility:
    Computes the blockers that keep a period from closing, closes periods
    (optionally after running period-end accruals, optionally forced with a
    justification), passes reopen/lock/unlock through to the kernel, and
    rolls a closed period's net income into retained earnings.

Architecture position:
    Services -- orchestration over the kernel.
    Composes PeriodService (state machine), JournalSelector (open entries),
    ReconciliationService (mismatches), AccrualScheduler (period-end run)
    and JournalService/PostingService (closing entry).
    Consumes DTOs from _close_types.py.

Invariants enforced:
    - close_preview is read-only.
    - close refuses with exactly the blocker set close_preview reports,
      unless forced with a non-empty justification.
    - close row-locks the period before computing blockers and holds the
      lock through the close, so a concurrent post or new draft either
      lands before the blocker check or waits until the close commits.
    - Roll-forward posts at most one live closing entry per source period.

Failure modes:
    - PeriodNotFoundError: unknown period, or no period after the source.
    - PeriodNotOpenError: close of a non-open period, or roll-forward into
      a non-open target.
    - PeriodHasBlockingEntriesError: blockers present and not forced.
    - InvalidFieldError: force without justification, roll-forward of an
      open source, or no retained-earnings account.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from ledger_kernel.domain.amounts import from_minor
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.dtos import AccountInfo, LineInput, PeriodInfo
from ledger_kernel.exceptions import (
    InvalidFieldError,
    PeriodHasBlockingEntriesError,
    PeriodNotFoundError,
    PeriodNotOpenError,
)
from ledger_kernel.logging_config import LogContext, get_logger
from ledger_kernel.models.account import AccountTag, AccountType
from ledger_kernel.models.fiscal_period import PeriodStatus
from ledger_kernel.models.journal import (
    EntrySource,
    JournalEntryStatus,
    JournalEntryType,
    LineSide,
)
from ledger_kernel.selectors.journal_selector import JournalSelector
from ledger_kernel.selectors.ledger_selector import LedgerSelector
from ledger_kernel.services.account_service import AccountService
from ledger_kernel.services.journal_service import JournalService
from ledger_kernel.services.period_service import PeriodService
from ledger_kernel.services.posting_service import PostingService
from ledger_services._close_types import (
    BlockerKind,
    CloseBlocker,
    ClosePreview,
    CloseResult,
    RollForwardResult,
)
from ledger_services.accrual_scheduler import AccrualScheduler
from ledger_services.reconciliation_service import ReconciliationService

logger = get_logger("services.period_close")

_BLOCKING_STATUSES = {
    JournalEntryStatus.DRAFT: BlockerKind.DRAFT_ENTRY,
    JournalEntryStatus.SUBMITTED: BlockerKind.SUBMITTED_ENTRY,
    JournalEntryStatus.APPROVED: BlockerKind.UNPOSTED_APPROVED_ENTRY,
}

# A closing entry in one of these states no longer counts as the roll-forward
_DEAD_STATUSES = frozenset({
    JournalEntryStatus.REJECTED,
    JournalEntryStatus.CANCELLED,
    JournalEntryStatus.VOIDED,
})

_INCOME_STATEMENT_TYPES = frozenset({AccountType.REVENUE, AccountType.EXPENSE})


class PeriodCloseOrchestrator:
    """
    Period close workflow.

    Contract:
        Receives the caller's session and flushes into it.  Settings-derived
        values (retained-earnings code, workers) arrive through the
        constructor.

    Non-goals:
        - Does NOT commit.
        - Does NOT auto-post accrual drafts.  Drafts created by
          ``auto_run_accruals`` are blockers like any other draft.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        retained_earnings_account_code: str | None = None,
        reconciliation: ReconciliationService | None = None,
        scheduler: AccrualScheduler | None = None,
    ) -> None:
        self._session = session
        self._clock = clock or SystemClock()
        self._retained_earnings_account_code = retained_earnings_account_code
        self._periods = PeriodService(session, self._clock)
        self._accounts = AccountService(session, self._clock)
        self._journal_selector = JournalSelector(session)
        self._ledger = LedgerSelector(session)
        self._reconciliation = reconciliation or ReconciliationService(session, self._clock)
        self._scheduler = scheduler or AccrualScheduler(session, self._clock)

    # ------------------------------------------------------------------
    # Preview / close
    # ------------------------------------------------------------------

    def close_preview(self, period_id: UUID) -> ClosePreview:
        """Blockers that would refuse a close right now."""
        period = self._periods.get_period(period_id)
        blockers: list[CloseBlocker] = []

        entries = self._journal_selector.entries_in_status(period.id, _BLOCKING_STATUSES)
        for entry in sorted(entries, key=lambda e: (_kind_order(e.status), str(e.id))):
            blockers.append(CloseBlocker(
                kind=_BLOCKING_STATUSES[entry.status],
                detail=f"journal entry dated {entry.entry_date} is {entry.status.value}",
                journal_entry_id=entry.id,
            ))

        for diff in self._reconciliation.reconcile_period(period.id, only_mismatches=True).diffs:
            blockers.append(CloseBlocker(
                kind=BlockerKind.RECONCILIATION_MISMATCH,
                detail=(
                    f"account {diff.account_code}: cached {diff.gl_balance}, "
                    f"recomputed {diff.recomputed_balance}"
                ),
                account_id=diff.account_id,
            ))

        return ClosePreview(period=period, blockers=tuple(blockers))

    def close(
        self,
        period_id: UUID,
        actor_id: UUID,
        force: bool = False,
        justification: str | None = None,
        auto_run_accruals: bool = False,
    ) -> CloseResult:
        """
        OPEN -> CLOSED once nothing blocks, or when forced.

        Raises:
            PeriodNotOpenError: period is not OPEN.
            InvalidFieldError: ``force`` without a justification.
            PeriodHasBlockingEntriesError: blockers present and not forced.
        """
        justification = (justification or "").strip() or None
        if force and justification is None:
            raise InvalidFieldError("justification", "a forced close requires a justification")

        # Held until commit; blockers below are computed under the lock
        period = self._periods.lock_for_close(period_id)

        with LogContext.bind(period_id=period.id):
            accrual_run = None
            if auto_run_accruals:
                accrual_run = self._scheduler.run_period_end(period.id, actor_id)

            preview = self.close_preview(period.id)
            if preview.blockers and not force:
                logger.warning(
                    "period_close_blocked",
                    extra={
                        "period_code": period.period_code,
                        "blockers": len(preview.blockers),
                    },
                )
                raise PeriodHasBlockingEntriesError(
                    period.period_code, [b.to_dict() for b in preview.blockers]
                )

            closed = self._periods.close_period(
                period.id, actor_id, justification=justification if force else None
            )
            if force and preview.blockers:
                logger.warning(
                    "period_close_forced",
                    extra={
                        "period_code": period.period_code,
                        "overridden_blockers": len(preview.blockers),
                        "justification": justification,
                    },
                )

        return CloseResult(
            period=closed,
            forced=force,
            overridden_blockers=preview.blockers if force else (),
            accrual_run=accrual_run,
        )

    def reopen(self, period_id: UUID, actor_id: UUID) -> PeriodInfo:
        return self._periods.reopen_period(period_id, actor_id)

    def lock(self, period_id: UUID, actor_id: UUID) -> PeriodInfo:
        return self._periods.lock_period(period_id, actor_id)

    def unlock(self, period_id: UUID, actor_id: UUID) -> PeriodInfo:
        return self._periods.unlock_period(period_id, actor_id)

    # ------------------------------------------------------------------
    # Roll-forward
    # ------------------------------------------------------------------

    def roll_forward(
        self,
        period_id: UUID,
        actor_id: UUID,
        target_period_id: UUID | None = None,
        retained_earnings_account_id: UUID | None = None,
    ) -> RollForwardResult:
        """
        Close revenue and expense activity of a closed period into retained earnings.

        Posts one CLOSING entry, dated on the target period's first day,
        that offsets every revenue and expense balance of the source period
        and books the net to retained earnings.  Calling it again for the
        same source returns the existing entry.
        """
        source = self._periods.get_period(period_id)
        if source.status == PeriodStatus.OPEN:
            raise InvalidFieldError("period_id", f"period {source.period_code} must be closed first")

        existing = [
            e for e in self._journal_selector.find_by_source(EntrySource.ROLL_FORWARD, str(source.id))
            if e.status not in _DEAD_STATUSES
        ]
        if existing:
            entry = existing[0]
            # Closing lines debit net revenue and credit net expense
            net = sum(
                (l.amount if l.side == LineSide.DEBIT else -l.amount)
                for l in entry.lines
                if self._accounts.get_account(l.account_id).account_type in _INCOME_STATEMENT_TYPES
            )
            logger.info(
                "roll_forward_already_done",
                extra={"period_code": source.period_code, "entry_id": str(entry.id)},
            )
            return RollForwardResult(
                source_period_id=source.id,
                target_period_id=entry.period_id,
                journal_entry_id=entry.id,
                net_income=Decimal("0.00") + net,
                already_rolled=True,
            )

        if target_period_id is not None:
            target = self._periods.get_period(target_period_id)
        else:
            target = self._periods.next_period(source.id)
            if target is None:
                raise PeriodNotFoundError(f"period after {source.period_code}")
        if not target.is_open:
            raise PeriodNotOpenError(target.period_code, target.status.value)

        rows = [
            row for row in self._ledger.trial_balance(source.id)
            if row.account_type in _INCOME_STATEMENT_TYPES and row.balance_minor != 0
        ]
        if not rows:
            logger.info("roll_forward_nothing_to_close", extra={"period_code": source.period_code})
            return RollForwardResult(
                source_period_id=source.id,
                target_period_id=target.id,
                journal_entry_id=None,
                net_income=Decimal("0.00"),
            )

        retained = self._resolve_retained_earnings(retained_earnings_account_id)

        lines: list[LineInput] = []
        net_income_minor = 0
        for row in rows:
            # Offset the row's net activity: debit what was net credit and vice versa
            net_debit = row.debit_minor - row.credit_minor
            side = LineSide.CREDIT if net_debit > 0 else LineSide.DEBIT
            lines.append(LineInput(
                row.account_id, side, from_minor(abs(net_debit)), f"Close {row.account_code}"
            ))
            net_income_minor -= net_debit
        if net_income_minor != 0:
            lines.append(LineInput(
                retained.id,
                LineSide.CREDIT if net_income_minor > 0 else LineSide.DEBIT,
                from_minor(abs(net_income_minor)),
                "Net income",
            ))

        journal = JournalService(self._session, self._clock)
        posting = PostingService(self._session, self._clock)
        with LogContext.bind(period_id=target.id):
            entry = journal.create(
                period_id=target.id,
                entry_date=target.start_date,
                lines=lines,
                actor_id=actor_id,
                memo=f"Roll-forward of {source.period_code}",
                entry_type=JournalEntryType.CLOSING,
                source=EntrySource.ROLL_FORWARD,
                source_ref=str(source.id),
            )
            journal.submit_and_approve(entry.id, actor_id)
            posting.post(entry.id, actor_id)

            logger.info(
                "roll_forward_posted",
                extra={
                    "source_period": source.period_code,
                    "target_period": target.period_code,
                    "entry_id": str(entry.id),
                    "net_income": str(from_minor(net_income_minor)),
                },
            )
        return RollForwardResult(
            source_period_id=source.id,
            target_period_id=target.id,
            journal_entry_id=entry.id,
            net_income=from_minor(net_income_minor),
            closed_account_ids=tuple(row.account_id for row in rows),
        )

    def _resolve_retained_earnings(self, account_id: UUID | None) -> AccountInfo:
        if account_id is not None:
            self._accounts.require_postable(account_id)
            return self._accounts.get_account(account_id)
        tagged = self._accounts.find_tagged(AccountTag.RETAINED_EARNINGS)
        if tagged is not None:
            return tagged
        if self._retained_earnings_account_code:
            return self._accounts.get_account_by_code(self._retained_earnings_account_code)
        raise InvalidFieldError(
            "retained_earnings_account_id", "no retained earnings account is configured"
        )


def _kind_order(status: JournalEntryStatus) -> int:
    return list(_BLOCKING_STATUSES).index(status)

