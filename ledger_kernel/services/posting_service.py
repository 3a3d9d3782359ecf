"""
PostingService -- the only writer of the Ledger Store.

Responsibility:
    Moves APPROVED journal entries into the ledger (``post``), posts several
    entries independently (``batch_post``) and reverses posted entries
    (``void``).

Architecture position:
    Kernel > Services -- imperative shell.
    Calls PeriodService.lock_for_posting on every post.

Invariants enforced:
    - Only APPROVED entries post; only POSTED entries void.
    - The period row lock is held from the open-check through the posting
      append and cached-balance update, so a concurrent close cannot
      interleave.
    - Balance, entry date and account postability are re-checked under the
      lock.  Anything may have changed since approval.
    - One LedgerPosting per JournalLine.  The unique constraint on
      journal_line_id refuses a second application of the same entry.
    - A void never edits the original lines; it posts a mirror entry.

Failure modes:
    - InvalidTransitionError: wrong status.
    - PeriodNotOpenError: period closed or locked at post time.
    - UnbalancedEntryError, AccountNotPostableError, InvalidFieldError.
    - OptimisticLockError: stale expected_version.

Audit relevance:
    posting_seq gives a gap-free order of ledger appends per period.
"""

import threading
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Iterable
from uuid import UUID

from sqlalchemy import func, select

from ledger_kernel.domain.amounts import format_minor
from ledger_kernel.domain.dtos import JournalEntryInfo, LineInput
from ledger_kernel.exceptions import (
    InvalidTransitionError,
    LedgerError,
    UnbalancedEntryError,
)
from ledger_kernel.logging_config import LogContext, get_logger
from ledger_kernel.models.journal import EntrySource, JournalEntryStatus, LineSide
from ledger_kernel.models.ledger import AccountPeriodBalance, LedgerPosting
from ledger_kernel.services.account_service import AccountService
from ledger_kernel.services.base import BaseService
from ledger_kernel.services.journal_service import REASON_MAX_LENGTH, JournalService
from ledger_kernel.services.period_service import PeriodService

logger = get_logger("services.posting")


class BatchItemStatus(str, Enum):
    POSTED = "posted"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class BatchItemResult:
    entry_id: UUID
    status: BatchItemStatus
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class BatchPostResult:
    """Per-entry outcome of ``batch_post``, in request order."""

    items: tuple[BatchItemResult, ...]

    @property
    def posted_count(self) -> int:
        return sum(1 for i in self.items if i.status == BatchItemStatus.POSTED)

    @property
    def failed_count(self) -> int:
        return sum(1 for i in self.items if i.status == BatchItemStatus.FAILED)

    @property
    def cancelled_count(self) -> int:
        return sum(1 for i in self.items if i.status == BatchItemStatus.CANCELLED)


@dataclass(frozen=True)
class VoidResult:
    original: JournalEntryInfo
    reversal: JournalEntryInfo


class PostingService(BaseService):
    """
    Ledger append service.

    Contract:
        ``post`` and ``void`` are single units of work inside the caller's
        transaction.  ``batch_post`` wraps each entry in its own SAVEPOINT
        so one failure never rolls back another entry.

    Non-goals:
        - Does NOT commit.  A caller that wants each batch entry durable
          independently of later work must commit after the batch.
    """

    def __init__(self, session, clock=None, reason_max_length: int = REASON_MAX_LENGTH):
        super().__init__(session, clock)
        self._journal = JournalService(session, self.clock, reason_max_length)
        self._periods = PeriodService(session, self.clock)
        self._accounts = AccountService(session, self.clock)

    # =========================================================================
    # Post
    # =========================================================================

    def post(
        self,
        entry_id: UUID,
        actor_id: UUID,
        expected_version: int | None = None,
        cache_exempt_account_ids: Iterable[UUID] = (),
    ) -> JournalEntryInfo:
        """
        APPROVED -> POSTED.

        Args:
            cache_exempt_account_ids: accounts whose cached balance must not
                move.  Used only by reconciliation corrections, which bring
                the ledger up to an already-reported balance.
        """
        entry = self._journal._load(entry_id, expected_version)
        if entry.status != JournalEntryStatus.APPROVED:
            raise InvalidTransitionError(
                "JournalEntry", str(entry.id),
                entry.status.value, JournalEntryStatus.POSTED.value,
            )

        with LogContext.bind(entry_id=entry.id, period_id=entry.period_id):
            # Serialization point: held until the caller's transaction ends.
            period = self._periods.lock_for_posting(entry.period_id)
            self._periods.validate_entry_date(period.id, entry.entry_date)
            self._journal._check_line_count(entry.lines, entry.id)
            if not entry.is_balanced:
                raise UnbalancedEntryError(
                    format_minor(entry.total_debit_minor),
                    format_minor(entry.total_credit_minor),
                    str(entry.id),
                )
            for line in entry.lines:
                self._accounts.require_postable(line.account_id)

            now = self.clock.now()
            seq = self.session.execute(
                select(func.coalesce(func.max(LedgerPosting.posting_seq), 0))
                .where(LedgerPosting.period_id == period.id)
            ).scalar_one()

            exempt = frozenset(cache_exempt_account_ids)
            for line in entry.lines:
                seq += 1
                self.session.add(LedgerPosting(
                    journal_entry_id=entry.id,
                    journal_line_id=line.id,
                    account_id=line.account_id,
                    period_id=period.id,
                    side=line.side,
                    amount_minor=line.amount_minor,
                    posting_seq=seq,
                    posted_at=now,
                    posted_by_id=actor_id,
                ))
                if line.account_id not in exempt:
                    self._apply_to_cache(line.account_id, period.id, line.side, line.amount_minor)

            entry.status = JournalEntryStatus.POSTED
            entry.posted_at = now
            entry.posted_by_id = actor_id
            entry.updated_by_id = actor_id
            self._journal._flush(entry)

            logger.info(
                "journal_entry_posted",
                extra={
                    "entry_id": str(entry.id),
                    "period_code": period.period_code,
                    "line_count": len(entry.lines),
                    "total": format_minor(entry.total_debit_minor),
                },
            )
        return JournalEntryInfo.from_model(entry)

    def _apply_to_cache(
        self,
        account_id: UUID,
        period_id: UUID,
        side: LineSide,
        amount_minor: int,
    ) -> None:
        balance = self.session.execute(
            select(AccountPeriodBalance).where(
                AccountPeriodBalance.account_id == account_id,
                AccountPeriodBalance.period_id == period_id,
            )
        ).scalar_one_or_none()
        if balance is None:
            balance = AccountPeriodBalance(
                account_id=account_id,
                period_id=period_id,
                debit_minor=0,
                credit_minor=0,
            )
            self.session.add(balance)
        if side == LineSide.DEBIT:
            balance.debit_minor += amount_minor
        else:
            balance.credit_minor += amount_minor
        balance.updated_at = self.clock.now()
        # Flush so a second line on the same account finds this row.
        self.session.flush()

    # =========================================================================
    # Batch
    # =========================================================================

    def batch_post(
        self,
        entry_ids: Iterable[UUID],
        actor_id: UUID,
        cancel_event: threading.Event | None = None,
    ) -> BatchPostResult:
        """
        Post each entry independently.

        Each entry runs inside its own SAVEPOINT.  A failure is recorded
        and rolled back to that savepoint; the remaining entries continue.
        When ``cancel_event`` is set, entries not yet started are reported
        as CANCELLED.  An entry already in progress always completes.
        """
        results: list[BatchItemResult] = []
        for entry_id in entry_ids:
            if cancel_event is not None and cancel_event.is_set():
                results.append(BatchItemResult(entry_id, BatchItemStatus.CANCELLED))
                continue

            savepoint = self.session.begin_nested()
            try:
                self.post(entry_id, actor_id)
                savepoint.commit()
                results.append(BatchItemResult(entry_id, BatchItemStatus.POSTED))
            except LedgerError as exc:
                savepoint.rollback()
                results.append(BatchItemResult(
                    entry_id, BatchItemStatus.FAILED, exc.code, str(exc),
                ))
            except Exception as exc:
                savepoint.rollback()
                results.append(BatchItemResult(
                    entry_id, BatchItemStatus.FAILED, "UNHANDLED_EXCEPTION", str(exc),
                ))
                logger.exception(
                    "batch_post_item_error", extra={"entry_id": str(entry_id)}
                )

        result = BatchPostResult(items=tuple(results))
        logger.info(
            "batch_post_completed",
            extra={
                "posted": result.posted_count,
                "failed": result.failed_count,
                "cancelled": result.cancelled_count,
            },
        )
        return result

    # =========================================================================
    # Void
    # =========================================================================

    def void(
        self,
        entry_id: UUID,
        reason: str,
        actor_id: UUID,
        effective_date: date | None = None,
        expected_version: int | None = None,
    ) -> VoidResult:
        """
        POSTED -> VOIDED by posting a swapped-sides reversal.

        The reversal is dated ``effective_date`` (default: the original
        entry date) and lands in the period covering that date, which must
        be open.
        """
        reason = self._journal._validate_reason(reason)
        original = self._journal._load(entry_id, expected_version)
        if original.status != JournalEntryStatus.POSTED:
            raise InvalidTransitionError(
                "JournalEntry", str(original.id),
                original.status.value, JournalEntryStatus.VOIDED.value,
            )

        reversal_date = effective_date or original.entry_date
        if effective_date is None:
            period_id = original.period_id
        else:
            period_id = self._periods.get_period_for_date(effective_date).id

        mirror = [
            LineInput(
                account_id=line.account_id,
                side=line.side.opposite(),
                amount=line.amount,
                description=line.description,
            )
            for line in original.lines
        ]
        reversal = self._journal.create(
            period_id=period_id,
            entry_date=reversal_date,
            lines=mirror,
            actor_id=actor_id,
            memo=f"Void of {original.id}: {reason}",
            entry_type=original.entry_type,
            source=EntrySource.VOID,
            source_ref=str(original.id),
            reversal_of_id=original.id,
        )
        self._journal.submit_and_approve(reversal.id, actor_id)
        posted_reversal = self.post(reversal.id, actor_id)

        original.status = JournalEntryStatus.VOIDED
        original.void_reason = reason
        original.voided_at = self.clock.now()
        original.voided_by_id = actor_id
        original.updated_by_id = actor_id
        self._journal._flush(original)

        logger.info(
            "journal_entry_voided",
            extra={"entry_id": str(original.id), "reversal_id": str(reversal.id)},
        )
        return VoidResult(
            original=JournalEntryInfo.from_model(original),
            reversal=posted_reversal,
        )
