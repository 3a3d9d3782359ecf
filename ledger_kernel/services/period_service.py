"""
PeriodService -- fiscal period state machine and posting gate.

Responsibility:
    Manages the fiscal period lifecycle (OPEN <-> CLOSED <-> LOCKED) and
    answers whether a posting may enter a period.

Architecture position:
    Kernel > Services -- imperative shell.
    Called by PostingService on every post (``lock_for_posting``) and by
    PeriodCloseOrchestrator to drive close, reopen, lock and unlock.

Invariants enforced:
    - Postings are accepted only into OPEN periods.
    - Date ranges never overlap.
    - LOCKED periods must be unlocked before they can be reopened.
    - A period with ledger postings cannot be deleted.
    - Flush-only: never commits or rolls back the session.

Failure modes:
    - PeriodNotFoundError: unknown id, or no period covers a date.
    - PeriodNotOpenError: close / post against a non-open period.
    - PeriodLockedError: reopen against a locked period.
    - InvalidTransitionError: any other transition not in the state machine.
    - PeriodOverlapError, PeriodHasPostingsError.

Concurrency:
    Every transition loads the period row with SELECT ... FOR UPDATE
    (``populate_existing`` so the locked read replaces any stale identity
    map copy).  Posting takes the same lock, so a close cannot slip between
    a posting's open-check and its ledger append.  Draft creation takes a
    shared lock (FOR SHARE), so it waits for a close holding the row.
"""

from datetime import date
from uuid import UUID

from sqlalchemy import func, select

from ledger_kernel.domain.dtos import PeriodInfo
from ledger_kernel.exceptions import (
    DuplicateCodeError,
    InvalidFieldError,
    InvalidTransitionError,
    PeriodHasBlockingEntriesError,
    PeriodHasPostingsError,
    PeriodLockedError,
    PeriodNotFoundError,
    PeriodNotOpenError,
    PeriodOverlapError,
)
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.fiscal_period import FiscalPeriod, PeriodStatus
from ledger_kernel.models.journal import JournalEntry
from ledger_kernel.models.ledger import LedgerPosting
from ledger_kernel.services.base import BaseService

logger = get_logger("services.period")


class PeriodService(BaseService):
    """
    Service for the fiscal period state machine.

    Contract:
        Accepts period ids and returns frozen ``PeriodInfo`` DTOs.
        Lifecycle methods flush within the caller's transaction.

    Non-goals:
        - Does NOT compute close blockers or run accruals (that is
          PeriodCloseOrchestrator in ledger_services/).
    """

    # =========================================================================
    # Creation / deletion
    # =========================================================================

    def create_period(
        self,
        period_code: str,
        start_date: date,
        end_date: date,
        actor_id: UUID,
        name: str | None = None,
        fiscal_year: int | None = None,
    ) -> PeriodInfo:
        """
        Create a new OPEN fiscal period.

        fiscal_year defaults to the calendar year of start_date.

        Raises:
            InvalidFieldError: empty code or start_date > end_date.
            PeriodOverlapError: date range overlaps an existing period.
        """
        period_code = (period_code or "").strip()
        if not period_code:
            raise InvalidFieldError("period_code", "must not be empty")
        if start_date > end_date:
            raise InvalidFieldError(
                "start_date",
                f"start_date ({start_date}) cannot be after end_date ({end_date})",
            )

        existing = self.session.execute(
            select(FiscalPeriod.id).where(FiscalPeriod.period_code == period_code)
        ).scalar_one_or_none()
        if existing is not None:
            raise DuplicateCodeError("FiscalPeriod", period_code)

        self._validate_no_overlap(period_code, start_date, end_date)

        period = FiscalPeriod(
            period_code=period_code,
            name=name or period_code,
            fiscal_year=fiscal_year if fiscal_year is not None else start_date.year,
            start_date=start_date,
            end_date=end_date,
            status=PeriodStatus.OPEN,
            created_by_id=actor_id,
        )
        self.session.add(period)
        self.session.flush()

        logger.info(
            "period_created",
            extra={
                "period_id": str(period.id),
                "period_code": period_code,
                "start_date": str(start_date),
                "end_date": str(end_date),
            },
        )
        return PeriodInfo.from_model(period)

    def delete_period(self, period_id: UUID) -> None:
        """
        Delete a period that has never been used.

        Raises:
            PeriodHasPostingsError: the period has ledger postings.
            PeriodHasBlockingEntriesError: journal entries still reference it.
        """
        period = self._get_for_update(period_id)

        posting_count = self.session.execute(
            select(func.count(LedgerPosting.id)).where(LedgerPosting.period_id == period.id)
        ).scalar_one()
        if posting_count:
            raise PeriodHasPostingsError(period.period_code, posting_count)

        entry_ids = self.session.execute(
            select(JournalEntry.id, JournalEntry.status).where(JournalEntry.period_id == period.id)
        ).all()
        if entry_ids:
            raise PeriodHasBlockingEntriesError(
                period.period_code,
                [
                    {"kind": status.value, "journal_entry_id": str(eid)}
                    for eid, status in entry_ids
                ],
            )

        self.session.delete(period)
        self.session.flush()
        logger.info("period_deleted", extra={"period_code": period.period_code})

    def _validate_no_overlap(
        self,
        new_period_code: str,
        start_date: date,
        end_date: date,
    ) -> None:
        """
        Two ranges overlap if: start1 <= end2 AND start2 <= end1.

        Raises:
            PeriodOverlapError: If overlap is detected.
        """
        overlapping = self.session.execute(
            select(FiscalPeriod)
            .where(
                FiscalPeriod.start_date <= end_date,
                FiscalPeriod.end_date >= start_date,
            )
            .order_by(FiscalPeriod.start_date)
        ).scalars().first()

        if overlapping:
            raise PeriodOverlapError(
                new_period_code=new_period_code,
                existing_period_code=overlapping.period_code,
                overlap_start=str(max(start_date, overlapping.start_date)),
                overlap_end=str(min(end_date, overlapping.end_date)),
            )

    # =========================================================================
    # State machine
    # =========================================================================

    def close_period(
        self,
        period_id: UUID,
        actor_id: UUID,
        justification: str | None = None,
    ) -> PeriodInfo:
        """
        OPEN -> CLOSED.

        Blocker evaluation is the orchestrator's job; this method only
        enforces the state machine.

        Raises:
            PeriodNotOpenError: period is CLOSED or LOCKED.
        """
        period = self._get_for_update(period_id)
        if period.status != PeriodStatus.OPEN:
            raise PeriodNotOpenError(period.period_code, period.status.value)

        period.status = PeriodStatus.CLOSED
        period.closed_at = self.clock.now()
        period.closed_by_id = actor_id
        period.close_justification = justification
        period.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "period_closed",
            extra={
                "period_code": period.period_code,
                "forced": justification is not None,
            },
        )
        return PeriodInfo.from_model(period)

    def reopen_period(self, period_id: UUID, actor_id: UUID) -> PeriodInfo:
        """
        CLOSED -> OPEN.

        Raises:
            PeriodLockedError: the period is LOCKED; unlock it first.
            InvalidTransitionError: the period is already OPEN.
        """
        period = self._get_for_update(period_id)
        if period.status == PeriodStatus.LOCKED:
            raise PeriodLockedError(period.period_code)
        if period.status != PeriodStatus.CLOSED:
            raise InvalidTransitionError(
                "FiscalPeriod", str(period.id), period.status.value, PeriodStatus.OPEN.value
            )

        period.status = PeriodStatus.OPEN
        period.closed_at = None
        period.closed_by_id = None
        period.close_justification = None
        period.updated_by_id = actor_id
        self.session.flush()

        logger.info("period_reopened", extra={"period_code": period.period_code})
        return PeriodInfo.from_model(period)

    def lock_period(self, period_id: UUID, actor_id: UUID) -> PeriodInfo:
        """
        CLOSED -> LOCKED.

        Raises:
            InvalidTransitionError: period is not CLOSED.
        """
        period = self._get_for_update(period_id)
        if period.status != PeriodStatus.CLOSED:
            raise InvalidTransitionError(
                "FiscalPeriod", str(period.id), period.status.value, PeriodStatus.LOCKED.value
            )

        period.status = PeriodStatus.LOCKED
        period.locked_at = self.clock.now()
        period.locked_by_id = actor_id
        period.updated_by_id = actor_id
        self.session.flush()

        logger.info("period_locked", extra={"period_code": period.period_code})
        return PeriodInfo.from_model(period)

    def unlock_period(self, period_id: UUID, actor_id: UUID) -> PeriodInfo:
        """
        LOCKED -> CLOSED.

        Raises:
            InvalidTransitionError: period is not LOCKED.
        """
        period = self._get_for_update(period_id)
        if period.status != PeriodStatus.LOCKED:
            raise InvalidTransitionError(
                "FiscalPeriod", str(period.id), period.status.value, PeriodStatus.CLOSED.value
            )

        period.status = PeriodStatus.CLOSED
        period.locked_at = None
        period.locked_by_id = None
        period.updated_by_id = actor_id
        self.session.flush()

        logger.info("period_unlocked", extra={"period_code": period.period_code})
        return PeriodInfo.from_model(period)

    # =========================================================================
    # Posting gate
    # =========================================================================

    def lock_for_posting(self, period_id: UUID) -> FiscalPeriod:
        """
        Row-lock the period and verify it accepts postings.

        Held until the caller's transaction ends, so the open-check and the
        ledger append are one unit of work.

        Raises:
            PeriodNotFoundError, PeriodNotOpenError.
        """
        period = self._get_for_update(period_id)
        if period.status != PeriodStatus.OPEN:
            logger.warning(
                "posting_rejected_period_not_open",
                extra={"period_code": period.period_code, "status": period.status.value},
            )
            raise PeriodNotOpenError(period.period_code, period.status.value)
        return period

    def lock_for_close(self, period_id: UUID) -> PeriodInfo:
        """
        Row-lock an OPEN period ahead of a close.

        Draft creation takes a shared lock on the same row, so no entry can
        appear in the period between the blocker check and the close.

        Raises:
            PeriodNotFoundError, PeriodNotOpenError.
        """
        period = self._get_for_update(period_id)
        if period.status != PeriodStatus.OPEN:
            raise PeriodNotOpenError(period.period_code, period.status.value)
        return PeriodInfo.from_model(period)

    def validate_entry_date(self, period_id: UUID, entry_date: date) -> FiscalPeriod:
        """
        Entry dates must fall inside their period.

        Takes a shared lock on the period row, which waits out a close in
        progress.

        Raises:
            PeriodNotFoundError, InvalidFieldError.
        """
        period = self._get_for_share(period_id)
        if not period.contains_date(entry_date):
            raise InvalidFieldError(
                "entry_date",
                f"{entry_date} is outside period {period.period_code} "
                f"({period.start_date} to {period.end_date})",
            )
        return period

    # =========================================================================
    # Queries
    # =========================================================================

    def get_period(self, period_id: UUID) -> PeriodInfo:
        return PeriodInfo.from_model(self._get(period_id))

    def get_period_by_code(self, period_code: str) -> PeriodInfo:
        period = self.session.execute(
            select(FiscalPeriod).where(FiscalPeriod.period_code == period_code)
        ).scalar_one_or_none()
        if period is None:
            raise PeriodNotFoundError(period_code)
        return PeriodInfo.from_model(period)

    def get_period_for_date(self, check_date: date) -> PeriodInfo:
        period = self._get_for_date(check_date)
        if period is None:
            raise PeriodNotFoundError(str(check_date))
        return PeriodInfo.from_model(period)

    def list_periods(
        self,
        status: PeriodStatus | str | None = None,
        fiscal_year: int | None = None,
    ) -> list[PeriodInfo]:
        """Periods in start-date order, optionally filtered."""
        query = select(FiscalPeriod).order_by(FiscalPeriod.start_date)
        if status is not None:
            query = query.where(FiscalPeriod.status == PeriodStatus(status))
        if fiscal_year is not None:
            query = query.where(FiscalPeriod.fiscal_year == fiscal_year)
        return [PeriodInfo.from_model(p) for p in self.session.scalars(query)]

    def get_current_period(self, as_of: date | None = None) -> PeriodInfo | None:
        """
        Period covering ``as_of`` (default: clock date).

        Falls back to the earliest OPEN period when no period covers the date.
        """
        as_of = as_of or self.clock.today()
        period = self._get_for_date(as_of)
        if period is None:
            period = self.session.execute(
                select(FiscalPeriod)
                .where(FiscalPeriod.status == PeriodStatus.OPEN)
                .order_by(FiscalPeriod.start_date)
            ).scalars().first()
        return PeriodInfo.from_model(period) if period else None

    def next_period(self, period_id: UUID) -> PeriodInfo | None:
        """The period that starts after this one ends, by start date."""
        period = self._get(period_id)
        nxt = self.session.execute(
            select(FiscalPeriod)
            .where(FiscalPeriod.start_date > period.end_date)
            .order_by(FiscalPeriod.start_date)
        ).scalars().first()
        return PeriodInfo.from_model(nxt) if nxt else None

    def previous_period(self, period_id: UUID) -> PeriodInfo | None:
        period = self._get(period_id)
        prev = self.session.execute(
            select(FiscalPeriod)
            .where(FiscalPeriod.end_date < period.start_date)
            .order_by(FiscalPeriod.start_date.desc())
        ).scalars().first()
        return PeriodInfo.from_model(prev) if prev else None

    def periods_from(self, period_id: UUID, count: int) -> list[PeriodInfo]:
        """``count`` consecutive periods in start-date order, starting at period_id."""
        start = self._get(period_id)
        periods = self.session.execute(
            select(FiscalPeriod)
            .where(FiscalPeriod.start_date >= start.start_date)
            .order_by(FiscalPeriod.start_date)
            .limit(count)
        ).scalars().all()
        return [PeriodInfo.from_model(p) for p in periods]

    # =========================================================================
    # Internal
    # =========================================================================

    def _get(self, period_id: UUID) -> FiscalPeriod:
        period = self.session.get(FiscalPeriod, period_id)
        if period is None:
            raise PeriodNotFoundError(str(period_id))
        return period

    def _get_for_update(self, period_id: UUID) -> FiscalPeriod:
        """Load the period row with a row lock for a state change."""
        period = self.session.execute(
            select(FiscalPeriod)
            .where(FiscalPeriod.id == period_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if period is None:
            raise PeriodNotFoundError(str(period_id))
        return period

    def _get_for_share(self, period_id: UUID) -> FiscalPeriod:
        period = self.session.execute(
            select(FiscalPeriod)
            .where(FiscalPeriod.id == period_id)
            .with_for_update(read=True)
        ).scalar_one_or_none()
        if period is None:
            raise PeriodNotFoundError(str(period_id))
        return period

    def _get_for_date(self, check_date: date) -> FiscalPeriod | None:
        return self.session.execute(
            select(FiscalPeriod).where(
                FiscalPeriod.start_date <= check_date,
                FiscalPeriod.end_date >= check_date,
            )
        ).scalar_one_or_none()
