"""
JournalService -- journal entry lifecycle up to approval.

Responsibility:
    Creates draft entries, edits their lines, and drives the workflow
    DRAFT -> SUBMITTED -> APPROVED / REJECTED, plus cancellation.  Posting
    and voiding live in PostingService because they touch the ledger.

Architecture position:
    Kernel > Services -- imperative shell.
    Depends on AccountService (postability) and PeriodService (entry date).

Invariants enforced:
    - At least two lines per entry, each on a postable, non-archived account.
    - entry_date falls inside the entry's period.
    - Lines change only while the entry is DRAFT (EntryNotEditableError).
    - submit requires sum(debit) == sum(credit) in minor units.
    - approve / reject only from SUBMITTED.
    - Rejection never reopens the rejected record: a new DRAFT carrying the
      same lines is created with derived_from_id pointing at it.
    - Every transition honours the caller's expected_version and the ORM
      version counter.

Failure modes:
    - InvalidEntryError, AccountNotPostableError, InvalidFieldError.
    - EntryNotEditableError, UnbalancedEntryError, InvalidTransitionError.
    - OptimisticLockError: expected_version mismatch or stale flush.
"""

from dataclasses import dataclass
from datetime import date
from typing import Sequence
from uuid import UUID

from sqlalchemy.orm.exc import StaleDataError

from ledger_kernel.domain.amounts import format_minor
from ledger_kernel.domain.dtos import JournalEntryInfo, LineInput
from ledger_kernel.exceptions import (
    EntryNotEditableError,
    InvalidEntryError,
    InvalidFieldError,
    InvalidTransitionError,
    JournalEntryNotFoundError,
    OptimisticLockError,
    UnbalancedEntryError,
)
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.journal import (
    EntrySource,
    JournalEntry,
    JournalEntryStatus,
    JournalEntryType,
    JournalLine,
)
from ledger_kernel.services.account_service import AccountService
from ledger_kernel.services.base import BaseService
from ledger_kernel.services.period_service import PeriodService

logger = get_logger("services.journal")

MIN_LINES = 2
REASON_MAX_LENGTH = 300

_CANCELLABLE = frozenset({
    JournalEntryStatus.DRAFT,
    JournalEntryStatus.SUBMITTED,
    JournalEntryStatus.APPROVED,
})


@dataclass(frozen=True)
class RejectResult:
    """The rejected entry and the fresh draft cloned from it."""

    rejected: JournalEntryInfo
    draft: JournalEntryInfo


class JournalService(BaseService):
    """
    Journal entry workflow service.

    Contract:
        Returns ``JournalEntryInfo`` DTOs.  ``_load`` is also used by
        PostingService so both share one definition of "not found" and
        "stale version".

    Non-goals:
        - Does NOT touch LedgerPosting or cached balances.
    """

    def __init__(self, session, clock=None, reason_max_length: int = REASON_MAX_LENGTH):
        super().__init__(session, clock)
        self._accounts = AccountService(session, self.clock)
        self._periods = PeriodService(session, self.clock)
        self._reason_max_length = min(reason_max_length, REASON_MAX_LENGTH)

    # =========================================================================
    # Creation
    # =========================================================================

    def create(
        self,
        period_id: UUID,
        entry_date: date,
        lines: Sequence[LineInput],
        actor_id: UUID,
        memo: str | None = None,
        entry_type: JournalEntryType | str = JournalEntryType.GENERAL,
        source: EntrySource | str = EntrySource.MANUAL,
        source_ref: str | None = None,
        derived_from_id: UUID | None = None,
        reversal_of_id: UUID | None = None,
    ) -> JournalEntryInfo:
        """
        Create a DRAFT entry.  Imbalance is tolerated until submit.

        Raises:
            InvalidEntryError: fewer than two lines.
            PeriodNotFoundError, InvalidFieldError: bad period or date.
            AccountNotFoundError, AccountNotPostableError: bad line account.
        """
        self._check_line_count(lines)
        self._periods.validate_entry_date(period_id, entry_date)
        try:
            entry_type = JournalEntryType(entry_type)
            source = EntrySource(source)
        except ValueError as e:
            raise InvalidFieldError("entry_type", str(e)) from None

        entry = JournalEntry(
            period_id=period_id,
            entry_date=entry_date,
            entry_type=entry_type,
            memo=memo,
            status=JournalEntryStatus.DRAFT,
            source=source,
            source_ref=source_ref,
            derived_from_id=derived_from_id,
            reversal_of_id=reversal_of_id,
            created_by_id=actor_id,
        )
        entry.lines = self._build_lines(lines, actor_id)
        self.session.add(entry)
        self.session.flush()

        logger.info(
            "journal_entry_created",
            extra={
                "entry_id": str(entry.id),
                "period_id": str(period_id),
                "line_count": len(entry.lines),
                "source": source.value,
            },
        )
        return JournalEntryInfo.from_model(entry)

    # =========================================================================
    # Draft editing
    # =========================================================================

    def update_header(
        self,
        entry_id: UUID,
        actor_id: UUID,
        *,
        entry_date: date | None = None,
        memo: str | None = None,
        entry_type: JournalEntryType | str | None = None,
        expected_version: int | None = None,
    ) -> JournalEntryInfo:
        entry = self._load_draft(entry_id, expected_version)
        if entry_date is not None:
            self._periods.validate_entry_date(entry.period_id, entry_date)
            entry.entry_date = entry_date
        if memo is not None:
            entry.memo = memo
        if entry_type is not None:
            try:
                entry.entry_type = JournalEntryType(entry_type)
            except ValueError as e:
                raise InvalidFieldError("entry_type", str(e)) from None
        self._touch(entry, actor_id)
        self._flush(entry)
        logger.info("journal_entry_header_updated", extra={"entry_id": str(entry.id)})
        return JournalEntryInfo.from_model(entry)

    def replace_lines(
        self,
        entry_id: UUID,
        lines: Sequence[LineInput],
        actor_id: UUID,
        expected_version: int | None = None,
    ) -> JournalEntryInfo:
        """Swap the full line set of a draft."""
        entry = self._load_draft(entry_id, expected_version)
        self._check_line_count(lines)
        entry.lines = self._build_lines(lines, actor_id)
        return self._lines_changed(entry, actor_id, "replaced")

    def add_line(
        self,
        entry_id: UUID,
        line: LineInput,
        actor_id: UUID,
        expected_version: int | None = None,
    ) -> JournalEntryInfo:
        entry = self._load_draft(entry_id, expected_version)
        self._accounts.require_postable(line.account_id)
        entry.lines.append(
            self._line_from_input(line, len(entry.lines) + 1, actor_id)
        )
        return self._lines_changed(entry, actor_id, "added")

    def update_line(
        self,
        entry_id: UUID,
        line_no: int,
        line: LineInput,
        actor_id: UUID,
        expected_version: int | None = None,
    ) -> JournalEntryInfo:
        entry = self._load_draft(entry_id, expected_version)
        target = self._find_line(entry, line_no)
        self._accounts.require_postable(line.account_id)
        target.account_id = line.account_id
        target.side = line.side
        target.amount_minor = line.amount_minor
        target.description = line.description
        target.updated_by_id = actor_id
        return self._lines_changed(entry, actor_id, "updated")

    def delete_line(
        self,
        entry_id: UUID,
        line_no: int,
        actor_id: UUID,
        expected_version: int | None = None,
    ) -> JournalEntryInfo:
        """Remove a line.  Remaining lines are renumbered from 1."""
        entry = self._load_draft(entry_id, expected_version)
        target = self._find_line(entry, line_no)
        if len(entry.lines) <= MIN_LINES:
            raise InvalidEntryError(
                f"an entry needs at least {MIN_LINES} lines", str(entry.id)
            )
        entry.lines.remove(target)
        for number, remaining in enumerate(entry.lines, start=1):
            if remaining.line_no != number:
                remaining.line_no = number
        return self._lines_changed(entry, actor_id, "deleted")

    # =========================================================================
    # Workflow
    # =========================================================================

    def submit(
        self,
        entry_id: UUID,
        actor_id: UUID,
        expected_version: int | None = None,
    ) -> JournalEntryInfo:
        """
        DRAFT -> SUBMITTED.  Freezes the lines.

        Raises:
            UnbalancedEntryError: debits != credits in minor units.
        """
        entry = self._load(entry_id, expected_version)
        self._require_status(entry, JournalEntryStatus.DRAFT, JournalEntryStatus.SUBMITTED)
        self._check_line_count(entry.lines, entry.id)
        if not entry.is_balanced:
            logger.warning(
                "journal_entry_unbalanced",
                extra={
                    "entry_id": str(entry.id),
                    "debits": format_minor(entry.total_debit_minor),
                    "credits": format_minor(entry.total_credit_minor),
                },
            )
            raise UnbalancedEntryError(
                format_minor(entry.total_debit_minor),
                format_minor(entry.total_credit_minor),
                str(entry.id),
            )

        entry.status = JournalEntryStatus.SUBMITTED
        entry.submitted_at = self.clock.now()
        entry.submitted_by_id = actor_id
        entry.updated_by_id = actor_id
        self._flush(entry)
        logger.info("journal_entry_submitted", extra={"entry_id": str(entry.id)})
        return JournalEntryInfo.from_model(entry)

    def approve(
        self,
        entry_id: UUID,
        actor_id: UUID,
        expected_version: int | None = None,
    ) -> JournalEntryInfo:
        """SUBMITTED -> APPROVED."""
        entry = self._load(entry_id, expected_version)
        self._require_status(entry, JournalEntryStatus.SUBMITTED, JournalEntryStatus.APPROVED)

        entry.status = JournalEntryStatus.APPROVED
        entry.approved_at = self.clock.now()
        entry.approved_by_id = actor_id
        entry.updated_by_id = actor_id
        self._flush(entry)
        logger.info("journal_entry_approved", extra={"entry_id": str(entry.id)})
        return JournalEntryInfo.from_model(entry)

    def reject(
        self,
        entry_id: UUID,
        reason: str,
        actor_id: UUID,
        expected_version: int | None = None,
    ) -> RejectResult:
        """
        SUBMITTED -> REJECTED, and clone the lines into a new DRAFT.

        The rejected record stays as it was for the audit trail.

        Raises:
            InvalidFieldError: empty or over-long reason.
        """
        reason = self._validate_reason(reason)
        entry = self._load(entry_id, expected_version)
        self._require_status(entry, JournalEntryStatus.SUBMITTED, JournalEntryStatus.REJECTED)

        entry.status = JournalEntryStatus.REJECTED
        entry.rejected_at = self.clock.now()
        entry.rejected_by_id = actor_id
        entry.rejection_reason = reason
        entry.updated_by_id = actor_id
        self._flush(entry)

        rejected = JournalEntryInfo.from_model(entry)
        clone = JournalEntry(
            period_id=entry.period_id,
            entry_date=entry.entry_date,
            entry_type=entry.entry_type,
            memo=entry.memo,
            status=JournalEntryStatus.DRAFT,
            source=entry.source,
            source_ref=entry.source_ref,
            derived_from_id=entry.id,
            created_by_id=actor_id,
        )
        # Raw copy: a line whose account was archived since still belongs
        # to the draft so the author can see and fix it.
        clone.lines = [
            JournalLine(
                line_no=line.line_no,
                account_id=line.account_id,
                side=line.side,
                amount_minor=line.amount_minor,
                description=line.description,
                created_by_id=actor_id,
            )
            for line in entry.lines
        ]
        self.session.add(clone)
        self.session.flush()

        logger.info(
            "journal_entry_rejected",
            extra={"entry_id": str(entry.id), "draft_id": str(clone.id)},
        )
        return RejectResult(rejected=rejected, draft=JournalEntryInfo.from_model(clone))

    def cancel(
        self,
        entry_id: UUID,
        reason: str,
        actor_id: UUID,
        expected_version: int | None = None,
    ) -> JournalEntryInfo:
        """DRAFT / SUBMITTED / APPROVED -> CANCELLED.  Terminal."""
        reason = self._validate_reason(reason)
        entry = self._load(entry_id, expected_version)
        if entry.status not in _CANCELLABLE:
            raise InvalidTransitionError(
                "JournalEntry", str(entry.id),
                entry.status.value, JournalEntryStatus.CANCELLED.value,
            )

        entry.status = JournalEntryStatus.CANCELLED
        entry.cancelled_at = self.clock.now()
        entry.cancelled_by_id = actor_id
        entry.cancel_reason = reason
        entry.updated_by_id = actor_id
        self._flush(entry)
        logger.info("journal_entry_cancelled", extra={"entry_id": str(entry.id)})
        return JournalEntryInfo.from_model(entry)

    def submit_and_approve(self, entry_id: UUID, actor_id: UUID) -> JournalEntryInfo:
        """System-generated entries (void reversals, roll-forward, corrections)."""
        self.submit(entry_id, actor_id)
        return self.approve(entry_id, actor_id)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_entry(self, entry_id: UUID) -> JournalEntryInfo:
        return JournalEntryInfo.from_model(self._load(entry_id))

    # =========================================================================
    # Internal
    # =========================================================================

    def _load(self, entry_id: UUID, expected_version: int | None = None) -> JournalEntry:
        entry = self.session.get(JournalEntry, entry_id)
        if entry is None:
            raise JournalEntryNotFoundError(str(entry_id))
        if expected_version is not None and entry.version != expected_version:
            raise OptimisticLockError(
                "JournalEntry", str(entry.id), expected_version, entry.version
            )
        return entry

    def _load_draft(self, entry_id: UUID, expected_version: int | None) -> JournalEntry:
        entry = self._load(entry_id, expected_version)
        if entry.status != JournalEntryStatus.DRAFT:
            raise EntryNotEditableError(str(entry.id), entry.status.value)
        return entry

    def _flush(self, entry: JournalEntry) -> None:
        """Flush, translating a version-counter miss into OptimisticLockError."""
        try:
            self.session.flush()
        except StaleDataError:
            logger.warning(
                "journal_entry_version_conflict", extra={"entry_id": str(entry.id)}
            )
            raise OptimisticLockError("JournalEntry", str(entry.id)) from None

    def _require_status(
        self,
        entry: JournalEntry,
        required: JournalEntryStatus,
        target: JournalEntryStatus,
    ) -> None:
        if entry.status != required:
            raise InvalidTransitionError(
                "JournalEntry", str(entry.id), entry.status.value, target.value
            )

    def _check_line_count(self, lines: Sequence, entry_id: UUID | None = None) -> None:
        if len(lines) < MIN_LINES:
            raise InvalidEntryError(
                f"an entry needs at least {MIN_LINES} lines, got {len(lines)}",
                str(entry_id) if entry_id else None,
            )

    def _build_lines(self, lines: Sequence[LineInput], actor_id: UUID) -> list[JournalLine]:
        built = []
        for number, line in enumerate(lines, start=1):
            self._accounts.require_postable(line.account_id)
            built.append(self._line_from_input(line, number, actor_id))
        return built

    @staticmethod
    def _line_from_input(line: LineInput, line_no: int, actor_id: UUID) -> JournalLine:
        return JournalLine(
            line_no=line_no,
            account_id=line.account_id,
            side=line.side,
            amount_minor=line.amount_minor,
            description=line.description,
            created_by_id=actor_id,
        )

    @staticmethod
    def _find_line(entry: JournalEntry, line_no: int) -> JournalLine:
        for line in entry.lines:
            if line.line_no == line_no:
                return line
        raise InvalidFieldError("line_no", f"entry {entry.id} has no line {line_no}")

    def _touch(self, entry: JournalEntry, actor_id: UUID) -> None:
        # Line edits do not change the entry row; stamping it bumps version.
        entry.updated_at = self.clock.now()
        entry.updated_by_id = actor_id

    def _lines_changed(self, entry: JournalEntry, actor_id: UUID, action: str) -> JournalEntryInfo:
        self._touch(entry, actor_id)
        self._flush(entry)
        logger.info(
            "journal_lines_changed",
            extra={
                "entry_id": str(entry.id),
                "action": action,
                "line_count": len(entry.lines),
            },
        )
        return JournalEntryInfo.from_model(entry)

    def _validate_reason(self, reason: str | None) -> str:
        reason = (reason or "").strip()
        if not reason:
            raise InvalidFieldError("reason", "must not be empty")
        if len(reason) > self._reason_max_length:
            raise InvalidFieldError(
                "reason", f"must be at most {self._reason_max_length} characters"
            )
        return reason

