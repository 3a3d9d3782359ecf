"""
ORM-Level Immutability Enforcement.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity          | When Immutable                     | Allowed changes
----------------|------------------------------------|-------------------------------
LedgerPosting   | ALWAYS (from creation)             | none
JournalLine     | When parent entry is not DRAFT     | none
JournalEntry    | After status = POSTED              | POSTED -> VOIDED plus void
                |                                    | bookkeeping fields
Account         | account_type once postings exist   | everything else

SQLAlchemy fires before_update / before_delete before SQL reaches the
database.  If a check fails, ImmutabilityViolationError aborts the flush.

updated_at / updated_by_id are audit metadata and may always change.

Usage:

    from ledger_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # idempotent, called at startup
"""

from sqlalchemy import event, func, inspect, select

from ledger_kernel.exceptions import ImmutabilityViolationError
from ledger_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_AUDIT_FIELDS = frozenset({"updated_at", "updated_by_id"})

# Fields a posted entry may still change while being voided.
_VOID_FIELDS = frozenset(
    {"status", "void_reason", "voided_at", "voided_by_id", "version"}
)


def _blocked(entity_type: str, entity_id, operation: str, reason: str):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "operation": operation,
        },
    )
    return ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(entity_id),
        reason=reason,
    )


def _check_posting_update(mapper, connection, target):
    raise _blocked(
        "LedgerPosting", target.id, "UPDATE",
        "Ledger postings are append-only",
    )


def _check_posting_delete(mapper, connection, target):
    raise _blocked(
        "LedgerPosting", target.id, "DELETE",
        "Ledger postings are append-only",
    )


def _check_journal_entry_update(mapper, connection, target):
    """
    Once an entry has been posted, only the void transition may touch it.

    Attribute history tells us whether the row was already posted before
    this flush: posting itself (APPROVED -> POSTED) must be allowed.
    """
    from ledger_kernel.models.journal import JournalEntryStatus

    insp = inspect(target)
    status_hist = insp.attrs.status.history
    if status_hist.deleted:
        old_status = status_hist.deleted[0]
    else:
        old_status = target.status

    if old_status not in (JournalEntryStatus.POSTED, JournalEntryStatus.VOIDED):
        return

    allowed = _AUDIT_FIELDS
    if (
        old_status == JournalEntryStatus.POSTED
        and target.status == JournalEntryStatus.VOIDED
    ):
        allowed = allowed | _VOID_FIELDS

    for attr in insp.attrs:
        if attr.key in allowed:
            continue
        if attr.history.has_changes() and attr.key != "lines":
            raise _blocked(
                "JournalEntry", target.id, "UPDATE",
                f"Field {attr.key} is frozen once the entry is {old_status.value}",
            )


def _check_journal_entry_delete(mapper, connection, target):
    from ledger_kernel.models.journal import JournalEntryStatus

    if target.status != JournalEntryStatus.DRAFT:
        raise _blocked(
            "JournalEntry", target.id, "DELETE",
            "Only draft journal entries can be deleted",
        )


def _line_is_frozen(target) -> bool:
    from ledger_kernel.models.journal import JournalEntryStatus

    return target.entry is not None and target.entry.status != JournalEntryStatus.DRAFT


def _check_journal_line_update(mapper, connection, target):
    if _line_is_frozen(target):
        raise _blocked(
            "JournalLine", target.id, "UPDATE",
            "Journal lines are frozen once the entry leaves draft",
        )


def _check_journal_line_delete(mapper, connection, target):
    if _line_is_frozen(target):
        raise _blocked(
            "JournalLine", target.id, "DELETE",
            "Journal lines are frozen once the entry leaves draft",
        )


def _check_account_type_change(mapper, connection, target):
    from ledger_kernel.models.ledger import LedgerPosting

    hist = inspect(target).attrs.account_type.history
    if not hist.deleted:
        return
    count = connection.execute(
        select(func.count(LedgerPosting.id)).where(
            LedgerPosting.account_id == target.id
        )
    ).scalar_one()
    if count:
        raise _blocked(
            "Account", target.id, "UPDATE",
            "account_type cannot change once the account has postings",
        )


def _listeners():
    from ledger_kernel.models.account import Account
    from ledger_kernel.models.journal import JournalEntry, JournalLine
    from ledger_kernel.models.ledger import LedgerPosting

    return [
        (LedgerPosting, "before_update", _check_posting_update),
        (LedgerPosting, "before_delete", _check_posting_delete),
        (JournalEntry, "before_update", _check_journal_entry_update),
        (JournalEntry, "before_delete", _check_journal_entry_delete),
        (JournalLine, "before_update", _check_journal_line_update),
        (JournalLine, "before_delete", _check_journal_line_delete),
        (Account, "before_update", _check_account_type_change),
    ]


def register_immutability_listeners() -> None:
    """Register all immutability listeners. Safe to call more than once."""
    for target, name, fn in _listeners():
        if not event.contains(target, name, fn):
            event.listen(target, name, fn)
