"""
Typed Exception Hierarchy for the Ledger Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the ledger must decide, per failure, whether to edit their input,
refresh and retry, or escalate.  That decision must never depend on parsing
a message string.  Every exception therefore carries:

  1. A TYPED class (catch by type, not message)
  2. A CODE class attribute (machine-readable, API-safe)
  3. A CATEGORY class attribute (what the caller should do next)
  4. Structured DATA as instance attributes (not just a message)

Example:
    try:
        posting_service.post(entry_id, actor_id)
    except PeriodNotOpenError as e:
        api_error(code=e.code, period=e.period_code)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    LedgerError (base)
    |
    +-- ValidationError                  category = "validation"
    |   +-- UnbalancedEntryError
    |   +-- InvalidTransitionError
    |   +-- InvalidEntryError
    |   +-- InvalidFieldError
    |   +-- InvalidAmountError
    |   +-- PeriodOverlapError
    |   +-- AccountHierarchyError
    |   +-- DuplicateCodeError
    |   +-- FormulaError
    |
    +-- StateConflictError               category = "conflict"
    |   +-- PeriodNotOpenError
    |   +-- PeriodLockedError
    |   +-- PeriodHasBlockingEntriesError
    |   +-- PeriodHasPostingsError
    |   +-- EntryNotEditableError
    |   +-- OptimisticLockError
    |   +-- IdempotencyConflictError
    |
    +-- IntegrityViolationError          category = "integrity"
    |   +-- AccountNotPostableError
    |   +-- DeferralScheduleError
    |   +-- ImmutabilityViolationError
    |
    +-- NotFoundError                    category = "not_found"
        +-- AccountNotFoundError
        +-- PeriodNotFoundError
        +-- JournalEntryNotFoundError
        +-- AccrualRuleNotFoundError
        +-- AccrualRunNotFoundError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category    | Code                          | When Raised
------------|-------------------------------|---------------------------------------
validation  | UNBALANCED_ENTRY              | Debits != credits in minor units
            | INVALID_TRANSITION            | Status change not allowed from current
            | INVALID_ENTRY                 | Structural problem (line count, date)
            | INVALID_FIELD                 | Missing or malformed field
            | INVALID_AMOUNT                | Negative or sub-minor-unit amount
            | PERIOD_OVERLAP                | Date range conflicts with another period
            | ACCOUNT_HIERARCHY_INVALID     | Cycle or invalid parent
            | DUPLICATE_CODE                | Code already used
            | FORMULA_ERROR                 | Derived accrual formula rejected
------------|-------------------------------|---------------------------------------
conflict    | PERIOD_NOT_OPEN               | Posting or closing a non-open period
            | PERIOD_LOCKED                 | Reopening a locked period
            | PERIOD_HAS_BLOCKING_ENTRIES   | Close refused, blockers present
            | PERIOD_HAS_POSTINGS           | Deleting a period with postings
            | ENTRY_NOT_EDITABLE            | Editing a non-draft entry
            | OPTIMISTIC_LOCK_CONFLICT      | Entry changed since caller read it
            | IDEMPOTENCY_CONFLICT          | Key reused with a different request
------------|-------------------------------|---------------------------------------
integrity   | ACCOUNT_NOT_POSTABLE          | Header or archived account referenced
            | DEFERRAL_SCHEDULE_INVALID     | Allocation does not partition total
            | IMMUTABILITY_VIOLATION        | Modifying an append-only record
------------|-------------------------------|---------------------------------------
not_found   | *_NOT_FOUND                   | Referenced entity does not exist

===============================================================================
DESIGN DECISIONS
===============================================================================

1. category is a class attribute so the API envelope can classify any
   LedgerError without a lookup table.
2. Nothing in the kernel coerces bad input.  Amounts with sub-minor-unit
   precision raise InvalidAmountError rather than being rounded.
"""


class LedgerError(Exception):
    """
    Base exception for all ledger errors.

    All subclasses define a `code` and inherit a `category`.
    """

    code: str = "LEDGER_ERROR"
    category: str = "internal"

    def details(self) -> dict:
        """Structured attributes for serialization."""
        return {
            k: v for k, v in vars(self).items()
            if not k.startswith("_") and k != "args"
        }


# ---------------------------------------------------------------------------
# Validation (client-correctable)
# ---------------------------------------------------------------------------


class ValidationError(LedgerError):
    """Base for client-correctable input errors."""

    code: str = "VALIDATION_ERROR"
    category: str = "validation"


class UnbalancedEntryError(ValidationError):
    """Journal entry debits do not equal credits."""

    code: str = "UNBALANCED_ENTRY"

    def __init__(self, debits: str, credits: str, entry_id: str | None = None):
        self.debits = debits
        self.credits = credits
        self.entry_id = entry_id
        super().__init__(
            f"Unbalanced entry: debits={debits}, credits={credits}"
        )


class InvalidTransitionError(ValidationError):
    """Status transition not allowed from the current state."""

    code: str = "INVALID_TRANSITION"

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        from_status: str,
        to_status: str,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"{entity_type} {entity_id} cannot transition "
            f"from {from_status} to {to_status}"
        )


class InvalidEntryError(ValidationError):
    """Journal entry is structurally invalid."""

    code: str = "INVALID_ENTRY"

    def __init__(self, reason: str, entry_id: str | None = None):
        self.reason = reason
        self.entry_id = entry_id
        super().__init__(reason)


class InvalidFieldError(ValidationError):
    """A required field is missing or malformed."""

    code: str = "INVALID_FIELD"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


class InvalidAmountError(ValidationError):
    """Amount is negative or not representable in minor units."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, amount: str, reason: str):
        self.amount = amount
        self.reason = reason
        super().__init__(f"Invalid amount {amount}: {reason}")


class PeriodOverlapError(ValidationError):
    """New period's date range overlaps an existing period."""

    code: str = "PERIOD_OVERLAP"

    def __init__(
        self,
        new_period_code: str,
        existing_period_code: str,
        overlap_start: str,
        overlap_end: str,
    ):
        self.new_period_code = new_period_code
        self.existing_period_code = existing_period_code
        self.overlap_start = overlap_start
        self.overlap_end = overlap_end
        super().__init__(
            f"Period {new_period_code} overlaps with {existing_period_code} "
            f"({overlap_start} to {overlap_end})"
        )


class AccountHierarchyError(ValidationError):
    """Reparenting would create a cycle or attach to an invalid parent."""

    code: str = "ACCOUNT_HIERARCHY_INVALID"

    def __init__(self, account_id: str, parent_id: str, reason: str):
        self.account_id = account_id
        self.parent_id = parent_id
        self.reason = reason
        super().__init__(
            f"Account {account_id} cannot be placed under {parent_id}: {reason}"
        )


class DuplicateCodeError(ValidationError):
    """A unique business code is already in use."""

    code: str = "DUPLICATE_CODE"

    def __init__(self, entity_type: str, entity_code: str):
        self.entity_type = entity_type
        self.entity_code = entity_code
        super().__init__(f"{entity_type} code {entity_code} already exists")


class FormulaError(ValidationError):
    """Derived accrual formula failed validation or evaluation."""

    code: str = "FORMULA_ERROR"

    def __init__(self, formula: str, reason: str):
        self.formula = formula
        self.reason = reason
        super().__init__(f"Formula {formula!r}: {reason}")


# ---------------------------------------------------------------------------
# State conflicts (retry after refresh)
# ---------------------------------------------------------------------------


class StateConflictError(LedgerError):
    """Base for errors that depend on current persisted state."""

    code: str = "STATE_CONFLICT"
    category: str = "conflict"


class PeriodNotOpenError(StateConflictError):
    """Operation requires an open period."""

    code: str = "PERIOD_NOT_OPEN"

    def __init__(self, period_code: str, status: str):
        self.period_code = period_code
        self.status = status
        super().__init__(f"Period {period_code} is {status}, not open")


class PeriodLockedError(StateConflictError):
    """Locked periods must be unlocked before reopening."""

    code: str = "PERIOD_LOCKED"

    def __init__(self, period_code: str):
        self.period_code = period_code
        super().__init__(
            f"Period {period_code} is locked; unlock it before reopening"
        )


class PeriodHasBlockingEntriesError(StateConflictError):
    """Close refused because the preview reports blockers."""

    code: str = "PERIOD_HAS_BLOCKING_ENTRIES"

    def __init__(self, period_code: str, blockers: list[dict]):
        self.period_code = period_code
        self.blockers = blockers
        super().__init__(
            f"Period {period_code} has {len(blockers)} blocking condition(s)"
        )


class PeriodHasPostingsError(StateConflictError):
    """Periods with ledger postings cannot be deleted."""

    code: str = "PERIOD_HAS_POSTINGS"

    def __init__(self, period_code: str, posting_count: int):
        self.period_code = period_code
        self.posting_count = posting_count
        super().__init__(
            f"Period {period_code} has {posting_count} posting(s) and "
            "cannot be deleted"
        )


class EntryNotEditableError(StateConflictError):
    """Journal entry is not in draft status."""

    code: str = "ENTRY_NOT_EDITABLE"

    def __init__(self, entry_id: str, status: str):
        self.entry_id = entry_id
        self.status = status
        super().__init__(
            f"Journal entry {entry_id} is {status}; only drafts may be edited"
        )


class OptimisticLockError(StateConflictError):
    """Entity was modified since the caller last read it."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


class IdempotencyConflictError(StateConflictError):
    """Idempotency key reused with a different request."""

    code: str = "IDEMPOTENCY_CONFLICT"

    def __init__(self, idempotency_key: str, operation: str):
        self.idempotency_key = idempotency_key
        self.operation = operation
        super().__init__(
            f"Idempotency key {idempotency_key} was already used for a "
            f"different {operation} request"
        )


# ---------------------------------------------------------------------------
# Integrity violations (rejected outright)
# ---------------------------------------------------------------------------


class IntegrityViolationError(LedgerError):
    """Base for data-integrity violations that are never coerced."""

    code: str = "INTEGRITY_VIOLATION"
    category: str = "integrity"


class AccountNotPostableError(IntegrityViolationError):
    """Account is a header account or archived."""

    code: str = "ACCOUNT_NOT_POSTABLE"

    def __init__(self, account_code: str, reason: str):
        self.account_code = account_code
        self.reason = reason
        super().__init__(f"Account {account_code} is not postable: {reason}")


class DeferralScheduleError(IntegrityViolationError):
    """Deferral schedule cannot partition its total."""

    code: str = "DEFERRAL_SCHEDULE_INVALID"

    def __init__(self, rule_code: str, reason: str):
        self.rule_code = rule_code
        self.reason = reason
        super().__init__(f"Deferral schedule for {rule_code}: {reason}")


class ImmutabilityViolationError(IntegrityViolationError):
    """Attempted modification of an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify {entity_type} {entity_id}: {reason}"
        )


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------


class NotFoundError(LedgerError):
    """Base for missing entities."""

    code: str = "NOT_FOUND"
    category: str = "not_found"
    entity_type: str = "Entity"

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"{self.entity_type} {identifier} not found")


class AccountNotFoundError(NotFoundError):
    code: str = "ACCOUNT_NOT_FOUND"
    entity_type = "Account"


class PeriodNotFoundError(NotFoundError):
    code: str = "PERIOD_NOT_FOUND"
    entity_type = "Fiscal period"


class JournalEntryNotFoundError(NotFoundError):
    code: str = "JOURNAL_ENTRY_NOT_FOUND"
    entity_type = "Journal entry"


class AccrualRuleNotFoundError(NotFoundError):
    code: str = "ACCRUAL_RULE_NOT_FOUND"
    entity_type = "Accrual rule"


class AccrualRunNotFoundError(NotFoundError):
    code: str = "ACCRUAL_RUN_NOT_FOUND"
    entity_type = "Accrual run"
