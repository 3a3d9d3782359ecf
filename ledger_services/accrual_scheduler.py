"""
ledger_services.accrual_scheduler -- accrual rules and the runs that apply them.

Responsibility:
    Maintains accrual rules and synthesizes DRAFT journal entries from them
    in three kinds of run: due (scheduled frequencies), reversal (mirror of
    the prior period's posted reversing accruals) and period-end
    (PERIOD_END rules plus deferral allocations).

Architecture position:
    Services -- orchestration over the kernel.  Creates entries through
    JournalService, reads balances through LedgerSelector and asks
    PeriodService which periods exist and are open.

Invariants enforced:
    - Produced entries are DRAFT.  Nothing here submits, approves or posts.
    - One draft per idempotency key (rule, target period, kind, plus the
      occurrence date for daily/weekly rules or the originating entry for
      reversals).  Re-running returns the existing entry as EXISTING.
    - Rules are never modified by a run.  A rule's last-run date is derived
      from the run items that produced or found its entry.
    - Deferral allocations partition the total exactly (domain/deferral.py).
    - A failing rule is isolated in its own SAVEPOINT (or its own session in
      parallel mode) and recorded as a FAILED item.  The run is FAILED only
      when every processed item failed.

Failure modes:
    - Rule definition: DuplicateCodeError, InvalidFieldError,
      UnbalancedEntryError, FormulaError, DeferralScheduleError,
      AccountNotFoundError, AccountNotPostableError.
    - Run arguments: PeriodNotFoundError, InvalidFieldError.
    - Per-rule problems never raise; they become FAILED items.

Concurrency:
    With a ``session_factory`` and ``max_workers > 1`` rules are processed
    by a bounded ThreadPoolExecutor, each rule in its own short transaction.
    Workers only see committed rules.  The run record itself is written by
    the caller's session.
"""

from __future__ import annotations

import dataclasses
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextvars import copy_context
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Sequence
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ledger_kernel.db.engine import session_scope
from ledger_kernel.domain.amounts import from_minor, to_minor
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.deferral import allocate
from ledger_kernel.domain.dtos import (
    AccrualRuleInfo,
    AccrualRunInfo,
    DeferralScheduleInput,
    LineInput,
    RuleLineInput,
)
from ledger_kernel.domain.formula import evaluate_formula, referenced_accounts, validate_formula
from ledger_kernel.domain.schedule import SCHEDULED_FREQUENCIES, is_due, occurrence_suffix
from ledger_kernel.exceptions import (
    AccrualRuleNotFoundError,
    AccrualRunNotFoundError,
    DeferralScheduleError,
    DuplicateCodeError,
    FormulaError,
    InvalidAmountError,
    InvalidFieldError,
    LedgerError,
    PeriodNotOpenError,
    UnbalancedEntryError,
)
from ledger_kernel.logging_config import LogContext, get_logger
from ledger_kernel.models.accrual import (
    AccrualEntryKey,
    AccrualFrequency,
    AccrualRule,
    AccrualRuleLine,
    AccrualRuleStatus,
    AccrualRuleType,
    AccrualRun,
    AccrualRunItem,
    AccrualRunKind,
    AccrualRunStatus,
    RunItemOutcome,
)
from ledger_kernel.models.journal import EntrySource, JournalEntry, JournalEntryStatus, LineSide
from ledger_kernel.selectors.ledger_selector import LedgerSelector
from ledger_kernel.services.account_service import AccountService
from ledger_kernel.services.journal_service import JournalService
from ledger_kernel.services.period_service import PeriodService
from ledger_kernel.utils.idempotency import accrual_entry_key

logger = get_logger("services.accrual")

DEFAULT_MAX_WORKERS = 4

# Item error code for a database failure inside a worker session
DATABASE_ERROR_CODE = "DATABASE_ERROR"

_COUNTED_AS_RUN = (RunItemOutcome.CREATED, RunItemOutcome.EXISTING)


@dataclass(frozen=True)
class _Occurrence:
    """One unit of work: a rule applied to a target period on a date."""

    rule_id: UUID
    rule_code: str
    kind: AccrualRunKind
    period_id: UUID
    entry_date: date
    idempotency_key: str
    originating_entry_id: UUID | None = None


@dataclass(frozen=True)
class _Outcome:
    rule_id: UUID
    rule_code: str
    outcome: RunItemOutcome
    occurrence_date: date | None
    journal_entry_id: UUID | None = None
    idempotency_key: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class _Skip(Exception):
    """Nothing to synthesize for this occurrence (e.g. all amounts zero)."""


# ---------------------------------------------------------------------------
# Synthesis (one occurrence, one session)
# ---------------------------------------------------------------------------


class _OccurrenceSynthesizer:
    """
    Turns one occurrence into a draft entry inside the given session.

    Raises LedgerError subclasses for rule failures and ``_Skip`` when
    there is nothing to book.
    """

    def __init__(self, session: Session, clock: Clock, actor_id: UUID):
        self._session = session
        self._actor_id = actor_id
        self._journal = JournalService(session, clock)
        self._periods = PeriodService(session, clock)
        self._accounts = AccountService(session, clock)
        self._ledger = LedgerSelector(session)

    def apply(self, occ: _Occurrence) -> tuple[RunItemOutcome, UUID | None]:
        existing = self._existing_entry(occ.idempotency_key)
        if existing is not None:
            return RunItemOutcome.EXISTING, existing

        rule = self._session.get(AccrualRule, occ.rule_id)
        period = self._periods.get_period(occ.period_id)
        if not period.is_open:
            raise PeriodNotOpenError(period.period_code, period.status.value)

        if occ.originating_entry_id is not None:
            lines = self._mirror_lines(occ.originating_entry_id)
        elif rule.rule_type == AccrualRuleType.DEFERRAL:
            lines = self._deferral_lines(rule, occ.period_id)
        elif rule.rule_type == AccrualRuleType.DERIVED:
            lines = self._derived_lines(rule, occ.period_id)
        else:
            lines = [
                LineInput(line.account_id, line.side, from_minor(line.amount_minor), line.description)
                for line in rule.lines
            ]

        if all(line.amount_minor == 0 for line in lines):
            raise _Skip("all synthesized amounts are zero")
        debits = sum(l.amount_minor for l in lines if l.side == LineSide.DEBIT)
        credits = sum(l.amount_minor for l in lines if l.side == LineSide.CREDIT)
        if debits != credits:
            raise UnbalancedEntryError(str(from_minor(debits)), str(from_minor(credits)))

        entry = self._journal.create(
            period_id=occ.period_id,
            entry_date=occ.entry_date,
            lines=lines,
            actor_id=self._actor_id,
            memo=rule.memo or rule.name,
            source=EntrySource.ACCRUAL,
            source_ref=rule.code,
            reversal_of_id=occ.originating_entry_id,
        )
        self._session.add(AccrualEntryKey(
            idempotency_key=occ.idempotency_key,
            rule_id=rule.id,
            period_id=occ.period_id,
            kind=occ.kind,
            journal_entry_id=entry.id,
            created_by_id=self._actor_id,
        ))
        self._session.flush()
        return RunItemOutcome.CREATED, entry.id

    def _existing_entry(self, key: str) -> UUID | None:
        return self._session.execute(
            select(AccrualEntryKey.journal_entry_id).where(
                AccrualEntryKey.idempotency_key == key
            )
        ).scalar_one_or_none()

    def _mirror_lines(self, entry_id: UUID) -> list[LineInput]:
        original = self._journal.get_entry(entry_id)
        return [
            LineInput(line.account_id, line.side.opposite(), line.amount, line.description)
            for line in original.lines
        ]

    def _deferral_lines(self, rule: AccrualRule, period_id: UUID) -> list[LineInput]:
        periods = self._periods.periods_from(
            rule.deferral_start_period_id, rule.deferral_period_count
        )
        index = next(i for i, p in enumerate(periods) if p.id == period_id)
        amount = from_minor(
            allocate(rule.deferral_total_minor, rule.deferral_period_count, rule.code)[index]
        )
        return [
            LineInput(line.account_id, line.side, amount, line.description)
            for line in rule.lines
        ]

    def _derived_lines(self, rule: AccrualRule, period_id: UUID) -> list[LineInput]:
        balances = {
            row.account_code: row.balance
            for row in self._ledger.trial_balance(period_id)
        }

        def balance_of(code: str) -> Decimal:
            if code not in balances:
                # Raises AccountNotFoundError for an unknown code
                self._accounts.get_account_by_code(code)
                return Decimal("0.00")
            return balances[code]

        lines = []
        for line in rule.lines:
            value = evaluate_formula(line.formula, balance_of)
            if value < 0:
                raise FormulaError(line.formula, f"result {value} is negative")
            try:
                amount = from_minor(to_minor(value))
            except InvalidAmountError:
                raise FormulaError(
                    line.formula,
                    f"result {value} is finer than one minor unit; wrap it in round()",
                ) from None
            lines.append(LineInput(line.account_id, line.side, amount, line.description))
        return lines


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class AccrualScheduler:
    """
    Accrual rule registry and run executor.

    Contract:
        Receives the caller's session; rule CRUD and the run record are
        flushed into it.  Optional ``session_factory`` enables the bounded
        worker pool.

    Non-goals:
        - Does NOT approve or post what it creates.
        - Does NOT retry failed runs automatically.
        - Does NOT catch up missed intervals: one occurrence per rule per run.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        session_factory: sessionmaker[Session] | None = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ) -> None:
        self._session = session
        self._clock = clock or SystemClock()
        self._session_factory = session_factory
        self._max_workers = max(1, max_workers)
        self._accounts = AccountService(session, self._clock)
        self._periods = PeriodService(session, self._clock)

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def create_rule(
        self,
        code: str,
        name: str,
        rule_type: AccrualRuleType | str,
        frequency: AccrualFrequency | str,
        lines: Sequence[RuleLineInput],
        actor_id: UUID,
        start_date: date | None = None,
        memo: str | None = None,
        deferral: DeferralScheduleInput | None = None,
        status: AccrualRuleStatus | str = AccrualRuleStatus.ACTIVE,
    ) -> AccrualRuleInfo:
        """
        Define a rule.

        RECURRING / REVERSING lines carry balanced amounts.  DERIVED lines
        carry formulas.  DEFERRAL rules carry a schedule plus exactly one
        debit and one credit line without amounts, and use the PERIOD_END
        frequency.
        """
        code = (code or "").strip()
        if not code:
            raise InvalidFieldError("code", "must not be empty")
        if not (name or "").strip():
            raise InvalidFieldError("name", "must not be empty")
        rule_type = _parse(AccrualRuleType, rule_type, "rule_type")
        frequency = _parse(AccrualFrequency, frequency, "frequency")
        status = _parse(AccrualRuleStatus, status, "status")

        if self._session.execute(
            select(AccrualRule.id).where(AccrualRule.code == code)
        ).scalar_one_or_none() is not None:
            raise DuplicateCodeError("AccrualRule", code)

        if len(lines) < 2:
            raise InvalidFieldError("lines", "a rule needs at least 2 template lines")
        for line in lines:
            self._accounts.require_postable(line.account_id)

        deferral_fields = {}
        if rule_type == AccrualRuleType.DEFERRAL:
            deferral_fields = self._validate_deferral(code, frequency, lines, deferral)
        elif deferral is not None:
            raise InvalidFieldError("deferral", "only deferral rules carry a schedule")
        elif rule_type == AccrualRuleType.DERIVED:
            self._validate_derived(lines)
        else:
            self._validate_fixed(lines)

        rule = AccrualRule(
            code=code,
            name=name.strip(),
            rule_type=rule_type,
            frequency=frequency,
            status=status,
            start_date=start_date,
            memo=memo,
            created_by_id=actor_id,
            **deferral_fields,
        )
        rule.lines = [
            AccrualRuleLine(
                line_no=number,
                account_id=line.account_id,
                side=line.side,
                amount_minor=to_minor(line.amount) if line.amount is not None else None,
                formula=line.formula,
                description=line.description,
                created_by_id=actor_id,
            )
            for number, line in enumerate(lines, start=1)
        ]
        self._session.add(rule)
        self._session.flush()

        logger.info(
            "accrual_rule_created",
            extra={
                "rule_id": str(rule.id),
                "rule_code": code,
                "rule_type": rule_type.value,
                "frequency": frequency.value,
            },
        )
        return AccrualRuleInfo.from_model(rule)

    def _validate_fixed(self, lines: Sequence[RuleLineInput]) -> None:
        for line in lines:
            if line.amount is None or line.formula is not None:
                raise InvalidFieldError(
                    "lines", "recurring and reversing rules need a fixed amount on every line"
                )
        debits = sum(to_minor(l.amount) for l in lines if l.side == LineSide.DEBIT)
        credits = sum(to_minor(l.amount) for l in lines if l.side == LineSide.CREDIT)
        if debits != credits:
            raise UnbalancedEntryError(str(from_minor(debits)), str(from_minor(credits)))

    def _validate_derived(self, lines: Sequence[RuleLineInput]) -> None:
        for line in lines:
            if not line.formula or line.amount is not None:
                raise InvalidFieldError("lines", "derived rules need a formula on every line")
            errors = validate_formula(line.formula)
            if errors:
                raise FormulaError(line.formula, errors[0].message)
            for account_code in referenced_accounts(line.formula):
                self._accounts.get_account_by_code(account_code)

    def _validate_deferral(
        self,
        code: str,
        frequency: AccrualFrequency,
        lines: Sequence[RuleLineInput],
        deferral: DeferralScheduleInput | None,
    ) -> dict:
        if deferral is None:
            raise InvalidFieldError("deferral", "deferral rules need a schedule")
        if frequency != AccrualFrequency.PERIOD_END:
            raise InvalidFieldError("frequency", "deferral rules run at period end")
        sides = sorted(line.side.value for line in lines)
        if sides != [LineSide.CREDIT.value, LineSide.DEBIT.value]:
            raise InvalidFieldError(
                "lines", "deferral rules need exactly one debit and one credit line"
            )
        if any(line.amount is not None or line.formula for line in lines):
            raise InvalidFieldError(
                "lines", "deferral line amounts come from the schedule"
            )
        total_minor = to_minor(deferral.total_amount)
        allocate(total_minor, deferral.period_count, code)
        periods = self._periods.periods_from(deferral.start_period_id, deferral.period_count)
        if len(periods) < deferral.period_count:
            raise DeferralScheduleError(
                code,
                f"schedule needs {deferral.period_count} periods from its start, "
                f"only {len(periods)} exist",
            )
        return {
            "deferral_total_minor": total_minor,
            "deferral_period_count": deferral.period_count,
            "deferral_start_period_id": deferral.start_period_id,
        }

    def get_rule(self, rule_id: UUID) -> AccrualRuleInfo:
        rule = self._get_rule(rule_id)
        return dataclasses.replace(
            AccrualRuleInfo.from_model(rule),
            last_run_date=self.last_run_date(rule.id),
        )

    def list_rules(
        self,
        status: AccrualRuleStatus | str | None = None,
        rule_type: AccrualRuleType | str | None = None,
    ) -> list[AccrualRuleInfo]:
        query = select(AccrualRule).order_by(AccrualRule.code)
        if status is not None:
            query = query.where(AccrualRule.status == _parse(AccrualRuleStatus, status, "status"))
        if rule_type is not None:
            query = query.where(
                AccrualRule.rule_type == _parse(AccrualRuleType, rule_type, "rule_type")
            )
        return [
            dataclasses.replace(
                AccrualRuleInfo.from_model(rule), last_run_date=self.last_run_date(rule.id)
            )
            for rule in self._session.scalars(query)
        ]

    def set_rule_status(
        self,
        rule_id: UUID,
        status: AccrualRuleStatus | str,
        actor_id: UUID,
    ) -> AccrualRuleInfo:
        rule = self._get_rule(rule_id)
        rule.status = _parse(AccrualRuleStatus, status, "status")
        rule.updated_by_id = actor_id
        self._session.flush()
        logger.info(
            "accrual_rule_status_changed",
            extra={"rule_code": rule.code, "status": rule.status.value},
        )
        return self.get_rule(rule.id)

    def last_run_date(self, rule_id: UUID, before: date | None = None) -> date | None:
        """Latest due-run occurrence that created or found an entry."""
        query = (
            select(func.max(AccrualRunItem.occurrence_date))
            .join(AccrualRun, AccrualRunItem.run_id == AccrualRun.id)
            .where(
                AccrualRunItem.rule_id == rule_id,
                AccrualRunItem.outcome.in_(_COUNTED_AS_RUN),
                AccrualRun.kind == AccrualRunKind.DUE,
            )
        )
        if before is not None:
            query = query.where(AccrualRunItem.occurrence_date < before)
        return self._session.execute(query).scalar_one()

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def run_due(self, as_of_date: date, actor_id: UUID) -> AccrualRunInfo:
        """
        Apply every active scheduled rule that is due on ``as_of_date``.

        The entry lands in the period covering ``as_of_date``.  Re-running
        the same date reports the earlier entry as EXISTING.
        """
        rules = self._session.scalars(
            select(AccrualRule)
            .where(
                AccrualRule.status == AccrualRuleStatus.ACTIVE,
                AccrualRule.frequency.in_(list(SCHEDULED_FREQUENCIES)),
                AccrualRule.rule_type != AccrualRuleType.DEFERRAL,
            )
            .order_by(AccrualRule.code)
        ).all()

        period = self._periods.get_current_period(as_of_date)
        covering = period if period is not None and period.contains_date(as_of_date) else None

        planned: list[_Occurrence | _Outcome] = []
        for rule in rules:
            # Strictly before: a same-day rerun still counts as due
            last_run = self.last_run_date(rule.id, before=as_of_date)
            if not is_due(rule.frequency, last_run, rule.start_date, as_of_date):
                continue
            if covering is None:
                planned.append(_Outcome(
                    rule.id, rule.code, RunItemOutcome.FAILED, as_of_date,
                    error_code="PERIOD_NOT_FOUND",
                    error_message=f"no fiscal period covers {as_of_date}",
                ))
                continue
            planned.append(_Occurrence(
                rule_id=rule.id,
                rule_code=rule.code,
                kind=AccrualRunKind.DUE,
                period_id=covering.id,
                entry_date=as_of_date,
                idempotency_key=accrual_entry_key(
                    AccrualRunKind.DUE.value, rule.id, covering.id,
                    occurrence_suffix(rule.frequency, as_of_date),
                ),
            ))

        return self._execute(
            AccrualRunKind.DUE, actor_id, planned,
            as_of_date=as_of_date,
            period_id=covering.id if covering else None,
        )

    def run_reversals(self, period_id: UUID, actor_id: UUID) -> AccrualRunInfo:
        """
        Mirror last period's posted reversing accruals into ``period_id``.

        Each originating entry gets its own mirror, dated on the first day
        of ``period_id``.
        """
        period = self._periods.get_period(period_id)
        prior = self._periods.previous_period(period_id)

        rules = self._session.scalars(
            select(AccrualRule)
            .where(
                AccrualRule.status == AccrualRuleStatus.ACTIVE,
                AccrualRule.rule_type == AccrualRuleType.REVERSING,
            )
            .order_by(AccrualRule.code)
        ).all()

        planned: list[_Occurrence | _Outcome] = []
        for rule in rules:
            originals = []
            if prior is not None:
                originals = self._session.scalars(
                    select(JournalEntry.id)
                    .where(
                        JournalEntry.period_id == prior.id,
                        JournalEntry.source == EntrySource.ACCRUAL,
                        JournalEntry.source_ref == rule.code,
                        JournalEntry.status == JournalEntryStatus.POSTED,
                        JournalEntry.reversal_of_id.is_(None),
                    )
                    .order_by(JournalEntry.entry_date, JournalEntry.created_at)
                ).all()
            if not originals:
                planned.append(_Outcome(
                    rule.id, rule.code, RunItemOutcome.SKIPPED, period.start_date,
                    error_message="no posted accrual in the prior period",
                ))
                continue
            for original_id in originals:
                planned.append(_Occurrence(
                    rule_id=rule.id,
                    rule_code=rule.code,
                    kind=AccrualRunKind.REVERSAL,
                    period_id=period.id,
                    entry_date=period.start_date,
                    idempotency_key=accrual_entry_key(
                        AccrualRunKind.REVERSAL.value, rule.id, period.id, str(original_id)
                    ),
                    originating_entry_id=original_id,
                ))

        return self._execute(
            AccrualRunKind.REVERSAL, actor_id, planned,
            as_of_date=period.start_date, period_id=period.id,
        )

    def run_period_end(
        self,
        period_id: UUID,
        actor_id: UUID,
        as_of_date: date | None = None,
    ) -> AccrualRunInfo:
        """
        Apply PERIOD_END rules and the deferral allocations for ``period_id``.

        Raises:
            InvalidFieldError: as_of_date outside the period.
        """
        period = self._periods.get_period(period_id)
        as_of_date = as_of_date or period.end_date
        if not period.contains_date(as_of_date):
            raise InvalidFieldError(
                "as_of_date", f"{as_of_date} is outside period {period.period_code}"
            )

        rules = self._session.scalars(
            select(AccrualRule)
            .where(
                AccrualRule.status == AccrualRuleStatus.ACTIVE,
                AccrualRule.frequency == AccrualFrequency.PERIOD_END,
            )
            .order_by(AccrualRule.code)
        ).all()

        planned: list[_Occurrence | _Outcome] = []
        for rule in rules:
            if rule.rule_type == AccrualRuleType.DEFERRAL:
                schedule = self._periods.periods_from(
                    rule.deferral_start_period_id, rule.deferral_period_count
                )
                if period.id not in {p.id for p in schedule}:
                    continue
            planned.append(_Occurrence(
                rule_id=rule.id,
                rule_code=rule.code,
                kind=AccrualRunKind.PERIOD_END,
                period_id=period.id,
                entry_date=as_of_date,
                idempotency_key=accrual_entry_key(
                    AccrualRunKind.PERIOD_END.value, rule.id, period.id
                ),
            ))

        return self._execute(
            AccrualRunKind.PERIOD_END, actor_id, planned,
            as_of_date=as_of_date, period_id=period.id,
        )

    def list_runs(
        self,
        kind: AccrualRunKind | str | None = None,
        status: AccrualRunStatus | str | None = None,
        period_id: UUID | None = None,
    ) -> list[AccrualRunInfo]:
        query = select(AccrualRun).order_by(AccrualRun.started_at.desc(), AccrualRun.id)
        if kind is not None:
            query = query.where(AccrualRun.kind == _parse(AccrualRunKind, kind, "kind"))
        if status is not None:
            query = query.where(AccrualRun.status == _parse(AccrualRunStatus, status, "status"))
        if period_id is not None:
            query = query.where(AccrualRun.period_id == period_id)
        return [AccrualRunInfo.from_model(run) for run in self._session.scalars(query)]

    def get_run(self, run_id: UUID) -> AccrualRunInfo:
        run = self._session.get(AccrualRun, run_id)
        if run is None:
            raise AccrualRunNotFoundError(str(run_id))
        return AccrualRunInfo.from_model(run)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _execute(
        self,
        kind: AccrualRunKind,
        actor_id: UUID,
        planned: list[_Occurrence | _Outcome],
        as_of_date: date | None,
        period_id: UUID | None,
    ) -> AccrualRunInfo:
        # Added after the work; workers must not wait on this session's write lock
        run = AccrualRun(
            id=uuid4(),
            kind=kind,
            as_of_date=as_of_date,
            period_id=period_id,
            status=AccrualRunStatus.RUNNING,
            started_at=self._clock.now(),
            created_by_id=actor_id,
        )

        with LogContext.bind(run_id=run.id, period_id=period_id):
            logger.info(
                "accrual_run_started",
                extra={"run_id": str(run.id), "kind": kind.value, "planned": len(planned)},
            )
            occurrences = [p for p in planned if isinstance(p, _Occurrence)]
            if self._session_factory is not None and self._max_workers > 1 and len(occurrences) > 1:
                results = self._apply_parallel(occurrences, actor_id)
            else:
                results = {occ.idempotency_key: self._apply_in_savepoint(occ, actor_id)
                           for occ in occurrences}

            outcomes = [
                results[p.idempotency_key] if isinstance(p, _Occurrence) else p
                for p in planned
            ]
            self._session.add(run)
            self._record(run, outcomes, actor_id)

            logger.info(
                "accrual_run_completed",
                extra={
                    "run_id": str(run.id),
                    "status": run.status.value,
                    "entries_created": run.entries_created,
                    "existing": run.entries_existing,
                    "skipped": run.rules_skipped,
                    "failed": run.rules_failed,
                },
            )
        return AccrualRunInfo.from_model(run)

    def _apply_in_savepoint(self, occ: _Occurrence, actor_id: UUID) -> _Outcome:
        savepoint = self._session.begin_nested()
        try:
            outcome, entry_id = _OccurrenceSynthesizer(
                self._session, self._clock, actor_id
            ).apply(occ)
            savepoint.commit()
            return _Outcome(
                occ.rule_id, occ.rule_code, outcome, occ.entry_date,
                journal_entry_id=entry_id, idempotency_key=occ.idempotency_key,
            )
        except _Skip as skip:
            savepoint.rollback()
            return _Outcome(
                occ.rule_id, occ.rule_code, RunItemOutcome.SKIPPED, occ.entry_date,
                idempotency_key=occ.idempotency_key, error_message=str(skip),
            )
        except LedgerError as exc:
            savepoint.rollback()
            logger.warning(
                "accrual_rule_failed",
                extra={"rule_code": occ.rule_code, "error_code": exc.code},
            )
            return _Outcome(
                occ.rule_id, occ.rule_code, RunItemOutcome.FAILED, occ.entry_date,
                idempotency_key=occ.idempotency_key,
                error_code=exc.code, error_message=str(exc),
            )

    def _apply_parallel(self, occurrences: list[_Occurrence], actor_id: UUID) -> dict[str, _Outcome]:
        results: dict[str, _Outcome] = {}
        with ThreadPoolExecutor(max_workers=self._max_workers) as executor:
            futures = {
                executor.submit(copy_context().run, self._apply_in_own_session, occ, actor_id): occ
                for occ in occurrences
            }
            for future in as_completed(futures):
                occ = futures[future]
                results[occ.idempotency_key] = future.result()
        return results

    def _apply_in_own_session(self, occ: _Occurrence, actor_id: UUID) -> _Outcome:
        try:
            with session_scope(self._session_factory) as session:
                with session.begin_nested():
                    outcome, entry_id = _OccurrenceSynthesizer(
                        session, self._clock, actor_id
                    ).apply(occ)
            return _Outcome(
                occ.rule_id, occ.rule_code, outcome, occ.entry_date,
                journal_entry_id=entry_id, idempotency_key=occ.idempotency_key,
            )
        except _Skip as skip:
            return _Outcome(
                occ.rule_id, occ.rule_code, RunItemOutcome.SKIPPED, occ.entry_date,
                idempotency_key=occ.idempotency_key, error_message=str(skip),
            )
        except IntegrityError:
            # Another worker or caller inserted the same key first.
            return self._existing_in_own_session(occ)
        except LedgerError as exc:
            return _Outcome(
                occ.rule_id, occ.rule_code, RunItemOutcome.FAILED, occ.entry_date,
                idempotency_key=occ.idempotency_key,
                error_code=exc.code, error_message=str(exc),
            )
        except SQLAlchemyError as exc:
            return self._database_failure(occ, exc)

    def _existing_in_own_session(self, occ: _Occurrence) -> _Outcome:
        try:
            with session_scope(self._session_factory) as session:
                entry_id = session.execute(
                    select(AccrualEntryKey.journal_entry_id).where(
                        AccrualEntryKey.idempotency_key == occ.idempotency_key
                    )
                ).scalar_one()
        except SQLAlchemyError as exc:
            return self._database_failure(occ, exc)
        return _Outcome(
            occ.rule_id, occ.rule_code, RunItemOutcome.EXISTING, occ.entry_date,
            journal_entry_id=entry_id, idempotency_key=occ.idempotency_key,
        )

    def _database_failure(self, occ: _Occurrence, exc: SQLAlchemyError) -> _Outcome:
        logger.warning(
            "accrual_rule_failed",
            extra={
                "rule_code": occ.rule_code,
                "error_code": DATABASE_ERROR_CODE,
                "error_type": type(exc).__name__,
            },
        )
        return _Outcome(
            occ.rule_id, occ.rule_code, RunItemOutcome.FAILED, occ.entry_date,
            idempotency_key=occ.idempotency_key,
            error_code=DATABASE_ERROR_CODE, error_message=str(exc),
        )

    def _record(self, run: AccrualRun, outcomes: list[_Outcome], actor_id: UUID) -> None:
        run.items = [
            AccrualRunItem(
                seq=seq,
                rule_id=o.rule_id,
                rule_code=o.rule_code,
                outcome=o.outcome,
                occurrence_date=o.occurrence_date,
                journal_entry_id=o.journal_entry_id,
                idempotency_key=o.idempotency_key,
                error_code=o.error_code,
                error_message=o.error_message[:2000] if o.error_message else None,
                created_by_id=actor_id,
            )
            for seq, o in enumerate(outcomes, start=1)
        ]
        counts = {outcome: 0 for outcome in RunItemOutcome}
        for o in outcomes:
            counts[o.outcome] += 1

        run.rules_attempted = len(outcomes)
        run.entries_created = counts[RunItemOutcome.CREATED]
        run.entries_existing = counts[RunItemOutcome.EXISTING]
        run.rules_skipped = counts[RunItemOutcome.SKIPPED]
        run.rules_failed = counts[RunItemOutcome.FAILED]

        if outcomes and run.rules_failed == len(outcomes):
            run.status = AccrualRunStatus.FAILED
            run.failure_reason = f"all {len(outcomes)} rule occurrence(s) failed"
        else:
            run.status = AccrualRunStatus.COMPLETED
        run.completed_at = self._clock.now()
        run.updated_by_id = actor_id
        self._session.flush()

    def _get_rule(self, rule_id: UUID) -> AccrualRule:
        rule = self._session.get(AccrualRule, rule_id)
        if rule is None:
            raise AccrualRuleNotFoundError(str(rule_id))
        return rule


def _parse(enum_cls, value, field: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise InvalidFieldError(field, f"unknown value {value!r}") from None
