"""
ledger_services.ledger_api -- Canonical request/response facade.

Responsibility:
    The one entrypoint an outer layer (HTTP handler, CLI, UI adapter)
    calls.  Every operation opens its own transaction, runs one service
    call and returns one ``ApiResponse`` envelope:

        {"ok": bool, "data": ..., "error": {code, category, message, details},
         "replayed": bool}

    Mutating operations accept ``idempotency_key``.  A replay with the same
    request returns the stored response; reuse with a different request is
    an IDEMPOTENCY_CONFLICT.

Architecture position:
    Services -- outermost layer.  Builds kernel services and the
    orchestrators per call; holds no state between calls beyond the
    session factory and the settings.

Invariants enforced:
    - One transaction per call (session_scope): committed on success,
      rolled back on any error.
    - A response is stored under its idempotency key in the same
      transaction as the effect, so either both persist or neither does.
    - Errors are never swallowed: a LedgerError becomes an error envelope
      carrying its code, category and structured details; anything else is
      logged with its traceback and returned as INTERNAL_ERROR.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.orm import Session, sessionmaker

from ledger_config import LedgerSettings, get_active_settings
from ledger_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_url,
    session_scope,
)
from ledger_kernel.db.immutability import register_immutability_listeners
from ledger_kernel.domain.amounts import to_decimal
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.dtos import (
    DeferralScheduleInput,
    JournalEntryInfo,
    LineInput,
    RuleLineInput,
)
from ledger_kernel.exceptions import InvalidFieldError, LedgerError
from ledger_kernel.logging_config import LogContext, configure_logging, get_logger
from ledger_kernel.models.journal import LineSide
from ledger_kernel.selectors.journal_selector import JournalSelector
from ledger_kernel.selectors.ledger_selector import LedgerSelector
from ledger_kernel.services.account_service import AccountService
from ledger_kernel.services.idempotency_service import IdempotencyService
from ledger_kernel.services.journal_service import JournalService
from ledger_kernel.services.period_service import PeriodService
from ledger_kernel.services.posting_service import PostingService
from ledger_kernel.utils.hashing import to_jsonable
from ledger_services.accrual_scheduler import AccrualScheduler
from ledger_services.period_close_orchestrator import PeriodCloseOrchestrator
from ledger_services.reconciliation_service import ReconciliationService

logger = get_logger("services.api")


@dataclass(frozen=True)
class ApiError:
    code: str
    category: str
    message: str
    details: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ApiResponse:
    """The single response shape of every LedgerApi operation."""

    ok: bool
    data: Any = None
    error: ApiError | None = None
    replayed: bool = False

    @classmethod
    def success(cls, data: Any, replayed: bool = False) -> ApiResponse:
        return cls(ok=True, data=data, replayed=replayed)

    @classmethod
    def failure(cls, exc: Exception) -> ApiResponse:
        if isinstance(exc, LedgerError):
            error = ApiError(
                code=exc.code,
                category=exc.category,
                message=str(exc),
                details=to_jsonable(exc.details()),
            )
        else:
            error = ApiError(
                code="INTERNAL_ERROR",
                category=LedgerError.category,
                message=str(exc),
            )
        return cls(ok=False, error=error)

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "data": self.data,
            "error": None if self.error is None else {
                "code": self.error.code,
                "category": self.error.category,
                "message": self.error.message,
                "details": self.error.details,
            },
            "replayed": self.replayed,
        }


# ---------------------------------------------------------------------------
# Request parsing
# ---------------------------------------------------------------------------


def _uuid(value, field_name: str) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        raise InvalidFieldError(field_name, f"{value!r} is not a UUID") from None


def _optional_uuid(value, field_name: str) -> UUID | None:
    return None if value is None else _uuid(value, field_name)


def _date(value, field_name: str) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise InvalidFieldError(field_name, f"{value!r} is not an ISO date") from None


def _optional_date(value, field_name: str) -> date | None:
    return None if value is None else _date(value, field_name)


def _line(raw) -> LineInput:
    """A LineInput, or a mapping with account_id and one of debit/credit."""
    if isinstance(raw, LineInput):
        return raw
    if not isinstance(raw, Mapping):
        raise InvalidFieldError("lines", "each line must be an object")
    return LineInput.from_pair(
        _uuid(raw.get("account_id"), "account_id"),
        debit=raw.get("debit"),
        credit=raw.get("credit"),
        description=raw.get("description"),
    )


def _rule_line(raw) -> RuleLineInput:
    if isinstance(raw, RuleLineInput):
        return raw
    if not isinstance(raw, Mapping):
        raise InvalidFieldError("lines", "each rule line must be an object")
    amount = raw.get("amount")
    try:
        side = LineSide(raw.get("side"))
    except ValueError:
        raise InvalidFieldError("side", f"{raw.get('side')!r} is not debit or credit") from None
    return RuleLineInput(
        account_id=_uuid(raw.get("account_id"), "account_id"),
        side=side,
        amount=to_decimal(amount) if amount is not None else None,
        formula=raw.get("formula"),
        description=raw.get("description"),
    )


def _deferral(raw) -> DeferralScheduleInput:
    if isinstance(raw, DeferralScheduleInput):
        return raw
    count = raw.get("period_count")
    if not isinstance(count, int) or isinstance(count, bool):
        raise InvalidFieldError("period_count", f"{count!r} is not an integer")
    return DeferralScheduleInput(
        total_amount=to_decimal(raw.get("total_amount")),
        period_count=count,
        start_period_id=_uuid(raw.get("start_period_id"), "start_period_id"),
    )


def _entry_data(info: JournalEntryInfo) -> dict:
    return {
        "id": info.id,
        "period_id": info.period_id,
        "entry_date": info.entry_date,
        "entry_type": info.entry_type,
        "status": info.status,
        "source": info.source,
        "source_ref": info.source_ref,
        "version": info.version,
        "memo": info.memo,
        "total_debit": info.total_debit,
        "total_credit": info.total_credit,
        "is_balanced": info.is_balanced,
        "lines": [
            {
                "line_no": line.line_no,
                "account_id": line.account_id,
                "debit": line.debit,
                "credit": line.credit,
                "description": line.description,
            }
            for line in info.lines
        ],
        "derived_from_id": info.derived_from_id,
        "reversal_of_id": info.reversal_of_id,
        "rejection_reason": info.rejection_reason,
        "void_reason": info.void_reason,
        "cancel_reason": info.cancel_reason,
        "posted_at": info.posted_at,
    }


def _diff_data(diff) -> dict:
    return {
        "account_id": diff.account_id,
        "account_code": diff.account_code,
        "account_name": diff.account_name,
        "gl_balance": diff.gl_balance,
        "recomputed_balance": diff.recomputed_balance,
        "balance_difference": diff.balance_difference,
        "is_match": diff.is_match,
    }


def _balance_sheet_data(rows) -> dict:
    return {
        "rows": [
            {
                "account_id": r.account_id,
                "account_code": r.account_code,
                "account_name": r.account_name,
                "account_type": r.account_type,
                "debit_total": r.debit_total,
                "credit_total": r.credit_total,
                "balance": r.balance,
            }
            for r in rows
        ],
        "total_debit": sum((r.debit_total for r in rows), Decimal("0.00")),
        "total_credit": sum((r.credit_total for r in rows), Decimal("0.00")),
    }


# ---------------------------------------------------------------------------
# Facade
# ---------------------------------------------------------------------------


class LedgerApi:
    """
    Envelope-returning facade over the ledger services.

    Contract:
        Every public method returns an ``ApiResponse``; none raises for a
        ledger error.  ``actor_id`` identifies the caller on every
        mutating operation.

    Non-goals:
        - Does NOT authenticate or authorize the actor.
        - Does NOT serialize to a wire format; ``ApiResponse.to_dict()``
          yields plain JSON types.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        settings: LedgerSettings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_active_settings()
        self._clock = clock or SystemClock()

    @classmethod
    def from_settings(
        cls,
        settings: LedgerSettings | None = None,
        clock: Clock | None = None,
        create_schema: bool = False,
    ) -> LedgerApi:
        """
        Bootstrap logging and the process-wide engine from settings.

        ``create_schema`` creates missing tables; intended for local
        SQLite databases, not for managed PostgreSQL schemas.
        """
        settings = settings or get_active_settings()
        configure_logging(level=settings.log_level)
        engine = init_engine_from_url(
            settings.database_url,
            echo=settings.echo_sql,
            pool_size=settings.pool_size,
            max_overflow=settings.max_overflow,
        )
        register_immutability_listeners()
        if create_schema:
            create_tables(engine)
        return cls(get_session_factory(), settings, clock)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _query(self, operation: str, fn: Callable[[Session], Any]) -> ApiResponse:
        with LogContext.bind(correlation_id=str(uuid4()), operation=operation):
            try:
                with session_scope(self._session_factory) as session:
                    data = to_jsonable(fn(session))
                return ApiResponse.success(data)
            except LedgerError as exc:
                return ApiResponse.failure(exc)
            except Exception as exc:
                logger.exception("api_unhandled_error", extra={"api_operation": operation})
                return ApiResponse.failure(exc)

    def _mutate(
        self,
        operation: str,
        actor_id,
        payload: dict,
        fn: Callable[[Session, UUID], Any],
        idempotency_key: str | None = None,
    ) -> ApiResponse:
        with LogContext.bind(
            correlation_id=str(uuid4()),
            operation=operation,
            actor_id=None if actor_id is None else str(actor_id),
        ):
            try:
                actor = _uuid(actor_id, "actor_id")
                with session_scope(self._session_factory) as session:
                    idempotency = IdempotencyService(session, self._clock)
                    if idempotency_key:
                        stored = idempotency.lookup(idempotency_key, operation, payload)
                        if stored is not None:
                            return ApiResponse.success(stored["data"], replayed=True)
                    data = to_jsonable(fn(session, actor))
                    if idempotency_key:
                        idempotency.store(
                            idempotency_key, operation, payload, {"data": data}, actor
                        )
                return ApiResponse.success(data)
            except LedgerError as exc:
                logger.info(
                    "api_request_failed",
                    extra={"api_operation": operation, "error_code": exc.code},
                )
                return ApiResponse.failure(exc)
            except Exception as exc:
                logger.exception("api_unhandled_error", extra={"api_operation": operation})
                return ApiResponse.failure(exc)

    def _journal(self, session: Session) -> JournalService:
        return JournalService(session, self._clock, self._settings.reject_reason_max_length)

    def _posting(self, session: Session) -> PostingService:
        return PostingService(session, self._clock, self._settings.reject_reason_max_length)

    def _scheduler(self, session: Session) -> AccrualScheduler:
        parallel = (
            self._settings.accrual_max_workers > 1
            and not self._settings.database_url.startswith("sqlite")
        )
        return AccrualScheduler(
            session,
            self._clock,
            session_factory=self._session_factory if parallel else None,
            max_workers=self._settings.accrual_max_workers,
        )

    def _reconciliation(self, session: Session) -> ReconciliationService:
        return ReconciliationService(
            session,
            self._clock,
            max_threshold=self._settings.auto_correct_max_threshold,
            suspense_account_code=self._settings.suspense_account_code,
        )

    def _close(self, session: Session) -> PeriodCloseOrchestrator:
        return PeriodCloseOrchestrator(
            session,
            self._clock,
            retained_earnings_account_code=self._settings.retained_earnings_account_code,
            reconciliation=self._reconciliation(session),
            scheduler=self._scheduler(session),
        )

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(
        self,
        code: str,
        name: str,
        account_type: str,
        actor_id,
        is_postable: bool = True,
        parent_id=None,
        tags: Sequence[str] | None = None,
        idempotency_key: str | None = None,
    ) -> ApiResponse:
        payload = {
            "code": code, "name": name, "account_type": account_type,
            "is_postable": is_postable, "parent_id": parent_id, "tags": tags,
        }
        return self._mutate(
            "accounts.create", actor_id, payload,
            lambda s, actor: AccountService(s, self._clock).create_account(
                code, name, account_type, actor,
                is_postable=is_postable,
                parent_id=_optional_uuid(parent_id, "parent_id"),
                tags=list(tags) if tags else None,
            ),
            idempotency_key,
        )

    def update_account(
        self,
        account_id,
        actor_id,
        name: str | None = None,
        is_postable: bool | None = None,
        status: str | None = None,
        tags: Sequence[str] | None = None,
        idempotency_key: str | None = None,
    ) -> ApiResponse:
        payload = {
            "account_id": account_id, "name": name, "is_postable": is_postable,
            "status": status, "tags": tags,
        }
        return self._mutate(
            "accounts.update", actor_id, payload,
            lambda s, actor: AccountService(s, self._clock).update_account(
                _uuid(account_id, "account_id"), actor,
                name=name, is_postable=is_postable, status=status,
                tags=list(tags) if tags is not None else None,
            ),
            idempotency_key,
        )

    def reparent_account(self, account_id, parent_id, actor_id, idempotency_key=None) -> ApiResponse:
        return self._mutate(
            "accounts.reparent", actor_id,
            {"account_id": account_id, "parent_id": parent_id},
            lambda s, actor: AccountService(s, self._clock).reparent(
                _uuid(account_id, "account_id"), _optional_uuid(parent_id, "parent_id"), actor
            ),
            idempotency_key,
        )

    def archive_account(self, account_id, actor_id, idempotency_key=None) -> ApiResponse:
        return self._mutate(
            "accounts.archive", actor_id, {"account_id": account_id},
            lambda s, actor: AccountService(s, self._clock).archive_account(
                _uuid(account_id, "account_id"), actor
            ),
            idempotency_key,
        )

    def get_account(self, account_id) -> ApiResponse:
        return self._query(
            "accounts.detail",
            lambda s: AccountService(s, self._clock).get_account(_uuid(account_id, "account_id")),
        )

    def list_accounts(self, include_archived: bool = False, account_type: str | None = None) -> ApiResponse:
        return self._query(
            "accounts.list",
            lambda s: AccountService(s, self._clock).list_accounts(include_archived, account_type),
        )

    # ------------------------------------------------------------------
    # Periods
    # ------------------------------------------------------------------

    def create_period(
        self,
        period_code: str,
        start_date,
        end_date,
        actor_id,
        name: str | None = None,
        fiscal_year: int | None = None,
        idempotency_key: str | None = None,
    ) -> ApiResponse:
        payload = {
            "period_code": period_code, "start_date": start_date, "end_date": end_date,
            "name": name, "fiscal_year": fiscal_year,
        }
        return self._mutate(
            "periods.create", actor_id, payload,
            lambda s, actor: PeriodService(s, self._clock).create_period(
                period_code,
                _date(start_date, "start_date"),
                _date(end_date, "end_date"),
                actor,
                name=name,
                fiscal_year=fiscal_year,
            ),
            idempotency_key,
        )

    def delete_period(self, period_id, actor_id, idempotency_key=None) -> ApiResponse:
        def run(s: Session, actor: UUID):
            PeriodService(s, self._clock).delete_period(_uuid(period_id, "period_id"))
            return {"deleted": period_id}

        return self._mutate(
            "periods.delete", actor_id, {"period_id": period_id}, run, idempotency_key
        )

    def list_periods(self, status: str | None = None, fiscal_year: int | None = None) -> ApiResponse:
        return self._query(
            "periods.list",
            lambda s: PeriodService(s, self._clock).list_periods(status, fiscal_year),
        )

    def get_period(self, period_id) -> ApiResponse:
        return self._query(
            "periods.detail",
            lambda s: PeriodService(s, self._clock).get_period(_uuid(period_id, "period_id")),
        )

    def current_period(self, as_of=None) -> ApiResponse:
        return self._query(
            "periods.current",
            lambda s: PeriodService(s, self._clock).get_current_period(
                _optional_date(as_of, "as_of")
            ),
        )

    def close_preview(self, period_id) -> ApiResponse:
        def run(s: Session):
            preview = self._close(s).close_preview(_uuid(period_id, "period_id"))
            return {
                "period": preview.period,
                "can_close": preview.can_close,
                "blockers": [b.to_dict() for b in preview.blockers],
            }

        return self._query("periods.close_preview", run)

    def close_period(
        self,
        period_id,
        actor_id,
        force: bool = False,
        justification: str | None = None,
        auto_run_accruals: bool = False,
        idempotency_key: str | None = None,
    ) -> ApiResponse:
        payload = {
            "period_id": period_id, "force": force,
            "justification": justification, "auto_run_accruals": auto_run_accruals,
        }

        def run(s: Session, actor: UUID):
            result = self._close(s).close(
                _uuid(period_id, "period_id"), actor,
                force=force,
                justification=justification,
                auto_run_accruals=auto_run_accruals,
            )
            return {
                "period": result.period,
                "forced": result.forced,
                "overridden_blockers": [b.to_dict() for b in result.overridden_blockers],
                "accrual_run": result.accrual_run,
            }

        return self._mutate("periods.close", actor_id, payload, run, idempotency_key)

    def reopen_period(self, period_id, actor_id, idempotency_key=None) -> ApiResponse:
        return self._mutate(
            "periods.reopen", actor_id, {"period_id": period_id},
            lambda s, actor: self._close(s).reopen(_uuid(period_id, "period_id"), actor),
            idempotency_key,
        )

    def lock_period(self, period_id, actor_id, idempotency_key=None) -> ApiResponse:
        return self._mutate(
            "periods.lock", actor_id, {"period_id": period_id},
            lambda s, actor: self._close(s).lock(_uuid(period_id, "period_id"), actor),
            idempotency_key,
        )

    def unlock_period(self, period_id, actor_id, idempotency_key=None) -> ApiResponse:
        return self._mutate(
            "periods.unlock", actor_id, {"period_id": period_id},
            lambda s, actor: self._close(s).unlock(_uuid(period_id, "period_id"), actor),
            idempotency_key,
        )

    def roll_forward(
        self,
        period_id,
        actor_id,
        target_period_id=None,
        retained_earnings_account_id=None,
        idempotency_key: str | None = None,
    ) -> ApiResponse:
        payload = {
            "period_id": period_id,
            "target_period_id": target_period_id,
            "retained_earnings_account_id": retained_earnings_account_id,
        }
        return self._mutate(
            "periods.roll_forward", actor_id, payload,
            lambda s, actor: self._close(s).roll_forward(
                _uuid(period_id, "period_id"), actor,
                target_period_id=_optional_uuid(target_period_id, "target_period_id"),
                retained_earnings_account_id=_optional_uuid(
                    retained_earnings_account_id, "retained_earnings_account_id"
                ),
            ),
            idempotency_key,
        )

    # ------------------------------------------------------------------
    # Journal
    # ------------------------------------------------------------------

    def create_entry(
        self,
        period_id,
        entry_date,
        lines: Sequence,
        actor_id,
        memo: str | None = None,
        entry_type: str = "general",
        idempotency_key: str | None = None,
    ) -> ApiResponse:
        payload = {
            "period_id": period_id, "entry_date": entry_date, "lines": list(lines),
            "memo": memo, "entry_type": entry_type,
        }
        return self._mutate(
            "journal.create", actor_id, payload,
            lambda s, actor: _entry_data(self._journal(s).create(
                _uuid(period_id, "period_id"),
                _date(entry_date, "entry_date"),
                [_line(raw) for raw in lines],
                actor,
                memo=memo,
                entry_type=entry_type,
            )),
            idempotency_key,
        )

    def update_header(
        self,
        entry_id,
        actor_id,
        entry_date=None,
        memo: str | None = None,
        entry_type: str | None = None,
        expected_version: int | None = None,
        idempotency_key: str | None = None,
    ) -> ApiResponse:
        payload = {
            "entry_id": entry_id, "entry_date": entry_date, "memo": memo,
            "entry_type": entry_type, "expected_version": expected_version,
        }
        return self._mutate(
            "journal.update_header", actor_id, payload,
            lambda s, actor: _entry_data(self._journal(s).update_header(
                _uuid(entry_id, "entry_id"), actor,
                entry_date=_optional_date(entry_date, "entry_date"),
                memo=memo,
                entry_type=entry_type,
                expected_version=expected_version,
            )),
            idempotency_key,
        )

    def add_line(self, entry_id, line, actor_id, expected_version=None, idempotency_key=None) -> ApiResponse:
        payload = {"entry_id": entry_id, "line": line, "expected_version": expected_version}
        return self._mutate(
            "journal.add_line", actor_id, payload,
            lambda s, actor: _entry_data(self._journal(s).add_line(
                _uuid(entry_id, "entry_id"), _line(line), actor, expected_version
            )),
            idempotency_key,
        )

    def update_line(
        self, entry_id, line_no: int, line, actor_id, expected_version=None, idempotency_key=None,
    ) -> ApiResponse:
        payload = {
            "entry_id": entry_id, "line_no": line_no, "line": line,
            "expected_version": expected_version,
        }
        return self._mutate(
            "journal.update_line", actor_id, payload,
            lambda s, actor: _entry_data(self._journal(s).update_line(
                _uuid(entry_id, "entry_id"), line_no, _line(line), actor, expected_version
            )),
            idempotency_key,
        )

    def delete_line(self, entry_id, line_no: int, actor_id, expected_version=None, idempotency_key=None) -> ApiResponse:
        payload = {"entry_id": entry_id, "line_no": line_no, "expected_version": expected_version}
        return self._mutate(
            "journal.delete_line", actor_id, payload,
            lambda s, actor: _entry_data(self._journal(s).delete_line(
                _uuid(entry_id, "entry_id"), line_no, actor, expected_version
            )),
            idempotency_key,
        )

    def replace_lines(self, entry_id, lines: Sequence, actor_id, expected_version=None, idempotency_key=None) -> ApiResponse:
        payload = {"entry_id": entry_id, "lines": list(lines), "expected_version": expected_version}
        return self._mutate(
            "journal.replace_lines", actor_id, payload,
            lambda s, actor: _entry_data(self._journal(s).replace_lines(
                _uuid(entry_id, "entry_id"), [_line(raw) for raw in lines], actor, expected_version
            )),
            idempotency_key,
        )

    def submit(self, entry_id, actor_id, expected_version=None, idempotency_key=None) -> ApiResponse:
        return self._mutate(
            "journal.submit", actor_id,
            {"entry_id": entry_id, "expected_version": expected_version},
            lambda s, actor: _entry_data(self._journal(s).submit(
                _uuid(entry_id, "entry_id"), actor, expected_version
            )),
            idempotency_key,
        )

    def approve(self, entry_id, actor_id, expected_version=None, idempotency_key=None) -> ApiResponse:
        return self._mutate(
            "journal.approve", actor_id,
            {"entry_id": entry_id, "expected_version": expected_version},
            lambda s, actor: _entry_data(self._journal(s).approve(
                _uuid(entry_id, "entry_id"), actor, expected_version
            )),
            idempotency_key,
        )

    def reject(self, entry_id, reason: str, actor_id, expected_version=None, idempotency_key=None) -> ApiResponse:
        def run(s: Session, actor: UUID):
            result = self._journal(s).reject(
                _uuid(entry_id, "entry_id"), reason, actor, expected_version
            )
            return {"rejected": _entry_data(result.rejected), "draft": _entry_data(result.draft)}

        return self._mutate(
            "journal.reject", actor_id,
            {"entry_id": entry_id, "reason": reason, "expected_version": expected_version},
            run, idempotency_key,
        )

    def cancel(self, entry_id, reason: str, actor_id, expected_version=None, idempotency_key=None) -> ApiResponse:
        return self._mutate(
            "journal.cancel", actor_id,
            {"entry_id": entry_id, "reason": reason, "expected_version": expected_version},
            lambda s, actor: _entry_data(self._journal(s).cancel(
                _uuid(entry_id, "entry_id"), reason, actor, expected_version
            )),
            idempotency_key,
        )

    def post(self, entry_id, actor_id, expected_version=None, idempotency_key=None) -> ApiResponse:
        return self._mutate(
            "journal.post", actor_id,
            {"entry_id": entry_id, "expected_version": expected_version},
            lambda s, actor: _entry_data(self._posting(s).post(
                _uuid(entry_id, "entry_id"), actor, expected_version
            )),
            idempotency_key,
        )

    def batch_post(self, entry_ids: Sequence, actor_id, idempotency_key=None) -> ApiResponse:
        def run(s: Session, actor: UUID):
            result = self._posting(s).batch_post(
                [_uuid(e, "entry_ids") for e in entry_ids], actor
            )
            return {
                "posted": result.posted_count,
                "failed": result.failed_count,
                "cancelled": result.cancelled_count,
                "items": result.items,
            }

        return self._mutate(
            "journal.batch_post", actor_id, {"entry_ids": list(entry_ids)}, run, idempotency_key
        )

    def void(
        self, entry_id, reason: str, actor_id, effective_date=None,
        expected_version=None, idempotency_key=None,
    ) -> ApiResponse:
        payload = {
            "entry_id": entry_id, "reason": reason, "effective_date": effective_date,
            "expected_version": expected_version,
        }

        def run(s: Session, actor: UUID):
            result = self._posting(s).void(
                _uuid(entry_id, "entry_id"), reason, actor,
                effective_date=_optional_date(effective_date, "effective_date"),
                expected_version=expected_version,
            )
            return {"original": _entry_data(result.original), "reversal": _entry_data(result.reversal)}

        return self._mutate("journal.void", actor_id, payload, run, idempotency_key)

    def list_entries(self, period_id=None, status: str | None = None, source: str | None = None) -> ApiResponse:
        return self._query(
            "journal.list",
            lambda s: [
                _entry_data(e) for e in JournalSelector(s).list_entries(
                    _optional_uuid(period_id, "period_id"), status, source
                )
            ],
        )

    def entry_detail(self, entry_id) -> ApiResponse:
        return self._query(
            "journal.detail",
            lambda s: _entry_data(self._journal(s).get_entry(_uuid(entry_id, "entry_id"))),
        )

    # ------------------------------------------------------------------
    # Accruals
    # ------------------------------------------------------------------

    def create_rule(
        self,
        code: str,
        name: str,
        rule_type: str,
        frequency: str,
        lines: Sequence,
        actor_id,
        start_date=None,
        memo: str | None = None,
        deferral: Mapping | None = None,
        status: str = "active",
        idempotency_key: str | None = None,
    ) -> ApiResponse:
        payload = {
            "code": code, "name": name, "rule_type": rule_type, "frequency": frequency,
            "lines": list(lines), "start_date": start_date, "memo": memo,
            "deferral": deferral, "status": status,
        }

        def run(s: Session, actor: UUID):
            schedule = _deferral(deferral) if deferral is not None else None
            return self._scheduler(s).create_rule(
                code, name, rule_type, frequency,
                [_rule_line(raw) for raw in lines],
                actor,
                start_date=_optional_date(start_date, "start_date"),
                memo=memo,
                deferral=schedule,
                status=status,
            )

        return self._mutate("accruals.create_rule", actor_id, payload, run, idempotency_key)

    def set_rule_status(self, rule_id, status: str, actor_id, idempotency_key=None) -> ApiResponse:
        return self._mutate(
            "accruals.set_rule_status", actor_id, {"rule_id": rule_id, "status": status},
            lambda s, actor: self._scheduler(s).set_rule_status(
                _uuid(rule_id, "rule_id"), status, actor
            ),
            idempotency_key,
        )

    def list_rules(self, status: str | None = None, rule_type: str | None = None) -> ApiResponse:
        return self._query(
            "accruals.list_rules",
            lambda s: self._scheduler(s).list_rules(status, rule_type),
        )

    def rule_detail(self, rule_id) -> ApiResponse:
        return self._query(
            "accruals.rule_detail",
            lambda s: self._scheduler(s).get_rule(_uuid(rule_id, "rule_id")),
        )

    def run_due(self, as_of_date, actor_id, idempotency_key=None) -> ApiResponse:
        return self._mutate(
            "accruals.run_due", actor_id, {"as_of_date": as_of_date},
            lambda s, actor: self._scheduler(s).run_due(_date(as_of_date, "as_of_date"), actor),
            idempotency_key,
        )

    def run_reversals(self, period_id, actor_id, idempotency_key=None) -> ApiResponse:
        return self._mutate(
            "accruals.run_reversals", actor_id, {"period_id": period_id},
            lambda s, actor: self._scheduler(s).run_reversals(_uuid(period_id, "period_id"), actor),
            idempotency_key,
        )

    def run_period_end(self, period_id, actor_id, as_of_date=None, idempotency_key=None) -> ApiResponse:
        return self._mutate(
            "accruals.run_period_end", actor_id,
            {"period_id": period_id, "as_of_date": as_of_date},
            lambda s, actor: self._scheduler(s).run_period_end(
                _uuid(period_id, "period_id"), actor,
                as_of_date=_optional_date(as_of_date, "as_of_date"),
            ),
            idempotency_key,
        )

    def list_runs(self, kind: str | None = None, status: str | None = None, period_id=None) -> ApiResponse:
        return self._query(
            "accruals.list_runs",
            lambda s: self._scheduler(s).list_runs(
                kind, status, _optional_uuid(period_id, "period_id")
            ),
        )

    def run_detail(self, run_id) -> ApiResponse:
        return self._query(
            "accruals.run_detail",
            lambda s: self._scheduler(s).get_run(_uuid(run_id, "run_id")),
        )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile_period(self, period_id, only_mismatches: bool = False) -> ApiResponse:
        def run(s: Session):
            report = self._reconciliation(s).reconcile_period(
                _uuid(period_id, "period_id"), only_mismatches
            )
            return {
                "period_id": report.period_id,
                "is_reconciled": report.is_reconciled,
                "accounts": [_diff_data(d) for d in report.diffs],
            }

        return self._query("reconciliation.period", run)

    def discrepancy_details(self, period_id, account_id) -> ApiResponse:
        def run(s: Session):
            detail = self._reconciliation(s).discrepancy_details(
                _uuid(period_id, "period_id"), _uuid(account_id, "account_id")
            )
            return {
                "account": _diff_data(detail.diff),
                "cached_debit": detail.cached_debit,
                "cached_credit": detail.cached_credit,
                "recomputed_debit": detail.recomputed_debit,
                "recomputed_credit": detail.recomputed_credit,
                "postings": detail.postings,
            }

        return self._query("reconciliation.discrepancy", run)

    def auto_correct(
        self,
        period_id,
        threshold,
        actor_id,
        dry_run: bool = True,
        suspense_account_id=None,
        idempotency_key: str | None = None,
    ) -> ApiResponse:
        payload = {
            "period_id": period_id, "threshold": threshold, "dry_run": dry_run,
            "suspense_account_id": suspense_account_id,
        }

        def run(s: Session, actor: UUID):
            result = self._reconciliation(s).auto_correct(
                _uuid(period_id, "period_id"),
                threshold,
                actor,
                dry_run=dry_run,
                suspense_account_id=_optional_uuid(suspense_account_id, "suspense_account_id"),
            )
            return {
                "period_id": result.period_id,
                "threshold": result.threshold,
                "dry_run": result.dry_run,
                "corrected_count": result.corrected_count,
                "total_variance": result.total_variance,
                "corrections": result.corrections,
                "above_threshold": [_diff_data(d) for d in result.above_threshold],
                "suspense_account_id": result.suspense_account_id,
            }

        return self._mutate("reconciliation.auto_correct", actor_id, payload, run, idempotency_key)

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    def trial_balance(self, period_id) -> ApiResponse:
        return self._query(
            "balances.trial_balance",
            lambda s: _balance_sheet_data(
                LedgerSelector(s).trial_balance(_uuid(period_id, "period_id"))
            ),
        )

    def gl_balances(self, period_id) -> ApiResponse:
        """Cached per-account balances, as posting recorded them."""
        return self._query(
            "balances.gl",
            lambda s: _balance_sheet_data(
                LedgerSelector(s).gl_balances(_uuid(period_id, "period_id"))
            ),
        )

    def account_activity(self, account_id, period_id=None) -> ApiResponse:
        return self._query(
            "balances.account_activity",
            lambda s: LedgerSelector(s).postings(
                period_id=_optional_uuid(period_id, "period_id"),
                account_id=_uuid(account_id, "account_id"),
            ),
        )
