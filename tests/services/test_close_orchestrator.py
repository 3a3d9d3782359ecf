"""
Tests for PeriodCloseOrchestrator.

Covers:
- close_preview and close agree on the blocker set
- Forced close requires a justification and records it
- Period-end accruals run before the blocker check
- Roll-forward of revenue and expense into retained earnings, idempotent
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select, text
from sqlalchemy.exc import OperationalError

from ledger_kernel.db.engine import session_scope
from ledger_kernel.domain.dtos import LineInput, RuleLineInput
from ledger_kernel.exceptions import (
    InvalidFieldError,
    PeriodHasBlockingEntriesError,
    PeriodNotOpenError,
)
from ledger_kernel.models.accrual import RunItemOutcome
from ledger_kernel.models.fiscal_period import PeriodStatus
from ledger_kernel.models.journal import (
    EntrySource,
    JournalEntryStatus,
    JournalEntryType,
    LineSide,
)
from ledger_kernel.models.ledger import AccountPeriodBalance
from ledger_kernel.services.account_service import AccountService
from ledger_kernel.services.journal_service import JournalService
from ledger_kernel.services.period_service import PeriodService
from ledger_services._close_types import BlockerKind
from ledger_services.period_close_orchestrator import PeriodCloseOrchestrator

JAN_10 = date(2024, 1, 10)


class TestClosePreview:

    def test_clean_period_can_close(self, standard_accounts, periods, post_entry, close_orchestrator):
        post_entry(periods["jan"].id, JAN_10, standard_accounts["cash"].id, standard_accounts["revenue"].id)
        preview = close_orchestrator.close_preview(periods["jan"].id)
        assert preview.blockers == ()
        assert preview.can_close

    def test_open_entries_block(
        self, standard_accounts, periods, create_entry, journal_service,
        close_orchestrator, test_actor_id,
    ):
        jan = periods["jan"].id
        cash, revenue = standard_accounts["cash"].id, standard_accounts["revenue"].id
        approved = create_entry(jan, JAN_10, cash, revenue)
        journal_service.submit_and_approve(approved.id, test_actor_id)
        submitted = create_entry(jan, JAN_10, cash, revenue)
        journal_service.submit(submitted.id, test_actor_id)
        draft = create_entry(jan, JAN_10, cash, revenue)

        preview = close_orchestrator.close_preview(jan)

        assert [(b.kind, b.journal_entry_id) for b in preview.blockers] == [
            (BlockerKind.DRAFT_ENTRY, draft.id),
            (BlockerKind.SUBMITTED_ENTRY, submitted.id),
            (BlockerKind.UNPOSTED_APPROVED_ENTRY, approved.id),
        ]
        assert not preview.can_close

    def test_terminal_entries_do_not_block(
        self, standard_accounts, periods, create_entry, journal_service,
        close_orchestrator, test_actor_id,
    ):
        entry = create_entry(
            periods["jan"].id, JAN_10, standard_accounts["cash"].id, standard_accounts["revenue"].id
        )
        journal_service.cancel(entry.id, "Not needed", test_actor_id)
        assert close_orchestrator.close_preview(periods["jan"].id).can_close

    def test_reconciliation_mismatch_blocks(
        self, standard_accounts, periods, post_entry, session, close_orchestrator
    ):
        post_entry(periods["jan"].id, JAN_10, standard_accounts["cash"].id, standard_accounts["revenue"].id)
        balance = session.scalars(
            select(AccountPeriodBalance).where(
                AccountPeriodBalance.account_id == standard_accounts["cash"].id
            )
        ).one()
        balance.debit_minor += 1
        session.flush()

        [blocker] = close_orchestrator.close_preview(periods["jan"].id).blockers
        assert blocker.kind == BlockerKind.RECONCILIATION_MISMATCH
        assert blocker.account_id == standard_accounts["cash"].id


class TestClose:

    def test_close_clean_period(self, periods, close_orchestrator, test_actor_id):
        result = close_orchestrator.close(periods["jan"].id, test_actor_id)
        assert result.period.status == PeriodStatus.CLOSED
        assert not result.forced
        assert result.overridden_blockers == ()

    def test_close_refused_with_preview_blockers(
        self, standard_accounts, periods, create_entry, close_orchestrator,
        period_service, test_actor_id,
    ):
        create_entry(periods["jan"].id, JAN_10, standard_accounts["cash"].id, standard_accounts["revenue"].id)
        preview = close_orchestrator.close_preview(periods["jan"].id)

        with pytest.raises(PeriodHasBlockingEntriesError) as exc_info:
            close_orchestrator.close(periods["jan"].id, test_actor_id)

        assert exc_info.value.blockers == [b.to_dict() for b in preview.blockers]
        assert period_service.get_period(periods["jan"].id).status == PeriodStatus.OPEN

    def test_force_requires_justification(self, periods, close_orchestrator, test_actor_id):
        with pytest.raises(InvalidFieldError):
            close_orchestrator.close(periods["jan"].id, test_actor_id, force=True)
        with pytest.raises(InvalidFieldError):
            close_orchestrator.close(periods["jan"].id, test_actor_id, force=True, justification="  ")

    def test_forced_close_records_justification(
        self, standard_accounts, periods, create_entry, close_orchestrator, test_actor_id
    ):
        create_entry(periods["jan"].id, JAN_10, standard_accounts["cash"].id, standard_accounts["revenue"].id)

        result = close_orchestrator.close(
            periods["jan"].id, test_actor_id, force=True, justification="Year-end deadline"
        )

        assert result.forced
        assert [b.kind for b in result.overridden_blockers] == [BlockerKind.DRAFT_ENTRY]
        assert result.period.close_justification == "Year-end deadline"

    def test_closed_period_cannot_close_again(self, periods, close_orchestrator, test_actor_id):
        close_orchestrator.close(periods["jan"].id, test_actor_id)
        with pytest.raises(PeriodNotOpenError):
            close_orchestrator.close(periods["jan"].id, test_actor_id)

    def test_period_locked_before_blockers_computed(
        self, periods, close_orchestrator, monkeypatch, test_actor_id
    ):
        calls = []
        lock_for_close = PeriodService.lock_for_close
        close_preview = PeriodCloseOrchestrator.close_preview

        def recording_lock(service, period_id):
            calls.append("lock")
            return lock_for_close(service, period_id)

        def recording_preview(orchestrator, period_id):
            calls.append("preview")
            return close_preview(orchestrator, period_id)

        monkeypatch.setattr(PeriodService, "lock_for_close", recording_lock)
        monkeypatch.setattr(PeriodCloseOrchestrator, "close_preview", recording_preview)

        close_orchestrator.close(periods["jan"].id, test_actor_id)

        assert calls == ["lock", "preview"]

    def test_auto_run_accruals_drafts_block_close(
        self, standard_accounts, periods, accrual_scheduler, close_orchestrator,
        journal_selector, test_actor_id,
    ):
        accrual_scheduler.create_rule(
            "AUDIT", "Audit fee", "recurring", "period_end",
            [
                RuleLineInput(standard_accounts["expense"].id, LineSide.DEBIT, Decimal("400.00")),
                RuleLineInput(standard_accounts["accrued"].id, LineSide.CREDIT, Decimal("400.00")),
            ],
            test_actor_id,
        )

        with pytest.raises(PeriodHasBlockingEntriesError):
            close_orchestrator.close(periods["jan"].id, test_actor_id, auto_run_accruals=True)

        [draft] = journal_selector.find_by_source(EntrySource.ACCRUAL, "AUDIT")
        assert draft.status == JournalEntryStatus.DRAFT
        assert draft.entry_date == periods["jan"].end_date

    def test_auto_run_accruals_reported_on_forced_close(
        self, standard_accounts, periods, accrual_scheduler, close_orchestrator, test_actor_id
    ):
        accrual_scheduler.create_rule(
            "AUDIT", "Audit fee", "recurring", "period_end",
            [
                RuleLineInput(standard_accounts["expense"].id, LineSide.DEBIT, Decimal("400.00")),
                RuleLineInput(standard_accounts["accrued"].id, LineSide.CREDIT, Decimal("400.00")),
            ],
            test_actor_id,
        )

        result = close_orchestrator.close(
            periods["jan"].id, test_actor_id,
            force=True, justification="Accrual reviewed next month", auto_run_accruals=True,
        )
        assert [i.outcome for i in result.accrual_run.items] == [RunItemOutcome.CREATED]

    def test_lock_cycle(self, periods, close_orchestrator, test_actor_id):
        jan = periods["jan"].id
        close_orchestrator.close(jan, test_actor_id)
        assert close_orchestrator.lock(jan, test_actor_id).status == PeriodStatus.LOCKED
        assert close_orchestrator.unlock(jan, test_actor_id).status == PeriodStatus.CLOSED
        assert close_orchestrator.reopen(jan, test_actor_id).status == PeriodStatus.OPEN


class TestRollForward:

    @pytest.fixture
    def closed_january(self, standard_accounts, periods, post_entry, close_orchestrator, test_actor_id):
        """January with 1,000.00 revenue and 300.00 rent, closed."""
        jan = periods["jan"].id
        post_entry(jan, JAN_10, standard_accounts["cash"].id, standard_accounts["revenue"].id, "1000.00")
        post_entry(jan, JAN_10, standard_accounts["rent"].id, standard_accounts["cash"].id, "300.00")
        close_orchestrator.close(jan, test_actor_id)
        return periods["jan"]

    def test_closes_income_into_retained_earnings(
        self, closed_january, standard_accounts, periods, close_orchestrator,
        journal_service, ledger_selector, test_actor_id,
    ):
        result = close_orchestrator.roll_forward(closed_january.id, test_actor_id)

        assert result.net_income == Decimal("700.00")
        assert result.target_period_id == periods["feb"].id
        assert not result.already_rolled
        assert set(result.closed_account_ids) == {
            standard_accounts["revenue"].id, standard_accounts["rent"].id,
        }

        entry = journal_service.get_entry(result.journal_entry_id)
        assert entry.status == JournalEntryStatus.POSTED
        assert entry.entry_type == JournalEntryType.CLOSING
        assert entry.source == EntrySource.ROLL_FORWARD
        assert entry.source_ref == str(closed_january.id)
        assert entry.entry_date == date(2024, 2, 1)
        assert [(l.account_id, l.side, l.amount) for l in entry.lines] == [
            (standard_accounts["revenue"].id, LineSide.DEBIT, Decimal("1000.00")),
            (standard_accounts["rent"].id, LineSide.CREDIT, Decimal("300.00")),
            (standard_accounts["retained_earnings"].id, LineSide.CREDIT, Decimal("700.00")),
        ]

        feb = {r.account_code: r.balance for r in ledger_selector.trial_balance(periods["feb"].id)}
        assert feb["3100"] == Decimal("700.00")

    def test_second_roll_forward_returns_existing(
        self, closed_january, close_orchestrator, journal_selector, test_actor_id
    ):
        first = close_orchestrator.roll_forward(closed_january.id, test_actor_id)
        second = close_orchestrator.roll_forward(closed_january.id, test_actor_id)

        assert second.already_rolled
        assert second.journal_entry_id == first.journal_entry_id
        assert second.net_income == Decimal("700.00")
        assert len(journal_selector.find_by_source(EntrySource.ROLL_FORWARD, str(closed_january.id))) == 1

    def test_repeat_after_target_closed(
        self, closed_january, periods, close_orchestrator, test_actor_id
    ):
        first = close_orchestrator.roll_forward(closed_january.id, test_actor_id)
        close_orchestrator.close(periods["feb"].id, test_actor_id)

        second = close_orchestrator.roll_forward(closed_january.id, test_actor_id)
        assert second.already_rolled
        assert second.journal_entry_id == first.journal_entry_id

    def test_open_source_rejected(self, periods, close_orchestrator, test_actor_id):
        with pytest.raises(InvalidFieldError):
            close_orchestrator.roll_forward(periods["jan"].id, test_actor_id)

    def test_closed_target_rejected(
        self, closed_january, periods, close_orchestrator, test_actor_id
    ):
        close_orchestrator.close(periods["feb"].id, test_actor_id)
        with pytest.raises(PeriodNotOpenError):
            close_orchestrator.roll_forward(closed_january.id, test_actor_id)

    def test_explicit_target(self, closed_january, periods, close_orchestrator, test_actor_id):
        result = close_orchestrator.roll_forward(
            closed_january.id, test_actor_id, target_period_id=periods["mar"].id
        )
        assert result.target_period_id == periods["mar"].id

    def test_nothing_to_close(self, periods, close_orchestrator, test_actor_id):
        close_orchestrator.close(periods["jan"].id, test_actor_id)
        result = close_orchestrator.roll_forward(periods["jan"].id, test_actor_id)
        assert result.journal_entry_id is None
        assert result.net_income == Decimal("0.00")

    def test_net_loss_debits_retained_earnings(
        self, standard_accounts, periods, post_entry, close_orchestrator,
        journal_service, test_actor_id,
    ):
        post_entry(periods["jan"].id, JAN_10, standard_accounts["expense"].id, standard_accounts["cash"].id, "80.00")
        close_orchestrator.close(periods["jan"].id, test_actor_id)

        result = close_orchestrator.roll_forward(periods["jan"].id, test_actor_id)

        assert result.net_income == Decimal("-80.00")
        entry = journal_service.get_entry(result.journal_entry_id)
        assert entry.lines[-1].account_id == standard_accounts["retained_earnings"].id
        assert entry.lines[-1].side == LineSide.DEBIT


@pytest.mark.postgres
class TestCloseLocking:
    """Needs real row locks; SQLite ignores FOR UPDATE."""

    def test_new_draft_waits_for_close_in_progress(
        self, session_factory, deterministic_clock, test_actor_id
    ):
        with session_scope(session_factory) as s:
            accounts = AccountService(s, deterministic_clock)
            cash = accounts.create_account("1000", "Cash", "asset", test_actor_id)
            revenue = accounts.create_account("4000", "Revenue", "revenue", test_actor_id)
            jan = PeriodService(s, deterministic_clock).create_period(
                "2024-01", date(2024, 1, 1), date(2024, 1, 31), test_actor_id
            )

        closer = session_factory()
        try:
            PeriodService(closer, deterministic_clock).lock_for_close(jan.id)

            with pytest.raises(OperationalError):
                with session_scope(session_factory) as s:
                    s.execute(text("SET LOCAL lock_timeout = '200ms'"))
                    JournalService(s, deterministic_clock).create(
                        jan.id, JAN_10,
                        [LineInput.debit(cash.id, "10.00"), LineInput.credit(revenue.id, "10.00")],
                        test_actor_id,
                    )
        finally:
            closer.rollback()
            closer.close()
