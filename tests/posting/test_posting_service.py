"""
Tests for PostingService.

Verifies:
- post appends one LedgerPosting per line and updates the cached balance
- Closed periods refuse postings
- batch_post isolates failures and honours cancellation
- void posts a mirror entry and leaves the original lines untouched
- Ledger postings cannot be updated or deleted
"""

import threading
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from ledger_kernel.exceptions import (
    AccountNotPostableError,
    ImmutabilityViolationError,
    InvalidFieldError,
    InvalidTransitionError,
    PeriodNotFoundError,
    PeriodNotOpenError,
)
from ledger_kernel.models.journal import (
    EntrySource,
    JournalEntry,
    JournalEntryStatus,
    LineSide,
)
from ledger_kernel.models.ledger import LedgerPosting
from ledger_kernel.selectors.ledger_selector import Activity
from ledger_kernel.services.posting_service import BatchItemStatus

JAN_15 = date(2024, 1, 15)


@pytest.fixture
def approved_entry(standard_accounts, periods, create_entry, journal_service, test_actor_id):
    def _make(amount="100.00"):
        entry = create_entry(
            periods["jan"].id, JAN_15,
            standard_accounts["cash"].id, standard_accounts["revenue"].id, amount,
        )
        return journal_service.submit_and_approve(entry.id, test_actor_id)

    return _make


class TestPost:

    def test_post_appends_postings(
        self, approved_entry, posting_service, ledger_selector, test_actor_id
    ):
        entry = approved_entry("250.00")
        posted = posting_service.post(entry.id, test_actor_id)

        assert posted.status == JournalEntryStatus.POSTED
        assert posted.posted_at is not None
        postings = ledger_selector.postings(journal_entry_id=entry.id)
        assert [(p.side, p.amount) for p in postings] == [
            (LineSide.DEBIT, Decimal("250.00")),
            (LineSide.CREDIT, Decimal("250.00")),
        ]

    def test_cached_balance_matches_postings(
        self, approved_entry, posting_service, ledger_selector, standard_accounts,
        periods, test_actor_id,
    ):
        posting_service.post(approved_entry("100.00").id, test_actor_id)
        posting_service.post(approved_entry("50.25").id, test_actor_id)

        jan = periods["jan"].id
        cached = ledger_selector.cached_activity(jan)
        assert cached == ledger_selector.recomputed_activity(jan)
        assert cached[standard_accounts["cash"].id] == Activity(15025, 0)
        assert cached[standard_accounts["revenue"].id] == Activity(0, 15025)

    def test_posting_seq_gap_free_per_period(
        self, approved_entry, posting_service, ledger_selector, periods, test_actor_id
    ):
        posting_service.post(approved_entry().id, test_actor_id)
        posting_service.post(approved_entry().id, test_actor_id)

        seqs = [p.posting_seq for p in ledger_selector.postings(period_id=periods["jan"].id)]
        assert seqs == [1, 2, 3, 4]

    def test_only_approved_entries_post(
        self, standard_accounts, periods, create_entry, posting_service, test_actor_id
    ):
        draft = create_entry(
            periods["jan"].id, JAN_15,
            standard_accounts["cash"].id, standard_accounts["revenue"].id,
        )
        with pytest.raises(InvalidTransitionError):
            posting_service.post(draft.id, test_actor_id)

    def test_second_post_rejected(self, approved_entry, posting_service, test_actor_id):
        entry = approved_entry()
        posting_service.post(entry.id, test_actor_id)
        with pytest.raises(InvalidTransitionError):
            posting_service.post(entry.id, test_actor_id)

    def test_closed_period_refuses_posting(
        self, approved_entry, posting_service, period_service, journal_service,
        ledger_selector, periods, test_actor_id,
    ):
        entry = approved_entry()
        period_service.close_period(periods["jan"].id, test_actor_id)

        with pytest.raises(PeriodNotOpenError) as exc_info:
            posting_service.post(entry.id, test_actor_id)
        assert exc_info.value.period_code == "2024-01"
        assert journal_service.get_entry(entry.id).status == JournalEntryStatus.APPROVED
        assert ledger_selector.posting_count(entry.id) == 0

    def test_archived_account_refused_at_post_time(
        self, approved_entry, posting_service, account_service, standard_accounts,
        test_actor_id,
    ):
        entry = approved_entry()
        account_service.archive_account(standard_accounts["revenue"].id, test_actor_id)
        with pytest.raises(AccountNotPostableError):
            posting_service.post(entry.id, test_actor_id)

    def test_posted_event_logged(
        self, approved_entry, posting_service, captured_logs, test_actor_id
    ):
        entry = approved_entry("12.34")
        posting_service.post(entry.id, test_actor_id)

        posted = [r for r in captured_logs() if r["message"] == "journal_entry_posted"]
        assert len(posted) == 1
        assert posted[0]["entry_id"] == str(entry.id)
        assert posted[0]["total"] == "12.34"


class TestTrialBalance:

    def test_trial_balance_balances(
        self, standard_accounts, periods, post_entry, ledger_selector
    ):
        jan = periods["jan"].id
        post_entry(jan, JAN_15, standard_accounts["cash"].id, standard_accounts["revenue"].id, "900.00")
        post_entry(jan, JAN_15, standard_accounts["rent"].id, standard_accounts["cash"].id, "300.00")
        post_entry(jan, JAN_15, standard_accounts["expense"].id, standard_accounts["accrued"].id, "45.67")

        rows = ledger_selector.trial_balance(jan)
        assert [r.account_code for r in rows] == ["1000", "2100", "4000", "5000", "5100"]
        assert sum(r.debit_minor for r in rows) == sum(r.credit_minor for r in rows)

        by_code = {r.account_code: r for r in rows}
        assert by_code["1000"].balance == Decimal("600.00")
        assert by_code["4000"].balance == Decimal("900.00")
        assert by_code["2100"].balance == Decimal("45.67")

    def test_empty_period(self, periods, ledger_selector):
        assert ledger_selector.trial_balance(periods["feb"].id) == []


class TestBatchPost:

    def test_failure_isolated(
        self, approved_entry, standard_accounts, periods, create_entry,
        posting_service, journal_service, test_actor_id,
    ):
        first = approved_entry()
        draft = create_entry(
            periods["jan"].id, JAN_15,
            standard_accounts["cash"].id, standard_accounts["revenue"].id,
        )
        third = approved_entry()

        result = posting_service.batch_post([first.id, draft.id, third.id], test_actor_id)

        assert [i.status for i in result.items] == [
            BatchItemStatus.POSTED, BatchItemStatus.FAILED, BatchItemStatus.POSTED,
        ]
        assert result.items[1].error_code == "INVALID_TRANSITION"
        assert (result.posted_count, result.failed_count) == (2, 1)
        assert journal_service.get_entry(first.id).status == JournalEntryStatus.POSTED
        assert journal_service.get_entry(draft.id).status == JournalEntryStatus.DRAFT
        assert journal_service.get_entry(third.id).status == JournalEntryStatus.POSTED

    def test_failed_item_leaves_no_postings(
        self, approved_entry, posting_service, period_service, ledger_selector,
        periods, test_actor_id,
    ):
        entry = approved_entry()
        period_service.close_period(periods["jan"].id, test_actor_id)

        result = posting_service.batch_post([entry.id], test_actor_id)
        assert result.items[0].error_code == "PERIOD_NOT_OPEN"
        assert ledger_selector.posting_count(entry.id) == 0

    def test_cancelled_before_start(
        self, approved_entry, posting_service, journal_service, test_actor_id
    ):
        entries = [approved_entry(), approved_entry()]
        cancel = threading.Event()
        cancel.set()

        result = posting_service.batch_post([e.id for e in entries], test_actor_id, cancel)

        assert result.cancelled_count == 2
        for e in entries:
            assert journal_service.get_entry(e.id).status == JournalEntryStatus.APPROVED

    def test_cancel_mid_batch(
        self, approved_entry, posting_service, journal_service, test_actor_id
    ):
        entries = [approved_entry(), approved_entry(), approved_entry()]
        cancel = threading.Event()

        def ids():
            yield entries[0].id
            cancel.set()
            yield entries[1].id
            yield entries[2].id

        result = posting_service.batch_post(ids(), test_actor_id, cancel)

        assert [i.status for i in result.items] == [
            BatchItemStatus.POSTED, BatchItemStatus.CANCELLED, BatchItemStatus.CANCELLED,
        ]
        assert journal_service.get_entry(entries[1].id).status == JournalEntryStatus.APPROVED


class TestVoid:

    def test_void_posts_mirror(
        self, standard_accounts, periods, post_entry, posting_service,
        ledger_selector, test_actor_id,
    ):
        cash, revenue = standard_accounts["cash"], standard_accounts["revenue"]
        original = post_entry(periods["jan"].id, JAN_15, cash.id, revenue.id, "100.00")

        result = posting_service.void(original.id, "Customer refund", test_actor_id)

        assert result.original.status == JournalEntryStatus.VOIDED
        assert result.original.void_reason == "Customer refund"
        assert [(l.account_id, l.side, l.amount) for l in result.original.lines] == [
            (cash.id, LineSide.DEBIT, Decimal("100.00")),
            (revenue.id, LineSide.CREDIT, Decimal("100.00")),
        ]

        reversal = result.reversal
        assert reversal.status == JournalEntryStatus.POSTED
        assert reversal.source == EntrySource.VOID
        assert reversal.reversal_of_id == original.id
        assert reversal.memo.startswith("Void of ")
        assert [(l.account_id, l.side, l.amount) for l in reversal.lines] == [
            (cash.id, LineSide.CREDIT, Decimal("100.00")),
            (revenue.id, LineSide.DEBIT, Decimal("100.00")),
        ]

        net = {r.account_code: r.balance_minor for r in ledger_selector.trial_balance(periods["jan"].id)}
        assert net == {"1000": 0, "4000": 0}

    def test_void_into_later_period(
        self, standard_accounts, periods, post_entry, posting_service, test_actor_id
    ):
        original = post_entry(
            periods["jan"].id, JAN_15,
            standard_accounts["cash"].id, standard_accounts["revenue"].id,
        )
        result = posting_service.void(
            original.id, "Reversed in February", test_actor_id,
            effective_date=date(2024, 2, 3),
        )
        assert result.reversal.period_id == periods["feb"].id
        assert result.reversal.entry_date == date(2024, 2, 3)

    def test_void_date_without_period(
        self, standard_accounts, periods, post_entry, posting_service, test_actor_id
    ):
        original = post_entry(
            periods["jan"].id, JAN_15,
            standard_accounts["cash"].id, standard_accounts["revenue"].id,
        )
        with pytest.raises(PeriodNotFoundError):
            posting_service.void(
                original.id, "Too late", test_actor_id, effective_date=date(2025, 1, 1)
            )

    def test_only_posted_entries_void(self, approved_entry, posting_service, test_actor_id):
        with pytest.raises(InvalidTransitionError):
            posting_service.void(approved_entry().id, "Nope", test_actor_id)

    def test_void_twice_rejected(
        self, standard_accounts, periods, post_entry, posting_service, test_actor_id
    ):
        original = post_entry(
            periods["jan"].id, JAN_15,
            standard_accounts["cash"].id, standard_accounts["revenue"].id,
        )
        posting_service.void(original.id, "Once", test_actor_id)
        with pytest.raises(InvalidTransitionError):
            posting_service.void(original.id, "Twice", test_actor_id)

    def test_void_reason_required(
        self, standard_accounts, periods, post_entry, posting_service, test_actor_id
    ):
        original = post_entry(
            periods["jan"].id, JAN_15,
            standard_accounts["cash"].id, standard_accounts["revenue"].id,
        )
        with pytest.raises(InvalidFieldError):
            posting_service.void(original.id, " ", test_actor_id)


class TestLedgerImmutability:

    def test_posting_update_blocked(
        self, standard_accounts, periods, post_entry, session
    ):
        post_entry(
            periods["jan"].id, JAN_15,
            standard_accounts["cash"].id, standard_accounts["revenue"].id,
        )
        posting = session.scalars(select(LedgerPosting)).first()
        posting.amount_minor = 1

        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_posting_delete_blocked(
        self, standard_accounts, periods, post_entry, session
    ):
        post_entry(
            periods["jan"].id, JAN_15,
            standard_accounts["cash"].id, standard_accounts["revenue"].id,
        )
        posting = session.scalars(select(LedgerPosting)).first()
        session.delete(posting)

        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_posted_entry_memo_frozen(
        self, standard_accounts, periods, post_entry, session
    ):
        posted = post_entry(
            periods["jan"].id, JAN_15,
            standard_accounts["cash"].id, standard_accounts["revenue"].id,
        )
        entry = session.get(JournalEntry, posted.id)
        entry.memo = "rewritten"

        with pytest.raises(ImmutabilityViolationError):
            session.flush()
