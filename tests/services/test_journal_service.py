"""
Tests for the journal entry workflow up to approval.

Covers:
- Creation validation (line count, postable accounts, entry date)
- Draft editing and the frozen-after-submit rule
- submit balance check in minor units
- reject clones the lines into a new draft
- cancel is terminal
- Optimistic concurrency through expected_version
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from ledger_kernel.domain.dtos import LineInput
from ledger_kernel.exceptions import (
    AccountNotPostableError,
    EntryNotEditableError,
    InvalidAmountError,
    InvalidEntryError,
    InvalidFieldError,
    InvalidTransitionError,
    JournalEntryNotFoundError,
    OptimisticLockError,
    UnbalancedEntryError,
)
from ledger_kernel.models.journal import EntrySource, JournalEntryStatus, LineSide
from ledger_kernel.services.journal_service import JournalService

JAN_15 = date(2024, 1, 15)


@pytest.fixture
def draft(standard_accounts, periods, create_entry):
    return create_entry(
        periods["jan"].id, JAN_15,
        standard_accounts["cash"].id, standard_accounts["revenue"].id, "500.00",
    )


class TestCreate:

    def test_draft_created(self, draft):
        assert draft.status == JournalEntryStatus.DRAFT
        assert draft.source == EntrySource.MANUAL
        assert [l.line_no for l in draft.lines] == [1, 2]
        assert draft.total_debit == Decimal("500.00")
        assert draft.version == 1

    def test_single_line_rejected(self, standard_accounts, periods, journal_service, test_actor_id):
        with pytest.raises(InvalidEntryError):
            journal_service.create(
                periods["jan"].id, JAN_15,
                [LineInput.debit(standard_accounts["cash"].id, "10.00")],
                test_actor_id,
            )

    def test_unbalanced_draft_tolerated(self, standard_accounts, periods, journal_service, test_actor_id):
        entry = journal_service.create(
            periods["jan"].id, JAN_15,
            [
                LineInput.debit(standard_accounts["cash"].id, "10.00"),
                LineInput.credit(standard_accounts["revenue"].id, "9.99"),
            ],
            test_actor_id,
        )
        assert not entry.is_balanced

    def test_entry_date_outside_period(self, standard_accounts, periods, create_entry):
        with pytest.raises(InvalidFieldError):
            create_entry(
                periods["jan"].id, date(2024, 2, 1),
                standard_accounts["cash"].id, standard_accounts["revenue"].id,
            )

    def test_header_account_rejected(self, create_account, standard_accounts, periods, create_entry):
        header = create_account("1001", "Header", is_postable=False)
        with pytest.raises(AccountNotPostableError):
            create_entry(periods["jan"].id, JAN_15, header.id, standard_accounts["revenue"].id)

    def test_sub_cent_amount_rejected(self, standard_accounts):
        with pytest.raises(InvalidAmountError):
            LineInput.debit(standard_accounts["cash"].id, "0.005")

    def test_pair_needs_exactly_one_side(self, standard_accounts):
        with pytest.raises(InvalidEntryError):
            LineInput.from_pair(standard_accounts["cash"].id, debit="1.00", credit="1.00")
        line = LineInput.from_pair(standard_accounts["cash"].id, credit="2.50")
        assert line.side == LineSide.CREDIT


class TestDraftEditing:

    def test_add_update_delete_line(self, draft, standard_accounts, journal_service, test_actor_id):
        edited = journal_service.add_line(
            draft.id, LineInput.credit(standard_accounts["suspense"].id, "1.00"), test_actor_id
        )
        assert len(edited.lines) == 3

        edited = journal_service.update_line(
            draft.id, 1, LineInput.debit(standard_accounts["cash"].id, "501.00"), test_actor_id
        )
        assert edited.is_balanced

        edited = journal_service.delete_line(draft.id, 2, test_actor_id)
        assert [l.line_no for l in edited.lines] == [1, 2]
        assert edited.lines[1].account_id == standard_accounts["suspense"].id

    def test_cannot_delete_below_two_lines(self, draft, journal_service, test_actor_id):
        with pytest.raises(InvalidEntryError):
            journal_service.delete_line(draft.id, 1, test_actor_id)

    def test_unknown_line_no(self, draft, journal_service, test_actor_id):
        with pytest.raises(InvalidFieldError):
            journal_service.delete_line(draft.id, 9, test_actor_id)

    def test_edits_bump_version(self, draft, journal_service, test_actor_id):
        edited = journal_service.update_header(draft.id, test_actor_id, memo="January sale")
        assert edited.memo == "January sale"
        assert edited.version == draft.version + 1

    def test_submitted_entry_not_editable(self, draft, standard_accounts, journal_service, test_actor_id):
        journal_service.submit(draft.id, test_actor_id)
        with pytest.raises(EntryNotEditableError):
            journal_service.add_line(
                draft.id, LineInput.debit(standard_accounts["cash"].id, "1.00"), test_actor_id
            )
        with pytest.raises(EntryNotEditableError):
            journal_service.update_header(draft.id, test_actor_id, memo="late")


class TestWorkflow:

    def test_submit_approve(self, draft, journal_service, test_actor_id):
        submitted = journal_service.submit(draft.id, test_actor_id)
        assert submitted.status == JournalEntryStatus.SUBMITTED
        approved = journal_service.approve(draft.id, test_actor_id)
        assert approved.status == JournalEntryStatus.APPROVED

    def test_submit_unbalanced(self, standard_accounts, periods, journal_service, test_actor_id):
        entry = journal_service.create(
            periods["jan"].id, JAN_15,
            [
                LineInput.debit(standard_accounts["cash"].id, "100.00"),
                LineInput.credit(standard_accounts["revenue"].id, "99.99"),
            ],
            test_actor_id,
        )
        with pytest.raises(UnbalancedEntryError) as exc_info:
            journal_service.submit(entry.id, test_actor_id)
        assert exc_info.value.debits == "100.00"
        assert exc_info.value.credits == "99.99"
        assert journal_service.get_entry(entry.id).status == JournalEntryStatus.DRAFT

    def test_approve_requires_submitted(self, draft, journal_service, test_actor_id):
        with pytest.raises(InvalidTransitionError):
            journal_service.approve(draft.id, test_actor_id)

    def test_reject_clones_into_new_draft(self, draft, journal_service, test_actor_id):
        journal_service.submit(draft.id, test_actor_id)
        result = journal_service.reject(draft.id, "Wrong customer", test_actor_id)

        assert result.rejected.status == JournalEntryStatus.REJECTED
        assert result.rejected.rejection_reason == "Wrong customer"
        assert result.draft.status == JournalEntryStatus.DRAFT
        assert result.draft.derived_from_id == draft.id
        assert result.draft.id != draft.id
        assert [(l.account_id, l.side, l.amount) for l in result.draft.lines] == [
            (l.account_id, l.side, l.amount) for l in draft.lines
        ]

    @pytest.mark.parametrize("reason", ["", "   ", "x" * 301])
    def test_reject_reason_validated(self, draft, journal_service, test_actor_id, reason):
        journal_service.submit(draft.id, test_actor_id)
        with pytest.raises(InvalidFieldError):
            journal_service.reject(draft.id, reason, test_actor_id)

    def test_reject_reason_limit_configurable(self, session, deterministic_clock, draft, test_actor_id):
        strict = JournalService(session, deterministic_clock, reason_max_length=10)
        strict.submit(draft.id, test_actor_id)
        with pytest.raises(InvalidFieldError):
            strict.reject(draft.id, "eleven char", test_actor_id)

    def test_cancel_is_terminal(self, draft, journal_service, test_actor_id):
        cancelled = journal_service.cancel(draft.id, "Duplicate", test_actor_id)
        assert cancelled.status == JournalEntryStatus.CANCELLED
        assert cancelled.cancel_reason == "Duplicate"
        with pytest.raises(InvalidTransitionError):
            journal_service.submit(draft.id, test_actor_id)
        with pytest.raises(InvalidTransitionError):
            journal_service.cancel(draft.id, "Again", test_actor_id)

    def test_unknown_entry(self, journal_service, test_actor_id):
        with pytest.raises(JournalEntryNotFoundError):
            journal_service.submit(uuid4(), test_actor_id)


class TestOptimisticConcurrency:

    def test_stale_expected_version_rejected(self, draft, journal_service, test_actor_id):
        journal_service.update_header(draft.id, test_actor_id, memo="edited elsewhere")

        with pytest.raises(OptimisticLockError) as exc_info:
            journal_service.submit(draft.id, test_actor_id, expected_version=draft.version)
        assert exc_info.value.expected_version == draft.version
        assert exc_info.value.actual_version == draft.version + 1

    def test_current_expected_version_accepted(self, draft, journal_service, test_actor_id):
        submitted = journal_service.submit(draft.id, test_actor_id, expected_version=draft.version)
        assert submitted.version == draft.version + 1
