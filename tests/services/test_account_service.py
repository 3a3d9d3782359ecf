"""
Tests for AccountService.

Covers:
- Code uniqueness and normal-balance derivation
- Hierarchy: header parents, cycle detection on reparent
- Archive is terminal and blocks postings
- account_type frozen once postings exist
"""

from datetime import date

import pytest

from ledger_kernel.exceptions import (
    AccountHierarchyError,
    AccountNotFoundError,
    AccountNotPostableError,
    DuplicateCodeError,
    ImmutabilityViolationError,
    InvalidFieldError,
    InvalidTransitionError,
)
from ledger_kernel.models.account import AccountStatus, AccountTag, AccountType, NormalBalance


class TestCreateAccount:

    @pytest.mark.parametrize(
        "account_type, normal",
        [
            (AccountType.ASSET, NormalBalance.DEBIT),
            (AccountType.EXPENSE, NormalBalance.DEBIT),
            (AccountType.LIABILITY, NormalBalance.CREDIT),
            (AccountType.EQUITY, NormalBalance.CREDIT),
            (AccountType.REVENUE, NormalBalance.CREDIT),
        ],
    )
    def test_normal_balance_derived(self, create_account, account_type, normal):
        account = create_account("9000", "Any", account_type)
        assert account.normal_balance == normal

    def test_duplicate_code_rejected(self, create_account):
        create_account("1000", "Cash")
        with pytest.raises(DuplicateCodeError):
            create_account("1000", "Cash again")

    def test_blank_code_rejected(self, create_account):
        with pytest.raises(InvalidFieldError):
            create_account("  ", "Nothing")

    def test_unknown_type_rejected(self, create_account):
        with pytest.raises(InvalidFieldError):
            create_account("1000", "Cash", "cash")

    def test_parent_must_be_header(self, create_account):
        cash = create_account("1000", "Cash")
        with pytest.raises(AccountHierarchyError):
            create_account("1010", "Petty Cash", parent_id=cash.id)

    def test_child_of_header(self, create_account):
        header = create_account("1000", "Current Assets", is_postable=False)
        child = create_account("1010", "Petty Cash", parent_id=header.id)
        assert child.parent_id == header.id


class TestReparent:

    def test_cycle_rejected(self, create_account, account_service, test_actor_id):
        assets = create_account("1000", "Assets", is_postable=False)
        current = create_account("1100", "Current", is_postable=False, parent_id=assets.id)

        with pytest.raises(AccountHierarchyError) as exc_info:
            account_service.reparent(assets.id, current.id, test_actor_id)
        assert "cycle" in exc_info.value.reason

    def test_self_parent_rejected(self, create_account, account_service, test_actor_id):
        assets = create_account("1000", "Assets", is_postable=False)
        with pytest.raises(AccountHierarchyError):
            account_service.reparent(assets.id, assets.id, test_actor_id)

    def test_move_and_detach(self, create_account, account_service, test_actor_id):
        a = create_account("1000", "A", is_postable=False)
        b = create_account("2000", "B", is_postable=False)
        leaf = create_account("1010", "Leaf", parent_id=a.id)

        moved = account_service.reparent(leaf.id, b.id, test_actor_id)
        assert moved.parent_id == b.id

        detached = account_service.reparent(leaf.id, None, test_actor_id)
        assert detached.parent_id is None

    def test_header_with_children_cannot_become_postable(
        self, create_account, account_service, test_actor_id
    ):
        header = create_account("1000", "Assets", is_postable=False)
        create_account("1010", "Cash", parent_id=header.id)
        with pytest.raises(AccountHierarchyError):
            account_service.update_account(header.id, test_actor_id, is_postable=True)


class TestArchive:

    def test_archive_is_terminal(self, create_account, account_service, test_actor_id):
        cash = create_account("1000", "Cash")
        archived = account_service.archive_account(cash.id, test_actor_id)
        assert archived.status == AccountStatus.ARCHIVED

        with pytest.raises(InvalidTransitionError):
            account_service.update_account(cash.id, test_actor_id, status=AccountStatus.ACTIVE)

    def test_archived_not_postable(self, create_account, account_service, test_actor_id):
        cash = create_account("1000", "Cash")
        account_service.archive_account(cash.id, test_actor_id)
        with pytest.raises(AccountNotPostableError):
            account_service.require_postable(cash.id)

    def test_inactive_still_postable(self, create_account, account_service, test_actor_id):
        cash = create_account("1000", "Cash")
        account_service.update_account(cash.id, test_actor_id, status=AccountStatus.INACTIVE)
        assert account_service.require_postable(cash.id).id == cash.id

    def test_archived_hidden_from_default_listing(
        self, create_account, account_service, test_actor_id
    ):
        cash = create_account("1000", "Cash")
        create_account("1100", "Bank")
        account_service.archive_account(cash.id, test_actor_id)

        assert [a.code for a in account_service.list_accounts()] == ["1100"]
        assert len(account_service.list_accounts(include_archived=True)) == 2


class TestAccountTypeFreeze:

    def test_type_change_allowed_before_postings(
        self, create_account, account_service, test_actor_id
    ):
        account = create_account("1500", "Misc", AccountType.ASSET)
        updated = account_service.update_account(
            account.id, test_actor_id, account_type=AccountType.EXPENSE
        )
        assert updated.account_type == AccountType.EXPENSE
        assert updated.normal_balance == NormalBalance.DEBIT

    def test_type_frozen_after_postings(
        self, standard_accounts, periods, post_entry, account_service, test_actor_id
    ):
        post_entry(
            periods["jan"].id, date(2024, 1, 10),
            standard_accounts["cash"].id, standard_accounts["revenue"].id,
        )
        with pytest.raises(ImmutabilityViolationError):
            account_service.update_account(
                standard_accounts["cash"].id, test_actor_id, account_type=AccountType.LIABILITY
            )


class TestQueries:

    def test_get_by_code(self, standard_accounts, account_service):
        assert account_service.get_account_by_code("1000").id == standard_accounts["cash"].id

    def test_unknown_code(self, account_service):
        with pytest.raises(AccountNotFoundError):
            account_service.get_account_by_code("0000")

    def test_find_tagged(self, standard_accounts, account_service):
        assert account_service.find_tagged(AccountTag.SUSPENSE).code == "1900"
        assert account_service.find_tagged(AccountTag.ROUNDING) is None
