"""
AccountService -- chart-of-accounts registry.

Responsibility:
    Creates and edits accounts, maintains the parent hierarchy, and answers
    the postability question for the journal engine.

Architecture position:
    Kernel > Services -- imperative shell.  Leaf dependency of every other
    ledger service.

Invariants enforced:
    - code is unique and immutable (there is no operation that changes it).
    - account_type is frozen once the account has postings.
    - Archiving is terminal.
    - The parent graph is acyclic.  Parent links are validated against an
      id -> parent_id index on every reparent.
    - A parent is a non-postable header account that is not archived.

Failure modes:
    - DuplicateCodeError, AccountNotFoundError, AccountHierarchyError,
      AccountNotPostableError, InvalidTransitionError,
      ImmutabilityViolationError.
"""

from uuid import UUID

from sqlalchemy import func, select

from ledger_kernel.domain.dtos import AccountInfo
from ledger_kernel.exceptions import (
    AccountHierarchyError,
    AccountNotFoundError,
    AccountNotPostableError,
    DuplicateCodeError,
    ImmutabilityViolationError,
    InvalidFieldError,
    InvalidTransitionError,
)
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.account import (
    Account,
    AccountStatus,
    AccountTag,
    AccountType,
    normal_balance_for,
)
from ledger_kernel.models.ledger import LedgerPosting
from ledger_kernel.services.base import BaseService

logger = get_logger("services.account")


class AccountService(BaseService):
    """
    Chart-of-accounts registry.

    Contract:
        All mutations flush within the caller's transaction.  Read methods
        return AccountInfo DTOs; ``require_postable`` returns the ORM row
        for use by other kernel services.
    """

    # =========================================================================
    # Mutations
    # =========================================================================

    def create_account(
        self,
        code: str,
        name: str,
        account_type: AccountType | str,
        actor_id: UUID,
        is_postable: bool = True,
        parent_id: UUID | None = None,
        status: AccountStatus | str = AccountStatus.ACTIVE,
        tags: list[str] | None = None,
    ) -> AccountInfo:
        """Create an account.  normal_balance is derived from account_type."""
        code = (code or "").strip()
        if not code:
            raise InvalidFieldError("code", "must not be empty")
        if not (name or "").strip():
            raise InvalidFieldError("name", "must not be empty")
        account_type = self._parse_enum(AccountType, account_type, "account_type")
        status = self._parse_enum(AccountStatus, status, "status")

        existing = self.session.execute(
            select(Account.id).where(Account.code == code)
        ).scalar_one_or_none()
        if existing is not None:
            raise DuplicateCodeError("Account", code)

        if parent_id is not None:
            self._validate_parent(self._get(parent_id))

        account = Account(
            code=code,
            name=name.strip(),
            account_type=account_type,
            normal_balance=normal_balance_for(account_type),
            is_postable=is_postable,
            status=status,
            parent_id=parent_id,
            tags=list(tags) if tags else None,
            created_by_id=actor_id,
        )
        self.session.add(account)
        self.session.flush()

        logger.info(
            "account_created",
            extra={
                "account_id": str(account.id),
                "account_code": code,
                "account_type": account_type.value,
            },
        )
        return AccountInfo.from_model(account)

    def update_account(
        self,
        account_id: UUID,
        actor_id: UUID,
        *,
        name: str | None = None,
        is_postable: bool | None = None,
        status: AccountStatus | str | None = None,
        account_type: AccountType | str | None = None,
        tags: list[str] | None = None,
    ) -> AccountInfo:
        """
        Edit account metadata.  code can never change.

        Raises:
            InvalidTransitionError: status change on an archived account.
            ImmutabilityViolationError: account_type change after postings.
            AccountHierarchyError: making a parent account postable.
        """
        account = self._get(account_id)

        if status is not None:
            status = self._parse_enum(AccountStatus, status, "status")
            if account.is_archived and status != AccountStatus.ARCHIVED:
                raise InvalidTransitionError(
                    "Account", str(account.id), account.status.value, status.value
                )
            account.status = status

        if account_type is not None:
            account_type = self._parse_enum(AccountType, account_type, "account_type")
            if account_type != account.account_type:
                if self._has_postings(account.id):
                    raise ImmutabilityViolationError(
                        "Account",
                        str(account.id),
                        "account_type cannot change once the account has postings",
                    )
                account.account_type = account_type
                account.normal_balance = normal_balance_for(account_type)

        if is_postable is not None and is_postable != account.is_postable:
            if is_postable and self._has_children(account.id):
                raise AccountHierarchyError(
                    str(account.id), str(account.id),
                    "an account with children cannot be postable",
                )
            account.is_postable = is_postable

        if name is not None:
            if not name.strip():
                raise InvalidFieldError("name", "must not be empty")
            account.name = name.strip()

        if tags is not None:
            account.tags = list(tags) or None

        account.updated_by_id = actor_id
        self.session.flush()

        logger.info("account_updated", extra={"account_id": str(account.id)})
        return AccountInfo.from_model(account)

    def archive_account(self, account_id: UUID, actor_id: UUID) -> AccountInfo:
        """Archive an account.  Archived accounts accept no new postings."""
        account = self._get(account_id)
        if not account.is_archived:
            account.status = AccountStatus.ARCHIVED
            account.updated_by_id = actor_id
            self.session.flush()
            logger.info(
                "account_archived",
                extra={"account_id": str(account.id), "account_code": account.code},
            )
        return AccountInfo.from_model(account)

    def reparent(
        self,
        account_id: UUID,
        new_parent_id: UUID | None,
        actor_id: UUID,
    ) -> AccountInfo:
        """
        Move an account under a new parent (or to the root with None).

        Walks the id -> parent_id index upward from the new parent; reaching
        the account being moved means the move would create a cycle.
        """
        account = self._get(account_id)

        if new_parent_id is not None:
            parent = self._get(new_parent_id)
            self._validate_parent(parent)

            index = dict(
                self.session.execute(select(Account.id, Account.parent_id)).all()
            )
            seen: set[UUID] = set()
            cursor: UUID | None = new_parent_id
            while cursor is not None:
                if cursor == account.id:
                    raise AccountHierarchyError(
                        str(account.id), str(new_parent_id), "would create a cycle"
                    )
                if cursor in seen:
                    # Pre-existing cycle elsewhere in the index
                    raise AccountHierarchyError(
                        str(account.id), str(new_parent_id),
                        "parent chain is already cyclic",
                    )
                seen.add(cursor)
                cursor = index.get(cursor)

        account.parent_id = new_parent_id
        account.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "account_reparented",
            extra={
                "account_id": str(account.id),
                "parent_id": str(new_parent_id) if new_parent_id else None,
            },
        )
        return AccountInfo.from_model(account)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_account(self, account_id: UUID) -> AccountInfo:
        return AccountInfo.from_model(self._get(account_id))

    def get_account_by_code(self, code: str) -> AccountInfo:
        account = self.session.execute(
            select(Account).where(Account.code == code)
        ).scalar_one_or_none()
        if account is None:
            raise AccountNotFoundError(code)
        return AccountInfo.from_model(account)

    def list_accounts(
        self,
        include_archived: bool = False,
        account_type: AccountType | str | None = None,
    ) -> list[AccountInfo]:
        query = select(Account).order_by(Account.code)
        if not include_archived:
            query = query.where(Account.status != AccountStatus.ARCHIVED)
        if account_type is not None:
            query = query.where(
                Account.account_type == self._parse_enum(AccountType, account_type, "account_type")
            )
        return [AccountInfo.from_model(a) for a in self.session.scalars(query)]

    def find_tagged(self, tag: AccountTag) -> AccountInfo | None:
        """First postable, non-archived account carrying ``tag``, by code."""
        accounts = self.session.scalars(
            select(Account)
            .where(Account.status != AccountStatus.ARCHIVED, Account.is_postable.is_(True))
            .order_by(Account.code)
        )
        for account in accounts:
            if account.has_tag(tag):
                return AccountInfo.from_model(account)
        return None

    def require_postable(self, account_id: UUID) -> Account:
        """
        Load an account that may receive journal lines.

        Inactive accounts remain postable; only header and archived
        accounts are refused.

        Raises:
            AccountNotFoundError, AccountNotPostableError.
        """
        account = self._get(account_id)
        if account.is_archived:
            raise AccountNotPostableError(account.code, "account is archived")
        if not account.is_postable:
            raise AccountNotPostableError(account.code, "header accounts cannot be posted to")
        return account

    # =========================================================================
    # Internal
    # =========================================================================

    def _get(self, account_id: UUID) -> Account:
        account = self.session.get(Account, account_id)
        if account is None:
            raise AccountNotFoundError(str(account_id))
        return account

    def _validate_parent(self, parent: Account) -> None:
        if parent.is_postable:
            raise AccountHierarchyError(
                "-", str(parent.id), "parent must be a non-postable header account"
            )
        if parent.is_archived:
            raise AccountHierarchyError("-", str(parent.id), "parent is archived")

    def _has_postings(self, account_id: UUID) -> bool:
        count = self.session.execute(
            select(func.count(LedgerPosting.id)).where(LedgerPosting.account_id == account_id)
        ).scalar_one()
        return count > 0

    def _has_children(self, account_id: UUID) -> bool:
        child = self.session.execute(
            select(Account.id).where(Account.parent_id == account_id).limit(1)
        ).scalar_one_or_none()
        return child is not None

    @staticmethod
    def _parse_enum(enum_cls, value, field: str):
        try:
            return enum_cls(value)
        except ValueError:
            raise InvalidFieldError(field, f"unknown value {value!r}") from None
