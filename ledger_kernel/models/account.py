"""
Module: ledger_kernel.models.account
Responsibility: ORM persistence for the Chart of Accounts, the target of
    every journal line and ledger posting.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - code is unique and never changes after creation.
    - account_type is frozen once the account has ledger postings
      (db/immutability.py).
    - Archived accounts accept no new postings (AccountService.require_postable).
    - parent_id forms an acyclic tree (AccountService.reparent).

Failure modes:
    - AccountNotFoundError when a line references a missing account.
    - AccountNotPostableError for header or archived accounts.
"""

from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, Boolean, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import TrackedBase, UUIDString
from ledger_kernel.db.types import EnumString


class AccountType(str, Enum):
    """Types of accounts in the chart of accounts."""

    ASSET = "asset"
    LIABILITY = "liability"
    EQUITY = "equity"
    REVENUE = "revenue"
    EXPENSE = "expense"


class NormalBalance(str, Enum):
    """Normal balance side for an account."""

    DEBIT = "debit"
    CREDIT = "credit"


class AccountStatus(str, Enum):
    """Lifecycle status.  ARCHIVED is terminal."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class AccountTag(str, Enum):
    """Tags that designate system accounts."""

    ROUNDING = "rounding"
    SUSPENSE = "suspense"
    RETAINED_EARNINGS = "retained_earnings"


DEBIT_NORMAL_TYPES = frozenset({AccountType.ASSET, AccountType.EXPENSE})


def normal_balance_for(account_type: AccountType) -> NormalBalance:
    """Assets and expenses are debit-normal, everything else credit-normal."""
    if AccountType(account_type) in DEBIT_NORMAL_TYPES:
        return NormalBalance.DEBIT
    return NormalBalance.CREDIT


class Account(TrackedBase):
    """
    Chart of Accounts entry.

    Contract:
        Only postable (leaf) accounts that are not archived may receive
        journal lines.  Header accounts (is_postable=False) group children.

    Guarantees:
        - normal_balance is always consistent with account_type.
        - parent_id references another Account or is NULL.
    """

    __tablename__ = "accounts"

    __table_args__ = (
        UniqueConstraint("code", name="uq_account_code"),
        Index("idx_account_type", "account_type"),
        Index("idx_account_parent", "parent_id"),
        Index("idx_account_status", "status"),
    )

    code: Mapped[str] = mapped_column(String(50), nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    account_type: Mapped[AccountType] = mapped_column(
        EnumString(AccountType),
        nullable=False,
    )

    normal_balance: Mapped[NormalBalance] = mapped_column(
        EnumString(NormalBalance, length=10),
        nullable=False,
    )

    is_postable: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    status: Mapped[AccountStatus] = mapped_column(
        EnumString(AccountStatus),
        default=AccountStatus.ACTIVE,
        nullable=False,
    )

    # Stored as an id index rather than an object graph; see AccountService.reparent
    parent_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("accounts.id"),
        nullable=True,
    )

    tags: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<Account {self.code}: {self.name}>"

    @property
    def is_archived(self) -> bool:
        return self.status == AccountStatus.ARCHIVED

    @property
    def is_debit_normal(self) -> bool:
        return self.normal_balance == NormalBalance.DEBIT

    def has_tag(self, tag: AccountTag | str) -> bool:
        """Check if account has a specific tag."""
        if not self.tags:
            return False
        tag_value = tag.value if isinstance(tag, AccountTag) else tag
        return tag_value in self.tags
