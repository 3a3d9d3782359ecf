"""
Module: ledger_kernel.models.idempotency
Responsibility: Stored responses for client-supplied idempotency keys.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - idempotency_key is unique.  A replay with the same request_hash
      returns the stored response; a different hash is a conflict.
"""

from sqlalchemy import JSON, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import TrackedBase


class IdempotencyRecord(TrackedBase):
    """One completed mutating request."""

    __tablename__ = "idempotency_records"

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_idempotency_key"),
    )

    idempotency_key: Mapped[str] = mapped_column(String(300), nullable=False)

    operation: Mapped[str] = mapped_column(String(100), nullable=False)

    # SHA-256 of the canonicalized request payload
    request_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    response: Mapped[dict] = mapped_column(JSON, nullable=False)
