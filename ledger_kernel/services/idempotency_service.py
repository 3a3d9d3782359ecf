"""
IdempotencyService -- stored responses for client idempotency keys.

Responsibility:
    Remembers the response of every mutating request that carried an
    idempotency key, so a retried request returns the first response
    instead of applying twice.

Architecture position:
    Kernel > Services -- imperative shell.  Used by LedgerApi.

Invariants enforced:
    - A key maps to exactly one (operation, request_hash) pair.
    - Only successful responses are stored.  A failed request leaves no
      record, so the client may retry it.

Failure modes:
    - IdempotencyConflictError: the key was used for a different request.
"""

from typing import Any

from sqlalchemy import select

from ledger_kernel.exceptions import IdempotencyConflictError
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.idempotency import IdempotencyRecord
from ledger_kernel.services.base import BaseService
from ledger_kernel.utils.hashing import hash_payload

logger = get_logger("services.idempotency")


class IdempotencyService(BaseService):

    def lookup(self, idempotency_key: str, operation: str, payload: Any) -> dict | None:
        """
        Return the stored response for a replay, or None for a new key.

        Raises:
            IdempotencyConflictError: same key, different operation or payload.
        """
        record = self.session.execute(
            select(IdempotencyRecord).where(
                IdempotencyRecord.idempotency_key == idempotency_key
            )
        ).scalar_one_or_none()
        if record is None:
            return None

        if record.operation != operation or record.request_hash != hash_payload(payload):
            logger.warning(
                "idempotency_key_conflict",
                extra={"idempotency_key": idempotency_key, "operation": operation},
            )
            raise IdempotencyConflictError(idempotency_key, operation)

        logger.info(
            "idempotency_key_replayed",
            extra={"idempotency_key": idempotency_key, "operation": operation},
        )
        return record.response

    def store(
        self,
        idempotency_key: str,
        operation: str,
        payload: Any,
        response: dict,
        actor_id,
    ) -> None:
        self.session.add(IdempotencyRecord(
            idempotency_key=idempotency_key,
            operation=operation,
            request_hash=hash_payload(payload),
            response=response,
            created_by_id=actor_id,
        ))
        self.session.flush()
