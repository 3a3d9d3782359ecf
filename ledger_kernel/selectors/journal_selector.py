"""
Module: ledger_kernel.selectors.journal_selector
Responsibility: Read-only query access to journal entries and their lines.
Architecture position: Kernel > Selectors.  May import from models/ and
    domain/dtos.  MUST NOT import from services/.

Invariants enforced:
    - Read-only.
    - Returns JournalEntryInfo DTOs with lines sorted by line_no.

Failure modes:
    - Returns None or an empty list when nothing matches (never raises on
      absence of data).
"""

from collections.abc import Iterable
from uuid import UUID

from sqlalchemy import func, select

from ledger_kernel.domain.dtos import JournalEntryInfo
from ledger_kernel.models.journal import (
    EntrySource,
    JournalEntry,
    JournalEntryStatus,
)
from ledger_kernel.selectors.base import BaseSelector


class JournalSelector(BaseSelector):
    """Selector for journal entry queries."""

    def get(self, entry_id: UUID) -> JournalEntryInfo | None:
        entry = self.session.get(JournalEntry, entry_id)
        return JournalEntryInfo.from_model(entry) if entry else None

    def list_entries(
        self,
        period_id: UUID | None = None,
        status: JournalEntryStatus | str | None = None,
        source: EntrySource | str | None = None,
    ) -> list[JournalEntryInfo]:
        """Entries by entry date, then creation order."""
        query = select(JournalEntry).order_by(
            JournalEntry.entry_date, JournalEntry.created_at, JournalEntry.id
        )
        if period_id is not None:
            query = query.where(JournalEntry.period_id == period_id)
        if status is not None:
            query = query.where(JournalEntry.status == JournalEntryStatus(status))
        if source is not None:
            query = query.where(JournalEntry.source == EntrySource(source))
        return [JournalEntryInfo.from_model(e) for e in self.session.scalars(query)]

    def entries_in_status(
        self,
        period_id: UUID,
        statuses: Iterable[JournalEntryStatus],
    ) -> list[JournalEntryInfo]:
        """Entries of one period whose status is any of ``statuses``."""
        statuses = list(statuses)
        query = (
            select(JournalEntry)
            .where(
                JournalEntry.period_id == period_id,
                JournalEntry.status.in_(statuses),
            )
            .order_by(JournalEntry.entry_date, JournalEntry.created_at, JournalEntry.id)
        )
        return [JournalEntryInfo.from_model(e) for e in self.session.scalars(query)]

    def count_by_status(self, period_id: UUID) -> dict[JournalEntryStatus, int]:
        rows = self.session.execute(
            select(JournalEntry.status, func.count(JournalEntry.id))
            .where(JournalEntry.period_id == period_id)
            .group_by(JournalEntry.status)
        ).all()
        return {status: count for status, count in rows}

    def find_by_source(self, source: EntrySource, source_ref: str) -> list[JournalEntryInfo]:
        query = (
            select(JournalEntry)
            .where(JournalEntry.source == source, JournalEntry.source_ref == source_ref)
            .order_by(JournalEntry.created_at, JournalEntry.id)
        )
        return [JournalEntryInfo.from_model(e) for e in self.session.scalars(query)]

    def reversals_of(self, entry_id: UUID) -> list[JournalEntryInfo]:
        query = (
            select(JournalEntry)
            .where(JournalEntry.reversal_of_id == entry_id)
            .order_by(JournalEntry.created_at, JournalEntry.id)
        )
        return [JournalEntryInfo.from_model(e) for e in self.session.scalars(query)]
