"""Operation surface for calling layers.

Each method runs in its own transaction acquired from the store. Callers
that need several operations in one transaction use the resolver, mutator and
cloner directly with ``store.transaction()``.
"""
from datetime import datetime
import logging

from .cloner import TaskFrontierCloner
from .config import configure_logging
from .memory_store import InMemorySeriesStore
from .models import CareTask, EventMaster
from .mutator import SeriesMutator
from .resolver import OccurrenceResolver
from .store import SeriesStore, SqlSeriesStore
from .utils import now_utc
from .values import (
    CareTaskView,
    EditScope,
    Occurrence,
    OccurrenceChanges,
    OccurrenceTarget,
    SeriesDefinition,
)

logger = logging.getLogger(__name__)
# stdout handler on the package logger unless one is already attached
configure_logging()


class CalendarService:
    def __init__(self, store: SeriesStore | None = None):
        self.store = store or SqlSeriesStore()
        self.resolver = OccurrenceResolver()
        self.mutator = SeriesMutator()
        self.cloner = TaskFrontierCloner(self.resolver)

    @classmethod
    def in_memory(cls) -> 'CalendarService':
        return cls(InMemorySeriesStore())

    async def resolve(self, scope_id: str, window_start: datetime, window_end: datetime,
                      only_critical: bool = False) -> list[Occurrence]:
        async with self.store.transaction() as tx:
            return await self.resolver.resolve(tx, scope_id, window_start, window_end, only_critical=only_critical)

    async def create_series(self, scope_id: str, definition: SeriesDefinition,
                            created_by: str | None = None) -> EventMaster:
        async with self.store.transaction() as tx:
            return await self.mutator.create_series(tx, scope_id, definition, created_by=created_by)

    async def edit_occurrence(self, scope_id: str, target: OccurrenceTarget, mode: EditScope,
                              changes: OccurrenceChanges) -> None:
        async with self.store.transaction() as tx:
            await self.mutator.edit_occurrence(tx, scope_id, target, mode, changes)

    async def cancel_occurrence(self, scope_id: str, target: OccurrenceTarget, mode: EditScope) -> None:
        async with self.store.transaction() as tx:
            await self.mutator.cancel_occurrence(tx, scope_id, target, mode)

    async def clone_to_frontier(self, scope_id: str, batch_id: str, window_start: datetime,
                                window_end: datetime) -> list[CareTask]:
        async with self.store.transaction() as tx:
            return await self.cloner.clone_to_frontier(tx, scope_id, batch_id, window_start, window_end)

    async def clone_for_shift(self, scope_id: str, shift_id: str, now: datetime | None = None) -> list[CareTask]:
        async with self.store.transaction() as tx:
            return await self.cloner.clone_for_shift(tx, scope_id, shift_id, now or now_utc())

    async def get_care_tasks(self, scope_id: str, window_start: datetime, window_end: datetime,
                             only_critical: bool = False, only_not_done: bool = False) -> list[CareTaskView]:
        async with self.store.transaction() as tx:
            return await self.cloner.get_care_tasks(tx, scope_id, window_start, window_end,
                                                    only_critical=only_critical, only_not_done=only_not_done)
