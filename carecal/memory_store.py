"""In-memory implementation of the series store.

Keeps every table in a dict keyed by primary key. A transaction works on
copies of the committed rows and swaps them in on success, so a failing
mutation leaves nothing behind. Transactions are serialized with an
asyncio.Lock, which stands in for the SQL store's row locks.
"""
import asyncio
from contextlib import asynccontextmanager
import logging

from .errors import Conflict
from .models import CareTask, CloneFrontier, EventCancellation, EventException, EventMaster
from .store import SeriesStore, SeriesTransaction
from .utils import as_utc, now_utc

logger = logging.getLogger(__name__)

_TABLES = (EventMaster, EventException, EventCancellation, CloneFrontier, CareTask)

# unique keys besides the primary key, per table
_UNIQUE = {
    EventException: ('master_id', 'original_instant'),
    EventCancellation: ('master_id', 'original_instant'),
    CareTask: ('source_master_id', 'occurrence_instant'),
}


def _pk(row):
    return row.scope_id if isinstance(row, CloneFrontier) else row.id


def _copy(row):
    return type(row)(**row.model_dump())


def _in(dt, start, end) -> bool:
    return start <= as_utc(dt) <= end


class InMemorySeriesTransaction(SeriesTransaction):
    def __init__(self, tables: dict):
        self.tables = tables

    def _rows(self, model) -> list:
        return list(self.tables[model].values())

    async def get_master(self, scope_id, master_id, lock=False):
        master = self.tables[EventMaster].get(master_id)
        if master is None or master.scope_id != scope_id:
            return None
        return master

    async def masters_in_window(self, scope_id, start, end, only_critical=False):
        start, end = as_utc(start), as_utc(end)
        out = [
            m for m in self._rows(EventMaster)
            if m.scope_id == scope_id
            and as_utc(m.window_start) <= end
            and (m.window_end is None or as_utc(m.window_end) >= start)
            and (not only_critical or m.type == 'CRITICAL')
        ]
        return sorted(out, key=lambda m: (as_utc(m.window_start), m.id))

    async def exceptions_in_window(self, scope_id, start, end):
        start, end = as_utc(start), as_utc(end)
        masters = self.tables[EventMaster]
        out = []
        for exc in self._rows(EventException):
            master = masters.get(exc.master_id)
            if master is None or master.scope_id != scope_id:
                continue
            if _in(exc.original_instant, start, end) or _in(exc.overridden_instant, start, end):
                out.append((exc, master))
        return sorted(out, key=lambda pair: (as_utc(pair[0].overridden_instant), pair[0].id))

    async def cancellations_in_window(self, scope_id, start, end):
        start, end = as_utc(start), as_utc(end)
        masters = self.tables[EventMaster]
        return [
            c for c in self._rows(EventCancellation)
            if c.master_id in masters and masters[c.master_id].scope_id == scope_id
            and _in(c.original_instant, start, end)
        ]

    async def get_exception(self, scope_id, exception_id):
        exc = self.tables[EventException].get(exception_id)
        if exc is None:
            return None
        master = self.tables[EventMaster].get(exc.master_id)
        if master is None or master.scope_id != scope_id:
            return None
        return exc

    async def exceptions_for_master(self, master_id):
        out = [e for e in self._rows(EventException) if e.master_id == master_id]
        return sorted(out, key=lambda e: (as_utc(e.original_instant), e.id))

    async def cancellations_for_master(self, master_id):
        out = [c for c in self._rows(EventCancellation) if c.master_id == master_id]
        return sorted(out, key=lambda c: as_utc(c.original_instant))

    def _check_unique(self, row):
        table = self.tables[type(row)]
        existing = table.get(_pk(row))
        if existing is not None and existing is not row:
            raise Conflict(f'{type(row).__name__} {_pk(row)} already exists')
        names = _UNIQUE.get(type(row))
        if not names:
            return
        key = tuple(getattr(row, n) for n in names)
        if any(k is None for k in key):
            return
        key = tuple(as_utc(k) if n.endswith('instant') else k for n, k in zip(names, key))
        for other in table.values():
            if other is row:
                continue
            other_key = tuple(as_utc(getattr(other, n)) if n.endswith('instant') else getattr(other, n) for n in names)
            if other_key == key:
                raise Conflict(f'{type(row).__name__} collides with an existing row on {names}')

    async def add(self, row):
        self._check_unique(row)
        self.tables[type(row)][_pk(row)] = row

    async def save(self, row):
        self._check_unique(row)
        self.tables[type(row)][_pk(row)] = row

    async def delete(self, row):
        self.tables[type(row)].pop(_pk(row), None)

    async def delete_master(self, master):
        for model in (EventException, EventCancellation):
            table = self.tables[model]
            for key in [k for k, r in table.items() if r.master_id == master.id]:
                del table[key]
        self.tables[EventMaster].pop(master.id, None)

    async def get_frontier(self, scope_id):
        return self.tables[CloneFrontier].get(scope_id)

    async def set_frontier(self, scope_id, cloned_until):
        frontier = self.tables[CloneFrontier].get(scope_id)
        if frontier is None:
            frontier = CloneFrontier(scope_id=scope_id, cloned_until=cloned_until)
            self.tables[CloneFrontier][scope_id] = frontier
        else:
            frontier.cloned_until = cloned_until
            frontier.updated_at = now_utc()
        return frontier

    async def care_tasks_in_window(self, scope_id, start, end, only_critical=False, only_not_done=False):
        start, end = as_utc(start), as_utc(end)
        out = [
            t for t in self._rows(CareTask)
            if t.scope_id == scope_id and _in(t.occurrence_instant, start, end)
            and (not only_critical or t.type == 'CRITICAL')
            and (not only_not_done or t.done_at is None)
        ]
        return sorted(out, key=lambda t: (as_utc(t.occurrence_instant), t.id))

    async def materialized_keys(self, scope_id, start, end):
        start, end = as_utc(start), as_utc(end)
        return {
            (t.source_master_id, as_utc(t.occurrence_instant))
            for t in self._rows(CareTask)
            if t.scope_id == scope_id and t.source_master_id is not None
            and _in(t.occurrence_instant, start, end)
        }


class InMemorySeriesStore(SeriesStore):
    def __init__(self):
        self._tables = {model: {} for model in _TABLES}
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self):
        async with self._lock:
            working = {model: {k: _copy(r) for k, r in rows.items()} for model, rows in self._tables.items()}
            yield InMemorySeriesTransaction(working)
            # only reached when the block exits cleanly
            self._tables = working

    def rows(self, model) -> list:
        """Committed rows of one table (test helper)."""
        return list(self._tables[model].values())
