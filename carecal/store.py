"""Persistence contract for series records, and its SQL implementation.

Callers acquire a unit of work with ``async with store.transaction() as tx``
and hand ``tx`` to the resolver, mutator and cloner. Leaving the block
normally commits; leaving it with an exception rolls every write back.

Rows are the SQLModel classes from carecal.models in both implementations.
Datetimes read back from SQLite are naive UTC; consumers normalize them with
carecal.utils.as_utc.
"""
from contextlib import asynccontextmanager
from datetime import datetime
import logging

from sqlalchemy import and_, or_
from sqlalchemy import delete as sqlalchemy_delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from .db import async_session
from .errors import Conflict
from .models import CareTask, CloneFrontier, EventCancellation, EventException, EventMaster
from .utils import as_utc, now_utc

logger = logging.getLogger(__name__)


class SeriesTransaction:
    """Operations available inside one transaction."""

    async def get_master(self, scope_id: str, master_id: str, lock: bool = False) -> EventMaster | None:
        """Fetch a master; ``lock`` holds a row lock until the transaction ends."""
        raise NotImplementedError

    async def masters_in_window(self, scope_id: str, start: datetime, end: datetime,
                                only_critical: bool = False) -> list[EventMaster]:
        """Masters whose [window_start, window_end] overlaps [start, end]."""
        raise NotImplementedError

    async def exceptions_in_window(self, scope_id: str, start: datetime,
                                   end: datetime) -> list[tuple[EventException, EventMaster]]:
        """Exceptions whose original or overridden instant is in [start, end], with their master."""
        raise NotImplementedError

    async def cancellations_in_window(self, scope_id: str, start: datetime, end: datetime) -> list[EventCancellation]:
        raise NotImplementedError

    async def get_exception(self, scope_id: str, exception_id: str) -> EventException | None:
        raise NotImplementedError

    async def exceptions_for_master(self, master_id: str) -> list[EventException]:
        raise NotImplementedError

    async def cancellations_for_master(self, master_id: str) -> list[EventCancellation]:
        raise NotImplementedError

    async def add(self, row) -> None:
        """Insert a new row. Unique-key collisions raise Conflict."""
        raise NotImplementedError

    async def save(self, row) -> None:
        """Persist attribute changes made to a row fetched in this transaction."""
        raise NotImplementedError

    async def delete(self, row) -> None:
        raise NotImplementedError

    async def delete_master(self, master: EventMaster) -> None:
        """Delete a master together with its exceptions and cancellations."""
        raise NotImplementedError

    async def get_frontier(self, scope_id: str) -> CloneFrontier | None:
        raise NotImplementedError

    async def set_frontier(self, scope_id: str, cloned_until: datetime) -> CloneFrontier:
        raise NotImplementedError

    async def care_tasks_in_window(self, scope_id: str, start: datetime, end: datetime,
                                   only_critical: bool = False, only_not_done: bool = False) -> list[CareTask]:
        raise NotImplementedError

    async def materialized_keys(self, scope_id: str, start: datetime, end: datetime) -> set[tuple[str, datetime]]:
        """(source_master_id, occurrence_instant) pairs already cloned into tasks in [start, end]."""
        raise NotImplementedError


class SeriesStore:
    def transaction(self):
        raise NotImplementedError


class SqlSeriesTransaction(SeriesTransaction):
    def __init__(self, sess):
        self.sess = sess

    async def get_master(self, scope_id, master_id, lock=False):
        q = select(EventMaster).where(EventMaster.id == master_id).where(EventMaster.scope_id == scope_id)
        if lock:
            q = q.with_for_update()
        res = await self.sess.exec(q)
        return res.first()

    async def masters_in_window(self, scope_id, start, end, only_critical=False):
        start, end = as_utc(start), as_utc(end)
        q = select(EventMaster).where(EventMaster.scope_id == scope_id)
        q = q.where(EventMaster.window_start <= end)
        q = q.where(or_(EventMaster.window_end == None, EventMaster.window_end >= start))  # noqa: E711
        if only_critical:
            q = q.where(EventMaster.type == 'CRITICAL')
        q = q.order_by(EventMaster.window_start, EventMaster.id)
        res = await self.sess.exec(q)
        return list(res.all())

    async def exceptions_in_window(self, scope_id, start, end):
        start, end = as_utc(start), as_utc(end)
        q = (
            select(EventException, EventMaster)
            .join(EventMaster, EventMaster.id == EventException.master_id)
            .where(EventMaster.scope_id == scope_id)
            .where(or_(
                and_(EventException.original_instant >= start, EventException.original_instant <= end),
                and_(EventException.overridden_instant >= start, EventException.overridden_instant <= end),
            ))
            .order_by(EventException.overridden_instant, EventException.id)
        )
        res = await self.sess.exec(q)
        return [(exc, master) for exc, master in res.all()]

    async def cancellations_in_window(self, scope_id, start, end):
        start, end = as_utc(start), as_utc(end)
        q = (
            select(EventCancellation)
            .join(EventMaster, EventMaster.id == EventCancellation.master_id)
            .where(EventMaster.scope_id == scope_id)
            .where(EventCancellation.original_instant >= start)
            .where(EventCancellation.original_instant <= end)
        )
        res = await self.sess.exec(q)
        return list(res.all())

    async def get_exception(self, scope_id, exception_id):
        q = (
            select(EventException)
            .join(EventMaster, EventMaster.id == EventException.master_id)
            .where(EventException.id == exception_id)
            .where(EventMaster.scope_id == scope_id)
        )
        res = await self.sess.exec(q)
        return res.first()

    async def exceptions_for_master(self, master_id):
        q = select(EventException).where(EventException.master_id == master_id)
        res = await self.sess.exec(q.order_by(EventException.original_instant, EventException.id))
        return list(res.all())

    async def cancellations_for_master(self, master_id):
        q = select(EventCancellation).where(EventCancellation.master_id == master_id)
        res = await self.sess.exec(q.order_by(EventCancellation.original_instant))
        return list(res.all())

    async def add(self, row):
        self.sess.add(row)
        await self._flush(row)

    async def save(self, row):
        self.sess.add(row)
        await self._flush(row)

    async def _flush(self, row):
        try:
            await self.sess.flush()
        except IntegrityError as e:
            raise Conflict(f'{type(row).__name__} collides with an existing row') from e

    async def delete(self, row):
        await self.sess.delete(row)
        await self.sess.flush()

    async def delete_master(self, master):
        await self.sess.exec(sqlalchemy_delete(EventException).where(EventException.master_id == master.id))
        await self.sess.exec(sqlalchemy_delete(EventCancellation).where(EventCancellation.master_id == master.id))
        await self.sess.delete(master)
        await self.sess.flush()

    async def get_frontier(self, scope_id):
        return await self.sess.get(CloneFrontier, scope_id)

    async def set_frontier(self, scope_id, cloned_until):
        frontier = await self.sess.get(CloneFrontier, scope_id)
        if frontier is None:
            frontier = CloneFrontier(scope_id=scope_id, cloned_until=cloned_until)
        else:
            frontier.cloned_until = cloned_until
            frontier.updated_at = now_utc()
        self.sess.add(frontier)
        await self.sess.flush()
        return frontier

    async def care_tasks_in_window(self, scope_id, start, end, only_critical=False, only_not_done=False):
        start, end = as_utc(start), as_utc(end)
        q = select(CareTask).where(CareTask.scope_id == scope_id)
        q = q.where(CareTask.occurrence_instant >= start).where(CareTask.occurrence_instant <= end)
        if only_critical:
            q = q.where(CareTask.type == 'CRITICAL')
        if only_not_done:
            q = q.where(CareTask.done_at == None)  # noqa: E711
        res = await self.sess.exec(q.order_by(CareTask.occurrence_instant, CareTask.id))
        return list(res.all())

    async def materialized_keys(self, scope_id, start, end):
        start, end = as_utc(start), as_utc(end)
        q = (
            select(CareTask.source_master_id, CareTask.occurrence_instant)
            .where(CareTask.scope_id == scope_id)
            .where(CareTask.source_master_id != None)  # noqa: E711
            .where(CareTask.occurrence_instant >= start)
            .where(CareTask.occurrence_instant <= end)
        )
        res = await self.sess.exec(q)
        return {(master_id, as_utc(instant)) for master_id, instant in res.all()}


class SqlSeriesStore(SeriesStore):
    """Store backed by the SQLModel async session factory."""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or async_session

    @asynccontextmanager
    async def transaction(self):
        async with self._session_factory() as sess:
            async with sess.begin():
                yield SqlSeriesTransaction(sess)
