"""Copy resolved occurrences into concrete care tasks behind a watermark.

Each scope keeps a CloneFrontier (``cloned_until``). Occurrences up to the
frontier exist as CareTask rows that caregivers complete independently of the
series; occurrences after it are still virtual and come straight from the
resolver.
"""
from datetime import datetime, timedelta
import logging

from . import config
from .errors import Conflict, InvalidChanges
from .models import CareTask
from .resolver import OccurrenceResolver
from .store import SeriesTransaction
from .utils import as_utc, end_of_day, start_of_day
from .values import CareTaskView, EventType

logger = logging.getLogger(__name__)


def shift_clone_window(cloned_until: datetime | None, now: datetime) -> tuple[datetime, datetime]:
    """Window a shift start should materialize.

    The first shift ever (no frontier yet) reaches back to the start of
    yesterday; later shifts continue from the frontier. Both run through the
    end of tomorrow.
    """
    now = as_utc(now)
    end = end_of_day(now + timedelta(days=config.CLONE_LOOKAHEAD_DAYS))
    if cloned_until is None:
        return start_of_day(now - timedelta(days=config.CLONE_LOOKBACK_DAYS)), end
    return as_utc(cloned_until), end


def _task_view(task: CareTask) -> CareTaskView:
    return CareTaskView(
        id=task.id,
        scope_id=task.scope_id,
        title=task.title,
        description=task.description,
        type=EventType(task.type),
        instant=as_utc(task.occurrence_instant),
        master_id=task.source_master_id,
        batch_id=task.batch_id,
        done_at=as_utc(task.done_at),
        done_by=task.done_by,
        details=task.details,
    )


class TaskFrontierCloner:
    def __init__(self, resolver: OccurrenceResolver | None = None):
        self.resolver = resolver or OccurrenceResolver()

    async def clone_to_frontier(self, tx: SeriesTransaction, scope_id: str, batch_id: str,
                                window_start: datetime, window_end: datetime) -> list[CareTask]:
        """Materialize the window into tasks for ``batch_id`` and advance the frontier.

        Occurrences that already have a task (same master and instant) are
        skipped, so overlapping windows never duplicate rows.
        """
        window_start, window_end = as_utc(window_start), as_utc(window_end)
        frontier = await tx.get_frontier(scope_id)
        if frontier is not None and window_end <= as_utc(frontier.cloned_until):
            raise Conflict(f'scope {scope_id} is already cloned until {as_utc(frontier.cloned_until).isoformat()}')

        occurrences = await self.resolver.resolve(tx, scope_id, window_start, window_end)
        existing = await tx.materialized_keys(scope_id, window_start, window_end)
        created: list[CareTask] = []
        skipped = 0
        for occ in occurrences:
            key = (occ.master_id, occ.instant)
            if key in existing:
                skipped += 1
                logger.info('clone_to_frontier skip materialized master_id=%s instant=%s exception_id=%s',
                            occ.master_id, occ.instant.isoformat(), occ.exception_id)
                continue
            existing.add(key)
            task = CareTask(
                scope_id=scope_id,
                batch_id=batch_id,
                title=occ.title,
                description=occ.description,
                type=occ.type.value,
                occurrence_instant=occ.instant,
                source_master_id=occ.master_id,
                source_exception_id=occ.exception_id,
            )
            await tx.add(task)
            created.append(task)

        await tx.set_frontier(scope_id, window_end)
        logger.info('clone_to_frontier scope_id=%s batch_id=%s window=%s..%s created=%s skipped=%s',
                    scope_id, batch_id, window_start.isoformat(), window_end.isoformat(), len(created), skipped)
        return created

    async def clone_for_shift(self, tx: SeriesTransaction, scope_id: str, shift_id: str,
                              now: datetime) -> list[CareTask]:
        frontier = await tx.get_frontier(scope_id)
        start, end = shift_clone_window(frontier.cloned_until if frontier else None, now)
        if frontier is not None and end <= as_utc(frontier.cloned_until):
            logger.info('clone_for_shift nothing to clone scope_id=%s shift_id=%s', scope_id, shift_id)
            return []
        return await self.clone_to_frontier(tx, scope_id, shift_id, start, end)

    async def get_care_tasks(self, tx: SeriesTransaction, scope_id: str, window_start: datetime,
                             window_end: datetime, only_critical: bool = False,
                             only_not_done: bool = False) -> list[CareTaskView]:
        """Tasks in the window: materialized rows plus occurrences past the frontier.

        Virtual entries (``id is None``) are never done, and are left out
        entirely when ``only_not_done`` is set since they cannot be acted on yet.
        """
        window_start, window_end = as_utc(window_start), as_utc(window_end)
        if window_end < window_start:
            raise InvalidChanges(f'window ends ({window_end}) before it starts ({window_start})')
        tasks = await tx.care_tasks_in_window(scope_id, window_start, window_end,
                                              only_critical=only_critical, only_not_done=only_not_done)
        out = [_task_view(t) for t in tasks]

        if not only_not_done:
            frontier = await tx.get_frontier(scope_id)
            cloned_until = as_utc(frontier.cloned_until) if frontier else None
            occurrences = await self.resolver.resolve(tx, scope_id, window_start, window_end,
                                                      only_critical=only_critical)
            for occ in occurrences:
                if cloned_until is not None and occ.instant <= cloned_until:
                    continue
                out.append(CareTaskView(
                    id=None,
                    scope_id=occ.scope_id,
                    title=occ.title,
                    description=occ.description,
                    type=occ.type,
                    instant=occ.instant,
                    master_id=occ.master_id,
                ))
        return sorted(out, key=lambda t: t.instant)
