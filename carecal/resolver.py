"""Materialize the occurrences of every series in a scope for a window.

Masters are expanded through their recurrence rule; exceptions contribute
their overridden instant and content; cancellations and exceptions suppress
the master-derived occurrence they replace.
"""
from datetime import datetime
import logging

from . import config
from .errors import InvalidChanges
from .rules import RecurrenceRule
from .store import SeriesTransaction
from .utils import as_utc
from .values import EventType, Occurrence

logger = logging.getLogger(__name__)


class OccurrenceResolver:
    def __init__(self, max_per_master: int | None = None):
        self.max_per_master = max_per_master or config.MAX_OCCURRENCES_PER_MASTER

    async def resolve(self, tx: SeriesTransaction, scope_id: str, window_start: datetime,
                      window_end: datetime, only_critical: bool = False) -> list[Occurrence]:
        """Return the ordered occurrences of ``scope_id`` inside the closed window."""
        window_start, window_end = as_utc(window_start), as_utc(window_end)
        if window_end < window_start:
            raise InvalidChanges(f'window ends ({window_end}) before it starts ({window_start})')

        masters = await tx.masters_in_window(scope_id, window_start, window_end, only_critical=only_critical)
        exceptions = await tx.exceptions_in_window(scope_id, window_start, window_end)
        cancellations = await tx.cancellations_in_window(scope_id, window_start, window_end)

        cancelled = {(c.master_id, as_utc(c.original_instant)) for c in cancellations}
        overridden = {(exc.master_id, as_utc(exc.original_instant)) for exc, _ in exceptions}

        candidates: list[Occurrence] = []
        for master in masters:
            rule = RecurrenceRule.parse(master.rule)
            for instant in rule.between(window_start, window_end, limit=self.max_per_master):
                key = (master.id, instant)
                if key in cancelled or key in overridden:
                    continue
                candidates.append(Occurrence(
                    master_id=master.id,
                    scope_id=master.scope_id,
                    instant=instant,
                    title=master.title,
                    description=master.description,
                    type=EventType(master.type),
                    rule=master.rule,
                ))

        for exc, master in exceptions:
            instant = as_utc(exc.overridden_instant)
            # loaded only because its original instant is in the window
            if instant < window_start or instant > window_end:
                continue
            etype = EventType(exc.type or master.type)
            if only_critical and etype != EventType.CRITICAL:
                continue
            candidates.append(Occurrence(
                master_id=master.id,
                scope_id=master.scope_id,
                instant=instant,
                title=exc.title if exc.title is not None else master.title,
                description=exc.description if exc.description is not None else master.description,
                type=etype,
                rule=master.rule,
                exception_id=exc.id,
                original_instant=as_utc(exc.original_instant),
            ))

        # sorted() is stable, ties keep master-then-exception input order
        out = sorted(candidates, key=lambda o: o.instant)
        logger.debug('resolve scope_id=%s window=%s..%s masters=%s exceptions=%s cancellations=%s occurrences=%s',
                     scope_id, window_start.isoformat(), window_end.isoformat(),
                     len(masters), len(exceptions), len(cancellations), len(out))
        return out
