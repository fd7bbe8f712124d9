"""Scoped edit and cancel of recurring series.

Every public method takes the caller's transaction and performs all of its
writes through it, so a failure at any step leaves the master, exception and
cancellation rows exactly as they were.
"""
from datetime import datetime
from enum import Enum
import logging

from .errors import InvalidChanges, NotFound, Conflict
from .models import EventCancellation, EventException, EventMaster
from .rules import Frequency, RecurrenceRule
from .store import SeriesTransaction
from .utils import as_utc
from .values import (
    CONTENT_FIELDS,
    TIMING_FIELDS,
    EditScope,
    OccurrenceChanges,
    OccurrenceTarget,
    SeriesDefinition,
)

logger = logging.getLogger(__name__)


def _value(v):
    return v.value if isinstance(v, Enum) else v


def _apply_rule(master: EventMaster, rule: RecurrenceRule) -> None:
    master.rule = rule.to_string()
    master.window_start = rule.first()
    master.window_end = rule.last()


def _apply_content(row, changes: OccurrenceChanges) -> None:
    for name in changes.content_changed:
        value = _value(getattr(changes, name))
        if name == 'type' and value is None and isinstance(row, EventMaster):
            # a master always has a type
            continue
        setattr(row, name, value)


def _rebuild_rule(rule: RecurrenceRule, changes: OccurrenceChanges, start: datetime,
                  consumed: int = 0) -> RecurrenceRule:
    """Build the rule that results from applying ``changes`` to ``rule``.

    Unsupplied fields are inherited. ``start`` is used unless the changes carry
    a window_start. ``consumed`` is the number of occurrences the new rule no
    longer covers; an inherited count shrinks by that much.
    """
    spec = rule.spec
    supplied = changes.model_fields_set
    if 'window_start' in supplied and changes.window_start is not None:
        start = changes.window_start

    frequency = spec.frequency
    if 'frequency' in supplied and changes.frequency is not None:
        frequency = changes.frequency
    interval = spec.interval
    if 'interval' in supplied and changes.interval is not None:
        interval = changes.interval

    if 'weekdays' in supplied:
        weekdays = changes.weekdays or None
        if weekdays and frequency != Frequency.WEEKLY:
            raise InvalidChanges('weekdays can only be combined with a WEEKLY frequency')
    elif frequency != Frequency.WEEKLY:
        weekdays = None
    else:
        weekdays = spec.weekdays

    if 'window_end' in supplied:
        until = changes.window_end
        count = changes.occurrence_count if 'occurrence_count' in supplied else None
    elif 'occurrence_count' in supplied:
        until, count = None, changes.occurrence_count
    else:
        until, count = spec.until, spec.count
        if count is not None:
            count -= consumed

    return RecurrenceRule.build(start=start, frequency=frequency, interval=interval,
                                until=until, count=count, weekdays=weekdays)


def _at(rows, instant: datetime, attr: str = 'original_instant'):
    for row in rows:
        if as_utc(getattr(row, attr)) == instant:
            return row
    return None


class SeriesMutator:
    async def create_series(self, tx: SeriesTransaction, scope_id: str, definition: SeriesDefinition,
                            created_by: str | None = None) -> EventMaster:
        rule = RecurrenceRule.build(
            start=definition.window_start,
            frequency=definition.frequency,
            interval=definition.interval,
            until=definition.window_end,
            count=definition.occurrence_count,
            weekdays=definition.weekdays,
        )
        master = EventMaster(
            scope_id=scope_id,
            title=definition.title,
            description=definition.description,
            type=definition.type.value,
            created_by=created_by,
            rule='',
            window_start=rule.first(),
        )
        _apply_rule(master, rule)
        await tx.add(master)
        logger.info('create_series scope_id=%s master_id=%s rule=%s', scope_id, master.id,
                    master.rule.replace('\n', ' '))
        return master

    async def _load_master(self, tx, scope_id, master_id) -> EventMaster:
        master = await tx.get_master(scope_id, master_id, lock=True)
        if master is None:
            raise NotFound(f'event master {master_id} not found')
        return master

    async def _resolve_target(self, tx, scope_id, target: OccurrenceTarget):
        """Return (master, exception or None, instant or None) for a target."""
        if target.exception_id is not None:
            exc = await tx.get_exception(scope_id, target.exception_id)
            if exc is None or (target.master_id is not None and target.master_id != exc.master_id):
                raise NotFound(f'event exception {target.exception_id} not found')
            master = await self._load_master(tx, scope_id, exc.master_id)
            return master, exc, as_utc(exc.original_instant)
        master = await self._load_master(tx, scope_id, target.master_id)
        return master, None, as_utc(target.instant)

    async def _match_occurrence(self, tx, master, rule, instant):
        """Find what sits at ``instant``: (exception or None), or raise NotFound.

        A raw occurrence of the rule matches, possibly already overridden by an
        exception with that original instant. Otherwise an exception that was
        moved onto ``instant`` matches.
        """
        if instant is None:
            raise InvalidChanges('this operation needs the occurrence instant')
        exceptions = await tx.exceptions_for_master(master.id)
        if rule.contains(instant):
            return _at(exceptions, instant)
        moved = _at(exceptions, instant, attr='overridden_instant')
        if moved is None:
            raise NotFound(f'no occurrence of {master.id} at {instant.isoformat()}')
        return moved

    # --- edit -----------------------------------------------------------

    async def edit_occurrence(self, tx: SeriesTransaction, scope_id: str, target: OccurrenceTarget,
                              mode: EditScope, changes: OccurrenceChanges) -> None:
        mode = EditScope(mode)
        if mode == EditScope.SINGLE:
            extra = changes.supplied(*TIMING_FIELDS) - {'window_start'}
            if extra:
                raise InvalidChanges(f'single-occurrence edits cannot change {sorted(extra)}')
        master, exc, instant = await self._resolve_target(tx, scope_id, target)
        if mode == EditScope.SINGLE:
            await self._edit_single(tx, master, exc, instant, changes)
        elif mode == EditScope.THIS_AND_FUTURE:
            await self._edit_this_and_future(tx, master, instant, changes)
        else:
            await self._edit_all(tx, master, changes)

    async def _edit_single(self, tx, master, exc, instant, changes):
        if exc is None:
            rule = RecurrenceRule.parse(master.rule)
            exc = await self._match_occurrence(tx, master, rule, instant)
        if exc is None:
            cancellations = await tx.cancellations_for_master(master.id)
            if _at(cancellations, instant) is not None:
                raise Conflict(f'occurrence {instant.isoformat()} of {master.id} is cancelled')
            new_start = changes.window_start if changes.window_start is not None else instant
            exc = EventException(
                master_id=master.id,
                original_instant=instant,
                overridden_instant=new_start,
            )
            _apply_content(exc, changes)
            await tx.add(exc)
            logger.info('edit_occurrence.single created exception_id=%s master_id=%s original=%s new=%s',
                        exc.id, master.id, instant.isoformat(), new_start.isoformat())
            return
        if changes.window_start is not None:
            exc.overridden_instant = changes.window_start
        _apply_content(exc, changes)
        await tx.save(exc)
        logger.info('edit_occurrence.single updated exception_id=%s master_id=%s', exc.id, master.id)

    async def _edit_this_and_future(self, tx, master, instant, changes):
        rule = RecurrenceRule.parse(master.rule)
        matched = await self._match_occurrence(tx, master, rule, instant)
        if matched is not None:
            # a moved occurrence splits at the slot it was moved from
            instant = as_utc(matched.original_instant)
        if instant < rule.first():
            raise NotFound(f'{instant.isoformat()} is before the start of {master.id}')

        timing = changes.timing_changed
        exceptions = await tx.exceptions_for_master(master.id)
        cancellations = await tx.cancellations_for_master(master.id)
        future_cancellations = [c for c in cancellations if as_utc(c.original_instant) >= instant]
        # moved onto or past the cut, or originally at/after it
        touched = [e for e in exceptions
                   if as_utc(e.original_instant) >= instant or as_utc(e.overridden_instant) >= instant]
        if timing:
            for row in touched + future_cancellations:
                await tx.delete(row)
            touched, future_cancellations = [], []

        pivot = rule.before(instant)
        if pivot is None:
            # first occurrence: no split, rewrite the series in place
            _apply_content(master, changes)
            if timing:
                _apply_rule(master, _rebuild_rule(rule, changes, start=instant))
            await tx.save(master)
            await self._inherit_content(tx, touched, changes)
            logger.info('edit_occurrence.future in-place master_id=%s timing=%s', master.id, timing)
            return

        successor = EventMaster(
            scope_id=master.scope_id,
            title=master.title,
            description=master.description,
            type=master.type,
            created_by=master.created_by,
            rule='',
            window_start=instant,
        )
        _apply_content(successor, changes)
        _apply_rule(successor, _rebuild_rule(rule, changes, start=instant, consumed=rule.count_before(instant)))

        _apply_rule(master, rule.replace(until=pivot))
        await tx.save(master)
        await tx.add(successor)

        if not timing:
            moved = [e for e in touched if as_utc(e.original_instant) >= instant]
            for row in moved + future_cancellations:
                row.master_id = successor.id
            await self._inherit_content(tx, moved, changes)
            for row in future_cancellations:
                await tx.save(row)
        logger.info('edit_occurrence.split master_id=%s new_master_id=%s pivot=%s timing=%s',
                    master.id, successor.id, pivot.isoformat(), timing)

    async def _inherit_content(self, tx, exceptions, changes):
        """Clear the overrides for content the series just changed, so exceptions inherit it."""
        fields = changes.content_changed
        for exc in exceptions:
            for name in fields:
                setattr(exc, name, None)
            await tx.save(exc)

    async def _edit_all(self, tx, master, changes):
        _apply_content(master, changes)
        if not changes.timing_changed:
            await tx.save(master)
            logger.info('edit_occurrence.all master_id=%s fields=%s', master.id, sorted(changes.content_changed))
            return

        rule = RecurrenceRule.parse(master.rule)
        _apply_rule(master, _rebuild_rule(rule, changes, start=rule.spec.start))
        await tx.save(master)
        start, end = as_utc(master.window_start), as_utc(master.window_end)

        def outside(dt):
            dt = as_utc(dt)
            return dt < start or (end is not None and dt > end)

        dropped = 0
        for exc in await tx.exceptions_for_master(master.id):
            if outside(exc.original_instant) or outside(exc.overridden_instant):
                await tx.delete(exc)
                dropped += 1
                continue
            for name in CONTENT_FIELDS:
                setattr(exc, name, None)
            await tx.save(exc)
        for cancellation in await tx.cancellations_for_master(master.id):
            if outside(cancellation.original_instant):
                await tx.delete(cancellation)
        logger.info('edit_occurrence.all master_id=%s rule=%s dropped_exceptions=%s',
                    master.id, master.rule.replace('\n', ' '), dropped)

    # --- cancel ---------------------------------------------------------

    async def cancel_occurrence(self, tx: SeriesTransaction, scope_id: str, target: OccurrenceTarget,
                                mode: EditScope) -> None:
        mode = EditScope(mode)
        master, exc, instant = await self._resolve_target(tx, scope_id, target)
        if mode == EditScope.SINGLE:
            await self._cancel_single(tx, master, exc, instant)
        elif mode == EditScope.THIS_AND_FUTURE:
            await self._cancel_this_and_future(tx, master, instant)
        else:
            await tx.delete_master(master)
            logger.info('cancel_occurrence.all deleted master_id=%s', master.id)

    async def _cancel_single(self, tx, master, exc, instant):
        if exc is None:
            rule = RecurrenceRule.parse(master.rule)
            exc = await self._match_occurrence(tx, master, rule, instant)
        if exc is not None:
            instant = as_utc(exc.original_instant)
            await tx.delete(exc)
        cancellations = await tx.cancellations_for_master(master.id)
        if _at(cancellations, instant) is not None:
            logger.info('cancel_occurrence.single already cancelled master_id=%s instant=%s',
                        master.id, instant.isoformat())
            return
        await tx.add(EventCancellation(master_id=master.id, original_instant=instant))
        logger.info('cancel_occurrence.single master_id=%s instant=%s replaced_exception=%s',
                    master.id, instant.isoformat(), exc.id if exc is not None else None)

    async def _cancel_this_and_future(self, tx, master, cut):
        if cut is None:
            raise InvalidChanges('cancelling this and future occurrences needs an instant')
        rule = RecurrenceRule.parse(master.rule)
        matched = await self._match_occurrence(tx, master, rule, cut)
        if matched is not None:
            cut = as_utc(matched.original_instant)
        for exc in await tx.exceptions_for_master(master.id):
            if as_utc(exc.overridden_instant) >= cut or as_utc(exc.original_instant) >= cut:
                await tx.delete(exc)
        for cancellation in await tx.cancellations_for_master(master.id):
            if as_utc(cancellation.original_instant) >= cut:
                await tx.delete(cancellation)

        pivot = rule.before(cut)
        if pivot is None:
            await tx.delete_master(master)
            logger.info('cancel_occurrence.future deleted master_id=%s cut=%s', master.id, cut.isoformat())
            return
        _apply_rule(master, rule.replace(until=pivot))
        await tx.save(master)
        logger.info('cancel_occurrence.future truncated master_id=%s pivot=%s', master.id, pivot.isoformat())
