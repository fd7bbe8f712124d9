"""Recurrence rule adapter.

This is the only module that knows the stored rule string format:

    DTSTART:20240101T090000Z
    RRULE:FREQ=WEEKLY;INTERVAL=1;UNTIL=20240331T235959Z;BYDAY=MO,WE

Everything else in the package works with ``RuleSpec`` values and
``RecurrenceRule`` instances. Expansion is delegated to dateutil.rrule.
"""
from dataclasses import dataclass, replace as dc_replace
from datetime import datetime
from enum import Enum
import logging

from dateutil import rrule as _rrule
from dateutil.parser import isoparse

from .errors import InvariantViolation
from .utils import as_utc

logger = logging.getLogger(__name__)


class Frequency(str, Enum):
    YEARLY = 'YEARLY'
    MONTHLY = 'MONTHLY'
    WEEKLY = 'WEEKLY'
    DAILY = 'DAILY'
    HOURLY = 'HOURLY'


class Weekday(str, Enum):
    MO = 'MO'
    TU = 'TU'
    WE = 'WE'
    TH = 'TH'
    FR = 'FR'
    SA = 'SA'
    SU = 'SU'


_FREQ_MAP = {
    Frequency.YEARLY: _rrule.YEARLY,
    Frequency.MONTHLY: _rrule.MONTHLY,
    Frequency.WEEKLY: _rrule.WEEKLY,
    Frequency.DAILY: _rrule.DAILY,
    Frequency.HOURLY: _rrule.HOURLY,
}
_WEEKDAY_MAP = {
    Weekday.MO: _rrule.MO,
    Weekday.TU: _rrule.TU,
    Weekday.WE: _rrule.WE,
    Weekday.TH: _rrule.TH,
    Weekday.FR: _rrule.FR,
    Weekday.SA: _rrule.SA,
    Weekday.SU: _rrule.SU,
}
_KNOWN_PARTS = {'FREQ', 'INTERVAL', 'UNTIL', 'COUNT', 'BYDAY'}
_STAMP = '%Y%m%dT%H%M%SZ'


def _stamp(dt: datetime) -> str:
    return as_utc(dt).strftime(_STAMP)


@dataclass(frozen=True)
class RuleSpec:
    """Decomposed recurrence definition.

    ``until`` and ``count`` are mutually exclusive; when both are given the
    ``until`` bound wins and ``count`` is dropped. Instants carry second
    precision.
    """
    start: datetime
    frequency: Frequency
    interval: int = 1
    until: datetime | None = None
    count: int | None = None
    weekdays: tuple[Weekday, ...] | None = None

    def __post_init__(self):
        set_ = object.__setattr__
        set_(self, 'start', as_utc(self.start).replace(microsecond=0))
        set_(self, 'frequency', Frequency(self.frequency))
        if self.until is not None:
            set_(self, 'until', as_utc(self.until).replace(microsecond=0))
            set_(self, 'count', None)
        if self.weekdays:
            days = {Weekday(w) for w in self.weekdays}
            set_(self, 'weekdays', tuple(w for w in Weekday if w in days))
        else:
            set_(self, 'weekdays', None)
        if self.interval is None or int(self.interval) < 1:
            raise InvariantViolation(f'rule interval must be >= 1, got {self.interval!r}')
        set_(self, 'interval', int(self.interval))
        if self.count is not None and int(self.count) < 1:
            raise InvariantViolation(f'rule count must be >= 1, got {self.count!r}')
        if self.until is not None and self.until < self.start:
            raise InvariantViolation(f'rule ends ({self.until}) before it starts ({self.start})')

    @property
    def bounded(self) -> bool:
        return self.until is not None or self.count is not None


class RecurrenceRule:
    """A parsed, expandable recurrence rule."""

    def __init__(self, spec: RuleSpec):
        self.spec = spec
        params = {
            'dtstart': spec.start,
            'freq': _FREQ_MAP[spec.frequency],
            'interval': spec.interval,
        }
        if spec.until is not None:
            params['until'] = spec.until
        elif spec.count is not None:
            params['count'] = spec.count
        if spec.weekdays:
            params['byweekday'] = tuple(_WEEKDAY_MAP[w] for w in spec.weekdays)
        self._rule = _rrule.rrule(**params)
        self._first = next(iter(self._rule), None)
        if self._first is None:
            raise InvariantViolation(f'rule {self.to_string()!r} yields no occurrences')

    @classmethod
    def build(cls, start: datetime, frequency, interval: int = 1, until: datetime | None = None,
              count: int | None = None, weekdays=None) -> 'RecurrenceRule':
        return cls(RuleSpec(start=start, frequency=frequency, interval=interval,
                            until=until, count=count,
                            weekdays=tuple(weekdays) if weekdays else None))

    @classmethod
    def parse(cls, definition: str) -> 'RecurrenceRule':
        """Parse a stored rule string; malformed input is an invariant violation."""
        try:
            start = None
            parts: dict[str, str] = {}
            for raw in (definition or '').strip().splitlines():
                line = raw.strip()
                if not line:
                    continue
                key, _, value = line.partition(':')
                key = key.upper()
                if key == 'DTSTART':
                    start = isoparse(value)
                elif key == 'RRULE':
                    for part in value.split(';'):
                        k, _, v = part.partition('=')
                        parts[k.upper()] = v
                else:
                    raise ValueError(f'unsupported line {line!r}')
            unknown = set(parts) - _KNOWN_PARTS
            if unknown:
                raise ValueError(f'unsupported rule parts {sorted(unknown)}')
            if start is None or 'FREQ' not in parts:
                raise ValueError('rule needs DTSTART and FREQ')
            spec = RuleSpec(
                start=start,
                frequency=Frequency(parts['FREQ'].upper()),
                interval=int(parts.get('INTERVAL', 1)),
                until=isoparse(parts['UNTIL']) if parts.get('UNTIL') else None,
                count=int(parts['COUNT']) if parts.get('COUNT') else None,
                weekdays=tuple(Weekday(w.upper()) for w in parts['BYDAY'].split(',')) if parts.get('BYDAY') else None,
            )
        except (ValueError, OverflowError) as e:
            raise InvariantViolation(f'cannot parse rule {definition!r}: {e}') from e
        return cls(spec)

    def to_string(self) -> str:
        s = self.spec
        rrule_parts = [f'FREQ={s.frequency.value}', f'INTERVAL={s.interval}']
        if s.until is not None:
            rrule_parts.append(f'UNTIL={_stamp(s.until)}')
        elif s.count is not None:
            rrule_parts.append(f'COUNT={s.count}')
        if s.weekdays:
            rrule_parts.append('BYDAY=' + ','.join(w.value for w in s.weekdays))
        return f'DTSTART:{_stamp(s.start)}\nRRULE:' + ';'.join(rrule_parts)

    def replace(self, **changes) -> 'RecurrenceRule':
        """Return a new rule with the given RuleSpec fields replaced."""
        if changes.get('weekdays') is not None:
            changes['weekdays'] = tuple(changes['weekdays'])
        return RecurrenceRule(dc_replace(self.spec, **changes))

    def between(self, start: datetime, end: datetime, limit: int | None = None) -> list[datetime]:
        """All occurrences in the closed window [start, end]."""
        start, end = as_utc(start), as_utc(end)
        if end < start:
            return []
        if limit is None:
            return self._rule.between(start, end, inc=True)
        out: list[datetime] = []
        for dt in self._rule.xafter(start, inc=True):
            if dt > end:
                break
            if len(out) >= limit:
                logger.warning('rule expansion truncated at %s occurrences rule=%s window=%s..%s',
                               limit, self.to_string().replace('\n', ' '), start.isoformat(), end.isoformat())
                break
            out.append(dt)
        return out

    def before(self, instant: datetime) -> datetime | None:
        """Latest occurrence strictly before ``instant``."""
        return self._rule.before(as_utc(instant), inc=False)

    def contains(self, instant: datetime) -> bool:
        instant = as_utc(instant)
        return bool(self._rule.between(instant, instant, inc=True))

    def first(self) -> datetime:
        return self._first

    def last(self) -> datetime | None:
        """Final occurrence, or None for an unbounded rule."""
        if self.spec.until is not None:
            return self._rule.before(self.spec.until, inc=True)
        if self.spec.count is not None:
            return self._rule[-1]
        return None

    def count_before(self, instant: datetime) -> int:
        instant = as_utc(instant)
        n = 0
        for dt in self._rule:
            if dt >= instant:
                break
            n += 1
        return n

    def __repr__(self):
        return f'RecurrenceRule({self.to_string()!r})'
