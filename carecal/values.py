"""Input and output value objects for the series engine.

Inputs are pydantic models so that field presence can be told apart from an
explicit null: ``SeriesChanges(window_end=None)`` makes a series unbounded,
while ``SeriesChanges()`` leaves its end alone.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .rules import Frequency, Weekday
from .utils import as_utc, end_of_day, iso_z, truncate_to_minute


class EventType(str, Enum):
    NORMAL = 'NORMAL'
    CRITICAL = 'CRITICAL'


class EditScope(str, Enum):
    SINGLE = 'single'
    THIS_AND_FUTURE = 'thisAndFuture'
    ALL = 'all'


CONTENT_FIELDS = ('title', 'description', 'type')
TIMING_FIELDS = ('window_start', 'window_end', 'frequency', 'interval', 'occurrence_count', 'weekdays')


class OccurrenceTarget(BaseModel):
    """Identifies one occurrence: an existing exception, or (master, instant)."""
    model_config = ConfigDict(frozen=True)

    master_id: Optional[str] = None
    instant: Optional[datetime] = None
    exception_id: Optional[str] = None

    @field_validator('instant')
    @classmethod
    def _utc(cls, v):
        return as_utc(v)

    @model_validator(mode='after')
    def _one_way_to_find_it(self):
        if self.exception_id is None and (self.master_id is None or self.instant is None):
            raise ValueError('target needs exception_id, or master_id together with instant')
        return self

    @classmethod
    def for_exception(cls, exception_id: str) -> 'OccurrenceTarget':
        return cls(exception_id=exception_id)

    @classmethod
    def for_occurrence(cls, master_id: str, instant: datetime) -> 'OccurrenceTarget':
        return cls(master_id=master_id, instant=instant)

    @classmethod
    def for_master(cls, master_id: str) -> 'OccurrenceTarget':
        """Target for series-wide operations where the instant is irrelevant."""
        return cls.model_construct(master_id=master_id, instant=None, exception_id=None)


class OccurrenceChanges(BaseModel):
    """Changes that apply to a single occurrence."""
    model_config = ConfigDict(extra='forbid')

    title: Optional[str] = None
    description: Optional[str] = None
    type: Optional[EventType] = None
    window_start: Optional[datetime] = None

    @field_validator('window_start')
    @classmethod
    def _minute_start(cls, v):
        return truncate_to_minute(v) if v is not None else None

    def supplied(self, *names: str) -> set[str]:
        """Subset of ``names`` that the caller explicitly set."""
        return set(names) & self.model_fields_set

    @property
    def timing_changed(self) -> bool:
        return bool(self.supplied(*TIMING_FIELDS))

    @property
    def content_changed(self) -> set[str]:
        return self.supplied(*CONTENT_FIELDS)


class SeriesChanges(OccurrenceChanges):
    """Changes that may also rewrite the recurrence rule."""

    window_end: Optional[datetime] = None
    frequency: Optional[Frequency] = None
    interval: Optional[int] = Field(default=None, ge=1)
    occurrence_count: Optional[int] = Field(default=None, ge=1)
    weekdays: Optional[list[Weekday]] = None

    @field_validator('window_end')
    @classmethod
    def _until_end_of_day(cls, v):
        return end_of_day(v) if v is not None else None


class SeriesDefinition(BaseModel):
    """Everything needed to create a new series."""
    model_config = ConfigDict(extra='forbid')

    title: str = Field(min_length=1)
    description: Optional[str] = None
    type: EventType = EventType.NORMAL
    frequency: Frequency
    interval: int = Field(default=1, ge=1)
    window_start: datetime
    window_end: Optional[datetime] = None
    occurrence_count: Optional[int] = Field(default=None, ge=1)
    weekdays: Optional[list[Weekday]] = None

    @field_validator('window_start')
    @classmethod
    def _minute_start(cls, v):
        return truncate_to_minute(v)

    @field_validator('window_end')
    @classmethod
    def _until_end_of_day(cls, v):
        return end_of_day(v) if v is not None else None

    @model_validator(mode='after')
    def _weekdays_need_weekly(self):
        if self.weekdays and self.frequency != Frequency.WEEKLY:
            raise ValueError('weekdays can only be combined with a WEEKLY frequency')
        return self


@dataclass(frozen=True)
class Occurrence:
    """One resolved occurrence, either expanded from a master or an override."""
    master_id: str
    scope_id: str
    instant: datetime
    title: str | None
    description: str | None
    type: EventType
    rule: str
    exception_id: str | None = None
    original_instant: datetime | None = None

    @property
    def composite_id(self) -> str:
        return f'{self.master_id}-{iso_z(self.instant)}'


@dataclass(frozen=True)
class CareTaskView:
    """A care task row, or an occurrence not materialized yet (id is None)."""
    id: str | None
    scope_id: str
    title: str | None
    description: str | None
    type: EventType
    instant: datetime
    master_id: str | None
    batch_id: str | None = None
    done_at: datetime | None = None
    done_by: str | None = None
    details: str | None = None
