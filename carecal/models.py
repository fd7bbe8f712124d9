import uuid
from typing import Optional
from datetime import datetime

from sqlmodel import SQLModel, Field
from sqlalchemy import UniqueConstraint

from .utils import now_utc


def new_id() -> str:
    return uuid.uuid4().hex


class EventMaster(SQLModel, table=True):
    """A recurring series.

    ``rule`` is the opaque recurrence string understood only by
    carecal.rules. ``window_start``/``window_end`` mirror the rule's first and
    last occurrence so overlapping series can be found with a range query;
    ``window_end`` is NULL for unbounded series.
    """
    id: str = Field(default_factory=new_id, primary_key=True)
    scope_id: str = Field(index=True)
    title: Optional[str] = None
    description: Optional[str] = None
    type: str = Field(default='NORMAL', index=True)
    rule: str
    window_start: datetime = Field(index=True)
    window_end: Optional[datetime] = Field(default=None, index=True)
    created_by: Optional[str] = None
    created_at: datetime | None = Field(default_factory=now_utc)


class EventException(SQLModel, table=True):
    """Moves and/or renames exactly one occurrence of a series.

    Null content fields inherit from the master.
    """
    __table_args__ = (UniqueConstraint('master_id', 'original_instant', name='uq_eventexception_master_original'),)
    id: str = Field(default_factory=new_id, primary_key=True)
    master_id: str = Field(foreign_key='eventmaster.id', index=True)
    original_instant: datetime = Field(index=True)
    overridden_instant: datetime = Field(index=True)
    title: Optional[str] = None
    description: Optional[str] = None
    type: Optional[str] = None


class EventCancellation(SQLModel, table=True):
    """Removes exactly one occurrence of a series."""
    __table_args__ = (UniqueConstraint('master_id', 'original_instant', name='uq_eventcancellation_master_original'),)
    id: str = Field(default_factory=new_id, primary_key=True)
    master_id: str = Field(foreign_key='eventmaster.id', index=True)
    original_instant: datetime = Field(index=True)


class CloneFrontier(SQLModel, table=True):
    """Per-scope watermark: occurrences up to cloned_until are materialized."""
    scope_id: str = Field(primary_key=True)
    cloned_until: datetime
    updated_at: datetime | None = Field(default_factory=now_utc)


class CareTask(SQLModel, table=True):
    """A concrete task materialized from an occurrence.

    Once created it lives independently of the series; source_master_id is
    kept for traceability only (no foreign key, the master may be deleted).
    """
    __table_args__ = (UniqueConstraint('source_master_id', 'occurrence_instant', name='uq_caretask_master_instant'),)
    id: str = Field(default_factory=new_id, primary_key=True)
    scope_id: str = Field(index=True)
    batch_id: Optional[str] = Field(default=None, index=True)
    title: Optional[str] = None
    description: Optional[str] = None
    type: str = Field(default='NORMAL')
    occurrence_instant: datetime = Field(index=True)
    source_master_id: Optional[str] = Field(default=None, index=True)
    source_exception_id: Optional[str] = None
    done_at: Optional[datetime] = None
    done_by: Optional[str] = None
    details: Optional[str] = None
    created_at: datetime | None = Field(default_factory=now_utc)
