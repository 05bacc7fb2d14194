"""Interval and time accounting over recorded execution."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from obs_sequence.execution import (
    OPEN_STATES,
    ExecutionState,
    ReducedExecutionState,
    reduce_execution_events,
)
from obs_sequence.models import DatasetStage, ValidationError
from obs_sequence.storage import EventLogSnapshot


class Interval(BaseModel):
    """Closed time interval ``[start, end]``."""

    model_config = ConfigDict(frozen=True)

    start: datetime = Field(..., description="Earliest event time")
    end: datetime = Field(..., description="Latest event time")

    @model_validator(mode="after")
    def _ordered(self) -> "Interval":
        if self.end < self.start:
            raise ValueError("Interval end precedes its start")
        return self

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


def interval_of(
    snapshot: EventLogSnapshot,
    subject_id: str,
    states: Optional[ReducedExecutionState] = None,
) -> Optional[Interval]:
    """Time spanned by a visit, atom, step or dataset and its descendants.

    Returns None while the subject has no events or is still open: an atom or
    step that is not started or ongoing, a visit holding an ongoing atom, or a
    dataset without ``end_write`` whose step is still open.

    Raises:
        ValidationError: If ``subject_id`` is not a recorded subject.
    """
    if states is None:
        states = reduce_execution_events(snapshot)

    if not _closed(snapshot, states, subject_id):
        return None

    events = snapshot.subtree_events(subject_id)
    if not events:
        return None
    return Interval(start=events[0].received_at, end=events[-1].received_at)


def _closed(
    snapshot: EventLogSnapshot, states: ReducedExecutionState, subject_id: str
) -> bool:
    if subject_id in snapshot.atoms:
        return states.atom_states[subject_id] not in OPEN_STATES
    if subject_id in snapshot.steps:
        return states.step_states[subject_id] not in OPEN_STATES
    if subject_id in snapshot.visits:
        return all(
            states.atom_states[a.id] is not ExecutionState.ONGOING
            for a in snapshot.atoms_for(subject_id)
        )
    if subject_id in snapshot.datasets:
        written = any(
            e.stage == DatasetStage.END_WRITE.value
            for e in snapshot.events_for(subject_id)
        )
        step_id = snapshot.datasets[subject_id].step_id
        return written or states.step_states[step_id] not in OPEN_STATES
    raise ValidationError(f"Subject '{subject_id}' not found")


def total_duration(intervals: Iterable[Optional[Interval]]) -> timedelta:
    """Sum of interval durations; open (None) intervals contribute nothing."""
    total = timedelta(0)
    for interval in intervals:
        if interval is not None:
            total += interval.duration
    return total
