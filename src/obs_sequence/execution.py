"""Execution state resolver.

Derives the execution state of every atom and step from the event log.
State is never stored; it is recomputed from a snapshot on every read.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field

from obs_sequence.models import (
    AtomStage,
    DatasetQaState,
    EventKind,
    ExecutionEvent,
    StepStage,
    ValidationError,
)
from obs_sequence.storage import EventLogSnapshot

logger = logging.getLogger("obs_sequence.execution")

SortKey = Tuple[datetime, int]

# ── Section 1: Execution State ───────────────────────────────────────────────


class ExecutionState(str, Enum):
    """Derived execution state of an atom or step."""

    NOT_STARTED = "not_started"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


OPEN_STATES = frozenset({ExecutionState.NOT_STARTED, ExecutionState.ONGOING})

_START_STAGES = {
    EventKind.ATOM_STAGE: AtomStage.START_ATOM.value,
    EventKind.STEP_STAGE: StepStage.START_STEP.value,
}

# ── Section 2: Reducer Output Models ─────────────────────────────────────────


class ExecutionAnomaly(BaseModel):
    """Non-fatal issue encountered while reducing execution events."""

    model_config = ConfigDict(frozen=True)

    event_id: int = Field(..., description="ID of the event that caused the anomaly")
    subject_id: str = Field(..., description="Subject of the problematic event")
    reason: str = Field(..., description="Human-readable explanation")


class ReducedExecutionState(BaseModel):
    """Projected execution state from reduce_execution_events()."""

    model_config = ConfigDict(frozen=True)

    atom_states: Dict[str, ExecutionState] = Field(
        default_factory=dict, description="atom id -> execution state"
    )
    step_states: Dict[str, ExecutionState] = Field(
        default_factory=dict, description="step id -> execution state"
    )
    start_keys: Dict[str, Tuple[datetime, int]] = Field(
        default_factory=dict,
        description="atom/step id -> (received_at, id) of its earliest event",
    )
    anomalies: Tuple[ExecutionAnomaly, ...] = Field(
        default_factory=tuple, description="Non-fatal issues encountered"
    )
    event_count: int = Field(default=0, description="Total events processed")
    last_processed_event_id: Optional[int] = Field(
        default=None, description="Last event id in processed sequence"
    )

    def state(self, subject_id: str) -> ExecutionState:
        if subject_id in self.atom_states:
            return self.atom_states[subject_id]
        if subject_id in self.step_states:
            return self.step_states[subject_id]
        raise ValidationError(f"Subject '{subject_id}' not found")


# ── Section 3: Ordering Helpers ──────────────────────────────────────────────


def event_sort_key(event: ExecutionEvent) -> SortKey:
    """Total order over events: timestamp first, insertion id breaks ties."""
    return (event.received_at, event.id)


def dedup_events(events: Iterable[ExecutionEvent]) -> List[ExecutionEvent]:
    """Drop repeated event ids, keeping the first occurrence."""
    seen: Set[int] = set()
    unique: List[ExecutionEvent] = []
    for event in events:
        if event.id in seen:
            continue
        seen.add(event.id)
        unique.append(event)
    return unique


# ── Section 4: Reducer ───────────────────────────────────────────────────────


def reduce_execution_events(
    snapshot: EventLogSnapshot,
    events: Optional[Sequence[ExecutionEvent]] = None,
) -> ReducedExecutionState:
    """Fold the event log into per-atom and per-step execution state.

    Pipeline:
    1. Sort by (received_at, id)
    2. Deduplicate by id
    3. Record each subject's first event and terminal flag
    4. Propagate start keys upwards (dataset -> step -> atom)
    5. Resolve siblings: completed, ongoing (latest started, parent open)
       or abandoned

    Pure function. ``events`` defaults to the snapshot's own events and may
    be given in any order.
    """
    source = snapshot.events if events is None else events
    unique_events = dedup_events(sorted(source, key=event_sort_key))

    first_seen: Dict[str, SortKey] = {}
    terminal: Set[str] = set()
    started: Set[str] = set()
    anomalies: List[ExecutionAnomaly] = []

    for event in unique_events:
        sid = event.subject_id
        if event.kind is EventKind.SEQUENCE_COMMAND:
            continue
        if not _known(snapshot, event):
            anomalies.append(ExecutionAnomaly(
                event_id=event.id,
                subject_id=sid,
                reason=f"Event for unknown {event.kind.value} subject",
            ))
            continue

        if sid in terminal:
            anomalies.append(ExecutionAnomaly(
                event_id=event.id,
                subject_id=sid,
                reason=f"Event after terminal state ({event.stage})",
            ))
            continue

        start_stage = _START_STAGES.get(event.kind)
        if event.stage == start_stage:
            if sid in started:
                anomalies.append(ExecutionAnomaly(
                    event_id=event.id,
                    subject_id=sid,
                    reason=f"Duplicate {start_stage} (first one wins)",
                ))
            started.add(sid)

        if event.is_terminal:
            if sid not in started:
                anomalies.append(ExecutionAnomaly(
                    event_id=event.id,
                    subject_id=sid,
                    reason=f"Terminal event {event.stage} without {start_stage}",
                ))
            terminal.add(sid)

        first_seen.setdefault(sid, event_sort_key(event))

    start_keys = _propagate_start_keys(snapshot, first_seen)
    atom_states = _resolve_atoms(snapshot, start_keys, terminal)
    step_states = _resolve_steps(snapshot, start_keys, terminal, atom_states)

    if anomalies:
        logger.warning(
            "Execution reduction recorded %d anomalies", len(anomalies)
        )

    return ReducedExecutionState(
        atom_states=atom_states,
        step_states=step_states,
        start_keys={
            sid: key for sid, key in start_keys.items()
            if sid in snapshot.atoms or sid in snapshot.steps
        },
        anomalies=tuple(anomalies),
        event_count=len(unique_events),
        last_processed_event_id=unique_events[-1].id if unique_events else None,
    )


def _known(snapshot: EventLogSnapshot, event: ExecutionEvent) -> bool:
    registry = {
        EventKind.ATOM_STAGE: snapshot.atoms,
        EventKind.STEP_STAGE: snapshot.steps,
        EventKind.DATASET_STAGE: snapshot.datasets,
    }[event.kind]
    return event.subject_id in registry


def _propagate_start_keys(
    snapshot: EventLogSnapshot, first_seen: Dict[str, SortKey]
) -> Dict[str, SortKey]:
    keys = dict(first_seen)

    def lift(child: str, parent: str) -> None:
        if child not in keys:
            return
        if parent not in keys or keys[child] < keys[parent]:
            keys[parent] = keys[child]

    for dataset in snapshot.datasets.values():
        lift(dataset.id, dataset.step_id)
    for step in snapshot.steps.values():
        lift(step.id, step.atom_id)
    return keys


def _resolve_siblings(
    siblings: Iterable[str],
    start_keys: Dict[str, SortKey],
    terminal: Set[str],
    parent_open: bool,
) -> Dict[str, ExecutionState]:
    ids = list(siblings)
    begun = [sid for sid in ids if sid in start_keys]
    latest = max(begun, key=lambda sid: start_keys[sid]) if begun else None

    states: Dict[str, ExecutionState] = {}
    for sid in ids:
        if sid not in start_keys:
            states[sid] = ExecutionState.NOT_STARTED
        elif sid in terminal:
            states[sid] = ExecutionState.COMPLETED
        elif sid == latest and parent_open:
            states[sid] = ExecutionState.ONGOING
        else:
            states[sid] = ExecutionState.ABANDONED
    return states


def _resolve_atoms(
    snapshot: EventLogSnapshot,
    start_keys: Dict[str, SortKey],
    terminal: Set[str],
) -> Dict[str, ExecutionState]:
    # Atoms of every visit of an observation compete as siblings: only the
    # visit holding the most recently started atom is still open.
    by_observation: Dict[str, List[str]] = {}
    for atom in snapshot.atoms.values():
        observation_id = snapshot.visits[atom.visit_id].observation_id
        by_observation.setdefault(observation_id, []).append(atom.id)

    states: Dict[str, ExecutionState] = {}
    for atom_ids in by_observation.values():
        states.update(_resolve_siblings(atom_ids, start_keys, terminal, True))
    return states


def _resolve_steps(
    snapshot: EventLogSnapshot,
    start_keys: Dict[str, SortKey],
    terminal: Set[str],
    atom_states: Dict[str, ExecutionState],
) -> Dict[str, ExecutionState]:
    states: Dict[str, ExecutionState] = {}
    for atom_id in snapshot.atoms:
        parent_open = atom_states[atom_id] is ExecutionState.ONGOING
        step_ids = snapshot.children_of(atom_id)
        states.update(_resolve_siblings(step_ids, start_keys, terminal, parent_open))
    return states


# ── Section 5: Queries ───────────────────────────────────────────────────────


def state_of(snapshot: EventLogSnapshot, subject_id: str) -> ExecutionState:
    """Execution state of a single atom or step.

    Raises:
        ValidationError: If ``subject_id`` is not a recorded atom or step.
    """
    return reduce_execution_events(snapshot).state(subject_id)


def step_successfully_completed(
    snapshot: EventLogSnapshot,
    states: ReducedExecutionState,
    step_id: str,
) -> bool:
    """True when the step completed and none of its datasets failed QA.

    QA state never changes execution state; it only decides whether a
    completed step counts towards sequence progress.
    """
    if states.step_states.get(step_id) is not ExecutionState.COMPLETED:
        return False
    return all(
        d.qa_state is not DatasetQaState.FAIL for d in snapshot.datasets_for(step_id)
    )
