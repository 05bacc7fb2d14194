"""Event log storage: append-only store of execution records and events.

The store is the single mutable resource in the engine. Every read used for
state derivation or sequence generation goes through an immutable
:class:`EventLogSnapshot` taken under the store lock, so a reader never sees a
partially applied write.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

from ulid import ULID

from obs_sequence.models import (
    AtomRecord,
    AtomStage,
    Breakpoint,
    DatasetQaState,
    DatasetRecord,
    DatasetStage,
    EventKind,
    ExecutionEvent,
    Instrument,
    InstrumentConfig,
    ObserveClass,
    SequenceCommand,
    SequenceType,
    StepConfig,
    StepRecord,
    StepStage,
    StorageError,
    TelescopeConfig,
    ValidationError,
    VisitRecord,
)

logger = logging.getLogger("obs_sequence.storage")


@dataclass(frozen=True)
class EventLogSnapshot:
    """Consistent, read-only view of the event log at one instant.

    ``events`` is sorted by ``(received_at, id)``. Record maps preserve
    insertion order, which is also creation order.
    """

    events: Tuple[ExecutionEvent, ...] = ()
    visits: Mapping[str, VisitRecord] = field(default_factory=dict)
    atoms: Mapping[str, AtomRecord] = field(default_factory=dict)
    steps: Mapping[str, StepRecord] = field(default_factory=dict)
    datasets: Mapping[str, DatasetRecord] = field(default_factory=dict)
    _by_subject: Mapping[str, Tuple[ExecutionEvent, ...]] = field(
        default_factory=dict, repr=False, compare=False
    )
    _children: Mapping[str, Tuple[str, ...]] = field(
        default_factory=dict, repr=False, compare=False
    )

    @classmethod
    def build(
        cls,
        events: Tuple[ExecutionEvent, ...],
        visits: Dict[str, VisitRecord],
        atoms: Dict[str, AtomRecord],
        steps: Dict[str, StepRecord],
        datasets: Dict[str, DatasetRecord],
    ) -> "EventLogSnapshot":
        ordered = tuple(sorted(events, key=lambda e: e.sort_key()))

        by_subject: Dict[str, List[ExecutionEvent]] = {}
        for event in ordered:
            by_subject.setdefault(event.subject_id, []).append(event)

        children: Dict[str, List[str]] = {}
        for visit in visits.values():
            children.setdefault(visit.observation_id, []).append(visit.id)
        for atom in atoms.values():
            children.setdefault(atom.visit_id, []).append(atom.id)
        for step in steps.values():
            children.setdefault(step.atom_id, []).append(step.id)
        for dataset in datasets.values():
            children.setdefault(dataset.step_id, []).append(dataset.id)

        return cls(
            events=ordered,
            visits=MappingProxyType(dict(visits)),
            atoms=MappingProxyType(dict(atoms)),
            steps=MappingProxyType(dict(steps)),
            datasets=MappingProxyType(dict(datasets)),
            _by_subject=MappingProxyType({k: tuple(v) for k, v in by_subject.items()}),
            _children=MappingProxyType({k: tuple(v) for k, v in children.items()}),
        )

    def events_for(self, subject_id: str) -> Tuple[ExecutionEvent, ...]:
        """Events whose subject is exactly ``subject_id``, in log order."""
        return self._by_subject.get(subject_id, ())

    def children_of(self, subject_id: str) -> Tuple[str, ...]:
        return self._children.get(subject_id, ())

    def visits_for(self, observation_id: str) -> Tuple[VisitRecord, ...]:
        return tuple(self.visits[v] for v in self.children_of(observation_id))

    def atoms_for(self, visit_id: str) -> Tuple[AtomRecord, ...]:
        return tuple(self.atoms[a] for a in self.children_of(visit_id))

    def steps_for(self, atom_id: str) -> Tuple[StepRecord, ...]:
        return tuple(self.steps[s] for s in self.children_of(atom_id))

    def datasets_for(self, step_id: str) -> Tuple[DatasetRecord, ...]:
        return tuple(self.datasets[d] for d in self.children_of(step_id))

    def descendant_ids(self, subject_id: str) -> Tuple[str, ...]:
        """All atom/step/dataset ids below ``subject_id`` (depth first)."""
        result: List[str] = []
        pending = list(reversed(self.children_of(subject_id)))
        while pending:
            sid = pending.pop()
            result.append(sid)
            pending.extend(reversed(self.children_of(sid)))
        return tuple(result)

    def subtree_events(self, subject_id: str) -> Tuple[ExecutionEvent, ...]:
        """Events of the subject and all its descendants, in log order."""
        found = list(self.events_for(subject_id))
        for sid in self.descendant_ids(subject_id):
            found.extend(self.events_for(sid))
        return tuple(sorted(found, key=lambda e: e.sort_key()))

    def command_events(self, observation_id: str) -> Tuple[ExecutionEvent, ...]:
        return tuple(
            e for e in self.events_for(observation_id)
            if e.kind is EventKind.SEQUENCE_COMMAND
        )


class EventStore(ABC):
    """Abstract append-only store for execution records and events."""

    @abstractmethod
    def record_visit(
        self,
        observation_id: str,
        instrument: Instrument,
        created_at: Optional[datetime] = None,
    ) -> VisitRecord:
        ...

    @abstractmethod
    def record_atom(
        self,
        visit_id: str,
        sequence_type: SequenceType,
        step_count: int = 0,
        generated_id: Optional[str] = None,
    ) -> AtomRecord:
        ...

    @abstractmethod
    def record_step(
        self,
        atom_id: str,
        instrument_config: InstrumentConfig,
        step_config: StepConfig,
        observe_class: ObserveClass,
        telescope_config: Optional[TelescopeConfig] = None,
        breakpoint: Breakpoint = Breakpoint.DISABLED,
        generated_id: Optional[str] = None,
    ) -> StepRecord:
        ...

    @abstractmethod
    def record_dataset(self, step_id: str, filename: str) -> DatasetRecord:
        ...

    @abstractmethod
    def set_dataset_qa_state(
        self, dataset_id: str, qa_state: Optional[DatasetQaState]
    ) -> DatasetRecord:
        ...

    @abstractmethod
    def add_sequence_event(
        self,
        observation_id: str,
        command: SequenceCommand,
        received_at: Optional[datetime] = None,
    ) -> ExecutionEvent:
        ...

    @abstractmethod
    def add_atom_event(
        self, atom_id: str, stage: AtomStage, received_at: Optional[datetime] = None
    ) -> ExecutionEvent:
        ...

    @abstractmethod
    def add_step_event(
        self, step_id: str, stage: StepStage, received_at: Optional[datetime] = None
    ) -> ExecutionEvent:
        ...

    @abstractmethod
    def add_dataset_event(
        self,
        dataset_id: str,
        stage: DatasetStage,
        received_at: Optional[datetime] = None,
    ) -> ExecutionEvent:
        ...

    @abstractmethod
    def snapshot(self) -> EventLogSnapshot:
        ...

    def reset_acquisition(
        self, observation_id: str, received_at: Optional[datetime] = None
    ) -> ExecutionEvent:
        """Rewind the acquisition sequence of an observation to its start."""
        return self.add_sequence_event(
            observation_id, SequenceCommand.RESET_ACQUISITION, received_at
        )


class InMemoryEventStore(EventStore):
    """Thread-safe in-memory event store.

    Record ids are ULIDs. Event ids are an insertion counter starting at 1,
    which is what breaks ties between events received at the same instant.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: List[ExecutionEvent] = []
        self._last_by_subject: Dict[str, ExecutionEvent] = {}
        self._visits: Dict[str, VisitRecord] = {}
        self._atoms: Dict[str, AtomRecord] = {}
        self._steps: Dict[str, StepRecord] = {}
        self._datasets: Dict[str, DatasetRecord] = {}
        self._filenames: Dict[str, str] = {}
        self._next_event_id = 1

    # ── Records ─────────────────────────────────────────────────────────────

    def record_visit(
        self,
        observation_id: str,
        instrument: Instrument,
        created_at: Optional[datetime] = None,
    ) -> VisitRecord:
        visit = VisitRecord(
            id=f"v-{ULID()}",
            observation_id=observation_id,
            instrument=instrument,
            created_at=_received(created_at),
        )
        with self._lock:
            self._visits[visit.id] = visit
        logger.debug("Recorded visit %s for %s", visit.id, observation_id)
        return visit

    def record_atom(
        self,
        visit_id: str,
        sequence_type: SequenceType,
        step_count: int = 0,
        generated_id: Optional[str] = None,
    ) -> AtomRecord:
        with self._lock:
            if visit_id not in self._visits:
                raise ValidationError(f"Visit '{visit_id}' not found")
            atom = AtomRecord(
                id=f"a-{ULID()}",
                visit_id=visit_id,
                sequence_type=sequence_type,
                step_count=step_count,
                generated_id=generated_id,
            )
            self._atoms[atom.id] = atom
        return atom

    def record_step(
        self,
        atom_id: str,
        instrument_config: InstrumentConfig,
        step_config: StepConfig,
        observe_class: ObserveClass,
        telescope_config: Optional[TelescopeConfig] = None,
        breakpoint: Breakpoint = Breakpoint.DISABLED,
        generated_id: Optional[str] = None,
    ) -> StepRecord:
        with self._lock:
            atom = self._atoms.get(atom_id)
            if atom is None:
                raise ValidationError(f"Atom '{atom_id}' not found")
            instrument = self._visits[atom.visit_id].instrument
            if instrument_config.instrument is not instrument:
                raise ValidationError(
                    f"Step instrument {instrument_config.instrument.value} does not "
                    f"match visit instrument {instrument.value}"
                )
            step = StepRecord(
                id=f"s-{ULID()}",
                atom_id=atom_id,
                instrument_config=instrument_config,
                step_config=step_config,
                telescope_config=telescope_config or TelescopeConfig(),
                observe_class=observe_class,
                breakpoint=breakpoint,
                generated_id=generated_id,
            )
            self._steps[step.id] = step
        return step

    def record_dataset(self, step_id: str, filename: str) -> DatasetRecord:
        with self._lock:
            if step_id not in self._steps:
                raise ValidationError(f"Step '{step_id}' not found")
            if filename in self._filenames:
                raise StorageError(f"Dataset filename '{filename}' already exists")
            dataset = DatasetRecord(id=f"d-{ULID()}", step_id=step_id, filename=filename)
            self._datasets[dataset.id] = dataset
            self._filenames[filename] = dataset.id
        return dataset

    def set_dataset_qa_state(
        self, dataset_id: str, qa_state: Optional[DatasetQaState]
    ) -> DatasetRecord:
        with self._lock:
            dataset = self._datasets.get(dataset_id)
            if dataset is None:
                raise ValidationError(f"Dataset '{dataset_id}' not found")
            updated = dataset.model_copy(update={"qa_state": qa_state})
            self._datasets[dataset_id] = updated
        return updated

    # ── Events ──────────────────────────────────────────────────────────────

    def add_sequence_event(
        self,
        observation_id: str,
        command: SequenceCommand,
        received_at: Optional[datetime] = None,
    ) -> ExecutionEvent:
        if not observation_id:
            raise ValidationError("observation_id must not be empty")
        return self._append(EventKind.SEQUENCE_COMMAND, observation_id, command.value, received_at)

    def add_atom_event(
        self, atom_id: str, stage: AtomStage, received_at: Optional[datetime] = None
    ) -> ExecutionEvent:
        return self._append(EventKind.ATOM_STAGE, atom_id, stage.value, received_at)

    def add_step_event(
        self, step_id: str, stage: StepStage, received_at: Optional[datetime] = None
    ) -> ExecutionEvent:
        return self._append(EventKind.STEP_STAGE, step_id, stage.value, received_at)

    def add_dataset_event(
        self,
        dataset_id: str,
        stage: DatasetStage,
        received_at: Optional[datetime] = None,
    ) -> ExecutionEvent:
        return self._append(EventKind.DATASET_STAGE, dataset_id, stage.value, received_at)

    def snapshot(self) -> EventLogSnapshot:
        with self._lock:
            return EventLogSnapshot.build(
                tuple(self._events),
                self._visits,
                self._atoms,
                self._steps,
                self._datasets,
            )

    def _append(
        self,
        kind: EventKind,
        subject_id: str,
        stage: str,
        received_at: Optional[datetime],
    ) -> ExecutionEvent:
        with self._lock:
            # Stamped under the lock so defaulted times follow insertion order.
            when = _received(received_at)
            self._check_subject(kind, subject_id)
            previous = self._last_by_subject.get(subject_id)
            if previous is not None and when < previous.received_at:
                raise ValidationError(
                    f"Event for '{subject_id}' received at {when.isoformat()} "
                    f"precedes the previous event at {previous.received_at.isoformat()}"
                )
            event = ExecutionEvent(
                id=self._next_event_id,
                kind=kind,
                subject_id=subject_id,
                stage=stage,
                received_at=when,
            )
            self._next_event_id += 1
            self._events.append(event)
            self._last_by_subject[subject_id] = event
        logger.debug("Appended %r", event)
        return event

    def _check_subject(self, kind: EventKind, subject_id: str) -> None:
        registry: Optional[Mapping[str, object]] = {
            EventKind.ATOM_STAGE: self._atoms,
            EventKind.STEP_STAGE: self._steps,
            EventKind.DATASET_STAGE: self._datasets,
        }.get(kind)
        if registry is not None and subject_id not in registry:
            label = kind.value.split("_")[0].capitalize()
            raise ValidationError(f"{label} '{subject_id}' not found")


def _received(when: Optional[datetime]) -> datetime:
    if when is None:
        return datetime.now(timezone.utc)
    if when.tzinfo is None:
        raise ValidationError("Timestamps must be timezone-aware")
    return when
