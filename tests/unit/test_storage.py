"""Unit tests for the event log store and snapshots."""
import threading
from datetime import datetime, timedelta

import pytest

from builders import OBSERVATION, at, gmos_config

from obs_sequence import (
    AtomStage,
    DatasetQaState,
    DatasetStage,
    EventKind,
    EventStore,
    InMemoryEventStore,
    Instrument,
    ObserveClass,
    SequenceCommand,
    SequenceType,
    StepConfig,
    StepStage,
    StepType,
    StorageError,
    ValidationError,
)


def _step(store: InMemoryEventStore, atom_id: str):
    return store.record_step(
        atom_id,
        gmos_config(),
        StepConfig(step_type=StepType.SCIENCE),
        ObserveClass.SCIENCE,
    )


class TestEventStore:
    """Tests for EventStore ABC and InMemoryEventStore."""

    def test_cannot_instantiate_abc(self) -> None:
        with pytest.raises(TypeError):
            EventStore()  # type: ignore[abstract]

    def test_event_ids_are_insertion_order(self, store: InMemoryEventStore) -> None:
        visit = store.record_visit(OBSERVATION, Instrument.GMOS_NORTH, at(0))
        atom = store.record_atom(visit.id, SequenceType.SCIENCE)
        first = store.add_atom_event(atom.id, AtomStage.START_ATOM, at(5))
        second = store.add_sequence_event(OBSERVATION, SequenceCommand.PAUSE, at(1))
        assert (first.id, second.id) == (1, 2)

    def test_record_ids_are_ulids(self, store: InMemoryEventStore) -> None:
        visit = store.record_visit(OBSERVATION, Instrument.GMOS_NORTH, at(0))
        assert visit.id.startswith("v-")
        assert len(visit.id) == len("v-") + 26

    def test_unknown_atom_rejected(self, store: InMemoryEventStore) -> None:
        with pytest.raises(ValidationError, match="Atom 'a-missing' not found"):
            store.add_atom_event("a-missing", AtomStage.START_ATOM, at(0))
        assert store.snapshot().events == ()

    @pytest.mark.parametrize(
        "method, stage, label",
        [
            ("add_step_event", StepStage.START_STEP, "Step"),
            ("add_dataset_event", DatasetStage.START_EXPOSE, "Dataset"),
        ],
    )
    def test_unknown_subjects_rejected(
        self, store: InMemoryEventStore, method: str, stage, label: str
    ) -> None:
        with pytest.raises(ValidationError, match=f"{label} 'x' not found"):
            getattr(store, method)("x", stage, at(0))

    def test_unknown_visit_rejected(self, store: InMemoryEventStore) -> None:
        with pytest.raises(ValidationError, match="Visit 'v-x' not found"):
            store.record_atom("v-x", SequenceType.SCIENCE)

    def test_step_instrument_must_match_visit(self, store: InMemoryEventStore) -> None:
        visit = store.record_visit(OBSERVATION, Instrument.GMOS_SOUTH, at(0))
        atom = store.record_atom(visit.id, SequenceType.SCIENCE)
        with pytest.raises(ValidationError, match="does not match visit instrument"):
            _step(store, atom.id)

    def test_timestamps_monotonic_per_subject(self, store: InMemoryEventStore) -> None:
        visit = store.record_visit(OBSERVATION, Instrument.GMOS_NORTH, at(0))
        atom = store.record_atom(visit.id, SequenceType.SCIENCE)
        other = store.record_atom(visit.id, SequenceType.SCIENCE)
        store.add_atom_event(atom.id, AtomStage.START_ATOM, at(10))
        # A different subject may be earlier.
        store.add_atom_event(other.id, AtomStage.START_ATOM, at(5))
        with pytest.raises(ValidationError, match="precedes the previous event"):
            store.add_atom_event(atom.id, AtomStage.END_ATOM, at(9))

    def test_naive_timestamp_rejected(self, store: InMemoryEventStore) -> None:
        with pytest.raises(ValidationError, match="timezone-aware"):
            store.add_sequence_event(OBSERVATION, SequenceCommand.START, datetime(2026, 1, 1))

    def test_duplicate_filename_rejected(self, store: InMemoryEventStore) -> None:
        visit = store.record_visit(OBSERVATION, Instrument.GMOS_NORTH, at(0))
        step = _step(store, store.record_atom(visit.id, SequenceType.SCIENCE).id)
        store.record_dataset(step.id, "N20260101S0001.fits")
        with pytest.raises(StorageError, match="already exists"):
            store.record_dataset(step.id, "N20260101S0001.fits")

    def test_qa_state_replaces_record(self, store: InMemoryEventStore) -> None:
        visit = store.record_visit(OBSERVATION, Instrument.GMOS_NORTH, at(0))
        step = _step(store, store.record_atom(visit.id, SequenceType.SCIENCE).id)
        dataset = store.record_dataset(step.id, "N20260101S0001.fits")
        updated = store.set_dataset_qa_state(dataset.id, DatasetQaState.FAIL)
        assert dataset.qa_state is None
        assert updated.qa_state is DatasetQaState.FAIL
        assert store.snapshot().datasets[dataset.id].qa_state is DatasetQaState.FAIL

    def test_reset_acquisition_appends_command(self, store: InMemoryEventStore) -> None:
        event = store.reset_acquisition(OBSERVATION, at(3))
        assert event.kind is EventKind.SEQUENCE_COMMAND
        assert event.subject_id == OBSERVATION
        assert event.stage == "reset_acquisition"

    def test_concurrent_appends_get_unique_ids(self, store: InMemoryEventStore) -> None:
        def append() -> None:
            for _ in range(50):
                store.add_sequence_event(OBSERVATION, SequenceCommand.CONTINUE)

        threads = [threading.Thread(target=append) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        ids = [e.id for e in store.snapshot().events]
        assert sorted(ids) == list(range(1, 201))


class TestEventLogSnapshot:
    """Tests for snapshot isolation and queries."""

    def test_snapshot_is_isolated_from_later_writes(self, store: InMemoryEventStore) -> None:
        store.add_sequence_event(OBSERVATION, SequenceCommand.START, at(0))
        snapshot = store.snapshot()
        store.add_sequence_event(OBSERVATION, SequenceCommand.STOP, at(1))
        assert len(snapshot.events) == 1
        assert len(store.snapshot().events) == 2

    def test_events_sorted_by_time_then_id(self, store: InMemoryEventStore) -> None:
        visit = store.record_visit(OBSERVATION, Instrument.GMOS_NORTH, at(0))
        a = store.record_atom(visit.id, SequenceType.SCIENCE)
        b = store.record_atom(visit.id, SequenceType.SCIENCE)
        store.add_atom_event(a.id, AtomStage.START_ATOM, at(10))
        store.add_atom_event(b.id, AtomStage.START_ATOM, at(5))
        store.add_atom_event(b.id, AtomStage.END_ATOM, at(10))
        assert [e.id for e in store.snapshot().events] == [2, 1, 3]

    def test_hierarchy_queries(self, store: InMemoryEventStore) -> None:
        visit = store.record_visit(OBSERVATION, Instrument.GMOS_NORTH, at(0))
        atom = store.record_atom(visit.id, SequenceType.SCIENCE)
        s1 = _step(store, atom.id)
        s2 = _step(store, atom.id)
        d1 = store.record_dataset(s1.id, "N20260101S0001.fits")

        snapshot = store.snapshot()
        assert snapshot.visits_for(OBSERVATION) == (visit,)
        assert snapshot.atoms_for(visit.id) == (atom,)
        assert snapshot.steps_for(atom.id) == (s1, s2)
        assert snapshot.datasets_for(s1.id) == (d1,)
        assert snapshot.descendant_ids(visit.id) == (atom.id, s1.id, d1.id, s2.id)
        assert snapshot.visits_for("o-unknown") == ()

    def test_subtree_events_include_descendants(self, store: InMemoryEventStore) -> None:
        visit = store.record_visit(OBSERVATION, Instrument.GMOS_NORTH, at(0))
        atom = store.record_atom(visit.id, SequenceType.SCIENCE)
        step = _step(store, atom.id)
        store.add_step_event(step.id, StepStage.START_STEP, at(1))
        store.add_atom_event(atom.id, AtomStage.START_ATOM, at(2))
        events = store.snapshot().subtree_events(atom.id)
        assert [e.stage for e in events] == ["start_step", "start_atom"]
        assert events[0].received_at == at(0) + timedelta(seconds=1)
