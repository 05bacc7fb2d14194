"""Unit tests for interval and time accounting."""
from datetime import timedelta

import pydantic
import pytest

from builders import OBSERVATION, T0, Recorder, at, gmos_config, science_step

from obs_sequence import (
    AtomSpec,
    AtomStage,
    DatasetStage,
    InMemoryEventStore,
    Instrument,
    Interval,
    ObserveClass,
    SequenceType,
    StepConfig,
    StepStage,
    StepType,
    ValidationError,
    interval_of,
    total_duration,
)


class TestInterval:
    def test_duration(self) -> None:
        interval = Interval(start=at(10), end=at(70))
        assert interval.duration == timedelta(seconds=60)

    def test_end_before_start_rejected(self) -> None:
        with pytest.raises(pydantic.ValidationError, match="precedes"):
            Interval(start=at(10), end=at(5))

    def test_total_ignores_open_intervals(self) -> None:
        intervals = [Interval(start=at(0), end=at(5)), None, Interval(start=at(10), end=at(20))]
        assert total_duration(intervals) == timedelta(seconds=15)
        assert total_duration([]) == timedelta(0)


class TestIntervalOf:
    """Tests for interval_of over recorded execution."""

    def _setup(self, store: InMemoryEventStore):
        visit = store.record_visit(OBSERVATION, Instrument.GMOS_NORTH, T0)
        atom = store.record_atom(visit.id, SequenceType.SCIENCE)
        step = store.record_step(
            atom.id, gmos_config(), StepConfig(step_type=StepType.SCIENCE), ObserveClass.SCIENCE
        )
        return visit, atom, step

    def test_none_without_events(self, store: InMemoryEventStore) -> None:
        _, atom, step = self._setup(store)
        snapshot = store.snapshot()
        assert interval_of(snapshot, atom.id) is None
        assert interval_of(snapshot, step.id) is None

    def test_none_while_ongoing(self, store: InMemoryEventStore) -> None:
        _, atom, step = self._setup(store)
        store.add_atom_event(atom.id, AtomStage.START_ATOM, at(1))
        store.add_step_event(step.id, StepStage.START_STEP, at(2))
        snapshot = store.snapshot()
        assert interval_of(snapshot, atom.id) is None
        assert interval_of(snapshot, step.id) is None

    def test_completed_atom_spans_descendants(self, store: InMemoryEventStore) -> None:
        visit, atom, step = self._setup(store)
        store.add_step_event(step.id, StepStage.START_STEP, at(1))
        store.add_step_event(step.id, StepStage.END_STEP, at(301))
        store.add_atom_event(atom.id, AtomStage.END_ATOM, at(302))
        snapshot = store.snapshot()

        assert interval_of(snapshot, step.id) == Interval(start=at(1), end=at(301))
        atom_interval = interval_of(snapshot, atom.id)
        assert atom_interval is not None
        assert atom_interval.start == at(1)
        assert atom_interval.duration == timedelta(seconds=301)
        assert interval_of(snapshot, visit.id) == atom_interval

    def test_abandoned_atom_is_closed(self, store: InMemoryEventStore) -> None:
        visit, atom, _ = self._setup(store)
        store.add_atom_event(atom.id, AtomStage.START_ATOM, at(1))
        later = store.record_atom(visit.id, SequenceType.SCIENCE)
        store.add_atom_event(later.id, AtomStage.START_ATOM, at(50))
        snapshot = store.snapshot()
        assert interval_of(snapshot, atom.id) == Interval(start=at(1), end=at(1))
        assert interval_of(snapshot, visit.id) is None

    def test_dataset_closed_by_end_write(self, store: InMemoryEventStore) -> None:
        _, _, step = self._setup(store)
        dataset = store.record_dataset(step.id, "N20260101S0001.fits")
        store.add_step_event(step.id, StepStage.START_STEP, at(1))
        store.add_dataset_event(dataset.id, DatasetStage.START_EXPOSE, at(2))
        assert interval_of(store.snapshot(), dataset.id) is None

        store.add_dataset_event(dataset.id, DatasetStage.END_EXPOSE, at(302))
        store.add_dataset_event(dataset.id, DatasetStage.END_WRITE, at(310))
        interval = interval_of(store.snapshot(), dataset.id)
        assert interval is not None
        assert interval.duration == timedelta(seconds=308)

    def test_recorded_step_duration_matches_exposure(
        self, recorder: Recorder, store: InMemoryEventStore
    ) -> None:
        visit = recorder.visit()
        _, steps = recorder.execute(visit, AtomSpec(steps=(science_step(0, 120),)))
        interval = interval_of(store.snapshot(), steps[0].id)
        assert interval is not None
        assert interval.duration == timedelta(seconds=120)

    def test_unknown_subject(self, store: InMemoryEventStore) -> None:
        with pytest.raises(ValidationError, match="not found"):
            interval_of(store.snapshot(), "s-missing")
