"""Sequence generator.

Compares an observation's template with its recorded execution and computes
what remains: the next atom to execute and a bounded look ahead at the atoms
after it, for both the acquisition and the science sequence.

Sections:
    1. Generated output models
    2. Deterministic ids
    3. Generator
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from obs_sequence.calibration import CalibrationTable, calibration_key_for
from obs_sequence.config import EngineSettings
from obs_sequence.execution import (
    ExecutionState,
    ReducedExecutionState,
    reduce_execution_events,
    step_successfully_completed,
)
from obs_sequence.intervals import interval_of
from obs_sequence.models import (
    AtomRecord,
    Breakpoint,
    InstrumentConfig,
    ObserveClass,
    SequenceCommand,
    SequenceType,
    StepConfig,
    StepRecord,
    StepType,
    TelescopeConfig,
    ValidationError,
    VisitRecord,
)
from obs_sequence.smartgcal import load_table
from obs_sequence.storage import EventLogSnapshot, EventStore
from obs_sequence.template import (
    AcquisitionTemplate,
    AtomSpec,
    ObservationTemplate,
    PlannedAtom,
    ScienceCursor,
    StepSpec,
    TemplateProvider,
)

logger = logging.getLogger("obs_sequence.generator")

# ── Section 1: Generated Output Models ───────────────────────────────────────


class GeneratedStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID
    instrument_config: InstrumentConfig
    step_config: StepConfig
    telescope_config: TelescopeConfig
    observe_class: ObserveClass
    breakpoint: Breakpoint


class GeneratedAtom(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID
    sequence_type: SequenceType
    description: Optional[str] = None
    steps: Tuple[GeneratedStep, ...] = Field(..., min_length=1)


class GeneratedSequence(BaseModel):
    """Remaining atoms of one sequence (acquisition or science)."""

    model_config = ConfigDict(frozen=True)

    next_atom: Optional[GeneratedAtom] = Field(
        None, description="Atom to execute next (None when nothing remains)"
    )
    possible_future: Tuple[GeneratedAtom, ...] = Field(
        default_factory=tuple, description="Atoms after next_atom, bounded by the limit"
    )
    has_more: bool = Field(
        False, description="More atoms exist beyond possible_future"
    )


class GeneratedExecution(BaseModel):
    model_config = ConfigDict(frozen=True)

    observation_id: str
    acquisition: Optional[GeneratedSequence] = None
    science: GeneratedSequence


# ── Section 2: Deterministic Ids ─────────────────────────────────────────────

SEQUENCE_ID_NAMESPACE = uuid.UUID("6f1c3f4e-2b0a-5d7e-9a51-0c2c7e1a9b3d")


def atom_id(
    observation_id: str, sequence_type: SequenceType, id_base: int, position: int
) -> uuid.UUID:
    """Id of a generated atom; identical inputs always give the same id."""
    return uuid.uuid5(
        SEQUENCE_ID_NAMESPACE,
        f"{observation_id}/{sequence_type.value}/{id_base}/{position}",
    )


def step_id(atom: uuid.UUID, index: int) -> uuid.UUID:
    return uuid.uuid5(atom, str(index))


# ── Section 3: Generator ─────────────────────────────────────────────────────


class SequenceGenerator:
    """Computes the remaining acquisition and science sequences.

    Every call reads one snapshot of the event log and one template, so
    concurrent appends never produce a mixed view. Identical inputs give
    identical output, including ids.
    """

    def __init__(
        self,
        store: EventStore,
        templates: TemplateProvider,
        calibrations: CalibrationTable,
        settings: Optional[EngineSettings] = None,
    ) -> None:
        self.store = store
        self.templates = templates
        self.calibrations = calibrations
        self.settings = settings or EngineSettings()

    @classmethod
    def from_settings(
        cls,
        store: EventStore,
        templates: TemplateProvider,
        settings: EngineSettings,
    ) -> "SequenceGenerator":
        """Build a generator whose calibration table is read from disk."""
        table = load_table(settings.calibration_table_version, settings.calibration_tables)
        return cls(store, templates, table, settings)

    def generate(
        self, observation_id: str, future_limit: Optional[int] = None
    ) -> GeneratedExecution:
        """Remaining execution for an observation.

        Raises:
            ValidationError: If ``future_limit`` is out of range.
            ConfigurationError: If the observation has no instrument mode.
            CalibrationLookupError: If a smart-gcal step cannot be resolved.
            RemoteServiceError: If the template provider's upstream fails.
        """
        limit = self._check_future_limit(future_limit)

        snapshot = self.store.snapshot()
        template = self.templates.template_for(observation_id)
        template = self._expand_smart_gcal(template)
        states = reduce_execution_events(snapshot)
        visits = snapshot.visits_for(observation_id)

        acquisition: Optional[GeneratedSequence] = None
        if template.acquisition is not None:
            acquisition = self._acquisition(
                observation_id, template.acquisition, snapshot, states, visits, limit
            )
        science = self._science(observation_id, template, snapshot, states, visits, limit)

        logger.info(
            "Generated sequence for %s: acquisition=%s science_next=%s "
            "future=%d has_more=%s",
            observation_id,
            None if acquisition is None or acquisition.next_atom is None
            else acquisition.next_atom.id,
            None if science.next_atom is None else science.next_atom.id,
            len(science.possible_future),
            science.has_more,
        )
        return GeneratedExecution(
            observation_id=observation_id,
            acquisition=acquisition,
            science=science,
        )

    def _check_future_limit(self, future_limit: Optional[int]) -> int:
        if future_limit is None:
            return self.settings.default_future_limit
        maximum = self.settings.max_future_limit
        if (
            not isinstance(future_limit, int)
            or isinstance(future_limit, bool)
            or not 0 <= future_limit <= maximum
        ):
            raise ValidationError(
                f"future_limit must be an integer between 0 and {maximum}, got {future_limit}"
            )
        return future_limit

    # ── Smart gcal expansion ────────────────────────────────────────────────

    def _expand_smart_gcal(self, template: ObservationTemplate) -> ObservationTemplate:
        science = template.science
        update: Dict[str, object] = {
            "atoms": tuple(self._expand_atom(a) for a in science.atoms),
        }
        if science.calibration is not None:
            update["calibration"] = self._expand_atom(science.calibration)
        expanded: Dict[str, object] = {"science": science.model_copy(update=update)}
        if template.acquisition is not None:
            acq = template.acquisition
            expanded["acquisition"] = acq.model_copy(update={
                "initial": self._expand_atom(acq.initial),
                "fine_adjustment": self._expand_atom(acq.fine_adjustment),
            })
        return template.model_copy(update=expanded)

    def _expand_atom(self, atom: AtomSpec) -> AtomSpec:
        if not any(s.step_config.step_type is StepType.SMART_GCAL for s in atom.steps):
            return atom
        steps: List[StepSpec] = []
        for step in atom.steps:
            if step.step_config.step_type is not StepType.SMART_GCAL:
                steps.append(step)
                continue
            config = step.instrument_config
            resolved = self.calibrations.resolve(
                calibration_key_for(config),
                config.central_wavelength_pm,
                step.step_config.smart_gcal_type,
            )
            for cal in resolved:
                steps.append(StepSpec(
                    instrument_config=config.model_copy(
                        update={"exposure_time": cal.exposure_time}
                    ),
                    step_config=StepConfig(step_type=StepType.GCAL, gcal=cal.gcal),
                    telescope_config=step.telescope_config,
                    observe_class=cal.observe_class,
                    breakpoint=step.breakpoint,
                ))
        return atom.model_copy(update={"steps": tuple(steps)})

    # ── Acquisition ─────────────────────────────────────────────────────────

    def _acquisition(
        self,
        observation_id: str,
        template: AcquisitionTemplate,
        snapshot: EventLogSnapshot,
        states: ReducedExecutionState,
        visits: Sequence[VisitRecord],
        limit: int,
    ) -> GeneratedSequence:
        resets = [
            e for e in snapshot.command_events(observation_id)
            if e.stage == SequenceCommand.RESET_ACQUISITION.value
        ]
        matched = 0
        fine_matched = 0
        fine_completed = 0
        if visits:
            timeline: List[Tuple[Tuple[datetime, int], Optional[StepRecord]]] = [
                (e.sort_key(), None) for e in resets
            ]
            for atom in snapshot.atoms_for(visits[-1].id):
                for step in snapshot.steps_for(atom.id):
                    if step.id in states.start_keys:
                        timeline.append((states.start_keys[step.id], step))
            timeline.sort(key=lambda item: item[0])

            initial = template.initial.steps
            fine = template.fine_adjustment.steps
            for _, step in timeline:
                if (
                    step is None
                    or snapshot.atoms[step.atom_id].sequence_type is SequenceType.SCIENCE
                ):
                    matched = fine_matched = fine_completed = 0
                elif not step_successfully_completed(snapshot, states, step.id):
                    continue
                elif matched < len(initial):
                    if initial[matched].matches(step):
                        matched += 1
                elif fine[fine_matched].matches(step):
                    fine_matched += 1
                    if fine_matched == len(fine):
                        fine_completed += 1
                        fine_matched = 0
            logger.debug(
                "Acquisition for %s matched %d of %d initial steps, %d fine adjustments",
                observation_id, matched, len(initial), fine_completed,
            )

        id_base = len(visits) + len(resets)
        if matched < len(template.initial.steps):
            position = 0
            next_atom = _generated_atom(
                atom_id(observation_id, SequenceType.ACQUISITION, id_base, position),
                SequenceType.ACQUISITION,
                template.initial,
                first_step=matched,
            )
        else:
            # Fine adjustments repeat forever, each under its own position.
            position = 1 + fine_completed
            next_atom = self._fine_adjustment(
                observation_id, template, id_base, position, first_step=fine_matched
            )

        future = (
            self._fine_adjustment(observation_id, template, id_base, position + 1),
        )[:limit]
        return GeneratedSequence(
            next_atom=next_atom,
            possible_future=future,
            has_more=limit == 0,
        )

    def _fine_adjustment(
        self,
        observation_id: str,
        template: AcquisitionTemplate,
        id_base: int,
        position: int,
        first_step: int = 0,
    ) -> GeneratedAtom:
        return _generated_atom(
            atom_id(observation_id, SequenceType.ACQUISITION, id_base, position),
            SequenceType.ACQUISITION,
            template.fine_adjustment,
            first_step=first_step,
        )

    # ── Science ─────────────────────────────────────────────────────────────

    def _science(
        self,
        observation_id: str,
        template: ObservationTemplate,
        snapshot: EventLogSnapshot,
        states: ReducedExecutionState,
        visits: Sequence[VisitRecord],
        limit: int,
    ) -> GeneratedSequence:
        cursor = ScienceCursor(template.science)
        partial: Optional[Tuple[PlannedAtom, int]] = None

        for index, visit in enumerate(visits):
            if index > 0:
                cursor.start_visit()
            current = index == len(visits) - 1
            for atom in self._science_atoms(snapshot, states, visit):
                expected = cursor.peek()
                if expected is None:
                    break
                done = [
                    s for s in _ordered_steps(snapshot, states, atom.id)
                    if step_successfully_completed(snapshot, states, s.id)
                ]
                matched = _matched_prefix(expected.spec, done)
                if matched == len(expected.spec.steps):
                    logger.debug(
                        "Atom %s satisfies %s atom at position %d",
                        atom.id, expected.role.value, expected.position,
                    )
                    cursor.advance(self._science_exposure(snapshot, states, done))
                elif (
                    current
                    and matched == len(done)
                    and states.atom_states[atom.id] is ExecutionState.ONGOING
                ):
                    partial = (expected, matched)

        id_base = len(visits)

        def build(planned: PlannedAtom, first_step: int = 0) -> GeneratedAtom:
            return _generated_atom(
                atom_id(observation_id, SequenceType.SCIENCE, id_base, planned.position),
                SequenceType.SCIENCE,
                planned.spec,
                first_step=first_step,
            )

        next_atom: Optional[GeneratedAtom] = None
        if partial is not None:
            planned, first_step = partial
            next_atom = build(planned, first_step)
            cursor.advance()
        else:
            planned_next = cursor.advance()
            if planned_next is not None:
                next_atom = build(planned_next)

        future: List[GeneratedAtom] = []
        if next_atom is not None:
            while len(future) < limit:
                planned_future = cursor.advance()
                if planned_future is None:
                    break
                future.append(build(planned_future))

        return GeneratedSequence(
            next_atom=next_atom,
            possible_future=tuple(future),
            has_more=next_atom is not None and cursor.peek() is not None,
        )

    @staticmethod
    def _science_atoms(
        snapshot: EventLogSnapshot,
        states: ReducedExecutionState,
        visit: VisitRecord,
    ) -> List[AtomRecord]:
        """Started, non-abandoned science atoms of a visit in start order."""
        atoms = [
            a for a in snapshot.atoms_for(visit.id)
            if a.sequence_type is SequenceType.SCIENCE
            and a.id in states.start_keys
            and states.atom_states[a.id] is not ExecutionState.ABANDONED
        ]
        return sorted(atoms, key=lambda a: states.start_keys[a.id])

    @staticmethod
    def _science_exposure(
        snapshot: EventLogSnapshot,
        states: ReducedExecutionState,
        steps: Sequence[StepRecord],
    ) -> timedelta:
        total = timedelta(0)
        for step in steps:
            if step.step_config.step_type is not StepType.SCIENCE:
                continue
            interval = interval_of(snapshot, step.id, states)
            if interval is not None:
                total += interval.duration
        return total


def _ordered_steps(
    snapshot: EventLogSnapshot, states: ReducedExecutionState, atom_id_: str
) -> List[StepRecord]:
    started = [s for s in snapshot.steps_for(atom_id_) if s.id in states.start_keys]
    return sorted(started, key=lambda s: states.start_keys[s.id])


def _matched_prefix(expected: AtomSpec, done: Sequence[StepRecord]) -> int:
    """Number of leading expected steps executed in order by ``done``.

    Returns -1 when ``done`` holds more steps than expected.
    """
    if len(done) > len(expected.steps):
        return -1
    count = 0
    for spec, step in zip(expected.steps, done):
        if not spec.matches(step):
            break
        count += 1
    return count


def _generated_atom(
    id_: uuid.UUID,
    sequence_type: SequenceType,
    spec: AtomSpec,
    first_step: int = 0,
) -> GeneratedAtom:
    steps = tuple(
        GeneratedStep(
            id=step_id(id_, index),
            instrument_config=step.instrument_config,
            step_config=step.step_config,
            telescope_config=step.telescope_config,
            observe_class=step.observe_class,
            breakpoint=step.breakpoint,
        )
        for index, step in enumerate(spec.steps)
        if index >= first_step
    )
    return GeneratedAtom(
        id=id_, sequence_type=sequence_type, description=spec.description, steps=steps
    )
