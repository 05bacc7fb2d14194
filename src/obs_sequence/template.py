"""Sequence template contract.

Templates describe the steps an observation is expected to execute. They are
produced outside this package (from the observation's instrument mode) and
consumed by the sequence generator, which compares them with what was
actually recorded.

Sections:
    1. Step and atom specifications
    2. Calibration triggers
    3. Templates and providers
    4. Science cursor
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import (
    Annotated,
    Dict,
    List,
    Literal,
    Mapping,
    Optional,
    Protocol,
    Tuple,
    Union,
)

from pydantic import BaseModel, ConfigDict, Field, model_validator

from obs_sequence.models import (
    Breakpoint,
    ConfigurationError,
    Instrument,
    InstrumentConfig,
    ObserveClass,
    StepConfig,
    StepRecord,
    StepType,
    TelescopeConfig,
)

# ── Section 1: Step and Atom Specifications ──────────────────────────────────


class StepSpec(BaseModel):
    """A step the template expects to be executed."""

    model_config = ConfigDict(frozen=True)

    instrument_config: InstrumentConfig
    step_config: StepConfig
    telescope_config: TelescopeConfig = Field(default_factory=TelescopeConfig)
    observe_class: ObserveClass
    breakpoint: Breakpoint = Breakpoint.DISABLED

    @property
    def exposure_time(self) -> timedelta:
        return self.instrument_config.exposure_time

    def matches(self, step: StepRecord) -> bool:
        """True when a recorded step executed exactly this configuration."""
        return (
            step.instrument_config == self.instrument_config
            and step.step_config == self.step_config
            and step.telescope_config == self.telescope_config
        )


class AtomSpec(BaseModel):
    """An ordered, non-empty group of steps executed together."""

    model_config = ConfigDict(frozen=True)

    description: Optional[str] = Field(None, description="Human-readable label")
    steps: Tuple[StepSpec, ...] = Field(..., min_length=1)

    @property
    def science_exposure(self) -> timedelta:
        """Nominal exposure time of the atom's science steps."""
        total = timedelta(0)
        for step in self.steps:
            if step.step_config.step_type is StepType.SCIENCE:
                total += step.exposure_time
        return total


# ── Section 2: Calibration Triggers ──────────────────────────────────────────


class AfterAtoms(BaseModel):
    """Calibrate after a fixed number of science atoms."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["after_atoms"] = "after_atoms"
    count: int = Field(..., ge=1)


class AfterExposure(BaseModel):
    """Calibrate once the accumulated science exposure reaches a threshold."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["after_exposure"] = "after_exposure"
    elapsed: timedelta

    @model_validator(mode="after")
    def _positive(self) -> "AfterExposure":
        if self.elapsed <= timedelta(0):
            raise ValueError("elapsed must be positive")
        return self


CalibrationTrigger = Annotated[
    Union[AfterAtoms, AfterExposure], Field(discriminator="kind")
]


# ── Section 3: Templates and Providers ───────────────────────────────────────


class ScienceTemplate(BaseModel):
    """Cyclic science atoms with periodic calibration.

    ``atoms`` repeat in order until ``atom_count`` science atoms have been
    produced (forever when ``atom_count`` is None). The calibration atom is
    inserted whenever ``trigger`` fires and, with ``calibrate_at_visit_start``,
    before the first science atom of every visit.
    """

    model_config = ConfigDict(frozen=True)

    atoms: Tuple[AtomSpec, ...] = Field(..., min_length=1)
    calibration: Optional[AtomSpec] = None
    trigger: Optional[CalibrationTrigger] = None
    calibrate_at_visit_start: bool = True
    atom_count: Optional[int] = Field(
        None, ge=0, description="Total science atoms (None for unbounded)"
    )

    @model_validator(mode="after")
    def _trigger_needs_calibration(self) -> "ScienceTemplate":
        if self.trigger is not None and self.calibration is None:
            raise ValueError("A calibration trigger requires a calibration atom")
        return self


class AcquisitionTemplate(BaseModel):
    """Initial acquisition steps followed by repeated fine adjustments."""

    model_config = ConfigDict(frozen=True)

    initial: AtomSpec
    fine_adjustment: AtomSpec


class ObservationTemplate(BaseModel):
    model_config = ConfigDict(frozen=True)

    observation_id: str = Field(..., min_length=1)
    instrument: Instrument
    acquisition: Optional[AcquisitionTemplate] = None
    science: ScienceTemplate

    @model_validator(mode="after")
    def _single_instrument(self) -> "ObservationTemplate":
        atoms: List[AtomSpec] = list(self.science.atoms)
        if self.science.calibration is not None:
            atoms.append(self.science.calibration)
        if self.acquisition is not None:
            atoms.extend([self.acquisition.initial, self.acquisition.fine_adjustment])
        for atom in atoms:
            for step in atom.steps:
                if step.instrument_config.instrument is not self.instrument:
                    raise ValueError(
                        f"Step instrument {step.instrument_config.instrument.value} "
                        f"does not match template instrument {self.instrument.value}"
                    )
        return self


class TemplateProvider(Protocol):
    """Source of observation templates.

    Implementations raise ``ConfigurationError`` when the observation has no
    usable instrument mode and may raise ``RemoteServiceError`` when an
    upstream service fails.
    """

    def template_for(self, observation_id: str) -> ObservationTemplate:
        ...


class StaticTemplateProvider:
    """Template provider backed by a fixed mapping."""

    def __init__(self, templates: Mapping[str, ObservationTemplate]) -> None:
        self._templates: Dict[str, ObservationTemplate] = dict(templates)

    def template_for(self, observation_id: str) -> ObservationTemplate:
        try:
            return self._templates[observation_id]
        except KeyError:
            raise ConfigurationError(
                observation_id, "observation has no instrument mode"
            ) from None


# ── Section 4: Science Cursor ────────────────────────────────────────────────


class AtomRole(str, Enum):
    SCIENCE = "science"
    CALIBRATION = "calibration"


@dataclass(frozen=True)
class PlannedAtom:
    role: AtomRole
    spec: AtomSpec
    position: int


class ScienceCursor:
    """Position in the conceptually infinite science sequence.

    The cursor only ever materializes the next atom, so unbounded templates
    cost nothing beyond what is asked for.
    """

    def __init__(self, template: ScienceTemplate) -> None:
        self.template = template
        self.position = 0
        self.science_index = 0
        self.atoms_since_calibration = 0
        self.elapsed_since_calibration = timedelta(0)
        self._pending_calibration = (
            template.calibrate_at_visit_start and template.calibration is not None
        )

    @property
    def exhausted(self) -> bool:
        count = self.template.atom_count
        return count is not None and self.science_index >= count

    @property
    def calibration_due(self) -> bool:
        if self.template.calibration is None or self.exhausted:
            return False
        if self._pending_calibration:
            return True
        trigger = self.template.trigger
        if isinstance(trigger, AfterAtoms):
            return self.atoms_since_calibration >= trigger.count
        if isinstance(trigger, AfterExposure):
            return self.elapsed_since_calibration >= trigger.elapsed
        return False

    def peek(self) -> Optional[PlannedAtom]:
        """The next atom to execute, or None once the template is exhausted."""
        calibration = self.template.calibration
        if calibration is not None and self.calibration_due:
            return PlannedAtom(AtomRole.CALIBRATION, calibration, self.position)
        if self.exhausted:
            return None
        atoms = self.template.atoms
        return PlannedAtom(
            AtomRole.SCIENCE, atoms[self.science_index % len(atoms)], self.position
        )

    def advance(self, elapsed: Optional[timedelta] = None) -> Optional[PlannedAtom]:
        """Consume the next atom.

        ``elapsed`` is the science exposure actually accumulated by a science
        atom; the template's nominal exposure is used when it is omitted.
        """
        planned = self.peek()
        if planned is None:
            return None
        self.position += 1
        if planned.role is AtomRole.CALIBRATION:
            self._pending_calibration = False
            self.atoms_since_calibration = 0
            self.elapsed_since_calibration = timedelta(0)
        else:
            self.science_index += 1
            self.atoms_since_calibration += 1
            self.elapsed_since_calibration += (
                planned.spec.science_exposure if elapsed is None else elapsed
            )
        return planned

    def skip(self, n: int) -> List[PlannedAtom]:
        """Consume up to ``n`` atoms at their nominal exposure."""
        consumed: List[PlannedAtom] = []
        for _ in range(n):
            planned = self.advance()
            if planned is None:
                break
            consumed.append(planned)
        return consumed

    def start_visit(self) -> None:
        if self.template.calibrate_at_visit_start and self.template.calibration is not None:
            self._pending_calibration = True

    def copy(self) -> "ScienceCursor":
        return copy.copy(self)
