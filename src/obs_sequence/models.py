"""Core data models for the obs-sequence engine.

Sections:
    1. Enums (event kinds, stage vocabularies, configuration enums)
    2. Configuration value types (instrument, step, telescope)
    3. Execution event
    4. Execution records (visit, atom, step, dataset)
    5. Exceptions
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# ── Section 1: Enums ─────────────────────────────────────────────────────────


class EventKind(str, Enum):
    """Kinds of execution events recorded in the event log."""

    SEQUENCE_COMMAND = "sequence_command"
    ATOM_STAGE = "atom_stage"
    STEP_STAGE = "step_stage"
    DATASET_STAGE = "dataset_stage"


class SequenceCommand(str, Enum):
    """Observation-level commands issued by the sequencer."""

    ABORT = "abort"
    CONTINUE = "continue"
    PAUSE = "pause"
    SLEW = "slew"
    START = "start"
    STOP = "stop"
    RESET_ACQUISITION = "reset_acquisition"


class AtomStage(str, Enum):
    START_ATOM = "start_atom"
    END_ATOM = "end_atom"


class StepStage(str, Enum):
    START_STEP = "start_step"
    END_STEP = "end_step"
    START_CONFIGURE = "start_configure"
    END_CONFIGURE = "end_configure"
    START_OBSERVE = "start_observe"
    END_OBSERVE = "end_observe"
    ABORT = "abort"
    CONTINUE = "continue"
    PAUSE = "pause"
    STOP = "stop"


class DatasetStage(str, Enum):
    START_EXPOSE = "start_expose"
    END_EXPOSE = "end_expose"
    START_READOUT = "start_readout"
    END_READOUT = "end_readout"
    START_WRITE = "start_write"
    END_WRITE = "end_write"


STAGES_BY_KIND: Dict[EventKind, Type[Enum]] = {
    EventKind.SEQUENCE_COMMAND: SequenceCommand,
    EventKind.ATOM_STAGE: AtomStage,
    EventKind.STEP_STAGE: StepStage,
    EventKind.DATASET_STAGE: DatasetStage,
}

TERMINAL_STAGES: FrozenSet[str] = frozenset({
    AtomStage.END_ATOM.value,
    StepStage.END_STEP.value,
})


class Instrument(str, Enum):
    GMOS_NORTH = "gmos_north"
    GMOS_SOUTH = "gmos_south"
    FLAMINGOS2 = "flamingos2"


class SequenceType(str, Enum):
    ACQUISITION = "acquisition"
    SCIENCE = "science"


class StepType(str, Enum):
    BIAS = "bias"
    DARK = "dark"
    GCAL = "gcal"
    SCIENCE = "science"
    SMART_GCAL = "smart_gcal"


class SmartGcalType(str, Enum):
    ARC = "arc"
    FLAT = "flat"


class ObserveClass(str, Enum):
    SCIENCE = "science"
    ACQUISITION = "acquisition"
    ACQUISITION_CAL = "acquisition_cal"
    PARTNER_CAL = "partner_cal"
    PROGRAM_CAL = "program_cal"
    DAY_CAL = "day_cal"
    NIGHT_CAL = "night_cal"


class Breakpoint(str, Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"


class DatasetQaState(str, Enum):
    """Quality assessment of a dataset, set out-of-band by reviewers."""

    PASS = "pass"
    USABLE = "usable"
    FAIL = "fail"


class GcalShutter(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


# ── Section 2: Configuration Value Types ─────────────────────────────────────


class InstrumentConfig(BaseModel):
    """Dynamic instrument configuration for a single step.

    Only the fields the engine keys on are modelled; anything else the
    configuration layer tracks is opaque to this package.
    """

    model_config = ConfigDict(frozen=True)

    instrument: Instrument = Field(..., description="Instrument in use")
    exposure_time: timedelta = Field(
        ..., description="Exposure time for a single dataset"
    )
    grating: Optional[str] = Field(
        None, description="Grating / disperser name (None for a mirror)"
    )
    grating_order: Optional[int] = Field(
        None, ge=0, description="Grating order (None for a mirror)"
    )
    central_wavelength_pm: Optional[int] = Field(
        None, gt=0, description="Grating central wavelength in picometers"
    )
    filter: Optional[str] = Field(None, description="Filter name")
    fpu: Optional[str] = Field(None, description="Focal plane unit name")
    x_bin: int = Field(1, ge=1, description="X binning")
    y_bin: int = Field(1, ge=1, description="Y binning")
    gain: str = Field("low", min_length=1, description="Amplifier gain")
    roi: Optional[str] = Field(None, description="Region of interest")

    @field_validator("exposure_time")
    @classmethod
    def _non_negative_exposure(cls, v: timedelta) -> timedelta:
        if v < timedelta(0):
            raise ValueError("exposure_time must not be negative")
        return v


class GcalLamp(BaseModel):
    """Either a set of arc lamps or a single continuum lamp."""

    model_config = ConfigDict(frozen=True)

    arcs: Tuple[str, ...] = Field(
        default_factory=tuple, description="Arc lamps switched on together"
    )
    continuum: Optional[str] = Field(None, description="Continuum lamp")

    @model_validator(mode="after")
    def _exactly_one_kind(self) -> "GcalLamp":
        if bool(self.arcs) == (self.continuum is not None):
            raise ValueError("GcalLamp requires arcs or a continuum lamp, not both")
        return self

    @property
    def is_arc(self) -> bool:
        return bool(self.arcs)

    def format(self) -> str:
        return " + ".join(self.arcs) if self.arcs else str(self.continuum)


class GcalConfig(BaseModel):
    """Calibration unit configuration for a concrete gcal step."""

    model_config = ConfigDict(frozen=True)

    lamp: GcalLamp
    filter: str = Field("none", min_length=1, description="GCAL filter")
    diffuser: str = Field("ir", min_length=1, description="GCAL diffuser")
    shutter: GcalShutter = Field(GcalShutter.OPEN, description="GCAL shutter")


class StepConfig(BaseModel):
    """What kind of dataset a step produces."""

    model_config = ConfigDict(frozen=True)

    step_type: StepType
    smart_gcal_type: Optional[SmartGcalType] = None
    gcal: Optional[GcalConfig] = None

    @model_validator(mode="after")
    def _check_shape(self) -> "StepConfig":
        if self.step_type is StepType.SMART_GCAL and self.smart_gcal_type is None:
            raise ValueError("smart_gcal steps require smart_gcal_type")
        if self.step_type is StepType.GCAL and self.gcal is None:
            raise ValueError("gcal steps require a gcal configuration")
        return self


class TelescopeConfig(BaseModel):
    """Telescope offset (arcseconds) and guiding state for a step."""

    model_config = ConfigDict(frozen=True)

    offset_p: Decimal = Field(Decimal("0"), description="Offset in p (arcsec)")
    offset_q: Decimal = Field(Decimal("0"), description="Offset in q (arcsec)")
    guiding: bool = Field(True, description="Whether guiding is enabled")


# ── Section 3: Execution Event ───────────────────────────────────────────────


class ExecutionEvent(BaseModel):
    """Immutable record of something that happened during execution.

    Events are totally ordered by ``(received_at, id)``; ``id`` is the
    insertion counter assigned by the event store and breaks timestamp ties.
    """

    model_config = ConfigDict(frozen=True)

    id: int = Field(..., ge=0, description="Insertion id assigned by the store")
    kind: EventKind = Field(..., description="Event family")
    subject_id: str = Field(
        ..., min_length=1, description="Observation, atom, step or dataset id"
    )
    stage: str = Field(..., min_length=1, description="Stage within the kind")
    received_at: datetime = Field(..., description="When the event was received")

    @field_validator("received_at")
    @classmethod
    def _require_timezone(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("received_at must be timezone-aware")
        return v

    @model_validator(mode="before")
    @classmethod
    def _coerce_stage(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("stage"), Enum):
            data = dict(data)
            data["stage"] = data["stage"].value
        return data

    @model_validator(mode="after")
    def _check_stage(self) -> "ExecutionEvent":
        vocabulary = STAGES_BY_KIND[self.kind]
        if self.stage not in {m.value for m in vocabulary}:
            raise ValueError(
                f"Stage {self.stage!r} is not valid for {self.kind.value}. "
                f"Valid values: {[m.value for m in vocabulary]}"
            )
        return self

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    def sort_key(self) -> Tuple[datetime, int]:
        return (self.received_at, self.id)

    def __repr__(self) -> str:
        return (
            f"ExecutionEvent(id={self.id}, kind={self.kind.value}, "
            f"subject={self.subject_id[:8]}..., stage={self.stage}, "
            f"received_at={self.received_at.isoformat()})"
        )


# ── Section 4: Execution Records ─────────────────────────────────────────────


class VisitRecord(BaseModel):
    """A visit groups the atoms executed in one session at the telescope."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    observation_id: str = Field(..., min_length=1)
    instrument: Instrument
    created_at: datetime


class AtomRecord(BaseModel):
    """An atom as recorded for execution."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    visit_id: str = Field(..., min_length=1)
    sequence_type: SequenceType
    step_count: int = Field(
        0, ge=0, description="Number of steps the atom was generated with (0 = unknown)"
    )
    generated_id: Optional[str] = Field(
        None, description="Id of the generated atom this record executes"
    )


class StepRecord(BaseModel):
    """A step as recorded for execution; configuration is immutable."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    atom_id: str = Field(..., min_length=1)
    instrument_config: InstrumentConfig
    step_config: StepConfig
    telescope_config: TelescopeConfig = Field(default_factory=TelescopeConfig)
    observe_class: ObserveClass
    breakpoint: Breakpoint = Breakpoint.DISABLED
    generated_id: Optional[str] = None


class DatasetRecord(BaseModel):
    """A dataset written by a step. ``qa_state`` is replaced out-of-band."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    step_id: str = Field(..., min_length=1)
    filename: str = Field(..., min_length=1)
    qa_state: Optional[DatasetQaState] = None


# ── Section 5: Exceptions ────────────────────────────────────────────────────


class ObsSequenceError(Exception):
    """Base exception for all engine errors."""

    tag: str = "invalid_argument"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def data(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        """Structured form for the query layer."""
        return {"tag": self.tag, "message": self.message, "data": self.data()}


class ValidationError(ObsSequenceError):
    """Bad input parameters; rejected before any computation."""

    tag = "invalid_argument"


class StorageError(ObsSequenceError):
    """Event store rejected a write."""

    tag = "update_failed"


class ConfigurationError(ObsSequenceError):
    """The observation lacks a usable instrument mode."""

    tag = "invalid_configuration"

    def __init__(self, observation_id: str, detail: Optional[str] = None) -> None:
        self.observation_id = observation_id
        self.detail = detail
        msg = f"Could not generate a sequence for {observation_id}"
        super().__init__(f"{msg}: {detail}" if detail else msg)

    def data(self) -> Dict[str, Any]:
        return {"observation_id": self.observation_id}


class CalibrationTableError(ObsSequenceError):
    """Calibration table rows violate an integrity rule."""

    tag = "invalid_configuration"


class CalibrationLookupError(ObsSequenceError):
    """No calibration definition matches the requested configuration."""

    tag = "sequence_unavailable"

    def __init__(self, key: Any, wavelength_pm: Optional[int]) -> None:
        self.key = key
        self.wavelength_pm = wavelength_pm
        wavelength = "None" if wavelength_pm is None else f"{wavelength_pm} pm"
        super().__init__(
            f"Missing calibration entry for {key.format()}, wavelength: {wavelength}"
        )

    def data(self) -> Dict[str, Any]:
        return {
            "key": self.key.model_dump(mode="json"),
            "wavelength_pm": self.wavelength_pm,
        }


class RemoteServiceError(ObsSequenceError):
    """An upstream service (exposure time calculator) failed."""

    tag = "remote_service_call_error"
