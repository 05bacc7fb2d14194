"""
obs-sequence: execution tracking and sequence generation for observing sequences.

The package records low-level execution events (atom, step and dataset
stages, sequence commands) in an append-only log, derives execution state
from them, resolves calibration unit configurations from a versioned lookup
table and computes what an observation still has to execute.

Example:
    >>> from obs_sequence import InMemoryEventStore, Instrument, SequenceType, state_of
    >>> store = InMemoryEventStore()
    >>> visit = store.record_visit("o-1", Instrument.GMOS_NORTH)
    >>> atom = store.record_atom(visit.id, SequenceType.SCIENCE)
    >>> state_of(store.snapshot(), atom.id).value
    'not_started'
"""

__version__ = "0.4.0"

# Core data models
from obs_sequence.models import (
    AtomRecord,
    AtomStage,
    Breakpoint,
    CalibrationLookupError,
    CalibrationTableError,
    ConfigurationError,
    DatasetQaState,
    DatasetRecord,
    DatasetStage,
    EventKind,
    ExecutionEvent,
    GcalConfig,
    GcalLamp,
    GcalShutter,
    Instrument,
    InstrumentConfig,
    ObserveClass,
    ObsSequenceError,
    RemoteServiceError,
    SequenceCommand,
    SequenceType,
    SmartGcalType,
    StepConfig,
    StepRecord,
    StepStage,
    StepType,
    StorageError,
    TelescopeConfig,
    ValidationError,
    VisitRecord,
    TERMINAL_STAGES,
)

# Event log
from obs_sequence.storage import (
    EventLogSnapshot,
    EventStore,
    InMemoryEventStore,
)

# Execution state
from obs_sequence.execution import (
    ExecutionAnomaly,
    ExecutionState,
    ReducedExecutionState,
    dedup_events,
    event_sort_key,
    reduce_execution_events,
    state_of,
    step_successfully_completed,
)

# Time accounting
from obs_sequence.intervals import (
    Interval,
    interval_of,
    total_duration,
)

# Calibration lookup
from obs_sequence.calibration import (
    BaselineType,
    CalibrationDefinition,
    CalibrationKey,
    CalibrationStep,
    CalibrationTable,
    Flamingos2Key,
    GmosNorthKey,
    GmosSouthKey,
    WavelengthRange,
    calibration_key_for,
)
from obs_sequence.smartgcal import (
    load_definitions,
    load_table,
    parse_definition,
)

# Templates
from obs_sequence.template import (
    AcquisitionTemplate,
    AfterAtoms,
    AfterExposure,
    AtomSpec,
    CalibrationTrigger,
    ObservationTemplate,
    ScienceCursor,
    ScienceTemplate,
    StaticTemplateProvider,
    StepSpec,
    TemplateProvider,
)

# Generation
from obs_sequence.generator import (
    GeneratedAtom,
    GeneratedExecution,
    GeneratedSequence,
    GeneratedStep,
    SequenceGenerator,
)

# Configuration
from obs_sequence.config import (
    EngineSettings,
    configure_logging,
    load_settings,
)

__all__ = [
    # Core data models
    "AtomRecord",
    "AtomStage",
    "Breakpoint",
    "DatasetQaState",
    "DatasetRecord",
    "DatasetStage",
    "EventKind",
    "ExecutionEvent",
    "GcalConfig",
    "GcalLamp",
    "GcalShutter",
    "Instrument",
    "InstrumentConfig",
    "ObserveClass",
    "SequenceCommand",
    "SequenceType",
    "SmartGcalType",
    "StepConfig",
    "StepRecord",
    "StepStage",
    "StepType",
    "TelescopeConfig",
    "VisitRecord",
    "TERMINAL_STAGES",
    # Errors
    "ObsSequenceError",
    "ValidationError",
    "StorageError",
    "ConfigurationError",
    "CalibrationTableError",
    "CalibrationLookupError",
    "RemoteServiceError",
    # Event log
    "EventLogSnapshot",
    "EventStore",
    "InMemoryEventStore",
    # Execution state
    "ExecutionAnomaly",
    "ExecutionState",
    "ReducedExecutionState",
    "dedup_events",
    "event_sort_key",
    "reduce_execution_events",
    "state_of",
    "step_successfully_completed",
    # Time accounting
    "Interval",
    "interval_of",
    "total_duration",
    # Calibration lookup
    "BaselineType",
    "CalibrationDefinition",
    "CalibrationKey",
    "CalibrationStep",
    "CalibrationTable",
    "Flamingos2Key",
    "GmosNorthKey",
    "GmosSouthKey",
    "WavelengthRange",
    "calibration_key_for",
    "load_definitions",
    "load_table",
    "parse_definition",
    # Templates
    "AcquisitionTemplate",
    "AfterAtoms",
    "AfterExposure",
    "AtomSpec",
    "CalibrationTrigger",
    "ObservationTemplate",
    "ScienceCursor",
    "ScienceTemplate",
    "StaticTemplateProvider",
    "StepSpec",
    "TemplateProvider",
    # Generation
    "GeneratedAtom",
    "GeneratedExecution",
    "GeneratedSequence",
    "GeneratedStep",
    "SequenceGenerator",
    # Configuration
    "EngineSettings",
    "configure_logging",
    "load_settings",
]
