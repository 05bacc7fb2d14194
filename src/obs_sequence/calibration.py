"""Calibration lookup engine.

Resolves an instrument configuration (plus its observing wavelength) into the
concrete calibration unit steps to take, using a versioned table of
calibration definitions.

Sections:
    1. Wavelength ranges
    2. Calibration keys (tagged union per instrument)
    3. Definitions and resolved steps
    4. Calibration table
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import timedelta
from enum import Enum
from typing import Annotated, ClassVar, Dict, Iterable, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from obs_sequence.models import (
    CalibrationLookupError,
    CalibrationTableError,
    GcalConfig,
    Instrument,
    InstrumentConfig,
    ObserveClass,
    SmartGcalType,
    ValidationError,
)

logger = logging.getLogger("obs_sequence.calibration")

# ── Section 1: Wavelength Ranges ─────────────────────────────────────────────


class WavelengthRange(BaseModel):
    """Half-open wavelength range ``[low_pm, high_pm)`` in picometers.

    ``high_pm=None`` leaves the range unbounded above.
    """

    model_config = ConfigDict(frozen=True)

    low_pm: int = Field(..., ge=0, description="Inclusive lower bound (pm)")
    high_pm: Optional[int] = Field(None, description="Exclusive upper bound (pm)")

    @model_validator(mode="after")
    def _non_empty(self) -> "WavelengthRange":
        if self.high_pm is not None and self.high_pm <= self.low_pm:
            raise ValueError(
                f"Empty wavelength range [{self.low_pm}, {self.high_pm})"
            )
        return self

    def contains(self, wavelength_pm: int) -> bool:
        if wavelength_pm < self.low_pm:
            return False
        return self.high_pm is None or wavelength_pm < self.high_pm

    def overlaps(self, other: "WavelengthRange") -> bool:
        below_other = other.high_pm is None or self.low_pm < other.high_pm
        below_self = self.high_pm is None or other.low_pm < self.high_pm
        return below_other and below_self

    def format(self) -> str:
        high = "∞" if self.high_pm is None else f"{self.high_pm} pm"
        return f"[{self.low_pm} pm, {high})"


# ── Section 2: Calibration Keys ──────────────────────────────────────────────


def _show(value: Optional[object]) -> str:
    return "None" if value is None else str(value)


class _GmosKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    grating: Optional[str] = Field(None, description="Grating (None for mirror)")
    grating_order: Optional[int] = Field(None, description="Grating order")
    filter: Optional[str] = Field(None, description="Filter")
    fpu: Optional[str] = Field(None, description="Focal plane unit")
    x_bin: int = Field(1, ge=1)
    y_bin: int = Field(1, ge=1)
    gain: str = Field("low", min_length=1)

    label: ClassVar[str] = "Gmos"

    def match_fields(self) -> Tuple[object, ...]:
        # A mirror has no order.
        order = self.grating_order if self.grating is not None else None
        return (
            self.instrument,  # type: ignore[attr-defined]
            self.grating,
            order,
            self.filter,
            self.fpu,
            self.x_bin,
            self.y_bin,
            self.gain,
        )

    def format(self) -> str:
        grating = (
            "None" if self.grating is None
            else f"({self.grating}, order {_show(self.grating_order)})"
        )
        return (
            f"{self.label} {{ grating: {grating}, filter: {_show(self.filter)}, "
            f"fpu: {_show(self.fpu)}, binning: {self.x_bin}x{self.y_bin}, "
            f"gain: {self.gain} }}"
        )


class GmosNorthKey(_GmosKey):
    instrument: Literal["gmos_north"] = "gmos_north"

    label: ClassVar[str] = "GmosNorth"


class GmosSouthKey(_GmosKey):
    instrument: Literal["gmos_south"] = "gmos_south"

    label: ClassVar[str] = "GmosSouth"


class Flamingos2Key(BaseModel):
    """Flamingos-2 calibrations key on disperser, filter and fpu only."""

    model_config = ConfigDict(frozen=True)

    instrument: Literal["flamingos2"] = "flamingos2"
    disperser: Optional[str] = Field(None, description="Disperser (None for imaging)")
    filter: str = Field(..., min_length=1, description="Filter")
    fpu: Optional[str] = Field(None, description="Focal plane unit")

    def match_fields(self) -> Tuple[object, ...]:
        return (self.instrument, self.disperser, self.filter, self.fpu)

    def format(self) -> str:
        return (
            f"Flamingos2 {{ disperser: {_show(self.disperser)}, filter: {self.filter}, "
            f"fpu: {_show(self.fpu)}, binning: 1x1, gain: low }}"
        )


CalibrationKey = Annotated[
    Union[GmosNorthKey, GmosSouthKey, Flamingos2Key],
    Field(discriminator="instrument"),
]


def calibration_key_for(config: InstrumentConfig) -> CalibrationKey:
    """Build the lookup key for an instrument configuration.

    Raises:
        ValidationError: If the configuration lacks a field the key requires.
    """
    if config.instrument is Instrument.FLAMINGOS2:
        if config.filter is None:
            raise ValidationError("Flamingos2 calibration lookup requires a filter")
        return Flamingos2Key(disperser=config.grating, filter=config.filter, fpu=config.fpu)

    gmos = GmosNorthKey if config.instrument is Instrument.GMOS_NORTH else GmosSouthKey
    return gmos(
        grating=config.grating,
        grating_order=config.grating_order,
        filter=config.filter,
        fpu=config.fpu,
        x_bin=config.x_bin,
        y_bin=config.y_bin,
        gain=config.gain,
    )


# ── Section 3: Definitions and Resolved Steps ────────────────────────────────


class BaselineType(str, Enum):
    """Whether a calibration is taken at night or during the day."""

    NIGHT = "night"
    DAY = "day"


class CalibrationDefinition(BaseModel):
    """One row of the calibration table."""

    model_config = ConfigDict(frozen=True)

    line_order: int = Field(..., ge=0, description="Ordering among matching rows")
    key: CalibrationKey
    wavelength_range: Optional[WavelengthRange] = Field(
        None, description="Applicable wavelengths (None for any, including none)"
    )
    gcal: GcalConfig = Field(..., description="Calibration unit configuration")
    baseline: BaselineType = Field(BaselineType.NIGHT)
    step_count: int = Field(1, ge=1, description="Identical steps to take")
    exposure_time: timedelta
    coadds: int = Field(1, ge=1)

    def matches(self, key: CalibrationKey, wavelength_pm: Optional[int]) -> bool:
        if self.key.match_fields() != key.match_fields():
            return False
        if self.wavelength_range is None:
            return True
        return wavelength_pm is not None and self.wavelength_range.contains(wavelength_pm)

    def overlaps(self, other: "CalibrationDefinition") -> bool:
        """Same key and line order with intersecting wavelength coverage."""
        if self.line_order != other.line_order:
            return False
        if self.key.match_fields() != other.key.match_fields():
            return False
        if self.wavelength_range is None or other.wavelength_range is None:
            return True
        return self.wavelength_range.overlaps(other.wavelength_range)

    def to_steps(self) -> List["CalibrationStep"]:
        step = CalibrationStep(
            gcal=self.gcal,
            baseline=self.baseline,
            exposure_time=self.exposure_time,
            coadds=self.coadds,
            observe_class=(
                ObserveClass.NIGHT_CAL if self.baseline is BaselineType.NIGHT
                else ObserveClass.DAY_CAL
            ),
            line_order=self.line_order,
        )
        return [step] * self.step_count


class CalibrationStep(BaseModel):
    """A single concrete calibration step resolved from the table."""

    model_config = ConfigDict(frozen=True)

    gcal: GcalConfig
    baseline: BaselineType
    exposure_time: timedelta
    coadds: int = Field(1, ge=1)
    observe_class: ObserveClass
    line_order: int


# ── Section 4: Calibration Table ─────────────────────────────────────────────


class CalibrationTable:
    """Versioned, immutable set of calibration definitions.

    Integrity is checked once at construction: two rows with the same key and
    line order must not cover a common wavelength.
    """

    def __init__(self, version: str, definitions: Iterable[CalibrationDefinition]) -> None:
        self.version = version
        self._definitions: Tuple[CalibrationDefinition, ...] = tuple(definitions)
        self._by_key: Dict[Tuple[object, ...], List[CalibrationDefinition]] = defaultdict(list)
        for definition in self._definitions:
            bucket = self._by_key[definition.key.match_fields()]
            for existing in bucket:
                if existing.overlaps(definition):
                    raise CalibrationTableError(
                        f"Overlapping calibration definitions for "
                        f"{definition.key.format()} at line order {definition.line_order}: "
                        f"{_range(existing)} and {_range(definition)}"
                    )
            bucket.append(definition)
        for bucket in self._by_key.values():
            bucket.sort(key=lambda d: d.line_order)
        logger.info(
            "Loaded calibration table %s with %d definitions",
            version,
            len(self._definitions),
        )

    @property
    def definitions(self) -> Tuple[CalibrationDefinition, ...]:
        return self._definitions

    def __len__(self) -> int:
        return len(self._definitions)

    def lookup(
        self,
        key: CalibrationKey,
        wavelength_pm: Optional[int],
        gcal_type: Optional[SmartGcalType] = None,
    ) -> List[CalibrationDefinition]:
        """Matching definitions in ascending line order (possibly empty)."""
        found = [
            d for d in self._by_key.get(key.match_fields(), ())
            if d.matches(key, wavelength_pm)
        ]
        if gcal_type is not None:
            want_arc = gcal_type is SmartGcalType.ARC
            found = [d for d in found if d.gcal.lamp.is_arc == want_arc]
        return found

    def resolve(
        self,
        key: CalibrationKey,
        wavelength_pm: Optional[int],
        gcal_type: Optional[SmartGcalType] = None,
    ) -> List[CalibrationStep]:
        """Expand the matching definitions into concrete calibration steps.

        Raises:
            CalibrationLookupError: If no definition matches.
        """
        found = self.lookup(key, wavelength_pm, gcal_type)
        if not found:
            raise CalibrationLookupError(key, wavelength_pm)
        steps: List[CalibrationStep] = []
        for definition in found:
            steps.extend(definition.to_steps())
        logger.debug(
            "Resolved %s at %s to %d calibration steps",
            key.format(),
            wavelength_pm,
            len(steps),
        )
        return steps


def _range(definition: CalibrationDefinition) -> str:
    if definition.wavelength_range is None:
        return "any wavelength"
    return definition.wavelength_range.format()
