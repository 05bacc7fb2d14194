"""Loader for legacy smart-GCAL calibration definition files.

Each non-comment line of a definition file is one CSV row::

    grating,filter,fpu,x_bin,y_bin,wavelength_range_nm,order,gain,lamp,shutter,gcal_filter,diffuser,step_count,exposure_s,coadds,baseline

Key columns (grating, filter, fpu, order, gain) hold a pattern rather than a
single value: an exact name, a ``prefix*`` wildcard, or a ``$regex``. Each
pattern expands against the instrument vocabulary and a row stands for the
cross product of its expanded key columns. ``Mirror`` (grating) and ``None``
(filter, fpu) name the absent value. The 1-based line number of a row becomes
the line order of every definition it produces.

Flamingos-2 files use the same columns; binning, order and gain are ignored.
"""

from __future__ import annotations

import csv
import itertools
import logging
import re
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Type, TypeVar, Union

from obs_sequence.calibration import (
    BaselineType,
    CalibrationDefinition,
    CalibrationTable,
    Flamingos2Key,
    GmosNorthKey,
    GmosSouthKey,
    WavelengthRange,
)
from obs_sequence.models import (
    CalibrationTableError,
    GcalConfig,
    GcalLamp,
    GcalShutter,
    Instrument,
)

logger = logging.getLogger("obs_sequence.smartgcal")

COLUMNS: Tuple[str, ...] = (
    "grating", "filter", "fpu", "x_bin", "y_bin", "wavelength_range_nm",
    "order", "gain", "lamp", "shutter", "gcal_filter", "diffuser",
    "step_count", "exposure_s", "coadds", "baseline",
)

MIRROR = "Mirror"
NONE = "None"

# ── Instrument vocabularies ──────────────────────────────────────────────────

_GMOS_NORTH_GRATINGS = (
    "B1200_G5301", "R831_G5302", "B600_G5303", "R600_G5304",
    "B480_G5309", "R400_G5305", "R150_G5306",
)
_GMOS_NORTH_FILTERS = (
    "g_G0301", "r_G0303", "i_G0302", "z_G0304", "Z_G0322", "Y_G0323",
    "ri_G0349", "GG455_G0305", "OG515_G0306", "RG610_G0307", "CaT_G0309",
    "Ha_G0310", "HaC_G0311", "DS920_G0312", "SII_G0317", "OIII_G0318",
    "OIIIC_G0319", "HeII_G0320", "HeIIC_G0321", "OVI_G0345", "OVIC_G0346",
    "HartmannA_G0313 + r_G0303", "HartmannB_G0314 + r_G0303",
    "g_G0301 + GG455_G0305", "g_G0301 + OG515_G0306",
    "r_G0303 + RG610_G0307", "i_G0302 + CaT_G0309", "z_G0304 + CaT_G0309",
    "u_G0308",
)
_GMOS_NORTH_FPUS = (
    "Longslit 0.25 arcsec", "Longslit 0.50 arcsec", "Longslit 0.75 arcsec",
    "Longslit 1.00 arcsec", "Longslit 1.50 arcsec", "Longslit 2.00 arcsec",
    "Longslit 5.00 arcsec", "IFU 2 Slits", "IFU Left Slit (blue)",
    "IFU Right Slit (red)", "N and S 0.25 arcsec", "N and S 0.50 arcsec",
    "N and S 0.75 arcsec", "N and S 1.00 arcsec", "N and S 1.50 arcsec",
    "N and S 2.00 arcsec",
)
_GMOS_SOUTH_GRATINGS = (
    "B1200_G5321", "R831_G5322", "B600_G5323", "R600_G5324",
    "B480_G5327", "R400_G5325", "R150_G5326",
)
_GMOS_SOUTH_FILTERS = (
    "u_G0332", "g_G0325", "r_G0326", "i_G0327", "z_G0328", "Z_G0343",
    "Y_G0344", "GG455_G0329", "OG515_G0330", "RG610_G0331", "CaT_G0333",
    "Ha_G0336", "HaC_G0337", "SII_G0335", "OIII_G0338", "OIIIC_G0339",
    "HeII_G0340", "HeIIC_G0341",
)
_GMOS_SOUTH_FPUS = (
    "Longslit 0.25 arcsec", "Longslit 0.50 arcsec", "Longslit 0.75 arcsec",
    "Longslit 1.00 arcsec", "Longslit 1.50 arcsec", "Longslit 2.00 arcsec",
    "Longslit 5.00 arcsec", "IFU 2 Slits", "IFU Left Slit (blue)",
    "IFU Right Slit (red)", "N and S 0.50 arcsec", "N and S 0.75 arcsec",
    "N and S 1.00 arcsec", "N and S 1.50 arcsec", "N and S 2.00 arcsec",
)
_F2_DISPERSERS = ("R1200JH", "R1200HK", "R3000")
_F2_FILTERS = ("Y", "J-lo", "J", "H", "JH", "HK", "Ks")
_F2_FPUS = (
    "Longslit 1 pix", "Longslit 2 pix", "Longslit 3 pix", "Longslit 4 pix",
    "Longslit 6 pix", "Longslit 8 pix",
)

_GRATINGS: Dict[Instrument, Sequence[str]] = {
    Instrument.GMOS_NORTH: _GMOS_NORTH_GRATINGS,
    Instrument.GMOS_SOUTH: _GMOS_SOUTH_GRATINGS,
    Instrument.FLAMINGOS2: _F2_DISPERSERS,
}
_FILTERS: Dict[Instrument, Sequence[str]] = {
    Instrument.GMOS_NORTH: _GMOS_NORTH_FILTERS,
    Instrument.GMOS_SOUTH: _GMOS_SOUTH_FILTERS,
    Instrument.FLAMINGOS2: _F2_FILTERS,
}
_FPUS: Dict[Instrument, Sequence[str]] = {
    Instrument.GMOS_NORTH: _GMOS_NORTH_FPUS,
    Instrument.GMOS_SOUTH: _GMOS_SOUTH_FPUS,
    Instrument.FLAMINGOS2: _F2_FPUS,
}
_ORDERS: Dict[str, int] = {"0": 0, "1": 1, "2": 2}
_GAINS: Dict[str, str] = {"Low": "low", "High": "high"}
_BINNINGS = {"1": 1, "2": 2, "4": 4}

_RANGE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*-\s*(\d+(?:\.\d+)?)\s*$")

Vocabulary = Mapping[str, Optional[object]]
E = TypeVar("E", bound=Enum)


class _RowError(ValueError):
    pass


# ── Patterns ─────────────────────────────────────────────────────────────────


def expand_pattern(pattern: str, vocabulary: Vocabulary) -> List[Optional[object]]:
    """Values of ``vocabulary`` selected by a key pattern.

    ``$regex`` must match a whole name, ``prefix*`` selects names starting
    with ``prefix`` and anything else is an exact name.
    """
    text = pattern.strip()
    if text.startswith("$") and len(text) > 1:
        try:
            regex = re.compile(text[1:])
        except re.error as exc:
            raise _RowError(f"Invalid regex pattern {text[1:]}") from exc
        found = [v for k, v in vocabulary.items() if regex.fullmatch(k)]
        if not found:
            raise _RowError(f"Pattern '{text[1:]}' matched nothing")
        return found
    if text.endswith("*"):
        prefix = text[:-1]
        found = [v for k, v in vocabulary.items() if k.startswith(prefix)]
        if not found:
            raise _RowError(f"Pattern '{text}' matched nothing")
        return found
    if text not in vocabulary:
        raise _RowError(f"Key '{text}' not found")
    return [vocabulary[text]]


def _optional_vocabulary(none_label: str, names: Sequence[str]) -> Dict[str, Optional[object]]:
    vocabulary: Dict[str, Optional[object]] = {none_label: None}
    vocabulary.update({name: name for name in names})
    return vocabulary


# ── Value columns ────────────────────────────────────────────────────────────


def _wavelength_range(text: str) -> Optional[WavelengthRange]:
    if text.strip() in ("", "*"):
        return None
    match = _RANGE_RE.match(text)
    if match is None:
        raise _RowError(f"Malformed wavelength range '{text}'")
    low, high = (int(Decimal(g) * 1000) for g in match.groups())
    try:
        return WavelengthRange(low_pm=low, high_pm=high)
    except ValueError as exc:
        raise _RowError(f"Empty wavelength range '{text}'") from exc


def _lamp(text: str) -> GcalLamp:
    names = [n.strip() for n in text.split("+") if n.strip()]
    if not names:
        raise _RowError("Missing lamp")
    arcs = [n for n in names if n.lower().endswith(" arc")]
    if len(arcs) == len(names):
        return GcalLamp(arcs=tuple(arcs))
    if len(names) == 1:
        return GcalLamp(continuum=names[0])
    raise _RowError(f"Cannot combine continuum and arc lamps: '{text}'")


def _enum_value(enum_cls: Type[E], text: str, column: str) -> E:
    try:
        return enum_cls(text.strip().lower())
    except ValueError as exc:
        raise _RowError(f"Unknown {column} '{text}'") from exc


def _positive_int(text: str, column: str) -> int:
    try:
        value = int(text.strip())
    except ValueError as exc:
        raise _RowError(f"Malformed {column} '{text}'") from exc
    if value < 1:
        raise _RowError(f"{column} must be positive, got {value}")
    return value


def _exposure(text: str) -> timedelta:
    try:
        seconds = Decimal(text.strip())
    except InvalidOperation as exc:
        raise _RowError(f"Malformed exposure_s '{text}'") from exc
    if seconds < 0:
        raise _RowError(f"exposure_s must not be negative, got {seconds}")
    return timedelta(microseconds=int(seconds * 1_000_000))


# ── Rows ─────────────────────────────────────────────────────────────────────


def parse_definition(
    instrument: Instrument, text: str, line: int
) -> List[CalibrationDefinition]:
    """Parse one definition row into the definitions it stands for.

    Raises:
        CalibrationTableError: If the row is malformed; the message names
            the line.
    """
    cells = next(csv.reader([text], skipinitialspace=True), [])
    if len(cells) != len(COLUMNS):
        raise CalibrationTableError(
            f"line {line}: expected {len(COLUMNS)} columns, found {len(cells)}"
        )
    row = dict(zip(COLUMNS, (c.strip() for c in cells)))
    try:
        return _definitions(instrument, row, line)
    except _RowError as exc:
        raise CalibrationTableError(f"line {line}: {exc}") from exc


def _definitions(
    instrument: Instrument, row: Dict[str, str], line: int
) -> List[CalibrationDefinition]:
    gratings = expand_pattern(
        row["grating"], _optional_vocabulary(MIRROR, _GRATINGS[instrument])
    )
    filters = _filters(instrument, row["filter"])
    fpus = expand_pattern(row["fpu"], _optional_vocabulary(NONE, _FPUS[instrument]))

    gcal = GcalConfig(
        lamp=_lamp(row["lamp"]),
        shutter=_enum_value(GcalShutter, row["shutter"], "shutter"),
        filter=row["gcal_filter"].lower() or "none",
        diffuser=row["diffuser"].lower() or "ir",
    )
    values = dict(
        gcal=gcal,
        baseline=_enum_value(BaselineType, row["baseline"], "baseline"),
        step_count=_positive_int(row["step_count"], "step_count"),
        exposure_time=_exposure(row["exposure_s"]),
        coadds=_positive_int(row["coadds"], "coadds"),
    )

    definitions: List[CalibrationDefinition] = []
    if instrument is Instrument.FLAMINGOS2:
        for disperser, filt, fpu in itertools.product(gratings, filters, fpus):
            if filt is None:
                raise _RowError("Flamingos2 definitions require a filter")
            key = Flamingos2Key(disperser=disperser, filter=filt, fpu=fpu)
            definitions.append(
                CalibrationDefinition(line_order=line, key=key, **values)
            )
        return definitions

    x_bin = _binning(row["x_bin"], "x_bin")
    y_bin = _binning(row["y_bin"], "y_bin")
    orders = (
        list(_ORDERS.values()) if row["order"] == "*"
        else expand_pattern(row["order"], _ORDERS)
    )
    gains = expand_pattern(row["gain"], _GAINS)
    wavelength_range = _wavelength_range(row["wavelength_range_nm"])
    key_cls = GmosNorthKey if instrument is Instrument.GMOS_NORTH else GmosSouthKey

    for grating, filt, fpu, gain in itertools.product(gratings, filters, fpus, gains):
        # Without a grating there is no order or wavelength dependence.
        grating_orders = orders if grating is not None else [None]
        for order in grating_orders:
            key = key_cls(
                grating=grating,
                grating_order=order,
                filter=filt,
                fpu=fpu,
                x_bin=x_bin,
                y_bin=y_bin,
                gain=gain,
            )
            definitions.append(CalibrationDefinition(
                line_order=line,
                key=key,
                wavelength_range=wavelength_range if grating is not None else None,
                **values,
            ))
    return definitions


def _filters(instrument: Instrument, text: str) -> List[Optional[object]]:
    # Existing files spell the absent filter in lower case as well.
    if text == "none":
        return [None]
    return expand_pattern(text, _optional_vocabulary(NONE, _FILTERS[instrument]))


def _binning(text: str, column: str) -> int:
    if text not in _BINNINGS:
        raise _RowError(f"Unknown {column} '{text}'")
    return _BINNINGS[text]


def _is_header(text: str) -> bool:
    first = text.split(",", 1)[0].strip().lower()
    return first in ("grating", "disperser")


def load_definitions(
    instrument: Instrument, lines: Iterable[str]
) -> List[CalibrationDefinition]:
    """Parse every definition in a file's lines.

    Blank lines, ``#`` comments and a header row are skipped but still count
    towards line numbers.
    """
    definitions: List[CalibrationDefinition] = []
    for number, raw in enumerate(lines, start=1):
        text = raw.strip()
        if not text or text.startswith("#") or _is_header(text):
            continue
        definitions.extend(parse_definition(instrument, text, number))
    logger.debug(
        "Parsed %d %s calibration definitions", len(definitions), instrument.value
    )
    return definitions


def load_table(
    version: str,
    sources: Mapping[Instrument, Union[str, Path, Iterable[str]]],
) -> CalibrationTable:
    """Build a calibration table from one definition file per instrument.

    A source is either a path or an iterable of lines.
    """
    definitions: List[CalibrationDefinition] = []
    for instrument, source in sources.items():
        if isinstance(source, (str, Path)):
            with open(source, encoding="utf-8") as handle:
                definitions.extend(load_definitions(instrument, handle))
        else:
            definitions.extend(load_definitions(instrument, source))
    return CalibrationTable(version, definitions)
