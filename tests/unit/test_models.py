"""Unit tests for core data models and errors."""
from datetime import datetime, timedelta
from decimal import Decimal

import pydantic
import pytest

from builders import T0, gmos_config, gmos_key, make_event

from obs_sequence import (
    AtomStage,
    CalibrationLookupError,
    ConfigurationError,
    EventKind,
    GcalLamp,
    ObsSequenceError,
    RemoteServiceError,
    SequenceCommand,
    StepConfig,
    StepStage,
    StepType,
    StorageError,
    TelescopeConfig,
    ValidationError,
)


class TestExecutionEvent:
    """Tests for ExecutionEvent validation and ordering."""

    def test_accepts_stage_enum(self) -> None:
        event = make_event(kind=EventKind.STEP_STAGE, stage=StepStage.END_STEP)
        assert event.stage == "end_step"
        assert event.is_terminal

    def test_rejects_stage_from_other_kind(self) -> None:
        with pytest.raises(pydantic.ValidationError, match="not valid for atom_stage"):
            make_event(kind=EventKind.ATOM_STAGE, stage="start_step")

    def test_sequence_command_vocabulary(self) -> None:
        event = make_event(
            kind=EventKind.SEQUENCE_COMMAND,
            subject_id="o-1",
            stage=SequenceCommand.RESET_ACQUISITION,
        )
        assert event.stage == "reset_acquisition"
        assert not event.is_terminal

    def test_rejects_naive_timestamp(self) -> None:
        with pytest.raises(pydantic.ValidationError, match="timezone-aware"):
            make_event(received_at=datetime(2026, 1, 1))

    def test_rejects_negative_id(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            make_event(id=-1)

    def test_is_frozen(self) -> None:
        event = make_event()
        with pytest.raises(pydantic.ValidationError):
            event.stage = AtomStage.END_ATOM.value  # type: ignore[misc]

    def test_sort_key_breaks_ties_by_id(self) -> None:
        early = make_event(id=7, received_at=T0)
        late = make_event(id=3, received_at=T0 + timedelta(seconds=1))
        tie = make_event(id=8, received_at=T0)
        ordered = sorted([late, tie, early], key=lambda e: e.sort_key())
        assert [e.id for e in ordered] == [7, 8, 3]


class TestConfigurationValues:
    """Tests for configuration value types."""

    def test_instrument_config_structural_equality(self) -> None:
        assert gmos_config() == gmos_config()
        assert gmos_config() != gmos_config(x_bin=2)

    def test_negative_exposure_rejected(self) -> None:
        with pytest.raises(pydantic.ValidationError, match="negative"):
            gmos_config(exposure_time=timedelta(seconds=-1))

    def test_gcal_lamp_requires_exactly_one_kind(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            GcalLamp()
        with pytest.raises(pydantic.ValidationError):
            GcalLamp(arcs=("CuAr arc",), continuum="Quartz Halogen 5W")
        assert GcalLamp(arcs=("CuAr arc", "ThAr arc")).format() == "CuAr arc + ThAr arc"

    def test_step_config_shape(self) -> None:
        with pytest.raises(pydantic.ValidationError, match="smart_gcal_type"):
            StepConfig(step_type=StepType.SMART_GCAL)
        with pytest.raises(pydantic.ValidationError, match="gcal configuration"):
            StepConfig(step_type=StepType.GCAL)

    def test_telescope_offsets_compare_numerically(self) -> None:
        assert TelescopeConfig(offset_q=Decimal("5.0")) == TelescopeConfig(offset_q=Decimal(5))


class TestErrors:
    """Tests for the error hierarchy and structured encoding."""

    @pytest.mark.parametrize(
        "error, tag",
        [
            (ValidationError("bad"), "invalid_argument"),
            (StorageError("rejected"), "update_failed"),
            (ConfigurationError("o-1"), "invalid_configuration"),
            (RemoteServiceError("itc down"), "remote_service_call_error"),
        ],
    )
    def test_tags(self, error: ObsSequenceError, tag: str) -> None:
        assert isinstance(error, ObsSequenceError)
        assert error.to_dict()["tag"] == tag

    def test_configuration_error_message(self) -> None:
        error = ConfigurationError("o-1", "observation has no instrument mode")
        assert str(error) == (
            "Could not generate a sequence for o-1: observation has no instrument mode"
        )
        assert error.to_dict()["data"] == {"observation_id": "o-1"}

    def test_lookup_error_carries_key(self) -> None:
        error = CalibrationLookupError(gmos_key(), 500_000)
        encoded = error.to_dict()
        assert encoded["tag"] == "sequence_unavailable"
        assert encoded["data"]["key"]["grating"] == "R400_G5305"
        assert encoded["data"]["wavelength_pm"] == 500_000
        assert "wavelength: 500000 pm" in encoded["message"]
