"""Unit tests for JSON Schema generation."""
from __future__ import annotations

import json
from pathlib import Path

import jsonschema
import pytest

from builders import OBSERVATION, calibration_table, make_event, observation_template

from obs_sequence import InMemoryEventStore, SequenceGenerator, StaticTemplateProvider
from obs_sequence import ValidationError
from obs_sequence.schemas import (
    check_drift,
    generate_schema,
    list_schemas,
    main,
    schema_to_json,
    write_schemas,
)


def test_list_schemas_returns_all_names() -> None:
    """Test that list_schemas returns every registered name, sorted."""
    assert list_schemas() == [
        "calibration_definition",
        "calibration_key",
        "dataset_record",
        "engine_settings",
        "execution_event",
        "execution_state",
        "generated_execution",
        "observation_template",
        "reduced_execution_state",
        "step_record",
    ]


def test_generated_schema_has_metadata() -> None:
    """Test that generated schemas carry $schema and $id."""
    schema = generate_schema("execution_event")
    assert schema["$schema"] == "https://json-schema.org/draft/2020-12/schema"
    assert schema["$id"] == "obs-sequence/execution_event"


def test_adapted_enum_schema() -> None:
    schema = generate_schema("execution_state")
    assert schema["enum"] == ["not_started", "ongoing", "completed", "abandoned"]


def test_unknown_schema_raises() -> None:
    """Test that an unregistered name raises ValidationError."""
    with pytest.raises(ValidationError) as exc_info:
        generate_schema("nonexistent")
    assert "No schema named 'nonexistent'" in str(exc_info.value)
    assert "Available:" in str(exc_info.value)


def test_schema_json_is_deterministic() -> None:
    text = schema_to_json(generate_schema("calibration_key"))
    assert text.endswith("}\n")
    assert text == schema_to_json(generate_schema("calibration_key"))
    assert json.loads(text)["$id"] == "obs-sequence/calibration_key"


def test_event_validates_against_schema() -> None:
    """Test that a serialized ExecutionEvent conforms to its schema."""
    event = make_event(id=7)
    jsonschema.validate(event.model_dump(mode="json"), generate_schema("execution_event"))


def test_generated_execution_validates_against_schema() -> None:
    """Test that generator output conforms to its schema."""
    provider = StaticTemplateProvider({OBSERVATION: observation_template()})
    generator = SequenceGenerator(InMemoryEventStore(), provider, calibration_table())
    result = generator.generate(OBSERVATION, 3)
    jsonschema.validate(result.model_dump(mode="json"), generate_schema("generated_execution"))


def test_schema_rejects_bad_event() -> None:
    instance = make_event().model_dump(mode="json")
    instance["kind"] = "telemetry"
    with pytest.raises(jsonschema.ValidationError):
        jsonschema.validate(instance, generate_schema("execution_event"))


def test_write_then_check(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Test that freshly written schemas pass the drift check."""
    written = write_schemas(tmp_path)
    assert len(written) == len(list_schemas())
    assert check_drift(tmp_path) == 0
    assert "are up to date" in capsys.readouterr().out


def test_check_detects_drift(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Test that modified and missing files are reported."""
    write_schemas(tmp_path)
    (tmp_path / "step_record.schema.json").write_text("{}\n", encoding="utf-8")
    (tmp_path / "execution_state.schema.json").unlink()
    assert check_drift(tmp_path) == 1
    err = capsys.readouterr().err
    assert "Schema drift detected in" in err
    assert "Missing schema file" in err


def test_main_writes_and_checks(tmp_path: Path) -> None:
    out = tmp_path / "schemas"
    assert main(["--check", "--output-dir", str(out)]) == 1
    assert main(["--output-dir", str(out)]) == 0
    assert main(["--check", "--output-dir", str(out)]) == 0
    assert (out / "generated_execution.schema.json").exists()
