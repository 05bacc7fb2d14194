"""JSON Schema generation for the public obs-sequence models."""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type

from pydantic import BaseModel, TypeAdapter

from obs_sequence.calibration import CalibrationDefinition, CalibrationKey
from obs_sequence.config import EngineSettings
from obs_sequence.execution import ExecutionState, ReducedExecutionState
from obs_sequence.generator import GeneratedExecution
from obs_sequence.models import (
    DatasetRecord,
    ExecutionEvent,
    StepRecord,
    ValidationError,
)
from obs_sequence.template import ObservationTemplate

SCHEMA_DRAFT = "https://json-schema.org/draft/2020-12/schema"

# Registry of models to generate schemas for
PYDANTIC_MODELS: List[Tuple[str, Type[BaseModel]]] = [
    ("execution_event", ExecutionEvent),
    ("step_record", StepRecord),
    ("dataset_record", DatasetRecord),
    ("reduced_execution_state", ReducedExecutionState),
    ("calibration_definition", CalibrationDefinition),
    ("observation_template", ObservationTemplate),
    ("generated_execution", GeneratedExecution),
    ("engine_settings", EngineSettings),
]

# Enums and unions (use TypeAdapter)
ADAPTED_TYPES: List[Tuple[str, Any]] = [
    ("execution_state", ExecutionState),
    ("calibration_key", CalibrationKey),
]


def list_schemas() -> List[str]:
    """All registered schema names, sorted."""
    return sorted([n for n, _ in PYDANTIC_MODELS] + [n for n, _ in ADAPTED_TYPES])


def generate_schema(name: str) -> Dict[str, Any]:
    """JSON Schema for a registered model, with ``$schema`` and ``$id`` set.

    Raises:
        ValidationError: If ``name`` is not registered.
    """
    models = dict(PYDANTIC_MODELS)
    adapted = dict(ADAPTED_TYPES)
    if name in models:
        schema = models[name].model_json_schema(mode="serialization")
    elif name in adapted:
        adapter: TypeAdapter[Any] = TypeAdapter(adapted[name])
        schema = adapter.json_schema(mode="serialization")
    else:
        raise ValidationError(
            f"No schema named '{name}'. Available: {list_schemas()}"
        )
    schema["$schema"] = SCHEMA_DRAFT
    schema["$id"] = f"obs-sequence/{name}"
    return schema


def schema_to_json(schema: Dict[str, Any]) -> str:
    """Deterministic JSON text with a trailing newline."""
    return json.dumps(schema, indent=2, sort_keys=True) + "\n"


def write_schemas(output_dir: Path) -> List[Path]:
    output_dir.mkdir(parents=True, exist_ok=True)
    written: List[Path] = []
    for name in list_schemas():
        path = output_dir / f"{name}.schema.json"
        path.write_text(schema_to_json(generate_schema(name)), encoding="utf-8")
        written.append(path)
    return written


def check_drift(output_dir: Path) -> int:
    """Compare generated schemas with the files in ``output_dir``.

    Returns:
        0 if all schemas match, 1 if any is missing or differs
    """
    drift_detected = False
    for name in list_schemas():
        path = output_dir / f"{name}.schema.json"
        if not path.exists():
            print(f"ERROR: Missing schema file: {path}", file=sys.stderr)
            drift_detected = True
            continue
        if path.read_text(encoding="utf-8") != schema_to_json(generate_schema(name)):
            print(f"ERROR: Schema drift detected in {path}", file=sys.stderr)
            drift_detected = True

    if drift_detected:
        print("\nSchema drift detected. Run without --check to regenerate.", file=sys.stderr)
        return 1
    print(f"All {len(list_schemas())} schemas are up to date.")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for schema generation.

    Returns:
        Exit code (0 for success, 1 for drift)
    """
    parser = argparse.ArgumentParser(
        description="Generate JSON schemas for obs-sequence models"
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("schemas"),
        help="Directory holding <name>.schema.json files",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Check for schema drift without writing files (CI mode)",
    )
    args = parser.parse_args(argv)

    if args.check:
        return check_drift(args.output_dir)

    written = write_schemas(args.output_dir)
    print(f"Successfully generated {len(written)} schemas.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
