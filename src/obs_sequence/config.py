"""Engine settings loaded from YAML."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from obs_sequence.models import Instrument, ValidationError

CONFIG_ENV_VAR = "OBS_SEQUENCE_CONFIG"
ENV_PREFIX = "OBS_SEQUENCE_"

# Hard ceiling on lookahead regardless of configuration.
MAX_FUTURE_LIMIT = 100


class EngineSettings(BaseModel):
    """Tunable engine parameters."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    max_future_limit: int = Field(
        MAX_FUTURE_LIMIT, ge=0, le=MAX_FUTURE_LIMIT,
        description="Largest accepted future_limit",
    )
    default_future_limit: int = Field(
        25, ge=0, description="future_limit used when the caller gives none"
    )
    calibration_table_version: str = Field("default", min_length=1)
    calibration_tables: Dict[Instrument, Path] = Field(
        default_factory=dict, description="Smart-GCAL definition file per instrument"
    )
    log_level: str = Field("INFO", description="Level for configure_logging()")

    @model_validator(mode="after")
    def _default_within_max(self) -> "EngineSettings":
        if self.default_future_limit > self.max_future_limit:
            raise ValueError(
                f"default_future_limit ({self.default_future_limit}) exceeds "
                f"max_future_limit ({self.max_future_limit})"
            )
        return self


def _apply_env_overrides(cfg: Dict[str, Any], env: Dict[str, str]) -> None:
    """Apply ``OBS_SEQUENCE_<FIELD>`` overrides for top-level scalar fields."""
    plen = len(ENV_PREFIX)
    for key, value in env.items():
        if not key.startswith(ENV_PREFIX) or key == CONFIG_ENV_VAR:
            continue
        field = key[plen:].lower()
        if field not in EngineSettings.model_fields or field == "calibration_tables":
            continue
        cfg[field] = value


def load_settings(
    path: Optional[Union[Path, str]] = None,
    *,
    env: Optional[Dict[str, str]] = None,
) -> EngineSettings:
    """Load settings from YAML.

    ``path`` falls back to the file named by ``OBS_SEQUENCE_CONFIG``; with
    neither, defaults are returned. Scalar fields may be overridden by
    ``OBS_SEQUENCE_<FIELD>`` environment variables.

    Raises:
        FileNotFoundError: If the named file does not exist.
        ValidationError: If the file does not describe valid settings.
    """
    environ = dict(os.environ) if env is None else env
    if path is None:
        path = environ.get(CONFIG_ENV_VAR)

    data: Dict[str, Any] = {}
    if path is not None:
        p = Path(path)
        if not p.exists():
            raise FileNotFoundError(f"Config file not found: {p}")
        with open(p, "r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}
        if not isinstance(raw, dict):
            raise ValidationError(f"Config file {p} must contain a mapping")
        data = {str(k).lower(): v for k, v in raw.items()}
        # Table paths are relative to the config file.
        tables = data.get("calibration_tables") or {}
        if isinstance(tables, dict):
            data["calibration_tables"] = {
                k: (p.parent / v if not Path(v).is_absolute() else v)
                for k, v in tables.items()
            }

    _apply_env_overrides(data, environ)

    try:
        return EngineSettings(**data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid engine configuration: {e}") from e


def configure_logging(settings: EngineSettings) -> None:
    """Attach a stream handler to the package logger.

    Library code never calls this; applications may.
    """
    logger = logging.getLogger("obs_sequence")
    logger.setLevel(settings.log_level.upper())
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        logger.addHandler(handler)
