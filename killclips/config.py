from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from killclips.errors import ConfigurationError

DEFAULT_CONFIG_PATH = Path("configs/default.yaml")
ENV_PREFIX = "KILLCLIPS_"
DEFAULT_PRESET = "Balanced"


class RegionOfInterest(BaseModel):
    """Normalized frame rectangle scanned for recognizable text."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    x: float = Field(ge=0.0, le=1.0)
    y: float = Field(ge=0.0, le=1.0)
    width: float = Field(ge=0.0, le=1.0)
    height: float = Field(ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_inside_frame(self) -> RegionOfInterest:
        if self.x + self.width > 1.0 + 1e-9:
            raise ValueError("region x + width must not exceed 1.0")
        if self.y + self.height > 1.0 + 1e-9:
            raise ValueError("region y + height must not exceed 1.0")
        return self


class DetectionConfig(BaseModel):
    """Immutable detection tuning, loaded once per capture session."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    frame_skip_interval: int = Field(ge=1)
    cooldown_seconds: float = Field(ge=0.0)
    confidence_threshold: float = Field(ge=0.0, le=1.0)
    region: RegionOfInterest
    target_keywords: tuple[str, ...] = Field(min_length=1)
    avoid_keywords: tuple[str, ...] = ()
    case_sensitive: bool = False
    pre_roll_seconds: float = Field(ge=0.0)
    post_roll_seconds: float = Field(ge=0.0)

    @field_validator("target_keywords", "avoid_keywords")
    @classmethod
    def _reject_blank_keywords(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        # An empty keyword is a substring of every text.
        if any(not keyword.strip() for keyword in value):
            raise ValueError("keywords must not be blank")
        return value


PRESETS: dict[str, DetectionConfig] = {
    "Balanced": DetectionConfig(
        frame_skip_interval=2,
        cooldown_seconds=2.5,
        confidence_threshold=0.5,
        region=RegionOfInterest(x=0.60, y=0.35, width=0.35, height=0.25),
        target_keywords=("ELIMINATED",),
        avoid_keywords=("KILLED BY", "ELIMINATED BY", "Kill Highlight", "CGAME", "Duration", "Recorded"),
        case_sensitive=False,
        pre_roll_seconds=5.0,
        post_roll_seconds=3.0,
    ),
    "Sensitive": DetectionConfig(
        frame_skip_interval=5,
        cooldown_seconds=2.0,
        confidence_threshold=0.3,
        region=RegionOfInterest(x=0.40, y=0.15, width=0.55, height=0.40),
        target_keywords=("ELIMINATED", "KILL", "ELIMINA", "KNOCKED", "DOWN"),
        avoid_keywords=("KILLED BY", "ELIMINATED BY", "KNOCKED BY"),
        case_sensitive=False,
        pre_roll_seconds=7.0,
        post_roll_seconds=4.0,
    ),
    "Conservative": DetectionConfig(
        frame_skip_interval=15,
        cooldown_seconds=5.0,
        confidence_threshold=0.7,
        region=RegionOfInterest(x=0.55, y=0.25, width=0.40, height=0.25),
        target_keywords=("ELIMINATED",),
        avoid_keywords=(),
        case_sensitive=False,
        pre_roll_seconds=4.0,
        post_roll_seconds=2.0,
    ),
}


class DetectionSettings(BaseModel):
    preset: str = DEFAULT_PRESET
    config_path: Path | None = None


class HandoffSettings(BaseModel):
    store_dir: Path = Path("data/handoff")
    state_dir: Path = Path("data/state")
    poll_interval_seconds: float = Field(default=2.0, gt=0.0)


class ClipSettings(BaseModel):
    output_dir: Path = Path("data/clips")
    grouping_gap_seconds: float = Field(default=5.0, ge=0.0)
    ffmpeg_preset: str = "veryfast"
    crf: int = Field(default=18, ge=0, le=51)


class CaptureSettings(BaseModel):
    sessions_dir: Path = Path("data/sessions")


class LoggingSettings(BaseModel):
    level: str = "INFO"
    detected_text_interval: int = Field(default=300, ge=0)


class Settings(BaseModel):
    detection: DetectionSettings = Field(default_factory=DetectionSettings)
    handoff: HandoffSettings = Field(default_factory=HandoffSettings)
    clips: ClipSettings = Field(default_factory=ClipSettings)
    capture: CaptureSettings = Field(default_factory=CaptureSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load typed settings from YAML with environment-variable overrides."""

    resolved_path = Path(
        config_path
        or os.getenv(f"{ENV_PREFIX}CONFIG")
        or DEFAULT_CONFIG_PATH
    )
    raw_config: dict[str, Any] = {}
    if resolved_path.exists():
        raw_config = yaml.safe_load(resolved_path.read_text(encoding="utf-8")) or {}

    try:
        data = Settings.model_validate(raw_config).model_dump(mode="python")

        for key, raw_value in os.environ.items():
            if not key.startswith(ENV_PREFIX):
                continue

            suffix = key[len(ENV_PREFIX) :]
            if suffix == "CONFIG":
                continue

            path = [part.lower() for part in suffix.split("__")]
            _apply_override(data, path, raw_value)

        return Settings.model_validate(data)
    except (ValidationError, ValueError) as exc:
        raise ConfigurationError(f"Invalid settings in {resolved_path}: {exc}") from exc


def get_preset(name: str) -> DetectionConfig:
    """Look up a named detection preset, ignoring case."""

    for preset_name, config in PRESETS.items():
        if preset_name.lower() == name.strip().lower():
            return config
    raise ConfigurationError(
        f"Unknown detection preset '{name}'. Available presets: {', '.join(PRESETS)}"
    )


def load_detection_config(path: str | Path) -> DetectionConfig:
    """Load and validate a detection config file (YAML or JSON)."""

    config_path = Path(path).expanduser()
    if not config_path.exists():
        raise ConfigurationError(f"Detection config file not found: {config_path}")

    text = config_path.read_text(encoding="utf-8")
    try:
        if config_path.suffix.lower() == ".json":
            payload = json.loads(text)
        else:
            payload = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Detection config {config_path} could not be parsed: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigurationError(f"Detection config {config_path} must be a mapping.")

    try:
        return DetectionConfig.model_validate(payload)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid detection config {config_path}: {exc}") from exc


def resolve_detection_config(settings: Settings) -> DetectionConfig:
    """Return the single active detection config for a session."""

    if settings.detection.config_path is not None:
        return load_detection_config(settings.detection.config_path)
    return get_preset(settings.detection.preset)


def _apply_override(data: dict[str, Any], path: list[str], raw_value: str) -> None:
    current: Any = data
    for segment in path[:-1]:
        if not isinstance(current, dict) or segment not in current:
            return
        current = current[segment]

    if not isinstance(current, dict):
        return

    final_key = path[-1]
    if final_key not in current:
        return

    current[final_key] = _coerce_value(raw_value, current[final_key])


def _coerce_value(raw_value: str, existing_value: Any) -> Any:
    if isinstance(existing_value, bool):
        return raw_value.lower() in {"1", "true", "yes", "on"}
    if isinstance(existing_value, int) and not isinstance(existing_value, bool):
        return int(raw_value)
    if isinstance(existing_value, float):
        return float(raw_value)
    if isinstance(existing_value, list | dict):
        return json.loads(raw_value)
    if isinstance(existing_value, Path):
        return Path(raw_value)
    return raw_value
