from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Literal
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOGGER = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[2]


class CacheSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    max_months: int = Field(default=12, ge=1, le=120)
    max_display_days: int = Field(default=12, ge=1, le=400)
    expiry_months: int = Field(default=6, ge=0, le=60)


class LoadingSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    window_range: int = Field(default=1, ge=0, le=6)


class GridSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    week_start: Literal["sunday", "monday"] = "sunday"


class HolidaySettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enabled: bool = True
    show: bool = True
    calendar_ids: list[str] = Field(default_factory=list)

    @field_validator("calendar_ids")
    @classmethod
    def validate_calendar_ids(cls, values: list[str]) -> list[str]:
        normalized = [value.strip() for value in values if isinstance(value, str) and value.strip()]
        return list(dict.fromkeys(normalized))


class CalendarSourceSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["ics", "ics_url"] = "ics"
    kind: Literal["events", "holidays"] = "events"
    path: Path | None = None
    url: str | None = None
    name: str | None = None
    id: str | None = None
    color: str | None = None

    @field_validator("path")
    @classmethod
    def validate_path(cls, value: Path | None) -> Path | None:
        if value is None:
            return None
        text = str(value).strip()
        if not text:
            raise ValueError("sources[].path must not be empty")
        return Path(text)

    @field_validator("url")
    @classmethod
    def validate_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        text = value.strip()
        if not text:
            raise ValueError("sources[].url must not be empty")

        parsed = urlparse(text)
        if parsed.scheme == "webcal":
            text = parsed._replace(scheme="https").geturl()
            parsed = urlparse(text)

        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("sources[].url must be an absolute http(s) URL")
        return text

    @field_validator("name", "id", "color")
    @classmethod
    def validate_optional_text(cls, value: str | None) -> str | None:
        if value is None:
            return None
        text = value.strip()
        return text or None

    @model_validator(mode="after")
    def validate_source_fields(self) -> CalendarSourceSettings:
        if self.type == "ics":
            if self.path is None:
                raise ValueError("sources[].path is required when type is 'ics'")
            if self.url is not None:
                raise ValueError("sources[].url is not allowed when type is 'ics'")
            return self

        if self.path is not None:
            raise ValueError("sources[].path is not allowed when type is 'ics_url'")
        if self.url is None:
            raise ValueError("sources[].url is required when type is 'ics_url'")
        return self


class MaintenanceSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sweep_interval_minutes: int = Field(default=30, ge=1, le=1440)
    warmup_interval_minutes: int = Field(default=15, ge=1, le=1440)
    jitter_seconds: int = Field(default=15, ge=0, le=300)


class AggregatorYamlSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    cache: CacheSettings = Field(default_factory=CacheSettings)
    loading: LoadingSettings = Field(default_factory=LoadingSettings)
    grid: GridSettings = Field(default_factory=GridSettings)
    holidays: HolidaySettings = Field(default_factory=HolidaySettings)
    sources: list[CalendarSourceSettings] = Field(default_factory=list)
    maintenance: MaintenanceSettings = Field(default_factory=MaintenanceSettings)


class EnvSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    calendar_env: Literal["dev", "test", "prod"] = "dev"
    calendar_timezone: str = "Europe/Berlin"
    calendar_config_path: Path = Path("config/aggregator.yaml")

    @field_validator("calendar_timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except ZoneInfoNotFoundError as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value


class AppSettings(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    env: EnvSettings
    yaml: AggregatorYamlSettings
    project_root: Path
    config_path: Path
    timezone: ZoneInfo


def _resolve_project_path(path: Path) -> Path:
    if path.is_absolute():
        return path
    return (PROJECT_ROOT / path).resolve()


def _load_yaml_settings(path: Path) -> AggregatorYamlSettings:
    if not path.exists():
        LOGGER.warning("Aggregator config file not found at %s; using defaults", path)
        return AggregatorYamlSettings()

    raw_config = yaml.safe_load(path.read_text(encoding="utf-8"))
    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise ValueError("Aggregator config must be a YAML mapping/object at the top level")
    return AggregatorYamlSettings.model_validate(raw_config)


def build_settings(env: EnvSettings) -> AppSettings:
    config_path = _resolve_project_path(env.calendar_config_path)
    return AppSettings(
        env=env,
        yaml=_load_yaml_settings(config_path),
        project_root=PROJECT_ROOT,
        config_path=config_path,
        timezone=ZoneInfo(env.calendar_timezone),
    )


@lru_cache(maxsize=1)
def load_settings() -> AppSettings:
    return build_settings(EnvSettings())
