"""Runtime settings.

Settings come from environment variables (after `.env` is loaded), optionally
layered over a YAML file named by SKYWATCH_CONFIG_YAML. Anything invalid or
incomplete is fatal at startup.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from store.core.env import load_env_if_present


CONFIG_YAML_ENV = "SKYWATCH_CONFIG_YAML"
DEFAULT_DATABASE_URL = "sqlite:///./data/skywatch.db"

# env var -> settings field
_ENV_FIELDS: dict[str, str] = {
    "WSS_URL": "wss_url",
    "BSKY_HANDLE": "bsky_handle",
    "BSKY_PASSWORD": "bsky_password",
    "PDS": "pds",
    "PLC_DIRECTORY_URL": "plc_directory_url",
    "CAPTURE_LABELS": "capture_labels",
    "HYDRATE_BLOBS": "hydrate_blobs",
    "BLOB_STORAGE_TYPE": "blob_storage_type",
    "BLOB_STORAGE_PATH": "blob_storage_path",
    "S3_BUCKET": "s3_bucket",
    "S3_REGION": "s3_region",
    "DATABASE_URL": "database_url",
    "CURSOR_BACKEND": "cursor_backend",
    "CURSOR_PATH": "cursor_path",
    "LOG_LEVEL": "log_level",
    "RATE_LIMIT_MAX_CALLS": "rate_limit_max_calls",
    "RATE_LIMIT_WINDOW_SECONDS": "rate_limit_window_seconds",
    "RATE_LIMIT_CONCURRENCY": "rate_limit_concurrency",
    "RATE_LIMIT_MAX_DELAY_SECONDS": "rate_limit_max_delay_seconds",
    "RETRY_MAX_ATTEMPTS": "retry_max_attempts",
}


class ConfigurationError(RuntimeError):
    """Raised when settings are invalid or incomplete. Fatal at startup."""


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    # Stream
    wss_url: str
    cursor_backend: Literal["file", "database"] = "file"
    cursor_path: str = "./data/cursor.txt"

    # Credentials / services
    bsky_handle: str = Field(min_length=1)
    bsky_password: str = Field(min_length=1)
    pds: str = "bsky.social"
    plc_directory_url: str = "https://plc.directory"

    # Filtering
    capture_labels: Optional[list[str]] = None

    # Blobs
    hydrate_blobs: bool = False
    blob_storage_type: Literal["local", "s3"] = "local"
    blob_storage_path: str = "./data/blobs"
    s3_bucket: Optional[str] = None
    s3_region: Optional[str] = None

    # Persistence
    database_url: str = DEFAULT_DATABASE_URL

    # Operational
    log_level: Literal["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"] = "INFO"
    rate_limit_max_calls: int = Field(default=280, gt=0)
    rate_limit_window_seconds: float = Field(default=30.0, gt=0)
    rate_limit_concurrency: int = Field(default=48, gt=0)
    rate_limit_max_delay_seconds: float = Field(default=30.0, ge=0)
    retry_max_attempts: int = Field(default=3, gt=0)

    @field_validator("wss_url")
    @classmethod
    def _validate_wss_url(cls, v: str) -> str:
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("WSS_URL must be a ws:// or wss:// URL")
        return v

    @field_validator("capture_labels", mode="before")
    @classmethod
    def _split_labels(cls, v: Any) -> Any:
        if isinstance(v, str):
            labels = [part.strip() for part in v.split(",") if part.strip()]
            return labels or None
        if isinstance(v, list) and not v:
            return None
        return v

    @field_validator("hydrate_blobs", mode="before")
    @classmethod
    def _parse_bool(cls, v: Any) -> Any:
        # Only an explicit "true" enables downloads.
        if isinstance(v, str):
            return v.strip().lower() == "true"
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_level(cls, v: Any) -> Any:
        if isinstance(v, str):
            level = v.strip().upper()
            return "WARNING" if level == "WARN" else level
        return v

    @model_validator(mode="after")
    def _validate_s3(self) -> "Settings":
        if self.blob_storage_type == "s3" and (not self.s3_bucket or not self.s3_region):
            raise ValueError("S3 storage requires S3_BUCKET and S3_REGION")
        return self


def _load_yaml(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigurationError(f"Cannot read config file {path}: {e}") from e
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Invalid config file {path}: expected a top-level mapping.")
    return raw


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from YAML (optional) overlaid with environment variables."""
    if environ is None:
        load_env_if_present()
        environ = os.environ

    values: dict[str, Any] = {}
    yaml_path = environ.get(CONFIG_YAML_ENV)
    if yaml_path:
        values.update(_load_yaml(Path(yaml_path)))

    for env_key, field in _ENV_FIELDS.items():
        v = environ.get(env_key)
        if v is not None and v != "":
            values[field] = v

    try:
        return Settings(**values)
    except ValidationError as e:
        raise ConfigurationError(f"Configuration validation failed:\n{e}") from e
