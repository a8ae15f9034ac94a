from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8465
DEFAULT_LIBRARY_ROOT = "./library"
DEFAULT_DATA_DIR = "./data"
DEFAULT_SCAN_INTERVAL_SECONDS = 30
DEFAULT_RATE_LIMIT_PER_SECOND = 20
DEFAULT_RATE_LIMIT_BURST = 50

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}

ENV_CONFIG_PATH = "FOILSHOP_CONFIG"
ENV_FIELDS = {
    "FOILSHOP_HOST": "host",
    "FOILSHOP_PORT": "port",
    "FOILSHOP_LIBRARY_ROOT": "library_root",
    "FOILSHOP_AUTH_FILE": "auth_file",
    "FOILSHOP_SCAN_INTERVAL_SECONDS": "scan_interval_seconds",
    "FOILSHOP_DATA_DIR": "data_dir",
    "FOILSHOP_LOG_LEVEL": "log_level",
    "FOILSHOP_RATE_LIMIT_PER_SECOND": "rate_limit_per_second",
    "FOILSHOP_RATE_LIMIT_BURST": "rate_limit_burst",
}
PUBLIC_SHOP_ENV_KEYS = ("FOILSHOP_PUBLIC", "FOILSHOP_SHOP_PUBLIC")


class ConfigError(Exception):
    """Raised for configuration that prevents the server from starting."""


class TitleDbConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enabled: bool = True
    region: str = "US"
    language: str = "en"
    refresh_interval_seconds: int = Field(default=24 * 60 * 60, ge=60)
    url_override: str | None = None


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    host: str = DEFAULT_HOST
    port: int = Field(default=DEFAULT_PORT, ge=0, le=65535)
    library_root: Path = Path(DEFAULT_LIBRARY_ROOT)
    auth_file: Path | None = None
    public_shop: bool = False
    scan_interval_seconds: int = DEFAULT_SCAN_INTERVAL_SECONDS
    data_dir: Path = Path(DEFAULT_DATA_DIR)
    log_level: str = "INFO"
    rate_limit_per_second: int = Field(default=DEFAULT_RATE_LIMIT_PER_SECOND, ge=1)
    rate_limit_burst: int = Field(default=DEFAULT_RATE_LIMIT_BURST, ge=1)
    titledb: TitleDbConfig = Field(default_factory=TitleDbConfig)

    @field_validator("scan_interval_seconds")
    @classmethod
    def _clamp_scan_interval(cls, value: int) -> int:
        return max(1, value)

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        return value.strip().upper() or "INFO"


def parse_bool_value(key: str, raw: str) -> bool:
    normalized = raw.strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    raise ConfigError(f"invalid boolean value for env var {key}: {raw}")


def _read_public_shop_env() -> bool | None:
    for key in PUBLIC_SHOP_ENV_KEYS:
        raw = os.getenv(key)
        if raw is not None:
            return parse_bool_value(key, raw)
    return None


def _read_file_config(path: Path | None) -> dict[str, Any]:
    if path is None:
        return {}

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"failed to read config file {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"invalid config in {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"invalid config in {path}: expected a JSON object")

    # Older config files call the library root "library_folder".
    if "library_folder" in raw and "library_root" not in raw:
        raw["library_root"] = raw.pop("library_folder")
    return raw


def load_settings(config_path: str | Path | None = None, **overrides: Any) -> AppConfig:
    """Merge defaults, the JSON config file, environment and explicit overrides."""

    selected_path = config_path or os.getenv(ENV_CONFIG_PATH) or None
    file_path = Path(selected_path) if selected_path else None

    values: dict[str, Any] = {}
    if file_path is not None:
        values["data_dir"] = file_path.parent / "data"
    values.update(_read_file_config(file_path))

    for env_key, field_name in ENV_FIELDS.items():
        raw = os.getenv(env_key)
        if raw is not None and raw.strip():
            values[field_name] = raw.strip()

    public_shop = _read_public_shop_env()
    if public_shop is not None:
        values["public_shop"] = public_shop

    values.update({key: value for key, value in overrides.items() if value is not None})

    try:
        return AppConfig.model_validate(values)
    except ValidationError as exc:
        raise ConfigError(f"invalid configuration: {exc}") from exc


def validate_settings(config: AppConfig) -> None:
    root = config.library_root
    if not root.exists() or not root.is_dir():
        raise ConfigError(f"library root {root} does not exist or is not a directory")

    if config.public_shop:
        return

    if config.auth_file is None:
        raise ConfigError(
            "private shop requires an auth file. Set --auth-file or FOILSHOP_PUBLIC=true"
        )
    if not config.auth_file.exists():
        raise ConfigError(f"auth file {config.auth_file} does not exist")
