# analyst_core/config.py
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import commentjson
import yaml
from dotenv import load_dotenv

from analyst_core.errors import ConfigurationError

load_dotenv()

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


@dataclass(frozen=True)
class Settings:
    base_url: str = "http://localhost:8000"
    api_token: Optional[str] = None
    tick_seconds: float = 1.0
    progress_margin: int = 4
    completion_dwell_seconds: float = 0.3
    producer_dwell_seconds: float = 0.5
    keepalive_seconds: float = 15.0
    max_stream_seconds: float = 600.0
    request_timeout_seconds: float = 30.0
    voice_enabled: bool = True
    pipeline: Optional[str] = None
    history_ttl_seconds: int = 24 * 3600
    history_max_tokens: int = 8000
    log_level: str = "INFO"

    @property
    def watchdog_seconds(self) -> Optional[float]:
        return self.max_stream_seconds if self.max_stream_seconds > 0 else None


# env name -> (field name, parser)
_ENV_FIELDS = {
    "ANALYST_BASE_URL": ("base_url", str),
    "ANALYST_API_TOKEN": ("api_token", str),
    "ANALYST_TICK_SECONDS": ("tick_seconds", float),
    "ANALYST_PROGRESS_MARGIN": ("progress_margin", int),
    "ANALYST_COMPLETION_DWELL_SECONDS": ("completion_dwell_seconds", float),
    "ANALYST_PRODUCER_DWELL_SECONDS": ("producer_dwell_seconds", float),
    "ANALYST_KEEPALIVE_SECONDS": ("keepalive_seconds", float),
    "ANALYST_MAX_STREAM_SECONDS": ("max_stream_seconds", float),
    "ANALYST_REQUEST_TIMEOUT_SECONDS": ("request_timeout_seconds", float),
    "ANALYST_VOICE_ENABLED": ("voice_enabled", "bool"),
    "ANALYST_PIPELINE": ("pipeline", str),
    "ANALYST_HISTORY_TTL_SECONDS": ("history_ttl_seconds", int),
    "ANALYST_HISTORY_MAX_TOKENS": ("history_max_tokens", int),
    "ANALYST_LOG_LEVEL": ("log_level", str),
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _parse_value(key: str, raw: Any, parser: Any) -> Any:
    if parser == "bool":
        if isinstance(raw, bool):
            return raw
        text = str(raw).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ConfigurationError(f"{key} must be a boolean, got {raw!r}", config_key=key)
    try:
        return parser(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{key} has an invalid value {raw!r}: {e}", config_key=key) from e


def load_settings_file(path: str | Path) -> Dict[str, Any]:
    """
    Read a settings file (.yaml/.yml through PyYAML, .json/.jsonc through commentjson).
    Keys are the same names as the environment variables.
    """
    cfg_path = Path(path)
    if not cfg_path.exists():
        raise FileNotFoundError(f"Analyst settings file not found at '{cfg_path}'")

    with cfg_path.open("r", encoding="utf-8") as f:
        if cfg_path.suffix.lower() in (".yaml", ".yml"):
            data = yaml.safe_load(f)
        else:
            data = commentjson.load(f)

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Settings file '{cfg_path}' must contain a mapping at top level")
    return data


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if env is None else env

    raw: Dict[str, Any] = {}
    cfg_file = env.get("ANALYST_CONFIG_FILE")
    if cfg_file:
        raw.update(load_settings_file(cfg_file))
    for key in _ENV_FIELDS:
        if key in env and env[key] != "":
            raw[key] = env[key]

    values: Dict[str, Any] = {}
    for key, value in raw.items():
        if key not in _ENV_FIELDS:
            logging.getLogger("analyst_stream").warning("Ignoring unknown setting %s", key)
            continue
        field_name, parser = _ENV_FIELDS[key]
        values[field_name] = _parse_value(key, value, parser)

    settings = Settings(**values)
    if settings.tick_seconds <= 0:
        raise ConfigurationError("ANALYST_TICK_SECONDS must be positive", config_key="ANALYST_TICK_SECONDS")
    if settings.progress_margin < 0:
        raise ConfigurationError("ANALYST_PROGRESS_MARGIN cannot be negative", config_key="ANALYST_PROGRESS_MARGIN")
    return settings


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
