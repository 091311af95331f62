"""
Configuration and environment loading for ChessMind.

- Loads settings.yml (YAML) from repo root if present; falls back to environment variables
  (a local .env is read first via python-dotenv).
- Exposes SETTINGS with provider credentials, request knobs, and turn scheduling delays.
"""
from dataclasses import dataclass
import logging
import os
from typing import Any, Callable

import yaml
from dotenv import load_dotenv

load_dotenv()

log = logging.getLogger("config")


def _repo_root() -> str:
    # this file: src/chessmind/config.py → repo root is two levels up
    return os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))


def _load_yaml(path: str) -> dict:
    if not os.path.isfile(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError):
        log.exception("Failed to read %s; using environment only", path)
        return {}
    return data if isinstance(data, dict) else {}


_cfg = _load_yaml(os.environ.get("CHESSMIND_SETTINGS", os.path.join(_repo_root(), "settings.yml")))


def _get(name: str, default: Any, cast: Callable[[Any], Any] | None = None) -> Any:
    if name in _cfg and _cfg[name] not in (None, ""):
        val = _cfg[name]
        return cast(val) if cast else val
    env = os.environ.get(name)
    if env:
        return cast(env) if cast else env
    return default


@dataclass(frozen=True)
class Settings:
    # Credentials, one per provider family
    openai_api_key: str
    anthropic_api_key: str
    google_api_key: str
    azure_api_key: str
    azure_endpoint: str
    azure_deployment: str
    azure_api_version: str

    # Request knobs
    temperature: float
    max_tokens: int
    request_timeout_s: float

    # Turn scheduling (seconds)
    start_delay_s: float
    handoff_delay_s: float
    chain_delay_s: float

    log_level: str


SETTINGS = Settings(
    openai_api_key=_get("CHESSMIND_OPENAI_API_KEY", _get("OPENAI_API_KEY", "")),
    anthropic_api_key=_get("CHESSMIND_ANTHROPIC_API_KEY", _get("ANTHROPIC_API_KEY", "")),
    google_api_key=_get("CHESSMIND_GOOGLE_API_KEY", _get("GOOGLE_API_KEY", "")),
    azure_api_key=_get("CHESSMIND_AZURE_API_KEY", _get("AZURE_OPENAI_API_KEY", "")),
    azure_endpoint=_get("CHESSMIND_AZURE_ENDPOINT", _get("AZURE_OPENAI_ENDPOINT", "")),
    azure_deployment=_get("CHESSMIND_AZURE_DEPLOYMENT", ""),
    azure_api_version=_get("CHESSMIND_AZURE_API_VERSION", "2024-02-01"),
    temperature=float(_get("CHESSMIND_TEMPERATURE", 0.7, cast=float)),
    max_tokens=int(_get("CHESSMIND_MAX_TOKENS", 1000, cast=int)),
    request_timeout_s=float(_get("CHESSMIND_REQUEST_TIMEOUT_S", 120.0, cast=float)),
    start_delay_s=float(_get("CHESSMIND_START_DELAY_S", 0.5, cast=float)),
    handoff_delay_s=float(_get("CHESSMIND_HANDOFF_DELAY_S", 1.0, cast=float)),
    chain_delay_s=float(_get("CHESSMIND_CHAIN_DELAY_S", 1.5, cast=float)),
    log_level=str(_get("CHESSMIND_LOG_LEVEL", "INFO")),
)
