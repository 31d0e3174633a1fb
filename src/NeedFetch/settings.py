# === NAVMAP v1 ===
# {
#   "module": "NeedFetch.settings",
#   "purpose": "Process-wide configuration with call-site > process default > built-in precedence",
#   "sections": [
#     {"id": "needsettings", "name": "NeedSettings", "anchor": "class-needsettings", "kind": "class"},
#     {"id": "load-settings", "name": "load_settings", "anchor": "function-load-settings", "kind": "function"},
#     {"id": "process-defaults", "name": "Process Defaults", "anchor": "PRC", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Configuration for the fetch engine.

Settings compose in three levels:

1. **Built-in** field defaults below (for example ``timeout_ms=5000``).
2. **Process** defaults: ``NEEDFETCH_*`` environment variables, an optional
   YAML/JSON file passed to :func:`load_settings`, and anything installed with
   :func:`configure_defaults`.
3. **Call site** values such as ``NeedEngine.fetch(..., timeout_ms=...)``.

Later levels win.  The engine receives a :class:`NeedSettings` instance at
construction instead of reading module globals on every attempt.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, Optional

import yaml
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 5000
SUPPORTED_ALGORITHMS = ("md5", "sha1", "sha256", "sha384", "sha512", "blake2b")

TargetKind = Literal["module", "file", "memory"]


class NeedSettings(BaseSettings):
    """Tunable behaviour shared by every top-level fetch."""

    timeout_ms: int = Field(
        default=DEFAULT_TIMEOUT_MS,
        description="Per-attempt timeout, armed only when another source remains",
    )
    digest_algorithm: str = Field(default="sha256", description="hashlib algorithm name")
    require_digest: bool = Field(
        default=False,
        description="Reject calls without an expected digest instead of running in diagnostic mode",
    )
    default_target: TargetKind = Field(
        default="module", description="Delivery target when the consumer does not name one"
    )
    priming_window: int = Field(
        default=1,
        description="Swap the head with one of the first N plain sources (1 disables priming)",
    )
    user_agent: str = Field(default="needfetch/0.3 (+https://pypi.org/project/needfetch/)")
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False)
    log_dir: Optional[Path] = Field(default=None)

    model_config = SettingsConfigDict(
        env_prefix="NEEDFETCH_",
        case_sensitive=False,
        extra="forbid",
        validate_assignment=True,
    )

    @field_validator("timeout_ms")
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("timeout_ms must be positive")
        return v

    @field_validator("digest_algorithm")
    @classmethod
    def validate_algorithm(cls, v: str) -> str:
        candidate = v.strip().lower()
        if candidate not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"unsupported digest algorithm '{candidate}'")
        return candidate

    @field_validator("priming_window")
    @classmethod
    def validate_window(cls, v: int) -> int:
        if v < 1:
            raise ValueError("priming_window must be >= 1")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level '{v}'")
        return level

    def resolve_timeout_ms(self, call_site: Optional[int] = None) -> int:
        """Return the call-site timeout when given, otherwise the configured one."""

        if call_site is None:
            return self.timeout_ms
        if call_site <= 0:
            raise ConfigError(f"timeout_ms must be positive, got {call_site}")
        return int(call_site)


def _read_file(path: Path) -> Dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Unable to read config file {path}: {exc}") from exc
    if path.suffix.lower() == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping")
    section = data.get("needfetch", data)
    if not isinstance(section, Mapping):
        raise ConfigError(f"'needfetch' section in {path} must be a mapping")
    return dict(section)


def load_settings(config_path: Optional[Path] = None, **overrides: Any) -> NeedSettings:
    """Build settings from file < env < explicit overrides.

    Args:
        config_path: Optional YAML or JSON file. A top-level ``needfetch`` key
            is honoured when present, otherwise the whole mapping is used.
        **overrides: Programmatic values (typically CLI options). ``None``
            values are ignored so unset options fall through.

    Raises:
        ConfigError: If the file cannot be parsed or a value fails validation.
    """

    file_values: Dict[str, Any] = _read_file(config_path) if config_path else {}
    explicit = {key: value for key, value in overrides.items() if value is not None}
    try:
        env_settings = NeedSettings()
        merged = {**file_values, **env_settings.model_dump(exclude_unset=True), **explicit}
        settings = NeedSettings(**merged)
    except ValidationError as exc:
        messages = [f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in exc.errors()]
        raise ConfigError("Invalid needfetch settings: " + "; ".join(messages)) from exc
    if explicit:
        LOGGER.debug("settings overridden", extra={"stage": "config", "overrides": explicit})
    return settings


_DEFAULTS_LOCK = threading.Lock()
_PROCESS_DEFAULTS: Optional[NeedSettings] = None


def get_default_settings() -> NeedSettings:
    """Return the process-wide settings, loading them from the environment once."""

    global _PROCESS_DEFAULTS
    with _DEFAULTS_LOCK:
        if _PROCESS_DEFAULTS is None:
            _PROCESS_DEFAULTS = load_settings()
        return _PROCESS_DEFAULTS


def configure_defaults(**overrides: Any) -> NeedSettings:
    """Install process-wide overrides (for example ``timeout_ms``) and return them."""

    global _PROCESS_DEFAULTS
    with _DEFAULTS_LOCK:
        base = _PROCESS_DEFAULTS.model_dump(exclude_unset=True) if _PROCESS_DEFAULTS else {}
        base.update({key: value for key, value in overrides.items() if value is not None})
        _PROCESS_DEFAULTS = load_settings(**base)
        LOGGER.info(
            "process defaults configured",
            extra={"stage": "config", "overrides": sorted(overrides)},
        )
        return _PROCESS_DEFAULTS


def reset_defaults() -> None:
    """Forget process-wide overrides (tests only)."""

    global _PROCESS_DEFAULTS
    with _DEFAULTS_LOCK:
        _PROCESS_DEFAULTS = None


__all__ = [
    "DEFAULT_TIMEOUT_MS",
    "NeedSettings",
    "SUPPORTED_ALGORITHMS",
    "TargetKind",
    "configure_defaults",
    "get_default_settings",
    "load_settings",
    "reset_defaults",
]
