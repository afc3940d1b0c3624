"""
config.py - Runtime configuration for lessonforge runs.

Configuration is resolved exactly once, at process start, into a
RuntimeConfig that is handed to the runner, retry policy, completion
runtime and checkpoint store. Nothing below this module reads the
environment.

Precedence (lowest to highest):
    built-in defaults < pipeline YAML (api:, processing:) < LESSONFORGE_* env < CLI overrides
"""

import math
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

from lessonforge.providers.base import CompletionProvider
from lessonforge.retry import RetryPolicy

VALID_MODES = ("live", "mock", "auto")

_TRUE_VALUES = ("1", "true", "yes", "on")
_FALSE_VALUES = ("0", "false", "no", "off")


class ConfigError(ValueError):
    """Configuration is missing or invalid; the run cannot start."""
    pass


@dataclass(frozen=True)
class RuntimeConfig:
    """Everything the execution core needs, resolved up front."""
    provider: str | None = None
    model: str | None = None
    api_key: str | None = field(default=None, repr=False)
    mode: str = "live"
    max_output_tokens: int = 8192
    temperature: float = 0.3
    timeout_seconds: float = 120.0
    concurrency: int = 1
    pacing_delay_seconds: float = 2.0
    max_retries: int = 6
    initial_backoff_seconds: float = 5.0
    max_jitter_seconds: float = 1.0
    recovery_retries: int = 1
    verbose_unit_logs: bool = True

    @property
    def is_mock(self) -> bool:
        return self.mode == "mock"

    def retry_policy(self, **kwargs) -> RetryPolicy:
        """Build the transport retry policy described by this config."""
        return RetryPolicy(
            max_retries=self.max_retries,
            base_delay=self.initial_backoff_seconds,
            max_jitter=self.max_jitter_seconds,
            **kwargs,
        )

    def with_overrides(self, **overrides) -> "RuntimeConfig":
        """Return a copy with the non-None overrides applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


# (yaml section, yaml key, env var, field, kind, minimum)
_SETTINGS = [
    ("api", "provider", "LESSONFORGE_PROVIDER", "provider", "str", None),
    ("api", "model", "LESSONFORGE_MODEL", "model", "str", None),
    ("api", "max_output_tokens", "LESSONFORGE_MAX_OUTPUT_TOKENS", "max_output_tokens", "int", 256),
    ("api", "temperature", "LESSONFORGE_TEMPERATURE", "temperature", "float", 0),
    ("api", "timeout_seconds", "LESSONFORGE_REQUEST_TIMEOUT_SECONDS", "timeout_seconds", "float", 1),
    ("api.retry", "max_retries", "LESSONFORGE_RETRY_COUNT", "max_retries", "int", 0),
    ("api.retry", "initial_backoff_seconds", "LESSONFORGE_INITIAL_BACKOFF_SECONDS", "initial_backoff_seconds", "float", 0),
    ("api.retry", "max_jitter_seconds", "LESSONFORGE_MAX_JITTER_SECONDS", "max_jitter_seconds", "float", 0),
    ("api.retry", "recovery_retries", "LESSONFORGE_RECOVERY_RETRIES", "recovery_retries", "int", 0),
    ("processing", "mode", "LESSONFORGE_MODE", "mode", "str", None),
    ("processing", "concurrency", "LESSONFORGE_CONCURRENCY", "concurrency", "int", 1),
    ("processing", "pacing_delay_seconds", "LESSONFORGE_PACING_DELAY_SECONDS", "pacing_delay_seconds", "float", 0),
    ("processing", "verbose_unit_logs", "LESSONFORGE_VERBOSE_UNIT_LOGS", "verbose_unit_logs", "bool", None),
]


def load_config(config_path: Path) -> dict:
    """Load and parse a YAML config file.

    The directory holding the file is recorded under '_config_dir' so
    template and schema paths can be resolved relative to it.

    Raises:
        ConfigError: If the file is missing, unreadable, or not a mapping
    """
    config_path = Path(config_path)
    try:
        with open(config_path) as f:
            config = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {config_path}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}")

    if not isinstance(config, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping at the top level")
    config["_config_dir"] = str(config_path.parent.resolve())
    return config


def load_runtime_config(
    config: Mapping[str, Any] | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> RuntimeConfig:
    """
    Resolve a RuntimeConfig from a parsed YAML config, environment, and overrides.

    Args:
        config: Parsed pipeline config (see load_config), or None
        env: Environment mapping; defaults to os.environ
        overrides: Field values from the command line (None values ignored)

    Returns:
        Validated RuntimeConfig

    Raises:
        ConfigError: On invalid values, or live mode without credentials
    """
    env = os.environ if env is None else env
    config = config or {}
    values: dict[str, Any] = {}

    for section, key, env_var, field_name, kind, minimum in _SETTINGS:
        raw = _lookup(config, section, key)
        if raw is not None:
            values[field_name] = _coerce(f"{section}.{key}", raw, kind, minimum)
        env_raw = env.get(env_var, "").strip()
        if env_raw:
            values[field_name] = _coerce(env_var, env_raw, kind, minimum)

    for field_name, raw in (overrides or {}).items():
        if raw is None:
            continue
        kind, minimum = _field_kind(field_name)
        values[field_name] = _coerce(f"--{field_name.replace('_', '-')}", raw, kind, minimum)

    provider = (values.get("provider") or _default_provider()).lower()
    values["provider"] = provider

    env_var = CompletionProvider.get_provider_info(provider).get("env_var")
    api_key = env.get(env_var, "").strip() if env_var else ""
    values["api_key"] = api_key or None

    mode = str(values.get("mode", "auto")).lower()
    if mode not in VALID_MODES:
        raise ConfigError(f"mode must be one of {', '.join(VALID_MODES)}. Received: {mode}")
    if mode == "auto":
        mode = "live" if api_key else "mock"
    if mode == "live" and not api_key:
        raise ConfigError(
            f"{env_var or 'API key'} is required for live mode. "
            "Set LESSONFORGE_MODE=mock to run without API calls."
        )
    values["mode"] = mode

    return RuntimeConfig(**values)


def _default_provider() -> str:
    registry = CompletionProvider.load_model_registry()
    return registry.get("default_provider") or "gemini"


def _lookup(config: Mapping[str, Any], section: str, key: str) -> Any:
    node: Any = config
    for part in section.split("."):
        if not isinstance(node, Mapping):
            return None
        node = node.get(part)
    if not isinstance(node, Mapping):
        return None
    return node.get(key)


def _field_kind(field_name: str) -> tuple[str, float | None]:
    for _, _, _, name, kind, minimum in _SETTINGS:
        if name == field_name:
            return kind, minimum
    raise ConfigError(f"Unknown configuration override: {field_name}")


def _coerce(name: str, raw: Any, kind: str, minimum: float | None) -> Any:
    if kind == "str":
        return str(raw).strip()

    if kind == "bool":
        if isinstance(raw, bool):
            return raw
        text = str(raw).strip().lower()
        if text in _TRUE_VALUES:
            return True
        if text in _FALSE_VALUES:
            return False
        raise ConfigError(f"{name} must be a boolean (true/false). Received: {raw}")

    if isinstance(raw, bool):
        raise ConfigError(f"{name} must be a number. Received: {raw}")
    try:
        number = float(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number. Received: {raw}")
    if not math.isfinite(number) or (minimum is not None and number < minimum):
        raise ConfigError(f"{name} must be a number greater than or equal to {minimum}. Received: {raw}")
    if kind == "int":
        if not number.is_integer():
            raise ConfigError(f"{name} must be a whole number. Received: {raw}")
        return int(number)
    return number
