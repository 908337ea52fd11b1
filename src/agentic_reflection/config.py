"""Configuration loading for the reflection loop.

Defaults live in the dataclasses below. ``load_settings`` layers an optional
YAML file and ``REFLECT_*`` environment variables (``.env`` is honoured) on
top of them.
"""

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional

import yaml
from dotenv import load_dotenv

from agentic_reflection.errors import DEFAULT_TRANSIENT_EXIT_CODES

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = ".reflect"


class ConfigError(Exception):
    """Raised when configuration is missing or malformed."""
    pass


@dataclass(frozen=True)
class ReflectionConfig:
    enabled: bool = True
    max_iterations: int = 3
    confidence_threshold: float = 0.8
    enable_pattern_detection: bool = True
    pause_on_persistent_failure: bool = True
    persistent_failure_threshold: int = 2


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    initial_delay_ms: float = 1000.0
    max_delay_ms: float = 8000.0
    backoff_multiplier: float = 2.0
    jitter: bool = False
    transient_exit_codes: FrozenSet[int] = DEFAULT_TRANSIENT_EXIT_CODES


@dataclass(frozen=True)
class ExecutorConfig:
    require_destructive_approval: bool = True
    max_file_modifications: int = 50
    command_timeout_s: float = 300.0


@dataclass(frozen=True)
class ContextLimits:
    max_total_tokens: int = 1_000_000
    warning_threshold: float = 70.0  # percent
    summarization_threshold: float = 80.0  # percent
    min_entries_before_summarization: int = 10
    retain_recent_entries: int = 2


@dataclass(frozen=True)
class Settings:
    """All tunables for one reflection run."""
    reflection: ReflectionConfig = field(default_factory=ReflectionConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    context: ContextLimits = field(default_factory=ContextLimits)
    state_dir: str = DEFAULT_STATE_DIR
    evaluation_timeout_s: float = 30.0


def validate_reflection_config(config: ReflectionConfig) -> ReflectionConfig:
    """Clamp out-of-range reflection settings back to safe values."""
    changes: Dict[str, Any] = {}

    if config.max_iterations < 1:
        logger.warning("max_iterations must be >= 1, using default value 3")
        changes["max_iterations"] = 3
    elif config.max_iterations > 10:
        logger.warning("max_iterations > 10 may be excessive, capping at 10")
        changes["max_iterations"] = 10

    if not 0 <= config.confidence_threshold <= 1:
        logger.warning("confidence_threshold must be between 0 and 1, using default value 0.8")
        changes["confidence_threshold"] = 0.8

    if config.persistent_failure_threshold < 1:
        logger.warning("persistent_failure_threshold must be >= 1, using default value 2")
        changes["persistent_failure_threshold"] = 2

    return replace(config, **changes) if changes else config


def _coerce(value: Any, current: Any, name: str) -> Any:
    """Convert a raw YAML/env value to the type of the current default."""
    try:
        if isinstance(current, bool):
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if isinstance(current, frozenset):
            if isinstance(value, str):
                value = [v for v in value.split(",") if v.strip()]
            return frozenset(int(v) for v in value)
        if isinstance(current, int):
            return int(value)
        if isinstance(current, float):
            return float(value)
        return value
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {value!r} ({e})")


def apply_section_overrides(section: Any, overrides: Dict[str, Any], prefix: str) -> Any:
    if not overrides:
        return section
    known = {f.name for f in fields(section)}
    unknown = set(overrides) - known
    if unknown:
        raise ConfigError(f"Unknown {prefix} settings: {', '.join(sorted(unknown))}")
    coerced = {
        key: _coerce(value, getattr(section, key), f"{prefix}.{key}")
        for key, value in overrides.items()
    }
    return replace(section, **coerced)


def _env_overrides(section_name: str, section: Any) -> Dict[str, Any]:
    overrides = {}
    for f in fields(section):
        env_name = f"REFLECT_{section_name}_{f.name}".upper()
        if env_name in os.environ:
            overrides[f.name] = os.environ[env_name]
    return overrides


SECTIONS = ("reflection", "retry", "executor", "context")


def load_settings(path: Optional[Path] = None) -> Settings:
    """
    Load settings from defaults, an optional YAML file, and the environment.

    Environment variables win over the file. Names follow
    ``REFLECT_<SECTION>_<FIELD>``, e.g. ``REFLECT_REFLECTION_MAX_ITERATIONS``;
    ``REFLECT_STATE_DIR`` sets the state directory.

    Raises:
        ConfigError: If the file cannot be parsed or holds unknown keys.
    """
    load_dotenv()

    data: Dict[str, Any] = {}
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Settings file not found: {path}")
        try:
            data = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Settings YAML parse error: {e}")
        if not isinstance(data, dict):
            raise ConfigError("Settings file must contain a mapping")

    settings = Settings()
    unknown = set(data) - set(SECTIONS) - {"state_dir", "evaluation_timeout_s"}
    if unknown:
        raise ConfigError(f"Unknown settings sections: {', '.join(sorted(unknown))}")

    sections = {}
    for name in SECTIONS:
        section = getattr(settings, name)
        section = apply_section_overrides(section, data.get(name) or {}, name)
        section = apply_section_overrides(section, _env_overrides(name, section), name)
        sections[name] = section

    sections["reflection"] = validate_reflection_config(sections["reflection"])

    state_dir = os.environ.get("REFLECT_STATE_DIR") or data.get("state_dir") or DEFAULT_STATE_DIR
    evaluation_timeout_s = _coerce(
        os.environ.get("REFLECT_EVALUATION_TIMEOUT_S", data.get("evaluation_timeout_s", 30)),
        30.0,
        "evaluation_timeout_s",
    )

    return Settings(
        state_dir=str(state_dir),
        evaluation_timeout_s=evaluation_timeout_s,
        **sections,
    )


def require_model_credentials() -> str:
    """
    Return the OpenRouter API key used by the LLM planner.

    Raises:
        ConfigError: If OPENROUTER_API_KEY is not set.
    """
    load_dotenv()
    api_key = os.environ.get("OPENROUTER_API_KEY")
    if not api_key:
        raise ConfigError(
            "Missing required environment variable: OPENROUTER_API_KEY\n"
            "Please set it in your environment or create a .env file."
        )
    return api_key
