from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from .models import GenerationConfig

logger = logging.getLogger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

DEFAULT_MODELS: Tuple[str, ...] = (
    "gemini-3-pro-preview",
    "gemini-2.5-pro",
    "gemini-2.5-flash",
    "gemini-2.5-flash-lite",
    "gemini-2.0-flash",
)

DEFAULT_SYSTEM_PROMPT = (
    "You are an expert at converting technical documentation into natural, spoken language "
    "optimized for text-to-speech systems."
)

DEFAULT_TRANSFORMATION_PROMPT = (
    "Convert the following text into a natural, spoken format that is easy to listen to. "
    "Maintain accuracy while making it conversational. Expand acronyms on first use. "
    "Convert formulas and special symbols into spoken words. Convert tables into narrative sentences. "
    "Describe figures and images clearly. Replace code blocks with descriptive explanations of what "
    "the code does (do not read code line-by-line). Preserve the logical order and headings. "
    "Add natural transitions between sections. Remove inline citations and footnotes. "
    "Make the output TTS-friendly with good rhythm (commas and pauses)."
)

DEFAULT_IMAGE_PROMPT = (
    "Describe the following figure or image in detail. Explain what it shows, its key elements, "
    "and its significance in the context. Make it clear and informative for someone who cannot see it."
)

# camelCase keys written by the browser build of the tool, and their millisecond fields.
LEGACY_KEY_MAP = {
    "apiKey": "api_key",
    "backupApiKey": "backup_api_key",
    "batchSize": "batch_size_tokens",
    "overlapSize": "overlap_tokens",
    "maxRetries": "max_retries",
    "parallelChunks": "max_concurrency",
    "turboMode": "turbo_mode",
    "autoRetry": "auto_retry",
    "topP": "top_p",
    "topK": "top_k",
    "maxOutputTokens": "max_output_tokens",
}
LEGACY_MILLISECOND_KEYS = {
    "apiTimeout": "timeout",
    "retryDelay": "retry_delay",
    "rateLimitDelay": "rate_limit_delay",
}
_GENERATION_KEYS = ("temperature", "top_p", "top_k", "max_output_tokens")

CONFIG_ROOT_DIR = Path.home() / ".spokable"


def get_default_config_dir() -> Path:
    env_override = os.getenv("SPOKABLE_CONFIG_DIR")
    if env_override:
        return Path(env_override).expanduser()
    return CONFIG_ROOT_DIR


def get_default_config_path() -> Path:
    return get_default_config_dir() / "config.yaml"


DEFAULT_CONFIG_PATH = get_default_config_path()


@dataclass(frozen=True)
class EngineConfig:
    """Every knob the batch engine reads. Times are in seconds."""

    batch_size_tokens: int = 10_000
    overlap_tokens: int = 200
    max_retries: int = 3
    retry_delay: float = 2.0
    rate_limit_delay: float = 1.0
    max_concurrency: int = 3
    turbo_mode: bool = False
    auto_retry: bool = True
    timeout: float = 60.0
    models: Tuple[str, ...] = DEFAULT_MODELS
    api_key: str = ""
    backup_api_key: str = ""
    base_url: str = GEMINI_BASE_URL
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    transformation_prompt: str = DEFAULT_TRANSFORMATION_PROMPT
    image_prompt: str = DEFAULT_IMAGE_PROMPT
    include_images: bool = True
    min_success_rate: float = 0.0

    @property
    def credentials(self) -> Tuple[str, ...]:
        return tuple(key for key in (self.api_key, self.backup_api_key) if key)

    @property
    def effective_concurrency(self) -> int:
        if not self.turbo_mode:
            return 1
        return max(1, int(self.max_concurrency))

    def validate(self) -> "EngineConfig":
        problems = []
        if self.batch_size_tokens <= 0:
            problems.append("batch_size_tokens must be positive")
        if self.overlap_tokens < 0:
            problems.append("overlap_tokens cannot be negative")
        if self.max_retries < 1:
            problems.append("max_retries must be at least 1")
        if self.retry_delay < 0 or self.rate_limit_delay < 0:
            problems.append("delays cannot be negative")
        if self.max_concurrency < 1:
            problems.append("max_concurrency must be at least 1")
        if self.timeout <= 0:
            problems.append("timeout must be positive")
        if not 0.0 <= self.min_success_rate <= 100.0:
            problems.append("min_success_rate must be between 0 and 100")
        if problems:
            raise ValueError("Invalid engine configuration: " + "; ".join(problems) + ".")
        return self

    def with_overrides(self, **overrides: Any) -> "EngineConfig":
        cleaned = {key: value for key, value in overrides.items() if value is not None}
        if "models" in cleaned:
            cleaned["models"] = _normalize_models(cleaned["models"])
        return replace(self, **cleaned)

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> "EngineConfig":
        settings = migrate_settings(dict(raw or {}))
        known = {item.name for item in fields(cls)}
        kwargs: Dict[str, Any] = {}
        generation_values: Dict[str, Any] = {}
        nested_generation = settings.pop("generation", None)
        if isinstance(nested_generation, Mapping):
            generation_values.update(migrate_settings(dict(nested_generation)))
        prompts = settings.pop("prompts", None)
        if isinstance(prompts, Mapping):
            _apply_prompts(settings, prompts)
        for key, value in settings.items():
            if key in _GENERATION_KEYS:
                generation_values[key] = value
            elif key in known:
                kwargs[key] = value
            else:
                logger.debug("Ignoring unknown config key %s", key)
        if generation_values:
            kwargs["generation"] = _build_generation(generation_values)
        if "models" in kwargs:
            kwargs["models"] = _normalize_models(kwargs["models"])
        for key in ("batch_size_tokens", "overlap_tokens", "max_retries", "max_concurrency"):
            if key in kwargs:
                kwargs[key] = int(kwargs[key])
        for key in ("retry_delay", "rate_limit_delay", "timeout", "min_success_rate"):
            if key in kwargs:
                kwargs[key] = float(kwargs[key])
        for key in ("turbo_mode", "auto_retry", "include_images"):
            if key in kwargs:
                kwargs[key] = _coerce_bool(kwargs[key])
        return cls(**kwargs)


def migrate_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    """Rename legacy camelCase keys and convert millisecond values to seconds."""
    migrated = dict(settings)
    for old_key, new_key in LEGACY_KEY_MAP.items():
        if old_key in migrated and new_key not in migrated:
            migrated[new_key] = migrated.pop(old_key)
    for old_key, new_key in LEGACY_MILLISECOND_KEYS.items():
        if old_key in migrated and new_key not in migrated:
            try:
                migrated[new_key] = float(migrated.pop(old_key)) / 1000.0
            except (TypeError, ValueError):
                logger.warning("Ignoring non-numeric legacy setting %s", old_key)
    return migrated


def apply_env_overrides(config: EngineConfig, environ: Optional[Mapping[str, str]] = None) -> EngineConfig:
    env = os.environ if environ is None else environ
    return config.with_overrides(
        api_key=env.get("SPOKABLE_API_KEY") or None,
        backup_api_key=env.get("SPOKABLE_BACKUP_API_KEY") or None,
    )


def load_config(path: Optional[Path]) -> Dict[str, Any]:
    """Read a YAML (or JSON) settings file. A missing file yields an empty mapping."""
    if path is None or not path.exists():
        return {}
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        data = json.loads(text) if text.strip() else {}
    else:
        data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config at {path} is not a mapping.")
    return data


def load_engine_config(path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> EngineConfig:
    target = path or DEFAULT_CONFIG_PATH
    try:
        raw = load_config(target)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ValueError(f"Failed to parse config at {target}: {exc}") from exc
    return apply_env_overrides(EngineConfig.from_mapping(raw), environ)


def _apply_prompts(settings: Dict[str, Any], prompts: Mapping[str, Any]) -> None:
    mapping = {
        "system": "system_prompt",
        "textTransformation": "transformation_prompt",
        "text_transformation": "transformation_prompt",
        "figureDescription": "image_prompt",
        "figure_description": "image_prompt",
    }
    for key, target in mapping.items():
        value = prompts.get(key)
        if isinstance(value, str) and value.strip() and target not in settings:
            settings[target] = value


def _build_generation(values: Mapping[str, Any]) -> GenerationConfig:
    defaults = GenerationConfig()
    return GenerationConfig(
        temperature=float(values.get("temperature", defaults.temperature)),
        top_p=float(values.get("top_p", defaults.top_p)),
        top_k=int(values.get("top_k", defaults.top_k)),
        max_output_tokens=int(values.get("max_output_tokens", defaults.max_output_tokens)),
    )


def _normalize_models(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = list(value or [])
    return tuple(str(item).strip() for item in items if str(item).strip())


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)
