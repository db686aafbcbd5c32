"""
Settings
---------
Three layers, later wins:

    1. Model defaults below
    2. config/config.yaml (optional)
    3. Environment variables (.env is loaded first via python-dotenv)

The API credential is only ever read from the environment.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, Field, ValidationError, model_validator

from braindump.errors import ConfigError

DEFAULT_CONFIG_PATH = "config/config.yaml"

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant specializing in summarizing and extracting "
    "information from text."
)

# Env var -> (section, key, caster)
_ENV_OVERRIDES: dict[str, tuple[str, str, Any]] = {
    "BRAINDUMP_BASE_URL": ("completion", "base_url", str),
    "BRAINDUMP_TIMEOUT": ("completion", "timeout", float),
    "BRAINDUMP_STREAM_TIMEOUT": ("completion", "stream_timeout", float),
    "BRAINDUMP_MAX_RETRIES": ("completion", "max_retries", int),
    "BRAINDUMP_MAX_MODEL_ROTATIONS": ("completion", "max_model_rotations", int),
    "BRAINDUMP_RATE_LIMIT_REQUESTS": ("completion", "rate_limit_requests", int),
    "BRAINDUMP_RATE_LIMIT_WINDOW": ("completion", "rate_limit_window", float),
    "BRAINDUMP_MAX_CONCURRENCY": ("analysis", "max_concurrency", int),
    "BRAINDUMP_LOG_LEVEL": ("logging", "level", str),
}


class CompletionSettings(BaseModel):
    base_url: str = "https://openrouter.ai/api/v1/chat/completions"
    api_key: Optional[str] = Field(default=None, repr=False)
    models: list[str] = Field(
        default_factory=lambda: [
            "mistralai/mistral-7b-instruct:free",
            "meta-llama/llama-3.1-8b-instruct:free",
            "google/gemma-2-9b-it:free",
        ]
    )
    timeout: float = Field(default=20.0, gt=0)
    # Whole-stream deadline; `timeout` still bounds each read
    stream_timeout: float = Field(default=120.0, gt=0)
    max_retries: int = Field(default=3, ge=1)            # attempts per model
    max_model_rotations: Optional[int] = Field(default=None, ge=0)
    backoff_base: float = Field(default=2.0, gt=0)
    backoff_max: float = Field(default=10.0, gt=0)
    default_retry_after: float = Field(default=60.0, ge=0)
    max_retry_after_wait: float = Field(default=60.0, ge=0)
    rate_limit_requests: int = Field(default=5, ge=1)
    rate_limit_window: float = Field(default=5.0, gt=0)
    self_cooldown: float = Field(default=5.0, ge=0)
    error_threshold: int = Field(default=3, ge=1)
    error_cooldown: float = Field(default=60.0, ge=0)
    malformed_max_attempts: int = Field(default=2, ge=1)
    temperature: float = Field(default=0.7, ge=0, le=2)
    max_tokens: int = Field(default=500, ge=1)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    app_url: str = "https://github.com/braindump-analyzer"
    app_title: str = "Brain Dump Analyzer"

    @model_validator(mode="after")
    def _check_models(self) -> "CompletionSettings":
        self.models = [m.strip() for m in self.models if m and m.strip()]
        if not self.models:
            raise ValueError("completion.models must list at least one model")
        return self

    @property
    def rotation_limit(self) -> int:
        """Rotations allowed per call; defaults to trying every listed model once."""
        if self.max_model_rotations is None:
            return len(self.models) - 1
        return self.max_model_rotations


class AnalysisSettings(BaseModel):
    topic_chunk_size: int = 10_000
    topic_chunk_overlap: int = 500
    topic_prompt_chars: int = 12_000
    summary_chunk_size: int = 12_000
    summary_chunk_overlap: int = 500
    summary_prompt_chars: int = 15_000
    summary_max_tokens: int = 500
    synthesis_max_tokens: int = 800
    summary_fallback_chars: int = 500
    keyword_chunk_size: int = 12_000
    keyword_chunk_overlap: int = 500
    max_keywords: int = 15
    fallback_keywords: int = 10
    max_topics: int = 10
    distributed_max_topics: int = 12
    fallback_topics: int = 5
    related_sections: int = 5
    orphan_sections: int = 2
    segment_threshold: int = 100_000
    segment_chunk_size: int = 50_000
    fallback_section_words: int = 300
    max_content_size: int = 100_000
    distributed_threshold: int = 200_000
    distributed_summary_sources: int = 5
    distributed_keyword_sources: int = 5
    topic_batch_size: int = Field(default=3, ge=1)
    max_concurrency: int = Field(default=2, ge=1)
    words_per_minute: int = Field(default=225, ge=1)


class LoggingSettings(BaseModel):
    level: str = "INFO"
    file: str = "logs/braindump.log"


class Settings(BaseModel):
    completion: CompletionSettings = Field(default_factory=CompletionSettings)
    analysis: AnalysisSettings = Field(default_factory=AnalysisSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


# --- Loading -----------------------------------------------------------------

def _load_yaml(path: Path) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return data


def _apply_env(raw: dict, environ: dict[str, str]) -> dict:
    completion = raw.setdefault("completion", {})
    api_key = environ.get("BRAINDUMP_API_KEY") or environ.get("OPENROUTER_API_KEY")
    if api_key:
        completion["api_key"] = api_key
    if environ.get("BRAINDUMP_MODELS"):
        completion["models"] = [m.strip() for m in environ["BRAINDUMP_MODELS"].split(",")]

    for var, (section, key, caster) in _ENV_OVERRIDES.items():
        value = environ.get(var)
        if value in (None, ""):
            continue
        try:
            raw.setdefault(section, {})[key] = caster(value)
        except ValueError as exc:
            raise ConfigError(f"{var}={value!r} is not a valid {caster.__name__}") from exc
    return raw


def load_settings(
    path: str | Path | None = None,
    environ: Optional[dict[str, str]] = None,
) -> Settings:
    """
    Build Settings from defaults, the YAML file and the environment.

    A missing file at the default path is ignored; an explicitly requested
    file that does not exist raises ConfigError.
    """
    load_dotenv()
    env = dict(os.environ) if environ is None else environ

    config_path = Path(path or DEFAULT_CONFIG_PATH)
    raw: dict = {}
    if config_path.exists():
        raw = _load_yaml(config_path)
        logger.debug(f"[Settings] Loaded {config_path}")
    elif path is not None:
        raise ConfigError(f"Config file not found: {config_path}")

    raw = _apply_env(raw, env)
    try:
        settings = Settings.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc

    logger.debug(
        f"[Settings] models={settings.completion.models} "
        f"timeout={settings.completion.timeout}s retries={settings.completion.max_retries} "
        f"api_key={'set' if settings.completion.api_key else 'missing'}"
    )
    return settings
