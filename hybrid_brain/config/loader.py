import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from hybrid_brain.constants import (
    AGENT_MAX_ITERATIONS,
    AGENT_MODEL,
    BACKEND_TIMEOUT_SECONDS,
    COMPLEXITY_THRESHOLD,
    CONFIDENCE_THRESHOLD,
    DIRECT_MAX_STEPS,
    DIRECT_MODEL,
    ENABLE_CLASSIFICATION,
    ENABLE_FALLBACK_ON_ERROR,
    MAX_CONTENT_LENGTH,
    MAX_HISTORY_TURNS,
    MEMORY_WATERMARK_MB,
    PRESSURE_EVICTION_FRACTION,
    PROMPT_CACHE_MAX_ENTRIES,
    PROMPT_CACHE_TTL_SECONDS,
    RESOURCE_CACHE_MAX_ENTRIES,
    RESOURCE_CACHE_TTL_SECONDS,
    RESOURCE_MAX_REGISTERED,
    RESOURCE_SWEEP_INTERVAL_SECONDS,
    ROLLOUT_BUCKET_SECONDS,
    ROLLOUT_MAX_BUCKETS,
    ROLLOUT_TICK_INTERVAL_SECONDS,
)
from hybrid_brain.rollout.ab_testing import ABTestConfig

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "BRAIN_CONFIG_PATH"

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+)(?::-(.*?))?\}")


class OrchestratorSettings(BaseModel):
    enable_classification: bool = ENABLE_CLASSIFICATION
    enable_fallback: bool = ENABLE_FALLBACK_ON_ERROR
    backend_timeout_seconds: float = Field(default=BACKEND_TIMEOUT_SECONDS, gt=0)
    agent_model: str = AGENT_MODEL
    direct_model: str = DIRECT_MODEL
    agent_max_iterations: int = Field(default=AGENT_MAX_ITERATIONS, ge=1)
    direct_max_steps: int = Field(default=DIRECT_MAX_STEPS, ge=1)


class ClassifierSettings(BaseModel):
    complexity_threshold: float = Field(default=COMPLEXITY_THRESHOLD, ge=0, le=1)
    confidence_threshold: float = Field(default=CONFIDENCE_THRESHOLD, ge=0, le=1)
    max_history_turns: int = Field(default=MAX_HISTORY_TURNS, ge=0)
    max_content_length: int = Field(default=MAX_CONTENT_LENGTH, ge=1)


class PromptCacheSettings(BaseModel):
    ttl_seconds: float = Field(default=PROMPT_CACHE_TTL_SECONDS, gt=0)
    max_entries: int = Field(default=PROMPT_CACHE_MAX_ENTRIES, ge=1)


class ResourceSettings(BaseModel):
    cache_max_entries: int = Field(default=RESOURCE_CACHE_MAX_ENTRIES, ge=1)
    cache_ttl_seconds: float = Field(default=RESOURCE_CACHE_TTL_SECONDS, gt=0)
    max_resources: int = Field(default=RESOURCE_MAX_REGISTERED, ge=1)
    sweep_interval_seconds: float = Field(default=RESOURCE_SWEEP_INTERVAL_SECONDS, gt=0)
    memory_watermark_mb: int = Field(default=MEMORY_WATERMARK_MB, ge=1)
    pressure_eviction_fraction: float = Field(default=PRESSURE_EVICTION_FRACTION, ge=0, le=1)


class RolloutSettings(BaseModel):
    tick_interval_seconds: float = Field(default=ROLLOUT_TICK_INTERVAL_SECONDS, gt=0)
    bucket_seconds: float = Field(default=ROLLOUT_BUCKET_SECONDS, gt=0)
    max_buckets: int = Field(default=ROLLOUT_MAX_BUCKETS, ge=1)
    initial_test: ABTestConfig | None = None


class BrainSettings(BaseModel):
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
    classifier: ClassifierSettings = Field(default_factory=ClassifierSettings)
    prompt_cache: PromptCacheSettings = Field(default_factory=PromptCacheSettings)
    resources: ResourceSettings = Field(default_factory=ResourceSettings)
    rollout: RolloutSettings = Field(default_factory=RolloutSettings)


def _substitute_env_vars(value: str) -> str:
    def _replace(match: re.Match[str]) -> str:
        var_name = match.group(1)
        default = match.group(2)
        env_val = os.environ.get(var_name)
        if env_val is not None:
            return env_val
        return default if default is not None else ""

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _substitute_recursive(obj: Any) -> Any:
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _substitute_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_substitute_recursive(item) for item in obj]
    return obj


def load_settings(config_path: str | None = None) -> BrainSettings:
    """Load settings from YAML, falling back to defaults section by section.

    A missing or unreadable file yields all defaults; an invalid section is
    skipped with a warning while valid sections still apply.
    """
    config_path = config_path or os.environ.get(CONFIG_PATH_ENV, "")
    if not config_path:
        return BrainSettings()

    path = Path(config_path)
    if not path.is_file():
        logger.warning("Brain config file not found: %s", config_path)
        return BrainSettings()

    try:
        raw = path.read_text(encoding="utf-8")
        data = yaml.safe_load(raw)
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Failed to load brain config from %s: %s", config_path, e)
        return BrainSettings()

    if data is None:
        return BrainSettings()
    if not isinstance(data, dict):
        logger.warning("Brain config root must be a mapping: %s", config_path)
        return BrainSettings()

    data = _substitute_recursive(data)
    sections: dict[str, Any] = {}
    for name, field_info in BrainSettings.model_fields.items():
        if name not in data:
            continue
        section_model = field_info.annotation
        try:
            sections[name] = section_model.model_validate(data[name] or {})
        except ValidationError as e:
            logger.warning("Skipping invalid '%s' section in %s: %s", name, config_path, e)

    unknown = set(data) - set(BrainSettings.model_fields)
    if unknown:
        logger.warning("Ignoring unknown brain config sections: %s", sorted(unknown))

    logger.info("Loaded brain config from %s (%d section(s))", config_path, len(sections))
    return BrainSettings(**sections)
