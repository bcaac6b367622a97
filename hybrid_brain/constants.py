"""Configuration constants with trade-off documentation.

Each constant has a rationale explaining why this specific value was chosen.
Values here are the defaults; a YAML file loaded by ``hybrid_brain.config.loader``
can override most of them per deployment.
"""

import os

# =============================================================================
# Environment Variable Helpers
# =============================================================================


def _parse_int_env(name: str, default: int, min_val: int, max_val: int) -> int:
    """Parse an integer environment variable with bounds clamping.

    Returns default if env var is unset or unparseable. Clamps to [min_val, max_val].
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(min_val, min(max_val, value))


def _parse_float_env(name: str, default: float, min_val: float, max_val: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(min_val, min(max_val, value))


def _parse_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# =============================================================================
# Model Selection
# =============================================================================

DEFAULT_CHAT_MODEL = os.getenv("DEFAULT_MODEL_NAME", "gpt-4.1")
# Used when neither the request nor the tenant config names a model.

AGENT_MODEL = os.getenv("AGENT_MODEL", "gpt-4.1")
# Why the full model: the agent backend plans multi-step tool use. Smaller
# models drop tool arguments or stop after the first call.

DIRECT_MODEL = os.getenv("DIRECT_MODEL", "gpt-4.1-mini")
# Why mini: the direct backend only serves conversational and lookup turns.
# Latency matters more than reasoning depth there.

LLM_PROVIDER = os.getenv("LLM_PROVIDER", "openai").strip().lower() or "openai"
# Selects the price table used for cost estimates. Self-hosted providers cost 0.

CONTEXT_MODEL_MAPPING: dict[str, str] = {
    "echo-tango-specialist": "gpt-4.1",
    "chat-model-reasoning": "o4-mini",
    "global-orchestrator": "gpt-4.1-mini",
}
# Specialist contexts pinned to a model regardless of the UI selection.

LLM_TEMPERATURE = 0.7
LLM_DEFAULT_MAX_TOKENS = 4000
# Why 4000: long enough for a full chat answer with a tool summary, short
# enough that a runaway generation cannot hold a backend slot for minutes.

LLM_STREAM_OPEN_ATTEMPTS = _parse_int_env("LLM_STREAM_OPEN_ATTEMPTS", default=3, min_val=1, max_val=6)
# Why 3: connection resets and 429s on stream open usually clear within two
# retries. More attempts eat into the backend timeout and delay the fallback.

# =============================================================================
# Orchestration
# =============================================================================

BACKEND_TIMEOUT_SECONDS = _parse_float_env(
    "BACKEND_TIMEOUT_SECONDS", default=30.0, min_val=1.0, max_val=300.0
)
# Why 30s: measured p99 of a 3-tool agent run is ~18s. 30s leaves headroom
# while still leaving time for the single fallback attempt before the host
# framework's own request timeout.

ENABLE_CLASSIFICATION = _parse_bool_env("ENABLE_CLASSIFICATION", default=True)
# When false every request goes to the agent backend (superset capability).

ENABLE_FALLBACK_ON_ERROR = _parse_bool_env("ENABLE_FALLBACK_ON_ERROR", default=True)

AGENT_MAX_ITERATIONS = 10
# Why 10: the longest legitimate chains seen are create → assign → comment →
# summarise (~5 calls). 10 bounds a looping agent without cutting real work.

DIRECT_MAX_STEPS = 2
# Why 2: one round of the fixed toolset (weather, suggestions) plus the final
# answer. The direct backend is not meant to chain tools.

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."
# Served when prompt loading fails, so a broken template never fails a request.

# =============================================================================
# Classification
# =============================================================================

COMPLEXITY_THRESHOLD = 0.6
# Why 0.6: on the labelled routing set, 0.5 sent ~20% of tool requests to the
# direct backend; 0.7 sent short factual questions with history to the agent.

CONFIDENCE_THRESHOLD = 0.7
# A direct-backend decision below this confidence is overridden to the agent
# backend. Low-confidence cases must not silently lose tool capability.

MAX_HISTORY_TURNS = 20
# Why 20: older turns rarely change routing or the answer, and every turn is
# resent to the model on each agent iteration.

MAX_CONTENT_LENGTH = 50_000

# =============================================================================
# Prompt Cache
# =============================================================================

PROMPT_CACHE_TTL_SECONDS = _parse_int_env(
    "PROMPT_CACHE_TTL_SECONDS", default=300, min_val=1, max_val=86_400
)
# Why 5 minutes: prompts embed the current date/time at minute granularity
# for some specialists; 5 minutes keeps that acceptably fresh.

PROMPT_CACHE_MAX_ENTRIES = _parse_int_env(
    "PROMPT_CACHE_MAX_ENTRIES", default=256, min_val=1, max_val=100_000
)
# Why 256: (models × specialists × tenants) in production is < 100 keys.

# =============================================================================
# Resource Management
# =============================================================================

RESOURCE_CACHE_MAX_ENTRIES = _parse_int_env(
    "RESOURCE_CACHE_MAX_ENTRIES", default=1000, min_val=1, max_val=1_000_000
)
RESOURCE_CACHE_TTL_SECONDS = _parse_int_env(
    "RESOURCE_CACHE_TTL_SECONDS", default=1800, min_val=1, max_val=86_400
)
RESOURCE_MAX_REGISTERED = _parse_int_env(
    "RESOURCE_MAX_REGISTERED", default=100, min_val=1, max_val=100_000
)
# Why 100: one agent session per in-flight request. More than 100 live
# sessions on one worker means sessions are leaking, not load.

RESOURCE_SWEEP_INTERVAL_SECONDS = _parse_float_env(
    "RESOURCE_SWEEP_INTERVAL_SECONDS", default=60.0, min_val=0.01, max_val=3600.0
)

MEMORY_WATERMARK_MB = _parse_int_env(
    "MEMORY_WATERMARK_MB", default=1024, min_val=16, max_val=1_048_576
)
# Why 1 GiB: worker containers are sized at 2 GiB. Crossing half means the
# caches, not the requests, should give memory back.

PRESSURE_EVICTION_FRACTION = 0.5
NORMAL_EVICTION_FRACTION = 0.0

# =============================================================================
# Rollout / A-B testing
# =============================================================================

ROLLOUT_MIN_SAMPLES = _parse_int_env("ROLLOUT_MIN_SAMPLES", default=100, min_val=1, max_val=1_000_000)
# Why 100: below that a 5% error ceiling is decided by one or two requests.

ROLLOUT_MAX_ERROR_RATE = 0.05
ROLLOUT_MIN_SUCCESS_RATE = 0.95
ROLLOUT_LATENCY_IMPROVEMENT_PCT = 20.0
# Why 20%: smaller improvements are within the day-to-day latency noise of
# the upstream model provider.

ROLLOUT_WINDOW_SECONDS = _parse_int_env(
    "ROLLOUT_WINDOW_SECONDS", default=3600, min_val=1, max_val=7 * 86_400
)
ROLLOUT_BUCKET_SECONDS = 60
ROLLOUT_TICK_INTERVAL_SECONDS = _parse_float_env(
    "ROLLOUT_TICK_INTERVAL_SECONDS", default=30.0, min_val=0.01, max_val=3600.0
)
LATENCY_RESERVOIR_SIZE = 512
ROLLOUT_MAX_BUCKETS = _parse_int_env(
    "ROLLOUT_MAX_BUCKETS", default=100_000, min_val=1, max_val=10_000_000
)
# Least recently seen identifiers are forgotten past the cap. They rehash to
# the same bucket unless the rollout changed since they were first seen.

# =============================================================================
# Observability
# =============================================================================

OBSERVABILITY_QUIET = _parse_bool_env("OBSERVABILITY_QUIET", default=False)
# Suppresses routine per-request info events (stream chunks, session setup).

# =============================================================================
# Streaming
# =============================================================================

STREAM_FLUSH_INTERVAL_MS = 50.0
# Why 50ms: chat UIs render per frame; merging deltas faster than ~20Hz buys
# nothing visually but cuts SSE frames by roughly 5x.

STREAM_HEARTBEAT_SECONDS = 15.0
# Why 15s: below the 30s idle timeout of common reverse proxies.
