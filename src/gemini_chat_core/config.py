"""
Configuration management for the Gemini chat core.

All configuration is loaded from environment variables with sensible defaults.
"""

from __future__ import annotations

import os

LOGGER_NAME = "gemini_chat_core"


# =============================================================================
# Model Configuration
# =============================================================================

GEMINI_3_FLASH = "gemini-3-flash-preview"
GEMINI_3_PRO = "gemini-3-pro-preview"
DEFAULT_MODEL = GEMINI_3_FLASH
# Interactions Deep Research agent name (preview; override via DEEP_RESEARCH_AGENT)
DEFAULT_DEEP_RESEARCH_AGENT = "deep-research-pro-preview-12-2025"

# Input token ceilings per model
MODEL_TOKEN_LIMITS = {
    GEMINI_3_FLASH: 1_000_000,
    GEMINI_3_PRO: 1_000_000,
}
DEFAULT_TOKEN_LIMIT = 1_000_000

# Function calling wants deterministic output; gemini-3 is tuned for 1.0
FUNCTION_CALLING_TEMPERATURE = 0.0
DEFAULT_TEMPERATURE = 1.0


# =============================================================================
# Retries
# =============================================================================

DEFAULT_MAX_RETRIES = 2
DEFAULT_BASE_DELAY_MS = 200
MAX_RETRY_DELAY_MS = 2000

FOLLOW_UP_MAX_RETRIES = 2
FOLLOW_UP_BASE_DELAY_MS = 500


# =============================================================================
# Function Calling
# =============================================================================

DEFAULT_FUNCTION_TIMEOUT_MS = 30_000
BUILTIN_FUNCTION_TIMEOUT_MS = 5_000
MAX_FUNCTION_ROUNDS = 5


# =============================================================================
# Deep Research Polling
# =============================================================================

POLL_INTERVAL = 10.0  # seconds between polls
POLL_BACKOFF_FACTOR = 1.5  # applied while the phase does not change
MAX_POLL_INTERVAL = 60.0
POLL_TIMEOUT = 30.0  # client-side wait for a single poll
MAX_POLL_FAILURES = 5
MAX_RESEARCH_SECONDS = 3600.0  # 60 minutes max wait
FINISHED_TASK_TTL = 3600.0  # finished tasks stay tracked this long for reconnects
MAX_TRACKED_TASKS = 500
TEXT_DELTA_CHUNK_CHARS = 400


# =============================================================================
# URL Context & Media
# =============================================================================

MAX_URLS_PER_REQUEST = 20
MAX_URL_CONTENT_SIZE_MB = 34
URL_RESOLVE_TIMEOUT = 10.0
ALLOWED_URL_CONTENT_TYPES: frozenset[str] = frozenset([
    "text/html",
    "text/plain",
    "text/markdown",
    "text/csv",
    "text/xml",
    "application/xml",
    "application/json",
    "application/pdf",
])
ALLOWED_URL_CONTENT_PREFIXES: tuple[str, ...] = ("image/",)

MAX_INLINE_SIZE_MB = 20
FILE_PROCESSING_TIMEOUT = 300.0  # 5 minutes
FILE_POLL_INTERVAL = 2.0


# =============================================================================
# Follow-up Suggestions
# =============================================================================

FOLLOW_UP_QUESTION_COUNT = 3
FOLLOW_UP_EXCERPT_CHARS = 600


# =============================================================================
# Getters
# =============================================================================


def get_api_key() -> str:
    """Get Gemini API key from environment."""
    api_key = os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY")
    if not api_key:
        raise ValueError("GEMINI_API_KEY environment variable is required")
    return api_key


def get_model() -> str:
    """Get model name with env override support."""
    return os.environ.get("GEMINI_MODEL", DEFAULT_MODEL)


def get_deep_research_agent() -> str:
    """Get Deep Research agent name with env override support."""
    return os.environ.get("DEEP_RESEARCH_AGENT", DEFAULT_DEEP_RESEARCH_AGENT)


def get_token_limit(model_id: str | None) -> int:
    """Input token ceiling for a model id, falling back to the default."""
    if not model_id:
        return DEFAULT_TOKEN_LIMIT
    return MODEL_TOKEN_LIMITS.get(model_id, DEFAULT_TOKEN_LIMIT)


def is_development() -> bool:
    """True when diagnostic detail may be surfaced to clients."""
    env = os.environ.get("APP_ENV") or os.environ.get("ENVIRONMENT") or ""
    return env.lower() in ("development", "dev")
