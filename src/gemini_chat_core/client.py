"""
Process-wide Gemini client handle.

Built lazily on first use and reused afterwards. Construction is guarded so
concurrent first callers (threads or tasks) never build two clients.
"""

from __future__ import annotations

import logging
import threading

from google import genai

from gemini_chat_core.config import LOGGER_NAME, get_api_key

logger = logging.getLogger(LOGGER_NAME)

_client: genai.Client | None = None
_client_lock = threading.Lock()


def get_client() -> genai.Client:
    """Get the shared Gemini client, creating it once if needed."""
    global _client

    client = _client
    if client is not None:
        return client

    with _client_lock:
        if _client is None:
            logger.info("🔌 Creating new Gemini client")
            _client = genai.Client(api_key=get_api_key())
        return _client


def reset_client() -> None:
    """Drop the shared client; the next ``get_client`` builds a fresh one."""
    global _client
    with _client_lock:
        if _client is not None:
            logger.warning("⚠️ Forcing client refresh")
        _client = None
