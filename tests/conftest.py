"""Shared fixtures and fakes for the Gemini SDK surface.

Nothing here talks to the network: SDK responses are SimpleNamespace
objects shaped like the google-genai types the code reads.
"""

from __future__ import annotations

import socket
from collections.abc import AsyncIterator, Iterable
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock

import pytest

from gemini_chat_core.client import reset_client


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> Iterable[None]:
    """Production env, fake key, fresh client handle for every test."""
    monkeypatch.delenv("APP_ENV", raising=False)
    monkeypatch.delenv("ENVIRONMENT", raising=False)
    monkeypatch.delenv("GEMINI_MODEL", raising=False)
    monkeypatch.delenv("DEEP_RESEARCH_AGENT", raising=False)
    monkeypatch.setenv("GEMINI_API_KEY", "test-key")
    reset_client()
    yield
    reset_client()


# =============================================================================
# generate_content fakes
# =============================================================================


def text_part(text: str, *, thought: bool = False) -> SimpleNamespace:
    return SimpleNamespace(text=text, thought=thought, function_call=None)


def call_part(name: str, args: dict[str, Any], call_id: str) -> SimpleNamespace:
    return SimpleNamespace(
        text=None,
        thought=None,
        function_call=SimpleNamespace(name=name, args=args, id=call_id),
        thought_signature=None,
    )


def chunk(
    *parts: Any,
    finish_reason: str | None = None,
    grounding_metadata: Any = None,
    url_context_metadata: Any = None,
) -> SimpleNamespace:
    candidate = SimpleNamespace(
        content=SimpleNamespace(parts=list(parts)),
        finish_reason=finish_reason,
        grounding_metadata=grounding_metadata,
        url_context_metadata=url_context_metadata,
    )
    return SimpleNamespace(candidates=[candidate])


async def stream_of(*items: Any) -> AsyncIterator[Any]:
    """Async stream yielding ``items``; an exception instance is raised in place."""
    for item in items:
        if isinstance(item, BaseException):
            raise item
        yield item


def grounding(*sources: tuple[str, str], queries: Iterable[str] = ()) -> SimpleNamespace:
    """Grounding metadata with one web chunk per (url, title)."""
    return SimpleNamespace(
        grounding_chunks=[SimpleNamespace(web=SimpleNamespace(uri=u, title=t)) for u, t in sources],
        grounding_supports=[],
        web_search_queries=list(queries),
    )


def make_client(
    *,
    streams: list[Any] | None = None,
    generate: Any = None,
) -> SimpleNamespace:
    """Fake ``genai.Client`` with the ``aio`` surface the package uses."""
    models = SimpleNamespace(
        generate_content_stream=AsyncMock(side_effect=streams or []),
        generate_content=AsyncMock(
            side_effect=generate if isinstance(generate, (list, BaseException)) else None,
            return_value=generate,
        ),
    )
    return SimpleNamespace(
        aio=SimpleNamespace(
            models=models,
            files=SimpleNamespace(upload=AsyncMock(), get=AsyncMock(), delete=AsyncMock()),
            interactions=SimpleNamespace(create=AsyncMock(), get=AsyncMock()),
        )
    )


@pytest.fixture
def no_sleep(monkeypatch: pytest.MonkeyPatch) -> AsyncMock:
    """Replace asyncio.sleep with an AsyncMock that records backoff delays."""
    sleep = AsyncMock()
    monkeypatch.setattr("asyncio.sleep", sleep)
    return sleep


@pytest.fixture
def public_dns(monkeypatch: pytest.MonkeyPatch) -> None:
    """Every hostname resolves to a public address."""

    def fake_getaddrinfo(host, *args, **kwargs):
        return [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("93.184.216.34", 0))]

    monkeypatch.setattr("gemini_chat_core.urls.socket.getaddrinfo", fake_getaddrinfo)
