"""
Streaming adapter: the seam consumed by the transport layer.

``create_stream`` validates and prepares a request, then hands back an
``EventStream`` over the standard or deep research producer. Preparation
errors raise before the stream exists. Once it exists, the stream never
raises: a failure becomes one terminal ``error`` event, and every stream
finishes with an ``end`` sentinel so the transport can release the
connection.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Iterable
from dataclasses import replace
from typing import Any

import httpx
from google import genai

from gemini_chat_core.agentic import run_standard_turn
from gemini_chat_core.cancel import CancelToken
from gemini_chat_core.config import LOGGER_NAME
from gemini_chat_core.core import ChatRequest, parse_request, prepare_request, screen_and_fit
from gemini_chat_core.deep import DeepResearchOrchestrator
from gemini_chat_core.errors import GeminiError, GeminiValidationError, classify
from gemini_chat_core.functions.registry import FunctionRegistry
from gemini_chat_core.types import EventType, StreamEvent, event

logger = logging.getLogger(LOGGER_NAME)


def encode_event(ev: StreamEvent) -> str:
    """One NDJSON record, newline included."""
    return json.dumps(ev.to_dict(), ensure_ascii=False, default=str) + "\n"


class EventStream:
    """
    Pull-based, cancellable event sequence.

    Stamps each event with a ``seq`` that increases by one per event,
    stops after the first ``error`` event and always finishes with ``end``.
    Iterate it with ``async for`` or drain it as NDJSON via ``iter_lines``.
    """

    def __init__(
        self,
        source: AsyncIterator[StreamEvent],
        *,
        token: CancelToken | None = None,
        task_id: str | None = None,
    ) -> None:
        self._source = source
        self.token = token or CancelToken()
        self.task_id = task_id
        self._seq = 0
        self._status: str | None = None
        self._closed = False

    @property
    def finished(self) -> bool:
        return self._closed

    def __aiter__(self) -> EventStream:
        return self

    async def __anext__(self) -> StreamEvent:
        if self._closed:
            raise StopAsyncIteration
        if self._status is not None:
            return await self._finish()
        if self.token.cancelled:
            self._status = "cancelled"
            return await self._finish()

        try:
            ev = await self._source.__anext__()
        except StopAsyncIteration:
            self._status = "cancelled" if self.token.cancelled else "ok"
            return await self._finish()
        except Exception as e:
            error = classify(e)
            if isinstance(e, GeminiError):
                logger.error("❌ Stream failed [%s]: %s", error.kind.value, e)
            else:
                logger.exception("❌ Stream failed with unexpected error")
            data = error.to_dict()
            if self.task_id:
                data["task_id"] = self.task_id
            self._status = "error"
            return self._stamp(event(EventType.ERROR, **data))

        if ev.type is EventType.ERROR:
            self._status = "error"
        elif ev.type is EventType.END:
            # Producers do not own the sentinel
            self._status = "ok"
            return await self._finish()
        return self._stamp(ev)

    def _stamp(self, ev: StreamEvent) -> StreamEvent:
        stamped = replace(ev, seq=self._seq)
        self._seq += 1
        return stamped

    async def _finish(self) -> StreamEvent:
        await self._close_source()
        self._closed = True
        status = self._status or "ok"
        logger.info("🏁 Stream finished (%s, %d events)", status, self._seq)
        data: dict[str, Any] = {"status": status}
        if self.task_id:
            data["task_id"] = self.task_id
        return self._stamp(event(EventType.END, **data))

    async def _close_source(self) -> None:
        aclose = getattr(self._source, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.warning("⚠️ Producer cleanup failed: %s", e)

    def cancel(self) -> None:
        """Ask the producer to stop at its next suspension point."""
        self.token.cancel()

    async def aclose(self) -> None:
        """Stop the producer now. No further events, not even ``end``."""
        self.token.cancel()
        if not self._closed:
            self._closed = True
            await self._close_source()

    async def __aenter__(self) -> EventStream:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def iter_lines(self) -> AsyncIterator[str]:
        async for ev in self:
            yield encode_event(ev)

    async def collect(self) -> list[StreamEvent]:
        """Drain the whole stream, ``end`` included."""
        return [ev async for ev in self]


# =============================================================================
# Entry Points
# =============================================================================


async def create_stream(
    request: ChatRequest | dict[str, Any],
    *,
    registry: FunctionRegistry | None = None,
    orchestrator: DeepResearchOrchestrator | None = None,
    client: genai.Client | None = None,
    url_transport: httpx.AsyncBaseTransport | None = None,
) -> EventStream:
    """
    Validate a chat request, prepare it and open its event stream.

    Raises:
        GeminiError: Any problem found before the first event (bad input,
            blocked content, token budget, upload or submission failure)
    """
    chat = parse_request(request)
    turns = chat.turns()
    config = chat.request_config()
    token = CancelToken()

    try:
        if chat.mode == "deep-research":
            orchestrator = orchestrator or DeepResearchOrchestrator(client=client)
            screened = screen_and_fit(turns, config.model_id)
            task_id, events = await orchestrator.execute_deep_research(screened, token=token)
            logger.info("📡 Deep research stream opened for %s", task_id)
            return EventStream(events, token=token, task_id=task_id)

        provider_request = await prepare_request(
            turns,
            config,
            registry=registry,
            client=client,
            url_transport=url_transport,
        )
    except GeminiError:
        raise
    except Exception as e:
        raise classify(e) from e

    logger.info("📡 Standard stream opened (%d turns)", len(turns))
    source = run_standard_turn(provider_request, registry=registry, client=client, token=token)
    return EventStream(source, token=token)


def resume_stream(
    task_id: str,
    seen: Iterable[str] = (),
    *,
    orchestrator: DeepResearchOrchestrator | None = None,
    client: genai.Client | None = None,
) -> EventStream:
    """Reattach to a deep research task by id."""
    if not task_id or not task_id.strip():
        raise GeminiValidationError("task_id must not be empty", field="task_id")
    orchestrator = orchestrator or DeepResearchOrchestrator(client=client)
    token = CancelToken()
    events = orchestrator.reconnect_to_research(task_id, seen=seen, token=token)
    return EventStream(events, token=token, task_id=task_id)


async def follow_up_stream(
    task_id: str,
    question: str,
    *,
    orchestrator: DeepResearchOrchestrator | None = None,
    client: genai.Client | None = None,
) -> EventStream:
    """Ask a follow-up on a completed task and stream the new turn."""
    if not task_id or not task_id.strip():
        raise GeminiValidationError("task_id must not be empty", field="task_id")
    orchestrator = orchestrator or DeepResearchOrchestrator(client=client)
    token = CancelToken()
    try:
        events = await orchestrator.ask_follow_up(task_id, question, token=token)
    except GeminiError:
        raise
    except Exception as e:
        raise classify(e) from e
    return EventStream(events, token=token, task_id=task_id)
