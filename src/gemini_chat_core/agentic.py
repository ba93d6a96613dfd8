"""
Standard-mode turn: model call, tool rounds, grounding, follow-ups.

One turn runs ``start -> (model call <-> function calls)* -> finalize``.
Function calls of a round run concurrently but the round only closes once
every result is in; the follow-up model call then sees all of them.
"""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from google import genai
from google.genai import types as genai_types
from pydantic import BaseModel

from gemini_chat_core.cancel import CancelToken
from gemini_chat_core.citations import parse_grounding_metadata, parse_url_context_metadata
from gemini_chat_core.client import get_client
from gemini_chat_core.config import (
    FOLLOW_UP_BASE_DELAY_MS,
    FOLLOW_UP_EXCERPT_CHARS,
    FOLLOW_UP_MAX_RETRIES,
    FOLLOW_UP_QUESTION_COUNT,
    GEMINI_3_FLASH,
    LOGGER_NAME,
    MAX_FUNCTION_ROUNDS,
)
from gemini_chat_core.core import ProviderRequest, stream_content
from gemini_chat_core.errors import (
    GeminiError,
    GeminiRecitationError,
    GeminiSafetyError,
    GeminiTokenLimitError,
)
from gemini_chat_core.functions.executor import (
    build_function_response_parts,
    execute_function_calls,
    extract_function_calls,
)
from gemini_chat_core.functions.registry import FunctionRegistry
from gemini_chat_core.instructions import follow_up_prompt
from gemini_chat_core.retry import with_retry
from gemini_chat_core.types import EventType, StreamEvent, enum_name, event

logger = logging.getLogger(LOGGER_NAME)

SAFETY_FINISH_REASONS = frozenset(["SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII", "IMAGE_SAFETY"])
OK_FINISH_REASONS = frozenset(["STOP", "UNSPECIFIED", "FINISH_REASON_UNSPECIFIED"])

THOUGHT_SUMMARY_CHARS = 100
THOUGHT_DETAIL_LINES = 3

_MARKDOWN_RE = re.compile(r"[*_`#>]+")


class RelatedQuestions(BaseModel):
    questions: list[str]


@dataclass(slots=True)
class _RoundState:
    call_parts: list[Any] = field(default_factory=list)
    finish_reason: str = "UNSPECIFIED"
    metadata_candidate: Any = None


# =============================================================================
# Helpers
# =============================================================================


def thought_step(text: str) -> dict[str, Any] | None:
    """Summary line plus a few detail lines for a thought part."""
    lines = [line.strip() for line in text.strip().splitlines() if line.strip()]
    if not lines:
        return None
    summary = _MARKDOWN_RE.sub("", lines[0]).strip()
    if len(summary) > THOUGHT_SUMMARY_CHARS:
        summary = summary[: THOUGHT_SUMMARY_CHARS - 3].rstrip() + "..."
    return {"summary": summary, "details": lines[1 : 1 + THOUGHT_DETAIL_LINES]}


def finish_reason_error(reason: str) -> GeminiError | None:
    """Error for a finish reason that ends the turn without an answer."""
    if reason in OK_FINISH_REASONS:
        return None
    if reason in SAFETY_FINISH_REASONS:
        return GeminiSafetyError(f"Response blocked: {reason}")
    if reason == "RECITATION":
        return GeminiRecitationError()
    if reason == "MAX_TOKENS":
        return GeminiTokenLimitError("Response hit the output token limit")
    return GeminiError(f"Generation stopped: {reason}")


def _call_part(part: Any) -> genai_types.Part:
    """Rebuild a function-call part for history, keeping its thought signature."""
    fc = part.function_call
    return genai_types.Part(
        function_call=genai_types.FunctionCall(id=getattr(fc, "id", None), name=fc.name, args=dict(fc.args or {})),
        thought_signature=getattr(part, "thought_signature", None),
    )


def _without_function_calls(config: genai_types.GenerateContentConfig) -> genai_types.GenerateContentConfig:
    return config.model_copy(
        update={
            "tool_config": genai_types.ToolConfig(
                function_calling_config=genai_types.FunctionCallingConfig(
                    mode=genai_types.FunctionCallingConfigMode.NONE
                )
            )
        }
    )


# =============================================================================
# Follow-up Suggestions
# =============================================================================


async def generate_follow_ups(
    query: str,
    answer: str,
    *,
    client: genai.Client | None = None,
    count: int = FOLLOW_UP_QUESTION_COUNT,
) -> list[str]:
    """Suggest follow-up questions. Failures are logged and yield an empty list."""
    client = client or get_client()
    config = genai_types.GenerateContentConfig(
        response_mime_type="application/json",
        response_schema=RelatedQuestions,
        thinking_config=genai_types.ThinkingConfig(thinking_level=genai_types.ThinkingLevel.MINIMAL),
    )
    prompt = follow_up_prompt(query, answer[:FOLLOW_UP_EXCERPT_CHARS], count)

    try:
        response = await with_retry(
            lambda: client.aio.models.generate_content(model=GEMINI_3_FLASH, contents=prompt, config=config),
            max_retries=FOLLOW_UP_MAX_RETRIES,
            base_delay_ms=FOLLOW_UP_BASE_DELAY_MS,
            label="follow-up questions",
        )
        parsed = RelatedQuestions.model_validate_json(response.text or "")
    except Exception as e:
        logger.warning("⚠️ Follow-up question generation failed: %s", e)
        return []

    return [q.strip() for q in parsed.questions if q and q.strip()][:count]


# =============================================================================
# Turn
# =============================================================================


async def run_standard_turn(
    request: ProviderRequest,
    *,
    registry: FunctionRegistry | None = None,
    client: genai.Client | None = None,
    token: CancelToken | None = None,
    suggest_follow_ups: bool = True,
) -> AsyncIterator[StreamEvent]:
    """
    Drive one standard-mode turn, yielding stream events.

    Finish reasons other than a normal stop end the turn with an ``error``
    event. Provider failures raise typed ``GeminiError``s for the streaming
    adapter to convert.
    """
    client = client or get_client()
    token = token or CancelToken()
    registry = registry or FunctionRegistry()
    contents = list(request.contents)
    answer: list[str] = []
    metadata_candidate: Any = None

    logger.info("💬 Standard turn on %s (functions=%s)", request.model, request.uses_functions)
    yield event(EventType.AGENTIC_PHASE, phase="started", model=request.model)

    for round_index in range(MAX_FUNCTION_ROUNDS + 1):
        config = request.config
        if request.uses_functions and round_index == MAX_FUNCTION_ROUNDS:
            logger.warning("   ⚠️ Reached %d tool rounds, asking for a final answer", MAX_FUNCTION_ROUNDS)
            config = _without_function_calls(config)

        state = _RoundState()
        async for chunk in stream_content(request, contents=contents, config=config, client=client):
            if token.cancelled:
                return
            for candidate in (getattr(chunk, "candidates", None) or [])[:1]:
                if getattr(candidate, "finish_reason", None) is not None:
                    state.finish_reason = enum_name(candidate.finish_reason)
                if getattr(candidate, "grounding_metadata", None) or getattr(candidate, "url_context_metadata", None):
                    state.metadata_candidate = candidate

                content = getattr(candidate, "content", None)
                for part in getattr(content, "parts", None) or []:
                    if getattr(part, "function_call", None) is not None:
                        state.call_parts.append(part)
                    elif getattr(part, "thought", None):
                        step = thought_step(part.text or "") if request.include_thoughts else None
                        if step:
                            yield event(EventType.THOUGHT_STEP, **step)
                    elif getattr(part, "text", None):
                        answer.append(part.text)
                        yield event(EventType.TEXT_DELTA, text=part.text)

        if state.metadata_candidate is not None:
            metadata_candidate = state.metadata_candidate

        if not state.call_parts:
            error = finish_reason_error(state.finish_reason)
            if error is not None:
                logger.warning("   ❌ Turn ended with finish reason %s", state.finish_reason)
                yield event(EventType.ERROR, **error.to_dict())
                return
            break

        calls = extract_function_calls(state.call_parts)
        yield event(EventType.AGENTIC_PHASE, phase="calling-tool", tools=[c.name for c in calls], round=round_index + 1)
        for call in calls:
            yield event(EventType.FUNCTION_CALL, name=call.name, args=call.args, id=call.id)

        results = await execute_function_calls(registry, calls)
        if token.cancelled:
            return
        for result in results:
            payload: dict[str, Any] = {"name": result.name, "id": result.id, "success": result.ok}
            if result.ok:
                payload["result"] = result.response.get("result")
            else:
                payload["error"] = result.error
            yield event(EventType.FUNCTION_RESULT, **payload)

        contents.append(genai_types.Content(role="model", parts=[_call_part(p) for p in state.call_parts]))
        contents.append(genai_types.Content(role="user", parts=build_function_response_parts(results)))

    text = "".join(answer)
    if metadata_candidate is not None:
        grounding = parse_grounding_metadata(metadata_candidate, dedupe=request.dedupe)
        url_context = parse_url_context_metadata(metadata_candidate)
        if grounding or any(url_context.values()):
            yield event(EventType.GROUNDING, **grounding.to_dict(), url_context=url_context)

    yield event(EventType.AGENTIC_PHASE, phase="complete")
    logger.info("   ✅ Standard turn complete (%d chars)", len(text))

    if suggest_follow_ups and text.strip() and not token.cancelled:
        questions = await generate_follow_ups(request.query, text, client=client)
        if questions and not token.cancelled:
            yield event(EventType.RELATED_QUESTIONS, questions=questions)
