"""
Gemini Chat Core MCP Server

Composition root. Builds the function registry once, registers the
built-in functions, freezes it and wires it into the chat tools:
- chat: One conversation turn (standard or deep-research mode) as NDJSON events
- research_reconnect: Resume the event stream of a deep research task
- research_followup: Ask a follow-up question on a completed research task
- list_functions: Declarations the model can call in function mode
"""

# NOTE: Do NOT use `from __future__ import annotations` with FastMCP/Pydantic
# as it breaks type resolution for Annotated parameters in tool functions

import logging
from typing import Annotated, Any, Literal

from fastmcp import FastMCP

from gemini_chat_core import __version__
from gemini_chat_core.config import LOGGER_NAME, get_deep_research_agent, get_model
from gemini_chat_core.deep import DeepResearchOrchestrator
from gemini_chat_core.errors import GeminiError, classify
from gemini_chat_core.functions import FunctionRegistry, register_builtin_functions
from gemini_chat_core.streaming import (
    EventStream,
    create_stream,
    encode_event,
    follow_up_stream,
    resume_stream,
)
from gemini_chat_core.types import EventType, StreamEvent

# Configure logging
logger = logging.getLogger(LOGGER_NAME)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


# =============================================================================
# Composition
# =============================================================================


def build_registry() -> FunctionRegistry:
    """Registry with the built-in functions, frozen for the process lifetime."""
    registry = FunctionRegistry()
    register_builtin_functions(registry)
    registry.freeze()
    return registry


registry = build_registry()
orchestrator = DeepResearchOrchestrator()


# =============================================================================
# Server Instance
# =============================================================================

mcp = FastMCP(
    name="Gemini Chat Core",
    instructions="""
Gemini Chat Core - conversational model orchestration

## Chat (chat)
One turn of a conversation. Returns newline-delimited JSON events
(text-delta, thought-step, agentic-phase, function-call, function-result,
grounding, related-questions, research-complete, error) ending with `end`.
- mode="standard": grounded answer in seconds, optionally with function calling
- mode="deep-research": autonomous research agent (3-20 minutes)

## Reconnect (research_reconnect)
Resume a deep research stream by task_id after a disconnect.

## Follow-up (research_followup)
Ask a follow-up question on a completed research task.
""",
)


# =============================================================================
# Helper Functions
# =============================================================================


def _failure_lines(error: BaseException, task_id: str | None = None) -> str:
    """NDJSON for a request rejected before its stream opened."""
    typed = classify(error)
    data: dict[str, Any] = typed.to_dict()
    end: dict[str, Any] = {"status": "error"}
    if task_id:
        data["task_id"] = task_id
        end["task_id"] = task_id
    return encode_event(StreamEvent(EventType.ERROR, data, seq=0)) + encode_event(
        StreamEvent(EventType.END, end, seq=1)
    )


async def _drain(stream: EventStream) -> str:
    return "".join([line async for line in stream.iter_lines()])


# =============================================================================
# Tools
# =============================================================================


@mcp.tool(annotations={"readOnlyHint": True})
async def chat(
    conversation: Annotated[
        list[dict[str, Any]],
        "Turns as {role: 'user'|'assistant', parts: [{type, text?|data?|file_uri?, mime_type?}]}",
    ],
    mode: Annotated[Literal["standard", "deep-research"], "Operation mode"] = "standard",
    model_id: Annotated[str | None, "Gemini model id (defaults to GEMINI_MODEL)"] = None,
    thinking_level: Annotated[
        Literal["minimal", "low", "medium", "high"] | None,
        "Thinking depth; omit for the model default",
    ] = None,
    include_thoughts: Annotated[bool, "Emit thought-step events"] = True,
    enable_functions: Annotated[bool, "Let the model call the registered functions"] = False,
    dedupe: Annotated[Literal["domain", "url"], "Citation deduplication policy"] = "domain",
) -> str:
    """
    Run one conversation turn and return its events as NDJSON.

    Args:
        conversation: Conversation history ending with a user turn
        mode: "standard" or "deep-research"
        model_id: Model override
        thinking_level: minimal, low, medium or high
        include_thoughts: Include thought-step events
        enable_functions: Allow function calling (disables search grounding)
        dedupe: Deduplicate citations by "domain" or full "url"

    Returns:
        One JSON event per line, the last one of type "end"
    """
    logger.info("💬 chat: mode=%s, %d turns", mode, len(conversation))
    payload: dict[str, Any] = {
        "conversation": conversation,
        "mode": mode,
        "enable_functions": enable_functions,
        "dedupe": dedupe,
    }
    if model_id:
        payload["model_id"] = model_id
    if thinking_level or not include_thoughts:
        payload["thinking_config"] = {"level": thinking_level, "include_thoughts": include_thoughts}

    try:
        stream = await create_stream(payload, registry=registry, orchestrator=orchestrator)
    except GeminiError as e:
        logger.warning("   ❌ chat rejected [%s]: %s", e.kind.value, e)
        return _failure_lines(e)
    return await _drain(stream)


@mcp.tool(annotations={"readOnlyHint": True})
async def research_reconnect(
    task_id: Annotated[str, "The task_id of a deep research stream"],
    seen: Annotated[list[str] | None, "Thought-step keys already received"] = None,
) -> str:
    """
    Resume a deep research task's event stream.

    Thought steps already delivered are skipped. The final answer may be
    re-delivered, but research-complete is sent at most once per turn.

    Args:
        task_id: The task_id from a deep-research chat
        seen: Thought-step keys the caller already has

    Returns:
        One JSON event per line, the last one of type "end"
    """
    logger.info("🔄 research_reconnect: %s", task_id)
    try:
        stream = resume_stream(task_id, seen or (), orchestrator=orchestrator)
    except GeminiError as e:
        return _failure_lines(e, task_id)
    return await _drain(stream)


@mcp.tool(annotations={"readOnlyHint": True})
async def research_followup(
    task_id: Annotated[str, "The task_id of a completed deep research task"],
    question: Annotated[str, "Follow-up question about the research"],
) -> str:
    """
    Ask a follow-up question on a completed deep research task.

    Args:
        task_id: The task_id from a completed deep-research chat
        question: Follow-up question

    Returns:
        One JSON event per line, the last one of type "end"
    """
    logger.info("💬 research_followup: %s - %s", task_id, question[:100])
    try:
        stream = await follow_up_stream(task_id, question, orchestrator=orchestrator)
    except GeminiError as e:
        logger.warning("   ❌ follow-up rejected [%s]: %s", e.kind.value, e)
        return _failure_lines(e, task_id)
    return await _drain(stream)


@mcp.tool(annotations={"readOnlyHint": True})
def list_functions() -> list[dict[str, Any]]:
    """List the functions available to the model in function-calling mode."""
    return [
        {"name": d.name, "description": d.description, "parameters": d.parameters}
        for d in registry.list_declarations()
    ]


# =============================================================================
# Resources
# =============================================================================


@mcp.resource("chat://models")
def get_models() -> str:
    """Models used by this server."""
    return f"""# Available Models

## Standard mode

**Model:** `{get_model()}`
- Google Search grounding, URL context and code execution
- Function calling with the registered functions (replaces search tools)

## Deep research mode

**Agent:** `{get_deep_research_agent()}`
- Runs 3-20 minutes in the background (at most 60)
- Reconnect with `research_reconnect`, continue with `research_followup`
"""


# =============================================================================
# Main Entry Point
# =============================================================================


def main() -> None:
    """Run the MCP server on stdio transport."""
    logger.info("🚀 Starting Gemini Chat Core MCP Server v%s (FastMCP)", __version__)
    logger.info("   Transport: stdio")
    logger.info("   Functions: %s", ", ".join(registry.names()))

    mcp.run(transport="stdio")


# Export for use as module
__all__ = ["build_registry", "main", "mcp"]


if __name__ == "__main__":
    main()
