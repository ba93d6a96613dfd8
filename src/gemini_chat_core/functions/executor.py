"""
Glue between model responses and the registry for one agentic round.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from typing import Any

from google.genai import types as genai_types

from gemini_chat_core.config import LOGGER_NAME
from gemini_chat_core.functions.registry import FunctionRegistry
from gemini_chat_core.types import FunctionCall, FunctionResult

logger = logging.getLogger(LOGGER_NAME)


def extract_function_calls(parts: Iterable[Any] | None) -> list[FunctionCall]:
    """Pull function calls out of response parts, in order."""
    calls: list[FunctionCall] = []
    for part in parts or []:
        fc = getattr(part, "function_call", None)
        if fc is None or not getattr(fc, "name", None):
            continue
        calls.append(FunctionCall(name=fc.name, args=dict(fc.args or {}), id=getattr(fc, "id", None)))
    return calls


async def execute_function_calls(
    registry: FunctionRegistry,
    calls: Sequence[FunctionCall],
) -> list[FunctionResult]:
    """Run all calls of a round concurrently; results keep the call order.

    Returns only once every call has finished or timed out.
    """
    if not calls:
        return []
    logger.info("🧰 Executing %d function call(s): %s", len(calls), ", ".join(c.name for c in calls))
    return list(
        await asyncio.gather(*(registry.execute(c.name, c.args, call_id=c.id) for c in calls))
    )


def build_function_response_parts(results: Sequence[FunctionResult]) -> list[genai_types.Part]:
    return [
        genai_types.Part(
            function_response=genai_types.FunctionResponse(
                id=r.id,
                name=r.name,
                response=r.response,
            )
        )
        for r in results
    ]
