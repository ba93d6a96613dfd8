"""
Model client core: inbound request validation, provider request building
and the wrapped SDK calls.

Preparation runs before any stream starts, so every problem it finds is
raised synchronously as a typed error.
"""

from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field, replace
from typing import Any, Literal

import httpx
from google import genai
from google.genai import types as genai_types
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from gemini_chat_core.citations import DedupeMode
from gemini_chat_core.client import get_client
from gemini_chat_core.config import (
    DEFAULT_TEMPERATURE,
    FUNCTION_CALLING_TEMPERATURE,
    LOGGER_NAME,
    get_model,
    get_token_limit,
)
from gemini_chat_core.errors import GeminiTokenLimitError, GeminiValidationError, classify
from gemini_chat_core.files import stage_large_media
from gemini_chat_core.functions.registry import FunctionRegistry
from gemini_chat_core.instructions import standard_system_instruction
from gemini_chat_core.retry import with_retry, with_retry_stream
from gemini_chat_core.safety import enforce_input_safety, redact_pii
from gemini_chat_core.tokens import check_limits, truncate_history
from gemini_chat_core.types import (
    ContentPart,
    ConversationTurn,
    PartKind,
    Role,
    ThinkingConfig,
)
from gemini_chat_core.urls import ResolvedUrl, extract_urls, resolve_urls

logger = logging.getLogger(LOGGER_NAME)

# Map string levels to ThinkingLevel enum
THINKING_LEVEL_MAP = {
    "minimal": genai_types.ThinkingLevel.MINIMAL,
    "low": genai_types.ThinkingLevel.LOW,
    "medium": genai_types.ThinkingLevel.MEDIUM,
    "high": genai_types.ThinkingLevel.HIGH,
}

# Code execution cannot be combined with these media kinds
NO_CODE_EXECUTION_KINDS = (PartKind.VIDEO, PartKind.AUDIO, PartKind.DOCUMENT)

Mode = Literal["standard", "deep-research"]


# =============================================================================
# Inbound Request
# =============================================================================


class PartModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: PartKind
    text: str | None = None
    data: str | None = Field(default=None, description="Base64-encoded bytes")
    mime_type: str | None = None
    file_uri: str | None = None

    @model_validator(mode="after")
    def _check_payload(self) -> PartModel:
        if self.type is PartKind.TEXT:
            if self.text is None:
                raise ValueError("text parts need 'text'")
            return self
        if not self.data and not self.file_uri:
            raise ValueError(f"{self.type.value} parts need 'data' or 'file_uri'")
        if not self.mime_type:
            raise ValueError(f"{self.type.value} parts need 'mime_type'")
        if self.data:
            try:
                base64.b64decode(self.data, validate=True)
            except (binascii.Error, ValueError) as e:
                raise ValueError("'data' must be base64") from e
        return self

    def to_part(self) -> ContentPart:
        return ContentPart(
            kind=self.type,
            text=self.text,
            data=base64.b64decode(self.data) if self.data else None,
            mime_type=self.mime_type,
            file_uri=self.file_uri,
        )


class TurnModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: Role
    parts: list[PartModel] = Field(min_length=1)

    @field_validator("role", mode="before")
    @classmethod
    def _model_is_assistant(cls, value: Any) -> Any:
        return "assistant" if value == "model" else value


class ThinkingConfigModel(BaseModel):
    level: Literal["minimal", "low", "medium", "high"] | None = None
    include_thoughts: bool = True


class ChatRequest(BaseModel):
    """Inbound request from the transport layer."""

    model_config = ConfigDict(extra="forbid")

    conversation: list[TurnModel] = Field(min_length=1)
    mode: Mode = "standard"
    model_id: str = Field(default_factory=get_model, min_length=1)
    thinking_config: ThinkingConfigModel | None = None
    enable_functions: bool = False
    dedupe: DedupeMode = "domain"

    @model_validator(mode="after")
    def _ends_with_user(self) -> ChatRequest:
        if self.conversation[-1].role is not Role.USER:
            raise ValueError("conversation must end with a user turn")
        return self

    def turns(self) -> list[ConversationTurn]:
        return [
            ConversationTurn(role=t.role, parts=[p.to_part() for p in t.parts])
            for t in self.conversation
        ]

    def request_config(self) -> RequestConfig:
        thinking = None
        if self.thinking_config is not None:
            thinking = ThinkingConfig(
                level=self.thinking_config.level,
                include_thoughts=self.thinking_config.include_thoughts,
            )
        return RequestConfig(
            model_id=self.model_id,
            thinking=thinking,
            enable_functions=self.enable_functions,
            dedupe=self.dedupe,
        )


def parse_request(payload: ChatRequest | dict[str, Any]) -> ChatRequest:
    """Validate an inbound payload, reporting every problem at once."""
    if isinstance(payload, ChatRequest):
        return payload
    if not isinstance(payload, dict):
        raise GeminiValidationError("Request body must be an object", field="request")
    try:
        return ChatRequest.model_validate(payload)
    except ValidationError as e:
        problems = [
            f"{'.'.join(str(p) for p in err['loc']) or 'request'}: {err['msg']}"
            for err in e.errors()
        ]
        first_field = ".".join(str(p) for p in e.errors()[0]["loc"]) if e.errors() else None
        raise GeminiValidationError(
            "Invalid request: " + "; ".join(problems),
            field=first_field or None,
            details={"errors": problems},
        ) from e


# =============================================================================
# Provider Request
# =============================================================================


@dataclass(slots=True)
class RequestConfig:
    model_id: str = field(default_factory=get_model)
    thinking: ThinkingConfig | None = None
    enable_functions: bool = False
    dedupe: DedupeMode = "domain"
    system_instruction: str | None = None
    resolve_urls: bool = True


@dataclass(slots=True)
class ProviderRequest:
    """Everything needed to call ``generate_content`` for one turn."""

    model: str
    contents: list[genai_types.Content]
    config: genai_types.GenerateContentConfig
    query: str
    uses_functions: bool = False
    include_thoughts: bool = True
    dedupe: DedupeMode = "domain"
    url_context: list[ResolvedUrl] = field(default_factory=list)
    has_media: bool = False


def latest_user_index(turns: Sequence[ConversationTurn]) -> int:
    for i in range(len(turns) - 1, -1, -1):
        if turns[i].role is Role.USER:
            return i
    raise GeminiValidationError("Conversation has no user turn", field="conversation")


def _screen_turn(turn: ConversationTurn) -> ConversationTurn:
    """Screen the joined text for injection, then redact each text part."""
    if not turn.text:
        return turn
    enforce_input_safety(turn.text)
    parts = [
        replace(p, text=redact_pii(p.text)[0]) if p.kind is PartKind.TEXT and p.text else p
        for p in turn.parts
    ]
    return ConversationTurn(role=turn.role, parts=parts)


def _to_genai_part(part: ContentPart) -> genai_types.Part:
    if part.kind is PartKind.TEXT:
        return genai_types.Part(text=part.text or "")
    if part.file_uri:
        return genai_types.Part(
            file_data=genai_types.FileData(file_uri=part.file_uri, mime_type=part.mime_type)
        )
    return genai_types.Part(inline_data=genai_types.Blob(data=part.data, mime_type=part.mime_type))


def build_contents(turns: Sequence[ConversationTurn]) -> list[genai_types.Content]:
    """SDK contents for a conversation. Media goes before text within a turn."""
    contents: list[genai_types.Content] = []
    for turn in turns:
        media = [p for p in turn.parts if p.is_media]
        texts = [p for p in turn.parts if p.kind is PartKind.TEXT and p.text]
        if not media and not texts:
            continue
        contents.append(
            genai_types.Content(
                role="model" if turn.role is Role.ASSISTANT else "user",
                parts=[_to_genai_part(p) for p in (*media, *texts)],
            )
        )
    return contents


def build_thinking_config(thinking: ThinkingConfig | None) -> genai_types.ThinkingConfig:
    if thinking is None:
        return genai_types.ThinkingConfig(include_thoughts=True)
    level = THINKING_LEVEL_MAP.get(thinking.level) if thinking.level else None
    return genai_types.ThinkingConfig(thinking_level=level, include_thoughts=thinking.include_thoughts)


def build_tools(
    turns: Sequence[ConversationTurn],
    *,
    registry: FunctionRegistry | None,
    use_functions: bool,
) -> list[genai_types.Tool]:
    """Function declarations alone, or the built-in search/URL/code tools.

    The two groups cannot be mixed in one request.
    """
    if use_functions and registry is not None and len(registry):
        return [genai_types.Tool(function_declarations=registry.declarations())]

    tools = [
        genai_types.Tool(google_search=genai_types.GoogleSearch()),
        genai_types.Tool(url_context=genai_types.UrlContext()),
    ]
    if not any(t.has_media(*NO_CODE_EXECUTION_KINDS) for t in turns):
        tools.append(genai_types.Tool(code_execution=genai_types.ToolCodeExecution()))
    return tools


def build_generate_config(
    config: RequestConfig,
    tools: list[genai_types.Tool],
    *,
    uses_functions: bool,
    allow_function_calls: bool = True,
) -> genai_types.GenerateContentConfig:
    tool_config = None
    if uses_functions:
        mode = (
            genai_types.FunctionCallingConfigMode.AUTO
            if allow_function_calls
            else genai_types.FunctionCallingConfigMode.NONE
        )
        tool_config = genai_types.ToolConfig(
            function_calling_config=genai_types.FunctionCallingConfig(mode=mode)
        )
    return genai_types.GenerateContentConfig(
        tools=tools,
        tool_config=tool_config,
        thinking_config=build_thinking_config(config.thinking),
        system_instruction=config.system_instruction or standard_system_instruction(),
        temperature=FUNCTION_CALLING_TEMPERATURE if uses_functions else DEFAULT_TEMPERATURE,
    )


def validate_turns(turns: Sequence[ConversationTurn]) -> None:
    if not turns:
        raise GeminiValidationError("Conversation must not be empty", field="conversation")
    for i, turn in enumerate(turns):
        if not turn.parts:
            raise GeminiValidationError(f"Turn {i} has no content", field=f"conversation.{i}.parts")
    latest = turns[latest_user_index(turns)]
    if not latest.text.strip() and not latest.has_media():
        raise GeminiValidationError("Latest user turn has no text or media", field="conversation")


def screen_and_fit(turns: Sequence[ConversationTurn], model_id: str) -> list[ConversationTurn]:
    """Safety pass on the latest user turn, then fit the history into the model's budget."""
    validate_turns(turns)
    screened = list(turns)
    index = latest_user_index(screened)
    screened[index] = _screen_turn(screened[index])

    limit = get_token_limit(model_id)
    if not check_limits(screened, limit).within_limit:
        screened = truncate_history(screened, limit)
        result = check_limits(screened, limit)
        if not result.within_limit:
            raise GeminiTokenLimitError(
                result.recommendation or "Conversation is too long",
                token_count=result.estimated_total,
                max_tokens=limit,
            )
        logger.info("✂️ Truncated history to %d turns to fit %s", len(screened), model_id)
    return screened


async def prepare_request(
    turns: Sequence[ConversationTurn],
    config: RequestConfig,
    *,
    registry: FunctionRegistry | None = None,
    client: genai.Client | None = None,
    url_transport: httpx.AsyncBaseTransport | None = None,
) -> ProviderRequest:
    """
    Build the provider request for a standard-mode turn.

    Raises:
        GeminiValidationError: Malformed conversation or blocked input
        GeminiTokenLimitError: Conversation cannot be fitted into the model's budget
    """
    screened = screen_and_fit(turns, config.model_id)
    screened = await stage_large_media(screened, client=client)

    index = latest_user_index(screened)
    query = screened[index].text

    uses_functions = bool(config.enable_functions and registry is not None and len(registry))
    resolved: list[ResolvedUrl] = []
    if config.resolve_urls and not uses_functions:
        urls = extract_urls(query)
        if urls:
            resolved = await resolve_urls(urls, transport=url_transport)

    contents = build_contents(screened)
    if resolved:
        listing = "\n".join(f"- {r.final_url}" for r in resolved)
        contents[-1].parts.append(genai_types.Part(text=f"Use these pages as context:\n{listing}"))

    tools = build_tools(screened, registry=registry, use_functions=uses_functions)
    return ProviderRequest(
        model=config.model_id,
        contents=contents,
        config=build_generate_config(config, tools, uses_functions=uses_functions),
        query=query,
        uses_functions=uses_functions,
        include_thoughts=config.thinking.include_thoughts if config.thinking else True,
        dedupe=config.dedupe,
        url_context=resolved,
        has_media=any(t.has_media() for t in screened),
    )


# =============================================================================
# SDK Calls
# =============================================================================


async def generate_content(
    request: ProviderRequest,
    *,
    contents: list[genai_types.Content] | None = None,
    config: genai_types.GenerateContentConfig | None = None,
    client: genai.Client | None = None,
) -> genai_types.GenerateContentResponse:
    """One non-streaming call, retried while retryable; errors come back typed."""
    client = client or get_client()
    try:
        return await with_retry(
            lambda: client.aio.models.generate_content(
                model=request.model,
                contents=contents if contents is not None else request.contents,
                config=config or request.config,
            ),
            label="generate_content",
        )
    except Exception as e:
        raise classify(e) from e


async def stream_content(
    request: ProviderRequest,
    *,
    contents: list[genai_types.Content] | None = None,
    config: genai_types.GenerateContentConfig | None = None,
    client: genai.Client | None = None,
) -> AsyncIterator[genai_types.GenerateContentResponse]:
    """Streaming call; only the connection attempt is retried."""
    client = client or get_client()
    stream = with_retry_stream(
        lambda: client.aio.models.generate_content_stream(
            model=request.model,
            contents=contents if contents is not None else request.contents,
            config=config or request.config,
        ),
        label="generate_content_stream",
    )
    try:
        async for chunk in stream:
            yield chunk
    except Exception as e:
        raise classify(e) from e
