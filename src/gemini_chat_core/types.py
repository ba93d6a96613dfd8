"""
Data types for the Gemini chat core.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from gemini_chat_core.config import DEFAULT_FUNCTION_TIMEOUT_MS


# =============================================================================
# Conversation
# =============================================================================


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class PartKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    DOCUMENT = "document"
    AUDIO = "audio"


@dataclass(slots=True)
class ContentPart:
    """One piece of a turn: text, inline media bytes, or a staged file reference."""

    kind: PartKind
    text: str | None = None
    data: bytes | None = None
    mime_type: str | None = None
    file_uri: str | None = None

    @property
    def is_media(self) -> bool:
        return self.kind is not PartKind.TEXT

    @property
    def size_bytes(self) -> int:
        return len(self.data) if self.data else 0


@dataclass(slots=True)
class ConversationTurn:
    """A role-attributed unit of conversation, possibly multi-part."""

    role: Role
    parts: list[ContentPart] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "\n".join(p.text for p in self.parts if p.kind is PartKind.TEXT and p.text)

    def has_media(self, *kinds: PartKind) -> bool:
        wanted = kinds or tuple(k for k in PartKind if k is not PartKind.TEXT)
        return any(p.kind in wanted for p in self.parts)

    @classmethod
    def user(cls, text: str) -> ConversationTurn:
        return cls(role=Role.USER, parts=[ContentPart(kind=PartKind.TEXT, text=text)])

    @classmethod
    def assistant(cls, text: str) -> ConversationTurn:
        return cls(role=Role.ASSISTANT, parts=[ContentPart(kind=PartKind.TEXT, text=text)])


@dataclass(frozen=True, slots=True)
class ThinkingConfig:
    """Per-request thinking settings. A None level means provider default."""

    level: str | None = None
    include_thoughts: bool = True


# =============================================================================
# Grounding
# =============================================================================


@dataclass(frozen=True, slots=True)
class GroundingSource:
    """A source/citation from grounded search."""

    id: str
    url: str
    title: str
    domain: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "url": self.url, "title": self.title, "domain": self.domain}


@dataclass(frozen=True, slots=True)
class SupportSegment:
    """A span of the answer backed by one or more sources."""

    text: str
    start_index: int | None = None
    end_index: int | None = None
    source_indices: tuple[int, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "start_index": self.start_index,
            "end_index": self.end_index,
            "source_indices": list(self.source_indices),
        }


@dataclass(slots=True)
class GroundingMetadata:
    """Sources, support segments and search queries from web-search grounding."""

    sources: list[GroundingSource] = field(default_factory=list)
    supports: list[SupportSegment] = field(default_factory=list)
    search_queries: list[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.sources or self.search_queries)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "sources": [s.to_dict() for s in self.sources],
            "supports": [s.to_dict() for s in self.supports],
            "search_queries": list(self.search_queries),
        }


# =============================================================================
# Function Calling
# =============================================================================

FunctionHandler = Callable[[dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class FunctionDeclaration:
    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class RegisteredFunction:
    """A declaration paired with its async handler and execution limits."""

    declaration: FunctionDeclaration
    handler: FunctionHandler
    requires_validation: bool = False
    max_execution_time_ms: int = DEFAULT_FUNCTION_TIMEOUT_MS

    @property
    def name(self) -> str:
        return self.declaration.name


@dataclass(frozen=True, slots=True)
class FunctionCall:
    name: str
    args: dict[str, Any] = field(default_factory=dict)
    id: str | None = None


@dataclass(frozen=True, slots=True)
class FunctionResult:
    """Outcome of one call: ``{"result": ...}`` or ``{"error": "..."}``."""

    name: str
    response: dict[str, Any]
    id: str | None = None

    @property
    def ok(self) -> bool:
        return "error" not in self.response

    @property
    def error(self) -> str | None:
        return self.response.get("error")


@dataclass(slots=True)
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)

    @property
    def error(self) -> str | None:
        """All violations joined for display."""
        return "; ".join(self.errors) if self.errors else None


# =============================================================================
# Deep Research
# =============================================================================


class ResearchPhase(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    THINKING = "thinking"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ResearchPhase.COMPLETE, ResearchPhase.ERROR, ResearchPhase.CANCELLED)


@dataclass(slots=True)
class ResearchUsage:
    """Token usage information for a Deep Research task."""

    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(slots=True)
class ResearchTask:
    """Client-side view of a remote research task.

    ``task_id`` is opaque. ``interaction_id`` is the remote interaction being
    polled for the current turn; follow-ups advance it and bump ``turn``.
    ``observed`` holds the identities of phases and thought steps already
    emitted so a reconnecting stream can skip them. ``started_at`` marks the
    start of the current turn and bounds how long it is polled. ``finished_at``
    is set when the current turn reaches a terminal phase.
    """

    task_id: str
    phase: ResearchPhase = ResearchPhase.QUEUED
    created_at: float = field(default_factory=time.time)
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None
    interaction_id: str | None = None
    turn: int = 0
    observed: set[str] = field(default_factory=set)
    completed_turns: set[int] = field(default_factory=set)

    @property
    def current_interaction_id(self) -> str:
        return self.interaction_id or self.task_id


# =============================================================================
# Stream Events
# =============================================================================


class EventType(str, Enum):
    TEXT_DELTA = "text-delta"
    THOUGHT_STEP = "thought-step"
    AGENTIC_PHASE = "agentic-phase"
    FUNCTION_CALL = "function-call"
    FUNCTION_RESULT = "function-result"
    GROUNDING = "grounding"
    RELATED_QUESTIONS = "related-questions"
    RESEARCH_COMPLETE = "research-complete"
    ERROR = "error"
    END = "end"


@dataclass(frozen=True, slots=True)
class StreamEvent:
    """One UI-facing event. ``seq`` is stamped by the streaming adapter."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    seq: int = 0

    @property
    def is_end(self) -> bool:
        return self.type is EventType.END

    def to_dict(self) -> dict[str, Any]:
        return {"seq": self.seq, "type": self.type.value, "data": self.data}


def event(event_type: EventType, **data: Any) -> StreamEvent:
    """Shorthand used by producers: ``event(EventType.TEXT_DELTA, text="hi")``."""
    return StreamEvent(type=event_type, data=data)


def enum_name(value: Any, default: str = "UNSPECIFIED") -> str:
    """Stable upper-case name for SDK enums, plain strings or None."""
    if value is None:
        return default
    if isinstance(value, str):
        return value.upper() if value else default
    for attr in ("name", "value"):
        inner = getattr(value, attr, None)
        if isinstance(inner, str) and inner:
            return inner.upper()
    return default
