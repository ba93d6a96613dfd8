"""Gemini Chat Core

Model orchestration and streaming for Gemini conversations:
- standard mode: grounded, tool-augmented turns with function calling
- deep-research mode: background research tasks that survive disconnects
- one typed, resumable event stream for both
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("gemini-chat-core")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

from gemini_chat_core.agentic import generate_follow_ups, run_standard_turn
from gemini_chat_core.cancel import CancelToken
from gemini_chat_core.core import ChatRequest, parse_request, prepare_request
from gemini_chat_core.deep import DeepResearchOrchestrator
from gemini_chat_core.errors import (
    ErrorKind,
    GeminiError,
    classify,
    is_retryable,
    user_friendly_message,
)
from gemini_chat_core.files import upload_and_wait, upload_and_wait_for_video
from gemini_chat_core.functions import FunctionRegistry, register_builtin_functions
from gemini_chat_core.retry import RetryPolicy, with_retry, with_retry_stream
from gemini_chat_core.streaming import (
    EventStream,
    create_stream,
    encode_event,
    follow_up_stream,
    resume_stream,
)
from gemini_chat_core.tokens import check_limits, estimate, truncate_to_limit
from gemini_chat_core.types import (
    ContentPart,
    ConversationTurn,
    EventType,
    FunctionDeclaration,
    GroundingMetadata,
    PartKind,
    RegisteredFunction,
    ResearchPhase,
    ResearchTask,
    Role,
    StreamEvent,
    ThinkingConfig,
)

__all__ = [
    "__version__",
    "CancelToken",
    "ChatRequest",
    "ContentPart",
    "ConversationTurn",
    "DeepResearchOrchestrator",
    "ErrorKind",
    "EventStream",
    "EventType",
    "FunctionDeclaration",
    "FunctionRegistry",
    "GeminiError",
    "GroundingMetadata",
    "PartKind",
    "RegisteredFunction",
    "ResearchPhase",
    "ResearchTask",
    "RetryPolicy",
    "Role",
    "StreamEvent",
    "ThinkingConfig",
    "check_limits",
    "classify",
    "create_stream",
    "encode_event",
    "estimate",
    "follow_up_stream",
    "generate_follow_ups",
    "is_retryable",
    "parse_request",
    "prepare_request",
    "register_builtin_functions",
    "resume_stream",
    "run_standard_turn",
    "truncate_to_limit",
    "upload_and_wait",
    "upload_and_wait_for_video",
    "user_friendly_message",
    "with_retry",
    "with_retry_stream",
]
