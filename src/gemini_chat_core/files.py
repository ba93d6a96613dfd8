"""
File staging through the Gemini Files API.

Large media (video in particular) cannot be sent inline; it is uploaded,
polled until the service reports it ACTIVE, and then referenced by URI.
"""

from __future__ import annotations

import asyncio
import io
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, replace
from typing import Any

from google import genai
from google.genai import types as genai_types

from gemini_chat_core.client import get_client
from gemini_chat_core.config import (
    FILE_POLL_INTERVAL,
    FILE_PROCESSING_TIMEOUT,
    LOGGER_NAME,
    MAX_INLINE_SIZE_MB,
)
from gemini_chat_core.errors import (
    GeminiError,
    GeminiTimeoutError,
    GeminiValidationError,
    classify,
)
from gemini_chat_core.types import ContentPart, ConversationTurn, PartKind, enum_name

logger = logging.getLogger(LOGGER_NAME)

MAX_INLINE_BYTES = MAX_INLINE_SIZE_MB * 1024 * 1024
STAGED_KINDS = (PartKind.VIDEO, PartKind.AUDIO, PartKind.DOCUMENT)


@dataclass(frozen=True, slots=True)
class FileRef:
    """A staged file ready to be referenced from a generation request."""

    name: str
    uri: str
    mime_type: str
    state: str = "ACTIVE"


def _file_error_message(file_obj: Any) -> str:
    error = getattr(file_obj, "error", None)
    if isinstance(error, str) and error:
        return error
    message = getattr(error, "message", None)
    if isinstance(message, str) and message:
        return message
    return "Unknown error"


async def get_file_status(name: str, *, client: genai.Client | None = None) -> str:
    """Current processing state of an uploaded file (ACTIVE, PROCESSING, FAILED...)."""
    client = client or get_client()
    file_obj = await client.aio.files.get(name=name)
    return enum_name(getattr(file_obj, "state", None))


async def wait_for_processing(
    name: str,
    *,
    client: genai.Client | None = None,
    timeout_seconds: float = FILE_PROCESSING_TIMEOUT,
    poll_interval: float = FILE_POLL_INTERVAL,
) -> Any:
    """Poll a file until it becomes ACTIVE or fails."""
    client = client or get_client()
    deadline = time.monotonic() + timeout_seconds
    last_state = "STATE_UNSPECIFIED"

    while True:
        file_obj = await client.aio.files.get(name=name)
        last_state = enum_name(getattr(file_obj, "state", None), "STATE_UNSPECIFIED")

        if last_state == "ACTIVE":
            return file_obj
        if last_state == "FAILED":
            raise GeminiError(f"File processing failed: {_file_error_message(file_obj)}")

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        logger.debug("   ⏳ File %s is %s, polling again", name, last_state)
        await asyncio.sleep(min(poll_interval, remaining))

    raise GeminiTimeoutError(
        f"File processing timed out after {timeout_seconds:.0f}s (stuck in {last_state})",
        timeout_ms=int(timeout_seconds * 1000),
    )


async def upload_and_wait(
    data: bytes,
    mime_type: str,
    *,
    display_name: str | None = None,
    client: genai.Client | None = None,
    timeout_seconds: float = FILE_PROCESSING_TIMEOUT,
    poll_interval: float = FILE_POLL_INTERVAL,
) -> FileRef:
    """Upload bytes to the Files API and wait until they can be referenced."""
    if not data:
        raise GeminiValidationError("Cannot upload an empty file", field="data")
    if not mime_type:
        raise GeminiValidationError("mime_type is required for uploads", field="mime_type")

    client = client or get_client()
    size_mb = len(data) / 1024 / 1024
    logger.info("📤 Uploading %.1fMB (%s)", size_mb, mime_type)

    try:
        uploaded = await client.aio.files.upload(
            file=io.BytesIO(data),
            config=genai_types.UploadFileConfig(mime_type=mime_type, display_name=display_name),
        )
    except asyncio.CancelledError:
        raise
    except Exception as e:
        raise classify(e) from e

    name = getattr(uploaded, "name", None)
    if not isinstance(name, str) or not name:
        raise GeminiError("Upload did not return a file name")

    state = enum_name(getattr(uploaded, "state", None), "STATE_UNSPECIFIED")
    if state == "FAILED":
        raise GeminiError(f"File processing failed: {_file_error_message(uploaded)}")
    if state != "ACTIVE":
        uploaded = await wait_for_processing(
            name, client=client, timeout_seconds=timeout_seconds, poll_interval=poll_interval
        )

    uri = getattr(uploaded, "uri", None)
    if not isinstance(uri, str) or not uri:
        raise GeminiError("Upload did not return a file uri")

    logger.info("   ✅ File ready: %s", name)
    return FileRef(name=name, uri=uri, mime_type=getattr(uploaded, "mime_type", None) or mime_type)


async def upload_and_wait_for_video(
    data: bytes,
    mime_type: str,
    *,
    display_name: str | None = None,
    client: genai.Client | None = None,
    timeout_seconds: float = FILE_PROCESSING_TIMEOUT,
    poll_interval: float = FILE_POLL_INTERVAL,
) -> FileRef:
    """Stage a video for use in a generation request."""
    if not mime_type.startswith("video/"):
        raise GeminiValidationError(f"Expected a video mime type, got {mime_type}", field="mime_type")
    return await upload_and_wait(
        data,
        mime_type,
        display_name=display_name,
        client=client,
        timeout_seconds=timeout_seconds,
        poll_interval=poll_interval,
    )


async def delete_file(name: str, *, client: genai.Client | None = None) -> bool:
    """Best-effort delete; failures are logged, never raised."""
    client = client or get_client()
    try:
        await client.aio.files.delete(name=name)
    except Exception as e:
        logger.warning("   ⚠️ Failed to delete file %s: %s", name, e)
        return False
    return True


def needs_staging(part: ContentPart) -> bool:
    return (
        part.kind in STAGED_KINDS
        and part.file_uri is None
        and bool(part.mime_type)
        and part.size_bytes > MAX_INLINE_BYTES
    )


async def stage_large_media(
    turns: Sequence[ConversationTurn],
    *,
    client: genai.Client | None = None,
) -> list[ConversationTurn]:
    """Replace oversized inline media with staged file references."""
    if not any(needs_staging(p) for t in turns for p in t.parts):
        return list(turns)

    staged: list[ConversationTurn] = []
    for turn in turns:
        parts: list[ContentPart] = []
        for part in turn.parts:
            if needs_staging(part):
                data, mime_type = part.data or b"", part.mime_type or ""
                if part.kind is PartKind.VIDEO:
                    ref = await upload_and_wait_for_video(data, mime_type, client=client)
                else:
                    ref = await upload_and_wait(data, mime_type, client=client)
                part = replace(part, data=None, file_uri=ref.uri, mime_type=ref.mime_type)
            parts.append(part)
        staged.append(ConversationTurn(role=turn.role, parts=parts))
    return staged
