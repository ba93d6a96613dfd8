"""
Approximate token accounting.

Uses a fixed 4 characters-per-token ratio instead of the provider tokenizer.
Good enough for soft budget checks; not for pricing.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass

from gemini_chat_core.config import DEFAULT_TOKEN_LIMIT
from gemini_chat_core.types import ConversationTurn, PartKind

CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 4
HISTORY_RESERVE_TOKENS = 4096

# Flat per-part surcharges for attached media
MEDIA_TOKEN_SURCHARGE = {
    PartKind.IMAGE: 258,
    PartKind.VIDEO: 2580,
    PartKind.AUDIO: 1920,
    PartKind.DOCUMENT: 2580,
}


@dataclass(slots=True)
class TokenLimitResult:
    within_limit: bool
    estimated_total: int
    max_tokens: int
    over_by: int = 0
    recommendation: str | None = None


def estimate(text: str | None) -> int:
    """Estimated token count for a piece of text."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def truncate_to_limit(text: str, max_tokens: int) -> str:
    """Cut ``text`` so that ``estimate(result) <= max_tokens``.

    Slicing a ``str`` works on code points, so a multi-byte character is
    never split.
    """
    if max_tokens < 0:
        raise ValueError("max_tokens must be >= 0")
    if estimate(text) <= max_tokens:
        return text
    return text[: max_tokens * CHARS_PER_TOKEN]


def estimate_turn(turn: ConversationTurn) -> int:
    total = MESSAGE_OVERHEAD_TOKENS
    for part in turn.parts:
        if part.kind is PartKind.TEXT:
            total += estimate(part.text)
        else:
            total += MEDIA_TOKEN_SURCHARGE.get(part.kind, 0)
    return total


def estimate_turns(turns: Sequence[ConversationTurn]) -> int:
    return sum(estimate_turn(t) for t in turns)


def check_limits(
    turns: Sequence[ConversationTurn],
    model_max: int = DEFAULT_TOKEN_LIMIT,
) -> TokenLimitResult:
    """Sum per-turn estimates (media included) against a model ceiling."""
    total = estimate_turns(turns)
    if total <= model_max:
        return TokenLimitResult(within_limit=True, estimated_total=total, max_tokens=model_max)

    over_by = total - model_max
    return TokenLimitResult(
        within_limit=False,
        estimated_total=total,
        max_tokens=model_max,
        over_by=over_by,
        recommendation=(
            f"Conversation is ~{over_by:,} tokens over the limit. "
            "Start a new conversation or remove large attachments."
        ),
    )


def truncate_history(
    turns: Sequence[ConversationTurn],
    max_tokens: int = DEFAULT_TOKEN_LIMIT,
    reserve: int = HISTORY_RESERVE_TOKENS,
) -> list[ConversationTurn]:
    """Drop older middle turns until the history fits.

    The first turn (often carries context) and the last turn (the current
    question) are always kept; middle turns are kept newest first.
    """
    available = max_tokens - reserve
    if len(turns) <= 2 or estimate_turns(turns) <= available:
        return list(turns)

    first, last = turns[0], turns[-1]
    budget = available - estimate_turn(first) - estimate_turn(last)
    kept: list[ConversationTurn] = []
    for turn in reversed(turns[1:-1]):
        cost = estimate_turn(turn)
        if cost > budget:
            break
        kept.append(turn)
        budget -= cost

    return [first, *reversed(kept), last]


def token_summary(turns: Sequence[ConversationTurn], model_max: int = DEFAULT_TOKEN_LIMIT) -> str:
    total = estimate_turns(turns)
    percent = total / model_max * 100
    return f"~{total:,} tokens ({percent:.1f}% of {model_max // 1_000_000}M limit)"
