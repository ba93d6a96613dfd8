"""
Input safety pass: PII redaction and prompt-injection screening.

Each injection pattern carries a weight; matched weights are combined as
``1 - prod(1 - w)`` into a confidence score. Input scoring above
``INJECTION_THRESHOLD`` is rejected.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field

from gemini_chat_core.config import LOGGER_NAME
from gemini_chat_core.errors import GeminiValidationError

logger = logging.getLogger(LOGGER_NAME)

INJECTION_THRESHOLD = 0.7
REDACTED = "[REDACTED]"

# (label, pattern, weight)
INJECTION_PATTERNS: tuple[tuple[str, re.Pattern[str], float], ...] = (
    ("ignore_instructions", re.compile(r"ignore\s+(previous|all|above)\s+instructions?", re.I), 0.9),
    (
        "disregard_rules",
        re.compile(r"disregard\s+(your|all|previous)\s+(instructions?|rules?|programming)", re.I),
        0.9,
    ),
    ("jailbreak_persona", re.compile(r"you\s+are\s+now\s+(dan|jailbroken|unrestricted)", re.I), 0.9),
    (
        "pretend_persona",
        re.compile(r"pretend\s+(you('re)?|to\s+be)\s+(a\s+)?(different|evil|unrestricted)", re.I),
        0.6,
    ),
    ("system_override", re.compile(r"system\s*:\s*(you\s+are|ignore|override)", re.I), 0.75),
    ("system_tag", re.compile(r"\[system\]", re.I), 0.5),
    ("assistant_tag", re.compile(r"\[assistant\]", re.I), 0.5),
    ("do_anything_now", re.compile(r"do\s+anything\s+now", re.I), 0.8),
    ("bypass_filters", re.compile(r"bypass\s+(all\s+)?(restrictions?|filters?|safety)", re.I), 0.75),
)

# Order matters: the longer card/SSN shapes go before phone numbers
PII_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("ssn", re.compile(r"\b\d{3}-\d{2}-\d{4}\b")),
    ("credit_card", re.compile(r"\b(?:\d{4}[-\s]?){3}\d{4}\b")),
    ("phone", re.compile(r"(?<!\w)(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b")),
    ("email", re.compile(r"\b[\w.+-]+@[\w-]+\.[\w.-]+\b")),
)


@dataclass(slots=True)
class SafetyResult:
    sanitized: str
    injection_score: float = 0.0
    matched_patterns: list[str] = field(default_factory=list)
    redacted_kinds: list[str] = field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return self.injection_score > INJECTION_THRESHOLD


def injection_score(text: str) -> tuple[float, list[str]]:
    """Combined confidence that ``text`` is a prompt-injection attempt."""
    matched = [(label, weight) for label, pattern, weight in INJECTION_PATTERNS if pattern.search(text)]
    if not matched:
        return 0.0, []
    score = 1 - math.prod(1 - weight for _, weight in matched)
    return round(score, 4), [label for label, _ in matched]


def redact_pii(text: str) -> tuple[str, list[str]]:
    kinds: list[str] = []
    for kind, pattern in PII_PATTERNS:
        text, count = pattern.subn(REDACTED, text)
        if count:
            kinds.append(kind)
    return text, kinds


def screen_input(text: str) -> SafetyResult:
    score, matched = injection_score(text)
    sanitized, kinds = redact_pii(text)
    return SafetyResult(
        sanitized=sanitized,
        injection_score=score,
        matched_patterns=matched,
        redacted_kinds=kinds,
    )


def enforce_input_safety(text: str) -> str:
    """Return the redacted text, or raise if it looks like an injection attempt."""
    result = screen_input(text)
    if result.redacted_kinds:
        logger.info("🛡️ Redacted PII from input: %s", ", ".join(result.redacted_kinds))
    if result.blocked:
        logger.warning(
            "🛡️ Blocked input (injection score %.2f): %s",
            result.injection_score, ", ".join(result.matched_patterns),
        )
        raise GeminiValidationError(
            "Input rejected: possible prompt injection",
            field="conversation",
            details={"score": result.injection_score, "patterns": result.matched_patterns},
        )
    return result.sanitized
