"""
Built-in functions: a calculator and a date/time utility.

Registered exactly once by the composition root via
``register_builtin_functions``.
"""

from __future__ import annotations

import calendar
import math
from datetime import UTC, datetime, timedelta, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from gemini_chat_core.config import BUILTIN_FUNCTION_TIMEOUT_MS
from gemini_chat_core.functions.registry import FunctionRegistry
from gemini_chat_core.types import FunctionDeclaration, RegisteredFunction


# =============================================================================
# Calculator
# =============================================================================

CALCULATOR_OPERATIONS = (
    "add",
    "subtract",
    "multiply",
    "divide",
    "percentage",
    "power",
    "sqrt",
    "abs",
    "round",
    "floor",
    "ceil",
)


def _require(operands: list[float], count: int, message: str) -> None:
    if len(operands) < count:
        raise ValueError(message)


async def calculate(args: dict[str, Any]) -> float | int:
    operation = args["operation"]
    operands = [n for n in args.get("operands") or []]
    if not operands:
        raise ValueError("No operands provided")

    first = operands[0]
    if operation == "add":
        return sum(operands)
    if operation == "subtract":
        _require(operands, 2, "Subtract requires at least 2 operands")
        return first - sum(operands[1:])
    if operation == "multiply":
        return math.prod(operands)
    if operation == "divide":
        _require(operands, 2, "Divide requires at least 2 operands")
        if any(n == 0 for n in operands[1:]):
            raise ValueError("Division by zero")
        result = first
        for n in operands[1:]:
            result /= n
        return result
    if operation == "percentage":
        _require(operands, 2, "Percentage requires [value, percentage]")
        return first * operands[1] / 100
    if operation == "power":
        _require(operands, 2, "Power requires [base, exponent]")
        return math.pow(first, operands[1])
    if operation == "sqrt":
        if first < 0:
            raise ValueError("Cannot compute square root of negative number")
        return math.sqrt(first)
    if operation == "abs":
        return abs(first)
    if operation == "round":
        # Half away from zero, not banker's rounding
        return int(math.floor(abs(first) + 0.5)) * (1 if first >= 0 else -1)
    if operation == "floor":
        return math.floor(first)
    if operation == "ceil":
        return math.ceil(first)
    raise ValueError(f"Unknown operation: {operation}")


CALCULATOR = RegisteredFunction(
    declaration=FunctionDeclaration(
        name="calculate",
        description=(
            "Performs mathematical calculations. Use for arithmetic, percentages, "
            "powers, and basic math operations."
        ),
        parameters={
            "type": "object",
            "properties": {
                "operation": {
                    "type": "string",
                    "enum": list(CALCULATOR_OPERATIONS),
                    "description": "The mathematical operation to perform",
                },
                "operands": {
                    "type": "array",
                    "items": {"type": "number", "description": "Numeric value"},
                    "description": (
                        "Numbers to operate on. For binary ops like add: [a, b]. "
                        "For percentage: [value, percentage]. For unary ops like sqrt: [value]."
                    ),
                },
            },
            "required": ["operation", "operands"],
        },
    ),
    handler=calculate,
    requires_validation=True,
    max_execution_time_ms=BUILTIN_FUNCTION_TIMEOUT_MS,
)


# =============================================================================
# Date/Time
# =============================================================================

DATETIME_ACTIONS = ("current", "format", "difference", "add")
DATETIME_UNITS = ("days", "weeks", "months", "years", "hours", "minutes")


def _zone(name: str | None) -> tzinfo:
    if not name or name.upper() == "UTC":
        return UTC
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def _parse(value: str | None, field: str) -> datetime:
    if not value:
        raise ValueError(f"{field} is required for this action")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise ValueError("Invalid date format") from e
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _format(moment: datetime, fmt: str, zone: tzinfo) -> str:
    local = moment.astimezone(zone)
    if fmt == "iso":
        return local.isoformat()
    if fmt == "date":
        return local.strftime("%A, %B %d, %Y")
    if fmt == "time":
        return local.strftime("%I:%M:%S %p %Z")
    return local.strftime("%A, %B %d, %Y at %I:%M:%S %p %Z")


def _add_months(moment: datetime, months: int) -> datetime:
    index = moment.month - 1 + months
    year = moment.year + index // 12
    month = index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _shift(moment: datetime, amount: int, unit: str) -> datetime:
    if unit == "minutes":
        return moment + timedelta(minutes=amount)
    if unit == "hours":
        return moment + timedelta(hours=amount)
    if unit == "days":
        return moment + timedelta(days=amount)
    if unit == "weeks":
        return moment + timedelta(weeks=amount)
    if unit == "months":
        return _add_months(moment, amount)
    if unit == "years":
        return _add_months(moment, amount * 12)
    raise ValueError(f"Unknown unit: {unit}")


async def get_datetime(args: dict[str, Any]) -> dict[str, Any]:
    action = args["action"]
    timezone = args.get("timezone") or "UTC"
    fmt = args.get("format") or "datetime"
    zone = _zone(timezone)

    if action == "current":
        now = datetime.now(UTC)
        return {
            "formatted": _format(now, fmt, zone),
            "iso": now.isoformat(),
            "timezone": timezone,
            "timestamp": int(now.timestamp() * 1000),
        }

    if action == "format":
        parsed = _parse(args.get("date"), "date")
        return {"formatted": _format(parsed, fmt, zone), "iso": parsed.isoformat()}

    if action == "difference":
        start = _parse(args.get("date"), "date")
        end = _parse(args.get("date2"), "date2")
        diff_ms = int((end - start).total_seconds() * 1000)
        return {
            "milliseconds": diff_ms,
            "seconds": math.floor(diff_ms / 1000),
            "minutes": math.floor(diff_ms / 60_000),
            "hours": math.floor(diff_ms / 3_600_000),
            "days": math.floor(diff_ms / 86_400_000),
            "weeks": math.floor(diff_ms / 604_800_000),
        }

    if action == "add":
        amount = args.get("amount")
        unit = args.get("unit")
        if amount is None or not unit:
            raise ValueError("date, amount, and unit are required for add")
        shifted = _shift(_parse(args.get("date"), "date"), int(amount), unit)
        return {
            "formatted": _format(shifted, fmt, zone),
            "iso": shifted.isoformat(),
            "timestamp": int(shifted.timestamp() * 1000),
        }

    raise ValueError(f"Unknown action: {action}")


DATETIME = RegisteredFunction(
    declaration=FunctionDeclaration(
        name="get_datetime",
        description=(
            "Gets current date/time or performs date calculations. "
            "Use for any time-sensitive queries."
        ),
        parameters={
            "type": "object",
            "properties": {
                "action": {
                    "type": "string",
                    "enum": list(DATETIME_ACTIONS),
                    "description": (
                        "Action: current (get now), format (parse/format date), "
                        "difference (between dates), add (add time to date)"
                    ),
                },
                "timezone": {
                    "type": "string",
                    "description": "IANA timezone (e.g., 'America/New_York'). Defaults to UTC.",
                },
                "date": {
                    "type": "string",
                    "description": "ISO date string for format/difference/add (e.g., '2026-01-15T10:30:00Z')",
                },
                "date2": {"type": "string", "description": "Second ISO date for difference calculation"},
                "amount": {"type": "integer", "description": "Amount to add (for add action)"},
                "unit": {
                    "type": "string",
                    "enum": list(DATETIME_UNITS),
                    "description": "Unit for add action",
                },
                "format": {
                    "type": "string",
                    "enum": ["iso", "date", "time", "datetime"],
                    "description": "Output format. Default: 'datetime'",
                },
            },
            "required": ["action"],
        },
    ),
    handler=get_datetime,
    requires_validation=True,
    max_execution_time_ms=BUILTIN_FUNCTION_TIMEOUT_MS,
)

BUILTIN_FUNCTIONS = (CALCULATOR, DATETIME)


def register_builtin_functions(registry: FunctionRegistry) -> None:
    """Register the built-ins. Call once, before ``registry.freeze()``."""
    for fn in BUILTIN_FUNCTIONS:
        registry.register(fn)
