"""
Function-call registry.

Owns the mapping from function name to ``RegisteredFunction``. It is built
once by the composition root, then frozen; after that it is read-only and
safe to share across requests.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Iterable
from typing import Any

from google.genai import types as genai_types

from gemini_chat_core.config import LOGGER_NAME
from gemini_chat_core.functions.validation import validate_arguments
from gemini_chat_core.types import (
    FunctionDeclaration,
    FunctionResult,
    RegisteredFunction,
    ValidationResult,
)

logger = logging.getLogger(LOGGER_NAME)

FUNCTION_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


class RegistryFrozenError(RuntimeError):
    """Raised when registering into a registry that has been frozen."""


class FunctionRegistry:
    """Name -> RegisteredFunction mapping with validation and timed execution."""

    def __init__(self) -> None:
        self._functions: dict[str, RegisteredFunction] = {}
        self._frozen = False

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(self, fn: RegisteredFunction) -> None:
        if self._frozen:
            raise RegistryFrozenError(f"Cannot register '{fn.name}': registry is frozen")
        if not FUNCTION_NAME_RE.match(fn.name):
            raise ValueError(
                f"Invalid function name '{fn.name}': must start with a letter or "
                "underscore and contain only letters, digits and underscores"
            )
        if fn.name in self._functions:
            raise ValueError(f"Function '{fn.name}' is already registered")
        if fn.max_execution_time_ms <= 0:
            raise ValueError(f"Function '{fn.name}' needs a positive max_execution_time_ms")

        self._functions[fn.name] = fn
        logger.debug("🧰 Registered function %s", fn.name)

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def get(self, name: str) -> RegisteredFunction | None:
        return self._functions.get(name)

    def has(self, name: str) -> bool:
        return name in self._functions

    def names(self) -> list[str]:
        return list(self._functions)

    def list_declarations(self) -> list[FunctionDeclaration]:
        return [fn.declaration for fn in self._functions.values()]

    def declarations(self, names: Iterable[str] | None = None) -> list[genai_types.FunctionDeclaration]:
        """Declarations in the SDK's shape, optionally limited to ``names``."""
        selected = self._functions.values() if names is None else (
            self._functions[n] for n in names if n in self._functions
        )
        return [
            genai_types.FunctionDeclaration(
                name=fn.declaration.name,
                description=fn.declaration.description,
                parameters_json_schema=fn.declaration.parameters or None,
            )
            for fn in selected
        ]

    def __len__(self) -> int:
        return len(self._functions)

    def __contains__(self, name: object) -> bool:
        return name in self._functions

    # -------------------------------------------------------------------------
    # Validation & Execution
    # -------------------------------------------------------------------------

    def validate(self, name: str, args: Any) -> ValidationResult:
        fn = self._functions.get(name)
        if fn is None:
            return ValidationResult(valid=False, errors=[f"Unknown function: {name}"])
        return validate_arguments(fn.declaration.parameters, args)

    async def execute(self, name: str, args: dict[str, Any] | None, call_id: str | None = None) -> FunctionResult:
        """
        Run a registered function under its time ceiling.

        Never raises for handler failures: unknown names, invalid arguments,
        timeouts and handler exceptions all come back as ``{"error": ...}``
        so the model can react to them.
        """
        fn = self._functions.get(name)
        if fn is None:
            return FunctionResult(name=name, response={"error": f"Unknown function: {name}"}, id=call_id)

        args = args or {}
        if fn.requires_validation:
            validation = validate_arguments(fn.declaration.parameters, args)
            if not validation.valid:
                logger.warning("   ⚠️ Invalid arguments for %s: %s", name, validation.error)
                return FunctionResult(
                    name=name,
                    response={"error": f"Invalid arguments: {validation.error}"},
                    id=call_id,
                )

        timeout_s = fn.max_execution_time_ms / 1000
        try:
            result = await asyncio.wait_for(fn.handler(args), timeout=timeout_s)
        except asyncio.TimeoutError:
            logger.warning("   ⏱️ Function %s timed out after %dms", name, fn.max_execution_time_ms)
            return FunctionResult(
                name=name,
                response={"error": f"Function {name} timed out after {fn.max_execution_time_ms}ms"},
                id=call_id,
            )
        except Exception as e:
            logger.warning("   ❌ Function %s failed: %s", name, e)
            return FunctionResult(name=name, response={"error": str(e) or type(e).__name__}, id=call_id)

        return FunctionResult(name=name, response={"result": result}, id=call_id)
