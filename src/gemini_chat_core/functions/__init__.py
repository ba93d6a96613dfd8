"""Function calling: registry, argument validation, execution and built-ins."""

from gemini_chat_core.functions.builtins import register_builtin_functions
from gemini_chat_core.functions.executor import (
    build_function_response_parts,
    execute_function_calls,
    extract_function_calls,
)
from gemini_chat_core.functions.registry import FunctionRegistry, RegistryFrozenError
from gemini_chat_core.functions.validation import validate_arguments

__all__ = [
    "FunctionRegistry",
    "RegistryFrozenError",
    "build_function_response_parts",
    "execute_function_calls",
    "extract_function_calls",
    "register_builtin_functions",
    "validate_arguments",
]
