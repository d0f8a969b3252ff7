"""Language-model invocation and the functions the model may call."""

from .client import AIInvocationAdapter, AIInvocationError, AIResult, build_ai_adapter
from .functions import (
    ActionExecutor,
    FileToSend,
    FunctionContext,
    FunctionResult,
    available_functions,
    parse_action,
    tool_specs,
)

__all__ = [
    "AIInvocationAdapter",
    "AIInvocationError",
    "AIResult",
    "ActionExecutor",
    "FileToSend",
    "FunctionContext",
    "FunctionResult",
    "available_functions",
    "build_ai_adapter",
    "parse_action",
    "tool_specs",
]
