from sandbox_orchestrator.routing.classifier import (
    KIND_CODE_BLOCK,
    KIND_PLAIN_TEXT,
    KIND_SHELL_COMMAND,
    KIND_TOOL_CALL,
    Classification,
    classify,
    code_block_command,
)
from sandbox_orchestrator.routing.tool_calls import ToolCall, parse_tool_calls

__all__ = [
    "Classification",
    "KIND_CODE_BLOCK",
    "KIND_PLAIN_TEXT",
    "KIND_SHELL_COMMAND",
    "KIND_TOOL_CALL",
    "ToolCall",
    "classify",
    "code_block_command",
    "parse_tool_calls",
]
