"""Tool 层（协议 + 执行上下文 + 内置工具）。"""

from __future__ import annotations

from agent_toolbelt.tools.context import ToolExecutionContext
from agent_toolbelt.tools.protocol import ToolCall, ToolResult, ToolResultPayload, ToolSpec

__all__ = [
    "ToolCall",
    "ToolExecutionContext",
    "ToolResult",
    "ToolResultPayload",
    "ToolSpec",
]
