"""
内置工具（builtin tools）。

本包提供：
- `run_command`：在持久 shell session 中执行命令
"""

from __future__ import annotations

from typing import Callable, Dict, Tuple

from agent_toolbelt.tools.builtin.run_command import RUN_COMMAND_SPEC, run_command
from agent_toolbelt.tools.context import ToolExecutionContext
from agent_toolbelt.tools.protocol import ToolCall, ToolResult, ToolSpec

ToolHandler = Callable[[ToolCall, ToolExecutionContext], ToolResult]

BUILTIN_TOOLS: Dict[str, Tuple[ToolSpec, ToolHandler]] = {
    RUN_COMMAND_SPEC.name: (RUN_COMMAND_SPEC, run_command),
}


def dispatch_tool_call(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
    """
    按工具名派发到内置 handler。

    说明：
    - 未知工具名返回 `error_kind=not_found`，不抛异常。
    """

    entry = BUILTIN_TOOLS.get(call.name)
    if entry is None:
        return ToolResult.error_payload(error_kind="not_found", stderr=f"Unknown tool: {call.name}")
    _spec, handler = entry
    return handler(call, ctx)


__all__ = ["BUILTIN_TOOLS", "RUN_COMMAND_SPEC", "ToolHandler", "dispatch_tool_call", "run_command"]
