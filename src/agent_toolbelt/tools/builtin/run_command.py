"""
内置工具：run_command。

在持久 shell session 中执行一条命令：
- cwd / 环境变量 / shell 状态在同一 session_key 的多次调用之间保留；
- 输出为 stdout 与 stderr 的合并文本，超过 `max_output_chars` 时保留头部并追加截断提示；
- 超时/取消不会抛异常，而是以 error_kind 返回（session 已被回收，下次调用可继续使用）。
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from agent_toolbelt.core.errors import (
    CommandValidationError,
    FrameworkError,
    SessionClosedError,
    UserError,
    WorkingDirectoryEscapeError,
)
from agent_toolbelt.tools.context import ToolExecutionContext
from agent_toolbelt.tools.protocol import ToolCall, ToolResult, ToolResultPayload, ToolSpec

logger = logging.getLogger(__name__)


class _RunCommandArgs(BaseModel):
    """run_command 输入参数。"""

    model_config = ConfigDict(extra="forbid")

    command: str = Field(description="要执行的 shell 命令")
    working_dir: Optional[str] = Field(default=None, description="执行前切换到的目录（相对 workspace_root）")
    timeout_ms: Optional[int] = Field(default=None, ge=1, description="超时毫秒数（可选）")
    session_key: Optional[str] = Field(default=None, description="持久 session 的 key（可选）")


RUN_COMMAND_SPEC = ToolSpec(
    name="run_command",
    description=(
        "Run a shell command in a persistent bash session. The working directory, environment variables "
        "and other shell state carry over between calls that use the same session_key. "
        "Returns combined stdout/stderr, exit_code and the working directory after the command."
    ),
    parameters={
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "Shell command to run"},
            "working_dir": {
                "type": "string",
                "description": "Directory to change into before running (relative to the workspace root; persists)",
            },
            "timeout_ms": {"type": "integer", "minimum": 1, "description": "Timeout in milliseconds (optional)"},
            "session_key": {"type": "string", "description": "Persistent session key (optional)"},
        },
        "required": ["command"],
        "additionalProperties": False,
    },
)


def _truncate_head(text: str, max_chars: int) -> Tuple[str, bool]:
    """保留头部 max_chars 个字符；超出部分以一行提示代替。"""

    if max_chars <= 0 or len(text) <= max_chars:
        return text, False
    omitted = len(text) - max_chars
    return f"{text[:max_chars]}\n... [output truncated: {omitted} characters omitted]", True


def _error_kind_for(err: FrameworkError) -> str:
    """把 core 层异常映射为 tool 层 error_kind。"""

    if isinstance(err, CommandValidationError):
        return "validation"
    if isinstance(err, (UserError, WorkingDirectoryEscapeError)):
        return "permission"
    if isinstance(err, SessionClosedError):
        return "session_closed"
    return "unknown"


def run_command(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
    """
    执行 run_command。

    参数：
    - call：工具调用（args 中必须包含 command；可选 working_dir/timeout_ms/session_key）
    - ctx：执行上下文（workspace_root/shell_sessions/run_command 策略等）

    返回：
    - ToolResult.content：JSON 字符串（stdout 为合并输出；包含 exit_code/duration_ms/truncated/error_kind）
    - ToolResult.details：与 content 对齐的 object；`data` 含 command/working_dir/timed_out/cancelled/session_key
    """

    try:
        args = _RunCommandArgs.model_validate(call.args)
    except ValidationError as e:
        return ToolResult.error_payload(error_kind="validation", stderr=str(e))

    policy = ctx.run_command
    timeout_ms = args.timeout_ms if args.timeout_ms is not None else policy.default_timeout_ms
    timeout_ms = min(timeout_ms, policy.max_timeout_ms)

    working_dir: Optional[str] = None
    if args.working_dir is not None:
        try:
            resolved = ctx.resolve_path(args.working_dir)
        except UserError as e:
            return ToolResult.error_payload(error_kind="permission", stderr=e.message)
        if not resolved.is_dir():
            return ToolResult.error_payload(error_kind="validation", stderr=f"working_dir is not a directory: {resolved}")
        working_dir = str(resolved)

    session_key = ctx.shell_sessions.normalize_key(args.session_key or ctx.session_key)
    try:
        result = ctx.shell_sessions.execute(
            session_key,
            args.command,
            timeout_ms=timeout_ms,
            working_dir=working_dir,
            cancel_checker=ctx.cancel_checker,
        )
    except FrameworkError as e:
        error_kind = _error_kind_for(e)
        if error_kind == "unknown":
            logger.warning("run_command failed: session_key=%s error=%s", session_key, e)
        return ToolResult.error_payload(
            error_kind=error_kind,
            stderr=e.message,
            data={"command": args.command, "session_key": session_key, "code": e.code},
        )

    output, clipped = _truncate_head(result.output, policy.max_output_chars)
    error_kind: Optional[str] = None
    if result.timed_out:
        error_kind = "timeout"
    elif result.cancelled:
        error_kind = "cancelled"
    elif result.exit_code != 0:
        error_kind = "exit_code"

    data: Dict[str, Any] = {
        "command": args.command,
        "working_dir": result.working_dir,
        "timed_out": result.timed_out,
        "cancelled": result.cancelled,
        "session_key": session_key,
    }
    payload = ToolResultPayload(
        ok=error_kind is None,
        stdout=output,
        stderr="",
        exit_code=result.exit_code,
        duration_ms=result.duration_ms,
        truncated=clipped or result.truncated,
        data=data,
        error_kind=error_kind,
        retryable=error_kind in ("timeout", "cancelled"),
    )
    message = None
    if error_kind == "timeout":
        message = f"Command timed out after {timeout_ms} ms"
    elif error_kind == "cancelled":
        message = "Command was cancelled"
    elif error_kind == "exit_code":
        message = f"Command exited with code {result.exit_code}"
    return ToolResult.from_payload(payload, message=message)
