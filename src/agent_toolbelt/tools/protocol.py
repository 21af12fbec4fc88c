"""
Tool 协议（ToolSpec / ToolCall / ToolResult）。

本模块只定义 tool handler 需要的最小协议：
- ToolSpec：工具描述（function calling 兼容 JSON schema）
- ToolCall：执行输入（call_id/name/args）
- ToolResultPayload：执行输出的统一结构（ToolResult 的 content/details 使用它序列化）
- ToolResult：执行输出（ok/content/error_kind/message/details）
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class ToolSpec(BaseModel):
    """
    Tool 描述信息（function calling 兼容）。

    字段：
    - name：工具名（全局唯一，稳定）
    - description：工具说明
    - parameters：JSON Schema（必须为 object schema）
    """

    model_config = ConfigDict(extra="forbid")

    name: str
    description: str
    parameters: Dict[str, Any] = Field(default_factory=dict)

    def to_openai_tool(self) -> Dict[str, Any]:
        """映射为 chat.completions `tools[]` 条目形状。"""

        return {
            "type": "function",
            "function": {"name": self.name, "description": self.description, "parameters": self.parameters},
        }


class ToolCall(BaseModel):
    """
    Tool 调用（内部表示）。

    字段：
    - call_id：本次调用的唯一 id
    - name：工具名
    - args：解析后的参数 dict
    """

    model_config = ConfigDict(extra="forbid")

    call_id: str
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class ToolResultPayload(BaseModel):
    """
    Tool 执行结果 payload（统一输出封装）。

    说明：
    - 作为 JSON 字符串写入 `ToolResult.content`（回注模型，稳定可解析）；
    - 同时作为 object 写入 `ToolResult.details`（便于调用方检索）。
    """

    model_config = ConfigDict(extra="forbid")

    ok: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    duration_ms: int = Field(default=0, ge=0)
    truncated: bool = False
    data: Optional[Dict[str, Any]] = None
    error_kind: Optional[str] = None
    retryable: bool = False


class ToolResult(BaseModel):
    """
    Tool 执行结果（统一 envelope）。

    字段：
    - ok：是否成功
    - content：回注给 LLM 的内容（JSON 字符串）
    - error_kind：错误分类（validation/permission/timeout/cancelled/exit_code/session_closed/unknown）
    - message：面向调用方的一句话说明
    - details：结构化结果（与 content 对齐）
    """

    model_config = ConfigDict(extra="forbid")

    ok: bool
    content: str
    error_kind: Optional[str] = None
    message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    @classmethod
    def from_payload(cls, payload: ToolResultPayload, *, message: Optional[str] = None) -> "ToolResult":
        """
        从 ToolResultPayload 构造 ToolResult。

        参数：
        - payload：统一结构化结果（会被序列化为 JSON 字符串写入 content）
        - message：可选的一句话说明
        """

        obj = payload.model_dump(exclude_none=True)
        return cls(
            ok=payload.ok,
            content=json.dumps(obj, ensure_ascii=False),
            error_kind=payload.error_kind,
            message=message,
            details=obj,
        )

    @classmethod
    def error_payload(
        cls,
        *,
        error_kind: str,
        stderr: str,
        data: Optional[Dict[str, Any]] = None,
        duration_ms: int = 0,
        retryable: bool = False,
    ) -> "ToolResult":
        """便捷构造：失败结果（错误信息放入 stderr）。"""

        return cls.from_payload(
            ToolResultPayload(
                ok=False,
                stdout="",
                stderr=stderr,
                exit_code=None,
                duration_ms=duration_ms,
                truncated=False,
                data=data,
                error_kind=error_kind,
                retryable=retryable,
            ),
            message=stderr,
        )
