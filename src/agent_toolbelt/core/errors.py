"""
Toolbelt 内部错误分类（异常类型）。

说明：
- 所有异常都带稳定的英文 `code/message/details`，便于 tool 层映射为 `error_kind`；
- 校验类错误（COMMAND_INVALID）不会触达子进程，不重试；
- 会话致命错误（SESSION_IO_ERROR/PROCESS_DIED）会先关闭 session，再抛给调用方；
- core 层不做自动重试，是否换新 session 重试由调用方决定。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


class ToolbeltError(Exception):
    """Toolbelt 错误基类（不建议直接抛出）。"""


@dataclass(frozen=True)
class FrameworkIssue:
    """结构化问题对象（可直接 JSON 输出）。"""

    code: str
    message: str
    details: Dict[str, Any]


class FrameworkError(ToolbeltError):
    """框架层结构化错误（英文 `code/message/details`）。"""

    def __init__(self, *, code: str, message: str, details: Dict[str, Any] | None = None) -> None:
        """创建框架错误。

        参数：
        - `code`：稳定错误码（英文大写下划线）
        - `message`：英文错误消息
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回用于日志的字符串表示。"""

        return f"{self.code}: {self.message}"

    def to_issue(self) -> FrameworkIssue:
        """把异常转换为可序列化问题对象。"""

        return FrameworkIssue(code=self.code, message=self.message, details=dict(self.details))


class UserError(FrameworkError):
    """调用方输入导致的错误（例如路径逃逸 workspace_root）。"""

    def __init__(self, message: str, *, code: str = "USER_ERROR", details: Dict[str, Any] | None = None) -> None:
        """创建 `UserError`。

        参数：
        - `message`：英文错误消息
        - `code`：可选稳定错误码，默认 `USER_ERROR`
        - `details`：结构化上下文信息
        """

        super().__init__(code=code, message=message, details=details)


class CommandValidationError(FrameworkError):
    """命令为空、命中 denylist 或参数非法（无副作用）。"""

    def __init__(self, message: str, *, details: Dict[str, Any] | None = None) -> None:
        """创建 `CommandValidationError`（code 固定为 `COMMAND_INVALID`）。"""

        super().__init__(code="COMMAND_INVALID", message=message, details=details)


class SessionClosedError(FrameworkError):
    """session 已关闭，不再接受命令；调用方需获取新的 session。"""

    def __init__(self, message: str = "Shell session is closed.", *, details: Dict[str, Any] | None = None) -> None:
        """创建 `SessionClosedError`。"""

        super().__init__(code="SESSION_CLOSED", message=message, details=details)


class CommandTimeoutError(FrameworkError):
    """命令在 deadline 之前未完成（marker 未全部出现）。"""

    def __init__(self, message: str, *, details: Dict[str, Any] | None = None) -> None:
        """创建 `CommandTimeoutError`。"""

        super().__init__(code="COMMAND_TIMEOUT", message=message, details=details)


class SessionIOError(FrameworkError):
    """管道读写失败；对 session 致命（session 会被关闭）。"""

    def __init__(self, message: str, *, details: Dict[str, Any] | None = None) -> None:
        """创建 `SessionIOError`。"""

        super().__init__(code="SESSION_IO_ERROR", message=message, details=details)


class ProcessDiedError(FrameworkError):
    """shell 子进程意外退出；对 session 致命。"""

    def __init__(self, message: str = "Shell process has died.", *, details: Dict[str, Any] | None = None) -> None:
        """创建 `ProcessDiedError`。"""

        super().__init__(code="PROCESS_DIED", message=message, details=details)


class WorkingDirectoryEscapeError(FrameworkError):
    """session 离开了原始目录且无法复位（仅在开启目录约束时出现）。"""

    def __init__(self, message: str, *, details: Dict[str, Any] | None = None) -> None:
        """创建 `WorkingDirectoryEscapeError`。"""

        super().__init__(code="WORKING_DIR_ESCAPE", message=message, details=details)
