"""
Tool 执行上下文（由调用方注入）。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from agent_toolbelt.config.loader import RunCommandToolConfig
from agent_toolbelt.core.errors import UserError
from agent_toolbelt.shell.registry import ShellSessionRegistry


@dataclass
class ToolExecutionContext:
    """
    Tool 执行上下文。

    字段：
    - workspace_root：相对路径解析基准目录（working_dir 覆盖不得逃逸该目录）
    - shell_sessions：持久 shell session 注册表（run_command 需要）
    - session_key：tool 未显式给出 session_key 时使用的 key（None → registry 默认 key）
    - run_command：run_command 的超时/输出策略
    - cancel_checker：可选；返回 true 时取消正在执行的命令
    """

    workspace_root: Path
    shell_sessions: ShellSessionRegistry
    session_key: Optional[str] = None
    run_command: RunCommandToolConfig = field(default_factory=RunCommandToolConfig)
    cancel_checker: Optional[Callable[[], bool]] = None

    def resolve_path(self, path: str) -> Path:
        """
        将用户提供的 path 解析为绝对路径，并限制在 workspace_root 下。

        参数：
        - path：相对或绝对路径

        返回：
        - 解析后的绝对路径（已 resolve）

        异常：
        - `UserError`：当路径逃逸 workspace_root 时抛出
        """

        root = Path(self.workspace_root).resolve()
        p = Path(path)
        if not p.is_absolute():
            p = root / p
        p = p.resolve()
        if not p.is_relative_to(root):
            raise UserError(f"Path is outside workspace_root: {p}", code="PATH_ESCAPE", details={"path": str(p)})
        return p
