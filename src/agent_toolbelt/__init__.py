"""
agent-toolbelt：为 agent 提供持久 shell 会话的命令执行核心。

公开入口：
- `ShellSessionRegistry`：key → 持久 shell session；`execute(key, command, timeout_ms=...)`
- `PersistentShellSession`：单个 bash 子进程，串行执行、marker 切分输出、跟踪 cwd
- `CommandValidator`：执行前的空命令/denylist 校验
- `load_config`：YAML 配置加载
"""

from __future__ import annotations

from agent_toolbelt.config.loader import ToolbeltConfig, load_config
from agent_toolbelt.shell import (
    CommandRequest,
    CommandResult,
    CommandValidator,
    PersistentShellSession,
    ShellSessionRegistry,
)

__version__ = "0.3.0"

__all__ = [
    "CommandRequest",
    "CommandResult",
    "CommandValidator",
    "PersistentShellSession",
    "ShellSessionRegistry",
    "ToolbeltConfig",
    "__version__",
    "load_config",
]
