"""
Shell 执行的请求/结果模型（pydantic）。
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from agent_toolbelt.core.errors import CommandTimeoutError

# 与 coreutils `timeout(1)` 一致的超时退出码
TIMEOUT_EXIT_CODE = 124
# 被取消时按 SIGINT 约定返回 128+2
CANCELLED_EXIT_CODE = 130


class CommandRequest(BaseModel):
    """
    一次命令执行请求。

    字段：
    - command：命令文本（trim 后不能为空；由 `CommandValidator` 在执行前校验）
    - timeout_ms：超时毫秒数（>= 1）
    - working_dir：可选；执行前先切换到该目录（由调用方负责路径安全校验）
    """

    model_config = ConfigDict(extra="forbid")

    command: str
    timeout_ms: int = Field(default=30_000, ge=1)
    working_dir: Optional[str] = None


class CommandResult(BaseModel):
    """
    命令执行结果（结构化）。

    字段说明：
    - stdout/stderr：按 marker 切分出的输出（可能仅保留尾部）
    - exit_code：命令真实的 `$?`；超时为 124，取消为 130
    - working_dir：命令结束后 shell 自己报告的 cwd
    - duration_ms：墙钟耗时
    - timed_out/cancelled：是否因超时/取消而中止（此时 session 会被回收重建）
    - truncated：stdout/stderr 是否因上限被丢弃了头部
    """

    model_config = ConfigDict(extra="forbid")

    command: str = ""
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    working_dir: str = ""
    duration_ms: int = Field(default=0, ge=0)
    timed_out: bool = False
    cancelled: bool = False
    truncated: bool = False

    @property
    def ok(self) -> bool:
        """exit_code==0 且未超时/取消。"""

        return self.exit_code == 0 and not self.timed_out and not self.cancelled

    @property
    def output(self) -> str:
        """stdout 与 stderr 的合并文本（stdout 在前，中间补一个换行）。"""

        if self.stdout and self.stderr:
            sep = "" if self.stdout.endswith("\n") else "\n"
            return f"{self.stdout}{sep}{self.stderr}"
        return self.stdout or self.stderr

    def raise_for_timeout(self) -> "CommandResult":
        """超时时抛出 `CommandTimeoutError`，否则原样返回自身（便于链式调用）。"""

        if self.timed_out:
            raise CommandTimeoutError(
                "Command timed out.",
                details={"command": self.command, "duration_ms": self.duration_ms},
            )
        return self
