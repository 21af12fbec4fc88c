"""
持久 shell 执行（Validator + Framer + Session + Registry）。
"""

from __future__ import annotations

from agent_toolbelt.shell.framing import MarkerSet, frame_command
from agent_toolbelt.shell.models import CommandRequest, CommandResult
from agent_toolbelt.shell.registry import ShellSessionRegistry
from agent_toolbelt.shell.session import PersistentShellSession
from agent_toolbelt.shell.validator import DEFAULT_DENYLIST, CommandValidator

__all__ = [
    "DEFAULT_DENYLIST",
    "CommandRequest",
    "CommandResult",
    "CommandValidator",
    "MarkerSet",
    "PersistentShellSession",
    "ShellSessionRegistry",
    "frame_command",
]
