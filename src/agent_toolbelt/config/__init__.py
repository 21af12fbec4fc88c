"""配置（YAML overlay + pydantic 校验）。"""

from __future__ import annotations

from agent_toolbelt.config.loader import (
    RunCommandToolConfig,
    ShellConfig,
    ToolbeltConfig,
    ToolsConfig,
    load_config,
    load_config_dicts,
)

__all__ = [
    "RunCommandToolConfig",
    "ShellConfig",
    "ToolbeltConfig",
    "ToolsConfig",
    "load_config",
    "load_config_dicts",
]
