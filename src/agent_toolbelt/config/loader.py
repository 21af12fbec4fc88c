"""
配置加载器（YAML）。

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）。
- 使用 pydantic 做 schema 校验；未知字段允许保留（避免默认配置新增字段导致加载失败）。
- 内置默认值见 `agent_toolbelt/assets/default.yaml`（由 `config.defaults` 读取）。
"""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, List, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型：overlay 直接覆盖
    - list：整体覆盖（不做去重/拼接）
    """

    for key, overlay_value in overlay.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(overlay_value, Mapping)
        ):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class ShellConfig(BaseModel):
    """
    持久 shell session 配置。

    说明：
    - `denylist` 为 None 时使用 `shell.validator.DEFAULT_DENYLIST`；给出列表则整体替换；
    - `working_dir` 为 None 时使用进程当前目录作为 session 的原始目录；
    - `confine_to_original_dir` 默认关闭，开启后命令离开原始目录会被复位。
    """

    model_config = ConfigDict(extra="allow")

    path: str = Field(default="/bin/bash")
    args: List[str] = Field(default_factory=lambda: ["--norc", "--noprofile", "-s"])
    env: Dict[str, str] = Field(default_factory=dict)
    init_commands: List[str] = Field(
        default_factory=lambda: [
            "export LC_ALL=C",
            "export LANG=C",
            "unset HISTFILE",
            "set +o history",
        ]
    )
    working_dir: Optional[str] = None
    default_session_key: str = Field(default="default", min_length=1)
    default_timeout_ms: int = Field(default=30_000, ge=1)
    terminate_grace_ms: int = Field(default=500, ge=0)
    max_output_bytes: int = Field(default=1024 * 1024, ge=0)
    confine_to_original_dir: bool = False
    denylist: Optional[List[str]] = None


class RunCommandToolConfig(BaseModel):
    """run_command 工具的调用方策略（默认超时、上限、输出截断）。"""

    model_config = ConfigDict(extra="allow")

    default_timeout_ms: int = Field(default=30_000, ge=1)
    max_timeout_ms: int = Field(default=300_000, ge=1)
    max_output_chars: int = Field(default=30_000, ge=0)


class ToolsConfig(BaseModel):
    """Tools 配置。"""

    model_config = ConfigDict(extra="allow")

    run_command: RunCommandToolConfig = Field(default_factory=RunCommandToolConfig)


class ToolbeltConfig(BaseModel):
    """配置根对象（允许扩展字段）。"""

    model_config = ConfigDict(extra="allow")

    config_version: int = Field(default=1, ge=1)
    shell: ShellConfig = Field(default_factory=ShellConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise FileNotFoundError(f"配置文件不存在：{path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"配置文件根节点必须为 mapping(dict)：{path}")
    return data


def load_config_dicts(config_dicts: list[Dict[str, Any]]) -> ToolbeltConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `ToolbeltConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    """

    merged: Dict[str, Any] = {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    return ToolbeltConfig.model_validate(merged)


def load_config(config_paths: list[Path], *, include_defaults: bool = True) -> ToolbeltConfig:
    """
    加载并合并多个配置文件，返回校验后的 `ToolbeltConfig`。

    参数：
    - config_paths：YAML 路径列表；按顺序合并（后者覆盖前者）
    - include_defaults：是否以内置 default.yaml 作为最底层
    """

    overlays: list[Dict[str, Any]] = []
    if include_defaults:
        from agent_toolbelt.config.defaults import load_default_config_dict

        overlays.append(load_default_config_dict())
    for path in config_paths:
        overlays.append(_load_yaml_file(Path(path)))
    return load_config_dicts(overlays)
