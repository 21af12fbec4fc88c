"""
CLI 模块。

说明：
- 对外入口为 `agent-toolbelt ...`（由 `pyproject.toml` 的 `[project.scripts]` 注册）。
- CLI 仅做“配置加载 + 调用 run_command tool + 输出”，不复制核心逻辑。
"""
