"""
agent-toolbelt CLI（exec / repl）。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）
- exec：stdout 每条命令输出一行机器可读 JSON
- repl：从 stdin 逐行读取命令，stdout 输出合并后的命令输出，错误信息写 stderr
- 所有命令都经过 `run_command` tool，在同一个持久 shell session 中执行
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml
from pydantic import ValidationError

from agent_toolbelt.config.loader import ToolbeltConfig, load_config
from agent_toolbelt.core.errors import FrameworkIssue
from agent_toolbelt.core.utf8 import ensure_utf8_stdio
from agent_toolbelt.shell.registry import ShellSessionRegistry
from agent_toolbelt.tools.builtin import dispatch_tool_call
from agent_toolbelt.tools.context import ToolExecutionContext
from agent_toolbelt.tools.protocol import ToolCall, ToolResult

EXIT_OK = 0
EXIT_USAGE = 2
EXIT_VALIDATION = 20
EXIT_NONZERO = 21
EXIT_TIMEOUT = 22
EXIT_SESSION = 23


def _dump_json_to_stdout(obj: Dict[str, Any], *, pretty: bool) -> None:
    """
    将 dict 输出为 JSON 到 stdout（末尾包含换行）。

    参数：
    - obj：待输出对象（必须可 JSON dumps）
    - pretty：是否启用 pretty-print（indent=2）
    """

    if pretty:
        text = json.dumps(obj, ensure_ascii=False, indent=2)
    else:
        text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    print(text, flush=True)


def _issue_to_jsonable(issue: FrameworkIssue) -> Dict[str, Any]:
    """FrameworkIssue → JSON object。"""

    return {"code": issue.code, "message": issue.message, "details": dict(issue.details)}


def _load_effective_config(raw_paths: List[str]) -> Tuple[Optional[ToolbeltConfig], Optional[FrameworkIssue]]:
    """
    加载默认配置 + overlays。

    返回：
    - (config, issue)：失败时 config 为 None，issue 为结构化错误。
    """

    paths = [Path(p).expanduser() for p in raw_paths]
    try:
        return load_config(paths), None
    except FileNotFoundError as exc:
        return None, FrameworkIssue(code="CLI_CONFIG_NOT_FOUND", message="Config file not found.", details={"reason": str(exc)})
    except ValidationError as exc:
        return None, FrameworkIssue(code="CLI_CONFIG_INVALID", message="Config is invalid.", details={"reason": str(exc)})
    except (ValueError, yaml.YAMLError) as exc:
        return None, FrameworkIssue(code="CLI_CONFIG_LOAD_FAILED", message="Config load failed.", details={"reason": str(exc)})


def _resolve_workspace_root(raw: Optional[str]) -> Tuple[Optional[Path], Optional[FrameworkIssue]]:
    """解析 `--cwd`（默认当前目录）为绝对目录路径。"""

    ws = Path(raw or ".").expanduser().resolve()
    if not ws.is_dir():
        return None, FrameworkIssue(
            code="CLI_CWD_NOT_FOUND",
            message="Working directory is not found or not a directory.",
            details={"cwd": str(ws)},
        )
    return ws, None


def _exit_code_for_tool_result(result: ToolResult) -> int:
    """
    将 run_command 的 ToolResult 映射为 CLI exit code。

    约定：
    - ok=true -> 0
    - validation/permission -> 20
    - exit_code -> 21
    - timeout/cancelled -> 22
    - session_closed/unknown -> 23
    """

    if bool(result.ok):
        return EXIT_OK
    kind = str(result.error_kind or "")
    if kind in ("validation", "permission"):
        return EXIT_VALIDATION
    if kind == "exit_code":
        return EXIT_NONZERO
    if kind in ("timeout", "cancelled"):
        return EXIT_TIMEOUT
    return EXIT_SESSION


def _build_parser() -> argparse.ArgumentParser:
    """构建 CLI argparse parser。"""

    parser = argparse.ArgumentParser(
        prog="agent-toolbelt",
        description="Run shell commands in a persistent bash session.",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level for stderr logging (default: WARNING).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    def _add_common_flags(p: argparse.ArgumentParser) -> None:
        """为子命令添加公共 flags。"""

        p.add_argument("--config", action="append", default=[], help="Overlay config YAML path (repeatable).")
        p.add_argument("--timeout-ms", type=int, default=None, help="Per-command timeout in milliseconds.")
        p.add_argument("--cwd", default=None, help="Workspace root and initial working directory (default: .)")
        p.add_argument("--session", default=None, help="Session key (default: config shell.default_session_key).")

    exec_p = sub.add_parser("exec", help="Run each COMMAND in order in one persistent session")
    _add_common_flags(exec_p)
    exec_p.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")
    exec_p.add_argument("commands", nargs="+", metavar="COMMAND", help="Shell command text (one per argument).")

    repl_p = sub.add_parser("repl", help="Read command lines from stdin and run them in one persistent session")
    _add_common_flags(repl_p)
    return parser


def _build_context(args: argparse.Namespace) -> Tuple[Optional[ToolExecutionContext], Optional[FrameworkIssue]]:
    """加载配置并构建 tool 执行上下文（registry 的原始目录为 `--cwd`）。"""

    ws, issue = _resolve_workspace_root(args.cwd)
    if issue is not None:
        return None, issue
    config, issue = _load_effective_config(list(args.config))
    if issue is not None:
        return None, issue
    assert ws is not None and config is not None

    shell_cfg = config.shell
    if args.cwd is not None or shell_cfg.working_dir is None:
        shell_cfg = shell_cfg.model_copy(update={"working_dir": str(ws)})
    tool_cfg = config.tools.run_command
    if args.timeout_ms is not None:
        tool_cfg = tool_cfg.model_copy(update={"default_timeout_ms": max(1, int(args.timeout_ms))})

    registry = ShellSessionRegistry(config=shell_cfg, logger=logging.getLogger("agent_toolbelt.shell"))
    ctx = ToolExecutionContext(
        workspace_root=ws,
        shell_sessions=registry,
        session_key=args.session,
        run_command=tool_cfg,
    )
    return ctx, None


def _run_one(ctx: ToolExecutionContext, command: str) -> ToolResult:
    """经 run_command tool 执行一条命令。"""

    call = ToolCall(call_id=f"cli_{uuid.uuid4().hex[:12]}", name="run_command", args={"command": command})
    return dispatch_tool_call(call, ctx)


def _handle_exec(args: argparse.Namespace) -> int:
    """
    执行 `exec`。

    说明：
    - 所有命令都会执行（前一条失败不会中止后续命令）；
    - exit code 取第一条失败命令对应的 code。
    """

    ctx, issue = _build_context(args)
    if issue is not None:
        _dump_json_to_stdout({"ok": False, "issue": _issue_to_jsonable(issue)}, pretty=bool(args.pretty))
        return EXIT_USAGE
    assert ctx is not None

    exit_code = EXIT_OK
    with ctx.shell_sessions:
        for command in args.commands:
            result = _run_one(ctx, command)
            _dump_json_to_stdout({"tool": "run_command", "result": result.details or {}}, pretty=bool(args.pretty))
            code = _exit_code_for_tool_result(result)
            if exit_code == EXIT_OK:
                exit_code = code
    return exit_code


def _handle_repl(args: argparse.Namespace) -> int:
    """
    执行 `repl`。

    说明：
    - 空行跳过；EOF 结束并关闭 session；
    - 返回最后一条命令对应的 exit code。
    """

    ctx, issue = _build_context(args)
    if issue is not None:
        print(f"{issue.code}: {issue.message} {issue.details}", file=sys.stderr)
        return EXIT_USAGE
    assert ctx is not None

    exit_code = EXIT_OK
    with ctx.shell_sessions:
        for line in sys.stdin:
            command = line.rstrip("\n")
            if not command.strip():
                continue
            result = _run_one(ctx, command)
            details = result.details or {}
            output = str(details.get("stdout") or "")
            if output:
                sys.stdout.write(output if output.endswith("\n") else output + "\n")
                sys.stdout.flush()
            if not result.ok:
                print(f"[{result.error_kind}] {result.message or details.get('stderr') or ''}".rstrip(), file=sys.stderr)
            exit_code = _exit_code_for_tool_result(result)
    return exit_code


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    参数：
    - argv：命令行参数列表（不含程序名）；为 None 时读取 sys.argv[1:]。

    返回：
    - int：exit code（不会直接 sys.exit，便于测试）。
    """

    ensure_utf8_stdio()

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        # argparse：--help 为 0，参数错误为 2
        code = getattr(exc, "code", 2)
        if code is None:
            return EXIT_USAGE
        return int(code)

    logging.basicConfig(level=getattr(logging, str(args.log_level)), stream=sys.stderr)

    if args.command == "exec":
        return _handle_exec(args)
    if args.command == "repl":
        return _handle_repl(args)
    parser.print_usage(sys.stderr)
    return EXIT_USAGE


if __name__ == "__main__":
    raise SystemExit(main())
