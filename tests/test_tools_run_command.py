from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Iterator

import pytest

from agent_toolbelt.config.loader import RunCommandToolConfig, ShellConfig
from agent_toolbelt.shell.registry import ShellSessionRegistry
from agent_toolbelt.tools.builtin import BUILTIN_TOOLS, RUN_COMMAND_SPEC, dispatch_tool_call
from agent_toolbelt.tools.builtin.run_command import run_command
from agent_toolbelt.tools.context import ToolExecutionContext
from agent_toolbelt.tools.protocol import ToolCall

pytestmark = pytest.mark.skipif(not Path("/bin/bash").exists(), reason="requires /bin/bash")


@pytest.fixture
def ctx(tmp_path: Path) -> Iterator[ToolExecutionContext]:
    registry = ShellSessionRegistry(config=ShellConfig(working_dir=str(tmp_path), terminate_grace_ms=200))
    with registry:
        yield ToolExecutionContext(workspace_root=tmp_path, shell_sessions=registry)


def _call(args: dict[str, Any]) -> ToolCall:
    return ToolCall(call_id="c1", name="run_command", args=args)


def _same_dir(a: Any, b: Any) -> bool:
    return os.path.realpath(str(a)) == os.path.realpath(str(b))


def test_run_command_ok(ctx: ToolExecutionContext) -> None:
    result = run_command(_call({"command": "echo hi"}), ctx)

    assert result.ok is True
    assert result.error_kind is None
    payload = json.loads(result.content)
    assert payload == result.details
    assert payload["stdout"] == "hi\n"
    assert payload["exit_code"] == 0
    assert payload["data"]["command"] == "echo hi"
    assert payload["data"]["session_key"] == "default"
    assert payload["data"]["timed_out"] is False
    assert _same_dir(payload["data"]["working_dir"], ctx.workspace_root)


def test_run_command_combines_stdout_and_stderr(ctx: ToolExecutionContext) -> None:
    result = run_command(_call({"command": "echo out; echo err >&2"}), ctx)

    assert result.details is not None
    assert result.details["stdout"] == "out\nerr\n"


def test_run_command_nonzero_exit(ctx: ToolExecutionContext) -> None:
    result = run_command(_call({"command": "echo bad >&2; (exit 3)"}), ctx)

    assert result.ok is False
    assert result.error_kind == "exit_code"
    assert result.details is not None
    assert result.details["exit_code"] == 3
    assert "bad" in result.details["stdout"]


@pytest.mark.parametrize(
    "args",
    [
        {},
        {"command": "echo x", "unknown": 1},
        {"command": "echo x", "timeout_ms": 0},
        {"command": "sudo ls"},
        {"command": "  "},
    ],
)
def test_run_command_validation(ctx: ToolExecutionContext, args: dict[str, Any]) -> None:
    result = run_command(_call(args), ctx)

    assert result.ok is False
    assert result.error_kind == "validation"


def test_run_command_working_dir_escape_is_permission(ctx: ToolExecutionContext) -> None:
    result = run_command(_call({"command": "pwd", "working_dir": "/"}), ctx)
    result2 = run_command(_call({"command": "pwd", "working_dir": "../"}), ctx)

    assert result.error_kind == "permission"
    assert result2.error_kind == "permission"


def test_run_command_working_dir_must_exist(ctx: ToolExecutionContext) -> None:
    result = run_command(_call({"command": "pwd", "working_dir": "missing"}), ctx)

    assert result.error_kind == "validation"


def test_run_command_working_dir_relative_to_workspace(ctx: ToolExecutionContext) -> None:
    (ctx.workspace_root / "sub").mkdir()
    result = run_command(_call({"command": "pwd", "working_dir": "sub"}), ctx)
    again = run_command(_call({"command": "pwd"}), ctx)

    assert result.ok is True
    assert result.details is not None and again.details is not None
    assert _same_dir(result.details["stdout"].strip(), ctx.workspace_root / "sub")
    assert _same_dir(again.details["stdout"].strip(), ctx.workspace_root / "sub")


def test_run_command_timeout_is_clamped(ctx: ToolExecutionContext) -> None:
    ctx.run_command = RunCommandToolConfig(default_timeout_ms=30_000, max_timeout_ms=300)
    result = run_command(_call({"command": "sleep 5", "timeout_ms": 60_000}), ctx)

    assert result.ok is False
    assert result.error_kind == "timeout"
    assert result.details is not None
    assert result.details["exit_code"] == 124
    assert result.details["data"]["timed_out"] is True
    assert result.details["retryable"] is True

    after = run_command(_call({"command": "echo back"}), ctx)
    assert after.ok is True


def test_run_command_cancelled(ctx: ToolExecutionContext) -> None:
    ctx.cancel_checker = lambda: True
    result = run_command(_call({"command": "sleep 5"}), ctx)

    assert result.error_kind == "cancelled"
    assert result.details is not None
    assert result.details["data"]["cancelled"] is True
    assert result.details["exit_code"] == 130


def test_run_command_output_truncated_head_kept(ctx: ToolExecutionContext) -> None:
    ctx.run_command = RunCommandToolConfig(max_output_chars=50)
    result = run_command(_call({"command": "seq 1 1000"}), ctx)

    assert result.ok is True
    assert result.details is not None
    out = result.details["stdout"]
    assert out.startswith("1\n2\n3\n")
    assert "[output truncated:" in out
    assert result.details["truncated"] is True


def test_run_command_session_keys(ctx: ToolExecutionContext) -> None:
    (ctx.workspace_root / "a").mkdir()
    run_command(_call({"command": "cd a", "session_key": "one"}), ctx)
    r1 = run_command(_call({"command": "pwd", "session_key": "one"}), ctx)
    r2 = run_command(_call({"command": "pwd", "session_key": "two"}), ctx)

    assert r1.details is not None and r2.details is not None
    assert _same_dir(r1.details["stdout"].strip(), ctx.workspace_root / "a")
    assert _same_dir(r2.details["stdout"].strip(), ctx.workspace_root)
    assert ctx.shell_sessions.keys() == ["one", "two"]


def test_run_command_context_session_key(ctx: ToolExecutionContext) -> None:
    ctx.session_key = "conv-1"
    result = run_command(_call({"command": "true"}), ctx)

    assert result.details is not None
    assert result.details["data"]["session_key"] == "conv-1"


def test_run_command_process_death_is_unknown(ctx: ToolExecutionContext) -> None:
    result = run_command(_call({"command": "exit 2"}), ctx)

    assert result.ok is False
    assert result.error_kind == "unknown"
    assert result.details is not None
    assert result.details["data"]["code"] == "PROCESS_DIED"

    # 下一次调用拿到新的 session
    assert run_command(_call({"command": "echo new"}), ctx).ok is True


def test_dispatch_and_tool_spec(ctx: ToolExecutionContext) -> None:
    assert set(BUILTIN_TOOLS) == {"run_command"}
    assert RUN_COMMAND_SPEC.parameters["required"] == ["command"]
    assert RUN_COMMAND_SPEC.to_openai_tool()["function"]["name"] == "run_command"

    ok = dispatch_tool_call(_call({"command": "echo d"}), ctx)
    missing = dispatch_tool_call(ToolCall(call_id="c2", name="nope"), ctx)

    assert ok.ok is True
    assert missing.error_kind == "not_found"
