from __future__ import annotations

import io
import json
import os
from pathlib import Path
from typing import Any, Dict, List

import pytest

from agent_toolbelt.cli.main import main

pytestmark = pytest.mark.skipif(not Path("/bin/bash").exists(), reason="requires /bin/bash")


def _parse_json_lines(stdout: str) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for line in (stdout or "").strip().splitlines():
        obj = json.loads(line)
        assert isinstance(obj, dict)
        out.append(obj)
    return out


def test_cli_exec_ok(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = main(["exec", "--cwd", str(tmp_path), "echo hello"])
    payloads = _parse_json_lines(capsys.readouterr().out)

    assert code == 0
    assert len(payloads) == 1
    assert payloads[0]["tool"] == "run_command"
    assert payloads[0]["result"]["ok"] is True
    assert payloads[0]["result"]["stdout"] == "hello\n"


def test_cli_exec_commands_share_one_session(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    (tmp_path / "sub").mkdir()
    code = main(["exec", "--cwd", str(tmp_path), "cd sub", "export TB_X=1", "pwd; echo $TB_X"])
    payloads = _parse_json_lines(capsys.readouterr().out)

    assert code == 0
    assert len(payloads) == 3
    lines = payloads[2]["result"]["stdout"].splitlines()
    assert os.path.realpath(lines[0]) == os.path.realpath(str(tmp_path / "sub"))
    assert lines[1] == "1"


def test_cli_exec_nonzero_exit(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = main(["exec", "--cwd", str(tmp_path), "false", "echo still-runs"])
    payloads = _parse_json_lines(capsys.readouterr().out)

    assert code == 21
    assert payloads[0]["result"]["error_kind"] == "exit_code"
    assert payloads[1]["result"]["stdout"] == "still-runs\n"


def test_cli_exec_validation(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = main(["exec", "--cwd", str(tmp_path), "sudo ls"])
    payloads = _parse_json_lines(capsys.readouterr().out)

    assert code == 20
    assert payloads[0]["result"]["error_kind"] == "validation"


def test_cli_exec_timeout(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = main(["exec", "--cwd", str(tmp_path), "--timeout-ms", "200", "sleep 5"])
    payloads = _parse_json_lines(capsys.readouterr().out)

    assert code == 22
    assert payloads[0]["result"]["error_kind"] == "timeout"


def test_cli_exec_session_key_and_config_overlay(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    overlay = tmp_path / "overlay.yaml"
    overlay.write_text("shell:\n  denylist: [forbidden]\n", encoding="utf-8")

    code = main(["exec", "--cwd", str(tmp_path), "--config", str(overlay), "--session", "s1", "echo forbidden"])
    payloads = _parse_json_lines(capsys.readouterr().out)

    assert code == 20
    assert payloads[0]["result"]["data"]["session_key"] == "s1"


def test_cli_exec_missing_config_is_usage_error(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = main(["exec", "--cwd", str(tmp_path), "--config", str(tmp_path / "missing.yaml"), "true"])
    payloads = _parse_json_lines(capsys.readouterr().out)

    assert code == 2
    assert payloads[0]["ok"] is False
    assert payloads[0]["issue"]["code"] == "CLI_CONFIG_NOT_FOUND"


def test_cli_exec_bad_cwd_is_usage_error(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = main(["exec", "--cwd", str(tmp_path / "nope"), "true"])
    payloads = _parse_json_lines(capsys.readouterr().out)

    assert code == 2
    assert payloads[0]["issue"]["code"] == "CLI_CWD_NOT_FOUND"


def test_cli_usage_errors() -> None:
    assert main([]) == 2
    assert main(["exec"]) == 2
    assert main(["--help"]) == 0


def test_cli_repl_reads_stdin(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    (tmp_path / "sub").mkdir()
    monkeypatch.setattr("sys.stdin", io.StringIO("echo a\n\ncd sub\npwd\n"))

    code = main(["repl", "--cwd", str(tmp_path)])
    captured = capsys.readouterr()
    lines = captured.out.splitlines()

    assert code == 0
    assert lines[0] == "a"
    assert os.path.realpath(lines[1]) == os.path.realpath(str(tmp_path / "sub"))


def test_cli_repl_reports_failures_on_stderr(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO("sudo ls\necho ok\nfalse\n"))

    code = main(["repl", "--cwd", str(tmp_path)])
    captured = capsys.readouterr()

    assert code == 21
    assert "ok" in captured.out.splitlines()
    assert "[validation]" in captured.err
    assert "[exit_code]" in captured.err
