from __future__ import annotations

import logging

import pytest

from agent_toolbelt.core.errors import CommandValidationError
from agent_toolbelt.shell.validator import DEFAULT_DENYLIST, CommandValidator


@pytest.mark.parametrize("command", ["", "   ", "\n\t"])
def test_blank_command_rejected(command: str) -> None:
    with pytest.raises(CommandValidationError) as ei:
        CommandValidator().validate(command)
    assert ei.value.code == "COMMAND_INVALID"


@pytest.mark.parametrize(
    "command",
    ["sudo ls", "SUDO apt install x", "rm -rf /", "echo ok && shutdown now", "chmod 777 f", "dd if=/dev/zero of=x"],
)
def test_denylisted_commands_rejected(command: str) -> None:
    with pytest.raises(CommandValidationError) as ei:
        CommandValidator().validate(command)
    assert ei.value.details.get("matched_rule")


@pytest.mark.parametrize(
    "command",
    ["echo hello", "git init", "python -c 'import x.__init__'", "ls -la", "cat README.md | grep sync"],
)
def test_ordinary_commands_pass(command: str) -> None:
    CommandValidator().validate(command)


def test_custom_denylist_replaces_default() -> None:
    v = CommandValidator(["Forbidden"])

    assert v.denylist == ("forbidden",)
    assert v.match("sudo ls") is None
    assert v.match("run FORBIDDEN thing") == "forbidden"
    with pytest.raises(CommandValidationError):
        v.validate("forbidden")


def test_empty_denylist_allows_everything_but_blank() -> None:
    v = CommandValidator([])

    v.validate("sudo ls")
    with pytest.raises(CommandValidationError):
        v.validate(" ")


def test_default_denylist_exposed() -> None:
    assert "sudo " in DEFAULT_DENYLIST
    assert CommandValidator().denylist == tuple(x.lower() for x in DEFAULT_DENYLIST)


def test_rejection_logged_with_injected_logger(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging.getLogger("test.validator")
    with caplog.at_level(logging.WARNING, logger="test.validator"):
        with pytest.raises(CommandValidationError):
            CommandValidator(logger=logger).validate("sudo reboot")

    assert any(r.name == "test.validator" and "denylist" in r.getMessage() for r in caplog.records)
