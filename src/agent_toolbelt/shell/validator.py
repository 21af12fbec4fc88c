"""
命令校验（Validator）：在任何子进程写入之前拒绝空命令与 denylist 命令。

说明：
- 匹配方式为大小写不敏感的子串匹配（与历史实现一致）；
- 这是 best-effort 的卫生检查，不是隔离边界：别名、变量拼接、base64 等都能绕过；
- 需要真正隔离时应使用 OS sandbox，而不是扩充这份列表。
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Sequence

from agent_toolbelt.core.errors import CommandValidationError

# 破坏性 / 提权 / 出网类命令片段。
# 过宽的片段（例如 `init`、`at `、`service`）会误伤 `git init`、`__init__.py` 等普通命令，
# 这里收窄为带参数的形式。
DEFAULT_DENYLIST: tuple[str, ...] = (
    "rm -rf",
    "rm -fr",
    "rm -r ",
    "sudo ",
    "su -",
    "su root",
    "chmod 777",
    "chown ",
    "mkfs",
    "fdisk",
    "dd if=",
    ">/dev/sd",
    "> /dev/sd",
    "curl ",
    "wget ",
    "nc -",
    "netcat",
    "ssh ",
    "scp ",
    "rsync ",
    "ftp ",
    "telnet",
    "mount ",
    "umount ",
    "kill -9",
    "killall",
    "pkill",
    "systemctl",
    "service ",
    "init 0",
    "init 6",
    "reboot",
    "shutdown",
    "halt",
    "poweroff",
    "passwd",
    "adduser",
    "deluser",
    "useradd",
    "userdel",
    "usermod",
    "groupadd",
    "groupdel",
    "visudo",
    "crontab",
)


def _normalize_denylist(entries: Iterable[str]) -> tuple[str, ...]:
    """去掉空项并统一转小写（保留片段内的空格，它们是匹配语义的一部分）。"""

    out: list[str] = []
    for e in entries:
        s = str(e or "").lower()
        if s.strip():
            out.append(s)
    return tuple(out)


class CommandValidator:
    """
    命令校验器（无状态、无副作用）。

    参数：
    - denylist：命令片段列表；为 None 时使用 `DEFAULT_DENYLIST`
    - logger：可选注入的 logger
    """

    def __init__(self, denylist: Optional[Sequence[str]] = None, *, logger: Optional[logging.Logger] = None) -> None:
        """创建校验器。"""

        self._denylist = _normalize_denylist(DEFAULT_DENYLIST if denylist is None else denylist)
        self._logger = logger if logger is not None else logging.getLogger(__name__)

    @property
    def denylist(self) -> tuple[str, ...]:
        """当前生效的 denylist（已小写化）。"""

        return self._denylist

    def match(self, command: str) -> Optional[str]:
        """返回命中的 denylist 片段；未命中返回 None。"""

        lowered = str(command or "").lower()
        for fragment in self._denylist:
            if fragment in lowered:
                return fragment
        return None

    def validate(self, command: str) -> None:
        """
        校验一条命令。

        异常：
        - `CommandValidationError`：命令为空/仅空白，或命中 denylist
        """

        if not str(command or "").strip():
            raise CommandValidationError("Empty command is not allowed.")

        fragment = self.match(command)
        if fragment is not None:
            self._logger.warning("command rejected by denylist: fragment=%r", fragment.strip())
            raise CommandValidationError(
                "Command is denied by the shell denylist.",
                details={"matched_rule": fragment.strip()},
            )
