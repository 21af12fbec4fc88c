"""
Marker framing：把一条原始命令包装成“输出带边界标记”的 shell 文本。

shell 的 stdout/stderr 是无结构的连续字节流；为了从中切出某条命令的输出、退出码与 cwd，
每次执行都生成一组新的 marker，并让 shell 自己在命令前后 echo 出来：

    echo '<START>'; echo '<START>' >&2; { eval -- '<command>' ; } < /dev/null ;
        __tb_rc=$? ; echo '<END>:'"$__tb_rc" ; pwd ; echo '<PWD>' ; echo '<PWD>' >&2

约束：
- marker 使用高熵随机 nonce（`secrets.token_hex`），每条命令一组，不复用；
- 用户命令整体单引号转义后交给 `eval`：语法错误（`echo )`、未闭合的引号）只让 eval 返回非零，
  不会让非交互 shell 退出，也不会吞掉后面的 marker；`cmd # 注释`、`cmd &` 同样无法影响外层框架；
- `< /dev/null` 防止用户命令读走 shell 自己的 stdin（后续命令也从这里送入）。
"""

from __future__ import annotations

import secrets
import shlex
from dataclasses import dataclass
from typing import Optional, Tuple

_NONCE_BYTES = 16
_RC_VAR = "__tb_rc"


@dataclass(frozen=True)
class MarkerSet:
    """单次命令使用的三枚 marker（start/end/pwd）。"""

    start: str
    end: str
    pwd: str

    @classmethod
    def generate(cls) -> "MarkerSet":
        """生成一组新的 marker（nonce 在 session 生命周期内不会重复）。"""

        nonce = secrets.token_hex(_NONCE_BYTES)
        return cls(
            start=f"__TB_START_{nonce}__",
            end=f"__TB_END_{nonce}__",
            pwd=f"__TB_PWD_{nonce}__",
        )

    @property
    def end_prefix(self) -> str:
        """end marker 行的前缀（其后紧跟 `$?`）。"""

        return f"{self.end}:"


def frame_command(command: str, markers: MarkerSet, *, working_dir: Optional[str] = None) -> str:
    """
    构造写入 shell stdin 的完整文本（以换行结尾）。

    参数：
    - command：原始命令文本（调用方已完成校验）
    - markers：本次命令的 marker
    - working_dir：可选；先 `cd` 到该目录再执行（目录变化在 session 内保留）

    返回：
    - str：可一次性写入 stdin 的文本
    """

    body = f"{{ eval -- {shlex.quote(command)} ; }}"
    if working_dir is not None:
        body = f"{{ cd -- {shlex.quote(str(working_dir))} && eval -- {shlex.quote(command)} ; }}"

    return (
        f"echo '{markers.start}'; echo '{markers.start}' >&2; "
        f"{body} < /dev/null ; {_RC_VAR}=$? ; "
        f"echo '{markers.end_prefix}'\"${_RC_VAR}\" ; pwd ; "
        f"echo '{markers.pwd}' ; echo '{markers.pwd}' >&2\n"
    )


def split_at_marker(line: str, marker: str) -> Optional[str]:
    """
    若 line 中出现 marker，返回 marker 之前的文本；否则返回 None。

    说明：
    - 命令最后一行输出没有换行时，marker 会与其拼在同一行（例如 `printf abc`），
      此时前缀是命令输出的一部分，不能丢。
    """

    idx = line.find(marker)
    if idx < 0:
        return None
    return line[:idx]


def parse_end_line(line: str, markers: MarkerSet) -> Optional[Tuple[str, int]]:
    """
    解析 end marker 行。

    返回：
    - (前缀输出, exit_code)；未命中返回 None
    - `$?` 无法解析为整数时 exit_code 为 -1
    """

    prefix = split_at_marker(line, markers.end_prefix)
    if prefix is None:
        return None
    raw = line[len(prefix) + len(markers.end_prefix):].strip()
    try:
        exit_code = int(raw)
    except ValueError:
        exit_code = -1
    return prefix, exit_code
