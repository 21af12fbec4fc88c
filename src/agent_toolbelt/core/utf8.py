"""
UTF-8 启动健壮性工具（CLI 入口用）。

说明：
- 在 `C` locale 下 stdout/stderr 默认编码可能为 ASCII，命令输出含非 ASCII 时 print 会抛 `UnicodeEncodeError`；
- 入口应尽早调用（在 argparse/help 或任何 print 之前）。
"""

from __future__ import annotations

import sys


def ensure_utf8_stdio() -> None:
    """
    best-effort 将 stdout/stderr reconfigure 为 UTF-8（errors=replace）。

    说明：
    - 被替换成非 TextIOWrapper 的流（例如 pytest capsys）没有 `reconfigure`，直接跳过；
    - reconfigure 失败不阻断启动。
    """

    for stream in (sys.stdout, sys.stderr):
        reconfigure = getattr(stream, "reconfigure", None)
        if not callable(reconfigure):
            continue
        try:
            reconfigure(encoding="utf-8", errors="replace")
        except (OSError, ValueError):
            continue
