"""
持久 shell session：一个长驻 bash 子进程 + marker 切分的命令执行。

本模块提供：
- `PersistentShellSession.execute(request)`：串行执行命令，返回 stdout/stderr/exit_code/cwd
- 超时/取消：立即杀掉子进程组并标记 degraded，下一条命令前重建子进程
- `close()`：幂等、并发安全；可在 execute 进行中调用，进行中的 execute 会得到 `SessionClosedError`

并发模型：
- 每个子进程的 stdout/stderr 各有一个 reader 线程，把解码后的行推入队列（生命周期同子进程）；
- 调用方线程持有 `_exec_lock` 消费队列并按 marker 组装结果；
- `_state_lock` 只保护 closed/degraded/子进程句柄，`_write_lock` 保证 stdin 写入不交错。

已知限制：
- stderr 有 start/pwd marker，但后台任务（`cmd &`）稍后写出的 stderr 只能 best-effort 归属；
- 用户命令中执行 `exit` 会结束 shell 本身，表现为 `ProcessDiedError`。
"""

from __future__ import annotations

import logging
import os
import queue
import shlex
import signal
import subprocess
import threading
import time
import uuid
from collections import deque
from typing import IO, Any, Callable, Deque, Dict, NoReturn, Optional, Tuple

from agent_toolbelt.config.loader import ShellConfig
from agent_toolbelt.core.errors import (
    FrameworkError,
    ProcessDiedError,
    SessionClosedError,
    SessionIOError,
    WorkingDirectoryEscapeError,
)
from agent_toolbelt.shell.framing import MarkerSet, frame_command, parse_end_line, split_at_marker
from agent_toolbelt.shell.models import CANCELLED_EXIT_CODE, TIMEOUT_EXIT_CODE, CommandRequest, CommandResult
from agent_toolbelt.shell.validator import CommandValidator

# shell 的交互式噪音一律关掉：没有提示符，不读任何 rc 文件
_QUIET_SHELL_ENV: Dict[str, str] = {
    "PS1": "",
    "PS2": "",
    "PS4": "",
    "PROMPT_COMMAND": "",
    "TERM": "dumb",
    "BASH_ENV": "",
}

_POLL_INTERVAL_S = 0.05
_READER_JOIN_TIMEOUT_S = 1.0
# kill 路径上只短暂等待 reader：逃出进程组的孙进程（`setsid`）可能一直占着管道
_KILL_JOIN_TIMEOUT_S = 0.1
_LOG_PREVIEW_CHARS = 200

_EOF = object()
_TIMEOUT = object()
_CANCELLED = object()


def _preview(text: str) -> str:
    """截断命令文本用于日志。"""

    s = text.replace("\n", "\\n")
    if len(s) <= _LOG_PREVIEW_CHARS:
        return s
    return s[:_LOG_PREVIEW_CHARS] + "..."


def _strip_eol(line: str) -> str:
    """去掉行尾的 `\\n` / `\\r\\n`。"""

    return line.rstrip("\r\n")


class _TailTextBuffer:
    """保留尾部的有界文本缓冲（按 UTF-8 字节计数）。"""

    def __init__(self, max_bytes: int) -> None:
        """
        参数：
        - max_bytes：最多保留的字节数；为 0 时不保留任何输出（但会标记 truncated）
        """

        if max_bytes < 0:
            raise ValueError("max_bytes 必须 >= 0")
        self._max_bytes = max_bytes
        self._parts: Deque[Tuple[str, int]] = deque()
        self._size = 0
        self.truncated = False

    def append(self, text: str) -> None:
        """追加文本；超出上限时丢弃头部。"""

        if not text:
            return
        if self._max_bytes == 0:
            self.truncated = True
            return

        n = len(text.encode("utf-8"))
        self._parts.append((text, n))
        self._size += n
        while self._size > self._max_bytes and self._parts:
            head, head_n = self._parts[0]
            overflow = self._size - self._max_bytes
            if head_n <= overflow:
                self._parts.popleft()
                self._size -= head_n
            else:
                # 在字节边界上截断后可能切断一个多字节字符，丢弃残片即可
                kept = head.encode("utf-8")[overflow:].decode("utf-8", errors="ignore")
                kept_n = len(kept.encode("utf-8"))
                self._parts[0] = (kept, kept_n)
                self._size = self._size - head_n + kept_n
            self.truncated = True

    def get_text(self) -> str:
        """返回当前保留的文本。"""

        return "".join(part for part, _ in self._parts)


def _pump(stream: IO[bytes], sink: "queue.Queue[Any]") -> None:
    """reader 线程主体：逐行读取管道并推入队列；EOF 时推入 `_EOF` 并关闭管道。"""

    try:
        for raw in iter(stream.readline, b""):
            sink.put(raw.decode("utf-8", errors="replace"))
    except (OSError, ValueError):
        # 管道在读取中被关闭：按 EOF 处理
        pass
    finally:
        sink.put(_EOF)
        try:
            stream.close()
        except OSError:
            pass


class _ShellProcess:
    """一个 shell 子进程及其两个 reader 线程。"""

    def __init__(self, proc: "subprocess.Popen[bytes]", *, name: str) -> None:
        """接管已启动的子进程并启动 stdout/stderr reader 线程。"""

        self.proc = proc
        self.stdout_lines: "queue.Queue[Any]" = queue.Queue()
        self.stderr_lines: "queue.Queue[Any]" = queue.Queue()
        self._readers = [
            threading.Thread(target=_pump, args=(proc.stdout, self.stdout_lines), name=f"{name}-stdout", daemon=True),
            threading.Thread(target=_pump, args=(proc.stderr, self.stderr_lines), name=f"{name}-stderr", daemon=True),
        ]
        for t in self._readers:
            t.start()

    @property
    def pid(self) -> int:
        """子进程 pid（同时也是进程组 id）。"""

        return int(self.proc.pid)

    def alive(self) -> bool:
        """liveness 检查。"""

        return self.proc.poll() is None

    def write(self, text: str) -> None:
        """写入 stdin 并 flush（调用方负责加锁）。"""

        stdin = self.proc.stdin
        if stdin is None:
            raise OSError("shell stdin is not available")
        stdin.write(text.encode("utf-8"))
        stdin.flush()

    def kill(self) -> None:
        """立即终止整个进程组（包括仍在运行的用户命令及其子孙进程）。"""

        self._signal_group(signal.SIGKILL)
        self._finish(wait_s=_READER_JOIN_TIMEOUT_S, join_s=_KILL_JOIN_TIMEOUT_S)

    def shutdown(self, *, grace_s: float, write_lock: threading.Lock) -> None:
        """
        优雅关闭：写入 `exit` → 关闭 stdin → 等待 grace → 仍存活则 SIGKILL。

        参数：
        - grace_s：等待 shell 自行退出的秒数
        - write_lock：session 的 stdin 写锁；拿不到说明有写入卡住，直接跳过 `exit`
        """

        if write_lock.acquire(timeout=grace_s):
            try:
                self.write("exit\n")
            except (OSError, ValueError):
                pass
            finally:
                write_lock.release()
        self._close_stdin()
        try:
            self.proc.wait(timeout=grace_s)
        except subprocess.TimeoutExpired:
            self._signal_group(signal.SIGKILL)
        else:
            self._kill_leftover_jobs()
        self._finish(wait_s=_READER_JOIN_TIMEOUT_S, join_s=_READER_JOIN_TIMEOUT_S)

    def _kill_leftover_jobs(self) -> None:
        """shell 已自行退出，但后台任务（`cmd &`）可能仍在同一进程组中并占用管道。"""

        try:
            os.killpg(self.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            return

    def _signal_group(self, sig: int) -> None:
        """向进程组发送信号；进程组已不存在时退化为只对 shell 本身发送。"""

        # 已回收的 pid 可能被复用，不能再按它发信号
        if self.proc.returncode is not None:
            return
        try:
            os.killpg(self.pid, sig)
        except ProcessLookupError:
            return
        except PermissionError:
            try:
                self.proc.send_signal(sig)
            except ProcessLookupError:
                return

    def _close_stdin(self) -> None:
        """关闭 stdin（忽略已关闭/断开的管道）。"""

        stdin = self.proc.stdin
        if stdin is None:
            return
        try:
            stdin.close()
        except (OSError, ValueError):
            pass

    def _finish(self, *, wait_s: float, join_s: float) -> None:
        """
        回收子进程并等待 reader 线程读到 EOF（reader 会自行关闭 stdout/stderr）。

        说明：
        - join 超时后 reader 仍是 daemon 线程，只往本对象的队列里写，不会影响新的子进程。
        """

        self._close_stdin()
        try:
            self.proc.wait(timeout=wait_s)
        except subprocess.TimeoutExpired:
            self.proc.kill()
            try:
                self.proc.wait(timeout=wait_s)
            except subprocess.TimeoutExpired:
                pass
        for t in self._readers:
            t.join(timeout=join_s)


class PersistentShellSession:
    """
    绑定到一个 key 的持久 shell session。

    参数：
    - key：session 标识（例如 conversation id）
    - config：shell 配置；为 None 时使用默认值
    - validator：命令校验器；为 None 时按 `config.denylist` 创建
    - logger：可选注入的 logger；为 None 时使用模块 logger

    说明：
    - 子进程在第一次 `execute` 时才启动，构造 session 不产生任何进程；
    - 原始目录在构造时确定（`config.working_dir` 或进程当前目录）。
    """

    def __init__(
        self,
        key: str = "default",
        *,
        config: Optional[ShellConfig] = None,
        validator: Optional[CommandValidator] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        """创建 session（不启动子进程）。"""

        self._key = str(key)
        self._config = config or ShellConfig()
        self._logger = logger if logger is not None else logging.getLogger(__name__)
        self._validator = validator or CommandValidator(self._config.denylist, logger=self._logger)
        self._session_id = f"shell_{uuid.uuid4().hex[:12]}"

        original = self._config.working_dir or os.getcwd()
        self._original_dir = os.path.abspath(os.path.expanduser(original))
        self._cwd = self._original_dir

        self._exec_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._shell: Optional[_ShellProcess] = None
        self._closed = False
        self._degraded = False

    @property
    def key(self) -> str:
        """session key。"""

        return self._key

    @property
    def session_id(self) -> str:
        """session 唯一 id（进程重建后不变）。"""

        return self._session_id

    @property
    def closed(self) -> bool:
        """是否已关闭。"""

        return self._closed

    @property
    def degraded(self) -> bool:
        """上一条命令超时/取消后，子进程已被杀掉、尚未重建。"""

        return self._degraded

    @property
    def current_directory(self) -> str:
        """缓存的 cwd（总是来自子进程最近一次 `pwd` 输出）。"""

        return self._cwd

    @property
    def original_directory(self) -> str:
        """构造时确定的原始目录。"""

        return self._original_dir

    @property
    def pid(self) -> Optional[int]:
        """当前子进程 pid；尚未启动或已回收时为 None。"""

        shell = self._shell
        return shell.pid if shell is not None else None

    def execute(self, request: CommandRequest, *, cancel_checker: Optional[Callable[[], bool]] = None) -> CommandResult:
        """
        执行一条命令（同一 session 内严格串行）。

        参数：
        - request：命令请求
        - cancel_checker：可选；等待输出期间轮询，返回 true 时按“取消”中止

        返回：
        - `CommandResult`；超时/取消也以结果返回（timed_out/cancelled=true）

        异常：
        - `CommandValidationError`：空命令/命中 denylist（不会写入子进程）
        - `SessionClosedError`：session 已关闭（不会写入子进程）
        - `ProcessDiedError` / `SessionIOError`：子进程死亡/管道失败；session 随之关闭
        """

        with self._exec_lock:
            self._ensure_open()
            self._validator.validate(request.command)
            shell = self._ensure_shell()

            markers = MarkerSet.generate()
            payload = frame_command(request.command, markers, working_dir=request.working_dir)
            self._logger.info(
                "executing command: key=%s session_id=%s command=%s",
                self._key,
                self._session_id,
                _preview(request.command),
            )
            started = time.monotonic()
            self._write(shell, payload)
            return self._collect(shell, request, markers, started, cancel_checker)

    def refresh_working_directory(self, *, timeout_ms: int = 2_000) -> str:
        """
        让子进程重新报告 cwd（执行一条空命令 `:`），返回刷新后的缓存值。

        异常：
        - `CommandTimeoutError`：子进程未在 timeout 内响应
        """

        self.execute(CommandRequest(command=":", timeout_ms=timeout_ms)).raise_for_timeout()
        return self._cwd

    def is_within_original(self) -> bool:
        """缓存的 cwd 是否位于原始目录之内（按 realpath 比较）。"""

        cur = os.path.realpath(self._cwd)
        orig = os.path.realpath(self._original_dir)
        try:
            return os.path.commonpath([cur, orig]) == orig
        except ValueError:
            return False

    def reset_to_original_directory(self, *, timeout_ms: int = 10_000) -> CommandResult:
        """
        把 shell 切回原始目录。

        异常：
        - `CommandTimeoutError`：`cd` 超时
        - `WorkingDirectoryEscapeError`：`cd` 失败
        """

        self._logger.warning(
            "resetting shell to original directory: key=%s current=%s original=%s",
            self._key,
            self._cwd,
            self._original_dir,
        )
        result = self.execute(
            CommandRequest(command=f"cd -- {shlex.quote(self._original_dir)}", timeout_ms=timeout_ms)
        ).raise_for_timeout()
        if result.exit_code != 0:
            raise WorkingDirectoryEscapeError(
                "Failed to reset shell to its original directory.",
                details={"original_dir": self._original_dir, "stderr": result.stderr},
            )
        return result

    def info(self) -> Dict[str, Any]:
        """返回 session 状态快照（用于诊断/展示）。"""

        return {
            "exists": True,
            "key": self._key,
            "session_id": self._session_id,
            "pid": self.pid,
            "current_directory": self._cwd,
            "original_directory": self._original_dir,
            "within_original": self.is_within_original(),
            "closed": self._closed,
            "degraded": self._degraded,
        }

    def close(self) -> None:
        """
        关闭 session（幂等、并发安全）。

        顺序：先置 closed，再写 `exit`、关闭 stdin、等待退出（超时则 SIGKILL）。
        不获取 `_exec_lock`：进行中的 execute 会在队列上读到 EOF 并观察到 closed。
        """

        with self._state_lock:
            if self._closed:
                return
            self._closed = True
            shell, self._shell = self._shell, None

        self._logger.info("closing shell session: key=%s session_id=%s", self._key, self._session_id)
        if shell is not None:
            shell.shutdown(grace_s=self._config.terminate_grace_ms / 1000.0, write_lock=self._write_lock)

    def __enter__(self) -> "PersistentShellSession":
        """支持 `with` 语法。"""

        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        """退出 `with` 时关闭 session。"""

        self.close()

    def _ensure_open(self) -> None:
        """session 已关闭时抛出 `SessionClosedError`。"""

        if self._closed:
            raise SessionClosedError(details={"key": self._key, "session_id": self._session_id})

    def _ensure_shell(self) -> _ShellProcess:
        """
        返回可用的子进程：未启动或 degraded 时（重新）启动；已死亡时关闭 session 并抛错。
        """

        with self._state_lock:
            shell = self._shell
            degraded = self._degraded
            if degraded:
                self._shell = None
                self._degraded = False

        if degraded:
            self._logger.info("replacing degraded shell: key=%s session_id=%s", self._key, self._session_id)
            if shell is not None:
                shell.kill()
            shell = None

        if shell is None:
            return self._spawn()

        if not shell.alive():
            self._fail(
                ProcessDiedError(
                    details={"key": self._key, "pid": shell.pid, "returncode": shell.proc.returncode},
                )
            )
        return shell

    def _spawn(self) -> _ShellProcess:
        """启动新的 shell 子进程（在缓存的 cwd 中；该目录已不存在时退回原始目录）。"""

        cwd = self._cwd if os.path.isdir(self._cwd) else self._original_dir
        env = dict(os.environ)
        env.update(_QUIET_SHELL_ENV)
        env.update({str(k): str(v) for k, v in self._config.env.items()})
        argv = [self._config.path, *self._config.args]

        try:
            proc = subprocess.Popen(  # noqa: S603
                argv,
                cwd=cwd,
                env=env,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                close_fds=True,
                start_new_session=True,
            )
        except OSError as e:
            self._fail(
                SessionIOError(
                    "Failed to start shell process.",
                    details={"argv": argv, "cwd": cwd, "error": str(e)},
                )
            )

        shell = _ShellProcess(proc, name=f"{self._session_id}-{proc.pid}")
        with self._state_lock:
            if self._closed:
                shell.kill()
                raise SessionClosedError(details={"key": self._key, "session_id": self._session_id})
            self._shell = shell
        self._cwd = cwd
        self._logger.info(
            "started shell process: key=%s session_id=%s pid=%s cwd=%s",
            self._key,
            self._session_id,
            shell.pid,
            cwd,
        )

        init = [c for c in self._config.init_commands if str(c).strip()]
        if init:
            self._write(shell, "\n".join(init) + "\n")
        return shell

    def _write(self, shell: _ShellProcess, payload: str) -> None:
        """向子进程 stdin 写入一段文本；失败时关闭 session。"""

        try:
            with self._write_lock:
                shell.write(payload)
        except (OSError, ValueError) as e:
            if self._closed:
                raise SessionClosedError(details={"key": self._key, "session_id": self._session_id}) from e
            self._fail(SessionIOError("Failed to write to shell stdin.", details={"key": self._key, "error": str(e)}))

    def _next_item(
        self,
        lines: "queue.Queue[Any]",
        deadline: float,
        cancel_checker: Optional[Callable[[], bool]],
    ) -> Any:
        """从队列取下一行；可能返回 `_EOF` / `_TIMEOUT` / `_CANCELLED`。"""

        while True:
            if cancel_checker is not None:
                try:
                    if cancel_checker():
                        return _CANCELLED
                except Exception:
                    # fail-open：取消检测本身出错不应中止命令
                    self._logger.debug("cancel_checker raised; ignoring", exc_info=True)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return _TIMEOUT
            wait_s = min(_POLL_INTERVAL_S, remaining) if cancel_checker is not None else remaining
            try:
                return lines.get(timeout=wait_s)
            except queue.Empty:
                continue

    def _collect(
        self,
        shell: _ShellProcess,
        request: CommandRequest,
        markers: MarkerSet,
        started: float,
        cancel_checker: Optional[Callable[[], bool]],
    ) -> CommandResult:
        """消费 stdout/stderr 队列，按 marker 组装结果。"""

        deadline = started + request.timeout_ms / 1000.0
        stdout_buf = _TailTextBuffer(self._config.max_output_bytes)
        stderr_buf = _TailTextBuffer(self._config.max_output_bytes)

        # stdout：pre → body → pwd → pwd_end → done
        out_phase = "pre"
        exit_code = 0
        reported_cwd: Optional[str] = None
        while out_phase != "done":
            item = self._next_item(shell.stdout_lines, deadline, cancel_checker)
            if isinstance(item, str):
                text = _strip_eol(item)
                if out_phase == "pre":
                    if split_at_marker(text, markers.start) is not None:
                        out_phase = "body"
                    else:
                        self._logger.debug("discarding stdout noise before start marker: %s", _preview(text))
                elif out_phase == "body":
                    parsed = parse_end_line(text, markers)
                    if parsed is None:
                        stdout_buf.append(item)
                    else:
                        prefix, exit_code = parsed
                        stdout_buf.append(prefix)
                        out_phase = "pwd"
                elif split_at_marker(text, markers.pwd) is not None:
                    out_phase = "done"
                elif out_phase == "pwd":
                    reported_cwd = text
                    out_phase = "pwd_end"
                continue
            return self._finish_abnormally(shell, request, item, started, stdout_buf, stderr_buf)

        # stderr：pre → body → done
        err_phase = "pre"
        while err_phase != "done":
            item = self._next_item(shell.stderr_lines, deadline, cancel_checker)
            if isinstance(item, str):
                text = _strip_eol(item)
                if err_phase == "pre":
                    if split_at_marker(text, markers.start) is not None:
                        err_phase = "body"
                    continue
                prefix = split_at_marker(text, markers.pwd)
                if prefix is None:
                    stderr_buf.append(item)
                else:
                    stderr_buf.append(prefix)
                    err_phase = "done"
                continue
            return self._finish_abnormally(shell, request, item, started, stdout_buf, stderr_buf)

        if reported_cwd and reported_cwd != self._cwd:
            self._logger.info("working directory changed: key=%s old=%s new=%s", self._key, self._cwd, reported_cwd)
            self._cwd = reported_cwd

        duration_ms = int((time.monotonic() - started) * 1000)
        self._logger.info(
            "command completed: key=%s exit_code=%s working_dir=%s duration_ms=%s",
            self._key,
            exit_code,
            self._cwd,
            duration_ms,
        )
        return CommandResult(
            command=request.command,
            stdout=stdout_buf.get_text(),
            stderr=stderr_buf.get_text(),
            exit_code=exit_code,
            working_dir=self._cwd,
            duration_ms=duration_ms,
            truncated=stdout_buf.truncated or stderr_buf.truncated,
        )

    def _finish_abnormally(
        self,
        shell: _ShellProcess,
        request: CommandRequest,
        item: Any,
        started: float,
        stdout_buf: _TailTextBuffer,
        stderr_buf: _TailTextBuffer,
    ) -> CommandResult:
        """处理 EOF/超时/取消：EOF 抛错；超时/取消回收子进程并返回部分结果。"""

        if item is _EOF:
            if self._closed:
                raise SessionClosedError(details={"key": self._key, "session_id": self._session_id})
            self._fail(
                ProcessDiedError(
                    "Shell process exited while a command was running.",
                    details={"key": self._key, "pid": shell.pid, "command": _preview(request.command)},
                )
            )

        timed_out = item is _TIMEOUT
        self._recycle(shell, reason="timeout" if timed_out else "cancelled")
        duration_ms = int((time.monotonic() - started) * 1000)
        if timed_out:
            self._logger.warning(
                "command timed out: key=%s timeout_ms=%s command=%s",
                self._key,
                request.timeout_ms,
                _preview(request.command),
            )
        else:
            self._logger.warning("command cancelled: key=%s command=%s", self._key, _preview(request.command))
        return CommandResult(
            command=request.command,
            stdout=stdout_buf.get_text(),
            stderr=stderr_buf.get_text(),
            exit_code=TIMEOUT_EXIT_CODE if timed_out else CANCELLED_EXIT_CODE,
            working_dir=self._cwd,
            duration_ms=duration_ms,
            timed_out=timed_out,
            cancelled=not timed_out,
            truncated=stdout_buf.truncated or stderr_buf.truncated,
        )

    def _recycle(self, shell: _ShellProcess, *, reason: str) -> None:
        """杀掉子进程并标记 degraded；下一条命令前会重建。"""

        with self._state_lock:
            if self._shell is shell:
                self._degraded = True
        self._logger.info("recycling shell process: key=%s pid=%s reason=%s", self._key, shell.pid, reason)
        shell.kill()

    def _fail(self, err: FrameworkError) -> NoReturn:
        """会话致命错误：关闭 session 后抛出 err。"""

        self._logger.error("shell session failed: key=%s error=%s", self._key, err)
        with self._state_lock:
            self._closed = True
            shell, self._shell = self._shell, None
        if shell is not None:
            shell.kill()
        raise err
