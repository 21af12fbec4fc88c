"""
Session Registry：key → `PersistentShellSession` 的映射，也是 tool handler 的执行入口。

锁约定：
- `_lock` 只保护 `_sessions` 映射，持锁期间不做任何子进程交互；
- 总是先释放 registry 锁，再进入 session 的执行锁（固定顺序，避免死锁）；
- 因此不同 key 的命令完全并行，同一 key 的命令由 session 串行化。
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from agent_toolbelt.config.loader import ShellConfig
from agent_toolbelt.core.errors import CommandValidationError, FrameworkError, WorkingDirectoryEscapeError
from agent_toolbelt.shell.models import CommandRequest, CommandResult
from agent_toolbelt.shell.session import PersistentShellSession
from agent_toolbelt.shell.validator import CommandValidator

SessionFactory = Callable[[str], PersistentShellSession]


class ShellSessionRegistry:
    """
    持久 shell session 注册表。

    参数：
    - config：shell 配置（创建 session 时透传）
    - logger：可选注入的 logger（同时透传给新建的 session）
    - session_factory：可选；自定义 session 构造（测试注入用）

    说明：
    - 空 key / None 映射为 `config.default_session_key`；
    - 已关闭的 session（显式 close、子进程死亡、管道失败）在下次查找时被新 session 替换；
      失败的那条命令不会被自动重试。
    """

    def __init__(
        self,
        *,
        config: Optional[ShellConfig] = None,
        logger: Optional[logging.Logger] = None,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        """创建空的注册表。"""

        self._config = config or ShellConfig()
        self._logger = logger if logger is not None else logging.getLogger(__name__)
        self._validator = CommandValidator(self._config.denylist, logger=self._logger)
        self._factory: SessionFactory = session_factory or self._new_session
        self._lock = threading.Lock()
        self._sessions: Dict[str, PersistentShellSession] = {}

    @property
    def config(self) -> ShellConfig:
        """当前 shell 配置。"""

        return self._config

    def normalize_key(self, key: Optional[str]) -> str:
        """空 key 映射为默认 key。"""

        k = str(key or "").strip()
        return k or self._config.default_session_key

    def get(self, key: Optional[str]) -> Optional[PersistentShellSession]:
        """返回已存在的 session（不创建）。"""

        with self._lock:
            return self._sessions.get(self.normalize_key(key))

    def get_or_create(self, key: Optional[str]) -> PersistentShellSession:
        """
        查找 key 对应的 session；不存在或已关闭时创建新的。

        说明：
        - session 构造不启动子进程，因此持锁时间只有 map 操作。
        """

        k = self.normalize_key(key)
        replaced = False
        with self._lock:
            session = self._sessions.get(k)
            if session is not None and not session.closed:
                return session
            replaced = session is not None
            session = self._factory(k)
            self._sessions[k] = session
        if replaced:
            self._logger.info("replaced closed shell session: key=%s session_id=%s", k, session.session_id)
        else:
            self._logger.info("created shell session: key=%s session_id=%s", k, session.session_id)
        return session

    def execute(
        self,
        key: Optional[str],
        command: str,
        *,
        timeout_ms: Optional[int] = None,
        working_dir: Optional[str] = None,
        cancel_checker: Optional[Callable[[], bool]] = None,
    ) -> CommandResult:
        """
        在 key 对应的 session 中执行命令。

        参数：
        - key：session key（空值使用默认 key）
        - command：命令文本
        - timeout_ms：超时毫秒数；None 时使用 `config.default_timeout_ms`
        - working_dir：可选；执行前先切换目录（调用方负责路径安全校验）
        - cancel_checker：可选；返回 true 时取消等待并回收子进程

        异常：
        - 同 `PersistentShellSession.execute`
        - `CommandValidationError`：timeout_ms < 1（不会创建 session）
        - `WorkingDirectoryEscapeError`：开启目录约束且复位失败（session 已被关闭并移除）
        """

        effective_timeout_ms = timeout_ms if timeout_ms is not None else self._config.default_timeout_ms
        if effective_timeout_ms < 1:
            raise CommandValidationError("timeout_ms must be >= 1.", details={"timeout_ms": effective_timeout_ms})
        request = CommandRequest(command=command, timeout_ms=effective_timeout_ms, working_dir=working_dir)
        session = self.get_or_create(key)
        result = session.execute(request, cancel_checker=cancel_checker)

        if self._config.confine_to_original_dir and not session.is_within_original():
            result = self._confine(session, result)
        return result

    def close_session(self, key: Optional[str]) -> bool:
        """关闭并移除 key 对应的 session；不存在时返回 False。"""

        k = self.normalize_key(key)
        with self._lock:
            session = self._sessions.pop(k, None)
        if session is None:
            return False
        session.close()
        self._logger.info("closed shell session: key=%s", k)
        return True

    def close_all(self) -> None:
        """关闭所有 session（registry 之后仍可继续使用，会按需新建）。"""

        with self._lock:
            sessions = self._sessions
            self._sessions = {}
        for k, session in sessions.items():
            session.close()
            self._logger.debug("closed shell session: key=%s", k)
        self._logger.info("closed all shell sessions: count=%s", len(sessions))

    def current_directory(self, key: Optional[str]) -> Optional[str]:
        """返回 key 对应 session 缓存的 cwd；session 不存在时返回 None。"""

        session = self.get(key)
        return session.current_directory if session is not None else None

    def session_info(self, key: Optional[str]) -> Dict[str, Any]:
        """返回 session 状态快照；不存在时为 `{"exists": False}`。"""

        session = self.get(key)
        if session is None:
            return {"exists": False}
        return session.info()

    def keys(self) -> List[str]:
        """当前持有的 session key（排序后返回）。"""

        with self._lock:
            return sorted(self._sessions.keys())

    def __len__(self) -> int:
        """当前持有的 session 数。"""

        with self._lock:
            return len(self._sessions)

    def __enter__(self) -> "ShellSessionRegistry":
        """支持 `with` 语法。"""

        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        """退出 `with` 时关闭所有 session。"""

        self.close_all()

    def _new_session(self, key: str) -> PersistentShellSession:
        """默认 session 工厂。"""

        return PersistentShellSession(key, config=self._config, validator=self._validator, logger=self._logger)

    def _discard(self, session: PersistentShellSession) -> None:
        """若映射中仍是该 session，则移除并关闭。"""

        with self._lock:
            if self._sessions.get(session.key) is session:
                self._sessions.pop(session.key, None)
        session.close()

    def _confine(self, session: PersistentShellSession, result: CommandResult) -> CommandResult:
        """命令把 session 带出了原始目录：复位；复位失败则关闭 session 并抛错。"""

        self._logger.warning(
            "shell navigated outside original directory, resetting: key=%s current=%s original=%s",
            session.key,
            session.current_directory,
            session.original_directory,
        )
        try:
            session.reset_to_original_directory()
        except FrameworkError as e:
            self._logger.error("failed to reset shell to original directory: key=%s error=%s", session.key, e)
            self._discard(session)
            raise WorkingDirectoryEscapeError(
                "Shell navigated outside the original directory and could not be reset.",
                details={
                    "key": session.key,
                    "current_dir": result.working_dir,
                    "original_dir": session.original_directory,
                },
            ) from e
        return result.model_copy(update={"working_dir": session.current_directory})
