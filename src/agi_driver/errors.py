"""Driver 异常类。

agi-driver errors v0.1.0

异常分类：
- SpawnError: 可执行文件不存在或无法启动（致命）
- ProtocolError: 单行解码失败（可恢复，作为合成 error 事件上报）
- UnrecoverableAgentError / RecoverableAgentError: driver 进程上报的 error 事件
- UnexpectedExitError: 进程在 finished/error 之前退出（致命）
- InvalidStateError: 调用方在错误的状态下调用方法（同步抛出）
"""

from __future__ import annotations

__all__ = [
    "DriverError",
    "SpawnError",
    "BinaryNotFoundError",
    "ProtocolError",
    "AgentError",
    "UnrecoverableAgentError",
    "RecoverableAgentError",
    "UnexpectedExitError",
    "InvalidStateError",
]


class DriverError(Exception):
    """Driver 模块基础异常。"""
    pass


class SpawnError(DriverError):
    """Driver 进程无法启动。

    Attributes:
        executable: 尝试启动的可执行文件路径
    """

    def __init__(self, message: str, executable: str = "") -> None:
        self.executable = executable
        super().__init__(message)


class BinaryNotFoundError(SpawnError):
    """找不到 agi-driver 可执行文件。

    Attributes:
        searched: 已搜索的路径列表
    """

    def __init__(self, message: str, searched: list[str] | None = None) -> None:
        self.searched = list(searched or [])
        super().__init__(message)


class ProtocolError(DriverError):
    """协议行无法解码。

    Attributes:
        line: 原始行内容
    """

    def __init__(self, message: str, line: str = "") -> None:
        self.line = line
        super().__init__(message)


class AgentError(DriverError):
    """Driver 进程通过 error 事件上报的错误。

    Attributes:
        code: 错误码
        message: 错误消息
        step: 出错时的 step
        recoverable: 是否可恢复
    """

    recoverable: bool = False

    def __init__(self, code: str, message: str, step: int = 0) -> None:
        self.code = code
        self.message = message
        self.step = step
        super().__init__(f"{code}: {message}")


class UnrecoverableAgentError(AgentError):
    """不可恢复错误（recoverable=false），会终止会话。"""

    recoverable = False


class RecoverableAgentError(AgentError):
    """可恢复错误（recoverable=true），仅通知监听器。

    由 ErrorEvent.to_exception() 生成，不会使 start() 失败。
    """

    recoverable = True


class UnexpectedExitError(DriverError):
    """Driver 进程在发出 finished/error 之前退出。

    Attributes:
        exit_code: 进程退出码（负数表示被信号终止）
    """

    def __init__(self, exit_code: int | None, stderr_tail: str = "") -> None:
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail
        message = f"Driver exited with code {exit_code}"
        if stderr_tail:
            message += f":\n{stderr_tail}"
        super().__init__(message)


class InvalidStateError(DriverError):
    """在当前状态下不允许该操作。"""
    pass
