"""agi-driver - Python SDK for the agi-driver computer-use agent.

The driver is a separate executable speaking newline-delimited JSON over
stdin/stdout. AgentDriver spawns it, drives the session and delivers its
events to listeners.

环境变量:
    AGI_DRIVER_PATH: driver 可执行文件路径
    AGI_DRIVER_MODEL: 默认模型
    AGI_DRIVER_LOG_DEBUG: 日志输出到临时文件

用法:
    from agi_driver import AgentDriver

    driver = AgentDriver()
    result = await driver.start("Open calculator and compute 2+2", mode="local")

MCP 服务:
    agi-driver-mcp
"""

__version__ = "0.1.0"

from .driver import (
    AgentDriver,
    DriverAction,
    DriverEvent,
    DriverResult,
    DriverState,
    EventType,
    find_binary_path,
    is_binary_available,
)
from .errors import (
    AgentError,
    BinaryNotFoundError,
    DriverError,
    InvalidStateError,
    ProtocolError,
    RecoverableAgentError,
    SpawnError,
    UnexpectedExitError,
    UnrecoverableAgentError,
)

__all__ = [
    "__version__",
    "AgentDriver",
    "DriverAction",
    "DriverEvent",
    "DriverResult",
    "DriverState",
    "EventType",
    "find_binary_path",
    "is_binary_available",
    "AgentError",
    "BinaryNotFoundError",
    "DriverError",
    "InvalidStateError",
    "ProtocolError",
    "RecoverableAgentError",
    "SpawnError",
    "UnexpectedExitError",
    "UnrecoverableAgentError",
]
