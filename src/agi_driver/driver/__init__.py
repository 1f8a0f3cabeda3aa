"""Driver 层：协议、进程通道、监听器注册表和 AgentDriver。

agi-driver driver v0.1.0
"""

from .binary import find_binary_path, get_platform_id, is_binary_available
from .channel import ProcessChannel
from .driver import LISTENER_KINDS, AgentDriver, DriverResult
from .listeners import ListenerRegistry
from .protocol import (
    TERMINAL_STATES,
    DriverAction,
    DriverCommand,
    DriverEvent,
    DriverState,
    EventType,
    decode_event,
    encode_command,
)

__all__ = [
    "AgentDriver",
    "DriverResult",
    "LISTENER_KINDS",
    "ProcessChannel",
    "ListenerRegistry",
    "DriverAction",
    "DriverCommand",
    "DriverEvent",
    "DriverState",
    "EventType",
    "TERMINAL_STATES",
    "decode_event",
    "encode_command",
    "find_binary_path",
    "get_platform_id",
    "is_binary_available",
]
