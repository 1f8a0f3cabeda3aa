"""agi-driver 环境变量配置管理。

环境变量:
    AGI_DRIVER_PATH: driver 可执行文件路径（或所在目录）
        - 未设置 = 在包内 bin/ 和 PATH 中查找

    AGI_DRIVER_MODEL: start 命令中的模型选择
        - 默认 claude-sonnet

    AGI_DRIVER_PLATFORM: 平台选择
        - desktop (默认) / android
        - 无效值回退到 desktop

    AGI_DRIVER_MODE: 运行模式
        - local = driver 自行截图和执行动作
        - remote = 托管虚拟机
        - 空 (默认) = 由 SDK 提供截图并执行动作

    AGI_DRIVER_STOP_TIMEOUT: stop() 宽限时间（秒）
        - 默认 1.0 秒，限制在 0.1-30 秒范围

    AGI_DRIVER_AUTO_APPROVE: MCP 服务自动批准确认请求
        - true/1/yes = 批准
        - false/0/no = 拒绝 (默认)

    AGI_DRIVER_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config"]

SUPPORTED_PLATFORMS = frozenset({"desktop", "android"})
SUPPORTED_MODES = frozenset({"", "local", "remote"})

DEFAULT_MODEL = "claude-sonnet"
DEFAULT_STOP_TIMEOUT = 1.0


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_platform(value: str | None) -> str:
    if not value:
        return "desktop"
    value = value.strip().lower()
    return value if value in SUPPORTED_PLATFORMS else "desktop"


def _parse_mode(value: str | None) -> str:
    if not value:
        return ""
    value = value.strip().lower()
    return value if value in SUPPORTED_MODES else ""


def _parse_stop_timeout(value: str | None) -> float:
    """解析 stop 宽限时间环境变量。"""
    if not value:
        return DEFAULT_STOP_TIMEOUT
    try:
        timeout = float(value)
        return max(0.1, min(timeout, 30.0))  # 限制在 0.1-30 秒范围
    except ValueError:
        return DEFAULT_STOP_TIMEOUT


@dataclass
class Config:
    """agi-driver 配置。

    Attributes:
        driver_path: driver 路径覆盖（None = 自动查找）
        model: 默认模型
        platform: 默认平台
        mode: 默认运行模式
        stop_timeout: stop() 宽限时间（秒）
        auto_approve: MCP 服务是否自动批准确认请求
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
    """

    driver_path: str | None = None
    model: str = DEFAULT_MODEL
    platform: str = "desktop"
    mode: str = ""
    stop_timeout: float = DEFAULT_STOP_TIMEOUT
    auto_approve: bool = False
    log_debug: bool = False
    log_file: str | None = None

    def __repr__(self) -> str:
        return (
            f"Config(driver_path={self.driver_path or 'auto'}, "
            f"model={self.model}, "
            f"platform={self.platform}, "
            f"mode={self.mode or 'sdk'}, "
            f"stop_timeout={self.stop_timeout}, "
            f"auto_approve={self.auto_approve}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file})"
        )


def _generate_log_file_path() -> str:
    """生成日志文件路径。

    Returns:
        临时目录下的日志文件绝对路径
    """
    log_dir = Path(tempfile.gettempdir()) / "agi-driver"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"agi_driver_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get("AGI_DRIVER_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        driver_path=os.environ.get("AGI_DRIVER_PATH") or None,
        model=os.environ.get("AGI_DRIVER_MODEL", "").strip() or DEFAULT_MODEL,
        platform=_parse_platform(os.environ.get("AGI_DRIVER_PLATFORM")),
        mode=_parse_mode(os.environ.get("AGI_DRIVER_MODE")),
        stop_timeout=_parse_stop_timeout(os.environ.get("AGI_DRIVER_STOP_TIMEOUT")),
        auto_approve=_parse_bool(os.environ.get("AGI_DRIVER_AUTO_APPROVE"), default=False),
        log_debug=log_debug,
        log_file=log_file,
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config
