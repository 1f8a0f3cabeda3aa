"""agi-driver MCP 应用入口。

包含服务器生命周期管理和主入口点。
"""

from __future__ import annotations

import asyncio
import logging
import sys

from mcp.server.stdio import stdio_server

from .config import get_config
from .orchestrator import RunRegistry
from .server import create_server

__all__ = ["run_server", "main"]

logger = logging.getLogger(__name__)


async def run_server() -> None:
    """运行 MCP Server（stdio 传输）。

    退出时（客户端断开、取消或异常）停止所有活动的 driver 会话，
    确保不会遗留 driver 进程。
    """
    config = get_config()
    logger.info(f"Starting agi-driver MCP Server: {config}")

    registry = RunRegistry()
    server = create_server(registry)

    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )
        logger.debug("MCP server completed normally")

    except asyncio.CancelledError:
        logger.info("run_server: cancelled")
        raise

    except BaseException as e:
        logger.error(
            f"run_server: BaseException caught: type={type(e).__name__}, "
            f"msg={e}"
        )
        raise

    finally:
        logger.info("run_server: entering finally block")
        # 停止所有活动会话（屏蔽取消，确保 driver 进程被回收）
        stopped = await asyncio.shield(registry.stop_all("server shutdown"))
        if stopped:
            logger.info(f"Stopped {stopped} active run(s)")
        logger.info("run_server: cleanup completed")


def main() -> None:
    """主入口点。"""
    config = get_config()

    # 配置日志输出
    log_handlers: list[logging.Handler] = []
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    if config.log_debug and config.log_file:
        # LOG_DEBUG 模式：输出到临时文件
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        # 默认模式：输出到 stderr（stdout 用于 MCP 协议）
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(formatter)
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    # 配置 root logger（第三方库）为 WARNING，减少噪音
    logging.basicConfig(
        level=logging.WARNING,
        handlers=log_handlers,
    )
    # 只对 agi_driver 命名空间启用详细日志
    logging.getLogger("agi_driver").setLevel(log_level)

    try:
        asyncio.run(run_server())
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting")


if __name__ == "__main__":
    main()
