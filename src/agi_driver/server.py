"""agi-driver MCP Server。

通过 MCP 暴露 agi-driver：一个工具运行一次完整的 agent 会话，
收集事件流（思考、动作、状态变化、错误）并返回结果。

环境变量:
    AGI_DRIVER_PATH: driver 可执行文件路径
    AGI_DRIVER_MODEL: 默认模型
    AGI_DRIVER_PLATFORM: 默认平台 (desktop/android)
    AGI_DRIVER_MODE: 默认运行模式 (local/remote/空)
    AGI_DRIVER_AUTO_APPROVE: 默认是否批准确认请求

用法:
    agi-driver-mcp
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

from mcp.server import Server
from mcp.types import TextContent, Tool

from .config import Config, get_config
from .driver.binary import find_binary_path, get_platform_id
from .driver.driver import AgentDriver
from .driver.protocol import ActionEvent, DriverAction, DriverState, ErrorEvent, ThinkingEvent
from .errors import BinaryNotFoundError, DriverError
from .orchestrator import RunRegistry

__all__ = ["create_server", "run_agent_task", "format_error_response", "TOOL_NAMES"]

logger = logging.getLogger(__name__)

TOOL_NAMES = ("agent_run", "driver_info")

AGENT_RUN_DESCRIPTION = (
    "Run the agi-driver computer-use agent on a goal until it finishes. "
    "Returns the result together with the agent's thinking, actions, "
    "state changes and errors. Confirmation requests are answered with "
    "auto_approve; questions are answered with default_answer."
)

DRIVER_INFO_DESCRIPTION = (
    "Show the platform id and the resolved agi-driver binary path "
    "(or why it could not be found)."
)

AGENT_RUN_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "goal": {
            "type": "string",
            "description": "The task for the agent to accomplish.",
        },
        "model": {
            "type": "string",
            "description": "Model selector (default from AGI_DRIVER_MODEL).",
        },
        "platform": {
            "type": "string",
            "enum": ["desktop", "android"],
            "description": "Target platform (default from AGI_DRIVER_PLATFORM).",
        },
        "mode": {
            "type": "string",
            "enum": ["", "local", "remote"],
            "description": "Run mode. 'local' lets the driver capture the screen itself.",
        },
        "auto_approve": {
            "type": "boolean",
            "description": "Answer confirmation requests with approve (true) or reject (false).",
        },
        "default_answer": {
            "type": "string",
            "description": "Answer sent to questions from the agent. Unanswered questions stop the run.",
        },
    },
    "required": ["goal"],
}

DriverFactory = Callable[..., AgentDriver]


def format_error_response(error: str) -> list[TextContent]:
    """统一的错误响应格式。"""
    payload = {"success": False, "error": error}
    return [TextContent(type="text", text=json.dumps(payload, ensure_ascii=False))]


def _action_to_dict(action: DriverAction) -> dict[str, Any]:
    return action.model_dump(exclude_none=True)


async def run_agent_task(
    arguments: dict[str, Any],
    config: Config,
    registry: RunRegistry | None = None,
    driver_factory: DriverFactory = AgentDriver,
) -> dict[str, Any]:
    """运行一次 agent 会话并收集事件轨迹。

    Args:
        arguments: agent_run 工具参数
        config: 全局配置
        registry: 会话注册表（可选，用于退出时停止）
        driver_factory: AgentDriver 构造函数（测试时可替换）

    Returns:
        包含 result 和 trace 的字典

    Raises:
        ValueError: 缺少 goal
        DriverError: 会话失败（启动失败、致命错误、意外退出）
    """
    goal = str(arguments.get("goal") or "").strip()
    if not goal:
        raise ValueError("'goal' is required")

    auto_approve = arguments.get("auto_approve")
    if auto_approve is None:
        auto_approve = config.auto_approve
    default_answer = arguments.get("default_answer")

    driver = driver_factory(
        binary_path=config.driver_path,
        model=arguments.get("model") or config.model,
        platform=arguments.get("platform") or config.platform,
        mode=arguments.get("mode") if arguments.get("mode") is not None else config.mode,
        stop_timeout=config.stop_timeout,
    )

    trace: dict[str, list[Any]] = {
        "thinking": [],
        "actions": [],
        "states": [],
        "errors": [],
    }

    def on_thinking(text: str, event: ThinkingEvent) -> None:
        trace["thinking"].append(text)

    def on_action(action: DriverAction, event: ActionEvent) -> None:
        trace["actions"].append({"step": event.step, **_action_to_dict(action)})

    def on_state(state: DriverState, event: Any) -> None:
        trace["states"].append(state.value)

    def on_error(event: ErrorEvent) -> None:
        trace["errors"].append({
            "step": event.step,
            "code": event.code,
            "message": event.message,
            "recoverable": event.recoverable,
        })

    def on_confirm(reason: str, event: Any) -> bool:
        logger.info(f"Confirm requested at step {event.step}: {reason} -> {auto_approve}")
        return bool(auto_approve)

    async def on_question(question: str, event: Any) -> str | None:
        if default_answer is not None:
            logger.info(f"Question at step {event.step}: {question} -> {default_answer!r}")
            return str(default_answer)
        logger.warning(f"Unanswered question at step {event.step}, stopping: {question}")
        await driver.stop("question not answered")
        return None

    driver.on("thinking", on_thinking)
    driver.on("action", on_action)
    driver.on("state_change", on_state)
    driver.on("error", on_error)
    driver.on("confirm", on_confirm)
    driver.on("ask_question", on_question)

    run_id = None
    if registry is not None:
        run_id = registry.generate_run_id()
        current_task = asyncio.current_task()
        if current_task:
            registry.register(run_id, driver, current_task, goal=goal)
        else:
            run_id = None

    try:
        result = await driver.start(goal)
    finally:
        if registry is not None and run_id:
            registry.unregister(run_id)

    return {
        "success": result.success,
        "session_id": driver.session_id,
        "result": result.to_dict(),
        "trace": trace,
    }


def driver_info(config: Config) -> dict[str, Any]:
    """driver_info 工具的实现。"""
    info: dict[str, Any] = {
        "model": config.model,
        "platform": config.platform,
        "mode": config.mode,
    }
    try:
        info["platform_id"] = get_platform_id()
        info["binary_path"] = str(find_binary_path())
        info["available"] = True
    except BinaryNotFoundError as e:
        info["available"] = False
        info["error"] = str(e)
    return info


def create_server(registry: RunRegistry | None = None) -> Server:
    """创建 MCP Server 实例。

    Args:
        registry: 会话注册表（可选，用于退出时停止活动会话）
    """
    config = get_config()
    server = Server("agi-driver")

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """列出可用工具。"""
        tools = [
            Tool(
                name="agent_run",
                description=AGENT_RUN_DESCRIPTION,
                inputSchema=AGENT_RUN_SCHEMA,
            ),
            Tool(
                name="driver_info",
                description=DRIVER_INFO_DESCRIPTION,
                inputSchema={"type": "object", "properties": {}, "required": []},
            ),
        ]
        logger.debug(f"[MCP] list_tools called, returning {len(tools)} tools")
        return tools

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        """调用工具。"""
        logger.debug(f"[MCP] call_tool: name={name}, arguments={list(arguments)}")

        if name == "driver_info":
            payload = driver_info(config)
            return [TextContent(type="text", text=json.dumps(payload, ensure_ascii=False))]

        if name != "agent_run":
            return format_error_response(f"Unknown tool '{name}'")

        try:
            payload = await run_agent_task(arguments, config, registry)
        except asyncio.CancelledError:
            logger.info(f"Tool '{name}' cancelled")
            raise
        except (ValueError, DriverError) as e:
            logger.error(f"Tool '{name}' failed: {type(e).__name__}: {e}")
            return format_error_response(str(e))

        return [TextContent(type="text", text=json.dumps(payload, ensure_ascii=False))]

    return server
