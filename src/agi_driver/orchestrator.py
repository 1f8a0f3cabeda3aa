"""运行编排与管理模块。

提供会话级别的隔离和管理，包括：
- RunRegistry: 活动 driver 会话的登记和管理
- 批量停止（服务退出时确保没有遗留的 driver 进程）
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from .driver.driver import AgentDriver

__all__ = ["RunRegistry", "RunInfo"]

logger = logging.getLogger(__name__)


@dataclass
class RunInfo:
    """活动会话的信息。

    Attributes:
        run_id: 唯一会话标识符
        driver: 执行该会话的 AgentDriver
        task: 关联的 asyncio Task
        goal: 任务目标
        created_at: 创建时间
    """

    run_id: str
    driver: AgentDriver
    task: asyncio.Task
    goal: str = ""
    created_at: datetime = field(default_factory=datetime.now)

    def __repr__(self) -> str:
        elapsed = (datetime.now() - self.created_at).total_seconds()
        status = "running" if not self.task.done() else "done"
        return (
            f"RunInfo(id={self.run_id[:8]}..., "
            f"state={self.driver.current_state.value}, "
            f"step={self.driver.current_step}, "
            f"status={status}, "
            f"elapsed={elapsed:.1f}s)"
        )


class RunRegistry:
    """活动会话的注册表。

    所有操作都是同步的（stop_all 除外），由调用方保证在同一个事件循环中调用。

    Example:
        ```python
        registry = RunRegistry()

        run_id = registry.generate_run_id()
        task = asyncio.create_task(driver.start(goal))
        registry.register(run_id, driver, task, goal=goal)

        # 服务退出时
        stopped = await registry.stop_all("shutdown")
        ```
    """

    def __init__(self) -> None:
        self._runs: Dict[str, RunInfo] = {}

    @staticmethod
    def generate_run_id() -> str:
        """生成唯一的会话 ID（UUID4）。"""
        return str(uuid.uuid4())

    def register(
        self,
        run_id: str,
        driver: AgentDriver,
        task: asyncio.Task,
        goal: str = "",
    ) -> None:
        """登记新会话。

        Raises:
            ValueError: 如果 run_id 已存在
        """
        if run_id in self._runs:
            raise ValueError(f"Run {run_id} already registered")

        info = RunInfo(run_id=run_id, driver=driver, task=task, goal=goal)
        self._runs[run_id] = info
        logger.debug(f"Registered run: {info}")

    def unregister(self, run_id: str) -> bool:
        """注销会话。

        Returns:
            是否成功注销（会话存在则返回 True）
        """
        info = self._runs.pop(run_id, None)
        if info is None:
            return False
        logger.debug(f"Unregistered run: {info}")
        return True

    def get(self, run_id: str) -> Optional[RunInfo]:
        return self._runs.get(run_id)

    def has_active_runs(self) -> bool:
        """检查是否有未完成的会话。"""
        return any(not info.task.done() for info in self._runs.values())

    @property
    def active_count(self) -> int:
        """未完成的会话数量。"""
        return sum(1 for info in self._runs.values() if not info.task.done())

    def list_runs(self) -> list[RunInfo]:
        """列出所有会话（按创建时间排序）。"""
        return sorted(self._runs.values(), key=lambda x: x.created_at)

    async def stop_all(self, reason: str = "shutdown") -> int:
        """停止所有活动会话。

        先让每个 driver 优雅停止（stop 命令 + 宽限时间），
        stop 后 start() 正常返回，关联的 task 随之结束。

        Args:
            reason: 传给 driver 的停止原因

        Returns:
            发起停止的会话数量
        """
        active = [info for info in self._runs.values() if not info.task.done()]
        if not active:
            return 0

        logger.info(f"Stopping {len(active)} active run(s): {reason}")
        results = await asyncio.gather(
            *(info.driver.stop(reason) for info in active),
            return_exceptions=True,
        )
        for info, result in zip(active, results):
            if isinstance(result, Exception):
                logger.warning(f"Failed to stop run {info.run_id[:8]}: {result}")

        return len(active)

    def __len__(self) -> int:
        return len(self._runs)

    def __contains__(self, run_id: str) -> bool:
        return run_id in self._runs
