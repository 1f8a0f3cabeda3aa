"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import AsyncIterator, Mapping
from pathlib import Path
from typing import Any

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

FAKE_DRIVER = Path(__file__).parent / "fixtures" / "fake_driver.py"


class FakeChannel:
    """In-memory channel: tests feed stdout lines and inspect written commands.

    Example:
        channel = FakeChannel()
        channel.feed({"event": "ready", "step": 0})
        channel.exit(0)
    """

    def __init__(self, *, exit_on_stop: bool = True) -> None:
        self.exit_on_stop = exit_on_stop
        self.written: list[str] = []
        self.returncode: int | None = None
        self.closed = False
        self.killed = False
        self._lines: asyncio.Queue[str | None] = asyncio.Queue()
        self._stderr: asyncio.Queue[str | None] = asyncio.Queue()
        self._exited = asyncio.Event()
        self._written_event = asyncio.Event()

    # 测试侧
    def feed(self, data: dict[str, Any] | str) -> None:
        line = data if isinstance(data, str) else json.dumps(data)
        self._lines.put_nowait(line)

    def feed_stderr(self, text: str) -> None:
        self._stderr.put_nowait(text)

    def exit(self, code: int = 0) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self._lines.put_nowait(None)
        self._stderr.put_nowait(None)
        self._exited.set()

    @property
    def commands(self) -> list[dict[str, Any]]:
        return [json.loads(line) for line in self.written]

    def commands_of(self, kind: str) -> list[dict[str, Any]]:
        return [c for c in self.commands if c["command"] == kind]

    async def wait_for_command(self, kind: str, timeout: float = 2.0) -> dict[str, Any]:
        async def _wait() -> dict[str, Any]:
            while True:
                found = self.commands_of(kind)
                if found:
                    return found[-1]
                self._written_event.clear()
                await self._written_event.wait()

        return await asyncio.wait_for(_wait(), timeout)

    # 通道侧
    async def lines(self) -> AsyncIterator[str]:
        while not self.closed:
            line = await self._lines.get()
            if line is None or self.closed:
                return
            yield line

    async def stderr(self) -> AsyncIterator[str]:
        while True:
            chunk = await self._stderr.get()
            if chunk is None:
                return
            yield chunk

    def write(self, line: str) -> bool:
        if self.closed or self.returncode is not None:
            return False
        self.written.append(line)
        self._written_event.set()
        if self.exit_on_stop and json.loads(line).get("command") == "stop":
            self.exit(0)
        return True

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode

    async def kill(self) -> None:
        self.killed = True
        self.exit(-9)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.exit(-15)


class ChannelFactory:
    """Hands out a prepared FakeChannel and records spawn calls."""

    def __init__(self, channel: FakeChannel) -> None:
        self.channel = channel
        self.calls: list[tuple[Path, Mapping[str, str]]] = []

    async def __call__(self, executable: Path, env: Mapping[str, str]) -> FakeChannel:
        self.calls.append((executable, env))
        return self.channel


@pytest.fixture
def fake_channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def channel_factory(fake_channel: FakeChannel) -> ChannelFactory:
    return ChannelFactory(fake_channel)


@pytest.fixture
def fake_driver_path() -> Path:
    """Fake driver 脚本路径。"""
    return FAKE_DRIVER


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch: pytest.MonkeyPatch) -> None:
    """每个测试使用干净的环境变量配置。"""
    from agi_driver import config

    for name in (
        "AGI_DRIVER_PATH",
        "AGI_DRIVER_MODEL",
        "AGI_DRIVER_PLATFORM",
        "AGI_DRIVER_MODE",
        "AGI_DRIVER_STOP_TIMEOUT",
        "AGI_DRIVER_AUTO_APPROVE",
        "AGI_DRIVER_LOG_DEBUG",
    ):
        monkeypatch.delenv(name, raising=False)
    config.reload_config()
    yield
    config._config = None
