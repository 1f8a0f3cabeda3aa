"""AgentDriver - spawns and supervises the agi-driver process.

agi-driver driver/driver v0.1.0

The driver communicates via JSON lines over stdin/stdout. AgentDriver owns
the process for one session at a time, drives the session state machine
from the events it reads, and exposes a listener-based interface.

Ordering guarantees:
- A single reader task pulls one line at a time; the next line is not read
  until the current one is fully handled
- confirm / ask_question listeners are awaited before the next line, so a
  listener never sees a newer prompt replace the one it is handling
- start() is settled before the process is released; whichever of
  "terminal event" and "process exit" comes first wins

Example:
    driver = AgentDriver()

    driver.on("action", lambda action, event: execute(action))
    driver.on("thinking", lambda text, event: print(text))

    async def approve(reason, event):
        return await ask_user(reason)

    driver.on("confirm", approve)

    result = await driver.start("Open calculator and compute 2+2")
    print(result.summary)
"""

from __future__ import annotations

import asyncio
import collections
import logging
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, Protocol

import anyio

from ..config import get_config
from ..errors import (
    DriverError,
    InvalidStateError,
    ProtocolError,
    SpawnError,
    UnexpectedExitError,
)
from .binary import find_binary_path
from .channel import ProcessChannel
from .listeners import Listener, ListenerRegistry
from .protocol import (
    TERMINAL_STATES,
    ActionEvent,
    AnswerCommand,
    AskQuestionEvent,
    ConfirmEvent,
    ConfirmResponseCommand,
    DriverCommand,
    DriverState,
    ErrorEvent,
    EventType,
    FinishedEvent,
    GetAudioTranscriptCommand,
    GetVideoFrameCommand,
    PauseCommand,
    ReadyEvent,
    ResumeCommand,
    ScreenshotCommand,
    StartCommand,
    StateChangeEvent,
    StopCommand,
    ThinkingEvent,
    decode_event,
    encode_command,
)

__all__ = [
    "AgentDriver",
    "DriverResult",
    "DriverChannel",
    "ChannelFactory",
    "LISTENER_KINDS",
]

logger = logging.getLogger(__name__)

# 除事件类型外，还支持 "event"（所有事件）和 "stderr"（诊断输出）
LISTENER_KINDS: frozenset[str] = frozenset(
    {kind.value for kind in EventType} | {"event", "stderr"}
)

# Bound on how long an EOF'd process may keep its pipes open before we give up
EXIT_WAIT_TIMEOUT = 5.0
# Bound on letting the reader drain buffered lines after stop()
READER_DRAIN_TIMEOUT = 0.5
# stderr ring buffer size
STDERR_MAX_SIZE = 64 * 1024


class DriverChannel(Protocol):
    """What AgentDriver needs from a process channel."""

    @property
    def returncode(self) -> int | None: ...

    def lines(self) -> AsyncIterator[str]: ...

    def stderr(self) -> AsyncIterator[str]: ...

    def write(self, line: str) -> bool: ...

    async def wait(self) -> int: ...

    async def kill(self) -> None: ...

    async def close(self) -> None: ...


ChannelFactory = Callable[[Path, Mapping[str, str]], Awaitable[DriverChannel]]


@dataclass
class DriverResult:
    """Result of a driver session.

    Attributes:
        success: Whether the task completed successfully
        reason: Reason for completion
        summary: Summary of what was accomplished
        step: Final step number
    """

    success: bool
    reason: str
    summary: str
    step: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "reason": self.reason,
            "summary": self.summary,
            "step": self.step,
        }


@dataclass
class _Prompt:
    """An interactive prompt awaiting a response."""

    event: ConfirmEvent | AskQuestionEvent | None
    answered: bool = False


def make_session_id() -> str:
    """生成会话 ID。格式: session_{毫秒时间戳}_{uuid短码}"""
    return f"session_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def _consume_exception(future: asyncio.Future[Any]) -> None:
    # Mark the exception as retrieved when start()'s caller has gone away
    if not future.cancelled():
        future.exception()


async def _open_process_channel(executable: Path, env: Mapping[str, str]) -> DriverChannel:
    return await ProcessChannel.open(executable, env=env)


class AgentDriver:
    """Supervises one agi-driver process per session.

    Attributes:
        binary_path: Driver executable
        model: Model selector sent with ``start``
        platform: Platform selector sent with ``start``
        mode: "local", "remote" or "" (SDK-driven)
        env: Extra environment variables for the driver process
        stop_timeout: Grace period before stop() force-kills the process
        start_options: Extra ``start`` fields (multimodal configuration)
    """

    def __init__(
        self,
        binary_path: str | Path | None = None,
        *,
        model: str | None = None,
        platform: Literal["desktop", "android"] | None = None,
        mode: str | None = None,
        env: Mapping[str, str] | None = None,
        stop_timeout: float | None = None,
        start_options: Mapping[str, Any] | None = None,
        channel_factory: ChannelFactory | None = None,
    ) -> None:
        """初始化 driver。

        Args:
            binary_path: Driver 可执行文件路径（None = 自动查找）
            model: 模型选择（默认从配置读取）
            platform: 平台选择（默认从配置读取）
            mode: 运行模式（默认从配置读取）
            env: 传给 driver 进程的环境变量
            stop_timeout: stop() 的宽限时间（秒，默认从配置读取）
            start_options: 透传到 start 命令的额外字段
            channel_factory: 自定义进程通道工厂（测试用）

        Raises:
            BinaryNotFoundError: 未指定路径且找不到 driver
        """
        config = get_config()

        self.binary_path = Path(binary_path) if binary_path is not None else find_binary_path()
        self.model = model if model is not None else config.model
        self.platform = platform if platform is not None else config.platform
        self.mode = mode if mode is not None else config.mode
        self.env: dict[str, str] = dict(env or {})
        self.stop_timeout = stop_timeout if stop_timeout is not None else config.stop_timeout
        self.start_options: dict[str, Any] = dict(start_options or {})
        self._channel_factory: ChannelFactory = channel_factory or _open_process_channel

        self._listeners = ListenerRegistry(LISTENER_KINDS)

        # 会话状态（每次 start() 重置）
        self._state = DriverState.IDLE
        self._step = 0
        self._session_id = ""
        self._started = False

        self._channel: DriverChannel | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._result: asyncio.Future[DriverResult] | None = None
        self._closed: asyncio.Event | None = None
        self._start_command: StartCommand | None = None
        self._start_sent = False
        self._stopping = False
        self._stop_reason: str | None = None
        self._closing = False

        self._confirm: _Prompt | None = None
        self._question: _Prompt | None = None
        self._stderr_chunks: collections.deque[str] = collections.deque()
        self._stderr_size = 0

    # =========================================================================
    # Read-only state
    # =========================================================================

    @property
    def current_state(self) -> DriverState:
        return self._state

    @property
    def current_step(self) -> int:
        return self._step

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def is_running(self) -> bool:
        return self._state is DriverState.RUNNING

    @property
    def is_waiting(self) -> bool:
        """Whether the driver is waiting for a confirmation or an answer."""
        return self._state in (DriverState.WAITING_CONFIRMATION, DriverState.WAITING_ANSWER)

    @property
    def is_alive(self) -> bool:
        """Whether a driver process is currently attached."""
        return self._channel is not None and not self._closing

    @property
    def pending_confirmation(self) -> ConfirmEvent | None:
        """The confirm event awaiting a response, if any."""
        prompt = self._confirm
        if prompt is None or not isinstance(prompt.event, ConfirmEvent):
            return None
        return prompt.event

    @property
    def pending_question(self) -> AskQuestionEvent | None:
        """The question awaiting an answer, if any."""
        prompt = self._question
        if prompt is None or not isinstance(prompt.event, AskQuestionEvent):
            return None
        return prompt.event

    # =========================================================================
    # Listener registration
    # =========================================================================

    def on(self, kind: str | EventType, listener: Listener) -> Listener:
        """Register a listener.

        Listener signatures by kind:
            state_change(state, event), thinking(text, event),
            action(action, event), confirm(reason, event) -> bool | None,
            ask_question(question, event) -> str | None, stderr(text),
            every other kind (event).

        confirm / ask_question listeners may be async; the first bool / str
        result is sent back to the driver unless respond_confirm() /
        respond_answer() was already called.

        Raises:
            ValueError: Unknown kind
        """
        return self._listeners.add(kind, listener)

    def once(self, kind: str | EventType, listener: Listener) -> Listener:
        """Register a listener that is removed after its first call."""
        return self._listeners.add(kind, listener, once=True)

    def off(self, kind: str | EventType, listener: Listener) -> bool:
        """Unregister a listener. Returns False if it was not registered."""
        return self._listeners.remove(kind, listener)

    def remove_all_listeners(self, kind: str | EventType | None = None) -> None:
        self._listeners.clear(kind)

    def listeners(self, kind: str | EventType) -> list[Listener]:
        return self._listeners.listeners(kind)

    # =========================================================================
    # Public operations
    # =========================================================================

    async def start(
        self,
        goal: str,
        screenshot: str = "",
        screen_width: int = 0,
        screen_height: int = 0,
        *,
        mode: str | None = None,
        **start_options: Any,
    ) -> DriverResult:
        """Start the agent with a goal and wait until it finishes.

        Spawns the driver, waits for ``ready``, sends ``start`` and then waits
        (without timeout) for ``finished``, a fatal ``error``, process exit
        or stop().

        Args:
            goal: The task for the agent to accomplish
            screenshot: Initial screenshot (base64). Not needed in local mode
            screen_width: Screen width in pixels
            screen_height: Screen height in pixels
            mode: Override the configured mode for this session
            **start_options: Extra ``start`` fields, passed through verbatim

        Returns:
            The session result

        Raises:
            InvalidStateError: A session is already running
            SpawnError: The driver could not be started
            UnrecoverableAgentError: The driver reported a fatal error
            UnexpectedExitError: The driver exited without finishing
        """
        if self._channel is not None or (self._result is not None and not self._result.done()):
            raise InvalidStateError("Driver is already running")

        session_id = make_session_id()
        start_command = StartCommand(
            session_id=session_id,
            goal=goal,
            screenshot=screenshot,
            screen_width=screen_width,
            screen_height=screen_height,
            platform=self.platform,
            model=self.model,
            mode=mode if mode is not None else self.mode,
            **{**self.start_options, **start_options},
        )

        # 核心：每次 start 重置会话状态，确保会话间隔离
        self._reset_session(session_id, start_command)
        result_future = self._result
        closed = self._closed
        assert result_future is not None and closed is not None

        logger.info(f"Starting driver session {session_id}: {self.binary_path}")

        try:
            channel = await self._channel_factory(self.binary_path, self.env)
        except SpawnError as e:
            logger.error(f"Failed to spawn driver: {e}")
            self._set_state(DriverState.ERROR)
            self._reject(e)
            await self._cleanup()
            raise

        self._channel = channel
        self._reader_task = asyncio.create_task(
            self._read_loop(channel), name=f"agi-driver-reader-{session_id}"
        )
        self._stderr_task = asyncio.create_task(
            self._pump_stderr(channel), name=f"agi-driver-stderr-{session_id}"
        )

        try:
            result = await asyncio.shield(result_future)
        except asyncio.CancelledError:
            logger.info(f"start() cancelled, stopping driver session {session_id}")
            await asyncio.shield(self.stop("cancelled"))
            raise
        except DriverError:
            await closed.wait()
            raise

        await closed.wait()
        return result

    def send_screenshot(
        self,
        data: str,
        screen_width: int | None = None,
        screen_height: int | None = None,
    ) -> None:
        """Send a new screenshot (base64) to the driver.

        No-op when no process is alive.

        Raises:
            InvalidStateError: The driver was never started
        """
        if not self._started:
            raise InvalidStateError("Driver is not running")
        self._send(ScreenshotCommand(
            data=data,
            screen_width=screen_width or 0,
            screen_height=screen_height or 0,
        ))

    def pause(self) -> None:
        """Ask the driver to pause. The state changes when it confirms."""
        self._send(PauseCommand())

    def resume(self) -> None:
        """Ask the driver to resume. The state changes when it confirms."""
        self._send(ResumeCommand())

    def request_audio_transcript(self) -> None:
        """Ask the driver to emit its current audio transcript."""
        self._send(GetAudioTranscriptCommand())

    def request_video_frame(self) -> None:
        """Ask the driver to emit its latest video frame."""
        self._send(GetVideoFrameCommand())

    async def stop(self, reason: str | None = None) -> None:
        """Stop the driver.

        Sends ``stop``, waits up to stop_timeout for the process to exit and
        force-kills it otherwise. A pending start() resolves with
        ``success=False`` unless a terminal event settled it first.
        Idempotent.
        """
        channel = self._channel
        if channel is None or self._closing:
            if self._closed is not None and self._channel is not None:
                await self._closed.wait()
            return
        if self._stopping:
            assert self._closed is not None
            await self._closed.wait()
            return

        self._stopping = True
        self._stop_reason = reason
        logger.info(f"Stopping driver session {self._session_id} (reason={reason})")
        self._send(StopCommand(reason=reason))

        with anyio.move_on_after(self.stop_timeout) as scope:
            await channel.wait()
        if scope.cancelled_caught:
            logger.warning(
                f"Driver did not exit within {self.stop_timeout}s, force killing"
            )
            await channel.kill()

        # 让 reader 处理退出前已写出的行（例如 finished 事件）
        reader = self._reader_task
        if reader is not None and reader is not asyncio.current_task() and not reader.done():
            await asyncio.wait({reader}, timeout=READER_DRAIN_TIMEOUT)

        self._settle_stopped()
        await self._cleanup()

    def respond_confirm(self, approved: bool, message: str | None = None) -> None:
        """Respond to a confirmation request.

        Raises:
            InvalidStateError: Not waiting for confirmation, or already answered
        """
        if not self.is_alive or self._state is not DriverState.WAITING_CONFIRMATION:
            raise InvalidStateError("Not waiting for confirmation")
        prompt = self._confirm
        if prompt is None or prompt.answered:
            raise InvalidStateError("Confirmation already answered")

        self._send(ConfirmResponseCommand(approved=approved, message=message))
        prompt.answered = True
        self._confirm = None

    def respond_answer(self, text: str, question_id: str | None = None) -> None:
        """Answer a question. ``question_id`` defaults to the pending question's id.

        Raises:
            InvalidStateError: Not waiting for an answer, or already answered
        """
        if not self.is_alive or self._state is not DriverState.WAITING_ANSWER:
            raise InvalidStateError("Not waiting for answer")
        prompt = self._question
        if prompt is None or prompt.answered:
            raise InvalidStateError("Question already answered")

        if question_id is None and isinstance(prompt.event, AskQuestionEvent):
            question_id = prompt.event.question_id or None
        self._send(AnswerCommand(text=text, question_id=question_id))
        prompt.answered = True
        self._question = None

    async def __aenter__(self) -> "AgentDriver":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # =========================================================================
    # Session plumbing
    # =========================================================================

    def _reset_session(self, session_id: str, start_command: StartCommand) -> None:
        loop = asyncio.get_running_loop()
        self._session_id = session_id
        self._started = True
        self._state = DriverState.IDLE
        self._step = 0
        self._start_command = start_command
        self._start_sent = False
        self._stopping = False
        self._stop_reason = None
        self._closing = False
        self._confirm = None
        self._question = None
        self._stderr_chunks.clear()
        self._stderr_size = 0
        self._reader_task = None
        self._stderr_task = None
        self._closed = asyncio.Event()
        self._result = loop.create_future()
        self._result.add_done_callback(_consume_exception)

    def _send(self, command: DriverCommand) -> bool:
        channel = self._channel
        if channel is None or self._closing:
            logger.debug(f"Dropping '{command.command}' command: no driver process")
            return False
        logger.debug(f"[DRIVER] -> {command.command}")
        return channel.write(encode_command(command))

    def _set_state(self, state: DriverState) -> None:
        if state is self._state:
            return
        logger.debug(f"Driver state {self._state.value} -> {state.value}")
        self._state = state
        if state is not DriverState.WAITING_CONFIRMATION:
            self._confirm = None
        if state is not DriverState.WAITING_ANSWER:
            self._question = None

    def _resolve(self, result: DriverResult) -> None:
        if self._result is not None and not self._result.done():
            self._result.set_result(result)

    def _reject(self, error: BaseException) -> None:
        if self._result is not None and not self._result.done():
            self._result.set_exception(error)

    def _settle_stopped(self) -> None:
        self._resolve(DriverResult(
            success=False,
            reason=self._stop_reason or "stopped",
            summary="",
            step=self._step,
        ))
        if self._state not in TERMINAL_STATES:
            self._set_state(DriverState.STOPPED)

    def _stderr_tail(self, max_lines: int = 5) -> str:
        content = "".join(self._stderr_chunks).strip()
        if not content:
            return ""
        return "\n".join(content.splitlines()[-max_lines:])

    async def _read_loop(self, channel: DriverChannel) -> None:
        """Single reader: one line in flight at a time."""
        try:
            async for line in channel.lines():
                await self._handle_line(line)
                if self._closing:
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Driver reader failed: {type(e).__name__}: {e}", exc_info=True)
            self._set_state(DriverState.ERROR)
            self._reject(DriverError(f"Driver reader failed: {e}"))
            await self._cleanup()
            return

        if self._closing:
            return

        exit_code: int | None = None
        with anyio.move_on_after(EXIT_WAIT_TIMEOUT):
            exit_code = await channel.wait()
        if exit_code is None:
            exit_code = channel.returncode
        await self._handle_exit(exit_code)

    async def _pump_stderr(self, channel: DriverChannel) -> None:
        """Forward stderr to listeners and keep a bounded tail for errors."""
        async for chunk in channel.stderr():
            self._stderr_chunks.append(chunk)
            self._stderr_size += len(chunk)
            while self._stderr_size > STDERR_MAX_SIZE and len(self._stderr_chunks) > 1:
                self._stderr_size -= len(self._stderr_chunks.popleft())
            logger.debug(f"[DRIVER stderr] {chunk.rstrip()}")
            self._listeners.emit("stderr", chunk)

    async def _handle_exit(self, exit_code: int | None) -> None:
        if self._closing:
            return

        if self._stopping:
            logger.info(f"Driver exited after stop (code={exit_code})")
            self._settle_stopped()
        else:
            # stderr 在退出后仍可能有未读数据，用于错误信息
            pump = self._stderr_task
            if pump is not None and not pump.done():
                await asyncio.wait({pump}, timeout=READER_DRAIN_TIMEOUT)
            error = UnexpectedExitError(exit_code, self._stderr_tail())
            logger.warning(f"Driver exited unexpectedly: {error}")
            if self._state not in TERMINAL_STATES:
                self._set_state(DriverState.ERROR)
            self._reject(error)

        await self._cleanup()

    async def _handle_line(self, line: str) -> None:
        """Decode one line and apply it to the state machine."""
        try:
            event = decode_event(line)
        except ProtocolError as e:
            logger.warning(f"Failed to parse driver line: {e} | {line[:200]}")
            self._emit_event(ErrorEvent(
                step=self._step,
                code="parse_error",
                message=str(e),
                recoverable=True,
            ))
            return

        if event is None:
            return

        logger.debug(f"[DRIVER] <- {event.event} step={event.step}")
        if event.step < self._step:
            logger.warning(f"Driver step went backwards: {self._step} -> {event.step}")
        self._step = event.step

        self._emit_event(event)
        await self._dispatch(event)

    def _emit_event(self, event: Any) -> None:
        """Catch-all notification, then synchronous per-kind handling."""
        self._listeners.emit("event", event)

        if isinstance(event, ErrorEvent):
            self._listeners.emit("error", event)
            if not event.recoverable:
                self._handle_fatal_error(event)
        elif not isinstance(event, (ConfirmEvent, AskQuestionEvent)):
            self._dispatch_passive(event)

    async def _dispatch(self, event: Any) -> None:
        """Interactive prompts and terminal teardown, awaited by the reader."""
        if isinstance(event, ConfirmEvent):
            await self._handle_confirm(event)
        elif isinstance(event, AskQuestionEvent):
            await self._handle_question(event)
        elif isinstance(event, FinishedEvent):
            await self._cleanup()
        elif isinstance(event, ErrorEvent) and not event.recoverable:
            await self._cleanup()

    def _dispatch_passive(self, event: Any) -> None:
        if isinstance(event, ReadyEvent):
            self._listeners.emit("ready", event)
            if (
                not self._start_sent
                and self._state is DriverState.IDLE
                and self._start_command is not None
            ):
                logger.info(
                    f"Driver ready (version={event.version or '?'}, "
                    f"protocol={event.protocol or '?'}), sending start"
                )
                self._start_sent = True
                self._send(self._start_command)
        elif isinstance(event, StateChangeEvent):
            self._set_state(event.state)
            if event.state is DriverState.WAITING_CONFIRMATION and self._confirm is None:
                self._confirm = _Prompt(event=None)
            elif event.state is DriverState.WAITING_ANSWER and self._question is None:
                self._question = _Prompt(event=None)
            self._listeners.emit("state_change", event.state, event)
        elif isinstance(event, ThinkingEvent):
            self._listeners.emit("thinking", event.text, event)
        elif isinstance(event, ActionEvent):
            self._listeners.emit("action", event.action, event)
        elif isinstance(event, FinishedEvent):
            self._handle_finished(event)
        else:
            self._listeners.emit(event.event, event)

    def _handle_finished(self, event: FinishedEvent) -> None:
        logger.info(
            f"Driver finished (success={event.success}, reason={event.reason}, step={event.step})"
        )
        self._set_state(DriverState.FINISHED)
        self._listeners.emit("finished", event)
        self._resolve(DriverResult(
            success=event.success,
            reason=event.reason,
            summary=event.summary,
            step=event.step,
        ))

    def _handle_fatal_error(self, event: ErrorEvent) -> None:
        logger.error(f"Driver fatal error: {event.code}: {event.message}")
        self._set_state(DriverState.ERROR)
        self._reject(event.to_exception())

    async def _handle_confirm(self, event: ConfirmEvent) -> None:
        self._set_state(DriverState.WAITING_CONFIRMATION)
        if self._confirm is not None and self._confirm.event is not None:
            logger.debug("New confirm request replaces an unanswered one")
        prompt = _Prompt(event=event)
        self._confirm = prompt

        def auto_respond(approved: bool) -> None:
            if self._confirm is not prompt or self._state is not DriverState.WAITING_CONFIRMATION:
                logger.debug("Confirm already answered, ignoring listener response")
                return
            self.respond_confirm(approved)

        await self._listeners.collect_first(
            "confirm", event.reason, event, accept=bool, on_response=auto_respond
        )

    async def _handle_question(self, event: AskQuestionEvent) -> None:
        self._set_state(DriverState.WAITING_ANSWER)
        prompt = _Prompt(event=event)
        self._question = prompt

        def auto_respond(answer: str) -> None:
            if self._question is not prompt or self._state is not DriverState.WAITING_ANSWER:
                logger.debug("Question already answered, ignoring listener response")
                return
            self.respond_answer(answer, event.question_id or None)

        await self._listeners.collect_first(
            "ask_question", event.question, event, accept=str, on_response=auto_respond
        )

    async def _cleanup(self) -> None:
        """Tear down the session exactly once.

        The start() future is settled before the process is released, so a
        late exit can never settle it a second time.
        """
        if self._closing:
            if self._closed is not None:
                await self._closed.wait()
            return
        self._closing = True

        try:
            self._reject(DriverError("Driver session closed"))
            if self._state not in TERMINAL_STATES:
                self._set_state(DriverState.STOPPED)

            # 丢弃待处理的交互，不调用它们
            self._confirm = None
            self._question = None

            current = asyncio.current_task()
            for task in (self._stderr_task, self._reader_task):
                if task is not None and task is not current and not task.done():
                    task.cancel()

            channel = self._channel
            if channel is not None:
                await channel.close()
        finally:
            self._channel = None
            if self._closed is not None:
                self._closed.set()
            logger.info(
                f"Driver session {self._session_id} closed "
                f"(state={self._state.value}, step={self._step})"
            )
