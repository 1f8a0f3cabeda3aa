"""Driver wire protocol: event and command models, line codec.

agi-driver driver/protocol v0.1.0

The driver speaks newline-delimited JSON:
- Events are emitted on stdout (driver -> SDK), tagged by ``event``
- Commands are sent on stdin (SDK -> driver), tagged by ``command``

Design:
1. Closed set of tagged variants - one pydantic model per message kind
2. Forward compatible - unknown event fields are ignored (extra='ignore')
3. Per-variant defaults - optional fields default instead of a catch-all dict
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from ..errors import (
    AgentError,
    ProtocolError,
    RecoverableAgentError,
    UnrecoverableAgentError,
)

__all__ = [
    # Enums
    "DriverState",
    "EventType",
    "TERMINAL_STATES",
    # Events
    "DriverAction",
    "BaseEvent",
    "ReadyEvent",
    "StateChangeEvent",
    "ThinkingEvent",
    "ActionEvent",
    "ConfirmEvent",
    "AskQuestionEvent",
    "FinishedEvent",
    "ErrorEvent",
    "ScreenshotCapturedEvent",
    "SessionCreatedEvent",
    "AudioTranscriptEvent",
    "VideoFrameEvent",
    "SpeechStartedEvent",
    "SpeechFinishedEvent",
    "TurnDetectedEvent",
    "DriverEvent",
    # Commands
    "BaseCommand",
    "StartCommand",
    "ScreenshotCommand",
    "PauseCommand",
    "ResumeCommand",
    "StopCommand",
    "ConfirmResponseCommand",
    "AnswerCommand",
    "GetAudioTranscriptCommand",
    "GetVideoFrameCommand",
    "DriverCommand",
    # Codec
    "TruncatedLine",
    "decode_event",
    "encode_command",
]


class DriverState(str, Enum):
    """Driver session state."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    WAITING_CONFIRMATION = "waiting_confirmation"
    WAITING_ANSWER = "waiting_answer"
    FINISHED = "finished"
    STOPPED = "stopped"
    ERROR = "error"


TERMINAL_STATES: frozenset[DriverState] = frozenset({
    DriverState.FINISHED,
    DriverState.STOPPED,
    DriverState.ERROR,
})


class EventType(str, Enum):
    """Event kinds emitted by the driver."""

    READY = "ready"
    STATE_CHANGE = "state_change"
    THINKING = "thinking"
    ACTION = "action"
    CONFIRM = "confirm"
    ASK_QUESTION = "ask_question"
    FINISHED = "finished"
    ERROR = "error"
    # Passive telemetry
    SCREENSHOT_CAPTURED = "screenshot_captured"
    SESSION_CREATED = "session_created"
    AUDIO_TRANSCRIPT = "audio_transcript"
    VIDEO_FRAME = "video_frame"
    SPEECH_STARTED = "speech_started"
    SPEECH_FINISHED = "speech_finished"
    TURN_DETECTED = "turn_detected"


# =============================================================================
# Events (driver -> SDK)
# =============================================================================


class DriverAction(BaseModel):
    """An action the agent wants executed on the local machine.

    Only ``type`` is required; coordinates and any action-specific keys
    (``text``, ``key``, ``direction`` ...) are kept as extra fields.
    """

    model_config = ConfigDict(extra="allow")

    type: str
    x: int | float | None = None
    y: int | float | None = None


class BaseEvent(BaseModel):
    """Base class for all driver events.

    Attributes:
        event: Discriminator
        step: Driver iteration counter, non-decreasing
    """

    model_config = ConfigDict(extra="ignore")

    event: str
    step: int


class ReadyEvent(BaseEvent):
    event: Literal["ready"] = "ready"
    version: str = ""
    protocol: str = ""


class StateChangeEvent(BaseEvent):
    event: Literal["state_change"] = "state_change"
    state: DriverState


class ThinkingEvent(BaseEvent):
    event: Literal["thinking"] = "thinking"
    text: str


class ActionEvent(BaseEvent):
    event: Literal["action"] = "action"
    action: DriverAction


class ConfirmEvent(BaseEvent):
    """The driver asks for approval before performing ``action``."""

    event: Literal["confirm"] = "confirm"
    action: DriverAction
    reason: str


class AskQuestionEvent(BaseEvent):
    """The driver asks the user a free-text question."""

    event: Literal["ask_question"] = "ask_question"
    question: str
    question_id: str = ""


class FinishedEvent(BaseEvent):
    event: Literal["finished"] = "finished"
    success: bool
    reason: str = ""
    summary: str = ""


class ErrorEvent(BaseEvent):
    """Error reported by the driver, or synthesized by the supervisor."""

    event: Literal["error"] = "error"
    message: str
    code: str = "error"
    recoverable: bool = False

    def to_exception(self) -> AgentError:
        """The matching exception: RecoverableAgentError or UnrecoverableAgentError."""
        cls = RecoverableAgentError if self.recoverable else UnrecoverableAgentError
        return cls(self.code, self.message, self.step)


class ScreenshotCapturedEvent(BaseEvent):
    """Emitted in local mode when the driver captures a screenshot (no image data)."""

    event: Literal["screenshot_captured"] = "screenshot_captured"
    width: int = 0
    height: int = 0


class SessionCreatedEvent(BaseEvent):
    """Emitted after the driver creates an API session."""

    event: Literal["session_created"] = "session_created"
    session_id: str
    agent_url: str = ""
    environment_url: str | None = None
    vnc_url: str | None = None


class AudioTranscriptEvent(BaseEvent):
    event: Literal["audio_transcript"] = "audio_transcript"
    text: str
    is_final: bool = True
    speaker: str | None = None


class VideoFrameEvent(BaseEvent):
    event: Literal["video_frame"] = "video_frame"
    frame: str = ""
    width: int = 0
    height: int = 0
    timestamp: float | None = None


class SpeechStartedEvent(BaseEvent):
    event: Literal["speech_started"] = "speech_started"
    text: str = ""


class SpeechFinishedEvent(BaseEvent):
    event: Literal["speech_finished"] = "speech_finished"
    text: str = ""


class TurnDetectedEvent(BaseEvent):
    event: Literal["turn_detected"] = "turn_detected"
    speaker: str | None = None


DriverEvent = Annotated[
    Union[
        ReadyEvent,
        StateChangeEvent,
        ThinkingEvent,
        ActionEvent,
        ConfirmEvent,
        AskQuestionEvent,
        FinishedEvent,
        ErrorEvent,
        ScreenshotCapturedEvent,
        SessionCreatedEvent,
        AudioTranscriptEvent,
        VideoFrameEvent,
        SpeechStartedEvent,
        SpeechFinishedEvent,
        TurnDetectedEvent,
    ],
    Field(discriminator="event"),
]


# =============================================================================
# Commands (SDK -> driver)
# =============================================================================


class BaseCommand(BaseModel):
    """Base class for all commands."""

    model_config = ConfigDict(extra="forbid")

    command: str


class StartCommand(BaseCommand):
    """Start a session.

    Unknown keyword fields (``audio``, ``video``, ``speech``, ``mcp_servers``
    ...) are multimodal options passed through to the driver verbatim.
    """

    model_config = ConfigDict(extra="allow")

    command: Literal["start"] = "start"
    session_id: str
    goal: str
    screenshot: str = ""
    screen_width: int = 0
    screen_height: int = 0
    platform: Literal["desktop", "android"] = "desktop"
    model: str = "claude-sonnet"
    # "local" for autonomous mode, "remote" for managed VM, "" for SDK-driven mode
    mode: str | None = None
    agent_name: str | None = None
    api_url: str | None = None
    environment_type: str | None = None


class ScreenshotCommand(BaseCommand):
    command: Literal["screenshot"] = "screenshot"
    data: str
    screen_width: int = 0
    screen_height: int = 0


class PauseCommand(BaseCommand):
    command: Literal["pause"] = "pause"


class ResumeCommand(BaseCommand):
    command: Literal["resume"] = "resume"


class StopCommand(BaseCommand):
    command: Literal["stop"] = "stop"
    reason: str | None = None


class ConfirmResponseCommand(BaseCommand):
    command: Literal["confirm"] = "confirm"
    approved: bool
    message: str | None = None


class AnswerCommand(BaseCommand):
    command: Literal["answer"] = "answer"
    text: str
    question_id: str | None = None


class GetAudioTranscriptCommand(BaseCommand):
    command: Literal["get_audio_transcript"] = "get_audio_transcript"


class GetVideoFrameCommand(BaseCommand):
    command: Literal["get_video_frame"] = "get_video_frame"


DriverCommand = Union[
    StartCommand,
    ScreenshotCommand,
    PauseCommand,
    ResumeCommand,
    StopCommand,
    ConfirmResponseCommand,
    AnswerCommand,
    GetAudioTranscriptCommand,
    GetVideoFrameCommand,
]


# =============================================================================
# Codec
# =============================================================================

_EVENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(DriverEvent)


class TruncatedLine(str):
    """Placeholder for a stdout line dropped for exceeding the stream limit.

    Compares equal to the empty string; ``size`` is the number of bytes
    discarded.
    """

    size: int

    def __new__(cls, size: int) -> TruncatedLine:
        line = super().__new__(cls, "")
        line.size = size
        return line


def decode_event(line: str) -> DriverEvent | None:
    """Decode one stdout line into a typed event.

    Args:
        line: Raw line, with or without trailing newline

    Returns:
        The decoded event, or None for a blank line

    Raises:
        ProtocolError: If the line is not a valid event
    """
    if isinstance(line, TruncatedLine):
        raise ProtocolError(f"Line exceeds the stream limit ({line.size} bytes)")

    if not line.strip():
        return None

    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid JSON: {e.msg}", line=line) from e

    if not isinstance(data, dict):
        raise ProtocolError(
            f"Expected a JSON object, got {type(data).__name__}", line=line
        )
    if "event" not in data:
        raise ProtocolError("Missing 'event' field", line=line)

    try:
        return _EVENT_ADAPTER.validate_python(data)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        )
        raise ProtocolError(
            f"Invalid '{data.get('event')}' event: {details}", line=line
        ) from e


def encode_command(command: DriverCommand) -> str:
    """Serialize a command to a single JSON line (without newline).

    None-valued optional fields are omitted.
    """
    return command.model_dump_json(exclude_none=True)
