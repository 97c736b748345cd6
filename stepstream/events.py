"""Wire events emitted by the research agent stream."""

from typing import Any, ClassVar, Literal

from stepstream.interface import Record

StreamEventKind = Literal[
    "model",
    "step-start",
    "step-finish",
    "tool-call",
    "tool-result",
    "tool-error",
    "text-delta",
    "reasoning-start",
    "reasoning-delta",
    "reasoning-end",
    "finish",
    "error",
]


class StreamEventBase(Record, tag_field="type", rename="camel"):
    """Base class shared by all decoded stream events."""

    KIND: ClassVar[StreamEventKind]

    @property
    def kind(self) -> StreamEventKind:
        return self.KIND


class ModelEvent(StreamEventBase, tag="model"):
    KIND = "model"
    model: str | None = None


class StepStartEvent(StreamEventBase, tag="step-start"):
    KIND = "step-start"

    step_number: int | None = None
    """Reasoning step counter assigned by the upstream agent runtime."""


class StepFinishEvent(StreamEventBase, tag="step-finish"):
    KIND = "step-finish"
    step_number: int | None = None
    finish_reason: str | None = None


class ToolCallEvent(StreamEventBase, tag="tool-call"):
    KIND = "tool-call"

    tool_call_id: str | None = None
    """Identifier joining this call to its later result or error."""

    tool_name: str | None = None
    """Registered tool the model invoked."""

    args: Any = None
    """Tool input as emitted by the model, passed through untouched."""

    step_number: int | None = None
    """Optional explicit reasoning step tag, used for parallel grouping."""


class ToolResultEvent(StreamEventBase, tag="tool-result"):
    KIND = "tool-result"
    tool_call_id: str | None = None
    tool_name: str | None = None
    result: Any = None


class ToolErrorEvent(StreamEventBase, tag="tool-error"):
    KIND = "tool-error"
    tool_call_id: str | None = None
    tool_name: str | None = None
    error: Any = None

    @property
    def message(self) -> str:
        if self.error is None:
            return "Tool failed"
        return self.error if isinstance(self.error, str) else str(self.error)


class TextDeltaEvent(StreamEventBase, tag="text-delta"):
    KIND = "text-delta"

    delta: str | None = None
    """Text fragment appended to the report."""

    text_delta: str | None = None
    """Legacy spelling of `delta` used by older stream producers."""

    @property
    def text(self) -> str:
        return self.delta or self.text_delta or ""


class ReasoningStartEvent(StreamEventBase, tag="reasoning-start"):
    KIND = "reasoning-start"
    id: str | None = None


class ReasoningDeltaEvent(StreamEventBase, tag="reasoning-delta"):
    KIND = "reasoning-delta"
    id: str | None = None
    delta: str | None = None


class ReasoningEndEvent(StreamEventBase, tag="reasoning-end"):
    KIND = "reasoning-end"
    id: str | None = None


class FinishEvent(StreamEventBase, tag="finish"):
    KIND = "finish"
    finish_reason: str | None = None


class ErrorEvent(StreamEventBase, tag="error"):
    KIND = "error"
    error: Any = None

    @property
    def message(self) -> str:
        if not self.error:
            return "Stream error"
        return self.error if isinstance(self.error, str) else str(self.error)


StreamEvent = (
    ModelEvent
    | StepStartEvent
    | StepFinishEvent
    | ToolCallEvent
    | ToolResultEvent
    | ToolErrorEvent
    | TextDeltaEvent
    | ReasoningStartEvent
    | ReasoningDeltaEvent
    | ReasoningEndEvent
    | FinishEvent
    | ErrorEvent
)


class TransportErrorEvent(Record):
    """Terminal marker produced by the decoder when the byte source breaks.

    Never part of the wire protocol, so it cannot be confused with an in-band
    `error` event sent by the agent.
    """

    message: str
