"""Incremental reconstruction of agent steps from decoded stream events."""

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from msgspec.json import encode as json_encode
from msgspec.structs import replace

from stepstream.errors import AgentStreamError
from stepstream.events import (
    ErrorEvent,
    FinishEvent,
    ModelEvent,
    ReasoningDeltaEvent,
    ReasoningEndEvent,
    ReasoningStartEvent,
    StepFinishEvent,
    StepStartEvent,
    StreamEvent,
    TextDeltaEvent,
    ToolCallEvent,
    ToolErrorEvent,
    ToolResultEvent,
)
from stepstream.interface import IClock, ILogger, elapsed_ms, utcnow
from stepstream.log import default_logger
from stepstream.models import RunPhase, RunState, Step, StepKind, new_step_id

PREVIEW_LIMIT = 100
ELLIPSIS = "..."

TOOL_STEP_KINDS: dict[str, StepKind] = {
    "search": "search",
    "quercleSearch": "search",
    "fetch": "fetch",
    "quercleFetch": "fetch",
    "recall": "recall",
    "remember": "remember",
}

STEP_TITLES: dict[StepKind, str] = {
    "search": "Searching the web",
    "fetch": "Fetching page content",
    "recall": "Checking memory",
    "remember": "Saving to memory",
    "synthesis": "Writing response",
    "thinking": "Thinking",
    "error": "Research failed",
}

DESCRIPTION_FIELDS = ("query", "url", "topic")
SYNTHESIS_DONE = "Response complete"
UNKNOWN_TOOL = "unknown"

_PHASE_RANK: dict[RunPhase, int] = {
    "idle": 0,
    "planning": 1,
    "researching": 2,
    "synthesizing": 3,
    "complete": 4,
    "error": 4,
}


def preview(text: str, limit: int = PREVIEW_LIMIT) -> str:
    """Cut `text` to at most `limit` characters, marking the cut with an ellipsis."""
    if len(text) <= limit:
        return text
    return text[: limit - len(ELLIPSIS)] + ELLIPSIS


def describe_input(args: Any) -> str:
    if not args:
        return "Processing..."
    if isinstance(args, Mapping):
        for key in DESCRIPTION_FIELDS:
            if value := args.get(key):
                return preview(str(value))
    return preview(json_encode(args).decode())


def tool_step_kind(tool_name: str) -> StepKind:
    return TOOL_STEP_KINDS.get(tool_name, "thinking")


def tool_step_title(tool_name: str) -> str:
    kind = TOOL_STEP_KINDS.get(tool_name)
    if kind is None:
        return tool_name
    return STEP_TITLES[kind]


class StepAggregator:
    """Single-consumer state machine turning stream events into run snapshots.

    Every transition replaces the current `RunState` with a new immutable
    snapshot. Tool calls and reasoning bursts are joined to their steps through
    two correlation tables owned by this instance; an entry is dropped as soon
    as its result, error or end event arrives, so a reused identifier starts an
    unrelated interaction.
    """

    def __init__(
        self,
        *,
        clock: IClock = utcnow,
        logger: ILogger = default_logger,
    ):
        self._clock = clock
        self._logger = logger
        self._state = RunState()
        self._tool_calls: dict[str, str] = {}
        self._reasoning: dict[str, str] = {}
        self._reasoning_text: dict[str, str] = {}
        self._synthesis_id: str | None = None
        self._group_key: int | None = None
        self._step_counter = 0
        self._closed = False

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def closed(self) -> bool:
        """True once the run finished, failed or was cancelled."""
        return self._closed

    @property
    def in_flight(self) -> int:
        return len(self._tool_calls) + len(self._reasoning)

    def reset(self) -> RunState:
        self._tool_calls.clear()
        self._reasoning.clear()
        self._reasoning_text.clear()
        self._synthesis_id = None
        self._group_key = None
        self._step_counter = 0
        self._closed = False
        self._state = RunState()
        return self._state

    def begin(self, question: str) -> RunState:
        self.reset()
        self._state = RunState(
            phase="planning",
            question=question,
            started_at=self._clock(),
        )
        return self._state

    def apply(self, event: StreamEvent) -> RunState:
        if self._closed:
            self._logger.debug(f"Ignoring {event.kind} event after run end")
            return self._state

        match event:
            case ModelEvent(model=model):
                self._update(model=model)
            case StepStartEvent(step_number=step_number):
                self._step_counter += 1
                self._group_key = (
                    step_number if step_number is not None else self._step_counter
                )
            case StepFinishEvent():
                self._group_key = None
            case ToolCallEvent():
                self._on_tool_call(event)
            case ToolResultEvent():
                self._on_tool_result(event)
            case ToolErrorEvent():
                self._on_tool_error(event)
            case TextDeltaEvent():
                self._on_text_delta(event.text)
            case ReasoningStartEvent(id=reasoning_id):
                self._on_reasoning_start(reasoning_id)
            case ReasoningDeltaEvent(id=reasoning_id, delta=delta):
                self._on_reasoning_delta(reasoning_id, delta or "")
            case ReasoningEndEvent(id=reasoning_id):
                self._on_reasoning_end(reasoning_id)
            case FinishEvent():
                self._on_finish()
            case ErrorEvent():
                self._closed = True
                raise AgentStreamError(event.message)
            case _:
                self._logger.debug(f"Unhandled stream event: {event!r}")
        return self._state

    def finalize(self, error: str | None = None) -> RunState:
        """Settle the run once the stream ended, with or without `finish`."""
        state = self._state
        if state.is_terminal and state.ended_at is not None:
            self._closed = True
            return state

        now = self._clock()
        message = error or state.error
        if message is not None:
            failure = Step(
                id=new_step_id(),
                kind="error",
                title=STEP_TITLES["error"],
                description=preview(message),
                status="error",
                created_at=now,
                duration=0,
                error=message,
            )
            self._state = replace(
                state,
                phase="error",
                error=message,
                ended_at=now,
                steps=(*state.steps, failure),
            )
        else:
            self._close_synthesis(now)
            self._state = replace(self._state, phase="complete", ended_at=now)
        self._closed = True
        return self._state

    def cancel(self) -> RunState:
        """Stop the run; a run that already finished or failed is left as is."""
        if self._state.is_terminal:
            self._closed = True
            return self._state
        self._closed = True
        self._state = replace(self._state, phase="idle", ended_at=self._clock())
        return self._state

    def _on_tool_call(self, event: ToolCallEvent) -> None:
        group_key = (
            event.step_number if event.step_number is not None else self._group_key
        )
        tool_name = event.tool_name or UNKNOWN_TOOL
        step = Step(
            id=new_step_id(),
            kind=tool_step_kind(tool_name),
            title=tool_step_title(tool_name),
            description=describe_input(event.args),
            status="running",
            input=event.args or {},
            created_at=self._clock(),
            group_key=group_key,
        )
        if event.tool_call_id:
            self._tool_calls[event.tool_call_id] = step.id
        self._append(step)
        self._advance("researching")

    def _on_tool_result(self, event: ToolResultEvent) -> None:
        step = self._resolve_tool_call(event.tool_call_id)
        if step is None:
            return
        self._replace_step(
            step,
            status="complete",
            duration=elapsed_ms(step.created_at, self._clock()),
            output=event.result,
        )

    def _on_tool_error(self, event: ToolErrorEvent) -> None:
        step = self._resolve_tool_call(event.tool_call_id)
        if step is None:
            return
        self._replace_step(
            step,
            status="error",
            duration=elapsed_ms(step.created_at, self._clock()),
            error=event.message,
        )

    def _resolve_tool_call(self, call_id: str | None) -> Step | None:
        if not call_id:
            return None
        step_id = self._tool_calls.pop(call_id, None)
        if step_id is None:
            self._logger.debug(f"No open tool call for id {call_id!r}")
            return None
        return self._state.find_step(step_id)

    def _on_text_delta(self, text: str) -> None:
        report = (self._state.report or "") + text
        self._update(report=report)
        if self._synthesis_id is None:
            step = Step(
                id=new_step_id(),
                kind="synthesis",
                title=STEP_TITLES["synthesis"],
                description=preview(report),
                status="running",
                created_at=self._clock(),
            )
            self._synthesis_id = step.id
            self._append(step)
            self._advance("synthesizing")
            return
        step = self._state.find_step(self._synthesis_id)
        if step is not None:
            self._replace_step(step, description=preview(report))

    def _on_reasoning_start(self, reasoning_id: str | None) -> None:
        if not reasoning_id:
            return
        step = Step(
            id=new_step_id(),
            kind="thinking",
            title=STEP_TITLES["thinking"],
            description="",
            status="running",
            created_at=self._clock(),
            group_key=self._group_key,
        )
        self._reasoning[reasoning_id] = step.id
        self._reasoning_text[reasoning_id] = ""
        self._append(step)
        self._advance("researching")

    def _on_reasoning_delta(self, reasoning_id: str | None, delta: str) -> None:
        step_id = self._reasoning.get(reasoning_id) if reasoning_id else None
        if step_id is None:
            self._logger.debug(f"No open reasoning for id {reasoning_id!r}")
            return
        text = self._reasoning_text[reasoning_id] + delta
        self._reasoning_text[reasoning_id] = text
        step = self._state.find_step(step_id)
        if step is not None:
            self._replace_step(step, description=preview(text))

    def _on_reasoning_end(self, reasoning_id: str | None) -> None:
        step_id = self._reasoning.pop(reasoning_id, None) if reasoning_id else None
        if step_id is None:
            self._logger.debug(f"No open reasoning for id {reasoning_id!r}")
            return
        text = self._reasoning_text.pop(reasoning_id, "")
        step = self._state.find_step(step_id)
        if step is not None:
            self._replace_step(
                step,
                status="complete",
                duration=elapsed_ms(step.created_at, self._clock()),
                output=text,
            )

    def _on_finish(self) -> None:
        now = self._clock()
        if self._synthesis_id is not None:
            self._close_synthesis(now, description=SYNTHESIS_DONE)
        self._advance("complete")
        self._update(ended_at=now)
        self._closed = True

    def _close_synthesis(self, now: datetime, description: str | None = None) -> None:
        if self._synthesis_id is None:
            return
        step = self._state.find_step(self._synthesis_id)
        if step is None or not step.is_open:
            return
        changes: dict[str, Any] = {
            "status": "complete",
            "duration": elapsed_ms(step.created_at, now),
        }
        if description is not None:
            changes["description"] = description
        self._replace_step(step, **changes)

    def _advance(self, phase: RunPhase) -> None:
        if _PHASE_RANK[phase] > _PHASE_RANK[self._state.phase]:
            self._update(phase=phase)

    def _update(self, **changes: Any) -> None:
        self._state = replace(self._state, **changes)

    def _append(self, step: Step) -> None:
        self._update(steps=(*self._state.steps, step))

    def _replace_step(self, step: Step, **changes: Any) -> None:
        updated = replace(step, **changes)
        self._update(
            steps=tuple(updated if s.id == step.id else s for s in self._state.steps)
        )
