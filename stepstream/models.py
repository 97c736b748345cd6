from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import uuid4

from msgspec import field

from stepstream.interface import Record, elapsed_ms, utcnow

StepKind = Literal[
    "thinking",
    "search",
    "fetch",
    "recall",
    "remember",
    "synthesis",
    "error",
]

StepStatus = Literal["pending", "running", "complete", "error"]

RunPhase = Literal[
    "idle",
    "planning",
    "researching",
    "synthesizing",
    "complete",
    "error",
]

RUN_PHASES: tuple[RunPhase, ...] = (
    "idle",
    "planning",
    "researching",
    "synthesizing",
    "complete",
    "error",
)

TERMINAL_PHASES: frozenset[RunPhase] = frozenset({"complete", "error"})


def new_step_id() -> str:
    return uuid4().hex


class Step(Record, rename="camel"):
    """Single unit of agent activity: a tool call, a reasoning burst or the synthesis."""

    id: str = field(default_factory=new_step_id)
    """Process-unique identifier assigned when the step is created."""

    kind: StepKind = "thinking"
    """Category derived from the originating tool name or event kind."""

    title: str = ""
    """Short human-readable label."""

    description: str = ""
    """Preview of the step input or of the text produced so far."""

    status: StepStatus = "pending"

    input: Any = None
    """Tool input payload, when the step comes from a tool call."""

    output: Any = None
    """Tool result or accumulated reasoning text."""

    created_at: datetime = field(default_factory=utcnow)

    duration: int | None = None
    """Milliseconds between creation and completion; set only on completion."""

    error: str | None = None

    group_key: int | None = None
    """Reasoning step that issued this step; equal keys mark parallel calls."""

    @property
    def is_open(self) -> bool:
        return self.status in ("pending", "running")


class RunState(Record, rename="camel"):
    """Immutable snapshot of one research run."""

    id: str | None = None
    """History identifier once the run was persisted or loaded."""

    phase: RunPhase = "idle"
    question: str = ""
    steps: tuple[Step, ...] = ()
    report: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    model: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def duration(self) -> int | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return elapsed_ms(self.started_at, self.ended_at)

    def find_step(self, step_id: str) -> Step | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None


class StepGroup(Record):
    """Read-only display projection clustering steps issued in one reasoning step."""

    kind: Literal["single", "parallel"]
    steps: tuple[Step, ...]
    group_key: int | None = None
