import asyncio

from rich.console import Console, Group, RenderableType
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from stepstream.grouping import group_steps
from stepstream.models import RunState, Step, StepGroup, StepStatus
from stepstream.session import ResearchSession

STATUS_MARKUP: dict[StepStatus, str] = {
    "pending": "[dim]pending[/]",
    "running": "[yellow]running[/]",
    "complete": "[green]complete[/]",
    "error": "[red]failed[/]",
}

STATUS_BORDER: dict[StepStatus, str] = {
    "pending": "white",
    "running": "magenta",
    "complete": "green",
    "error": "red",
}

PHASE_LABELS = {
    "idle": "idle",
    "planning": "planning",
    "researching": "researching",
    "synthesizing": "writing response",
    "complete": "completed",
    "error": "failed",
}

HISTORY_LIMIT = 12


def status_text(status: StepStatus) -> str:
    return STATUS_MARKUP.get(status, status)


def format_duration(duration_ms: int | None) -> str:
    if duration_ms is None:
        return ""
    if duration_ms < 1000:
        return f"{duration_ms}ms"
    return f"{duration_ms / 1000:.1f}s"


class TerminalRunView:
    """Keeps the latest run snapshot and the activity it implied for rendering."""

    def __init__(self, question: str = ""):
        self.question = question
        self.state = RunState(question=question)
        self.event_history: list[str] = []

    def update(self, state: RunState) -> None:
        self._record_changes(self.state, state)
        self.state = state
        if state.question:
            self.question = state.question

    def _record_changes(self, previous: RunState, current: RunState) -> None:
        known = {step.id: step for step in previous.steps}
        for step in current.steps:
            before = known.get(step.id)
            if before is None:
                self._record(f"started -> {step.title}")
            elif before.status != step.status:
                verb = "failed" if step.status == "error" else step.status
                self._record(f"{verb} -> {step.title}")
        if previous.phase != current.phase:
            self._record(f"phase: {PHASE_LABELS.get(current.phase, current.phase)}")

    def _record(self, description: str) -> None:
        self.event_history.append(description)
        if len(self.event_history) > HISTORY_LIMIT:
            self.event_history = self.event_history[-HISTORY_LIMIT:]

    def render(self) -> Group:
        state = self.state
        question_panel = Panel(
            Text(self.question) if self.question else "[dim]no question provided[/dim]",
            title="Question",
            border_style="cyan",
        )

        groups = group_steps(state.steps)
        if groups:
            step_panels = [self._render_group(group) for group in groups]
        else:
            step_panels = [
                Panel(
                    "[dim]waiting for the agent to begin researching[/dim]",
                    title="Steps",
                    border_style="magenta",
                )
            ]

        panels: list[Panel] = [question_panel, *step_panels, self._render_status()]

        if state.report:
            panels.append(
                Panel(
                    Text(state.report),
                    title="Report",
                    border_style="green" if state.phase == "complete" else "blue",
                )
            )
        if state.error:
            panels.append(Panel(Text(state.error), title="Failure", border_style="red"))

        return Group(*panels)

    def _render_status(self) -> Panel:
        state = self.state
        status_lines = [f"run: {PHASE_LABELS.get(state.phase, state.phase)}"]
        if state.steps:
            status_lines.append(f"steps: {len(state.steps)}")
        if duration := format_duration(state.duration):
            status_lines.append(f"duration: {duration}")
        if self.event_history:
            status_lines.append("recent activity:")
            status_lines.extend(self.event_history[-6:])

        if state.phase == "complete":
            border = "green"
        elif state.phase == "error":
            border = "red"
        else:
            border = "blue"
        return Panel("\n".join(status_lines), title="Status", border_style=border)

    def _render_group(self, group: StepGroup) -> Panel:
        if group.kind == "single":
            return self._render_step(group.steps[0])

        table = Table(show_header=True, header_style="bold yellow", expand=True)
        table.add_column("Step")
        table.add_column("Status", style="white")
        table.add_column("Details", style="white", overflow="fold")
        for step in group.steps:
            table.add_row(step.title, status_text(step.status), self._details(step))

        statuses = {step.status for step in group.steps}
        if "error" in statuses:
            border = "red"
        elif statuses == {"complete"}:
            border = "green"
        else:
            border = "magenta"
        title = f"Parallel · {len(group.steps)} calls"
        return Panel(table, title=title, border_style=border)

    def _render_step(self, step: Step) -> Panel:
        body: list[RenderableType] = [self._details(step)]
        if step.error and step.status == "error":
            body.append(Text(step.error, style="red"))

        title = f"{step.title} · {status_text(step.status)}"
        if duration := format_duration(step.duration):
            title = f"{title} · {duration}"
        return Panel(Group(*body), title=title, border_style=STATUS_BORDER[step.status])

    def _details(self, step: Step) -> Text:
        if not step.description:
            return Text("waiting for output", style="dim")
        return Text(step.description)


async def run_with_terminal_ui(
    session: ResearchSession,
    question: str,
    *,
    console: Console | None = None,
) -> RunState:
    """Run `question` on `session` while streaming its snapshots to a Rich live view."""
    active_console = console or Console()
    view = TerminalRunView(question)
    updates = await session.events.subscribe()
    active_console.rule("[bold cyan]stepstream[/bold cyan]")

    with Live(
        view.render(),
        console=active_console,
        refresh_per_second=8,
        transient=False,
        auto_refresh=False,
    ) as live:

        async def follow() -> None:
            async for state in updates:
                view.update(state)
                live.update(view.render(), refresh=True)

        watcher = asyncio.create_task(follow())
        try:
            final = await session.start(question)
        finally:
            watcher.cancel()
            await asyncio.gather(watcher, return_exceptions=True)

        view.update(final)
        live.update(view.render(), refresh=True)
    return final
