"""Research session controller: drives one run from request to persistence."""

import asyncio

import httpx
from msgspec import DecodeError
from msgspec.json import decode
from msgspec.structs import replace
from opentelemetry import trace
from opentelemetry.trace import SpanKind

from stepstream.aggregator import StepAggregator
from stepstream.errors import AgentStreamError, StepStreamValidationError, TransportError
from stepstream.event_bus import IEventBus, InMemoryEventBus
from stepstream.events import TransportErrorEvent
from stepstream.history import DEFAULT_LIST_LIMIT, ErrorResponse, IHistoryStore
from stepstream.interface import IClock, ILogger, utcnow
from stepstream.log import default_logger
from stepstream.models import RunState
from stepstream.sse import DecodeStats, SSEDecoder, decode_sse

DEFAULT_RESEARCH_PATH = "/api/research"
RESEARCH_FAILED = "Research failed"


class ResearchSession:
    """Owns the state of one research run at a time.

    `start` streams the agent's events into a `StepAggregator` and publishes a
    snapshot on the event bus after every applied event. Starting a new run
    cancels the one in flight. Finished and failed runs are handed to the
    history store once; cancelled runs never are.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        history: IHistoryStore | None = None,
        research_path: str = DEFAULT_RESEARCH_PATH,
        event_bus: IEventBus | None = None,
        logger: ILogger = default_logger,
        clock: IClock = utcnow,
        tracer: trace.Tracer | None = None,
    ):
        self._client = client
        self._history = history
        self._research_path = research_path
        self._bus: IEventBus = event_bus or InMemoryEventBus()
        self._logger = logger
        self._clock = clock
        self._tracer = tracer or trace.get_tracer("stepstream.session")
        self._aggregator = self._new_aggregator()
        self._state = self._aggregator.state
        self._decoder: SSEDecoder | None = None
        self._task: asyncio.Task[RunState] | None = None
        self._run_id: str | None = None

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def run_id(self) -> str | None:
        """History identifier of the current run, once persisted or loaded."""
        return self._run_id

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def decode_stats(self) -> DecodeStats | None:
        return self._decoder.stats if self._decoder else None

    @property
    def events(self) -> IEventBus:
        return self._bus

    @property
    def history_enabled(self) -> bool:
        return self._history is not None

    async def start(self, question: str) -> RunState:
        if not question or not question.strip():
            raise StepStreamValidationError("Please enter a research question")

        self._abort_active()
        aggregator = self._new_aggregator()
        self._aggregator = aggregator
        self._decoder = None
        self._run_id = None
        await self._publish(aggregator, aggregator.begin(question))

        task = asyncio.create_task(self._run(aggregator, question))
        self._task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if self._task is task:
                self._task = None

        if task.cancelled():
            state = aggregator.cancel()
            if not state.is_terminal:
                await self._publish(aggregator, state)
                self._logger.info("Research run cancelled")
                return state
            # the run had already finished when the cancel landed
        else:
            state = task.result()

        # saving is outside the cancellable task and survives caller cancellation
        return await asyncio.shield(self._persist(aggregator, state))

    def cancel(self) -> None:
        """Stop the in-flight request; `start` then returns an idle snapshot.

        A run whose stream already finished is kept and still saved.
        """
        self._abort_active()

    def reset(self) -> RunState:
        self._abort_active()
        self._aggregator = self._new_aggregator()
        self._state = self._aggregator.state
        self._decoder = None
        self._run_id = None
        return self._state

    async def load(self, run_id: str) -> RunState:
        """Replace the session state with a persisted run."""
        self._abort_active()
        self._aggregator = self._new_aggregator()
        self._decoder = None

        if self._history is None:
            return await self._fail_load("History is not configured")
        try:
            run = await self._history.get(run_id)
        except Exception:
            self._logger.exception(f"Failed to load research {run_id}")
            return await self._fail_load("Failed to load research")
        if run is None:
            return await self._fail_load("Research not found")

        self._run_id = run_id
        self._state = run if run.id == run_id else replace(run, id=run_id)
        await self._bus.publish(self._state)
        return self._state

    async def list_history(self, limit: int = DEFAULT_LIST_LIMIT) -> list[RunState]:
        if self._history is None:
            return []
        try:
            return await self._history.list(limit)
        except Exception:
            self._logger.exception("Failed to list research history")
            return []

    async def delete_history(self, run_id: str) -> bool:
        if self._history is None:
            return False
        try:
            deleted = await self._history.delete(run_id)
        except Exception:
            self._logger.exception(f"Failed to delete research {run_id}")
            return False
        if deleted and run_id == self._run_id:
            self._run_id = None
        return deleted

    async def close(self) -> None:
        self._abort_active()
        await self._bus.close()

    def _new_aggregator(self) -> StepAggregator:
        return StepAggregator(clock=self._clock, logger=self._logger)

    def _abort_active(self) -> None:
        task = self._task
        if task is None or task.done():
            return
        self._logger.info("Cancelling research run")
        task.cancel()

    async def _publish(self, aggregator: StepAggregator, state: RunState) -> None:
        # snapshots of a superseded run are dropped
        if aggregator is not self._aggregator:
            return
        self._state = state
        await self._bus.publish(state)

    async def _run(self, aggregator: StepAggregator, question: str) -> RunState:
        decoder = SSEDecoder(logger=self._logger)
        self._decoder = decoder
        with self._tracer.start_as_current_span(
            "research.run",
            kind=SpanKind.CLIENT,
            attributes={"research.question": question},
        ) as span:
            error = await self._consume(aggregator, decoder, question)
            state = aggregator.finalize(error)
            span.set_attribute("research.phase", state.phase)
            span.set_attribute("research.step_count", len(state.steps))
            span.set_attribute("research.report_chars", len(state.report or ""))
            span.set_attribute("research.malformed_lines", decoder.stats.malformed)
            if state.error:
                span.set_attribute("research.error", state.error)

        await self._publish(aggregator, state)
        self._logger.success(
            f"Research run ended in phase {state.phase} with {len(state.steps)} steps"
        )
        return state

    async def _consume(
        self, aggregator: StepAggregator, decoder: SSEDecoder, question: str
    ) -> str | None:
        """Feed the response into `aggregator`; return the fatal error, if any."""
        try:
            async with self._client.stream(
                "POST", self._research_path, json={"question": question}
            ) as response:
                if response.is_error:
                    raise TransportError(await self._read_error(response))
                async for event in decode_sse(response.aiter_bytes(), decoder=decoder):
                    if isinstance(event, TransportErrorEvent):
                        raise TransportError(event.message)
                    await self._publish(aggregator, aggregator.apply(event))
        except (TransportError, AgentStreamError) as exc:
            self._logger.warning(f"Research run failed: {exc}")
            return str(exc) or RESEARCH_FAILED
        except httpx.HTTPError as exc:
            self._logger.warning(f"Research request failed: {exc!r}")
            return str(exc) or RESEARCH_FAILED
        return None

    async def _read_error(self, response: httpx.Response) -> str:
        await response.aread()
        try:
            payload = decode(response.content, type=ErrorResponse)
        except DecodeError:
            return RESEARCH_FAILED
        return payload.error or RESEARCH_FAILED

    async def _persist(self, aggregator: StepAggregator, state: RunState) -> RunState:
        if self._history is None or not state.question or state.phase == "idle":
            return state
        try:
            run_id = await self._history.save(state)
        except Exception:
            self._logger.exception("Failed to save research to history")
            return state

        saved = replace(state, id=run_id)
        if aggregator is self._aggregator:
            self._run_id = run_id
            await self._publish(aggregator, saved)
        return saved

    async def _fail_load(self, message: str) -> RunState:
        self._logger.warning(f"Could not load research: {message}")
        self._state = replace(self._state, phase="error", error=message)
        await self._bus.publish(self._state)
        return self._state
