"""Persistence collaborator for finished research runs.

`HttpHistoryStore` talks to the `/api/history` routes of the research server;
`InMemoryHistoryStore` keeps runs in process for tests and offline use.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, TypeVar
from urllib.parse import quote
from uuid import uuid4

import httpx
from msgspec import DecodeError, field
from msgspec.json import decode
from msgspec.json import encode as json_encode
from msgspec.structs import replace

from stepstream.errors import HistoryStoreError
from stepstream.interface import Record, utcnow
from stepstream.models import RUN_PHASES, RunState, Step, StepKind, StepStatus

T = TypeVar("T")

DEFAULT_LIST_LIMIT = 20


class HistoryStep(Record, rename="camel"):
    """Step as stored by the history routes."""

    id: str
    type: StepKind
    title: str
    status: StepStatus
    timestamp: datetime
    description: str | None = None
    tool_input: Any = None
    tool_output: Any = None
    duration: float | None = None
    error: str | None = None
    step_number: int | None = None


class HistoryRecord(Record, rename="camel"):
    """Research run as stored by the history routes."""

    question: str
    status: str
    started_at: datetime
    report: str | None = None
    steps: list[HistoryStep] = field(default_factory=list)
    error: str | None = None
    completed_at: datetime | None = None
    id: str | None = None
    duration: float | None = None
    model: str | None = None


class SaveResponse(Record):
    success: bool = False
    id: str | None = None
    error: str | None = None


class GetResponse(Record):
    research: HistoryRecord | None = None


class ListResponse(Record):
    history: list[HistoryRecord] = field(default_factory=list)


class ErrorResponse(Record):
    error: str | None = None


def to_history_record(run: RunState) -> HistoryRecord:
    started_at = run.started_at or run.ended_at or utcnow()
    return HistoryRecord(
        id=run.id,
        question=run.question,
        report=run.report,
        status=run.phase,
        error=run.error,
        started_at=started_at,
        completed_at=run.ended_at,
        duration=run.duration,
        model=run.model,
        steps=[
            HistoryStep(
                id=step.id,
                type=step.kind,
                title=step.title,
                description=step.description,
                status=step.status,
                tool_input=step.input,
                tool_output=step.output,
                duration=step.duration,
                timestamp=step.created_at,
                error=step.error,
                step_number=step.group_key,
            )
            for step in run.steps
        ],
    )


def from_history_record(record: HistoryRecord) -> RunState:
    phase = record.status if record.status in RUN_PHASES else "complete"
    return RunState(
        id=record.id,
        phase=phase,  # type: ignore[arg-type]
        question=record.question,
        report=record.report,
        error=record.error,
        started_at=record.started_at,
        ended_at=record.completed_at,
        model=record.model,
        steps=tuple(
            Step(
                id=item.id,
                kind=item.type,
                title=item.title,
                description=item.description or "",
                status=item.status,
                input=item.tool_input,
                output=item.tool_output,
                created_at=item.timestamp,
                duration=int(item.duration) if item.duration is not None else None,
                error=item.error,
                group_key=item.step_number,
            )
            for item in record.steps
        ),
    )


class IHistoryStore(Protocol):
    async def save(self, run: RunState) -> str:
        "persist a finished run and return its identifier"
        ...

    async def get(self, run_id: str) -> RunState | None: ...

    async def list(self, limit: int = DEFAULT_LIST_LIMIT) -> list[RunState]:
        "most recent runs first"
        ...

    async def delete(self, run_id: str) -> bool: ...


class InMemoryHistoryStore(IHistoryStore):
    def __init__(self) -> None:
        self._runs: dict[str, RunState] = {}

    def __len__(self) -> int:
        return len(self._runs)

    async def save(self, run: RunState) -> str:
        run_id = uuid4().hex
        self._runs[run_id] = replace(run, id=run_id)
        return run_id

    async def get(self, run_id: str) -> RunState | None:
        return self._runs.get(run_id)

    async def list(self, limit: int = DEFAULT_LIST_LIMIT) -> list[RunState]:
        runs = sorted(
            self._runs.values(),
            key=lambda run: run.started_at.timestamp() if run.started_at else 0.0,
            reverse=True,
        )
        return runs[:limit]

    async def delete(self, run_id: str) -> bool:
        return self._runs.pop(run_id, None) is not None


class HttpHistoryStore(IHistoryStore):
    """History store backed by the research server's `/api/history` routes."""

    def __init__(self, client: httpx.AsyncClient, *, path: str = "/api/history"):
        self._client = client
        self._path = path.rstrip("/")

    async def save(self, run: RunState) -> str:
        response = await self._request(
            "POST",
            self._path,
            content=json_encode(to_history_record(run)),
            headers={"Content-Type": "application/json"},
        )
        payload = self._read(response, SaveResponse)
        if not payload.id:
            raise HistoryStoreError(
                payload.error or "History store did not return an id",
                status_code=response.status_code,
            )
        return payload.id

    async def get(self, run_id: str) -> RunState | None:
        response = await self._request("GET", self._item_path(run_id))
        if response.status_code == httpx.codes.NOT_FOUND:
            return None
        payload = self._read(response, GetResponse)
        if payload.research is None:
            return None
        record = payload.research
        if record.id is None:
            record = replace(record, id=run_id)
        return from_history_record(record)

    async def list(self, limit: int = DEFAULT_LIST_LIMIT) -> list[RunState]:
        response = await self._request("GET", self._path, params={"limit": limit})
        payload = self._read(response, ListResponse)
        return [from_history_record(record) for record in payload.history]

    async def delete(self, run_id: str) -> bool:
        response = await self._request("DELETE", self._item_path(run_id))
        if response.status_code == httpx.codes.NOT_FOUND:
            return False
        self._read(response, ErrorResponse)
        return True

    def _item_path(self, run_id: str) -> str:
        return f"{self._path}/{quote(run_id, safe='')}"

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise HistoryStoreError(f"History request failed: {exc}") from exc

    def _read(self, response: httpx.Response, schema: type[T]) -> T:
        if response.is_error:
            raise HistoryStoreError(
                self._error_message(response), status_code=response.status_code
            )
        try:
            return decode(response.content, type=schema)
        except DecodeError as exc:
            raise HistoryStoreError(
                f"Malformed history response: {exc}",
                status_code=response.status_code,
            ) from exc

    def _error_message(self, response: httpx.Response) -> str:
        try:
            payload = decode(response.content, type=ErrorResponse)
        except DecodeError:
            payload = ErrorResponse()
        return payload.error or f"History store responded with {response.status_code}"
