import json
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest
from msgspec.structs import replace

from stepstream.errors import HistoryStoreError
from stepstream.history import (
    HttpHistoryStore,
    InMemoryHistoryStore,
    from_history_record,
    to_history_record,
)
from stepstream.models import RunState, Step

STARTED = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_run(question: str = "Why is the sky blue?", *, offset: int = 0) -> RunState:
    started = STARTED + timedelta(minutes=offset)
    return RunState(
        phase="complete",
        question=question,
        report="Rayleigh scattering.",
        started_at=started,
        ended_at=started + timedelta(seconds=3),
        steps=(
            Step(
                id="s1",
                kind="search",
                title="Searching the web",
                description="sky color",
                status="complete",
                input={"query": "sky color"},
                output={"hits": 2},
                created_at=started,
                duration=800,
                group_key=1,
            ),
            Step(
                id="s2",
                kind="synthesis",
                title="Writing response",
                description="Response complete",
                status="complete",
                created_at=started + timedelta(seconds=1),
                duration=1200,
            ),
        ),
    )


class FakeHistoryServer:
    """Implements the `/api/history` routes over an in-process dict."""

    def __init__(self):
        self.records: dict[str, dict[str, Any]] = {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "POST" and path == "/api/history":
            body = json.loads(request.content)
            run_id = f"run-{len(self.records) + 1}"
            self.records[run_id] = {**body, "id": run_id}
            return httpx.Response(200, json={"success": True, "id": run_id})
        if request.method == "GET" and path == "/api/history":
            limit = int(request.url.params.get("limit", "20"))
            history = list(reversed(self.records.values()))[:limit]
            return httpx.Response(200, json={"history": history})

        run_id = path.rsplit("/", 1)[-1]
        if run_id not in self.records:
            return httpx.Response(404, json={"error": "Research not found"})
        if request.method == "GET":
            return httpx.Response(200, json={"research": self.records[run_id]})
        if request.method == "DELETE":
            del self.records[run_id]
            return httpx.Response(200, json={"success": True})
        return httpx.Response(405)


@pytest.fixture
def server() -> FakeHistoryServer:
    return FakeHistoryServer()


@pytest.fixture
async def store(server: FakeHistoryServer):
    async with httpx.AsyncClient(
        transport=httpx.MockTransport(server), base_url="http://research.test"
    ) as client:
        yield HttpHistoryStore(client)


def test_history_record_round_trip_keeps_steps() -> None:
    run = make_run()

    restored = from_history_record(to_history_record(run))

    assert restored.question == run.question
    assert restored.phase == "complete"
    assert restored.report == run.report
    assert restored.steps == run.steps
    assert restored.duration == 3000


def test_unknown_status_loads_as_complete() -> None:
    record = to_history_record(make_run())
    legacy = from_history_record(replace(record, status="done"))

    assert legacy.phase == "complete"


@pytest.mark.anyio
async def test_in_memory_store_lists_most_recent_first() -> None:
    store = InMemoryHistoryStore()
    older = await store.save(make_run("older", offset=0))
    newer = await store.save(make_run("newer", offset=5))

    runs = await store.list()

    assert [run.id for run in runs] == [newer, older]
    assert len(await store.list(limit=1)) == 1
    assert len(store) == 2


@pytest.mark.anyio
async def test_in_memory_store_get_and_delete() -> None:
    store = InMemoryHistoryStore()
    run_id = await store.save(make_run())

    loaded = await store.get(run_id)

    assert loaded is not None and loaded.id == run_id
    assert await store.delete(run_id) is True
    assert await store.delete(run_id) is False
    assert await store.get(run_id) is None


@pytest.mark.anyio
async def test_http_store_posts_camel_case_record(
    store: HttpHistoryStore, server: FakeHistoryServer
) -> None:
    run_id = await store.save(make_run())

    assert run_id == "run-1"
    body = json.loads(server.requests[0].content)
    assert body["question"] == "Why is the sky blue?"
    assert body["status"] == "complete"
    assert "startedAt" in body and "completedAt" in body
    step = body["steps"][0]
    assert step["type"] == "search"
    assert step["toolInput"] == {"query": "sky color"}
    assert step["toolOutput"] == {"hits": 2}
    assert step["stepNumber"] == 1
    assert server.requests[0].headers["content-type"] == "application/json"


@pytest.mark.anyio
async def test_http_store_get_list_and_delete(store: HttpHistoryStore) -> None:
    first = await store.save(make_run("first"))
    second = await store.save(make_run("second", offset=1))

    loaded = await store.get(first)
    assert loaded is not None
    assert loaded.id == first
    assert loaded.steps[0].input == {"query": "sky color"}
    assert loaded.steps[0].group_key == 1

    runs = await store.list(limit=5)
    assert [run.id for run in runs] == [second, first]

    assert await store.delete(first) is True
    assert await store.delete(first) is False
    assert await store.get(first) is None


@pytest.mark.anyio
async def test_http_store_raises_with_server_message() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": "Database unavailable"})

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://research.test"
    ) as client:
        store = HttpHistoryStore(client)
        with pytest.raises(HistoryStoreError, match="Database unavailable") as exc_info:
            await store.save(make_run())

    assert exc_info.value.status_code == 500


@pytest.mark.anyio
async def test_http_store_wraps_transport_failures() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://research.test"
    ) as client:
        store = HttpHistoryStore(client)
        with pytest.raises(HistoryStoreError, match="History request failed"):
            await store.list()


@pytest.mark.anyio
async def test_http_store_escapes_run_id_in_path() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(404, json={"error": "Not found"})

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://research.test"
    ) as client:
        store = HttpHistoryStore(client)
        assert await store.get("a/b c?x") is None
        assert await store.delete("../admin") is False

    assert [request.url.raw_path for request in seen] == [
        b"/api/history/a%2Fb%20c%3Fx",
        b"/api/history/..%2Fadmin",
    ]
    assert all(not request.url.query for request in seen)
