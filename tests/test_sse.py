from typing import AsyncIterator

import pytest

from stepstream.events import (
    FinishEvent,
    StreamEvent,
    TextDeltaEvent,
    ToolCallEvent,
    TransportErrorEvent,
)
from stepstream.sse import SSEDecoder, decode_sse


class FakeLogger:
    def __init__(self):
        self.debug_messages: list[str] = []
        self.warning_messages: list[str] = []

    def debug(self, msg: str, /, **_: object) -> None:
        self.debug_messages.append(msg)

    def info(self, msg: str, /, **_: object) -> None:
        pass

    def success(self, msg: str, /, **_: object) -> None:
        pass

    def warning(self, msg: str, /, **_: object) -> None:
        self.warning_messages.append(msg)

    def exception(self, msg: str, /, **_: object) -> None:
        pass


STREAM = (
    'data: {"type":"tool-call","toolCallId":"c1","toolName":"quercleSearch",'
    '"args":{"query":"café culture"}}\r\n'
    "\r\n"
    ": keep-alive\n"
    "event: message\n"
    'data: {"type":"text-delta","delta":"Hello é"}\n'
    "\n"
    'data: {"type":"finish","finishReason":"stop"}\n'
    "data: [DONE]\n"
).encode()


async def chunked(*chunks: bytes) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield chunk


async def collect(chunks: AsyncIterator[bytes], decoder: SSEDecoder | None = None):
    return [event async for event in decode_sse(chunks, decoder=decoder)]


def decode_all(*chunks: bytes) -> list[StreamEvent]:
    decoder = SSEDecoder(logger=FakeLogger())
    events: list[StreamEvent] = []
    for chunk in chunks:
        events.extend(decoder.feed(chunk))
    events.extend(decoder.flush())
    return events


def test_decoder_parses_tagged_events() -> None:
    events = decode_all(STREAM)

    assert [event.kind for event in events] == ["tool-call", "text-delta", "finish"]
    call = events[0]
    assert isinstance(call, ToolCallEvent)
    assert call.tool_call_id == "c1"
    assert call.tool_name == "quercleSearch"
    assert call.args == {"query": "café culture"}
    assert isinstance(events[2], FinishEvent)
    assert events[2].finish_reason == "stop"


def test_decoder_output_does_not_depend_on_chunking() -> None:
    whole = decode_all(STREAM)
    bytewise = decode_all(*(STREAM[i : i + 1] for i in range(len(STREAM))))
    # split inside the multi-byte "é" and inside the CRLF pair
    cut = STREAM.index("é".encode()) + 1
    crlf = STREAM.index(b"\r\n") + 1
    uneven = decode_all(STREAM[:cut], STREAM[cut:crlf], STREAM[crlf:])

    assert bytewise == whole
    assert uneven == whole


def test_decoder_counts_and_skips_malformed_lines() -> None:
    logger = FakeLogger()
    decoder = SSEDecoder(logger=logger)

    events = decoder.feed(
        b'data: {"type":"text-delta","delta":"a"}\n'
        b"data: {not json\n"
        b'data: {"type":"text-delta","delta":"b"}\n'
    )

    assert [event.text for event in events] == ["a", "b"]  # type: ignore[union-attr]
    assert decoder.stats.malformed == 1
    assert decoder.stats.events == 2
    assert logger.warning_messages == ["Failed to parse stream line: {not json"]


def test_decoder_rejects_unknown_event_kinds() -> None:
    decoder = SSEDecoder(logger=FakeLogger())

    events = decoder.feed(
        b'data: {"type":"source-url","url":"https://example.com"}\n'
        b'data: {"type":"finish"}\n'
    )

    assert [event.kind for event in events] == ["finish"]
    assert decoder.stats.rejected == 1
    assert decoder.stats.malformed == 0


def test_decoder_ignores_non_object_payloads_and_comments() -> None:
    decoder = SSEDecoder(logger=FakeLogger())

    events = decoder.feed(b": ping\nid: 4\nretry: 100\ndata: hello\n\n")

    assert events == []
    assert decoder.stats.ignored == 1
    assert decoder.stats.malformed == 0


def test_decoder_accepts_bare_json_lines() -> None:
    events = decode_all(b'{"type":"text-delta","textDelta":"legacy"}\n')

    assert len(events) == 1
    assert isinstance(events[0], TextDeltaEvent)
    assert events[0].text == "legacy"


def test_decoder_stops_at_done_sentinel() -> None:
    decoder = SSEDecoder(logger=FakeLogger())

    events = decoder.feed(
        b'data: {"type":"finish"}\ndata: [DONE]\ndata: {"type":"text-delta","delta":"late"}\n'
    )

    assert [event.kind for event in events] == ["finish"]
    assert decoder.done
    assert decoder.feed(b'data: {"type":"finish"}\n') == []
    assert decoder.flush() == []


def test_flush_decodes_unterminated_last_line() -> None:
    decoder = SSEDecoder(logger=FakeLogger())

    assert decoder.feed(b'data: {"type":"finish"}') == []
    events = decoder.flush()

    assert [event.kind for event in events] == ["finish"]


def test_error_event_with_structured_payload_keeps_message() -> None:
    events = decode_all(b'data: {"type":"error","error":"rate limited"}\n')

    assert events[0].kind == "error"
    assert events[0].message == "rate limited"  # type: ignore[union-attr]


@pytest.mark.anyio
async def test_decode_sse_yields_events_across_chunks() -> None:
    middle = len(STREAM) // 2
    events = await collect(chunked(STREAM[:middle], STREAM[middle:]))

    assert [event.kind for event in events] == ["tool-call", "text-delta", "finish"]


@pytest.mark.anyio
async def test_decode_sse_flushes_trailing_line_without_newline() -> None:
    events = await collect(chunked(b'data: {"type":"text-delta","delta":"x"}'))

    assert len(events) == 1
    assert isinstance(events[0], TextDeltaEvent)


@pytest.mark.anyio
async def test_decode_sse_reports_transport_failure_as_terminal_event() -> None:
    logger = FakeLogger()

    async def broken() -> AsyncIterator[bytes]:
        yield b'data: {"type":"text-delta","delta":"partial"}\n'
        raise ConnectionResetError("peer went away")

    events = await collect(broken(), SSEDecoder(logger=logger))

    assert isinstance(events[0], TextDeltaEvent)
    assert events[-1] == TransportErrorEvent(message="peer went away")
    assert len(events) == 2
    assert len(logger.warning_messages) == 1


@pytest.mark.anyio
async def test_decode_sse_stops_reading_after_done() -> None:
    pulled: list[bytes] = []

    async def source() -> AsyncIterator[bytes]:
        for chunk in (b'data: {"type":"finish"}\n', b"data: [DONE]\n", b"garbage\n"):
            pulled.append(chunk)
            yield chunk

    events = await collect(source())

    assert [event.kind for event in events] == ["finish"]
    assert len(pulled) == 2


def test_tool_call_payload_shapes_are_not_rejected() -> None:
    decoder = SSEDecoder(logger=FakeLogger())

    events = decoder.feed(
        b'data: {"type":"tool-call","toolCallId":"c1","toolName":"quercleSearch","args":"rust"}\n'
        b'data: {"type":"tool-call","toolCallId":"c2","toolName":null,"args":["a","b"]}\n'
        b'data: {"type":"text-delta","delta":null,"textDelta":"x"}\n'
    )

    assert len(events) == 3
    assert decoder.stats.rejected == 0
    first, second, text = events
    assert isinstance(first, ToolCallEvent) and first.args == "rust"
    assert isinstance(second, ToolCallEvent) and second.tool_name is None
    assert second.args == ["a", "b"]
    assert isinstance(text, TextDeltaEvent) and text.text == "x"
