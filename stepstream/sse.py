"""Server-sent-event decoding for the research agent stream.

The decoder accepts raw bytes in arbitrary chunks, reassembles lines across
chunk boundaries and turns every `data:` payload into a typed stream event.
Malformed payloads are counted and skipped; they never end the stream.
"""

import codecs
from typing import AsyncIterable, AsyncIterator

from msgspec import DecodeError, Struct, ValidationError
from msgspec.json import Decoder

from stepstream.events import StreamEvent, TransportErrorEvent
from stepstream.interface import ILogger
from stepstream.log import default_logger

DONE_SENTINEL = "[DONE]"
DATA_FIELD = "data:"
IGNORED_FIELDS = ("event:", "id:", "retry:")

_event_decoder = Decoder(StreamEvent)


class DecodeStats(Struct, kw_only=True):
    lines: int = 0
    events: int = 0
    ignored: int = 0
    malformed: int = 0
    rejected: int = 0


class SSEDecoder:
    """Push-style decoder: feed byte chunks, collect the events they complete."""

    __slots__ = ("_text", "_buffer", "_done", "_stats", "_logger")

    def __init__(self, *, logger: ILogger = default_logger):
        self._text = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._done = False
        self._stats = DecodeStats()
        self._logger = logger

    @property
    def done(self) -> bool:
        """True once the `[DONE]` sentinel was seen."""
        return self._done

    @property
    def stats(self) -> DecodeStats:
        return self._stats

    @property
    def logger(self) -> ILogger:
        return self._logger

    def feed(self, chunk: bytes) -> list[StreamEvent]:
        if self._done or not chunk:
            return []
        self._buffer += self._text.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        return self._decode_lines(lines)

    def flush(self) -> list[StreamEvent]:
        """Decode whatever is left once the byte source is exhausted."""
        if self._done:
            return []
        tail = self._buffer + self._text.decode(b"", final=True)
        self._buffer = ""
        return self._decode_lines(tail.split("\n"))

    def _decode_lines(self, lines: list[str]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for line in lines:
            if self._done:
                break
            event = self._decode_line(line)
            if event is not None:
                events.append(event)
        return events

    def _decode_line(self, raw: str) -> StreamEvent | None:
        line = raw.rstrip("\r")
        if not line.strip():
            return None
        self._stats.lines += 1

        if line.startswith(":") or line.startswith(IGNORED_FIELDS):
            return None

        payload = line
        if line.startswith(DATA_FIELD):
            payload = line[len(DATA_FIELD) :]
            if payload.startswith(" "):
                payload = payload[1:]

        if payload == DONE_SENTINEL:
            self._done = True
            return None

        if not payload.startswith("{"):
            self._stats.ignored += 1
            return None

        try:
            event = _event_decoder.decode(payload)
        except ValidationError as exc:
            # unknown kinds are simply not part of this provider's vocabulary
            self._stats.rejected += 1
            self._logger.debug(f"Skipping stream event: {exc}")
            return None
        except DecodeError:
            self._stats.malformed += 1
            self._logger.warning(f"Failed to parse stream line: {payload[:50]}")
            return None

        self._stats.events += 1
        return event


async def decode_sse(
    chunks: AsyncIterable[bytes],
    *,
    decoder: SSEDecoder | None = None,
) -> AsyncIterator[StreamEvent | TransportErrorEvent]:
    """Yield stream events until `[DONE]`, exhaustion or a transport failure.

    A failing byte source ends the sequence with a single `TransportErrorEvent`.
    Cancellation is never converted and always propagates.
    """
    decoder = decoder or SSEDecoder()
    iterator = aiter(chunks)
    while True:
        try:
            chunk = await anext(iterator)
        except StopAsyncIteration:
            break
        except Exception as exc:
            decoder.logger.warning(f"Research stream terminated abruptly: {exc!r}")
            yield TransportErrorEvent(message=str(exc) or exc.__class__.__name__)
            return

        for event in decoder.feed(chunk):
            yield event
        if decoder.done:
            return

    for event in decoder.flush():
        yield event
