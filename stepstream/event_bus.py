"""Fan-out of run snapshots to live views.

Every message is a complete `RunState`, so a subscriber that falls behind only
needs the newest one: each subscriber owns a single-slot mailbox and a newer
snapshot overwrites one that was not read yet.
"""

import asyncio
from collections.abc import AsyncIterator
from typing import Protocol

from stepstream.models import RunState


class IEventBus(Protocol):
    async def publish(self, state: RunState) -> None:
        """Offer `state` to every subscriber."""

    async def subscribe(self) -> AsyncIterator[RunState]:
        """Iterate over snapshots published from now on until the bus closes."""
        raise NotImplementedError

    async def close(self) -> None: ...


class SnapshotMailbox:
    """Holds at most one unread snapshot."""

    __slots__ = ("_pending", "_closed", "_ready")

    def __init__(self) -> None:
        self._pending: RunState | None = None
        self._closed = False
        self._ready = asyncio.Event()

    @property
    def pending(self) -> RunState | None:
        return self._pending

    def offer(self, state: RunState) -> None:
        self._pending = state
        self._ready.set()

    def close(self) -> None:
        self._closed = True
        self._ready.set()

    async def take(self) -> RunState | None:
        """Wait for the newest unread snapshot; None once closed and drained."""
        await self._ready.wait()
        state, self._pending = self._pending, None
        if not self._closed:
            self._ready.clear()
        return state


class InMemoryEventBus(IEventBus):
    def __init__(self) -> None:
        self._mailboxes: set[SnapshotMailbox] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        return len(self._mailboxes)

    async def publish(self, state: RunState) -> None:
        if self._closed:
            return
        for mailbox in self._mailboxes:
            mailbox.offer(state)

    async def subscribe(self) -> AsyncIterator[RunState]:
        if self._closed:
            raise RuntimeError("InMemoryEventBus is already closed")

        mailbox = SnapshotMailbox()
        self._mailboxes.add(mailbox)
        return self._drain(mailbox)

    async def _drain(self, mailbox: SnapshotMailbox) -> AsyncIterator[RunState]:
        try:
            while (state := await mailbox.take()) is not None:
                yield state
        finally:
            self._mailboxes.discard(mailbox)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for mailbox in self._mailboxes:
            mailbox.close()
