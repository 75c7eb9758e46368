"""Fan-in channel: many producers, one consumer."""

import asyncio
from typing import AsyncIterator, Generic, TypeVar

T = TypeVar("T")

_CLOSED = object()


class Channel(Generic[T]):
    """Unbounded queue that ends once every producer has closed.

    Items from one producer come out in the order that producer sent them.
    Nothing is promised about the relative order of different producers.
    """

    def __init__(self, producers: int = 1):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._open = producers

    def send(self, item: T) -> None:
        self._queue.put_nowait(item)

    def close(self) -> None:
        """Mark one producer as finished."""
        self._queue.put_nowait(_CLOSED)

    async def __aiter__(self) -> AsyncIterator[T]:
        while self._open > 0:
            item = await self._queue.get()
            if item is _CLOSED:
                self._open -= 1
                continue
            yield item
