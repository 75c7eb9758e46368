"""Server-Sent Events encoding and per-thread stop signals."""

import asyncio
import json
import logging
from collections import defaultdict
from contextlib import aclosing
from typing import AsyncGenerator, AsyncIterator

from fastapi.responses import StreamingResponse

from chorus_models import StreamEvent

logger = logging.getLogger(__name__)

DONE_MESSAGE = "data: [DONE]\n\n"


def encode_event(event: StreamEvent) -> str:
    """Encode one stream event as an SSE data frame."""
    return f"data: {json.dumps(event, separators=(',', ':'), default=str)}\n\n"


class StopRegistry:
    """Cancel signals of in-flight turns, keyed by thread.

    Every turn registers one asyncio.Event shared by all of its agents. Setting it
    (explicit stop request or client disconnect) aborts every agent of the turn.
    """

    def __init__(self):
        # thread_id -> signals of the turns currently streaming on that thread
        self._signals: dict[str, list[asyncio.Event]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def register(self, thread_id: str) -> asyncio.Event:
        """Create the cancel signal for a new turn."""
        signal = asyncio.Event()
        async with self._lock:
            self._signals[thread_id].append(signal)
        return signal

    async def unregister(self, thread_id: str, signal: asyncio.Event):
        """Forget a finished turn."""
        async with self._lock:
            if thread_id in self._signals:
                try:
                    self._signals[thread_id].remove(signal)
                    if not self._signals[thread_id]:
                        del self._signals[thread_id]
                except ValueError:
                    pass

    async def stop(self, thread_id: str) -> bool:
        """Fire the cancel signal of every turn streaming on the thread."""
        async with self._lock:
            signals = list(self._signals.get(thread_id, []))
        for signal in signals:
            signal.set()
        if signals:
            logger.info(f"Stop requested for thread {thread_id} ({len(signals)} turn(s))")
        return bool(signals)


# Global stop registry instance
stop_registry = StopRegistry()


async def chat_event_stream(
    events: AsyncIterator[StreamEvent],
    thread_id: str,
    cancel: asyncio.Event,
) -> AsyncGenerator[str, None]:
    """Encode a turn's events as SSE frames.

    If the client goes away before the turn ends, the turn's cancel signal is
    fired so the agents stop; the turn still persists what it produced.
    """
    completed = False
    try:
        async with aclosing(events) as stream:
            async for event in stream:
                yield encode_event(event)
        completed = True
        yield DONE_MESSAGE
    finally:
        if not completed:
            logger.info(f"Client left thread {thread_id} mid-stream, cancelling turn")
            cancel.set()
        await stop_registry.unregister(thread_id, cancel)


def create_sse_response(generator: AsyncGenerator[str, None]) -> StreamingResponse:
    """Create an SSE StreamingResponse."""
    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
