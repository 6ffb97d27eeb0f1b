"""Server-sent event vocabulary shared by generators and pollers."""

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional

from studygen.errors import StudyGenError
from studygen.services.sections import section_index


KEEPALIVE = ": keepalive\n\n"

Emit = Callable[[str], Awaitable[None]]


def format_sse_event(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


def init_event(status: str, estimated_sections: int) -> str:
    return format_sse_event("init", {"status": status, "estimatedSections": estimated_sections})


def section_event(name: str, content: Any, total: int) -> str:
    return format_sse_event(
        "section",
        {"type": name, "content": content, "index": section_index(name), "total": total},
    )


def complete_event(content_id: str, tokens_consumed: int, from_cache: bool) -> str:
    return format_sse_event(
        "complete",
        {"contentId": content_id, "tokensConsumed": tokens_consumed, "fromCache": from_cache},
    )


def error_event(code: str, message: str, retryable: bool) -> str:
    return format_sse_event("error", {"code": code, "message": message, "retryable": retryable})


def error_event_from(exc: StudyGenError) -> str:
    return error_event(exc.code, exc.message, exc.retryable)


class EventChannel:
    """
    Queue between a background handler and the HTTP response.

    Once the client goes away the channel is closed and further events are
    dropped, while the producer keeps running to completion.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._closed = False
        self._finished = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def emit(self, event: str) -> None:
        if self._closed:
            return
        await self._queue.put(event)

    def finish(self) -> None:
        """Signal the end of the stream."""
        if not self._finished:
            self._finished = True
            self._queue.put_nowait(None)

    def close(self) -> None:
        """Stop accepting events (client disconnected)."""
        self._closed = True

    async def next_event(self, timeout: float) -> Optional[str]:
        """
        Wait for the next event.

        Returns KEEPALIVE when nothing arrives within ``timeout`` and None once
        the producer has finished.
        """
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return KEEPALIVE
