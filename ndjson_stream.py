import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson"
NDJSON_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}

_END = object()


def encode_event(event: Dict[str, Any]) -> bytes:
    return (json.dumps(event, ensure_ascii=False, default=str) + "\n").encode("utf-8")


class NdjsonWriter:
    """Producer handle for an :class:`NdjsonStream`.

    ``done`` and ``error`` close the stream. Anything written after that, or
    after the consumer went away, is dropped.
    """

    def __init__(self, queue: "asyncio.Queue[Any]") -> None:
        self._queue = queue
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _put(self, event: Dict[str, Any], *, terminal: bool = False) -> None:
        if self._closed:
            logger.debug("Dropping %s event written after stream closed", event.get("type"))
            return
        self._queue.put_nowait(event)
        if terminal:
            self._closed = True
            self._queue.put_nowait(_END)

    def progress(self, completed: int, total: int, phase: Optional[str] = None) -> None:
        event: Dict[str, Any] = {"type": "progress", "completed": completed, "total": total}
        if phase:
            event["phase"] = phase
        self._put(event)

    def done(self, data: Any) -> None:
        self._put({"type": "done", "data": data}, terminal=True)

    def error(self, message: str, completed: Optional[int] = None, total: Optional[int] = None) -> None:
        event: Dict[str, Any] = {"type": "error", "error": message}
        if completed is not None:
            event["completed"] = completed
        if total is not None:
            event["total"] = total
        self._put(event, terminal=True)

    def abandon(self) -> None:
        self._closed = True


class NdjsonStream:
    """One-way channel from a long-running operation to an incremental reader.

    Iterate it (e.g. as a ``StreamingResponse`` body) to receive one encoded
    JSON line per event until ``done`` or ``error`` is written.
    """

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self.writer = NdjsonWriter(self._queue)
        self._producer: Optional["asyncio.Task[Any]"] = None

    def run(self, producer: Callable[[NdjsonWriter], Awaitable[Any]]) -> "NdjsonStream":
        """Start ``producer(writer)`` as a task; an uncaught failure becomes an error event."""

        async def _guarded() -> None:
            try:
                await producer(self.writer)
            except Exception as exc:
                logger.exception("Streaming operation failed")
                self.writer.error(str(exc) or exc.__class__.__name__)
            else:
                if not self.writer.closed:
                    logger.warning("Streaming operation finished without a terminal event")
                    self.writer.error("작업이 결과 없이 종료되었습니다.")

        self._producer = asyncio.ensure_future(_guarded())
        return self

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        try:
            while True:
                item = await self._queue.get()
                if item is _END:
                    return
                yield item
        finally:
            self.writer.abandon()

    async def __aiter__(self) -> AsyncIterator[bytes]:
        async for event in self.events():
            yield encode_event(event)


def create_ndjson_stream() -> NdjsonStream:
    return NdjsonStream()
