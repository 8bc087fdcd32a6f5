"""
Output sinks for streamed LLM responses.

A sink is anything with ``async write(chunk)``. Streaming strategies write
each chunk as it arrives; ``CollectingSink`` tees the chunks so the complete
answer can still be cached once the stream ends.
"""

import asyncio
from typing import List, Optional, Protocol


class OutputSink(Protocol):
    async def write(self, chunk: str) -> None:
        ...


class BufferSink:
    """Keeps every chunk in memory."""

    def __init__(self):
        self.chunks: List[str] = []

    async def write(self, chunk: str) -> None:
        self.chunks.append(chunk)

    @property
    def text(self) -> str:
        return "".join(self.chunks)


class CollectingSink(BufferSink):
    """Forwards chunks to ``target`` while keeping a copy."""

    def __init__(self, target: OutputSink):
        super().__init__()
        self._target = target

    async def write(self, chunk: str) -> None:
        self.chunks.append(chunk)
        await self._target.write(chunk)


class QueueSink:
    """
    Bridges a strategy running in a background task to an async iterator.

    Used by the HTTP layer: the strategy writes, ``StreamingResponse``
    iterates ``consume()`` until ``close()`` is called.
    """

    _DONE = object()

    def __init__(self, maxsize: int = 0):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    async def write(self, chunk: str) -> None:
        await self._queue.put(chunk)

    async def close(self, error: Optional[BaseException] = None) -> None:
        if error is not None:
            await self._queue.put(error)
        await self._queue.put(self._DONE)

    async def consume(self):
        while True:
            item = await self._queue.get()
            if item is self._DONE:
                return
            if isinstance(item, BaseException):
                raise item
            yield item


class PrefixedSink(CollectingSink):
    """
    Holds ``prefix`` back until the first real chunk arrives.

    If the producer fails before writing anything, nothing has reached the
    target and the caller can still answer some other way.
    """

    def __init__(self, target: OutputSink, prefix: str = ""):
        super().__init__(target)
        self._prefix = prefix

    @property
    def started(self) -> bool:
        return bool(self.chunks)

    async def write(self, chunk: str) -> None:
        if not self.chunks and self._prefix:
            await super().write(self._prefix)
        await super().write(chunk)

    async def flush_prefix(self) -> None:
        if not self.chunks and self._prefix:
            await super().write(self._prefix)
