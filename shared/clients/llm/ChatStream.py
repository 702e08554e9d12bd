from typing import AsyncIterator, Awaitable, Callable


class ChatStream:
    """Lazy, finite sequence of chat chunks that the consumer may abort.

    Each chunk is a dict carrying at least a ``text`` field. The underlying
    resource (usually an open HTTP response) is released when the sequence is
    exhausted, when iteration fails, or when :meth:`aclose` is called.

    Args:
        source (AsyncIterator[dict]): Producer of chunks.
        on_close (Callable[[], Awaitable[None]] | None): Releases the underlying resource.
    """

    def __init__(self, source: AsyncIterator[dict], on_close: Callable[[], Awaitable[None]] | None = None):
        self._source = source
        self._on_close = on_close
        self._iterator: AsyncIterator[dict] | None = None
        self.closed = False

    def __aiter__(self) -> AsyncIterator[dict]:
        if self._iterator is None:
            self._iterator = self._iterate()
        return self._iterator

    async def aclose(self) -> None:
        if self._iterator is not None:
            await self._iterator.aclose()
        await self._release()

    async def _iterate(self) -> AsyncIterator[dict]:
        try:
            async for chunk in self._source:
                yield chunk
        finally:
            close_source = getattr(self._source, "aclose", None)
            if close_source is not None:
                await close_source()
            await self._release()

    async def _release(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._on_close is not None:
            await self._on_close()


async def iterate_chunks(chunks: list[dict]) -> AsyncIterator[dict]:
    """Async iterator over an in-memory list of chunks."""
    for chunk in chunks:
        yield chunk
