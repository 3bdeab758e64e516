import asyncio
import concurrent.futures
import logging
from typing import Any, AsyncIterator, Callable, List, Optional

from pipekit.constants import ERROR_PREFIX, HOST_NAME
from pipekit.errors import StreamConsumedError
from pipekit.utils.sse import chunk_to_text

logger = logging.getLogger(HOST_NAME)

PENDING = "pending"
ACTIVE = "active"
EXHAUSTED = "exhausted"
CANCELLED = "cancelled"
FAILED = "failed"

_DONE = object()


class ChunkStream:
    """Single-use async stream over the chunks a plugin produces.

    Wraps sync iterators, generators and async generators alike. Chunks are
    reduced to text and empty ones dropped. Iterating a second time raises
    StreamConsumedError; the upstream request is never re-issued. A failure
    inside the source ends the stream with one "Error: ..." chunk.
    """

    def __init__(
        self,
        source: Any,
        executor: Optional[concurrent.futures.Executor] = None,
        label: str = "",
        on_close: Optional[Callable[["ChunkStream"], None]] = None,
    ):
        self._source = source
        self._executor = executor
        self._label = label
        self._on_close = on_close
        self._iterator = None
        self.state = PENDING
        self.error: Optional[str] = None
        self.chunks_delivered = 0

    @property
    def is_async(self) -> bool:
        return hasattr(self._source, "__anext__") or hasattr(
            self._source, "__aiter__"
        )

    @property
    def closed(self) -> bool:
        return self.state in (EXHAUSTED, CANCELLED, FAILED)

    def __aiter__(self) -> AsyncIterator[str]:
        if self.state != PENDING:
            raise StreamConsumedError(
                f"Stream {self._label or id(self)} already consumed (state={self.state})"
            )
        self.state = ACTIVE
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        is_async = self.is_async
        try:
            if is_async:
                self._iterator = self._source.__aiter__()
            else:
                self._iterator = iter(self._source)

            while self.state == ACTIVE:
                try:
                    if is_async:
                        chunk = await self._iterator.__anext__()
                    else:
                        chunk = await self._next_sync()
                except StopAsyncIteration:
                    break
                if chunk is _DONE or self.state != ACTIVE:
                    break

                text = chunk_to_text(chunk)
                if not text:
                    continue
                self.chunks_delivered += 1
                yield text

            if self.state == ACTIVE:
                self._finish(EXHAUSTED)
        except (asyncio.CancelledError, GeneratorExit):
            if not self.closed:
                self._finish(CANCELLED)
                await self._close_source()
            raise
        except Exception as e:
            logger.error(
                "Stream %s failed after %d chunks: %s",
                self._label,
                self.chunks_delivered,
                e,
            )
            self.error = f"{ERROR_PREFIX} {e}"
            self._finish(FAILED)
            await self._close_source()
            yield self.error

    async def _next_sync(self):
        def advance():
            return next(self._iterator, _DONE)

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, advance)

    def _finish(self, state: str):
        self.state = state
        callback, self._on_close = self._on_close, None
        if callback is not None:
            try:
                callback(self)
            except Exception as e:
                logger.error(f"Error in stream close callback: {e}")

    async def _close_source(self):
        target = self._iterator if self._iterator is not None else self._source
        try:
            aclose = getattr(target, "aclose", None)
            if aclose is not None:
                await aclose()
                return
            close = getattr(target, "close", None)
            if callable(close):
                close()
        except Exception as e:
            logger.debug(f"Error closing stream source: {e}")

    async def aclose(self):
        """Cancel the stream and release the underlying source. Idempotent."""
        if self.closed:
            return
        self._finish(CANCELLED)
        await self._close_source()

    async def collect(self) -> str:
        """Drain the stream into one string"""
        parts: List[str] = []
        async for chunk in self:
            parts.append(chunk)
        return "".join(parts)
